"""
UCI Engine Regression Harness
Concurrent paired games between two engines with an SPRT verdict
"""

__version__ = "1.0.0"
__author__ = "Engine Regression Harness Contributors"

from .config import EngineConfig, EngineRegistry, TimeControl, Clock, MatchPlan, SprtConfig, RunConfig
from .errors import (
    HarnessError, ConfigInvalid, BookExhausted, HandshakeFailed,
    ProtocolError, IllegalMove, TimeForfeit, Disconnect, Cancelled
)
from .opening_book import OpeningPosition, PositionSampler
from .uci_interface import EngineSession, SessionState, Move
from .game import GameDriver, GameResult, GameSlot, Winner, Reason
from .stats import ResultAggregator, AggregateState, Verdict, SPRT
from .scheduler import MatchScheduler
from .results import ResultSink

__all__ = [
    'EngineConfig',
    'EngineRegistry',
    'TimeControl',
    'Clock',
    'MatchPlan',
    'SprtConfig',
    'RunConfig',
    'HarnessError',
    'ConfigInvalid',
    'BookExhausted',
    'HandshakeFailed',
    'ProtocolError',
    'IllegalMove',
    'TimeForfeit',
    'Disconnect',
    'Cancelled',
    'OpeningPosition',
    'PositionSampler',
    'EngineSession',
    'SessionState',
    'Move',
    'GameDriver',
    'GameResult',
    'GameSlot',
    'Winner',
    'Reason',
    'ResultAggregator',
    'AggregateState',
    'Verdict',
    'SPRT',
    'MatchScheduler',
    'ResultSink',
]
