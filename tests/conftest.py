# tests/conftest.py
import functools
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

from harness.config import EngineConfig, TimeControl, MatchPlan, RunConfig
from harness.opening_book import OpeningPosition
from harness.uci_interface import EngineSession, Move, SessionState

FAKE_ENGINE = str(Path(__file__).parent / "fake_engine.py")

BOOK_LINES = [
    'rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - id "e4";',
    'rnbqkbnr/pppppppp/8/8/3P4/8/PPP1PPPP/RNBQKBNR b KQkq - id "d4";',
    'rnbqkbnr/pppp1ppp/8/4p3/4P3/8/PPPP1PPP/RNBQKBNR w KQkq - id "e4 e5";',
]

# stop() waits for "quit"; scripted engines that are asleep get killed quickly
FastSession = functools.partial(EngineSession, grace_period=0.2)


def fake_engine(name: str, *args: str, margin_ms: int = 100, handshake_timeout: float = 5.0) -> EngineConfig:
    return EngineConfig(
        name=name,
        path=sys.executable,
        args=[FAKE_ENGINE, "--name", name, *args],
        margin_ms=margin_ms,
        handshake_timeout=handshake_timeout
    )


@pytest.fixture
def book_file(tmp_path: Path) -> Path:
    path = tmp_path / "book.epd"
    path.write_text("# three openings\n" + "\n".join(BOOK_LINES) + "\n\n")
    return path


@pytest.fixture
def run_config(tmp_path: Path) -> Callable[..., RunConfig]:
    def make(engine_a: EngineConfig, engine_b: EngineConfig, tc: str = "5+0.05", **kwargs) -> RunConfig:
        plan = kwargs.pop("plan", MatchPlan())
        return RunConfig(
            engine_a=engine_a,
            engine_b=engine_b,
            time_control=TimeControl.parse(tc),
            plan=plan,
            output_dir=str(tmp_path / "results"),
            **kwargs
        )
    return make


Step = Union[Move, Exception, None]


class ScriptedSession:
    """
    In-process stand-in for EngineSession

    Each think() pops the next step: a Move is returned, an exception raised,
    and an exhausted script keeps shuffling with a plain move.
    """

    instances: List["ScriptedSession"] = []

    def __init__(self, config: EngineConfig, steps: List[Step], start_error: Optional[Exception] = None,
                 cancel_event=None):
        self.config = config
        self.steps = list(steps)
        self.start_error = start_error
        self.cancel_event = cancel_event
        self.state = SessionState.UNINITIALIZED
        self.positions = []
        self.go_args = []
        self.stopped = False
        ScriptedSession.instances.append(self)

    @property
    def name(self) -> str:
        return self.config.name

    def start(self):
        if self.start_error is not None:
            self.state = SessionState.FAULTED
            raise self.start_error
        self.state = SessionState.READY

    def new_game(self):
        pass

    def set_position(self, position, moves=None):
        self.positions.append((position, list(moves or [])))

    def think(self, own, opponent, white_to_move):
        self.go_args.append((own.remaining_ms, opponent.remaining_ms, white_to_move))
        step = self.steps.pop(0) if self.steps else Move(uci="a2a3", elapsed_ms=1)
        if isinstance(step, Exception):
            self.state = SessionState.FAULTED
            raise step
        return step

    def stop(self):
        self.stopped = True
        self.state = SessionState.STOPPED


@pytest.fixture
def scripted() -> Callable[..., Callable]:
    """Build a session factory from per-engine scripts"""
    ScriptedSession.instances = []

    def make(scripts: Dict[str, List[Step]], start_errors: Optional[Dict[str, Exception]] = None):
        start_errors = start_errors or {}

        def factory(config, cancel_event=None):
            return ScriptedSession(
                config,
                scripts.get(config.name, []),
                start_errors.get(config.name),
                cancel_event
            )
        return factory
    return make


@pytest.fixture
def start_position() -> OpeningPosition:
    return OpeningPosition(
        index=7,
        fen="rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1",
        white_to_move=True
    )
