"""
Game Driver
Plays one game between engine A and engine B from a book position
"""

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, List, Tuple, Callable

from .config import EngineConfig, TimeControl, MatchPlan, Clock
from .errors import (
    SessionError, TimeForfeit, IllegalMove, Cancelled
)
from .opening_book import OpeningPosition
from .uci_interface import EngineSession, Move

logger = logging.getLogger(__name__)

ROLES = ("A", "B")
MATE_SCORE = 30000


class Winner(Enum):
    A = "A"
    B = "B"
    DRAW = "draw"


class Reason(Enum):
    CHECKMATE = "checkmate"
    RESIGNATION = "resignation"
    TIMEOUT = "timeout"
    ILLEGAL_MOVE = "illegal_move"
    DISCONNECT = "disconnect"
    DRAW_ADJUDICATION = "draw_adjudication"


def other(role: str) -> str:
    return "B" if role == "A" else "A"


def forfeit_reason(error: SessionError) -> Reason:
    """Map a session failure to the reason recorded against its engine"""
    if isinstance(error, TimeForfeit):
        return Reason.TIMEOUT
    if isinstance(error, IllegalMove):
        return Reason.ILLEGAL_MOVE
    return Reason.DISCONNECT


@dataclass(frozen=True)
class GameSlot:
    """One scheduled game: position plus color assignment"""
    slot_id: int
    round_index: int
    pair_index: int
    position: OpeningPosition
    a_is_white: bool

    @property
    def white_role(self) -> str:
        return "A" if self.a_is_white else "B"


@dataclass(frozen=True)
class GameResult:
    """Outcome of one slot"""
    slot: int
    position_index: int
    white: str
    winner: Winner
    reason: Reason
    move_count: int
    elapsed_a_ms: int
    elapsed_b_ms: int
    moves: Tuple[str, ...] = ()
    late_a: int = 0
    late_b: int = 0
    detail: str = ""

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["winner"] = self.winner.value
        data["reason"] = self.reason.value
        data["moves"] = list(self.moves)
        return data


def _score_value(move: Move) -> Optional[int]:
    if move.score_mate is not None:
        return MATE_SCORE if move.score_mate > 0 else -MATE_SCORE
    return move.score_cp


class Adjudicator:
    """
    Score-based resign and draw adjudication

    Uses only the scores the engines report, never board rules.
    """

    def __init__(self, plan: MatchPlan):
        self.resign = plan.resign
        self.draw = plan.draw
        self.losing_streak = {role: 0 for role in ROLES}
        self.drawish_plies = 0

    def update(self, role: str, move: Move, ply: int) -> Optional[Tuple[Winner, Reason, str]]:
        """
        Record the score behind a move and decide whether the game is over

        Args:
            role: Engine that made the move
            move: The move with its last reported score
            ply: Number of plies played including this move
        """
        score = _score_value(move)

        if self.resign is not None:
            if score is not None and score <= -self.resign.score:
                self.losing_streak[role] += 1
            else:
                self.losing_streak[role] = 0
            if self.losing_streak[role] >= self.resign.movecount:
                return (
                    Winner(other(role)),
                    Reason.RESIGNATION,
                    f"{role} scored <= -{self.resign.score} for {self.resign.movecount} moves"
                )

        if self.draw is not None:
            if score is not None and abs(score) <= self.draw.score:
                self.drawish_plies += 1
            else:
                self.drawish_plies = 0
            if ply >= 2 * self.draw.movenumber and self.drawish_plies >= 2 * self.draw.movecount:
                return (
                    Winner.DRAW,
                    Reason.DRAW_ADJUDICATION,
                    f"scores within {self.draw.score}cp for {self.draw.movecount} moves"
                )

        return None


class GameDriver:
    """
    Drives one game between two engine sessions

    Features:
    - Owns both sessions, stopped on every exit path
    - Clock bookkeeping per side
    - Forfeits attributed to the faulting engine regardless of color
    - Declared game end, score adjudication and move limit
    """

    def __init__(self,
                 slot: GameSlot,
                 engine_a: EngineConfig,
                 engine_b: EngineConfig,
                 time_control: TimeControl,
                 plan: MatchPlan,
                 cancel_event: Optional[threading.Event] = None,
                 session_factory: Callable[..., EngineSession] = EngineSession):
        self.slot = slot
        self.configs = {"A": engine_a, "B": engine_b}
        self.time_control = time_control
        self.plan = plan
        self.cancel_event = cancel_event
        self.session_factory = session_factory

        self.clocks = {role: Clock(time_control) for role in ROLES}
        self.moves: List[str] = []
        self.late = {role: 0 for role in ROLES}
        # side whose session is being driven; blamed for faults
        self.current = "A"

    def _result(self, winner: Winner, reason: Reason, detail: str = "") -> GameResult:
        return GameResult(
            slot=self.slot.slot_id,
            position_index=self.slot.position.index,
            white=self.slot.white_role,
            winner=winner,
            reason=reason,
            move_count=len(self.moves),
            elapsed_a_ms=self.clocks["A"].used_ms,
            elapsed_b_ms=self.clocks["B"].used_ms,
            moves=tuple(self.moves),
            late_a=self.late["A"],
            late_b=self.late["B"],
            detail=detail
        )

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled(f"Slot {self.slot.slot_id} cancelled")

    def play(self) -> GameResult:
        """
        Play the game to completion

        Returns:
            GameResult; raises Cancelled when the run is aborted
        """
        position = self.slot.position
        white_to_move = position.white_to_move
        adjudicator = Adjudicator(self.plan)

        with ExitStack() as stack:
            sessions: Dict[str, EngineSession] = {}
            try:
                for role in ROLES:
                    self.current = role
                    self._check_cancelled()
                    session = self.session_factory(self.configs[role], cancel_event=self.cancel_event)
                    stack.callback(session.stop)
                    sessions[role] = session
                    session.start()
                    session.new_game()

                while True:
                    self._check_cancelled()

                    if len(self.moves) >= self.plan.max_moves:
                        return self._finish(Winner.DRAW, Reason.DRAW_ADJUDICATION,
                                            f"move limit {self.plan.max_moves} reached")

                    white_role = self.slot.white_role
                    self.current = white_role if white_to_move else other(white_role)
                    session = sessions[self.current]

                    session.set_position(position, self.moves)
                    move = session.think(
                        self.clocks[self.current],
                        self.clocks[other(self.current)],
                        white_to_move
                    )
                    self.clocks[self.current].consume(move.elapsed_ms)
                    if move.late:
                        self.late[self.current] += 1

                    if move.uci is None:
                        if move.score_mate is not None and move.score_mate <= 0:
                            return self._finish(Winner(other(self.current)), Reason.CHECKMATE,
                                                f"{self.current} reported mate with no move")
                        return self._finish(Winner.DRAW, Reason.DRAW_ADJUDICATION,
                                            f"{self.current} declared no move")

                    self.moves.append(move.uci)

                    verdict = adjudicator.update(self.current, move, len(self.moves))
                    if verdict is not None:
                        return self._finish(*verdict)

                    white_to_move = not white_to_move

            except SessionError as e:
                reason = forfeit_reason(e)
                logger.warning(f"Slot {self.slot.slot_id}: {self.current} forfeits ({reason.value}): {e}")
                return self._finish(Winner(other(self.current)), reason, str(e))

    def fault_result(self, error: Exception) -> GameResult:
        """Disconnect loss for the side in play when the driver itself failed"""
        return self._finish(Winner(other(self.current)), Reason.DISCONNECT,
                            f"driver fault: {error}")

    def _finish(self, winner: Winner, reason: Reason, detail: str = "") -> GameResult:
        result = self._result(winner, reason, detail)
        logger.info(f"Slot {result.slot} finished: {winner.value} - {reason.value} "
                    f"({result.move_count} plies)")
        return result
