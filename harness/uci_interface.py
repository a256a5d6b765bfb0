"""
UCI Engine Session
One engine subprocess driven over the UCI protocol with bounded waits
"""

import subprocess
import threading
import queue
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, List, Tuple
import re
import chess

from .config import EngineConfig, Clock
from .errors import (
    HandshakeFailed, ProtocolError, IllegalMove, TimeForfeit, Disconnect, Cancelled
)
from .opening_book import OpeningPosition

logger = logging.getLogger(__name__)

NO_MOVE_TOKENS = ("(none)", "0000")
POLL_INTERVAL = 0.05


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    THINKING = "thinking"
    STOPPED = "stopped"
    FAULTED = "faulted"


class ReplyTiming(Enum):
    ACCEPTED = "accepted"
    LATE = "late"
    FORFEIT = "forfeit"


def classify_reply(elapsed_ms: int, budget_ms: int, margin_ms: int) -> ReplyTiming:
    """
    Classify a reply against the move budget

    Within budget is accepted, within budget + margin is accepted late,
    anything slower is a forfeit.
    """
    if elapsed_ms <= budget_ms:
        return ReplyTiming.ACCEPTED
    if elapsed_ms <= budget_ms + margin_ms:
        return ReplyTiming.LATE
    return ReplyTiming.FORFEIT


@dataclass(frozen=True)
class Move:
    """A bestmove reply; uci is None when the engine declares no move"""
    uci: Optional[str]
    elapsed_ms: int
    late: bool = False
    score_cp: Optional[int] = None
    score_mate: Optional[int] = None
    ponder: Optional[str] = None


class EngineSession:
    """
    UCI session over one engine process

    Features:
    - Handshake with bounded timeout
    - Wall-clock move timing from the flushed "go" to the bestmove line
    - Time forfeits with a tolerance margin
    - Guaranteed process release on stop
    """

    def __init__(self,
                 config: EngineConfig,
                 grace_period: float = 2.0,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize session

        Args:
            config: Engine configuration
            grace_period: Seconds to wait for "quit" before killing
            cancel_event: Run-level cancellation checked while waiting
        """
        self.config = config
        self.grace_period = grace_period
        self.cancel_event = cancel_event

        self.process: Optional[subprocess.Popen] = None
        self.output_queue: queue.Queue = queue.Queue()
        self.reader_thread: Optional[threading.Thread] = None
        self.state = SessionState.UNINITIALIZED
        self._eof = False

        # Engine info
        self.engine_id = "Unknown"
        self.author = "Unknown"
        self.options: Dict[str, Dict] = {}

    @property
    def name(self) -> str:
        return self.config.name

    def start(self):
        """Spawn the engine and complete the uci/isready handshake"""
        if self.state != SessionState.UNINITIALIZED:
            raise ProtocolError(f"Session already started ({self.state.value})", self.name)

        try:
            self.process = subprocess.Popen(
                self.config.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                bufsize=1
            )
        except OSError as e:
            self.state = SessionState.FAULTED
            raise HandshakeFailed(f"Failed to start {self.config.path}: {e}", self.name) from e

        self.reader_thread = threading.Thread(
            target=self._read_output,
            name=f"uci-reader-{self.name}",
            daemon=True
        )
        self.reader_thread.start()
        logger.info(f"Engine process started: {self.name} PID {self.process.pid}")

        deadline = time.monotonic() + self.config.handshake_timeout
        try:
            self._send("uci")
            for line in self._read_until("uciok", deadline):
                if line.startswith("id name"):
                    self.engine_id = line[8:].strip()
                elif line.startswith("id author"):
                    self.author = line[10:].strip()
                elif line.startswith("option name"):
                    self._parse_option(line)

            for option, value in self.config.options.items():
                self._send(f"setoption name {option} value {value}")

            self._sync(deadline)
        except (ProtocolError, Disconnect) as e:
            self._fault()
            raise HandshakeFailed(f"Handshake failed for {self.name}: {e}", self.name) from e

        self.state = SessionState.READY
        logger.info(f"Engine initialized: {self.engine_id} by {self.author} ({len(self.options)} options)")

    def _read_output(self):
        """Background thread timestamping every line the engine prints"""
        stdout = self.process.stdout
        try:
            for line in stdout:
                received = time.monotonic()
                line = line.strip()
                if line:
                    self.output_queue.put((received, line))
                    logger.debug(f"<< [{self.name}] {line}")
        except (OSError, ValueError) as e:
            logger.debug(f"Reader for {self.name} stopped: {e}")
        finally:
            self.output_queue.put((time.monotonic(), None))

    def _send(self, command: str):
        if not self.process or not self.process.stdin:
            raise ProtocolError("Engine not started", self.name)

        try:
            logger.debug(f">> [{self.name}] {command}")
            self.process.stdin.write(command + "\n")
            self.process.stdin.flush()
        except (OSError, ValueError) as e:
            self._fault()
            raise Disconnect(f"Error sending '{command}' to {self.name}: {e}", self.name) from e

    def _next_line(self, deadline: float) -> Optional[Tuple[float, str]]:
        """
        Wait for the next line until the monotonic deadline

        A line the reader stamped before the deadline is still returned when
        this thread only wakes after it. Returns None on timeout; raises
        Disconnect on EOF.
        """
        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise Cancelled(f"Cancelled while waiting on {self.name}")

            if self._eof:
                raise Disconnect(f"{self.name} exited unexpectedly", self.name)

            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    received, line = self.output_queue.get_nowait()
                else:
                    received, line = self.output_queue.get(timeout=min(remaining, POLL_INTERVAL))
            except queue.Empty:
                if remaining <= 0:
                    return None
                continue

            if line is None:
                self._eof = True
                self._fault()
                code = self.process.poll() if self.process else None
                raise Disconnect(f"{self.name} exited unexpectedly (code {code})", self.name)
            if received > deadline:
                return None
            return received, line

    def _read_until(self, expected: str, deadline: float) -> List[str]:
        """Collect lines up to and including the first one equal to expected"""
        lines = []
        while True:
            item = self._next_line(deadline)
            if item is None:
                raise ProtocolError(
                    f"Timeout waiting for '{expected}' from {self.name}. Got {len(lines)} lines.",
                    self.name
                )
            line = item[1]
            lines.append(line)
            if line == expected:
                return lines

    def _sync(self, deadline: float):
        self._send("isready")
        self._read_until("readyok", deadline)

    def _parse_option(self, line: str):
        """Parse UCI option line"""
        # Example: option name Hash type spin default 16 min 1 max 65536
        match = re.match(r'option name (.+?)(?:\s+type\s+(.+))?$', line)
        if match:
            name = match.group(1).strip()
            rest = match.group(2) or ""

            option_info = {"raw": line}
            type_match = re.match(r'(\w+)', rest)
            if type_match:
                option_info["type"] = type_match.group(1)
            default_match = re.search(r'default (\S+)', rest)
            if default_match:
                option_info["default"] = default_match.group(1)

            self.options[name] = option_info

    def _fault(self):
        if self.state != SessionState.STOPPED:
            self.state = SessionState.FAULTED

    def _require(self, state: SessionState):
        if self.state != state:
            raise ProtocolError(
                f"{self.name} is {self.state.value}, expected {state.value}", self.name
            )

    def new_game(self):
        """Reset engine state for a new game"""
        self._require(SessionState.READY)
        self._send("ucinewgame")
        deadline = time.monotonic() + self.config.handshake_timeout
        self._sync(deadline)

    def set_position(self, position: OpeningPosition, moves: Optional[List[str]] = None):
        """
        Set board position

        Args:
            position: Starting position of the game
            moves: Moves played since the starting position
        """
        self._require(SessionState.READY)
        cmd = f"position fen {position.fen}"
        if moves:
            cmd += " moves " + " ".join(moves)
        self._send(cmd)

    def think(self, own: Clock, opponent: Clock, white_to_move: bool) -> Move:
        """
        Ask for a move and wait for it within budget plus margin

        Args:
            own: Clock of the side to move
            opponent: Clock of the other side
            white_to_move: Whether this session plays white in the current position

        Returns:
            Move, flagged late when it used the margin
        """
        self._require(SessionState.READY)

        white, black = (own, opponent) if white_to_move else (opponent, own)
        cmd_parts = [
            "go",
            f"wtime {white.remaining_ms}",
            f"btime {black.remaining_ms}",
            f"winc {white.time_control.increment_ms}",
            f"binc {black.time_control.increment_ms}",
        ]
        if own.moves_to_go is not None:
            cmd_parts.append(f"movestogo {own.moves_to_go}")

        budget_ms = own.remaining_ms
        margin_ms = self.config.margin_ms

        self._send(" ".join(cmd_parts))
        sent_at = time.monotonic()
        self.state = SessionState.THINKING
        deadline = sent_at + (budget_ms + margin_ms) / 1000

        score_cp = None
        score_mate = None
        while True:
            item = self._next_line(deadline)
            if item is None:
                self._fault()
                raise TimeForfeit(
                    f"{self.name} did not move within {budget_ms}+{margin_ms}ms",
                    self.name,
                    elapsed_ms=budget_ms + margin_ms
                )

            received, line = item
            if line.startswith("info"):
                info = self._parse_info(line)
                if "score_cp" in info:
                    score_cp, score_mate = info["score_cp"], None
                elif "score_mate" in info:
                    score_cp, score_mate = None, info["score_mate"]
            elif line.split()[0] == "bestmove":
                break
            else:
                logger.debug(f"Ignoring line from {self.name}: {line}")

        elapsed_ms = max(0, int((received - sent_at) * 1000))
        timing = classify_reply(elapsed_ms, budget_ms, margin_ms)
        if timing == ReplyTiming.FORFEIT:
            self._fault()
            raise TimeForfeit(
                f"{self.name} moved after {elapsed_ms}ms, budget {budget_ms}+{margin_ms}ms",
                self.name,
                elapsed_ms=elapsed_ms
            )
        if timing == ReplyTiming.LATE:
            logger.warning(f"{self.name} used the time margin: {elapsed_ms}ms of {budget_ms}ms")

        token, ponder = self._parse_bestmove(line)
        self.state = SessionState.READY

        return Move(
            uci=token,
            elapsed_ms=elapsed_ms,
            late=timing == ReplyTiming.LATE,
            score_cp=score_cp,
            score_mate=score_mate,
            ponder=ponder
        )

    def _parse_bestmove(self, line: str) -> Tuple[Optional[str], Optional[str]]:
        parts = line.split()
        if len(parts) not in (2, 4) or (len(parts) == 4 and parts[2] != "ponder"):
            self._fault()
            raise ProtocolError(f"Malformed bestmove line from {self.name}: {line!r}", self.name)

        token = parts[1]
        ponder = parts[3] if len(parts) == 4 else None
        if token in NO_MOVE_TOKENS:
            return None, ponder

        try:
            chess.Move.from_uci(token)
        except ValueError as e:
            self._fault()
            raise IllegalMove(f"{self.name} sent invalid move {token!r}", self.name) from e
        return token, ponder

    def _parse_info(self, line: str) -> Dict:
        """Parse UCI info line"""
        info = {"raw": line}

        patterns = {
            "depth": r"depth (\d+)",
            "score_cp": r"score cp (-?\d+)",
            "score_mate": r"score mate (-?\d+)",
            "nodes": r"nodes (\d+)",
            "time": r"time (\d+)",
        }

        for key, pattern in patterns.items():
            match = re.search(pattern, line)
            if match:
                info[key] = int(match.group(1))

        return info

    def stop(self):
        """Shut the engine down, killing it after the grace period"""
        if self.process is None or self.state == SessionState.STOPPED:
            self.state = SessionState.STOPPED
            return

        process = self.process
        try:
            if process.poll() is None:
                for command in ("stop", "quit"):
                    try:
                        process.stdin.write(command + "\n")
                        process.stdin.flush()
                    except (OSError, ValueError):
                        break
                process.wait(timeout=self.grace_period)
                logger.info(f"Engine {self.name} terminated gracefully")
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            logger.warning(f"Engine {self.name} killed forcefully")
        finally:
            try:
                process.stdin.close()
            except (OSError, ValueError):
                pass
            if self.reader_thread is not None:
                self.reader_thread.join(timeout=1.0)
            if process.stdout is not None:
                process.stdout.close()
            self.state = SessionState.STOPPED

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
