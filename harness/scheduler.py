"""
Match Scheduler
Runs the slots of a match on a bounded pool of game workers
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Dict, Optional, Callable

from .config import RunConfig
from .errors import Cancelled
from .game import GameDriver, GameResult, GameSlot
from .opening_book import PositionSampler
from .results import ResultSink
from .stats import ResultAggregator, AggregateState
from .uci_interface import EngineSession

logger = logging.getLogger(__name__)


def build_sampler(config: RunConfig) -> PositionSampler:
    """Sampler for the configured book, or the start position when there is none"""
    if config.book_path is None:
        return PositionSampler(seed=config.seed)
    return PositionSampler.from_file(
        config.book_path,
        book_format=config.book_format,
        order=config.book_order,
        allow_repeat=config.allow_book_repeat,
        seed=config.seed
    )


class MatchScheduler:
    """
    Match organizer

    Features:
    - Deterministic slot/position/color assignment before dispatch
    - Bounded concurrency, one game per worker at a time
    - Per-slot failures recorded, never fatal to the run
    - Early stop once the SPRT crosses a bound
    - Run-level cancellation
    """

    def __init__(self,
                 config: RunConfig,
                 sampler: Optional[PositionSampler] = None,
                 sink: Optional[ResultSink] = None,
                 session_factory: Callable[..., EngineSession] = EngineSession,
                 update_callback: Optional[Callable[[GameResult, AggregateState], None]] = None):
        """
        Initialize scheduler

        Args:
            config: Validated run configuration
            sampler: Position sampler (built from config when omitted)
            sink: Result sink for per-game records
            session_factory: Engine session constructor
            update_callback: Called after each game with (result, snapshot)
        """
        self.config = config
        self.plan = config.plan
        self.sampler = sampler
        self.sink = sink
        self.session_factory = session_factory
        self.update_callback = update_callback

        self.aggregator = ResultAggregator(config.sprt)
        self.cancel_event = threading.Event()
        self.stop_dispatch = threading.Event()

        self.slots: List[GameSlot] = []
        self.results: List[GameResult] = []
        self.failed_slots: List[int] = []
        self.in_flight = 0
        self._pending: queue.Queue = queue.Queue()
        self._lock = threading.Lock()

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None

    def build_slots(self) -> List[GameSlot]:
        """
        Enumerate every slot of the plan

        Raises BookExhausted or ConfigInvalid before any game starts.
        """
        if self.sampler is None:
            self.sampler = build_sampler(self.config)

        positions = self.sampler.take(self.plan.pair_count)

        slots = []
        for pair_index, position in enumerate(positions):
            round_index = pair_index // self.plan.games_per_round
            if self.plan.repeat_colors:
                colors = (True, False)
            else:
                colors = (pair_index % 2 == 0,)

            for a_is_white in colors:
                slots.append(GameSlot(
                    slot_id=len(slots),
                    round_index=round_index,
                    pair_index=pair_index,
                    position=position,
                    a_is_white=a_is_white
                ))

        self.slots = slots
        logger.info(f"Scheduled {len(slots)} games over {len(positions)} positions")
        return slots

    def run(self) -> Dict:
        """
        Play every slot and return the results dict

        KeyboardInterrupt cancels the run; workers stop their engines before
        the interrupt propagates.
        """
        if not self.slots:
            self.build_slots()

        for slot in self.slots:
            self._pending.put(slot)

        a, b = self.config.engine_a.name, self.config.engine_b.name
        logger.info(f"Starting match: {a} vs {b}, tc {self.config.time_control}, "
                    f"{len(self.slots)} games, concurrency {self.plan.concurrency}")

        self.start_time = datetime.now()
        workers = min(self.plan.concurrency, len(self.slots))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="game") as pool:
            futures = [pool.submit(self._worker) for _ in range(workers)]
            try:
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                logger.warning("Interrupted, stopping all games")
                self.cancel()
                raise
            finally:
                self.end_time = datetime.now()

        snapshot = self.aggregator.snapshot()
        logger.info(f"Match finished: {a} {snapshot.wins_a} - {b} {snapshot.wins_b} - "
                    f"draws {snapshot.draws}, verdict {self.aggregator.final_verdict().value}")
        return self.get_results()

    def _next_slot(self) -> Optional[GameSlot]:
        if self.cancel_event.is_set() or self.stop_dispatch.is_set():
            return None
        try:
            return self._pending.get_nowait()
        except queue.Empty:
            return None

    def _worker(self):
        """Play slots until none are left or the run stops"""
        while True:
            slot = self._next_slot()
            if slot is None:
                return

            driver = GameDriver(
                slot,
                self.config.engine_a,
                self.config.engine_b,
                self.config.time_control,
                self.plan,
                cancel_event=self.cancel_event,
                session_factory=self.session_factory
            )

            with self._lock:
                self.in_flight += 1
            try:
                result = driver.play()
            except Cancelled:
                logger.info(f"Slot {slot.slot_id} cancelled")
                return
            except Exception as e:
                logger.error(f"Slot {slot.slot_id} failed: {e}", exc_info=True)
                with self._lock:
                    self.failed_slots.append(slot.slot_id)
                result = driver.fault_result(e)
            finally:
                with self._lock:
                    self.in_flight -= 1

            self._record(result)

    def _record(self, result: GameResult):
        snapshot = self.aggregator.add(result)
        with self._lock:
            self.results.append(result)

        if snapshot.finished and not self.stop_dispatch.is_set():
            logger.info(f"SPRT bound crossed after {snapshot.completed} games: {snapshot.verdict.value}")
            self.stop_dispatch.set()

        if self.sink is not None:
            try:
                self.sink.record(result, self.config.engine_a.name, self.config.engine_b.name)
            except OSError as e:
                logger.warning(f"Could not log slot {result.slot}: {e}")

        if self.update_callback:
            try:
                self.update_callback(result, snapshot)
            except Exception as e:
                logger.warning(f"Update callback error: {e}")

    def cancel(self):
        """Abort the run; in-flight games stop their engines"""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def progress(self) -> Dict:
        with self._lock:
            return {
                "games_total": len(self.slots),
                "games_played": len(self.results),
                "in_flight": self.in_flight,
                "failed": len(self.failed_slots),
                "cancelled": self.cancelled,
                "stopped_early": self.stop_dispatch.is_set(),
            }

    def get_results(self) -> Dict:
        """
        Get complete match results

        Returns:
            Dict with match info, aggregate and every game
        """
        duration = None
        if self.start_time and self.end_time:
            duration = (self.end_time - self.start_time).total_seconds()

        with self._lock:
            games = sorted(self.results, key=lambda r: r.slot)

        return {
            "match": self.config.name,
            "engine_a": self.config.engine_a.name,
            "engine_b": self.config.engine_b.name,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": duration,
            "time_control": str(self.config.time_control),
            "rounds": self.plan.rounds,
            "games_per_round": self.plan.games_per_round,
            "repeat_colors": self.plan.repeat_colors,
            "concurrency": self.plan.concurrency,
            **self.progress(),
            "aggregate": self.aggregator.snapshot().to_dict(),
            "verdict": self.aggregator.final_verdict().value,
            "verdict_after": self.aggregator.crossed_at,
            "games": [result.to_dict() for result in games]
        }
