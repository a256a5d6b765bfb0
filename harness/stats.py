"""
Result Aggregation
Running W/D/L totals, Elo estimate and the sequential probability ratio test
"""

import logging
import math
import threading
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Optional, Tuple

from .config import SprtConfig
from .game import GameResult, Winner

logger = logging.getLogger(__name__)


class Verdict(Enum):
    CONTINUE = "continue"
    H1_ACCEPTED = "H1 accepted"
    H0_ACCEPTED = "H0 accepted"
    INCONCLUSIVE = "inconclusive"


def expected_score(elo: float) -> float:
    return 1.0 / (1.0 + 10.0 ** (-elo / 400.0))


def elo_from_score(score: float) -> float:
    score = min(max(score, 1e-6), 1.0 - 1e-6)
    return -400.0 * math.log10(1.0 / score - 1.0)


def score_and_variance(wins: int, draws: int, losses: int) -> Tuple[float, float]:
    """Mean score and per-game variance of a trinomial result"""
    n = wins + draws + losses
    if n == 0:
        return 0.5, 0.0
    mu = (wins + 0.5 * draws) / n
    var = (wins * (1.0 - mu) ** 2 + draws * (0.5 - mu) ** 2 + losses * mu ** 2) / n
    return mu, var


def elo_estimate(wins: int, draws: int, losses: int) -> Tuple[float, float]:
    """
    Elo difference with its 95% error margin

    Returns:
        (elo, error); error is infinite when the variance is zero
    """
    n = wins + draws + losses
    mu, var = score_and_variance(wins, draws, losses)
    elo = elo_from_score(mu)
    if n == 0 or var == 0:
        return elo, math.inf

    delta = 1.959964 * math.sqrt(var / n)
    error = (elo_from_score(mu + delta) - elo_from_score(mu - delta)) / 2
    return elo, error


class SPRT:
    """
    Generalized SPRT on the trinomial normal approximation

    LLR = n (s1 - s0) (2 mu - s0 - s1) / (2 var)

    A zero variance (all wins, all draws, ...) is replaced by the variance
    with half a game added to each outcome.
    """

    def __init__(self, config: SprtConfig):
        self.config = config
        self.s0 = expected_score(config.elo0)
        self.s1 = expected_score(config.elo1)
        self.lower_bound = math.log(config.beta / (1 - config.alpha))
        self.upper_bound = math.log((1 - config.beta) / config.alpha)

    def llr(self, wins: int, draws: int, losses: int) -> float:
        n = wins + draws + losses
        if n == 0:
            return 0.0
        mu, var = score_and_variance(wins, draws, losses)
        if var == 0:
            _, var = score_and_variance(wins + 0.5, draws + 0.5, losses + 0.5)
        return n * (self.s1 - self.s0) * (2 * mu - self.s0 - self.s1) / (2 * var)

    def status(self, llr: float) -> Verdict:
        if llr >= self.upper_bound:
            return Verdict.H1_ACCEPTED
        if llr <= self.lower_bound:
            return Verdict.H0_ACCEPTED
        return Verdict.CONTINUE


@dataclass(frozen=True)
class AggregateState:
    """Immutable snapshot of the running totals; B is the candidate"""
    wins_a: int = 0
    wins_b: int = 0
    draws: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)
    late_a: int = 0
    late_b: int = 0
    score: float = 0.5
    elo: float = 0.0
    elo_error: float = math.inf
    llr: Optional[float] = None
    llr_bounds: Optional[Tuple[float, float]] = None
    verdict: Verdict = Verdict.CONTINUE

    @property
    def completed(self) -> int:
        return self.wins_a + self.wins_b + self.draws

    @property
    def finished(self) -> bool:
        return self.verdict in (Verdict.H0_ACCEPTED, Verdict.H1_ACCEPTED)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["completed"] = self.completed
        data["verdict"] = self.verdict.value
        data["elo_error"] = None if math.isinf(self.elo_error) else self.elo_error
        data["llr_bounds"] = list(self.llr_bounds) if self.llr_bounds else None
        return data


class ResultAggregator:
    """
    Accumulates game results

    Merges are serialized by a lock and depend only on counts, so merge order
    never changes the totals. Readers get the latest immutable snapshot
    without taking the lock.
    """

    def __init__(self, sprt: Optional[SprtConfig] = None):
        self.sprt = SPRT(sprt) if sprt else None
        self._lock = threading.Lock()
        self._wins_a = 0
        self._wins_b = 0
        self._draws = 0
        self._late_a = 0
        self._late_b = 0
        self._reasons: Dict[str, int] = {}
        self._snapshot = self._build_snapshot()
        # first bound crossed; games already in flight may move the LLR back
        self.crossed: Optional[Verdict] = None
        self.crossed_at: Optional[int] = None

    def add(self, result: GameResult) -> AggregateState:
        """Merge one result and return the new snapshot"""
        with self._lock:
            if result.winner == Winner.A:
                self._wins_a += 1
            elif result.winner == Winner.B:
                self._wins_b += 1
            else:
                self._draws += 1

            self._late_a += result.late_a
            self._late_b += result.late_b
            key = result.reason.value
            self._reasons[key] = self._reasons.get(key, 0) + 1

            self._snapshot = self._build_snapshot()
            snapshot = self._snapshot
            if snapshot.finished and self.crossed is None:
                self.crossed = snapshot.verdict
                self.crossed_at = snapshot.completed

        logger.debug(f"Aggregate after slot {result.slot}: "
                     f"+{snapshot.wins_b} ={snapshot.draws} -{snapshot.wins_a} (B perspective)")
        return snapshot

    def _build_snapshot(self) -> AggregateState:
        wins, draws, losses = self._wins_b, self._draws, self._wins_a
        score, _ = score_and_variance(wins, draws, losses)
        elo, error = elo_estimate(wins, draws, losses)

        llr = None
        bounds = None
        verdict = Verdict.CONTINUE
        if self.sprt is not None:
            llr = self.sprt.llr(wins, draws, losses)
            bounds = (self.sprt.lower_bound, self.sprt.upper_bound)
            verdict = self.sprt.status(llr)

        return AggregateState(
            wins_a=self._wins_a,
            wins_b=self._wins_b,
            draws=self._draws,
            reasons=dict(sorted(self._reasons.items())),
            late_a=self._late_a,
            late_b=self._late_b,
            score=score,
            elo=elo,
            elo_error=error,
            llr=llr,
            llr_bounds=bounds,
            verdict=verdict
        )

    def snapshot(self) -> AggregateState:
        return self._snapshot

    def final_verdict(self) -> Verdict:
        """The first bound crossed, else INCONCLUSIVE"""
        return self.crossed if self.crossed is not None else Verdict.INCONCLUSIVE
