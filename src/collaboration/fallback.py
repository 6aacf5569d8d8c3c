"""
Fallback guardian.

Watches weighted-vs-baseline performance and forces baseline voting when
weighting materially hurts results:

    Normal -> Fallback-Active  when  (baseline - weighted) / baseline >= threshold
                                and  baseline > 0

A non-positive baseline never triggers. Fallback never clears on its own;
only an operator clear_fallback() returns to Normal.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence
import structlog

from src.collaboration.safety import CollaborationSafetyState
from src.collaboration.voting import CollaborationDecisionLog, VoteSide
from src.storage.repository import InMemorySafetyStateRepository, SafetyStateRepository

logger = structlog.get_logger(__name__)

# (1.0 - 0.8) / 1.0 is 0.19999999999999996; an exact 20% shortfall must still trip
THRESHOLD_TOLERANCE = 1e-12


class FallbackState(Enum):
    NORMAL = "normal"
    FALLBACK_ACTIVE = "fallback_active"


@dataclass(frozen=True)
class DecisionOutcome:
    """A resolved decision: what each vote said and how far price moved (long pips)."""
    baseline_decision: VoteSide
    weighted_decision: VoteSide
    move_pips: float

    @property
    def baseline_pnl(self) -> float:
        return self.baseline_decision.sign * self.move_pips

    @property
    def weighted_pnl(self) -> float:
        return self.weighted_decision.sign * self.move_pips

    @classmethod
    def from_log(cls, log: CollaborationDecisionLog, move_pips: float) -> "DecisionOutcome":
        return cls(
            baseline_decision=log.baseline_voting_result.decision,
            weighted_decision=log.weighted_voting_result.decision,
            move_pips=float(move_pips),
        )


@dataclass(frozen=True)
class FallbackEvaluation:
    state: FallbackState
    triggered: bool
    degradation: Optional[float]
    baseline_expectancy: float
    weighted_expectancy: float

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "triggered": self.triggered,
            "degradation": self.degradation,
            "baseline_expectancy": self.baseline_expectancy,
            "weighted_expectancy": self.weighted_expectancy,
        }


def compute_expectancies(outcomes: Sequence[DecisionOutcome]) -> tuple[float, float]:
    """Mean (baseline, weighted) PnL per decision. No outcomes -> (0, 0)."""
    if not outcomes:
        return 0.0, 0.0
    n = len(outcomes)
    baseline = sum(o.baseline_pnl for o in outcomes) / n
    weighted = sum(o.weighted_pnl for o in outcomes) / n
    return baseline, weighted


def degradation(baseline_expectancy: float, weighted_expectancy: float) -> Optional[float]:
    """Relative shortfall of weighted vs. baseline; None when baseline <= 0."""
    if baseline_expectancy <= 0:
        return None
    return (baseline_expectancy - weighted_expectancy) / baseline_expectancy


class FallbackGuardian:
    """Trips collaboration fallback on weighted-performance degradation."""

    def __init__(
        self,
        repository: Optional[SafetyStateRepository] = None,
        threshold: float = 0.20,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize guardian.

        Args:
            repository: Safety state storage (in-memory when omitted)
            threshold: Relative degradation that triggers fallback
            clock: Time source for fallback_since
        """
        self.repository = repository or InMemorySafetyStateRepository(CollaborationSafetyState())
        self.threshold = threshold
        self._clock = clock

    @property
    def state(self) -> FallbackState:
        if self.repository.get().fallback_active:
            return FallbackState.FALLBACK_ACTIVE
        return FallbackState.NORMAL

    def should_trigger(self, baseline_expectancy: float, weighted_expectancy: float) -> bool:
        shortfall = degradation(baseline_expectancy, weighted_expectancy)
        return shortfall is not None and shortfall >= self.threshold - THRESHOLD_TOLERANCE

    def evaluate(self, baseline_expectancy: float, weighted_expectancy: float) -> FallbackEvaluation:
        """
        Check degradation and activate fallback if needed.

        A favorable observation never clears an active fallback.
        """
        shortfall = degradation(baseline_expectancy, weighted_expectancy)
        triggered = self.should_trigger(baseline_expectancy, weighted_expectancy)

        if triggered:
            since = self._clock()
            was_active = self.repository.get().fallback_active
            self.repository.update(lambda s: s.activate_fallback(since))
            if not was_active:
                logger.warning(
                    "collaboration_fallback_activated",
                    baseline_expectancy=baseline_expectancy,
                    weighted_expectancy=weighted_expectancy,
                    degradation=shortfall,
                    threshold=self.threshold,
                )

        return FallbackEvaluation(
            state=self.state,
            triggered=triggered,
            degradation=shortfall,
            baseline_expectancy=baseline_expectancy,
            weighted_expectancy=weighted_expectancy,
        )

    def evaluate_outcomes(self, outcomes: Sequence[DecisionOutcome]) -> FallbackEvaluation:
        baseline, weighted = compute_expectancies(outcomes)
        return self.evaluate(baseline, weighted)

    def clear_fallback(self, operator: str) -> CollaborationSafetyState:
        """Operator action: return to Normal."""
        state = self.repository.update(lambda s: s.clear_fallback())
        logger.info("collaboration_fallback_cleared", operator=operator)
        return state
