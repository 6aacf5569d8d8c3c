"""
Agent deployment ladder.

State machine per agent:

    shadow -> reduced-live -> live
       \\          |           /
        +---> disabled <-----+

- New agents start in shadow (execute nothing).
- Promotion requires every unlock criterion; unmet ones are reported one by one.
- reduced-live executes at a fixed 0.35x size.
- disabled executes nothing and is only left through an operator reenable,
  which returns the agent to shadow. Unlock checks, evaluation and retune
  proposals never move a disabled agent.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
import structlog

from src.config import DeploymentConfig, UnlockCriteria
from src.deployment.records import (
    REDUCED_SIZE_MULTIPLIER,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentState,
)
from src.storage.repository import DeploymentRepository, InMemoryDeploymentRepository

logger = structlog.get_logger(__name__)

NEXT_STATE = {
    DeploymentState.SHADOW: DeploymentState.REDUCED_LIVE,
    DeploymentState.REDUCED_LIVE: DeploymentState.LIVE,
}

PREVIOUS_STATE = {
    DeploymentState.LIVE: DeploymentState.REDUCED_LIVE,
    DeploymentState.REDUCED_LIVE: DeploymentState.SHADOW,
}

VALID_TRANSITIONS = {
    DeploymentState.SHADOW: [DeploymentState.REDUCED_LIVE, DeploymentState.DISABLED],
    DeploymentState.REDUCED_LIVE: [
        DeploymentState.LIVE,
        DeploymentState.SHADOW,
        DeploymentState.DISABLED,
    ],
    DeploymentState.LIVE: [DeploymentState.REDUCED_LIVE, DeploymentState.DISABLED],
    # leaving disabled is an operator action, see reenable()
    DeploymentState.DISABLED: [],
}


@dataclass(frozen=True)
class UnlockCheck:
    can_unlock: bool
    unmet_criteria: list[str] = field(default_factory=list)
    met_criteria: list[str] = field(default_factory=list)
    next_state: Optional[DeploymentState] = None

    def to_dict(self) -> dict:
        return {
            "can_unlock": self.can_unlock,
            "unmet_criteria": list(self.unmet_criteria),
            "met_criteria": list(self.met_criteria),
            "next_state": self.next_state.value if self.next_state else None,
        }


@dataclass(frozen=True)
class ExecutionPermission:
    can_execute: bool
    size_multiplier: float
    reason: str


@dataclass(frozen=True)
class DeploymentSnapshot:
    """What downstream execution checks need per agent."""
    agent_id: str
    state: DeploymentState
    size_multiplier: float
    unmet_criteria: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "state": self.state.value,
            "size_multiplier": self.size_multiplier,
            "unmet_criteria": list(self.unmet_criteria),
        }


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def evaluate_criteria(metrics: DeploymentMetrics, criteria: UnlockCriteria) -> tuple[list[str], list[str]]:
    """Split criteria into (met, unmet) descriptions."""
    met: list[str] = []
    unmet: list[str] = []

    def check(ok: bool, passed: str, failed: str):
        (met if ok else unmet).append(passed if ok else failed)

    check(
        metrics.shadow_trades >= criteria.min_shadow_trades,
        f"Shadow trades: {metrics.shadow_trades} >= {criteria.min_shadow_trades}",
        f"Shadow trades: {metrics.shadow_trades} < {criteria.min_shadow_trades}",
    )
    check(
        metrics.expectancy_ratio >= criteria.min_expectancy_ratio,
        f"Expectancy ratio: {metrics.expectancy_ratio:.2f} >= {criteria.min_expectancy_ratio}",
        f"Expectancy ratio: {metrics.expectancy_ratio:.2f} < {criteria.min_expectancy_ratio}",
    )
    check(
        metrics.dd_ratio <= criteria.max_dd_ratio,
        f"DD ratio: {metrics.dd_ratio:.2f} <= {criteria.max_dd_ratio}",
        f"DD ratio: {metrics.dd_ratio:.2f} > {criteria.max_dd_ratio}",
    )
    check(
        metrics.profitable_sessions >= criteria.min_profitable_sessions,
        f"Sessions profitable: {metrics.profitable_sessions} >= {criteria.min_profitable_sessions}",
        f"Sessions profitable: {metrics.profitable_sessions} < {criteria.min_profitable_sessions}",
    )
    check(
        metrics.days_without_drift >= criteria.min_days_without_drift,
        f"Days without drift: {metrics.days_without_drift} >= {criteria.min_days_without_drift}",
        f"Days without drift: {metrics.days_without_drift} < {criteria.min_days_without_drift}",
    )
    return met, unmet


class DeploymentLadder:
    """
    Manages per-agent deployment states.

    Every change is a read-modify-write through the repository, so
    overlapping cycles cannot interleave a partial transition.
    """

    def __init__(
        self,
        repository: Optional[DeploymentRepository] = None,
        config: Optional[DeploymentConfig] = None,
        clock: Callable[[], str] = _utc_now,
    ):
        """
        Initialize ladder.

        Args:
            repository: Record storage (in-memory when omitted)
            config: Unlock and demotion parameters
            clock: Returns the ISO timestamp stamped on transitions
        """
        self.repository = repository or InMemoryDeploymentRepository()
        self.config = config or DeploymentConfig()
        self._clock = clock

        logger.info(
            "deployment_ladder_initialized",
            reduced_size_multiplier=REDUCED_SIZE_MULTIPLIER,
            shadow_min_trades=self.config.shadow_to_reduced.min_shadow_trades,
        )

    def _ensure(self, record: Optional[DeploymentRecord], agent_id: str) -> DeploymentRecord:
        return record if record is not None else DeploymentRecord.new(agent_id, self._clock())

    def get(self, agent_id: str) -> DeploymentRecord:
        """Record for agent_id; unknown agents are created in shadow."""
        existing = self.repository.get(agent_id)
        if existing is not None:
            return existing
        return self.repository.update(agent_id, lambda r: self._ensure(r, agent_id))

    def all(self) -> list[DeploymentRecord]:
        return self.repository.all()

    def staged(self) -> "DeploymentLadder":
        """
        This ladder over an in-memory copy of the current records.

        Changes made through the copy stay out of the repository until they
        are committed.
        """
        staged = copy.copy(self)
        staged.repository = InMemoryDeploymentRepository(self.all())
        return staged

    def _criteria_for(self, state: DeploymentState) -> UnlockCriteria:
        if state == DeploymentState.SHADOW:
            return self.config.shadow_to_reduced
        return self.config.reduced_to_live

    def _check(self, record: DeploymentRecord) -> UnlockCheck:
        if record.state == DeploymentState.DISABLED:
            return UnlockCheck(can_unlock=False, unmet_criteria=["Agent is disabled"])
        if record.state == DeploymentState.LIVE:
            return UnlockCheck(can_unlock=False, met_criteria=["Already at live"])

        met, unmet = evaluate_criteria(record.metrics, self._criteria_for(record.state))
        return UnlockCheck(
            can_unlock=not unmet,
            unmet_criteria=unmet,
            met_criteria=met,
            next_state=NEXT_STATE[record.state],
        )

    def check_unlock(self, agent_id: str) -> UnlockCheck:
        return self._check(self.get(agent_id))

    def _is_valid_transition(self, from_state: DeploymentState, to_state: DeploymentState) -> bool:
        return to_state in VALID_TRANSITIONS.get(from_state, [])

    def _transition(
        self,
        agent_id: str,
        to_state: DeploymentState,
        reason: str,
        guard: Callable[[DeploymentRecord], bool] = lambda record: True,
    ) -> DeploymentRecord:
        """Apply a validated transition atomically; invalid requests leave the record unchanged."""
        outcome = {}

        def transform(record: Optional[DeploymentRecord]) -> DeploymentRecord:
            record = self._ensure(record, agent_id)
            if not self._is_valid_transition(record.state, to_state) or not guard(record):
                outcome["rejected_from"] = record.state
                return record
            return record.transition(to_state, reason, self._clock())

        record = self.repository.update(agent_id, transform)

        if "rejected_from" in outcome:
            logger.warning(
                "invalid_deployment_transition",
                agent_id=agent_id,
                from_state=outcome["rejected_from"].value,
                to_state=to_state.value,
                reason=reason,
            )
        else:
            logger.info(
                "deployment_state_changed",
                agent_id=agent_id,
                to_state=to_state.value,
                reason=reason,
            )
        return record

    def promote(self, agent_id: str, reason: Optional[str] = None) -> DeploymentRecord:
        """Move one rung up if every unlock criterion is met."""
        record = self.get(agent_id)
        check = self._check(record)
        if not check.can_unlock or check.next_state is None:
            logger.info(
                "deployment_unlock_denied",
                agent_id=agent_id,
                state=record.state.value,
                unmet=check.unmet_criteria,
            )
            return record

        return self._transition(
            agent_id,
            check.next_state,
            reason or "All unlock criteria met",
            guard=lambda current: self._check(current).can_unlock,
        )

    def demote(self, agent_id: str, reason: str) -> DeploymentRecord:
        """Move one rung down (live -> reduced-live -> shadow)."""
        record = self.get(agent_id)
        target = PREVIOUS_STATE.get(record.state)
        if target is None:
            logger.warning("deployment_demotion_not_possible", agent_id=agent_id, state=record.state.value)
            return record
        return self._transition(agent_id, target, reason, guard=lambda current: current.state == record.state)

    def disable(self, agent_id: str, reason: str) -> DeploymentRecord:
        return self._transition(agent_id, DeploymentState.DISABLED, reason)

    def reenable(self, agent_id: str, operator: str, reason: str = "Operator reenable") -> DeploymentRecord:
        """Operator action: disabled -> shadow. Any other state is left alone."""
        at = self._clock()

        def transform(record: Optional[DeploymentRecord]) -> DeploymentRecord:
            record = self._ensure(record, agent_id)
            if record.state != DeploymentState.DISABLED:
                return record
            return record.transition(DeploymentState.SHADOW, f"{reason} ({operator})", at)

        before = self.get(agent_id).state
        record = self.repository.update(agent_id, transform)
        if before == DeploymentState.DISABLED:
            logger.info("deployment_reenabled", agent_id=agent_id, operator=operator)
        else:
            logger.warning("deployment_reenable_ignored", agent_id=agent_id, state=before.value)
        return record

    def apply_retune(self, agent_id: str, proposed_state: DeploymentState, reason: str) -> DeploymentRecord:
        """
        Apply a retune proposal.

        Proposals may move an agent down or disable it. Upward moves still
        need the unlock check, and a disabled agent is never moved.
        """
        record = self.get(agent_id)
        if record.is_disabled:
            logger.warning("retune_rejected_agent_disabled", agent_id=agent_id, proposed=proposed_state.value)
            return record

        if proposed_state == NEXT_STATE.get(record.state):
            return self.promote(agent_id, reason=f"Retune: {reason}")

        return self._transition(agent_id, proposed_state, f"Retune: {reason}")

    def update_metrics(self, agent_id: str, **metrics) -> DeploymentRecord:
        def transform(record: Optional[DeploymentRecord]) -> DeploymentRecord:
            record = self._ensure(record, agent_id)
            return record.with_metrics(record.metrics.with_updates(**metrics))

        return self.repository.update(agent_id, transform)

    def set_metrics(self, agent_id: str, metrics: DeploymentMetrics) -> DeploymentRecord:
        return self.update_metrics(agent_id, **metrics.to_dict())

    def execution_permission(self, agent_id: str) -> ExecutionPermission:
        record = self.get(agent_id)

        if record.state == DeploymentState.DISABLED:
            return ExecutionPermission(False, 0.0, f"Agent {agent_id} disabled")
        if record.state == DeploymentState.SHADOW:
            return ExecutionPermission(False, 0.0, f"Agent {agent_id} in shadow-only mode")
        if record.state == DeploymentState.REDUCED_LIVE:
            return ExecutionPermission(
                True,
                REDUCED_SIZE_MULTIPLIER,
                f"Agent {agent_id} at reduced size ({REDUCED_SIZE_MULTIPLIER}x)",
            )
        return ExecutionPermission(True, 1.0, f"Agent {agent_id} at full size")

    def _should_demote(self, record: DeploymentRecord) -> Optional[str]:
        if record.state not in PREVIOUS_STATE:
            return None
        m = record.metrics
        if m.shadow_trades < self.config.demotion_min_trades:
            return None
        if m.dd_ratio > self.config.demotion_max_dd_ratio:
            return f"DD ratio {m.dd_ratio:.2f} > {self.config.demotion_max_dd_ratio}"
        if m.baseline_expectancy > 0 and m.expectancy_ratio < self.config.demotion_min_expectancy_ratio:
            return (
                f"Expectancy ratio {m.expectancy_ratio:.2f} < "
                f"{self.config.demotion_min_expectancy_ratio}"
            )
        return None

    def evaluate(self, agent_id: str) -> DeploymentRecord:
        """Objective demotion first, otherwise promotion when unlocked."""
        record = self.get(agent_id)
        if record.is_disabled:
            return record

        demotion_reason = self._should_demote(record)
        if demotion_reason:
            return self.demote(agent_id, f"Objective demotion: {demotion_reason}")

        if self._check(record).can_unlock:
            return self.promote(agent_id)
        return record

    def snapshot(self, agent_ids: Optional[Iterable[str]] = None) -> list[DeploymentSnapshot]:
        """Per-agent state, size and unmet criteria, sorted by agent id."""
        if agent_ids is None:
            records = self.all()
        else:
            records = [self.get(agent_id) for agent_id in sorted(set(agent_ids))]

        return [
            DeploymentSnapshot(
                agent_id=r.agent_id,
                state=r.state,
                size_multiplier=r.size_multiplier,
                unmet_criteria=list(self._check(r).unmet_criteria),
            )
            for r in sorted(records, key=lambda r: r.agent_id)
        ]

    def initialize_tiers(
        self,
        tier_a: Iterable[str] = (),
        tier_b: Iterable[str] = (),
        tier_c: Iterable[str] = (),
        tier_d: Iterable[str] = (),
    ) -> None:
        """Seed states from tiers: A reduced-live, B/C shadow, D disabled."""
        for agent_id in tier_a:
            self._seed(agent_id, DeploymentState.REDUCED_LIVE, "Tier A: data-proven profitable")
        for agent_id in tier_b:
            self._seed(agent_id, DeploymentState.SHADOW, "Tier B: needs retune validation")
        for agent_id in tier_c:
            self._seed(agent_id, DeploymentState.SHADOW, "Tier C: restricted, needs deep retune")
        for agent_id in tier_d:
            self._seed(agent_id, DeploymentState.DISABLED, "Tier D: disabled until further evidence")

    def _seed(self, agent_id: str, state: DeploymentState, reason: str) -> DeploymentRecord:
        at = self._clock()

        def transform(record: Optional[DeploymentRecord]) -> DeploymentRecord:
            record = self._ensure(record, agent_id)
            if record.state == state or record.is_disabled:
                return record
            return record.transition(state, reason, at)

        record = self.repository.update(agent_id, transform)
        logger.info("deployment_tier_seeded", agent_id=agent_id, state=record.state.value)
        return record
