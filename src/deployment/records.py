"""
Deployment records.

Immutable values; the ladder produces a new record for every change and the
repository stores it. Transition history is append-only.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional


class DeploymentState(Enum):
    """Trust level, lowest to highest, plus disabled."""
    SHADOW = "shadow"
    REDUCED_LIVE = "reduced-live"
    LIVE = "live"
    DISABLED = "disabled"


# Fixed step function, not a ramp
REDUCED_SIZE_MULTIPLIER = 0.35

SIZE_MULTIPLIERS = {
    DeploymentState.SHADOW: 0.0,
    DeploymentState.REDUCED_LIVE: REDUCED_SIZE_MULTIPLIER,
    DeploymentState.LIVE: 1.0,
    DeploymentState.DISABLED: 0.0,
}


@dataclass(frozen=True)
class DeploymentMetrics:
    """Evidence used by unlock and demotion checks."""
    shadow_trades: int = 0
    shadow_expectancy: float = 0.0
    baseline_expectancy: float = 0.0
    expectancy_ratio: float = 0.0
    dd_ratio: float = 1.0
    profitable_sessions: int = 0
    days_without_drift: int = 0

    def with_updates(self, **updates) -> "DeploymentMetrics":
        """New metrics with updates applied; expectancy_ratio follows a positive baseline."""
        metrics = replace(self, **updates)
        if metrics.baseline_expectancy > 0:
            metrics = replace(
                metrics,
                expectancy_ratio=metrics.shadow_expectancy / metrics.baseline_expectancy,
            )
        return metrics

    def to_dict(self) -> dict:
        return {
            "shadow_trades": self.shadow_trades,
            "shadow_expectancy": self.shadow_expectancy,
            "baseline_expectancy": self.baseline_expectancy,
            "expectancy_ratio": self.expectancy_ratio,
            "dd_ratio": self.dd_ratio,
            "profitable_sessions": self.profitable_sessions,
            "days_without_drift": self.days_without_drift,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DeploymentMetrics":
        return cls(
            shadow_trades=int(d.get("shadow_trades", 0)),
            shadow_expectancy=float(d.get("shadow_expectancy", 0.0)),
            baseline_expectancy=float(d.get("baseline_expectancy", 0.0)),
            expectancy_ratio=float(d.get("expectancy_ratio", 0.0)),
            dd_ratio=float(d.get("dd_ratio", 1.0)),
            profitable_sessions=int(d.get("profitable_sessions", 0)),
            days_without_drift=int(d.get("days_without_drift", 0)),
        )


@dataclass(frozen=True)
class Transition:
    from_state: Optional[DeploymentState]
    to_state: DeploymentState
    reason: str
    at: str  # ISO timestamp

    def to_dict(self) -> dict:
        return {
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Transition":
        return cls(
            from_state=DeploymentState(d["from_state"]) if d.get("from_state") else None,
            to_state=DeploymentState(d["to_state"]),
            reason=d.get("reason", ""),
            at=d["at"],
        )


@dataclass(frozen=True)
class DeploymentRecord:
    """Per-agent deployment state with its history."""
    agent_id: str
    state: DeploymentState = DeploymentState.SHADOW
    metrics: DeploymentMetrics = DeploymentMetrics()
    history: tuple[Transition, ...] = ()

    @classmethod
    def new(cls, agent_id: str, at: str) -> "DeploymentRecord":
        return cls(
            agent_id=agent_id,
            history=(Transition(None, DeploymentState.SHADOW, "initial", at),),
        )

    @property
    def size_multiplier(self) -> float:
        return SIZE_MULTIPLIERS[self.state]

    @property
    def is_disabled(self) -> bool:
        return self.state == DeploymentState.DISABLED

    def transition(self, to_state: DeploymentState, reason: str, at: str) -> "DeploymentRecord":
        return replace(
            self,
            state=to_state,
            history=self.history + (Transition(self.state, to_state, reason, at),),
        )

    def with_metrics(self, metrics: DeploymentMetrics) -> "DeploymentRecord":
        return replace(self, metrics=metrics)

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "state": self.state.value,
            "size_multiplier": self.size_multiplier,
            "metrics": self.metrics.to_dict(),
            "history": [t.to_dict() for t in self.history],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DeploymentRecord":
        return cls(
            agent_id=d["agent_id"],
            state=DeploymentState(d.get("state", DeploymentState.SHADOW.value)),
            metrics=DeploymentMetrics.from_dict(d.get("metrics") or {}),
            history=tuple(Transition.from_dict(t) for t in d.get("history") or []),
        )
