"""
Collaboration safety state.

An immutable value. Every change goes through a transform method that returns
a new state; repositories store the result atomically.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from src.collaboration.stats import pair_key


@dataclass(frozen=True)
class CollaborationSafetyState:
    """Operator and guardian switches that gate collaboration weighting."""
    weighting_enabled: bool = True
    independent_routing_mode: bool = False
    fallback_active: bool = False
    fallback_since: Optional[str] = None  # ISO timestamp
    frozen_pairs: frozenset = field(default_factory=frozenset)

    @property
    def weighting_active(self) -> bool:
        """Authority weighting may influence decisions."""
        return (
            self.weighting_enabled
            and not self.independent_routing_mode
            and not self.fallback_active
        )

    def neutral_reason(self) -> Optional[str]:
        """Why weighting is off, or None when it is active."""
        if self.fallback_active:
            return "Fallback active: baseline voting enforced"
        if self.independent_routing_mode:
            return "Independent routing mode: no collaboration weighting"
        if not self.weighting_enabled:
            return "Collaboration weighting disabled"
        return None

    def is_frozen(self, agent_a: str, agent_b: str) -> bool:
        return pair_key(agent_a, agent_b) in self.frozen_pairs

    def with_weighting(self, enabled: bool) -> "CollaborationSafetyState":
        return replace(self, weighting_enabled=enabled)

    def with_independent_mode(self, enabled: bool) -> "CollaborationSafetyState":
        return replace(self, independent_routing_mode=enabled)

    def activate_fallback(self, since: Optional[datetime] = None) -> "CollaborationSafetyState":
        """Enter fallback. An already active fallback keeps its start time."""
        if self.fallback_active:
            return self
        since = since or datetime.now(timezone.utc)
        return replace(self, fallback_active=True, fallback_since=since.isoformat())

    def clear_fallback(self) -> "CollaborationSafetyState":
        return replace(self, fallback_active=False, fallback_since=None)

    def freeze_pair(self, agent_a: str, agent_b: str) -> "CollaborationSafetyState":
        return replace(self, frozen_pairs=self.frozen_pairs | {pair_key(agent_a, agent_b)})

    def unfreeze_pair(self, agent_a: str, agent_b: str) -> "CollaborationSafetyState":
        return replace(self, frozen_pairs=self.frozen_pairs - {pair_key(agent_a, agent_b)})

    def to_dict(self) -> dict:
        return {
            "weighting_enabled": self.weighting_enabled,
            "independent_routing_mode": self.independent_routing_mode,
            "fallback_active": self.fallback_active,
            "fallback_since": self.fallback_since,
            "frozen_pairs": sorted(list(p) for p in self.frozen_pairs),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CollaborationSafetyState":
        return cls(
            weighting_enabled=bool(d.get("weighting_enabled", True)),
            independent_routing_mode=bool(d.get("independent_routing_mode", False)),
            fallback_active=bool(d.get("fallback_active", False)),
            fallback_since=d.get("fallback_since"),
            frozen_pairs=frozenset(pair_key(*p) for p in d.get("frozen_pairs", [])),
        )
