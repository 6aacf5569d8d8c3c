"""
Canonical environment signature.

The single place that defines how a trade's context (session, regime,
instrument, direction, agent) becomes a grouping key. Every aggregate that is
"keyed by environment" uses EnvironmentKey from here.
"""

from typing import NamedTuple, Optional

SESSION_CANONICAL = {
    "asian": "asian",
    "asia": "asian",
    "tokyo": "asian",
    "london-open": "london-open",
    "london": "london-open",
    "ny-overlap": "ny-overlap",
    "ny": "ny-overlap",
    "late-ny": "late-ny",
    "lateny": "late-ny",
    "rollover": "rollover",
}

REGIME_CANONICAL = {
    "compression": "compression",
    "ranging": "compression",
    "ignition": "ignition",
    "expansion": "expansion",
    "trending": "expansion",
    "exhaustion": "exhaustion",
}


def normalize_session(session: Optional[str]) -> str:
    lower = (session or "unknown").lower().strip()
    return SESSION_CANONICAL.get(lower, lower)


def normalize_regime(regime: Optional[str]) -> str:
    lower = (regime or "unknown").lower().strip()
    return REGIME_CANONICAL.get(lower, lower)


def normalize_direction(direction: Optional[str]) -> str:
    upper = (direction or "").upper().strip()
    if upper in ("LONG", "BUY"):
        return "LONG"
    if upper in ("SHORT", "SELL"):
        return "SHORT"
    if upper in ("NEUTRAL", "SKIP", "FLAT"):
        return "NEUTRAL"
    return upper


def normalize_instrument(instrument: Optional[str]) -> str:
    """EUR/USD, EUR_USD and eurusd all become EURUSD."""
    raw = (instrument or "").upper().strip()
    return raw.replace("/", "").replace("_", "").replace("-", "")


class EnvironmentKey(NamedTuple):
    """
    Typed environment signature.

    agent_id is None for the short (agent-less) form.
    """
    session: str
    regime: str
    instrument: str
    direction: str
    agent_id: Optional[str] = None

    @classmethod
    def build(
        cls,
        session: Optional[str],
        regime: Optional[str],
        instrument: Optional[str],
        direction: Optional[str],
        agent_id: Optional[str] = None,
    ) -> "EnvironmentKey":
        """Build a key from raw labels, normalizing each component."""
        return cls(
            session=normalize_session(session),
            regime=normalize_regime(regime),
            instrument=normalize_instrument(instrument),
            direction=normalize_direction(direction),
            agent_id=agent_id.lower().strip() if agent_id else None,
        )

    def without_agent(self) -> "EnvironmentKey":
        return self._replace(agent_id=None)

    def render(self) -> str:
        """session|regime|instrument|direction[|agent]"""
        parts = [self.session, self.regime, self.instrument, self.direction]
        if self.agent_id is not None:
            parts.append(self.agent_id)
        return "|".join(parts)

    @classmethod
    def parse(cls, text: str) -> "EnvironmentKey":
        parts = text.split("|")
        if len(parts) not in (4, 5):
            raise ValueError(f"Not an environment key: {text!r}")
        agent_id = parts[4] if len(parts) == 5 else None
        return cls(parts[0], parts[1], parts[2], parts[3], agent_id)
