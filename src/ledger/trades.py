"""
Trade ledger records and learn-mode filtering.

The ledger is the source of truth for every statistic in the engine. Records
arrive from an external store as dicts (camelCase or snake_case) and are
converted to immutable TradeRecord values here.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional
import structlog

from src.ledger.environment import EnvironmentKey, normalize_direction

logger = structlog.get_logger(__name__)

LIVE_PRACTICE_ENVIRONMENTS = frozenset({"live", "practice"})


class LearnMode(Enum):
    """Which trade environments count toward statistics."""
    LIVE_PRACTICE = "live+practice"
    BACKTEST = "backtest"
    ALL = "all"


@dataclass(frozen=True)
class TradeRecord:
    """A single ledger row."""
    agent_id: str
    pair: str
    direction: str
    entry_price: Optional[float]
    exit_price: Optional[float]
    session_label: Optional[str]
    regime_label: Optional[str]
    environment: Optional[str]
    created_at: datetime
    status: str = "closed"
    confidence: Optional[float] = None

    @property
    def is_closed(self) -> bool:
        return self.status == "closed" and bool(self.entry_price) and bool(self.exit_price)

    @property
    def has_context(self) -> bool:
        """Environment and regime labels are both present."""
        return bool(self.environment) and bool(self.regime_label)

    @property
    def pnl_pips(self) -> float:
        """
        Realized PnL in pips, signed by direction.

        JPY crosses quote to two decimals, everything else to four.
        """
        if not self.entry_price or not self.exit_price:
            return 0.0
        scale = 100 if "JPY" in self.pair.upper() else 10000
        move = (self.exit_price - self.entry_price) * scale
        if normalize_direction(self.direction) == "SHORT":
            return -move
        return move

    @property
    def environment_key(self) -> EnvironmentKey:
        return EnvironmentKey.build(
            self.session_label,
            self.regime_label,
            self.pair,
            self.direction,
            self.agent_id,
        )

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TradeRecord":
        """Create from a ledger row; accepts camelCase or snake_case keys."""
        def pick(*names, default=None):
            for name in names:
                if name in d and d[name] is not None:
                    return d[name]
            return default

        created_raw = pick("created_at", "createdAt")
        if created_raw is None:
            raise ValueError("Trade record is missing created_at")
        created_at = _parse_timestamp(created_raw)

        entry = pick("entry_price", "entryPrice")
        exit_ = pick("exit_price", "exitPrice")
        confidence = pick("confidence", "confidence_score", "confidenceScore")

        return cls(
            agent_id=str(pick("agent_id", "agentId", default="unknown")),
            pair=str(pick("pair", "currency_pair", "currencyPair", default="")),
            direction=str(pick("direction", default="")),
            entry_price=float(entry) if entry is not None else None,
            exit_price=float(exit_) if exit_ is not None else None,
            session_label=pick("session_label", "sessionLabel"),
            regime_label=pick("regime_label", "regimeLabel"),
            environment=pick("environment"),
            created_at=created_at,
            status=str(pick("status", default="closed")),
            confidence=float(confidence) if confidence is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "pair": self.pair,
            "direction": self.direction,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "session_label": self.session_label,
            "regime_label": self.regime_label,
            "environment": self.environment,
            "created_at": self.created_at.isoformat(),
            "status": self.status,
            "confidence": self.confidence,
        }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)

    # Naive timestamps are treated as UTC so bucketing is stable
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def filter_by_learn_mode(
    trades: Iterable[TradeRecord],
    mode: LearnMode = LearnMode.LIVE_PRACTICE,
) -> list[TradeRecord]:
    """
    Keep the trades that count under the given learn mode.

    Trades without environment and regime labels never count.
    """
    with_context = [t for t in trades if t.has_context]

    if mode == LearnMode.ALL:
        return with_context
    if mode == LearnMode.BACKTEST:
        return [t for t in with_context if t.environment == "backtest"]
    return [t for t in with_context if t.environment in LIVE_PRACTICE_ENVIRONMENTS]


def has_environment_context(
    trades: list[TradeRecord],
    min_fraction: float = 0.5,
) -> bool:
    """True when enough of the ledger carries environment context."""
    if not trades:
        return False
    with_context = sum(1 for t in trades if t.has_context)
    return with_context / len(trades) >= min_fraction
