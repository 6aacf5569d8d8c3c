"""
Strategy return streams.

A StrategyStream is one strategy's (or agent's) equity curve plus summary
stats. Streams are rebuilt from the trade ledger on every run and never
mutated afterwards.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
import structlog

from src.ledger.trades import TradeRecord
from src.monitoring.metrics import (
    DEFAULT_PERIODS_PER_YEAR,
    max_drawdown,
    normalize_curve,
    period_returns,
    sharpe_ratio,
)
from src.regime.router import DEFAULT_AFFINITY, Regime, RegimeAffinity, regime_from_label

logger = structlog.get_logger(__name__)

# Profit factor reported when there are wins and no losses
UNBOUNDED_PROFIT_FACTOR = 99.0


@dataclass(frozen=True)
class StrategyStream:
    """An immutable strategy equity curve with summary stats."""
    id: str
    name: str
    equity_curve: tuple[float, ...]
    instrument: Optional[str] = None
    affinity: RegimeAffinity = field(default=DEFAULT_AFFINITY)
    total_return: float = 0.0  # percent
    max_drawdown: float = 0.0  # fraction
    sharpe: float = 0.0
    win_rate: float = 0.0      # fraction
    profit_factor: float = 0.0
    trade_count: int = 0

    @property
    def normalized_curve(self) -> list[float]:
        return normalize_curve(self.equity_curve)

    @property
    def returns(self) -> list[float]:
        """Per-period returns of the curve normalized to start at 1.0."""
        return period_returns(self.normalized_curve)

    @classmethod
    def from_curve(
        cls,
        id: str,
        name: str,
        curve: Iterable[float],
        instrument: Optional[str] = None,
        affinity: Optional[RegimeAffinity] = None,
        sharpe: Optional[float] = None,
        win_rate: float = 0.0,
        profit_factor: float = 0.0,
        trade_count: int = 0,
        periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
    ) -> "StrategyStream":
        """Build a stream and derive return, drawdown and (unless given) Sharpe."""
        values = tuple(float(v) for v in curve)
        normalized = normalize_curve(values)

        total_return = (normalized[-1] - 1.0) * 100 if normalized else 0.0
        if sharpe is None:
            sharpe = sharpe_ratio(period_returns(normalized), periods_per_year)

        return cls(
            id=id,
            name=name,
            equity_curve=values,
            instrument=instrument,
            affinity=affinity or DEFAULT_AFFINITY,
            total_return=total_return,
            max_drawdown=max_drawdown(values),
            sharpe=float(sharpe),
            win_rate=win_rate,
            profit_factor=profit_factor,
            trade_count=trade_count,
        )

    @classmethod
    def from_dict(
        cls,
        d: dict[str, Any],
        periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
    ) -> "StrategyStream":
        """
        Create from an evaluated-strategy payload.

        Accepts equityCurve/equity_curve and regimeScores/regime_scores. A
        supplied Sharpe is used for ranking; otherwise it is derived.
        """
        curve = d.get("equity_curve", d.get("equityCurve")) or []
        scores = d.get("regime_scores", d.get("regimeScores"))
        affinity = None
        if scores:
            # unlisted regimes keep the neutral default; unrelated keys are ignored
            affinity = RegimeAffinity(**{
                regime.value: scores[regime.value] for regime in Regime if regime.value in scores
            })
        sharpe = d.get("sharpe")

        return cls.from_curve(
            id=str(d["id"]),
            name=str(d.get("name", d["id"])),
            curve=curve,
            instrument=d.get("instrument", d.get("pair")),
            affinity=affinity,
            sharpe=float(sharpe) if sharpe is not None else None,
            win_rate=float(d.get("win_rate", d.get("winRate", 0.0)) or 0.0),
            profit_factor=float(d.get("profit_factor", d.get("profitFactor", 0.0)) or 0.0),
            trade_count=int(d.get("trade_count", d.get("trades", 0)) or 0),
            periods_per_year=periods_per_year,
        )


def derive_affinity(trades: Iterable[TradeRecord]) -> RegimeAffinity:
    """
    Regime affinity from realized results: positive PnL earned per regime.

    A stream that never made money in a recognizable regime keeps (1, 1, 1).
    """
    earned = {regime: 0.0 for regime in Regime}
    for trade in trades:
        regime = regime_from_label(trade.regime_label)
        if regime is None:
            continue
        pnl = trade.pnl_pips
        if pnl > 0:
            earned[regime] += pnl

    if sum(earned.values()) <= 0:
        return DEFAULT_AFFINITY

    return RegimeAffinity(
        trend=earned[Regime.TREND],
        range=earned[Regime.RANGE],
        shock=earned[Regime.SHOCK],
    )


def build_streams_from_trades(
    trades: Iterable[TradeRecord],
    starting_equity: float = 1000.0,
    pip_value: float = 1.0,
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> list[StrategyStream]:
    """
    Build one stream per agent from closed ledger trades.

    Each closed trade is one curve step of pnl_pips * pip_value. Agents are
    emitted in sorted id order and trades in (created_at, ledger order).
    """
    by_agent: dict[str, list[tuple[int, TradeRecord]]] = defaultdict(list)
    for index, trade in enumerate(trades):
        if trade.is_closed:
            by_agent[trade.agent_id].append((index, trade))

    streams = []
    for agent_id in sorted(by_agent):
        ordered = [t for _, t in sorted(by_agent[agent_id], key=lambda it: (it[1].created_at, it[0]))]
        pnls = [t.pnl_pips * pip_value for t in ordered]

        curve = [starting_equity]
        for pnl in pnls:
            curve.append(curve[-1] + pnl)

        wins = [p for p in pnls if p > 0]
        gross_win = sum(wins)
        gross_loss = sum(-p for p in pnls if p <= 0)
        if gross_loss > 0:
            profit_factor = gross_win / gross_loss
        else:
            profit_factor = UNBOUNDED_PROFIT_FACTOR if gross_win > 0 else 0.0

        instruments = {t.pair for t in ordered}

        streams.append(StrategyStream.from_curve(
            id=agent_id,
            name=agent_id,
            curve=curve,
            instrument=instruments.pop() if len(instruments) == 1 else None,
            affinity=derive_affinity(ordered),
            win_rate=len(wins) / len(pnls) if pnls else 0.0,
            profit_factor=profit_factor,
            trade_count=len(pnls),
            periods_per_year=periods_per_year,
        ))

    logger.debug("strategy_streams_built", streams=len(streams))
    return streams
