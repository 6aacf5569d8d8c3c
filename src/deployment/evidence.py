"""
Deployment evidence from the trade ledger.

Turns an agent's closed trades into the DeploymentMetrics the ladder checks:
- shadow_trades / shadow_expectancy: the agent's own closed trades
- baseline_expectancy: mean expectancy across the fleet
- dd_ratio: agent max drawdown relative to the fleet average drawdown
- profitable_sessions: distinct sessions with positive net pips
- days_without_drift: distinct trading days, reset to 0 by a degradation
  drift event involving the agent
"""

from collections import defaultdict
from typing import Iterable, Sequence

from src.collaboration.stats import DriftEvent
from src.deployment.records import DeploymentMetrics
from src.ledger.environment import normalize_session
from src.ledger.trades import TradeRecord
from src.monitoring.metrics import max_drawdown


def _pip_curve(pnls: Sequence[float], starting_equity: float) -> list[float]:
    curve = [starting_equity]
    for pnl in pnls:
        curve.append(curve[-1] + pnl)
    return curve


def build_deployment_metrics(
    trades: Iterable[TradeRecord],
    drift_events: Sequence[DriftEvent] = (),
    starting_equity: float = 1000.0,
) -> dict[str, DeploymentMetrics]:
    """Metrics per agent, keyed and ordered by agent id."""
    by_agent: dict[str, list[TradeRecord]] = defaultdict(list)
    for trade in trades:
        if trade.is_closed:
            by_agent[trade.agent_id].append(trade)

    if not by_agent:
        return {}

    drifted = {
        agent_id
        for event in drift_events if event.degradation
        for agent_id in event.agents
    }

    expectancies = {}
    drawdowns = {}
    for agent_id, agent_trades in by_agent.items():
        ordered = sorted(agent_trades, key=lambda t: t.created_at)
        pnls = [t.pnl_pips for t in ordered]
        expectancies[agent_id] = sum(pnls) / len(pnls)
        drawdowns[agent_id] = max_drawdown(_pip_curve(pnls, starting_equity))

    baseline = sum(expectancies.values()) / len(expectancies)
    fleet_drawdown = sum(drawdowns.values()) / len(drawdowns)

    metrics = {}
    for agent_id in sorted(by_agent):
        agent_trades = by_agent[agent_id]

        session_pnl: dict[str, float] = defaultdict(float)
        for trade in agent_trades:
            session_pnl[normalize_session(trade.session_label)] += trade.pnl_pips

        if fleet_drawdown > 0:
            dd_ratio = drawdowns[agent_id] / fleet_drawdown
        else:
            dd_ratio = 0.0

        days = len({t.created_at.date() for t in agent_trades})

        metrics[agent_id] = DeploymentMetrics().with_updates(
            shadow_trades=len(agent_trades),
            shadow_expectancy=expectancies[agent_id],
            baseline_expectancy=baseline,
            dd_ratio=dd_ratio,
            profitable_sessions=sum(1 for pnl in session_pnl.values() if pnl > 0),
            days_without_drift=0 if agent_id in drifted else days,
        )
    return metrics
