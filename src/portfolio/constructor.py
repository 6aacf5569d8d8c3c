"""
Portfolio construction run.

Pipeline for one run:
1. Decorrelate candidates (best Sharpe first)
2. Correlation matrix of the accepted subset
3. Inverse-volatility weights
4. Regime routing
5. Synthesized curve and metrics

The result is a pure function of the input streams, regime and parameters.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union
import structlog

from src.config import PortfolioConfig
from src.monitoring.metrics import EMPTY_METRICS, CurveMetrics
from src.portfolio.correlation_matrix import CorrelationEntry, CorrelationMatrix
from src.portfolio.decorrelation import DecorrelationFilter
from src.portfolio.risk_parity import RiskParityWeighter
from src.portfolio.streams import StrategyStream
from src.portfolio.synthesizer import Synthesizer
from src.regime.router import Regime, RegimeRouter, regime_from_label

logger = structlog.get_logger(__name__)


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


@dataclass(frozen=True)
class PortfolioMember:
    """A candidate stream with its weights and acceptance state for one run."""
    stream: StrategyStream
    accepted: bool
    risk_parity_weight: float = 0.0
    regime_weight: float = 0.0
    volatility: float = 0.0
    used_fallback_volatility: bool = False
    rejection_reason: Optional[str] = None
    correlated_with: Optional[str] = None

    @property
    def id(self) -> str:
        return self.stream.id

    def to_dict(self) -> dict:
        s = self.stream
        return {
            "id": s.id,
            "name": s.name,
            "instrument": s.instrument,
            "accepted": self.accepted,
            "risk_parity_weight": self.risk_parity_weight,
            "regime_weight": self.regime_weight,
            "volatility": self.volatility,
            "used_fallback_volatility": self.used_fallback_volatility,
            "rejection_reason": self.rejection_reason,
            "correlated_with": self.correlated_with,
            "total_return": _finite(s.total_return),
            "max_drawdown": _finite(s.max_drawdown),
            "sharpe": _finite(s.sharpe),
            "win_rate": s.win_rate,
            "profit_factor": s.profit_factor,
            "trade_count": s.trade_count,
            "affinity": s.affinity.to_dict(),
        }


@dataclass
class PortfolioResult:
    """Output of one construction run."""
    regime: Regime
    members: list[PortfolioMember] = field(default_factory=list)
    synthesized_curve: list[float] = field(default_factory=list)
    metrics: CurveMetrics = EMPTY_METRICS
    correlation_matrix: list[CorrelationEntry] = field(default_factory=list)
    max_correlation: float = 0.4

    @property
    def accepted(self) -> list[PortfolioMember]:
        return [m for m in self.members if m.accepted]

    @property
    def accepted_count(self) -> int:
        return len(self.accepted)

    @property
    def rejected_count(self) -> int:
        return len(self.members) - self.accepted_count

    @property
    def total_strategies(self) -> int:
        return len(self.members)

    @property
    def is_empty(self) -> bool:
        return not self.members

    def weights(self) -> dict[str, float]:
        """Final (regime-routed) weights of accepted members."""
        return {m.id: m.regime_weight for m in self.accepted}

    def to_dict(self) -> dict:
        return {
            "regime_label": self.regime.value,
            "max_correlation": self.max_correlation,
            "members": [m.to_dict() for m in self.members],
            "synthesized_curve": list(self.synthesized_curve),
            "metrics": self.metrics.to_dict(),
            "correlation_matrix": [e.to_dict() for e in self.correlation_matrix],
            "accepted_count": self.accepted_count,
            "rejected_count": self.rejected_count,
            "total_strategies": self.total_strategies,
        }

    def to_json(self) -> str:
        """Canonical JSON. No timestamps, so identical runs give identical bytes."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


def _resolve_regime(regime: Union[Regime, str]) -> Regime:
    if isinstance(regime, Regime):
        return regime
    resolved = regime_from_label(regime)
    if resolved is None:
        raise ValueError(f"Unknown regime label: {regime!r}")
    return resolved


class PortfolioConstructor:
    """
    Builds a decorrelated, risk-balanced, regime-aware portfolio.

    Stateless between runs: every call recomputes from the streams given.
    """

    def __init__(self, config: Optional[PortfolioConfig] = None):
        """
        Initialize constructor.

        Args:
            config: Portfolio parameters (defaults when omitted)
        """
        self.config = config or PortfolioConfig()
        self.correlation = CorrelationMatrix(
            min_observations=self.config.min_correlation_observations,
        )
        self.weighter = RiskParityWeighter(
            volatility_floor=self.config.volatility_floor,
            periods_per_year=self.config.periods_per_year,
            tolerance=self.config.weight_tolerance,
        )
        self.router = RegimeRouter(
            shock_concentration=self.config.shock_concentration,
            default_concentration=self.config.default_concentration,
            tolerance=self.config.weight_tolerance,
        )
        self.synthesizer = Synthesizer(
            nominal_base=self.config.nominal_base,
            periods_per_year=self.config.periods_per_year,
        )

        logger.info(
            "portfolio_constructor_initialized",
            max_correlation=self.config.max_correlation,
            shock_concentration=self.config.shock_concentration,
            default_concentration=self.config.default_concentration,
        )

    def construct(
        self,
        streams: Sequence[StrategyStream],
        regime: Union[Regime, str],
        max_correlation: Optional[float] = None,
    ) -> PortfolioResult:
        """
        Run the full construction pipeline.

        Args:
            streams: Candidate strategy streams
            regime: Current regime (enum or ledger/classifier label)
            max_correlation: Override for the decorrelation ceiling

        Returns:
            PortfolioResult; an explicit empty portfolio for empty input
        """
        regime = _resolve_regime(regime)
        ceiling = self.config.max_correlation if max_correlation is None else max_correlation

        if not streams:
            logger.info("portfolio_empty_input", regime=regime.value)
            return PortfolioResult(regime=regime, max_correlation=ceiling)

        decorrelation = DecorrelationFilter(
            max_correlation=ceiling,
            correlation=self.correlation,
        ).filter(streams)
        accepted = decorrelation.accepted

        matrix = self.correlation.calculate_entries({s.id: s.returns for s in accepted})

        rp_weights = self.weighter.weight(accepted)
        routed = self.router.route(
            {sid: w.weight for sid, w in rp_weights.items()},
            {s.id: s.affinity for s in accepted},
            regime,
        )

        members = [
            PortfolioMember(
                stream=s,
                accepted=True,
                risk_parity_weight=rp_weights[s.id].weight,
                regime_weight=routed[s.id],
                volatility=rp_weights[s.id].volatility,
                used_fallback_volatility=rp_weights[s.id].used_fallback,
            )
            for s in accepted
        ]
        members.extend(
            PortfolioMember(
                stream=r.stream,
                accepted=False,
                rejection_reason=r.reason,
                correlated_with=r.correlated_with,
            )
            for r in decorrelation.rejected
        )
        # stable: equal weights (e.g. all rejected at 0) keep pipeline order
        members.sort(key=lambda m: -m.regime_weight)

        curve = self.synthesizer.synthesize(accepted, routed)
        result = PortfolioResult(
            regime=regime,
            members=members,
            synthesized_curve=curve,
            metrics=self.synthesizer.metrics(curve),
            correlation_matrix=matrix,
            max_correlation=ceiling,
        )

        logger.info(
            "portfolio_built",
            regime=regime.value,
            accepted=result.accepted_count,
            rejected=result.rejected_count,
            total_return=result.metrics.total_return,
            sharpe=result.metrics.sharpe,
        )
        return result
