"""
Decorrelation filter.

Greedy one-pass selection of a subset whose pairwise |correlation| stays at
or below a ceiling. Candidates are visited best Sharpe first; ties keep input
order. This approximates the optimal subset problem and is kept greedy on
purpose: the result is deterministic and explainable per rejection.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence
import structlog

from src.portfolio.correlation_matrix import CorrelationMatrix
from src.portfolio.streams import StrategyStream

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Rejection:
    """A candidate that was too correlated with an already accepted member."""
    stream: StrategyStream
    correlated_with: str
    coefficient: float
    reason: str


@dataclass
class DecorrelationResult:
    accepted: list[StrategyStream] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)

    def rejection_for(self, stream_id: str) -> Optional[Rejection]:
        for rejection in self.rejected:
            if rejection.stream.id == stream_id:
                return rejection
        return None


def _ranking_sharpe(stream: StrategyStream) -> float:
    sharpe = stream.sharpe
    return sharpe if math.isfinite(sharpe) else 0.0


class DecorrelationFilter:
    """Keeps the best risk-adjusted strategies that are not redundant."""

    def __init__(
        self,
        max_correlation: float = 0.4,
        correlation: Optional[CorrelationMatrix] = None,
    ):
        if not 0.0 <= max_correlation <= 1.0:
            raise ValueError(f"max_correlation must be within [0, 1], got {max_correlation}")
        self.max_correlation = max_correlation
        self.correlation = correlation or CorrelationMatrix()

    def filter(self, candidates: Sequence[StrategyStream]) -> DecorrelationResult:
        """
        Select a decorrelated subset.

        A candidate is accepted when |corr| <= max_correlation against every
        accepted member. Otherwise it is rejected naming the first accepted
        member (in acceptance order) that it correlates with.
        """
        # sorted() is stable, so equal Sharpe keeps input order
        ranked = sorted(candidates, key=lambda s: -_ranking_sharpe(s))

        result = DecorrelationResult()
        accepted_returns: list[tuple[str, list[float]]] = []

        for stream in ranked:
            returns = stream.returns
            conflict = None

            for accepted_id, existing in accepted_returns:
                corr = self.correlation.pearson(returns, existing)
                if abs(corr) > self.max_correlation:
                    conflict = (accepted_id, corr)
                    break

            if conflict is None:
                result.accepted.append(stream)
                accepted_returns.append((stream.id, returns))
                continue

            correlated_with, corr = conflict
            result.rejected.append(Rejection(
                stream=stream,
                correlated_with=correlated_with,
                coefficient=corr,
                reason=(
                    f"|rho| {abs(corr):.2f} > {self.max_correlation} with "
                    f"{correlated_with} (higher Sharpe kept)"
                ),
            ))

        logger.info(
            "decorrelation_complete",
            candidates=len(candidates),
            accepted=len(result.accepted),
            rejected=len(result.rejected),
            max_correlation=self.max_correlation,
        )
        return result
