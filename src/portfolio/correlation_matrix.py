"""
Correlation engine.

Pairwise Pearson correlation of strategy return streams.
High correlation = redundant strategies = one of them gets filtered out.
"""

from dataclasses import dataclass
from typing import Mapping, Sequence
import structlog

import numpy as np
import pandas as pd

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CorrelationEntry:
    """Correlation of one unordered strategy pair within a single run."""
    id_a: str
    id_b: str
    coefficient: float

    def to_dict(self) -> dict:
        return {
            "id_a": self.id_a,
            "id_b": self.id_b,
            "coefficient": self.coefficient,
        }


class CorrelationMatrix:
    """
    Calculates correlation between strategy return streams.

    Series shorter than min_observations correlate at 0, and so do
    zero-variance series. The result is never NaN or infinite.
    """

    def __init__(self, min_observations: int = 10):
        """
        Initialize correlation calculator.

        Args:
            min_observations: Minimum common observations for a non-zero result
        """
        self.min_observations = min_observations

    def pearson(self, a: Sequence[float], b: Sequence[float]) -> float:
        """
        Pearson correlation over the common prefix of two series.

        Returns:
            Correlation coefficient (-1 to +1), 0 when undefined
        """
        n = min(len(a), len(b))
        if n < self.min_observations:
            return 0.0

        x = np.asarray(a[:n], dtype=float)
        y = np.asarray(b[:n], dtype=float)
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
            return 0.0

        dx = x - x.mean()
        dy = y - y.mean()
        denom = float(np.sqrt(np.dot(dx, dx) * np.dot(dy, dy)))
        if denom == 0 or not np.isfinite(denom):
            return 0.0

        corr = float(np.dot(dx, dy)) / denom
        if not np.isfinite(corr):
            return 0.0
        return float(np.clip(corr, -1.0, 1.0))

    def calculate_entries(
        self,
        returns_by_id: Mapping[str, Sequence[float]],
    ) -> list[CorrelationEntry]:
        """
        One entry per unordered pair, in input order (i < j).

        Args:
            returns_by_id: strategy id -> per-period returns
        """
        ids = list(returns_by_id)
        entries = []

        for i, id_a in enumerate(ids):
            for id_b in ids[i + 1:]:
                entries.append(CorrelationEntry(
                    id_a=id_a,
                    id_b=id_b,
                    coefficient=self.pearson(returns_by_id[id_a], returns_by_id[id_b]),
                ))

        logger.debug("correlation_calculated", strategies=len(ids), pairs=len(entries))
        return entries

    def to_frame(self, entries: Sequence[CorrelationEntry], ids: Sequence[str]) -> pd.DataFrame:
        """
        Symmetric correlation matrix with 1.0 on the diagonal.

        Pairs missing from entries are 0.
        """
        if not ids:
            return pd.DataFrame()

        ids = list(ids)
        position = {sid: i for i, sid in enumerate(ids)}

        matrix = np.eye(len(ids))
        for entry in entries:
            if entry.id_a in position and entry.id_b in position:
                i, j = position[entry.id_a], position[entry.id_b]
                matrix[i, j] = entry.coefficient
                matrix[j, i] = entry.coefficient

        return pd.DataFrame(matrix, index=ids, columns=ids)

    def identify_highly_correlated(
        self,
        entries: Sequence[CorrelationEntry],
        threshold: float = 0.7,
    ) -> list[CorrelationEntry]:
        """Entries whose absolute coefficient is at or above threshold."""
        return [e for e in entries if abs(e.coefficient) >= threshold]
