"""
Market regime classifier.

Turns OHLC bars into the routing regime (trend, range, shock) with a
dual-speed volatility check:
- Fast (3-bar ATR): shock detection
- Slow (20-bar ATR): baseline for the fast reading
- ADX: trend strength

Shock overrides everything else so routing reacts before the slow measures
catch up.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import structlog

import numpy as np
import pandas as pd

from src.regime.router import Regime

logger = structlog.get_logger(__name__)


@dataclass
class RegimeReading:
    """Classifier output with the raw indicators behind it."""
    regime: Regime
    timestamp: Optional[datetime] = None
    symbol: Optional[str] = None
    adx: Optional[float] = None
    fast_vol: Optional[float] = None
    slow_vol: Optional[float] = None
    vol_ratio: Optional[float] = None
    sufficient_data: bool = True

    def to_dict(self) -> dict:
        return {
            "regime": self.regime.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "symbol": self.symbol,
            "adx": self.adx,
            "fast_vol": self.fast_vol,
            "slow_vol": self.slow_vol,
            "vol_ratio": self.vol_ratio,
            "sufficient_data": self.sufficient_data,
        }


class RegimeDetector:
    """
    Regime classifier with dual-speed volatility.

    - Shock: fast ATR > crisis_multiplier x slow ATR (both relative to price)
    - Trend: ADX >= trending threshold
    - Range: everything else, and the conservative default on thin data
    """

    def __init__(
        self,
        fast_window: int = 3,
        slow_window: int = 20,
        crisis_multiplier: float = 2.0,
        adx_period: int = 14,
        adx_trending_threshold: float = 25.0,
    ):
        """
        Initialize regime detector.

        Args:
            fast_window: Bars in the fast ATR (shock detection)
            slow_window: Bars in the slow ATR (baseline)
            crisis_multiplier: Fast/slow ratio above which the regime is shock
            adx_period: Period for ADX calculation
            adx_trending_threshold: ADX at or above this = trend
        """
        self.fast_window = fast_window
        self.slow_window = slow_window
        self.crisis_multiplier = crisis_multiplier
        self.adx_period = adx_period
        self.adx_trending = adx_trending_threshold

        logger.info(
            "regime_detector_initialized",
            fast_window=fast_window,
            slow_window=slow_window,
            crisis_multiplier=crisis_multiplier,
        )

    @property
    def min_bars(self) -> int:
        return max(self.slow_window, self.adx_period * 2)

    def detect_regime(
        self,
        bars: pd.DataFrame,
        symbol: Optional[str] = None,
    ) -> RegimeReading:
        """
        Classify the latest regime from price bars.

        Args:
            bars: DataFrame with columns high, low, close (timestamp optional)
            symbol: Optional symbol for logging

        Returns:
            RegimeReading
        """
        bars = bars.dropna(subset=["high", "low", "close"])
        timestamp = self._last_timestamp(bars)

        if len(bars) < self.min_bars:
            logger.warning(
                "insufficient_data_for_regime",
                bars_count=len(bars),
                required=self.min_bars,
            )
            return RegimeReading(
                regime=Regime.RANGE,
                timestamp=timestamp,
                symbol=symbol,
                sufficient_data=False,
            )

        true_range = self._true_range(bars)
        last_close = float(bars["close"].iloc[-1])

        fast_vol = self._relative_atr(true_range, self.fast_window, last_close)
        slow_vol = self._relative_atr(true_range, self.slow_window, last_close)
        vol_ratio = fast_vol / slow_vol if slow_vol > 0 else 1.0
        adx = self._calculate_adx(bars, true_range)

        if vol_ratio > self.crisis_multiplier:
            regime = Regime.SHOCK
            logger.warning(
                "shock_regime_detected",
                symbol=symbol,
                fast_vol=fast_vol,
                slow_vol=slow_vol,
                ratio=vol_ratio,
            )
        elif adx >= self.adx_trending:
            regime = Regime.TREND
        else:
            regime = Regime.RANGE

        return RegimeReading(
            regime=regime,
            timestamp=timestamp,
            symbol=symbol,
            adx=adx,
            fast_vol=fast_vol,
            slow_vol=slow_vol,
            vol_ratio=vol_ratio,
        )

    def _last_timestamp(self, bars: pd.DataFrame) -> Optional[datetime]:
        if "timestamp" not in bars.columns or bars.empty:
            return None
        return pd.Timestamp(bars["timestamp"].iloc[-1]).to_pydatetime()

    def _true_range(self, bars: pd.DataFrame) -> np.ndarray:
        high = bars["high"].to_numpy(dtype=float)
        low = bars["low"].to_numpy(dtype=float)
        close = bars["close"].to_numpy(dtype=float)

        tr1 = high - low
        tr2 = np.abs(high - np.roll(close, 1))
        tr3 = np.abs(low - np.roll(close, 1))

        true_range = np.maximum(tr1, np.maximum(tr2, tr3))
        true_range[0] = tr1[0]  # no previous close
        return true_range

    def _relative_atr(self, true_range: np.ndarray, window: int, price: float) -> float:
        """Mean true range over the last `window` bars, as a fraction of price."""
        if price <= 0:
            return 0.0
        atr = float(np.mean(true_range[-window:]))
        return atr / price if np.isfinite(atr) else 0.0

    def _calculate_adx(self, bars: pd.DataFrame, true_range: np.ndarray) -> float:
        """
        Average Directional Index.

        Measures trend strength, not direction. Flat markets yield 0.
        """
        high = bars["high"].to_numpy(dtype=float)
        low = bars["low"].to_numpy(dtype=float)

        plus_dm = high - np.roll(high, 1)
        minus_dm = np.roll(low, 1) - low
        plus_dm[0] = 0
        minus_dm[0] = 0

        plus_dm = np.where((plus_dm > minus_dm) & (plus_dm > 0), plus_dm, 0.0)
        minus_dm = np.where((minus_dm > plus_dm) & (minus_dm > 0), minus_dm, 0.0)

        period = self.adx_period
        plus_di = pd.Series(plus_dm).rolling(window=period).mean()
        minus_di = pd.Series(minus_dm).rolling(window=period).mean()
        atr = pd.Series(true_range).rolling(window=period).mean()

        plus_di_pct = (plus_di / atr) * 100
        minus_di_pct = (minus_di / atr) * 100

        dx = 100 * (plus_di_pct - minus_di_pct).abs() / (plus_di_pct + minus_di_pct)
        dx = dx.replace([np.inf, -np.inf], np.nan)

        adx = dx.rolling(window=period, min_periods=1).mean().iloc[-1]
        return float(adx) if not pd.isna(adx) else 0.0
