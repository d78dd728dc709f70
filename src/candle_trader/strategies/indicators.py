"""
Indicator calculator for the crossover strategy.

``IndicatorCalculator.compute(closes, highs, lows)`` returns an
``IndicatorSet`` whose arrays are aligned index-for-index with the inputs
(warm-up positions are NaN).  An indicator whose period exceeds the input
length comes back as an empty array; callers treat that as "no signal this
tick", not as an error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import pandas as pd

# ---------------------------------------------------------------------------
# Constants (defaults, overridden by config)
# ---------------------------------------------------------------------------

DEFAULT_PERIODS = {
    "fast_period": 3,
    "slow_period": 9,
    "macd_fast": 12,
    "macd_slow": 26,
    "macd_signal": 9,
    "atr_period": 14,
}

_EMPTY = np.array([], dtype=float)


@dataclass
class IndicatorSet:
    fast_ma: np.ndarray = field(default_factory=lambda: _EMPTY)
    slow_ma: np.ndarray = field(default_factory=lambda: _EMPTY)
    macd_histogram: np.ndarray = field(default_factory=lambda: _EMPTY)
    atr: np.ndarray = field(default_factory=lambda: _EMPTY)

    @staticmethod
    def latest(values: Sequence[float], offset: int = 1) -> Optional[float]:
        """Return ``values[-offset]`` or ``None`` when missing / NaN."""
        if values is None or len(values) < offset:
            return None
        value = float(values[-offset])
        return value if math.isfinite(value) else None


class IndicatorCalculator:
    """
    Computes fast/slow SMA, MACD histogram and (optionally) ATR.

    Parameters
    ----------
    periods : dict, optional
        Overrides for ``DEFAULT_PERIODS``.
    """

    def __init__(self, periods: Optional[dict] = None) -> None:
        p = {**DEFAULT_PERIODS, **(periods or {})}
        self.fast_period: int = int(p["fast_period"])
        self.slow_period: int = int(p["slow_period"])
        self.macd_fast: int = int(p["macd_fast"])
        self.macd_slow: int = int(p["macd_slow"])
        self.macd_signal: int = int(p["macd_signal"])
        self.atr_period: int = int(p["atr_period"])

    @property
    def macd_lookback(self) -> int:
        return self.macd_slow + self.macd_signal - 1

    def compute(
        self,
        closes: Sequence[float],
        highs: Optional[Sequence[float]] = None,
        lows: Optional[Sequence[float]] = None,
    ) -> IndicatorSet:
        close = pd.Series(closes, dtype=float)
        n = len(close)
        result = IndicatorSet()

        if n >= self.fast_period:
            result.fast_ma = close.rolling(self.fast_period).mean().to_numpy()
        if n >= self.slow_period:
            result.slow_ma = close.rolling(self.slow_period).mean().to_numpy()
        if n >= self.macd_lookback:
            result.macd_histogram = self._macd_histogram(close)
        if highs is not None and lows is not None and n > self.atr_period:
            result.atr = self._atr(
                pd.Series(highs, dtype=float), pd.Series(lows, dtype=float), close,
            )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _macd_histogram(self, close: pd.Series) -> np.ndarray:
        ema_fast = close.ewm(span=self.macd_fast, adjust=False).mean()
        ema_slow = close.ewm(span=self.macd_slow, adjust=False).mean()
        macd_line = ema_fast - ema_slow
        signal_line = macd_line.ewm(span=self.macd_signal, adjust=False).mean()
        hist = macd_line - signal_line
        # Warm-up bars are not meaningful until the slow EMA and signal have seeded.
        hist.iloc[: self.macd_lookback - 1] = np.nan
        return hist.to_numpy()

    def _atr(self, high: pd.Series, low: pd.Series, close: pd.Series) -> np.ndarray:
        prev_close = close.shift(1)
        true_range = pd.concat(
            [high - low, (high - prev_close).abs(), (low - prev_close).abs()], axis=1,
        ).max(axis=1)
        true_range.iloc[0] = np.nan
        # Wilder smoothing.
        atr = true_range.ewm(alpha=1 / self.atr_period, adjust=False, min_periods=self.atr_period).mean()
        return atr.to_numpy()
