"""
SMA crossover + MACD + taker-volume signal detection.

Evaluated once per tick on the latest closed candle:

- **Long**  — fast SMA > slow SMA, MACD histogram > 0, buy volume > sell volume
- **Short** — fast SMA < slow SMA, MACD histogram < 0, sell volume > buy volume

Stop-loss sits at the previous candle's low (long) / high (short), or at
``entry ∓ k·ATR`` when an ATR multiplier is configured and ATR is available.
Take-profit is ``reward_ratio`` times the risk distance.
"""

from __future__ import annotations

import logging
from typing import Optional

from candle_trader.core.models import Signal, SignalType
from candle_trader.core.series import CandleSeries
from candle_trader.strategies.indicators import IndicatorCalculator, IndicatorSet

DEFAULT_REWARD_RATIO = 2.0


def volume_delta(buy_volume: float, sell_volume: float) -> float:
    return buy_volume - sell_volume


class SignalEngine:
    """
    Parameters
    ----------
    calculator : IndicatorCalculator
        Indicator source; tests inject a stub returning fixed arrays.
    symbol : str
        Symbol stamped onto emitted signals.
    atr_multiplier : float, optional
        ``k`` for ATR-based stops.  ``None`` uses previous-candle extremes.
    reward_ratio : float
        Take-profit distance as a multiple of the stop distance.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        calculator: IndicatorCalculator,
        symbol: str,
        atr_multiplier: Optional[float] = None,
        reward_ratio: float = DEFAULT_REWARD_RATIO,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.calculator = calculator
        self.symbol = symbol
        self.atr_multiplier = atr_multiplier
        self.reward_ratio = reward_ratio
        self.logger = logger or logging.getLogger(__name__)

    def indicators(self, series: CandleSeries) -> IndicatorSet:
        if self.atr_multiplier is not None:
            return self.calculator.compute(series.closes(), series.highs(), series.lows())
        return self.calculator.compute(series.closes())

    def evaluate(
        self,
        series: CandleSeries,
        buy_volume: float,
        sell_volume: float,
        position_open: bool = False,
    ) -> Optional[Signal]:
        """Return a new ``Signal`` for the latest closed candle, or ``None``."""
        if position_open:
            self.logger.debug("Skipping signal generation; a position is already open.")
            return None

        last, prev = series.last, series.previous
        if last is None or prev is None:
            return None

        ind = self.indicators(series)
        fast = IndicatorSet.latest(ind.fast_ma)
        slow = IndicatorSet.latest(ind.slow_ma)
        hist = IndicatorSet.latest(ind.macd_histogram)
        if fast is None or slow is None or hist is None:
            self.logger.debug(
                f"Indicators not ready ({len(series)} candles); no signal this tick."
            )
            return None

        price = last.close
        atr = IndicatorSet.latest(ind.atr) if self.atr_multiplier is not None else None

        if fast > slow and hist > 0 and buy_volume > sell_volume:
            stop = price - self.atr_multiplier * atr if atr is not None else prev.low
            if stop >= price:
                self.logger.debug(f"Long rejected: stop {stop} not below entry {price}.")
                return None
            signal = Signal(
                type=SignalType.LONG,
                entry_price=price,
                stop_loss=stop,
                take_profit=price + self.reward_ratio * (price - stop),
                symbol=self.symbol,
            )
        elif fast < slow and hist < 0 and sell_volume > buy_volume:
            stop = price + self.atr_multiplier * atr if atr is not None else prev.high
            if stop <= price:
                self.logger.debug(f"Short rejected: stop {stop} not above entry {price}.")
                return None
            signal = Signal(
                type=SignalType.SHORT,
                entry_price=price,
                stop_loss=stop,
                take_profit=price - self.reward_ratio * (stop - price),
                symbol=self.symbol,
            )
        else:
            return None

        self.logger.info(
            f"Confirmed {signal.type.value.upper()} signal for {self.symbol}: "
            f"price={price}, fast={fast:.2f}, slow={slow:.2f}, macd_hist={hist:.4f}, "
            f"buy={buy_volume:.2f}, sell={sell_volume:.2f}, "
            f"delta={volume_delta(buy_volume, sell_volume):.2f}, "
            f"sl={signal.stop_loss:.2f}, tp={signal.take_profit:.2f}"
        )
        return signal
