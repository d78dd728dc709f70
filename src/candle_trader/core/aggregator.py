"""
Incremental candle builder for the live trade feed.

Each trade is keyed on ``floor(trade_time / interval) * interval``.  A trade
in a newer window finalises the current partial candle into the
``CandleSeries`` (and persists it); a trade in an older window is dropped.
Buy/sell taker volume is accumulated per candle and handed back to the
caller on every close.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from candle_trader.core.errors import InvalidCandleError
from candle_trader.core.models import Candle, TradeEvent
from candle_trader.core.series import CandleSeries


@dataclass
class PartialCandle:
    """The in-progress candle; never part of the series until closed."""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def update(self, price: float, quantity: float) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += quantity

    def to_candle(self) -> Candle:
        return Candle(
            open_time=self.open_time,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )


@dataclass
class CandleClose:
    """Result of a window boundary: the finalised candle and its volume split."""
    candle: Candle
    buy_volume: float
    sell_volume: float


class StreamAggregator:
    """
    Parameters
    ----------
    series : CandleSeries
        Closed-candle history that finalised candles are appended to.
    interval_ms : int
        Candle window length.
    store : CandleStore, optional
        When given, the series is persisted after every close.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        series: CandleSeries,
        interval_ms: int,
        store=None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.series = series
        self.interval_ms = interval_ms
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.current_partial: Optional[PartialCandle] = None
        self.buy_volume = 0.0
        self.sell_volume = 0.0
        self.dropped_trades = 0

    def window_start(self, trade_time_ms: int) -> int:
        return (int(trade_time_ms) // self.interval_ms) * self.interval_ms

    def on_trade(self, trade: TradeEvent) -> Optional[CandleClose]:
        """Fold one trade into the partial candle.

        Returns a ``CandleClose`` when the trade opened a new window and the
        previous partial was finalised, otherwise ``None``.
        """
        if not (math.isfinite(trade.price) and math.isfinite(trade.quantity)) or trade.quantity < 0:
            self.dropped_trades += 1
            self.logger.warning(
                f"Dropped malformed trade t={trade.trade_time_ms}: "
                f"price={trade.price}, qty={trade.quantity}"
            )
            return None

        window = self.window_start(trade.trade_time_ms)
        partial = self.current_partial
        closed: Optional[CandleClose] = None

        if self._is_late(window):
            self.dropped_trades += 1
            self.logger.debug(
                f"Dropped late trade t={trade.trade_time_ms} (window {window} already closed)."
            )
            return None

        if partial is None or window != partial.open_time:
            if partial is not None:
                closed = self._finalize(partial)
            self.current_partial = PartialCandle(
                open_time=window,
                open=trade.price,
                high=trade.price,
                low=trade.price,
                close=trade.price,
                volume=trade.quantity,
            )
        else:
            partial.update(trade.price, trade.quantity)

        # Maker-is-seller: a buyer-maker trade was an aggressive sell.
        if trade.is_buyer_maker:
            self.sell_volume += trade.quantity
        else:
            self.buy_volume += trade.quantity

        return closed

    def discard_partial(self) -> Optional[PartialCandle]:
        """Drop the in-progress candle without finalising it (shutdown path)."""
        partial, self.current_partial = self.current_partial, None
        self.buy_volume = 0.0
        self.sell_volume = 0.0
        if partial is not None:
            self.logger.info(
                f"Discarded partial candle {partial.open_time} "
                f"(volume={partial.volume:.4f})."
            )
        return partial

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_late(self, window: int) -> bool:
        if self.current_partial is not None:
            return window < self.current_partial.open_time
        last = self.series.last
        return last is not None and window <= last.open_time

    def _finalize(self, partial: PartialCandle) -> Optional[CandleClose]:
        buy, sell = self.buy_volume, self.sell_volume
        self.buy_volume = 0.0
        self.sell_volume = 0.0

        try:
            candle = partial.to_candle()
        except InvalidCandleError as exc:
            self.logger.warning(f"Partial candle {partial.open_time} rejected: {exc}")
            return None

        if not self.series.append(candle):
            self.logger.debug(f"Candle {candle.open_time} replaced an existing entry.")

        if self.store is not None:
            try:
                self.store.save(self.series)
            except Exception as exc:
                self.logger.error(f"Failed to persist series after close: {exc}")

        self.logger.debug(
            f"Closed candle {candle.open_time}: o={candle.open} h={candle.high} "
            f"l={candle.low} c={candle.close} v={candle.volume:.4f}"
        )
        return CandleClose(candle=candle, buy_volume=buy, sell_volume=sell)
