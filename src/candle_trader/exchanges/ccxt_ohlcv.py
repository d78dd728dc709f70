"""
ccxt-backed historical OHLCV source (Binance USD-M futures by default).

    fetcher = CcxtOHLCVFetcher("binanceusdm")
    candles = fetcher.fetch("BTC/USDT", "1m", since_ms=None, limit=1000)
"""

from __future__ import annotations

import logging
from typing import List, Optional

import ccxt

from candle_trader.core.models import Candle
from candle_trader.exchanges.base import HistoricalFetcher, MAX_FETCH_LIMIT, rows_to_candles


class CcxtOHLCVFetcher(HistoricalFetcher):
    """
    Parameters
    ----------
    exchange_id : str
        Any ccxt exchange id, e.g. ``"binanceusdm"``.
    exchange : ccxt.Exchange, optional
        Pre-built exchange instance (tests inject a mock here).
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        exchange_id: str = "binanceusdm",
        exchange=None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        if exchange is None:
            exchange_cls = getattr(ccxt, exchange_id)
            exchange = exchange_cls({"enableRateLimit": True})
        self.exchange = exchange

    def fetch(self, symbol: str, timeframe: str, since_ms: Optional[int], limit: int) -> List[Candle]:
        limit = max(1, min(limit, MAX_FETCH_LIMIT))
        try:
            ohlcv = self.exchange.fetch_ohlcv(symbol, timeframe, since=since_ms, limit=limit)
        except Exception as exc:
            self.logger.error(f"Error fetching OHLCV for {symbol} since={since_ms}: {exc}")
            return []

        if not ohlcv:
            return []
        return rows_to_candles(ohlcv, self.logger)
