"""
Thin client for the Binance USD-M Futures REST klines endpoint.

    GET https://fapi.binance.com/fapi/v1/klines
        ?symbol=BTCUSDT&interval=1m&startTime=1700000000000&limit=1000

Alternative to the ccxt source when ``historical_source`` is ``"rest"``.
"""

from typing import List, Optional

import logging

import requests

from candle_trader.core.models import Candle
from candle_trader.exchanges.base import HistoricalFetcher, MAX_FETCH_LIMIT, rows_to_candles

_BASE_URL = "https://fapi.binance.com"
_KLINES_ENDPOINT = "/fapi/v1/klines"

_REQUEST_TIMEOUT = 10


def to_binance_symbol(symbol: str) -> str:
    """``BTC/USDT`` or ``BTC/USDT:USDT`` -> ``BTCUSDT``."""
    return symbol.split(":")[0].replace("/", "").upper()


class BinanceRestOHLCVFetcher(HistoricalFetcher):
    """
    Fetches OHLCV klines from the Binance USD-M Futures REST API.

    Parameters
    ----------
    base_url : str
        Override the default base URL (useful for testing).
    """

    def __init__(self, base_url: str = _BASE_URL, logger: Optional[logging.Logger] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self.logger = logger or logging.getLogger(__name__)

    def fetch(self, symbol: str, timeframe: str, since_ms: Optional[int], limit: int) -> List[Candle]:
        params = {
            "symbol": to_binance_symbol(symbol),
            "interval": timeframe,
            "limit": max(1, min(limit, MAX_FETCH_LIMIT)),
        }
        if since_ms is not None:
            params["startTime"] = int(since_ms)

        try:
            response = requests.get(
                self._base_url + _KLINES_ENDPOINT,
                params=params,
                timeout=_REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            raw = response.json()
        except (requests.RequestException, ValueError) as exc:
            self.logger.error(f"Klines request failed for {params['symbol']}: {exc}")
            return []

        if not isinstance(raw, list):
            self.logger.error(f"Unexpected klines payload for {params['symbol']}: {raw!r}")
            return []

        # Kline rows are [open_time, "o", "h", "l", "c", "v", close_time, ...].
        return rows_to_candles(raw, self.logger)
