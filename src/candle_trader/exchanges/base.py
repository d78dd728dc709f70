from abc import ABC, abstractmethod
from typing import List, Optional

from candle_trader.core.models import Candle

# Binance caps a single klines request at 1000 (spot) / 1500 (futures) rows;
# ccxt's binanceusdm uses 1000 by default.
MAX_FETCH_LIMIT = 1000


class HistoricalFetcher(ABC):
    """Historical candle source.

    Implementations return ``[]`` on exhaustion *and* on error; the caller
    treats both as "no more data".  A source that wants the caller to mark
    the series stale and retry later may raise ``TransientFetchError``.
    """

    @abstractmethod
    def fetch(self, symbol: str, timeframe: str, since_ms: Optional[int], limit: int) -> List[Candle]:
        pass


def rows_to_candles(rows, logger=None) -> List[Candle]:
    """Convert ``[ts, o, h, l, c, v, ...]`` rows, silently dropping invalid ones."""
    candles: List[Candle] = []
    dropped = 0
    for row in rows or []:
        try:
            candles.append(Candle.from_row(row))
        except ValueError:
            dropped += 1
    if dropped and logger is not None:
        logger.debug(f"Dropped {dropped} invalid OHLCV row(s).")
    return candles
