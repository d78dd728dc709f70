"""
Ordered, de-duplicated, capped collection of closed candles.

Every mutation goes through :func:`merge`, which re-establishes the series
invariants in one pass:

    * ascending, strictly increasing ``open_time``
    * one candle per ``open_time`` (incoming rows win on conflict)
    * at most ``retention`` candles (oldest dropped first)

Usage::

    series = CandleSeries(retention=1000)
    series.merge(fetched_candles)
    series.append(closed_candle)
    df = series.to_frame()
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional

import pandas as pd

from candle_trader.core.errors import InvalidCandleError
from candle_trader.core.models import Candle

DEFAULT_RETENTION = 1000

CANDLE_COLUMNS = ["open_time", "open", "high", "low", "close", "volume"]

logger = logging.getLogger(__name__)


def validate(candle) -> bool:
    """Return ``True`` when *candle* has finite, ordered OHLCV fields.

    Accepts a ``Candle`` or a raw mapping; raw mappings are run through the
    ``Candle`` constructor so both paths apply the same rules.
    """
    if candle is None:
        return False
    if isinstance(candle, Candle):
        values = (candle.open, candle.high, candle.low, candle.close, candle.volume)
        return all(isinstance(v, float) and math.isfinite(v) for v in values)
    try:
        Candle.from_dict(candle)
    except InvalidCandleError:
        return False
    return True


def _coerce(items: Optional[Iterable]) -> list[Candle]:
    """Turn candles / dicts into ``Candle`` objects, dropping invalid ones."""
    out: list[Candle] = []
    if items is None:
        return out
    dropped = 0
    for item in items:
        if isinstance(item, Candle):
            out.append(item)
            continue
        try:
            out.append(Candle.from_dict(item))
        except InvalidCandleError:
            dropped += 1
    if dropped:
        logger.debug(f"Dropped {dropped} invalid candle(s) during merge.")
    return out


def merge(
    existing: Optional[Iterable],
    incoming: Optional[Iterable],
    retention: int = DEFAULT_RETENTION,
) -> list[Candle]:
    """Union *existing* and *incoming* by ``open_time``.

    Incoming values win on conflict; the result is sorted ascending,
    de-duplicated and truncated to the newest *retention* candles.
    """
    old = _coerce(existing)
    new = _coerce(incoming)
    if not old and not new:
        return []

    combined = pd.DataFrame(
        [c.to_dict() for c in old + new], columns=CANDLE_COLUMNS,
    )
    combined.drop_duplicates(subset=["open_time"], keep="last", inplace=True)
    combined.sort_values("open_time", inplace=True, kind="stable")
    if retention and len(combined) > retention:
        combined = combined.iloc[-retention:]

    return [
        Candle(
            open_time=int(row.open_time),
            open=row.open,
            high=row.high,
            low=row.low,
            close=row.close,
            volume=row.volume,
        )
        for row in combined.itertuples(index=False)
    ]


class CandleSeries:
    """
    Closed-candle history for one symbol/timeframe.

    Parameters
    ----------
    candles : iterable, optional
        Initial content; normalised through :func:`merge`.
    retention : int
        Maximum number of candles kept.
    """

    def __init__(
        self,
        candles: Optional[Iterable] = None,
        retention: int = DEFAULT_RETENTION,
    ) -> None:
        self.retention = retention
        self._candles: list[Candle] = merge(None, candles, retention)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def merge(self, incoming: Optional[Iterable]) -> int:
        """Merge *incoming* candles; return how many new ``open_time`` keys were added."""
        before = {c.open_time for c in self._candles}
        self._candles = merge(self._candles, incoming, self.retention)
        return sum(1 for c in self._candles if c.open_time not in before)

    def append(self, candle: Candle) -> bool:
        """Append one closed candle.

        Returns ``False`` when the candle replaced an entry with the same
        ``open_time`` instead of extending the series.
        """
        last = self.last
        if last is not None and candle.open_time == last.open_time:
            self._candles[-1] = candle
            return False
        if last is not None and candle.open_time < last.open_time:
            self.merge([candle])
            return False
        self._candles.append(candle)
        if len(self._candles) > self.retention:
            del self._candles[: len(self._candles) - self.retention]
        return True

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def candles(self) -> list[Candle]:
        return list(self._candles)

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    @property
    def previous(self) -> Optional[Candle]:
        return self._candles[-2] if len(self._candles) > 1 else None

    def closes(self) -> list[float]:
        return [c.close for c in self._candles]

    def highs(self) -> list[float]:
        return [c.high for c in self._candles]

    def lows(self) -> list[float]:
        return [c.low for c in self._candles]

    def gaps(self, interval_ms: int) -> list[tuple[int, int]]:
        """Return ``(first_missing, last_missing)`` open times of every hole."""
        holes = []
        for prev, cur in zip(self._candles, self._candles[1:]):
            if cur.open_time - prev.open_time > interval_ms:
                holes.append((prev.open_time + interval_ms, cur.open_time - interval_ms))
        return holes

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([c.to_dict() for c in self._candles], columns=CANDLE_COLUMNS)

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self):
        return iter(self._candles)

    def __eq__(self, other) -> bool:
        if not isinstance(other, CandleSeries):
            return NotImplemented
        return self._candles == other._candles
