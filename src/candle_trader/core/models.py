from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from candle_trader.core.errors import InvalidCandleError

# Maps ccxt/Binance timeframe strings to their duration in milliseconds.
TIMEFRAME_MS: dict[str, int] = {
    "1m": 60_000,
    "3m": 3 * 60_000,
    "5m": 5 * 60_000,
    "15m": 15 * 60_000,
    "30m": 30 * 60_000,
    "1h": 3_600_000,
    "2h": 2 * 3_600_000,
    "4h": 4 * 3_600_000,
    "6h": 6 * 3_600_000,
    "8h": 8 * 3_600_000,
    "12h": 12 * 3_600_000,
    "1d": 86_400_000,
}


# Every supported timeframe is a whole number of minutes.
OPEN_TIME_ALIGNMENT_MS = 60_000


def timeframe_to_ms(timeframe: str) -> int:
    """Return the window length of *timeframe* in milliseconds."""
    try:
        return TIMEFRAME_MS[timeframe]
    except KeyError:
        raise ValueError(f"Unsupported timeframe: {timeframe!r}") from None


@dataclass(frozen=True)
class MarketSpec:
    """Identity of the traded market; fixed for the process lifetime."""
    symbol: str      # ccxt unified, e.g. "BTC/USDT"
    timeframe: str   # e.g. "1m"
    exchange: str    # ccxt exchange id, e.g. "binanceusdm"

    @property
    def interval_ms(self) -> int:
        return timeframe_to_ms(self.timeframe)


@dataclass(frozen=True)
class Candle:
    open_time: int   # UTC ms, aligned to the timeframe (unique key)
    open: float
    high: float
    low: float
    close: float
    volume: float

    def __post_init__(self) -> None:
        if isinstance(self.open_time, float) and math.isfinite(self.open_time) and not self.open_time.is_integer():
            raise InvalidCandleError(f"Fractional open_time: {self.open_time}")
        try:
            object.__setattr__(self, "open_time", int(self.open_time))
            for name in ("open", "high", "low", "close", "volume"):
                object.__setattr__(self, name, float(getattr(self, name)))
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidCandleError(f"Non-numeric candle field: {exc}") from exc

        if self.open_time % OPEN_TIME_ALIGNMENT_MS != 0:
            raise InvalidCandleError(f"open_time {self.open_time} is not minute-aligned")

        values = (self.open, self.high, self.low, self.close, self.volume)
        if not all(math.isfinite(v) for v in values):
            raise InvalidCandleError(f"Non-finite OHLCV at {self.open_time}: {values}")
        if self.volume < 0:
            raise InvalidCandleError(f"Negative volume at {self.open_time}")
        if not (self.low <= min(self.open, self.close) and max(self.open, self.close) <= self.high):
            raise InvalidCandleError(
                f"OHLC ordering violated at {self.open_time}: "
                f"o={self.open} h={self.high} l={self.low} c={self.close}"
            )

    @classmethod
    def from_row(cls, row) -> "Candle":
        """Build from a ccxt ``[ts, o, h, l, c, v]`` row."""
        if row is None or len(row) < 6:
            raise InvalidCandleError(f"Malformed OHLCV row: {row!r}")
        if any(v is None for v in row[:6]):
            raise InvalidCandleError(f"Missing OHLCV field in row: {row!r}")
        return cls(*row[:6])

    @classmethod
    def from_dict(cls, item: dict) -> "Candle":
        try:
            return cls(
                open_time=item["open_time"],
                open=item["open"],
                high=item["high"],
                low=item["low"],
                close=item["close"],
                volume=item["volume"],
            )
        except (KeyError, TypeError) as exc:
            raise InvalidCandleError(f"Missing candle field: {exc}") from exc

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TradeEvent:
    """One public trade from the live feed."""
    price: float
    quantity: float
    trade_time_ms: int
    is_buyer_maker: bool


class SignalType(Enum):
    LONG = "long"
    SHORT = "short"


class ExitReason(Enum):
    STOP_LOSS = "stop loss"
    TAKE_PROFIT = "take profit"
    INDICATOR_REVERSAL = "indicator reversal"


@dataclass
class Signal:
    """A proposed trade awaiting acceptance by the position state machine."""
    type: SignalType
    entry_price: float
    stop_loss: float
    take_profit: float
    symbol: str


@dataclass
class Position:
    type: SignalType
    entry_price: float
    stop_loss: float
    take_profit: float
    symbol: str
    entry_time: str                     # ISO-8601 string (JSON-friendly)
    exit_time: Optional[str] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    exit_reason: Optional[ExitReason] = None

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["exit_reason"] = self.exit_reason.value if self.exit_reason else None
        return data

    @classmethod
    def from_dict(cls, item: dict) -> "Position":
        data = dict(item)
        data["type"] = SignalType(data["type"])
        if data.get("exit_reason"):
            data["exit_reason"] = ExitReason(data["exit_reason"])
        return cls(**data)
