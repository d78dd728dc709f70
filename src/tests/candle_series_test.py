"""Tests for the candle model and CandleSeries

Tests cover:
- Candle validation (non-finite, negative volume, OHLC ordering)
- merge: union, incoming-wins, ordering, retention cap, idempotence
- append: extend, replace-same-key, out-of-order insert
- gap detection
"""

import math
import random
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from candle_trader.core.errors import InvalidCandleError
from candle_trader.core.models import Candle, MarketSpec, timeframe_to_ms
from candle_trader.core.series import CandleSeries, merge, validate

MINUTE = 60_000


def make_candle(open_time, close=100.0, volume=1.0):
    return Candle(open_time, close, close + 1, close - 1, close, volume)


class TestCandle:
    """Test candle construction and validation."""

    def test_casts_numeric_strings(self):
        """Binance REST klines return prices as strings."""
        candle = Candle.from_row([0, "100.5", "101", "99", "100", "12.5", 59_999])
        assert candle.open == 100.5
        assert isinstance(candle.open_time, int)
        assert candle.volume == 12.5

    def test_rejects_nan(self):
        with pytest.raises(InvalidCandleError):
            Candle(0, float("nan"), 1, 0, 1, 1)

    def test_rejects_negative_volume(self):
        with pytest.raises(InvalidCandleError):
            Candle(0, 1, 1, 1, 1, -1)

    def test_rejects_high_below_close(self):
        with pytest.raises(InvalidCandleError):
            Candle(0, 100, 100, 99, 101, 1)

    def test_rejects_missing_row_field(self):
        with pytest.raises(InvalidCandleError):
            Candle.from_row([0, 1, None, 1, 1, 1])

    def test_rejects_infinite_open_time(self):
        with pytest.raises(InvalidCandleError):
            Candle(float("inf"), 1, 1, 1, 1, 1)
        with pytest.raises(InvalidCandleError):
            Candle(float("-inf"), 1, 1, 1, 1, 1)

    def test_rejects_misaligned_open_time(self):
        with pytest.raises(InvalidCandleError):
            Candle(30_000, 1, 1, 1, 1, 1)

    def test_rejects_fractional_open_time(self):
        with pytest.raises(InvalidCandleError):
            Candle(60_000.5, 1, 1, 1, 1, 1)

    def test_accepts_integral_float_open_time(self):
        assert Candle(120_000.0, 1, 1, 1, 1, 1).open_time == 120_000

    def test_invalid_candle_error_is_value_error(self):
        with pytest.raises(ValueError):
            Candle.from_dict({"open_time": 0, "open": "x", "high": 1, "low": 1, "close": 1, "volume": 1})

    def test_dict_roundtrip(self):
        candle = make_candle(MINUTE)
        assert Candle.from_dict(candle.to_dict()) == candle


class TestTimeframes:
    """Test timeframe parsing."""

    def test_known_timeframes(self):
        assert timeframe_to_ms("1m") == MINUTE
        assert timeframe_to_ms("1h") == 60 * MINUTE
        assert MarketSpec("BTC/USDT", "5m", "binanceusdm").interval_ms == 5 * MINUTE

    def test_unknown_timeframe(self):
        with pytest.raises(ValueError):
            timeframe_to_ms("7m")


class TestValidate:
    """Test the validate helper used on persisted rows."""

    def test_valid_dict(self):
        assert validate(make_candle(0).to_dict())

    def test_dict_with_infinite_close(self):
        row = make_candle(0).to_dict()
        row["close"] = math.inf
        assert not validate(row)

    def test_dict_missing_field(self):
        row = make_candle(0).to_dict()
        del row["volume"]
        assert not validate(row)

    def test_none(self):
        assert not validate(None)

    def test_dict_with_infinite_open_time(self):
        row = make_candle(0).to_dict()
        row["open_time"] = math.inf
        assert not validate(row)

    def test_dict_with_misaligned_open_time(self):
        row = make_candle(0).to_dict()
        row["open_time"] = 30_000
        assert not validate(row)


class TestMerge:
    """Test the merge function."""

    def test_union_sorted_and_unique(self):
        existing = [make_candle(0), make_candle(2 * MINUTE)]
        incoming = [make_candle(3 * MINUTE), make_candle(MINUTE)]

        result = merge(existing, incoming)

        assert [c.open_time for c in result] == [0, MINUTE, 2 * MINUTE, 3 * MINUTE]

    def test_incoming_wins_on_conflict(self):
        existing = [make_candle(0, close=100.0)]
        incoming = [make_candle(0, close=200.0)]

        result = merge(existing, incoming)

        assert len(result) == 1
        assert result[0].close == 200.0

    def test_retention_keeps_newest(self):
        candles = [make_candle(i * MINUTE) for i in range(10)]

        result = merge(candles, [], retention=3)

        assert [c.open_time for c in result] == [7 * MINUTE, 8 * MINUTE, 9 * MINUTE]

    def test_merge_with_itself_is_identity(self):
        candles = [make_candle(i * MINUTE, close=100.0 + i) for i in range(5)]
        once = merge(candles, candles)
        assert merge(once, once) == once
        assert once == candles

    def test_drops_invalid_dicts(self):
        bad = make_candle(MINUTE).to_dict()
        bad["high"] = -5
        result = merge([make_candle(0).to_dict(), bad], None)
        assert [c.open_time for c in result] == [0]

    def test_both_empty(self):
        assert merge(None, None) == []


class TestCandleSeries:
    """Test the CandleSeries container."""

    def test_merge_reports_new_keys(self):
        series = CandleSeries([make_candle(0), make_candle(MINUTE)])

        added = series.merge([make_candle(MINUTE, close=150.0), make_candle(2 * MINUTE)])

        assert added == 1
        assert len(series) == 3
        assert series.candles[1].close == 150.0

    def test_append_extends(self):
        series = CandleSeries([make_candle(0)])
        assert series.append(make_candle(MINUTE)) is True
        assert series.last.open_time == MINUTE
        assert series.previous.open_time == 0

    def test_append_same_key_replaces(self):
        series = CandleSeries([make_candle(0), make_candle(MINUTE)])
        assert series.append(make_candle(MINUTE, close=50.0)) is False
        assert len(series) == 2
        assert series.last.close == 50.0

    def test_append_older_key_is_merged_in_order(self):
        series = CandleSeries([make_candle(0), make_candle(2 * MINUTE)])
        series.append(make_candle(MINUTE))
        assert [c.open_time for c in series] == [0, MINUTE, 2 * MINUTE]

    def test_append_respects_retention(self):
        series = CandleSeries([make_candle(i * MINUTE) for i in range(3)], retention=3)
        series.append(make_candle(3 * MINUTE))
        assert len(series) == 3
        assert series.candles[0].open_time == MINUTE

    def test_empty_series_accessors(self):
        series = CandleSeries()
        assert series.last is None
        assert series.previous is None
        assert series.closes() == []
        assert series.to_frame().empty

    def test_gaps(self):
        series = CandleSeries([make_candle(0), make_candle(MINUTE), make_candle(4 * MINUTE)])
        assert series.gaps(MINUTE) == [(2 * MINUTE, 3 * MINUTE)]

    def test_to_frame_columns(self):
        series = CandleSeries([make_candle(0), make_candle(MINUTE)])
        df = series.to_frame()
        assert list(df.columns) == ["open_time", "open", "high", "low", "close", "volume"]
        assert df["open_time"].tolist() == [0, MINUTE]

    def test_equality(self):
        candles = [make_candle(0), make_candle(MINUTE)]
        assert CandleSeries(candles) == CandleSeries(list(reversed(candles)))


class TestSeriesInvariantsUnderRandomUpdates:
    """Random merge/append sequences keep the series sorted, unique and capped."""

    @pytest.mark.parametrize("seed", range(20))
    def test_merge_and_append_sequences(self, seed):
        rng = random.Random(seed)
        retention = rng.randint(1, 15)
        series = CandleSeries(retention=retention)

        for _ in range(60):
            if rng.random() < 0.5:
                batch = [
                    make_candle(rng.randrange(0, 40) * MINUTE, close=rng.uniform(50, 150))
                    for _ in range(rng.randint(0, 8))
                ]
                if rng.random() < 0.3:
                    batch = [c.to_dict() for c in batch]
                series.merge(batch)
            else:
                series.append(make_candle(rng.randrange(0, 40) * MINUTE, close=rng.uniform(50, 150)))

            times = [c.open_time for c in series]
            assert all(a < b for a, b in zip(times, times[1:]))
            assert len(series) <= retention
            assert all(t % MINUTE == 0 for t in times)
