"""Tests for the trading pipeline orchestration

Tests cover:
- Configuration loading and component wiring
- Startup hydration (stale marking, initialisation failure)
- Event handling: trades, stream status, ticks
- Stale-series backfill on ticks and partial-candle discard
- Pending signal hand-off to the position state machine
- Consumer loop shutdown and the ticker
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from candle_trader.core.errors import InitializationError, StreamFailureError
from candle_trader.core.models import Candle, Signal, SignalType, TradeEvent
from candle_trader.exchanges.base import HistoricalFetcher
from candle_trader.exchanges.binance_klines import BinanceRestOHLCVFetcher
from candle_trader.exchanges.binance_websocket import STREAM_CLOSE, STREAM_OPEN, StreamStatus
from candle_trader.pipelines.scheduler import Shutdown, Tick, Ticker
from candle_trader.pipelines.trading_pipeline import (
    TradingPipeline,
    build_context,
    build_fetcher,
    hydrate_data,
    init,
    load_config,
    main,
)
from candle_trader.strategies.indicators import IndicatorSet

MINUTE = 60_000
NOW = 10 * MINUTE + 30_000
LOGGER = logging.getLogger("pipeline_test")


def make_candle(open_time, close=100.0):
    return Candle(open_time, close, close + 1, close - 1, close, 1.0)


class FakeFetcher(HistoricalFetcher):
    def __init__(self, open_times):
        self.history = {t: make_candle(t) for t in open_times}
        self.calls = []

    def fetch(self, symbol, timeframe, since_ms, limit):
        self.calls.append((since_ms, limit))
        keys = sorted(t for t in self.history if t >= since_ms)
        return [self.history[t] for t in keys[:limit]]


def make_config(tmp_path, **overrides):
    config = {
        "strategy_name": "sma_macd_volume_crossover",
        "symbol": "BTC/USDT",
        "timeframe": "1m",
        "exchange": "binanceusdm",
        "historical_source": "ccxt",
        "log_level": "DEBUG",
        "parameters": {"retention": 50, "reconcile_retry_sec": 60},
        "strategy": {"reward_ratio": 2.0},
        "data_paths": {
            "data_path": str(tmp_path / "candles"),
            "log_path": str(tmp_path / "logs"),
            "trades_path": str(tmp_path / "trades"),
            "positions_path": str(tmp_path / "positions"),
        },
    }
    config.update(overrides)
    return config


def make_context(tmp_path, fetcher=None, candles=()):
    ctx = build_context(
        make_config(tmp_path), LOGGER, fetcher=fetcher or FakeFetcher([]), clock=lambda: NOW,
    )
    ctx.series.merge(list(candles))
    return ctx


def mock_engine(signal=None):
    engine = Mock()
    engine.evaluate.return_value = signal
    engine.indicators.return_value = IndicatorSet()
    return engine


def long_signal():
    return Signal(SignalType.LONG, 100.0, 98.0, 104.0, "BTC/USDT")


class TestConfigAndWiring:
    """Test stages 1 and 2."""

    def test_load_config(self, tmp_path):
        path = tmp_path / "trading_config.json"
        path.write_text(json.dumps(make_config(tmp_path)))
        assert load_config(path)["symbol"] == "BTC/USDT"

    def test_load_config_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.json")

    def test_shipped_config_is_valid(self):
        config = load_config(Path(__file__).resolve().parents[2] / "config" / "trading_config.json")
        assert config["timeframe"] == "1m"
        assert config["parameters"]["retention"] == 1000

    def test_init_sets_up_logger(self, tmp_path):
        path = tmp_path / "trading_config.json"
        path.write_text(json.dumps(make_config(tmp_path)))

        with patch("candle_trader.pipelines.trading_pipeline.setup_logger", return_value=LOGGER) as mock_setup:
            config, logger = init(path)

        assert logger is LOGGER
        args, kwargs = mock_setup.call_args
        assert args[1] == tmp_path / "logs" / "trading_pipeline.log"
        assert kwargs["level"] == "DEBUG"

    def test_build_fetcher(self, tmp_path):
        rest = build_fetcher(make_config(tmp_path, historical_source="rest"), LOGGER)
        assert isinstance(rest, BinanceRestOHLCVFetcher)
        with pytest.raises(ValueError):
            build_fetcher(make_config(tmp_path, historical_source="csv"), LOGGER)

    def test_build_context_shares_one_series(self, tmp_path):
        ctx = make_context(tmp_path)
        assert ctx.aggregator.series is ctx.series
        assert ctx.series.retention == 50
        assert ctx.market.interval_ms == MINUTE
        assert ctx.store.path == tmp_path / "candles" / "BTCUSDT_1m.json"


class TestHydrate:
    """Test stage 3."""

    def test_hydrate_fills_series(self, tmp_path):
        ctx = make_context(tmp_path, FakeFetcher(range(0, 10 * MINUTE, MINUTE)))

        hydrate_data(ctx, LOGGER)

        assert len(ctx.series) == 10
        assert not ctx.stale

    def test_incomplete_backfill_marks_stale(self, tmp_path):
        ctx = make_context(tmp_path, FakeFetcher(range(0, 5 * MINUTE, MINUTE)))

        hydrate_data(ctx, LOGGER)

        assert ctx.series.last.open_time == 4 * MINUTE
        assert ctx.stale

    def test_no_data_raises(self, tmp_path):
        ctx = make_context(tmp_path)
        with pytest.raises(InitializationError):
            hydrate_data(ctx, LOGGER)

    def test_main_exits_non_zero_without_data(self, tmp_path):
        ctx = make_context(tmp_path)
        with patch("candle_trader.pipelines.trading_pipeline.init", return_value=({}, LOGGER)), \
             patch("candle_trader.pipelines.trading_pipeline.build_context", return_value=ctx), \
             patch("candle_trader.pipelines.trading_pipeline.run_live") as mock_live:
            assert main([]) == 1
        mock_live.assert_not_called()


class TestHandle:
    """Test per-event handling."""

    def test_trade_close_updates_volumes(self, tmp_path):
        ctx = make_context(tmp_path)
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        for event in (
            TradeEvent(100.0, 2.0, 0, False),
            TradeEvent(101.0, 1.0, 30_000, True),
            TradeEvent(102.0, 5.0, MINUTE, False),
        ):
            asyncio.run(pipeline.handle(event))

        assert ctx.buy_volume == 2.0
        assert ctx.sell_volume == 1.0
        assert ctx.series.last.close == 101.0
        assert ctx.store.load()[0]["open_time"] == 0

    def test_stream_close_marks_stale(self, tmp_path):
        ctx = make_context(tmp_path)
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        asyncio.run(pipeline.handle(StreamStatus(STREAM_OPEN)))
        assert not ctx.stale
        asyncio.run(pipeline.handle(StreamStatus(STREAM_CLOSE, StreamFailureError("gone"))))
        assert ctx.stale

    def test_stale_tick_backfills_and_discards_covered_partial(self, tmp_path):
        fetcher = FakeFetcher(range(0, 10 * MINUTE, MINUTE))
        ctx = make_context(tmp_path, fetcher, [make_candle(6 * MINUTE), make_candle(7 * MINUTE)])
        pipeline = TradingPipeline(ctx, logger=LOGGER)
        pipeline.on_trade(TradeEvent(100.0, 1.0, 8 * MINUTE + 1, False))
        ctx.stale = True

        asyncio.run(pipeline.handle(Tick(NOW)))

        assert fetcher.calls == [(8 * MINUTE, 2)]
        assert ctx.series.last.open_time == 9 * MINUTE
        assert ctx.aggregator.current_partial is None
        assert not ctx.stale
        assert len(ctx.store.load()) == 4

    def test_stale_retry_is_rate_limited(self, tmp_path):
        fetcher = FakeFetcher(range(0, 10 * MINUTE, MINUTE))
        ctx = make_context(tmp_path, fetcher, [make_candle(7 * MINUTE)])
        ctx.stale = True
        ctx.last_reconcile_ms = NOW - 1_000
        pipeline = TradingPipeline(ctx, reconcile_retry_sec=60, logger=LOGGER)

        asyncio.run(pipeline.handle(Tick(NOW)))

        assert fetcher.calls == []
        assert ctx.stale

    def test_stale_cleared_when_already_current(self, tmp_path):
        ctx = make_context(tmp_path, candles=[make_candle(9 * MINUTE)])
        ctx.stale = True
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        asyncio.run(pipeline.handle(Tick(NOW)))

        assert not ctx.stale


class TestOnTick:
    """Test the analysis path."""

    def test_signal_opens_position(self, tmp_path):
        ctx = make_context(tmp_path, candles=[make_candle(0), make_candle(MINUTE)])
        ctx.signal_engine = mock_engine(long_signal())
        ctx.buy_volume, ctx.sell_volume = 5.0, 2.0
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        pipeline.on_tick(NOW)

        ctx.signal_engine.evaluate.assert_called_once_with(ctx.series, 5.0, 2.0, position_open=False)
        assert ctx.position_machine.is_open
        assert ctx.pending_signal is None
        assert pipeline.ticks == 1

    def test_newer_signal_overwrites_pending(self, tmp_path):
        ctx = make_context(tmp_path, candles=[make_candle(0), make_candle(MINUTE)])
        ctx.pending_signal = Signal(SignalType.SHORT, 100.0, 102.0, 96.0, "BTC/USDT")
        ctx.signal_engine = mock_engine(long_signal())
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        pipeline.on_tick(NOW)

        assert ctx.position_machine.position.type == SignalType.LONG

    def test_existing_position_is_managed(self, tmp_path):
        ctx = make_context(tmp_path, candles=[make_candle(0), make_candle(MINUTE)])
        ctx.position_machine.accept_signal(long_signal(), ctx.series)
        ctx.series.append(make_candle(2 * MINUTE, close=97.0))
        ctx.signal_engine = mock_engine(None)
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        pipeline.on_tick(NOW)

        assert ctx.signal_engine.evaluate.call_args.kwargs["position_open"] is True
        assert not ctx.position_machine.is_open
        assert ctx.trade_logger.summary()["losses"] == 1

    def test_empty_series_skips_analysis(self, tmp_path):
        ctx = make_context(tmp_path)
        ctx.signal_engine = mock_engine()
        TradingPipeline(ctx, logger=LOGGER).on_tick(NOW)
        ctx.signal_engine.evaluate.assert_not_called()


class TestRun:
    """Test the consumer loop."""

    def test_run_until_shutdown(self, tmp_path):
        ctx = make_context(tmp_path)
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        async def run():
            queue = asyncio.Queue()
            for event in (
                TradeEvent(100.0, 1.0, 0, False),
                TradeEvent(105.0, 1.0, 30_000, False),
                TradeEvent(103.0, 1.0, 65_000, True),
                object(),
                Shutdown("test"),
                TradeEvent(1.0, 1.0, 3 * MINUTE, False),
            ):
                queue.put_nowait(event)
            await pipeline.run(queue, asyncio.Event())
            return queue

        queue = asyncio.run(run())

        assert queue.qsize() == 1
        assert len(ctx.series) == 1
        assert ctx.series.last.high == 105.0
        assert ctx.aggregator.current_partial is None

    def test_handler_error_does_not_stop_loop(self, tmp_path):
        ctx = make_context(tmp_path, candles=[make_candle(0), make_candle(MINUTE)])
        ctx.signal_engine = mock_engine()
        ctx.signal_engine.evaluate.side_effect = RuntimeError("boom")
        pipeline = TradingPipeline(ctx, logger=LOGGER)

        async def run():
            queue = asyncio.Queue()
            queue.put_nowait(Tick(NOW))
            queue.put_nowait(Tick(NOW + MINUTE))
            queue.put_nowait(Shutdown())
            await pipeline.run(queue, asyncio.Event())

        asyncio.run(run())

        assert ctx.signal_engine.evaluate.call_count == 2


class TestTicker:
    """Test the periodic tick source."""

    def test_emits_ticks_until_stopped(self):
        async def run():
            queue = asyncio.Queue()
            sleeps = []

            async def fake_sleep(seconds):
                sleeps.append(seconds)
                if len(sleeps) == 4:
                    ticker.stop()

            ticker = Ticker(60, queue, clock=lambda: 123, sleep=fake_sleep)
            await ticker.run()
            return ticker, sleeps, [queue.get_nowait() for _ in range(queue.qsize())]

        ticker, sleeps, ticks = asyncio.run(run())

        assert sleeps == [60, 60, 60, 60]
        assert ticks == [Tick(123)] * 3
        assert ticker.ticks == 3
