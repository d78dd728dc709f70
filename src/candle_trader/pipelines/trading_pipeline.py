"""
Live candle trading pipeline — main entry point.

Orchestrates all stages:

    [1] INIT           — Load config, setup logger, create directories
    [2] BUILD          — Wire store, fetcher, aggregator, strategy, positions
    [3] RECONCILE      — Load persisted candles, backfill the gap to now
    [4] LIVE           — Trade stream + periodic ticker feed one bounded queue;
                         a single consumer aggregates candles, generates
                         signals and manages the position

Usage::

    candle-trader [path/to/trading_config.json]
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from candle_trader.core.aggregator import StreamAggregator
from candle_trader.core.errors import InitializationError
from candle_trader.core.models import MarketSpec, TradeEvent
from candle_trader.core.series import CandleSeries, DEFAULT_RETENTION
from candle_trader.data.reconciler import DEFAULT_MAX_PAGES, Reconciler
from candle_trader.data.storage import CandleStore, PositionStore
from candle_trader.data.trade_log import TradeLogger
from candle_trader.exchanges.base import HistoricalFetcher, MAX_FETCH_LIMIT
from candle_trader.exchanges.binance_klines import BinanceRestOHLCVFetcher
from candle_trader.exchanges.binance_websocket import (
    STREAM_OPEN,
    BinanceTradeStream,
    StreamStatus,
)
from candle_trader.exchanges.ccxt_ohlcv import CcxtOHLCVFetcher
from candle_trader.pipelines.context import PipelineContext
from candle_trader.pipelines.scheduler import Shutdown, Tick, Ticker, wall_clock_ms
from candle_trader.strategies.indicators import IndicatorCalculator, IndicatorSet
from candle_trader.strategies.position_manager import PositionStateMachine
from candle_trader.strategies.signal_engine import (
    DEFAULT_REWARD_RATIO,
    SignalEngine,
    volume_delta,
)
from candle_trader.utils.logger import setup_logger

# Project root (three levels up: src/candle_trader/pipelines/ → repo root)
ROOT = Path(__file__).resolve().parents[3]

DEFAULT_CONFIG_PATH = ROOT / "config" / "trading_config.json"

DEFAULT_PARAMETERS = {
    "retention": DEFAULT_RETENTION,
    "fetch_limit": MAX_FETCH_LIMIT,
    "tick_interval_sec": 60,
    "queue_maxsize": 10_000,
    "max_backfill_pages": DEFAULT_MAX_PAGES,
    "reconcile_retry_sec": 60,
    "heartbeat_sec": 600,
}


# ═══════════════════════════════════════════════════════════════════════════
# Serial consumer
# ═══════════════════════════════════════════════════════════════════════════

class TradingPipeline:
    """
    Single consumer of the event queue.  Every mutation of the candle series,
    the pending signal and the position slot happens inside :meth:`handle`,
    one event at a time.

    Parameters
    ----------
    context : PipelineContext
        Pipeline state and collaborators.
    reconcile_retry_sec : float
        Minimum spacing between backfill attempts while the series is stale.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        context: PipelineContext,
        reconcile_retry_sec: float = 60,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ctx = context
        self.reconcile_retry_ms = int(reconcile_retry_sec * 1000)
        self.logger = logger or logging.getLogger(__name__)
        self.ticks = 0

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def run(self, queue: asyncio.Queue, stop_event: asyncio.Event) -> None:
        """Consume *queue* until a ``Shutdown`` item arrives or *stop_event* is set."""
        while not stop_event.is_set():
            event = await queue.get()
            if isinstance(event, Shutdown):
                self.logger.info(f"Shutdown requested{': ' + event.reason if event.reason else ''}.")
                break
            try:
                await self.handle(event)
            except Exception as exc:
                self.logger.error(f"Event handling failed for {event!r}: {exc}", exc_info=True)
        self.shutdown()

    async def handle(self, event) -> None:
        if isinstance(event, TradeEvent):
            self.on_trade(event)
        elif isinstance(event, Tick):
            await self.reconcile_if_stale(event.now_ms)
            self.on_tick(event.now_ms)
        elif isinstance(event, StreamStatus):
            self.on_stream_status(event)
        else:
            self.logger.warning(f"Ignoring unknown event {event!r}.")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_trade(self, trade: TradeEvent) -> None:
        closed = self.ctx.aggregator.on_trade(trade)
        if closed is None:
            return
        self.ctx.buy_volume = closed.buy_volume
        self.ctx.sell_volume = closed.sell_volume
        self.logger.debug(
            f"Updated volumes — Buy: {closed.buy_volume:.2f}, Sell: {closed.sell_volume:.2f}"
        )

    def on_stream_status(self, status: StreamStatus) -> None:
        if status.kind == STREAM_OPEN:
            self.logger.info("Trade stream open.")
            return
        self.ctx.stale = True
        self.logger.warning(f"Trade stream {status.kind}: {status.error}. Series marked stale.")

    def on_tick(self, now_ms: int) -> None:
        """Generate a signal, hand it to the position machine, manage the position."""
        ctx = self.ctx
        series = ctx.series
        self.ticks += 1
        if series.last is None:
            self.logger.warning("No closed candles yet; skipping analysis.")
            return
        if ctx.stale:
            self.logger.warning("Series is stale; analysing with the data at hand.")

        machine = ctx.position_machine
        new_signal = ctx.signal_engine.evaluate(
            series, ctx.buy_volume, ctx.sell_volume, position_open=machine.is_open,
        )
        if new_signal is not None:
            if ctx.pending_signal is not None:
                self.logger.debug("Overwriting unconsumed pending signal.")
            ctx.pending_signal = new_signal

        self._log_status(new_signal is not None)

        if ctx.pending_signal is not None:
            machine.accept_signal(ctx.pending_signal, series)
            ctx.pending_signal = None

        machine.manage(series)

    async def reconcile_if_stale(self, now_ms: int) -> None:
        """Backfill missed candles while the series is stale, rate-limited."""
        ctx = self.ctx
        if not ctx.stale or now_ms - ctx.last_reconcile_ms < self.reconcile_retry_ms:
            return
        ctx.last_reconcile_ms = now_ms

        reconciler = ctx.reconciler
        last = ctx.series.last.open_time if ctx.series.last is not None else None
        start = reconciler.gap_start(last, now_ms)
        if start is None:
            ctx.stale = False
            self.logger.info("Series caught up; no longer stale.")
            return

        self.logger.info(f"Series stale — backfilling from {start}.")
        # The consumer is suspended during the fetch, so nothing else can
        # touch the series until the pages are merged below.
        pages = await asyncio.to_thread(reconciler.fetch_gap, start, now_ms)
        result = reconciler.apply(ctx.series, pages, now_ms)

        partial = ctx.aggregator.current_partial
        if partial is not None and ctx.series.last is not None and partial.open_time <= ctx.series.last.open_time:
            ctx.aggregator.discard_partial()

        if result.merged:
            try:
                ctx.store.save(ctx.series)
            except Exception as exc:
                self.logger.error(f"Failed to persist series after backfill: {exc}")

        if result.gap_closed and result.error is None:
            ctx.stale = False
        self.logger.info(
            f"Backfill merged {result.merged} candle(s) from {result.pages} page(s); "
            f"stale={ctx.stale}."
        )

    def shutdown(self) -> None:
        """Discard the partial candle; only fully elapsed windows are kept."""
        self.ctx.aggregator.discard_partial()
        if self.ctx.trade_logger is not None:
            try:
                summary = self.ctx.trade_logger.summary()
                self.logger.info(f"Session summary: {summary}")
            except Exception as exc:
                self.logger.error(f"Could not summarise trade log: {exc}")
        self.logger.info("Pipeline consumer stopped.")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _log_status(self, has_signal: bool) -> None:
        ctx = self.ctx
        ind = ctx.signal_engine.indicators(ctx.series)

        def fmt(values) -> str:
            v = IndicatorSet.latest(values)
            return f"{v:.2f}" if v is not None else "n/a"

        self.logger.info(
            f"Symbol: {ctx.market.symbol}, Price: {ctx.series.last.close}, "
            f"Trade Signal: {'Yes' if has_signal else 'No'}, "
            f"MACD Histogram: {fmt(ind.macd_histogram)}, "
            f"SMA fast: {fmt(ind.fast_ma)}, SMA slow: {fmt(ind.slow_ma)}, "
            f"Buy Volume: {ctx.buy_volume:.2f}, Sell Volume: {ctx.sell_volume:.2f}, "
            f"Volume Delta: {volume_delta(ctx.buy_volume, ctx.sell_volume):.2f}, "
            f"Position: {ctx.position_machine.state}"
        )


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 1: INIT
# ═══════════════════════════════════════════════════════════════════════════

def load_config(config_path: Path) -> dict:
    """Read and return the JSON configuration file."""
    with open(config_path, "r") as f:
        return json.load(f)


def resolve_path(value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else ROOT / path


def init(config_path: Optional[Path] = None) -> tuple[dict, logging.Logger]:
    """
    Stage 1: load configuration, setup logger, ensure directories exist.

    Returns
    -------
    config : dict
        Parsed contents of ``trading_config.json``.
    logger : logging.Logger
        Configured rotating logger.
    """
    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    config = load_config(config_path)

    log_path = resolve_path(config["data_paths"]["log_path"]) / "trading_pipeline.log"
    log_level = config.get("log_level", "INFO")
    logger = setup_logger("candle_trader", log_path, level=log_level)

    logger.info("=" * 60)
    logger.info("Candle Trading Pipeline starting")
    logger.info("=" * 60)
    logger.info("Stage 1 — INIT")
    logger.info(f"Config loaded from: {config_path}")
    logger.info(
        f"Strategy: {config.get('strategy_name', 'n/a')} | Symbol: {config['symbol']} | "
        f"Timeframe: {config['timeframe']} | Exchange: {config['exchange']}"
    )
    return config, logger


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 2: BUILD
# ═══════════════════════════════════════════════════════════════════════════

def build_fetcher(config: dict, logger: logging.Logger) -> HistoricalFetcher:
    source = config.get("historical_source", "ccxt")
    if source == "rest":
        return BinanceRestOHLCVFetcher(logger=logger)
    if source == "ccxt":
        return CcxtOHLCVFetcher(config["exchange"], logger=logger)
    raise ValueError(f"Unknown historical_source: {source!r}")


def build_context(
    config: dict,
    logger: logging.Logger,
    fetcher: Optional[HistoricalFetcher] = None,
    clock=wall_clock_ms,
) -> PipelineContext:
    """Stage 2: wire every component around an (empty) series."""
    logger.info("Stage 2 — BUILD")
    market = MarketSpec(config["symbol"], config["timeframe"], config["exchange"])
    params = {**DEFAULT_PARAMETERS, **config.get("parameters", {})}
    strategy = config.get("strategy", {})
    paths = config["data_paths"]

    store = CandleStore(resolve_path(paths["data_path"]), market.symbol, market.timeframe, logger=logger)
    reconciler = Reconciler(
        store,
        fetcher or build_fetcher(config, logger),
        market,
        retention=params["retention"],
        fetch_limit=params["fetch_limit"],
        max_pages=params["max_backfill_pages"],
        logger=logger,
    )
    series = CandleSeries(retention=params["retention"])
    calculator = IndicatorCalculator(strategy)
    trade_logger = TradeLogger(resolve_path(paths["trades_path"]), market.symbol, logger=logger)
    position_store = PositionStore(
        resolve_path(paths["positions_path"]) / f"{market.symbol.split(':')[0].replace('/', '')}_position.json",
        logger=logger,
    )

    return PipelineContext(
        market=market,
        series=series,
        store=store,
        reconciler=reconciler,
        aggregator=StreamAggregator(series, market.interval_ms, store=store, logger=logger),
        signal_engine=SignalEngine(
            calculator,
            market.symbol,
            atr_multiplier=strategy.get("atr_multiplier"),
            reward_ratio=strategy.get("reward_ratio", DEFAULT_REWARD_RATIO),
            logger=logger,
        ),
        position_machine=PositionStateMachine(
            calculator,
            trade_logger=trade_logger,
            position_store=position_store,
            clock=clock,
            logger=logger,
        ),
        trade_logger=trade_logger,
        clock=clock,
    )


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 3: RECONCILE
# ═══════════════════════════════════════════════════════════════════════════

def hydrate_data(ctx: PipelineContext, logger: logging.Logger) -> None:
    """Stage 3: load + backfill; raises ``InitializationError`` with no data."""
    logger.info("Stage 3 — RECONCILE")
    series, result = ctx.reconciler.reconcile(ctx.clock())
    ctx.series.merge(series)
    if not result.gap_closed or result.error is not None:
        ctx.stale = True
        logger.warning("Startup backfill incomplete; continuing with stale data and retrying on ticks.")


# ═══════════════════════════════════════════════════════════════════════════
# STAGE 4: LIVE
# ═══════════════════════════════════════════════════════════════════════════

async def heartbeat(logger: logging.Logger, interval_sec: int = 600):
    """Periodic heartbeat so we know the pipeline is alive."""
    while True:
        await asyncio.sleep(interval_sec)
        logger.info("Heartbeat: trading pipeline is running.")


def run_live(config: dict, ctx: PipelineContext, logger: logging.Logger) -> None:
    """Stage 4: stream trades and tick until interrupted."""
    logger.info("Stage 4 — LIVE")
    params = {**DEFAULT_PARAMETERS, **config.get("parameters", {})}
    stream_cfg = config.get("stream", {})

    async def main():
        queue: asyncio.Queue = asyncio.Queue(maxsize=params["queue_maxsize"])
        stop_event = asyncio.Event()

        stream_kwargs = {}
        if "ws_url" in stream_cfg:
            stream_kwargs["ws_url"] = stream_cfg["ws_url"]
        if "reconnect_delay_sec" in stream_cfg:
            stream_kwargs["reconnect_delay"] = stream_cfg["reconnect_delay_sec"]
        stream = BinanceTradeStream(ctx.market.symbol, queue, logger=logger, **stream_kwargs)
        ticker = Ticker(params["tick_interval_sec"], queue, clock=ctx.clock, stop_event=stop_event, logger=logger)
        pipeline = TradingPipeline(ctx, reconcile_retry_sec=params["reconcile_retry_sec"], logger=logger)

        def request_stop() -> None:
            if stop_event.is_set():
                return
            stream.stop()
            ticker.stop()
            try:
                queue.put_nowait(Shutdown("signal"))
            except asyncio.QueueFull:
                stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, request_stop)
            except (NotImplementedError, RuntimeError):
                pass

        producers = [
            asyncio.create_task(stream.run_forever()),
            asyncio.create_task(ticker.run()),
            asyncio.create_task(heartbeat(logger, params["heartbeat_sec"])),
        ]
        try:
            await pipeline.run(queue, stop_event)
        finally:
            stream.stop()
            ticker.stop()
            for task in producers:
                task.cancel()
            await asyncio.gather(*producers, return_exceptions=True)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        ctx.aggregator.discard_partial()
        logger.info("Trading pipeline stopped by user.")


# ═══════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════

def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    config, logger = init(Path(argv[0]) if argv else None)

    ctx = build_context(config, logger)

    try:
        hydrate_data(ctx, logger)
    except InitializationError as exc:
        logger.critical(f"Initialisation failed: {exc}")
        return 1

    run_live(config, ctx, logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
