from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from candle_trader.core.aggregator import StreamAggregator
from candle_trader.core.models import MarketSpec, Signal
from candle_trader.core.series import CandleSeries
from candle_trader.data.reconciler import Reconciler
from candle_trader.data.storage import CandleStore
from candle_trader.data.trade_log import TradeLogger
from candle_trader.pipelines.scheduler import wall_clock_ms
from candle_trader.strategies.position_manager import PositionStateMachine
from candle_trader.strategies.signal_engine import SignalEngine


@dataclass
class PipelineContext:
    """All mutable pipeline state, owned by the single queue consumer."""
    market: MarketSpec
    series: CandleSeries
    store: CandleStore
    reconciler: Reconciler
    aggregator: StreamAggregator
    signal_engine: SignalEngine
    position_machine: PositionStateMachine
    trade_logger: Optional[TradeLogger] = None
    clock: Callable[[], int] = wall_clock_ms

    # Latest closed candle's taker volume split.
    buy_volume: float = 0.0
    sell_volume: float = 0.0

    # At most one; a newer signal overwrites an unconsumed one.
    pending_signal: Optional[Signal] = None

    # Set by stream close/error or an incomplete backfill.
    stale: bool = False
    last_reconcile_ms: int = 0
