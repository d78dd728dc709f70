"""
Single-position paper trading state machine.

    Idle --accept_signal--> Open --manage (exit fires)--> Idle

At most one position is open at any time.  Exits are checked against the
latest closed candle in priority order: stop loss, take profit, indicator
reversal (fast SMA crossing back through slow SMA).  Entries and exits are
written to the trade log; the open position is persisted so it survives a
restart.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from candle_trader.core.models import ExitReason, Position, Signal, SignalType
from candle_trader.core.series import CandleSeries
from candle_trader.strategies.indicators import IndicatorCalculator, IndicatorSet

STATE_IDLE = "idle"
STATE_OPEN = "open"


def iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def realized_pnl(position: Position, exit_price: float) -> float:
    if position.type == SignalType.LONG:
        return exit_price - position.entry_price
    return position.entry_price - exit_price


class PositionStateMachine:
    """
    Parameters
    ----------
    calculator : IndicatorCalculator
        Used for the reversal check on entry and on every ``manage`` call.
    trade_logger : TradeLogger, optional
        Receives every entry and exit.
    position_store : PositionStore, optional
        Persists the open position; an open position found on disk is
        restored at construction.
    clock : callable, optional
        Returns the current time in ms; defaults to wall-clock time.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        calculator: IndicatorCalculator,
        trade_logger=None,
        position_store=None,
        clock: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.calculator = calculator
        self.trade_logger = trade_logger
        self.position_store = position_store
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.logger = logger or logging.getLogger(__name__)
        self.position: Optional[Position] = None

        if self.position_store is not None:
            self.position = self.position_store.load()
            if self.position is not None:
                self.logger.info(
                    f"Restored open {self.position.type.value.upper()} position for "
                    f"{self.position.symbol} @ {self.position.entry_price} from disk."
                )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return STATE_OPEN if self.is_open else STATE_IDLE

    @property
    def is_open(self) -> bool:
        return self.position is not None and self.position.is_open

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def accept_signal(self, signal: Optional[Signal], series: CandleSeries) -> Optional[Position]:
        """Open a position from *signal* unless one is already open.

        The entry condition is re-checked against the current indicators; a
        position whose crossover has already reversed is closed immediately
        at the entry price.  Returns the new position (open or already
        closed), or ``None`` when nothing happened.
        """
        if signal is None or self.is_open:
            return None

        position = Position(
            type=signal.type,
            entry_price=signal.entry_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            symbol=signal.symbol,
            entry_time=iso_from_ms(self.clock()),
        )
        self.position = position
        self.logger.info(
            f"Entered {position.type.value.upper()} trade for {position.symbol} "
            f"at {position.entry_price} (sl={position.stop_loss}, tp={position.take_profit})"
        )
        if self.trade_logger is not None:
            self.trade_logger.log_entry(position)

        if self._reversed(position, self.calculator.compute(series.closes())):
            self.logger.info(
                f"Immediate exit for {position.type.value.upper()} trade for "
                f"{position.symbol} at {position.entry_price} due to unfavorable SMA crossover."
            )
            self._close(position.entry_price, ExitReason.INDICATOR_REVERSAL)
        else:
            self._persist()
        return position

    def manage(self, series: CandleSeries) -> Optional[Position]:
        """Evaluate exit conditions on the latest candle.

        Returns the closed position when an exit fired, else ``None``.
        """
        if not self.is_open or series.last is None:
            return None

        position = self.position
        price = series.last.close
        reason = self.exit_reason(position, price, self.calculator.compute(series.closes()))
        if reason is None:
            return None

        self.logger.info(
            f"Exiting {position.type.value.upper()} trade for {position.symbol} "
            f"at {price} due to {reason.value}"
        )
        return self._close(price, reason)

    # ------------------------------------------------------------------
    # Exit logic
    # ------------------------------------------------------------------

    def exit_reason(
        self,
        position: Position,
        price: float,
        indicators: IndicatorSet,
    ) -> Optional[ExitReason]:
        """First matching exit in priority order, or ``None``."""
        if position.type == SignalType.LONG:
            if price <= position.stop_loss:
                return ExitReason.STOP_LOSS
            if price >= position.take_profit:
                return ExitReason.TAKE_PROFIT
        else:
            if price >= position.stop_loss:
                return ExitReason.STOP_LOSS
            if price <= position.take_profit:
                return ExitReason.TAKE_PROFIT
        if self._reversed(position, indicators):
            return ExitReason.INDICATOR_REVERSAL
        return None

    @staticmethod
    def _reversed(position: Position, indicators: IndicatorSet) -> bool:
        fast = IndicatorSet.latest(indicators.fast_ma)
        slow = IndicatorSet.latest(indicators.slow_ma)
        if fast is None or slow is None:
            return False
        if position.type == SignalType.LONG:
            return fast < slow
        return fast > slow

    def _close(self, price: float, reason: ExitReason) -> Position:
        position = self.position
        position.exit_price = price
        position.exit_time = iso_from_ms(self.clock())
        position.realized_pnl = realized_pnl(position, price)
        position.exit_reason = reason
        self.position = None

        if self.trade_logger is not None:
            self.trade_logger.log_exit(position)
        self._persist()
        return position

    def _persist(self) -> None:
        if self.position_store is None:
            return
        try:
            self.position_store.save(self.position)
        except Exception as exc:
            self.logger.error(f"Failed to persist position: {exc}")
