"""
Append-only CSV record of every position open/close.

One file per session: ``<log_dir>/<SYMBOL>_trades_<YYYYmmddTHHMMSS>.csv``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

from candle_trader.core.models import Position
from candle_trader.helpers.data_helper import load_df_from_csv, save_df_to_csv

TRADE_LOG_COLUMNS = [
    "timestamp",
    "symbol",
    "type",
    "action",          # entry | exit
    "price",
    "stop_loss",
    "take_profit",
    "result",          # realized PnL on exit
    "reason",
]


def _round2(value) -> Optional[float]:
    return round(float(value), 2) if value is not None else None


class TradeLogger:
    """
    Parameters
    ----------
    log_dir : str | Path
        Directory for the CSV file.
    symbol : str
        Traded symbol; used in the file name.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        log_dir: str | Path,
        symbol: str,
        logger: Optional[logging.Logger] = None,
        session_ts: Optional[str] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        session_ts = session_ts or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        safe = symbol.split(":")[0].replace("/", "")
        self.path = Path(log_dir) / f"{safe}_trades_{session_ts}.csv"
        self.logger.info(f"Initialized trade logger for {symbol} -> {self.path}")

    def log_entry(self, position: Position) -> None:
        self._write(position, "entry", position.entry_price, position.entry_time)

    def log_exit(self, position: Position) -> None:
        self._write(position, "exit", position.exit_price, position.exit_time)

    def read_trades(self) -> pd.DataFrame:
        """Return the session's trade log (empty frame if nothing logged yet)."""
        if not self.path.exists():
            return pd.DataFrame(columns=TRADE_LOG_COLUMNS)
        return load_df_from_csv(str(self.path))

    def summary(self) -> dict:
        """Closed-trade count, wins, losses and total realized PnL for the session."""
        trades = self.read_trades()
        exits = trades.loc[trades["action"] == "exit", "result"]
        results = pd.to_numeric(exits, errors="coerce").dropna()
        return {
            "trades": int(len(exits)),
            "wins": int((results > 0).sum()),
            "losses": int((results < 0).sum()),
            "realized_pnl": float(results.sum()),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write(self, position: Position, action: str, price, timestamp) -> None:
        row = {
            "timestamp": timestamp,
            "symbol": position.symbol,
            "type": position.type.value,
            "action": action,
            "price": _round2(price),
            "stop_loss": _round2(position.stop_loss),
            "take_profit": _round2(position.take_profit),
            "result": _round2(position.realized_pnl) if action == "exit" else None,
            "reason": position.exit_reason.value if action == "exit" and position.exit_reason else None,
        }
        try:
            save_df_to_csv(
                pd.DataFrame([row], columns=TRADE_LOG_COLUMNS),
                str(self.path),
                index=False,
                mode="a",
            )
        except Exception as exc:
            self.logger.error(f"Error writing trade to CSV: {exc}")
            return
        self.logger.info(f"Trade {action} logged: {row}")
