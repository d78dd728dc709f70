"""
Local persistence for the candle pipeline.

Two JSON files live under the configured data directory:

    ``<SYMBOL>_<timeframe>.json``
        The closed-candle series, an array of candle objects, newest last.
        Rewritten after every merge/append.

    ``<SYMBOL>_position.json``
        The currently open position (or ``null``) so a restart does not
        forget it.

Both are written atomically (temp file + replace).

Usage::

    from candle_trader.data.storage import CandleStore

    store = CandleStore(data_dir="data/candles", symbol="BTC/USDT", timeframe="1m")
    series = store.load()      # may raise DataCorruptionError
    store.save(series)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from candle_trader.core.errors import DataCorruptionError
from candle_trader.core.models import Candle, Position


def _safe_symbol(symbol: str) -> str:
    """``BTC/USDT:USDT`` -> ``BTCUSDT``."""
    return symbol.split(":")[0].replace("/", "").upper()


def _atomic_write_json(path: Path, data) -> None:
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f)
    tmp.replace(path)


class CandleStore:
    """
    Reads and writes the persisted candle series.

    Parameters
    ----------
    data_dir : str | Path
        Directory for the JSON file.
    symbol : str
        Market symbol; used in the file name.
    timeframe : str
        Candle interval; used in the file name.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        data_dir: str | Path,
        symbol: str,
        timeframe: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.data_dir / f"{_safe_symbol(symbol)}_{timeframe}.json"
        self.logger = logger or logging.getLogger(__name__)

    def load(self) -> list[dict]:
        """Return the raw stored candle objects, or ``[]`` when absent.

        Raises ``DataCorruptionError`` when the file exists but is not a JSON
        array of objects.  Field-level validation is left to the caller so
        that individually bad rows can be dropped instead of the whole file.
        """
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
            raise DataCorruptionError(f"Unreadable series file {self.path}: {exc}") from exc

        if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
            raise DataCorruptionError(
                f"Series file {self.path} is not an array of candle objects."
            )
        return raw

    def save(self, candles: Iterable[Candle]) -> None:
        """Persist *candles* (a ``CandleSeries`` or any iterable of ``Candle``)."""
        data = [c.to_dict() for c in candles]
        _atomic_write_json(self.path, data)
        self.logger.debug(f"Persisted {len(data)} candles to {self.path.name}.")

    def discard(self) -> None:
        """Move a corrupt file aside so the next save starts clean."""
        if self.path.exists():
            backup = self.path.with_suffix(".corrupt")
            self.path.replace(backup)
            self.logger.warning(f"Corrupt series moved to {backup.name}.")


class PositionStore:
    """
    Persists the single open position so it survives restarts.

    File layout (``data/positions/BTCUSDT_position.json``)::

        {
          "type": "long",
          "entry_price": 95000.0,
          "stop_loss": 94800.0,
          "take_profit": 95400.0,
          "symbol": "BTC/USDT",
          "entry_time": "2026-02-24T12:00:00+00:00",
          "exit_time": null,
          "exit_price": null,
          "realized_pnl": null,
          "exit_reason": null
        }
    """

    def __init__(self, path: Path, logger: Optional[logging.Logger] = None) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def load(self) -> Optional[Position]:
        """Return the stored open position, or ``None`` if missing/unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
            if raw is None:
                return None
            position = Position.from_dict(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            self.logger.warning(f"Ignoring unreadable position file {self.path}: {exc}")
            return None
        return position if position.is_open else None

    def save(self, position: Optional[Position]) -> None:
        """Atomically write the open position (``None`` clears it)."""
        data = position.to_dict() if position is not None and position.is_open else None
        _atomic_write_json(self.path, data)
