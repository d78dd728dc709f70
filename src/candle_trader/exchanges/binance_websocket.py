"""
Binance USD-M Futures WebSocket trade stream client.

Subscribes to ``<symbol>@trade`` and pushes every public trade, as a
``TradeEvent``, onto an ``asyncio.Queue`` owned by the pipeline.  Connection
lifecycle changes (open / close / error) are pushed onto the same queue as
``StreamStatus`` items so the consumer sees them in order with the trades.

The queue is bounded; when the consumer falls behind, ``put`` blocks the
reader, which in turn lets the socket buffer absorb the burst.

Usage::

    queue: asyncio.Queue = asyncio.Queue(maxsize=10_000)
    stream = BinanceTradeStream("BTC/USDT", queue)
    asyncio.create_task(stream.run_forever())
    ...
    stream.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from candle_trader.core.errors import StreamFailureError
from candle_trader.core.models import TradeEvent

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_WS_BASE = "wss://fstream.binance.com/ws"

# Seconds to wait before attempting a reconnect.
_RECONNECT_DELAY_SECS = 5

STREAM_OPEN = "open"
STREAM_CLOSE = "close"
STREAM_ERROR = "error"


@dataclass
class StreamStatus:
    """Lifecycle signal from the feed transport."""
    kind: str                                   # open | close | error
    error: Optional[StreamFailureError] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def stream_name(symbol: str) -> str:
    """``BTC/USDT:USDT`` -> ``btcusdt@trade``."""
    return symbol.split(":")[0].replace("/", "").lower() + "@trade"


def parse_trade(raw) -> Optional[TradeEvent]:
    """Convert a raw ``trade`` payload to a ``TradeEvent``; ``None`` for other events.

    Raises ``ValueError`` when price or quantity is not a finite number.
    """
    msg = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    data = msg.get("data", msg)
    if data.get("e") != "trade":
        return None
    price, quantity = float(data["p"]), float(data["q"])
    if not (math.isfinite(price) and math.isfinite(quantity)):
        raise ValueError(f"Non-finite trade payload: p={data['p']!r} q={data['q']!r}")
    return TradeEvent(
        price=price,
        quantity=quantity,
        trade_time_ms=int(data["T"]),
        is_buyer_maker=bool(data["m"]),
    )


# ---------------------------------------------------------------------------
# Stream client
# ---------------------------------------------------------------------------

class BinanceTradeStream:
    """
    Subscribe to the public trade stream of one symbol.

    Parameters
    ----------
    symbol : str
        ccxt unified symbol, e.g. ``"BTC/USDT"``.
    queue : asyncio.Queue
        Destination for ``TradeEvent`` and ``StreamStatus`` items.
    ws_url : str
        Base WebSocket URL.
    reconnect_delay : float
        Seconds to wait between reconnect attempts.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        symbol: str,
        queue: asyncio.Queue,
        ws_url: str = _WS_BASE,
        reconnect_delay: float = _RECONNECT_DELAY_SECS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.symbol = symbol
        self.queue = queue
        self.url = f"{ws_url.rstrip('/')}/{stream_name(symbol)}"
        self.reconnect_delay = reconnect_delay
        self.logger = logger or logging.getLogger(__name__)
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Connect and listen until :meth:`stop` is called, reconnecting on error."""
        self.logger.info(f"Starting trade stream for {self.symbol} ({self.url}).")
        while not self._stop_event.is_set():
            try:
                async with websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10
                ) as ws:
                    self.logger.info("Trade stream connected.")
                    await self.queue.put(StreamStatus(STREAM_OPEN))
                    await self._listen(ws)
                if self._stop_event.is_set():
                    break
                await self._report(STREAM_CLOSE, "server ended the stream")

            except (ConnectionClosedError, ConnectionClosedOK) as exc:
                if self._stop_event.is_set():
                    break
                await self._report(STREAM_CLOSE, f"connection closed ({exc})")

            except asyncio.CancelledError:
                raise

            except Exception as exc:
                if self._stop_event.is_set():
                    break
                await self._report(STREAM_ERROR, f"unexpected error: {exc}")

            if not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), self.reconnect_delay)
                except asyncio.TimeoutError:
                    pass

        self.logger.info("Trade stream stopped.")

    def stop(self) -> None:
        """Signal the connection loop to exit."""
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _report(self, kind: str, detail: str) -> None:
        self.logger.warning(
            f"Trade stream {kind}: {detail}. Reconnecting in {self.reconnect_delay}s …"
        )
        await self.queue.put(StreamStatus(kind, StreamFailureError(detail)))

    async def _listen(self, ws) -> None:
        """Receive messages and enqueue trade events."""
        async for raw in ws:
            if self._stop_event.is_set():
                break
            try:
                trade = parse_trade(raw)
            except Exception as exc:
                self.logger.error(f"Trade message handling error: {exc}", exc_info=True)
                continue
            if trade is not None:
                await self.queue.put(trade)
