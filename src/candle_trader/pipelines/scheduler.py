"""
Periodic tick source for the analysis path.

The ticker never calls the strategy directly: it puts ``Tick`` items on the
same queue the trade stream feeds, so the single consumer serialises ticks
with trade events.  ``sleep`` and ``clock`` are injectable so tests can drive
logical time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


@dataclass
class Tick:
    now_ms: int


@dataclass
class Shutdown:
    """Queue sentinel: the consumer stops after this item."""
    reason: str = ""


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class Ticker:
    """
    Parameters
    ----------
    interval_sec : float
        Seconds between ticks.
    queue : asyncio.Queue
        Destination for ``Tick`` items.
    clock : callable, optional
        Returns the current time in ms.
    stop_event : asyncio.Event, optional
        Cancellation token; the loop exits once it is set.
    sleep : callable, optional
        Awaitable sleep, ``asyncio.sleep`` by default.
    """

    def __init__(
        self,
        interval_sec: float,
        queue: asyncio.Queue,
        clock: Callable[[], int] = wall_clock_ms,
        stop_event: Optional[asyncio.Event] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.interval_sec = interval_sec
        self.queue = queue
        self.clock = clock
        self.stop_event = stop_event or asyncio.Event()
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.ticks = 0

    async def run(self) -> None:
        self.logger.info(f"Ticker started (every {self.interval_sec}s).")
        while not self.stop_event.is_set():
            await self.sleep(self.interval_sec)
            if self.stop_event.is_set():
                break
            await self.queue.put(Tick(self.clock()))
            self.ticks += 1
        self.logger.info(f"Ticker stopped after {self.ticks} tick(s).")

    def stop(self) -> None:
        self.stop_event.set()
