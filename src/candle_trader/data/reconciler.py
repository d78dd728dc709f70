"""
Startup reconciliation of the persisted candle series against the exchange.

Three phases, each only firing when its condition is met:

    Phase 1 — **Local**
        Load the persisted series, drop invalid rows, normalise it by merging
        it with itself.  A corrupt file is moved aside and treated as empty.

    Phase 2 — **Gap detection**
        Empty series → the whole retention window is missing.  Otherwise the
        gap runs from ``last.open_time + interval`` to the last fully elapsed
        window.

    Phase 3 — **Paginated backfill**
        Fetch pages of at most ``fetch_limit`` candles until the gap is
        closed, a page comes back empty, no progress is made, or
        ``max_pages`` is reached.  All pages are merged in one batch and the
        series is persisted once.

The same backfill (phases 2–3 against the in-memory series) is re-run by the
pipeline whenever the series is marked stale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from candle_trader.core.errors import DataCorruptionError, InitializationError, TransientFetchError
from candle_trader.core.models import Candle, MarketSpec
from candle_trader.core.series import CandleSeries, DEFAULT_RETENTION, merge, validate
from candle_trader.exchanges.base import MAX_FETCH_LIMIT

DEFAULT_MAX_PAGES = 50


@dataclass
class BackfillPages:
    """Raw outcome of a paginated fetch, before merging."""
    pages: list[list[Candle]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def fetched(self) -> int:
        return sum(len(p) for p in self.pages)


@dataclass
class ReconcileResult:
    loaded: int = 0          # valid candles read from disk
    fetched: int = 0         # candles returned by the source
    pages: int = 0           # fetch calls that returned data
    merged: int = 0          # new open_time keys added to the series
    gap_closed: bool = True
    error: Optional[str] = None


class Reconciler:
    """
    Parameters
    ----------
    store : CandleStore
        Persistence for the series.
    fetcher : HistoricalFetcher
        Historical candle source.
    market : MarketSpec
        Symbol / timeframe being reconciled.
    retention : int
        Series cap; also the size of the initial window.
    fetch_limit : int
        Per-request candle limit (clamped to the provider max).
    max_pages : int
        Hard bound on fetch calls per backfill.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        store,
        fetcher,
        market: MarketSpec,
        retention: int = DEFAULT_RETENTION,
        fetch_limit: int = MAX_FETCH_LIMIT,
        max_pages: int = DEFAULT_MAX_PAGES,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.market = market
        self.interval_ms = market.interval_ms
        self.retention = retention
        self.fetch_limit = max(1, min(fetch_limit, MAX_FETCH_LIMIT))
        self.max_pages = max_pages
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconcile(self, now_ms: int) -> tuple[CandleSeries, ReconcileResult]:
        """Run all three phases at startup.

        Raises ``InitializationError`` when no closed candle is available
        afterwards.
        """
        series = self.load_local()
        result = ReconcileResult(loaded=len(series))
        tag = f"[{self.market.symbol} {self.market.timeframe}]"

        if len(series) == 0:
            self.logger.info(f"{tag} No usable local data — fetching initial window of {self.retention}.")
            start = self.gap_start(None, now_ms)
        else:
            gap = now_ms - series.last.open_time
            self.logger.info(
                f"{tag} Loaded {len(series)} candles, last={series.last.open_time}, "
                f"gap={gap / 1000:.0f}s."
            )
            start = self.gap_start(series.last.open_time, now_ms) if gap > self.interval_ms else None

        if start is not None:
            pages = self.fetch_gap(start, now_ms)
            self._apply_into(series, pages, now_ms, result)
        else:
            self.logger.info(f"{tag} Series already up to date.")

        self._persist(series)

        if len(series) == 0:
            raise InitializationError(
                f"{tag} No closed candles available after reconciliation."
            )

        self.logger.info(
            f"{tag} Reconciliation done: loaded={result.loaded}, pages={result.pages}, "
            f"fetched={result.fetched}, merged={result.merged}, total={len(series)}, "
            f"gap_closed={result.gap_closed}."
        )
        return series, result

    def backfill(self, series: CandleSeries, now_ms: int) -> ReconcileResult:
        """Close the gap between *series* and *now_ms* (runtime retry path)."""
        result = ReconcileResult(loaded=len(series))
        last = series.last.open_time if series.last is not None else None
        start = self.gap_start(last, now_ms)
        if start is None:
            return result
        pages = self.fetch_gap(start, now_ms)
        self._apply_into(series, pages, now_ms, result)
        if result.merged:
            self._persist(series)
        return result

    def load_local(self) -> CandleSeries:
        """Phase 1: read, validate and normalise the persisted series."""
        try:
            raw = self.store.load()
        except DataCorruptionError as exc:
            self.logger.warning(f"{exc}; discarding and refetching.")
            self.store.discard()
            raw = []

        valid = [item for item in raw if validate(item)]
        if len(valid) < len(raw):
            self.logger.info(f"Dropped {len(raw) - len(valid)} invalid stored candle(s).")
        return CandleSeries(merge(valid, valid, self.retention), retention=self.retention)

    def last_closed_open_time(self, now_ms: int) -> int:
        """``open_time`` of the newest window that has fully elapsed at *now_ms*."""
        return (now_ms // self.interval_ms) * self.interval_ms - self.interval_ms

    def gap_start(self, last_open_time: Optional[int], now_ms: int) -> Optional[int]:
        """Phase 2: first missing ``open_time``, or ``None`` if there is no gap.

        Gaps longer than the retention window start at the oldest candle that
        would survive truncation.
        """
        last_closed = self.last_closed_open_time(now_ms)
        window_floor = last_closed - (self.retention - 1) * self.interval_ms
        if last_open_time is None:
            return window_floor
        start = last_open_time + self.interval_ms
        if start > last_closed:
            return None
        if start < window_floor:
            self.logger.info(
                f"Gap of {(last_closed - start) // self.interval_ms + 1} candles exceeds "
                f"retention; backfilling the last {self.retention} only."
            )
            start = window_floor
        return start

    def fetch_gap(self, start_ms: int, now_ms: int) -> BackfillPages:
        """Phase 3: paginated fetch from *start_ms* up to the last closed window.

        Does not touch the series, so it can run off the event loop.
        """
        out = BackfillPages()
        last_closed = self.last_closed_open_time(now_ms)
        since = start_ms

        while since <= last_closed and len(out.pages) < self.max_pages:
            remaining = (last_closed - since) // self.interval_ms + 1
            limit = min(self.fetch_limit, remaining)
            try:
                page = self.fetcher.fetch(self.market.symbol, self.market.timeframe, since, limit)
            except TransientFetchError as exc:
                out.error = str(exc)
                self.logger.warning(f"Backfill fetch failed at since={since}: {exc}; will retry later.")
                break
            except Exception as exc:
                out.error = str(exc)
                self.logger.error(f"Backfill fetch failed at since={since}: {exc}", exc_info=True)
                break

            if not page:
                self.logger.info(f"Backfill: no data returned at since={since}; stopping.")
                break

            out.pages.append(page)
            next_since = max(c.open_time for c in page) + self.interval_ms
            if next_since <= since:
                self.logger.debug(f"Backfill: no progress at since={since}; stopping.")
                break
            since = next_since

        if len(out.pages) >= self.max_pages and since <= last_closed:
            self.logger.warning(f"Backfill stopped at page cap ({self.max_pages}).")

        self.logger.debug(f"Backfill fetched {out.fetched} candles in {len(out.pages)} page(s).")
        return out

    def apply(self, series: CandleSeries, pages: BackfillPages, now_ms: int) -> ReconcileResult:
        """Merge fetched pages into *series* in one batch (no persistence)."""
        result = ReconcileResult(loaded=len(series))
        self._apply_into(series, pages, now_ms, result)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply_into(
        self,
        series: CandleSeries,
        pages: BackfillPages,
        now_ms: int,
        result: ReconcileResult,
    ) -> None:
        # Only fully elapsed windows belong in the series.
        closed = [
            c for page in pages.pages for c in page
            if c.open_time + self.interval_ms <= now_ms
        ]
        result.pages = len(pages.pages)
        result.fetched = pages.fetched
        result.error = pages.error
        result.merged = series.merge(closed) if closed else 0

        last = series.last.open_time if series.last is not None else None
        result.gap_closed = last is not None and last >= self.last_closed_open_time(now_ms)

    def _persist(self, series: CandleSeries) -> None:
        try:
            self.store.save(series)
        except Exception as exc:
            self.logger.error(f"Failed to persist reconciled series: {exc}")
