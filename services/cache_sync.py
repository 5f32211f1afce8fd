"""
Cache Sync Orchestrator
Version: 1.0

Refreshes the Bokun booking cache for every active product mapping and
reports cache health.
DEPENDS ON: cache_store.py, bokun_client.py, local_store.py (ProductCatalog)
"""

import asyncio
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import get_settings
from errors import FatalStoreError, SourceUnavailable
from schemas import (
    CacheMetadata,
    HealthReport,
    ProductMapping,
    ProductSyncResult,
    SyncReport,
    SyncStatus,
)
from services.cache_store import FULL_SCOPE
from services.change_feed import CACHE_CHANNEL, CACHE_SYNCED_EVENT
from services.metrics import CACHE_AGE_HOURS, record_sync_run
from services.transformers import cache_row_from_bokun, tour_type_index

logger = logging.getLogger(__name__)
settings = get_settings()


class CacheSyncOrchestrator:
    """
    Full-window cache refresh.

    Failures are collected into the SyncReport, per product or for the
    whole run when the catalog or the cache cannot be reached.
    """

    def __init__(
        self,
        cache_store,
        remote_client,
        catalog,
        change_feed=None,
        max_concurrency: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        stale_hours: Optional[int] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.cache_store = cache_store
        self.remote_client = remote_client
        self.catalog = catalog
        self.change_feed = change_feed
        self.max_concurrency = max_concurrency or settings.REMOTE_MAX_CONCURRENCY
        self.fetch_timeout = fetch_timeout or settings.REMOTE_FETCH_TIMEOUT
        self.stale_hours = stale_hours or settings.CACHE_STALE_HOURS
        self.today = today or (lambda: datetime.now(timezone.utc).date())

    def sync_window(self) -> Tuple[date, date]:
        today = self.today()
        return (
            today - timedelta(days=settings.SYNC_DAYS_BACK),
            today + timedelta(days=settings.SYNC_DAYS_FORWARD),
        )

    async def sync_all(self) -> SyncReport:
        """
        Fetch, transform, dedupe and upsert bookings for every active product.

        Re-running with unchanged upstream data leaves the row count unchanged.
        """
        started = time.perf_counter()
        report = SyncReport(started_at=datetime.now(timezone.utc))

        try:
            mappings = await self.catalog.list_active()
        except (FatalStoreError, SourceUnavailable) as e:
            logger.error(f"Cache sync could not load product mappings: {e}")
            return await self._abort(report, started, f"catalog: {e}")

        tour_types = tour_type_index(mappings)
        start, end = self.sync_window()
        logger.info(f"Cache sync starting: {len(mappings)} products, window {start} to {end}")

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(mapping: ProductMapping):
            async with semaphore:
                return await self._sync_product(mapping, start, end, tour_types)

        outcomes = await asyncio.gather(*(run(m) for m in mappings))

        # Dedupe across products; the first product to report a booking keeps it.
        rows_by_id: Dict[str, Dict[str, Any]] = {}
        for result, rows in outcomes:
            report.results.append(result)
            report.products_processed += 1
            if not result.success:
                report.errors.append(f"{result.product_id}: {result.error}")
            for row in rows:
                rows_by_id.setdefault(row["bokun_booking_id"], row)

        rows = list(rows_by_id.values())
        try:
            await self.cache_store.upsert(rows)
            total = await self.cache_store.count()
        except SourceUnavailable as e:
            logger.error(f"Cache sync could not write to the cache: {e}")
            return await self._abort(report, started, f"cache: {e}")

        for result in report.results:
            if result.success:
                result.bookings_cached = sum(1 for r in rows if r["product_id"] == result.product_id)

        report.total_bookings_cached = total
        report.finished_at = datetime.now(timezone.utc)

        all_failed = bool(mappings) and all(not r.success for r in report.results)
        await self._write_metadata(CacheMetadata(
            scope=FULL_SCOPE,
            # A run where every product failed does not count as a refresh.
            last_full_sync=None if all_failed else report.finished_at,
            total_bookings_cached=total,
            sync_status=SyncStatus.ERROR if all_failed else SyncStatus.COMPLETED,
            sync_error="; ".join(report.errors) or None,
        ))

        duration = time.perf_counter() - started
        record_sync_run(not all_failed, duration, total, partial=bool(report.errors))
        logger.info(
            f"Cache sync finished in {duration:.1f}s: {len(rows)} bookings from "
            f"{report.products_processed} products, {total} cached, {len(report.errors)} errors"
        )

        if self.change_feed is not None:
            await self.change_feed.publish(CACHE_CHANNEL, CACHE_SYNCED_EVENT, {
                "products_processed": report.products_processed,
                "total_bookings_cached": total,
                "errors": len(report.errors),
            })

        return report

    async def _sync_product(
        self,
        mapping: ProductMapping,
        start: date,
        end: date,
        tour_types: Dict[str, str]
    ) -> Tuple[ProductSyncResult, List[Dict[str, Any]]]:
        product_id = mapping.external_product_id
        result = ProductSyncResult(product_id=product_id, tour_type=mapping.local_tour_type, success=False)

        await self._write_metadata(CacheMetadata(scope=product_id, sync_status=SyncStatus.SYNCING))

        try:
            raw_bookings = await asyncio.wait_for(
                self.remote_client.fetch_bookings(product_id, start, end),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            result.error = f"timed out after {self.fetch_timeout}s"
        except SourceUnavailable as e:
            result.error = str(e)

        if result.error:
            logger.warning(f"Sync of product {product_id} failed: {result.error}")
            await self._write_metadata(CacheMetadata(
                scope=product_id,
                sync_status=SyncStatus.ERROR,
                sync_error=result.error,
            ))
            return result, []

        synced_at = datetime.now(timezone.utc)
        rows = []
        for raw in raw_bookings:
            try:
                rows.append(cache_row_from_bokun(raw, product_id, tour_types, synced_at))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed Bokun booking for product {product_id}: {e}")

        result.success = True
        result.bookings_fetched = len(raw_bookings)
        await self._write_metadata(CacheMetadata(
            scope=product_id,
            last_full_sync=synced_at,
            total_bookings_cached=len(rows),
            sync_status=SyncStatus.COMPLETED,
        ))
        return result, rows

    async def _abort(self, report: SyncReport, started: float, error: str) -> SyncReport:
        """Finish a run that could not proceed. The last successful sync time is kept."""
        report.errors.append(error)
        await self._write_metadata(CacheMetadata(
            scope=FULL_SCOPE,
            sync_status=SyncStatus.ERROR,
            sync_error=error,
        ))
        report.finished_at = datetime.now(timezone.utc)
        record_sync_run(False, time.perf_counter() - started, 0)
        return report

    async def _write_metadata(self, meta: CacheMetadata) -> None:
        try:
            await self.cache_store.set_metadata(meta)
        except SourceUnavailable as e:
            logger.warning(f"Could not record sync metadata for {meta.scope}: {e}")

    async def health(self) -> HealthReport:
        """Cache freshness. Staleness is a warning, never an error."""
        meta = await self.cache_store.get_metadata()
        products = await self.cache_store.product_metadata()
        total = await self.cache_store.count()

        report = HealthReport(total_cached_bookings=total, products=products)
        if meta is not None:
            report.sync_status = meta.sync_status
            report.last_full_sync = meta.last_full_sync

        if report.last_full_sync is not None:
            last_sync = report.last_full_sync
            if last_sync.tzinfo is None:
                last_sync = last_sync.replace(tzinfo=timezone.utc)
            age = datetime.now(timezone.utc) - last_sync
            report.age_hours = round(age.total_seconds() / 3600, 2)
            report.is_stale = age > timedelta(hours=self.stale_hours)
            CACHE_AGE_HOURS.set(report.age_hours)
        else:
            report.is_stale = True

        if report.is_stale:
            logger.warning(f"Booking cache is stale (last sync: {report.last_full_sync})")
        return report

    async def clear(self) -> int:
        """Drop every cached booking and all metadata."""
        deleted = await self.cache_store.clear()
        logger.warning(f"Cache cleared: {deleted} bookings removed")
        return deleted
