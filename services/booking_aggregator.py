"""
Booking Aggregator
Version: 1.0

One deduplicated, future-only, time-ordered view over local bookings
and Bokun bookings. The cache is always preferred; the live Bokun API is
a degraded fallback.
DEPENDS ON: local_store.py, cache_store.py, bokun_client.py, transformers.py
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from config import FALLBACK_EMPTY_OR_ERROR, FALLBACK_STALE, get_settings
from errors import FatalStoreError, SourceUnavailable, ValidationError
from schemas import Booking, BookingFilter, BookingSource, ProductMapping, normalize_time_slot
from services.metrics import LIVE_FALLBACKS_TOTAL
from services.transformers import from_bokun_raw, tour_type_index

logger = logging.getLogger(__name__)
settings = get_settings()


def business_now(timezone_name: Optional[str] = None) -> datetime:
    """Current wall-clock time in the business timezone, without tzinfo."""
    tz = ZoneInfo(timezone_name or settings.TIMEZONE)
    return datetime.now(tz).replace(tzinfo=None)


def dedupe(bookings: Iterable[Booking]) -> List[Booking]:
    """Keep the first booking seen for every dedup key."""
    seen: Dict[str, Booking] = {}
    for booking in bookings:
        if booking.dedup_key not in seen:
            seen[booking.dedup_key] = booking
    return list(seen.values())


def matches(booking: Booking, f: BookingFilter) -> bool:
    """In-memory filter predicates applied to the merged list."""
    if f.tour_types and booking.tour_type not in f.tour_types:
        return False
    if f.guide_ids and booking.assigned_guide_id not in f.guide_ids:
        return False
    if f.assigned_only and not booking.assigned_guide_id:
        return False
    if f.statuses and booking.status not in f.statuses:
        return False
    if f.start_date and booking.booking_date < f.start_date:
        return False
    if f.end_date and booking.booking_date > f.end_date:
        return False
    if f.booking_time and booking.booking_time != f.booking_time:
        return False
    if f.search:
        needle = f.search.strip().lower()
        haystack = f"{booking.customer.name} {booking.customer.email}".lower()
        if needle and needle not in haystack:
            return False
    return True


class BookingAggregator:
    """
    Merges LOCAL and EXTERNAL bookings.

    Rules:
    - LOCAL failures are fatal (FatalStoreError)
    - EXTERNAL failures degrade to an empty external set
    - Cached rows precede live rows, so the cached version wins a duplicate
    - Past bookings are dropped; output is sorted by (date, time)
    """

    def __init__(
        self,
        local_store,
        cache_store,
        remote_client,
        catalog,
        fallback_policy: Optional[str] = None,
        max_concurrency: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        stale_hours: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.local_store = local_store
        self.cache_store = cache_store
        self.remote_client = remote_client
        self.catalog = catalog
        self.fallback_policy = fallback_policy or settings.FALLBACK_POLICY
        self.max_concurrency = max_concurrency or settings.REMOTE_MAX_CONCURRENCY
        self.fetch_timeout = fetch_timeout or settings.REMOTE_FETCH_TIMEOUT
        self.stale_hours = stale_hours or settings.CACHE_STALE_HOURS
        self.clock = clock or business_now

    async def get_bookings(self, booking_filter: Optional[BookingFilter] = None) -> List[Booking]:
        """
        Return the merged booking view.

        Raises:
            ValidationError: Malformed filter
            FatalStoreError: Local store unreachable
        """
        f = self._validate(booking_filter or BookingFilter())

        # Stores only see the window; every other predicate runs on the merged list.
        window = BookingFilter(
            start_date=f.start_date,
            end_date=f.end_date,
            booking_time=f.booking_time,
        )

        fetches = []
        if BookingSource.LOCAL in f.sources:
            fetches.append(self.local_store.query(window))
        if BookingSource.EXTERNAL in f.sources:
            fetches.append(self._external_bookings(window))

        merged: List[Booking] = []
        for part in await asyncio.gather(*fetches):
            merged.extend(part)

        now = self.clock()
        bookings = [
            b for b in dedupe(merged)
            if matches(b, f) and b.starts_at >= now
        ]
        bookings.sort(key=lambda b: (b.booking_date, b.booking_time))
        return bookings

    def _validate(self, f: BookingFilter) -> BookingFilter:
        if f.start_date and f.end_date and f.start_date > f.end_date:
            raise ValidationError(
                "start_date must not be after end_date",
                {"start_date": f.start_date.isoformat(), "end_date": f.end_date.isoformat()},
            )
        if f.booking_time is not None:
            try:
                f = f.model_copy(update={"booking_time": normalize_time_slot(f.booking_time)})
            except ValueError as e:
                raise ValidationError(str(e)) from e
        return f

    # === EXTERNAL ===

    async def _external_bookings(self, window: BookingFilter) -> List[Booking]:
        cached: List[Booking] = []
        cache_failed = False
        try:
            cached = await self.cache_store.query(window)
        except SourceUnavailable as e:
            logger.warning(f"Booking cache read failed, falling back to live API: {e}")
            cache_failed = True

        reason = await self._fallback_reason(cached, cache_failed)
        if reason is None:
            return cached

        LIVE_FALLBACKS_TOTAL.labels(reason=reason).inc()
        live = await self._fetch_live(window)
        logger.info(f"Live fallback ({reason}) returned {len(live)} external bookings")
        return cached + live

    async def _fallback_reason(self, cached: List[Booking], cache_failed: bool) -> Optional[str]:
        if cache_failed:
            return "cache_error"

        stale = await self._cache_is_stale()
        if stale:
            logger.warning(f"Booking cache is older than {self.stale_hours}h")

        if cached:
            return None
        if self.fallback_policy == FALLBACK_EMPTY_OR_ERROR:
            return "cache_empty"
        if self.fallback_policy == FALLBACK_STALE and stale:
            return "cache_stale"
        return None

    async def _cache_is_stale(self) -> bool:
        try:
            meta = await self.cache_store.get_metadata()
        except SourceUnavailable as e:
            logger.debug(f"Cache metadata unavailable: {e}")
            return True

        if meta is None or meta.last_full_sync is None:
            return True
        last_sync = meta.last_full_sync
        if last_sync.tzinfo is None:
            last_sync = last_sync.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - last_sync > timedelta(hours=self.stale_hours)

    async def _fetch_live(self, window: BookingFilter) -> List[Booking]:
        try:
            mappings = await self.catalog.list_active()
        except (FatalStoreError, SourceUnavailable) as e:
            logger.warning(f"Cannot load product mappings for live fallback: {e}")
            return []

        if not mappings:
            return []

        today = self.clock().date()
        start = window.start_date or today - timedelta(days=settings.SYNC_DAYS_BACK)
        end = window.end_date or today + timedelta(days=settings.SYNC_DAYS_FORWARD)
        tour_types = tour_type_index(mappings)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch_product(mapping: ProductMapping) -> List[Booking]:
            async with semaphore:
                return await self._fetch_product(mapping, start, end, tour_types)

        results = await asyncio.gather(*(fetch_product(m) for m in mappings))
        return [booking for product_bookings in results for booking in product_bookings]

    async def _fetch_product(self, mapping: ProductMapping, start, end, tour_types: Dict[str, str]) -> List[Booking]:
        product_id = mapping.external_product_id
        try:
            raw_bookings = await asyncio.wait_for(
                self.remote_client.fetch_bookings(product_id, start, end),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Live fetch for product {product_id} timed out after {self.fetch_timeout}s")
            return []
        except SourceUnavailable as e:
            logger.warning(f"Live fetch for product {product_id} failed: {e}")
            return []

        bookings = []
        for raw in raw_bookings:
            try:
                bookings.append(from_bokun_raw(raw, product_id, tour_types))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed Bokun booking for product {product_id}: {e}")
        return bookings
