"""
Service Wiring
Version: 1.0

Builds the scheduling services once per process. Used by main.py and worker.py.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import get_settings
from services.auto_assignment import AssignmentService, AutoAssignmentEngine
from services.bokun_client import BokunClient
from services.booking_aggregator import BookingAggregator
from services.cache_store import CacheStore
from services.cache_sync import CacheSyncOrchestrator
from services.change_feed import ChangeFeed
from services.guide_resolver import GuideConflictResolver
from services.local_store import LocalBookingStore, ProductCatalog
from services.single_flight import SingleFlight

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class SchedulingServices:
    local_store: LocalBookingStore
    cache_store: CacheStore
    catalog: ProductCatalog
    bokun: BokunClient
    aggregator: BookingAggregator
    resolver: GuideConflictResolver
    cache_sync: CacheSyncOrchestrator
    engine: AutoAssignmentEngine
    assignments: AssignmentService
    change_feed: Optional[ChangeFeed] = None

    async def close(self) -> None:
        await self.bokun.close()


def build_services(session_factory, redis_client=None, bokun: Optional[BokunClient] = None) -> SchedulingServices:
    """
    Args:
        session_factory: async_sessionmaker for the application database
        redis_client: redis.asyncio client; without it locks are per-process
                      and no change events are published
        bokun: Prebuilt Bokun client (defaults to one built from settings)
    """
    local_store = LocalBookingStore(session_factory)
    cache_store = CacheStore(session_factory)
    catalog = ProductCatalog(session_factory)
    bokun = bokun or BokunClient()
    change_feed = ChangeFeed(redis_client) if redis_client is not None else None

    if not bokun.configured:
        logger.warning("Bokun credentials missing: cache sync and live fallback will report the source unavailable")

    aggregator = BookingAggregator(local_store, cache_store, bokun, catalog)
    resolver = GuideConflictResolver(local_store, cache_store)

    return SchedulingServices(
        local_store=local_store,
        cache_store=cache_store,
        catalog=catalog,
        bokun=bokun,
        aggregator=aggregator,
        resolver=resolver,
        cache_sync=CacheSyncOrchestrator(cache_store, bokun, catalog, change_feed=change_feed),
        engine=AutoAssignmentEngine(
            aggregator,
            resolver,
            local_store,
            SingleFlight(redis_client, ttl=settings.AUTO_ASSIGN_LOCK_TTL),
            change_feed=change_feed,
        ),
        assignments=AssignmentService(local_store, cache_store, resolver, change_feed=change_feed),
        change_feed=change_feed,
    )
