"""
Bokun Cache Store
Version: 1.0

Local mirror of Bokun bookings plus sync metadata.
Failures surface as SourceUnavailable so readers can degrade.
DEPENDS ON: models.py, services/transformers.py
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from errors import ConflictViolation, SourceUnavailable, ValidationError
from models import CacheSyncMetadata, CachedBokunBooking
from schemas import Booking, BookingFilter, CacheMetadata
from services.query_filters import apply_booking_filter
from services.transformers import from_cache_row

logger = logging.getLogger(__name__)

FULL_SCOPE = "full"

# Columns the sync never overwrites on conflict.
ADMIN_OWNED_COLUMNS = {"assigned_guide_id", "guide_notes"}
_IMMUTABLE_COLUMNS = {"id", "bokun_booking_id", "created_at"}


def booking_upsert(rows: List[Dict[str, Any]]):
    """INSERT ... ON CONFLICT (bokun_booking_id) DO UPDATE that leaves admin-owned columns alone."""
    stmt = insert(CachedBokunBooking).values(rows)
    refreshed = {
        name: stmt.excluded[name]
        for name in rows[0].keys()
        if name not in ADMIN_OWNED_COLUMNS and name not in _IMMUTABLE_COLUMNS
    }
    refreshed["updated_at"] = func.now()
    return stmt.on_conflict_do_update(
        index_elements=[CachedBokunBooking.bokun_booking_id],
        set_=refreshed,
    )


def metadata_upsert(meta: CacheMetadata):
    """Upsert one metadata scope. A NULL last_full_sync keeps the stored one."""
    stmt = insert(CacheSyncMetadata).values(
        scope=meta.scope,
        last_full_sync=meta.last_full_sync,
        total_bookings_cached=meta.total_bookings_cached,
        sync_status=meta.sync_status.value,
        sync_error=meta.sync_error,
    )
    return stmt.on_conflict_do_update(
        index_elements=[CacheSyncMetadata.scope],
        set_={
            "last_full_sync": func.coalesce(stmt.excluded.last_full_sync, CacheSyncMetadata.last_full_sync),
            "total_bookings_cached": stmt.excluded.total_bookings_cached,
            "sync_status": stmt.excluded.sync_status,
            "sync_error": stmt.excluded.sync_error,
            "updated_at": func.now(),
        },
    )


def guarded_cache_assignment(external_id: str, guide_id: str, notes: Optional[str] = None):
    """UPDATE ... RETURNING that only applies while the cached booking has no guide."""
    return (
        update(CachedBokunBooking)
        .where(
            CachedBokunBooking.bokun_booking_id == external_id,
            CachedBokunBooking.assigned_guide_id.is_(None),
        )
        .values(assigned_guide_id=guide_id, guide_notes=notes)
        .returning(CachedBokunBooking)
    )


class CacheStore:
    """Cached external bookings and their sync metadata."""

    UPSERT_CHUNK_SIZE = 500

    def __init__(self, session_factory):
        self._session_factory = session_factory

    # === BOOKINGS ===

    async def query(self, booking_filter: BookingFilter) -> List[Booking]:
        stmt = apply_booking_filter(select(CachedBokunBooking), CachedBokunBooking, booking_filter)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Cache query failed: {e}")
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e

        return [from_cache_row(row) for row in rows]

    async def get_booking(self, external_id: str) -> Optional[Booking]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CachedBokunBooking).where(CachedBokunBooking.bokun_booking_id == external_id)
                )
                row = result.scalars().first()
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e
        return from_cache_row(row) if row is not None else None

    async def upsert(self, rows: List[Dict[str, Any]]) -> int:
        """
        Insert or refresh cache rows keyed by bokun_booking_id.

        Admin-owned columns are left untouched on conflict, so a re-sync
        never drops a guide assignment.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        written = 0
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for start in range(0, len(rows), self.UPSERT_CHUNK_SIZE):
                        chunk = rows[start:start + self.UPSERT_CHUNK_SIZE]
                        await session.execute(booking_upsert(chunk))
                        written += len(chunk)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Cache upsert failed after {written} rows: {e}")
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e

        logger.debug(f"Upserted {written} cached bookings")
        return written

    async def count(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(func.count()).select_from(CachedBokunBooking))
                return int(result.scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e

    async def clear(self) -> int:
        """Delete every cached booking and all sync metadata."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(delete(CachedBokunBooking))
                    await session.execute(delete(CacheSyncMetadata))
                    deleted = result.rowcount or 0
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e

        logger.warning(f"Booking cache cleared ({deleted} rows)")
        return deleted

    # === ADMIN-OWNED FIELDS ===

    async def update_guide_assignment(
        self,
        external_id: str,
        guide_id: str,
        notes: Optional[str] = None
    ) -> Booking:
        """Assign a guide to a cached booking if it is still unassigned."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(guarded_cache_assignment(external_id, guide_id, notes))
                    row = result.scalars().first()
                    if row is None:
                        raise ConflictViolation(
                            f"Booking {external_id} is already assigned or not cached",
                            {"booking_ref": external_id},
                        )
                    return from_cache_row(row)
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e

    async def clear_guide_assignment(self, external_id: str) -> Optional[Booking]:
        """
        Remove the guide from a cached booking.

        Returns:
            The booking as it was before clearing

        Raises:
            ValidationError: If the booking is not cached
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(CachedBokunBooking)
                        .where(CachedBokunBooking.bokun_booking_id == external_id)
                        .with_for_update()
                    )
                    row = result.scalars().first()
                    if row is None:
                        raise ValidationError(f"Unknown booking: {external_id}")
                    before = from_cache_row(row)
                    row.assigned_guide_id = None
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e
        return before

    async def update_guide_notes(self, external_id: str, notes: Optional[str]) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CachedBokunBooking)
                        .where(CachedBokunBooking.bokun_booking_id == external_id)
                        .values(guide_notes=notes)
                    )
                    if result.rowcount == 0:
                        raise ValidationError(f"Unknown booking: {external_id}")
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Booking cache unavailable: {e}") from e

    # === METADATA ===

    async def get_metadata(self, scope: str = FULL_SCOPE) -> Optional[CacheMetadata]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheSyncMetadata).where(CacheSyncMetadata.scope == scope)
                )
                row = result.scalars().first()
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Cache metadata unavailable: {e}") from e
        return self._to_metadata(row) if row is not None else None

    async def product_metadata(self) -> List[CacheMetadata]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheSyncMetadata)
                    .where(CacheSyncMetadata.scope != FULL_SCOPE)
                    .order_by(CacheSyncMetadata.scope)
                )
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Cache metadata unavailable: {e}") from e
        return [self._to_metadata(row) for row in rows]

    async def set_metadata(self, meta: CacheMetadata) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(metadata_upsert(meta))
        except (SQLAlchemyError, OSError) as e:
            raise SourceUnavailable(f"Cache metadata unavailable: {e}") from e

    @staticmethod
    def _to_metadata(row) -> CacheMetadata:
        return CacheMetadata(
            scope=row.scope,
            last_full_sync=row.last_full_sync,
            total_bookings_cached=row.total_bookings_cached or 0,
            sync_status=row.sync_status or "pending",
            sync_error=row.sync_error,
        )
