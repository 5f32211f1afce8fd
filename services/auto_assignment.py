"""
Guide Assignment
Version: 1.0

AutoAssignmentEngine: greedy first-fit assignment of free guides to
confirmed, unassigned, upcoming local bookings.
AssignmentService: manual assign / remove / notes and guide schedules.
DEPENDS ON: booking_aggregator.py, guide_resolver.py, local_store.py,
            cache_store.py, single_flight.py, change_feed.py
"""

import logging
import time
from datetime import date
from typing import List, Optional, Tuple, Union

from errors import ConflictViolation, SchedulingError, SourceUnavailable, ValidationError
from schemas import (
    LOCAL_KEY_PREFIX,
    AssignmentOutcome,
    AssignmentReport,
    AssignmentResult,
    AssignmentSuggestion,
    Booking,
    BookingFilter,
    BookingSource,
    BookingStatus,
    ShiftStatus,
)
from services.change_feed import ASSIGNMENTS_CHANNEL, GUIDE_ASSIGNED_EVENT, GUIDE_REMOVED_EVENT
from services.metrics import ASSIGNMENT_RUN_DURATION, record_assignment_outcome

logger = logging.getLogger(__name__)


def parse_booking_ref(booking_ref: str) -> Tuple[BookingSource, Union[int, str]]:
    """
    Split a booking reference (a dedup key) into source and store id.

    "local:42" -> (LOCAL, 42); anything else is a Bokun booking id.
    """
    ref = (booking_ref or "").strip()
    if not ref:
        raise ValidationError("Empty booking reference")

    if ref.startswith(LOCAL_KEY_PREFIX):
        raw_id = ref[len(LOCAL_KEY_PREFIX):]
        try:
            return BookingSource.LOCAL, int(raw_id)
        except ValueError as e:
            raise ValidationError(f"Invalid local booking reference: {booking_ref!r}") from e
    return BookingSource.EXTERNAL, ref


class AutoAssignmentEngine:
    """
    One run at a time, bookings processed sequentially in (date, time) order.

    For each booking the alphabetically first free guide is taken. A lost
    race or any other failure is recorded against that booking and the run
    moves on.
    """

    LOCK_NAME = "auto_assign"

    def __init__(self, aggregator, resolver, local_store, single_flight, change_feed=None):
        self.aggregator = aggregator
        self.resolver = resolver
        self.local_store = local_store
        self.single_flight = single_flight
        self.change_feed = change_feed

    async def pending_bookings(self) -> List[Booking]:
        """Confirmed, unassigned, upcoming local bookings."""
        bookings = await self.aggregator.get_bookings(BookingFilter(
            sources={BookingSource.LOCAL},
            statuses={BookingStatus.CONFIRMED},
        ))
        return [b for b in bookings if not b.assigned_guide_id]

    async def auto_assign(self) -> AssignmentReport:
        """
        Run one assignment pass.

        Raises:
            RunInProgressError: Another run holds the lock
            FatalStoreError: The local store could not be read
        """
        async with self.single_flight.hold(self.LOCK_NAME):
            started = time.perf_counter()
            report = AssignmentReport()

            pending = await self.pending_bookings()
            logger.info(f"Auto-assign: {len(pending)} bookings need a guide")

            for booking in pending:
                result = await self._assign_one(booking)
                report.record(result)
                record_assignment_outcome(result.outcome.value)

            ASSIGNMENT_RUN_DURATION.observe(time.perf_counter() - started)
            logger.info(
                f"Auto-assign finished: assigned={report.assigned}, "
                f"no_candidates={report.no_candidates}, failed={report.failed}"
            )
            return report

    async def _assign_one(self, booking: Booking) -> AssignmentResult:
        ref = booking.dedup_key
        try:
            candidates = await self.resolver.available_guides(
                booking.tour_type, booking.booking_date, booking.booking_time
            )
            if not candidates:
                return AssignmentResult(booking_ref=ref, outcome=AssignmentOutcome.NO_CANDIDATES)

            guide = candidates[0]
            await self.local_store.update_guide_assignment(booking.id, guide.id)

        except ConflictViolation as e:
            logger.warning(f"Auto-assign conflict on {ref}: {e}")
            return AssignmentResult(booking_ref=ref, outcome=AssignmentOutcome.CONFLICT, error=str(e))
        except Exception as e:
            logger.error(f"Auto-assign failed on {ref}: {e}", exc_info=True)
            return AssignmentResult(booking_ref=ref, outcome=AssignmentOutcome.ERROR, error=str(e))

        guide_name = f"{guide.first_name} {guide.last_name}".strip()
        logger.info(f"Auto-assigned {guide_name} to {ref}")
        if self.change_feed is not None:
            await self.change_feed.publish(ASSIGNMENTS_CHANNEL, GUIDE_ASSIGNED_EVENT, {
                "booking_ref": ref,
                "guide_id": guide.id,
                "auto": True,
            })
        return AssignmentResult(
            booking_ref=ref,
            outcome=AssignmentOutcome.ASSIGNED,
            guide_id=guide.id,
            guide_name=guide_name,
        )

    async def suggestions(self) -> List[AssignmentSuggestion]:
        """Preview of what a run would consider, without writing anything."""
        return await self.resolver.suggest_assignments(await self.pending_bookings())


class AssignmentService:
    """Manual guide assignment across both booking sources."""

    def __init__(self, local_store, cache_store, resolver, change_feed=None):
        self.local_store = local_store
        self.cache_store = cache_store
        self.resolver = resolver
        self.change_feed = change_feed

    async def get_booking(self, booking_ref: str) -> Booking:
        source, store_id = parse_booking_ref(booking_ref)
        if source == BookingSource.LOCAL:
            booking = await self.local_store.get_booking(store_id)
        else:
            booking = await self.cache_store.get_booking(store_id)
        if booking is None:
            raise ValidationError(f"Unknown booking: {booking_ref}")
        return booking

    async def assign_guide(self, booking_ref: str, guide_id: str, notes: Optional[str] = None) -> Booking:
        """
        Assign a guide by hand.

        Raises:
            ValidationError: Unknown booking
            ConflictViolation: Booking already assigned, or the guide is not free for the slot
        """
        booking = await self.get_booking(booking_ref)
        if booking.assigned_guide_id:
            raise ConflictViolation(
                f"Booking {booking_ref} already has guide {booking.assigned_guide_id}; remove it first",
                {"booking_ref": booking_ref},
            )

        candidates = await self.resolver.available_guides(
            booking.tour_type, booking.booking_date, booking.booking_time
        )
        if guide_id not in {c.id for c in candidates}:
            raise ConflictViolation(
                f"Guide {guide_id} is not free for {booking.tour_type} at "
                f"{booking.booking_date} {booking.booking_time}",
                {"booking_ref": booking_ref, "guide_id": guide_id},
            )

        if booking.source == BookingSource.LOCAL:
            updated = await self.local_store.update_guide_assignment(booking.id, guide_id, notes)
        else:
            updated = await self._assign_external(booking, guide_id, notes)

        logger.info(f"Guide {guide_id} assigned to {booking_ref}")
        await self._publish(GUIDE_ASSIGNED_EVENT, booking_ref, guide_id)
        return updated

    async def _assign_external(self, booking: Booking, guide_id: str, notes: Optional[str]) -> Booking:
        claimed = await self.local_store.transition_shift(
            guide_id, booking.tour_type, booking.booking_date, booking.booking_time,
            ShiftStatus.AVAILABLE, ShiftStatus.ASSIGNED,
        )
        if not claimed:
            raise ConflictViolation(
                f"Guide {guide_id} no longer has an available shift",
                {"booking_ref": booking.dedup_key, "guide_id": guide_id},
            )

        try:
            return await self.cache_store.update_guide_assignment(booking.external_id, guide_id, notes)
        except (ConflictViolation, SourceUnavailable):
            await self.local_store.transition_shift(
                guide_id, booking.tour_type, booking.booking_date, booking.booking_time,
                ShiftStatus.ASSIGNED, ShiftStatus.AVAILABLE,
            )
            raise

    async def remove_guide(self, booking_ref: str) -> Optional[str]:
        """
        Clear the guide and release their shift.

        Returns:
            The guide that was removed, or None
        """
        source, store_id = parse_booking_ref(booking_ref)
        if source == BookingSource.LOCAL:
            previous = await self.local_store.clear_guide_assignment(store_id)
        else:
            previous = await self._remove_external(booking_ref, store_id)

        if previous:
            logger.info(f"Guide {previous} removed from {booking_ref}")
            await self._publish(GUIDE_REMOVED_EVENT, booking_ref, previous)
        return previous

    async def _remove_external(self, booking_ref: str, external_id: str) -> Optional[str]:
        # Shift first, cache second; a failed cache write re-claims the shift.
        booking = await self.get_booking(booking_ref)
        previous = booking.assigned_guide_id
        if not previous:
            return None

        slot = (booking.tour_type, booking.booking_date, booking.booking_time)
        released = await self.local_store.transition_shift(
            previous, *slot, ShiftStatus.ASSIGNED, ShiftStatus.AVAILABLE,
        )

        try:
            await self.cache_store.clear_guide_assignment(external_id)
        except (SourceUnavailable, ValidationError):
            if released:
                try:
                    await self.local_store.transition_shift(
                        previous, *slot, ShiftStatus.AVAILABLE, ShiftStatus.ASSIGNED,
                    )
                except SchedulingError as e:
                    logger.error(f"Could not restore shift of guide {previous} for {booking_ref}: {e}")
            raise
        return previous

    async def update_guide_notes(self, booking_ref: str, notes: Optional[str]) -> None:
        source, store_id = parse_booking_ref(booking_ref)
        if source == BookingSource.LOCAL:
            await self.local_store.update_guide_notes(store_id, notes)
        else:
            await self.cache_store.update_guide_notes(store_id, notes)

    async def guide_schedule(self, employee_id: str, start: date, end: date) -> List[Booking]:
        """Bookings assigned to a guide in a date range, both sources."""
        if start > end:
            raise ValidationError("start must not be after end")

        local = await self.local_store.query(BookingFilter(
            start_date=start,
            end_date=end,
            guide_ids={employee_id},
            statuses={BookingStatus.CONFIRMED, BookingStatus.PENDING},
        ))
        try:
            external = await self.cache_store.query(BookingFilter(
                start_date=start,
                end_date=end,
                guide_ids={employee_id},
                statuses={BookingStatus.CONFIRMED},
            ))
        except SourceUnavailable as e:
            logger.warning(f"Schedule for {employee_id} is missing Bokun bookings: {e}")
            external = []

        return sorted(local + external, key=lambda b: (b.booking_date, b.booking_time))

    async def _publish(self, event: str, booking_ref: str, guide_id: str) -> None:
        if self.change_feed is not None:
            await self.change_feed.publish(ASSIGNMENTS_CHANNEL, event, {
                "booking_ref": booking_ref,
                "guide_id": guide_id,
            })
