"""
Guide Conflict Resolver
Version: 1.0

Answers "which guides are free for this tour, date and time slot".
A guide is free when they posted an AVAILABLE shift for exactly that slot,
are active and qualified for the tour, and are not already assigned to
any booking at that slot in either booking source.
DEPENDS ON: local_store.py, cache_store.py
"""

import logging
from datetime import date
from typing import Dict, List, Set

from errors import ValidationError
from schemas import (
    AssignmentSuggestion,
    Booking,
    BookingFilter,
    BookingStatus,
    Employee,
    EmployeeStatus,
    ShiftStatus,
    normalize_time_slot,
)

logger = logging.getLogger(__name__)

# Statuses that occupy a guide, per source.
LOCAL_BLOCKING_STATUSES = {BookingStatus.CONFIRMED, BookingStatus.PENDING}
EXTERNAL_BLOCKING_STATUSES = {BookingStatus.CONFIRMED}


def _slot_args(tour_type: str, booking_date, time_slot) -> str:
    if not tour_type:
        raise ValidationError("tour_type is required")
    if not isinstance(booking_date, date):
        raise ValidationError(f"Invalid date: {booking_date!r}")
    try:
        return normalize_time_slot(time_slot)
    except ValueError as e:
        raise ValidationError(str(e)) from e


class GuideConflictResolver:
    """Computes available guides. Read failures propagate; there is no fallback."""

    def __init__(self, local_store, cache_store):
        self.local_store = local_store
        self.cache_store = cache_store

    async def conflict_set(self, booking_date: date, time_slot: str) -> Set[str]:
        """Ids of guides already assigned at exactly this date and slot."""
        local = await self.local_store.query(BookingFilter(
            start_date=booking_date,
            end_date=booking_date,
            booking_time=time_slot,
            statuses=LOCAL_BLOCKING_STATUSES,
            assigned_only=True,
        ))
        external = await self.cache_store.query(BookingFilter(
            start_date=booking_date,
            end_date=booking_date,
            booking_time=time_slot,
            statuses=EXTERNAL_BLOCKING_STATUSES,
            assigned_only=True,
        ))

        busy = {
            b.assigned_guide_id
            for b in local + external
            if b.assigned_guide_id and b.booking_date == booking_date and b.booking_time == time_slot
        }
        if busy:
            logger.debug(f"Busy guides at {booking_date} {time_slot}: {sorted(busy)}")
        return busy

    async def available_guides(self, tour_type: str, booking_date: date, time_slot: str) -> List[Employee]:
        """
        Guides free for the slot, ordered by first name.

        Raises:
            ValidationError: Bad tour type, date or slot
            FatalStoreError / SourceUnavailable: Any store read failed
        """
        slot = _slot_args(tour_type, booking_date, time_slot)

        busy = await self.conflict_set(booking_date, slot)
        shifts = await self.local_store.available_shifts(tour_type, booking_date, slot)

        candidates: Dict[str, Employee] = {}
        for shift, employee in shifts:
            if shift.status != ShiftStatus.AVAILABLE or employee.status != EmployeeStatus.ACTIVE:
                continue
            if tour_type not in employee.tour_types:
                continue
            if employee.id in busy:
                continue
            candidates.setdefault(employee.id, employee)

        ordered = sorted(
            candidates.values(),
            key=lambda e: (e.first_name.casefold(), e.last_name.casefold(), e.id),
        )
        logger.debug(
            f"{len(ordered)} guides available for {tour_type} at {booking_date} {slot} "
            f"({len(shifts)} posted, {len(busy)} busy)"
        )
        return ordered

    async def suggest_assignments(self, bookings: List[Booking]) -> List[AssignmentSuggestion]:
        """Candidate guides for each unassigned booking; nothing is written."""
        suggestions = []
        for booking in bookings:
            if booking.assigned_guide_id:
                continue
            candidates = await self.available_guides(
                booking.tour_type, booking.booking_date, booking.booking_time
            )
            suggestions.append(AssignmentSuggestion(booking=booking, candidates=candidates))
        return suggestions
