"""
Local Booking Store
Version: 1.0

Async SQLAlchemy access to the local booking ledger, guide shifts and
the Bokun product mappings.
DEPENDS ON: models.py, services/transformers.py
"""

import logging
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import ConflictViolation, FatalStoreError, ValidationError
from models import BokunProduct, Employee as EmployeeRow, EmployeeShift, LocalBooking
from schemas import Booking, BookingFilter, Employee, ProductMapping, ShiftAvailability, ShiftStatus
from services.query_filters import apply_booking_filter
from services.transformers import employee_from_row, from_local_row, shift_from_row

logger = logging.getLogger(__name__)


def guarded_assignment(booking_id: int, guide_id: str, notes: Optional[str] = None):
    """UPDATE ... RETURNING that only applies while the booking has no guide."""
    return (
        update(LocalBooking)
        .where(
            LocalBooking.id == booking_id,
            LocalBooking.assigned_guide_id.is_(None),
        )
        .values(assigned_guide_id=guide_id, guide_notes=notes)
        .returning(LocalBooking)
    )


def shift_transition(
    employee_id: str,
    tour_type: str,
    shift_date: date,
    time_slot: str,
    from_status: ShiftStatus,
    to_status: ShiftStatus
):
    """UPDATE of one shift, guarded on its current status."""
    return (
        update(EmployeeShift)
        .where(
            EmployeeShift.employee_id == employee_id,
            EmployeeShift.tour_type == tour_type,
            EmployeeShift.shift_date == shift_date,
            EmployeeShift.time_slot == time_slot,
            EmployeeShift.status == from_status.value,
        )
        .values(status=to_status.value)
    )


class LocalBookingStore:
    """
    Local booking ledger.

    Every failure that is not a lost race surfaces as FatalStoreError;
    the local store has no fallback.
    """

    def __init__(self, session_factory):
        """
        Args:
            session_factory: async_sessionmaker bound to the application engine
        """
        self._session_factory = session_factory

    # === READS ===

    async def query(self, booking_filter: BookingFilter) -> List[Booking]:
        """Return local bookings matching the SQL-side filter predicates."""
        stmt = apply_booking_filter(select(LocalBooking), LocalBooking, booking_filter)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Local booking query failed: {e}")
            raise FatalStoreError(f"Local booking store unavailable: {e}") from e

        return [from_local_row(row) for row in rows]

    async def get_booking(self, booking_id: int) -> Optional[Booking]:
        try:
            async with self._session_factory() as session:
                row = await session.get(LocalBooking, booking_id)
        except (SQLAlchemyError, OSError) as e:
            raise FatalStoreError(f"Local booking store unavailable: {e}") from e
        return from_local_row(row) if row is not None else None

    async def available_shifts(
        self,
        tour_type: str,
        shift_date: date,
        time_slot: str
    ) -> List[Tuple[ShiftAvailability, Employee]]:
        """
        AVAILABLE shifts for the slot, joined to their active employees.

        Qualification is checked by the caller against Employee.tour_types.
        """
        stmt = (
            select(EmployeeShift, EmployeeRow)
            .join(EmployeeRow, EmployeeRow.id == EmployeeShift.employee_id)
            .where(
                EmployeeShift.tour_type == tour_type,
                EmployeeShift.shift_date == shift_date,
                EmployeeShift.time_slot == time_slot,
                EmployeeShift.status == ShiftStatus.AVAILABLE.value,
                EmployeeRow.status == "active",
            )
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Shift lookup failed: {e}")
            raise FatalStoreError(f"Availability store unavailable: {e}") from e

        return [(shift_from_row(shift), employee_from_row(employee)) for shift, employee in rows]

    # === WRITES ===

    async def update_guide_assignment(
        self,
        booking_id: int,
        guide_id: str,
        notes: Optional[str] = None
    ) -> Booking:
        """
        Assign a guide to a local booking and claim the guide's shift.

        Both rows change in one transaction. The booking update only applies
        while the booking is unassigned and the shift update only while the
        shift is still available; losing either race raises ConflictViolation.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(guarded_assignment(booking_id, guide_id, notes))
                    row = result.scalars().first()
                    if row is None:
                        raise ConflictViolation(
                            f"Booking {booking_id} is already assigned or does not exist",
                            {"booking_id": booking_id},
                        )

                    claimed = await self._transition_shift(
                        session,
                        guide_id,
                        row.tour_type,
                        row.booking_date,
                        row.booking_time,
                        ShiftStatus.AVAILABLE,
                        ShiftStatus.ASSIGNED,
                    )
                    if not claimed:
                        raise ConflictViolation(
                            f"Guide {guide_id} has no available shift for booking {booking_id}",
                            {"booking_id": booking_id, "guide_id": guide_id},
                        )
                    booking = from_local_row(row)
        except IntegrityError as e:
            logger.warning(f"Assignment of {guide_id} to booking {booking_id} lost a race: {e}")
            raise ConflictViolation(
                f"Guide {guide_id} is already assigned at this slot",
                {"booking_id": booking_id, "guide_id": guide_id},
            ) from e
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Assignment write failed for booking {booking_id}: {e}")
            raise FatalStoreError(f"Local booking store unavailable: {e}") from e

        logger.info(f"Booking local:{booking_id} assigned to guide {guide_id}")
        return booking

    async def clear_guide_assignment(self, booking_id: int) -> Optional[str]:
        """
        Remove the guide from a local booking and release the guide's shift.

        Returns:
            The previously assigned guide id, or None if there was none

        Raises:
            ValidationError: If the booking does not exist
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(LocalBooking, booking_id, with_for_update=True)
                    if row is None:
                        raise ValidationError(f"Unknown booking: local:{booking_id}")

                    previous = str(row.assigned_guide_id) if row.assigned_guide_id else None
                    if previous is None:
                        return None

                    row.assigned_guide_id = None
                    await self._transition_shift(
                        session,
                        previous,
                        row.tour_type,
                        row.booking_date,
                        row.booking_time,
                        ShiftStatus.ASSIGNED,
                        ShiftStatus.AVAILABLE,
                    )
        except (SQLAlchemyError, OSError) as e:
            raise FatalStoreError(f"Local booking store unavailable: {e}") from e

        logger.info(f"Guide {previous} removed from booking local:{booking_id}")
        return previous

    async def update_guide_notes(self, booking_id: int, notes: Optional[str]) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(LocalBooking)
                        .where(LocalBooking.id == booking_id)
                        .values(guide_notes=notes)
                    )
                    if result.rowcount == 0:
                        raise ValidationError(f"Unknown booking: local:{booking_id}")
        except (SQLAlchemyError, OSError) as e:
            raise FatalStoreError(f"Local booking store unavailable: {e}") from e

    async def transition_shift(
        self,
        employee_id: str,
        tour_type: str,
        shift_date: date,
        time_slot: str,
        from_status: ShiftStatus,
        to_status: ShiftStatus
    ) -> bool:
        """
        Move one shift between states, guarded on its current state.

        Returns:
            True if a shift changed state

        Raises:
            ConflictViolation: If the change would break the one-assigned-shift-per-slot index
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._transition_shift(
                        session, employee_id, tour_type, shift_date, time_slot, from_status, to_status
                    )
        except IntegrityError as e:
            raise ConflictViolation(
                f"Guide {employee_id} is already assigned at {shift_date} {time_slot}",
                {"guide_id": employee_id},
            ) from e
        except (SQLAlchemyError, OSError) as e:
            raise FatalStoreError(f"Availability store unavailable: {e}") from e

    @staticmethod
    async def _transition_shift(
        session,
        employee_id: str,
        tour_type: str,
        shift_date: date,
        time_slot: str,
        from_status: ShiftStatus,
        to_status: ShiftStatus
    ) -> bool:
        result = await session.execute(
            shift_transition(employee_id, tour_type, shift_date, time_slot, from_status, to_status)
        )
        return result.rowcount > 0


class ProductCatalog:
    """Bokun product -> local tour type mappings."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def list_active(self) -> List[ProductMapping]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(BokunProduct).where(BokunProduct.is_active.is_(True))
                )
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Product mapping lookup failed: {e}")
            raise FatalStoreError(f"Product catalog unavailable: {e}") from e

        return [
            ProductMapping(
                external_product_id=str(row.bokun_product_id),
                local_tour_type=row.local_tour_type,
                is_active=bool(row.is_active),
            )
            for row in rows
        ]
