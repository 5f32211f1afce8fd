"""
In-memory stores, remote doubles and factories shared by the tests.
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from errors import ConflictViolation, FatalStoreError, SourceUnavailable, ValidationError
from schemas import (
    Booking,
    CacheMetadata,
    Employee,
    ProductMapping,
    ShiftAvailability,
    ShiftStatus,
)
from services.booking_aggregator import matches
from services.transformers import from_cache_row, from_local_row


NOW = datetime(2026, 5, 1, 12, 0)
FUTURE = date(2026, 5, 10)
PAST = date(2026, 4, 20)


# ============================================================================
# FACTORIES
# ============================================================================

def local_booking(
    booking_id: int,
    booking_date: date = FUTURE,
    booking_time: str = "19:00",
    status: str = "CONFIRMED",
    tour_type: str = "NIGHT_TOUR",
    guide_id: Optional[str] = None,
    customer_name: str = "Hana Sato",
    customer_email: str = "hana@example.com",
) -> Booking:
    return from_local_row({
        "id": booking_id,
        "tour_type": tour_type,
        "booking_date": booking_date,
        "booking_time": booking_time,
        "status": status,
        "customer_name": customer_name,
        "customer_email": customer_email,
        "adults": 2,
        "assigned_guide_id": guide_id,
    })


def cache_row(
    external_id: str,
    booking_date: date = FUTURE,
    booking_time: str = "19:00",
    status: str = "CONFIRMED",
    tour_type: str = "NIGHT_TOUR",
    guide_id: Optional[str] = None,
    product_id: str = "932404",
    customer_name: str = "External Booking",
) -> Dict[str, Any]:
    return {
        "bokun_booking_id": external_id,
        "product_id": product_id,
        "booking_date": booking_date,
        "booking_time": booking_time,
        "status": status,
        "customer_name": customer_name,
        "customer_email": "guest@example.com",
        "adults": 1,
        "children": 0,
        "infants": 0,
        "total_participants": 1,
        "tour_type": tour_type,
        "assigned_guide_id": guide_id,
        "guide_notes": None,
    }


def bokun_raw(
    booking_id: Any,
    product_id: str = "932404",
    start: date = FUTURE,
    start_time: str = "19:00",
    status: str = "CONFIRMED",
    first_name: str = "Ken",
    last_name: str = "Mori",
) -> Dict[str, Any]:
    midnight = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
    return {
        "id": booking_id,
        "status": status,
        "startDate": int(midnight.timestamp() * 1000),
        "product": {"id": int(product_id)},
        "customer": {"firstName": first_name, "lastName": last_name, "email": "ken@example.com"},
        "fields": {
            "startTimeStr": start_time,
            "priceCategoryBookings": [
                {"pricingCategory": {"ticketCategory": "ADULT"}, "quantity": 2},
                {"pricingCategory": {"ticketCategory": "CHILD"}, "quantity": 1},
            ],
        },
    }


def guide(
    guide_id: str,
    first_name: str,
    last_name: str = "Guide",
    tour_types: Optional[List[str]] = None,
    status: str = "active",
) -> Employee:
    return Employee(
        id=guide_id,
        first_name=first_name,
        last_name=last_name,
        email=f"{guide_id}@example.com",
        status=status,
        tour_types=tour_types if tour_types is not None else ["NIGHT_TOUR"],
    )


# ============================================================================
# IN-MEMORY STORES
# ============================================================================

class FakeLocalStore:
    """In-memory LocalBookingStore with the same guard rules as the SQL one."""

    def __init__(self):
        self.bookings: Dict[int, Booking] = {}
        self.shifts: List[ShiftAvailability] = []
        self.employees: Dict[str, Employee] = {}
        self.fail = False
        self.assignment_calls: List[tuple] = []

    def add_booking(self, booking: Booking) -> Booking:
        self.bookings[booking.id] = booking
        return booking

    def add_guide(self, employee: Employee, *slots, status: ShiftStatus = ShiftStatus.AVAILABLE) -> Employee:
        self.employees[employee.id] = employee
        for tour_type, shift_date, time_slot in slots:
            self.shifts.append(ShiftAvailability(
                employee_id=employee.id,
                tour_type=tour_type,
                shift_date=shift_date,
                time_slot=time_slot,
                status=status,
            ))
        return employee

    def shift_for(self, employee_id: str, tour_type: str, shift_date: date, time_slot: str):
        for shift in self.shifts:
            if (shift.employee_id, shift.tour_type, shift.shift_date, shift.time_slot) == (
                employee_id, tour_type, shift_date, time_slot
            ):
                return shift
        return None

    def _check(self):
        if self.fail:
            raise FatalStoreError("local store down")

    async def query(self, booking_filter):
        self._check()
        return [b for b in self.bookings.values() if matches(b, booking_filter)]

    async def get_booking(self, booking_id):
        self._check()
        return self.bookings.get(booking_id)

    async def available_shifts(self, tour_type, shift_date, time_slot):
        self._check()
        return [
            (s, self.employees[s.employee_id])
            for s in self.shifts
            if s.tour_type == tour_type
            and s.shift_date == shift_date
            and s.time_slot == time_slot
            and s.status == ShiftStatus.AVAILABLE
            and self.employees[s.employee_id].status.value == "active"
        ]

    async def update_guide_assignment(self, booking_id, guide_id, notes=None):
        self._check()
        self.assignment_calls.append((booking_id, guide_id))
        booking = self.bookings.get(booking_id)
        if booking is None or booking.assigned_guide_id:
            raise ConflictViolation(f"Booking {booking_id} is already assigned or does not exist")
        if not await self._claim(guide_id, booking.tour_type, booking.booking_date, booking.booking_time):
            raise ConflictViolation(f"Guide {guide_id} has no available shift")
        updated = booking.model_copy(update={"assigned_guide_id": guide_id, "guide_notes": notes})
        self.bookings[booking_id] = updated
        return updated

    async def _claim(self, guide_id, tour_type, shift_date, time_slot) -> bool:
        # Mirrors the partial unique index on assigned shifts per slot.
        for s in self.shifts:
            if (s.employee_id == guide_id and s.shift_date == shift_date
                    and s.time_slot == time_slot and s.status == ShiftStatus.ASSIGNED):
                raise ConflictViolation(f"Guide {guide_id} is already assigned at this slot")
        shift = self.shift_for(guide_id, tour_type, shift_date, time_slot)
        if shift is None or shift.status != ShiftStatus.AVAILABLE:
            return False
        shift.status = ShiftStatus.ASSIGNED
        return True

    async def clear_guide_assignment(self, booking_id):
        self._check()
        booking = self.bookings.get(booking_id)
        if booking is None:
            raise ValidationError(f"Unknown booking: local:{booking_id}")
        previous = booking.assigned_guide_id
        if previous:
            self.bookings[booking_id] = booking.model_copy(update={"assigned_guide_id": None})
            shift = self.shift_for(previous, booking.tour_type, booking.booking_date, booking.booking_time)
            if shift is not None and shift.status == ShiftStatus.ASSIGNED:
                shift.status = ShiftStatus.AVAILABLE
        return previous

    async def update_guide_notes(self, booking_id, notes):
        booking = self.bookings.get(booking_id)
        if booking is None:
            raise ValidationError(f"Unknown booking: local:{booking_id}")
        self.bookings[booking_id] = booking.model_copy(update={"guide_notes": notes})

    async def transition_shift(self, employee_id, tour_type, shift_date, time_slot, from_status, to_status):
        self._check()
        if to_status == ShiftStatus.ASSIGNED:
            return await self._claim(employee_id, tour_type, shift_date, time_slot)
        shift = self.shift_for(employee_id, tour_type, shift_date, time_slot)
        if shift is None or shift.status != from_status:
            return False
        shift.status = to_status
        return True


class FakeCacheStore:
    """In-memory CacheStore keyed by external booking id."""

    ADMIN_FIELDS = ("assigned_guide_id", "guide_notes")

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.metadata: Dict[str, CacheMetadata] = {}
        self.fail = False
        self.upsert_calls = 0

    def add(self, row: Dict[str, Any]) -> Dict[str, Any]:
        self.rows[row["bokun_booking_id"]] = dict(row)
        return row

    def mark_synced(self, when: Optional[datetime] = None):
        self.metadata["full"] = CacheMetadata(
            scope="full",
            last_full_sync=when or datetime.now(timezone.utc),
            sync_status="completed",
        )

    def _check(self):
        if self.fail:
            raise SourceUnavailable("cache down")

    async def query(self, booking_filter):
        self._check()
        bookings = [from_cache_row(r) for r in self.rows.values()]
        return [b for b in bookings if matches(b, booking_filter)]

    async def get_booking(self, external_id):
        self._check()
        row = self.rows.get(external_id)
        return from_cache_row(row) if row else None

    async def upsert(self, rows):
        self._check()
        self.upsert_calls += 1
        for row in rows:
            existing = self.rows.get(row["bokun_booking_id"], {})
            merged = dict(row)
            for field in self.ADMIN_FIELDS:
                merged[field] = existing.get(field)
            self.rows[row["bokun_booking_id"]] = merged
        return len(rows)

    async def count(self):
        self._check()
        return len(self.rows)

    async def clear(self):
        self._check()
        deleted = len(self.rows)
        self.rows.clear()
        self.metadata.clear()
        return deleted

    async def get_metadata(self, scope="full"):
        self._check()
        return self.metadata.get(scope)

    async def set_metadata(self, meta):
        previous = self.metadata.get(meta.scope)
        if meta.last_full_sync is None and previous is not None:
            meta = meta.model_copy(update={"last_full_sync": previous.last_full_sync})
        self.metadata[meta.scope] = meta

    async def product_metadata(self):
        return [m for scope, m in sorted(self.metadata.items()) if scope != "full"]

    async def update_guide_assignment(self, external_id, guide_id, notes=None):
        self._check()
        row = self.rows.get(external_id)
        if row is None or row.get("assigned_guide_id"):
            raise ConflictViolation(f"Booking {external_id} is already assigned or not cached")
        row["assigned_guide_id"] = guide_id
        row["guide_notes"] = notes
        return from_cache_row(row)

    async def clear_guide_assignment(self, external_id):
        self._check()
        row = self.rows.get(external_id)
        if row is None:
            raise ValidationError(f"Unknown booking: {external_id}")
        before = from_cache_row(row)
        row["assigned_guide_id"] = None
        return before

    async def update_guide_notes(self, external_id, notes):
        row = self.rows.get(external_id)
        if row is None:
            raise ValidationError(f"Unknown booking: {external_id}")
        row["guide_notes"] = notes


class FakeCatalog:
    def __init__(self, mappings: Optional[List[ProductMapping]] = None):
        self.mappings = mappings if mappings is not None else [
            ProductMapping(external_product_id="932404", local_tour_type="NIGHT_TOUR"),
        ]

    async def list_active(self):
        return [m for m in self.mappings if m.is_active]


class FakeRemote:
    """Bokun client double: raw bookings or an exception per product."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.responses = responses or {}
        self.delay = delay
        self.calls: List[tuple] = []

    async def fetch_bookings(self, product_id, start, end):
        self.calls.append((product_id, start, end))
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.get(product_id, [])
        if isinstance(response, Exception):
            raise response
        return response


