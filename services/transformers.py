"""
Booking Transformers
Version: 1.0

The only places a canonical Booking is built. One transform per source:
local ledger rows, cache rows, and raw Bokun payloads.
NO DEPENDENCIES on other services.
"""

import logging
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from schemas import (
    Booking,
    BookingSource,
    BookingStatus,
    Customer,
    Employee,
    Participants,
    ProductMapping,
    ShiftAvailability,
    normalize_time_slot,
)

logger = logging.getLogger(__name__)

DEFAULT_BOKUN_TIME = "18:00"
UNKNOWN_TOUR_TYPE = "UNKNOWN_TOUR"

# Bokun booking states onto ours. A missing status is treated as confirmed.
BOKUN_STATUSES = {
    "CONFIRMED": BookingStatus.CONFIRMED,
    "ARRIVED": BookingStatus.CONFIRMED,
    "NO_SHOW": BookingStatus.CONFIRMED,
    "RESERVED": BookingStatus.PENDING,
    "REQUESTED": BookingStatus.PENDING,
    "PENDING": BookingStatus.PENDING,
    "CANCELLED": BookingStatus.CANCELLED,
    "REJECTED": BookingStatus.REJECTED,
    "ABORTED": BookingStatus.REJECTED,
    "ERROR": BookingStatus.REJECTED,
}


def _get(row: Any, name: str, default: Any = None) -> Any:
    """Read a column from an ORM object, a Row mapping or a plain dict."""
    if isinstance(row, Mapping):
        return row.get(name, default)
    return getattr(row, name, default)


def _participants(row: Any) -> Participants:
    return Participants(
        adults=_get(row, "adults") or 0,
        children=_get(row, "children") or 0,
        infants=_get(row, "infants") or 0,
        total=_get(row, "total_participants") or 0,
    )


def _customer(row: Any) -> Customer:
    return Customer(
        name=_get(row, "customer_name") or "",
        email=_get(row, "customer_email") or "",
        phone=_get(row, "customer_phone"),
    )


def _guide_id(row: Any) -> Optional[str]:
    value = _get(row, "assigned_guide_id")
    return str(value) if value is not None else None


def from_local_row(row: Any) -> Booking:
    """Build a LOCAL booking from a `bookings` row."""
    return Booking(
        id=int(_get(row, "id")),
        source=BookingSource.LOCAL,
        tour_type=_get(row, "tour_type"),
        booking_date=_get(row, "booking_date"),
        booking_time=_get(row, "booking_time"),
        status=BookingStatus(str(_get(row, "status")).upper()),
        participants=_participants(row),
        customer=_customer(row),
        assigned_guide_id=_guide_id(row),
        guide_notes=_get(row, "guide_notes"),
    )


def from_cache_row(row: Any) -> Booking:
    """Build an EXTERNAL booking from a `bokun_bookings_cache` row."""
    external_id = str(_get(row, "bokun_booking_id"))
    return Booking(
        id=external_id,
        external_id=external_id,
        source=BookingSource.EXTERNAL,
        tour_type=_get(row, "tour_type"),
        booking_date=_get(row, "booking_date"),
        booking_time=_get(row, "booking_time"),
        status=BookingStatus(str(_get(row, "status") or "CONFIRMED").upper()),
        participants=_participants(row),
        customer=_customer(row),
        assigned_guide_id=_guide_id(row),
        guide_notes=_get(row, "guide_notes"),
    )


def _bokun_date(value: Any) -> date:
    """Bokun sends startDate as epoch milliseconds; older payloads use ISO strings."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    raise ValueError(f"Missing or invalid startDate: {value!r}")


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    """A nested object of the payload, or {} when absent."""
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Bokun field {key!r} is not an object: {type(value).__name__}")
    return value


def _bokun_status(value: Any) -> BookingStatus:
    if value in (None, ""):
        return BookingStatus.CONFIRMED
    status = BOKUN_STATUSES.get(str(value).upper())
    if status is None:
        raise ValueError(f"Unknown Bokun status {value!r}")
    return status


def _bokun_participants(fields: Dict[str, Any]) -> Participants:
    adults = children = infants = 0

    categories = fields.get("priceCategoryBookings") or []
    if not isinstance(categories, list):
        raise ValueError("priceCategoryBookings is not a list")

    for category in categories:
        if not isinstance(category, dict):
            raise ValueError(f"Invalid price category entry: {category!r}")
        ticket_category = _section(category, "pricingCategory").get("ticketCategory")
        quantity = int(category.get("quantity") or 1)
        if ticket_category == "CHILD":
            children += quantity
        elif ticket_category == "INFANT":
            infants += quantity
        else:
            if ticket_category != "ADULT":
                logger.debug(f"Unknown ticket category {ticket_category!r}, counting as adult")
            adults += quantity

    total = adults + children + infants or int(fields.get("totalParticipants") or 1)
    return Participants(adults=adults, children=children, infants=infants, total=total)


def cache_row_from_bokun(
    raw: Dict[str, Any],
    product_id: str,
    tour_types: Dict[str, str],
    synced_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Flatten a raw Bokun booking into a cache row.

    Every status is kept, so an upstream cancellation overwrites the
    cached CONFIRMED row on the next sync.

    Args:
        raw: Booking as returned by product-booking-search
        product_id: Product the booking was fetched for
        tour_types: external product id -> local tour type
        synced_at: Sync timestamp to stamp on the row

    Raises:
        ValueError: If the payload is not a booking object or lacks an
                    id, a usable date/time or a known status
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Bokun booking is not an object: {type(raw).__name__}")

    booking_id = raw.get("id")
    if booking_id in (None, ""):
        raise ValueError("Bokun booking without id")

    status = _bokun_status(raw.get("status"))

    product = _section(raw, "product")
    booking_product_id = str(product.get("id") or raw.get("productId") or product_id)
    tour_type = tour_types.get(booking_product_id) or tour_types.get(product_id) or UNKNOWN_TOUR_TYPE
    if tour_type == UNKNOWN_TOUR_TYPE:
        logger.warning(f"Unknown Bokun product {booking_product_id} on booking {booking_id}")

    fields = _section(raw, "fields")
    customer = _section(raw, "customer")
    participants = _bokun_participants(fields)
    first_name = customer.get("firstName") or "External"
    last_name = customer.get("lastName") or "Booking"

    return {
        "bokun_booking_id": str(booking_id),
        "product_id": booking_product_id,
        "booking_date": _bokun_date(raw.get("startDate")),
        "booking_time": normalize_time_slot(fields.get("startTimeStr") or DEFAULT_BOKUN_TIME),
        "status": status.value,
        "customer_name": f"{first_name} {last_name}",
        "customer_email": customer.get("email") or "external@bokun.com",
        "customer_phone": customer.get("phoneNumber") or customer.get("phone"),
        "adults": participants.adults,
        "children": participants.children,
        "infants": participants.infants,
        "total_participants": participants.total,
        "tour_type": tour_type,
        "confirmation_code": f"BOKUN-{booking_id}",
        "raw_bokun_data": raw,
        "last_synced": synced_at or datetime.now(timezone.utc),
    }


def from_bokun_raw(
    raw: Dict[str, Any],
    product_id: str,
    tour_types: Dict[str, str],
) -> Booking:
    """Build an EXTERNAL booking straight from a live Bokun payload."""
    return from_cache_row(cache_row_from_bokun(raw, product_id, tour_types))


def tour_type_index(mappings: List[ProductMapping]) -> Dict[str, str]:
    """external product id -> local tour type, active mappings only."""
    return {m.external_product_id: m.local_tour_type for m in mappings if m.is_active}


def employee_from_row(row: Any) -> Employee:
    return Employee(
        id=str(_get(row, "id")),
        first_name=_get(row, "first_name") or "",
        last_name=_get(row, "last_name") or "",
        email=_get(row, "email") or "",
        phone=_get(row, "phone"),
        role=_get(row, "role") or "tour_guide",
        status=_get(row, "status") or "active",
        tour_types=list(_get(row, "tour_types") or []),
    )


def shift_from_row(row: Any) -> ShiftAvailability:
    return ShiftAvailability(
        id=str(_get(row, "id")) if _get(row, "id") is not None else None,
        employee_id=str(_get(row, "employee_id")),
        tour_type=_get(row, "tour_type"),
        shift_date=_get(row, "shift_date"),
        time_slot=_get(row, "time_slot"),
        status=_get(row, "status"),
    )
