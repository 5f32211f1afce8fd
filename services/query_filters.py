"""
Booking Query Filters
Version: 1.0

Pushes the SQL-friendly parts of a BookingFilter into a SELECT.
Works for both booking tables since they share column names.
"""

from sqlalchemy import Select

from schemas import BookingFilter


def apply_booking_filter(stmt: Select, model, booking_filter: BookingFilter) -> Select:
    """Add WHERE clauses for dates, slot, statuses, tour types and guides."""
    f = booking_filter

    if f.start_date is not None:
        stmt = stmt.where(model.booking_date >= f.start_date)
    if f.end_date is not None:
        stmt = stmt.where(model.booking_date <= f.end_date)
    if f.booking_time is not None:
        stmt = stmt.where(model.booking_time == f.booking_time)
    if f.statuses:
        stmt = stmt.where(model.status.in_(sorted(s.value for s in f.statuses)))
    if f.tour_types:
        stmt = stmt.where(model.tour_type.in_(sorted(f.tour_types)))
    if f.guide_ids:
        stmt = stmt.where(model.assigned_guide_id.in_(sorted(f.guide_ids)))
    if f.assigned_only:
        stmt = stmt.where(model.assigned_guide_id.is_not(None))

    return stmt.order_by(model.booking_date, model.booking_time)
