"""
Database Models
Version: 1.0

SQLAlchemy ORM models for the local booking ledger, guide availability
ledger, and the Bokun booking cache.
DEPENDS ON: database.py
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    Text,
    Integer,
    BigInteger,
    ForeignKey,
    Index,
    JSON,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


class Employee(Base):
    """Staff member; guides carry the tour types they are qualified for."""

    __tablename__ = "employees"

    id = Column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    employee_code = Column(String(20), unique=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="tour_guide")
    status = Column(String(20), nullable=False, default="active", index=True)
    tour_types = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class LocalBooking(Base):
    """Booking owned by the local booking flows."""

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tour_type = Column(String(50), nullable=False, index=True)
    booking_date = Column(Date, nullable=False)
    booking_time = Column(String(5), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    adults = Column(Integer, nullable=False, default=0)
    children = Column(Integer, nullable=False, default=0)
    infants = Column(Integer, nullable=False, default=0)
    total_participants = Column(Integer, nullable=True)
    assigned_guide_id = Column(UUID(as_uuid=False), ForeignKey("employees.id"), nullable=True)
    guide_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_bookings_slot", "booking_date", "booking_time"),
    )


class EmployeeShift(Base):
    """A guide's self-posted availability for one tour type and time slot."""

    __tablename__ = "employee_shifts"

    id = Column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    employee_id = Column(UUID(as_uuid=False), ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    tour_type = Column(String(50), nullable=False)
    shift_date = Column(Date, nullable=False)
    time_slot = Column(String(5), nullable=False)
    status = Column(String(20), nullable=False, default="available")
    max_participants = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("employee_id", "tour_type", "shift_date", "time_slot", name="uq_shift_posting"),
        # A guide can hold at most one assigned shift per slot, whatever the tour type.
        Index(
            "uq_shift_assigned_slot",
            "employee_id",
            "shift_date",
            "time_slot",
            unique=True,
            postgresql_where=text("status = 'assigned'"),
        ),
        Index("ix_shift_lookup", "tour_type", "shift_date", "time_slot", "status"),
    )


class BokunProduct(Base):
    """Mapping from a Bokun product to a local tour type."""

    __tablename__ = "bokun_products"

    id = Column(UUID(as_uuid=False), primary_key=True, default=new_uuid)
    local_tour_type = Column(String(50), nullable=False)
    bokun_product_id = Column(String(50), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("local_tour_type", "bokun_product_id", name="uq_bokun_product"),
    )


class CachedBokunBooking(Base):
    """Local mirror of a Bokun booking."""

    __tablename__ = "bokun_bookings_cache"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    bokun_booking_id = Column(String(100), nullable=False, unique=True)
    product_id = Column(String(50), nullable=False, index=True)
    booking_date = Column(Date, nullable=False)
    booking_time = Column(String(5), nullable=False)
    status = Column(String(20), nullable=False, default="CONFIRMED", index=True)
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    adults = Column(Integer, nullable=False, default=0)
    children = Column(Integer, nullable=False, default=0)
    infants = Column(Integer, nullable=False, default=0)
    total_participants = Column(Integer, nullable=False, default=1)
    tour_type = Column(String(50), nullable=False, index=True)
    confirmation_code = Column(String(100), nullable=True)
    raw_bokun_data = Column(JSON, nullable=True)
    # Admin-owned; never written by the sync.
    assigned_guide_id = Column(UUID(as_uuid=False), ForeignKey("employees.id"), nullable=True)
    guide_notes = Column(Text, nullable=True)
    last_synced = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_bokun_cache_slot", "booking_date", "booking_time"),
        Index("ix_bokun_cache_date_tour", "booking_date", "tour_type"),
    )


class CacheSyncMetadata(Base):
    """Sync bookkeeping: one row for the full run and one per product."""

    __tablename__ = "bokun_cache_metadata"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    scope = Column(String(50), nullable=False, unique=True)
    last_full_sync = Column(DateTime(timezone=True), nullable=True)
    total_bookings_cached = Column(Integer, default=0)
    sync_status = Column(String(20), default="pending")
    sync_error = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
