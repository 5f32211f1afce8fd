"""
Pydantic Schemas
Version: 1.0

Canonical booking, availability and report shapes.
NO DEPENDENCIES on services.
"""

import re
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


LOCAL_KEY_PREFIX = "local:"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2}(?:\.\d+)?)?$")


def normalize_time_slot(value: Any) -> str:
    """
    Normalize a time value to "HH:MM".

    Accepts datetime.time, "H:MM", "HH:MM" and "HH:MM:SS".
    Raises ValueError for anything else.
    """
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if not isinstance(value, str):
        raise ValueError(f"Invalid time slot: {value!r}")

    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time slot: {value!r}")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time slot: {value!r}")
    return f"{hours:02d}:{minutes:02d}"


# === ENUMS ===

class BookingSource(str, Enum):
    LOCAL = "local"
    EXTERNAL = "external"


class BookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class ShiftStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    UNAVAILABLE = "unavailable"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EmployeeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


class AssignmentOutcome(str, Enum):
    ASSIGNED = "assigned"
    NO_CANDIDATES = "no_candidates"
    CONFLICT = "conflict"
    ERROR = "error"


# === BOOKINGS ===

class Participants(BaseModel):
    adults: int = 0
    children: int = 0
    infants: int = 0
    total: int = 0

    @model_validator(mode="after")
    def fill_total(self) -> "Participants":
        if not self.total:
            self.total = self.adults + self.children + self.infants
        return self


class Customer(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None


class Booking(BaseModel):
    """
    One booking, whichever store it came from.

    Built only by the transforms in services/transformers.py.
    """
    id: Union[int, str]
    external_id: Optional[str] = None
    source: BookingSource
    tour_type: str
    booking_date: date
    booking_time: str
    status: BookingStatus
    participants: Participants = Field(default_factory=Participants)
    customer: Customer
    assigned_guide_id: Optional[str] = None
    guide_notes: Optional[str] = None

    @field_validator("booking_time", mode="before")
    @classmethod
    def validate_booking_time(cls, v: Any) -> str:
        return normalize_time_slot(v)

    @model_validator(mode="after")
    def check_source_identity(self) -> "Booking":
        if self.source == BookingSource.EXTERNAL and not self.external_id:
            raise ValueError("External bookings must carry an external_id")
        if self.source == BookingSource.LOCAL and self.external_id:
            raise ValueError("Local bookings cannot carry an external_id")
        return self

    @computed_field
    @property
    def dedup_key(self) -> str:
        if self.external_id:
            return self.external_id
        return f"{LOCAL_KEY_PREFIX}{self.id}"

    @property
    def starts_at(self) -> datetime:
        hours, minutes = self.booking_time.split(":")
        return datetime.combine(self.booking_date, time(int(hours), int(minutes)))


class BookingFilter(BaseModel):
    """Filter for aggregated booking reads. Every field is optional."""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    statuses: Optional[Set[BookingStatus]] = None
    tour_types: Optional[Set[str]] = None
    guide_ids: Optional[Set[str]] = None
    search: Optional[str] = None
    sources: Set[BookingSource] = Field(
        default_factory=lambda: {BookingSource.LOCAL, BookingSource.EXTERNAL}
    )
    # Exact slot lookups used by conflict detection.
    booking_time: Optional[str] = None
    assigned_only: bool = False


# === AVAILABILITY ===

class Employee(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    role: str = "tour_guide"
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    tour_types: List[str] = []


class ShiftAvailability(BaseModel):
    id: Optional[str] = None
    employee_id: str
    tour_type: str
    shift_date: date
    time_slot: str
    status: ShiftStatus = ShiftStatus.AVAILABLE

    @field_validator("time_slot", mode="before")
    @classmethod
    def validate_time_slot(cls, v: Any) -> str:
        return normalize_time_slot(v)


class ProductMapping(BaseModel):
    external_product_id: str
    local_tour_type: str
    is_active: bool = True


# === CACHE SYNC ===

class CacheMetadata(BaseModel):
    scope: str = "full"
    last_full_sync: Optional[datetime] = None
    total_bookings_cached: int = 0
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: Optional[str] = None


class ProductSyncResult(BaseModel):
    product_id: str
    tour_type: str
    success: bool
    bookings_fetched: int = 0
    bookings_cached: int = 0
    error: Optional[str] = None


class SyncReport(BaseModel):
    products_processed: int = 0
    total_bookings_cached: int = 0
    results: List[ProductSyncResult] = []
    errors: List[str] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors


class HealthReport(BaseModel):
    last_full_sync: Optional[datetime] = None
    age_hours: Optional[float] = None
    is_stale: bool = True
    total_cached_bookings: int = 0
    sync_status: SyncStatus = SyncStatus.PENDING
    products: List[CacheMetadata] = []


# === ASSIGNMENT ===

class AssignmentResult(BaseModel):
    booking_ref: str
    outcome: AssignmentOutcome
    guide_id: Optional[str] = None
    guide_name: Optional[str] = None
    error: Optional[str] = None


class AssignmentReport(BaseModel):
    assigned: int = 0
    failed: int = 0
    no_candidates: int = 0
    results: List[AssignmentResult] = []

    def record(self, result: AssignmentResult) -> None:
        self.results.append(result)
        if result.outcome == AssignmentOutcome.ASSIGNED:
            self.assigned += 1
        elif result.outcome == AssignmentOutcome.NO_CANDIDATES:
            self.no_candidates += 1
        else:
            self.failed += 1


class AssignmentSuggestion(BaseModel):
    booking: Booking
    candidates: List[Employee] = []


class GuideAssignmentRequest(BaseModel):
    guide_id: str
    notes: Optional[str] = None


class GuideNotesRequest(BaseModel):
    notes: Optional[str] = None


class ChangeEvent(BaseModel):
    """Message carried on the change feed."""
    event: str
    payload: Dict[str, Any] = {}
    published_at: datetime
