"""
Scheduling Errors
Version: 1.0

Error taxonomy shared by stores, services and the HTTP layer.
NO DEPENDENCIES on services.
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base class for all scheduling errors."""

    code = "SCHEDULING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.code,
            "details": self.details,
        }


class SourceUnavailable(SchedulingError):
    """A booking source (cache or live provider) could not be read. Callers degrade."""

    code = "SOURCE_UNAVAILABLE"


class ConflictViolation(SchedulingError):
    """A write lost a race or would double-book a guide."""

    code = "CONFLICT"


class RunInProgressError(ConflictViolation):
    """Another auto-assignment run holds the lock."""

    code = "RUN_IN_PROGRESS"


class ValidationError(SchedulingError):
    """Malformed input: bad filter, date, time slot or reference."""

    code = "VALIDATION_ERROR"


class FatalStoreError(SchedulingError):
    """The local booking store is unreachable."""

    code = "STORE_UNAVAILABLE"
