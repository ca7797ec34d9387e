"""
Engine Errors

Every error carries an HTTP status and a machine-readable code so the
routers can hand it to the caller unchanged.
"""

from datetime import date
from typing import Any, Dict, Optional
import enum


class EngineError(Exception):
    """Base class for all reservation engine errors."""

    status_code = 500
    code = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(EngineError):
    """Malformed input. Raised before any storage access."""

    status_code = 422
    code = "validation_error"


class ConflictKind(str, enum.Enum):
    NO_CAPACITY = "no_capacity"
    SEAT_TAKEN = "seat_taken"
    ACTIVE_MEMBERSHIP_EXISTS = "active_membership_exists"


class ConflictError(EngineError):
    """Expected, user-facing refusal to allocate."""

    status_code = 409
    code = "conflict"

    def __init__(
        self,
        kind: ConflictKind,
        message: str,
        seat_label: Optional[str] = None,
        occupied_by: Optional[str] = None,
        conflicting_range: Optional[tuple] = None,
        reservation_id: Optional[str] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.seat_label = seat_label
        self.occupied_by = occupied_by
        self.conflicting_range = conflicting_range
        self.reservation_id = reservation_id

    @property
    def detail(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.seat_label:
            data["seat_label"] = self.seat_label
        if self.occupied_by is not None:
            data["occupied_by"] = self.occupied_by
        if self.conflicting_range:
            start, end = self.conflicting_range
            data["conflicting_range"] = {
                "start_date": start.isoformat() if isinstance(start, date) else start,
                "end_date": end.isoformat() if isinstance(end, date) else end,
            }
        if self.reservation_id:
            data["reservation_id"] = self.reservation_id
        return data

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["kind"] = self.kind.value
        body.update(self.detail)
        return body


class SequenceExhaustedError(EngineError):
    """Counter contention outlasted the retry budget. Retryable."""

    status_code = 503
    code = "sequence_exhausted"
    retryable = True


class InvalidTransitionError(EngineError):
    """State change not legal from the record's current status."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.current_status:
            body["current_status"] = self.current_status
        return body


class AlreadyFinalizedError(InvalidTransitionError):
    """Cash collection confirmed on a record that is no longer pending."""

    code = "already_finalized"


class NotFoundError(EngineError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(EngineError):
    status_code = 403
    code = "permission_denied"


class StorageUnavailableError(EngineError):
    """Persistence substrate unreachable. Operations fail closed."""

    status_code = 503
    code = "storage_unavailable"
