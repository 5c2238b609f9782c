# File: src/fleetpark/domain/exceptions.py
"""
Domain Exceptions for the Reservation Engine

Every failure the engine reports is a ReservationError subclass carrying a
stable ``code`` so the request layer can map it to a response without
string matching.

Validation failures (window, conflict, role, transition, missing records)
are deterministic and never retried. StorageUnavailableError and
ConcurrentUpdateError are the retryable class.
"""

from typing import Any, Dict, Optional


class ReservationError(Exception):
    """Base exception for reservation engine errors"""

    code = "reservation_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization"""
        data: Dict[str, Any] = {"error": self.message, "error_code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class InvalidWindowError(ReservationError):
    """End time not after start time, or start time not in the future"""

    code = "invalid_window"


class InvalidRequestError(ReservationError):
    """Request references valid records that cannot be combined"""

    code = "invalid_request"


class ConflictError(ReservationError):
    """Space, lot capacity, vehicle or driver already booked for an overlapping window"""

    code = "conflict"


class UnauthorizedError(ReservationError):
    """Actor role may not request this operation"""

    code = "unauthorized"


class InvalidTransitionError(ReservationError):
    """Target status unreachable from the current status"""

    code = "invalid_transition"

    def __init__(self, from_status: Any, to_status: Any, message: Optional[str] = None):
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(
            message or f"Cannot change reservation status from {from_value} to {to_value}",
            {"from_status": from_value, "to_status": to_value},
        )
        self.from_status = from_status
        self.to_status = to_status


class NotFoundError(ReservationError):
    """Referenced reservation, lot, space, company, vehicle or driver is unknown"""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class StorageUnavailableError(ReservationError):
    """Transient storage or lock backend failure"""

    code = "storage_unavailable"
    retryable = True


class ConcurrentUpdateError(ReservationError):
    """Optimistic version check failed; another request changed the reservation"""

    code = "concurrent_update"
    retryable = True
