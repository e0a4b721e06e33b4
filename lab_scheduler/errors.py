# errors.py
"""
Error taxonomy for the booking engine.

Every error carries a stable ``kind`` plus structured ``details`` so the
caller can render an actionable message. HTTP status codes live on the
classes; the API layer only renders them.
"""
from datetime import datetime
from typing import Any, Dict, Optional


class SchedulerError(Exception):
    status_code = 500
    kind = "SchedulerError"
    default_message = "Scheduler error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in details.items()
        }
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, **self.details}


# Categories

class ValidationError(SchedulerError):
    status_code = 400
    kind = "ValidationError"


class NotFoundError(SchedulerError):
    status_code = 404
    kind = "NotFound"


class ConflictError(SchedulerError):
    status_code = 409
    kind = "Conflict"


class AuthorizationError(SchedulerError):
    status_code = 403
    kind = "NotAuthorized"


class StateError(SchedulerError):
    status_code = 400
    kind = "InvalidState"


# Validation

class InvalidRange(ValidationError):
    kind = "InvalidRange"
    default_message = "End time must be after start time"


class PastBooking(ValidationError):
    kind = "PastBooking"
    default_message = "Cannot book in the past"


# Lookup

class ResourceNotFound(NotFoundError):
    kind = "ResourceNotFound"
    default_message = "Computer not found"


class PreferredResourceNotFound(ResourceNotFound):
    status_code = 400
    default_message = "Preferred computer not found"


class ReservationNotFound(NotFoundError):
    kind = "ReservationNotFound"
    default_message = "Reservation not found"


class NotificationNotFound(NotFoundError):
    kind = "NotificationNotFound"
    default_message = "Notification not found"


# Conflicts

class ConflictingReservation(ConflictError):
    kind = "ConflictingReservation"
    default_message = "Time slot conflicts with existing reservation"

    def __init__(self, conflict, message: Optional[str] = None):
        self.conflict = conflict
        super().__init__(
            message,
            conflicting_reservation={
                "id": conflict.id,
                "start_time": conflict.start_time.isoformat(),
                "end_time": conflict.end_time.isoformat(),
            },
        )


class UserAlreadyBooked(ConflictError):
    status_code = 400
    kind = "UserAlreadyBooked"
    default_message = "You already have an active or pending reservation. Please complete or cancel it first."


class AlreadyQueued(ConflictError):
    status_code = 400
    kind = "AlreadyQueued"
    default_message = "You are already in the queue"


# Authorization

class NotOwner(AuthorizationError):
    kind = "NotOwner"
    default_message = "Not authorized"


# Lifecycle

class InvalidState(StateError):
    kind = "InvalidState"
    default_message = "Only active or pending reservations can be released early"


class AlreadyFinalized(StateError):
    kind = "AlreadyFinalized"
    default_message = "Reservation is already completed or cancelled"


class NotQueued(StateError):
    kind = "NotQueued"
    default_message = "You are not in the queue"


class ResourceUnavailable(StateError):
    kind = "ResourceUnavailable"
    default_message = "Computer is under maintenance"
