"""
Refusals raised by the membership services.

Every class carries a stable ``kind`` and an HTTP status so API layers can
render a specific message instead of a generic failure. None of these are
retried automatically; the caller decides.
"""
from typing import Any, Dict, Optional


class MembershipError(Exception):
    """
    Raised when an action is refused by the system.
    This is NOT a crash - it's the system working correctly.
    """
    kind = "membership_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"kind": self.kind, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class Unauthorized(MembershipError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(MembershipError):
    kind = "forbidden"
    status_code = 403


class NotFound(MembershipError):
    kind = "not_found"
    status_code = 404


class ValidationError(MembershipError):
    """Missing or oversized input. ``field`` names the offending input."""
    kind = "validation_error"
    status_code = 422

    def __init__(self, message: str, field: str, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


class InvalidTransition(MembershipError):
    """The record's current status does not permit the requested operation."""
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status


class AlreadyRemoved(InvalidTransition):
    kind = "already_removed"


class Conflict(MembershipError):
    """Duplicate ACTIVE membership, or a concurrent writer won the race."""
    kind = "conflict"
    status_code = 409


class AlreadyActive(Conflict):
    kind = "already_active"


class ApplicationPending(Conflict):
    kind = "application_pending"


class DuplicateActiveMembership(Conflict):
    kind = "duplicate_active_membership"


class CooldownNotElapsed(MembershipError):
    kind = "cooldown_not_elapsed"
    status_code = 409

    def __init__(self, message: str, hours_remaining: int, **details: Any):
        super().__init__(message, hours_remaining=hours_remaining, **details)
        self.hours_remaining = hours_remaining
