"""
Error kinds raised synchronously to callers.

All of these describe caller mistakes (bad input, wrong owner, exhausted
quota, illegal lifecycle move). None are retried internally. Downstream
failures (store writes, notification delivery) never surface here; they are
logged by the outbound layer instead.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class GuardianError(Exception):
    """Base class for every error raised by the SafeZone core."""

    code = "GUARDIAN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GuardianError, ValueError):
    """Malformed or out-of-range input, rejected before any state mutation."""

    code = "VALIDATION_ERROR"


class InvalidLocation(ValidationError):
    """A location sample failed range or accuracy checks."""

    code = "INVALID_LOCATION"


class NotFound(GuardianError, LookupError):
    """Unknown geofence, case or lead id."""

    code = "NOT_FOUND"


class Unauthorized(GuardianError):
    """The acting user does not own the resource."""

    code = "UNAUTHORIZED"


class QuotaExceeded(GuardianError):
    """Per-owner or per-reporter cap reached."""

    code = "QUOTA_EXCEEDED"


class InvalidTransition(GuardianError):
    """Lifecycle move not allowed from the current state."""

    code = "INVALID_TRANSITION"


class AlreadyClosed(InvalidTransition):
    code = "ALREADY_CLOSED"


class NotClosed(InvalidTransition):
    code = "NOT_CLOSED"


class ServiceUnavailable(GuardianError):
    """The service has been shut down and no longer accepts work."""

    code = "SERVICE_UNAVAILABLE"


def validation_error_from_pydantic(exc: Exception, what: str) -> ValidationError:
    """
    Convert a pydantic ValidationError into our ValidationError.

    Args:
        exc: The pydantic exception
        what: Name of the object being validated (used in the message)

    Returns:
        ValidationError carrying the pydantic error list in details
    """
    errors = exc.errors() if hasattr(exc, "errors") else []
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in errors]
    message = f"Invalid {what}: " + (", ".join(f for f in fields if f) or str(exc))
    return ValidationError(
        message,
        details={"errors": [{"field": f, "message": e.get("msg")} for f, e in zip(fields, errors)]},
    )
