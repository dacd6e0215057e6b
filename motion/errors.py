"""Domain errors raised by Motion services and rendered by the API."""

from __future__ import annotations


class MotionError(Exception):
    """Base class for expected, caller-visible failures."""

    code = "MotionError"
    status_code = 500

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.code
        if code:
            self.code = code
        super().__init__(self.message)

    def as_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class NotFoundError(MotionError):
    code = "NotFound"
    status_code = 404


class ForbiddenError(MotionError):
    code = "Forbidden"
    status_code = 403


class HostCannotRsvpError(MotionError):
    code = "HostCannotRsvp"
    status_code = 403

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "Hosts cannot RSVP to their own events")


class ConflictError(MotionError):
    code = "Conflict"
    status_code = 409


class ValidationError(MotionError):
    code = "ValidationError"
    status_code = 400


class TransientStoreError(MotionError):
    """The store failed mid-operation; any reserved seats were handed back."""

    code = "TransientStoreError"
    status_code = 503


class AuthenticationError(MotionError):
    code = "Unauthorized"
    status_code = 401
