"""Typed failures for ride and conversation operations.

Every error carries a stable ``kind`` that clients can switch on and a
human-readable ``message``. ``status_code`` is what the HTTP layer returns.
"""


class RideMatchError(Exception):
    """Base class for all expected failures."""
    status_code = 500
    default_kind = "error"

    def __init__(self, message: str, kind: str = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


class ValidationError(RideMatchError):
    """Raised for malformed or out-of-range input."""
    status_code = 400
    default_kind = "invalid_input"


class NotFoundError(RideMatchError):
    """Raised when a ride, conversation or counterpart is missing (or expired away)."""
    status_code = 404
    default_kind = "not_found"


class ConflictError(RideMatchError):
    """Raised when an operation would break a pairing invariant."""
    status_code = 409
    default_kind = "conflict"

    _status_by_kind = {"quota_exceeded": 429, "expired": 410}

    def __init__(self, message: str, kind: str = None):
        super().__init__(message, kind)
        self.status_code = self._status_by_kind.get(self.kind, ConflictError.status_code)


class AuthorizationError(RideMatchError):
    """Raised when the actor is not a participant of the conversation."""
    status_code = 403
    default_kind = "not_participant"


class AuthenticationError(RideMatchError):
    """Raised when a call carries no usable actor id."""
    status_code = 401
    default_kind = "unauthenticated"


class TransientStoreError(RideMatchError):
    """Raised when a transaction was aborted by contention. Safe to retry."""
    status_code = 503
    default_kind = "transient"
