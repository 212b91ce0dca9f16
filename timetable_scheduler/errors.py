"""Error taxonomy shared by the stores, the HTTP layer and the client."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, **self.extra}


class ValidationError(AppError):
    """Malformed or out-of-range input."""

    status_code = 400
    default_message = "Invalid input"


class AuthenticationError(AppError):
    """Missing, invalid or expired credential; bad login."""

    status_code = 401
    default_message = "Not authorized"


class NotFoundError(AppError):
    """Owner-scoped lookup miss. Never distinguishes "absent" from "not yours"."""

    status_code = 404
    default_message = "Not found"


class UnavailableError(AppError):
    """Backend store unreachable."""

    status_code = 503
    default_message = "Database not available"


class InternalError(AppError):
    status_code = 500


_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    404: NotFoundError,
    503: UnavailableError,
}


def error_for_status(status_code: int, message: Optional[str] = None) -> AppError:
    """Map an HTTP status back to the taxonomy (used by the client)."""
    cls = _BY_STATUS.get(status_code)
    if cls is None:
        cls = ValidationError if 400 <= status_code < 500 else InternalError
    err = cls(message)
    err.status_code = status_code
    return err
