from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for auth-core failures handed to the calling layer.

    Every exception class defines both a status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input, rejected before the store is touched (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Wrong password or unknown identity (401).

    The message never varies so callers cannot tell the two apart.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Login is suspended until ``locked_until`` (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, message: Optional[str] = None) -> None:
        super().__init__(
            message or "Account is locked due to too many failed login attempts",
            detail={"locked_until": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class TokenInvalidError(ServiceError):
    """Bad, expired, rotated, used or unknown token (401).

    ``reason`` is kept for logs only; callers always see the same message.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, reason: str, message: str = "Invalid or expired token") -> None:
        super().__init__(message)
        self.reason = reason


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many attempts. Please try again later.") -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class TransientStoreError(ServiceError):
    """Credential store unreachable or timed out; safe to retry (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "TokenInvalidError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TransientStoreError",
    "ServerError",
]
