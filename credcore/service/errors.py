from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable ``error_code`` alongside its HTTP status:
    - validation_error (400)
    - unauthorized (401)
    - account_disabled / email_unverified / invalid_state (403)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - upstream_error / server_error (500)
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

    @property
    def headers(self) -> dict[str, str]:
        """Extra response headers the HTTP layer should attach."""
        return {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    """Credentials were valid but the account is deactivated."""
    error_code = "account_disabled"


class EmailUnverifiedError(ForbiddenError):
    """Credentials were valid but the email address is not yet verified."""
    error_code = "email_unverified"


class CsrfStateError(ForbiddenError):
    """OAuth state was unknown, expired, replayed or issued for another flow."""
    error_code = "invalid_state"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed attempts; login refused until ``locked_until`` (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account locked due to too many failed attempts",
        *,
        locked_until: Optional[datetime] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        detail: dict = {}
        if locked_until is not None:
            detail["locked_until"] = locked_until.isoformat()
        if retry_after is not None:
            detail["retry_after"] = retry_after
        super().__init__(message, detail=detail)
        self.locked_until = locked_until
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int,
        limit: Optional[int] = None,
    ) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after
        self.limit = limit

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Retry-After": str(self.retry_after)}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
            headers["X-RateLimit-Remaining"] = "0"
            headers["X-RateLimit-Reset"] = str(self.retry_after)
        return headers


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServerError):
    """An identity provider failed or returned something unusable.

    The message returned to clients is always generic; provider detail is
    only logged.
    """
    error_code = "upstream_error"

    def __init__(self, message: str = "identity provider request failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountDisabledError",
    "EmailUnverifiedError",
    "CsrfStateError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
    "UpstreamError",
]
