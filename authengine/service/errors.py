from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after_seconds: int = 1,
        limit: Optional[int] = None,
        **kwargs,
    ) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after_seconds": retry_after_seconds}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the message never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class AccessReason:
    """Machine code, user-facing explanation and remediation hint."""

    code: str
    message: str
    action: str

    def as_dict(self) -> dict:
        return asdict(self)


class AccountAccessError(ForbiddenError):
    """Account exists but may not be used right now (403)."""
    error_code = "account_unavailable"

    def __init__(self, reason: AccessReason) -> None:
        super().__init__(reason.message, detail={"reason": reason.as_dict()})
        self.reason = reason


class AccountNotVerifiedError(AccountAccessError):
    error_code = "account_not_verified"


class AccountInactiveError(AccountAccessError):
    error_code = "account_inactive"


class AccountSuspendedError(AccountAccessError):
    error_code = "account_suspended"


class AccountLockedError(ServiceError):
    """Too many failed logins for this email (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "account temporarily locked after repeated failed logins",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class InvalidOrExpiredArtifactError(ValidationError):
    """Code or token is unknown, expired, exhausted, used or wrong (400)."""
    error_code = "invalid_or_expired_artifact"

    def __init__(self, message: str = "invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorCodeError(AuthenticationError):
    error_code = "invalid_two_factor_code"

    def __init__(self, message: str = "invalid two-factor code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSessionError(AuthenticationError):
    error_code = "invalid_session"

    def __init__(self, message: str = "session is no longer active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccessReason",
    "AccountAccessError",
    "AccountNotVerifiedError",
    "AccountInactiveError",
    "AccountSuspendedError",
    "AccountLockedError",
    "InvalidOrExpiredArtifactError",
    "InvalidTwoFactorCodeError",
    "InvalidSessionError",
    "InvalidRefreshTokenError",
]
