from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on. The generic codes are:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Identity-specific subclasses refine those with their own codes
    (``account_blocked``, ``account_locked``, ``invalid_token`` ...).
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


class InvalidTokenError(ValidationError):
    """Verification or reset token is unknown or already used (400)."""
    error_code = "invalid_token"


class ExpiredTokenError(ValidationError):
    """Verification or reset token is past its expiry (400)."""
    error_code = "token_expired"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong password and unknown email collapse into this one outcome."""
    error_code = "invalid_credentials"


class SessionNotFoundError(AuthenticationError):
    error_code = "session_not_found"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    error_code = "session_expired"


class ProviderVerificationError(AuthenticationError):
    """Provider payload failed its signature or freshness check (401)."""
    error_code = "provider_verification_failed"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBlockedError(ForbiddenError):
    """Account is blocked; no session is ever issued for it."""
    error_code = "account_blocked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LastAuthMethodError(ConflictError):
    """Unlinking would leave the account without any login method."""
    error_code = "last_auth_method"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class AccountLockedError(RateLimitedError):
    """Too many failed logins; carries the remaining lockout in minutes."""
    error_code = "account_locked"

    def __init__(self, lock_remaining_minutes: int) -> None:
        super().__init__(
            f"too many failed login attempts, try again in {lock_remaining_minutes} minutes",
            detail={"lock_remaining_minutes": lock_remaining_minutes},
        )
        self.lock_remaining_minutes = lock_remaining_minutes


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ReferralCodeExhaustedError(ServerError):
    """No free referral code was found within the retry budget."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "ProviderVerificationError",
    "ForbiddenError",
    "AccountBlockedError",
    "NotFoundError",
    "ConflictError",
    "LastAuthMethodError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
    "ReferralCodeExhaustedError",
]
