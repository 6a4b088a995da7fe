from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized (401)
    - invalid_code (401)
    - forbidden (403)
    - email_not_verified (403)
    - account_not_activated (403)
    - mfa_method_not_allowed (403)
    - conflict (409)
    - already_verified (409)
    - locked (423)
    - rate_limited (429)
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
    """Input failed a role policy or request check (400).

    ``detail["fields"]`` maps field names to the list of issues raised for it.
    """
    status_code = 400
    error_code = "validation_error"


class TokenError(ServiceError):
    """Verification token missing, consumed or expired (400)."""
    status_code = 400
    error_code = "invalid_token"


class CredentialError(ServiceError):
    """Identity or password did not match (401).

    The message is always generic; the specific reason only goes to the
    audit trail.
    """
    status_code = 401
    error_code = "unauthorized"


class OtpError(ServiceError):
    """Second-factor code rejected (401); ``detail["reason"]`` is expired or mismatch."""
    status_code = 401
    error_code = "invalid_code"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


class AccountNotActivatedError(ForbiddenError):
    error_code = "account_not_activated"


class MfaMethodNotAllowedError(ForbiddenError):
    error_code = "mfa_method_not_allowed"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyVerifiedError(ConflictError):
    error_code = "already_verified"


class LockoutError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    """Rate limit or resend cooldown exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Static policy data is inconsistent, e.g. a role without a policy."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "TokenError",
    "CredentialError",
    "OtpError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "AccountNotActivatedError",
    "MfaMethodNotAllowedError",
    "NotFoundError",
    "ConflictError",
    "AlreadyVerifiedError",
    "LockoutError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
]
