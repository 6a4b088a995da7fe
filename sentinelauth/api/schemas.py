from __future__ import annotations

import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_step",
    "invalid_token",
    "unauthorized",
    "invalid_code",
    "forbidden",
    "email_not_verified",
    "account_not_activated",
    "mfa_method_not_allowed",
    "not_found",
    "conflict",
    "already_verified",
    "locked",
    "rate_limited",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    full_name: str = Field(..., max_length=120)
    email: str = Field(..., max_length=254)
    mobile: str = Field(..., max_length=20)
    role: str = Field(..., max_length=32)
    service_id: str = Field(default="", max_length=254)
    password: str = Field(..., max_length=128)
    confirm_password: Optional[str] = Field(default=None, max_length=128)
    mfa_method: Optional[str] = Field(default=None, max_length=32)
    eligibility_confirmed: bool = False

    @field_validator("full_name", "email", "service_id")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _normalize_unicode(value)


class LoginRequest(BaseModel):
    role: str = Field(..., max_length=32)
    identity: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)
    mfa_method: Optional[str] = Field(default=None, max_length=32)

    @field_validator("identity")
    @classmethod
    def _normalize_identity(cls, value: str) -> str:
        return _normalize_unicode(value)


class MfaVerifyRequest(BaseModel):
    account_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=10)
    method: Optional[str] = Field(default=None, max_length=32)


class RecoveryCodeRequest(BaseModel):
    account_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)


class AccountRequest(BaseModel):
    account_id: str = Field(..., max_length=64)
