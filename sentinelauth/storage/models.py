from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RecoveryCode:
    code_hash: str
    used: bool = False


@dataclass
class Account:
    id: str
    full_name: str
    mobile: str
    identity: str
    email: str
    role: str
    password_hash: str
    mfa_method: str
    authenticator_secret: Optional[str] = None
    recovery_codes: List[RecoveryCode] = field(default_factory=list)
    is_active: bool = False
    email_verified: bool = False
    manual_review: bool = False
    verification_token_hash: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    verification_sent_at: Optional[datetime] = None
    failed_logins: int = 0
    lock_until: Optional[datetime] = None
    mfa_pending_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    @property
    def recovery_codes_remaining(self) -> int:
        return sum(1 for code in self.recovery_codes if not code.used)


@dataclass
class OtpChallenge:
    contact: str
    masked_contact: str
    code_hash: str
    salt: str
    issued_at: datetime
    expires_at: datetime
    last_sent_at: datetime
    attempts: int = 0
    consumed: bool = False


@dataclass
class AuditEvent:
    id: str
    event: str
    account_id: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
