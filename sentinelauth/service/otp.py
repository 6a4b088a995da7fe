from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sentinelauth.logging import get_logger
from sentinelauth.service.email import redact_email
from sentinelauth.service.errors import RateLimitedError
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.models import OtpChallenge, utcnow

logger = get_logger(__name__)

OTP_DIGITS = 6


class OtpResult(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class IssuedCode:
    code: str
    masked_contact: str
    expires_at: datetime


def _hash_code(salt: str, code: str) -> str:
    return hashlib.sha256(f"{salt}:{code}".encode()).hexdigest()


class OtpChallengeManager:
    """Delivered one-time codes: one live challenge per contact.

    Codes are stored as salted hashes in the account store, so challenges
    survive restarts and are shared between workers.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        ttl_seconds: int = 60,
        resend_cooldown_seconds: int = 30,
        max_attempts: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.resend_cooldown = timedelta(seconds=resend_cooldown_seconds)
        self.max_attempts = max_attempts
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def current(self, contact: str) -> Optional[OtpChallenge]:
        """Live challenge still inside its resend cooldown, if any."""
        challenge = self.store.get_otp_challenge(contact)
        if challenge is None or challenge.consumed:
            return None
        now = self._now()
        if now >= challenge.last_sent_at + self.resend_cooldown or now > challenge.expires_at:
            return None
        return challenge

    def issue(self, contact: str) -> IssuedCode:
        """Create a fresh code for ``contact``, replacing any previous challenge."""
        now = self._now()
        existing = self.store.get_otp_challenge(contact)
        if existing and not existing.consumed:
            next_allowed = existing.last_sent_at + self.resend_cooldown
            if now < next_allowed:
                retry_after = max(1, int((next_allowed - now).total_seconds()))
                logger.info("otp_resend_throttled", retry_after_seconds=retry_after)
                raise RateLimitedError(
                    "please wait before requesting another code",
                    detail={"retry_after_seconds": retry_after},
                )
        code = f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"
        salt = secrets.token_hex(16)
        masked = redact_email(contact)
        challenge = OtpChallenge(
            contact=contact,
            masked_contact=masked,
            code_hash=_hash_code(salt, code),
            salt=salt,
            issued_at=now,
            expires_at=now + self.ttl,
            last_sent_at=now,
        )
        self.store.put_otp_challenge(challenge)
        logger.info("otp_issued", masked_contact=masked, expires_at=challenge.expires_at.isoformat())
        return IssuedCode(code=code, masked_contact=masked, expires_at=challenge.expires_at)

    def verify(self, contact: str, code: str) -> OtpResult:
        """Check ``code`` against the live challenge; expiry takes precedence over mismatch."""
        now = self._now()
        challenge = self.store.get_otp_challenge(contact)
        if challenge is None or challenge.consumed:
            return OtpResult.EXPIRED
        if now > challenge.expires_at or challenge.attempts >= self.max_attempts:
            return OtpResult.EXPIRED
        candidate = (code or "").strip()
        if not hmac.compare_digest(_hash_code(challenge.salt, candidate), challenge.code_hash):
            updated = self.store.record_otp_attempt(contact)
            if updated is not None and updated.attempts >= self.max_attempts:
                logger.warning("otp_attempts_exhausted", masked_contact=challenge.masked_contact)
            return OtpResult.MISMATCH
        if not self.store.consume_otp_challenge(contact):
            # Lost a race with a concurrent verification
            return OtpResult.EXPIRED
        return OtpResult.VALID

    def invalidate(self, contact: str) -> None:
        self.store.consume_otp_challenge(contact)
