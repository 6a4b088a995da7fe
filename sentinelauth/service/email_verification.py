from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sentinelauth.logging import get_logger
from sentinelauth.service.errors import NotFoundError, RateLimitedError, TokenError
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.models import Account, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def hash_token(token: str) -> str:
    return hashlib.sha256((token or "").encode()).hexdigest()


class EmailVerificationTokenManager:
    """Single-use email verification links.

    Only the SHA-256 digest of a token is stored; the raw value exists in the
    outgoing message alone.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        ttl_minutes: int = 15,
        resend_seconds: int = 120,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self.resend_interval = timedelta(seconds=resend_seconds)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, account: Account) -> IssuedToken:
        now = self._now()
        if account.verification_sent_at is not None:
            next_allowed = account.verification_sent_at + self.resend_interval
            if now < next_allowed:
                retry_after = max(1, int((next_allowed - now).total_seconds()))
                raise RateLimitedError(
                    "verification email recently sent",
                    detail={"retry_after_seconds": retry_after},
                )
        token = secrets.token_hex(32)
        expires_at = now + self.ttl
        updated = self.store.set_verification_token(account.id, hash_token(token), expires_at, now)
        if updated is None:
            raise NotFoundError("account not found")
        logger.info("email_verification_token_issued", account_id=account.id)
        return IssuedToken(token=token, expires_at=expires_at)

    def consume(self, token: str) -> Account:
        token_hash = hash_token(token)
        account = self.store.consume_verification_token(token_hash, self._now())
        if account is not None:
            return account
        if token and self.store.get_account_by_verification_token(token_hash) is not None:
            raise TokenError("verification link expired", detail={"reason": "expired"})
        raise TokenError("verification link is invalid or already used", detail={"reason": "invalid"})
