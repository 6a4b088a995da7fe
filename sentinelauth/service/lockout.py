from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sentinelauth.logging import get_logger
from sentinelauth.service.errors import LockoutError
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.models import Account, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailureOutcome:
    failed_logins: int
    attempts_remaining: int
    locked: bool
    retry_after_seconds: int = 0


class LockoutTracker:
    """Failed-password counter and temporary lock, persisted on the account.

    The counter only returns to zero through ``reset`` after a complete
    password and second-factor sign-in; an expired lock does not clear it.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        threshold: int = 3,
        lock_minutes: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = timedelta(minutes=lock_minutes)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def retry_after_seconds(self, account: Account) -> int:
        if not account.lock_until:
            return 0
        remaining = (account.lock_until - self._now()).total_seconds()
        return max(0, math.ceil(remaining))

    def is_locked(self, account: Account) -> bool:
        return account.is_locked(self._now())

    def ensure_not_locked(self, account: Account) -> None:
        if self.is_locked(account):
            raise LockoutError(
                "account temporarily locked",
                detail={"retry_after_seconds": self.retry_after_seconds(account)},
            )

    def record_failure(self, account: Account) -> FailureOutcome:
        updated = self.store.record_failed_login(
            account.id,
            threshold=self.threshold,
            lock_until=self._now() + self.lock_duration,
        )
        if updated is None:
            return FailureOutcome(failed_logins=0, attempts_remaining=self.threshold, locked=False)
        locked = self.is_locked(updated)
        if locked:
            logger.warning(
                "account_locked",
                account_id=account.id,
                failed_logins=updated.failed_logins,
                lock_until=updated.lock_until.isoformat() if updated.lock_until else None,
            )
        return FailureOutcome(
            failed_logins=updated.failed_logins,
            attempts_remaining=max(0, self.threshold - updated.failed_logins),
            locked=locked,
            retry_after_seconds=self.retry_after_seconds(updated) if locked else 0,
        )

    def reset(self, account_id: str) -> None:
        self.store.reset_failed_logins(account_id)
