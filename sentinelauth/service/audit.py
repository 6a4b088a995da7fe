from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional

from sentinelauth.logging import get_logger
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.models import AuditEvent, utcnow

logger = get_logger("sentinelauth.audit")


class AuditTrail:
    """Append-only record of security events.

    Holds the precise reasons (unknown identity, wrong password, lock) that the
    caller never sees.
    """

    def __init__(
        self, store: AccountStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def record(self, event: str, account_id: Optional[str] = None, **details: Any) -> AuditEvent:
        logger.info(event, account_id=account_id, **details)
        return self.store.append_audit_event(event, account_id, details, self._clock())

    def events(self, account_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        return self.store.list_audit_events(account_id=account_id, limit=limit)
