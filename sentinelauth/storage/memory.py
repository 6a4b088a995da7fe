from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import InvalidToken

from sentinelauth.logging import get_logger
from sentinelauth.storage.base import build_mfa_cipher
from sentinelauth.storage.errors import ConstraintViolation
from sentinelauth.storage.models import (
    Account,
    AuditEvent,
    OtpChallenge,
    RecoveryCode,
    utcnow,
)


class MemoryStore:
    """In-process account repository persisted to a JSON file under the shared root."""

    def __init__(
        self, fs_root: str = "/tmp/sentinelauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.otp_challenges: Dict[str, OtpChallenge] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("authenticator_secret_decrypt_failed")
            raise RuntimeError("authenticator secret cannot be decrypted") from exc

    def _public(self, account: Optional[Account]) -> Optional[Account]:
        """Detached copy with the authenticator secret decrypted."""
        if account is None:
            return None
        clone = copy.deepcopy(account)
        clone.authenticator_secret = self._decrypt_secret(account.authenticator_secret)
        return clone

    # accounts
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.role == account.role and existing.identity == account.identity:
                    raise ConstraintViolation(
                        "identity already registered", {"field": "identity"}
                    )
                if existing.email == account.email:
                    raise ConstraintViolation("email already registered", {"field": "email"})
            stored = copy.deepcopy(account)
            stored.authenticator_secret = self._encrypt_secret(account.authenticator_secret)
            self.accounts[account.id] = stored
            self._persist_state()
            return self._public(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._public(self.accounts.get(account_id))

    def get_account_by_identity(self, role: str, identity: str) -> Optional[Account]:
        with self._data_lock:
            match = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.role == role and a.identity == identity
                ),
                None,
            )
            return self._public(match)

    def get_account_by_verification_token(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            match = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.verification_token_hash and a.verification_token_hash == token_hash
                ),
                None,
            )
            return self._public(match)

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_logins += 1
            if account.failed_logins >= threshold:
                account.lock_until = lock_until
            account.updated_at = utcnow()
            self._persist_state()
            return self._public(account)

    def reset_failed_logins(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.failed_logins = 0
            account.lock_until = None
            account.updated_at = utcnow()
            self._persist_state()

    def set_mfa_pending(self, account_id: str, until: Optional[datetime]) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.mfa_pending_until = until
            self._persist_state()

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime, sent_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.verification_token_hash = token_hash
            account.verification_expires_at = expires_at
            account.verification_sent_at = sent_at
            account.updated_at = utcnow()
            self._persist_state()
            return self._public(account)

    def consume_verification_token(self, token_hash: str, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.verification_token_hash and a.verification_token_hash == token_hash
                ),
                None,
            )
            if not account:
                return None
            if not account.verification_expires_at or account.verification_expires_at <= now:
                return None
            account.verification_token_hash = None
            account.verification_expires_at = None
            account.email_verified = True
            if not account.manual_review:
                account.is_active = True
            account.updated_at = utcnow()
            self._persist_state()
            return self._public(account)

    def use_recovery_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            for code in account.recovery_codes:
                if code.code_hash == code_hash and not code.used:
                    code.used = True
                    self._persist_state()
                    return True
            return False

    # one-time codes
    def put_otp_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        with self._data_lock:
            self.otp_challenges[challenge.contact] = copy.deepcopy(challenge)
            self._persist_state()
            return challenge

    def get_otp_challenge(self, contact: str) -> Optional[OtpChallenge]:
        with self._data_lock:
            challenge = self.otp_challenges.get(contact)
            return copy.deepcopy(challenge) if challenge else None

    def record_otp_attempt(self, contact: str) -> Optional[OtpChallenge]:
        with self._data_lock:
            challenge = self.otp_challenges.get(contact)
            if not challenge:
                return None
            challenge.attempts += 1
            self._persist_state()
            return copy.deepcopy(challenge)

    def consume_otp_challenge(self, contact: str) -> bool:
        with self._data_lock:
            challenge = self.otp_challenges.get(contact)
            if not challenge or challenge.consumed:
                return False
            challenge.consumed = True
            self._persist_state()
            return True

    # audit
    def append_audit_event(
        self, event: str, account_id: Optional[str], details: Dict, created_at: datetime
    ) -> AuditEvent:
        with self._data_lock:
            record = AuditEvent(
                id=str(uuid.uuid4()),
                event=event,
                account_id=account_id,
                details=dict(details),
                created_at=created_at,
            )
            self.audit_events.append(record)
            self._persist_state()
            return record

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e for e in self.audit_events if account_id is None or e.account_id == account_id
            ]
            return list(reversed(events))[:limit]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "otp_challenges": [
                self._serialize_challenge(c) for c in self.otp_challenges.values()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.otp_challenges = {
            c["contact"]: self._deserialize_challenge(c)
            for c in data.get("otp_challenges", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "full_name": account.full_name,
            "mobile": account.mobile,
            "identity": account.identity,
            "email": account.email,
            "role": account.role,
            "password_hash": account.password_hash,
            "mfa_method": account.mfa_method,
            "authenticator_secret": account.authenticator_secret,
            "recovery_codes": [
                {"code_hash": c.code_hash, "used": c.used} for c in account.recovery_codes
            ],
            "is_active": account.is_active,
            "email_verified": account.email_verified,
            "manual_review": account.manual_review,
            "verification_token_hash": account.verification_token_hash,
            "verification_expires_at": self._serialize_datetime(account.verification_expires_at),
            "verification_sent_at": self._serialize_datetime(account.verification_sent_at),
            "failed_logins": account.failed_logins,
            "lock_until": self._serialize_datetime(account.lock_until),
            "mfa_pending_until": self._serialize_datetime(account.mfa_pending_until),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            full_name=data.get("full_name", ""),
            mobile=data.get("mobile", ""),
            identity=data["identity"],
            email=data["email"],
            role=data["role"],
            password_hash=data["password_hash"],
            mfa_method=data["mfa_method"],
            authenticator_secret=data.get("authenticator_secret"),
            recovery_codes=[
                RecoveryCode(code_hash=c["code_hash"], used=bool(c.get("used", False)))
                for c in data.get("recovery_codes", [])
            ],
            is_active=bool(data.get("is_active", False)),
            email_verified=bool(data.get("email_verified", False)),
            manual_review=bool(data.get("manual_review", False)),
            verification_token_hash=data.get("verification_token_hash"),
            verification_expires_at=self._deserialize_datetime(data.get("verification_expires_at")),
            verification_sent_at=self._deserialize_datetime(data.get("verification_sent_at")),
            failed_logins=int(data.get("failed_logins", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            mfa_pending_until=self._deserialize_datetime(data.get("mfa_pending_until")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_challenge(self, challenge: OtpChallenge) -> dict:
        return {
            "contact": challenge.contact,
            "masked_contact": challenge.masked_contact,
            "code_hash": challenge.code_hash,
            "salt": challenge.salt,
            "issued_at": self._serialize_datetime(challenge.issued_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "last_sent_at": self._serialize_datetime(challenge.last_sent_at),
            "attempts": challenge.attempts,
            "consumed": challenge.consumed,
        }

    def _deserialize_challenge(self, data: dict) -> OtpChallenge:
        return OtpChallenge(
            contact=data["contact"],
            masked_contact=data.get("masked_contact", ""),
            code_hash=data["code_hash"],
            salt=data["salt"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_sent_at=self._deserialize_datetime(data["last_sent_at"]),
            attempts=int(data.get("attempts", 0)),
            consumed=bool(data.get("consumed", False)),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "event": event.event,
            "account_id": event.account_id,
            "details": event.details,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=str(data["id"]),
            event=data["event"],
            account_id=data.get("account_id"),
            details=data.get("details"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
