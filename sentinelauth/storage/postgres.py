from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        full_name TEXT NOT NULL,
        mobile TEXT NOT NULL,
        identity TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        mfa_method TEXT NOT NULL,
        authenticator_secret TEXT,
        recovery_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT false,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        manual_review BOOLEAN NOT NULL DEFAULT false,
        verification_token_hash TEXT UNIQUE,
        verification_expires_at TIMESTAMPTZ,
        verification_sent_at TIMESTAMPTZ,
        failed_logins INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        mfa_pending_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (role, identity)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        contact TEXT PRIMARY KEY,
        masked_contact TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_sent_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        consumed BOOLEAN NOT NULL DEFAULT false
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        event TEXT NOT NULL,
        account_id TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_account_idx ON audit_event (account_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed account repository.

    Counters and one-shot flags change through single conditional
    ``UPDATE ... RETURNING`` statements so concurrent requests for one account
    cannot interleave a read-modify-write.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

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

    def _account_from_row(self, row: Optional[dict]) -> Optional[Account]:
        if not row:
            return None
        codes = row.get("recovery_codes") or []
        if isinstance(codes, str):
            codes = json.loads(codes)
        return Account(
            id=row["id"],
            full_name=row["full_name"],
            mobile=row["mobile"],
            identity=row["identity"],
            email=row["email"],
            role=row["role"],
            password_hash=row["password_hash"],
            mfa_method=row["mfa_method"],
            authenticator_secret=self._decrypt_secret(row.get("authenticator_secret")),
            recovery_codes=[
                RecoveryCode(code_hash=c["code_hash"], used=bool(c.get("used"))) for c in codes
            ],
            is_active=bool(row.get("is_active")),
            email_verified=bool(row.get("email_verified")),
            manual_review=bool(row.get("manual_review")),
            verification_token_hash=row.get("verification_token_hash"),
            verification_expires_at=row.get("verification_expires_at"),
            verification_sent_at=row.get("verification_sent_at"),
            failed_logins=int(row.get("failed_logins") or 0),
            lock_until=row.get("lock_until"),
            mfa_pending_until=row.get("mfa_pending_until"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _challenge_from_row(row: Optional[dict]) -> Optional[OtpChallenge]:
        if not row:
            return None
        return OtpChallenge(
            contact=row["contact"],
            masked_contact=row["masked_contact"],
            code_hash=row["code_hash"],
            salt=row["salt"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            last_sent_at=row["last_sent_at"],
            attempts=int(row.get("attempts") or 0),
            consumed=bool(row.get("consumed")),
        )

    # accounts
    def create_account(self, account: Account) -> Account:
        codes = [{"code_hash": c.code_hash, "used": c.used} for c in account.recovery_codes]
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, full_name, mobile, identity, email, role, password_hash,
                        mfa_method, authenticator_secret, recovery_codes, is_active,
                        email_verified, manual_review, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.full_name,
                        account.mobile,
                        account.identity,
                        account.email,
                        account.role,
                        account.password_hash,
                        account.mfa_method,
                        self._encrypt_secret(account.authenticator_secret),
                        json.dumps(codes),
                        account.is_active,
                        account.email_verified,
                        account.manual_review,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "email" if "email" in constraint else "identity"
            raise ConstraintViolation(f"{field} already registered", {"field": field}) from exc
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row)

    def get_account_by_identity(self, role: str, identity: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE role = %s AND identity = %s", (role, identity)
            ).fetchone()
        return self._account_from_row(row)

    def get_account_by_verification_token(self, token_hash: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE verification_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._account_from_row(row)

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_logins = failed_logins + 1,
                    lock_until = CASE WHEN failed_logins + 1 >= %s THEN %s ELSE lock_until END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (threshold, lock_until, account_id),
            ).fetchone()
        return self._account_from_row(row)

    def reset_failed_logins(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account SET failed_logins = 0, lock_until = NULL, updated_at = now()
                WHERE id = %s
                """,
                (account_id,),
            )

    def set_mfa_pending(self, account_id: str, until: Optional[datetime]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET mfa_pending_until = %s WHERE id = %s",
                (until, account_id),
            )

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime, sent_at: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET verification_token_hash = %s,
                    verification_expires_at = %s,
                    verification_sent_at = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (token_hash, expires_at, sent_at, account_id),
            ).fetchone()
        return self._account_from_row(row)

    def consume_verification_token(self, token_hash: str, now: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET verification_token_hash = NULL,
                    verification_expires_at = NULL,
                    email_verified = true,
                    is_active = CASE WHEN manual_review THEN is_active ELSE true END,
                    updated_at = now()
                WHERE verification_token_hash = %s AND verification_expires_at > %s
                RETURNING *
                """,
                (token_hash, now),
            ).fetchone()
        return self._account_from_row(row)

    def use_recovery_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET recovery_codes = (
                    SELECT jsonb_agg(
                        CASE WHEN elem->>'code_hash' = %s
                             THEN jsonb_set(elem, '{used}', 'true'::jsonb)
                             ELSE elem END
                    )
                    FROM jsonb_array_elements(recovery_codes) AS elem
                ),
                updated_at = now()
                WHERE id = %s
                  AND recovery_codes @> jsonb_build_array(
                      jsonb_build_object('code_hash', %s::text, 'used', false)
                  )
                RETURNING id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    # one-time codes
    def put_otp_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_challenge (
                    contact, masked_contact, code_hash, salt, issued_at, expires_at,
                    last_sent_at, attempts, consumed
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (contact) DO UPDATE
                SET masked_contact = EXCLUDED.masked_contact,
                    code_hash = EXCLUDED.code_hash,
                    salt = EXCLUDED.salt,
                    issued_at = EXCLUDED.issued_at,
                    expires_at = EXCLUDED.expires_at,
                    last_sent_at = EXCLUDED.last_sent_at,
                    attempts = EXCLUDED.attempts,
                    consumed = EXCLUDED.consumed
                """,
                (
                    challenge.contact,
                    challenge.masked_contact,
                    challenge.code_hash,
                    challenge.salt,
                    challenge.issued_at,
                    challenge.expires_at,
                    challenge.last_sent_at,
                    challenge.attempts,
                    challenge.consumed,
                ),
            )
        return challenge

    def get_otp_challenge(self, contact: str) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE contact = %s", (contact,)
            ).fetchone()
        return self._challenge_from_row(row)

    def record_otp_attempt(self, contact: str) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_challenge SET attempts = attempts + 1 WHERE contact = %s RETURNING *",
                (contact,),
            ).fetchone()
        return self._challenge_from_row(row)

    def consume_otp_challenge(self, contact: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET consumed = true
                WHERE contact = %s AND consumed = false
                RETURNING contact
                """,
                (contact,),
            ).fetchone()
        return row is not None

    # audit
    def append_audit_event(
        self, event: str, account_id: Optional[str], details: Dict, created_at: datetime
    ) -> AuditEvent:
        record = AuditEvent(
            id=str(uuid.uuid4()),
            event=event,
            account_id=account_id,
            details=dict(details),
            created_at=created_at,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, event, account_id, details, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (record.id, event, account_id, json.dumps(record.details), created_at),
            )
        return record

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if account_id:
                rows = conn.execute(
                    """
                    SELECT * FROM audit_event WHERE account_id = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (account_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_event ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                event=row["event"],
                account_id=row.get("account_id"),
                details=row.get("details"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
