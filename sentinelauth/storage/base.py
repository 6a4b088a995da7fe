from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from cryptography.fernet import Fernet

from sentinelauth.storage.models import Account, AuditEvent, OtpChallenge


class AccountStore(Protocol):
    """Account repository used by the lifecycles.

    Every mutating method is atomic for one account: counters and flags are
    never read, modified and written back by the caller.
    """

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_identity(self, role: str, identity: str) -> Optional[Account]: ...

    def get_account_by_verification_token(self, token_hash: str) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[Account]: ...

    def reset_failed_logins(self, account_id: str) -> None: ...

    def set_mfa_pending(self, account_id: str, until: Optional[datetime]) -> None: ...

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime, sent_at: datetime
    ) -> Optional[Account]: ...

    def consume_verification_token(self, token_hash: str, now: datetime) -> Optional[Account]: ...

    def use_recovery_code(self, account_id: str, code_hash: str) -> bool: ...

    def put_otp_challenge(self, challenge: OtpChallenge) -> OtpChallenge: ...

    def get_otp_challenge(self, contact: str) -> Optional[OtpChallenge]: ...

    def record_otp_attempt(self, contact: str) -> Optional[OtpChallenge]: ...

    def consume_otp_challenge(self, contact: str) -> bool: ...

    def append_audit_event(
        self, event: str, account_id: Optional[str], details: Dict, created_at: datetime
    ) -> AuditEvent: ...

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str | None, fs_root: Path) -> Fernet:
    """Fernet cipher for authenticator secrets at rest.

    Falls back to JWT_SECRET, then to a key persisted under the shared root.
    """
    material = key_material or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
    if not material:
        secret_path = fs_root / ".mfa_key"
        try:
            if secret_path.exists():
                material = secret_path.read_text().strip()
        except OSError:
            material = None
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                secret_path.parent.mkdir(parents=True, exist_ok=True)
                secret_path.write_text(generated)
                os.chmod(secret_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
            material = generated
    return Fernet(_derive_cipher_key(material))
