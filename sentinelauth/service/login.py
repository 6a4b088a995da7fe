from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sentinelauth.logging import get_logger
from sentinelauth.service.audit import AuditTrail
from sentinelauth.service.email import NotificationSender
from sentinelauth.service.errors import (
    AccountNotActivatedError,
    CredentialError,
    EmailNotVerifiedError,
    LockoutError,
    MfaMethodNotAllowedError,
    OtpError,
    ServerError,
    ValidationError,
)
from sentinelauth.service.lockout import LockoutTracker
from sentinelauth.service.otp import OtpChallengeManager, OtpResult
from sentinelauth.service.passwords import PasswordService
from sentinelauth.service.policy import (
    MfaEnforcement,
    MfaMethod,
    Role,
    RolePolicy,
    RolePolicyRegistry,
)
from sentinelauth.service.sessions import IssuedSession, SessionIssuer
from sentinelauth.service.totp import hash_recovery_code, verify_totp
from sentinelauth.service.validation import (
    FieldIssue,
    normalize_identity,
    raise_for_issues,
    validate_identity,
)
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.models import Account, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"


class LoginState(str, Enum):
    CREDENTIALS = "credentials"
    PASSWORD_CHECK = "password_check"
    MFA_CHALLENGE = "mfa_challenge"
    SESSION_ISSUED = "session_issued"
    LOCKED = "locked"


@dataclass(frozen=True)
class LoginResult:
    state: LoginState
    account_id: str
    role: str
    mfa_method: Optional[MfaMethod] = None
    masked_contact: Optional[str] = None
    code_expires_at: Optional[datetime] = None
    session: Optional[IssuedSession] = None

    def to_dict(self) -> dict:
        payload: dict = {
            "status": self.state.value,
            "account_id": self.account_id,
            "role": self.role,
            "mfa_required": self.state == LoginState.MFA_CHALLENGE,
            "mfa_method": self.mfa_method.value if self.mfa_method else None,
        }
        if self.masked_contact:
            payload["sent_to"] = self.masked_contact
        if self.code_expires_at:
            payload["code_expires_at"] = self.code_expires_at.isoformat()
        if self.session:
            payload.update(self.session.to_dict())
        return payload


def _parse_method(value: MfaMethod | str | None) -> Optional[MfaMethod]:
    if value is None or value == "":
        return None
    try:
        return MfaMethod(value)
    except ValueError as exc:
        raise ValidationError(
            "unknown MFA method",
            detail={
                "fields": {
                    "mfa_method": [
                        {"code": "mfa_method_invalid", "message": "Select a valid MFA method.", "blocking": True}
                    ]
                }
            },
        ) from exc


class LoginLifecycle:
    """Credentials -> PasswordCheck -> MfaChallenge -> SessionIssued, or Locked.

    The password step leaves a short-lived pending marker on the account; the
    second factor is only accepted while that marker is live.
    """

    def __init__(
        self,
        store: AccountStore,
        registry: RolePolicyRegistry,
        passwords: PasswordService,
        lockout: LockoutTracker,
        otp: OtpChallengeManager,
        sessions: SessionIssuer,
        notifier: NotificationSender,
        audit: AuditTrail,
        *,
        mfa_pending_minutes: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.passwords = passwords
        self.lockout = lockout
        self.otp = otp
        self.sessions = sessions
        self.notifier = notifier
        self.audit = audit
        self.mfa_pending = timedelta(minutes=mfa_pending_minutes)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def resolve_method(
        self, account: Account, policy: RolePolicy, requested: Optional[MfaMethod]
    ) -> Optional[MfaMethod]:
        """Method for this sign-in. Never changes the account's stored method."""
        rule = policy.mfa
        if rule.enforcement == MfaEnforcement.NONE:
            return None
        if rule.enforcement == MfaEnforcement.FIXED:
            if requested is not None and requested != rule.method:
                raise MfaMethodNotAllowedError(
                    f"{policy.label} accounts must use {rule.method.value} verification",
                    detail={"required_method": rule.method.value},
                )
            return rule.method
        method = requested or MfaMethod(account.mfa_method)
        if method == MfaMethod.AUTHENTICATOR and not account.authenticator_secret:
            raise MfaMethodNotAllowedError(
                "no authenticator app is enrolled for this account",
                detail={"required_method": MfaMethod.DELIVERED.value},
            )
        return method

    async def submit_credentials(
        self,
        role: Role | str,
        identity: str,
        password: str,
        *,
        mfa_method: MfaMethod | str | None = None,
    ) -> LoginResult:
        policy = self.registry.policy_for(role)
        requested = _parse_method(mfa_method)
        normalized = normalize_identity(identity, policy)
        issues = [validate_identity(normalized, policy)]
        if not password:
            issues.append(FieldIssue("password", "password_required", "Password is required."))
        raise_for_issues(issues)

        # PasswordCheck
        account = self.store.get_account_by_identity(policy.role.value, normalized)
        if account is None:
            self.passwords.verify_dummy(password)
            self.audit.record(
                "login_failed", None, role=policy.role.value, identity=normalized, reason="unknown_identity"
            )
            # same body as a first bad password
            raise CredentialError(
                INVALID_CREDENTIALS,
                detail={"attempts_remaining": self.lockout.threshold - 1},
            )

        try:
            self.lockout.ensure_not_locked(account)
        except LockoutError as exc:
            self.audit.record(
                "login_failed",
                account.id,
                reason="locked",
                retry_after_seconds=exc.detail["retry_after_seconds"],
            )
            raise

        if not self.passwords.verify(account.password_hash, password):
            outcome = self.lockout.record_failure(account)
            if outcome.locked:
                self.audit.record(
                    "account_locked",
                    account.id,
                    failed_logins=outcome.failed_logins,
                    retry_after_seconds=outcome.retry_after_seconds,
                )
                raise LockoutError(
                    "account temporarily locked",
                    detail={"retry_after_seconds": outcome.retry_after_seconds},
                )
            self.audit.record(
                "login_failed",
                account.id,
                reason="bad_password",
                attempts_remaining=outcome.attempts_remaining,
            )
            raise CredentialError(
                INVALID_CREDENTIALS,
                detail={"attempts_remaining": outcome.attempts_remaining},
            )

        if account.manual_review and not account.is_active:
            self.audit.record("login_refused", account.id, reason="pending_manual_review")
            raise AccountNotActivatedError("account is pending manual verification")
        if not account.email_verified:
            self.audit.record("login_refused", account.id, reason="email_not_verified")
            raise EmailNotVerifiedError("verify your email address before signing in")
        if not account.is_active:
            self.audit.record("login_refused", account.id, reason="not_activated")
            raise AccountNotActivatedError("account is not activated")

        method = self.resolve_method(account, policy, requested)
        if method is None:
            return self._complete(account, None)

        # MfaChallenge
        self.store.set_mfa_pending(account.id, self._now() + self.mfa_pending)
        self.audit.record("login_password_verified", account.id, mfa_method=method.value)
        if method == MfaMethod.DELIVERED:
            return await self._deliver_code(account, reuse_live=True)
        return LoginResult(
            state=LoginState.MFA_CHALLENGE,
            account_id=account.id,
            role=account.role,
            mfa_method=method,
        )

    async def _deliver_code(self, account: Account, *, reuse_live: bool) -> LoginResult:
        live = self.otp.current(account.email) if reuse_live else None
        if live is not None:
            masked, expires_at = live.masked_contact, live.expires_at
        else:
            issued = self.otp.issue(account.email)
            sent = await asyncio.to_thread(
                self.notifier.send_login_code,
                account.email,
                issued.code,
                full_name=account.full_name,
                expires_seconds=int(self.otp.ttl.total_seconds()),
            )
            self.audit.record("otp_sent", account.id, delivered=sent)
            if not sent:
                self.otp.invalidate(account.email)
                raise ServerError(
                    "unable to deliver verification code", status_code=503
                )
            masked, expires_at = issued.masked_contact, issued.expires_at
        return LoginResult(
            state=LoginState.MFA_CHALLENGE,
            account_id=account.id,
            role=account.role,
            mfa_method=MfaMethod.DELIVERED,
            masked_contact=masked,
            code_expires_at=expires_at,
        )

    def _pending_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        now = self._now()
        if account is None or not account.mfa_pending_until or account.mfa_pending_until <= now:
            self.audit.record(
                "mfa_failed", account.id if account else None, reason="no_pending_login"
            )
            raise OtpError(
                "verification window closed; sign in again", detail={"reason": "expired"}
            )
        self.lockout.ensure_not_locked(account)
        return account

    async def request_delivered_code(self, account_id: str) -> LoginResult:
        """Send a fresh delivered code for a pending sign-in (resend)."""
        account = self._pending_account(account_id)
        policy = self.registry.policy_for(account.role)
        self.resolve_method(account, policy, MfaMethod.DELIVERED)
        return await self._deliver_code(account, reuse_live=False)

    def verify_mfa(
        self, account_id: str, code: str, method: MfaMethod | str | None = None
    ) -> LoginResult:
        account = self._pending_account(account_id)
        policy = self.registry.policy_for(account.role)
        resolved = self.resolve_method(account, policy, _parse_method(method))
        if resolved is None:
            return self._complete(account, None)

        if resolved == MfaMethod.AUTHENTICATOR:
            if not verify_totp(account.authenticator_secret, code, self._now().timestamp()):
                self.audit.record("mfa_failed", account.id, method=resolved.value, reason="mismatch")
                raise OtpError("invalid verification code", detail={"reason": "mismatch"})
        else:
            result = self.otp.verify(account.email, code)
            if result == OtpResult.EXPIRED:
                self.audit.record("mfa_failed", account.id, method=resolved.value, reason="expired")
                raise OtpError("verification code expired", detail={"reason": "expired"})
            if result == OtpResult.MISMATCH:
                self.audit.record("mfa_failed", account.id, method=resolved.value, reason="mismatch")
                raise OtpError("invalid verification code", detail={"reason": "mismatch"})
        return self._complete(account, resolved)

    def verify_recovery_code(self, account_id: str, code: str) -> LoginResult:
        """Use one single-use recovery code in place of the authenticator."""
        account = self._pending_account(account_id)
        if not account.recovery_codes or not self.store.use_recovery_code(
            account.id, hash_recovery_code(code)
        ):
            self.audit.record("mfa_failed", account.id, method="recovery", reason="mismatch")
            raise OtpError("invalid recovery code", detail={"reason": "mismatch"})
        self.audit.record(
            "recovery_code_used",
            account.id,
            remaining=max(0, account.recovery_codes_remaining - 1),
        )
        return self._complete(account, MfaMethod.AUTHENTICATOR)

    def _complete(self, account: Account, method: Optional[MfaMethod]) -> LoginResult:
        self.lockout.reset(account.id)
        self.store.set_mfa_pending(account.id, None)
        if method == MfaMethod.DELIVERED:
            self.otp.invalidate(account.email)
        session = self.sessions.issue(account.id, account.role)
        self.audit.record(
            "login_success",
            account.id,
            mfa_method=method.value if method else None,
            session_id=session.jti,
        )
        return LoginResult(
            state=LoginState.SESSION_ISSUED,
            account_id=account.id,
            role=account.role,
            mfa_method=method,
            session=session,
        )
