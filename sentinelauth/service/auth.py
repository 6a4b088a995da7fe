from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional

from sentinelauth.config import Settings
from sentinelauth.logging import get_logger
from sentinelauth.service.audit import AuditTrail
from sentinelauth.service.email import NotificationSender, redact_email
from sentinelauth.service.email_verification import EmailVerificationTokenManager
from sentinelauth.service.errors import (
    AlreadyVerifiedError,
    ForbiddenError,
    NotFoundError,
    TokenError,
)
from sentinelauth.service.lockout import LockoutTracker
from sentinelauth.service.login import LoginLifecycle, LoginResult
from sentinelauth.service.otp import OtpChallengeManager
from sentinelauth.service.passwords import PasswordService
from sentinelauth.service.policy import MfaMethod, Role, RolePolicyRegistry
from sentinelauth.service.registration import RegistrationLifecycle, RegistrationOutcome
from sentinelauth.service.sessions import SessionIssuer
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.models import Account, utcnow

logger = get_logger(__name__)


class AuthService:
    """Entry point for registration, sign-in, second factor and email verification."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        notifier: NotificationSender,
        *,
        registry: Optional[RolePolicyRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self._clock = clock or utcnow
        self.registry = registry or RolePolicyRegistry()
        self.registry.check_complete()
        self.passwords = PasswordService()
        self.audit = AuditTrail(store, clock=self._clock)
        self.lockout = LockoutTracker(
            store,
            threshold=settings.lockout_threshold,
            lock_minutes=settings.lockout_minutes,
            clock=self._clock,
        )
        self.otp = OtpChallengeManager(
            store,
            ttl_seconds=settings.otp_ttl_seconds,
            resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
            max_attempts=settings.otp_max_attempts,
            clock=self._clock,
        )
        self.tokens = EmailVerificationTokenManager(
            store,
            ttl_minutes=settings.email_verification_ttl_minutes,
            resend_seconds=settings.email_verification_resend_seconds,
            clock=self._clock,
        )
        self.sessions = SessionIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_days=settings.session_ttl_days,
            clock=self._clock,
        )
        self.registration = RegistrationLifecycle(
            store,
            self.registry,
            self.passwords,
            self.tokens,
            notifier,
            self.audit,
            totp_issuer=settings.totp_issuer,
            recovery_code_count=settings.recovery_code_count,
            clock=self._clock,
        )
        self.login_flow = LoginLifecycle(
            store,
            self.registry,
            self.passwords,
            self.lockout,
            self.otp,
            self.sessions,
            notifier,
            self.audit,
            mfa_pending_minutes=settings.mfa_pending_minutes,
            clock=self._clock,
        )

    async def register(self, **fields: Any) -> RegistrationOutcome:
        return await self.registration.register(**fields)

    async def login(
        self,
        role: Role | str,
        identity: str,
        password: str,
        *,
        mfa_method: MfaMethod | str | None = None,
    ) -> LoginResult:
        return await self.login_flow.submit_credentials(
            role, identity, password, mfa_method=mfa_method
        )

    def verify_mfa(
        self, account_id: str, code: str, method: MfaMethod | str | None = None
    ) -> LoginResult:
        return self.login_flow.verify_mfa(account_id, code, method)

    def verify_recovery_code(self, account_id: str, code: str) -> LoginResult:
        return self.login_flow.verify_recovery_code(account_id, code)

    async def request_delivered_code(self, account_id: str) -> LoginResult:
        return await self.login_flow.request_delivered_code(account_id)

    async def send_verification_email(self, account_id: str) -> dict:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        if account.email_verified:
            raise AlreadyVerifiedError("email already verified")
        if account.manual_review and not account.is_active:
            raise ForbiddenError("account is pending manual verification")
        issued = self.tokens.issue(account)
        sent = await asyncio.to_thread(
            self.notifier.send_verification_email,
            account.email,
            issued.token,
            full_name=account.full_name,
            expires_minutes=self.settings.email_verification_ttl_minutes,
        )
        self.audit.record("email_verification_sent", account.id, delivered=sent, resend=True)
        return {
            "sent": sent,
            "sent_to": redact_email(account.email),
            "expires_in_seconds": int(self.tokens.ttl.total_seconds()),
        }

    def consume_verification_token(self, token: str) -> Account:
        try:
            account = self.tokens.consume(token)
        except TokenError as exc:
            self.audit.record("email_verification_failed", None, reason=exc.detail.get("reason"))
            raise
        self.audit.record("email_verified", account.id, activated=account.is_active)
        return account

    def verify_session(self, token: str) -> Optional[dict]:
        return self.sessions.verify(token)
