from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from sentinelauth.logging import get_logger
from sentinelauth.service.audit import AuditTrail
from sentinelauth.service.email import NotificationSender
from sentinelauth.service.email_verification import EmailVerificationTokenManager
from sentinelauth.service.errors import ConflictError, ValidationError
from sentinelauth.service.passwords import PasswordService
from sentinelauth.service.policy import (
    GENERIC_EMAIL_PATTERN,
    IdentityKind,
    MfaEnforcement,
    MfaMethod,
    Role,
    RolePolicy,
    RolePolicyRegistry,
)
from sentinelauth.service.totp import (
    AuthenticatorEnrollment,
    format_secret,
    generate_recovery_codes,
    generate_secret,
    hash_recovery_code,
    provisioning_uri,
)
from sentinelauth.service.validation import (
    FieldIssue,
    normalize_email,
    normalize_identity,
    normalize_mobile,
    raise_for_issues,
    validate_email,
    validate_full_name,
    validate_identity,
    validate_mobile,
    validate_password,
)
from sentinelauth.storage.base import AccountStore
from sentinelauth.storage.errors import ConstraintViolation
from sentinelauth.storage.models import Account, RecoveryCode, utcnow

logger = get_logger(__name__)

ELIGIBILITY_STATEMENT = (
    "I confirm I am a verified Defence personnel / family member / veteran / "
    "authorised official and the details provided are accurate."
)


class RegistrationStep(str, Enum):
    IDENTITY = "identity"
    SERVICE = "service"
    SECURITY = "security"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    PENDING_MANUAL_REVIEW = "pending_manual_review"


_PREVIOUS_STEP = {
    RegistrationStep.SERVICE: RegistrationStep.IDENTITY,
    RegistrationStep.SECURITY: RegistrationStep.SERVICE,
}


@dataclass
class RegistrationDraft:
    """In-progress registration; one instance per applicant."""

    step: RegistrationStep = RegistrationStep.IDENTITY
    full_name: str = ""
    email: str = ""
    mobile: str = ""
    role: Optional[Role] = None
    identity: str = ""
    password: str = field(default="", repr=False)
    confirm_password: Optional[str] = field(default=None, repr=False)
    mfa_method: Optional[MfaMethod] = None
    eligibility_confirmed: bool = False
    errors: Dict[str, List[dict]] = field(default_factory=dict)
    warnings: List[FieldIssue] = field(default_factory=list)


@dataclass(frozen=True)
class RegistrationOutcome:
    state: RegistrationStep
    account: Account
    enrollment: Optional[AuthenticatorEnrollment] = None
    verification_expires_at: Optional[datetime] = None
    verification_sent: bool = False
    warnings: List[FieldIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        payload = {
            "status": self.state.value,
            "account_id": self.account.id,
            "role": self.account.role,
            "identity": self.account.identity,
            "mfa_method": self.account.mfa_method,
            "manual_review": self.account.manual_review,
            "requires_email_verification": not self.account.email_verified,
            "verification_sent": self.verification_sent,
            "verification_expires_at": (
                self.verification_expires_at.isoformat() if self.verification_expires_at else None
            ),
            "warnings": [
                {"field": w.field, "code": w.code, "message": w.message} for w in self.warnings
            ],
        }
        if self.enrollment:
            payload["authenticator"] = self.enrollment.to_dict()
        return payload


def identity_step_issues(draft: RegistrationDraft) -> List[Optional[FieldIssue]]:
    issues = [validate_full_name(draft.full_name), validate_mobile(draft.mobile)]
    if not draft.email:
        issues.append(FieldIssue("email", "email_required", "Official email is required."))
    return issues


def service_step_issues(draft: RegistrationDraft, policy: RolePolicy) -> List[Optional[FieldIssue]]:
    email_issue = validate_email(draft.email, policy)
    if email_issue is None and draft.email and not GENERIC_EMAIL_PATTERN.fullmatch(draft.email):
        email_issue = FieldIssue("email", "email_invalid", "Enter a valid email address.")
    issues: List[Optional[FieldIssue]] = [validate_identity(draft.identity, policy), email_issue]
    if (
        policy.identity.kind == IdentityKind.EMAIL
        and draft.identity
        and draft.identity != draft.email
    ):
        issues.append(
            FieldIssue(
                "identity",
                "identity_email_mismatch",
                "Sign-in email must match the official email for this role.",
            )
        )
    return issues


def security_step_issues(draft: RegistrationDraft, policy: RolePolicy) -> List[Optional[FieldIssue]]:
    issues: List[Optional[FieldIssue]] = list(validate_password(draft.password, policy))
    if draft.confirm_password is not None and draft.confirm_password != draft.password:
        issues.append(FieldIssue("confirm_password", "password_mismatch", "Passwords do not match."))
    if policy.mfa.enforcement != MfaEnforcement.NONE and draft.mfa_method is None:
        issues.append(FieldIssue("mfa_method", "mfa_method_required", "Select an MFA method."))
    if not draft.eligibility_confirmed:
        issues.append(
            FieldIssue(
                "eligibility_confirmed",
                "eligibility_required",
                "You must confirm your eligibility to register.",
            )
        )
    return issues


class RegistrationLifecycle:
    """Identity -> Service -> Security -> Submitted, then Verified or PendingManualReview.

    Each ``submit_*`` call validates its own step and advances the draft; a
    failing step leaves the draft where it was with ``errors`` populated.
    """

    def __init__(
        self,
        store: AccountStore,
        registry: RolePolicyRegistry,
        passwords: PasswordService,
        tokens: EmailVerificationTokenManager,
        notifier: NotificationSender,
        audit: AuditTrail,
        *,
        totp_issuer: str,
        recovery_code_count: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.passwords = passwords
        self.tokens = tokens
        self.notifier = notifier
        self.audit = audit
        self.totp_issuer = totp_issuer
        self.recovery_code_count = recovery_code_count
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _require_step(draft: RegistrationDraft, expected: RegistrationStep) -> None:
        if draft.step != expected:
            raise ValidationError(
                f"registration is at step {draft.step.value}, not {expected.value}",
                detail={"step": draft.step.value, "expected": expected.value},
                error_code="invalid_step",
            )

    @staticmethod
    def _check(draft: RegistrationDraft, issues: List[Optional[FieldIssue]]) -> List[FieldIssue]:
        try:
            warnings = raise_for_issues(issues)
        except ValidationError as exc:
            draft.errors = dict(exc.detail.get("fields", {}))
            raise
        draft.errors = {}
        return warnings

    # step inputs
    def start(self) -> RegistrationDraft:
        return RegistrationDraft()

    def back(self, draft: RegistrationDraft) -> RegistrationDraft:
        previous = _PREVIOUS_STEP.get(draft.step)
        if previous is None:
            raise ValidationError(
                "cannot go back from this step",
                detail={"step": draft.step.value},
                error_code="invalid_step",
            )
        draft.step = previous
        return draft

    def _apply_identity(self, draft: RegistrationDraft, *, full_name: str, email: str, mobile: str) -> None:
        draft.full_name = (full_name or "").strip()
        draft.email = normalize_email(email)
        draft.mobile = normalize_mobile(mobile)

    def select_role(self, draft: RegistrationDraft, role: Role | str) -> RolePolicy:
        """Switching role discards the entered service identity and its errors."""
        policy = self.registry.policy_for(role)
        if draft.role is not None and draft.role != policy.role:
            draft.identity = ""
            draft.errors.pop("identity", None)
            draft.warnings = []
        draft.role = policy.role
        return policy

    def _apply_service(self, draft: RegistrationDraft, *, role: Role | str, service_id: str) -> RolePolicy:
        policy = self.select_role(draft, role)
        raw = service_id
        if policy.identity.kind == IdentityKind.EMAIL and not (raw or "").strip():
            raw = draft.email
        draft.identity = normalize_identity(raw, policy)
        return policy

    def _apply_security(
        self,
        draft: RegistrationDraft,
        policy: RolePolicy,
        *,
        password: str,
        confirm_password: Optional[str],
        mfa_method: MfaMethod | str | None,
        eligibility_confirmed: bool,
    ) -> None:
        draft.password = password or ""
        draft.confirm_password = confirm_password
        draft.eligibility_confirmed = bool(eligibility_confirmed)
        rule = policy.mfa
        if rule.enforcement == MfaEnforcement.FIXED:
            # Enforced method is not user-editable
            draft.mfa_method = rule.method
        elif rule.enforcement == MfaEnforcement.NONE:
            draft.mfa_method = None
        elif mfa_method is None or mfa_method == "":
            draft.mfa_method = rule.default_method
        else:
            try:
                draft.mfa_method = MfaMethod(mfa_method)
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

    def submit_identity(
        self, draft: RegistrationDraft, *, full_name: str, email: str, mobile: str
    ) -> RegistrationDraft:
        self._require_step(draft, RegistrationStep.IDENTITY)
        self._apply_identity(draft, full_name=full_name, email=email, mobile=mobile)
        self._check(draft, identity_step_issues(draft))
        draft.step = RegistrationStep.SERVICE
        return draft

    def submit_service(
        self, draft: RegistrationDraft, *, role: Role | str, service_id: str
    ) -> RegistrationDraft:
        self._require_step(draft, RegistrationStep.SERVICE)
        policy = self._apply_service(draft, role=role, service_id=service_id)
        draft.warnings = self._check(draft, service_step_issues(draft, policy))
        draft.step = RegistrationStep.SECURITY
        return draft

    def submit_security(
        self,
        draft: RegistrationDraft,
        *,
        password: str,
        confirm_password: Optional[str] = None,
        mfa_method: MfaMethod | str | None = None,
        eligibility_confirmed: bool = False,
    ) -> RegistrationDraft:
        self._require_step(draft, RegistrationStep.SECURITY)
        policy = self.registry.policy_for(draft.role)
        self._apply_security(
            draft,
            policy,
            password=password,
            confirm_password=confirm_password,
            mfa_method=mfa_method,
            eligibility_confirmed=eligibility_confirmed,
        )
        self._check(draft, security_step_issues(draft, policy))
        draft.step = RegistrationStep.SUBMITTED
        return draft

    async def register(
        self,
        *,
        full_name: str,
        email: str,
        mobile: str,
        role: Role | str,
        service_id: str,
        password: str,
        confirm_password: Optional[str] = None,
        mfa_method: MfaMethod | str | None = None,
        eligibility_confirmed: bool = False,
    ) -> RegistrationOutcome:
        """Single-request registration reporting every field problem at once."""
        draft = self.start()
        self._apply_identity(draft, full_name=full_name, email=email, mobile=mobile)
        policy = self._apply_service(draft, role=role, service_id=service_id)
        self._apply_security(
            draft,
            policy,
            password=password,
            confirm_password=confirm_password,
            mfa_method=mfa_method,
            eligibility_confirmed=eligibility_confirmed,
        )
        issues = (
            identity_step_issues(draft)
            + service_step_issues(draft, policy)
            + security_step_issues(draft, policy)
        )
        draft.warnings = self._check(draft, issues)
        draft.step = RegistrationStep.SUBMITTED
        return await self.complete(draft)

    async def complete(self, draft: RegistrationDraft) -> RegistrationOutcome:
        """Create the account and route it to verification or manual review."""
        self._require_step(draft, RegistrationStep.SUBMITTED)
        policy = self.registry.policy_for(draft.role)
        now = self._now()
        manual_review = any(w.code == "email_domain_unverified" for w in draft.warnings)
        method = draft.mfa_method or policy.mfa.default_method

        enrollment: Optional[AuthenticatorEnrollment] = None
        secret: Optional[str] = None
        recovery: List[RecoveryCode] = []
        if method == MfaMethod.AUTHENTICATOR:
            secret = generate_secret()
            codes = generate_recovery_codes(self.recovery_code_count)
            enrollment = AuthenticatorEnrollment(
                secret=secret,
                display_secret=format_secret(secret),
                provisioning_uri=provisioning_uri(secret, draft.email, self.totp_issuer),
                recovery_codes=codes,
            )
            recovery = [RecoveryCode(code_hash=hash_recovery_code(c)) for c in codes]

        account = Account(
            id=str(uuid.uuid4()),
            full_name=draft.full_name,
            mobile=draft.mobile,
            identity=draft.identity,
            email=draft.email,
            role=policy.role.value,
            password_hash=self.passwords.hash(draft.password),
            mfa_method=method.value,
            authenticator_secret=secret,
            recovery_codes=recovery,
            is_active=False,
            email_verified=False,
            manual_review=manual_review,
            created_at=now,
            updated_at=now,
        )
        draft.password = ""
        draft.confirm_password = None
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field", "identity")
            self.audit.record(
                "registration_rejected", None, role=policy.role.value, reason=f"duplicate_{field_name}"
            )
            raise ConflictError(
                "an account with these details already exists", detail={"field": field_name}
            ) from exc

        self.audit.record(
            "registration_submitted",
            account.id,
            role=account.role,
            mfa_method=account.mfa_method,
            manual_review=manual_review,
        )

        expires_at: Optional[datetime] = None
        sent = False
        if manual_review:
            draft.step = RegistrationStep.PENDING_MANUAL_REVIEW
            self.audit.record(
                "registration_flagged_for_review",
                account.id,
                role=account.role,
                reason="email_domain_unverified",
            )
        else:
            issued = self.tokens.issue(account)
            expires_at = issued.expires_at
            sent = await asyncio.to_thread(
                self.notifier.send_verification_email,
                account.email,
                issued.token,
                full_name=account.full_name,
                expires_minutes=int(self.tokens.ttl.total_seconds() // 60),
            )
            self.audit.record("email_verification_sent", account.id, delivered=sent)
            draft.step = RegistrationStep.VERIFIED
            account = self.store.get_account(account.id) or account

        if enrollment is not None:
            await asyncio.to_thread(
                self.notifier.send_authenticator_enrolled,
                account.email,
                full_name=account.full_name,
            )
            self.audit.record(
                "authenticator_enrolled",
                account.id,
                recovery_codes_issued=len(enrollment.recovery_codes),
            )

        logger.info(
            "registration_completed",
            account_id=account.id,
            role=account.role,
            state=draft.step.value,
        )
        return RegistrationOutcome(
            state=draft.step,
            account=account,
            enrollment=enrollment,
            verification_expires_at=expires_at,
            verification_sent=sent,
            warnings=list(draft.warnings),
        )
