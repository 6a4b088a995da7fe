from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Pattern

from sentinelauth.logging import get_logger
from sentinelauth.service.errors import ConfigurationError, ValidationError

logger = get_logger(__name__)


class Role(str, Enum):
    """Portal roles. Every member must have a policy in ``ROLE_POLICIES``."""

    PERSONNEL = "personnel"
    FAMILY = "family"
    VETERAN = "veteran"
    CERT = "cert"
    COMMANDER = "commander"
    ADMIN = "admin"
    AUDITOR = "auditor"


class MfaMethod(str, Enum):
    AUTHENTICATOR = "authenticator"
    DELIVERED = "delivered"


class IdentityKind(str, Enum):
    SERVICE_ID = "service_id"
    EMAIL = "email"


class EmailDomainMode(str, Enum):
    """How a failed email-domain check is treated.

    MANDATORY blocks the submission; PREFERRED lets it through with a warning
    and routes the registration to manual review.
    """

    MANDATORY = "mandatory"
    PREFERRED = "preferred"


class MfaEnforcement(str, Enum):
    NONE = "none"
    CALLER_CHOICE = "caller_choice"
    FIXED = "fixed"


@dataclass(frozen=True)
class IdentityRule:
    pattern: Pattern[str]
    message: str
    label: str
    kind: IdentityKind = IdentityKind.SERVICE_ID
    uppercase: bool = True
    placeholder: str = ""


@dataclass(frozen=True)
class EmailRule:
    pattern: Optional[Pattern[str]]
    error_message: str
    warning_message: Optional[str] = None
    mode: EmailDomainMode = EmailDomainMode.MANDATORY
    allow_list: frozenset[str] = frozenset()
    allow_list_message: str = "Email is not on the approved roster."
    required: bool = True


@dataclass(frozen=True)
class PasswordRule:
    min_length: int = 12
    require_uppercase: bool = True
    require_digit: bool = True
    require_symbol: bool = True
    message: Optional[str] = None


@dataclass(frozen=True)
class MfaRule:
    enforcement: MfaEnforcement = MfaEnforcement.CALLER_CHOICE
    method: Optional[MfaMethod] = None
    default_method: MfaMethod = MfaMethod.DELIVERED

    @property
    def user_selectable(self) -> bool:
        return self.enforcement == MfaEnforcement.CALLER_CHOICE


@dataclass(frozen=True)
class RolePolicy:
    role: Role
    label: str
    description: str
    identity: IdentityRule
    email: EmailRule
    password: PasswordRule = field(default_factory=PasswordRule)
    mfa: MfaRule = field(default_factory=MfaRule)
    high_privilege: bool = False
    read_only: bool = False
    security_notes: tuple[str, ...] = ()

    def summary(self) -> dict:
        """Public, serialisable view used by the role catalogue endpoint."""
        return {
            "role": self.role.value,
            "label": self.label,
            "description": self.description,
            "identity_label": self.identity.label,
            "identity_kind": self.identity.kind.value,
            "identity_placeholder": self.identity.placeholder,
            "identity_hint": self.identity.message,
            "email_domain_mode": self.email.mode.value,
            "password_min_length": self.password.min_length,
            "mfa_enforcement": self.mfa.enforcement.value,
            "mfa_method": self.mfa.method.value if self.mfa.method else None,
            "high_privilege": self.high_privilege,
            "read_only": self.read_only,
            "security_notes": list(self.security_notes),
        }


DEFENCE_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9._%+-]+@(?:army|navy|airforce|drdo)\.(?:mil|gov)\.in$", re.IGNORECASE
)
ADMIN_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9._%+-]+@(?:mod\.gov\.in|defence\.in)$", re.IGNORECASE
)
GENERIC_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$", re.IGNORECASE
)

_AUTHENTICATOR_ONLY = MfaRule(
    enforcement=MfaEnforcement.FIXED,
    method=MfaMethod.AUTHENTICATOR,
    default_method=MfaMethod.AUTHENTICATOR,
)

_POLICIES = (
    RolePolicy(
        role=Role.PERSONNEL,
        label="Defence Personnel",
        description="Serving members reporting incidents from the field.",
        identity=IdentityRule(
            pattern=re.compile(r"^(?:ARMY|NAVY|AIRF|DRDO)[A-Z0-9]{2,6}$"),
            message=(
                "Service ID must be 6-10 characters, start with ARMY, NAVY, AIRF, "
                "or DRDO, and contain only letters/numbers."
            ),
            label="Service ID",
            placeholder="ARMY12345",
        ),
        email=EmailRule(
            pattern=DEFENCE_EMAIL_PATTERN,
            error_message=(
                "Defence Personnel must use an official defence email domain "
                "(army/navy/airforce/drdo)."
            ),
            warning_message=(
                "Non-defence email detected. Registration will be flagged for manual verification."
            ),
            mode=EmailDomainMode.PREFERRED,
        ),
        security_notes=(
            "Service ID is cross-checked against the unit nominal roll.",
            "Official defence email skips manual verification.",
        ),
    ),
    RolePolicy(
        role=Role.FAMILY,
        label="Family / Dependent",
        description="Registered dependents of serving personnel.",
        identity=IdentityRule(
            pattern=re.compile(r"^D-FID-\d{4,}$", re.IGNORECASE),
            message="D-FID must start with D-FID- followed by at least 4 digits.",
            label="Dependent ID (D-FID)",
            placeholder="D-FID-0001",
        ),
        email=EmailRule(
            pattern=DEFENCE_EMAIL_PATTERN,
            error_message=(
                "Non-defence email detected. Registration will be flagged for manual verification."
            ),
            warning_message=(
                "Non-defence email detected. Registration will be flagged for manual verification."
            ),
            mode=EmailDomainMode.PREFERRED,
        ),
        security_notes=(
            "Dependent IDs are matched to the sponsoring service member.",
        ),
    ),
    RolePolicy(
        role=Role.VETERAN,
        label="Veteran",
        description="Retired personnel with pension-linked access.",
        identity=IdentityRule(
            pattern=re.compile(r"^(?:SPARSH|PEN)-?\d{6,8}$", re.IGNORECASE),
            message="ID must begin with SPARSH or PEN and include 6-8 digits (hyphen optional).",
            label="SPARSH / Pension ID",
            placeholder="SPARSH-1234567",
        ),
        email=EmailRule(
            pattern=DEFENCE_EMAIL_PATTERN,
            error_message=(
                "Veterans are required to use a registered defence or pension-linked email."
            ),
        ),
        security_notes=(
            "Pension IDs are verified against SPARSH records.",
        ),
    ),
    RolePolicy(
        role=Role.CERT,
        label="CERT Analyst",
        description="Cyber emergency response analysts triaging incidents.",
        identity=IdentityRule(
            pattern=re.compile(r"^CERT-[A-Z0-9-]*\d{3,}$", re.IGNORECASE),
            message="Analyst ID must include the CERT- prefix and end with digits.",
            label="Analyst ID",
            placeholder="CERT-IN-042",
        ),
        email=EmailRule(
            pattern=DEFENCE_EMAIL_PATTERN,
            error_message="CERT Analysts must use a defence-controlled email domain.",
        ),
        mfa=_AUTHENTICATOR_ONLY,
        security_notes=(
            "Authenticator app MFA is mandatory for analysts.",
            "Sessions are bound to the analyst workstation.",
        ),
    ),
    RolePolicy(
        role=Role.COMMANDER,
        label="Commander",
        description="Command-level officers approving escalations.",
        identity=IdentityRule(
            pattern=re.compile(r"^(?:CMD|CO|HQ)(?:-[A-Z]{1,3})*-?\d{2,}$", re.IGNORECASE),
            message=(
                "Command IDs must start with CMD, CO, or HQ and end with digits "
                "(unit codes optional)."
            ),
            label="Command ID",
            placeholder="CMD-NC-01",
        ),
        email=EmailRule(
            pattern=DEFENCE_EMAIL_PATTERN,
            error_message="Command-level access requires a verified defence email.",
        ),
        mfa=_AUTHENTICATOR_ONLY,
        high_privilege=True,
        security_notes=(
            "High-privilege role: every action is recorded in the audit trail.",
            "Authenticator app MFA is mandatory.",
        ),
    ),
    RolePolicy(
        role=Role.ADMIN,
        label="Administrator",
        description="Portal administrators managing users and configuration.",
        identity=IdentityRule(
            pattern=ADMIN_EMAIL_PATTERN,
            message="Email must belong to the mod.gov.in or defence.in domain.",
            label="Official Email",
            kind=IdentityKind.EMAIL,
            uppercase=False,
            placeholder="name@mod.gov.in",
        ),
        email=EmailRule(
            pattern=ADMIN_EMAIL_PATTERN,
            error_message="Administrators must authenticate with mod.gov.in or defence.in email.",
        ),
        password=PasswordRule(
            min_length=12,
            require_symbol=True,
            message="Passwords must be at least 12 characters with a special character for admin access.",
        ),
        mfa=_AUTHENTICATOR_ONLY,
        high_privilege=True,
        security_notes=(
            "Administrator sign-in is restricted to ministry domains.",
            "Authenticator app MFA is mandatory.",
        ),
    ),
    RolePolicy(
        role=Role.AUDITOR,
        label="Auditor",
        description="Read-only reviewers of incident and access records.",
        identity=IdentityRule(
            pattern=GENERIC_EMAIL_PATTERN,
            message="Enter a valid official email address.",
            label="Official Email",
            kind=IdentityKind.EMAIL,
            uppercase=False,
            placeholder="auditor@mod.gov.in",
        ),
        email=EmailRule(
            pattern=ADMIN_EMAIL_PATTERN,
            error_message="Auditor email must match approved defence domains and whitelist.",
            allow_list=frozenset(
                {"auditor@mod.gov.in", "audit.ops@mod.gov.in", "audit.ctrl@defence.in"}
            ),
            allow_list_message="Email not found in approved auditor roster.",
        ),
        mfa=_AUTHENTICATOR_ONLY,
        read_only=True,
        security_notes=(
            "Auditors are limited to the approved roster.",
            "Access is read-only.",
        ),
    ),
)

ROLE_POLICIES: Mapping[Role, RolePolicy] = MappingProxyType(
    {policy.role: policy for policy in _POLICIES}
)


def parse_role(value: str | Role) -> Role:
    """Coerce user input into a ``Role``; unknown names are a validation error."""
    if isinstance(value, Role):
        return value
    try:
        return Role((value or "").strip().lower())
    except ValueError as exc:
        raise ValidationError(
            "unknown role",
            detail={"fields": {"role": [{"code": "unknown_role", "message": "Select a valid role."}]}},
        ) from exc


class RolePolicyRegistry:
    """Read-only lookup from role to its policy."""

    def __init__(self, policies: Mapping[Role, RolePolicy] = ROLE_POLICIES) -> None:
        self._policies = policies

    def policy_for(self, role: Role | str) -> RolePolicy:
        parsed = parse_role(role)
        policy = self._policies.get(parsed)
        if policy is None:
            logger.error("role_policy_missing", role=parsed.value)
            raise ConfigurationError(
                "server configuration error", detail={"role": parsed.value}
            )
        return policy

    def roles(self) -> list[RolePolicy]:
        return [self._policies[role] for role in Role if role in self._policies]

    def check_complete(self) -> None:
        """Fail fast at startup if any role lacks a policy."""
        missing = [role.value for role in Role if role not in self._policies]
        if missing:
            logger.error("role_policy_missing", roles=missing)
            raise ConfigurationError("server configuration error", detail={"roles": missing})
