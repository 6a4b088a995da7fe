"""Pure per-field checks driven by a role policy.

Validators never raise for bad input; they return ``FieldIssue`` records so the
lifecycles can collect every problem in one pass and raise a single
``ValidationError``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sentinelauth.service.errors import ValidationError
from sentinelauth.service.policy import (
    GENERIC_EMAIL_PATTERN,
    EmailDomainMode,
    IdentityKind,
    PasswordRule,
    RolePolicy,
)

BASELINE_PASSWORD = PasswordRule(
    min_length=12,
    require_uppercase=True,
    require_digit=True,
    require_symbol=True,
)

_WHITESPACE = re.compile(r"\s+")
_MOBILE_PATTERN = re.compile(r"^\+?\d{10,15}$")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class FieldIssue:
    field: str
    code: str
    message: str
    blocking: bool = True

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "blocking": self.blocking}


def normalize_identity(raw: str, policy: RolePolicy) -> str:
    value = (raw or "").strip()
    if policy.identity.kind == IdentityKind.EMAIL:
        return value.lower()
    value = _WHITESPACE.sub("", value)
    if policy.identity.uppercase:
        value = value.upper()
    return value


def normalize_email(raw: str) -> str:
    return (raw or "").strip().lower()


def normalize_mobile(raw: str) -> str:
    return re.sub(r"[\s\-()]", "", raw or "")


def validate_email(
    candidate: str, policy: RolePolicy, *, field: str = "email"
) -> Optional[FieldIssue]:
    rule = policy.email
    email = normalize_email(candidate)
    if not email:
        if rule.required:
            return FieldIssue(field, "email_required", "Official email is required.")
        return None
    if rule.allow_list and email not in rule.allow_list:
        return FieldIssue(field, "email_not_whitelisted", rule.allow_list_message)
    if rule.pattern is not None and not rule.pattern.fullmatch(email):
        if rule.mode == EmailDomainMode.MANDATORY:
            return FieldIssue(field, "email_format_rejected", rule.error_message)
        if not GENERIC_EMAIL_PATTERN.fullmatch(email):
            return FieldIssue(field, "email_invalid", "Enter a valid email address.")
        return FieldIssue(
            field,
            "email_domain_unverified",
            rule.warning_message or rule.error_message,
            blocking=False,
        )
    return None


def validate_identity(normalized: str, policy: RolePolicy) -> Optional[FieldIssue]:
    rule = policy.identity
    if not normalized:
        return FieldIssue("identity", "identity_required", f"{rule.label} is required.")
    if not rule.pattern.fullmatch(normalized):
        return FieldIssue("identity", "identity_format", rule.message)
    if rule.kind == IdentityKind.EMAIL:
        issue = validate_email(normalized, policy, field="identity")
        if issue is not None and issue.blocking:
            return issue
    return None


def _unmet(password: str, rule: PasswordRule) -> List[tuple[str, str]]:
    unmet: List[tuple[str, str]] = []
    if len(password) < rule.min_length:
        unmet.append(
            ("password_too_short", f"Password must be at least {rule.min_length} characters.")
        )
    if rule.require_uppercase and not _UPPER.search(password):
        unmet.append(("password_missing_uppercase", "Password must include an uppercase letter."))
    if rule.require_digit and not _DIGIT.search(password):
        unmet.append(("password_missing_digit", "Password must include a number."))
    if rule.require_symbol and not _SYMBOL.search(password):
        unmet.append(("password_missing_symbol", "Password must include a special character."))
    return unmet


def validate_password(password: str, policy: RolePolicy) -> List[FieldIssue]:
    """Apply the baseline rule and the role's own rule; the stricter governs."""
    password = password or ""
    role_rule = policy.password
    effective = PasswordRule(
        min_length=max(BASELINE_PASSWORD.min_length, role_rule.min_length),
        require_uppercase=BASELINE_PASSWORD.require_uppercase or role_rule.require_uppercase,
        require_digit=BASELINE_PASSWORD.require_digit or role_rule.require_digit,
        require_symbol=BASELINE_PASSWORD.require_symbol or role_rule.require_symbol,
    )
    issues = [FieldIssue("password", code, message) for code, message in _unmet(password, effective)]
    if role_rule.message and _unmet(password, role_rule):
        issues.append(FieldIssue("password", "password_policy", role_rule.message))
    return issues


def validate_mobile(raw: str) -> Optional[FieldIssue]:
    mobile = normalize_mobile(raw)
    if not mobile:
        return FieldIssue("mobile", "mobile_required", "Mobile number is required.")
    if not _MOBILE_PATTERN.fullmatch(mobile):
        return FieldIssue("mobile", "mobile_invalid", "Mobile number must contain 10-15 digits.")
    return None


def validate_full_name(raw: str) -> Optional[FieldIssue]:
    name = (raw or "").strip()
    if len(name) < 2:
        return FieldIssue("full_name", "full_name_required", "Full name is required.")
    if len(name) > 120:
        return FieldIssue("full_name", "full_name_too_long", "Full name must be at most 120 characters.")
    return None


def raise_for_issues(issues: Iterable[Optional[FieldIssue]]) -> List[FieldIssue]:
    """Raise ``ValidationError`` when any blocking issue is present.

    Returns the non-blocking warnings so callers can act on them.
    """
    collected = [issue for issue in issues if issue is not None]
    blocking = [issue for issue in collected if issue.blocking]
    if blocking:
        fields: dict[str, list[dict]] = {}
        for issue in blocking:
            fields.setdefault(issue.field, []).append(issue.to_dict())
        raise ValidationError(blocking[0].message, detail={"fields": fields})
    return [issue for issue in collected if not issue.blocking]
