"""Authenticator-app codes (RFC 6238, SHA-1, 6 digits, 30 s) and recovery codes."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass
from typing import List
from urllib.parse import quote, urlencode

from sentinelauth.logging import get_logger

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_WINDOW = 1

_RECOVERY_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class AuthenticatorEnrollment:
    """Shown to the user exactly once, at registration."""

    secret: str
    display_secret: str
    provisioning_uri: str
    recovery_codes: List[str]

    def to_dict(self) -> dict:
        return {
            "secret": self.secret,
            "display_secret": self.display_secret,
            "provisioning_uri": self.provisioning_uri,
            "recovery_codes": list(self.recovery_codes),
        }


def generate_secret() -> str:
    """160-bit base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def format_secret(secret: str) -> str:
    """Group a secret in blocks of four for manual entry."""
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_PERIOD, digits: int = TOTP_DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str, code: str, timestamp: float, *, window: int = TOTP_WINDOW, interval: int = TOTP_PERIOD
) -> bool:
    """Accept the current step and ``window`` adjacent steps either side."""
    candidate = (code or "").strip().replace(" ", "")
    if not candidate.isdigit() or len(candidate) != TOTP_DIGITS:
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def generate_recovery_codes(count: int) -> List[str]:
    """Single-use codes in ``XXXX-XXXX`` form."""
    codes = []
    for _ in range(count):
        raw = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(8))
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def hash_recovery_code(code: str) -> str:
    normalized = (code or "").strip().upper().replace(" ", "").replace("-", "")
    return hashlib.sha256(normalized.encode()).hexdigest()
