from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Path, Request, Response

from sentinelauth.api.schemas import (
    AccountRequest,
    Envelope,
    LoginRequest,
    MfaVerifyRequest,
    RecoveryCodeRequest,
    RegisterRequest,
)
from sentinelauth.logging import get_logger
from sentinelauth.service.registration import ELIGIBILITY_STATEMENT
from sentinelauth.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Charge one request against ``key``; raises 429 once the bucket is empty."""
    allowed, remaining, retry_after = await check_rate_limit(runtime, key, limit, window_seconds)
    info = RateLimitInfo(limit, remaining, retry_after or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, retry_after_seconds=retry_after)
        raise _http_error(
            "rate_limited",
            "too many requests, please try again later",
            status_code=429,
            details={"retry_after_seconds": retry_after},
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.get("/auth/roles", response_model=Envelope, tags=["auth"])
async def list_roles(request: Request, response: Response):
    """Role catalogue with identity, email, password and MFA rules per role."""
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"api:{_client_ip(request)}",
        settings.api_rate_limit,
        settings.api_rate_window_seconds,
        response=response,
    )
    return Envelope(
        status="ok",
        data={
            "roles": [policy.summary() for policy in runtime.auth.registry.roles()],
            "eligibility_statement": ELIGIBILITY_STATEMENT,
        },
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account for the selected role.

    Raises:
        400: If any field fails the role's rules
        409: If the identity or email is already registered
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        settings.register_rate_limit,
        settings.register_rate_window_seconds,
        response=response,
    )
    outcome = await runtime.auth.register(
        full_name=body.full_name,
        email=body.email,
        mobile=body.mobile,
        role=body.role,
        service_id=body.service_id,
        password=body.password,
        confirm_password=body.confirm_password,
        mfa_method=body.mfa_method,
        eligibility_confirmed=body.eligibility_confirmed,
    )
    return Envelope(status="ok", data=outcome.to_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials and open the second-factor step.

    Raises:
        401: If credentials are invalid
        403: If the account is not verified or not active, or the MFA method is not allowed
        423: If the account is locked
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        settings.login_rate_limit,
        settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(
        body.role, body.identity, body.password, mfa_method=body.mfa_method
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(body: MfaVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"mfa:{body.account_id}",
        settings.api_rate_limit,
        settings.api_rate_window_seconds,
        response=response,
    )
    result = runtime.auth.verify_mfa(body.account_id, body.code, body.method)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/mfa/code", response_model=Envelope, tags=["auth"])
async def request_delivered_code(body: AccountRequest, response: Response):
    """Send, or re-send after the cooldown, a one-time code to the account email."""
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.account_id}",
        settings.otp_rate_limit,
        settings.otp_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.request_delivered_code(body.account_id)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/mfa/recovery", response_model=Envelope, tags=["auth"])
async def verify_recovery_code(body: RecoveryCodeRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"mfa:{body.account_id}",
        settings.api_rate_limit,
        settings.api_rate_window_seconds,
        response=response,
    )
    result = runtime.auth.verify_recovery_code(body.account_id, body.code)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/email/send-verification", response_model=Envelope, tags=["auth"])
async def send_verification_email(body: AccountRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"verify_send:{body.account_id}",
        settings.otp_rate_limit,
        settings.otp_rate_window_seconds,
        response=response,
    )
    data = await runtime.auth.send_verification_email(body.account_id)
    return Envelope(status="ok", data=data)


@router.get("/auth/email/verify/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(
    request: Request,
    response: Response,
    token: str = Path(..., min_length=1, max_length=128),
):
    runtime = get_runtime()
    settings = runtime.settings
    # Token brute-forcing is bounded per client
    await _enforce_rate_limit(
        runtime,
        f"verify_email:{_client_ip(request)}",
        settings.api_rate_limit,
        settings.api_rate_window_seconds,
        response=response,
    )
    account = runtime.auth.consume_verification_token(token)
    return Envelope(
        status="ok",
        data={
            "status": "verified",
            "account_id": account.id,
            "email_verified": account.email_verified,
            "is_active": account.is_active,
        },
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(authorization: Optional[str] = Header(default=None)):
    """Decode the bearer session token issued after a completed sign-in."""
    runtime = get_runtime()
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not token:
        raise _http_error("unauthorized", "session token required", status_code=401)
    claims = runtime.auth.verify_session(token)
    if claims is None:
        raise _http_error("unauthorized", "invalid or expired session", status_code=401)
    return Envelope(
        status="ok",
        data={
            "account_id": claims["sub"],
            "role": claims["role"],
            "expires_at": claims["exp"],
        },
    )
