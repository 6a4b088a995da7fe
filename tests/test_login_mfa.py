"""Tests for sign-in: password check, lockout, second factor and session issue."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from sentinelauth.service.errors import (
    AccountNotActivatedError,
    AlreadyVerifiedError,
    CredentialError,
    EmailNotVerifiedError,
    ForbiddenError,
    LockoutError,
    MfaMethodNotAllowedError,
    NotFoundError,
    OtpError,
    RateLimitedError,
    ServerError,
    TokenError,
    ValidationError,
)
from sentinelauth.service.login import LoginState
from sentinelauth.service.totp import generate_totp

PASSWORD = "Str0ng!Passw0rd"


def _form(**overrides):
    form = dict(
        full_name="Jane Rao",
        email="jane@army.mil.in",
        mobile="+919876543210",
        role="personnel",
        service_id="ARMY123456",
        password=PASSWORD,
        eligibility_confirmed=True,
    )
    form.update(overrides)
    return form


async def _verified_account(auth_service, notifier, **overrides):
    outcome = await auth_service.register(**_form(**overrides))
    token = notifier.send_verification_email.call_args.args[1]
    auth_service.consume_verification_token(token)
    return outcome


def _last_code(notifier):
    return notifier.send_login_code.call_args.args[1]


class TestPasswordStep:
    async def test_delivered_code_flow_issues_session(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)

        challenge = await auth_service.login("personnel", "army123456", PASSWORD)
        assert challenge.state == LoginState.MFA_CHALLENGE
        payload = challenge.to_dict()
        assert payload["mfa_required"] is True
        assert payload["mfa_method"] == "delivered"
        assert payload["sent_to"] == "ja***@army.mil.in"
        assert "access_token" not in payload

        result = auth_service.verify_mfa(challenge.account_id, _last_code(notifier))
        assert result.state == LoginState.SESSION_ISSUED
        claims = auth_service.verify_session(result.session.token)
        assert claims["sub"] == challenge.account_id
        assert claims["role"] == "personnel"

    async def test_unknown_identity_looks_like_bad_password(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)

        with pytest.raises(CredentialError) as unknown:
            await auth_service.login("personnel", "NAVY99999", PASSWORD)
        with pytest.raises(CredentialError) as wrong:
            await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")
        assert unknown.value.message == wrong.value.message == "invalid credentials"
        assert unknown.value.detail == wrong.value.detail == {"attempts_remaining": 2}

        reasons = [e.details.get("reason") for e in auth_service.audit.events() if e.event == "login_failed"]
        assert "unknown_identity" in reasons and "bad_password" in reasons

    async def test_identity_is_scoped_to_role(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)
        with pytest.raises((CredentialError, ValidationError)):
            await auth_service.login("family", "ARMY123456", PASSWORD)

    async def test_malformed_identity_rejected_before_lookup(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.login("personnel", "xyz999", PASSWORD)
        assert exc.value.detail["fields"]["identity"][0]["code"] == "identity_format"

    async def test_unverified_email_blocks_sign_in(self, auth_service):
        await auth_service.register(**_form())
        with pytest.raises(EmailNotVerifiedError):
            await auth_service.login("personnel", "ARMY123456", PASSWORD)

    async def test_manual_review_blocks_sign_in(self, auth_service):
        await auth_service.register(**_form(email="jane@gmail.com"))
        with pytest.raises(AccountNotActivatedError):
            await auth_service.login("personnel", "ARMY123456", PASSWORD)


class TestLockout:
    async def test_bad_password_reports_attempts_remaining(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)

        remaining = []
        for _ in range(2):
            with pytest.raises(CredentialError) as exc:
                await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")
            remaining.append(exc.value.detail["attempts_remaining"])
        assert remaining == [2, 1]
        with pytest.raises(LockoutError):
            await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")

    async def test_pending_mfa_refused_while_locked(self, auth_service, notifier, store, clock):
        outcome = await _verified_account(auth_service, notifier)
        challenge = await auth_service.login("personnel", "ARMY123456", PASSWORD)
        store.record_failed_login(
            outcome.account.id, threshold=1, lock_until=clock() + timedelta(minutes=60)
        )
        with pytest.raises(LockoutError) as exc:
            auth_service.verify_mfa(challenge.account_id, _last_code(notifier))
        assert exc.value.detail["retry_after_seconds"] == 3600

    async def test_three_failures_lock_then_skip_password_check(
        self, auth_service, notifier, monkeypatch
    ):
        await _verified_account(auth_service, notifier)

        for _ in range(2):
            with pytest.raises(CredentialError):
                await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")
        with pytest.raises(LockoutError) as locked:
            await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")
        assert locked.value.detail["retry_after_seconds"] == 3600

        spy = MagicMock(wraps=auth_service.passwords.verify)
        monkeypatch.setattr(auth_service.passwords, "verify", spy)
        with pytest.raises(LockoutError):
            await auth_service.login("personnel", "ARMY123456", PASSWORD)
        spy.assert_not_called()

        events = [e.event for e in auth_service.audit.events()]
        assert "account_locked" in events

    async def test_lock_expires_and_success_resets_counter(self, auth_service, notifier, clock, store):
        outcome = await _verified_account(auth_service, notifier)
        for _ in range(2):
            with pytest.raises(CredentialError):
                await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")
        with pytest.raises(LockoutError):
            await auth_service.login("personnel", "ARMY123456", "Wr0ng!Password")

        clock.advance(minutes=61)
        challenge = await auth_service.login("personnel", "ARMY123456", PASSWORD)
        auth_service.verify_mfa(challenge.account_id, _last_code(notifier))
        account = store.get_account(outcome.account.id)
        assert account.failed_logins == 0
        assert account.lock_until is None

    async def test_mfa_failures_do_not_lock_account(self, auth_service, notifier, store):
        await _verified_account(auth_service, notifier)
        challenge = await auth_service.login("personnel", "ARMY123456", PASSWORD)
        wrong = "000000" if _last_code(notifier) != "000000" else "111111"
        for _ in range(3):
            with pytest.raises(OtpError):
                auth_service.verify_mfa(challenge.account_id, wrong)
        assert store.get_account(challenge.account_id).failed_logins == 0


class TestDeliveredCode:
    async def test_expired_code_reports_expired(self, auth_service, notifier, clock):
        await _verified_account(auth_service, notifier)
        challenge = await auth_service.login("personnel", "ARMY123456", PASSWORD)
        clock.advance(seconds=61)
        with pytest.raises(OtpError) as exc:
            auth_service.verify_mfa(challenge.account_id, _last_code(notifier))
        assert exc.value.detail["reason"] == "expired"

    async def test_resend_respects_cooldown(self, auth_service, notifier, clock):
        await _verified_account(auth_service, notifier)
        challenge = await auth_service.login("personnel", "ARMY123456", PASSWORD)
        with pytest.raises(RateLimitedError):
            await auth_service.request_delivered_code(challenge.account_id)

        clock.advance(seconds=31)
        resent = await auth_service.request_delivered_code(challenge.account_id)
        assert resent.code_expires_at == clock() + auth_service.otp.ttl
        assert notifier.send_login_code.call_count == 2
        result = auth_service.verify_mfa(challenge.account_id, _last_code(notifier))
        assert result.state == LoginState.SESSION_ISSUED

    async def test_repeat_login_reuses_live_code(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)
        await auth_service.login("personnel", "ARMY123456", PASSWORD)
        await auth_service.login("personnel", "ARMY123456", PASSWORD)
        assert notifier.send_login_code.call_count == 1

    async def test_delivery_failure_is_unavailable(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)
        notifier.send_login_code.return_value = False
        with pytest.raises(ServerError) as exc:
            await auth_service.login("personnel", "ARMY123456", PASSWORD)
        assert exc.value.status_code == 503

    async def test_verify_without_password_step_rejected(self, auth_service, notifier):
        outcome = await _verified_account(auth_service, notifier)
        with pytest.raises(OtpError) as exc:
            auth_service.verify_mfa(outcome.account.id, "123456")
        assert exc.value.detail["reason"] == "expired"

    async def test_pending_window_closes(self, auth_service, notifier, clock):
        await _verified_account(auth_service, notifier)
        challenge = await auth_service.login("personnel", "ARMY123456", PASSWORD)
        clock.advance(minutes=6)
        with pytest.raises(OtpError):
            await auth_service.request_delivered_code(challenge.account_id)


class TestAuthenticator:
    async def _cert(self, auth_service, notifier):
        return await _verified_account(
            auth_service,
            notifier,
            role="cert",
            service_id="CERT-IN-042",
            email="analyst@drdo.gov.in",
        )

    async def test_enforced_role_rejects_delivered_code(self, auth_service, notifier):
        await self._cert(auth_service, notifier)
        with pytest.raises(MfaMethodNotAllowedError) as exc:
            await auth_service.login("cert", "CERT-IN-042", PASSWORD, mfa_method="delivered")
        assert exc.value.detail["required_method"] == "authenticator"
        notifier.send_login_code.assert_not_called()

    async def test_authenticator_code_completes_sign_in(self, auth_service, notifier, clock):
        outcome = await self._cert(auth_service, notifier)
        challenge = await auth_service.login("cert", "cert-in-042", PASSWORD)
        assert challenge.mfa_method.value == "authenticator"
        code = generate_totp(outcome.enrollment.secret, clock().timestamp())
        result = auth_service.verify_mfa(challenge.account_id, code)
        assert result.state == LoginState.SESSION_ISSUED

    async def test_wrong_authenticator_code(self, auth_service, notifier, clock):
        outcome = await self._cert(auth_service, notifier)
        challenge = await auth_service.login("cert", "CERT-IN-042", PASSWORD)
        stale = generate_totp(outcome.enrollment.secret, clock().timestamp() - 300)
        with pytest.raises(OtpError) as exc:
            auth_service.verify_mfa(challenge.account_id, stale)
        assert exc.value.detail["reason"] == "mismatch"

    async def test_recovery_code_is_single_use(self, auth_service, notifier):
        outcome = await self._cert(auth_service, notifier)
        recovery = outcome.enrollment.recovery_codes[0]

        challenge = await auth_service.login("cert", "CERT-IN-042", PASSWORD)
        result = auth_service.verify_recovery_code(challenge.account_id, recovery.lower())
        assert result.state == LoginState.SESSION_ISSUED

        challenge = await auth_service.login("cert", "CERT-IN-042", PASSWORD)
        with pytest.raises(OtpError):
            auth_service.verify_recovery_code(challenge.account_id, recovery)

    async def test_caller_choice_without_enrollment_rejected(self, auth_service, notifier):
        await _verified_account(auth_service, notifier)
        with pytest.raises(MfaMethodNotAllowedError):
            await auth_service.login("personnel", "ARMY123456", PASSWORD, mfa_method="authenticator")


class TestVerificationEmail:
    async def test_resend_after_interval(self, auth_service, notifier, clock):
        outcome = await auth_service.register(**_form())
        first_token = notifier.send_verification_email.call_args.args[1]
        with pytest.raises(RateLimitedError):
            await auth_service.send_verification_email(outcome.account.id)

        clock.advance(seconds=121)
        sent = await auth_service.send_verification_email(outcome.account.id)
        assert sent == {"sent": True, "sent_to": "ja***@army.mil.in", "expires_in_seconds": 900}
        with pytest.raises(TokenError):
            auth_service.consume_verification_token(first_token)
        second_token = notifier.send_verification_email.call_args.args[1]
        assert auth_service.consume_verification_token(second_token).is_active

    async def test_verified_account_cannot_resend(self, auth_service, notifier):
        outcome = await _verified_account(auth_service, notifier)
        with pytest.raises(AlreadyVerifiedError):
            await auth_service.send_verification_email(outcome.account.id)

    async def test_manual_review_account_cannot_resend(self, auth_service):
        outcome = await auth_service.register(**_form(email="jane@gmail.com"))
        with pytest.raises(ForbiddenError):
            await auth_service.send_verification_email(outcome.account.id)

    async def test_unknown_account(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.send_verification_email("missing")

    async def test_failed_consume_is_audited(self, auth_service):
        with pytest.raises(TokenError):
            auth_service.consume_verification_token("deadbeef")
        failures = [e for e in auth_service.audit.events() if e.event == "email_verification_failed"]
        assert failures[0].details["reason"] == "invalid"
