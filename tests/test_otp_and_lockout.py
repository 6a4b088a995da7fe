"""Unit tests for delivered one-time codes, the failed-login lock and verification tokens."""

import uuid

import pytest

from sentinelauth.service.email_verification import EmailVerificationTokenManager, hash_token
from sentinelauth.service.errors import LockoutError, RateLimitedError, TokenError
from sentinelauth.service.lockout import LockoutTracker
from sentinelauth.service.otp import OtpChallengeManager, OtpResult
from sentinelauth.storage.models import Account

CONTACT = "jane@army.mil.in"


def _account(store, **overrides):
    fields = dict(
        id=str(uuid.uuid4()),
        full_name="Jane Rao",
        mobile="+919876543210",
        identity="ARMY123456",
        email=CONTACT,
        role="personnel",
        password_hash="not-a-real-hash",
        mfa_method="delivered",
    )
    fields.update(overrides)
    return store.create_account(Account(**fields))


@pytest.fixture
def otp(store, clock):
    return OtpChallengeManager(
        store, ttl_seconds=60, resend_cooldown_seconds=30, max_attempts=5, clock=clock
    )


class TestOtpChallenge:
    def test_code_valid_just_before_expiry(self, otp, clock):
        issued = otp.issue(CONTACT)
        assert len(issued.code) == 6 and issued.code.isdigit()
        assert issued.masked_contact == "ja***@army.mil.in"
        clock.advance(seconds=59)
        assert otp.verify(CONTACT, issued.code) == OtpResult.VALID

    def test_code_expired_after_ttl(self, otp, clock):
        issued = otp.issue(CONTACT)
        clock.advance(seconds=61)
        assert otp.verify(CONTACT, issued.code) == OtpResult.EXPIRED

    def test_expiry_takes_precedence_over_mismatch(self, otp, clock):
        issued = otp.issue(CONTACT)
        wrong = "000000" if issued.code != "000000" else "111111"
        clock.advance(seconds=61)
        assert otp.verify(CONTACT, wrong) == OtpResult.EXPIRED

    def test_mismatch_keeps_challenge_live(self, otp):
        issued = otp.issue(CONTACT)
        wrong = "000000" if issued.code != "000000" else "111111"
        assert otp.verify(CONTACT, wrong) == OtpResult.MISMATCH
        assert otp.verify(CONTACT, issued.code) == OtpResult.VALID

    def test_code_is_single_use(self, otp):
        issued = otp.issue(CONTACT)
        assert otp.verify(CONTACT, issued.code) == OtpResult.VALID
        assert otp.verify(CONTACT, issued.code) == OtpResult.EXPIRED

    def test_attempt_cap_exhausts_challenge(self, otp):
        issued = otp.issue(CONTACT)
        wrong = "000000" if issued.code != "000000" else "111111"
        for _ in range(5):
            assert otp.verify(CONTACT, wrong) == OtpResult.MISMATCH
        assert otp.verify(CONTACT, issued.code) == OtpResult.EXPIRED

    def test_resend_inside_cooldown_is_throttled(self, otp, clock):
        otp.issue(CONTACT)
        clock.advance(seconds=10)
        with pytest.raises(RateLimitedError) as exc:
            otp.issue(CONTACT)
        assert exc.value.detail["retry_after_seconds"] == 20

    def test_resend_replaces_previous_code(self, otp, clock):
        first = otp.issue(CONTACT)
        clock.advance(seconds=30)
        second = otp.issue(CONTACT)
        if first.code != second.code:
            assert otp.verify(CONTACT, first.code) == OtpResult.MISMATCH
        assert otp.verify(CONTACT, second.code) == OtpResult.VALID

    def test_current_tracks_cooldown(self, otp, clock):
        assert otp.current(CONTACT) is None
        otp.issue(CONTACT)
        assert otp.current(CONTACT) is not None
        clock.advance(seconds=30)
        assert otp.current(CONTACT) is None

    def test_unknown_contact_is_expired(self, otp):
        assert otp.verify("nobody@army.mil.in", "123456") == OtpResult.EXPIRED

    def test_codes_are_not_stored_in_clear(self, otp, store):
        issued = otp.issue(CONTACT)
        challenge = store.get_otp_challenge(CONTACT)
        assert issued.code not in challenge.code_hash


class TestLockoutTracker:
    @pytest.fixture
    def tracker(self, store, clock):
        return LockoutTracker(store, threshold=3, lock_minutes=60, clock=clock)

    def test_threshold_failures_lock_account(self, tracker, store):
        account = _account(store)
        first = tracker.record_failure(account)
        assert (first.failed_logins, first.attempts_remaining, first.locked) == (1, 2, False)
        tracker.record_failure(account)
        third = tracker.record_failure(account)
        assert third.locked
        assert third.retry_after_seconds == 3600
        assert tracker.is_locked(store.get_account(account.id))

    def test_lock_expires_after_duration(self, tracker, store, clock):
        account = _account(store)
        for _ in range(3):
            tracker.record_failure(account)
        clock.advance(minutes=60, seconds=1)
        assert not tracker.is_locked(store.get_account(account.id))

    def test_ensure_not_locked_raises_with_retry_after(self, tracker, store, clock):
        account = _account(store)
        for _ in range(3):
            tracker.record_failure(account)
        clock.advance(minutes=15)
        with pytest.raises(LockoutError) as exc:
            tracker.ensure_not_locked(store.get_account(account.id))
        assert exc.value.detail["retry_after_seconds"] == 45 * 60

    def test_reset_clears_counter_and_lock(self, tracker, store):
        account = _account(store)
        for _ in range(3):
            tracker.record_failure(account)
        tracker.reset(account.id)
        refreshed = store.get_account(account.id)
        assert refreshed.failed_logins == 0
        assert refreshed.lock_until is None


class TestEmailVerificationTokens:
    @pytest.fixture
    def tokens(self, store, clock):
        return EmailVerificationTokenManager(store, ttl_minutes=15, resend_seconds=120, clock=clock)

    def test_token_is_hex_and_stored_hashed(self, tokens, store):
        account = _account(store)
        issued = tokens.issue(account)
        assert len(issued.token) == 64
        int(issued.token, 16)
        stored = store.get_account(account.id)
        assert stored.verification_token_hash == hash_token(issued.token)

    def test_consume_activates_account_once(self, tokens, store):
        account = _account(store)
        issued = tokens.issue(account)
        verified = tokens.consume(issued.token)
        assert verified.email_verified and verified.is_active
        with pytest.raises(TokenError) as exc:
            tokens.consume(issued.token)
        assert exc.value.detail["reason"] == "invalid"

    def test_expired_token(self, tokens, store, clock):
        account = _account(store)
        issued = tokens.issue(account)
        clock.advance(minutes=15)
        with pytest.raises(TokenError) as exc:
            tokens.consume(issued.token)
        assert exc.value.detail["reason"] == "expired"

    def test_manual_review_account_is_verified_but_not_activated(self, tokens, store):
        account = _account(store, manual_review=True)
        issued = tokens.issue(account)
        verified = tokens.consume(issued.token)
        assert verified.email_verified
        assert not verified.is_active

    def test_resend_is_throttled(self, tokens, store, clock):
        account = _account(store)
        tokens.issue(account)
        clock.advance(seconds=60)
        with pytest.raises(RateLimitedError):
            tokens.issue(store.get_account(account.id))
        clock.advance(seconds=60)
        assert tokens.issue(store.get_account(account.id)).token

    def test_garbage_token_is_invalid(self, tokens):
        with pytest.raises(TokenError) as exc:
            tokens.consume("not-a-token")
        assert exc.value.detail["reason"] == "invalid"
