"""Tests for the registration lifecycle: stepwise drafts and single-request registration."""

import pytest

from sentinelauth.service.errors import ConflictError, ValidationError
from sentinelauth.service.registration import RegistrationStep

STRONG_PASSWORD = "Str0ng!Passw0rd"


def _form(**overrides):
    form = dict(
        full_name="Jane Rao",
        email="jane@army.mil.in",
        mobile="+91 98765 43210",
        role="personnel",
        service_id="army123456",
        password=STRONG_PASSWORD,
        confirm_password=STRONG_PASSWORD,
        mfa_method=None,
        eligibility_confirmed=True,
    )
    form.update(overrides)
    return form


class TestRegister:
    async def test_official_email_goes_to_verification(self, auth_service, notifier):
        outcome = await auth_service.register(**_form())

        assert outcome.state == RegistrationStep.VERIFIED
        assert outcome.verification_sent
        assert outcome.verification_expires_at is not None
        account = outcome.account
        assert account.identity == "ARMY123456"
        assert account.mobile == "+919876543210"
        assert account.mfa_method == "delivered"
        assert not account.is_active
        assert not account.email_verified
        assert account.password_hash != STRONG_PASSWORD
        assert account.verification_token_hash
        notifier.send_verification_email.assert_called_once()
        assert notifier.send_verification_email.call_args.args[0] == "jane@army.mil.in"
        payload = outcome.to_dict()
        assert payload["account_id"] == account.id
        assert payload["requires_email_verification"] is True

    async def test_non_defence_email_is_flagged_for_review(self, auth_service, notifier):
        outcome = await auth_service.register(**_form(email="jane@gmail.com"))

        assert outcome.state == RegistrationStep.PENDING_MANUAL_REVIEW
        assert outcome.account.manual_review
        assert outcome.account.verification_token_hash is None
        assert not outcome.verification_sent
        assert [w.code for w in outcome.warnings] == ["email_domain_unverified"]
        notifier.send_verification_email.assert_not_called()
        events = [e.event for e in auth_service.audit.events(outcome.account.id)]
        assert "registration_flagged_for_review" in events

    async def test_mandatory_domain_rejects_registration(self, auth_service, store):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(
                **_form(role="veteran", service_id="SPARSH-1234567", email="vet@gmail.com")
            )
        assert exc.value.detail["fields"]["email"][0]["code"] == "email_format_rejected"
        assert store.get_account_by_identity("veteran", "SPARSH-1234567") is None

    async def test_every_field_problem_reported_at_once(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(
                **_form(
                    full_name="",
                    mobile="123",
                    service_id="xyz999",
                    password="weak",
                    confirm_password="other",
                    eligibility_confirmed=False,
                )
            )
        fields = exc.value.detail["fields"]
        assert set(fields) >= {
            "full_name",
            "mobile",
            "identity",
            "password",
            "confirm_password",
            "eligibility_confirmed",
        }
        assert fields["identity"][0]["message"].startswith("Service ID must be 6-10 characters")

    async def test_enforced_method_overrides_caller(self, auth_service, notifier):
        outcome = await auth_service.register(
            **_form(
                role="cert",
                service_id="cert-in-042",
                email="analyst@drdo.gov.in",
                mfa_method="delivered",
            )
        )
        assert outcome.account.mfa_method == "authenticator"
        assert outcome.account.authenticator_secret
        assert outcome.enrollment is not None
        assert len(outcome.enrollment.recovery_codes) == 10
        assert outcome.account.recovery_codes_remaining == 10
        assert outcome.to_dict()["authenticator"]["provisioning_uri"].startswith("otpauth://totp/")
        notifier.send_authenticator_enrolled.assert_called_once()

    async def test_caller_may_choose_authenticator(self, auth_service):
        outcome = await auth_service.register(**_form(mfa_method="authenticator"))
        assert outcome.account.mfa_method == "authenticator"
        assert outcome.enrollment is not None

    async def test_unknown_mfa_method_rejected(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(**_form(mfa_method="carrier-pigeon"))
        assert "mfa_method" in exc.value.detail["fields"]

    async def test_admin_identity_defaults_to_email(self, auth_service):
        outcome = await auth_service.register(
            **_form(role="admin", service_id="", email="Ops@MOD.gov.in")
        )
        assert outcome.account.identity == "ops@mod.gov.in"
        assert outcome.account.role == "admin"

    async def test_email_identity_must_match_contact_email(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(
                **_form(role="admin", service_id="other@mod.gov.in", email="ops@mod.gov.in")
            )
        codes = [i["code"] for i in exc.value.detail["fields"]["identity"]]
        assert "identity_email_mismatch" in codes

    async def test_auditor_outside_roster_rejected(self, auth_service):
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(
                **_form(role="auditor", service_id="", email="someone@mod.gov.in")
            )
        assert exc.value.detail["fields"]["email"][0]["code"] == "email_not_whitelisted"

    async def test_duplicate_identity_conflicts(self, auth_service):
        await auth_service.register(**_form())
        with pytest.raises(ConflictError) as exc:
            await auth_service.register(**_form(email="other@army.mil.in"))
        assert exc.value.detail["field"] == "identity"
        rejected = [e for e in auth_service.audit.events() if e.event == "registration_rejected"]
        assert rejected and rejected[0].details["reason"] == "duplicate_identity"

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register(**_form())
        with pytest.raises(ConflictError) as exc:
            await auth_service.register(**_form(role="family", service_id="D-FID-0001"))
        assert exc.value.detail["field"] == "email"


class TestStepwiseDraft:
    def test_steps_advance_in_order(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        flow.submit_identity(draft, full_name="Jane Rao", email="jane@army.mil.in", mobile="9876543210")
        assert draft.step == RegistrationStep.SERVICE
        flow.submit_service(draft, role="personnel", service_id="army12345")
        assert draft.step == RegistrationStep.SECURITY
        flow.submit_security(
            draft, password=STRONG_PASSWORD, confirm_password=STRONG_PASSWORD, eligibility_confirmed=True
        )
        assert draft.step == RegistrationStep.SUBMITTED
        assert draft.mfa_method.value == "delivered"

    def test_out_of_order_step_rejected(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        with pytest.raises(ValidationError) as exc:
            flow.submit_service(draft, role="personnel", service_id="ARMY12345")
        assert exc.value.error_code == "invalid_step"

    def test_failed_step_keeps_position_and_errors(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        flow.submit_identity(draft, full_name="Jane Rao", email="jane@army.mil.in", mobile="9876543210")
        with pytest.raises(ValidationError):
            flow.submit_service(draft, role="personnel", service_id="xyz999")
        assert draft.step == RegistrationStep.SERVICE
        assert draft.errors["identity"][0]["code"] == "identity_format"

    def test_identity_step_only_checks_presence_of_email(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        flow.submit_identity(draft, full_name="Jane Rao", email="not-an-email", mobile="9876543210")
        assert draft.step == RegistrationStep.SERVICE

        with pytest.raises(ValidationError) as exc:
            flow.submit_service(draft, role="family", service_id="D-FID-1234")
        assert draft.step == RegistrationStep.SERVICE
        assert exc.value.detail["fields"]["email"][0]["code"] == "email_invalid"

    def test_identity_step_requires_email(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        with pytest.raises(ValidationError) as exc:
            flow.submit_identity(draft, full_name="Jane Rao", email="", mobile="9876543210")
        assert exc.value.detail["fields"]["email"][0]["code"] == "email_required"
        assert draft.step == RegistrationStep.IDENTITY

    def test_changing_role_clears_identity(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        flow.submit_identity(draft, full_name="Jane Rao", email="jane@gmail.com", mobile="9876543210")
        flow.submit_service(draft, role="personnel", service_id="ARMY12345")
        assert draft.warnings
        flow.back(draft)
        assert draft.step == RegistrationStep.SERVICE
        flow.select_role(draft, "family")
        assert draft.identity == ""
        assert draft.warnings == []
        assert "identity" not in draft.errors

    def test_cannot_go_back_from_identity(self, auth_service):
        flow = auth_service.registration
        with pytest.raises(ValidationError):
            flow.back(flow.start())

    async def test_complete_submitted_draft(self, auth_service):
        flow = auth_service.registration
        draft = flow.start()
        flow.submit_identity(draft, full_name="Jane Rao", email="jane@army.mil.in", mobile="9876543210")
        flow.submit_service(draft, role="personnel", service_id="ARMY12345")
        flow.submit_security(draft, password=STRONG_PASSWORD, eligibility_confirmed=True)
        outcome = await flow.complete(draft)
        assert outcome.state == RegistrationStep.VERIFIED
        assert draft.password == ""
