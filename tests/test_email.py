from sentinelauth.service.email import EmailService, redact_email


def _capture(monkeypatch, service):
    sent = []

    def fake_send(to_email, subject, html_body, text_body):
        sent.append((html_body, text_body))
        return True

    monkeypatch.setattr(service, "_send_email", fake_send)
    return sent


class TestEmailTemplates:
    def test_full_name_is_escaped_in_html(self, monkeypatch):
        service = EmailService()
        sent = _capture(monkeypatch, service)
        name = '<script>alert("x")</script>'

        service.send_verification_email("jane@army.mil.in", "tok", full_name=name, expires_minutes=15)
        service.send_login_code("jane@army.mil.in", "123456", full_name=name, expires_seconds=60)
        service.send_authenticator_enrolled("jane@army.mil.in", full_name=name)

        assert len(sent) == 3
        for html_body, text_body in sent:
            assert "<script>" not in html_body
            assert "&lt;script&gt;" in html_body
            assert name in text_body

    def test_dev_mode_reports_sent(self):
        assert not EmailService().is_configured
        assert EmailService().send_login_code(
            "jane@army.mil.in", "123456", full_name="Jane Rao", expires_seconds=60
        )

    def test_redact_email(self):
        assert redact_email("jane@army.mil.in") == "ja***@army.mil.in"
        assert redact_email("nobody") == "redacted"
