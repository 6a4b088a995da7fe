from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from sentinelauth.logging import get_logger

logger = get_logger(__name__)

_PORTAL_NAME = "Defence Incident Sentinel Portal"

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1e40af; color: white; padding: 14px 32px; border-radius: 6px; text-decoration: none; font-weight: bold; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: bold; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
        <div class="footer">
            <p>{portal}</p>
            <p>This is an automated security message. Do not reply.</p>
        </div>
    </div>
</body>
</html>
"""


class NotificationSender(Protocol):
    """Outbound channel for verification links, login codes and security notices.

    Implementations return False on delivery failure instead of raising.
    """

    def send_verification_email(
        self, to_email: str, token: str, *, full_name: str, expires_minutes: int
    ) -> bool: ...

    def send_login_code(
        self, to_email: str, code: str, *, full_name: str, expires_seconds: int
    ) -> bool: ...

    def send_authenticator_enrolled(self, to_email: str, *, full_name: str) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logs and client hints: ``ja***@army.mil.in``."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP notification sender.

    Without an SMTP host and from-address it runs in dev mode: messages are
    logged with the recipient redacted and no secret content.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Defence Incident Sentinel",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_verification_email(
        self, to_email: str, token: str, *, full_name: str, expires_minutes: int
    ) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Complete Your Registration - Defence Incident Sentinel"
        html_body = _HTML_SHELL.format(
            portal=_PORTAL_NAME,
            content=f"""
        <h1>Complete Your Registration</h1>
        <p>Hello {html.escape(full_name)},</p>
        <p>We received a request to complete your registration for the {_PORTAL_NAME}.
        To proceed, please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;"><a href="{verify_url}" class="button">Verify Email</a></p>
        <p>This link will expire in {expires_minutes} minutes and can be used once.</p>
        <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>
""",
        )
        text_body = f"""Complete Your Registration

Hello {full_name},

To verify your email address for the {_PORTAL_NAME}, open the following link:

{verify_url}

This link will expire in {expires_minutes} minutes and can be used once.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_login_code(
        self, to_email: str, code: str, *, full_name: str, expires_seconds: int
    ) -> bool:
        subject = "Your sign-in code - Defence Incident Sentinel"
        html_body = _HTML_SHELL.format(
            portal=_PORTAL_NAME,
            content=f"""
        <h1>Sign-in verification</h1>
        <p>Hello {html.escape(full_name)},</p>
        <p>Use the following code to finish signing in:</p>
        <p class="code">{code}</p>
        <p>The code expires in {expires_seconds} seconds. Never share it with anyone.</p>
""",
        )
        text_body = f"""Sign-in verification

Hello {full_name},

Your sign-in code is {code}. It expires in {expires_seconds} seconds.
Never share it with anyone.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_authenticator_enrolled(self, to_email: str, *, full_name: str) -> bool:
        subject = "Authenticator setup complete - Defence Incident Sentinel"
        html_body = _HTML_SHELL.format(
            portal=_PORTAL_NAME,
            content=f"""
        <h1>Authenticator app enrolled</h1>
        <p>Hello {html.escape(full_name)},</p>
        <p>An authenticator app was registered as the second factor for your account.
        You will need a code from it each time you sign in.</p>
        <p>Keep your recovery codes somewhere safe. If you did not make this change,
        contact your security officer immediately.</p>
""",
        )
        text_body = f"""Authenticator app enrolled

Hello {full_name},

An authenticator app was registered as the second factor for your account.
If you did not make this change, contact your security officer immediately.
"""
        return self._send_email(to_email, subject, html_body, text_body)
