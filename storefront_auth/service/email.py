from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from html import escape
from typing import Any, Mapping, Optional, Protocol

from storefront_auth.logging import get_logger

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    EMAIL_VERIFICATION_OTP = "email_verification_otp"
    PASSWORD_RESET_OTP = "password_reset_otp"
    PASSWORD_RESET_LINK = "password_reset_link"
    SECURITY_ALERT = "security_alert"
    TWO_FACTOR_ENABLED = "two_factor_enabled"


class Notifier(Protocol):
    def send(self, kind: NotificationKind, recipient: str, context: Mapping[str, Any]) -> bool: ...


_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for the auth flows.

    Sends over SMTP (STARTTLS or implicit TLS). When SMTP is not configured
    messages are logged instead, which is what development and tests use.
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
        from_name: str = "Storefront",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, kind: NotificationKind, recipient: str, context: Mapping[str, Any]) -> bool:
        """Render and deliver one notification; returns False on delivery failure."""

        try:
            subject, title, paragraphs = self._render(NotificationKind(kind), context)
        except (KeyError, ValueError) as exc:
            logger.error("email_render_failed", kind=str(kind), error=str(exc))
            return False
        text_body = "\n\n".join([title, *paragraphs, f"---\n{self.from_name}"])
        html_body = _HTML_SHELL.format(
            title=escape(title),
            body="\n        ".join(
                f'<p class="code">{escape(p)}</p>' if p == context.get("code") else f"<p>{escape(p)}</p>"
                for p in paragraphs
            ),
            brand=escape(self.from_name),
        )
        return self._send_email(recipient, subject, html_body, text_body)

    def _render(
        self, kind: NotificationKind, context: Mapping[str, Any]
    ) -> tuple[str, str, list[str]]:
        name = context.get("first_name") or "there"
        if kind == NotificationKind.EMAIL_VERIFICATION_OTP:
            return (
                f"Your {self.from_name} verification code",
                "Verify your email",
                [
                    f"Hi {name}, use this code to verify your email address:",
                    str(context["code"]),
                    f"This code expires in {context['expires_in_minutes']} minutes.",
                ],
            )
        if kind == NotificationKind.PASSWORD_RESET_OTP:
            return (
                f"Your {self.from_name} password reset code",
                "Reset your password",
                [
                    "Use this code to reset your password:",
                    str(context["code"]),
                    f"This code expires in {context['expires_in_minutes']} minutes.",
                    "If you didn't request this, you can safely ignore this email.",
                ],
            )
        if kind == NotificationKind.PASSWORD_RESET_LINK:
            reset_url = f"{self.base_url}/reset-password?token={context['token']}"
            return (
                f"Reset your {self.from_name} password",
                "Reset your password",
                [
                    "We received a request to reset your password. Visit the link below to choose a new one:",
                    reset_url,
                    f"This link will expire in {context['expires_in_minutes']} minutes.",
                    "If you didn't request this, you can safely ignore this email.",
                ],
            )
        if kind == NotificationKind.SECURITY_ALERT:
            return (
                f"Security alert for your {self.from_name} account",
                "New sign-in to your account",
                [
                    str(context["message"]),
                    "If this wasn't you, reset your password immediately.",
                ],
            )
        if kind == NotificationKind.TWO_FACTOR_ENABLED:
            return (
                "Two-factor authentication enabled",
                "Two-factor authentication enabled",
                [
                    f"Two-factor authentication has been enabled on your {self.from_name} account.",
                    "You will now need to enter a code from your authenticator app when signing in.",
                    "If you didn't make this change, please contact support immediately.",
                ],
            )
        raise ValueError(f"unsupported notification kind: {kind}")

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
