from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Dict, Optional

from authengine.config import Settings
from authengine.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    {paragraphs}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""

_ALERT_TEXT = {
    "email_verified": "Your email address has been verified and your account is active.",
    "password_reset": "Your password was reset and every signed-in device was signed out.",
    "password_changed": "Your password was changed and your other sessions were signed out.",
    "two_factor_enabled": "Two-factor authentication is now enabled on your account.",
    "two_factor_disabled": "Two-factor authentication was turned off for your account.",
    "backup_codes_regenerated": "A new set of backup codes was generated; the old ones no longer work.",
    "account_locked": "Your account was temporarily locked after repeated failed sign-in attempts.",
    "account_deactivated": "Your account has been deactivated.",
    "account_reactivated": "Your account has been reactivated.",
    "new_login": "A new sign-in to your account was recorded.",
}


class EmailService:
    """Transactional mail for codes, links and security notices.

    Without SMTP settings the message is logged instead of sent, which is what
    local development and the test suite rely on. Every send returns a bool and
    never raises.
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
        from_name: str = "AuthEngine",
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

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

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

    def _render(self, title: str, *lines: str) -> tuple[str, str]:
        paragraphs = "\n    ".join(f"<p>{escape(line)}</p>" for line in lines)
        html_body = _HTML_LAYOUT.format(
            title=escape(title), paragraphs=paragraphs, sender=escape(self.from_name)
        )
        text_body = "\n\n".join([title, *lines, f"---\n{self.from_name}"])
        return html_body, text_body

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
                body_preview=text_body[:200] if text_body else html_body[:200],
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
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
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
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str) -> bool:
        """Send email verification link."""
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            "Thanks for signing up! Confirm your address by visiting the link below:",
            verify_url,
            "This link will expire in 24 hours.",
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_two_factor_code(
        self, to_email: str, code: str, context: Optional[Dict[str, str]] = None
    ) -> bool:
        context = context or {}
        lines = [f"Your sign-in code is {code}.", "It expires in 5 minutes."]
        if context.get("ip_address"):
            lines.append(f"Requested from {context['ip_address']}.")
        lines.append("If this wasn't you, change your password now.")
        html_body, text_body = self._render("Your sign-in code", *lines)
        return self._send_email(to_email, "Your sign-in code", html_body, text_body)

    def send_password_reset(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            f"Use the code {code} to choose a new password.",
            "This code will expire in 15 minutes.",
            "If you didn't request this, you can safely ignore this email.",
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_reactivation_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Reactivate your account",
            f"Use the code {code} to reactivate your account.",
            "This code will expire in 15 minutes.",
        )
        return self._send_email(to_email, "Reactivate your account", html_body, text_body)

    def send_security_alert(
        self, to_email: str, alert_type: str, details: Optional[Dict[str, str]] = None
    ) -> bool:
        """Notify the owner about a security-relevant change to their account."""
        lines = [_ALERT_TEXT.get(alert_type, "There was a security-relevant change to your account.")]
        for key, value in sorted((details or {}).items()):
            lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
        lines.append("If you didn't make this change, contact support immediately.")
        html_body, text_body = self._render("Security notice", *lines)
        return self._send_email(to_email, "Security notice for your account", html_body, text_body)
