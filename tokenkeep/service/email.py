from __future__ import annotations

import html
import smtplib
import ssl
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Tuple

from tokenkeep.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    <p>{intro}</p>
    <p style="margin: 30px 0; font-size: 18px;">{action}</p>
    <p>{expiry}</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{footer}</p>
  </div>
</body>
</html>
"""


def describe_ttl(ttl: timedelta) -> str:
    """Render a lifetime for mail copy: "1 hour", "15 minutes", "90 seconds"."""
    seconds = max(1, int(ttl.total_seconds()))
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}" if count == 1 else f"{count} {unit}s"
    return "1 second" if seconds == 1 else f"{seconds} seconds"


class EmailService:
    """Transactional mail for links and one-time codes.

    Sends over SMTP with STARTTLS or implicit TLS. When no SMTP host is
    configured the message is logged instead of sent.
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
        from_name: str = "Tokenkeep",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        verification_link_ttl: timedelta = timedelta(hours=1),
        reset_link_ttl: timedelta = timedelta(minutes=15),
        code_ttl: timedelta = timedelta(minutes=2),
        login_code_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout
        self.verification_link_ttl = verification_link_ttl
        self.reset_link_ttl = reset_link_ttl
        self.code_ttl = code_ttl
        self.login_code_ttl = login_code_ttl

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self, title: str, intro: str, action: str, expiry: str, *, link: bool = False
    ) -> Tuple[str, str]:
        escaped = html.escape(action)
        if link:
            action_html = f'<a href="{escaped}">{escaped}</a>'
        else:
            action_html = f"<strong>{escaped}</strong>"
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            intro=html.escape(intro),
            action=action_html,
            expiry=html.escape(expiry),
            footer=html.escape(self.from_name),
        )
        text_body = f"{title}\n\n{intro}\n\n{action}\n\n{expiry}\n\n---\n{self.from_name}\n"
        return html_body, text_body

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated SMTP session (STARTTLS or implicit TLS)."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def _delivery_failed(self, event: str, to_email: str, **fields) -> bool:
        logger.error(event, to=self._redact_email(to_email), host=self.smtp_host, **fields)
        return False

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        """Send one message; False means the worker may retry."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            return self._delivery_failed("email_auth_failed", to_email, smtp_code=exc.smtp_code)
        except smtplib.SMTPRecipientsRefused as exc:
            return self._delivery_failed(
                "email_recipient_refused", to_email, refused=len(exc.recipients)
            )
        except smtplib.SMTPException as exc:
            return self._delivery_failed(
                "email_smtp_error", to_email, error_type=type(exc).__name__, error=str(exc)
            )
        except (ssl.SSLError, OSError) as exc:
            # Connection refused, DNS failure, TLS failure and timeouts
            return self._delivery_failed(
                "email_transport_error",
                to_email,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            "Thanks for signing up! Confirm your email address with the link below.",
            verify_url,
            f"This link will expire in {describe_ttl(self.verification_link_ttl)}.",
            link=True,
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset your password. Choose a new one with the link below.",
            reset_url,
            f"This link will expire in {describe_ttl(self.reset_link_ttl)}. "
            "If you didn't request this, ignore this email.",
            link=True,
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_verification_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Your verification code",
            "Enter this code to continue creating your account:",
            code,
            f"The code will expire in {describe_ttl(self.code_ttl)}.",
        )
        return self._send_email(
            to_email, f"{self.from_name} verification code", html_body, text_body
        )

    def send_login_otp(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Your sign-in code",
            "Enter this one-time code to sign in:",
            code,
            f"The code will expire in {describe_ttl(self.login_code_ttl)}. "
            "If you didn't try to sign in, ignore this email.",
        )
        return self._send_email(
            to_email, f"{self.from_name} sign-in code", html_body, text_body
        )
