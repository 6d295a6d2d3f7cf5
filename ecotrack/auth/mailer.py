"""
Ecotrack - Outgoing Auth Mail

Builds verification and password-reset messages and hands them to a
MailTransport.

Transports:
- SMTPTransport: STARTTLS or implicit TLS relay with a bounded timeout
- LoggingTransport: development fallback, logs instead of sending

Security:
- Recipient addresses are redacted in log lines
- Token links are never logged by the SMTP transport
- Transport failures are reported as False; the caller rolls back the
  token that was meant to be delivered
"""

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from ecotrack.auth.models import User


logger = logging.getLogger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class MailTransport(Protocol):
    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message. Returns False on failure, never raises."""
        ...


class SMTPTransport:
    """Sends mail through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_email: str,
        from_name: str = "Ecotrack",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, [to], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    self._login(server)
                    server.sendmail(self.from_email, [to], msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Mail to %s failed: %s", redact_email(to), exc.__class__.__name__,
            )
            return False

        logger.info("Mail sent to %s: %s", redact_email(to), subject)
        return True

    def _login(self, server: smtplib.SMTP) -> None:
        if self.username and self.password:
            server.login(self.username, self.password)


class LoggingTransport:
    """Development transport: logs the message instead of sending it."""

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        logger.info(
            "[dev mail] to=%s subject=%r\n%s", redact_email(to), subject, text_body,
        )
        return True


class AuthMailer:
    """
    Renders the auth emails and sends them through a transport.

    Links point at the client app:
        {base_url}/auth/verify-email?token=...&email=...
        {base_url}/auth/reset-password?token=...&email=...
    """

    def __init__(
        self,
        transport: MailTransport,
        *,
        base_url: str,
        app_name: str = "Ecotrack",
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.app_name = app_name
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    def build_link(self, path: str, token: str, email: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token, 'email': email})}"

    def send_verification(self, user: User, token: str) -> bool:
        url = self.build_link("/auth/verify-email", token, user.email)
        expiry = f"{self.verification_ttl_hours} hours"
        text_body = (
            f"Welcome to {self.app_name}!\n\n"
            f"Hi {user.first_name},\n\n"
            "Please verify your email address by visiting this link:\n"
            f"{url}\n\n"
            f"This link will expire in {expiry}.\n\n"
            f"If you didn't create an account with {self.app_name}, "
            "you can safely ignore this email.\n"
        )
        html_body = self._render_html(
            title=f"Welcome to {self.app_name}!",
            first_name=user.first_name,
            intro="Please verify your email address to finish setting up your account.",
            url=url,
            button="Verify Email Address",
            expiry=expiry,
            outro=f"If you didn't create an account with {self.app_name}, you can safely ignore this email.",
            email=user.email,
        )
        return self.transport.send(user.email, f"Verify your {self.app_name} account", html_body, text_body)

    def send_password_reset(self, user: User, token: str) -> bool:
        url = self.build_link("/auth/reset-password", token, user.email)
        expiry = self._format_minutes(self.reset_ttl_minutes)
        text_body = (
            f"Hi {user.first_name},\n\n"
            f"We received a request to reset the password for your {self.app_name} account.\n\n"
            "Reset your password by visiting this link:\n"
            f"{url}\n\n"
            f"This link will expire in {expiry}.\n\n"
            "If you didn't request a password reset, you can safely ignore this email. "
            "Your password will remain unchanged.\n"
        )
        html_body = self._render_html(
            title="Reset your password",
            first_name=user.first_name,
            intro=f"We received a request to reset the password for your {self.app_name} account.",
            url=url,
            button="Reset Password",
            expiry=expiry,
            outro="If you didn't request a password reset, you can safely ignore this email.",
            email=user.email,
        )
        return self.transport.send(user.email, f"Reset your {self.app_name} password", html_body, text_body)

    @staticmethod
    def _format_minutes(minutes: int) -> str:
        if minutes % 60 == 0:
            hours = minutes // 60
            return "1 hour" if hours == 1 else f"{hours} hours"
        return f"{minutes} minutes"

    def _render_html(
        self,
        *,
        title: str,
        first_name: str,
        intro: str,
        url: str,
        button: str,
        expiry: str,
        outro: str,
        email: str,
    ) -> str:
        e = html.escape
        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{e(title)}</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto;">
  <h1>{e(title)}</h1>
  <p>Hi {e(first_name)},</p>
  <p>{e(intro)}</p>
  <p><a href="{e(url)}">{e(button)}</a></p>
  <p>If the link doesn't work, copy this address into your browser:<br>{e(url)}</p>
  <p><strong>This link will expire in {e(expiry)}.</strong></p>
  <p>{e(outro)}</p>
  <p style="font-size: 12px; color: #666;">This email was sent to {e(email)}<br>{e(self.app_name)}</p>
</body>
</html>
"""
