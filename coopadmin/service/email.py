from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional
from urllib.parse import quote

from coopadmin.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional email for admin invites and password resets.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Logging instead of sending when SMTP is not configured (dev mode)
    - Retried background delivery with exponential backoff
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
        from_name: str = "Coop Admin",
        frontend_url: Optional[str] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:3000").rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

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
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send the password reset link."""
        reset_url = f"{self.frontend_url}/reset-password/{quote(token, safe='')}"
        subject = "Reset your password"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h1>Reset your password</h1>
    <p>We received a request to reset your password. Use the link below to choose a new one:</p>
    <p><a href="{reset_url}">Reset Password</a></p>
    <p>This link will expire in 24 hours. If you didn't request this, you can ignore this email.</p>
</body>
</html>
"""
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in 24 hours. If you didn't request this, you can ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_admin_invite(self, to_email: str, invite_token: str) -> bool:
        """Send the invite link for a new administrator."""
        invite_url = f"{self.frontend_url}/accept-invite/{quote(invite_token, safe='')}"
        subject = "You have been invited as an administrator"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h1>Administrator invite</h1>
    <p>You have been invited to manage the cooperative. Set your password to activate your account:</p>
    <p><a href="{invite_url}">Accept invite</a></p>
    <p>This link will expire in 3 hours.</p>
</body>
</html>
"""
        text_body = f"""Administrator invite

You have been invited to manage the cooperative. Set your password to activate your account:

{invite_url}

This link will expire in 3 hours.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    async def deliver(self, send: Callable[..., bool], *args: str) -> bool:
        """Run ``send`` off the event loop, retrying with exponential backoff."""
        name = getattr(send, "__name__", "send")
        for attempt in range(1, self.max_attempts + 1):
            if await asyncio.to_thread(send, *args):
                return True
            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "email_delivery_retry", job=name, attempt=attempt, delay_seconds=delay
                )
                await asyncio.sleep(delay)
        logger.error("email_delivery_failed", job=name, attempts=self.max_attempts)
        return False
