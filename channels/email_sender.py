"""
Email Sender: SMTP delivery for queued email jobs.

Provides:
- SMTP send with plain text and optional HTML alternative (aiosmtplib)
- One send operation per job kind: welcome, password reset, notification
- Connection verification for health reporting
- Disabled mode when credentials are missing: every send returns False

Every public send returns a bool and never raises; the worker decides
what a failed send means for the job.
"""
from __future__ import annotations

import email.message
import email.policy
import time
from typing import Any, Optional

import aiosmtplib
import structlog

from config.settings import EmailConfig

logger = structlog.get_logger()


class SenderMetrics:
    """Send/fail counters for one sender."""

    def __init__(self):
        self.total_sent = 0
        self.total_failed = 0
        self.last_error = ""
        self.last_sent_at: Optional[float] = None

    def record_send(self):
        self.total_sent += 1
        self.last_sent_at = time.time()

    def record_failure(self, error: str = ""):
        self.total_failed += 1
        self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "last_error": self.last_error,
            "last_sent_at": self.last_sent_at,
        }


class EmailSender:
    """
    Async SMTP email sender.

    Missing username/password is a configuration-time problem: it is
    logged once at construction and the sender stays disabled, but the
    process and any other queue keep running.
    """

    def __init__(self, config: EmailConfig):
        self._config = config
        self._from_email = config.from_email or config.username
        self.metrics = SenderMetrics()
        self._configured = bool(config.username and config.password)
        if self._configured:
            logger.info("email_sender_configured",
                        host=config.smtp_host, port=config.smtp_port,
                        user=config.username)
        else:
            logger.warning("email_sender_not_configured",
                           hint="set GMAIL_USER and GMAIL_APP_PASSWORD")

    @property
    def is_ready(self) -> bool:
        return self._configured

    def _smtp(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self._config.smtp_host,
            port=self._config.smtp_port,
            timeout=self._config.timeout,
            start_tls=self._config.use_tls,
        )

    async def verify_connection(self) -> bool:
        """Open an authenticated SMTP session and close it again."""
        if not self._configured:
            return False
        try:
            async with self._smtp() as smtp:
                await smtp.login(self._config.username, self._config.password)
            logger.info("smtp_connection_verified", host=self._config.smtp_host)
            return True
        except Exception as e:
            logger.error("smtp_connection_failed", host=self._config.smtp_host, error=str(e))
            return False

    # ── Send ──────────────────────────────────────────────────

    async def send_email(
        self,
        to: str,
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
    ) -> bool:
        if not self._configured:
            logger.warning("email_sender_disabled", to=to, subject=subject)
            self.metrics.record_failure("not configured")
            return False

        message = email.message.EmailMessage(policy=email.policy.default)
        message["From"] = (
            f"{self._config.from_name} <{self._from_email}>"
            if self._config.from_name else self._from_email
        )
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text or "", charset="utf-8")
        if html:
            message.add_alternative(html, subtype="html", charset="utf-8")

        try:
            async with self._smtp() as smtp:
                await smtp.login(self._config.username, self._config.password)
                await smtp.send_message(message)
        except Exception as e:
            self.metrics.record_failure(str(e))
            logger.error("email_send_failed", to=to, subject=subject, error=str(e))
            return False

        self.metrics.record_send()
        logger.info("email_sent", to=to, subject=subject)
        return True

    async def send_welcome_email(self, to: str, user_name: str) -> bool:
        subject = f"Welcome to {self._config.from_name}!"
        text = (
            f"Hi {user_name},\n\n"
            f"Thank you for joining {self._config.from_name}! "
            "We're excited to have you on board.\n\n"
            "Getting started:\n"
            "- Complete your profile setup\n"
            "- Join your first chat room\n"
            "- Connect with other users\n"
        )
        return await self.send_email(to, subject, text=text)

    async def send_password_reset_email(self, to: str, user_name: str, reset_token: str) -> bool:
        reset_url = f"{self._config.frontend_url.rstrip('/')}/reset-password?token={reset_token}"
        subject = f"Password Reset Request - {self._config.from_name}"
        text = (
            f"Hi {user_name},\n\n"
            "We received a request to reset your password.\n"
            f"Reset it here: {reset_url}\n\n"
            "This link expires in 1 hour. If you didn't request a reset, "
            "ignore this email.\n"
        )
        return await self.send_email(to, subject, text=text)

    async def send_notification_email(self, to: str, user_name: str, message: str) -> bool:
        subject = f"New Notification - {self._config.from_name}"
        text = f"Hi {user_name},\n\n{message}\n"
        return await self.send_email(to, subject, text=text)

    async def health_check(self) -> dict[str, Any]:
        return {
            "configured": self._configured,
            "metrics": self.metrics.to_dict(),
        }
