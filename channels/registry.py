"""
Sender Registry: maps each job kind to exactly one send capability.

A capability is ``async (destination, job) -> bool`` and must not raise.
Lookup is a plain dict access; kinds without a registered capability
resolve to the generic one.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Optional

import structlog

from channels.email_sender import EmailSender
from models.schemas import AnyJob, JobKind

logger = structlog.get_logger()

SendCapability = Callable[[str, AnyJob], Awaitable[bool]]


class SenderRegistry:
    def __init__(self, generic: SendCapability):
        self._capabilities: dict[JobKind, SendCapability] = {JobKind.GENERIC: generic}

    def register(self, kind: JobKind, capability: SendCapability):
        self._capabilities[kind] = capability

    def get(self, kind: JobKind) -> Optional[SendCapability]:
        return self._capabilities.get(kind)

    def resolve(self, kind: JobKind) -> SendCapability:
        capability = self.get(kind)
        if capability is None:
            logger.debug("sender_fallback_generic", kind=getattr(kind, "value", kind))
            return self._capabilities[JobKind.GENERIC]
        return capability

    def get_available(self) -> list[JobKind]:
        return list(self._capabilities.keys())

    @classmethod
    def from_email_sender(cls, sender: EmailSender) -> SenderRegistry:
        """Default wiring: one EmailSender operation per kind."""

        async def send_generic(destination: str, job: AnyJob) -> bool:
            subject = getattr(job, "subject", "") or "(no subject)"
            return await sender.send_email(
                destination, subject,
                text=getattr(job, "text", None),
                html=getattr(job, "html", None),
            )

        async def send_welcome(destination: str, job: AnyJob) -> bool:
            return await sender.send_welcome_email(destination, job.user_name)

        async def send_password_reset(destination: str, job: AnyJob) -> bool:
            return await sender.send_password_reset_email(
                destination, job.user_name, job.reset_token,
            )

        async def send_notification(destination: str, job: AnyJob) -> bool:
            message = job.message or job.text or "You have a new notification"
            return await sender.send_notification_email(destination, job.user_name, message)

        registry = cls(generic=send_generic)
        # transactional mail has its own subject/body, same SMTP path as generic
        registry.register(JobKind.TRANSACTIONAL, send_generic)
        registry.register(JobKind.WELCOME, send_welcome)
        registry.register(JobKind.PASSWORD_RESET, send_password_reset)
        registry.register(JobKind.NOTIFICATION, send_notification)
        return registry
