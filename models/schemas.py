"""
Core data models for the mail queue service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"          # retries exhausted, running without messaging


class JobStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class JobKind(str, Enum):
    TRANSACTIONAL = "transactional"
    WELCOME = "welcome"
    PASSWORD_RESET = "password-reset"
    NOTIFICATION = "notification"
    GENERIC = "generic"


# Older producers tag free-form mail as "custom"
_KIND_ALIASES = {"custom": JobKind.GENERIC}


def parse_kind(value: Any) -> JobKind:
    """Map a wire ``kind`` to a JobKind; anything unknown is generic."""
    if isinstance(value, JobKind):
        return value
    raw = str(value or "").strip().lower()
    if raw in _KIND_ALIASES:
        return _KIND_ALIASES[raw]
    try:
        return JobKind(raw)
    except ValueError:
        return JobKind.GENERIC


# ──────────────────────────────────────────────────────────────
#  Job record: durable state of one unit of work
# ──────────────────────────────────────────────────────────────

class JobRecord(BaseModel):
    """
    The authoritative record of an email job.

    Created by the intake side before anything is published; the worker
    only moves ``status``/``retry_count``/``error_message``/``sent_at``.
    ``version`` is bumped by the store on every save and used for
    compare-and-swap when several consumers share a queue.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    destination: str
    subject: str = ""
    body: str = ""
    kind: JobKind = JobKind.GENERIC
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = Field(default=0, ge=0)
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_sent(self) -> bool:
        return self.status == JobStatus.SENT

    def mark_sent(self) -> None:
        self.status = JobStatus.SENT
        self.sent_at = _utcnow()
        self.error_message = None

    def mark_failed(self, error: str) -> None:
        self.status = JobStatus.FAILED
        self.error_message = error


# ──────────────────────────────────────────────────────────────
#  Message envelope: what the gateway publishes
# ──────────────────────────────────────────────────────────────

class MessageEnvelope(BaseModel):
    """A message on its way to the broker. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    queue_name: str
    payload: Any
    persistent: bool = True

    def body(self) -> bytes:
        """Serialize the payload; raises TypeError/ValueError if not JSON-able."""
        return json.dumps(self.payload, separators=(",", ":")).encode("utf-8")


# ──────────────────────────────────────────────────────────────
#  Job payloads: tagged union over JobKind
# ──────────────────────────────────────────────────────────────

class MalformedPayloadError(ValueError):
    """A consumed message cannot be turned into a job payload."""


class JobPayload(BaseModel):
    """
    Common shape of every job message.

    Wire format is a flat camelCase JSON object, e.g.
    ``{"jobId": "A", "kind": "welcome", "destination": "x@y.com", "userName": "X"}``.
    Unrecognised fields are kept so a requeued message carries them along.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    kind: JobKind = JobKind.GENERIC
    job_id: str = Field(alias="jobId", min_length=1)
    destination: str = Field(min_length=1)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TransactionalJob(JobPayload):
    kind: JobKind = JobKind.TRANSACTIONAL
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None


class WelcomeJob(JobPayload):
    kind: JobKind = JobKind.WELCOME
    user_name: str = Field(default="User", alias="userName")


class PasswordResetJob(JobPayload):
    kind: JobKind = JobKind.PASSWORD_RESET
    user_name: str = Field(default="User", alias="userName")
    reset_token: str = Field(default="", alias="resetToken")


class NotificationJob(JobPayload):
    kind: JobKind = JobKind.NOTIFICATION
    user_name: str = Field(default="User", alias="userName")
    message: Optional[str] = None
    text: Optional[str] = None


class GenericJob(JobPayload):
    """Fallback for custom mail and for any kind this worker does not know."""
    kind: JobKind = JobKind.GENERIC
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None


AnyJob = Union[TransactionalJob, WelcomeJob, PasswordResetJob, NotificationJob, GenericJob]

_PAYLOAD_TYPES: dict[JobKind, type[JobPayload]] = {
    JobKind.TRANSACTIONAL: TransactionalJob,
    JobKind.WELCOME: WelcomeJob,
    JobKind.PASSWORD_RESET: PasswordResetJob,
    JobKind.NOTIFICATION: NotificationJob,
    JobKind.GENERIC: GenericJob,
}


def decode_job_payload(data: Any) -> AnyJob:
    """Turn a decoded JSON body into its typed job payload.

    Legacy producers sent ``emailId``/``to``/``type``; those keys are
    accepted when the current ones are absent. The decoded payload carries
    the normalised kind, so an unknown kind is requeued as ``generic``.
    """
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"Job payload must be an object, got {type(data).__name__}")

    fields = dict(data)
    if "jobId" not in fields and "job_id" not in fields and "emailId" in fields:
        fields["jobId"] = fields.pop("emailId")
    if "destination" not in fields and "to" in fields:
        fields["destination"] = fields.pop("to")
    if "kind" not in fields and "type" in fields:
        fields["kind"] = fields.pop("type")
    if isinstance(fields.get("jobId"), int):
        fields["jobId"] = str(fields["jobId"])

    kind = parse_kind(fields.get("kind"))
    fields["kind"] = kind
    model = _PAYLOAD_TYPES[kind]
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        raise MalformedPayloadError(str(e)) from e
