"""
Runtime: builds and owns every long-lived component of the service.

Startup:   supervisor.init() → declare job queue → worker.start() → verify SMTP
Shutdown:  worker.stop() → gateway.stop() → supervisor.close()

Degraded mode is not a startup failure: when the broker is unreachable the
runtime still comes up, health reports it, and intake refuses new jobs.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from channels.email_sender import EmailSender
from channels.registry import SenderRegistry
from config.settings import Settings
from database.store_base import BaseJobStore
from database.store_factory import create_job_store
from job_queue.connection import ConnectionSupervisor, Connector
from job_queue.gateway import QueueGateway
from job_queue.worker import DeliveryWorker
from models.schemas import JobKind, JobRecord, parse_kind

logger = structlog.get_logger()


class JobIntake:
    """
    Producer side: persist intent first, then publish.

    A False from publish leaves the record ``failed`` with a reason, so a
    job is never silently lost between the store and the broker.
    """

    def __init__(self, gateway: QueueGateway, store: BaseJobStore, queue_name: str):
        self._gateway = gateway
        self._store = store
        self._queue_name = queue_name

    async def enqueue(
        self,
        destination: str,
        kind: Any = JobKind.GENERIC,
        subject: str = "",
        text: Optional[str] = None,
        html: Optional[str] = None,
        **fields: Any,
    ) -> tuple[JobRecord, bool]:
        job_kind = parse_kind(kind)
        record = await self._store.create(JobRecord(
            destination=destination,
            subject=subject,
            body=text or html or "",
            kind=job_kind,
        ))

        payload: dict[str, Any] = {
            "jobId": record.id,
            "kind": job_kind.value,
            "destination": destination,
            **fields,
        }
        if subject:
            payload["subject"] = subject
        if text is not None:
            payload["text"] = text
        if html is not None:
            payload["html"] = html

        published = await self._gateway.publish(self._queue_name, payload)
        if not published:
            record.mark_failed("could not enqueue: broker unavailable")
            await self._store.save(record)
            logger.warning("job_enqueue_failed", job_id=record.id, kind=job_kind.value)
        else:
            logger.info("job_enqueued", job_id=record.id, kind=job_kind.value,
                        queue=self._queue_name)
        return record, published


class Runtime:

    def __init__(
        self,
        settings: Settings,
        connector: Optional[Connector] = None,
        store: Optional[BaseJobStore] = None,
        senders: Optional[SenderRegistry] = None,
    ):
        self.settings = settings
        self.supervisor = ConnectionSupervisor(settings.broker, connector=connector)
        self.gateway = QueueGateway(self.supervisor)
        self.store = store or create_job_store(settings.database)
        self.email_sender = EmailSender(settings.email)
        self.senders = senders or SenderRegistry.from_email_sender(self.email_sender)
        self.worker = DeliveryWorker(self.gateway, self.store, self.senders, settings.worker)
        self.intake = JobIntake(self.gateway, self.store, settings.worker.queue_name)
        self.started_at: Optional[datetime] = None

    async def start(self) -> None:
        connected = await self.supervisor.init()
        if connected:
            await self.gateway.declare_queue(self.settings.worker.queue_name)
            await self.worker.start()
        else:
            logger.warning("runtime_started_degraded", broker=self.supervisor.current_state().value)

        if self.email_sender.is_ready:
            await self.email_sender.verify_connection()

        self.started_at = datetime.now(timezone.utc)
        logger.info("runtime_started",
                    app=self.settings.app_name,
                    broker=self.supervisor.current_state().value,
                    store=type(self.store).__name__)

    async def stop(self) -> None:
        await self.worker.stop()
        await self.gateway.stop()
        await self.supervisor.close()
        logger.info("runtime_stopped", app=self.settings.app_name)

    async def job_summary(self, limit: int = 10) -> dict[str, Any]:
        """Status counts over the most recent ``limit`` job records."""
        recent = await self.store.list_recent(limit)
        counts: dict[str, int] = {}
        for record in recent:
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return {
            "recent": [
                {"id": r.id, "kind": r.kind.value, "status": r.status.value,
                 "retry_count": r.retry_count}
                for r in recent
            ],
            "counts": counts,
        }

    async def health(self, check_smtp: bool = False) -> dict[str, Any]:
        broker_ok = await self.supervisor.health_check()
        if check_smtp and self.email_sender.is_ready:
            smtp_ok = await self.email_sender.verify_connection()
        else:
            smtp_ok = self.email_sender.is_ready
        return {
            "healthy": broker_ok,
            "broker": "connected" if broker_ok else "disconnected",
            "broker_state": self.supervisor.current_state().value,
            "smtp": "connected" if smtp_ok else "disconnected",
        }
