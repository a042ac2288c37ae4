"""
Delivery Worker: turns at-least-once deliveries into "sent, or failed
after a bounded number of attempts".

Retry state lives on the JobRecord, not on the message, so it survives
restarts and duplicate deliveries are recognised by business state.

Per delivered job:
  1. Load the JobRecord; missing → drop (the record is authoritative)
  2. Already sent → drop (duplicate delivery)
  3. retry_count += 1
  4. Dispatch by kind (unknown kinds use the generic sender)
  5. Success → sent, stamp sent_at, save
  6. Failure → failed + error, save; if retry_count < max_attempts schedule
     one requeue after the fixed delay, otherwise give up
  7. Anything unexpected is caught here: best-effort mark failed, log,
     and return normally so the gateway acks instead of rejecting
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from channels.registry import SenderRegistry
from config.settings import WorkerConfig
from database.store_base import BaseJobStore, StaleRecordError
from job_queue.gateway import QueueGateway
from job_queue.scheduler import DelayedRequeueScheduler
from models.schemas import AnyJob, decode_job_payload

logger = structlog.get_logger()


class DeliveryWorker:
    """
    Consumes the job queue and drives each job to a terminal state.

    Usage:
        worker = DeliveryWorker(gateway, store, senders, settings.worker)
        await worker.start()     # False if the broker is unavailable
        await worker.stop()      # cancels pending requeues
    """

    def __init__(
        self,
        gateway: QueueGateway,
        store: BaseJobStore,
        senders: SenderRegistry,
        config: WorkerConfig = None,
        scheduler: Optional[DelayedRequeueScheduler] = None,
    ):
        self._gateway = gateway
        self._store = store
        self._senders = senders
        self._config = config or WorkerConfig()
        self.scheduler = scheduler or DelayedRequeueScheduler(gateway)
        self._stats = {
            "received": 0, "sent": 0, "failed": 0,
            "requeued": 0, "dropped": 0, "errors": 0,
        }

    @property
    def queue_name(self) -> str:
        return self._config.queue_name

    async def start(self) -> bool:
        started = await self._gateway.consume(
            self._config.queue_name, self.handle, decoder=decode_job_payload,
        )
        if started:
            logger.info("delivery_worker_started",
                        queue=self._config.queue_name,
                        max_attempts=self._config.max_attempts)
        else:
            logger.warning("delivery_worker_unavailable",
                           queue=self._config.queue_name,
                           reason="broker not available")
        return started

    async def stop(self) -> None:
        await self.scheduler.cancel_all()
        logger.info("delivery_worker_stopped")

    # ── Per-message handling ──────────────────────────────────

    async def handle(self, job: AnyJob) -> None:
        """Process one decoded job. Never raises (except on cancellation)."""
        self._stats["received"] += 1
        log = logger.bind(job_id=job.job_id, kind=job.kind.value, queue=self._config.queue_name)
        try:
            await self._process(job, log)
        except asyncio.CancelledError:
            raise
        except StaleRecordError as e:
            # another consumer moved this record first; its outcome stands
            self._stats["dropped"] += 1
            log.warning("job_record_conflict", error=str(e))
        except Exception as e:
            self._stats["errors"] += 1
            log.error("job_processing_error", error=str(e), exc_info=True)
            await self._mark_failed_best_effort(job.job_id, str(e), log)

    async def _process(self, job: AnyJob, log) -> None:
        record = await self._store.find_by_id(job.job_id)
        if record is None:
            self._stats["dropped"] += 1
            log.error("job_record_not_found")
            return

        if record.is_sent:
            self._stats["dropped"] += 1
            log.info("job_already_sent")
            return

        record.retry_count += 1
        send = self._senders.resolve(job.kind)
        success = await send(job.destination, job)

        if success:
            record.mark_sent()
            await self._store.save(record)
            self._stats["sent"] += 1
            log.info("job_sent", attempt=record.retry_count, destination=job.destination)
            return

        record.mark_failed(f"Failed to send {job.kind.value} email to {job.destination}")
        await self._store.save(record)
        self._stats["failed"] += 1

        if record.retry_count < self._config.max_attempts:
            self.scheduler.schedule(
                self._config.retry_delay_seconds,
                self._config.queue_name,
                job.to_payload(),
                job_id=job.job_id,
            )
            self._stats["requeued"] += 1
            log.warning("job_send_failed_retry_scheduled",
                        attempt=record.retry_count,
                        max_attempts=self._config.max_attempts,
                        delay_s=self._config.retry_delay_seconds)
        else:
            log.error("job_failed_permanently", attempts=record.retry_count)

    async def _mark_failed_best_effort(self, job_id: str, error: str, log) -> None:
        try:
            record = await self._store.find_by_id(job_id)
            if record is None or record.is_sent:
                return
            record.retry_count += 1
            record.mark_failed(error)
            await self._store.save(record)
        except Exception as e:
            log.error("job_mark_failed_error", error=str(e))

    def stats(self) -> dict[str, Any]:
        return {**self._stats, "pending_requeues": self.scheduler.pending}
