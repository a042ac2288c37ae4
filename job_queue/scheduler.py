"""
Delayed requeue scheduler.

Each scheduled requeue is one tracked asyncio task: sleep for the fixed
delay, then publish the payload back onto its queue through the gateway.
The consumer loop never awaits these tasks, so it moves on to the next
message immediately. ``cancel_all`` drops whatever is still waiting when
the process shuts down; the job records already say ``failed``.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from job_queue.gateway import QueueGateway

logger = structlog.get_logger()


class DelayedRequeueScheduler:

    def __init__(self, gateway: QueueGateway):
        self._gateway = gateway
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule(
        self,
        delay_seconds: float,
        queue_name: str,
        payload: Any,
        job_id: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._requeue_later(delay_seconds, queue_name, payload, job_id),
            name=f"requeue:{queue_name}:{job_id or '-'}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("requeue_scheduled", queue=queue_name, job_id=job_id, delay_s=delay_seconds)
        return task

    async def _requeue_later(
        self, delay_seconds: float, queue_name: str, payload: Any, job_id: Optional[str],
    ) -> bool:
        await asyncio.sleep(delay_seconds)
        published = await self._gateway.publish(queue_name, payload)
        if published:
            logger.info("job_requeued", queue=queue_name, job_id=job_id)
        else:
            logger.warning("job_requeue_failed", queue=queue_name, job_id=job_id)
        return published

    async def drain(self) -> None:
        """Wait for every scheduled requeue to fire."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> int:
        """Cancel outstanding requeues; returns how many were cancelled."""
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("requeues_cancelled", count=len(tasks))
        return len(tasks)
