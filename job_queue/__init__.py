"""
Job queue: resilient broker client and the email delivery worker.

- ConnectionSupervisor owns the broker connection and its recovery
- QueueGateway publishes and consumes, failing closed when disconnected
- DeliveryWorker applies the per-job retry policy with delayed requeue
"""
from job_queue.connection import ConnectionSupervisor
from job_queue.gateway import QueueGateway
from job_queue.scheduler import DelayedRequeueScheduler
from job_queue.worker import DeliveryWorker

__all__ = [
    "ConnectionSupervisor", "QueueGateway",
    "DelayedRequeueScheduler", "DeliveryWorker",
]
