"""
Queue Gateway: publish/consume on top of the Connection Supervisor.

Fail closed: when the supervisor is not connected every operation returns
False at once. Nothing is buffered, nothing raises across this boundary;
callers keep their own durable record of intent (the JobRecord).

Consumption runs one receive loop task per registered queue. Each loop
handles one message at a time, in broker order:

    body ──json──▶ decoder ──▶ handler ──ok──▶ ack
      │              │           │
      └─malformed────┴───────────┴─raised──▶ reject (no transport requeue)

Retry policy belongs to the consumer (see job_queue.worker), never to the
transport.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import DeliveryError, PublishError

from job_queue.connection import ConnectionSupervisor
from models.schemas import MessageEnvelope

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[None]]
Decoder = Callable[[Any], Any]


@dataclass
class ConsumerRegistration:
    """A consume() call that survives reconnects."""
    queue_name: str
    handler: Handler
    decoder: Optional[Decoder] = None
    task: Optional[asyncio.Task] = None
    processed: int = 0
    rejected: int = 0

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


class QueueGateway:

    def __init__(self, supervisor: ConnectionSupervisor):
        self._supervisor = supervisor
        self._consumers: dict[str, ConsumerRegistration] = {}
        supervisor.add_reconnect_listener(self._restore_consumers)

    def _live_channel(self) -> Optional[AbstractChannel]:
        return self._supervisor.channel

    # ── Queues ────────────────────────────────────────────────

    async def declare_queue(self, name: str) -> bool:
        """Idempotently declare a durable queue."""
        channel = self._live_channel()
        if channel is None:
            logger.warning("queue_declare_skipped", queue=name, reason="broker not connected")
            return False
        try:
            await channel.declare_queue(name, durable=True)
        except Exception as e:
            logger.error("queue_declare_failed", queue=name, error=str(e))
            return False
        logger.info("queue_declared", queue=name)
        return True

    # ── Publish ───────────────────────────────────────────────

    async def publish(self, queue_name: str, payload: Any) -> bool:
        """Send ``payload`` as a persistent JSON message. False means not enqueued."""
        return await self.publish_envelope(MessageEnvelope(queue_name=queue_name, payload=payload))

    async def publish_envelope(self, envelope: MessageEnvelope) -> bool:
        channel = self._live_channel()
        if channel is None:
            logger.warning("publish_dropped",
                           queue=envelope.queue_name, reason="broker not connected")
            return False

        try:
            body = envelope.body()
        except (TypeError, ValueError) as e:
            logger.error("publish_unserializable", queue=envelope.queue_name, error=str(e))
            return False

        message = Message(
            body=body,
            content_type="application/json",
            delivery_mode=(
                DeliveryMode.PERSISTENT if envelope.persistent
                else DeliveryMode.NOT_PERSISTENT
            ),
        )
        try:
            await channel.default_exchange.publish(
                message,
                routing_key=envelope.queue_name,
                timeout=self._supervisor.config.publish_timeout,
            )
        except (DeliveryError, PublishError, asyncio.TimeoutError) as e:
            # broker-side backpressure or a negative confirm
            logger.warning("publish_rejected", queue=envelope.queue_name, error=repr(e))
            return False
        except Exception as e:
            logger.error("publish_failed", queue=envelope.queue_name, error=str(e))
            return False

        logger.debug("message_published", queue=envelope.queue_name, size=len(body))
        return True

    # ── Consume ───────────────────────────────────────────────

    async def consume(
        self,
        queue_name: str,
        handler: Handler,
        decoder: Optional[Decoder] = None,
    ) -> bool:
        """
        Start a receive loop for ``queue_name``.

        ``decoder`` runs on the parsed JSON before the handler; if it raises,
        the message counts as malformed and the handler never sees it.
        """
        channel = self._live_channel()
        if channel is None:
            logger.warning("consume_skipped", queue=queue_name, reason="broker not connected")
            return False

        existing = self._consumers.get(queue_name)
        if existing is not None and existing.active:
            logger.warning("consumer_already_registered", queue=queue_name)
            return False

        registration = ConsumerRegistration(queue_name, handler, decoder)
        if not await self._start(registration, channel):
            return False
        self._consumers[queue_name] = registration
        logger.info("consumer_started", queue=queue_name)
        return True

    async def _start(self, registration: ConsumerRegistration, channel: AbstractChannel) -> bool:
        try:
            queue = await channel.declare_queue(registration.queue_name, durable=True)
        except Exception as e:
            logger.error("consumer_start_failed", queue=registration.queue_name, error=str(e))
            return False
        registration.task = asyncio.create_task(
            self._receive_loop(registration, queue),
            name=f"consume:{registration.queue_name}",
        )
        return True

    async def _receive_loop(self, registration: ConsumerRegistration, queue: AbstractQueue) -> None:
        try:
            async with queue.iterator() as messages:
                async for message in messages:
                    await self._process(registration, message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("consumer_interrupted", queue=registration.queue_name, error=str(e))
            return
        logger.info("consumer_finished", queue=registration.queue_name)

    async def _process(self, registration: ConsumerRegistration, message: AbstractIncomingMessage) -> None:
        queue_name = registration.queue_name
        try:
            payload = json.loads(message.body)
            if registration.decoder is not None:
                payload = registration.decoder(payload)
        except Exception as e:
            registration.rejected += 1
            logger.error("message_malformed", queue=queue_name, error=str(e))
            await self._settle(message, ack=False, queue_name=queue_name)
            return

        try:
            await registration.handler(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            registration.rejected += 1
            logger.error("message_handler_failed", queue=queue_name, error=str(e), exc_info=True)
            await self._settle(message, ack=False, queue_name=queue_name)
            return

        registration.processed += 1
        await self._settle(message, ack=True, queue_name=queue_name)

    @staticmethod
    async def _settle(message: AbstractIncomingMessage, ack: bool, queue_name: str) -> None:
        try:
            if ack:
                await message.ack()
            else:
                await message.reject(requeue=False)
        except Exception as e:
            # channel went away; the broker redelivers unsettled messages
            logger.warning("message_settle_failed", queue=queue_name, ack=ack, error=str(e))

    async def _restore_consumers(self) -> None:
        channel = self._live_channel()
        if channel is None:
            return
        for registration in list(self._consumers.values()):
            if registration.active:
                registration.task.cancel()
            if await self._start(registration, channel):
                logger.info("consumer_restored", queue=registration.queue_name)

    # ── Shutdown ──────────────────────────────────────────────

    async def stop(self) -> None:
        """Cancel every receive loop."""
        tasks = [r.task for r in self._consumers.values() if r.active]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumers.clear()
        logger.info("consumers_stopped", count=len(tasks))

    def consumers(self) -> dict[str, dict[str, Any]]:
        return {
            name: {"active": r.active, "processed": r.processed, "rejected": r.rejected}
            for name, r in self._consumers.items()
        }
