"""
Connection Supervisor: owns the single broker connection/channel pair.

State machine:

    disconnected ──init()──▶ connecting ──ok──▶ connected
                                 │  ▲                │
                      fail, n<max│  │ fixed delay     │ broker close/error (async)
                                 ▼  │                ▼
                             connecting         disconnected ──1s──▶ connecting (n = 0)
                                 │
                      fail, n==max
                                 ▼
                             degraded   (messaging off, process keeps serving)

The supervisor is the only writer of ConnectionState. Reconnection is
driven solely by the transport's close callbacks; there is no polling.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Optional

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractConnection
from tenacity import AsyncRetrying, stop_after_attempt, wait_fixed

from config.settings import BrokerConfig
from models.schemas import ConnectionState

logger = structlog.get_logger()

Connector = Callable[[], Awaitable[AbstractConnection]]
ReconnectListener = Callable[[], Awaitable[None]]


class ConnectionSupervisor:
    """
    Bounded-retry connect, automatic recovery, and health for one broker.

    Usage:
        supervisor = ConnectionSupervisor(settings.broker)
        connected = await supervisor.init()     # never raises
        supervisor.current_state()              # ConnectionState snapshot
        await supervisor.health_check()         # round-trip, False unless connected
        await supervisor.close()
    """

    def __init__(self, config: BrokerConfig, connector: Optional[Connector] = None):
        self._config = config
        self._connector = connector or self._amqp_connect
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()     # health checks may read from other threads
        self._connect_lock = asyncio.Lock()
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._attempt = 0
        self._connect_count = 0
        self._last_error = ""
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_listeners: list[ReconnectListener] = []

    async def _amqp_connect(self) -> AbstractConnection:
        return await aio_pika.connect(self._config.url, timeout=self._config.connect_timeout)

    # ── State ─────────────────────────────────────────────────

    @property
    def config(self) -> BrokerConfig:
        return self._config

    def current_state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    def _set_state(self, new_state: ConnectionState) -> None:
        with self._state_lock:
            old_state, self._state = self._state, new_state
        if old_state != new_state:
            logger.info("broker_state_changed",
                        old=old_state.value, new=new_state.value)

    @property
    def is_connected(self) -> bool:
        return self.current_state() == ConnectionState.CONNECTED

    @property
    def attempt(self) -> int:
        """Attempts made in the current (or last) connect sequence."""
        return self._attempt

    @property
    def channel(self) -> Optional[AbstractChannel]:
        return self._channel if self.is_connected else None

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Run ``listener`` after every successful reconnect (not the first connect)."""
        self._reconnect_listeners.append(listener)

    # ── Connect ───────────────────────────────────────────────

    async def init(self) -> bool:
        """Connect with bounded retry. Returns whether the broker is reachable."""
        if self.is_connected:
            return True
        self._closing = False
        try:
            return await self._connect_sequence()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # _connect_sequence handles transport errors; this guards the contract
            logger.error("broker_init_error", error=str(e), exc_info=True)
            self._set_state(ConnectionState.DEGRADED)
            return False

    async def _connect_sequence(self) -> bool:
        async with self._connect_lock:
            if self.is_connected:
                return True

            self._attempt = 0
            self._set_state(ConnectionState.CONNECTING)
            max_attempts = self._config.connect_attempts
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(max_attempts),
                    wait=wait_fixed(self._config.connect_delay),
                    reraise=True,
                ):
                    with attempt:
                        await self._open()
            except asyncio.CancelledError:
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            except Exception as e:
                self._last_error = str(e)
                self._set_state(ConnectionState.DEGRADED)
                logger.error("broker_connect_exhausted",
                             attempts=self._attempt, error=str(e))
                logger.warning("broker_degraded_mode",
                               detail="service continues without messaging")
                return False

            self._attempt = 0
            self._connect_count += 1
            self._set_state(ConnectionState.CONNECTED)
            logger.info("broker_connected", connects=self._connect_count)
            return True

    async def _open(self) -> None:
        """One connection attempt: connection, channel, QoS, close hooks."""
        self._attempt += 1
        logger.info("broker_connecting",
                    attempt=self._attempt, max_attempts=self._config.connect_attempts)
        connection: Optional[AbstractConnection] = None
        try:
            connection = await self._connector()
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._config.prefetch_count)
        except Exception as e:
            self._last_error = str(e)
            logger.warning("broker_connect_failed",
                           attempt=self._attempt,
                           max_attempts=self._config.connect_attempts,
                           error=str(e))
            if connection is not None:
                await self._close_quietly(connection)
            raise

        connection.close_callbacks.add(self._on_connection_closed)
        channel.close_callbacks.add(self._on_channel_closed)
        self._connection = connection
        self._channel = channel

    # ── Asynchronous close notifications ──────────────────────

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None, *args) -> None:
        self._handle_unexpected_close("connection", exc)

    def _on_channel_closed(self, sender: Any, exc: Optional[BaseException] = None, *args) -> None:
        self._handle_unexpected_close("channel", exc)

    def _handle_unexpected_close(self, source: str, exc: Optional[BaseException]) -> None:
        if self._closing or not self.is_connected:
            return
        self._last_error = str(exc) if exc else f"{source} closed"
        logger.warning("broker_connection_lost", source=source, error=self._last_error)
        self._set_state(ConnectionState.DISCONNECTED)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await self._teardown()
        await asyncio.sleep(self._config.reconnect_cooldown)
        if self._closing:
            return
        logger.info("broker_reconnecting")
        if not await self._connect_sequence():
            return
        for listener in list(self._reconnect_listeners):
            try:
                await listener()
            except Exception as e:
                logger.error("reconnect_listener_failed", error=str(e), exc_info=True)

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> bool:
        """Declare and delete a throwaway queue. No I/O unless connected."""
        channel = self.channel
        if channel is None:
            return False
        try:
            queue = await channel.declare_queue(durable=False, exclusive=True, auto_delete=True)
            await queue.delete(if_unused=False, if_empty=False)
            return True
        except Exception as e:
            logger.warning("broker_health_check_failed", error=str(e))
            return False

    # ── Shutdown ──────────────────────────────────────────────

    async def close(self) -> None:
        """Intentional shutdown; never triggers a reconnect."""
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("broker_connection_closed")

    async def _teardown(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        if channel is not None:
            channel.close_callbacks.discard(self._on_channel_closed)
        if connection is not None:
            connection.close_callbacks.discard(self._on_connection_closed)
            await self._close_quietly(connection)

    @staticmethod
    async def _close_quietly(connection: AbstractConnection) -> None:
        if connection.is_closed:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.debug("broker_close_error", error=str(e))

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.current_state().value,
            "attempt": self._attempt,
            "max_attempts": self._config.connect_attempts,
            "connects": self._connect_count,
            "last_error": self._last_error,
        }
