"""
Connection supervisor for the AMQP client.

Owns one transport connection and a single publisher-confirm channel,
notices when either closes unexpectedly, and reconnects on a fixed delay
for as long as the client is not explicitly closed.

Reconnection is done here rather than with aio-pika's robust connection so
the client controls exactly when the channel is reopened and in which order
topology, consumers and the publisher flow gate are restored.

Example:
    >>> supervisor = ConnectionSupervisor(AmqpClientConfig(service_name="orders"))
    >>> supervisor.add_connected_hook(topology.reassert)
    >>> if not await supervisor.connect():
    ...     print("broker unavailable, retrying in the background")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection

from brokerkit.amqp.stats import ClientStats
from brokerkit.config import AmqpClientConfig
from brokerkit.exceptions import ChannelNotInitializedError

logger = logging.getLogger(__name__)

ConnectedHook = Callable[[AbstractChannel], Awaitable[None]]
"""Coroutine run with the fresh channel after every successful connect."""

CloseHook = Callable[[], Awaitable[None]]
"""Coroutine run before the channel is closed by an explicit close()."""


class ConnectionSupervisor:
    """
    Manages the connection/channel pair and its reconnect timer.

    Invariants:
        - ``is_healthy()`` turns false as soon as the connection or channel
          closes unexpectedly.
        - At most one reconnect timer is pending at any time.
        - After ``close()`` no reconnect is ever scheduled until the next
          explicit ``connect()``.

    Args:
        config: Client configuration
        stats: Shared statistics object (a private one is created if omitted)
    """

    def __init__(
        self,
        config: AmqpClientConfig,
        stats: ClientStats | None = None,
    ) -> None:
        self._config = config
        self._stats = stats if stats is not None else ClientStats()

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._healthy = False
        self._closing = False
        self._ever_connected = False
        self._last_error: BaseException | None = None

        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[bool] | None = None
        self._connect_lock = asyncio.Lock()

        self._connected_hooks: list[ConnectedHook] = []
        self._close_hooks: list[CloseHook] = []

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> AmqpClientConfig:
        return self._config

    @property
    def stats(self) -> ClientStats:
        return self._stats

    @property
    def channel(self) -> AbstractChannel | None:
        """The current channel, or None while disconnected."""
        return self._channel

    @property
    def connection(self) -> AbstractConnection | None:
        return self._connection

    @property
    def last_error(self) -> BaseException | None:
        """The error that caused the last failed connect or unexpected close."""
        return self._last_error

    @property
    def reconnect_pending(self) -> bool:
        """True while a reconnect timer is armed."""
        return self._reconnect_handle is not None

    @property
    def is_closed(self) -> bool:
        """True after an explicit close() and before the next connect()."""
        return self._closing

    def is_healthy(self) -> bool:
        """True iff the last connect succeeded and nothing has invalidated it since."""
        return self._healthy and self._channel is not None and not self._channel.is_closed

    def require_channel(self, operation: str | None = None) -> AbstractChannel:
        """
        Return the live channel.

        Raises:
            ChannelNotInitializedError: If there is no open channel
        """
        channel = self._channel
        if channel is None or channel.is_closed:
            raise ChannelNotInitializedError(operation)
        return channel

    # =========================================================================
    # Hooks
    # =========================================================================

    def add_connected_hook(self, hook: ConnectedHook) -> None:
        """Register a coroutine to run after each successful connect, in order."""
        self._connected_hooks.append(hook)

    def add_close_hook(self, hook: CloseHook) -> None:
        """Register a coroutine to run at the start of an explicit close()."""
        self._close_hooks.append(hook)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> bool:
        """
        Open the connection and channel, then run the connected hooks.

        Never raises. On failure the error is logged and recorded, a
        reconnect is scheduled and False is returned.

        Returns:
            True if the client is connected when the call returns
        """
        async with self._connect_lock:
            if self.is_healthy():
                logger.warning("Broker client already connected")
                return True

            self._closing = False
            await self._discard_transport()

            connection: AbstractConnection | None = None
            try:
                connection = await aio_pika.connect(
                    self._config.rabbitmq_url,
                    heartbeat=self._config.heartbeat,
                    timeout=self._config.connection_timeout,
                    client_properties={
                        **self._config.client_properties,
                        "connection_name": self._config.connection_name,
                    },
                )
                connection.close_callbacks.add(self._on_connection_close)

                channel = await connection.channel(
                    publisher_confirms=self._config.publisher_confirms,
                )
                channel.close_callbacks.add(self._on_channel_close)
                await channel.set_qos(prefetch_count=self._config.prefetch_count)

            except Exception as e:
                self._record_failure(e)
                logger.error(
                    f"Failed to connect to RabbitMQ: {e}",
                    exc_info=True,
                    extra={
                        "rabbitmq_url": self._config.sanitized_url,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "connect_failures": self._stats.connect_failures,
                    },
                )
                if connection is not None:
                    await self._close_quietly(connection, "connection")
                self.schedule_reconnect()
                return False

            self._connection = connection
            self._channel = channel
            self._healthy = True
            self._last_error = None
            self._stats.connected_at = datetime.now(UTC)
            if self._ever_connected:
                self._stats.reconnections += 1
            self._ever_connected = True

            logger.info(
                "Connected to RabbitMQ",
                extra={
                    "rabbitmq_url": self._config.sanitized_url,
                    "connection_name": self._config.connection_name,
                    "prefetch_count": self._config.prefetch_count,
                    "reconnections": self._stats.reconnections,
                },
            )

            try:
                for hook in self._connected_hooks:
                    await hook(channel)
            except Exception as e:
                self._record_failure(e)
                logger.error(
                    f"Failed to initialize channel after connect: {e}",
                    exc_info=True,
                    extra={
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                self._healthy = False
                await self._discard_transport()
                self.schedule_reconnect()
                return False

            return True

    async def close(self) -> None:
        """
        Close the channel and connection.

        Cancels a pending reconnect, waits for a connect() already in
        progress, runs the close hooks (consumer cancellation), then closes
        the channel before the connection. Errors are logged and never
        propagated.
        """
        self._closing = True
        self._cancel_reconnect()

        async with self._connect_lock:
            for hook in self._close_hooks:
                try:
                    await hook()
                except Exception as e:
                    logger.error(
                        f"Error in close hook: {e}",
                        exc_info=True,
                        extra={"error": str(e), "error_type": type(e).__name__},
                    )

            await self._discard_transport()
            self._stats.connected_at = None

        logger.info(
            "Disconnected from RabbitMQ",
            extra={"connection_name": self._config.connection_name},
        )

    # =========================================================================
    # Reconnection
    # =========================================================================

    def schedule_reconnect(self) -> bool:
        """
        Arm the reconnect timer unless one is already pending.

        Returns:
            True if a new timer was armed, False if one was already pending
            or the client has been closed.
        """
        if self._closing:
            return False
        if self._reconnect_handle is not None:
            logger.debug("Reconnect already scheduled")
            return False

        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(
            self._config.reconnect_delay,
            self._fire_reconnect,
        )
        logger.info(
            f"Scheduling reconnection in {self._config.reconnect_delay}s",
            extra={
                "reconnect_delay": self._config.reconnect_delay,
                "reconnect_attempts": self._stats.reconnect_attempts,
            },
        )
        return True

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._closing:
            return
        self._stats.reconnect_attempts += 1
        self._reconnect_task = asyncio.get_running_loop().create_task(self.connect())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # =========================================================================
    # Close callbacks
    # =========================================================================

    def _on_connection_close(
        self,
        connection: AbstractConnection | None,
        exception: BaseException | None,
    ) -> None:
        """Invalidate and reconnect when the current connection closes on its own."""
        if self._closing or connection is not self._connection:
            return

        self._invalidate(exception)
        logger.warning(
            f"RabbitMQ connection closed unexpectedly: {exception}",
            extra={
                "error": str(exception),
                "error_type": type(exception).__name__,
                "reconnections": self._stats.reconnections,
            },
        )
        self.schedule_reconnect()

    def _on_channel_close(
        self,
        channel: AbstractChannel | None,
        exception: BaseException | None,
    ) -> None:
        """A closed channel leaves the client unusable, so it is treated like a lost connection."""
        if self._closing or channel is not self._channel:
            return

        self._invalidate(exception)
        logger.warning(
            f"RabbitMQ channel closed: {exception}",
            extra={
                "error": str(exception),
                "error_type": type(exception).__name__,
            },
        )
        self.schedule_reconnect()

    def _invalidate(self, exception: BaseException | None) -> None:
        self._healthy = False
        self._channel = None
        self._stats.connected_at = None
        if exception is not None:
            self._last_error = exception
            self._stats.last_error_at = datetime.now(UTC)

    def _record_failure(self, error: BaseException) -> None:
        self._healthy = False
        self._last_error = error
        self._stats.connect_failures += 1
        self._stats.last_error_at = datetime.now(UTC)

    async def _discard_transport(self) -> None:
        """Close whatever channel/connection is left over, ignoring errors."""
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._healthy = False

        if channel is not None and not channel.is_closed:
            await self._close_quietly(channel, "channel")
        if connection is not None and not connection.is_closed:
            await self._close_quietly(connection, "connection")

    @staticmethod
    async def _close_quietly(resource: AbstractChannel | AbstractConnection, kind: str) -> None:
        try:
            await resource.close()
        except Exception as e:
            logger.warning(
                f"Error closing RabbitMQ {kind}: {e}",
                extra={"error": str(e), "error_type": type(e).__name__},
            )


__all__ = ["CloseHook", "ConnectedHook", "ConnectionSupervisor"]
