"""
Message publishing with broker flow-control handling.

The publisher serializes payloads to JSON, stamps default metadata and
emits them through the supervisor's channel. The channel runs with
publisher confirms, so a broker that cannot take more messages answers
with ``Basic.Nack``, which aio-pika either returns or raises as a
``DeliveryError`` depending on its version. When that happens the
publisher closes its flow gate, waits for a drain signal and re-emits the
same message (same message id) until the broker accepts it. Any other
refusal raises ``PublishError``.

Example:
    >>> publisher = Publisher(supervisor, config)
    >>> message_id = await publisher.publish(
    ...     "orders.topic",
    ...     "order.created",
    ...     {"order_id": "o-1", "total": Decimal("19.90")},
    ... )
    >>> await publisher.send_to_queue("payments.process", {"order_id": "o-1"})
"""

from __future__ import annotations

import asyncio
import logging
import random
import string
import time
from datetime import UTC, datetime
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, DateType
from aio_pika.exceptions import DeliveryError
from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode
from pamqp.commands import Basic

from brokerkit.amqp.connection import ConnectionSupervisor
from brokerkit.amqp.stats import ClientStats
from brokerkit.config import AmqpClientConfig
from brokerkit.exceptions import PublishError
from brokerkit.observability import (
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    MESSAGING_SYSTEM_RABBITMQ,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from brokerkit.serialization import JSON_CONTENT_TYPE, encode_body

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = ""
"""The nameless direct exchange every queue is bound to by its own name."""

_ID_ALPHABET = string.digits + string.ascii_lowercase
_ID_SUFFIX_LENGTH = 9


def generate_message_id(service_name: str) -> str:
    """
    Build a message id of the form ``{service}-{epoch_ms}-{suffix}``.

    The suffix is nine random base-36 characters.

    Example:
        >>> generate_message_id("payment-service")
        'payment-service-1718000000000-k3j9x0a1b'
    """
    suffix = "".join(random.choices(_ID_ALPHABET, k=_ID_SUFFIX_LENGTH))
    return f"{service_name}-{int(time.time() * 1000)}-{suffix}"


class FlowGate:
    """
    Open/closed latch that suspends publishing until the broker drains.

    The gate starts open. ``close()`` is called when the broker refuses a
    message; ``open()`` is the drain signal.
    """

    def __init__(self) -> None:
        self._open = asyncio.Event()
        self._open.set()
        self._closed_at: float | None = None
        self.pause_count = 0
        self.total_pause_time_seconds = 0.0

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def close(self) -> None:
        if self._open.is_set():
            self._open.clear()
            self._closed_at = time.monotonic()
            self.pause_count += 1

    def open(self) -> None:
        if not self._open.is_set():
            self._open.set()
            if self._closed_at is not None:
                self.total_pause_time_seconds += time.monotonic() - self._closed_at
                self._closed_at = None

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Wait until the gate opens or the timeout elapses.

        Returns:
            True if the gate is open when the call returns
        """
        if self.is_open:
            return True
        try:
            await asyncio.wait_for(self._open.wait(), timeout)
        except TimeoutError:
            return False
        return True


class Publisher:
    """
    Publishes JSON messages to exchanges and queues.

    Emissions on one publisher are serialized, so messages sent from the
    same client leave in call order even while the gate is closed.

    Args:
        supervisor: Provides the live channel
        config: Client configuration (service name, drain interval)
        stats: Shared statistics object
        tracer: Optional tracer; created from ``config.enable_tracing`` if omitted
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        config: AmqpClientConfig,
        stats: ClientStats | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._config = config
        self._stats = stats if stats is not None else supervisor.stats
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._gate = FlowGate()
        self._emit_lock = asyncio.Lock()

    @property
    def gate(self) -> FlowGate:
        return self._gate

    def generate_message_id(self) -> str:
        return generate_message_id(self._config.service_name)

    def notify_drain(self) -> None:
        """Signal that the broker can take messages again; reopens the gate."""
        if not self._gate.is_open:
            logger.info("Publisher drained, resuming publishing")
        self._gate.open()

    async def on_connected(self, channel: AbstractChannel) -> None:
        """Connected hook: a fresh channel starts with an empty outbound buffer."""
        self.notify_drain()

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message: Any,
        **options: Any,
    ) -> str:
        """
        Publish a message to an exchange.

        Args:
            exchange: Exchange name ("" for the default exchange)
            routing_key: Routing key
            message: JSON-serializable payload
            **options: Message properties, see ``build_message``

        Returns:
            The message id

        Raises:
            ChannelNotInitializedError: If not connected
            SerializationError: If the payload is not JSON-serializable
            PublishError: If the broker refuses the message other than by Nack
        """
        amqp_message = self.build_message(message, **options)
        await self._emit(exchange, routing_key, amqp_message)
        return str(amqp_message.message_id)

    async def send_to_queue(self, queue: str, message: Any, **options: Any) -> str:
        """Publish straight to a queue through the default exchange."""
        return await self.publish(DEFAULT_EXCHANGE, queue, message, **options)

    async def publish_with_headers(
        self,
        exchange: str,
        message: Any,
        headers: dict[str, Any],
        **options: Any,
    ) -> str:
        """Publish to a headers exchange: empty routing key, routing by header map."""
        merged = {**(options.pop("headers", None) or {}), **headers}
        return await self.publish(exchange, "", message, headers=merged, **options)

    def build_message(
        self,
        message: Any,
        *,
        persistent: bool = True,
        content_type: str = JSON_CONTENT_TYPE,
        content_encoding: str | None = "utf-8",
        timestamp: DateType | None = None,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
        correlation_id: str | None = None,
        expiration: DateType | None = None,
        priority: int | None = None,
        reply_to: str | None = None,
        type: str | None = None,
        app_id: str | None = None,
        user_id: str | None = None,
    ) -> Message:
        """
        Serialize a payload into an AMQP message with default metadata.

        Defaults: persistent delivery, ``application/json``, the current UTC
        time and a generated message id. Every default can be overridden.
        ``expiration`` follows aio-pika: a number of seconds, a timedelta
        or a datetime. A ``bytes`` payload is taken as an already-encoded body.
        """
        body = bytes(message) if isinstance(message, (bytes, bytearray)) else encode_body(message)
        return Message(
            body=body,
            content_type=content_type,
            content_encoding=content_encoding,
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            timestamp=timestamp if timestamp is not None else datetime.now(UTC),
            message_id=message_id or self.generate_message_id(),
            headers=dict(headers or {}),
            correlation_id=correlation_id,
            expiration=expiration,
            priority=priority,
            reply_to=reply_to,
            type=type,
            app_id=app_id,
            user_id=user_id,
        )

    async def _emit(self, exchange_name: str, routing_key: str, message: Message) -> None:
        span = None
        if self._enable_tracing:
            span = self._tracer.start_span(
                "brokerkit.publish",
                kind=SpanKindEnum.PRODUCER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                    ATTR_MESSAGING_DESTINATION: exchange_name or routing_key,
                    ATTR_MESSAGING_OPERATION: "publish",
                    ATTR_MESSAGING_ROUTING_KEY: routing_key,
                    ATTR_MESSAGING_MESSAGE_ID: str(message.message_id),
                },
            )
            if span is not None:
                carrier: dict[str, Any] = {}
                inject(carrier, context=trace.set_span_in_context(span))
                message.headers.update(carrier)

        try:
            async with self._emit_lock:
                attempts = await self._emit_until_accepted(exchange_name, routing_key, message)

            self._stats.messages_published += 1
            self._stats.last_publish_at = datetime.now(UTC)
            if span is not None:
                span.set_status(Status(StatusCode.OK))

            logger.debug(
                f"Published message {message.message_id}",
                extra={
                    "message_id": message.message_id,
                    "exchange": exchange_name,
                    "routing_key": routing_key,
                    "emissions": attempts,
                },
            )

        except Exception as e:
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)

            logger.error(
                f"Failed to publish message {message.message_id}: {e}",
                exc_info=True,
                extra={
                    "message_id": message.message_id,
                    "exchange": exchange_name,
                    "routing_key": routing_key,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise

        finally:
            if span is not None:
                span.end()

    async def _emit_until_accepted(
        self,
        exchange_name: str,
        routing_key: str,
        message: Message,
    ) -> int:
        """Emit the message, re-emitting after each drain until the broker accepts it."""
        emissions = 0
        while True:
            if not self._gate.is_open:
                self._stats.drain_waits += 1
                drained = await self._gate.wait(self._config.drain_interval)
                if not drained:
                    logger.debug(
                        "No drain signal within interval, re-emitting",
                        extra={"drain_interval": self._config.drain_interval},
                    )
                self._gate.open()

            exchange = await self._resolve_exchange(exchange_name)
            emissions += 1
            try:
                confirmation = await exchange.publish(message, routing_key=routing_key)
            except DeliveryError as e:
                if not isinstance(e.frame, Basic.Nack):
                    raise PublishError(
                        message.message_id, exchange_name, routing_key, str(e)
                    ) from e
                confirmation = e.frame

            if isinstance(confirmation, Basic.Reject):
                raise PublishError(
                    message.message_id, exchange_name, routing_key, "Basic.Reject"
                )
            if not isinstance(confirmation, Basic.Nack):
                return emissions

            self._stats.publish_nacks += 1
            self._gate.close()
            logger.warning(
                "Broker refused message, waiting for drain before re-emitting",
                extra={
                    "message_id": message.message_id,
                    "exchange": exchange_name,
                    "routing_key": routing_key,
                    "emissions": emissions,
                },
            )

    async def _resolve_exchange(self, exchange_name: str) -> AbstractExchange:
        channel = self._supervisor.require_channel("publish")
        if exchange_name == DEFAULT_EXCHANGE:
            return channel.default_exchange
        return await channel.get_exchange(exchange_name, ensure=False)


__all__ = [
    "DEFAULT_EXCHANGE",
    "FlowGate",
    "Publisher",
    "generate_message_id",
]
