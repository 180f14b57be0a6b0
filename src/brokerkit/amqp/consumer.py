"""
Queue consumers with acknowledge/reject handling.

The registry subscribes one handler per queue, decodes each delivery's
JSON body and settles the message according to the handler's outcome:

- Success: ack (nothing with ``no_ack=True``)
- Failure: reject. Under the default two-strikes policy a first delivery
  is requeued and a redelivery is rejected for good, which routes it to
  the queue's dead-letter exchange when one is configured.

Handler invocations run as tasks tracked per registration so cancellation
can wait for them, and so registrations can be replayed on a new channel
after a reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from opentelemetry.propagate import extract
from opentelemetry.trace import Status, StatusCode

from brokerkit.amqp.connection import ConnectionSupervisor
from brokerkit.amqp.stats import ClientStats
from brokerkit.exceptions import ConsumerAlreadyRegisteredError, SerializationError
from brokerkit.observability import (
    ATTR_HANDLER_SUCCESS,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_REDELIVERED,
    ATTR_RETRY_COUNT,
    MESSAGING_SYSTEM_RABBITMQ,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from brokerkit.serialization import decode_body

logger = logging.getLogger(__name__)

RETRY_COUNT_HEADER = "x-retry-count"


def retry_count_from_headers(headers: dict[str, Any] | None) -> int:
    """
    Read the attempt count carried in ``x-retry-count``.

    A missing header means 0. Header values may arrive as strings or
    other numeric types and are coerced; unreadable values count as 0.
    """
    value = (headers or {}).get(RETRY_COUNT_HEADER)
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
    try:
        return int(float(str(value)))
    except ValueError:
        logger.warning(
            f"Ignoring unreadable {RETRY_COUNT_HEADER} header: {value!r}",
            extra={"header_value": repr(value)},
        )
        return 0


class RequeuePolicy(Enum):
    """
    What a rejection asks the broker to do with a failed delivery.

    Values:
        REDELIVERED_ONCE: Requeue a first delivery; reject a redelivery
            without requeue (two strikes, then dead-letter)
        NEVER: Always reject without requeue
        ALWAYS: Always requeue; for terminal queues with no dead-letter
            target, where a reject would discard the message
    """

    REDELIVERED_ONCE = "redelivered_once"
    NEVER = "never"
    ALWAYS = "always"

    def should_requeue(self, redelivered: bool) -> bool:
        if self is RequeuePolicy.NEVER:
            return False
        if self is RequeuePolicy.ALWAYS:
            return True
        return not redelivered


@dataclass(frozen=True)
class UndecodableBody:
    """
    Payload handed to handlers registered with ``pass_undecodable=True``
    when the body could not be decoded.

    Attributes:
        body: The raw message body
        error: The decoding failure
    """

    body: bytes
    error: SerializationError

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", "replace")


@dataclass(frozen=True)
class Delivery:
    """
    Metadata of a delivered message, passed to handlers alongside the payload.

    Attributes:
        queue: Queue the message was consumed from
        headers: Message headers (empty dict if none)
        redelivered: Broker redelivery flag
        delivery_tag: Channel-scoped delivery tag
        message_id: Publisher-assigned message id
        routing_key: Routing key the message was published with
        exchange: Exchange the message was published to
        content_type: Declared content type of the body
        correlation_id: Correlation id, if any
        timestamp: Publisher timestamp, if any
        raw: The underlying aio-pika message
    """

    queue: str
    headers: dict[str, Any]
    redelivered: bool
    delivery_tag: int | None = None
    message_id: str | None = None
    routing_key: str | None = None
    exchange: str | None = None
    content_type: str | None = None
    correlation_id: str | None = None
    timestamp: datetime | None = None
    raw: AbstractIncomingMessage | None = field(default=None, repr=False, compare=False)

    @property
    def retry_count(self) -> int:
        return retry_count_from_headers(self.headers)

    @classmethod
    def from_message(cls, queue: str, message: AbstractIncomingMessage) -> Delivery:
        return cls(
            queue=queue,
            headers=dict(message.headers or {}),
            redelivered=bool(message.redelivered),
            delivery_tag=message.delivery_tag,
            message_id=message.message_id,
            routing_key=message.routing_key,
            exchange=message.exchange,
            content_type=message.content_type,
            correlation_id=message.correlation_id,
            timestamp=message.timestamp,
            raw=message,
        )


MessageHandler = Callable[[Any, Delivery], Awaitable[Any]]
"""Handler signature: ``async def handle(payload, delivery) -> None``."""


@dataclass
class ConsumerRegistration:
    """An active subscription of a handler to a queue."""

    queue: str
    handler: MessageHandler
    no_ack: bool = False
    requeue_policy: RequeuePolicy = RequeuePolicy.REDELIVERED_ONCE
    pass_undecodable: bool = False
    consumer_tag: str | None = None
    in_flight: set[asyncio.Task[None]] = field(default_factory=set)
    amqp_queue: AbstractQueue | None = field(default=None, repr=False)


class ConsumerRegistry:
    """
    Tracks one consumer per queue and settles their deliveries.

    Args:
        supervisor: Provides the live channel
        stats: Shared statistics object
        tracer: Optional tracer; created from ``enable_tracing`` if omitted
        enable_tracing: Whether to create OpenTelemetry spans
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        stats: ClientStats | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._supervisor = supervisor
        self._stats = stats if stats is not None else supervisor.stats
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._registrations: dict[str, ConsumerRegistration] = {}

    @property
    def consumers(self) -> dict[str, str | None]:
        """Active consumers as queue name -> consumer tag."""
        return {queue: reg.consumer_tag for queue, reg in self._registrations.items()}

    def get_registration(self, queue: str) -> ConsumerRegistration | None:
        return self._registrations.get(queue)

    def in_flight_count(self) -> int:
        return sum(len(reg.in_flight) for reg in self._registrations.values())

    # =========================================================================
    # Registration
    # =========================================================================

    async def consume(
        self,
        queue: str,
        handler: MessageHandler,
        *,
        no_ack: bool = False,
        requeue_policy: RequeuePolicy = RequeuePolicy.REDELIVERED_ONCE,
        pass_undecodable: bool = False,
    ) -> str:
        """
        Subscribe a handler to a queue.

        Args:
            queue: Name of an already-asserted queue
            handler: ``async (payload, delivery)`` callable
            no_ack: Let the broker consider messages settled on delivery
            requeue_policy: How failed deliveries are rejected
            pass_undecodable: Hand bodies that fail to decode to the handler as
                ``UndecodableBody`` instead of rejecting them

        Returns:
            The broker-assigned consumer tag

        Raises:
            ChannelNotInitializedError: If not connected
            ConsumerAlreadyRegisteredError: If the queue already has a consumer
        """
        existing = self._registrations.get(queue)
        if existing is not None:
            raise ConsumerAlreadyRegisteredError(queue, existing.consumer_tag)

        channel = self._supervisor.require_channel("consume")
        registration = ConsumerRegistration(
            queue=queue,
            handler=handler,
            no_ack=no_ack,
            requeue_policy=requeue_policy,
            pass_undecodable=pass_undecodable,
        )
        consumer_tag = await self._start(channel, registration)
        self._registrations[queue] = registration

        logger.info(
            f"Started consuming from queue {queue}",
            extra={
                "queue_name": queue,
                "consumer_tag": consumer_tag,
                "no_ack": no_ack,
                "requeue_policy": requeue_policy.value,
            },
        )
        return consumer_tag

    async def cancel_consumer(self, queue: str, *, drain_timeout: float | None = None) -> bool:
        """
        Cancel the consumer of a queue and forget its registration.

        Args:
            queue: Queue name
            drain_timeout: Seconds to wait for in-flight handlers; the ones
                still running afterwards are cancelled. None means do not
                wait and let them finish on their own.

        Returns:
            True if a consumer was cancelled, False if the queue had none
        """
        registration = self._registrations.pop(queue, None)
        if registration is None:
            return False

        channel = self._supervisor.channel
        if (
            registration.amqp_queue is not None
            and registration.consumer_tag is not None
            and channel is not None
            and not channel.is_closed
        ):
            try:
                await registration.amqp_queue.cancel(registration.consumer_tag)
            except Exception as e:
                logger.warning(
                    f"Error cancelling consumer on {queue}: {e}",
                    extra={
                        "queue_name": queue,
                        "consumer_tag": registration.consumer_tag,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

        abandoned = 0
        if drain_timeout is not None and registration.in_flight:
            _, pending = await asyncio.wait(set(registration.in_flight), timeout=drain_timeout)
            for task in pending:
                task.cancel()
            abandoned = len(pending)
            if abandoned:
                logger.warning(
                    f"Abandoned {abandoned} in-flight handler(s) on {queue}",
                    extra={"queue_name": queue, "drain_timeout": drain_timeout},
                )

        logger.info(
            f"Cancelled consumer on queue {queue}",
            extra={
                "queue_name": queue,
                "consumer_tag": registration.consumer_tag,
                "abandoned": abandoned,
            },
        )
        return True

    async def cancel_all(self, drain_timeout: float | None = None) -> None:
        for queue in list(self._registrations):
            await self.cancel_consumer(queue, drain_timeout=drain_timeout)

    async def restore(self, channel: AbstractChannel | None = None) -> None:
        """
        Re-register every remembered consumer on the current channel.

        Registered as a connected hook by the broker client; consumer tags
        from the lost channel are replaced by new ones.
        """
        if not self._registrations:
            return
        if channel is None:
            channel = self._supervisor.require_channel("restore")

        for registration in list(self._registrations.values()):
            previous_tag = registration.consumer_tag
            await self._start(channel, registration)
            logger.info(
                f"Restored consumer on queue {registration.queue}",
                extra={
                    "queue_name": registration.queue,
                    "previous_consumer_tag": previous_tag,
                    "consumer_tag": registration.consumer_tag,
                },
            )

    async def _start(self, channel: AbstractChannel, registration: ConsumerRegistration) -> str:
        amqp_queue = await channel.get_queue(registration.queue, ensure=False)
        consumer_tag = await amqp_queue.consume(
            partial(self._on_message, registration),
            no_ack=registration.no_ack,
        )
        registration.amqp_queue = amqp_queue
        registration.consumer_tag = consumer_tag
        return consumer_tag

    # =========================================================================
    # Delivery handling
    # =========================================================================

    async def _on_message(
        self,
        registration: ConsumerRegistration,
        message: AbstractIncomingMessage | None,
    ) -> None:
        if message is None:
            self._stats.null_deliveries += 1
            logger.warning(
                f"Consumer on queue {registration.queue} was cancelled by the broker",
                extra={
                    "queue_name": registration.queue,
                    "consumer_tag": registration.consumer_tag,
                },
            )
            return

        task = asyncio.ensure_future(self._handle(registration, message))
        registration.in_flight.add(task)
        task.add_done_callback(registration.in_flight.discard)
        await asyncio.wait({task})

    async def _handle(
        self,
        registration: ConsumerRegistration,
        message: AbstractIncomingMessage,
    ) -> None:
        delivery = Delivery.from_message(registration.queue, message)
        retry_count = delivery.retry_count
        self._stats.messages_consumed += 1
        self._stats.last_consume_at = datetime.now(UTC)

        span = None
        if self._enable_tracing:
            span = self._tracer.start_span(
                "brokerkit.consume",
                kind=SpanKindEnum.CONSUMER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                    ATTR_MESSAGING_DESTINATION: registration.queue,
                    ATTR_MESSAGING_OPERATION: "process",
                    ATTR_MESSAGING_MESSAGE_ID: delivery.message_id or "",
                    ATTR_MESSAGING_ROUTING_KEY: delivery.routing_key or "",
                    ATTR_REDELIVERED: delivery.redelivered,
                    ATTR_RETRY_COUNT: retry_count,
                },
                context=extract(delivery.headers),
            )

        try:
            try:
                payload = decode_body(message.body, message.content_type)
            except SerializationError as e:
                if not registration.pass_undecodable:
                    raise
                payload = UndecodableBody(message.body, e)
            await registration.handler(payload, delivery)

        except Exception as e:
            self._stats.handler_errors += 1
            self._stats.last_error_at = datetime.now(UTC)
            requeue = registration.requeue_policy.should_requeue(delivery.redelivered)

            if span is not None:
                span.set_attribute(ATTR_HANDLER_SUCCESS, False)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)

            logger.error(
                f"Handler failed for message on {registration.queue}: {e}",
                exc_info=True,
                extra={
                    "queue_name": registration.queue,
                    "message_id": delivery.message_id,
                    "retry_count": retry_count,
                    "redelivered": delivery.redelivered,
                    "requeue": requeue and not registration.no_ack,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            if not registration.no_ack:
                await self._reject(registration.queue, message, requeue)

        else:
            if span is not None:
                span.set_attribute(ATTR_HANDLER_SUCCESS, True)
                span.set_status(Status(StatusCode.OK))
            if not registration.no_ack:
                await self._ack(registration.queue, message)

        finally:
            if span is not None:
                span.end()

    async def _ack(self, queue: str, message: AbstractIncomingMessage) -> None:
        try:
            await message.ack()
        except Exception as e:
            logger.warning(
                f"Could not ack message on {queue}: {e}",
                extra={
                    "queue_name": queue,
                    "message_id": message.message_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return
        self._stats.messages_acked += 1

    async def _reject(self, queue: str, message: AbstractIncomingMessage, requeue: bool) -> None:
        try:
            await message.reject(requeue=requeue)
        except Exception as e:
            logger.warning(
                f"Could not reject message on {queue}: {e}",
                extra={
                    "queue_name": queue,
                    "message_id": message.message_id,
                    "requeue": requeue,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return
        self._stats.messages_rejected += 1
        if requeue:
            self._stats.messages_requeued += 1


__all__ = [
    "ConsumerRegistration",
    "ConsumerRegistry",
    "Delivery",
    "MessageHandler",
    "RETRY_COUNT_HEADER",
    "RequeuePolicy",
    "UndecodableBody",
    "retry_count_from_headers",
]
