"""
Bounded retries for queued work, escalating to a dead-letter queue.

Each delivery from the primary queue carries its attempt count in the
``x-retry-count`` header (absent means 0). The engine runs the unit of
work and moves the item to one of three states:

- SUCCEEDED: the message is acked and a ``{prefix}.success`` event is
  published.
- RETRY_SCHEDULED: the attempt was below ``max_attempts``; a copy with the
  count incremented by one goes to the delay queue, whose TTL returns it to
  the primary queue, and the original is acked.
- DEAD: the attempt reached ``max_attempts``; the item is recorded in the
  failure store, a ``{prefix}.failed`` event is published and the message is
  rejected without requeue so the broker dead-letters it.

A body that cannot be decoded counts as a failed attempt: it is retried
with its raw bytes and, once out of attempts, recorded as text.

The count is only ever lowered by ``resubmit()``, which resets it to 0.

Example:
    >>> engine = RetryEngine(client, process_payment, RetryPolicy(max_attempts=3))
    >>> await engine.declare_topology()
    >>> await engine.start()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from aio_pika import ExchangeType

from brokerkit.amqp.client import BrokerClient
from brokerkit.amqp.consumer import RETRY_COUNT_HEADER, Delivery, RequeuePolicy, UndecodableBody
from brokerkit.amqp.topology import QueueDeclaration
from brokerkit.exceptions import DeadLetterError, WorkNotFoundError
from brokerkit.observability import (
    ATTR_ERROR_TYPE,
    ATTR_QUEUE_NAME,
    ATTR_RETRY_COUNT,
    ATTR_WORK_KEY,
    ATTR_WORK_STATE,
    Tracer,
    create_tracer,
)
from brokerkit.retry.dead_letter import DeadLetterMonitor
from brokerkit.retry.store import FailureStore, InMemoryFailureStore
from brokerkit.retry.topology import build_retry_topology
from brokerkit.settings import AppSettings

logger = logging.getLogger(__name__)

_DEATH_HEADERS = (
    "x-death",
    "x-first-death-queue",
    "x-first-death-reason",
    "x-first-death-exchange",
    "x-last-death-queue",
    "x-last-death-reason",
    "x-last-death-exchange",
)

WorkFunc = Callable[[Any, Delivery], Awaitable[Any]]
"""The unit of work: ``async (payload, delivery) -> result``; raising means failure."""

SuccessHook = Callable[[Any, Any, Delivery], Awaitable[None]]
"""Called as ``on_success(payload, result, delivery)`` after a successful attempt."""

KeyFunc = Callable[[Any, Delivery], str]


class WorkState(Enum):
    """Lifecycle of one unit of work within a single delivery."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry bounds and the names of the queues involved.

    Attributes:
        max_attempts: Failures at an attempt count below this are retried;
            a failure at this count is terminal. With the default of 3 an
            item runs at most four times (attempts 0 to 3).
        primary_queue: Queue the work is consumed from
        delay_queue: TTL queue holding items between attempts
        dead_queue: Terminal queue for exhausted items
        dead_letter_exchange: Exchange the primary queue dead-letters to
        dead_letter_routing_key: Routing key of dead-lettered messages
        retry_delay_ms: Time an item waits in the delay queue
        message_ttl_ms: Optional TTL of messages waiting on the primary queue
        event_exchange: Exchange outcome events are published to (None disables them)
        event_exchange_type: Type used when declaring ``event_exchange``
        event_routing_key: Routing key of outcome events
        event_prefix: Outcome events are ``{prefix}.success`` / ``{prefix}.failed``
        key_field: Payload field holding the work key
    """

    max_attempts: int = 3
    primary_queue: str = "payments.process"
    delay_queue: str = "payments.retry"
    dead_queue: str = "payments.dead"
    dead_letter_exchange: str = "payments.dlx"
    dead_letter_routing_key: str = "payment.failed"
    retry_delay_ms: int = 5000
    message_ttl_ms: int | None = None
    event_exchange: str | None = "orders.fanout"
    event_exchange_type: ExchangeType = ExchangeType.FANOUT
    event_routing_key: str = ""
    event_prefix: str = "payment"
    key_field: str = "orderId"

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {self.retry_delay_ms}")

    @classmethod
    def from_settings(cls, settings: AppSettings, **overrides: Any) -> RetryPolicy:
        """Build the payment retry policy from environment settings."""
        values: dict[str, Any] = {
            "max_attempts": settings.retry.max_retry_attempts,
            "retry_delay_ms": settings.retry.retry_delay_ms,
            "message_ttl_ms": settings.retry.message_ttl_ms,
            "primary_queue": settings.queues.payments_process,
            "delay_queue": settings.queues.payments_retry,
            "dead_queue": settings.queues.payments_dead,
            "dead_letter_exchange": settings.exchanges.payments_dlx,
            "dead_letter_routing_key": settings.routing_keys.payment_failed,
            "event_exchange": settings.exchanges.orders_fanout,
        }
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class WorkOutcome:
    """Result of processing one delivery."""

    work_key: str
    state: WorkState
    attempt: int
    result: Any = None
    error: BaseException | None = None


@dataclass
class RetryStats:
    succeeded: int = 0
    retries_scheduled: int = 0
    dead: int = 0
    resubmitted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "succeeded": self.succeeded,
            "retries_scheduled": self.retries_scheduled,
            "dead": self.dead,
            "resubmitted": self.resubmitted,
        }


def attempt_of(delivery: Delivery) -> int:
    """Attempt count carried by a delivery (0 when the header is absent)."""
    return delivery.retry_count


class RetryEngine:
    """
    Runs a unit of work per delivery with bounded, delayed retries.

    Args:
        client: Connected (or connecting) broker client
        work: The unit of work
        policy: Retry bounds and queue names
        store: Terminal failure store (in-memory by default)
        on_success: Optional hook run after a successful attempt
        key_func: Extracts the work key; defaults to ``payload[policy.key_field]``
            falling back to the message id
        tracer: Optional tracer
    """

    def __init__(
        self,
        client: BrokerClient,
        work: WorkFunc,
        policy: RetryPolicy | None = None,
        *,
        store: FailureStore | None = None,
        on_success: SuccessHook | None = None,
        key_func: KeyFunc | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._client = client
        self._work = work
        self._policy = policy or RetryPolicy()
        self._store: FailureStore = store if store is not None else InMemoryFailureStore()
        self._on_success = on_success
        self._key_func = key_func or self._default_key
        self._tracer = tracer or create_tracer(__name__, client.config.enable_tracing)
        self._stats = RetryStats()
        self._monitor: DeadLetterMonitor | None = None

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def store(self) -> FailureStore:
        return self._store

    @property
    def stats(self) -> RetryStats:
        return self._stats

    def work_key_of(self, payload: Any, delivery: Delivery) -> str:
        """Work key of a delivery; undecodable bodies are keyed by message id."""
        if isinstance(payload, UndecodableBody):
            return delivery.message_id or "unknown"
        return self._key_func(payload, delivery)

    def _default_key(self, payload: Any, delivery: Delivery) -> str:
        if isinstance(payload, dict) and payload.get(self._policy.key_field) is not None:
            return str(payload[self._policy.key_field])
        return delivery.message_id or "unknown"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def declare_topology(self) -> dict[str, QueueDeclaration]:
        """Assert the primary, delay and dead queues and the exchanges they use."""
        return await self._client.declare_topology(build_retry_topology(self._policy))

    async def start(self, *, monitor_dead_letters: bool = True) -> str:
        """
        Consume the primary queue and, optionally, monitor the dead queue.

        Returns:
            Consumer tag of the primary queue consumer
        """
        consumer_tag = await self._client.consume(
            self._policy.primary_queue,
            self.handle,
            requeue_policy=RequeuePolicy.NEVER,
            pass_undecodable=True,
        )
        if monitor_dead_letters:
            self._monitor = DeadLetterMonitor(
                self._client,
                self._store,
                self._policy.dead_queue,
                self.work_key_of,
            )
            await self._monitor.start()

        logger.info(
            f"Retry engine consuming {self._policy.primary_queue}",
            extra={
                "queue_name": self._policy.primary_queue,
                "max_attempts": self._policy.max_attempts,
                "retry_delay_ms": self._policy.retry_delay_ms,
                "dead_queue": self._policy.dead_queue,
            },
        )
        return consumer_tag

    async def stop(self, drain_timeout: float | None = None) -> None:
        await self._client.cancel_consumer(self._policy.primary_queue, drain_timeout=drain_timeout)
        if self._monitor is not None:
            await self._monitor.stop(drain_timeout)
            self._monitor = None

    # =========================================================================
    # Processing
    # =========================================================================

    async def handle(self, payload: Any, delivery: Delivery) -> WorkOutcome:
        """
        Consumer handler for the primary queue.

        Returns normally for SUCCEEDED and RETRY_SCHEDULED, so the delivery is
        acked, and raises ``DeadLetterError`` for DEAD, so it is rejected
        without requeue.
        """
        outcome = await self.process(payload, delivery)
        if outcome.state is WorkState.DEAD:
            raise DeadLetterError(outcome.work_key, outcome.attempt, outcome.error) from outcome.error
        return outcome

    async def process(self, payload: Any, delivery: Delivery) -> WorkOutcome:
        """Run the unit of work once and apply the retry policy to its outcome."""
        attempt = attempt_of(delivery)
        work_key = self.work_key_of(payload, delivery)

        with self._tracer.span(
            "brokerkit.retry.process",
            {
                ATTR_WORK_KEY: work_key,
                ATTR_RETRY_COUNT: attempt,
                ATTR_QUEUE_NAME: delivery.queue,
            },
        ) as span:
            logger.info(
                f"Processing work item {work_key} (attempt {attempt})",
                extra={
                    "work_key": work_key,
                    "message_id": delivery.message_id,
                    "retry_count": attempt,
                    "state": WorkState.PROCESSING.value,
                },
            )

            try:
                if isinstance(payload, UndecodableBody):
                    raise payload.error
                result = await self._work(payload, delivery)
            except Exception as e:
                if span is not None:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                logger.error(
                    f"Work item {work_key} failed: {e}",
                    extra={
                        "work_key": work_key,
                        "message_id": delivery.message_id,
                        "retry_count": attempt,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                if attempt < self._policy.max_attempts:
                    outcome = await self._schedule_retry(payload, delivery, work_key, attempt, e)
                else:
                    outcome = await self._dead_letter(payload, delivery, work_key, attempt, e)
            else:
                outcome = await self._succeed(payload, delivery, work_key, attempt, result)

            if span is not None:
                span.set_attribute(ATTR_WORK_STATE, outcome.state.value)
            return outcome

    async def _succeed(
        self,
        payload: Any,
        delivery: Delivery,
        work_key: str,
        attempt: int,
        result: Any,
    ) -> WorkOutcome:
        self._stats.succeeded += 1
        logger.info(
            f"Work item {work_key} succeeded",
            extra={"work_key": work_key, "retry_count": attempt},
        )

        event = dict(result) if isinstance(result, dict) else {}
        event.update(
            {
                "eventType": f"{self._policy.event_prefix}.success",
                self._policy.key_field: work_key,
                "retryCount": attempt,
            }
        )
        await self._publish_event(event, work_key)

        if self._on_success is not None:
            try:
                await self._on_success(payload, result, delivery)
            except Exception as e:
                logger.error(
                    f"on_success hook failed for {work_key}: {e}",
                    exc_info=True,
                    extra={
                        "work_key": work_key,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

        return WorkOutcome(work_key, WorkState.SUCCEEDED, attempt, result=result)

    async def _schedule_retry(
        self,
        payload: Any,
        delivery: Delivery,
        work_key: str,
        attempt: int,
        error: Exception,
    ) -> WorkOutcome:
        headers = {k: v for k, v in delivery.headers.items() if k not in _DEATH_HEADERS}
        headers[RETRY_COUNT_HEADER] = attempt + 1
        headers["x-last-retry-at"] = datetime.now(UTC).isoformat()

        body = payload
        options: dict[str, Any] = {}
        if isinstance(payload, UndecodableBody):
            body = payload.body
            if delivery.content_type:
                options["content_type"] = delivery.content_type

        await self._client.send_to_queue(
            self._policy.delay_queue,
            body,
            headers=headers,
            message_id=delivery.message_id,
            correlation_id=delivery.correlation_id,
            **options,
        )
        self._stats.retries_scheduled += 1

        logger.info(
            f"Scheduled retry {attempt + 1}/{self._policy.max_attempts} for {work_key}",
            extra={
                "work_key": work_key,
                "retry_count": attempt + 1,
                "max_attempts": self._policy.max_attempts,
                "delay_queue": self._policy.delay_queue,
                "retry_delay_ms": self._policy.retry_delay_ms,
            },
        )
        return WorkOutcome(work_key, WorkState.RETRY_SCHEDULED, attempt, error=error)

    async def _dead_letter(
        self,
        payload: Any,
        delivery: Delivery,
        work_key: str,
        attempt: int,
        error: Exception,
    ) -> WorkOutcome:
        await self._store.record_failure(
            work_key,
            payload.text if isinstance(payload, UndecodableBody) else payload,
            error,
            retry_count=attempt,
            message_id=delivery.message_id,
        )
        self._stats.dead += 1

        logger.error(
            f"Work item {work_key} failed after max retries",
            extra={
                "work_key": work_key,
                "retry_count": attempt,
                "error": str(error),
                "error_type": type(error).__name__,
                "dead_queue": self._policy.dead_queue,
            },
        )

        await self._publish_event(
            {
                "eventType": f"{self._policy.event_prefix}.failed",
                self._policy.key_field: work_key,
                "error": str(error),
                "retryCount": attempt,
            },
            work_key,
        )
        return WorkOutcome(work_key, WorkState.DEAD, attempt, error=error)

    async def _publish_event(self, event: dict[str, Any], work_key: str) -> None:
        """Outcome events are notifications; failing to send one does not change the outcome."""
        if not self._policy.event_exchange:
            return
        event["timestamp"] = datetime.now(UTC).isoformat()
        try:
            await self._client.publish(
                self._policy.event_exchange,
                self._policy.event_routing_key,
                event,
            )
        except Exception as e:
            logger.error(
                f"Failed to publish {event['eventType']} event for {work_key}: {e}",
                exc_info=True,
                extra={
                    "work_key": work_key,
                    "exchange": self._policy.event_exchange,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    # =========================================================================
    # Manual intervention
    # =========================================================================

    async def resubmit(self, work_key: str) -> str:
        """
        Send a stored failure back to the primary queue with the count reset to 0.

        Returns:
            Message id of the resubmitted message

        Raises:
            WorkNotFoundError: If the store has no entry for ``work_key``
        """
        record = await self._store.get(work_key)
        if record is None:
            raise WorkNotFoundError(work_key)

        message_id = await self._client.send_to_queue(
            self._policy.primary_queue,
            record.payload,
            headers={RETRY_COUNT_HEADER: 0},
        )
        await self._store.remove(work_key)
        self._stats.resubmitted += 1

        logger.info(
            f"Manual retry requested for {work_key}",
            extra={
                "work_key": work_key,
                "message_id": message_id,
                "previous_retry_count": record.retry_count,
            },
        )
        return message_id


__all__ = [
    "KeyFunc",
    "RetryEngine",
    "RetryPolicy",
    "RetryStats",
    "SuccessHook",
    "WorkFunc",
    "WorkOutcome",
    "WorkState",
    "attempt_of",
]
