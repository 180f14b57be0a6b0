"""
Dead-letter header inspection and the dead queue monitor.

RabbitMQ stamps dead-lettered messages with an ``x-death`` list and the
``x-first-death-queue``, ``x-first-death-reason`` and
``x-first-death-exchange`` headers. The helpers below read them from a
header map; ``DeadLetterMonitor`` consumes the dead queue and records
what it finds in the failure store for manual intervention.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from brokerkit.amqp.client import BrokerClient
from brokerkit.amqp.consumer import Delivery, RequeuePolicy, UndecodableBody
from brokerkit.retry.store import FailureStore

logger = logging.getLogger(__name__)


def get_death_count(headers: dict[str, Any] | None) -> int:
    """Total dead-letter count across all ``x-death`` records (0 if never dead-lettered)."""
    x_death = (headers or {}).get("x-death")
    if not x_death or not isinstance(x_death, list):
        return 0

    total_count = 0
    for death_record in x_death:
        if isinstance(death_record, dict):
            count = death_record.get("count", 0)
            if isinstance(count, int):
                total_count += count
    return total_count


def _header_str(headers: dict[str, Any] | None, name: str) -> str | None:
    value = (headers or {}).get(name)
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def get_first_death_reason(headers: dict[str, Any] | None) -> str | None:
    """
    Why the message was first dead-lettered.

    Common reasons: ``rejected`` (consumer rejected without requeue),
    ``expired`` (TTL) and ``maxlen`` (queue length limit).
    """
    return _header_str(headers, "x-first-death-reason")


def get_first_death_queue(headers: dict[str, Any] | None) -> str | None:
    return _header_str(headers, "x-first-death-queue")


def get_first_death_exchange(headers: dict[str, Any] | None) -> str | None:
    return _header_str(headers, "x-first-death-exchange")


def get_original_routing_key(headers: dict[str, Any] | None) -> str | None:
    """Routing key recorded in the first ``x-death`` record."""
    x_death = (headers or {}).get("x-death")
    if not x_death or not isinstance(x_death, list):
        return None

    if isinstance(x_death[0], dict):
        routing_keys = x_death[0].get("routing-keys")
        if routing_keys and isinstance(routing_keys, list):
            return str(routing_keys[0])
    return None


def is_dead_lettered(headers: dict[str, Any] | None) -> bool:
    x_death = (headers or {}).get("x-death")
    return isinstance(x_death, list) and len(x_death) > 0


def get_death_info(headers: dict[str, Any] | None) -> dict[str, Any]:
    """All dead-letter headers in one dictionary, for logging."""
    return {
        "is_dead_lettered": is_dead_lettered(headers),
        "death_count": get_death_count(headers),
        "first_death_queue": get_first_death_queue(headers),
        "first_death_reason": get_first_death_reason(headers),
        "first_death_exchange": get_first_death_exchange(headers),
        "original_routing_key": get_original_routing_key(headers),
    }


class DeadLetterMonitor:
    """
    Consumes a dead queue and upserts every message into the failure store.

    Messages are acked once recorded. Bodies that cannot be decoded are
    recorded as text. The dead queue has no dead-letter target of its own,
    so a store failure requeues the message rather than discarding it.

    Args:
        client: Broker client used to consume
        store: Failure store to record into
        queue: Dead queue name
        key_func: Extracts the work key from a payload and its delivery
    """

    def __init__(
        self,
        client: BrokerClient,
        store: FailureStore,
        queue: str,
        key_func: Callable[[Any, Delivery], str],
    ) -> None:
        self._client = client
        self._store = store
        self._queue = queue
        self._key_func = key_func
        self._consumer_tag: str | None = None
        self.recorded = 0

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def is_running(self) -> bool:
        return self._consumer_tag is not None

    async def start(self) -> str:
        self._consumer_tag = await self._client.consume(
            self._queue,
            self.handle,
            requeue_policy=RequeuePolicy.ALWAYS,
            pass_undecodable=True,
        )
        return self._consumer_tag

    async def stop(self, drain_timeout: float | None = None) -> None:
        await self._client.cancel_consumer(self._queue, drain_timeout=drain_timeout)
        self._consumer_tag = None

    async def handle(self, payload: Any, delivery: Delivery) -> None:
        headers = delivery.headers
        if isinstance(payload, UndecodableBody):
            work_key = delivery.message_id or "unknown"
            payload = payload.text
        else:
            work_key = self._key_func(payload, delivery)
        reason = get_first_death_reason(headers)

        await self._store.record_dead_letter(
            work_key,
            payload,
            reason=reason,
            retry_count=delivery.retry_count,
            death_count=get_death_count(headers),
            source_queue=get_first_death_queue(headers),
            message_id=delivery.message_id,
        )
        self.recorded += 1

        logger.error(
            f"Work item {work_key} reached dead queue {self._queue}",
            extra={
                "work_key": work_key,
                "message_id": delivery.message_id,
                "queue_name": self._queue,
                **get_death_info(headers),
            },
        )
        logger.warning(
            "Manual intervention required",
            extra={"work_key": work_key, "failed_count": await self._store.count()},
        )


__all__ = [
    "DeadLetterMonitor",
    "get_death_count",
    "get_death_info",
    "get_first_death_exchange",
    "get_first_death_queue",
    "get_first_death_reason",
    "get_original_routing_key",
    "is_dead_lettered",
]
