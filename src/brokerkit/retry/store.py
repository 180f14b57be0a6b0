"""
Terminal failure store for work items that exhausted their retries.

Entries are keyed by work key and upserted: the retry engine records the
final failure, and the dead-letter monitor later adds the reason the
broker reported when the message reached the dead queue. Operators list
the entries and resubmit them through ``RetryEngine.resubmit``.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from brokerkit.observability import (
    ATTR_ERROR_TYPE,
    ATTR_RETRY_COUNT,
    ATTR_WORK_KEY,
    Tracer,
    create_tracer,
)


@dataclass
class FailureRecord:
    """
    A work item that failed for good.

    Attributes:
        work_key: Identifier of the logical unit of work
        payload: The decoded message payload, as last received; the body
            text when it could not be decoded
        error_message: Message of the final failure
        error_type: Exception class name of the final failure
        retry_count: Attempt count observed by the final execution
        message_id: Id of the last message carrying the work item
        dead_letter_reason: Broker-reported reason (rejected, expired, maxlen)
        death_count: Number of times the broker dead-lettered the message
        source_queue: Queue the message was dead-lettered from
        first_failed_at: When the entry was created
        last_failed_at: When the entry was last updated
        dead_lettered_at: When the dead-letter monitor saw the message
    """

    work_key: str
    payload: Any
    error_message: str
    error_type: str | None = None
    retry_count: int = 0
    message_id: str | None = None
    dead_letter_reason: str | None = None
    death_count: int = 0
    source_queue: str | None = None
    first_failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    dead_lettered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_key": self.work_key,
            "payload": self.payload,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "retry_count": self.retry_count,
            "message_id": self.message_id,
            "dead_letter_reason": self.dead_letter_reason,
            "death_count": self.death_count,
            "source_queue": self.source_queue,
            "first_failed_at": self.first_failed_at.isoformat(),
            "last_failed_at": self.last_failed_at.isoformat(),
            "dead_lettered_at": (
                self.dead_lettered_at.isoformat() if self.dead_lettered_at else None
            ),
        }


@runtime_checkable
class FailureStore(Protocol):
    """Storage for terminally failed work items."""

    async def record_failure(
        self,
        work_key: str,
        payload: Any,
        error: BaseException | str,
        retry_count: int,
        message_id: str | None = None,
    ) -> FailureRecord:
        """Insert or update the entry for a work item whose retries are exhausted."""
        ...

    async def record_dead_letter(
        self,
        work_key: str,
        payload: Any,
        reason: str | None,
        retry_count: int = 0,
        death_count: int = 0,
        source_queue: str | None = None,
        message_id: str | None = None,
    ) -> FailureRecord:
        """Insert or update the entry for a message that reached the dead queue."""
        ...

    async def get(self, work_key: str) -> FailureRecord | None: ...

    async def list_failures(self, limit: int = 100) -> list[FailureRecord]:
        """Entries, most recently failed first."""
        ...

    async def remove(self, work_key: str) -> bool: ...

    async def count(self) -> int: ...


class InMemoryFailureStore:
    """
    In-memory failure store. All data is lost when the process terminates.

    Example:
        >>> store = InMemoryFailureStore()
        >>> await store.record_failure("order-1", {"orderId": "order-1"}, "card declined", 3)
        >>> (await store.get("order-1")).retry_count
        3
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._entries: dict[str, FailureRecord] = {}
        self._lock = asyncio.Lock()

    async def record_failure(
        self,
        work_key: str,
        payload: Any,
        error: BaseException | str,
        retry_count: int,
        message_id: str | None = None,
    ) -> FailureRecord:
        error_type = None if isinstance(error, str) else type(error).__name__
        with self._tracer.span(
            "brokerkit.failures.record",
            {
                ATTR_WORK_KEY: work_key,
                ATTR_RETRY_COUNT: retry_count,
                ATTR_ERROR_TYPE: error_type or "",
            },
        ):
            now = datetime.now(UTC)
            async with self._lock:
                existing = self._entries.get(work_key)
                if existing is not None:
                    existing.payload = payload
                    existing.error_message = str(error)
                    existing.error_type = error_type
                    existing.retry_count = retry_count
                    existing.message_id = message_id or existing.message_id
                    existing.last_failed_at = now
                    return existing

                record = FailureRecord(
                    work_key=work_key,
                    payload=payload,
                    error_message=str(error),
                    error_type=error_type,
                    retry_count=retry_count,
                    message_id=message_id,
                    first_failed_at=now,
                    last_failed_at=now,
                )
                self._entries[work_key] = record
                return record

    async def record_dead_letter(
        self,
        work_key: str,
        payload: Any,
        reason: str | None,
        retry_count: int = 0,
        death_count: int = 0,
        source_queue: str | None = None,
        message_id: str | None = None,
    ) -> FailureRecord:
        with self._tracer.span(
            "brokerkit.failures.record_dead_letter",
            {ATTR_WORK_KEY: work_key, ATTR_RETRY_COUNT: retry_count},
        ):
            now = datetime.now(UTC)
            async with self._lock:
                record = self._entries.get(work_key)
                if record is None:
                    record = FailureRecord(
                        work_key=work_key,
                        payload=payload,
                        error_message=f"Dead-lettered ({reason or 'unknown reason'})",
                        retry_count=retry_count,
                        message_id=message_id,
                        first_failed_at=now,
                    )
                    self._entries[work_key] = record

                record.dead_letter_reason = reason
                record.death_count = death_count
                record.source_queue = source_queue
                record.dead_lettered_at = now
                record.last_failed_at = now
                return record

    async def get(self, work_key: str) -> FailureRecord | None:
        async with self._lock:
            return self._entries.get(work_key)

    async def list_failures(self, limit: int = 100) -> list[FailureRecord]:
        async with self._lock:
            entries = sorted(
                self._entries.values(),
                key=lambda r: r.last_failed_at,
                reverse=True,
            )
            return entries[:limit]

    async def remove(self, work_key: str) -> bool:
        with self._tracer.span("brokerkit.failures.remove", {ATTR_WORK_KEY: work_key}):
            async with self._lock:
                return self._entries.pop(work_key, None) is not None

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)

    async def clear(self) -> None:
        """Clear all entries. Useful for testing."""
        async with self._lock:
            self._entries.clear()


__all__ = ["FailureRecord", "FailureStore", "InMemoryFailureStore"]
