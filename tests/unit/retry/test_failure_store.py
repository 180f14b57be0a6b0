"""Tests for InMemoryFailureStore."""

from __future__ import annotations

import pytest

from brokerkit.observability import MockTracer
from brokerkit.retry.store import FailureRecord, FailureStore, InMemoryFailureStore


@pytest.fixture
def store() -> InMemoryFailureStore:
    return InMemoryFailureStore(enable_tracing=False)


class TestInMemoryFailureStore:
    def test_implements_protocol(self, store: InMemoryFailureStore) -> None:
        assert isinstance(store, FailureStore)

    @pytest.mark.asyncio
    async def test_record_failure_creates_entry(self, store: InMemoryFailureStore) -> None:
        record = await store.record_failure(
            "order-1",
            {"orderId": "order-1"},
            ValueError("card declined"),
            retry_count=3,
            message_id="msg-1",
        )

        assert record.work_key == "order-1"
        assert record.error_message == "card declined"
        assert record.error_type == "ValueError"
        assert record.retry_count == 3
        assert record.message_id == "msg-1"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_record_failure_accepts_string_error(self, store: InMemoryFailureStore) -> None:
        record = await store.record_failure("order-1", {}, "gateway timeout", 1)

        assert record.error_message == "gateway timeout"
        assert record.error_type is None

    @pytest.mark.asyncio
    async def test_record_failure_upserts(self, store: InMemoryFailureStore) -> None:
        first = await store.record_failure("order-1", {"v": 1}, "first", 1, message_id="msg-1")
        second = await store.record_failure("order-1", {"v": 2}, "second", 3)

        assert second is first
        assert second.payload == {"v": 2}
        assert second.error_message == "second"
        assert second.retry_count == 3
        assert second.message_id == "msg-1"
        assert second.last_failed_at >= second.first_failed_at
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_dead_letter_enriches_existing_entry(self, store: InMemoryFailureStore) -> None:
        await store.record_failure("order-1", {"orderId": "order-1"}, "card declined", 3)

        record = await store.record_dead_letter(
            "order-1",
            {"orderId": "order-1"},
            reason="rejected",
            retry_count=3,
            death_count=1,
            source_queue="payments.process",
        )

        assert record.error_message == "card declined"
        assert record.dead_letter_reason == "rejected"
        assert record.death_count == 1
        assert record.source_queue == "payments.process"
        assert record.dead_lettered_at is not None
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_dead_letter_creates_entry_when_missing(
        self,
        store: InMemoryFailureStore,
    ) -> None:
        """Messages that expired or overflowed reach the dead queue without an engine record."""
        record = await store.record_dead_letter("order-2", {"orderId": "order-2"}, reason="expired")

        assert record.error_message == "Dead-lettered (expired)"
        assert record.error_type is None
        assert (await store.get("order-2")) is record

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store: InMemoryFailureStore) -> None:
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_failures_most_recent_first(self, store: InMemoryFailureStore) -> None:
        await store.record_failure("order-1", {}, "e", 3)
        await store.record_failure("order-2", {}, "e", 3)
        await store.record_failure("order-1", {}, "again", 3)

        records = await store.list_failures()

        assert [r.work_key for r in records] == ["order-1", "order-2"]

    @pytest.mark.asyncio
    async def test_list_failures_limit(self, store: InMemoryFailureStore) -> None:
        for i in range(5):
            await store.record_failure(f"order-{i}", {}, "e", 3)

        assert len(await store.list_failures(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_remove(self, store: InMemoryFailureStore) -> None:
        await store.record_failure("order-1", {}, "e", 3)

        assert await store.remove("order-1") is True
        assert await store.remove("order-1") is False
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_clear(self, store: InMemoryFailureStore) -> None:
        await store.record_failure("order-1", {}, "e", 3)

        await store.clear()

        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_records_spans(self) -> None:
        tracer = MockTracer()
        store = InMemoryFailureStore(tracer=tracer)

        await store.record_failure("order-1", {}, "e", 3)
        await store.remove("order-1")

        assert tracer.span_names == ["brokerkit.failures.record", "brokerkit.failures.remove"]


class TestFailureRecord:
    def test_to_dict(self) -> None:
        record = FailureRecord(
            work_key="order-1",
            payload={"orderId": "order-1"},
            error_message="card declined",
            retry_count=3,
        )

        data = record.to_dict()

        assert data["work_key"] == "order-1"
        assert data["retry_count"] == 3
        assert data["dead_lettered_at"] is None
        assert isinstance(data["first_failed_at"], str)
