"""
Unit tests for the Publisher and FlowGate.

Tests for:
- Message id format
- Default and overridden message properties
- Default exchange and headers exchange publishing
- Flow control: suspension on Basic.Nack, drain signal, re-emit interval
- Ordering of publishes while suspended
"""

from __future__ import annotations

import asyncio
import re
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import UUID

import pytest
from aio_pika import DeliveryMode
from aio_pika.exceptions import DeliveryError
from pamqp.commands import Basic

from brokerkit.amqp.connection import ConnectionSupervisor
from brokerkit.amqp.publisher import FlowGate, Publisher, generate_message_id
from brokerkit.config import AmqpClientConfig
from brokerkit.exceptions import ChannelNotInitializedError, PublishError, SerializationError
from brokerkit.observability import MockTracer, SpanKindEnum
from brokerkit.serialization import json_loads


@pytest.fixture
def publisher(supervisor: ConnectionSupervisor, client_config: AmqpClientConfig) -> Publisher:
    return Publisher(supervisor, client_config)


@pytest.fixture
def slow_reemit_publisher(mock_channel: AsyncMock, attach_channel) -> Publisher:
    """A publisher whose re-emit interval is long enough that only notify_drain resumes it."""
    config = AmqpClientConfig(service_name="test-service", drain_interval=30.0, enable_tracing=False)
    supervisor = attach_channel(ConnectionSupervisor(config), mock_channel)
    return Publisher(supervisor, config)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


class TestMessageId:
    def test_format(self) -> None:
        message_id = generate_message_id("test-service")

        assert re.fullmatch(r"test-service-\d{13}-[0-9a-z]{9}", message_id)

    def test_ids_are_unique(self) -> None:
        ids = {generate_message_id("svc") for _ in range(200)}

        assert len(ids) == 200

    def test_publisher_uses_service_name(self, publisher: Publisher) -> None:
        assert publisher.generate_message_id().startswith("test-service-")


class TestBuildMessage:
    """Tests for message defaults and overrides."""

    def test_defaults(self, publisher: Publisher) -> None:
        message = publisher.build_message({"orderId": "o-1"})

        assert json_loads(message.body) == {"orderId": "o-1"}
        assert message.content_type == "application/json"
        assert message.delivery_mode == DeliveryMode.PERSISTENT
        assert message.message_id.startswith("test-service-")
        assert message.timestamp is not None
        assert message.headers == {}

    def test_overrides(self, publisher: Publisher) -> None:
        message = publisher.build_message(
            {"orderId": "o-1"},
            persistent=False,
            message_id="fixed-id",
            correlation_id="corr-1",
            headers={"x-retry-count": 2},
            priority=5,
            type="payment.request",
        )

        assert message.delivery_mode == DeliveryMode.NOT_PERSISTENT
        assert message.message_id == "fixed-id"
        assert message.correlation_id == "corr-1"
        assert message.headers == {"x-retry-count": 2}
        assert message.priority == 5
        assert message.type == "payment.request"

    def test_serializes_rich_types(self, publisher: Publisher) -> None:
        message = publisher.build_message(
            {"id": UUID("12345678-1234-5678-1234-567812345678"), "amount": Decimal("19.90")}
        )

        assert json_loads(message.body) == {
            "id": "12345678-1234-5678-1234-567812345678",
            "amount": "19.90",
        }

    def test_bytes_payload_is_sent_as_is(self, publisher: Publisher) -> None:
        message = publisher.build_message(b"\x00raw", content_type="text/plain")

        assert message.body == b"\x00raw"
        assert message.content_type == "text/plain"

    def test_unserializable_payload_raises(self, publisher: Publisher) -> None:
        with pytest.raises(SerializationError):
            publisher.build_message({"handler": object()})


class TestPublish:
    """Tests for publish(), send_to_queue() and publish_with_headers()."""

    @pytest.mark.asyncio
    async def test_publish_to_named_exchange(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        exchange = mock_channel.get_exchange.return_value

        message_id = await publisher.publish("orders.topic", "order.created", {"orderId": "o-1"})

        mock_channel.get_exchange.assert_called_once_with("orders.topic", ensure=False)
        exchange.publish.assert_called_once()
        sent = exchange.publish.call_args.args[0]
        assert exchange.publish.call_args.kwargs["routing_key"] == "order.created"
        assert sent.message_id == message_id
        assert publisher._stats.messages_published == 1
        assert publisher._stats.last_publish_at is not None

    @pytest.mark.asyncio
    async def test_send_to_queue_uses_default_exchange(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        await publisher.send_to_queue("payments.process", {"orderId": "o-1"})

        mock_channel.get_exchange.assert_not_called()
        mock_channel.default_exchange.publish.assert_called_once()
        assert (
            mock_channel.default_exchange.publish.call_args.kwargs["routing_key"]
            == "payments.process"
        )

    @pytest.mark.asyncio
    async def test_publish_with_headers_uses_empty_routing_key(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        exchange = mock_channel.get_exchange.return_value

        await publisher.publish_with_headers(
            "orders.headers",
            {"orderId": "o-1"},
            {"region": "eu", "priority": "high"},
            headers={"source": "checkout", "region": "us"},
        )

        sent = exchange.publish.call_args.args[0]
        assert exchange.publish.call_args.kwargs["routing_key"] == ""
        assert sent.headers == {"source": "checkout", "region": "eu", "priority": "high"}

    @pytest.mark.asyncio
    async def test_not_connected_raises(self, client_config: AmqpClientConfig) -> None:
        publisher = Publisher(ConnectionSupervisor(client_config), client_config)

        with pytest.raises(ChannelNotInitializedError) as exc_info:
            await publisher.publish("orders", "key", {"a": 1})

        assert exc_info.value.operation == "publish"

    @pytest.mark.asyncio
    async def test_serialization_error_publishes_nothing(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        with pytest.raises(SerializationError):
            await publisher.send_to_queue("q", {"bad": object()})

        mock_channel.default_exchange.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_broker_error_propagates(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        mock_channel.default_exchange.publish.side_effect = RuntimeError("channel closed")

        with pytest.raises(RuntimeError, match="channel closed"):
            await publisher.send_to_queue("q", {"a": 1})

        assert publisher._stats.messages_published == 0


class TestFlowControl:
    """Tests for suspension and resumption on broker refusal."""

    @pytest.mark.asyncio
    async def test_nack_suspends_until_drain_then_reemits_same_message(
        self,
        slow_reemit_publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        publish = mock_channel.default_exchange.publish
        publish.side_effect = [Basic.Nack(), Basic.Ack()]

        task = asyncio.create_task(slow_reemit_publisher.send_to_queue("q", {"n": 1}))
        await wait_until(lambda: not slow_reemit_publisher.gate.is_open)
        await asyncio.sleep(0.01)

        assert not task.done()
        assert publish.call_count == 1

        slow_reemit_publisher.notify_drain()
        message_id = await asyncio.wait_for(task, 1.0)

        assert publish.call_count == 2
        first, second = (c.args[0] for c in publish.call_args_list)
        assert first is second
        assert second.message_id == message_id
        assert slow_reemit_publisher.gate.is_open
        assert slow_reemit_publisher._stats.publish_nacks == 1
        assert slow_reemit_publisher._stats.drain_waits == 1

    @pytest.mark.asyncio
    async def test_drain_interval_reemits_without_drain_signal(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        """With no drain signal the publisher re-emits after drain_interval."""
        publish = mock_channel.default_exchange.publish
        publish.side_effect = [Basic.Nack(), Basic.Nack(), Basic.Ack()]

        await asyncio.wait_for(publisher.send_to_queue("q", {"n": 1}), 1.0)

        assert publish.call_count == 3
        assert publisher._stats.publish_nacks == 2
        assert publisher.gate.pause_count == 2

    @pytest.mark.asyncio
    async def test_order_preserved_while_suspended(
        self,
        slow_reemit_publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        publish = mock_channel.default_exchange.publish
        publish.side_effect = [Basic.Nack(), Basic.Ack(), Basic.Ack()]

        first = asyncio.create_task(slow_reemit_publisher.send_to_queue("q", {"n": 1}))
        await wait_until(lambda: not slow_reemit_publisher.gate.is_open)
        second = asyncio.create_task(slow_reemit_publisher.send_to_queue("q", {"n": 2}))
        await asyncio.sleep(0.01)

        assert publish.call_count == 1

        slow_reemit_publisher.notify_drain()
        await asyncio.wait_for(asyncio.gather(first, second), 1.0)

        bodies = [json_loads(c.args[0].body)["n"] for c in publish.call_args_list]
        assert bodies == [1, 1, 2]

    @pytest.mark.asyncio
    async def test_raised_nack_is_flow_control(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        """Newer aio-pika raises DeliveryError for a Nack instead of returning the frame."""
        publish = mock_channel.default_exchange.publish
        publish.side_effect = [DeliveryError(None, Basic.Nack(delivery_tag=1)), Basic.Ack()]

        await asyncio.wait_for(publisher.send_to_queue("q", {"n": 1}), 1.0)

        assert publish.call_count == 2
        assert publisher._stats.publish_nacks == 1
        assert publisher.gate.is_open

    @pytest.mark.asyncio
    async def test_returned_reject_raises_publish_error(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        publish = mock_channel.default_exchange.publish
        publish.return_value = Basic.Reject(delivery_tag=1, requeue=False)

        with pytest.raises(PublishError) as exc_info:
            await publisher.send_to_queue("payments.process", {"n": 1}, message_id="m-1")

        assert exc_info.value.message_id == "m-1"
        assert exc_info.value.exchange == ""
        assert exc_info.value.routing_key == "payments.process"
        assert publish.call_count == 1
        assert publisher.gate.is_open
        assert publisher._stats.messages_published == 0

    @pytest.mark.asyncio
    async def test_raised_reject_raises_publish_error(
        self,
        publisher: Publisher,
        mock_channel: AsyncMock,
    ) -> None:
        error = DeliveryError(None, Basic.Reject(delivery_tag=1, requeue=False))
        mock_channel.default_exchange.publish.side_effect = error

        with pytest.raises(PublishError) as exc_info:
            await publisher.send_to_queue("q", {"n": 1})

        assert exc_info.value.__cause__ is error
        assert publisher._stats.publish_nacks == 0

    @pytest.mark.asyncio
    async def test_on_connected_reopens_gate(self, publisher: Publisher) -> None:
        publisher.gate.close()

        await publisher.on_connected(AsyncMock())

        assert publisher.gate.is_open


class TestFlowGate:
    def test_starts_open(self) -> None:
        assert FlowGate().is_open

    def test_close_and_open_track_pauses(self) -> None:
        gate = FlowGate()

        gate.close()
        gate.close()
        assert not gate.is_open
        assert gate.pause_count == 1

        gate.open()
        assert gate.is_open
        assert gate.total_pause_time_seconds >= 0.0

    @pytest.mark.asyncio
    async def test_wait_times_out_when_closed(self) -> None:
        gate = FlowGate()
        gate.close()

        assert await gate.wait(0.01) is False

    @pytest.mark.asyncio
    async def test_wait_returns_when_opened(self) -> None:
        gate = FlowGate()
        gate.close()

        waiter = asyncio.create_task(gate.wait(1.0))
        await asyncio.sleep(0)
        gate.open()

        assert await waiter is True


class TestPublishTracing:
    @pytest.mark.asyncio
    async def test_publish_creates_producer_span(
        self,
        supervisor: ConnectionSupervisor,
        client_config: AmqpClientConfig,
    ) -> None:
        tracer = MockTracer()
        publisher = Publisher(supervisor, client_config, tracer=tracer)

        await publisher.publish("orders.topic", "order.created", {"a": 1})

        assert tracer.span_names == ["brokerkit.publish"]
        assert tracer.kinds["brokerkit.publish"] == SpanKindEnum.PRODUCER
        _, attributes = tracer.spans[0]
        assert attributes["messaging.destination"] == "orders.topic"
