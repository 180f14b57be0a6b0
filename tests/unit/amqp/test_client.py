"""
Unit tests for BrokerClient.

Tests for:
- Component wiring and the connected hook order
- Recovery: topology and consumers restored after a reconnect
- close() cancelling consumers
- Statistics and health check reporting
- Async context manager usage
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aio_pika import ExchangeType

from brokerkit.amqp.client import BrokerClient
from brokerkit.amqp.stats import HealthCheckResult
from brokerkit.config import AmqpClientConfig


@pytest.fixture
def client(client_config: AmqpClientConfig) -> BrokerClient:
    return BrokerClient(client_config)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestBrokerClientInit:
    def test_default_config(self) -> None:
        client = BrokerClient()

        assert client.config == AmqpClientConfig()
        assert client.is_healthy() is False

    def test_components_share_stats(self, client: BrokerClient) -> None:
        assert client.supervisor.stats is client.stats
        assert client.publisher._stats is client.stats
        assert client.consumers._stats is client.stats

    def test_service_name(self, client: BrokerClient) -> None:
        assert client.service_name == "test-service"


class TestRecovery:
    """Topology and consumers survive a lost connection."""

    @patch("brokerkit.amqp.connection.aio_pika")
    @pytest.mark.asyncio
    async def test_reconnect_reasserts_topology_and_restores_consumers(
        self,
        mock_aio_pika: MagicMock,
        client: BrokerClient,
        channel_factory,
        queue_factory,
        connection_factory,
    ) -> None:
        second_queue = queue_factory("orders", consumer_tag="ctag-2")
        second_channel = channel_factory(second_queue)
        first_connection = connection_factory(channel_factory(queue_factory("orders")))
        mock_aio_pika.connect = AsyncMock(
            side_effect=[first_connection, connection_factory(second_channel)]
        )

        assert await client.connect() is True
        await client.assert_exchange("orders.topic", ExchangeType.TOPIC)
        await client.assert_queue("orders", arguments={"x-message-ttl": 60000})
        await client.bind_queue("orders", "orders.topic", "order.*")
        handler = AsyncMock()
        await client.consume("orders", handler)

        client.supervisor._on_connection_close(first_connection, ConnectionError("lost"))
        assert client.is_healthy() is False

        await wait_until(client.is_healthy)

        second_channel.declare_exchange.assert_called_once()
        assert second_channel.declare_exchange.call_args.kwargs["type"] is ExchangeType.TOPIC
        second_channel.declare_queue.assert_called_once()
        assert second_channel.declare_queue.call_args.kwargs["arguments"] == {
            "x-message-ttl": 60000
        }
        second_queue.bind.assert_called_once_with(
            exchange="orders.topic",
            routing_key="order.*",
            arguments=None,
        )
        second_queue.consume.assert_called_once()
        assert client.consumers.consumers == {"orders": "ctag-2"}
        assert client.stats.reconnections == 1

        await client.close()

    @patch("brokerkit.amqp.connection.aio_pika")
    @pytest.mark.asyncio
    async def test_reconnect_reopens_flow_gate(
        self,
        mock_aio_pika: MagicMock,
        client: BrokerClient,
        channel_factory,
        connection_factory,
    ) -> None:
        connection = connection_factory(channel_factory())
        mock_aio_pika.connect = AsyncMock(return_value=connection)
        await client.connect()
        client.publisher.gate.close()

        client.supervisor._on_connection_close(connection, ConnectionError("lost"))
        await wait_until(client.is_healthy)

        assert client.publisher.gate.is_open

        await client.close()

    @patch("brokerkit.amqp.connection.aio_pika")
    @pytest.mark.asyncio
    async def test_connect_failure_then_recovery(
        self,
        mock_aio_pika: MagicMock,
        client: BrokerClient,
        channel_factory,
        connection_factory,
    ) -> None:
        mock_aio_pika.connect = AsyncMock(
            side_effect=[ConnectionError("refused"), connection_factory(channel_factory())]
        )

        assert await client.connect() is False
        assert client.health_check().reconnect_pending is True

        await wait_until(client.is_healthy)

        await client.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_cancels_consumers(
        self,
        client: BrokerClient,
        mock_channel: AsyncMock,
        mock_queue: AsyncMock,
        attach_channel,
    ) -> None:
        attach_channel(client.supervisor, mock_channel)
        await client.consume("orders", AsyncMock())

        await client.close()

        mock_queue.cancel.assert_awaited_once_with("ctag-1")
        assert client.consumers.consumers == {}
        assert client.is_healthy() is False

    @patch("brokerkit.amqp.connection.aio_pika")
    @pytest.mark.asyncio
    async def test_context_manager(
        self,
        mock_aio_pika: MagicMock,
        client_config: AmqpClientConfig,
        mock_connection: AsyncMock,
    ) -> None:
        mock_aio_pika.connect = AsyncMock(return_value=mock_connection)

        async with BrokerClient(client_config) as client:
            assert client.is_healthy() is True

        assert client.is_healthy() is False
        mock_connection.close.assert_awaited_once()


class TestStatsAndHealth:
    def test_health_check_before_connect(self, client: BrokerClient) -> None:
        result = client.health_check()

        assert isinstance(result, HealthCheckResult)
        assert result.healthy is False
        assert result.connection_status == "disconnected"
        assert result.channel_status == "not_initialized"
        assert result.consumers == []

    @pytest.mark.asyncio
    async def test_health_check_when_connected(
        self,
        client: BrokerClient,
        mock_channel: AsyncMock,
        attach_channel,
    ) -> None:
        attach_channel(client.supervisor, mock_channel)
        await client.consume("orders", AsyncMock())

        result = client.health_check()

        assert result.healthy is True
        assert result.connection_status == "connected"
        assert result.channel_status == "open"
        assert result.consumers == ["orders"]
        assert result.to_dict()["healthy"] is True

    def test_health_check_reports_closed_channel(
        self,
        client: BrokerClient,
        mock_channel: AsyncMock,
        attach_channel,
    ) -> None:
        attach_channel(client.supervisor, mock_channel)
        mock_channel.is_closed = True

        result = client.health_check()

        assert result.healthy is False
        assert result.channel_status == "closed"

    @pytest.mark.asyncio
    async def test_stats_dict(
        self,
        client: BrokerClient,
        mock_channel: AsyncMock,
        attach_channel,
    ) -> None:
        attach_channel(client.supervisor, mock_channel)
        await client.send_to_queue("orders", {"orderId": "o-1"})

        stats = client.get_stats_dict()

        assert stats["messages_published"] == 1
        assert stats["is_connected"] is True
        assert stats["flow_gate_open"] is True
        assert stats["consumers"] == 0

    @pytest.mark.asyncio
    async def test_reset_stats(
        self,
        client: BrokerClient,
        mock_channel: AsyncMock,
        attach_channel,
    ) -> None:
        attach_channel(client.supervisor, mock_channel)
        await client.send_to_queue("orders", {"orderId": "o-1"})

        client.reset_stats()

        assert client.stats.messages_published == 0
        assert client.stats.last_publish_at is None
