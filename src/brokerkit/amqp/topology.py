"""
Idempotent exchange, queue and binding declarations.

The topology manager issues the AMQP declare/bind calls for the client and
remembers every entity it has asserted, so the whole topology can be
replayed on the fresh channel after a reconnect.

Example:
    >>> topology = TopologyManager(supervisor)
    >>> await topology.assert_exchange("orders.topic", ExchangeType.TOPIC)
    >>> declaration = await topology.assert_queue(
    ...     "payments.process",
    ...     arguments={"x-dead-letter-exchange": "payments.dlx"},
    ... )
    >>> await topology.bind_queue("payments.process", "orders.topic", "order.*")
    >>> declaration.message_count
    0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

from brokerkit.amqp.connection import ConnectionSupervisor
from brokerkit.observability import (
    ATTR_EXCHANGE_NAME,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_QUEUE_NAME,
    MESSAGING_SYSTEM_RABBITMQ,
    Tracer,
    create_tracer,
)
from brokerkit.serialization import json_dumps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueDeclaration:
    """Result of asserting a queue: its depth at the time of the call."""

    name: str
    message_count: int = 0
    consumer_count: int = 0


@dataclass(frozen=True)
class ExchangeSpec:
    """
    Declaration of an exchange.

    Attributes:
        name: Exchange name
        type: direct, fanout, topic or headers
        durable: Survive broker restarts
        auto_delete: Delete when the last binding is removed
        internal: Only reachable through exchange-to-exchange bindings
        arguments: Extra declaration arguments (e.g. ``alternate-exchange``)
    """

    name: str
    type: ExchangeType = ExchangeType.DIRECT
    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    arguments: dict[str, Any] | None = None


@dataclass(frozen=True)
class QueueSpec:
    """
    Declaration of a queue.

    ``arguments`` carries broker extensions such as
    ``x-dead-letter-exchange``, ``x-dead-letter-routing-key``,
    ``x-message-ttl``, ``x-max-length`` and ``x-overflow``.
    """

    name: str
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    arguments: dict[str, Any] | None = None


@dataclass(frozen=True)
class BindingSpec:
    """
    Binding of a queue to an exchange.

    For headers exchanges the routing key is ignored and ``arguments``
    holds the match predicate, e.g. ``{"x-match": "all", "region": "eu"}``.
    """

    queue: str
    exchange: str
    routing_key: str = ""
    arguments: dict[str, Any] | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        """Identity of the binding; two specs with equal keys are the same binding."""
        args = json_dumps(dict(sorted((self.arguments or {}).items())))
        return (self.queue, self.exchange, self.routing_key, args)


@dataclass
class TopologySpec:
    """A batch of declarations, applied exchanges first, then queues, then bindings."""

    exchanges: list[ExchangeSpec] = field(default_factory=list)
    queues: list[QueueSpec] = field(default_factory=list)
    bindings: list[BindingSpec] = field(default_factory=list)

    def merge(self, other: TopologySpec) -> TopologySpec:
        return TopologySpec(
            exchanges=[*self.exchanges, *other.exchanges],
            queues=[*self.queues, *other.queues],
            bindings=[*self.bindings, *other.bindings],
        )


def coerce_exchange_type(value: ExchangeType | str) -> ExchangeType:
    """
    Accept either an ExchangeType or its string name.

    Raises:
        ValueError: If the string does not name a known exchange type
    """
    if isinstance(value, ExchangeType):
        return value
    return ExchangeType(value.lower())


class TopologyManager:
    """
    Declares and remembers exchanges, queues and bindings.

    Each entity is remembered once per name (per binding triple for
    bindings); re-asserting an identical entity re-issues the idempotent
    declare to the broker without growing the remembered topology.

    Args:
        supervisor: Provides the live channel
        tracer: Optional tracer; created from ``enable_tracing`` if omitted
        enable_tracing: Whether to create OpenTelemetry spans
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._supervisor = supervisor
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, QueueSpec] = {}
        self._bindings: dict[tuple[str, str, str, str], BindingSpec] = {}

    @property
    def exchanges(self) -> list[ExchangeSpec]:
        return list(self._exchanges.values())

    @property
    def queues(self) -> list[QueueSpec]:
        return list(self._queues.values())

    @property
    def bindings(self) -> list[BindingSpec]:
        return list(self._bindings.values())

    def snapshot(self) -> TopologySpec:
        """The remembered topology as a TopologySpec."""
        return TopologySpec(self.exchanges, self.queues, self.bindings)

    def forget(self) -> None:
        """Drop the remembered topology; nothing is deleted on the broker."""
        self._exchanges.clear()
        self._queues.clear()
        self._bindings.clear()

    # =========================================================================
    # Assertions
    # =========================================================================

    async def assert_exchange(
        self,
        name: str,
        type: ExchangeType | str = ExchangeType.DIRECT,
        *,
        durable: bool = True,
        auto_delete: bool = False,
        internal: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> AbstractExchange:
        """
        Declare an exchange (idempotent).

        Raises:
            ChannelNotInitializedError: If not connected
            ValueError: If ``type`` is not a known exchange type
        """
        spec = ExchangeSpec(
            name=name,
            type=coerce_exchange_type(type),
            durable=durable,
            auto_delete=auto_delete,
            internal=internal,
            arguments=arguments,
        )
        channel = self._supervisor.require_channel("assert_exchange")
        exchange = await self._declare_exchange(channel, spec)
        self._exchanges[name] = spec
        return exchange

    async def assert_queue(
        self,
        name: str,
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> QueueDeclaration:
        """
        Declare a queue (idempotent) and report its current depth.

        Raises:
            ChannelNotInitializedError: If not connected
        """
        spec = QueueSpec(
            name=name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
        )
        channel = self._supervisor.require_channel("assert_queue")
        queue = await self._declare_queue(channel, spec)
        self._queues[name] = spec
        return _declaration_of(name, queue)

    async def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """
        Bind a queue to an exchange (idempotent).

        Raises:
            ChannelNotInitializedError: If not connected
        """
        spec = BindingSpec(
            queue=queue,
            exchange=exchange,
            routing_key=routing_key,
            arguments=arguments,
        )
        channel = self._supervisor.require_channel("bind_queue")
        await self._bind(channel, spec)
        self._bindings.setdefault(spec.key, spec)

    async def declare(self, spec: TopologySpec) -> dict[str, QueueDeclaration]:
        """
        Declare a batch of topology in dependency order.

        Returns:
            Queue declarations keyed by queue name
        """
        for exchange in spec.exchanges:
            await self.assert_exchange(
                exchange.name,
                exchange.type,
                durable=exchange.durable,
                auto_delete=exchange.auto_delete,
                internal=exchange.internal,
                arguments=exchange.arguments,
            )

        declarations: dict[str, QueueDeclaration] = {}
        for queue in spec.queues:
            declarations[queue.name] = await self.assert_queue(
                queue.name,
                durable=queue.durable,
                exclusive=queue.exclusive,
                auto_delete=queue.auto_delete,
                arguments=queue.arguments,
            )

        for binding in spec.bindings:
            await self.bind_queue(
                binding.queue,
                binding.exchange,
                binding.routing_key,
                binding.arguments,
            )
        return declarations

    async def reassert(self, channel: AbstractChannel | None = None) -> None:
        """
        Replay every remembered declaration, e.g. on the channel of a new connection.

        Registered as a connected hook by the broker client.
        """
        if channel is None:
            channel = self._supervisor.require_channel("reassert")

        if not (self._exchanges or self._queues or self._bindings):
            return

        for exchange in list(self._exchanges.values()):
            await self._declare_exchange(channel, exchange)
        for queue in list(self._queues.values()):
            await self._declare_queue(channel, queue)
        for binding in list(self._bindings.values()):
            await self._bind(channel, binding)

        logger.info(
            "Topology re-asserted after reconnection",
            extra={
                "exchanges": len(self._exchanges),
                "queues": len(self._queues),
                "bindings": len(self._bindings),
            },
        )

    # =========================================================================
    # Broker calls
    # =========================================================================

    async def _declare_exchange(
        self,
        channel: AbstractChannel,
        spec: ExchangeSpec,
    ) -> AbstractExchange:
        with self._tracer.span(
            "brokerkit.topology.assert_exchange",
            {
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                ATTR_EXCHANGE_NAME: spec.name,
            },
        ):
            exchange = await channel.declare_exchange(
                name=spec.name,
                type=spec.type,
                durable=spec.durable,
                auto_delete=spec.auto_delete,
                internal=spec.internal,
                arguments=spec.arguments,
            )

        logger.info(
            f"Declared exchange: {spec.name}",
            extra={
                "exchange_name": spec.name,
                "exchange_type": spec.type.value,
                "durable": spec.durable,
                "auto_delete": spec.auto_delete,
            },
        )
        return exchange

    async def _declare_queue(self, channel: AbstractChannel, spec: QueueSpec) -> AbstractQueue:
        with self._tracer.span(
            "brokerkit.topology.assert_queue",
            {
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                ATTR_QUEUE_NAME: spec.name,
            },
        ):
            queue = await channel.declare_queue(
                name=spec.name,
                durable=spec.durable,
                exclusive=spec.exclusive,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments,
            )

        logger.info(
            f"Declared queue: {spec.name}",
            extra={
                "queue_name": spec.name,
                "durable": spec.durable,
                "auto_delete": spec.auto_delete,
                "arguments": spec.arguments or {},
            },
        )
        return queue

    async def _bind(self, channel: AbstractChannel, spec: BindingSpec) -> None:
        with self._tracer.span(
            "brokerkit.topology.bind_queue",
            {
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                ATTR_QUEUE_NAME: spec.queue,
                ATTR_EXCHANGE_NAME: spec.exchange,
                ATTR_MESSAGING_ROUTING_KEY: spec.routing_key,
            },
        ):
            queue = await channel.get_queue(spec.queue, ensure=False)
            await queue.bind(
                exchange=spec.exchange,
                routing_key=spec.routing_key,
                arguments=spec.arguments,
            )

        logger.info(
            f"Bound queue {spec.queue} to exchange {spec.exchange} "
            f"with routing key '{spec.routing_key}'",
            extra={
                "queue_name": spec.queue,
                "exchange_name": spec.exchange,
                "routing_key": spec.routing_key,
                "arguments": spec.arguments or {},
            },
        )


def _declaration_of(name: str, queue: AbstractQueue) -> QueueDeclaration:
    result = queue.declaration_result
    return QueueDeclaration(
        name=name,
        message_count=int(getattr(result, "message_count", 0) or 0),
        consumer_count=int(getattr(result, "consumer_count", 0) or 0),
    )


__all__ = [
    "BindingSpec",
    "ExchangeSpec",
    "QueueDeclaration",
    "QueueSpec",
    "TopologyManager",
    "TopologySpec",
    "coerce_exchange_type",
]
