"""
AMQP client components.

- ConnectionSupervisor: connection/channel lifecycle and fixed-delay reconnect
- TopologyManager: idempotent exchange/queue/binding declarations
- Publisher: JSON publishing with flow-control handling
- ConsumerRegistry: per-queue handlers with ack/reject policies
- BrokerClient: facade owning one of each
"""

from brokerkit.amqp.client import BrokerClient
from brokerkit.amqp.connection import ConnectionSupervisor
from brokerkit.amqp.consumer import (
    RETRY_COUNT_HEADER,
    ConsumerRegistration,
    ConsumerRegistry,
    Delivery,
    MessageHandler,
    RequeuePolicy,
    UndecodableBody,
    retry_count_from_headers,
)
from brokerkit.amqp.publisher import DEFAULT_EXCHANGE, FlowGate, Publisher, generate_message_id
from brokerkit.amqp.stats import ClientStats, HealthCheckResult
from brokerkit.amqp.topology import (
    BindingSpec,
    ExchangeSpec,
    QueueDeclaration,
    QueueSpec,
    TopologyManager,
    TopologySpec,
)

__all__ = [
    "BindingSpec",
    "BrokerClient",
    "ClientStats",
    "ConnectionSupervisor",
    "ConsumerRegistration",
    "ConsumerRegistry",
    "DEFAULT_EXCHANGE",
    "Delivery",
    "ExchangeSpec",
    "FlowGate",
    "HealthCheckResult",
    "MessageHandler",
    "Publisher",
    "QueueDeclaration",
    "QueueSpec",
    "RETRY_COUNT_HEADER",
    "RequeuePolicy",
    "TopologyManager",
    "TopologySpec",
    "UndecodableBody",
    "generate_message_id",
    "retry_count_from_headers",
]
