"""
brokerkit - Reconnecting, backpressure-aware RabbitMQ client for asyncio services.

This library provides:
- A broker client with fixed-delay reconnection and a single confirm channel
- Idempotent exchange/queue/binding assertion, replayed after reconnects
- JSON publishing that waits out broker flow control instead of dropping messages
- Per-queue consumers with ack/reject policies
- Bounded retries through a TTL delay queue, escalating to a dead-letter queue
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("brokerkit")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from brokerkit.amqp import (
    BindingSpec,
    BrokerClient,
    ClientStats,
    ConnectionSupervisor,
    ConsumerRegistry,
    Delivery,
    ExchangeSpec,
    FlowGate,
    HealthCheckResult,
    MessageHandler,
    Publisher,
    QueueDeclaration,
    QueueSpec,
    RequeuePolicy,
    TopologyManager,
    TopologySpec,
    UndecodableBody,
)
from brokerkit.config import AmqpClientConfig, build_amqp_url
from brokerkit.exceptions import (
    BrokerError,
    ChannelNotInitializedError,
    ConsumerAlreadyRegisteredError,
    DeadLetterError,
    PublishError,
    SerializationError,
    WorkNotFoundError,
)
from brokerkit.retry import (
    DeadLetterMonitor,
    FailureRecord,
    FailureStore,
    InMemoryFailureStore,
    RetryEngine,
    RetryPolicy,
    WorkOutcome,
    WorkState,
    build_retry_topology,
)
from brokerkit.settings import AppSettings, BrokerSettings, RetrySettings, get_settings, load_settings

__all__ = [
    "__version__",
    # Client
    "BrokerClient",
    "AmqpClientConfig",
    "build_amqp_url",
    "ConnectionSupervisor",
    "TopologyManager",
    "Publisher",
    "FlowGate",
    "ConsumerRegistry",
    "Delivery",
    "MessageHandler",
    "RequeuePolicy",
    "UndecodableBody",
    "ClientStats",
    "HealthCheckResult",
    # Topology
    "ExchangeSpec",
    "QueueSpec",
    "BindingSpec",
    "TopologySpec",
    "QueueDeclaration",
    # Retry
    "RetryEngine",
    "RetryPolicy",
    "WorkState",
    "WorkOutcome",
    "DeadLetterMonitor",
    "FailureRecord",
    "FailureStore",
    "InMemoryFailureStore",
    "build_retry_topology",
    # Settings
    "AppSettings",
    "BrokerSettings",
    "RetrySettings",
    "get_settings",
    "load_settings",
    # Exceptions
    "BrokerError",
    "ChannelNotInitializedError",
    "ConsumerAlreadyRegisteredError",
    "DeadLetterError",
    "PublishError",
    "SerializationError",
    "WorkNotFoundError",
]
