"""
Observability utilities for brokerkit.

Provides the composition-based tracer used by the broker client components
and the standard span attribute names.

Example:
    >>> from brokerkit.observability import create_tracer, NullTracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from brokerkit.observability.attributes import (
    ATTR_ERROR_TYPE,
    ATTR_EXCHANGE_NAME,
    ATTR_HANDLER_SUCCESS,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_QUEUE_NAME,
    ATTR_REDELIVERED,
    ATTR_RETRY_COUNT,
    ATTR_WORK_KEY,
    ATTR_WORK_STATE,
    MESSAGING_SYSTEM_RABBITMQ,
)
from brokerkit.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes - Messaging
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_ROUTING_KEY",
    "MESSAGING_SYSTEM_RABBITMQ",
    # Attributes - Broker client
    "ATTR_QUEUE_NAME",
    "ATTR_EXCHANGE_NAME",
    "ATTR_REDELIVERED",
    "ATTR_HANDLER_SUCCESS",
    # Attributes - Retry
    "ATTR_RETRY_COUNT",
    "ATTR_WORK_KEY",
    "ATTR_WORK_STATE",
    "ATTR_ERROR_TYPE",
]
