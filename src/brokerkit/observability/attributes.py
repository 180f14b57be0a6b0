"""
Standard span attributes for brokerkit.

These follow OpenTelemetry messaging semantic conventions where applicable
and are shared by the publisher, the consumer registry and the retry engine.
"""

# =============================================================================
# Messaging Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (always 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Destination exchange or queue name."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation type ('publish', 'process')."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message_id"
"""Message identifier assigned by the publisher."""

ATTR_MESSAGING_ROUTING_KEY = "messaging.rabbitmq.routing_key"
"""Routing key used to publish the message."""

# =============================================================================
# Broker Client Attributes
# =============================================================================

ATTR_QUEUE_NAME = "brokerkit.queue.name"
"""Queue being declared or consumed (string)."""

ATTR_EXCHANGE_NAME = "brokerkit.exchange.name"
"""Exchange being declared or published to (string)."""

ATTR_REDELIVERED = "brokerkit.message.redelivered"
"""Whether the broker flagged the delivery as a redelivery (boolean)."""

ATTR_HANDLER_SUCCESS = "brokerkit.handler.success"
"""Whether the message handler completed without raising (boolean)."""

# =============================================================================
# Retry Attributes
# =============================================================================

ATTR_RETRY_COUNT = "brokerkit.retry.count"
"""Attempt count carried in the x-retry-count header (integer)."""

ATTR_WORK_KEY = "brokerkit.work.key"
"""Identifier of the logical unit of work (string)."""

ATTR_WORK_STATE = "brokerkit.work.state"
"""State reached by the unit of work (string)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name of a failure (string)."""

MESSAGING_SYSTEM_RABBITMQ = "rabbitmq"
