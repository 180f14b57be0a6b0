"""
Queue layout for retry via dead-lettering.

::

    primary ──reject──> dead-letter exchange ──(dlx key)──> dead queue
       ^
       └── default exchange <──TTL expiry── delay queue <── engine re-publishes

The engine re-publishes a failed item to the delay queue; when its TTL
expires the broker dead-letters it through the default exchange, keyed by
the primary queue's name, which puts it back on the primary queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from aio_pika import ExchangeType

from brokerkit.amqp.publisher import DEFAULT_EXCHANGE
from brokerkit.amqp.topology import BindingSpec, ExchangeSpec, QueueSpec, TopologySpec

if TYPE_CHECKING:
    from brokerkit.retry.engine import RetryPolicy


def build_retry_topology(policy: RetryPolicy) -> TopologySpec:
    """
    Exchanges, queues and bindings the retry engine relies on.

    - The dead-letter exchange (direct) and the dead queue bound to it
    - The primary queue, dead-lettering rejected messages to the dead queue
    - The delay queue, dead-lettering expired messages back to the primary
    - The event exchange, if the policy publishes outcome events
    """
    exchanges = [ExchangeSpec(policy.dead_letter_exchange, ExchangeType.DIRECT)]
    if policy.event_exchange:
        exchanges.append(ExchangeSpec(policy.event_exchange, policy.event_exchange_type))

    primary_args: dict[str, Any] = {
        "x-dead-letter-exchange": policy.dead_letter_exchange,
        "x-dead-letter-routing-key": policy.dead_letter_routing_key,
    }
    if policy.message_ttl_ms is not None:
        primary_args["x-message-ttl"] = policy.message_ttl_ms

    queues = [
        QueueSpec(policy.primary_queue, arguments=primary_args),
        QueueSpec(
            policy.delay_queue,
            arguments={
                "x-message-ttl": policy.retry_delay_ms,
                "x-dead-letter-exchange": DEFAULT_EXCHANGE,
                "x-dead-letter-routing-key": policy.primary_queue,
            },
        ),
        QueueSpec(policy.dead_queue),
    ]

    bindings = [
        BindingSpec(
            queue=policy.dead_queue,
            exchange=policy.dead_letter_exchange,
            routing_key=policy.dead_letter_routing_key,
        )
    ]
    return TopologySpec(exchanges=exchanges, queues=queues, bindings=bindings)


__all__ = ["build_retry_topology"]
