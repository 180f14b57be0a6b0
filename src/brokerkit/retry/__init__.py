"""
Retry/dead-letter escalation built on the broker client.

- RetryEngine / RetryPolicy: bounded retries through a TTL delay queue
- build_retry_topology: the queues and exchanges the engine relies on
- DeadLetterMonitor: records dead-lettered messages in the failure store
- FailureStore / InMemoryFailureStore: terminal failure storage
"""

from brokerkit.retry.dead_letter import (
    DeadLetterMonitor,
    get_death_count,
    get_death_info,
    get_first_death_exchange,
    get_first_death_queue,
    get_first_death_reason,
    get_original_routing_key,
    is_dead_lettered,
)
from brokerkit.retry.engine import (
    RetryEngine,
    RetryPolicy,
    RetryStats,
    WorkOutcome,
    WorkState,
    attempt_of,
)
from brokerkit.retry.store import FailureRecord, FailureStore, InMemoryFailureStore
from brokerkit.retry.topology import build_retry_topology

__all__ = [
    "DeadLetterMonitor",
    "FailureRecord",
    "FailureStore",
    "InMemoryFailureStore",
    "RetryEngine",
    "RetryPolicy",
    "RetryStats",
    "WorkOutcome",
    "WorkState",
    "attempt_of",
    "build_retry_topology",
    "get_death_count",
    "get_death_info",
    "get_first_death_exchange",
    "get_first_death_queue",
    "get_first_death_reason",
    "get_original_routing_key",
    "is_dead_lettered",
]
