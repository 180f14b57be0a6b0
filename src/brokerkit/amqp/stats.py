"""Operational statistics and health reporting for the broker client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass
class ClientStats:
    """
    Counters shared by the connection supervisor, publisher and consumer registry.

    Attributes:
        messages_published: Messages accepted by the transport
        publish_nacks: Publishes refused by the broker under flow control
        drain_waits: Times a publish suspended waiting for a drain signal
        messages_consumed: Deliveries handed to a handler
        messages_acked: Deliveries acknowledged after handler success
        messages_rejected: Deliveries rejected after handler failure
        messages_requeued: Rejections that asked the broker to requeue
        handler_errors: Handler (or decode) failures
        null_deliveries: Broker-initiated cancellations observed
        connect_failures: Failed connect attempts
        reconnect_attempts: Reconnect timers that fired
        reconnections: Successful connects after a previous connection was lost
        last_publish_at: Timestamp of the last accepted publish
        last_consume_at: Timestamp of the last delivery
        last_error_at: Timestamp of the last connection or handler error
        connected_at: When the current connection was established
    """

    messages_published: int = 0
    publish_nacks: int = 0
    drain_waits: int = 0
    messages_consumed: int = 0
    messages_acked: int = 0
    messages_rejected: int = 0
    messages_requeued: int = 0
    handler_errors: int = 0
    null_deliveries: int = 0
    connect_failures: int = 0
    reconnect_attempts: int = 0
    reconnections: int = 0
    last_publish_at: datetime | None = None
    last_consume_at: datetime | None = None
    last_error_at: datetime | None = None
    connected_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary, including uptime."""
        uptime_seconds: float | None = None
        if self.connected_at is not None:
            uptime_seconds = (datetime.now(UTC) - self.connected_at).total_seconds()

        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "messages_published": self.messages_published,
            "publish_nacks": self.publish_nacks,
            "drain_waits": self.drain_waits,
            "messages_consumed": self.messages_consumed,
            "messages_acked": self.messages_acked,
            "messages_rejected": self.messages_rejected,
            "messages_requeued": self.messages_requeued,
            "handler_errors": self.handler_errors,
            "null_deliveries": self.null_deliveries,
            "connect_failures": self.connect_failures,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnections": self.reconnections,
            "last_publish_at": _iso(self.last_publish_at),
            "last_consume_at": _iso(self.last_consume_at),
            "last_error_at": _iso(self.last_error_at),
            "connected_at": _iso(self.connected_at),
            "uptime_seconds": uptime_seconds,
        }


@dataclass
class HealthCheckResult:
    """
    Health status of a broker client instance.

    Attributes:
        healthy: True if the connection and channel are live
        connection_status: "connected", "disconnected" or "closed"
        channel_status: "open", "closed" or "not_initialized"
        reconnect_pending: Whether a reconnect timer is armed
        consumers: Queue names with an active consumer
        last_error: Message of the last connection-level error
        details: Statistics snapshot
    """

    healthy: bool
    connection_status: str
    channel_status: str
    reconnect_pending: bool = False
    consumers: list[str] = field(default_factory=list)
    last_error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "connection_status": self.connection_status,
            "channel_status": self.channel_status,
            "reconnect_pending": self.reconnect_pending,
            "consumers": list(self.consumers),
            "last_error": self.last_error,
            "details": self.details,
        }


__all__ = ["ClientStats", "HealthCheckResult"]
