"""Environment-backed settings for services built on brokerkit.

Connection parameters, retry bounds and the exchange/queue/routing-key
name tables are read from the environment with pydantic-settings and
turned into the dataclass configs the client and retry engine consume.

Environment variables:
    RABBITMQ_HOST, RABBITMQ_PORT, RABBITMQ_USER, RABBITMQ_PASS,
    RABBITMQ_VHOST, RABBITMQ_HEARTBEAT, RABBITMQ_RECONNECT_INTERVAL_MS,
    MAX_RETRY_ATTEMPTS, RETRY_DELAY_MS, MESSAGE_TTL_MS
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from brokerkit.config import AmqpClientConfig, build_amqp_url


class BrokerSettings(BaseSettings):
    """RabbitMQ connection settings (RABBITMQ_ prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="RABBITMQ_",
        extra="ignore",
        populate_by_name=True,
    )

    scheme: str = Field(default="amqp", pattern=r"^amqps?$")
    host: str = Field(default="localhost", min_length=1)
    port: int = Field(default=5672, ge=1, le=65535)
    username: str = Field(
        default="admin",
        validation_alias=AliasChoices("RABBITMQ_USER", "RABBITMQ_USERNAME"),
    )
    password: SecretStr = Field(
        default=SecretStr("admin123"),
        validation_alias=AliasChoices("RABBITMQ_PASS", "RABBITMQ_PASSWORD"),
    )
    vhost: str = "/"
    heartbeat: int = Field(default=60, ge=0, le=3600)
    reconnect_interval_ms: int = Field(default=5000, ge=0)
    prefetch_count: int = Field(default=1, ge=0)
    enable_tracing: bool = True

    @property
    def amqp_url(self) -> str:
        return build_amqp_url(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password.get_secret_value(),
            vhost=self.vhost,
            scheme=self.scheme,
        )

    def to_client_config(self, service_name: str) -> AmqpClientConfig:
        return AmqpClientConfig(
            rabbitmq_url=self.amqp_url,
            service_name=service_name,
            heartbeat=self.heartbeat,
            reconnect_delay=self.reconnect_interval_ms / 1000,
            prefetch_count=self.prefetch_count,
            enable_tracing=self.enable_tracing,
        )


class RetrySettings(BaseSettings):
    """Message-level retry bounds (no prefix, names kept from the deployment env)."""

    model_config = SettingsConfigDict(extra="ignore")

    max_retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=5000, ge=0)
    message_ttl_ms: int = Field(default=300_000, ge=0)


class ExchangeNames(BaseModel):
    orders_direct: str = "orders.direct"
    orders_fanout: str = "orders.fanout"
    orders_topic: str = "orders.topic"
    orders_headers: str = "orders.headers"
    payments_dlx: str = "payments.dlx"
    inventory_topic: str = "inventory.topic"


class QueueNames(BaseModel):
    orders_high: str = "orders.high"
    orders_normal: str = "orders.normal"
    orders_analytics: str = "orders.analytics"
    orders_audit: str = "orders.audit"
    orders_notification: str = "orders.notification"
    orders_us: str = "orders.us"
    orders_eu: str = "orders.eu"
    orders_premium: str = "orders.premium"
    orders_mobile: str = "orders.mobile"
    inventory_low_stock: str = "inventory.lowstock"
    inventory_check: str = "inventory.check"
    payments_process: str = "payments.process"
    payments_retry: str = "payments.retry"
    payments_dead: str = "payments.dead"
    shipping_create: str = "shipping.create"


class RoutingKeys(BaseModel):
    order_high: str = "order.high"
    order_normal: str = "order.normal"
    payment_process: str = "payment.process"
    payment_retry: str = "payment.retry"
    payment_failed: str = "payment.failed"


@dataclass(frozen=True)
class AppSettings:
    """Everything a dependent service needs to wire the broker client."""

    broker: BrokerSettings
    retry: RetrySettings
    exchanges: ExchangeNames
    queues: QueueNames
    routing_keys: RoutingKeys


def load_settings() -> AppSettings:
    """Read settings from the current environment (uncached)."""
    return AppSettings(
        broker=BrokerSettings(),
        retry=RetrySettings(),
        exchanges=ExchangeNames(),
        queues=QueueNames(),
        routing_keys=RoutingKeys(),
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Process-wide settings, read once."""
    return load_settings()


__all__ = [
    "AppSettings",
    "BrokerSettings",
    "ExchangeNames",
    "QueueNames",
    "RetrySettings",
    "RoutingKeys",
    "get_settings",
    "load_settings",
]
