"""Library exceptions for the brokerkit package."""


class BrokerError(Exception):
    """Base exception for brokerkit library."""

    pass


class ChannelNotInitializedError(BrokerError):
    """Raised when a broker operation is attempted without a live channel.

    Callers are expected to await ``connect()`` before declaring topology,
    publishing or consuming.
    """

    def __init__(self, operation: str | None = None) -> None:
        self.operation = operation
        message = "Channel not initialized"
        if operation:
            message = f"{message} (operation: {operation})"
        super().__init__(message)


class ConsumerAlreadyRegisteredError(BrokerError):
    """Raised when consume() is called for a queue that already has a consumer."""

    def __init__(self, queue: str, consumer_tag: str | None) -> None:
        self.queue = queue
        self.consumer_tag = consumer_tag
        super().__init__(
            f"Queue '{queue}' already has an active consumer ({consumer_tag}); "
            f"cancel it before registering a new handler"
        )


class PublishError(BrokerError):
    """
    Raised when the broker refuses a message for a reason other than flow control.

    A ``Basic.Nack`` only suspends publishing until drain; a ``Basic.Reject``
    or a returned message raised by the channel is final.

    Attributes:
        message_id: Id of the refused message
        exchange: Exchange it was published to
        routing_key: Routing key it was published with
        reason: Broker-side description of the refusal
    """

    def __init__(
        self,
        message_id: str | None,
        exchange: str,
        routing_key: str,
        reason: str,
    ) -> None:
        self.message_id = message_id
        self.exchange = exchange
        self.routing_key = routing_key
        self.reason = reason
        super().__init__(
            f"Broker refused message {message_id} "
            f"(exchange='{exchange}', routing_key='{routing_key}'): {reason}"
        )


class SerializationError(BrokerError):
    """Raised when message serialization or deserialization fails."""

    def __init__(self, content_type: str | None, message: str) -> None:
        self.content_type = content_type
        super().__init__(f"Serialization error for {content_type or 'unknown content'}: {message}")


class DeadLetterError(BrokerError):
    """
    Raised by the retry engine when a unit of work has exhausted its attempts.

    Carries the original failure so that the consumer registry logs it with
    the rejection, and forces a reject without requeue.

    Attributes:
        work_key: Identifier of the logical unit of work
        retry_count: Attempt count observed when the work died
        cause: The exception raised by the final attempt
    """

    def __init__(self, work_key: str, retry_count: int, cause: BaseException) -> None:
        self.work_key = work_key
        self.retry_count = retry_count
        self.cause = cause
        super().__init__(
            f"Work item {work_key} dead-lettered after {retry_count} retries: {cause}"
        )


class WorkNotFoundError(BrokerError):
    """Raised when a failed work item cannot be found in the failure store."""

    def __init__(self, work_key: str) -> None:
        self.work_key = work_key
        super().__init__(f"Failed work item not found: {work_key}")
