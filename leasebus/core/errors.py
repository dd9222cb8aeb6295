"""leasebus errors."""

from typing import Optional


class LeaseBusError(Exception):
    """Base error for leasebus operations."""

    def __init__(self, message: str, code: str = "LEASEBUS_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class TransportError(LeaseBusError):
    """Backend or network failure.

    A fatal transport error ends the subscription that observed it; any other
    one is reported and the subscription keeps going.
    """

    def __init__(
        self, message: str, fatal: bool = False, cause: Optional[BaseException] = None
    ):
        super().__init__(message, "TRANSPORT_ERROR")
        self.fatal = fatal
        self.cause = cause


class SerializationError(LeaseBusError):
    """A payload could not be encoded or decoded."""

    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message, "SERIALIZATION_ERROR")
        self.message_id = message_id


class LeaseError(LeaseBusError):
    """Ack or deadline extension could not be applied to a lease."""

    def __init__(self, message_id: str, reason: str, code: str = "LEASE_ERROR"):
        super().__init__(f"Lease {reason}: {message_id}", code)
        self.message_id = message_id
        self.reason = reason


class LeaseNotFound(LeaseError):
    """Lease is unknown, already acked or permanently dropped."""

    def __init__(self, message_id: str):
        super().__init__(message_id, "not found", "NOT_FOUND")


class ContextCancelled(LeaseBusError):
    """The context of an in-flight call ended before the call finished."""

    def __init__(self, reason: str = "context cancelled"):
        super().__init__(reason, "CONTEXT_CANCELLED")


class PoisonMessage(LeaseBusError):
    """Message exceeded its redelivery budget and was dropped for good."""

    def __init__(self, message_id: str, delivery_count: int, payload: bytes = b""):
        super().__init__(
            f"Message {message_id} dropped after {delivery_count} deliveries",
            "POISON_MESSAGE",
        )
        self.message_id = message_id
        self.delivery_count = delivery_count
        self.payload = payload


class ChannelClosed(LeaseBusError):
    """Receive on a closed and drained channel."""

    def __init__(self):
        super().__init__("channel closed", "CHANNEL_CLOSED")
