from leasebus.core.interfaces import IMessageHandle
from leasebus.core.models import Lease
from .coordinator import AckCoordinator


class MessageHandle(IMessageHandle):
    """What a consumer holds for one delivery of a leased message."""

    def __init__(self, lease: Lease, coordinator: AckCoordinator):
        self._message_id = lease.message_id
        self._payload = bytes(lease.payload)
        self._delivery_count = lease.delivery_count
        self._coordinator = coordinator

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def message(self) -> bytes:
        return self._payload

    @property
    def delivery_count(self) -> int:
        return self._delivery_count

    async def extend_ack_deadline(self, duration: float):
        await self._coordinator.extend_ack_deadline(self._message_id, duration)

    async def ack(self):
        await self._coordinator.ack(self._message_id)

    def __repr__(self) -> str:
        return (
            f"MessageHandle(message_id={self._message_id!r}, "
            f"delivery_count={self._delivery_count})"
        )
