from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional


class LeaseState(str, Enum):
    PENDING = "pending"
    EXPIRED = "expired"
    ACKED = "acked"


class RawMessage(BaseModel):
    """A single item of a backend receive stream."""

    message_id: str
    payload: bytes
    # Seconds the broker keeps the message invisible, if it says so
    deadline_hint: Optional[float] = None


class Lease(BaseModel):
    message_id: str
    payload: bytes
    deadline: float  # monotonic seconds
    delivery_count: int = Field(default=1, ge=1)
    state: LeaseState = LeaseState.PENDING

    def is_due(self, now: float) -> bool:
        return self.state == LeaseState.PENDING and self.deadline <= now
