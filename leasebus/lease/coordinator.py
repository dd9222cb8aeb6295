import asyncio
import logging
from typing import Optional
from leasebus.core.context import Context, background
from leasebus.core.errors import LeaseBusError, TransportError
from leasebus.core.interfaces import IBrokerBackend
from .table import LeaseTable

logger = logging.getLogger(__name__)


class AckCoordinator:
    """Applies Ack and deadline extensions to the lease table and the backend.

    Each call reserves its transition under the table lock, performs the
    backend call outside it and then finalizes or rolls back.
    """

    def __init__(self, table: LeaseTable, backend: IBrokerBackend):
        self.table = table
        self.backend = backend

    async def ack(self, message_id: str, ctx: Optional[Context] = None):
        ctx = ctx or background()
        ctx.check()
        await self.table.reserve_ack(message_id)

        try:
            await ctx.run(self.backend.delete(message_id))
        except asyncio.CancelledError:
            await asyncio.shield(self.table.rollback_ack(message_id))
            raise
        except LeaseBusError:
            await self.table.rollback_ack(message_id)
            raise
        except Exception as e:
            await self.table.rollback_ack(message_id)
            raise TransportError(f"Ack of {message_id} failed: {e}", cause=e) from e

        await self.table.finalize_ack(message_id)
        logger.debug(f"Acked {message_id}")

    async def extend_ack_deadline(
        self, message_id: str, duration: float, ctx: Optional[Context] = None
    ):
        if duration < 0:
            raise ValueError("duration must not be negative")
        ctx = ctx or background()
        ctx.check()
        reserved = await self.table.extend(message_id, duration)
        if reserved is None:
            logger.debug(f"Deadline of {message_id} already covers {duration}s")
            return
        updated, previous = reserved

        try:
            await ctx.run(self.backend.extend_visibility(message_id, duration))
        except asyncio.CancelledError:
            await asyncio.shield(self.table.rollback_extend(updated, previous))
            raise
        except LeaseBusError:
            await self.table.rollback_extend(updated, previous)
            raise
        except Exception as e:
            await self.table.rollback_extend(updated, previous)
            raise TransportError(
                f"Extending {message_id} by {duration}s failed: {e}", cause=e
            ) from e

        logger.debug(f"Extended {message_id} by {duration}s")
