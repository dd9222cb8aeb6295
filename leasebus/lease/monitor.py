"""Lease expiry sweep."""

import asyncio
import logging
import random
from typing import Optional
from leasebus.config import LeaseSettings
from leasebus.core.channel import Channel
from leasebus.core.context import Context, background
from leasebus.core.errors import (
    ContextCancelled,
    LeaseBusError,
    PoisonMessage,
    TransportError,
)
from leasebus.core.interfaces import IBrokerBackend
from .table import LeaseTable

logger = logging.getLogger(__name__)


class DeadlineMonitor:
    """Periodically expires overdue leases.

    An expired lease is handed back to the backend for redelivery while it
    has redeliveries left; otherwise it is dropped and reported as poison.
    """

    def __init__(
        self,
        table: LeaseTable,
        backend: IBrokerBackend,
        settings: LeaseSettings,
        errors: Channel,
    ):
        self.table = table
        self.backend = backend
        self.settings = settings
        self.errors = errors

    def next_delay(self) -> float:
        return self.settings.monitor_interval + random.uniform(
            0, self.settings.sweep_jitter
        )

    async def sweep(self, ctx: Optional[Context] = None) -> int:
        """Runs one pass and returns the number of leases it expired."""
        ctx = ctx or background()
        redeliver, poisoned = await self.table.expire_due(self.settings.max_retries)

        for lease in poisoned:
            logger.warning(
                f"Dropping poison message {lease.message_id} after "
                f"{lease.delivery_count} deliveries"
            )
            self.errors.send_nowait(
                PoisonMessage(lease.message_id, lease.delivery_count, lease.payload)
            )

        for lease in redeliver:
            logger.debug(
                f"Lease {lease.message_id} expired (delivery {lease.delivery_count}), "
                "requesting redelivery"
            )
            try:
                await ctx.run(self.backend.make_visible_again(lease.message_id))
                continue
            except ContextCancelled:
                raise
            except LeaseBusError as e:
                logger.warning(f"Redelivery request for {lease.message_id} failed: {e}")
                self.errors.send_nowait(e)
            except Exception as e:
                logger.warning(f"Redelivery request for {lease.message_id} failed: {e}")
                self.errors.send_nowait(
                    TransportError(
                        f"Redelivery request for {lease.message_id} failed: {e}",
                        cause=e,
                    )
                )
            # The backend still holds the message for us; retry on a later sweep
            await self.table.rearm(lease, self.settings.ack_window)

        return len(redeliver) + len(poisoned)

    async def run(self, ctx: Context):
        logger.info(
            f"Deadline monitor started (interval {self.settings.monitor_interval}s, "
            f"jitter {self.settings.sweep_jitter}s)"
        )
        while not ctx.cancelled():
            try:
                expired = await self.sweep(ctx)
                if expired:
                    logger.info(f"Expired {expired} leases")
            except ContextCancelled:
                break
            except Exception as e:
                logger.error(f"Deadline sweep error: {e}", exc_info=True)
                self.errors.send_nowait(
                    TransportError(f"Deadline sweep error: {e}", cause=e)
                )

            try:
                await asyncio.wait_for(ctx.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

        logger.info("Deadline monitor stopped")
