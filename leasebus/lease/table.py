import asyncio
import time
from typing import Callable, Dict, List, Optional, Set, Tuple
from leasebus.core.errors import LeaseNotFound
from leasebus.core.models import Lease, LeaseState, RawMessage


class LeaseTable:
    """In-flight leases keyed by message id.

    Every method holds the lock only for in-memory bookkeeping; callers do
    backend I/O between a reservation and its finalize/rollback.

    Ids dropped as poison are kept until the table is cleared, so the set
    grows with the number of poison messages seen by one subscription.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        # message_id -> Lease (Pending or Expired)
        self._leases: Dict[str, Lease] = {}
        # message_id -> Lease whose ack is in flight, with its prior state
        self._reserved: Dict[str, Tuple[Lease, LeaseState]] = {}
        # ids dropped as poison; later appearances are ignored
        self._dropped: Set[str] = set()
        self._lock = asyncio.Lock()
        self._clock = clock
        self._closed = False

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._leases)

    async def get(self, message_id: str) -> Optional[Lease]:
        async with self._lock:
            lease = self._leases.get(message_id)
            return lease.model_copy() if lease else None

    async def admit(self, raw: RawMessage, window: float) -> Optional[Lease]:
        """Creates a Pending lease for a message coming from the backend.

        Returns None when the message must not be surfaced: its id was dropped
        as poison, it is already leased, or an ack for it is in flight. An
        Expired lease is replaced and its delivery count carried forward.
        """
        async with self._lock:
            if self._closed:
                return None
            message_id = raw.message_id
            if message_id in self._dropped or message_id in self._reserved:
                return None

            existing = self._leases.get(message_id)
            if existing and existing.state == LeaseState.PENDING:
                return None

            lease = Lease(
                message_id=message_id,
                payload=raw.payload,
                deadline=self._clock() + window,
                delivery_count=existing.delivery_count + 1 if existing else 1,
            )
            self._leases[message_id] = lease
            return lease.model_copy()

    async def reserve_ack(self, message_id: str) -> Lease:
        async with self._lock:
            lease = self._leases.pop(message_id, None)
            if lease is None:
                raise LeaseNotFound(message_id)
            self._reserved[message_id] = (lease, lease.state)
            lease.state = LeaseState.ACKED
            return lease.model_copy()

    async def finalize_ack(self, message_id: str):
        async with self._lock:
            self._reserved.pop(message_id, None)

    async def rollback_ack(self, message_id: str):
        async with self._lock:
            entry = self._reserved.pop(message_id, None)
            if entry is None or self._closed:
                return
            lease, prior_state = entry
            lease.state = prior_state
            self._leases[message_id] = lease

    async def extend(
        self, message_id: str, duration: float
    ) -> Optional[Tuple[Lease, float]]:
        """Moves a Pending lease's deadline to max(deadline, now + duration).

        Returns the updated lease and the previous deadline, or None if the
        deadline did not move.
        """
        async with self._lock:
            lease = self._leases.get(message_id)
            if lease is None or lease.state != LeaseState.PENDING:
                raise LeaseNotFound(message_id)
            target = self._clock() + duration
            if target <= lease.deadline:
                return None
            previous = lease.deadline
            lease.deadline = target
            return lease.model_copy(), previous

    async def rollback_extend(self, updated: Lease, previous: float):
        """Undoes an extension the backend refused, unless it was superseded."""
        async with self._lock:
            lease = self._leases.get(updated.message_id)
            if (
                lease is None
                or lease.delivery_count != updated.delivery_count
                or lease.deadline != updated.deadline
            ):
                return
            lease.deadline = previous

    async def expire_due(self, max_retries: int) -> Tuple[List[Lease], List[Lease]]:
        """Expires every Pending lease past its deadline.

        Returns (to_redeliver, poisoned). A lease is poisoned once it has been
        delivered max_retries times; it leaves the table and its id is never
        admitted again.
        """
        async with self._lock:
            now = self._clock()
            redeliver, poisoned = [], []
            for message_id, lease in list(self._leases.items()):
                if not lease.is_due(now):
                    continue
                lease.state = LeaseState.EXPIRED
                if lease.delivery_count >= max_retries:
                    del self._leases[message_id]
                    self._dropped.add(message_id)
                    poisoned.append(lease.model_copy())
                else:
                    redeliver.append(lease.model_copy())
            return redeliver, poisoned

    async def rearm(self, expired: Lease, window: float) -> Optional[Lease]:
        """Puts an Expired lease the backend would not redeliver back to Pending.

        The attempt counts as a delivery, so a message the backend keeps
        refusing still ends up as poison. Returns None if the lease was
        re-admitted, acked or dropped in the meantime.
        """
        async with self._lock:
            lease = self._leases.get(expired.message_id)
            if (
                lease is None
                or lease.state != LeaseState.EXPIRED
                or lease.delivery_count != expired.delivery_count
            ):
                return None
            lease.state = LeaseState.PENDING
            lease.deadline = self._clock() + window
            lease.delivery_count += 1
            return lease.model_copy()

    async def clear(self):
        async with self._lock:
            self._closed = True
            self._leases.clear()
            self._reserved.clear()
