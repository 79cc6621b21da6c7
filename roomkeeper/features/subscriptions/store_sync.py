"""
Room ownership store sync.

Two-way bridge between in-memory subscription state and the durable user
record. Billing-derived state always wins: the record is a cache that is
written after every transition and only read back (``pull``) when no billing
signal has been applied yet in this session.

Durable writes are fire-and-forget from the transition's point of view but
never untracked: PendingWrites chains each user's writes so they land in
submission order, reports failures, and lets callers await completion.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set

from roomkeeper.core.errors import PersistenceWriteFailure
from roomkeeper.core.metrics import persistence_failures_total
from roomkeeper.features.users.store import UserStore
from roomkeeper.models.plan import Plan
from roomkeeper.models.user import SubscriptionFields

logger = logging.getLogger(__name__)


class RoomOwnershipStoreSync:
    """Reads and writes one user's subscription fields in the durable store."""

    def __init__(self, user_id: str, store: UserStore):
        self.user_id = user_id
        self._store = store

    async def pull(self) -> SubscriptionFields:
        record = await self._store.get(self.user_id)
        if record is None:
            return SubscriptionFields()
        return record.subscription_fields()

    async def owned_rooms(self) -> List[str]:
        record = await self._store.get(self.user_id)
        return list(record.owned_rooms) if record else []

    async def push(self, plan: Plan, room_limit: int) -> None:
        await self._write("push", {"subscriptionPlan": plan.product_id, "roomLimit": room_limit})

    async def push_grace_period(self, grace_period_end: datetime) -> None:
        await self._write(
            "push_grace_period",
            {"subscriptionGracePeriodEnd": grace_period_end, "isInGracePeriod": True},
        )

    async def clear_grace_period(self) -> None:
        await self._write(
            "clear_grace_period",
            {"subscriptionGracePeriodEnd": None, "isInGracePeriod": False},
        )

    async def reset_after_grace(self) -> None:
        await self._write(
            "reset_after_grace",
            {
                "subscriptionPlan": Plan.NONE.product_id,
                "roomLimit": 0,
                "ownedRooms": None,
                "subscriptionGracePeriodEnd": None,
                "isInGracePeriod": False,
            },
        )

    async def _write(self, operation: str, updates: dict) -> None:
        try:
            await self._store.update(self.user_id, updates)
        except Exception as e:
            persistence_failures_total.inc(labels={"operation": operation})
            raise PersistenceWriteFailure(f"{operation} failed for user {self.user_id}: {e}") from e
        logger.info(
            "[store_sync] durable write applied",
            extra={"user_id": self.user_id, "operation": operation, "fields": sorted(updates)},
        )


class PendingWrites:
    """Ordered, awaitable queue of one user's durable writes."""

    def __init__(self, user_id: str, on_failure: Callable[[str, Exception], None]):
        self.user_id = user_id
        self._on_failure = on_failure
        self._tail: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, operation: str, write: Callable[[], Awaitable[None]]) -> "asyncio.Task[bool]":
        """Schedule ``write`` after every previously submitted write; resolves to success."""
        previous = self._tail

        async def _run() -> bool:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                await write()
            except Exception as e:
                self._on_failure(operation, e)
                return False
            return True

        task = asyncio.create_task(_run(), name=f"durable-write:{self.user_id}:{operation}")
        self._tail = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait until every submitted write has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
