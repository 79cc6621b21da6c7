"""
Store sync against the SQL-backed user store (in-memory SQLite).
"""
import asyncio
from datetime import timedelta

import pytest

from roomkeeper.core.errors import PersistenceWriteFailure
from roomkeeper.core.metrics import persistence_failures_total
from roomkeeper.features.rooms import service as room_service
from roomkeeper.features.subscriptions.store_sync import PendingWrites, RoomOwnershipStoreSync
from roomkeeper.features.users import service as user_service
from roomkeeper.features.users.store import SqlUserStore
from roomkeeper.models.plan import Plan
from roomkeeper.tests.mocks import T0, InMemoryUserStore


@pytest.mark.asyncio
async def test_pull_missing_record_is_empty(db):
    sync = RoomOwnershipStoreSync("user_ghost", SqlUserStore())
    fields = await sync.pull()
    assert fields.plan is Plan.NONE
    assert fields.room_limit == 0
    assert fields.is_in_grace_period is False
    assert await sync.owned_rooms() == []


@pytest.mark.asyncio
async def test_push_and_pull_round_trip(db):
    sync = RoomOwnershipStoreSync("user_alice", SqlUserStore())
    deadline = T0 + timedelta(days=14)

    await sync.push(Plan.TIER3, 3)
    await sync.push_grace_period(deadline)
    fields = await sync.pull()

    assert fields.plan is Plan.TIER3
    assert fields.room_limit == 3
    assert fields.is_in_grace_period is True
    assert fields.grace_period_end == deadline

    await sync.clear_grace_period()
    fields = await sync.pull()
    assert fields.is_in_grace_period is False
    assert fields.grace_period_end is None


def test_grace_deadline_is_stored_as_iso8601(db):
    user_service.update_user_fields("user_alice", {"subscriptionGracePeriodEnd": T0, "isInGracePeriod": True})
    from roomkeeper.core.database import get_db_session, users
    from sqlalchemy import select

    with get_db_session() as session:
        stored = session.execute(
            select(users.c.subscription_grace_period_end).where(users.c.user_id == "user_alice")
        ).scalar_one()
    assert stored == "2025-03-01T12:00:00Z"


def test_unknown_wire_field_is_rejected(db):
    from roomkeeper.core.errors import ValidationError

    with pytest.raises(ValidationError):
        user_service.update_user_fields("user_alice", {"plan": "room01"})


@pytest.mark.asyncio
async def test_reset_after_grace_clears_rooms_and_plan(db):
    room_a = room_service.create_room("user_alice", "Kitchen")
    room_service.create_room("user_alice", "Garage")
    sync = RoomOwnershipStoreSync("user_alice", SqlUserStore())
    await sync.push(Plan.TIER2, 2)
    assert room_a in await sync.owned_rooms()

    await sync.reset_after_grace()
    record = user_service.get_user_record("user_alice")
    assert record.owned_rooms == []
    assert record.subscription_plan == "none"
    assert record.room_limit == 0
    assert record.is_in_grace_period is False


def test_removing_last_room_stores_null(db):
    room_id = room_service.create_room("user_alice")
    ok, error = room_service.delete_room(room_id)
    assert ok and error is None
    assert user_service.get_user_record("user_alice").owned_rooms == []
    assert room_service.delete_room(room_id) == (False, f"Room {room_id} not found")


@pytest.mark.asyncio
async def test_write_failure_raises_persistence_failure():
    store = InMemoryUserStore()
    store.fail_updates = True
    sync = RoomOwnershipStoreSync("user_alice", store)

    with pytest.raises(PersistenceWriteFailure):
        await sync.push(Plan.TIER1, 1)
    assert persistence_failures_total.value({"operation": "push"}) == 1


@pytest.mark.asyncio
async def test_pending_writes_are_ordered_and_flushable():
    order = []
    failures = []
    writes = PendingWrites("user_alice", lambda op, e: failures.append((op, str(e))))

    async def slow():
        await asyncio.sleep(0.01)
        order.append("first")

    async def fast():
        order.append("second")

    async def broken():
        raise RuntimeError("disk full")

    first = writes.submit("first", slow)
    writes.submit("second", fast)
    third = writes.submit("third", broken)
    await writes.flush()

    assert order == ["first", "second"]
    assert first.result() is True
    assert third.result() is False
    assert failures == [("third", "disk full")]
    assert writes.pending == 0
