"""
Subscription engine end-to-end scenarios with fake billing, store and rooms.

Covers the lifecycle: activation, cancellation into a grace period, the
grace-period purge, resubscription during grace, the downgrade guard,
reconciliation from the durable record and session teardown.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from roomkeeper.core.metrics import grace_timers_live
from roomkeeper.features.subscriptions.engine import SubscriptionEngine
from roomkeeper.models.entitlement import Entitlement
from roomkeeper.models.plan import Plan
from roomkeeper.models.subscription import EventType
from roomkeeper.tests.mocks import T0, FakeBilling, FakeClock, FakeRooms, InMemoryUserStore, billing_down, ent


USER = "user_alice"


class World:
    def __init__(self, grace_period_days: int = 14):
        self.clock = FakeClock()
        self.billing = FakeBilling()
        self.store = InMemoryUserStore()
        self.rooms = FakeRooms(self.store)
        self.engine = SubscriptionEngine(
            billing=self.billing,
            store=self.store,
            rooms=self.rooms,
            clock=self.clock,
            grace_period_days=grace_period_days,
        )
        self.events = []
        self.engine.bus.subscribe(USER, self.events.append)

    def types(self):
        return [e.type for e in self.events]

    def record(self):
        return self.store.records[USER]

    async def subscribed(self, plan: Plan, rooms=()):
        """Bring the user to an active ``plan`` owning ``rooms``."""
        for room_id in rooms:
            await self.rooms.add(USER, room_id)
        self.billing.set(ent(plan, active=True, at=T0 - timedelta(days=10)))
        result = await self.engine.refresh(USER)
        assert result.success
        await self.engine.flush(USER)
        self.events.clear()

    async def cancelled(self, plan: Plan):
        self.billing.set(ent(plan, active=False, at=self.clock()))
        result = await self.engine.refresh(USER)
        await self.engine.flush(USER)
        return result


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def world():
    w = World()
    await w.engine.init()
    yield w
    await w.engine.dispose()


@pytest.mark.asyncio
async def test_operations_require_init():
    w = World()
    with pytest.raises(RuntimeError):
        await w.engine.refresh(USER)


@pytest.mark.asyncio
async def test_first_purchase_activates_plan(world):
    world.billing.after_purchase = frozenset({ent(Plan.TIER2, active=True, at=T0)})
    result = await world.engine.purchase(USER, Plan.TIER2, "fetch-token-1")
    await world.engine.flush()

    assert result.success
    assert result.data["transition"] == "activate"
    assert world.engine.get_state(USER).current_plan is Plan.TIER2
    assert world.types() == [EventType.REACTIVATED]
    assert world.record()["roomLimit"] == 2
    assert world.billing.purchases == [(USER, Plan.TIER2, "fetch-token-1")]


@pytest.mark.asyncio
async def test_cancellation_starts_single_grace_timer(world):
    await world.subscribed(Plan.TIER2, rooms=["A", "B"])
    await world.cancelled(Plan.TIER2)

    state = world.engine.get_state(USER)
    assert state.current_plan is Plan.NONE
    assert state.is_in_grace_period is True
    assert state.grace_period_end == T0 + timedelta(days=14)
    assert world.engine.effective_room_limit(USER) == 0
    assert world.engine.grace_timer(USER).deadline == T0 + timedelta(days=14)

    assert world.types() == [EventType.CANCELLED]
    assert world.events[0].payload["room_count"] == 2
    assert world.record()["isInGracePeriod"] is True
    assert world.record()["ownedRooms"] == ["A", "B"]

    # A second identical snapshot neither re-arms nor re-announces
    await world.engine.refresh(USER)
    await settle()
    assert world.types() == [EventType.CANCELLED, EventType.UPDATED]
    assert grace_timers_live.value() == 1


@pytest.mark.asyncio
async def test_grace_expiry_deletes_rooms_and_resets_record(world):
    await world.subscribed(Plan.TIER2, rooms=["A", "B"])
    await world.cancelled(Plan.TIER2)

    world.clock.advance(days=14)
    await world.engine.run_grace_check(USER)
    await world.engine.flush(USER)

    assert sorted(world.rooms.deleted) == ["A", "B"]
    state = world.engine.get_state(USER)
    assert state.current_plan is Plan.NONE
    assert state.is_in_grace_period is False
    assert state.grace_period_end is None
    assert world.engine.owned_rooms(USER) == set()

    record = world.record()
    assert record["subscriptionPlan"] == "none"
    assert record["roomLimit"] == 0
    assert record["ownedRooms"] is None
    assert record["isInGracePeriod"] is False
    assert record["subscriptionGracePeriodEnd"] is None

    assert world.types()[-1] is EventType.ROOMS_DELETED
    assert sorted(world.events[-1].payload["deleted_rooms"]) == ["A", "B"]
    assert not world.engine.grace_timer(USER).is_scheduled


@pytest.mark.asyncio
async def test_timer_fires_and_purges_when_deadline_passes():
    w = World(grace_period_days=0)
    await w.engine.init()
    try:
        await w.subscribed(Plan.TIER1, rooms=["A"])
        await w.cancelled(Plan.TIER1)
        await w.engine.grace_timer(USER).join()
        await w.engine.flush(USER)

        assert w.rooms.deleted == ["A"]
        assert w.types() == [EventType.CANCELLED, EventType.ROOMS_DELETED]
        assert w.record()["ownedRooms"] is None
    finally:
        await w.engine.dispose()


@pytest.mark.asyncio
async def test_failed_room_deletion_does_not_block_reset(world):
    await world.subscribed(Plan.TIER2, rooms=["A", "B"])
    await world.cancelled(Plan.TIER2)
    world.rooms.failing.add("A")

    await world.engine.run_grace_check(USER)
    await world.engine.flush(USER)

    assert world.rooms.deleted == ["B"]
    payload = world.events[-1].payload
    assert payload["failed_rooms"] == [{"room_id": "A", "error": "Room A is locked"}]
    assert world.engine.get_state(USER).current_plan is Plan.NONE
    assert world.record()["isInGracePeriod"] is False


@pytest.mark.asyncio
async def test_resubscribe_during_grace_turns_expiry_into_no_op(world):
    await world.subscribed(Plan.TIER2, rooms=["A", "B"])
    await world.cancelled(Plan.TIER2)

    world.clock.advance(days=5)
    world.billing.set(
        ent(Plan.TIER2, active=False, at=T0),
        ent(Plan.TIER2, active=True, at=world.clock()),
    )
    result = await world.engine.refresh(USER)
    await world.engine.flush(USER)

    assert result.data["transition"] == "activate"
    assert world.types()[-1] is EventType.REACTIVATED
    assert not world.engine.grace_timer(USER).is_scheduled

    # Even a timer that slipped through must not delete anything
    world.clock.advance(days=9)
    await world.engine.run_grace_check(USER)
    assert world.rooms.deleted == []
    assert world.engine.get_state(USER).current_plan is Plan.TIER2
    assert world.record()["isInGracePeriod"] is False


@pytest.mark.asyncio
async def test_downgrade_guard_names_rooms_to_delete(world):
    await world.subscribed(Plan.TIER3, rooms=["A", "B"])

    result = await world.engine.purchase(USER, Plan.TIER1, "fetch-token-2")

    assert result.success is False
    assert result.error_code == "downgrade_limit_violation"
    assert result.message == (
        "You currently own 2 rooms but the 1 Room Plan only allows 1. "
        "Please delete 1 room before downgrading."
    )
    assert result.data == {"rooms_to_delete": 1}
    assert world.billing.purchases == []
    assert world.engine.get_state(USER).current_plan is Plan.TIER3
    assert world.events == []


@pytest.mark.asyncio
async def test_downgrade_allowed_when_rooms_fit(world):
    await world.subscribed(Plan.TIER3, rooms=["A"])
    world.billing.after_purchase = frozenset({
        ent(Plan.TIER3, active=True, at=T0 - timedelta(days=10)),
        ent(Plan.TIER1, active=True, at=T0),
    })

    result = await world.engine.purchase(USER, Plan.TIER1, "fetch-token-3")
    await world.engine.flush(USER)

    assert result.success
    assert result.data["transition"] == "downgrade"
    assert world.record()["roomLimit"] == 1


@pytest.mark.asyncio
async def test_purchase_without_token_is_cancelled(world):
    result = await world.engine.purchase(USER, Plan.TIER1, None)
    assert result.success is False
    assert result.error_code == "purchase_cancelled"
    assert result.message == "Purchase cancelled by user"
    assert world.engine.get_state(USER).current_plan is Plan.NONE


@pytest.mark.asyncio
async def test_billing_failure_leaves_state_and_emits_error(world):
    await world.subscribed(Plan.TIER2)
    world.billing.fail_with = billing_down()

    result = await world.engine.refresh(USER)

    assert result.success is False
    assert result.error_code == "billing_query_failed"
    assert world.engine.get_state(USER).current_plan is Plan.TIER2
    assert world.types() == [EventType.ERROR]
    assert world.events[0].payload["code"] == "billing_query_failed"


@pytest.mark.asyncio
async def test_restore_with_nothing_to_restore(world):
    result = await world.engine.restore_purchases(USER)
    assert result.success is False
    assert result.message == "No purchases to restore"


@pytest.mark.asyncio
async def test_restore_applies_entitlements(world):
    world.billing.set(ent(Plan.TIER4, active=True, at=T0))
    result = await world.engine.restore_purchases(USER)
    assert result.success
    assert world.engine.get_state(USER).current_plan is Plan.TIER4


@pytest.mark.asyncio
async def test_delegate_push_with_older_snapshot_is_ignored(world):
    await world.engine.handle_entitlements_changed(USER, [ent(Plan.TIER3, active=True, at=T0)])
    result = await world.engine.handle_entitlements_changed(
        USER, [ent(Plan.TIER1, active=True, at=T0 - timedelta(days=3))]
    )

    assert result.message == "Stale entitlement snapshot ignored"
    assert world.engine.get_state(USER).current_plan is Plan.TIER3


@pytest.mark.asyncio
async def test_concurrent_checks_are_serialized(world):
    world.billing.set(ent(Plan.TIER2, active=True, at=T0))

    results = await asyncio.gather(
        world.engine.refresh(USER),
        world.engine.handle_entitlements_changed(USER, world.billing.entitlements),
        world.engine.refresh(USER),
    )
    await world.engine.flush(USER)

    assert all(r.success for r in results)
    assert world.types().count(EventType.REACTIVATED) == 1
    assert world.types().count(EventType.UPDATED) == 2


@pytest.mark.asyncio
async def test_pull_does_not_override_billing_plan(world):
    await world.subscribed(Plan.TIER2)
    world.store.records[USER]["subscriptionPlan"] = Plan.TIER5.product_id
    world.store.records[USER]["roomLimit"] = 5

    result = await world.engine.reconcile_from_store(USER)

    assert result.success
    assert result.message == "Billing state kept"
    assert world.engine.get_state(USER).current_plan is Plan.TIER2


@pytest.mark.asyncio
async def test_pull_seeds_state_before_any_billing_signal(world):
    world.store.seed(USER, subscriptionPlan=Plan.TIER3.product_id, roomLimit=3, ownedRooms=["A"])

    result = await world.engine.reconcile_from_store(USER)

    assert result.success
    assert world.engine.get_state(USER).current_plan is Plan.TIER3
    assert world.engine.owned_rooms(USER) == {"A"}
    assert world.engine.can_create_room(USER) is True
    assert world.store.writes == []


@pytest.mark.asyncio
async def test_pulled_expired_grace_period_fires_immediately(world):
    world.store.seed(
        USER,
        subscriptionPlan="none",
        ownedRooms=["A", "B"],
        isInGracePeriod=True,
        subscriptionGracePeriodEnd=T0 - timedelta(hours=1),
    )
    await world.rooms.add(USER, "A")
    await world.rooms.add(USER, "B")

    await world.engine.reconcile_from_store(USER)
    await world.engine.grace_timer(USER).join()
    await world.engine.flush(USER)

    assert sorted(world.rooms.deleted) == ["A", "B"]
    assert world.record()["isInGracePeriod"] is False
    assert world.types()[-1] is EventType.ROOMS_DELETED


@pytest.mark.asyncio
async def test_restart_rearms_stored_grace_deadline_when_refresh_runs_first(world):
    world.store.seed(
        USER,
        subscriptionPlan="none",
        ownedRooms=["A", "B"],
        isInGracePeriod=True,
        subscriptionGracePeriodEnd=T0 - timedelta(days=1),
    )
    await world.rooms.add(USER, "A")
    await world.rooms.add(USER, "B")
    world.billing.set(ent(Plan.TIER2, active=False, at=T0 - timedelta(days=15)))

    await world.engine.refresh(USER)
    await world.engine.reconcile_from_store(USER)
    await world.engine.grace_timer(USER).join()
    await world.engine.flush(USER)

    assert sorted(world.rooms.deleted) == ["A", "B"]
    assert world.engine.get_state(USER).is_in_grace_period is False
    assert world.record()["isInGracePeriod"] is False
    assert world.record()["ownedRooms"] is None


@pytest.mark.asyncio
async def test_restart_with_stored_plan_turns_billing_expiry_into_cancellation(world):
    world.store.seed(USER, subscriptionPlan=Plan.TIER2.product_id, roomLimit=2, ownedRooms=["A", "B"])
    world.billing.set(ent(Plan.TIER2, active=False, at=T0))

    result = await world.engine.refresh(USER)
    await world.engine.flush(USER)

    assert result.data["transition"] == "cancel"
    state = world.engine.get_state(USER)
    assert state.is_in_grace_period is True
    assert state.grace_period_end == T0 + timedelta(days=14)
    assert world.engine.grace_timer(USER).is_scheduled
    assert world.types() == [EventType.CANCELLED]
    assert world.events[0].payload["room_count"] == 2
    assert world.record()["isInGracePeriod"] is True
    assert world.record()["ownedRooms"] == ["A", "B"]


@pytest.mark.asyncio
async def test_restart_with_stored_plan_when_reconcile_runs_first(world):
    world.store.seed(USER, subscriptionPlan=Plan.TIER2.product_id, roomLimit=2, ownedRooms=["A", "B"])
    world.billing.set(ent(Plan.TIER2, active=False, at=T0))

    await world.engine.reconcile_from_store(USER)
    result = await world.engine.refresh(USER)

    assert result.data["transition"] == "cancel"
    assert world.types() == [EventType.UPDATED, EventType.CANCELLED]
    assert world.engine.get_state(USER).is_in_grace_period is True


@pytest.mark.asyncio
async def test_delegate_snapshot_mixing_naive_and_aware_dates_is_applied(world):
    naive = Entitlement(
        entitlement_id=Plan.TIER3.entitlement_id,
        is_active=True,
        latest_purchase_date=datetime(2025, 3, 2, 12, 0),
    )

    result = await world.engine.handle_entitlements_changed(USER, [ent(Plan.TIER1, active=True, at=T0), naive])

    assert result.success
    assert world.engine.get_state(USER).current_plan is Plan.TIER3


@pytest.mark.asyncio
async def test_room_creation_respects_effective_limit(world):
    refused = await world.engine.create_room(USER, "Lounge")
    assert refused.success is False
    assert refused.error_code == "room_limit_reached"

    await world.subscribed(Plan.TIER1)
    created = await world.engine.create_room(USER, "Lounge")
    assert created.success
    assert created.data["room_id"] in world.record()["ownedRooms"]
    assert world.engine.can_create_room(USER) is False

    second = await world.engine.create_room(USER, "Attic")
    assert second.success is False


@pytest.mark.asyncio
async def test_room_creation_refused_during_grace_period(world):
    await world.subscribed(Plan.TIER3, rooms=["A"])
    await world.cancelled(Plan.TIER3)

    result = await world.engine.create_room(USER, "Den")
    assert result.success is False
    assert world.engine.can_create_room(USER) is False


@pytest.mark.asyncio
async def test_delete_room_requires_ownership(world):
    await world.subscribed(Plan.TIER2, rooms=["A"])
    await world.rooms.add("user_bob", "Z")

    denied = await world.engine.delete_room(USER, "Z")
    assert denied.success is False
    assert denied.message == "You can only delete rooms you have created"

    ok = await world.engine.delete_room(USER, "A")
    assert ok.success
    assert world.engine.owned_rooms(USER) == set()


@pytest.mark.asyncio
async def test_sign_out_tears_down_state_and_timer(world):
    await world.subscribed(Plan.TIER2, rooms=["A"])
    await world.cancelled(Plan.TIER2)
    assert grace_timers_live.value() == 1

    await world.engine.sign_out(USER)
    await settle()

    assert grace_timers_live.value() == 0
    assert world.engine.get_state(USER).current_plan is Plan.NONE
    assert world.engine.grace_timer(USER) is None
    assert world.rooms.deleted == []


@pytest.mark.asyncio
async def test_sign_out_racing_refreshes_leaves_a_single_timer(world):
    await world.subscribed(Plan.TIER2, rooms=["A"])
    world.billing.set(ent(Plan.TIER2, active=False, at=T0))

    await asyncio.gather(
        world.engine.refresh(USER),
        world.engine.sign_out(USER),
        world.engine.refresh(USER),
    )
    await world.engine.flush(USER)
    await settle()

    assert grace_timers_live.value() == 1
    assert world.engine.grace_timer(USER).deadline == T0 + timedelta(days=14)
    assert world.engine.get_state(USER).is_in_grace_period is True


@pytest.mark.asyncio
async def test_users_with_nothing_to_track_are_not_retained(world):
    await world.engine.refresh("user_bob")
    await world.engine.create_room("user_carol", "Den")
    await world.engine.flush()

    assert world.engine.grace_timer("user_bob") is None
    assert world.engine.grace_timer("user_carol") is None
    assert world.engine.get_state("user_bob").current_plan is Plan.NONE


@pytest.mark.asyncio
async def test_delete_account_removes_record(world):
    await world.subscribed(Plan.TIER1)
    result = await world.engine.delete_account(USER)
    assert result.success
    assert USER not in world.store.records
    assert (await world.engine.delete_account(USER)).message == "User data not found"


@pytest.mark.asyncio
async def test_dispose_closes_billing_client():
    w = World()
    await w.engine.init()
    await w.engine.dispose()
    assert w.billing.closed is True
