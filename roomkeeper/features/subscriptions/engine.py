"""
Subscription engine.

Application-scoped service (explicit init/dispose) that owns one context per
signed-in user. Each context has a single asyncio.Lock; every operation that
resolves entitlements or mutates subscription state runs under it, including
the grace-period timer's fire path, so a billing delegate push racing a
manual check is applied atomically and in order.

Public operations never raise domain errors; they return OperationResult and
publish events.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, Optional, Set

from roomkeeper.core.config import settings
from roomkeeper.core.errors import (
    AppError,
    BillingQueryFailure,
    DowngradeLimitViolation,
    PermissionError,
    PurchaseCancelled,
    RoomDeletionFailure,
    RoomLimitReached,
)
from roomkeeper.core.logging import new_correlation_id
from roomkeeper.features.billing.provider import BillingSource
from roomkeeper.features.entitlements.resolver import Resolution, resolve
from roomkeeper.features.rooms.service import RoomDirectory
from roomkeeper.features.subscriptions.controller import PlanTransitionController
from roomkeeper.features.subscriptions.grace_period import GracePeriodScheduler, delete_rooms_best_effort
from roomkeeper.features.subscriptions.store_sync import PendingWrites, RoomOwnershipStoreSync
from roomkeeper.features.users.store import UserStore
from roomkeeper.models.entitlement import Entitlement
from roomkeeper.models.plan import Plan
from roomkeeper.models.subscription import OperationResult, SubscriptionState
from roomkeeper.realtime.hub import SubscriptionEventBus

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def downgrade_message(owned: int, plan: Plan) -> str:
    to_delete = owned - plan.room_limit
    noun = "rooms" if to_delete > 1 else "room"
    return (
        f"You currently own {owned} rooms but the {plan.display_name} only allows "
        f"{plan.room_limit}. Please delete {to_delete} {noun} before downgrading."
    )


@dataclass
class _UserContext:
    user_id: str
    lock: asyncio.Lock
    store_sync: RoomOwnershipStoreSync
    writes: PendingWrites
    scheduler: GracePeriodScheduler
    controller: Optional[PlanTransitionController] = None
    owned_rooms: Set[str] = field(default_factory=set)
    loaded: bool = False
    billing_applied: bool = False
    last_event_date: Optional[datetime] = None
    active_ops: int = 0


class SubscriptionEngine:
    """Entitlement reconciliation engine for all signed-in users of this process."""

    def __init__(
        self,
        billing: BillingSource,
        store: UserStore,
        rooms: RoomDirectory,
        bus: Optional[SubscriptionEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        grace_period_days: Optional[int] = None,
    ):
        self._billing = billing
        self._store = store
        self._rooms = rooms
        self.bus = bus or SubscriptionEventBus()
        self._clock = clock or _utc_now
        self._grace_period_days = settings.GRACE_PERIOD_DAYS if grace_period_days is None else grace_period_days
        self._contexts: Dict[str, _UserContext] = {}
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        self._running = True
        logger.info("[engine] started", extra={"grace_period_days": self._grace_period_days})

    async def dispose(self) -> None:
        """Cancel timers, wait for pending durable writes and release the billing client."""
        self._running = False
        contexts = list(self._contexts.values())
        self._contexts.clear()
        for ctx in contexts:
            ctx.scheduler.cancel()
        for ctx in contexts:
            await ctx.writes.flush()
        await self._billing.aclose()
        logger.info("[engine] stopped", extra={"users": len(contexts)})

    def _ensure_running(self) -> None:
        if not self._running:
            raise RuntimeError("SubscriptionEngine is not initialized; call init() first")

    def _context(self, user_id: str) -> _UserContext:
        ctx = self._contexts.get(user_id)
        if ctx is not None:
            return ctx

        store_sync = RoomOwnershipStoreSync(user_id, self._store)

        def _on_write_failure(operation: str, error: Exception) -> None:
            logger.error(
                "[engine] durable write failed",
                extra={"user_id": user_id, "operation": operation, "error": str(error)},
            )
            ctx.controller.emit_error("persistence_write_failed", str(error), operation=operation)

        writes = PendingWrites(user_id, _on_write_failure)
        scheduler = GracePeriodScheduler(user_id, lambda: self._on_grace_deadline(user_id), self._clock)
        ctx = _UserContext(
            user_id=user_id,
            lock=asyncio.Lock(),
            store_sync=store_sync,
            writes=writes,
            scheduler=scheduler,
        )
        ctx.controller = PlanTransitionController(
            user_id=user_id,
            store_sync=store_sync,
            scheduler=scheduler,
            writes=writes,
            bus=self.bus,
            clock=self._clock,
            grace_period_days=self._grace_period_days,
            owned_room_count=lambda: len(ctx.owned_rooms),
        )
        self._contexts[user_id] = ctx
        return ctx

    @asynccontextmanager
    async def _locked(self, user_id: str) -> AsyncIterator[_UserContext]:
        """Hold the lock of the user's live context; a context torn down while waiting is replaced."""
        while True:
            ctx = self._context(user_id)
            ctx.active_ops += 1
            try:
                await ctx.lock.acquire()
            except BaseException:
                ctx.active_ops -= 1
                raise
            if self._contexts.get(user_id) is ctx:
                break
            ctx.lock.release()
            ctx.active_ops -= 1
        try:
            yield ctx
        finally:
            ctx.lock.release()
            ctx.active_ops -= 1
            self._evict_if_idle(ctx)

    def _evict_if_idle(self, ctx: _UserContext) -> None:
        # Only a context indistinguishable from a fresh one is dropped
        if (
            ctx.active_ops
            or ctx.owned_rooms
            or ctx.writes.pending
            or ctx.scheduler.is_scheduled
            or ctx.last_event_date is not None
            or ctx.controller.state != SubscriptionState()
        ):
            return
        if self._contexts.get(ctx.user_id) is ctx:
            del self._contexts[ctx.user_id]

    async def _load(self, ctx: _UserContext) -> None:
        """First use of a context: seed ownership and the stored subscription fields."""
        if ctx.loaded:
            return
        try:
            fields = await ctx.store_sync.pull()
            ctx.owned_rooms = set(await ctx.store_sync.owned_rooms())
        except Exception as e:
            logger.error("[engine] could not load user record", extra={"user_id": ctx.user_id, "error": str(e)})
            return
        ctx.loaded = True
        if not ctx.billing_applied:
            ctx.controller.adopt_stored(fields, announce=False)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, user_id: str) -> SubscriptionState:
        ctx = self._contexts.get(user_id)
        if ctx is None:
            return SubscriptionState()
        return ctx.controller.state.model_copy()

    def owned_rooms(self, user_id: str) -> Set[str]:
        ctx = self._contexts.get(user_id)
        return set(ctx.owned_rooms) if ctx else set()

    def effective_room_limit(self, user_id: str) -> int:
        return self.get_state(user_id).effective_room_limit

    def can_create_room(self, user_id: str) -> bool:
        return len(self.owned_rooms(user_id)) < self.effective_room_limit(user_id)

    def grace_timer(self, user_id: str) -> Optional[GracePeriodScheduler]:
        ctx = self._contexts.get(user_id)
        return ctx.scheduler if ctx else None

    # ------------------------------------------------------------------
    # Billing-driven operations
    # ------------------------------------------------------------------

    async def refresh(self, user_id: str) -> OperationResult:
        """Manual subscription check against the billing provider."""
        self._ensure_running()
        new_correlation_id()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            try:
                entitlements = await self._billing.get_customer_entitlements(user_id)
            except BillingQueryFailure as e:
                return self._failed(ctx, e)
            return self._apply_entitlements(ctx, entitlements, source="manual_check")

    async def handle_entitlements_changed(self, user_id: str, entitlements: Iterable[Entitlement]) -> OperationResult:
        """Billing delegate callback: the provider pushed a new entitlement snapshot."""
        self._ensure_running()
        new_correlation_id()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            return self._apply_entitlements(ctx, frozenset(entitlements), source="delegate")

    async def purchase(self, user_id: str, plan: Plan, fetch_token: Optional[str]) -> OperationResult:
        """Purchase ``plan``; refused up front when it cannot hold the rooms already owned."""
        self._ensure_running()
        new_correlation_id()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            try:
                owned = await ctx.store_sync.owned_rooms()
            except Exception as e:
                logger.error("[engine] could not read owned rooms", extra={"user_id": user_id, "error": str(e)})
                return OperationResult(False, "Could not verify room ownership, try again", "persistence_read_failed")
            ctx.owned_rooms = set(owned)

            if plan.room_limit < len(ctx.owned_rooms):
                error = DowngradeLimitViolation(
                    downgrade_message(len(ctx.owned_rooms), plan),
                    rooms_to_delete=len(ctx.owned_rooms) - plan.room_limit,
                )
                logger.info(
                    "[engine] purchase rejected by downgrade guard",
                    extra={"user_id": user_id, "plan": plan.name, "owned": len(ctx.owned_rooms)},
                )
                return OperationResult(
                    False,
                    error.message,
                    error.code,
                    state=ctx.controller.state.model_copy(),
                    data={"rooms_to_delete": error.rooms_to_delete},
                )

            try:
                entitlements = await self._billing.purchase(user_id, plan, fetch_token)
            except PurchaseCancelled as e:
                return OperationResult(False, e.message, e.code, state=ctx.controller.state.model_copy())
            except BillingQueryFailure as e:
                return self._failed(ctx, e)
            return self._apply_entitlements(ctx, entitlements, source="purchase")

    async def restore_purchases(self, user_id: str) -> OperationResult:
        self._ensure_running()
        new_correlation_id()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            try:
                entitlements = await self._billing.get_customer_entitlements(user_id)
            except BillingQueryFailure as e:
                return self._failed(ctx, e)
            if not entitlements:
                return OperationResult(False, "No purchases to restore", "nothing_to_restore",
                                       state=ctx.controller.state.model_copy())
            return self._apply_entitlements(ctx, entitlements, source="restore")

    def _apply_entitlements(self, ctx: _UserContext, entitlements, source: str) -> OperationResult:
        resolution = resolve(entitlements)
        if self._is_stale(ctx, resolution):
            logger.info(
                "[engine] ignoring stale entitlement snapshot",
                extra={
                    "user_id": ctx.user_id,
                    "source": source,
                    "snapshot_event": resolution.event_date.isoformat() if resolution.event_date else None,
                    "applied_event": ctx.last_event_date.isoformat(),
                },
            )
            return OperationResult(True, "Stale entitlement snapshot ignored", state=ctx.controller.state.model_copy())

        if resolution.event_date is not None:
            ctx.last_event_date = resolution.event_date
        ctx.billing_applied = True
        logger.info(
            "[engine] entitlements resolved",
            extra={
                "user_id": ctx.user_id,
                "source": source,
                "plan": resolution.plan.name,
                "action": resolution.action,
                "entitlement_id": resolution.entitlement_id,
            },
        )
        kind = ctx.controller.apply_resolved_plan(resolution.plan)
        return OperationResult(True, state=ctx.controller.state.model_copy(), data={"transition": kind.value})

    @staticmethod
    def _is_stale(ctx: _UserContext, resolution: Resolution) -> bool:
        # Snapshots carry full history, so a newer one never has an older latest event
        if ctx.last_event_date is None:
            return False
        if resolution.event_date is None:
            return True
        return resolution.event_date < ctx.last_event_date

    def _failed(self, ctx: _UserContext, error: AppError) -> OperationResult:
        logger.error(
            "[engine] operation failed",
            extra={"user_id": ctx.user_id, "error_code": error.code, "error": error.message},
        )
        ctx.controller.emit_error(error.code, error.message)
        return OperationResult(False, error.message, error.code, state=ctx.controller.state.model_copy())

    # ------------------------------------------------------------------
    # Durable store reconciliation
    # ------------------------------------------------------------------

    async def reconcile_from_store(self, user_id: str) -> OperationResult:
        """
        Foreground/manual refresh from the durable record.

        Room ownership is always taken from the record. Subscription fields
        are adopted only when no billing snapshot has been applied in this
        session; billing-derived state is never overridden.
        """
        self._ensure_running()
        new_correlation_id()
        async with self._locked(user_id) as ctx:
            try:
                fields = await ctx.store_sync.pull()
                ctx.owned_rooms = set(await ctx.store_sync.owned_rooms())
                ctx.loaded = True
            except Exception as e:
                logger.error("[engine] pull failed", extra={"user_id": user_id, "error": str(e)})
                ctx.controller.emit_error("persistence_read_failed", str(e))
                return OperationResult(False, "Could not read the user record", "persistence_read_failed",
                                       state=ctx.controller.state.model_copy())

            if ctx.billing_applied:
                logger.info("[engine] billing state is fresher than the record, keeping it", extra={"user_id": user_id})
                ctx.controller.rearm_grace_timer()
                return OperationResult(True, "Billing state kept", state=ctx.controller.state.model_copy())

            ctx.controller.adopt_stored(fields)
            return OperationResult(True, state=ctx.controller.state.model_copy())

    # ------------------------------------------------------------------
    # Grace-period expiry
    # ------------------------------------------------------------------

    async def _on_grace_deadline(self, user_id: str) -> None:
        ctx = self._contexts.get(user_id)
        if ctx is None:
            return
        async with ctx.lock:
            if self._contexts.get(user_id) is not ctx:
                return
            await self.expire_grace_period(ctx)

    async def expire_grace_period(self, ctx: _UserContext) -> None:
        """Fire-time recheck and purge. Caller holds ``ctx.lock``."""
        if ctx.controller.state.has_active_subscription:
            logger.info("[engine] grace deadline reached but user resubscribed", extra={"user_id": ctx.user_id})
            return
        if not ctx.controller.state.is_in_grace_period:
            logger.info("[engine] grace deadline reached outside a grace period", extra={"user_id": ctx.user_id})
            return

        try:
            room_ids = await ctx.store_sync.owned_rooms()
        except Exception as e:
            logger.error("[engine] using cached room list for purge", extra={"user_id": ctx.user_id, "error": str(e)})
            room_ids = sorted(ctx.owned_rooms)

        report = await delete_rooms_best_effort(ctx.user_id, room_ids, self._rooms)
        ctx.owned_rooms.clear()
        ctx.controller.complete_grace_expiry(report)

    async def run_grace_check(self, user_id: str) -> None:
        """Run the grace-deadline check now, as if the timer had fired."""
        self._ensure_running()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            await self.expire_grace_period(ctx)

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def create_room(self, user_id: str, name: Optional[str] = None) -> OperationResult:
        self._ensure_running()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            limit = ctx.controller.state.effective_room_limit
            if len(ctx.owned_rooms) >= limit:
                error = RoomLimitReached(
                    f"You own {len(ctx.owned_rooms)} of {limit} rooms allowed by your plan"
                )
                return OperationResult(False, error.message, error.code, state=ctx.controller.state.model_copy())
            room_id = await self._rooms.create_room(user_id, name)
            ctx.owned_rooms.add(room_id)
            logger.info("[engine] room created", extra={"user_id": user_id, "room_id": room_id})
            return OperationResult(True, state=ctx.controller.state.model_copy(), data={"room_id": room_id})

    async def delete_room(self, user_id: str, room_id: str) -> OperationResult:
        self._ensure_running()
        async with self._locked(user_id) as ctx:
            await self._load(ctx)
            if room_id not in ctx.owned_rooms:
                denied = PermissionError("You can only delete rooms you have created")
                return OperationResult(False, denied.message, denied.code)
            success, error = await self._rooms.delete_room(room_id)
            if not success:
                failure = RoomDeletionFailure(error or "Room deletion failed", room_id=room_id)
                return OperationResult(False, failure.message, failure.code)
            ctx.owned_rooms.discard(room_id)
            return OperationResult(True, data={"room_id": room_id})

    # ------------------------------------------------------------------
    # Session teardown
    # ------------------------------------------------------------------

    async def flush(self, user_id: Optional[str] = None) -> None:
        """Wait for pending durable writes (one user, or all)."""
        if user_id is None:
            contexts = list(self._contexts.values())
        else:
            contexts = [self._contexts[user_id]] if user_id in self._contexts else []
        for ctx in contexts:
            await ctx.writes.flush()
            self._evict_if_idle(ctx)

    async def sign_out(self, user_id: str) -> None:
        ctx = self._contexts.get(user_id)
        if ctx is None:
            return
        ctx.active_ops += 1
        try:
            async with ctx.lock:
                ctx.controller.reset()
                await ctx.writes.flush()
                # Waiters on this lock see the context gone and start a fresh one
                if self._contexts.get(user_id) is ctx:
                    del self._contexts[user_id]
        finally:
            ctx.active_ops -= 1
        logger.info("[engine] user signed out", extra={"user_id": user_id})

    async def delete_account(self, user_id: str) -> OperationResult:
        self._ensure_running()
        await self.sign_out(user_id)
        try:
            deleted = await self._store.delete(user_id)
        except Exception as e:
            logger.error("[engine] account deletion failed", extra={"user_id": user_id, "error": str(e)})
            return OperationResult(False, f"Failed to delete user data: {e}", "persistence_write_failed")
        if not deleted:
            return OperationResult(False, "User data not found", "not_found")
        return OperationResult(True)
