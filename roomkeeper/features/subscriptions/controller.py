"""
roomkeeper/features/subscriptions/controller.py

Plan transition controller.

Applies a resolved plan to one user's SubscriptionState, classifies the
transition and triggers its effects:
- cancel:     start the grace period, persist it, arm the expiry timer
- activate:   clear the grace period, persist, drop the pending timer
- otherwise:  persist plan/limit only

Every transition persists {subscriptionPlan, roomLimit} and emits exactly one
event. The in-memory mutation and the event happen synchronously, before any
durable write completes; writes are queued on PendingWrites and failures
surface as error events without rolling back memory (billing is the truth,
the record is a backup).
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Any
import logging

from roomkeeper.core.metrics import grace_periods_started_total, subscription_transitions_total
from roomkeeper.features.subscriptions.grace_period import GraceExpiryReport, GracePeriodScheduler
from roomkeeper.features.subscriptions.store_sync import PendingWrites, RoomOwnershipStoreSync
from roomkeeper.models.plan import Plan
from roomkeeper.models.subscription import EventType, SubscriptionEvent, SubscriptionState, TransitionKind
from roomkeeper.models.user import SubscriptionFields
from roomkeeper.realtime.hub import SubscriptionEventBus


logger = logging.getLogger(__name__)


def classify_transition(previous: Plan, new: Plan) -> TransitionKind:
    if previous.is_active and not new.is_active:
        return TransitionKind.CANCEL
    if not previous.is_active and new.is_active:
        return TransitionKind.ACTIVATE
    if new > previous:
        return TransitionKind.UPGRADE
    if new < previous:
        return TransitionKind.DOWNGRADE
    return TransitionKind.NO_OP


class PlanTransitionController:
    """Single writer of one user's SubscriptionState."""

    def __init__(
        self,
        user_id: str,
        store_sync: RoomOwnershipStoreSync,
        scheduler: GracePeriodScheduler,
        writes: PendingWrites,
        bus: SubscriptionEventBus,
        clock: Callable[[], datetime],
        grace_period_days: int,
        owned_room_count: Callable[[], int],
    ):
        self.user_id = user_id
        self.state = SubscriptionState()
        self._store_sync = store_sync
        self._scheduler = scheduler
        self._writes = writes
        self._bus = bus
        self._clock = clock
        self._grace_period = timedelta(days=grace_period_days)
        self._owned_room_count = owned_room_count

    def apply_resolved_plan(self, plan: Plan) -> TransitionKind:
        previous_plan = self.state.current_plan

        self.state.current_plan = plan
        self.state.has_active_subscription = plan is not Plan.NONE
        kind = classify_transition(previous_plan, plan)

        subscription_transitions_total.inc(labels={"kind": kind.value})
        logger.info(
            "[subscriptions] plan resolved",
            extra={
                "user_id": self.user_id,
                "previous_plan": previous_plan.name,
                "plan": plan.name,
                "transition": kind.value,
            },
        )

        if kind is TransitionKind.CANCEL:
            self._start_grace_period()
        elif kind is TransitionKind.ACTIVATE:
            self._clear_grace_period()

        self._writes.submit("push", lambda: self._store_sync.push(plan, plan.room_limit))

        if kind is TransitionKind.CANCEL:
            self._emit(
                EventType.CANCELLED,
                {
                    "grace_period_end": self.state.grace_period_end.isoformat(),
                    "room_count": self._owned_room_count(),
                },
            )
        elif kind is TransitionKind.ACTIVATE:
            self._emit(EventType.REACTIVATED, {"previous_plan": previous_plan.name})
        else:
            self._emit(EventType.UPDATED, {"transition": kind.value, "previous_plan": previous_plan.name})
        return kind

    def _start_grace_period(self) -> None:
        deadline = self._clock() + self._grace_period
        self.state.grace_period_end = deadline
        self.state.is_in_grace_period = True
        grace_periods_started_total.inc()
        logger.warning(
            "[subscriptions] subscription cancelled, grace period started",
            extra={"user_id": self.user_id, "grace_period_end": deadline.isoformat()},
        )
        self._writes.submit("push_grace_period", lambda: self._store_sync.push_grace_period(deadline))
        self._scheduler.schedule_check(deadline)

    def _clear_grace_period(self) -> None:
        had_grace = self.state.is_in_grace_period
        self.state.grace_period_end = None
        self.state.is_in_grace_period = False
        # The fire-time recheck also covers a timer that slips through
        self._scheduler.cancel()
        self._writes.submit("clear_grace_period", self._store_sync.clear_grace_period)
        if had_grace:
            logger.info("[subscriptions] resubscribed during grace period", extra={"user_id": self.user_id})

    def adopt_stored(self, fields: SubscriptionFields, announce: bool = True) -> None:
        """
        Seed state from the durable record when no billing signal exists yet.

        No lifecycle effects and no writes; a stored grace deadline re-arms the
        expiry timer. With ``announce`` off (session load) no event is published.
        """
        plan = fields.plan
        self.state.current_plan = plan
        self.state.has_active_subscription = plan is not Plan.NONE
        self.state.is_in_grace_period = fields.is_in_grace_period
        self.state.grace_period_end = fields.grace_period_end if fields.is_in_grace_period else None
        logger.info(
            "[subscriptions] state seeded from durable record",
            extra={"user_id": self.user_id, "plan": plan.name, "is_in_grace_period": fields.is_in_grace_period},
        )
        self.rearm_grace_timer()
        if announce:
            self._emit(EventType.UPDATED, {"transition": TransitionKind.NO_OP.value, "source": "store"})

    def rearm_grace_timer(self) -> None:
        if self.state.is_in_grace_period and self.state.grace_period_end and not self._scheduler.is_scheduled:
            self._scheduler.schedule_check(self.state.grace_period_end)

    def complete_grace_expiry(self, report: GraceExpiryReport) -> None:
        """Reset to the unsubscribed baseline after the grace-period purge."""
        self._scheduler.cancel()
        self.state.current_plan = Plan.NONE
        self.state.has_active_subscription = False
        self.state.grace_period_end = None
        self.state.is_in_grace_period = False
        self._writes.submit("reset_after_grace", self._store_sync.reset_after_grace)
        logger.warning(
            "[subscriptions] grace period expired, subscription reset",
            extra={"user_id": self.user_id, "deleted": len(report.deleted), "failed": len(report.failed)},
        )
        self._emit(EventType.ROOMS_DELETED, report.to_payload())

    def reset(self) -> None:
        """Tear down for sign-out/account deletion: no grace period, no plan, no timer."""
        self._scheduler.cancel()
        self.state = SubscriptionState()

    def emit_error(self, code: str, message: str, **extra: Any) -> None:
        self._emit(EventType.ERROR, {"code": code, "message": message, **extra})

    def _emit(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        event = SubscriptionEvent(
            type=event_type,
            user_id=self.user_id,
            payload={**payload, "state": self.state.to_public()},
        )
        self._bus.publish(event)
