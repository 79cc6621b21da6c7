"""
roomkeeper/features/entitlements/resolver.py

Current-plan resolution from a customer's entitlement set.

The billing provider keeps every entitlement a customer ever held. The
current plan is decided by the single most recent event across all of them:
a purchase/renewal of an active entitlement selects that tier, an expiration
of an inactive one selects NONE. Recency wins over the activity flag, so a
cancellation beats an older, lower tier that is technically still active.

Ties on the exact same timestamp are broken by (active before expired,
then higher tier first), which makes the result independent of set order.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Tuple
import logging

from roomkeeper.models.entitlement import Entitlement
from roomkeeper.models.plan import Plan


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    plan: Plan
    action: str  # "purchased", "expired" or "none"
    event_date: Optional[datetime]
    entitlement_id: Optional[str]


NO_RESOLUTION = Resolution(plan=Plan.NONE, action="none", event_date=None, entitlement_id=None)


def _rank(entitlement: Entitlement, plan: Plan, event_date: datetime) -> Tuple[datetime, bool, int]:
    return (event_date, entitlement.is_active, plan.room_limit)


def resolve(entitlements: Iterable[Entitlement]) -> Resolution:
    """Resolve the entitlement set and report which event decided it."""
    best: Optional[Tuple[Tuple[datetime, bool, int], Entitlement, Plan]] = None

    for entitlement in entitlements:
        plan = entitlement.plan
        if plan is None:
            logger.info(
                "[entitlements] skipping unknown entitlement",
                extra={"entitlement_id": entitlement.entitlement_id},
            )
            continue

        event_date = entitlement.event_date
        if event_date is None:
            logger.info(
                "[entitlements] skipping entitlement without event date",
                extra={"entitlement_id": entitlement.entitlement_id, "is_active": entitlement.is_active},
            )
            continue

        rank = _rank(entitlement, plan, event_date)
        if best is None or rank > best[0]:
            best = (rank, entitlement, plan)

    if best is None:
        return NO_RESOLUTION

    (event_date, is_active, _), entitlement, plan = best
    if is_active:
        return Resolution(plan=plan, action="purchased", event_date=event_date, entitlement_id=entitlement.entitlement_id)
    return Resolution(plan=Plan.NONE, action="expired", event_date=event_date, entitlement_id=entitlement.entitlement_id)


def resolve_plan(entitlements: Iterable[Entitlement]) -> Plan:
    """Return the customer's current plan (NONE for new or cancelled customers)."""
    return resolve(entitlements).plan
