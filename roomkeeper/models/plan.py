"""
roomkeeper/models/plan.py

Room subscription plans.

Plans are totally ordered by room limit. A plan is derived purely from a
store product identifier or a billing entitlement identifier; it has no
identity of its own.
"""

from enum import Enum
from typing import Optional

from roomkeeper.core.config import settings


class Plan(Enum):
    """
    Subscription tier with its room quota.

    The value is what gets written to the durable record's
    ``subscriptionPlan`` field.
    """
    NONE = "none"
    TIER1 = "room01"
    TIER2 = "room02"
    TIER3 = "room03"
    TIER4 = "room04"
    TIER5 = "room05"

    @property
    def room_limit(self) -> int:
        return _ROOM_LIMITS[self]

    @property
    def display_name(self) -> str:
        if self is Plan.NONE:
            return "No Subscription"
        return f"{self.room_limit} Room Plan"

    @property
    def monthly_price(self) -> str:
        return _MONTHLY_PRICES[self]

    @property
    def product_id(self) -> str:
        if self is Plan.NONE:
            return "none"
        return f"{settings.PRODUCT_ID_PREFIX}.{self.value}"

    @property
    def entitlement_id(self) -> Optional[str]:
        if self is Plan.NONE:
            return None
        return f"{self.room_limit}_room_access"

    @property
    def is_active(self) -> bool:
        return self is not Plan.NONE

    def __lt__(self, other: "Plan") -> bool:
        if not isinstance(other, Plan):
            return NotImplemented
        return self.room_limit < other.room_limit

    def __le__(self, other: "Plan") -> bool:
        if not isinstance(other, Plan):
            return NotImplemented
        return self.room_limit <= other.room_limit

    def __gt__(self, other: "Plan") -> bool:
        if not isinstance(other, Plan):
            return NotImplemented
        return self.room_limit > other.room_limit

    def __ge__(self, other: "Plan") -> bool:
        if not isinstance(other, Plan):
            return NotImplemented
        return self.room_limit >= other.room_limit

    @classmethod
    def from_product_id(cls, product_id: Optional[str]) -> "Plan":
        """Map a store product identifier to a plan; unknown ids map to NONE."""
        if not product_id:
            return cls.NONE
        prefix = f"{settings.PRODUCT_ID_PREFIX}."
        if not product_id.startswith(prefix):
            return cls.NONE
        suffix = product_id[len(prefix):]
        for plan in cls:
            if plan is not cls.NONE and plan.value == suffix:
                return plan
        return cls.NONE

    @classmethod
    def from_entitlement_id(cls, entitlement_id: str) -> Optional["Plan"]:
        """Map a billing entitlement identifier (``3_room_access``) to a plan, or None if unknown."""
        return _BY_ENTITLEMENT_ID.get(entitlement_id)

    @classmethod
    def from_stored(cls, value: Optional[str]) -> "Plan":
        """Decode the durable record's ``subscriptionPlan`` (product id, "none" or null)."""
        if value is None or value == cls.NONE.value:
            return cls.NONE
        return cls.from_product_id(value)


_ROOM_LIMITS = {
    Plan.NONE: 0,
    Plan.TIER1: 1,
    Plan.TIER2: 2,
    Plan.TIER3: 3,
    Plan.TIER4: 4,
    Plan.TIER5: 5,
}

_MONTHLY_PRICES = {
    Plan.NONE: "$0",
    Plan.TIER1: "$9.99",
    Plan.TIER2: "$19.98",
    Plan.TIER3: "$29.97",
    Plan.TIER4: "$39.96",
    Plan.TIER5: "$49.95",
}

_BY_ENTITLEMENT_ID = {plan.entitlement_id: plan for plan in Plan if plan is not Plan.NONE}


def plan_catalogue() -> list:
    """Purchasable plans in ascending order, as plain dicts for clients."""
    return [
        {
            "plan": plan.name,
            "product_id": plan.product_id,
            "display_name": plan.display_name,
            "room_limit": plan.room_limit,
            "monthly_price": plan.monthly_price,
        }
        for plan in sorted(p for p in Plan if p is not Plan.NONE)
    ]
