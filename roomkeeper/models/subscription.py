"""
roomkeeper/models/subscription.py

In-memory subscription state, transition kinds and observer events.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from roomkeeper.models.plan import Plan


class SubscriptionState(BaseModel):
    """
    Per-user subscription state.

    Owned by the engine and only mutated by the transition controller.
    ``has_active_subscription`` always equals ``current_plan != NONE``.
    """
    current_plan: Plan = Plan.NONE
    has_active_subscription: bool = False
    grace_period_end: Optional[datetime] = None
    is_in_grace_period: bool = False

    @property
    def effective_room_limit(self) -> int:
        # Grace period forces the limit to zero regardless of the stored plan
        if self.is_in_grace_period:
            return 0
        return self.current_plan.room_limit

    def to_public(self) -> Dict[str, Any]:
        return {
            "plan": self.current_plan.name,
            "product_id": self.current_plan.product_id,
            "display_name": self.current_plan.display_name,
            "room_limit": self.current_plan.room_limit,
            "effective_room_limit": self.effective_room_limit,
            "has_active_subscription": self.has_active_subscription,
            "grace_period_end": self.grace_period_end.isoformat() if self.grace_period_end else None,
            "is_in_grace_period": self.is_in_grace_period,
        }


class TransitionKind(str, Enum):
    ACTIVATE = "activate"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCEL = "cancel"
    NO_OP = "no_op"


class EventType(str, Enum):
    UPDATED = "updated"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"
    ROOMS_DELETED = "rooms_deleted"
    ERROR = "error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionEvent(BaseModel):
    """Structured event delivered to observers (UI bindings, WebSocket clients)."""
    model_config = ConfigDict(frozen=True)

    type: EventType
    user_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=_utc_now)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "user_id": self.user_id,
            "ts": self.ts.isoformat(),
            "data": self.payload,
        }


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a public engine operation; failures never escape as exceptions."""
    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    state: Optional[SubscriptionState] = None
    data: Optional[Dict[str, Any]] = None
