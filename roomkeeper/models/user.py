"""
roomkeeper/models/user.py

Durable user record as the mobile client stores it.

Field aliases are the record's wire keys, so ``model_dump(by_alias=True)``
yields exactly the key-value document clients read.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from roomkeeper.models.plan import Plan


class SubscriptionFields(BaseModel):
    """Subscription-related slice of the user record (what ``pull`` returns)."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    subscription_plan: Optional[str] = Field(default=None, alias="subscriptionPlan")
    room_limit: int = Field(default=0, alias="roomLimit")
    grace_period_end: Optional[datetime] = Field(default=None, alias="subscriptionGracePeriodEnd")
    is_in_grace_period: bool = Field(default=False, alias="isInGracePeriod")

    @property
    def plan(self) -> Plan:
        return Plan.from_stored(self.subscription_plan)


class UserRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: Optional[str] = None
    owned_rooms: List[str] = Field(default_factory=list, alias="ownedRooms")
    subscription_plan: Optional[str] = Field(default=None, alias="subscriptionPlan")
    room_limit: int = Field(default=0, alias="roomLimit")
    grace_period_end: Optional[datetime] = Field(default=None, alias="subscriptionGracePeriodEnd")
    is_in_grace_period: bool = Field(default=False, alias="isInGracePeriod")

    @field_validator("owned_rooms", mode="before")
    @classmethod
    def _null_rooms_are_empty(cls, value):
        # The record stores null once every room has been removed
        return value or []

    @property
    def plan(self) -> Plan:
        return Plan.from_stored(self.subscription_plan)

    @property
    def owned_room_count(self) -> int:
        return len(self.owned_rooms)

    def subscription_fields(self) -> SubscriptionFields:
        return SubscriptionFields(
            subscription_plan=self.subscription_plan,
            room_limit=self.room_limit,
            grace_period_end=self.grace_period_end,
            is_in_grace_period=self.is_in_grace_period,
        )
