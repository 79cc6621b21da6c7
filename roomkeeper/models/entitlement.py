"""
roomkeeper/models/entitlement.py

Billing entitlement snapshot.

An entitlement is a grant issued by the billing provider for one tier. The
provider keeps expired entitlements around, so a customer's set contains both
current and historical grants. Snapshots are immutable and hashable so a
customer's entitlements travel as a ``frozenset``.
"""

from datetime import datetime, timezone
from typing import FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, field_validator

from roomkeeper.models.plan import Plan


class Entitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    entitlement_id: str
    is_active: bool
    latest_purchase_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    product_identifier: Optional[str] = None

    @field_validator("latest_purchase_date", "expiration_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive provider timestamps are UTC; mixing them with aware ones breaks ordering
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def plan(self) -> Optional[Plan]:
        """Tier this entitlement grants, or None for identifiers we don't sell."""
        return Plan.from_entitlement_id(self.entitlement_id)

    @property
    def event_date(self) -> Optional[datetime]:
        """
        Timestamp of the most recent thing that happened to this entitlement.

        Active: last purchase/renewal. Inactive: expiration (the cancellation
        took effect then).
        """
        if self.is_active:
            return self.latest_purchase_date
        return self.expiration_date


EntitlementSet = FrozenSet[Entitlement]
