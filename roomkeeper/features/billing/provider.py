"""
Billing source protocol.

Defines the interface for the billing provider that owns the customer's
entitlements (RevenueCat in production). The provider is the single source
of truth for subscription status; everything else mirrors it.
"""
from typing import Optional, Protocol

from roomkeeper.models.entitlement import EntitlementSet
from roomkeeper.models.plan import Plan


class BillingSource(Protocol):
    """
    Protocol for billing providers.

    Implementations must:
    - Return the customer's full entitlement set (active and expired)
    - Record purchases and return the post-purchase entitlement set
    - Raise BillingQueryFailure when the provider cannot be reached or
      answers with an error
    """

    async def get_customer_entitlements(self, customer_id: str) -> EntitlementSet:
        """
        Fetch every entitlement the customer has ever held.

        Args:
            customer_id: Provider customer ID (our user id)

        Returns:
            Immutable entitlement snapshot

        Raises:
            BillingQueryFailure: If the provider query fails
        """
        ...

    async def purchase(self, customer_id: str, plan: Plan, fetch_token: Optional[str]) -> EntitlementSet:
        """
        Record a store purchase for ``plan``.

        Args:
            customer_id: Provider customer ID
            plan: Plan being purchased
            fetch_token: Store receipt / purchase token; None when the user
                dismissed the store sheet

        Returns:
            Entitlement snapshot after the purchase

        Raises:
            PurchaseCancelled: If there is no purchase token
            BillingQueryFailure: If the provider rejects or cannot record the purchase
        """
        ...

    async def aclose(self) -> None:
        ...
