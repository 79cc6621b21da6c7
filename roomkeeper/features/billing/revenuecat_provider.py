"""
RevenueCat billing provider implementation.

Implements the BillingSource protocol against the RevenueCat REST API (v1):
- GET  /subscribers/{app_user_id}   customer info with all entitlements
- POST /receipts                    record a store purchase
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from roomkeeper.core.config import settings
from roomkeeper.core.errors import BillingQueryFailure, PurchaseCancelled
from roomkeeper.core.metrics import billing_query_failures_total
from roomkeeper.models.entitlement import Entitlement, EntitlementSet
from roomkeeper.models.plan import Plan

logger = logging.getLogger(__name__)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("[billing] unparseable RevenueCat date", extra={"value": value})
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_subscriber(subscriber: Dict[str, Any], now: datetime) -> EntitlementSet:
    """
    Convert a RevenueCat ``subscriber`` object into entitlement snapshots.

    An entitlement is active when it never expires (lifetime), or when its
    expiration or billing-grace expiration is still in the future.
    """
    entitlements = []
    for entitlement_id, raw in (subscriber.get("entitlements") or {}).items():
        expires = _parse_date(raw.get("expires_date"))
        grace_expires = _parse_date(raw.get("grace_period_expires_date"))
        if expires is None:
            is_active = True
        else:
            effective_end = max(expires, grace_expires) if grace_expires else expires
            is_active = effective_end > now
        entitlements.append(
            Entitlement(
                entitlement_id=entitlement_id,
                is_active=is_active,
                latest_purchase_date=_parse_date(raw.get("purchase_date")),
                expiration_date=expires,
                product_identifier=raw.get("product_identifier"),
            )
        )
    return frozenset(entitlements)


class RevenueCatProvider:
    """RevenueCat implementation of BillingSource protocol."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize RevenueCat provider.

        Args:
            api_key: RevenueCat secret API key (defaults to REVENUECAT_API_KEY)
            base_url: API base URL (defaults to REVENUECAT_BASE_URL)
            timeout: Request timeout in seconds
            client: Optional pre-built httpx client (tests inject a MockTransport)
            clock: Returns "now" for activity checks
        """
        self.api_key = api_key or settings.REVENUECAT_API_KEY
        if not self.api_key:
            raise BillingQueryFailure("REVENUECAT_API_KEY not configured")

        self.base_url = (base_url or settings.REVENUECAT_BASE_URL).rstrip("/")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.REVENUECAT_TIMEOUT_SECONDS,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Platform": settings.REVENUECAT_PLATFORM,
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            billing_query_failures_total.inc()
            logger.error("[billing] RevenueCat request failed", extra={"path": path, "error": str(e)})
            raise BillingQueryFailure(f"RevenueCat request failed: {e}") from e

        if response.status_code not in (200, 201):
            billing_query_failures_total.inc()
            logger.error(
                "[billing] RevenueCat returned an error",
                extra={"path": path, "status": response.status_code, "body": response.text[:200]},
            )
            raise BillingQueryFailure(f"RevenueCat returned status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            billing_query_failures_total.inc()
            raise BillingQueryFailure("RevenueCat returned a non-JSON body") from e

    async def get_customer_entitlements(self, customer_id: str) -> EntitlementSet:
        """Fetch all entitlements (active and expired) for a customer."""
        data = await self._request("GET", f"/subscribers/{quote(customer_id, safe='')}")
        entitlements = parse_subscriber(data.get("subscriber") or {}, self._clock())
        logger.info(
            "[billing] fetched customer entitlements",
            extra={
                "user_id": customer_id,
                "active": sorted(e.entitlement_id for e in entitlements if e.is_active),
                "all": sorted(e.entitlement_id for e in entitlements),
            },
        )
        return entitlements

    async def purchase(self, customer_id: str, plan: Plan, fetch_token: Optional[str]) -> EntitlementSet:
        """Post a store receipt for ``plan`` and return the refreshed entitlements."""
        if not fetch_token:
            raise PurchaseCancelled("Purchase cancelled by user")
        if plan is Plan.NONE:
            raise BillingQueryFailure("Cannot purchase the empty plan")

        data = await self._request(
            "POST",
            "/receipts",
            json={
                "app_user_id": customer_id,
                "fetch_token": fetch_token,
                "product_id": plan.product_id,
            },
        )
        return parse_subscriber(data.get("subscriber") or {}, self._clock())

    async def aclose(self) -> None:
        await self._client.aclose()
