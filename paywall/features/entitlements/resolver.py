"""
Entitlement resolver: read-through / write-through cache over the billing query.

Hot path: a fresh row is returned verbatim with no provider call and no
write. Miss or expired row: one billing query, one write-back whose window
depends on the outcome, and the computed decision is returned.

There is no lock between the read and the write-back. Two concurrent misses
for one key both query and both write; the rows they write are equivalent and
the store overwrites, so the result converges.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from paywall.core.metrics import entitlement_checks_total, entitlement_store_write_failures_total
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.query import resolve_entitlement
from paywall.features.entitlements.models import (
    EntitlementDecision,
    EntitlementRow,
    FreshnessWindows,
    utcnow,
)
from paywall.features.entitlements.store import EntitlementStore

logger = logging.getLogger(__name__)


class EntitlementResolver:
    def __init__(
        self,
        store: EntitlementStore,
        providers: ProviderClientCache,
        windows: Optional[FreshnessWindows] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.providers = providers
        self.windows = windows or FreshnessWindows()
        self.now_fn = now_fn

    def check_access(self, tenant_id: str, product_id: str, user_id: str, user_email: str) -> EntitlementDecision:
        """
        Decide whether `user_id` may use `product_id`.

        Raises:
            NotConfiguredError: tenant has no usable billing credentials
            ProviderUnavailableError: cache miss and the provider could not answer
        """
        cached = self.store.get(tenant_id, product_id, user_id)
        if cached is not None and cached.is_fresh(self.now_fn()):
            entitlement_checks_total.inc(labels={"cache": "hit", "has_access": str(cached.has_access).lower()})
            return cached.to_decision()

        provider = self.providers.get(tenant_id)
        result = resolve_entitlement(provider, user_email, product_id)

        row = EntitlementRow.build(
            tenant_id=tenant_id,
            product_id=product_id,
            user_id=user_id,
            has_access=result.has_access,
            now=self.now_fn(),
            ttl_seconds=self.windows.for_access(result.has_access),
            subscription_id=result.subscription_id,
            plan_code=result.plan_code,
            status=result.status,
            current_period_end=result.current_period_end,
            user_email=user_email,
        )
        entitlement_checks_total.inc(labels={"cache": "miss", "has_access": str(row.has_access).lower()})

        try:
            self.store.put(row)
        except Exception:
            # The decision is still correct; only the next request pays for the miss again
            entitlement_store_write_failures_total.inc(labels={"writer": "resolver"})
            logger.warning(
                "Entitlement write-back failed",
                exc_info=True,
                extra={"tenant_id": tenant_id, "product_id": product_id, "user_id": user_id},
            )

        return row.to_decision()
