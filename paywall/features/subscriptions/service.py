"""
Subscription lifecycle: finalize (with the synchronous entitlement write),
cancel at period end, and listing a customer's subscriptions.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from paywall.core.errors import StoreWriteFailedError, ValidationError
from paywall.core.logging import log_event
from paywall.core.metrics import entitlement_store_write_failures_total
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.provider import BillingSubscription
from paywall.features.entitlements.models import EntitlementRow, FreshnessWindows, utcnow
from paywall.features.entitlements.store import EntitlementStore
from paywall.features.tenants.service import Product, require_configured_tenant, require_product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizeRequest:
    tenant_id: str
    customer_id: str
    price_id: str
    product_id: str
    payment_method: Optional[str] = None
    user_id: Optional[str] = None
    return_url: Optional[str] = None


@dataclass(frozen=True)
class FinalizeResult:
    subscription_id: str
    status: str
    plan_code: str
    redirect_url: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "subscription_id": self.subscription_id,
            "status": self.status,
            "plan_code": self.plan_code,
            "redirect_url": self.redirect_url,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def validate_return_url(product: Product, return_url: Optional[str]) -> None:
    if not return_url or not product.allowed_return_urls:
        return
    if not any(return_url.startswith(prefix) for prefix in product.allowed_return_urls):
        raise ValidationError("return_url is not in the product's allowed return URLs")


def redirect_url_for(product: Product, return_url: Optional[str]) -> str:
    if return_url:
        return return_url
    if product.allowed_return_urls:
        return product.allowed_return_urls[0]
    return ""


class SubscriptionService:
    def __init__(
        self,
        store: EntitlementStore,
        providers: ProviderClientCache,
        windows: Optional[FreshnessWindows] = None,
        *,
        callback_timeout: float = 5.0,
        http_transport: Optional[httpx.BaseTransport] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.providers = providers
        self.windows = windows or FreshnessWindows()
        self.callback_timeout = callback_timeout
        self.http_transport = http_transport
        self.now_fn = now_fn

    def finalize(self, req: FinalizeRequest) -> FinalizeResult:
        """
        Create the subscription and record access before returning.

        The entitlement write happens in this request with the data already
        in hand, so a checkAccess right after a successful finalize is a pure
        store hit.

        Raises:
            ValidationError: missing input or disallowed return_url
            NotFoundError: unknown tenant or product
            NotConfiguredError: tenant has no billing credentials
            StoreWriteFailedError: subscription created but access not recorded
        """
        for name in ("tenant_id", "customer_id", "price_id", "product_id"):
            if not getattr(req, name):
                raise ValidationError(f"{name} is required")

        require_configured_tenant(req.tenant_id)
        product = require_product(req.tenant_id, req.product_id)
        validate_return_url(product, req.return_url)

        provider = self.providers.get(req.tenant_id)
        price = provider.retrieve_price(req.price_id)
        plan_code = price.plan.effective_plan_code

        metadata = {
            "paywall_tenant": req.tenant_id,
            "paywall_product": req.product_id,
            "plan_code": plan_code,
        }
        if req.user_id:
            metadata["user_id"] = req.user_id

        # Free plans arrive without a payment method
        subscription = provider.create_subscription(
            req.customer_id,
            req.price_id,
            metadata=metadata,
            default_payment_method=req.payment_method or None,
        )
        log_event(
            "info",
            "subscription.created",
            tenant_id=req.tenant_id,
            product_id=req.product_id,
            extra={"subscription_id": subscription.id, "plan_code": plan_code, "status": subscription.status},
            logger_name=__name__,
        )

        customer_email = provider.retrieve_customer(req.customer_id).email or ""
        user_id = req.user_id or customer_email

        self._record_access(req, subscription, plan_code, user_id, customer_email)
        self._notify_product(product, req, subscription, plan_code, customer_email)

        return FinalizeResult(
            subscription_id=subscription.id,
            status=subscription.status,
            plan_code=plan_code,
            redirect_url=redirect_url_for(product, req.return_url),
        )

    def _record_access(
        self,
        req: FinalizeRequest,
        subscription: BillingSubscription,
        plan_code: str,
        user_id: str,
        customer_email: str,
    ) -> None:
        row = EntitlementRow.build(
            tenant_id=req.tenant_id,
            product_id=req.product_id,
            user_id=user_id,
            has_access=True,
            now=self.now_fn(),
            ttl_seconds=self.windows.for_access(True),
            subscription_id=subscription.id,
            plan_code=plan_code,
            status=subscription.status,
            current_period_end=subscription.current_period_end,
            user_email=customer_email or None,
        )
        try:
            self.store.put(row)
        except Exception as e:
            entitlement_store_write_failures_total.inc(labels={"writer": "finalize"})
            log_event(
                "error",
                "finalize.store_write_failed",
                tenant_id=req.tenant_id,
                product_id=req.product_id,
                error_code=StoreWriteFailedError.code,
                extra={"subscription_id": subscription.id, "user_id": user_id, "error": e},
                logger_name=__name__,
            )
            raise StoreWriteFailedError(
                f"Subscription {subscription.id} was created but access could not be recorded"
            ) from e

    def _notify_product(
        self,
        product: Product,
        req: FinalizeRequest,
        subscription: BillingSubscription,
        plan_code: str,
        customer_email: str,
    ) -> None:
        """POST subscription.created to the product's callback; best effort."""
        if not product.subscription_callback_url:
            return
        payload = {
            "event": "subscription.created",
            "tenant_id": req.tenant_id,
            "product_id": req.product_id,
            "email": customer_email,
            "subscription_id": subscription.id,
            "plan_code": plan_code,
            "price_id": req.price_id,
            "status": subscription.status,
        }
        try:
            with httpx.Client(timeout=self.callback_timeout, transport=self.http_transport) as client:
                response = client.post(product.subscription_callback_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Product callback failed",
                extra={"tenant_id": req.tenant_id, "product_id": req.product_id, "error": str(e)},
            )

    def cancel(self, tenant_id: str, subscription_id: str) -> Dict[str, Any]:
        """Cancel at period end. Access stays until the deletion webhook arrives."""
        if not subscription_id:
            raise ValidationError("subscription_id is required")
        provider = self.providers.get(tenant_id)
        subscription = provider.cancel_subscription_at_period_end(subscription_id)
        return {
            "subscription_id": subscription.id,
            "status": subscription.status,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "current_period_end": _iso(subscription.current_period_end),
        }

    def list_for_email(self, tenant_id: str, email: str) -> List[Dict[str, Any]]:
        if not email:
            raise ValidationError("email query parameter is required")
        provider = self.providers.get(tenant_id)
        customer = provider.find_customer_by_email(email)
        if customer is None:
            return []

        result = []
        for sub in provider.list_subscriptions(customer.id):
            plan = sub.primary_plan
            result.append({
                "subscription_id": sub.id,
                "status": sub.status,
                "plan_code": plan.effective_plan_code if plan else "",
                "plan_name": (plan.name or "") if plan else "",
                "current_period_end": _iso(sub.current_period_end),
                "cancel_at_period_end": sub.cancel_at_period_end,
            })
        return result
