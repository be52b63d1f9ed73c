"""
Checkout: the plan catalogue behind `checkout_url` and the setup intent that
produces the customer id finalize needs.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from paywall.core.errors import ValidationError
from paywall.core.logging import log_event
from paywall.core.metrics import checkout_setup_intents_total
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.provider import BillingPrice
from paywall.features.billing.query import audience_matches
from paywall.features.subscriptions.service import validate_return_url
from paywall.features.tenants.service import require_configured_tenant, require_product

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_ORDER = 999


@dataclass(frozen=True)
class SetupIntentRequest:
    tenant_id: str
    email: str
    price_id: str
    product_id: str
    return_url: Optional[str] = None
    product_metadata: Dict[str, str] = field(default_factory=dict)


def _features(metadata: Dict[str, str]) -> List[str]:
    raw = metadata.get("features")
    if not raw:
        return []
    try:
        features = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed plan features metadata", extra={"features": raw})
        return []
    return [str(f) for f in features] if isinstance(features, list) else []


def _display_order(metadata: Dict[str, str]) -> int:
    try:
        return int(metadata.get("display_order", DEFAULT_DISPLAY_ORDER))
    except ValueError:
        return DEFAULT_DISPLAY_ORDER


def plan_info(price: BillingPrice) -> Dict[str, Any]:
    plan = price.plan
    return {
        "price_id": price.id,
        "plan_code": plan.effective_plan_code,
        "name": plan.name or "",
        "amount_cents": price.unit_amount or 0,
        "interval": price.interval or "month",
        "interval_count": price.interval_count,
        "features": _features(plan.metadata),
        "display_order": _display_order(plan.metadata),
        "metadata": dict(plan.metadata),
    }


def is_offered(price: BillingPrice, product_id: str) -> bool:
    """Recurring, on an active product, and not aimed at another product."""
    return price.is_recurring and price.plan.active and audience_matches(price.plan.audience, product_id)


class CheckoutService:
    def __init__(self, providers: ProviderClientCache):
        self.providers = providers

    def list_plans(self, tenant_id: str, product_id: str) -> Dict[str, Any]:
        """
        Plans the tenant offers for this product, sorted by display_order.

        Raises:
            ValidationError: missing tenant or product
            NotFoundError: unknown tenant or product
            NotConfiguredError: tenant has no billing credentials or publishable key
        """
        if not tenant_id:
            raise ValidationError("tenant query parameter is required")
        if not product_id:
            raise ValidationError("product query parameter is required")

        tenant = require_configured_tenant(tenant_id)
        product = require_product(tenant_id, product_id)
        publishable_key = self.providers.publishable_key(tenant_id)

        prices = self.providers.get(tenant_id).list_prices()
        plans = [plan_info(p) for p in prices if is_offered(p, product_id)]
        plans.sort(key=lambda p: p["display_order"])

        return {
            "tenant_name": tenant.name,
            "product_name": product.product_name,
            "stripe_publishable_key": publishable_key,
            "plans": plans,
        }

    def create_setup_intent(self, req: SetupIntentRequest) -> Dict[str, Any]:
        """
        Find or create the customer, then start payment-method collection.

        Zero-amount prices skip the setup intent and answer `free_plan: true`;
        the caller goes straight to finalize without a payment method.
        """
        for name in ("tenant_id", "email", "price_id", "product_id"):
            if not getattr(req, name):
                raise ValidationError(f"{name} is required")

        require_configured_tenant(req.tenant_id)
        product = require_product(req.tenant_id, req.product_id)
        validate_return_url(product, req.return_url)

        provider = self.providers.get(req.tenant_id)
        customer = provider.find_customer_by_email(req.email)
        if customer is None:
            metadata = {"paywall_tenant": req.tenant_id, "paywall_product": req.product_id}
            metadata.update(req.product_metadata)
            customer = provider.create_customer(req.email, metadata)
            log_event(
                "info",
                "checkout.customer_created",
                tenant_id=req.tenant_id,
                product_id=req.product_id,
                extra={"customer_id": customer.id},
                logger_name=__name__,
            )

        result: Dict[str, Any] = {
            "customer_id": customer.id,
            "price_id": req.price_id,
            "tenant_id": req.tenant_id,
            "product_id": req.product_id,
        }

        price = provider.retrieve_price(req.price_id)
        if price.is_free:
            result["free_plan"] = True
            checkout_setup_intents_total.inc(labels={"outcome": "free"})
            return result

        metadata = {
            "tenant_id": req.tenant_id,
            "product_id": req.product_id,
            "price_id": req.price_id,
            "return_url": req.return_url or "",
        }
        if req.product_metadata:
            metadata["product_metadata"] = json.dumps(req.product_metadata)
        intent = provider.create_setup_intent(customer.id, metadata)
        result["client_secret"] = intent.client_secret
        checkout_setup_intents_total.inc(labels={"outcome": "intent"})
        return result
