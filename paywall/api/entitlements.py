"""
Entitlement check API.

- POST /entitlements/check: does this user have access to the product?

Product API keys imply the product; admin keys must name it in the body.
A denial carries the hosted checkout URL for the product.
"""
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from paywall.api.deps import envelope, get_services, require_api_key
from paywall.core.errors import ValidationError
from paywall.features.entitlements.models import WILDCARD_PRODUCT
from paywall.features.tenants.service import ResolvedApiKey, require_configured_tenant, require_product

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class CheckRequest(BaseModel):
    user_email: str
    user_id: Optional[str] = None
    product_id: Optional[str] = None


def checkout_url(checkout_domain: str, tenant_id: str, product_id: str, email: str) -> str:
    query = urlencode({"t": tenant_id, "p": product_id, "email": email})
    return f"{checkout_domain.rstrip('/')}/plans?{query}"


@router.post("/check")
def check_entitlement(
    body: CheckRequest,
    key: ResolvedApiKey = Depends(require_api_key),
    services=Depends(get_services),
):
    if not body.user_email:
        raise ValidationError("user_email is required")

    product_id = key.product_id
    if product_id == WILDCARD_PRODUCT:
        if not body.product_id:
            raise ValidationError("product_id is required when using admin API key")
        product_id = body.product_id

    require_configured_tenant(key.tenant_id)
    product = require_product(key.tenant_id, product_id)

    decision = services.resolver.check_access(
        key.tenant_id,
        product_id,
        body.user_id or body.user_email,
        body.user_email,
    )
    if decision.has_access:
        return envelope({"has_access": True, "subscription": decision.subscription.to_dict()})

    domain = product.checkout_domain or services.settings.DEFAULT_CHECKOUT_DOMAIN
    return envelope({
        "has_access": False,
        "checkout_url": checkout_url(domain, key.tenant_id, product_id, body.user_email),
    })
