"""
Checkout API routes (public; called by the hosted checkout page).

- GET  /plans?tenant=&product=: plans offered for a product
- POST /checkout/setup-intent: find or create the customer, start card setup
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from paywall.api.deps import envelope, get_services
from paywall.features.checkout.service import SetupIntentRequest

router = APIRouter(tags=["checkout"])


class SetupIntentBody(BaseModel):
    tenant_id: str
    email: str
    price_id: str
    product_id: str
    return_url: Optional[str] = None
    product_metadata: Optional[Dict[str, str]] = None


@router.get("/plans")
def list_plans(
    tenant: str = Query(""),
    product: str = Query(""),
    services=Depends(get_services),
):
    return envelope(services.checkout.list_plans(tenant, product))


@router.post("/checkout/setup-intent")
def create_setup_intent(body: SetupIntentBody, services=Depends(get_services)):
    req = SetupIntentRequest(
        tenant_id=body.tenant_id,
        email=body.email,
        price_id=body.price_id,
        product_id=body.product_id,
        return_url=body.return_url,
        product_metadata=body.product_metadata or {},
    )
    return envelope(services.checkout.create_setup_intent(req))
