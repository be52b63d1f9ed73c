"""
Subscription API routes.

- POST /subscriptions/finalize: create the subscription, record access synchronously
- POST /subscriptions/cancel: cancel at period end (API key)
- GET  /subscriptions?email=: list a customer's subscriptions (API key)
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from paywall.api.deps import envelope, get_services, require_api_key
from paywall.features.subscriptions.service import FinalizeRequest
from paywall.features.tenants.service import ResolvedApiKey

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class FinalizeBody(BaseModel):
    tenant_id: str
    customer_id: str
    price_id: str
    product_id: str
    payment_method: Optional[str] = None  # None for zero-amount plans
    user_id: Optional[str] = None
    return_url: Optional[str] = None


class CancelBody(BaseModel):
    subscription_id: str


@router.post("/finalize")
def finalize_subscription(body: FinalizeBody, services=Depends(get_services)):
    result = services.subscriptions.finalize(FinalizeRequest(**body.model_dump()))
    return envelope(result.to_dict())


@router.post("/cancel")
def cancel_subscription(
    body: CancelBody,
    key: ResolvedApiKey = Depends(require_api_key),
    services=Depends(get_services),
):
    return envelope(services.subscriptions.cancel(key.tenant_id, body.subscription_id))


@router.get("")
def list_subscriptions(
    email: str = Query(...),
    key: ResolvedApiKey = Depends(require_api_key),
    services=Depends(get_services),
):
    return envelope({"subscriptions": services.subscriptions.list_for_email(key.tenant_id, email)})
