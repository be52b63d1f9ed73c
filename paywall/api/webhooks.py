"""
Billing webhook endpoint.

POST /webhooks/stripe/{tenant_id} takes the raw body so the signature can be
verified against the exact bytes Stripe signed.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from paywall.api.deps import get_services

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe/{tenant_id}")
async def stripe_webhook(tenant_id: str, request: Request, services=Depends(get_services)):
    body = await request.body()
    headers = dict(request.headers)
    # Provider and store calls block; keep them off the event loop
    outcome = await run_in_threadpool(services.webhooks.handle, tenant_id, headers, body)
    return outcome.to_response()
