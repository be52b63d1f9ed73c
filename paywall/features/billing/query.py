"""
Billing query: the slow, authoritative entitlement lookup.

Finds the customer by email, walks their access-granting subscriptions in
provider order and returns the first line item whose plan audience admits
the product.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from paywall.features.billing.provider import BillingProvider, BillingSubscription
from paywall.features.entitlements.models import ACCESS_GRANTING_STATUSES


@dataclass(frozen=True)
class RawDecision:
    has_access: bool
    subscription_id: Optional[str] = None
    plan_code: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None


def audience_entries(audience: Optional[str]) -> List[str]:
    """Product ids named by an audience string; empty means "any product"."""
    if not audience:
        return []
    return [entry.strip() for entry in audience.split(",") if entry.strip()]


def audience_matches(audience: Optional[str], product_id: str) -> bool:
    """
    No audience matches every product (single-product tenants); otherwise
    the product id must appear verbatim in the comma-separated list.
    """
    entries = audience_entries(audience)
    if not entries:
        return True
    return product_id in entries


def match_subscriptions(subscriptions: List[BillingSubscription], product_id: str) -> RawDecision:
    """First subscription/line item granting `product_id`, in iteration order."""
    for subscription in subscriptions:
        for item in subscription.items:
            if item.plan is None:
                continue
            if audience_matches(item.plan.audience, product_id):
                return RawDecision(
                    has_access=True,
                    subscription_id=subscription.id,
                    plan_code=item.plan.effective_plan_code,
                    status=subscription.status,
                    current_period_end=subscription.current_period_end or item.current_period_end,
                )
    return RawDecision(has_access=False)


def resolve_entitlement(provider: BillingProvider, email: str, product_id: str) -> RawDecision:
    """
    Ask the provider whether `email` has a subscription granting `product_id`.

    Only the first customer with the email is considered. Provider failures
    propagate; they are never turned into a denial.
    """
    customer = provider.find_customer_by_email(email)
    if customer is None:
        return RawDecision(has_access=False)

    subscriptions: List[BillingSubscription] = []
    for status in ACCESS_GRANTING_STATUSES:
        subscriptions.extend(provider.list_subscriptions(customer.id, status=status))

    return match_subscriptions(subscriptions, product_id)
