"""
Billing provider protocol.

Defines the normalized view of the billing provider the entitlement core
consumes. All Stripe-specific code is in stripe_provider.py.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class BillingCustomer:
    id: str
    email: Optional[str]


@dataclass(frozen=True)
class BillingPlan:
    """
    Provider product behind a price.

    `expanded` is False when the payload only carried the product id, in
    which case `audience` and `plan_code` are unknown rather than empty.
    """
    product_id: str
    name: Optional[str] = None
    audience: Optional[str] = None
    plan_code: Optional[str] = None
    expanded: bool = True
    active: bool = True
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def effective_plan_code(self) -> str:
        return self.plan_code or self.product_id


@dataclass(frozen=True)
class BillingLineItem:
    price_id: Optional[str]
    plan: Optional[BillingPlan]
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class BillingSubscription:
    id: str
    customer_id: Optional[str]
    status: str
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)
    items: List[BillingLineItem] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        """True when line-item plan detail must be re-fetched."""
        return not self.items or any(item.plan is None or not item.plan.expanded for item in self.items)

    @property
    def primary_plan(self) -> Optional[BillingPlan]:
        return self.items[0].plan if self.items else None


@dataclass(frozen=True)
class BillingPrice:
    id: str
    unit_amount: Optional[int]
    plan: BillingPlan
    interval: Optional[str] = None  # None for one-time prices
    interval_count: int = 1

    @property
    def is_recurring(self) -> bool:
        return self.interval is not None

    @property
    def is_free(self) -> bool:
        return self.unit_amount == 0


@dataclass(frozen=True)
class BillingSetupIntent:
    id: str
    client_secret: Optional[str]


@dataclass(frozen=True)
class BillingEvent:
    """Verified provider event, reduced to what the reconciler reads."""
    id: str
    type: str
    subscription: Optional[BillingSubscription] = None
    subscription_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for a tenant-scoped billing provider client.

    Implementations raise the taxonomy from paywall.core.errors:
    ProviderUnavailableError for transient failures, NotConfiguredError for
    rejected credentials, NotFoundError for missing references and
    SignatureInvalidError for unverifiable webhooks.
    """

    def find_customer_by_email(self, email: str) -> Optional[BillingCustomer]:
        """First customer with this email, or None."""
        ...

    def retrieve_customer(self, customer_id: str) -> BillingCustomer:
        ...

    def list_subscriptions(self, customer_id: str, status: Optional[str] = None) -> List[BillingSubscription]:
        """Subscriptions in provider order, line-item products expanded."""
        ...

    def retrieve_subscription(self, subscription_id: str) -> BillingSubscription:
        """Fetch one subscription with line-item products expanded."""
        ...

    def retrieve_price(self, price_id: str) -> BillingPrice:
        ...

    def list_prices(self) -> List[BillingPrice]:
        """Active prices with their products expanded."""
        ...

    def create_customer(self, email: str, metadata: Dict[str, str]) -> BillingCustomer:
        ...

    def create_setup_intent(self, customer_id: str, metadata: Dict[str, str]) -> BillingSetupIntent:
        """Card setup intent used to collect a payment method before finalize."""
        ...

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        metadata: Dict[str, str],
        default_payment_method: Optional[str] = None,
    ) -> BillingSubscription:
        ...

    def cancel_subscription_at_period_end(self, subscription_id: str) -> BillingSubscription:
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            NotConfiguredError: no webhook signing secret for this tenant
            SignatureInvalidError: missing/invalid signature or payload
        """
        ...
