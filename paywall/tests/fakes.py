from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from paywall.core.errors import NotFoundError
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.credentials import TenantCredentials
from paywall.features.billing.provider import (
    BillingCustomer,
    BillingEvent,
    BillingLineItem,
    BillingPlan,
    BillingPrice,
    BillingSetupIntent,
    BillingSubscription,
)

PERIOD_END = datetime(2030, 1, 1, tzinfo=timezone.utc)


def make_subscription(
    sub_id: str = "sub_1",
    *,
    customer_id: str = "cus_1",
    status: str = "active",
    audience: Optional[str] = "p1",
    plan_code: Optional[str] = "pro",
    product_id: str = "prod_1",
    metadata: Optional[Dict[str, str]] = None,
    expanded: bool = True,
) -> BillingSubscription:
    plan = BillingPlan(
        product_id=product_id,
        name="Pro",
        audience=audience if expanded else None,
        plan_code=plan_code if expanded else None,
        expanded=expanded,
    )
    return BillingSubscription(
        id=sub_id,
        customer_id=customer_id,
        status=status,
        current_period_end=PERIOD_END,
        metadata=dict(metadata or {}),
        items=[BillingLineItem(price_id="price_1", plan=plan)],
    )


class FakeBillingProvider:
    """In-memory BillingProvider that records every call."""

    def __init__(self):
        self.customers: Dict[str, BillingCustomer] = {}
        self.subscriptions: Dict[str, List[BillingSubscription]] = {}
        self.prices: Dict[str, BillingPrice] = {}
        self.events: List[BillingEvent] = []
        self.created: List[dict] = []
        self.customer_metadata: Dict[str, Dict[str, str]] = {}
        self.setup_intents: List[dict] = []
        self.calls: Dict[str, int] = {}
        self.raise_on: Dict[str, Exception] = {}

    def _call(self, name: str):
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.raise_on:
            raise self.raise_on[name]

    def add_customer(self, customer_id: str, email: Optional[str]) -> BillingCustomer:
        customer = BillingCustomer(id=customer_id, email=email)
        self.customers[customer_id] = customer
        self.subscriptions.setdefault(customer_id, [])
        return customer

    def add_subscription(self, subscription: BillingSubscription) -> BillingSubscription:
        self.subscriptions.setdefault(subscription.customer_id, []).append(subscription)
        return subscription

    def find_customer_by_email(self, email: str) -> Optional[BillingCustomer]:
        self._call("find_customer_by_email")
        for customer in self.customers.values():
            if customer.email == email:
                return customer
        return None

    def retrieve_customer(self, customer_id: str) -> BillingCustomer:
        self._call("retrieve_customer")
        if customer_id not in self.customers:
            raise NotFoundError(f"No such customer: {customer_id}")
        return self.customers[customer_id]

    def list_subscriptions(self, customer_id: str, status: Optional[str] = None) -> List[BillingSubscription]:
        self._call("list_subscriptions")
        subs = self.subscriptions.get(customer_id, [])
        return [s for s in subs if status is None or s.status == status]

    def retrieve_subscription(self, subscription_id: str) -> BillingSubscription:
        self._call("retrieve_subscription")
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub.id == subscription_id:
                    return sub
        raise NotFoundError(f"No such subscription: {subscription_id}")

    def retrieve_price(self, price_id: str) -> BillingPrice:
        self._call("retrieve_price")
        if price_id not in self.prices:
            raise NotFoundError(f"No such price: {price_id}")
        return self.prices[price_id]

    def list_prices(self) -> List[BillingPrice]:
        self._call("list_prices")
        return list(self.prices.values())

    def create_customer(self, email: str, metadata: Dict[str, str]) -> BillingCustomer:
        self._call("create_customer")
        customer = self.add_customer(f"cus_new_{len(self.customers) + 1}", email)
        self.customer_metadata[customer.id] = dict(metadata)
        return customer

    def create_setup_intent(self, customer_id: str, metadata: Dict[str, str]) -> BillingSetupIntent:
        self._call("create_setup_intent")
        intent = BillingSetupIntent(id=f"seti_{len(self.setup_intents) + 1}", client_secret="seti_secret_test")
        self.setup_intents.append({"customer_id": customer_id, "metadata": dict(metadata)})
        return intent

    def create_subscription(self, customer_id, price_id, *, metadata, default_payment_method=None):
        self._call("create_subscription")
        self.created.append({
            "customer_id": customer_id,
            "price_id": price_id,
            "metadata": dict(metadata),
            "default_payment_method": default_payment_method,
        })
        price = self.prices[price_id]
        sub = BillingSubscription(
            id=f"sub_new_{len(self.created)}",
            customer_id=customer_id,
            status="active",
            current_period_end=PERIOD_END,
            metadata=dict(metadata),
            items=[BillingLineItem(price_id=price_id, plan=price.plan)],
        )
        return self.add_subscription(sub)

    def cancel_subscription_at_period_end(self, subscription_id: str) -> BillingSubscription:
        self._call("cancel_subscription_at_period_end")
        sub = self.retrieve_subscription(subscription_id)
        return BillingSubscription(
            id=sub.id,
            customer_id=sub.customer_id,
            status=sub.status,
            current_period_end=sub.current_period_end,
            cancel_at_period_end=True,
            metadata=sub.metadata,
            items=sub.items,
        )

    def handle_webhook(self, headers, body) -> BillingEvent:
        self._call("handle_webhook")
        return self.events.pop(0)


class StaticCredentials:
    def __init__(self, tenants: Optional[List[str]] = None):
        self.tenants = set(tenants or ["t1"])

    def get(self, tenant_id: str) -> Optional[TenantCredentials]:
        if tenant_id not in self.tenants:
            return None
        return TenantCredentials(
            secret_key=f"sk_test_{tenant_id}",
            webhook_secret="whsec_test",
            publishable_key=f"pk_test_{tenant_id}",
        )


def provider_cache(provider: FakeBillingProvider, tenants: Optional[List[str]] = None) -> ProviderClientCache:
    return ProviderClientCache(StaticCredentials(tenants), provider_factory=lambda **kwargs: provider)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeRedis:
    """Just enough of redis.Redis (decode_responses=True) for the store."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str, ex: Optional[int] = None):
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True
