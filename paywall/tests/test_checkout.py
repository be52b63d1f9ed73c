"""
Checkout: plan catalogue and setup intents (service and routes).
"""
import json

import pytest
from fastapi.testclient import TestClient

from paywall.core.config import settings
from paywall.core.errors import NotConfiguredError, NotFoundError, ValidationError
from paywall.core.metrics import checkout_setup_intents_total
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.credentials import TenantCredentials
from paywall.features.billing.provider import BillingPlan, BillingPrice
from paywall.features.checkout.service import CheckoutService, SetupIntentRequest, is_offered
from paywall.features.entitlements.store import InMemoryEntitlementStore
from paywall.features.tenants.service import create_product, create_tenant
from paywall.main import build_services, create_app
from paywall.tests.fakes import FakeBillingProvider, provider_cache


def _price(price_id, amount, *, audience=None, interval="month", active=True, **metadata):
    if audience is not None:
        metadata["audience"] = audience
    return BillingPrice(
        id=price_id,
        unit_amount=amount,
        plan=BillingPlan(
            product_id=f"prod_{price_id}",
            name=price_id.title(),
            audience=audience,
            plan_code=metadata.get("plan_code"),
            active=active,
            metadata=metadata,
        ),
        interval=interval,
    )


@pytest.fixture
def provider():
    p = FakeBillingProvider()
    p.add_customer("cus_1", "u1@example.com")
    p.prices.update({
        "team": _price("team", 4900, audience="p1, p2", plan_code="team", display_order="2"),
        "pro": _price("pro", 1900, audience="p1", plan_code="pro", display_order="1",
                      features=json.dumps(["Unlimited", "Priority support"])),
        "other": _price("other", 900, audience="p2"),
        "lifetime": _price("lifetime", 9900, interval=None),
        "retired": _price("retired", 500, active=False),
        "free": _price("free", 0, features="not json"),
    })
    return p


@pytest.fixture
def tenant():
    create_tenant("t1", "Tenant One", "ops@t1.test", credentials_configured=True)
    return create_product("t1", "p1", "Product One", allowed_return_urls=["https://app.t1.test/"])


@pytest.fixture
def checkout(provider):
    return CheckoutService(provider_cache(provider))


def test_plans_are_filtered_and_sorted(checkout, tenant):
    data = checkout.list_plans("t1", "p1")

    assert data["tenant_name"] == "Tenant One"
    assert data["product_name"] == "Product One"
    assert data["stripe_publishable_key"] == "pk_test_t1"
    assert [p["price_id"] for p in data["plans"]] == ["pro", "team", "free"]

    pro = data["plans"][0]
    assert pro["plan_code"] == "pro"
    assert pro["amount_cents"] == 1900
    assert pro["interval"] == "month"
    assert pro["features"] == ["Unlimited", "Priority support"]

    free = data["plans"][2]
    assert free["plan_code"] == "prod_free"
    assert free["features"] == []
    assert free["display_order"] == 999


def test_offered_prices():
    assert is_offered(_price("a", 100, audience="p1,p2"), "p2")
    assert is_offered(_price("b", 100), "p9")
    assert not is_offered(_price("c", 100, audience="p1"), "p2")
    assert not is_offered(_price("d", 100, interval=None), "p1")
    assert not is_offered(_price("e", 100, active=False), "p1")


def test_plans_require_tenant_and_product(checkout, tenant):
    with pytest.raises(ValidationError):
        checkout.list_plans("", "p1")
    with pytest.raises(ValidationError):
        checkout.list_plans("t1", "")
    with pytest.raises(NotFoundError):
        checkout.list_plans("t1", "nope")
    with pytest.raises(NotFoundError):
        checkout.list_plans("unknown", "p1")


def test_plans_need_publishable_key(provider, tenant):
    class SecretOnly:
        def get(self, tenant_id):
            return TenantCredentials(secret_key="sk_test_t1")

    checkout = CheckoutService(ProviderClientCache(SecretOnly(), provider_factory=lambda **kwargs: provider))

    with pytest.raises(NotConfiguredError):
        checkout.list_plans("t1", "p1")
    assert "list_prices" not in provider.calls


def test_setup_intent_for_existing_customer(checkout, provider, tenant):
    result = checkout.create_setup_intent(SetupIntentRequest(
        tenant_id="t1",
        email="u1@example.com",
        price_id="pro",
        product_id="p1",
        return_url="https://app.t1.test/done",
        product_metadata={"workspace": "w1"},
    ))

    assert result == {
        "customer_id": "cus_1",
        "price_id": "pro",
        "tenant_id": "t1",
        "product_id": "p1",
        "client_secret": "seti_secret_test",
    }
    assert "create_customer" not in provider.calls
    assert provider.setup_intents[0]["customer_id"] == "cus_1"
    assert checkout_setup_intents_total.value({"outcome": "intent"}) == 1
    assert provider.setup_intents[0]["metadata"] == {
        "tenant_id": "t1",
        "product_id": "p1",
        "price_id": "pro",
        "return_url": "https://app.t1.test/done",
        "product_metadata": '{"workspace": "w1"}',
    }


def test_setup_intent_creates_customer_when_unknown(checkout, provider, tenant):
    result = checkout.create_setup_intent(SetupIntentRequest(
        tenant_id="t1", email="new@example.com", price_id="pro", product_id="p1", product_metadata={"seat": "3"},
    ))

    customer_id = result["customer_id"]
    assert provider.customers[customer_id].email == "new@example.com"
    assert provider.customer_metadata[customer_id] == {
        "paywall_tenant": "t1",
        "paywall_product": "p1",
        "seat": "3",
    }
    assert provider.setup_intents[0]["metadata"]["return_url"] == ""


def test_free_plan_skips_setup_intent(checkout, provider, tenant):
    result = checkout.create_setup_intent(SetupIntentRequest(
        tenant_id="t1", email="u1@example.com", price_id="free", product_id="p1",
    ))

    assert result["free_plan"] is True
    assert result["customer_id"] == "cus_1"
    assert "client_secret" not in result
    assert "create_setup_intent" not in provider.calls
    assert checkout_setup_intents_total.value({"outcome": "free"}) == 1


def test_setup_intent_validation(checkout, provider, tenant):
    with pytest.raises(ValidationError):
        checkout.create_setup_intent(SetupIntentRequest(tenant_id="t1", email="", price_id="pro", product_id="p1"))

    with pytest.raises(ValidationError):
        checkout.create_setup_intent(SetupIntentRequest(
            tenant_id="t1", email="u1@example.com", price_id="pro", product_id="p1",
            return_url="https://evil.test/",
        ))
    assert provider.calls == {}


def test_setup_intent_unconfigured_tenant(checkout, provider):
    create_tenant("t2", "Tenant Two", "ops@t2.test")
    create_product("t2", "p1", "Product One")

    with pytest.raises(NotConfiguredError):
        checkout.create_setup_intent(SetupIntentRequest(
            tenant_id="t2", email="u1@example.com", price_id="pro", product_id="p1",
        ))


def test_plans_and_setup_intent_routes(provider, tenant):
    services = build_services(settings, store=InMemoryEntitlementStore(), providers=provider_cache(provider))
    client = TestClient(create_app(services))

    plans = client.get("/plans", params={"tenant": "t1", "product": "p1"})
    assert plans.status_code == 200
    assert plans.json()["success"] is True
    assert plans.json()["data"]["plans"][0]["price_id"] == "pro"

    missing = client.get("/plans", params={"tenant": "t1"})
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "validation_error"

    intent = client.post("/checkout/setup-intent", json={
        "tenant_id": "t1",
        "email": "u1@example.com",
        "price_id": "free",
        "product_id": "p1",
    })
    assert intent.status_code == 200
    assert intent.json()["data"]["free_plan"] is True

    # The returned customer id is what finalize consumes
    finalize = client.post("/subscriptions/finalize", json={
        "tenant_id": "t1",
        "customer_id": intent.json()["data"]["customer_id"],
        "price_id": "free",
        "product_id": "p1",
    })
    assert finalize.status_code == 200
