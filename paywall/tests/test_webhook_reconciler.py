"""
Webhook reconciler: event mapping, idempotency and failure auditing.
"""
import logging
from datetime import timedelta

import pytest

from paywall.core.errors import ProviderUnavailableError, SignatureInvalidError
from paywall.core.metrics import webhook_events_total, webhook_wildcard_product_total
from paywall.features.billing.provider import BillingEvent
from paywall.features.entitlements.models import FreshnessWindows
from paywall.features.entitlements.store import InMemoryEntitlementStore
from paywall.features.webhooks.audit import WebhookAuditStore
from paywall.features.webhooks.service import WebhookReconciler
from paywall.tests.fakes import FakeBillingProvider, FakeClock, make_subscription, provider_cache


@pytest.fixture
def provider():
    p = FakeBillingProvider()
    p.add_customer("cus_1", "u1@example.com")
    return p


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryEntitlementStore()


@pytest.fixture
def audit(clock):
    return WebhookAuditStore(ttl_days=30, now_fn=clock)


@pytest.fixture
def reconciler(provider, store, audit, clock):
    return WebhookReconciler(
        store,
        provider_cache(provider),
        audit,
        FreshnessWindows(active_ttl_seconds=300, inactive_ttl_seconds=60),
        now_fn=clock,
    )


def _subscription_event(provider, event_id, event_type, sub):
    provider.events.append(BillingEvent(id=event_id, type=event_type, subscription=sub, subscription_id=sub.id))


def test_created_event_writes_access_with_long_window(provider, store, audit, clock, reconciler):
    sub = make_subscription(metadata={"paywall_product": "p1", "user_id": "u1"})
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)

    outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.to_response() == {"received": True}
    row = store.get("t1", "p1", "u1")
    assert row.has_access is True
    assert row.plan_code == "pro"
    assert row.user_email == "u1@example.com"
    assert row.expires_at == clock.now + timedelta(seconds=300)
    assert audit.get("t1", "evt_1").succeeded
    assert webhook_events_total.value({"event_type": "customer.subscription.created", "outcome": "processed"}) == 1


def test_updated_to_past_due_revokes_with_short_window(provider, store, clock, reconciler):
    sub = make_subscription(status="past_due", metadata={"paywall_product": "p1", "user_id": "u1"})
    _subscription_event(provider, "evt_1", "customer.subscription.updated", sub)

    reconciler.handle("t1", {}, b"{}")

    row = store.get("t1", "p1", "u1")
    assert row.has_access is False
    assert row.status == "past_due"
    assert row.expires_at == clock.now + timedelta(seconds=60)


def test_deleted_event_writes_denial_with_short_window(provider, store, clock, reconciler):
    sub = make_subscription(status="canceled", metadata={"paywall_product": "p1", "user_id": "u1"})
    _subscription_event(provider, "evt_del", "customer.subscription.deleted", sub)

    reconciler.handle("t1", {}, b"{}")

    row = store.get("t1", "p1", "u1")
    assert row.has_access is False
    assert row.expires_at == clock.now + timedelta(seconds=60)


def test_deleted_event_revokes_even_if_status_still_active(provider, store, reconciler):
    sub = make_subscription(status="active", metadata={"paywall_product": "p1", "user_id": "u1"})
    _subscription_event(provider, "evt_del", "customer.subscription.deleted", sub)

    reconciler.handle("t1", {}, b"{}")

    assert store.get("t1", "p1", "u1").has_access is False


def test_partial_payload_is_refetched(provider, store, reconciler):
    full = provider.add_subscription(make_subscription("sub_1", audience="p1", plan_code="pro"))
    partial = make_subscription("sub_1", expanded=False)
    _subscription_event(provider, "evt_1", "customer.subscription.updated", partial)

    reconciler.handle("t1", {}, b"{}")

    assert provider.calls["retrieve_subscription"] == 1
    row = store.get("t1", "p1", "u1@example.com")
    assert row.plan_code == full.primary_plan.plan_code


def test_payment_failed_refetches_and_uses_subscription_status(provider, store, reconciler):
    provider.add_subscription(make_subscription("sub_1", status="past_due", metadata={"paywall_product": "p1"}))
    provider.events.append(BillingEvent(id="evt_inv", type="invoice.payment_failed", subscription_id="sub_1"))

    reconciler.handle("t1", {}, b"{}")

    assert provider.calls["retrieve_subscription"] == 1
    row = store.get("t1", "p1", "u1@example.com")
    assert row.has_access is False
    assert row.status == "past_due"


def test_payment_failed_while_still_active_keeps_access(provider, store, reconciler):
    provider.add_subscription(make_subscription("sub_1", status="active", metadata={"paywall_product": "p1"}))
    provider.events.append(BillingEvent(id="evt_inv", type="invoice.payment_failed", subscription_id="sub_1"))

    reconciler.handle("t1", {}, b"{}")

    assert store.get("t1", "p1", "u1@example.com").has_access is True


def test_user_falls_back_to_customer_email(provider, store, reconciler):
    _subscription_event(provider, "evt_1", "customer.subscription.created", make_subscription(audience="p1"))

    reconciler.handle("t1", {}, b"{}")

    assert store.get("t1", "p1", "u1@example.com").has_access is True


def test_product_from_audience_writes_one_row_per_entry(provider, store, reconciler):
    _subscription_event(provider, "evt_1", "customer.subscription.created", make_subscription(audience="p1, p2"))

    outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.rows_written == 2
    assert store.get("t1", "p1", "u1@example.com").has_access is True
    assert store.get("t1", "p2", "u1@example.com").has_access is True


def test_wildcard_product_is_flagged(provider, store, reconciler, caplog):
    _subscription_event(provider, "evt_1", "customer.subscription.created", make_subscription(audience=None))

    with caplog.at_level(logging.WARNING, logger="paywall"):
        reconciler.handle("t1", {}, b"{}")

    assert store.get("t1", "*", "u1@example.com").has_access is True
    assert webhook_wildcard_product_total.value({"tenant_id": "t1"}) == 1
    assert any(r.getMessage() == "webhook.wildcard_product" for r in caplog.records)


def test_duplicate_delivery_is_a_noop(provider, store, reconciler):
    sub = make_subscription(metadata={"paywall_product": "p1", "user_id": "u1"})
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)

    first = reconciler.handle("t1", {}, b"{}")
    second = reconciler.handle("t1", {}, b"{}")

    assert first.duplicate is False
    assert second.to_response() == {"received": True, "duplicate": True}
    assert store.writes == 1
    assert provider.calls["retrieve_customer"] == 1


def test_same_event_id_for_different_tenants_is_not_duplicate(provider, store, audit, clock):
    reconciler = WebhookReconciler(store, provider_cache(provider, ["t1", "t2"]), audit, now_fn=clock)
    sub = make_subscription(metadata={"paywall_product": "p1", "user_id": "u1"})
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)

    reconciler.handle("t1", {}, b"{}")
    outcome = reconciler.handle("t2", {}, b"{}")

    assert outcome.duplicate is False
    assert store.get("t2", "p1", "u1") is not None


def test_processing_error_is_audited_and_reraised(provider, store, audit, reconciler):
    provider.raise_on["retrieve_customer"] = ProviderUnavailableError("stripe down")
    sub = make_subscription(metadata={"paywall_product": "p1"})
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)

    with pytest.raises(ProviderUnavailableError):
        reconciler.handle("t1", {}, b"{}")

    record = audit.get("t1", "evt_1")
    assert record.result == "error"
    assert "stripe down" in record.error_message
    assert store.writes == 0

    # Redelivery after the outage is processed, not treated as a duplicate
    del provider.raise_on["retrieve_customer"]
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)
    outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.duplicate is False
    assert audit.get("t1", "evt_1").succeeded
    assert store.writes == 1


def test_invalid_signature_writes_no_audit(provider, audit, reconciler):
    provider.raise_on["handle_webhook"] = SignatureInvalidError("Invalid signature")

    with pytest.raises(SignatureInvalidError):
        reconciler.handle("t1", {}, b"{}")

    assert provider.calls.get("retrieve_customer") is None


def test_unhandled_event_is_acknowledged_and_audited(provider, store, audit, reconciler):
    provider.events.append(BillingEvent(id="evt_x", type="charge.refunded"))

    outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.rows_written == 0
    assert store.writes == 0
    assert audit.get("t1", "evt_x").succeeded
    assert webhook_events_total.value({"event_type": "charge.refunded", "outcome": "ignored"}) == 1


def test_no_resolvable_user_skips_write(provider, store, audit, reconciler):
    provider.add_customer("cus_2", None)
    sub = make_subscription(customer_id="cus_2", metadata={"paywall_product": "p1"})
    _subscription_event(provider, "evt_1", "customer.subscription.created", sub)

    outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.rows_written == 0
    assert store.writes == 0
    assert audit.get("t1", "evt_1").succeeded


def test_audit_record_expires_after_ttl(audit, clock):
    record = audit.record("t1", "evt_1", "customer.subscription.created", "success")

    assert record.expires_at == clock.now + timedelta(days=30)
    assert audit.purge_expired(clock.now + timedelta(days=29)) == 0
    assert audit.purge_expired(clock.now + timedelta(days=30)) == 1
    assert audit.get("t1", "evt_1") is None


def test_missing_subscription_is_acknowledged_not_retried(provider, store, audit, reconciler, caplog):
    provider.events.append(
        BillingEvent(id="evt_gone", type="invoice.payment_failed", subscription_id="sub_deleted_long_ago")
    )

    with caplog.at_level(logging.WARNING, logger="paywall"):
        outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.duplicate is False
    assert outcome.rows_written == 0
    assert store.writes == 0
    record = audit.get("t1", "evt_gone")
    assert record.succeeded
    assert "sub_deleted_long_ago" in record.error_message
    assert webhook_events_total.value({"event_type": "invoice.payment_failed", "outcome": "stale"}) == 1
    assert any(r.getMessage() == "webhook.stale_reference" for r in caplog.records)


def test_missing_customer_is_acknowledged(provider, store, audit, reconciler):
    sub = make_subscription(customer_id="cus_missing", metadata={"paywall_product": "p1"})
    _subscription_event(provider, "evt_1", "customer.subscription.updated", sub)

    outcome = reconciler.handle("t1", {}, b"{}")

    assert outcome.rows_written == 0
    assert store.writes == 0
    assert audit.get("t1", "evt_1").succeeded
