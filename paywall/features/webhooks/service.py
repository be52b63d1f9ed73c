"""
Webhook reconciler: billing lifecycle events -> entitlement rows.

Flow per delivery:
1. Verify the signature with the tenant's webhook secret (rejections write nothing)
2. Idempotency check against the audit log (a `success` record short-circuits)
3. Map the event to zero or more row writes
4. Record the audit outcome; on failure record `error` and re-raise so the
   provider redelivers. A reference that no longer exists (NotFound) is
   acknowledged as a no-op
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from paywall.core.errors import NotFoundError
from paywall.core.logging import log_event
from paywall.core.metrics import webhook_events_total, webhook_wildcard_product_total
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.billing.provider import BillingEvent, BillingProvider, BillingSubscription
from paywall.features.billing.query import audience_entries
from paywall.features.entitlements.models import (
    WILDCARD_PRODUCT,
    EntitlementRow,
    FreshnessWindows,
    status_grants_access,
    utcnow,
)
from paywall.features.entitlements.store import EntitlementStore
from paywall.features.webhooks.audit import RESULT_ERROR, RESULT_SUCCESS, WebhookAuditStore

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

HANDLED_EVENTS = (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED, INVOICE_PAYMENT_FAILED)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    rows_written: int = 0

    def to_response(self) -> Dict[str, bool]:
        if self.duplicate:
            return {"received": True, "duplicate": True}
        return {"received": True}


class WebhookReconciler:
    def __init__(
        self,
        store: EntitlementStore,
        providers: ProviderClientCache,
        audit: WebhookAuditStore,
        windows: Optional[FreshnessWindows] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.providers = providers
        self.audit = audit
        self.windows = windows or FreshnessWindows()
        self.now_fn = now_fn

    def handle(self, tenant_id: str, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            NotConfiguredError: tenant has no credentials or webhook secret
            SignatureInvalidError: event could not be verified (nothing audited)
            Any processing error, after an `error` audit record is written
        """
        provider = self.providers.get(tenant_id)
        event = provider.handle_webhook(headers, body)

        existing = self.audit.get(tenant_id, event.id)
        if existing is not None and existing.succeeded:
            webhook_events_total.inc(labels={"event_type": event.type, "outcome": "duplicate"})
            log_event(
                "info",
                "webhook.duplicate",
                tenant_id=tenant_id,
                event_type=event.type,
                extra={"event_id": event.id},
                logger_name=__name__,
            )
            return WebhookOutcome(event_id=event.id, event_type=event.type, duplicate=True)

        try:
            rows_written = self._apply(tenant_id, provider, event)
        except NotFoundError as e:
            # The referenced customer or subscription is gone; redelivery cannot help
            self.audit.record(tenant_id, event.id, event.type, RESULT_SUCCESS, error_message=str(e))
            webhook_events_total.inc(labels={"event_type": event.type, "outcome": "stale"})
            log_event(
                "warning",
                "webhook.stale_reference",
                tenant_id=tenant_id,
                event_type=event.type,
                error_code=NotFoundError.code,
                extra={"event_id": event.id, "error": e},
                logger_name=__name__,
            )
            return WebhookOutcome(event_id=event.id, event_type=event.type)
        except Exception as e:
            self.audit.record(tenant_id, event.id, event.type, RESULT_ERROR, error_message=str(e))
            webhook_events_total.inc(labels={"event_type": event.type, "outcome": "error"})
            log_event(
                "error",
                "webhook.failed",
                tenant_id=tenant_id,
                event_type=event.type,
                error_code=getattr(e, "code", type(e).__name__),
                extra={"event_id": event.id, "error": e},
                logger_name=__name__,
            )
            raise

        self.audit.record(tenant_id, event.id, event.type, RESULT_SUCCESS)
        outcome = "processed" if event.type in HANDLED_EVENTS else "ignored"
        webhook_events_total.inc(labels={"event_type": event.type, "outcome": outcome})
        log_event(
            "info",
            "webhook.processed",
            tenant_id=tenant_id,
            event_type=event.type,
            extra={"event_id": event.id, "rows_written": rows_written},
            logger_name=__name__,
        )
        return WebhookOutcome(event_id=event.id, event_type=event.type, rows_written=rows_written)

    def _apply(self, tenant_id: str, provider: BillingProvider, event: BillingEvent) -> int:
        if event.type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            subscription = self._complete(provider, event.subscription)
            return self._write(tenant_id, provider, subscription, event.type, revoke=False)

        if event.type == SUBSCRIPTION_DELETED:
            subscription = self._complete(provider, event.subscription)
            return self._write(tenant_id, provider, subscription, event.type, revoke=True)

        if event.type == INVOICE_PAYMENT_FAILED:
            if not event.subscription_id:
                # One-off invoice, no subscription to reconcile
                return 0
            # The subscription's own status (e.g. past_due) decides access
            subscription = provider.retrieve_subscription(event.subscription_id)
            return self._write(tenant_id, provider, subscription, event.type, revoke=False)

        logger.debug("Unhandled webhook event type", extra={"event_type": event.type})
        return 0

    @staticmethod
    def _complete(provider: BillingProvider, subscription: Optional[BillingSubscription]) -> BillingSubscription:
        """Re-fetch with plan detail expanded when the payload is a partial view."""
        if subscription is None:
            raise ValueError("Subscription event without a subscription object")
        if subscription.is_partial:
            return provider.retrieve_subscription(subscription.id)
        return subscription

    def _write(
        self,
        tenant_id: str,
        provider: BillingProvider,
        subscription: BillingSubscription,
        event_type: str,
        *,
        revoke: bool,
    ) -> int:
        user_email = None
        if subscription.customer_id:
            user_email = provider.retrieve_customer(subscription.customer_id).email
        user_id = subscription.metadata.get("user_id") or user_email
        if not user_id:
            log_event(
                "warning",
                "webhook.no_user",
                tenant_id=tenant_id,
                event_type=event_type,
                extra={"subscription_id": subscription.id},
                logger_name=__name__,
            )
            return 0

        has_access = False if revoke else status_grants_access(subscription.status)
        plan = subscription.primary_plan
        now = self.now_fn()
        product_ids = self._target_products(tenant_id, subscription, event_type)
        for product_id in product_ids:
            self.store.put(
                EntitlementRow.build(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    user_id=user_id,
                    has_access=has_access,
                    now=now,
                    ttl_seconds=self.windows.for_access(has_access),
                    subscription_id=subscription.id,
                    plan_code=plan.effective_plan_code if plan else None,
                    status=subscription.status,
                    current_period_end=subscription.current_period_end,
                    user_email=user_email,
                )
            )
        return len(product_ids)

    def _target_products(self, tenant_id: str, subscription: BillingSubscription, event_type: str) -> List[str]:
        """
        Product rows this subscription speaks for: the `paywall_product`
        metadata, else every audience entry of the plan, else the wildcard.
        """
        product_id = subscription.metadata.get("paywall_product")
        if product_id:
            return [product_id]

        plan = subscription.primary_plan
        entries = audience_entries(plan.audience if plan else None)
        if entries:
            return entries

        webhook_wildcard_product_total.inc(labels={"tenant_id": tenant_id})
        log_event(
            "warning",
            "webhook.wildcard_product",
            tenant_id=tenant_id,
            product_id=WILDCARD_PRODUCT,
            event_type=event_type,
            extra={"subscription_id": subscription.id, "hint": "set paywall_product or audience metadata"},
            logger_name=__name__,
        )
        return [WILDCARD_PRODUCT]
