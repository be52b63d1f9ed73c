"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe API. Every call passes the
tenant's secret key per request, so clients for different tenants never share
global `stripe.api_key` state. Stripe exceptions are translated into the
paywall error taxonomy here and nowhere else.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import stripe

from paywall.core.errors import (
    BillingProviderError,
    NotConfiguredError,
    NotFoundError,
    ProviderUnavailableError,
    SignatureInvalidError,
)
from paywall.core.metrics import billing_provider_errors_total
from paywall.features.billing.provider import (
    BillingCustomer,
    BillingEvent,
    BillingLineItem,
    BillingPlan,
    BillingPrice,
    BillingSetupIntent,
    BillingSubscription,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPAND = ["items.data.price.product"]
SUBSCRIPTION_LIST_EXPAND = ["data.items.data.price.product"]


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    # Item access first: `items` on a StripeObject is shadowed by the dict method
    try:
        return obj[name]
    except (KeyError, TypeError):
        return getattr(obj, name, default)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    return obj.to_dict()


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _object_id(value: Any) -> Optional[str]:
    """Id of a field that may be either expanded or a bare id string."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def parse_plan(product: Any) -> Optional[BillingPlan]:
    if product is None:
        return None
    if isinstance(product, str):
        return BillingPlan(product_id=product, expanded=False)
    metadata = {str(k): str(v) for k, v in _as_dict(_field(product, "metadata")).items()}
    return BillingPlan(
        product_id=_field(product, "id"),
        name=_field(product, "name"),
        audience=metadata.get("audience"),
        plan_code=metadata.get("plan_code"),
        active=bool(_field(product, "active", True)),
        metadata=metadata,
    )


def parse_price(price: Any) -> BillingPrice:
    plan = parse_plan(_field(price, "product"))
    if plan is None:
        raise NotFoundError(f"Price {_field(price, 'id')} has no product")
    recurring = _field(price, "recurring")
    return BillingPrice(
        id=_field(price, "id"),
        unit_amount=_field(price, "unit_amount"),
        plan=plan,
        interval=_field(recurring, "interval"),
        interval_count=_field(recurring, "interval_count") or 1,
    )


def parse_line_item(item: Any) -> BillingLineItem:
    price = _field(item, "price")
    period_end = _timestamp(_field(item, "current_period_end"))
    if price is None or isinstance(price, str):
        return BillingLineItem(price_id=price, plan=None, current_period_end=period_end)
    return BillingLineItem(
        price_id=_field(price, "id"),
        plan=parse_plan(_field(price, "product")),
        current_period_end=period_end,
    )


def parse_subscription(obj: Any) -> BillingSubscription:
    items = [parse_line_item(item) for item in (_field(_field(obj, "items"), "data") or [])]
    # Newer API versions carry the billing period on the line items
    period_end = _timestamp(_field(obj, "current_period_end"))
    if period_end is None and items:
        period_end = items[0].current_period_end
    metadata = {str(k): str(v) for k, v in _as_dict(_field(obj, "metadata")).items()}
    return BillingSubscription(
        id=_field(obj, "id"),
        customer_id=_object_id(_field(obj, "customer")),
        status=_field(obj, "status") or "unknown",
        current_period_end=period_end,
        cancel_at_period_end=bool(_field(obj, "cancel_at_period_end", False)),
        metadata=metadata,
        items=items,
    )


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    subscription = _field(invoice, "subscription")
    if subscription:
        return _object_id(subscription)
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _object_id(_field(details, "subscription"))


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


@contextmanager
def _stripe_call(operation: str):
    """Translate Stripe exceptions raised inside the block."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as e:
        billing_provider_errors_total.inc(labels={"operation": operation, "code": "unavailable"})
        raise ProviderUnavailableError(f"Stripe {operation} failed: {e.user_message or e}") from e
    except (stripe.AuthenticationError, stripe.PermissionError) as e:
        billing_provider_errors_total.inc(labels={"operation": operation, "code": "not_configured"})
        raise NotConfiguredError(f"Stripe rejected tenant credentials during {operation}") from e
    except stripe.InvalidRequestError as e:
        if e.http_status == 404:
            raise NotFoundError(f"Stripe {operation}: {e.user_message or e}") from e
        billing_provider_errors_total.inc(labels={"operation": operation, "code": "invalid_request"})
        raise BillingProviderError(f"Stripe {operation} failed: {e.user_message or e}") from e
    except stripe.StripeError as e:
        if e.http_status is None or e.http_status >= 500:
            billing_provider_errors_total.inc(labels={"operation": operation, "code": "unavailable"})
            raise ProviderUnavailableError(f"Stripe {operation} failed: {e.user_message or e}") from e
        billing_provider_errors_total.inc(labels={"operation": operation, "code": "rejected"})
        raise BillingProviderError(f"Stripe {operation} failed: {e.user_message or e}") from e


class StripeProvider:
    """Stripe implementation of BillingProvider for one tenant."""

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None):
        if not secret_key:
            raise NotConfiguredError("Stripe secret key not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def find_customer_by_email(self, email: str) -> Optional[BillingCustomer]:
        with _stripe_call("customers.list"):
            customers = stripe.Customer.list(email=email, limit=1, api_key=self.secret_key)
        data = _field(customers, "data") or []
        if not data:
            return None
        return BillingCustomer(id=_field(data[0], "id"), email=_field(data[0], "email"))

    def retrieve_customer(self, customer_id: str) -> BillingCustomer:
        with _stripe_call("customers.retrieve"):
            customer = stripe.Customer.retrieve(customer_id, api_key=self.secret_key)
        # Deleted customers come back as stubs without an email
        return BillingCustomer(id=_field(customer, "id"), email=_field(customer, "email"))

    def list_subscriptions(self, customer_id: str, status: Optional[str] = None) -> List[BillingSubscription]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "limit": 100,
            "expand": SUBSCRIPTION_LIST_EXPAND,
        }
        if status:
            params["status"] = status
        with _stripe_call("subscriptions.list"):
            subscriptions = stripe.Subscription.list(api_key=self.secret_key, **params)
        return [parse_subscription(sub) for sub in (_field(subscriptions, "data") or [])]

    def retrieve_subscription(self, subscription_id: str) -> BillingSubscription:
        with _stripe_call("subscriptions.retrieve"):
            subscription = stripe.Subscription.retrieve(
                subscription_id, expand=SUBSCRIPTION_EXPAND, api_key=self.secret_key
            )
        return parse_subscription(subscription)

    def retrieve_price(self, price_id: str) -> BillingPrice:
        with _stripe_call("prices.retrieve"):
            price = stripe.Price.retrieve(price_id, expand=["product"], api_key=self.secret_key)
        return parse_price(price)

    def list_prices(self) -> List[BillingPrice]:
        with _stripe_call("prices.list"):
            prices = stripe.Price.list(active=True, limit=100, expand=["data.product"], api_key=self.secret_key)
        return [parse_price(price) for price in (_field(prices, "data") or [])]

    def create_customer(self, email: str, metadata: Dict[str, str]) -> BillingCustomer:
        with _stripe_call("customers.create"):
            customer = stripe.Customer.create(email=email, metadata=metadata, api_key=self.secret_key)
        return BillingCustomer(id=_field(customer, "id"), email=_field(customer, "email"))

    def create_setup_intent(self, customer_id: str, metadata: Dict[str, str]) -> BillingSetupIntent:
        with _stripe_call("setup_intents.create"):
            intent = stripe.SetupIntent.create(
                customer=customer_id,
                payment_method_types=["card"],
                metadata=metadata,
                api_key=self.secret_key,
            )
        return BillingSetupIntent(id=_field(intent, "id"), client_secret=_field(intent, "client_secret"))

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        metadata: Dict[str, str],
        default_payment_method: Optional[str] = None,
    ) -> BillingSubscription:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata,
            "expand": SUBSCRIPTION_EXPAND,
        }
        # Zero-amount plans are created without a payment method
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        with _stripe_call("subscriptions.create"):
            subscription = stripe.Subscription.create(api_key=self.secret_key, **params)
        return parse_subscription(subscription)

    def cancel_subscription_at_period_end(self, subscription_id: str) -> BillingSubscription:
        with _stripe_call("subscriptions.modify"):
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                expand=SUBSCRIPTION_EXPAND,
                api_key=self.secret_key,
            )
        return parse_subscription(subscription)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise NotConfiguredError("Webhook not configured for this tenant")

        sig_header = _header(headers, "stripe-signature")
        if not sig_header:
            raise SignatureInvalidError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise SignatureInvalidError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError("Invalid signature") from e

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> BillingEvent:
        """Reduce a Stripe event to the fields the reconciler needs."""
        event_type = _field(event, "type")
        data = _field(_field(event, "data"), "object")

        subscription = None
        subscription_id = None
        if event_type.startswith("customer.subscription."):
            subscription = parse_subscription(data)
            subscription_id = subscription.id
        elif event_type.startswith("invoice."):
            subscription_id = _invoice_subscription_id(data)

        return BillingEvent(
            id=_field(event, "id"),
            type=event_type,
            subscription=subscription,
            subscription_id=subscription_id,
            raw=_as_dict(data),
        )
