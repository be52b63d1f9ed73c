"""
Per-tenant billing provider clients.

Clients are built from the tenant's credentials and kept for a short TTL so
the credential lookup is not repeated on every request. The cache is bounded
(least recently used entries are evicted) and must be invalidated whenever a
tenant's credentials change.
"""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from paywall.core.errors import NotConfiguredError
from paywall.core.metrics import stripe_client_cache_evictions_total, stripe_client_cache_size
from paywall.features.billing.credentials import CredentialSource
from paywall.features.billing.provider import BillingProvider
from paywall.features.billing.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., BillingProvider]


@dataclass
class _CachedClient:
    client: BillingProvider
    expires_at: float


class ProviderClientCache:
    def __init__(
        self,
        credentials: CredentialSource,
        *,
        ttl_seconds: float = 300,
        max_entries: int = 256,
        provider_factory: ProviderFactory = StripeProvider,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.credentials = credentials
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.provider_factory = provider_factory
        self.time_fn = time_fn
        self._clients: "OrderedDict[str, _CachedClient]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> BillingProvider:
        """
        Return the tenant's client, building it on a miss.

        Raises:
            NotConfiguredError: tenant has no usable credentials
        """
        now = self.time_fn()
        with self._lock:
            cached = self._clients.get(tenant_id)
            if cached and cached.expires_at > now:
                self._clients.move_to_end(tenant_id)
                return cached.client

        creds = self.credentials.get(tenant_id)
        if not creds or not creds.secret_key:
            raise NotConfiguredError(f"No Stripe credentials configured for tenant {tenant_id}")

        client = self.provider_factory(secret_key=creds.secret_key, webhook_secret=creds.webhook_secret)
        with self._lock:
            self._clients[tenant_id] = _CachedClient(client=client, expires_at=now + self.ttl_seconds)
            self._clients.move_to_end(tenant_id)
            while len(self._clients) > self.max_entries:
                evicted, _ = self._clients.popitem(last=False)
                stripe_client_cache_evictions_total.inc()
                logger.debug("Evicted billing client", extra={"tenant_id": evicted})
            stripe_client_cache_size.set(len(self._clients))
        return client

    def publishable_key(self, tenant_id: str) -> str:
        creds = self.credentials.get(tenant_id)
        if not creds or not creds.publishable_key:
            raise NotConfiguredError(f"No Stripe publishable key configured for tenant {tenant_id}")
        return creds.publishable_key

    def invalidate(self, tenant_id: str) -> None:
        """Drop the tenant's client. Call when credentials are updated or deleted."""
        with self._lock:
            self._clients.pop(tenant_id, None)
            stripe_client_cache_size.set(len(self._clients))

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()
            stripe_client_cache_size.set(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, tenant_id: Optional[str]) -> bool:
        with self._lock:
            return tenant_id in self._clients
