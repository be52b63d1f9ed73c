"""Read-only lookup of a tenant's Stripe credentials from configuration."""
from dataclasses import dataclass
from typing import Optional, Protocol

from paywall.core.config import Settings, settings


@dataclass(frozen=True)
class TenantCredentials:
    secret_key: str
    webhook_secret: Optional[str] = None
    publishable_key: Optional[str] = None  # handed to the checkout page


class CredentialSource(Protocol):
    def get(self, tenant_id: str) -> Optional[TenantCredentials]:
        ...


class SettingsCredentialSource:
    """
    Credentials from STRIPE_TENANT_CREDENTIALS, falling back to the
    single-tenant STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET /
    STRIPE_PUBLISHABLE_KEY set.
    """

    def __init__(self, settings_obj: Optional[Settings] = None):
        self._settings = settings_obj or settings

    def get(self, tenant_id: str) -> Optional[TenantCredentials]:
        entry = self._settings.STRIPE_TENANT_CREDENTIALS.get(tenant_id)
        if entry and entry.get("secret_key"):
            return TenantCredentials(
                secret_key=entry["secret_key"],
                webhook_secret=entry.get("webhook_secret") or None,
                publishable_key=entry.get("publishable_key") or None,
            )
        if self._settings.STRIPE_SECRET_KEY:
            return TenantCredentials(
                secret_key=self._settings.STRIPE_SECRET_KEY,
                webhook_secret=self._settings.STRIPE_WEBHOOK_SECRET,
                publishable_key=self._settings.STRIPE_PUBLISHABLE_KEY,
            )
        return None
