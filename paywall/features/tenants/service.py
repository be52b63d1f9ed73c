"""
Tenant registry: tenants, products and API keys.

Minimal read/write paths over SQL used by the HTTP surface and the bootstrap
script. API keys are stored as SHA-256 hashes; the raw key is shown once.
"""
import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import insert, select, update

from paywall.core.database import api_keys, get_db_session, products, tenants
from paywall.core.errors import NotConfiguredError, NotFoundError
from paywall.features.billing.client_cache import ProviderClientCache
from paywall.features.entitlements.models import WILDCARD_PRODUCT, utcnow

ADMIN_KEY = "admin"
PRODUCT_KEY = "product"


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    name: str
    admin_email: str
    credentials_configured: bool
    credentials_validated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Product:
    tenant_id: str
    product_id: str
    product_name: str
    checkout_domain: Optional[str] = None
    allowed_return_urls: List[str] = field(default_factory=list)
    subscription_callback_url: Optional[str] = None


@dataclass(frozen=True)
class ResolvedApiKey:
    tenant_id: str
    product_id: str  # '*' for admin keys
    key_type: str

    @property
    def is_admin(self) -> bool:
        return self.key_type == ADMIN_KEY


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(key_type: str) -> str:
    prefix = "pk_paywall" if key_type == ADMIN_KEY else "sk_paywall"
    return f"{prefix}_{secrets.token_hex(24)}"


def create_tenant(tenant_id: str, name: str, admin_email: str, *, credentials_configured: bool = False) -> Tenant:
    with get_db_session() as session:
        session.execute(
            insert(tenants).values(
                tenant_id=tenant_id,
                name=name,
                admin_email=admin_email,
                credentials_configured=credentials_configured,
                credentials_validated_at=utcnow() if credentials_configured else None,
            )
        )
    return get_tenant(tenant_id)


def get_tenant(tenant_id: str) -> Optional[Tenant]:
    with get_db_session() as session:
        row = session.execute(select(tenants).where(tenants.c.tenant_id == tenant_id)).first()
    if row is None:
        return None
    return Tenant(
        tenant_id=row.tenant_id,
        name=row.name,
        admin_email=row.admin_email,
        credentials_configured=bool(row.credentials_configured),
        credentials_validated_at=row.credentials_validated_at,
    )


def require_configured_tenant(tenant_id: str) -> Tenant:
    """
    Raises:
        NotFoundError: unknown tenant
        NotConfiguredError: tenant has no working billing credentials
    """
    tenant = get_tenant(tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    if not tenant.credentials_configured:
        raise NotConfiguredError("Stripe credentials not configured for this tenant")
    return tenant


def set_credentials_configured(
    tenant_id: str,
    configured: bool,
    *,
    providers: Optional[ProviderClientCache] = None,
) -> None:
    """Flip the tenant's credential flag and drop its cached billing client."""
    with get_db_session() as session:
        result = session.execute(
            update(tenants)
            .where(tenants.c.tenant_id == tenant_id)
            .values(
                credentials_configured=configured,
                credentials_validated_at=utcnow() if configured else None,
                updated_at=utcnow(),
            )
        )
        if not result.rowcount:
            raise NotFoundError(f"Tenant {tenant_id} not found")
    if providers is not None:
        providers.invalidate(tenant_id)


def create_product(
    tenant_id: str,
    product_id: str,
    product_name: str,
    *,
    checkout_domain: Optional[str] = None,
    allowed_return_urls: Optional[List[str]] = None,
    subscription_callback_url: Optional[str] = None,
) -> Product:
    with get_db_session() as session:
        session.execute(
            insert(products).values(
                tenant_id=tenant_id,
                product_id=product_id,
                product_name=product_name,
                checkout_domain=checkout_domain,
                allowed_return_urls=list(allowed_return_urls or []),
                subscription_callback_url=subscription_callback_url,
            )
        )
    return get_product(tenant_id, product_id)


def get_product(tenant_id: str, product_id: str) -> Optional[Product]:
    with get_db_session() as session:
        row = session.execute(
            select(products)
            .where(products.c.tenant_id == tenant_id)
            .where(products.c.product_id == product_id)
        ).first()
    if row is None:
        return None
    return Product(
        tenant_id=row.tenant_id,
        product_id=row.product_id,
        product_name=row.product_name,
        checkout_domain=row.checkout_domain,
        allowed_return_urls=list(row.allowed_return_urls or []),
        subscription_callback_url=row.subscription_callback_url,
    )


def require_product(tenant_id: str, product_id: str) -> Product:
    product = get_product(tenant_id, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


def issue_api_key(tenant_id: str, product_id: Optional[str] = None) -> str:
    """Create a product key (or an admin key when product_id is None). Returns the raw key."""
    key_type = PRODUCT_KEY if product_id else ADMIN_KEY
    raw_key = generate_api_key(key_type)
    with get_db_session() as session:
        session.execute(
            insert(api_keys).values(
                api_key_hash=hash_api_key(raw_key),
                tenant_id=tenant_id,
                product_id=product_id or WILDCARD_PRODUCT,
                key_type=key_type,
            )
        )
    return raw_key


def resolve_api_key(raw_key: Optional[str]) -> Optional[ResolvedApiKey]:
    if not raw_key:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(api_keys).where(api_keys.c.api_key_hash == hash_api_key(raw_key))
        ).first()
    if row is None:
        return None
    return ResolvedApiKey(tenant_id=row.tenant_id, product_id=row.product_id, key_type=row.key_type)
