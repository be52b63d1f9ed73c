"""
Entitlement store adapters.

The store is dumb storage: point read, unconditional point overwrite, and
expiry. Callers check `expires_at` themselves, so the exact reaping delay of
a backend never matters for correctness.
"""
import json
import logging
import math
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from sqlalchemy import delete, select

from paywall.core.database import entitlement_cache, get_db_session, upsert
from paywall.features.entitlements.models import EntitlementRow, ensure_utc, partition_key, utcnow

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "entitlements:"


class EntitlementStore(Protocol):
    def get(self, tenant_id: str, product_id: str, user_id: str) -> Optional[EntitlementRow]:
        ...

    def put(self, row: EntitlementRow) -> None:
        ...


class InMemoryEntitlementStore:
    """Process-local store for development and tests."""

    def __init__(self):
        self._rows: Dict[Tuple[str, str], EntitlementRow] = {}
        self._lock = threading.Lock()
        self.writes = 0

    def get(self, tenant_id: str, product_id: str, user_id: str) -> Optional[EntitlementRow]:
        with self._lock:
            return self._rows.get((partition_key(tenant_id, product_id), user_id))

    def put(self, row: EntitlementRow) -> None:
        with self._lock:
            self._rows[(row.partition_key, row.user_id)] = row
            self.writes += 1

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()
            self.writes = 0


class SqlEntitlementStore:
    """Entitlement rows in the `entitlement_cache` table."""

    def __init__(self, session_factory: Callable = get_db_session):
        self._session_factory = session_factory

    def get(self, tenant_id: str, product_id: str, user_id: str) -> Optional[EntitlementRow]:
        with self._session_factory() as session:
            row = session.execute(
                select(entitlement_cache)
                .where(entitlement_cache.c.tenant_product_key == partition_key(tenant_id, product_id))
                .where(entitlement_cache.c.user_id == user_id)
            ).first()
        if row is None:
            return None
        return EntitlementRow(
            tenant_id=tenant_id,
            product_id=product_id,
            user_id=row.user_id,
            has_access=bool(row.has_access),
            expires_at=ensure_utc(row.expires_at),
            subscription_id=row.subscription_id,
            plan_code=row.plan_code,
            status=row.status,
            current_period_end=ensure_utc(row.current_period_end),
            user_email=row.user_email,
        )

    def put(self, row: EntitlementRow) -> None:
        with self._session_factory() as session:
            upsert(
                session,
                entitlement_cache,
                dict(
                    tenant_product_key=row.partition_key,
                    user_id=row.user_id,
                    has_access=row.has_access,
                    subscription_id=row.subscription_id,
                    plan_code=row.plan_code,
                    status=row.status,
                    current_period_end=row.current_period_end,
                    user_email=row.user_email,
                    expires_at=row.expires_at,
                ),
                index_elements=["tenant_product_key", "user_id"],
            )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete rows past their expiry. Returns the number removed."""
        cutoff = ensure_utc(now) if now else utcnow()
        with self._session_factory() as session:
            result = session.execute(
                delete(entitlement_cache).where(entitlement_cache.c.expires_at <= cutoff)
            )
            return result.rowcount or 0


class RedisEntitlementStore:
    """Entitlement rows as JSON strings with a native Redis TTL."""

    def __init__(self, client, now_fn: Callable[[], datetime] = utcnow):
        self._client = client
        self._now = now_fn

    @staticmethod
    def _key(tenant_id: str, product_id: str, user_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{partition_key(tenant_id, product_id)}:{user_id}"

    @staticmethod
    def _serialize(row: EntitlementRow) -> str:
        return json.dumps({
            "tenant_id": row.tenant_id,
            "product_id": row.product_id,
            "user_id": row.user_id,
            "has_access": row.has_access,
            "subscription_id": row.subscription_id,
            "plan_code": row.plan_code,
            "status": row.status,
            "current_period_end": row.current_period_end.isoformat() if row.current_period_end else None,
            "user_email": row.user_email,
            "expires_at": row.expires_at.isoformat(),
        })

    @staticmethod
    def _deserialize(data: str) -> EntitlementRow:
        o = json.loads(data)
        period_end = o.get("current_period_end")
        return EntitlementRow(
            tenant_id=o["tenant_id"],
            product_id=o["product_id"],
            user_id=o["user_id"],
            has_access=bool(o["has_access"]),
            expires_at=ensure_utc(datetime.fromisoformat(o["expires_at"])),
            subscription_id=o.get("subscription_id"),
            plan_code=o.get("plan_code"),
            status=o.get("status"),
            current_period_end=ensure_utc(datetime.fromisoformat(period_end)) if period_end else None,
            user_email=o.get("user_email"),
        )

    def get(self, tenant_id: str, product_id: str, user_id: str) -> Optional[EntitlementRow]:
        raw = self._client.get(self._key(tenant_id, product_id, user_id))
        if not raw:
            return None
        return self._deserialize(raw)

    def put(self, row: EntitlementRow) -> None:
        remaining = (row.expires_at - self._now()).total_seconds()
        ttl = max(1, math.ceil(remaining))
        self._client.set(
            self._key(row.tenant_id, row.product_id, row.user_id),
            self._serialize(row),
            ex=ttl,
        )


def build_entitlement_store(cfg) -> EntitlementStore:
    """Pick the store backend named by ENTITLEMENT_STORE."""
    backend = (cfg.ENTITLEMENT_STORE or "sql").lower()
    if backend == "memory":
        return InMemoryEntitlementStore()
    if backend == "redis":
        client = redis.Redis.from_url(cfg.REDIS_URL, decode_responses=True)
        return RedisEntitlementStore(client)
    if backend == "sql":
        return SqlEntitlementStore()
    raise ValueError(f"Unknown ENTITLEMENT_STORE: {cfg.ENTITLEMENT_STORE}")
