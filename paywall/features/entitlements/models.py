"""
Entitlement cache row and decision types.

A row is the last known access decision for one (tenant, product, user),
trusted until `expires_at`. Every write replaces the whole row.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

# Product id written by the webhook reconciler when a subscription names no product.
WILDCARD_PRODUCT = "*"

ACCESS_GRANTING_STATUSES = ("active", "trialing")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def partition_key(tenant_id: str, product_id: str) -> str:
    return f"{tenant_id}#{product_id}"


def status_grants_access(status: Optional[str]) -> bool:
    return status in ACCESS_GRANTING_STATUSES


@dataclass(frozen=True)
class SubscriptionSummary:
    status: str
    plan_code: str
    current_period_end: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "plan_code": self.plan_code,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else "",
        }


@dataclass(frozen=True)
class EntitlementDecision:
    has_access: bool
    subscription: Optional[SubscriptionSummary] = None


@dataclass(frozen=True)
class EntitlementRow:
    tenant_id: str
    product_id: str
    user_id: str
    has_access: bool
    expires_at: datetime
    subscription_id: Optional[str] = None
    plan_code: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    user_email: Optional[str] = None

    @property
    def partition_key(self) -> str:
        return partition_key(self.tenant_id, self.product_id)

    def is_fresh(self, now: datetime) -> bool:
        return ensure_utc(now) < ensure_utc(self.expires_at)

    def to_decision(self) -> EntitlementDecision:
        if not self.has_access:
            return EntitlementDecision(has_access=False)
        return EntitlementDecision(
            has_access=True,
            subscription=SubscriptionSummary(
                status=self.status or "active",
                plan_code=self.plan_code or "",
                current_period_end=self.current_period_end,
            ),
        )

    @classmethod
    def build(
        cls,
        *,
        tenant_id: str,
        product_id: str,
        user_id: str,
        has_access: bool,
        now: datetime,
        ttl_seconds: int,
        subscription_id: Optional[str] = None,
        plan_code: Optional[str] = None,
        status: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
        user_email: Optional[str] = None,
    ) -> "EntitlementRow":
        """Row whose freshness window starts at `now`."""
        return cls(
            tenant_id=tenant_id,
            product_id=product_id,
            user_id=user_id,
            has_access=has_access,
            expires_at=ensure_utc(now) + timedelta(seconds=ttl_seconds),
            subscription_id=subscription_id,
            plan_code=plan_code,
            status=status,
            current_period_end=ensure_utc(current_period_end),
            user_email=user_email,
        )


@dataclass(frozen=True)
class FreshnessWindows:
    """Seconds a row is trusted: long for grants, short for denials."""
    active_ttl_seconds: int = 300
    inactive_ttl_seconds: int = 60

    def for_access(self, has_access: bool) -> int:
        return self.active_ttl_seconds if has_access else self.inactive_ttl_seconds
