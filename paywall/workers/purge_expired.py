"""Housekeeping job: reap expired entitlement rows and webhook audit records."""
import argparse
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select

from paywall.core.config import settings
from paywall.core.database import entitlement_cache, get_db_session, webhook_audit
from paywall.core.logging import configure_logging
from paywall.features.entitlements.models import ensure_utc, utcnow
from paywall.features.entitlements.store import SqlEntitlementStore
from paywall.features.webhooks.audit import WebhookAuditStore

logger = logging.getLogger("paywall.workers.purge_expired")


def _count_expired(table, cutoff: datetime) -> int:
    with get_db_session() as session:
        stmt = select(func.count()).select_from(table).where(table.c.expires_at <= cutoff)
        return session.execute(stmt).scalar() or 0


def purge_expired(*, now: Optional[datetime] = None, dry_run: bool = False) -> dict:
    """
    Delete entitlement and audit rows whose `expires_at` has passed.

    Readers already ignore expired entitlement rows, so this only bounds
    table growth; it never changes a decision.
    """
    cutoff = ensure_utc(now) if now else utcnow()

    entitlement_candidates = _count_expired(entitlement_cache, cutoff)
    audit_candidates = _count_expired(webhook_audit, cutoff)

    entitlements_deleted = 0
    audit_deleted = 0
    if not dry_run:
        if entitlement_candidates:
            entitlements_deleted = SqlEntitlementStore().purge_expired(cutoff)
        if audit_candidates:
            audit_deleted = WebhookAuditStore(ttl_days=settings.WEBHOOK_AUDIT_TTL_DAYS).purge_expired(cutoff)

    result = {
        "dry_run": dry_run,
        "entitlement_candidates": entitlement_candidates,
        "entitlements_deleted": entitlements_deleted,
        "audit_candidates": audit_candidates,
        "audit_deleted": audit_deleted,
    }
    logger.info("[purge] expired rows", extra=result)
    return result


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete expired entitlement and webhook audit rows")
    parser.add_argument("--dry-run", action="store_true", help="Count candidates without deleting")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    print(purge_expired(dry_run=args.dry_run))
