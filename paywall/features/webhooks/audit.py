"""
Webhook audit log: idempotency record and audit trail per (tenant, event).

A record with result `success` marks the event as processed; an `error`
record is kept for inspection and replaced by the next delivery's outcome.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, select

from paywall.core.database import get_db_session, upsert, webhook_audit
from paywall.features.entitlements.models import ensure_utc, utcnow

RESULT_SUCCESS = "success"
RESULT_ERROR = "error"


def audit_key(tenant_id: str, event_id: str) -> str:
    return f"{tenant_id}#{event_id}"


@dataclass(frozen=True)
class WebhookAuditRecord:
    tenant_id: str
    event_id: str
    event_type: str
    processed_at: datetime
    result: str
    error_message: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.result == RESULT_SUCCESS


class WebhookAuditStore:
    def __init__(
        self,
        ttl_days: int = 30,
        session_factory: Callable = get_db_session,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.ttl_days = ttl_days
        self._session_factory = session_factory
        self._now = now_fn

    def get(self, tenant_id: str, event_id: str) -> Optional[WebhookAuditRecord]:
        with self._session_factory() as session:
            row = session.execute(
                select(webhook_audit).where(webhook_audit.c.tenant_event_key == audit_key(tenant_id, event_id))
            ).first()
        if row is None:
            return None
        return WebhookAuditRecord(
            tenant_id=row.tenant_id,
            event_id=row.event_id,
            event_type=row.event_type,
            processed_at=ensure_utc(row.processed_at),
            result=row.result,
            error_message=row.error_message,
            expires_at=ensure_utc(row.expires_at),
        )

    def record(
        self,
        tenant_id: str,
        event_id: str,
        event_type: str,
        result: str,
        error_message: Optional[str] = None,
    ) -> WebhookAuditRecord:
        """Write (or replace) the audit record for this delivery."""
        now = self._now()
        record = WebhookAuditRecord(
            tenant_id=tenant_id,
            event_id=event_id,
            event_type=event_type,
            processed_at=now,
            result=result,
            error_message=error_message[:2000] if error_message else None,
            expires_at=now + timedelta(days=self.ttl_days),
        )
        key = audit_key(tenant_id, event_id)
        with self._session_factory() as session:
            upsert(
                session,
                webhook_audit,
                dict(
                    tenant_event_key=key,
                    tenant_id=record.tenant_id,
                    event_id=record.event_id,
                    event_type=record.event_type,
                    processed_at=record.processed_at,
                    result=record.result,
                    error_message=record.error_message,
                    expires_at=record.expires_at,
                ),
                index_elements=["tenant_event_key"],
            )
        return record

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = ensure_utc(now) if now else self._now()
        with self._session_factory() as session:
            result = session.execute(delete(webhook_audit).where(webhook_audit.c.expires_at <= cutoff))
            return result.rowcount or 0
