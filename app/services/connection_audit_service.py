"""Connection audit log - append-only record of sync/send/webhook/auth events."""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.enums import ConnectionEventType, ConnectionOutcome
from app.db.models import ConnectionAuditEntry

logger = logging.getLogger(__name__)

MAX_ERROR_DETAIL_CHARS = 8000


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def record_event(
    db: Session,
    *,
    provider: str,
    event_type: ConnectionEventType,
    outcome: ConnectionOutcome,
    org_id: UUID | None = None,
    channel_id: UUID | None = None,
    latency_ms: int | None = None,
    items_processed: int = 0,
    error_detail: str | None = None,
    details: dict | None = None,
    commit: bool = True,
) -> ConnectionAuditEntry:
    """Append one audit entry. Entries are never updated afterwards."""
    entry = ConnectionAuditEntry(
        organization_id=org_id,
        channel_id=channel_id,
        provider=provider,
        event_type=event_type,
        outcome=outcome,
        latency_ms=latency_ms,
        items_processed=items_processed,
        error_detail=error_detail[:MAX_ERROR_DETAIL_CHARS] if error_detail else None,
        details=details or {},
        created_at=_now_utc(),
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)
    else:
        db.flush()
    return entry


def list_entries(
    db: Session,
    org_id: UUID,
    channel_id: UUID,
    *,
    event_type: ConnectionEventType | None = None,
    outcome: ConnectionOutcome | None = None,
    since: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ConnectionAuditEntry], int]:
    """List entries for a channel, newest first. Returns (entries, total)."""
    query = db.query(ConnectionAuditEntry).filter(
        ConnectionAuditEntry.organization_id == org_id,
        ConnectionAuditEntry.channel_id == channel_id,
    )
    if event_type:
        query = query.filter(ConnectionAuditEntry.event_type == event_type)
    if outcome:
        query = query.filter(ConnectionAuditEntry.outcome == outcome)
    if since:
        query = query.filter(ConnectionAuditEntry.created_at >= since)

    total = query.count()
    entries = (
        query.order_by(ConnectionAuditEntry.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return entries, total


def get_stats(db: Session, org_id: UUID, channel_id: UUID, days: int = 7) -> dict:
    """Outcome counts, average latency and last success/failure over a window."""
    since = _now_utc() - timedelta(days=days)
    base = db.query(ConnectionAuditEntry).filter(
        ConnectionAuditEntry.organization_id == org_id,
        ConnectionAuditEntry.channel_id == channel_id,
        ConnectionAuditEntry.created_at >= since,
    )

    counts = {outcome.value: 0 for outcome in ConnectionOutcome}
    rows = (
        base.with_entities(ConnectionAuditEntry.outcome, func.count(ConnectionAuditEntry.id))
        .group_by(ConnectionAuditEntry.outcome)
        .all()
    )
    for outcome, count in rows:
        key = outcome.value if isinstance(outcome, ConnectionOutcome) else str(outcome)
        counts[key] = count

    avg_latency = base.with_entities(func.avg(ConnectionAuditEntry.latency_ms)).scalar()
    items = base.with_entities(func.sum(ConnectionAuditEntry.items_processed)).scalar()

    def _last(outcome: ConnectionOutcome) -> datetime | None:
        entry = (
            base.filter(ConnectionAuditEntry.outcome == outcome)
            .order_by(ConnectionAuditEntry.created_at.desc())
            .first()
        )
        return entry.created_at if entry else None

    return {
        "days": days,
        "total": sum(counts.values()),
        "by_outcome": counts,
        "avg_latency_ms": round(float(avg_latency), 1) if avg_latency is not None else None,
        "items_processed": int(items or 0),
        "last_success_at": _last(ConnectionOutcome.SUCCESS),
        "last_failure_at": _last(ConnectionOutcome.FAILURE),
    }
