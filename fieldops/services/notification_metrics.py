"""
Daily notification delivery counters, keyed by UTC day and notification kind.
Increments are upserts so concurrent dispatches never lose counts.
"""
import logging
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from fieldops.database import dialect_insert
from fieldops.models import NotificationErrorCount, NotificationMetric, NOTIFICATION_KINDS
from fieldops.utils.clock import utc_today, utcnow

logger = logging.getLogger(__name__)


def _increment(db: Session, model, key: Dict, counters: Dict[str, int]) -> None:
    table = model.__table__
    insert = dialect_insert(db)
    if insert is not None:
        stmt = insert(table).values(**key, **counters)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key.keys()),
            set_={name: table.c[name] + stmt.excluded[name] for name in counters},
        )
        db.execute(stmt)
        return

    conditions = [table.c[name] == value for name, value in key.items()]
    result = db.execute(
        update(table).where(*conditions).values(
            **{name: table.c[name] + value for name, value in counters.items()}
        )
    )
    if result.rowcount == 0:
        db.execute(table.insert().values(**key, **counters))


def record_delivery(
    db: Session,
    kind: str,
    sent: int,
    successful: int,
    failed: int,
    errors: Optional[List[str]] = None,
    day: Optional[date] = None,
) -> None:
    """Add one dispatch outcome to the counters for `day` (today, UTC, by default)."""
    if kind not in NOTIFICATION_KINDS:
        kind = "other"
    day = day or utc_today()

    _increment(
        db,
        NotificationMetric,
        {"date": day, "kind": kind},
        {"sent": sent, "successful": successful, "failed": failed},
    )
    db.execute(
        update(NotificationMetric)
        .where(NotificationMetric.date == day, NotificationMetric.kind == kind)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )

    counts: Dict[str, int] = {}
    for message in errors or []:
        message = (message or "unknown error")[:255]
        counts[message] = counts.get(message, 0) + 1
    for message, count in counts.items():
        _increment(
            db,
            NotificationErrorCount,
            {"date": day, "kind": kind, "message": message},
            {"count": count},
        )

    db.commit()


def daily_metrics(
    db: Session,
    start: Optional[date] = None,
    end: Optional[date] = None,
    kind: Optional[str] = None,
) -> List[dict]:
    query = db.query(NotificationMetric)
    if start:
        query = query.filter(NotificationMetric.date >= start)
    if end:
        query = query.filter(NotificationMetric.date <= end)
    if kind:
        query = query.filter(NotificationMetric.kind == kind)
    metrics = query.order_by(NotificationMetric.date.desc(), NotificationMetric.kind).all()

    results = []
    for metric in metrics:
        errors = (
            db.query(NotificationErrorCount)
            .filter(NotificationErrorCount.date == metric.date, NotificationErrorCount.kind == metric.kind)
            .order_by(NotificationErrorCount.count.desc())
            .all()
        )
        results.append({
            "date": metric.date,
            "kind": metric.kind,
            "sent": metric.sent,
            "successful": metric.successful,
            "failed": metric.failed,
            "success_rate": round(metric.successful / metric.sent * 100, 1) if metric.sent else 0.0,
            "errors": [{"message": e.message, "count": e.count} for e in errors],
        })
    return results
