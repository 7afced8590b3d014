"""
Movement/change history.

Append helpers never commit: the caller's ledger mutation and its history
rows go out in the same transaction, so a failed append aborts the mutation.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from fieldops.models import InventoryMovement, OrderHistory

logger = logging.getLogger(__name__)


def record_movement(
    db: Session,
    *,
    item_id: int,
    movement_type: str,
    quantity_change: int,
    reason: Optional[str] = None,
    crew_id: Optional[int] = None,
    order_id: Optional[int] = None,
    batch_code: Optional[str] = None,
    performed_by: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> InventoryMovement:
    movement = InventoryMovement(
        item_id=item_id,
        movement_type=movement_type,
        quantity_change=quantity_change,
        reason=reason,
        crew_id=crew_id,
        order_id=order_id,
        batch_code=batch_code,
        performed_by=performed_by,
        details=details,
    )
    db.add(movement)
    db.flush()
    return movement


def record_order_change(
    db: Session,
    *,
    order_id: Optional[int],
    change_type: str,
    description: str,
    previous_value: Any = None,
    new_value: Any = None,
    crew_id: Optional[int] = None,
    changed_by: Optional[int] = None,
) -> OrderHistory:
    entry = OrderHistory(
        order_id=order_id,
        change_type=change_type,
        previous_value=previous_value,
        new_value=new_value,
        description=description,
        crew_id=crew_id,
        changed_by=changed_by,
    )
    db.add(entry)
    db.flush()
    return entry


def list_movements(
    db: Session,
    item_id: Optional[int] = None,
    crew_id: Optional[int] = None,
    order_id: Optional[int] = None,
    movement_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
) -> List[InventoryMovement]:
    query = db.query(InventoryMovement)
    if item_id is not None:
        query = query.filter(InventoryMovement.item_id == item_id)
    if crew_id is not None:
        query = query.filter(InventoryMovement.crew_id == crew_id)
    if order_id is not None:
        query = query.filter(InventoryMovement.order_id == order_id)
    if movement_type:
        query = query.filter(InventoryMovement.movement_type == movement_type)
    if since:
        query = query.filter(InventoryMovement.created_at >= since)
    if until:
        query = query.filter(InventoryMovement.created_at <= until)
    return query.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc()).limit(limit).all()


def list_order_history(
    db: Session,
    order_id: Optional[int] = None,
    crew_id: Optional[int] = None,
    change_type: Optional[str] = None,
    limit: int = 100,
) -> List[OrderHistory]:
    query = db.query(OrderHistory)
    if order_id is not None:
        query = query.filter(OrderHistory.order_id == order_id)
    if crew_id is not None:
        query = query.filter(OrderHistory.crew_id == crew_id)
    if change_type:
        query = query.filter(OrderHistory.change_type == change_type)
    return query.order_by(OrderHistory.created_at.asc(), OrderHistory.id.asc()).limit(limit).all()


def crew_ledger_balance(db: Session, crew_id: int, item_id: int) -> int:
    """Signed sum of the movements recorded for a (crew, item) pair."""
    total = (
        db.query(func.coalesce(func.sum(InventoryMovement.quantity_change), 0))
        .filter(InventoryMovement.crew_id == crew_id, InventoryMovement.item_id == item_id)
        .scalar()
    )
    return int(total or 0)
