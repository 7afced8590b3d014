"""
Business logic for the inventory catalog
"""

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from fieldops.config import settings
from fieldops.exceptions import (
    DuplicateKeyError, ImmutableFieldError, InvalidOperationError, NotFoundError,
)
from fieldops.models import (
    CrewHolding, EquipmentInstance, InventoryBatch, InventoryItem, InventoryMovement, OrderMaterial,
    BATCH_ACTIVE, BATCH_EXHAUSTED, INSTANCE_STATUSES, MOVEMENT_ENTRY,
)
from fieldops.schemas import Actor, ItemCreate, ItemUpdate
from fieldops.services.history import record_movement
from fieldops.services.holdings import credit_warehouse, ensure_positive

logger = logging.getLogger(__name__)


def get_item(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id)
    if not item:
        raise NotFoundError("InventoryItem", item_id)
    return item


def get_item_by_code(db: Session, code: str) -> InventoryItem:
    item = db.query(InventoryItem).filter(InventoryItem.code == code).first()
    if not item:
        raise NotFoundError("InventoryItem", code)
    return item


def list_items(db: Session, item_type: Optional[str] = None, search: Optional[str] = None,
               include_inactive: bool = False) -> List[InventoryItem]:
    query = db.query(InventoryItem)
    if not include_inactive:
        query = query.filter(InventoryItem.is_active.is_(True))
    if item_type:
        query = query.filter(InventoryItem.type == item_type)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            (InventoryItem.code.ilike(pattern)) | (InventoryItem.description.ilike(pattern))
        )
    return query.order_by(InventoryItem.code).all()


def create_item(db: Session, data: ItemCreate) -> InventoryItem:
    code = data.code.strip()
    if db.query(InventoryItem).filter(InventoryItem.code == code).first():
        raise DuplicateKeyError("InventoryItem", code)

    item = InventoryItem(
        code=code,
        description=data.description,
        unit=data.unit,
        type=data.type,
        current_stock=0,
        minimum_stock=(
            data.minimum_stock if data.minimum_stock is not None else settings.default_minimum_stock
        ),
        is_active=True,
    )
    try:
        db.add(item)
        db.commit()
        db.refresh(item)
    except Exception as e:
        db.rollback()
        logger.error(f"Item creation failed for {code}: {e}")
        raise
    return item


def _is_referenced(db: Session, item_id: int) -> bool:
    for model in (InventoryMovement, InventoryBatch, EquipmentInstance, CrewHolding, OrderMaterial):
        if db.query(model).filter(model.item_id == item_id).first() is not None:
            return True
    return False


def update_item(db: Session, item_id: int, data: ItemUpdate) -> InventoryItem:
    item = get_item(db, item_id)
    fields = data.model_dump(exclude_unset=True)

    new_code = fields.get("code")
    if new_code is not None and new_code != item.code:
        if _is_referenced(db, item_id):
            raise ImmutableFieldError("InventoryItem", "code", "item is referenced by stock records")
        if db.query(InventoryItem).filter(InventoryItem.code == new_code).first():
            raise DuplicateKeyError("InventoryItem", new_code)

    for field, value in fields.items():
        setattr(item, field, value)
    try:
        db.commit()
        db.refresh(item)
    except Exception:
        db.rollback()
        raise
    return item


def restock_item(db: Session, item_id: int, quantity: int, reason: Optional[str] = None,
                 actor: Optional[Actor] = None) -> InventoryItem:
    """Receive plain material into the warehouse. Equipment is received as instances."""
    quantity = ensure_positive(quantity)
    item = get_item(db, item_id)
    if item.is_equipment:
        raise InvalidOperationError(
            f"Item {item.code} is serialized equipment; add instances instead of restocking by quantity"
        )

    try:
        credit_warehouse(db, item_id, quantity)
        record_movement(
            db,
            item_id=item_id,
            movement_type=MOVEMENT_ENTRY,
            quantity_change=quantity,
            reason=reason or "Stock entry",
            performed_by=actor.id if actor else None,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(item)
    logger.info(f"Restocked {quantity} x {item.code}, warehouse now {item.current_stock}")
    return item


def low_stock_items(db: Session) -> List[InventoryItem]:
    return (
        db.query(InventoryItem)
        .filter(InventoryItem.is_active.is_(True), InventoryItem.current_stock < InventoryItem.minimum_stock)
        .order_by(InventoryItem.current_stock)
        .all()
    )


def inventory_statistics(db: Session) -> dict:
    total_items = db.query(func.count(InventoryItem.id)).filter(InventoryItem.is_active.is_(True)).scalar()
    warehouse_units = db.query(func.coalesce(func.sum(InventoryItem.current_stock), 0)).scalar()
    crew_units = db.query(func.coalesce(func.sum(CrewHolding.quantity), 0)).scalar()

    by_status = dict.fromkeys(INSTANCE_STATUSES, 0)
    for status, count in (
        db.query(EquipmentInstance.status, func.count(EquipmentInstance.id))
        .group_by(EquipmentInstance.status)
        .all()
    ):
        by_status[status] = count

    batch_counts = dict(
        db.query(InventoryBatch.status, func.count(InventoryBatch.id)).group_by(InventoryBatch.status).all()
    )

    return {
        "total_items": total_items or 0,
        "warehouse_units": int(warehouse_units or 0),
        "crew_units": int(crew_units or 0),
        "low_stock_items": len(low_stock_items(db)),
        "active_batches": batch_counts.get(BATCH_ACTIVE, 0),
        "exhausted_batches": batch_counts.get(BATCH_EXHAUSTED, 0),
        "instances_by_status": by_status,
    }
