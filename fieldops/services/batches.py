"""
Batch ledger for bulk-measured stock (cable reels and similar).

A batch sits in the warehouse (crew_id NULL) or with one crew. Its remaining
quantity is also counted in the holder's stock: warehouse current_stock for
warehouse batches, the crew holding for crew batches.
"""
import logging
from typing import List, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from fieldops.exceptions import (
    AlreadyAssignedError, DuplicateKeyError, InsufficientStockError, InvalidOperationError,
    MissingReasonError, NotAssignedError, NotEmptyError, NotFoundError, NotHeldByCrewError,
)
from fieldops.models import (
    Crew, InventoryBatch, InventoryItem,
    BATCH_ACTIVE, BATCH_EXHAUSTED,
    MOVEMENT_ADJUSTMENT, MOVEMENT_ASSIGNMENT, MOVEMENT_ENTRY, MOVEMENT_RETURN, MOVEMENT_USAGE_ORDER,
)
from fieldops.schemas import Actor, BatchCreate
from fieldops.services.history import record_movement
from fieldops.services.holdings import (
    credit_holding, credit_warehouse, debit_holding, debit_warehouse, ensure_positive,
)

logger = logging.getLogger(__name__)


def normalize_batch_code(batch_code: str) -> str:
    return (batch_code or "").strip().upper()


def _actor_id(actor: Optional[Actor]) -> Optional[int]:
    return actor.id if actor else None


def get_batch(db: Session, batch_code: str) -> InventoryBatch:
    code = normalize_batch_code(batch_code)
    batch = (
        db.query(InventoryBatch)
        .filter(InventoryBatch.batch_code == code)
        .populate_existing()
        .first()
    )
    if not batch:
        raise NotFoundError("InventoryBatch", code)
    return batch


def list_batches(db: Session, item_id: Optional[int] = None, crew_id: Optional[int] = None,
                 status: Optional[str] = None, in_warehouse: bool = False) -> List[InventoryBatch]:
    query = db.query(InventoryBatch)
    if item_id is not None:
        query = query.filter(InventoryBatch.item_id == item_id)
    if crew_id is not None:
        query = query.filter(InventoryBatch.crew_id == crew_id)
    elif in_warehouse:
        query = query.filter(InventoryBatch.crew_id.is_(None))
    if status:
        query = query.filter(InventoryBatch.status == status)
    return query.order_by(InventoryBatch.created_at.desc(), InventoryBatch.id.desc()).all()


def create_batch(db: Session, data: BatchCreate, actor: Optional[Actor] = None) -> InventoryBatch:
    """Register a new reel in the warehouse."""
    code = normalize_batch_code(data.batch_code)
    quantity = ensure_positive(data.initial_quantity)

    item = db.get(InventoryItem, data.item_id)
    if not item:
        raise NotFoundError("InventoryItem", data.item_id)
    if db.query(InventoryBatch).filter(InventoryBatch.batch_code == code).first():
        raise DuplicateKeyError("InventoryBatch", code)

    batch = InventoryBatch(
        batch_code=code,
        item_id=item.id,
        initial_quantity=quantity,
        remaining_quantity=quantity,
        unit=data.unit,
        supplier=data.supplier,
        acquisition_date=data.acquisition_date,
        notes=data.notes,
        status=BATCH_ACTIVE,
    )
    try:
        db.add(batch)
        db.flush()
        credit_warehouse(db, item.id, quantity)
        record_movement(
            db,
            item_id=item.id,
            movement_type=MOVEMENT_ENTRY,
            quantity_change=quantity,
            reason=f"Batch {code} received",
            batch_code=code,
            performed_by=_actor_id(actor),
        )
        db.commit()
        db.refresh(batch)
    except Exception as e:
        db.rollback()
        logger.error(f"Batch creation failed for {code}: {e}")
        raise

    logger.info(f"Batch {code} created with {quantity} {batch.unit} of {item.code}")
    return batch


def assign_meters_to_batch(db: Session, batch_code: str, meters: int,
                           actor: Optional[Actor] = None) -> InventoryBatch:
    """Add meters to an existing reel. An exhausted reel becomes active again."""
    meters = ensure_positive(meters)
    batch = get_batch(db, batch_code)

    try:
        db.execute(
            update(InventoryBatch)
            .where(InventoryBatch.id == batch.id)
            .values(
                initial_quantity=InventoryBatch.initial_quantity + meters,
                remaining_quantity=InventoryBatch.remaining_quantity + meters,
                status=BATCH_ACTIVE,
            )
            .execution_options(synchronize_session=False)
        )
        if batch.crew_id is not None:
            credit_holding(db, batch.crew_id, batch.item_id, meters)
            record_movement(
                db,
                item_id=batch.item_id,
                movement_type=MOVEMENT_ASSIGNMENT,
                quantity_change=meters,
                reason=f"Meters added to batch {batch.batch_code}",
                crew_id=batch.crew_id,
                batch_code=batch.batch_code,
                performed_by=_actor_id(actor),
            )
        else:
            credit_warehouse(db, batch.item_id, meters)
            record_movement(
                db,
                item_id=batch.item_id,
                movement_type=MOVEMENT_ENTRY,
                quantity_change=meters,
                reason=f"Meters added to batch {batch.batch_code}",
                batch_code=batch.batch_code,
                performed_by=_actor_id(actor),
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return get_batch(db, batch.batch_code)


def debit_batch(db: Session, batch_code: str, quantity: int) -> None:
    """
    Atomic conditional decrement of a batch. Flips the batch to exhausted in
    the same statement when it reaches zero.
    """
    code = normalize_batch_code(batch_code)
    result = db.execute(
        update(InventoryBatch)
        .where(
            InventoryBatch.batch_code == code,
            InventoryBatch.status == BATCH_ACTIVE,
            InventoryBatch.remaining_quantity >= quantity,
        )
        .values(
            remaining_quantity=InventoryBatch.remaining_quantity - quantity,
            status=case(
                (InventoryBatch.remaining_quantity - quantity == 0, BATCH_EXHAUSTED),
                else_=InventoryBatch.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        batch = get_batch(db, code)
        raise InsufficientStockError(f"batch {code}", batch.remaining_quantity, quantity)


def consume_batch(db: Session, batch_code: str, quantity: int, order_id: Optional[int] = None,
                  crew_id: Optional[int] = None, actor: Optional[Actor] = None,
                  commit: bool = True) -> InventoryBatch:
    """
    Consume meters from a batch. The holder's stock (crew holding or warehouse)
    is debited by the same amount and a usage movement is recorded.

    When crew_id is given the batch must be held by that crew. With
    commit=False the caller owns the transaction.
    """
    quantity = ensure_positive(quantity)
    batch = get_batch(db, batch_code)
    if crew_id is not None and batch.crew_id != crew_id:
        raise NotHeldByCrewError(crew_id, [batch.batch_code])

    try:
        debit_batch(db, batch.batch_code, quantity)
        if batch.crew_id is not None:
            debit_holding(db, batch.crew_id, batch.item_id, quantity)
        else:
            debit_warehouse(db, batch.item_id, quantity)
        record_movement(
            db,
            item_id=batch.item_id,
            movement_type=MOVEMENT_USAGE_ORDER,
            quantity_change=-quantity,
            reason=f"Used on order {order_id}" if order_id else f"Consumed from batch {batch.batch_code}",
            crew_id=batch.crew_id,
            order_id=order_id,
            batch_code=batch.batch_code,
            performed_by=_actor_id(actor),
        )
        if commit:
            db.commit()
    except Exception:
        if commit:
            db.rollback()
        raise

    return get_batch(db, batch.batch_code)


def delete_batch(db: Session, batch_code: str, actor: Optional[Actor] = None) -> None:
    batch = get_batch(db, batch_code)
    if batch.status != BATCH_EXHAUSTED or batch.remaining_quantity > 0:
        raise NotEmptyError(batch.batch_code, batch.remaining_quantity)

    try:
        record_movement(
            db,
            item_id=batch.item_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity_change=0,
            reason=f"Exhausted batch {batch.batch_code} deleted",
            batch_code=batch.batch_code,
            performed_by=_actor_id(actor),
        )
        db.delete(batch)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Batch {batch_code} deleted")


def assign_batch_to_crew(db: Session, batch_code: str, crew_id: int,
                         actor: Optional[Actor] = None) -> InventoryBatch:
    """Hand a warehouse reel to a crew; its remaining meters join the crew holding."""
    batch = get_batch(db, batch_code)
    if not db.get(Crew, crew_id):
        raise NotFoundError("Crew", crew_id)
    if batch.status != BATCH_ACTIVE:
        raise InvalidOperationError(f"Batch {batch.batch_code} is exhausted")

    quantity = batch.remaining_quantity
    try:
        result = db.execute(
            update(InventoryBatch)
            .where(InventoryBatch.id == batch.id, InventoryBatch.crew_id.is_(None))
            .values(crew_id=crew_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyAssignedError([batch.batch_code])
        debit_warehouse(db, batch.item_id, quantity)
        credit_holding(db, crew_id, batch.item_id, quantity)
        record_movement(
            db,
            item_id=batch.item_id,
            movement_type=MOVEMENT_ASSIGNMENT,
            quantity_change=quantity,
            reason=f"Batch {batch.batch_code} assigned to crew",
            crew_id=crew_id,
            batch_code=batch.batch_code,
            performed_by=_actor_id(actor),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return get_batch(db, batch.batch_code)


def return_batch_to_warehouse(db: Session, batch_code: str, reason: str,
                              actor: Optional[Actor] = None) -> InventoryBatch:
    if not reason or not reason.strip():
        raise MissingReasonError("return_batch_to_warehouse")
    batch = get_batch(db, batch_code)
    if batch.crew_id is None:
        raise NotAssignedError([batch.batch_code], "batch is already in the warehouse")

    crew_id = batch.crew_id
    quantity = batch.remaining_quantity
    try:
        result = db.execute(
            update(InventoryBatch)
            .where(InventoryBatch.id == batch.id, InventoryBatch.crew_id == crew_id)
            .values(crew_id=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotAssignedError([batch.batch_code], "batch holder changed concurrently")
        if quantity > 0:
            debit_holding(db, crew_id, batch.item_id, quantity)
            credit_warehouse(db, batch.item_id, quantity)
        record_movement(
            db,
            item_id=batch.item_id,
            movement_type=MOVEMENT_RETURN,
            quantity_change=-quantity,
            reason=reason,
            crew_id=crew_id,
            batch_code=batch.batch_code,
            performed_by=_actor_id(actor),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return get_batch(db, batch.batch_code)
