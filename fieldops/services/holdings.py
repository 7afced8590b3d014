"""
Crew holdings and warehouse stock.

Every quantity change is a single conditional UPDATE so concurrent requests
against the same row can never drive it below zero:

    UPDATE crew_holdings SET quantity = quantity - :n
     WHERE crew_id = :crew AND item_id = :item AND quantity >= :n

A rowcount of zero means the precondition failed. Credits go through an
INSERT ... ON CONFLICT DO UPDATE upsert.
"""
import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from fieldops.database import dialect_insert
from fieldops.exceptions import (
    InsufficientHoldingError, InsufficientStockError, InvalidOperationError,
    InvalidQuantityError, MissingReasonError, NotFoundError,
)
from fieldops.models import (
    Crew, CrewHolding, InventoryBatch, InventoryItem,
    BATCH_ACTIVE, MOVEMENT_ASSIGNMENT, MOVEMENT_RETURN, MOVEMENT_USAGE_ORDER,
)
from fieldops.schemas import Actor
from fieldops.services.history import record_movement
from fieldops.services.notifications import (
    NotificationEvent, NotificationSender, NullNotificationSender, exclude_actor_id, safe_send,
)
from fieldops.utils.clock import utcnow

logger = logging.getLogger(__name__)


def ensure_positive(quantity) -> int:
    if quantity is None or isinstance(quantity, bool) or int(quantity) != quantity or quantity <= 0:
        raise InvalidQuantityError(quantity)
    return int(quantity)


def current_holding(db: Session, crew_id: int, item_id: int) -> int:
    holding = db.get(CrewHolding, (crew_id, item_id), populate_existing=True)
    return holding.quantity if holding else 0


def debit_holding(db: Session, crew_id: int, item_id: int, quantity: int) -> None:
    result = db.execute(
        update(CrewHolding)
        .where(
            CrewHolding.crew_id == crew_id,
            CrewHolding.item_id == item_id,
            CrewHolding.quantity >= quantity,
        )
        .values(quantity=CrewHolding.quantity - quantity, last_update=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientHoldingError(crew_id, item_id, current_holding(db, crew_id, item_id), quantity)


def _batched_quantity(crew_id: int, item_id: int):
    return (
        select(func.coalesce(func.sum(InventoryBatch.remaining_quantity), 0))
        .where(
            InventoryBatch.crew_id == crew_id,
            InventoryBatch.item_id == item_id,
            InventoryBatch.status == BATCH_ACTIVE,
        )
        .scalar_subquery()
    )


def loose_holding(db: Session, crew_id: int, item_id: int) -> int:
    """Units of the holding that are not the remaining meters of a crew-held batch."""
    batched = db.execute(select(_batched_quantity(crew_id, item_id))).scalar()
    return max(current_holding(db, crew_id, item_id) - batched, 0)


def debit_loose_holding(db: Session, crew_id: int, item_id: int, quantity: int) -> None:
    """
    Like debit_holding, but the part of the holding backed by the crew's
    active batches stays put; those meters leave only through the batch.
    """
    result = db.execute(
        update(CrewHolding)
        .where(
            CrewHolding.crew_id == crew_id,
            CrewHolding.item_id == item_id,
            CrewHolding.quantity - quantity >= _batched_quantity(crew_id, item_id),
        )
        .values(quantity=CrewHolding.quantity - quantity, last_update=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientHoldingError(crew_id, item_id, loose_holding(db, crew_id, item_id), quantity)


def credit_holding(db: Session, crew_id: int, item_id: int, quantity: int) -> None:
    now = utcnow()
    insert = dialect_insert(db)
    if insert is not None:
        table = CrewHolding.__table__
        stmt = insert(table).values(crew_id=crew_id, item_id=item_id, quantity=quantity, last_update=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["crew_id", "item_id"],
            set_={"quantity": table.c.quantity + stmt.excluded.quantity, "last_update": now},
        )
        db.execute(stmt)
        return

    result = db.execute(
        update(CrewHolding)
        .where(CrewHolding.crew_id == crew_id, CrewHolding.item_id == item_id)
        .values(quantity=CrewHolding.quantity + quantity, last_update=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(CrewHolding(crew_id=crew_id, item_id=item_id, quantity=quantity, last_update=now))
        db.flush()


def debit_warehouse(db: Session, item_id: int, quantity: int) -> None:
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id, InventoryItem.current_stock >= quantity)
        .values(current_stock=InventoryItem.current_stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        item = db.get(InventoryItem, item_id, populate_existing=True)
        if item is None:
            raise NotFoundError("InventoryItem", item_id)
        raise InsufficientStockError(item.code, item.current_stock, quantity)


def credit_warehouse(db: Session, item_id: int, quantity: int) -> None:
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id)
        .values(current_stock=InventoryItem.current_stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError("InventoryItem", item_id)


class CrewHoldingsService:
    """
    Warehouse <-> crew transfers of plain (non-serialized) materials and
    order consumption from a crew's holding.
    """

    def __init__(self, db: Session, notifier: Optional[NotificationSender] = None,
                 actor: Optional[Actor] = None):
        self.db = db
        self.notifier = notifier or NullNotificationSender()
        self.actor = actor or Actor()

    def _get_crew(self, crew_id: int) -> Crew:
        crew = self.db.get(Crew, crew_id)
        if not crew:
            raise NotFoundError("Crew", crew_id)
        return crew

    def _get_item(self, item_id: int) -> InventoryItem:
        item = self.db.get(InventoryItem, item_id)
        if not item:
            raise NotFoundError("InventoryItem", item_id)
        return item

    def _get_plain_item(self, item_id: int) -> InventoryItem:
        item = self._get_item(item_id)
        if item.is_equipment:
            raise InvalidOperationError(
                f"Item {item.code} is serialized equipment; assign it by instance"
            )
        return item

    def grant_to_crew(self, crew_id: int, item_id: int, quantity: int,
                      reason: Optional[str] = None) -> int:
        """
        Move `quantity` units from the warehouse to the crew. Returns the new
        holding.
        """
        quantity = ensure_positive(quantity)
        crew = self._get_crew(crew_id)
        item = self._get_plain_item(item_id)

        try:
            debit_warehouse(self.db, item_id, quantity)
            credit_holding(self.db, crew_id, item_id, quantity)
            record_movement(
                self.db,
                item_id=item_id,
                movement_type=MOVEMENT_ASSIGNMENT,
                quantity_change=quantity,
                reason=reason or f"Assigned to crew {crew.name}",
                crew_id=crew_id,
                performed_by=self.actor.id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        held = current_holding(self.db, crew_id, item_id)
        logger.info(f"Granted {quantity} x {item.code} to crew {crew_id} (now {held})")

        safe_send(self.notifier, NotificationEvent(
            crew_id=crew_id,
            kind="other",
            title_template="Materials assigned",
            body_template="{quantity} {unit} of {description} assigned to your crew",
            payload={
                "item_code": item.code,
                "description": item.description,
                "quantity": quantity,
                "unit": item.unit,
            },
            exclude_actor_id=exclude_actor_id(self.actor),
        ))
        return held

    def consume_from_crew(self, crew_id: int, item_id: int, quantity: int,
                          order_id: Optional[int] = None, batch_code: Optional[str] = None,
                          commit: bool = True) -> None:
        """
        Decrement the crew's holding for an order. With commit=False the caller
        owns the transaction (order completion consumes several lines at once).
        Meters of reels the crew still holds are not available here; those
        are consumed through the batch.
        """
        quantity = ensure_positive(quantity)
        self._get_plain_item(item_id)
        try:
            debit_loose_holding(self.db, crew_id, item_id, quantity)
            record_movement(
                self.db,
                item_id=item_id,
                movement_type=MOVEMENT_USAGE_ORDER,
                quantity_change=-quantity,
                reason=f"Used on order {order_id}" if order_id else "Used by crew",
                crew_id=crew_id,
                order_id=order_id,
                batch_code=batch_code,
                performed_by=self.actor.id,
            )
            if commit:
                self.db.commit()
        except Exception:
            if commit:
                self.db.rollback()
            raise

    def return_from_crew(self, crew_id: int, item_id: int, quantity: int, reason: str) -> int:
        """Move units back from the crew to the warehouse. Returns the new holding."""
        quantity = ensure_positive(quantity)
        if not reason or not reason.strip():
            raise MissingReasonError("return_from_crew")
        self._get_crew(crew_id)
        self._get_plain_item(item_id)

        try:
            debit_loose_holding(self.db, crew_id, item_id, quantity)
            credit_warehouse(self.db, item_id, quantity)
            record_movement(
                self.db,
                item_id=item_id,
                movement_type=MOVEMENT_RETURN,
                quantity_change=-quantity,
                reason=reason,
                crew_id=crew_id,
                performed_by=self.actor.id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return current_holding(self.db, crew_id, item_id)

    def crew_inventory(self, crew_id: int) -> List[CrewHolding]:
        self._get_crew(crew_id)
        return (
            self.db.query(CrewHolding)
            .filter(CrewHolding.crew_id == crew_id, CrewHolding.quantity > 0)
            .order_by(CrewHolding.item_id)
            .populate_existing()
            .all()
        )
