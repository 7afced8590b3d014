"""
Order Lifecycle Service

Owns order creation and updates:
- creation-time duplicate guards (ticket, installation address, recent repair)
- status transitions with assignment/completion timestamps
- inventory consumption when an order is completed with materials
- one history entry per changed dimension
- crew notifications, handed off after commit

Completion with materials is all-or-nothing: every line is validated against
the crew's stock first, then every line is consumed with its conditional
UPDATE inside the same transaction as the order update and history rows.
Any failure rolls the whole request back.
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldops.config import settings
from fieldops.exceptions import (
    DuplicateAddressError, DuplicateRecentFaultError, DuplicateTicketError,
    InsufficientHoldingError, InsufficientStockError, InvalidOperationError,
    NoCrewAssignedError, NotFoundError, NotHeldByCrewError,
)
from fieldops.models import (
    InventoryItem, Order, OrderMaterial,
    BATCH_ACTIVE, CHANGE_CREATED, CHANGE_CREW_ASSIGNMENT, CHANGE_MATERIALS_ADDED, CHANGE_STATUS,
    CHANGE_UPDATED,
)
from fieldops.schemas import Actor, OrderCreateCommand, OrderMaterialInput, OrderUpdateCommand
from fieldops.services import batches, instances
from fieldops.services.crews import find_crew_by_number, get_crew
from fieldops.services.history import list_order_history, record_order_change
from fieldops.services.holdings import CrewHoldingsService, current_holding, ensure_positive, loose_holding
from fieldops.services.notifications import (
    NotificationEvent, NotificationSender, NullNotificationSender, exclude_actor_id, safe_send,
)
from fieldops.utils.clock import utcnow

logger = logging.getLogger(__name__)

STATUS_ASSIGNED = "assigned"
STATUS_COMPLETED = "completed"

# Columns an update may change but never clear
REQUIRED_FIELDS = ("subscriber_name", "address", "type")

NEW_ORDER_TITLE = "New order assigned"
NEW_ORDER_BODY = "{subscriber_name} - {address}"
REASSIGNED_TITLE = "Order assigned to your crew"
REASSIGNED_BODY = "{subscriber_name} - {address}"
STATUS_CHANGE_TITLE = "Order status updated"
STATUS_CHANGE_BODY = "{subscriber_name}: {previous_status} to {status}"


class OrderLifecycleService:
    """
    Service for creating and updating work orders.

    Usage:
        service = OrderLifecycleService(db, notifier=notifier, actor=actor)
        order = service.create_order(command)
        order = service.update_order(order.id, OrderUpdateCommand(status="completed", ...))
    """

    def __init__(self, db: Session, notifier: Optional[NotificationSender] = None,
                 actor: Optional[Actor] = None):
        self.db = db
        self.notifier = notifier or NullNotificationSender()
        self.actor = actor or Actor()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if not order:
            raise NotFoundError("Order", order_id)
        return order

    def list_orders(self, status: Optional[str] = None, crew_id: Optional[int] = None,
                    order_type: Optional[str] = None, search: Optional[str] = None,
                    limit: int = 100, offset: int = 0) -> List[Order]:
        query = self.db.query(Order)
        if status:
            query = query.filter(Order.status == status)
        if crew_id is not None:
            query = query.filter(Order.assigned_to == crew_id)
        if order_type:
            query = query.filter(Order.type == order_type)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                Order.subscriber_name.ilike(pattern)
                | Order.address.ilike(pattern)
                | Order.ticket_id.ilike(pattern)
                | Order.subscriber_number.ilike(pattern)
            )
        return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()

    def order_history(self, order_id: int):
        self.get_order(order_id)
        return list_order_history(self.db, order_id=order_id, limit=1000)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _check_duplicates(self, command: OrderCreateCommand) -> None:
        if command.ticket_id:
            existing = self.db.query(Order).filter(Order.ticket_id == command.ticket_id).first()
            if existing:
                raise DuplicateTicketError(command.ticket_id, existing.id)

        if command.type == "installation":
            # Exact string comparison on the free-text address
            existing = (
                self.db.query(Order)
                .filter(Order.type == "installation", Order.address == command.address)
                .first()
            )
            if existing:
                raise DuplicateAddressError(command.address, existing.id)

        if command.type == "repair":
            days = settings.recent_fault_window_days
            since = utcnow() - timedelta(days=days)
            existing = (
                self.db.query(Order)
                .filter(
                    Order.type == "repair",
                    Order.subscriber_name == command.subscriber_name,
                    Order.address == command.address,
                    Order.created_at >= since,
                )
                .first()
            )
            if existing:
                raise DuplicateRecentFaultError(command.subscriber_name, command.address, days, existing.id)

    def create_order(self, command: OrderCreateCommand) -> Order:
        self._check_duplicates(command)

        crew_id = None
        if command.assigned_to is not None:
            crew_id = get_crew(self.db, command.assigned_to).id
        elif command.crew_number is not None:
            crew = find_crew_by_number(self.db, command.crew_number)
            if crew:
                crew_id = crew.id
            else:
                logger.warning(f"Unknown crew number {command.crew_number}, order left unassigned")

        status = STATUS_ASSIGNED if crew_id is not None else command.status
        now = utcnow()

        order = Order(
            ticket_id=command.ticket_id,
            subscriber_number=command.subscriber_number,
            subscriber_name=command.subscriber_name,
            address=command.address,
            phones=command.phones,
            email=command.email,
            node=command.node,
            services_to_install=command.services_to_install,
            type=command.type,
            status=status,
            assigned_to=crew_id,
            reception_date=command.reception_date or now,
            assignment_date=now if status == STATUS_ASSIGNED else None,
            completion_date=now if status == STATUS_COMPLETED else None,
            created_by=self.actor.id,
            created_at=now,
            updated_at=now,
        )

        try:
            self.db.add(order)
            self.db.flush()
            record_order_change(
                self.db,
                order_id=order.id,
                change_type=CHANGE_CREATED,
                new_value={"status": status, "type": order.type, "assigned_to": crew_id},
                description=f"Order created with status {status}",
                crew_id=crew_id,
                changed_by=self.actor.id,
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if command.ticket_id:
                raise DuplicateTicketError(command.ticket_id) from e
            raise
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(order)
        logger.info(f"Order {order.id} created ({order.type}, {order.status})")

        if crew_id is not None:
            self._notify(order, "new_order", NEW_ORDER_TITLE, NEW_ORDER_BODY)
        return order

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _normalize_materials(self, materials: List[OrderMaterialInput]) -> List[Dict[str, Any]]:
        lines = []
        seen_instances = set()
        for material in materials:
            if not self.db.get(InventoryItem, material.item_id):
                raise NotFoundError("InventoryItem", material.item_id)

            instance_ids = None
            if material.instance_ids:
                instance_ids = list(dict.fromkeys(i.strip() for i in material.instance_ids if i and i.strip()))
                repeated = seen_instances.intersection(instance_ids)
                if repeated:
                    raise InvalidOperationError(f"Instances listed twice: {', '.join(sorted(repeated))}")
                seen_instances.update(instance_ids)
                if material.quantity is not None and material.quantity != len(instance_ids):
                    raise InvalidOperationError(
                        f"Quantity {material.quantity} does not match {len(instance_ids)} instance id(s)"
                    )
                quantity = len(instance_ids)
            else:
                quantity = ensure_positive(material.quantity)

            batch_code = batches.normalize_batch_code(material.batch_code) if material.batch_code else None
            if batch_code and instance_ids:
                raise InvalidOperationError("A material line cannot reference both a batch and instances")

            lines.append({
                "item_id": material.item_id,
                "quantity": quantity,
                "batch_code": batch_code,
                "instance_ids": instance_ids,
            })
        return lines

    def _validate_consumption(self, crew_id: int, lines: List[Dict[str, Any]]) -> None:
        """Check every line against the crew's stock before anything is written."""
        per_item: Dict[int, int] = defaultdict(int)
        per_loose: Dict[int, int] = defaultdict(int)
        per_batch: Dict[str, int] = defaultdict(int)

        for line in lines:
            item = self.db.get(InventoryItem, line["item_id"])
            if line["instance_ids"]:
                found = instances.check_instances_for_order(self.db, line["instance_ids"], crew_id)
                wrong = [i.unique_id for i in found if i.item_id != item.id]
                if wrong:
                    raise InvalidOperationError(f"Instances {', '.join(wrong)} are not units of {item.code}")
            elif line["batch_code"]:
                batch = batches.get_batch(self.db, line["batch_code"])
                if batch.item_id != item.id:
                    raise InvalidOperationError(f"Batch {batch.batch_code} does not contain {item.code}")
                if batch.crew_id != crew_id:
                    raise NotHeldByCrewError(crew_id, [batch.batch_code])
                per_batch[batch.batch_code] += line["quantity"]
                available = batch.remaining_quantity if batch.status == BATCH_ACTIVE else 0
                if available < per_batch[batch.batch_code]:
                    raise InsufficientStockError(
                        f"batch {batch.batch_code}", available, per_batch[batch.batch_code]
                    )
            elif item.is_equipment:
                raise InvalidOperationError(f"Item {item.code} is serialized equipment; instance ids are required")
            else:
                per_loose[item.id] += line["quantity"]
            per_item[item.id] += line["quantity"]

        for item_id, required in per_item.items():
            held = current_holding(self.db, crew_id, item_id)
            if held < required:
                raise InsufficientHoldingError(crew_id, item_id, held, required)
        for item_id, required in per_loose.items():
            loose = loose_holding(self.db, crew_id, item_id)
            if loose < required:
                raise InsufficientHoldingError(crew_id, item_id, loose, required)

    def _consume(self, order: Order, crew_id: int, lines: List[Dict[str, Any]]) -> None:
        holdings = CrewHoldingsService(self.db, actor=self.actor)
        for line in lines:
            if line["instance_ids"]:
                instances.consume_for_order(
                    self.db, line["instance_ids"], order.id, crew_id,
                    installed_location=order.address, actor=self.actor, commit=False,
                )
            elif line["batch_code"]:
                batches.consume_batch(
                    self.db, line["batch_code"], line["quantity"], order_id=order.id,
                    crew_id=crew_id, actor=self.actor, commit=False,
                )
            else:
                holdings.consume_from_crew(
                    crew_id, line["item_id"], line["quantity"], order_id=order.id, commit=False,
                )

    def update_order(self, order_id: int, command: OrderUpdateCommand) -> Order:
        order = self.get_order(order_id)
        fields = command.model_dump(exclude_unset=True)
        cleared = sorted(
            key for key in REQUIRED_FIELDS
            if key in fields and (fields[key] is None or not str(fields[key]).strip())
        )
        if cleared:
            raise InvalidOperationError(f"Fields cannot be cleared: {', '.join(cleared)}")

        previous_status = order.status
        previous_crew = order.assigned_to
        previous_materials = [m.as_dict() for m in order.materials_used]

        fields.pop("materials_used", None)
        lines = None
        if command.materials_used is not None:
            lines = self._normalize_materials(command.materials_used)
        materials_changed = lines is not None and lines != previous_materials

        new_status = fields.pop("status", None)
        status_changed = new_status is not None and new_status != previous_status

        crew_changed = False
        new_crew = previous_crew
        if "assigned_to" in fields:
            new_crew = fields.pop("assigned_to")
            if new_crew is not None:
                get_crew(self.db, new_crew)
            crew_changed = new_crew != previous_crew

        consume = status_changed and new_status == STATUS_COMPLETED and bool(lines)
        if consume:
            if previous_crew is None:
                raise NoCrewAssignedError(order.id)
            self._validate_consumption(previous_crew, lines)

        changes = {
            key: (getattr(order, key), value)
            for key, value in fields.items()
            if getattr(order, key) != value
        }

        now = utcnow()
        try:
            if consume:
                self._consume(order, previous_crew, lines)

            if status_changed:
                order.status = new_status
                if new_status == STATUS_ASSIGNED and order.assignment_date is None:
                    order.assignment_date = now
                if new_status == STATUS_COMPLETED and order.completion_date is None:
                    order.completion_date = now
                record_order_change(
                    self.db,
                    order_id=order.id,
                    change_type=CHANGE_STATUS,
                    previous_value={"status": previous_status},
                    new_value={"status": new_status},
                    description=f"Status changed from {previous_status} to {new_status}",
                    crew_id=new_crew,
                    changed_by=self.actor.id,
                )

            if crew_changed:
                order.assigned_to = new_crew
                record_order_change(
                    self.db,
                    order_id=order.id,
                    change_type=CHANGE_CREW_ASSIGNMENT,
                    previous_value={"assigned_to": previous_crew},
                    new_value={"assigned_to": new_crew},
                    description=(
                        f"Crew changed from {previous_crew} to {new_crew}"
                        if previous_crew is not None else f"Assigned to crew {new_crew}"
                    ),
                    crew_id=new_crew,
                    changed_by=self.actor.id,
                )

            if materials_changed:
                order.materials_used = [OrderMaterial(**line) for line in lines]
                record_order_change(
                    self.db,
                    order_id=order.id,
                    change_type=CHANGE_MATERIALS_ADDED,
                    previous_value=previous_materials,
                    new_value=lines,
                    description=f"{len(lines)} material line(s) recorded",
                    crew_id=new_crew,
                    changed_by=self.actor.id,
                )

            if changes:
                for key, (_, value) in changes.items():
                    setattr(order, key, value)
                record_order_change(
                    self.db,
                    order_id=order.id,
                    change_type=CHANGE_UPDATED,
                    previous_value={key: old for key, (old, _) in changes.items()},
                    new_value={key: new for key, (_, new) in changes.items()},
                    description=f"Updated {', '.join(sorted(changes))}",
                    crew_id=new_crew,
                    changed_by=self.actor.id,
                )

            order.updated_at = now
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Order {order_id} update failed: {e}")
            raise

        self.db.refresh(order)

        if order.assigned_to is not None:
            if status_changed:
                self._notify(
                    order, "status_change", STATUS_CHANGE_TITLE, STATUS_CHANGE_BODY,
                    previous_status=previous_status,
                )
            elif crew_changed:
                self._notify(order, "order_reassigned", REASSIGNED_TITLE, REASSIGNED_BODY)
        return order

    def _notify(self, order: Order, kind: str, title: str, body: str, **extra) -> None:
        payload = {
            "order_id": order.id,
            "ticket_id": order.ticket_id,
            "subscriber_name": order.subscriber_name,
            "address": order.address,
            "type": order.type,
            "status": order.status,
        }
        payload.update(extra)
        safe_send(self.notifier, NotificationEvent(
            crew_id=order.assigned_to,
            kind=kind,
            title_template=title,
            body_template=body,
            payload=payload,
            exclude_actor_id=exclude_actor_id(self.actor),
        ))
