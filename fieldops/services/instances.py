"""
Instance registry for serialized equipment.

    in_stock -> assigned_to_crew -> installed          (terminal)
                                 -> in_stock           (return)
                                 -> damaged            (terminal)

Each instance counts as one unit of its item: in the warehouse stock while
in_stock, in the holder crew's holding while assigned_to_crew.
"""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from fieldops.exceptions import (
    AlreadyAssignedError, DuplicateKeyError, InvalidOperationError, MissingReasonError,
    NotAssignedError, NotFoundError, NotHeldByCrewError,
)
from fieldops.models import (
    Crew, EquipmentInstance, InventoryItem,
    INSTANCE_ASSIGNED, INSTANCE_DAMAGED, INSTANCE_IN_STOCK, INSTANCE_INSTALLED,
    MOVEMENT_ADJUSTMENT, MOVEMENT_ASSIGNMENT, MOVEMENT_ENTRY, MOVEMENT_RETURN, MOVEMENT_USAGE_ORDER,
)
from fieldops.schemas import Actor, InstanceCreate
from fieldops.services.history import record_movement
from fieldops.services.holdings import credit_holding, credit_warehouse, debit_holding, debit_warehouse
from fieldops.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _actor_id(actor: Optional[Actor]) -> Optional[int]:
    return actor.id if actor else None


def _unique(ids: Iterable[str]) -> List[str]:
    return list(OrderedDict.fromkeys(i.strip() for i in ids if i and i.strip()))


def load_instances(db: Session, instance_ids: Iterable[str]) -> List[EquipmentInstance]:
    """Fetch instances in the requested order; NotFoundError names the missing ids."""
    ids = _unique(instance_ids)
    if not ids:
        raise InvalidOperationError("At least one instance id is required")
    rows = (
        db.query(EquipmentInstance)
        .filter(EquipmentInstance.unique_id.in_(ids))
        .populate_existing()
        .all()
    )
    by_id = {row.unique_id: row for row in rows}
    missing = [i for i in ids if i not in by_id]
    if missing:
        raise NotFoundError("EquipmentInstance", ", ".join(missing))
    return [by_id[i] for i in ids]


def _group_by_item(instances: List[EquipmentInstance]) -> Dict[int, List[str]]:
    groups: Dict[int, List[str]] = OrderedDict()
    for instance in instances:
        groups.setdefault(instance.item_id, []).append(instance.unique_id)
    return groups


def list_instances(db: Session, item_id: Optional[int] = None, crew_id: Optional[int] = None,
                   status: Optional[str] = None) -> List[EquipmentInstance]:
    query = db.query(EquipmentInstance)
    if item_id is not None:
        query = query.filter(EquipmentInstance.item_id == item_id)
    if crew_id is not None:
        query = query.filter(EquipmentInstance.crew_id == crew_id)
    if status:
        query = query.filter(EquipmentInstance.status == status)
    return query.order_by(EquipmentInstance.unique_id).all()


def add_instances(db: Session, item_id: int, instances: List[InstanceCreate],
                  actor: Optional[Actor] = None) -> List[EquipmentInstance]:
    """Receive serialized units of an equipment item into the warehouse."""
    item = db.get(InventoryItem, item_id)
    if not item:
        raise NotFoundError("InventoryItem", item_id)
    if not item.is_equipment:
        raise InvalidOperationError(f"Item {item.code} is not serialized equipment")
    if not instances:
        raise InvalidOperationError("At least one instance is required")

    ids = [i.unique_id.strip() for i in instances]
    if len(set(ids)) != len(ids):
        raise DuplicateKeyError("EquipmentInstance", "repeated unique_id in request")
    existing = [
        row.unique_id
        for row in db.query(EquipmentInstance.unique_id).filter(EquipmentInstance.unique_id.in_(ids)).all()
    ]
    if existing:
        raise DuplicateKeyError("EquipmentInstance", ", ".join(existing))

    created = []
    try:
        for data in instances:
            instance = EquipmentInstance(
                item_id=item.id,
                unique_id=data.unique_id.strip(),
                serial_number=data.serial_number or data.unique_id.strip(),
                mac_address=data.mac_address,
                notes=data.notes,
                status=INSTANCE_IN_STOCK,
            )
            db.add(instance)
            created.append(instance)
        db.flush()
        credit_warehouse(db, item.id, len(created))
        record_movement(
            db,
            item_id=item.id,
            movement_type=MOVEMENT_ENTRY,
            quantity_change=len(created),
            reason=f"{len(created)} unit(s) received",
            performed_by=_actor_id(actor),
            details={"instance_ids": ids},
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Adding instances of item {item_id} failed: {e}")
        raise

    for instance in created:
        db.refresh(instance)
    return created


def assign_instances_to_crew(db: Session, instance_ids: List[str], crew_id: int,
                             actor: Optional[Actor] = None) -> List[EquipmentInstance]:
    if not db.get(Crew, crew_id):
        raise NotFoundError("Crew", crew_id)
    instances = load_instances(db, instance_ids)
    not_in_stock = [i.unique_id for i in instances if i.status != INSTANCE_IN_STOCK]
    if not_in_stock:
        raise AlreadyAssignedError(not_in_stock)

    now = utcnow()
    try:
        for instance in instances:
            result = db.execute(
                update(EquipmentInstance)
                .where(EquipmentInstance.id == instance.id, EquipmentInstance.status == INSTANCE_IN_STOCK)
                .values(status=INSTANCE_ASSIGNED, crew_id=crew_id, assigned_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyAssignedError([instance.unique_id])

        for item_id, ids in _group_by_item(instances).items():
            debit_warehouse(db, item_id, len(ids))
            credit_holding(db, crew_id, item_id, len(ids))
            record_movement(
                db,
                item_id=item_id,
                movement_type=MOVEMENT_ASSIGNMENT,
                quantity_change=len(ids),
                reason=f"{len(ids)} unit(s) assigned to crew",
                crew_id=crew_id,
                performed_by=_actor_id(actor),
                details={"instance_ids": ids},
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Assigned {len(instances)} instance(s) to crew {crew_id}")
    return load_instances(db, [i.unique_id for i in instances])


def check_instances_for_order(db: Session, instance_ids: List[str],
                              crew_id: int) -> List[EquipmentInstance]:
    """Read-only precondition check used before consuming instances on an order."""
    instances = load_instances(db, instance_ids)
    foreign = [i.unique_id for i in instances if i.crew_id != crew_id]
    if foreign:
        raise NotHeldByCrewError(crew_id, foreign)
    not_assigned = [i.unique_id for i in instances if i.status != INSTANCE_ASSIGNED]
    if not_assigned:
        raise NotAssignedError(not_assigned, "not available for installation")
    return instances


def consume_for_order(db: Session, instance_ids: List[str], order_id: int, crew_id: int,
                      installed_location: Optional[str] = None, actor: Optional[Actor] = None,
                      commit: bool = True) -> List[EquipmentInstance]:
    """Mark the crew's instances installed by the order and debit its holding."""
    instances = check_instances_for_order(db, instance_ids, crew_id)

    now = utcnow()
    try:
        for instance in instances:
            result = db.execute(
                update(EquipmentInstance)
                .where(
                    EquipmentInstance.id == instance.id,
                    EquipmentInstance.status == INSTANCE_ASSIGNED,
                    EquipmentInstance.crew_id == crew_id,
                )
                .values(
                    status=INSTANCE_INSTALLED,
                    order_id=order_id,
                    installed_at=now,
                    installed_location=installed_location,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotHeldByCrewError(crew_id, [instance.unique_id])

        for item_id, ids in _group_by_item(instances).items():
            debit_holding(db, crew_id, item_id, len(ids))
            record_movement(
                db,
                item_id=item_id,
                movement_type=MOVEMENT_USAGE_ORDER,
                quantity_change=-len(ids),
                reason=f"Installed on order {order_id}",
                crew_id=crew_id,
                order_id=order_id,
                performed_by=_actor_id(actor),
                details={"instance_ids": ids},
            )
        if commit:
            db.commit()
    except Exception:
        if commit:
            db.rollback()
        raise

    return instances


def return_instances(db: Session, instance_ids: List[str], reason: str,
                     actor: Optional[Actor] = None) -> List[EquipmentInstance]:
    """Return crew-held instances to the warehouse. One movement per (crew, item) group."""
    if not reason or not reason.strip():
        raise MissingReasonError("return_instances")
    instances = load_instances(db, instance_ids)
    not_assigned = [i.unique_id for i in instances if i.status != INSTANCE_ASSIGNED]
    if not_assigned:
        raise NotAssignedError(not_assigned)

    groups: Dict[Tuple[int, int], List[str]] = OrderedDict()
    for instance in instances:
        groups.setdefault((instance.crew_id, instance.item_id), []).append(instance.unique_id)

    try:
        for instance in instances:
            result = db.execute(
                update(EquipmentInstance)
                .where(EquipmentInstance.id == instance.id, EquipmentInstance.status == INSTANCE_ASSIGNED)
                .values(status=INSTANCE_IN_STOCK, crew_id=None, assigned_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotAssignedError([instance.unique_id])

        for (crew_id, item_id), ids in groups.items():
            debit_holding(db, crew_id, item_id, len(ids))
            credit_warehouse(db, item_id, len(ids))
            record_movement(
                db,
                item_id=item_id,
                movement_type=MOVEMENT_RETURN,
                quantity_change=-len(ids),
                reason=reason,
                crew_id=crew_id,
                performed_by=_actor_id(actor),
                details={"instance_ids": ids},
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return load_instances(db, [i.unique_id for i in instances])


def mark_instance_damaged(db: Session, unique_id: str, reason: str,
                          actor: Optional[Actor] = None) -> EquipmentInstance:
    """Write off a crew-held unit. The crew stays recorded as its last holder."""
    if not reason or not reason.strip():
        raise MissingReasonError("mark_instance_damaged")
    instance = load_instances(db, [unique_id])[0]
    if instance.status != INSTANCE_ASSIGNED:
        raise NotAssignedError([instance.unique_id], "only crew-held units can be marked damaged")

    try:
        result = db.execute(
            update(EquipmentInstance)
            .where(EquipmentInstance.id == instance.id, EquipmentInstance.status == INSTANCE_ASSIGNED)
            .values(status=INSTANCE_DAMAGED, notes=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotAssignedError([instance.unique_id])
        debit_holding(db, instance.crew_id, instance.item_id, 1)
        record_movement(
            db,
            item_id=instance.item_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity_change=-1,
            reason=reason,
            crew_id=instance.crew_id,
            performed_by=_actor_id(actor),
            details={"instance_ids": [instance.unique_id], "status": INSTANCE_DAMAGED},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return load_instances(db, [instance.unique_id])[0]
