"""
Daily inventory snapshots: warehouse stock plus each active crew's holdings,
kept for historical usage reports.
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from fieldops.models import Crew, CrewHolding, InventoryItem, InventorySnapshot
from fieldops.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _line(item: InventoryItem, quantity: int) -> dict:
    return {
        "item_id": item.id,
        "code": item.code,
        "description": item.description,
        "quantity": quantity,
    }


def create_daily_snapshot(db: Session, taken_at: Optional[datetime] = None) -> InventorySnapshot:
    warehouse_items = (
        db.query(InventoryItem)
        .filter(InventoryItem.current_stock > 0)
        .order_by(InventoryItem.code)
        .populate_existing()
        .all()
    )
    warehouse_inventory = [_line(item, item.current_stock) for item in warehouse_items]

    holdings = (
        db.query(CrewHolding, Crew, InventoryItem)
        .join(Crew, Crew.id == CrewHolding.crew_id)
        .join(InventoryItem, InventoryItem.id == CrewHolding.item_id)
        .filter(Crew.is_active.is_(True), CrewHolding.quantity > 0)
        .order_by(Crew.name, InventoryItem.code)
        .populate_existing()
        .all()
    )
    crew_inventories = []
    by_crew = {}
    for holding, crew, item in holdings:
        entry = by_crew.get(crew.id)
        if entry is None:
            entry = {"crew_id": crew.id, "crew_name": crew.name, "items": []}
            by_crew[crew.id] = entry
            crew_inventories.append(entry)
        entry["items"].append(_line(item, holding.quantity))

    item_ids = {line["item_id"] for line in warehouse_inventory}
    item_ids.update(line["item_id"] for entry in crew_inventories for line in entry["items"])

    snapshot = InventorySnapshot(
        snapshot_date=taken_at or utcnow(),
        warehouse_inventory=warehouse_inventory,
        crew_inventories=crew_inventories,
        total_items=len(item_ids),
        total_warehouse_stock=sum(item.current_stock for item in warehouse_items),
    )
    try:
        db.add(snapshot)
        db.commit()
        db.refresh(snapshot)
    except Exception as e:
        db.rollback()
        logger.error(f"Inventory snapshot failed: {e}")
        raise

    logger.info(
        f"Inventory snapshot {snapshot.id}: {len(warehouse_inventory)} warehouse item(s), "
        f"{len(crew_inventories)} crew(s)"
    )
    return snapshot


def list_snapshots(db: Session, start: Optional[date] = None,
                   end: Optional[date] = None) -> List[InventorySnapshot]:
    """Newest first. Both bounds are inclusive calendar days."""
    query = db.query(InventorySnapshot)
    if start is not None:
        query = query.filter(InventorySnapshot.snapshot_date >= datetime.combine(start, time.min))
    if end is not None:
        query = query.filter(InventorySnapshot.snapshot_date < datetime.combine(end + timedelta(days=1), time.min))
    return query.order_by(InventorySnapshot.snapshot_date.desc(), InventorySnapshot.id.desc()).all()
