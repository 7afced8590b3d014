import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fieldops.api.deps import get_actor, to_http_exception
from fieldops.database import get_db
from fieldops.exceptions import FieldOpsError
from fieldops.schemas import (
    Actor, BatchAssignRequest, BatchCreate, BatchMetersRequest, BatchResponse, BatchReturnRequest,
    InstanceAssignRequest, InstanceDamageRequest, InstanceResponse, InstanceReturnRequest,
    InstancesAddRequest, InventorySnapshotResponse, InventoryStatistics, ItemCreate, ItemResponse,
    ItemUpdate, MovementResponse, RestockRequest,
)
from fieldops.services import batches, catalog, instances, snapshots
from fieldops.services.history import list_movements

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory")


def _handle(action: str, exc: Exception):
    if isinstance(exc, FieldOpsError):
        return to_http_exception(exc)
    logger.error(f"{action} failed: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action} failed: {str(exc)}"
    )


# Catalog

@router.get("/items", response_model=List[ItemResponse])
def list_items(
    item_type: Optional[str] = Query(None, alias="type"),
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
):
    return catalog.list_items(db, item_type=item_type, search=search, include_inactive=include_inactive)


@router.post("/items", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
def create_item(data: ItemCreate, db: Session = Depends(get_db)):
    try:
        return catalog.create_item(db, data)
    except Exception as e:
        raise _handle("Item creation", e)


@router.get("/items/low-stock", response_model=List[ItemResponse])
def low_stock(db: Session = Depends(get_db)):
    return catalog.low_stock_items(db)


@router.get("/items/{item_id}", response_model=ItemResponse)
def get_item(item_id: int, db: Session = Depends(get_db)):
    try:
        return catalog.get_item(db, item_id)
    except Exception as e:
        raise _handle("Item lookup", e)


@router.put("/items/{item_id}", response_model=ItemResponse)
def update_item(item_id: int, data: ItemUpdate, db: Session = Depends(get_db)):
    try:
        return catalog.update_item(db, item_id, data)
    except Exception as e:
        raise _handle("Item update", e)


@router.post("/items/{item_id}/restock", response_model=ItemResponse)
def restock_item(
    item_id: int,
    data: RestockRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return catalog.restock_item(db, item_id, data.quantity, data.reason, actor=actor)
    except Exception as e:
        raise _handle("Restock", e)


@router.get("/statistics", response_model=InventoryStatistics)
def statistics(db: Session = Depends(get_db)):
    return catalog.inventory_statistics(db)


@router.get("/snapshots", response_model=List[InventorySnapshotResponse])
def list_snapshots(
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    return snapshots.list_snapshots(db, start=start, end=end)


@router.post("/snapshots", response_model=InventorySnapshotResponse, status_code=status.HTTP_201_CREATED)
def create_snapshot(db: Session = Depends(get_db)):
    try:
        return snapshots.create_daily_snapshot(db)
    except Exception as e:
        raise _handle("Inventory snapshot", e)


@router.get("/movements", response_model=List[MovementResponse])
def movements(
    item_id: Optional[int] = None,
    crew_id: Optional[int] = None,
    order_id: Optional[int] = None,
    movement_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return list_movements(
        db, item_id=item_id, crew_id=crew_id, order_id=order_id,
        movement_type=movement_type, limit=limit,
    )


# Batches

@router.get("/batches", response_model=List[BatchResponse])
def list_batches(
    item_id: Optional[int] = None,
    crew_id: Optional[int] = None,
    batch_status: Optional[str] = Query(None, alias="status"),
    in_warehouse: bool = False,
    db: Session = Depends(get_db),
):
    return batches.list_batches(db, item_id=item_id, crew_id=crew_id, status=batch_status,
                                in_warehouse=in_warehouse)


@router.post("/batches", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
def create_batch(data: BatchCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    try:
        return batches.create_batch(db, data, actor=actor)
    except Exception as e:
        raise _handle("Batch creation", e)


@router.post("/batches/{batch_code}/meters", response_model=BatchResponse)
def add_meters(
    batch_code: str,
    data: BatchMetersRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return batches.assign_meters_to_batch(db, batch_code, data.meters, actor=actor)
    except Exception as e:
        raise _handle("Batch meter assignment", e)


@router.post("/batches/{batch_code}/assign", response_model=BatchResponse)
def assign_batch(
    batch_code: str,
    data: BatchAssignRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return batches.assign_batch_to_crew(db, batch_code, data.crew_id, actor=actor)
    except Exception as e:
        raise _handle("Batch assignment", e)


@router.post("/batches/{batch_code}/return", response_model=BatchResponse)
def return_batch(
    batch_code: str,
    data: BatchReturnRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return batches.return_batch_to_warehouse(db, batch_code, data.reason, actor=actor)
    except Exception as e:
        raise _handle("Batch return", e)


@router.delete("/batches/{batch_code}", status_code=status.HTTP_200_OK)
def delete_batch(batch_code: str, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    try:
        batches.delete_batch(db, batch_code, actor=actor)
        return {"message": f"Batch {batches.normalize_batch_code(batch_code)} deleted"}
    except Exception as e:
        raise _handle("Batch deletion", e)


# Equipment instances

@router.get("/instances", response_model=List[InstanceResponse])
def list_instances(
    item_id: Optional[int] = None,
    crew_id: Optional[int] = None,
    instance_status: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    return instances.list_instances(db, item_id=item_id, crew_id=crew_id, status=instance_status)


@router.post("/instances", response_model=List[InstanceResponse], status_code=status.HTTP_201_CREATED)
def add_instances(data: InstancesAddRequest, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    try:
        return instances.add_instances(db, data.item_id, data.instances, actor=actor)
    except Exception as e:
        raise _handle("Instance intake", e)


@router.post("/instances/assign", response_model=List[InstanceResponse])
def assign_instances(
    data: InstanceAssignRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return instances.assign_instances_to_crew(db, data.instance_ids, data.crew_id, actor=actor)
    except Exception as e:
        raise _handle("Instance assignment", e)


@router.post("/instances/return", response_model=List[InstanceResponse])
def return_instances(
    data: InstanceReturnRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return instances.return_instances(db, data.instance_ids, data.reason, actor=actor)
    except Exception as e:
        raise _handle("Instance return", e)


@router.post("/instances/{unique_id}/damaged", response_model=InstanceResponse)
def mark_damaged(
    unique_id: str,
    data: InstanceDamageRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        return instances.mark_instance_damaged(db, unique_id, data.reason, actor=actor)
    except Exception as e:
        raise _handle("Instance write-off", e)
