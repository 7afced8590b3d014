import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fieldops.api.deps import get_actor, get_notifier, to_http_exception
from fieldops.database import get_db
from fieldops.exceptions import FieldOpsError
from fieldops.schemas import Actor, OrderHistoryResponse, OrderResponse, OrderUpdateCommand
from fieldops.services.history import list_order_history
from fieldops.services.notifications import NotificationSender
from fieldops.services.order_intake import normalize_order_payload
from fieldops.services.orders import OrderLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Order",
    description="Create an order from a raw intake payload. Field names are normalized before validation."
)
def create_order(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationSender = Depends(get_notifier),
):
    try:
        command = normalize_order_payload(payload)
        return OrderLifecycleService(db, notifier=notifier, actor=actor).create_order(command)
    except FieldOpsError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Order creation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Order creation failed: {str(e)}"
        )


@router.get("/orders", response_model=List[OrderResponse])
def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    crew_id: Optional[int] = None,
    order_type: Optional[str] = Query(None, alias="type"),
    search: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return OrderLifecycleService(db).list_orders(
        status=status_filter, crew_id=crew_id, order_type=order_type,
        search=search, limit=limit, offset=offset,
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, db: Session = Depends(get_db)):
    try:
        return OrderLifecycleService(db).get_order(order_id)
    except FieldOpsError as e:
        raise to_http_exception(e)


@router.put(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Update Order",
    description="Apply a partial update. Completing an order with materials consumes them from the assigned crew."
)
def update_order(
    order_id: int,
    data: OrderUpdateCommand,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationSender = Depends(get_notifier),
):
    try:
        return OrderLifecycleService(db, notifier=notifier, actor=actor).update_order(order_id, data)
    except FieldOpsError as e:
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Order update failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Order update failed: {str(e)}"
        )


@router.get("/orders/{order_id}/history", response_model=List[OrderHistoryResponse])
def get_order_history(order_id: int, db: Session = Depends(get_db)):
    try:
        return OrderLifecycleService(db).order_history(order_id)
    except FieldOpsError as e:
        raise to_http_exception(e)


@router.get("/order-history", response_model=List[OrderHistoryResponse])
def search_order_history(
    crew_id: Optional[int] = None,
    change_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return list_order_history(db, crew_id=crew_id, change_type=change_type, limit=limit)
