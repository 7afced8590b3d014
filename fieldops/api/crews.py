import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fieldops.api.deps import get_actor, get_dispatcher, get_notifier, to_http_exception
from fieldops.database import get_db
from fieldops.exceptions import FieldOpsError
from fieldops.schemas import (
    Actor, CrewCreate, CrewMembersUpdate, CrewResponse, HoldingGrantRequest, HoldingResponse,
    HoldingReturnRequest, InstallerCreate, InstallerResponse, NotificationMetricResponse,
    PushTokenRequest, TestNotificationRequest, TokenCleanupResponse,
)
from fieldops.services import crews
from fieldops.services.holdings import CrewHoldingsService
from fieldops.services.notification_metrics import daily_metrics
from fieldops.services.notifications import CrewNotificationDispatcher, NotificationSender
from fieldops.services.token_cleanup import cleanup_expired_tokens, token_statistics

logger = logging.getLogger(__name__)

router = APIRouter()


def _handle(action: str, exc: Exception):
    if isinstance(exc, FieldOpsError):
        return to_http_exception(exc)
    logger.error(f"{action} failed: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action} failed: {str(exc)}"
    )


# Crews

@router.get("/crews", response_model=List[CrewResponse])
def list_crews(include_inactive: bool = False, db: Session = Depends(get_db)):
    return crews.list_crews(db, include_inactive=include_inactive)


@router.post("/crews", response_model=CrewResponse, status_code=status.HTTP_201_CREATED)
def create_crew(data: CrewCreate, db: Session = Depends(get_db)):
    try:
        return crews.create_crew(db, data)
    except Exception as e:
        raise _handle("Crew creation", e)


@router.get("/crews/{crew_id}", response_model=CrewResponse)
def get_crew(crew_id: int, db: Session = Depends(get_db)):
    try:
        return crews.get_crew(db, crew_id)
    except Exception as e:
        raise _handle("Crew lookup", e)


@router.put("/crews/{crew_id}/members", response_model=CrewResponse)
def update_members(crew_id: int, data: CrewMembersUpdate, db: Session = Depends(get_db)):
    try:
        return crews.update_crew_members(db, crew_id, data)
    except Exception as e:
        raise _handle("Crew membership update", e)


@router.delete("/crews/{crew_id}", response_model=CrewResponse)
def deactivate_crew(crew_id: int, db: Session = Depends(get_db)):
    try:
        return crews.deactivate_crew(db, crew_id)
    except Exception as e:
        raise _handle("Crew deactivation", e)


# Crew holdings

@router.get("/crews/{crew_id}/inventory", response_model=List[HoldingResponse])
def crew_inventory(crew_id: int, db: Session = Depends(get_db)):
    try:
        return CrewHoldingsService(db).crew_inventory(crew_id)
    except Exception as e:
        raise _handle("Crew inventory lookup", e)


@router.post("/crews/{crew_id}/inventory/grant", response_model=HoldingResponse)
def grant_to_crew(
    crew_id: int,
    data: HoldingGrantRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: NotificationSender = Depends(get_notifier),
):
    try:
        service = CrewHoldingsService(db, notifier=notifier, actor=actor)
        quantity = service.grant_to_crew(crew_id, data.item_id, data.quantity, data.reason)
        return HoldingResponse(crew_id=crew_id, item_id=data.item_id, quantity=quantity)
    except Exception as e:
        raise _handle("Material assignment", e)


@router.post("/crews/{crew_id}/inventory/return", response_model=HoldingResponse)
def return_from_crew(
    crew_id: int,
    data: HoldingReturnRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        service = CrewHoldingsService(db, actor=actor)
        quantity = service.return_from_crew(crew_id, data.item_id, data.quantity, data.reason)
        return HoldingResponse(crew_id=crew_id, item_id=data.item_id, quantity=quantity)
    except Exception as e:
        raise _handle("Material return", e)


# Installers and push tokens

@router.post("/installers", response_model=InstallerResponse, status_code=status.HTTP_201_CREATED)
def create_installer(data: InstallerCreate, db: Session = Depends(get_db)):
    try:
        return crews.create_installer(db, data)
    except Exception as e:
        raise _handle("Installer creation", e)


@router.put("/installers/{installer_id}/push-token", response_model=InstallerResponse)
def register_push_token(installer_id: int, data: PushTokenRequest, db: Session = Depends(get_db)):
    try:
        return crews.register_push_token(db, installer_id, data.token)
    except Exception as e:
        raise _handle("Push token registration", e)


@router.delete("/installers/{installer_id}/push-token", response_model=InstallerResponse)
def clear_push_token(installer_id: int, db: Session = Depends(get_db)):
    try:
        return crews.clear_push_token(db, installer_id)
    except Exception as e:
        raise _handle("Push token removal", e)


# Notification administration

@router.get("/admin/notification-metrics", response_model=List[NotificationMetricResponse])
def notification_metrics(
    start: Optional[date] = None,
    end: Optional[date] = None,
    kind: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return daily_metrics(db, start=start, end=end, kind=kind)


@router.post("/admin/cleanup-tokens", response_model=TokenCleanupResponse)
def cleanup_tokens(max_age_days: Optional[int] = Query(None, ge=1), db: Session = Depends(get_db)):
    try:
        return cleanup_expired_tokens(db, max_age_days)
    except Exception as e:
        raise _handle("Token cleanup", e)


@router.get("/admin/token-statistics")
def get_token_statistics(max_age_days: Optional[int] = Query(None, ge=1), db: Session = Depends(get_db)):
    return token_statistics(db, max_age_days)


@router.post("/admin/test-notification")
def test_notification(
    data: TestNotificationRequest,
    db: Session = Depends(get_db),
    dispatcher: CrewNotificationDispatcher = Depends(get_dispatcher),
):
    try:
        crews.get_crew(db, data.crew_id)
    except Exception as e:
        raise _handle("Test notification", e)
    delivered = dispatcher.notify(data.crew_id, data.title, data.body, {}, kind="test")
    return {"crew_id": data.crew_id, "delivered": delivered}
