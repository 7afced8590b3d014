"""
Shared request dependencies: actor identity, notification wiring and the
mapping from engine errors to HTTP responses.
"""
import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status

from fieldops.database import SessionLocal
from fieldops.exceptions import (
    DuplicateError, FieldOpsError, ImmutableRecordError, NotFoundError, ValidationError,
)
from fieldops.schemas import Actor
from fieldops.services.notifications import (
    BackgroundNotificationSender, CrewNotificationDispatcher, NotificationSender,
)
from fieldops.services.push_notification import ExpoPushTransport, FirebasePushTransport

logger = logging.getLogger(__name__)

_dispatcher: Optional[CrewNotificationDispatcher] = None


def get_actor(
    x_actor_id: Optional[int] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
) -> Actor:
    """Identity is resolved upstream; the gateway forwards it in X-Actor-* headers."""
    return Actor(id=x_actor_id, role=(x_actor_role or "admin").lower(), name=x_actor_name)


def get_dispatcher() -> CrewNotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = CrewNotificationDispatcher(
            SessionLocal,
            expo_transport=ExpoPushTransport(),
            fcm_transport=FirebasePushTransport(),
        )
    return _dispatcher


def get_notifier(
    background_tasks: BackgroundTasks,
    dispatcher: CrewNotificationDispatcher = Depends(get_dispatcher),
) -> NotificationSender:
    return BackgroundNotificationSender(background_tasks, dispatcher)


def to_http_exception(exc: FieldOpsError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, DuplicateError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, ImmutableRecordError):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})
