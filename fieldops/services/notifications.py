"""
Crew notification fan-out.

Services hand a NotificationEvent to an injected NotificationSender after
their transaction commits. The dispatcher resolves the crew's leader and
members, drops the actor who caused the change, splits the push tokens into
Expo and FCM families and sends each family once. Delivery is best-effort
and at-most-once: failures are logged and counted, never raised.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from fieldops.models import Crew, Installer
from fieldops.services.notification_metrics import record_delivery

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")


@dataclass
class NotificationEvent:
    crew_id: int
    kind: str
    title_template: str
    body_template: str
    payload: Dict[str, Any] = field(default_factory=dict)
    exclude_actor_id: Optional[int] = None


def classify_token(token: str) -> str:
    """Return 'expo' for Expo push tokens, 'fcm' for anything else."""
    if token.startswith(EXPO_TOKEN_PREFIXES):
        return "expo"
    return "fcm"


def exclude_actor_id(actor) -> Optional[int]:
    """Only installers are excluded from notifications about their own changes."""
    if actor is not None and actor.role == "installer":
        return actor.id
    return None


def render(template: str, payload: Dict[str, Any]) -> str:
    try:
        return template.format(**payload)
    except (KeyError, IndexError, ValueError) as e:
        logger.warning(f"Could not render notification template {template!r}: {e}")
        return template


class NotificationSender:
    """Port used by the engine to hand off crew notifications."""

    def send(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class NullNotificationSender(NotificationSender):
    def send(self, event: NotificationEvent) -> None:
        logger.debug(f"Notifications disabled, dropping {event.kind} for crew {event.crew_id}")


class DispatchingNotificationSender(NotificationSender):
    """Runs the dispatcher inline. Used by scripts and the test endpoint."""

    def __init__(self, dispatcher: "CrewNotificationDispatcher"):
        self.dispatcher = dispatcher

    def send(self, event: NotificationEvent) -> None:
        self.dispatcher.dispatch(event)


class BackgroundNotificationSender(NotificationSender):
    """Schedules dispatch on FastAPI BackgroundTasks, after the response is sent."""

    def __init__(self, background_tasks, dispatcher: "CrewNotificationDispatcher"):
        self.background_tasks = background_tasks
        self.dispatcher = dispatcher

    def send(self, event: NotificationEvent) -> None:
        self.background_tasks.add_task(self.dispatcher.dispatch, event)


def safe_send(notifier: NotificationSender, event: NotificationEvent) -> None:
    try:
        notifier.send(event)
    except Exception as e:
        logger.error(f"Failed to hand off {event.kind} notification for crew {event.crew_id}: {e}")


@dataclass
class DeliveryReport:
    sent: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class CrewNotificationDispatcher:
    """
    Fan-out to the members of a crew.

    session_factory opens its own session: dispatch runs after the request's
    transaction has committed, possibly on another thread.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        expo_transport=None,
        fcm_transport=None,
        record_metrics: bool = True,
    ):
        self.session_factory = session_factory
        self.expo_transport = expo_transport
        self.fcm_transport = fcm_transport
        self.record_metrics = record_metrics

    def dispatch(self, event: NotificationEvent) -> int:
        try:
            return self.notify(
                event.crew_id,
                event.title_template,
                event.body_template,
                event.payload,
                exclude_actor_id=event.exclude_actor_id,
                kind=event.kind,
            )
        except Exception as e:
            logger.error(f"Notification dispatch failed for crew {event.crew_id}: {e}")
            return 0

    def notify(
        self,
        crew_id: int,
        title_template: str,
        body_template: str,
        payload: Dict[str, Any],
        exclude_actor_id: Optional[int] = None,
        kind: str = "other",
    ) -> int:
        """
        Send one notification to every member of the crew except the excluded
        actor. Returns the number of deliveries accepted by the transports.
        """
        db = self.session_factory()
        try:
            tokens = self._crew_tokens(db, crew_id, exclude_actor_id)
            if not tokens:
                logger.info(f"No push tokens for crew {crew_id}, nothing to send")
                return 0

            title = render(title_template, payload)
            body = render(body_template, payload)
            data = {key: str(value) for key, value in payload.items() if value is not None}
            data["type"] = kind

            expo_tokens = [t for t in tokens if classify_token(t) == "expo"]
            fcm_tokens = [t for t in tokens if classify_token(t) == "fcm"]

            report = DeliveryReport(sent=len(tokens))
            self._send_expo(expo_tokens, title, body, data, report)
            self._send_fcm(fcm_tokens, title, body, data, report)

            logger.info(
                f"Crew {crew_id} {kind} notification: {report.successful}/{report.sent} delivered"
            )
            if self.record_metrics:
                self._record(db, kind, report)
            return report.successful
        finally:
            db.close()

    def _crew_tokens(self, db: Session, crew_id: int, exclude_actor_id: Optional[int]) -> List[str]:
        crew = db.get(Crew, crew_id)
        if not crew:
            logger.warning(f"Crew {crew_id} not found, notification skipped")
            return []

        recipient_ids: List[int] = []
        if crew.leader_id:
            recipient_ids.append(crew.leader_id)
        member_ids = [
            row.id for row in db.query(Installer.id).filter(Installer.current_crew_id == crew_id).all()
        ]
        for member_id in member_ids:
            if member_id not in recipient_ids:
                recipient_ids.append(member_id)

        if exclude_actor_id is not None:
            recipient_ids = [i for i in recipient_ids if i != exclude_actor_id]
        if not recipient_ids:
            return []

        rows = (
            db.query(Installer.id, Installer.push_token)
            .filter(Installer.id.in_(recipient_ids), Installer.push_token.isnot(None))
            .all()
        )
        by_id = {row.id: row.push_token for row in rows if row.push_token}
        tokens: List[str] = []
        for installer_id in recipient_ids:
            token = by_id.get(installer_id)
            if token and token not in tokens:
                tokens.append(token)
        return tokens

    def _send_expo(self, tokens: List[str], title: str, body: str,
                   data: Dict[str, str], report: DeliveryReport) -> None:
        if not tokens:
            return
        if self.expo_transport is None:
            logger.warning("Expo transport not configured, skipping Expo tokens")
            self._fail(report, len(tokens), "expo transport not configured")
            return
        try:
            receipts = self.expo_transport.send(tokens, title, body, data)
        except Exception as e:
            logger.error(f"Expo push send failed: {e}")
            self._fail(report, len(tokens), str(e))
            return

        ok = sum(1 for r in receipts if r.get("status") == "ok")
        report.successful += ok
        report.failed += len(tokens) - ok
        for receipt in receipts:
            if receipt.get("status") != "ok":
                report.errors.append(receipt.get("message") or "expo delivery error")
        if len(receipts) < len(tokens):
            report.errors.extend(["missing expo receipt"] * (len(tokens) - len(receipts)))

    def _send_fcm(self, tokens: List[str], title: str, body: str,
                  data: Dict[str, str], report: DeliveryReport) -> None:
        if not tokens:
            return
        if self.fcm_transport is None:
            logger.warning("FCM transport not configured, skipping FCM tokens")
            self._fail(report, len(tokens), "fcm transport not configured")
            return
        try:
            if len(tokens) == 1:
                delivered = self.fcm_transport.send(tokens[0], title, body, data)
                success, failure = (1, 0) if delivered else (0, 1)
            else:
                success, failure = self.fcm_transport.send_multicast(tokens, title, body, data)
        except Exception as e:
            logger.error(f"FCM push send failed: {e}")
            self._fail(report, len(tokens), str(e))
            return

        report.successful += success
        report.failed += failure
        if failure:
            report.errors.extend(["fcm delivery error"] * failure)

    @staticmethod
    def _fail(report: DeliveryReport, count: int, message: str) -> None:
        report.failed += count
        report.errors.extend([message] * count)

    @staticmethod
    def _record(db: Session, kind: str, report: DeliveryReport) -> None:
        try:
            record_delivery(db, kind, report.sent, report.successful, report.failed, report.errors)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record notification metrics: {e}")

