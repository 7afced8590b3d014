"""
Pytest fixtures for the fieldops test suite.

Every test gets its own file-backed SQLite database so that tests which open
several sessions (concurrency, notification dispatch) see committed data the
same way the application does.
"""
from typing import List

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from fieldops import models  # noqa: F401  register tables with Base
from fieldops.database import Base, build_engine
from fieldops.models import Crew, Installer
from fieldops.schemas import ItemCreate
from fieldops.services import catalog
from fieldops.services.notifications import NotificationEvent, NotificationSender
from fieldops.utils.clock import utcnow


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'fieldops_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_item(db):
    counter = {"n": 0}

    def _make(code=None, item_type="material", stock=0, unit="units", minimum_stock=5):
        counter["n"] += 1
        code = code or f"ITEM-{counter['n']:03d}"
        item = catalog.create_item(db, ItemCreate(
            code=code,
            description=f"Test item {code}",
            unit=unit,
            type=item_type,
            minimum_stock=minimum_stock,
        ))
        if stock:
            catalog.restock_item(db, item.id, stock, "Initial stock")
        db.refresh(item)
        return item

    return _make


@pytest.fixture
def make_installer(db):
    counter = {"n": 0}

    def _make(name=None, token=None, crew_id=None, token_age=None):
        counter["n"] += 1
        updated_at = None
        if token:
            updated_at = utcnow() - token_age if token_age else utcnow()
        installer = Installer(
            code=f"INS-{counter['n']:03d}",
            name=name or f"Installer {counter['n']}",
            status="active",
            current_crew_id=crew_id,
            push_token=token,
            push_token_updated_at=updated_at,
        )
        db.add(installer)
        db.commit()
        db.refresh(installer)
        return installer

    return _make


@pytest.fixture
def make_crew(db):
    counter = {"n": 0}

    def _make(name=None, number=None, leader=None, members=()):
        counter["n"] += 1
        crew = Crew(name=name or f"Crew {counter['n']}", number=number, is_active=True)
        db.add(crew)
        db.flush()
        if leader is not None:
            crew.leader_id = leader.id
            leader.current_crew_id = crew.id
        for member in members:
            member.current_crew_id = crew.id
        db.commit()
        db.refresh(crew)
        return crew

    return _make


# =============================================================================
# Notification doubles
# =============================================================================

class RecordingNotifier(NotificationSender):
    """Collects events instead of sending them."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def send(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [event.kind for event in self.events]


class ExplodingNotifier(NotificationSender):
    def send(self, event: NotificationEvent) -> None:
        raise RuntimeError("notification backend down")


class FakeExpoTransport:
    def __init__(self, error_tokens=(), raise_error=None):
        self.error_tokens = set(error_tokens)
        self.raise_error = raise_error
        self.calls = []

    def send(self, tokens, title, body, data=None):
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        if self.raise_error is not None:
            raise self.raise_error
        return [
            {"status": "error", "message": "DeviceNotRegistered"} if token in self.error_tokens
            else {"status": "ok", "id": f"receipt-{i}"}
            for i, token in enumerate(tokens)
        ]


class FakeFcmTransport:
    def __init__(self, failing_tokens=(), raise_error=None):
        self.failing_tokens = set(failing_tokens)
        self.raise_error = raise_error
        self.single_calls = []
        self.multicast_calls = []

    def send(self, token, title, body, data=None):
        self.single_calls.append({"token": token, "title": title, "body": body, "data": data})
        if self.raise_error is not None:
            raise self.raise_error
        return token not in self.failing_tokens

    def send_multicast(self, tokens, title, body, data=None):
        self.multicast_calls.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        if self.raise_error is not None:
            raise self.raise_error
        failed = len([t for t in tokens if t in self.failing_tokens])
        return len(tokens) - failed, failed


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def expo():
    return FakeExpoTransport()


@pytest.fixture
def fcm():
    return FakeFcmTransport()


@pytest.fixture
def unreachable_expo():
    return FakeExpoTransport(raise_error=httpx.ConnectError("expo unreachable"))


@pytest.fixture
def exploding_notifier():
    return ExplodingNotifier()
