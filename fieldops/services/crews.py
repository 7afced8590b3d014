"""
Business logic for crews, installers and push-token registration
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from fieldops.exceptions import DuplicateKeyError, InvalidOperationError, NotFoundError
from fieldops.models import Crew, Installer
from fieldops.schemas import CrewCreate, CrewMembersUpdate, InstallerCreate
from fieldops.utils.clock import utcnow

logger = logging.getLogger(__name__)


def get_crew(db: Session, crew_id: int) -> Crew:
    crew = db.get(Crew, crew_id)
    if not crew:
        raise NotFoundError("Crew", crew_id)
    return crew


def find_crew_by_number(db: Session, number: int) -> Optional[Crew]:
    return db.query(Crew).filter(Crew.number == number, Crew.is_active.is_(True)).first()


def list_crews(db: Session, include_inactive: bool = False) -> List[Crew]:
    query = db.query(Crew)
    if not include_inactive:
        query = query.filter(Crew.is_active.is_(True))
    return query.order_by(Crew.name).all()


def get_installer(db: Session, installer_id: int) -> Installer:
    installer = db.get(Installer, installer_id)
    if not installer:
        raise NotFoundError("Installer", installer_id)
    return installer


def create_installer(db: Session, data: InstallerCreate) -> Installer:
    if db.query(Installer).filter(Installer.code == data.code).first():
        raise DuplicateKeyError("Installer", data.code)
    installer = Installer(
        code=data.code,
        name=data.name,
        surname=data.surname,
        phone=data.phone,
        status="active",
    )
    try:
        db.add(installer)
        db.commit()
        db.refresh(installer)
    except Exception as e:
        db.rollback()
        logger.error(f"Installer creation failed for {data.code}: {e}")
        raise
    return installer


def _sync_membership(db: Session, crew: Crew, leader_id: Optional[int], member_ids: List[int]) -> None:
    """
    Point every member (leader included) at this crew and detach anyone who
    left. An installer belongs to at most one crew.
    """
    wanted = list(dict.fromkeys(([leader_id] if leader_id else []) + list(member_ids)))
    installers = db.query(Installer).filter(Installer.id.in_(wanted)).all() if wanted else []
    found = {i.id for i in installers}
    missing = [i for i in wanted if i not in found]
    if missing:
        raise NotFoundError("Installer", ", ".join(str(i) for i in missing))

    for installer in db.query(Installer).filter(Installer.current_crew_id == crew.id).all():
        if installer.id not in found:
            installer.current_crew_id = None

    for installer in installers:
        if installer.current_crew_id not in (None, crew.id):
            logger.info(f"Moving installer {installer.id} from crew {installer.current_crew_id} to {crew.id}")
        installer.current_crew_id = crew.id

    crew.leader_id = leader_id


def create_crew(db: Session, data: CrewCreate) -> Crew:
    if db.query(Crew).filter(Crew.name == data.name).first():
        raise DuplicateKeyError("Crew", data.name)
    if data.number is not None and db.query(Crew).filter(Crew.number == data.number).first():
        raise DuplicateKeyError("Crew", f"number {data.number}")

    crew = Crew(name=data.name, number=data.number, is_active=True)
    try:
        db.add(crew)
        db.flush()
        _sync_membership(db, crew, data.leader_id, data.member_ids)
        db.commit()
        db.refresh(crew)
    except Exception:
        db.rollback()
        raise
    logger.info(f"Crew {crew.name} created with {len(crew.member_ids)} member(s)")
    return crew


def update_crew_members(db: Session, crew_id: int, data: CrewMembersUpdate) -> Crew:
    crew = get_crew(db, crew_id)
    try:
        _sync_membership(db, crew, data.leader_id, data.member_ids)
        db.commit()
        db.refresh(crew)
    except Exception:
        db.rollback()
        raise
    return crew


def deactivate_crew(db: Session, crew_id: int) -> Crew:
    crew = get_crew(db, crew_id)
    if not crew.is_active:
        raise InvalidOperationError(f"Crew {crew.name} is already inactive")
    try:
        for installer in list(crew.members):
            installer.current_crew_id = None
        crew.leader_id = None
        crew.is_active = False
        db.commit()
        db.refresh(crew)
    except Exception:
        db.rollback()
        raise
    return crew


def register_push_token(db: Session, installer_id: int, token: str) -> Installer:
    """Store the device token. A token moves to the last installer who registers it."""
    installer = get_installer(db, installer_id)
    token = token.strip()
    if not token:
        raise InvalidOperationError("Push token cannot be empty")

    try:
        for other in db.query(Installer).filter(Installer.push_token == token, Installer.id != installer_id).all():
            other.push_token = None
            other.push_token_updated_at = None
        installer.push_token = token
        installer.push_token_updated_at = utcnow()
        db.commit()
        db.refresh(installer)
    except Exception:
        db.rollback()
        raise
    logger.info(f"Push token registered for installer {installer_id}")
    return installer


def clear_push_token(db: Session, installer_id: int) -> Installer:
    installer = get_installer(db, installer_id)
    try:
        installer.push_token = None
        installer.push_token_updated_at = None
        db.commit()
        db.refresh(installer)
    except Exception:
        db.rollback()
        raise
    return installer
