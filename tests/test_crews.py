from datetime import timedelta

import pytest

from fieldops.exceptions import DuplicateKeyError, InvalidOperationError, NotFoundError
from fieldops.models import Installer
from fieldops.schemas import CrewCreate, CrewMembersUpdate, InstallerCreate
from fieldops.services import crews
from fieldops.services.token_cleanup import cleanup_expired_tokens, token_statistics


def test_create_crew_links_leader_and_members(db, make_installer):
    leader = make_installer()
    member = make_installer()

    crew = crews.create_crew(db, CrewCreate(name="Norte 1", number=4, leader_id=leader.id, member_ids=[member.id]))

    assert crew.leader_id == leader.id
    assert sorted(crew.member_ids) == sorted([leader.id, member.id])
    assert crews.find_crew_by_number(db, 4).id == crew.id


def test_crew_names_and_numbers_are_unique(db):
    crews.create_crew(db, CrewCreate(name="Norte 1", number=4))

    with pytest.raises(DuplicateKeyError):
        crews.create_crew(db, CrewCreate(name="Norte 1"))
    with pytest.raises(DuplicateKeyError):
        crews.create_crew(db, CrewCreate(name="Sur 2", number=4))


def test_installer_moves_between_crews(db, make_installer):
    installer = make_installer()
    first = crews.create_crew(db, CrewCreate(name="A", member_ids=[installer.id]))
    second = crews.create_crew(db, CrewCreate(name="B"))

    crews.update_crew_members(db, second.id, CrewMembersUpdate(member_ids=[installer.id]))

    db.refresh(first)
    assert first.member_ids == []
    assert db.get(Installer, installer.id).current_crew_id == second.id


def test_membership_with_unknown_installer(db):
    with pytest.raises(NotFoundError):
        crews.create_crew(db, CrewCreate(name="Ghosts", member_ids=[404]))


def test_deactivated_crew_releases_members(db, make_installer):
    installer = make_installer()
    crew = crews.create_crew(db, CrewCreate(name="A", number=9, leader_id=installer.id))

    crews.deactivate_crew(db, crew.id)

    assert db.get(Installer, installer.id).current_crew_id is None
    assert crews.find_crew_by_number(db, 9) is None
    assert crews.list_crews(db) == []
    with pytest.raises(InvalidOperationError):
        crews.deactivate_crew(db, crew.id)


def test_duplicate_installer_code(db):
    crews.create_installer(db, InstallerCreate(code="I-1", name="Ana"))

    with pytest.raises(DuplicateKeyError):
        crews.create_installer(db, InstallerCreate(code="I-1", name="Otra"))


def test_push_token_moves_to_the_last_device_owner(db, make_installer):
    first = make_installer(token="ExponentPushToken[shared]")
    second = make_installer()

    crews.register_push_token(db, second.id, " ExponentPushToken[shared] ")

    assert db.get(Installer, first.id).push_token is None
    refreshed = db.get(Installer, second.id)
    assert refreshed.push_token == "ExponentPushToken[shared]"
    assert refreshed.push_token_updated_at is not None

    crews.clear_push_token(db, second.id)
    assert db.get(Installer, second.id).push_token is None


def test_cleanup_removes_only_stale_tokens(db, make_installer):
    fresh = make_installer(token="fcm-fresh")
    stale = make_installer(token="ExponentPushToken[stale]", token_age=timedelta(days=120))
    make_installer()

    stats = token_statistics(db)
    assert (stats["with_token"], stats["expired"], stats["expo_tokens"], stats["fcm_tokens"]) == (2, 1, 1, 1)

    result = cleanup_expired_tokens(db)

    assert result["removed"] == 1
    assert db.get(Installer, fresh.id, populate_existing=True).push_token == "fcm-fresh"
    assert db.get(Installer, stale.id, populate_existing=True).push_token is None


def test_cleanup_honours_a_custom_age(db, make_installer):
    make_installer(token="fcm-a", token_age=timedelta(days=10))

    assert cleanup_expired_tokens(db, max_age_days=30)["removed"] == 0
    assert cleanup_expired_tokens(db, max_age_days=5)["removed"] == 1
