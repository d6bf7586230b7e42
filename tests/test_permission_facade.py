from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from gatekeeper.domain.models import Group, GroupRole, Resource, User, UserRole, as_utc, now_utc
from gatekeeper.domain.permissions import (
    ANYONE,
    ANYONE_GROUP_ID,
    RESOURCE_ROLES,
    ROLE_ADMIN,
    ROLE_CODEVIEWER,
    ROLE_ISSUE_ADMIN,
    ROLE_USER,
    GroupId,
    GroupName,
    parse_group_ref,
)
from gatekeeper.infra import db
from gatekeeper.services.permission_service import (
    GroupNotFoundError,
    PermissionFacade,
    ResourceNotFoundError,
    UserNotFoundError,
)

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
EARLIER = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture()
def permission_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "permission_test.db"
    test_engine = db.build_engine(f"sqlite:///{db_path}")

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def facade() -> PermissionFacade:
    return PermissionFacade(clock=lambda: FIXED_NOW, settings={})


@pytest.fixture()
def seeded(permission_engine: Engine) -> dict[str, str]:
    with Session(permission_engine) as session:
        session.add(Resource(id=123, key="org.sample:project", authorization_updated_at=EARLIER))
        session.add(Resource(id=456, key="org.sample:other", authorization_updated_at=EARLIER))
        dave = User(login="dave.loper", name="Dave")
        other = User(login="other.user")
        devs = Group(name="devs")
        others = Group(name="other")
        session.add_all([dave, other, devs, others])
        session.commit()
        return {"dave": dave.id, "other_user": other.id, "devs": devs.id, "other_group": others.id}


def _session(engine: Engine) -> Session:
    return Session(engine, expire_on_commit=False)


def _authorization_updated_at(engine: Engine, resource_id: int) -> datetime | None:
    with _session(engine) as session:
        resource = session.get(Resource, resource_id)
        assert resource is not None
        if resource.authorization_updated_at is None:
            return None
        return as_utc(resource.authorization_updated_at)


def test_insert_user_permission_stamps_resource(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        session.commit()

    with _session(permission_engine) as session:
        assert facade.select_user_permissions(session, seeded["dave"], 123) == {ROLE_ADMIN}
        assert facade.select_user_permissions(session, seeded["dave"], 456) == set()
    assert _authorization_updated_at(permission_engine, 123) == FIXED_NOW
    assert _authorization_updated_at(permission_engine, 456) == EARLIER


def test_insert_user_permission_is_idempotent(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_USER, session)
        facade.insert_user_permission(123, seeded["dave"], ROLE_USER, session)
        session.commit()

    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_USER, session)
        session.commit()
        rows = session.exec(select(UserRole).where(UserRole.resource_id == 123)).all()
        assert len(rows) == 1
        assert facade.select_user_permissions(session, seeded["dave"], 123) == {ROLE_USER}


def test_delete_user_permission(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        facade.insert_user_permission(123, seeded["dave"], ROLE_USER, session)
        session.commit()

    with _session(permission_engine) as session:
        facade.delete_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        facade.delete_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        facade.delete_user_permission(123, seeded["other_user"], ROLE_ADMIN, session)
        session.commit()
        assert facade.select_user_permissions(session, seeded["dave"], 123) == {ROLE_USER}


def test_delete_missing_user_permission_still_stamps(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.delete_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        session.commit()

    assert _authorization_updated_at(permission_engine, 123) == FIXED_NOW


def test_insert_group_permission_by_id_and_by_name(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_group_permission(123, GroupId(seeded["devs"]), ROLE_USER, session)
        facade.insert_group_permission(123, GroupName("devs"), ROLE_CODEVIEWER, session)
        facade.insert_group_permission(123, "devs", ROLE_USER, session)
        session.commit()

    with _session(permission_engine) as session:
        rows = session.exec(select(GroupRole).where(GroupRole.resource_id == 123)).all()
        assert sorted((row.group_id, row.role) for row in rows) == [
            (seeded["devs"], ROLE_CODEVIEWER),
            (seeded["devs"], ROLE_USER),
        ]
        assert facade.select_group_permissions(session, "devs", 123) == {ROLE_USER, ROLE_CODEVIEWER}
    assert _authorization_updated_at(permission_engine, 123) == FIXED_NOW


def test_anyone_group_permission_is_isolated(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_group_permission(123, ANYONE, ROLE_USER, session)
        facade.insert_group_permission(123, "devs", ROLE_ADMIN, session)
        session.commit()

    with _session(permission_engine) as session:
        assert facade.select_group_permissions(session, ANYONE, 123) == {ROLE_USER}
        assert facade.select_group_permissions(session, "Anyone", 123) == {ROLE_USER}
        assert facade.select_group_permissions(session, "devs", 123) == {ROLE_ADMIN}
        assert facade.select_group_permissions(session, GroupId(seeded["other_group"]), 123) == set()
        stored = session.exec(select(GroupRole.group_id).where(GroupRole.role == ROLE_USER)).all()
        assert stored == [ANYONE_GROUP_ID]


def test_delete_group_permission(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_group_permission(123, "devs", ROLE_USER, session)
        facade.insert_group_permission(123, ANYONE, ROLE_USER, session)
        session.commit()

    with _session(permission_engine) as session:
        facade.delete_group_permission(123, GroupId(seeded["devs"]), ROLE_USER, session)
        facade.delete_group_permission(123, "devs", ROLE_USER, session)
        facade.delete_group_permission(123, "no-such-group", ROLE_USER, session)
        session.commit()
        assert facade.select_group_permissions(session, "devs", 123) == set()
        assert facade.select_group_permissions(session, ANYONE, 123) == {ROLE_USER}

    with _session(permission_engine) as session:
        facade.delete_group_permission(123, ANYONE, ROLE_USER, session)
        session.commit()
        assert facade.select_group_permissions(session, ANYONE, 123) == set()


def test_count_component_permissions(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        facade.insert_group_permission(123, ANYONE, ROLE_USER, session)
        facade.insert_group_permission(456, "devs", ROLE_USER, session)
        session.commit()
        assert facade.count_component_permissions(session, 123) == 2
        assert facade.count_component_permissions(session, 456) == 1
        assert facade.count_component_permissions(session, 789) == 0


def test_remove_all_permissions(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_USER, session)
        facade.insert_group_permission(123, "devs", ROLE_USER, session)
        facade.insert_user_permission(456, seeded["dave"], ROLE_ADMIN, session)
        facade.insert_group_permission(456, "devs", ROLE_ISSUE_ADMIN, session)
        session.commit()

    with _session(permission_engine) as session:
        assert len(facade.select_group_permissions(session, "devs", 123)) == 1
        assert facade.select_group_permissions(session, "other", 123) == set()
        assert len(facade.select_user_permissions(session, seeded["dave"], 123)) == 1
        assert facade.select_user_permissions(session, seeded["other_user"], 123) == set()

        facade.remove_all_permissions(123, session)
        session.commit()

        assert facade.select_group_permissions(session, "devs", 123) == set()
        assert facade.select_user_permissions(session, seeded["dave"], 123) == set()
        assert facade.select_user_permissions(session, seeded["dave"], 456) == {ROLE_ADMIN}
        assert facade.select_group_permissions(session, "devs", 456) == {ROLE_ISSUE_ADMIN}
        assert facade.count_component_permissions(session, 123) == 0


def test_rollback_discards_grants_and_stamp(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        facade.insert_group_permission(123, ANYONE, ROLE_USER, session)
        session.rollback()

    with _session(permission_engine) as session:
        assert facade.count_component_permissions(session, 123) == 0
    assert _authorization_updated_at(permission_engine, 123) == EARLIER


def test_writes_stamp_with_wall_clock(permission_engine: Engine, seeded: dict[str, str]) -> None:
    facade = PermissionFacade()
    before = now_utc()
    with _session(permission_engine) as session:
        facade.insert_group_permission(123, "devs", ROLE_USER, session)
        session.commit()

    stamped = _authorization_updated_at(permission_engine, 123)
    assert stamped is not None
    assert stamped >= before


def test_unknown_principals_and_resources(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        with pytest.raises(UserNotFoundError):
            facade.insert_user_permission(123, "missing-user", ROLE_USER, session)
        with pytest.raises(GroupNotFoundError):
            facade.insert_group_permission(123, "missing-group", ROLE_USER, session)
        with pytest.raises(GroupNotFoundError):
            facade.insert_group_permission(123, GroupId("missing-id"), ROLE_USER, session)
        with pytest.raises(ResourceNotFoundError):
            facade.insert_user_permission(999, seeded["dave"], ROLE_USER, session)
        assert facade.select_group_permissions(session, "missing-group", 123) == set()


def test_group_named_anyone_cannot_be_stored(permission_engine: Engine) -> None:
    with _session(permission_engine) as session:
        session.add(Group(name="ANYONE"))
        with pytest.raises(IntegrityError):
            session.commit()


@pytest.mark.parametrize("value", ["Anyone", "anyone", "ANYONE"])
def test_parse_group_ref_recognises_anyone(value: str) -> None:
    assert parse_group_ref(value) is ANYONE


def test_parse_group_ref_keeps_other_names() -> None:
    assert parse_group_ref("members") == GroupName("members")
    assert parse_group_ref("Anyone-else") == GroupName("Anyone-else")
    assert parse_group_ref(" Anyone ") == GroupName(" Anyone ")
    assert parse_group_ref("Anyone\t") == GroupName("Anyone\t")


@pytest.mark.parametrize("name", [" Anyone ", "Anyone\t", " anyone"])
def test_padded_anyone_group_name_is_a_real_group(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
    name: str,
) -> None:
    with _session(permission_engine) as session:
        padded = Group(name=name)
        session.add(padded)
        session.commit()

        facade.insert_group_permission(123, name, ROLE_ADMIN, session)
        session.commit()

        stored = session.exec(select(GroupRole.group_id).where(GroupRole.resource_id == 123)).all()
        assert stored == [padded.id]
        assert facade.select_group_permissions(session, name, 123) == {ROLE_ADMIN}
        assert facade.select_group_permissions(session, ANYONE, 123) == set()


def test_select_user_permissions_by_login(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], ROLE_ADMIN, session)
        facade.insert_user_permission(123, seeded["dave"], ROLE_CODEVIEWER, session)
        session.commit()

        assert facade.select_user_permissions_by_login(session, "dave.loper", 123) == {
            ROLE_ADMIN,
            ROLE_CODEVIEWER,
        }
        assert facade.select_user_permissions_by_login(session, "other.user", 123) == set()
        assert facade.select_user_permissions_by_login(session, "missing.login", 123) == set()


@pytest.mark.parametrize("role", RESOURCE_ROLES)
def test_each_resource_role_can_be_granted_and_revoked(
    facade: PermissionFacade,
    permission_engine: Engine,
    seeded: dict[str, str],
    role: str,
) -> None:
    with _session(permission_engine) as session:
        facade.insert_user_permission(123, seeded["dave"], role, session)
        facade.insert_group_permission(123, ANYONE, role, session)
        session.commit()
        assert facade.select_user_permissions(session, seeded["dave"], 123) == {role}
        assert facade.select_group_permissions(session, ANYONE, 123) == {role}

        facade.delete_user_permission(123, seeded["dave"], role, session)
        facade.delete_group_permission(123, ANYONE, role, session)
        session.commit()
        assert facade.count_component_permissions(session, 123) == 0
