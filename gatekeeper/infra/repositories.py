from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from gatekeeper.domain.models import (
    Group,
    GroupRole,
    PermissionTemplate,
    PermissionTemplateGroup,
    PermissionTemplateUser,
    Resource,
    Semaphore,
    User,
    UserRole,
)


def _rowcount(result: Any) -> int:
    rowcount = getattr(result, "rowcount", None)
    return int(rowcount or 0)


def _insert_if_absent(session: Session, row: SQLModel, existing: Any) -> bool:
    # A concurrent duplicate only rolls back the savepoint; other integrity errors propagate.
    if session.exec(existing).first() is not None:
        return False
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        if session.exec(existing).first() is not None:
            return False
        raise
    return True


class SemaphoreRepository:
    def find_by_name(self, session: Session, name: str) -> Semaphore | None:
        return session.exec(select(Semaphore).where(Semaphore.name == name)).first()

    def insert_if_absent(
        self,
        session: Session,
        name: str,
        now: datetime,
        max_duration_seconds: int,
    ) -> bool:
        row = Semaphore(
            name=name,
            locked_at=now,
            max_duration_seconds=max_duration_seconds,
            expires_at=now + timedelta(seconds=max_duration_seconds),
            created_at=now,
            updated_at=now,
        )
        return _insert_if_absent(session, row, select(Semaphore.id).where(Semaphore.name == name))

    def compare_and_set(
        self,
        session: Session,
        name: str,
        now: datetime,
        max_duration_seconds: int,
    ) -> bool:
        statement = (
            sa.update(Semaphore)
            .where(col(Semaphore.name) == name)
            .where(col(Semaphore.expires_at) <= now)
            .values(
                locked_at=now,
                max_duration_seconds=max_duration_seconds,
                expires_at=now + timedelta(seconds=max_duration_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return _rowcount(session.execute(statement)) == 1

    def delete_by_name(self, session: Session, name: str) -> int:
        statement = (
            sa.delete(Semaphore)
            .where(col(Semaphore.name) == name)
            .execution_options(synchronize_session=False)
        )
        return _rowcount(session.execute(statement))


class PermissionRepository:
    def get_resource(self, session: Session, resource_id: int) -> Resource | None:
        return session.get(Resource, resource_id)

    def touch_resource(self, session: Session, resource: Resource, ts: datetime) -> None:
        resource.authorization_updated_at = ts
        session.add(resource)
        session.flush()

    def user_exists(self, session: Session, user_id: str) -> bool:
        return session.exec(select(User.id).where(User.id == user_id)).first() is not None

    def group_exists(self, session: Session, group_id: str) -> bool:
        return session.exec(select(Group.id).where(Group.id == group_id)).first() is not None

    def find_user_id(self, session: Session, login: str) -> str | None:
        return session.exec(select(User.id).where(User.login == login)).first()

    def find_group_id(self, session: Session, name: str) -> str | None:
        return session.exec(select(Group.id).where(Group.name == name)).first()

    def find_user_logins(self, session: Session, user_ids: Iterable[str]) -> dict[str, str]:
        ids = list(user_ids)
        if not ids:
            return {}
        rows = session.exec(select(User.id, User.login).where(col(User.id).in_(ids))).all()
        return {user_id: login for user_id, login in rows}

    def find_group_names(self, session: Session, group_ids: Iterable[str]) -> dict[str, str]:
        ids = list(group_ids)
        if not ids:
            return {}
        rows = session.exec(select(Group.id, Group.name).where(col(Group.id).in_(ids))).all()
        return {group_id: name for group_id, name in rows}

    def select_user_roles(self, session: Session, user_id: str, resource_id: int) -> set[str]:
        statement = (
            select(UserRole.role)
            .where(UserRole.user_id == user_id)
            .where(UserRole.resource_id == resource_id)
        )
        return set(session.exec(statement).all())

    def select_group_roles(self, session: Session, group_id: str, resource_id: int) -> set[str]:
        statement = (
            select(GroupRole.role)
            .where(GroupRole.group_id == group_id)
            .where(GroupRole.resource_id == resource_id)
        )
        return set(session.exec(statement).all())

    def count_for_resource(self, session: Session, resource_id: int) -> int:
        user_count = session.exec(
            select(sa.func.count()).select_from(UserRole).where(UserRole.resource_id == resource_id)
        ).one()
        group_count = session.exec(
            select(sa.func.count()).select_from(GroupRole).where(GroupRole.resource_id == resource_id)
        ).one()
        return int(user_count) + int(group_count)

    def insert_user_role(self, session: Session, resource_id: int, user_id: str, role: str) -> bool:
        existing = (
            select(UserRole.id)
            .where(UserRole.user_id == user_id)
            .where(UserRole.resource_id == resource_id)
            .where(UserRole.role == role)
        )
        row = UserRole(user_id=user_id, resource_id=resource_id, role=role)
        return _insert_if_absent(session, row, existing)

    def delete_user_role(self, session: Session, resource_id: int, user_id: str, role: str) -> int:
        statement = (
            sa.delete(UserRole)
            .where(col(UserRole.user_id) == user_id)
            .where(col(UserRole.resource_id) == resource_id)
            .where(col(UserRole.role) == role)
            .execution_options(synchronize_session="fetch")
        )
        return _rowcount(session.execute(statement))

    def insert_group_role(self, session: Session, resource_id: int, group_id: str, role: str) -> bool:
        existing = (
            select(GroupRole.id)
            .where(GroupRole.group_id == group_id)
            .where(GroupRole.resource_id == resource_id)
            .where(GroupRole.role == role)
        )
        row = GroupRole(group_id=group_id, resource_id=resource_id, role=role)
        return _insert_if_absent(session, row, existing)

    def delete_group_role(self, session: Session, resource_id: int, group_id: str, role: str) -> int:
        statement = (
            sa.delete(GroupRole)
            .where(col(GroupRole.group_id) == group_id)
            .where(col(GroupRole.resource_id) == resource_id)
            .where(col(GroupRole.role) == role)
            .execution_options(synchronize_session="fetch")
        )
        return _rowcount(session.execute(statement))

    def delete_all_for_resource(self, session: Session, resource_id: int) -> int:
        deleted = 0
        for model in (UserRole, GroupRole):
            statement = (
                sa.delete(model)
                .where(col(model.resource_id) == resource_id)
                .execution_options(synchronize_session="fetch")
            )
            deleted += _rowcount(session.execute(statement))
        return deleted

    def bulk_replace(
        self,
        session: Session,
        resource_id: int,
        user_grants: Iterable[tuple[str, str]],
        group_grants: Iterable[tuple[str, str]],
    ) -> None:
        with session.begin_nested():
            self.delete_all_for_resource(session, resource_id)
            session.add_all(
                UserRole(user_id=user_id, resource_id=resource_id, role=role)
                for user_id, role in sorted(set(user_grants))
            )
            session.add_all(
                GroupRole(group_id=group_id, resource_id=resource_id, role=role)
                for group_id, role in sorted(set(group_grants))
            )

    def get_template_by_key(self, session: Session, key: str) -> PermissionTemplate | None:
        return session.exec(select(PermissionTemplate).where(PermissionTemplate.key == key)).first()

    def list_templates(self, session: Session) -> list[PermissionTemplate]:
        return list(session.exec(select(PermissionTemplate).order_by(col(PermissionTemplate.name))).all())

    def select_template_users(self, session: Session, template_id: str) -> list[PermissionTemplateUser]:
        statement = (
            select(PermissionTemplateUser)
            .where(PermissionTemplateUser.template_id == template_id)
            .order_by(col(PermissionTemplateUser.permission), col(PermissionTemplateUser.user_id))
        )
        return list(session.exec(statement).all())

    def select_template_groups(self, session: Session, template_id: str) -> list[PermissionTemplateGroup]:
        statement = (
            select(PermissionTemplateGroup)
            .where(PermissionTemplateGroup.template_id == template_id)
            .order_by(col(PermissionTemplateGroup.permission), col(PermissionTemplateGroup.group_id))
        )
        return list(session.exec(statement).all())
