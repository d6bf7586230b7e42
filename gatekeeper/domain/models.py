from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import CheckConstraint, DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from gatekeeper.domain.permissions import ANYONE_GROUP_ID


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Semaphore(SQLModel, table=True):
    __tablename__ = "semaphores"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(max_length=255, unique=True, index=True)
    locked_at: datetime = Field(sa_type=DateTime(timezone=True))
    max_duration_seconds: int
    expires_at: datetime = Field(index=True, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))


class Resource(SQLModel, table=True):
    __tablename__ = "resources"

    id: int | None = Field(default=None, primary_key=True)
    key: str = Field(index=True, unique=True)
    qualifier: str = Field(default="TRK", index=True)
    name: str | None = None
    authorization_updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    login: str = Field(index=True, unique=True)
    name: str | None = None
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))


class Group(SQLModel, table=True):
    __tablename__ = "groups"
    __table_args__ = (
        CheckConstraint("lower(name) <> 'anyone'", name="ck_groups_name_not_anyone"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "resource_id", "role", name="uq_user_roles_user_resource_role"),
        Index("ix_user_roles_resource_id", "resource_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    resource_id: int = Field(foreign_key="resources.id")
    role: str


class GroupRole(SQLModel, table=True):
    __tablename__ = "group_roles"
    __table_args__ = (
        UniqueConstraint("group_id", "resource_id", "role", name="uq_group_roles_group_resource_role"),
        Index("ix_group_roles_resource_id", "resource_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    # "*" for Anyone; otherwise a groups.id value. No foreign key because of the sentinel.
    group_id: str = Field(index=True)
    resource_id: int = Field(foreign_key="resources.id")
    role: str


class PermissionTemplate(SQLModel, table=True):
    __tablename__ = "perm_templates"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    key: str = Field(index=True, unique=True)
    name: str
    description: str | None = None
    key_pattern: str | None = None
    created_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=now_utc, sa_type=DateTime(timezone=True))


class PermissionTemplateUser(SQLModel, table=True):
    __tablename__ = "perm_templates_users"
    __table_args__ = (
        UniqueConstraint(
            "template_id",
            "user_id",
            "permission",
            name="uq_perm_templates_users_template_user_permission",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    template_id: str = Field(foreign_key="perm_templates.id", index=True)
    user_id: str = Field(foreign_key="users.id")
    permission: str


class PermissionTemplateGroup(SQLModel, table=True):
    __tablename__ = "perm_templates_groups"
    __table_args__ = (
        UniqueConstraint(
            "template_id",
            "group_id",
            "permission",
            name="uq_perm_templates_groups_template_group_permission",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    template_id: str = Field(foreign_key="perm_templates.id", index=True)
    group_id: str
    permission: str


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class LockRead(BaseModel):
    name: str
    acquired: bool
    locked_at: datetime | None = None
    max_duration_seconds: int | None = None
    duration_since_locked: float | None = None


class TemplateUserPermission(BaseModel):
    user_id: str
    user_login: str | None = None
    permission: str


class TemplateGroupPermission(BaseModel):
    group_id: str
    group_name: str | None = None
    permission: str

    @property
    def is_anyone(self) -> bool:
        return self.group_id == ANYONE_GROUP_ID


class PermissionTemplateRead(ORMReadModel):
    id: str
    key: str
    name: str
    description: str | None = None
    key_pattern: str | None = None
    created_at: datetime
    updated_at: datetime
    user_permissions: list[TemplateUserPermission] = PydanticField(default_factory=list)
    group_permissions: list[TemplateGroupPermission] = PydanticField(default_factory=list)
