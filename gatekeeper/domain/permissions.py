from __future__ import annotations

from dataclasses import dataclass
from typing import Final

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLE_CODEVIEWER = "codeviewer"
ROLE_ISSUE_ADMIN = "issueadmin"

RESOURCE_ROLES = [
    ROLE_ADMIN,
    ROLE_USER,
    ROLE_CODEVIEWER,
    ROLE_ISSUE_ADMIN,
]

ANYONE_GROUP_NAME: Final = "Anyone"
# Stored in group_roles.group_id; group ids are uuid4 strings so this cannot collide.
ANYONE_GROUP_ID: Final = "*"


@dataclass(frozen=True)
class GroupId:
    id: str


@dataclass(frozen=True)
class GroupName:
    name: str


@dataclass(frozen=True)
class AnyoneGroup:
    def __str__(self) -> str:
        return ANYONE_GROUP_NAME


ANYONE: Final = AnyoneGroup()

GroupRef = GroupId | GroupName | AnyoneGroup


def is_anyone(group_name: str | None) -> bool:
    # Same rule as ck_groups_name_not_anyone, so no stored group can be read as Anyone.
    return group_name is not None and group_name.lower() == ANYONE_GROUP_NAME.lower()


def parse_group_ref(value: str) -> GroupRef:
    """Map a textual group name to a GroupRef, recognising the Anyone sentinel."""
    if is_anyone(value):
        return ANYONE
    return GroupName(value)
