from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Mapping
from datetime import datetime

from sqlmodel import Session

from gatekeeper.domain.models import (
    PermissionTemplate,
    PermissionTemplateRead,
    Resource,
    TemplateGroupPermission,
    TemplateUserPermission,
    now_utc,
)
from gatekeeper.domain.permissions import (
    ANYONE_GROUP_ID,
    AnyoneGroup,
    GroupId,
    GroupName,
    GroupRef,
    parse_group_ref,
)
from gatekeeper.infra.repositories import PermissionRepository

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_SETTING = "PERMISSION_TEMPLATE_DEFAULT"


class AuthorizationError(Exception):
    pass


class NotFoundError(AuthorizationError):
    pass


class TemplateNotFoundError(NotFoundError):
    pass


class ResourceNotFoundError(NotFoundError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class GroupNotFoundError(NotFoundError):
    pass


class ConflictError(AuthorizationError):
    pass


def qualifier_template_setting(qualifier: str) -> str:
    return f"{DEFAULT_TEMPLATE_SETTING}_{qualifier.upper()}"


class PermissionFacade:
    def __init__(
        self,
        repository: PermissionRepository | None = None,
        clock: Callable[[], datetime] = now_utc,
        settings: Mapping[str, str] | None = None,
    ) -> None:
        self._repository = repository or PermissionRepository()
        self._clock = clock
        self._settings = settings

    def _setting(self, name: str) -> str | None:
        if self._settings is not None:
            value = self._settings.get(name)
        else:
            value = os.getenv(name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def _require_resource(self, session: Session, resource_id: int) -> Resource:
        resource = self._repository.get_resource(session, resource_id)
        if resource is None:
            raise ResourceNotFoundError(f"resource {resource_id} not found")
        return resource

    def _update_authorization_date(self, session: Session, resource: Resource) -> None:
        self._repository.touch_resource(session, resource, self._clock())

    def _as_group_ref(self, group: GroupRef | str) -> GroupRef:
        if isinstance(group, str):
            return parse_group_ref(group)
        return group

    def _resolve_group_id(self, session: Session, group: GroupRef | str) -> str | None:
        ref = self._as_group_ref(group)
        if isinstance(ref, AnyoneGroup):
            return ANYONE_GROUP_ID
        if isinstance(ref, GroupId):
            return ref.id if self._repository.group_exists(session, ref.id) else None
        if isinstance(ref, GroupName):
            return self._repository.find_group_id(session, ref.name)
        raise TypeError(f"unsupported group reference: {ref!r}")

    def select_user_permissions(self, session: Session, user_id: str, resource_id: int) -> set[str]:
        return self._repository.select_user_roles(session, user_id, resource_id)

    def select_user_permissions_by_login(self, session: Session, login: str, resource_id: int) -> set[str]:
        user_id = self._repository.find_user_id(session, login)
        if user_id is None:
            return set()
        return self._repository.select_user_roles(session, user_id, resource_id)

    def select_group_permissions(
        self,
        session: Session,
        group: GroupRef | str,
        resource_id: int,
    ) -> set[str]:
        group_id = self._resolve_group_id(session, group)
        if group_id is None:
            return set()
        return self._repository.select_group_roles(session, group_id, resource_id)

    def count_component_permissions(self, session: Session, resource_id: int) -> int:
        return self._repository.count_for_resource(session, resource_id)

    def insert_user_permission(self, resource_id: int, user_id: str, role: str, session: Session) -> None:
        resource = self._require_resource(session, resource_id)
        if not self._repository.user_exists(session, user_id):
            raise UserNotFoundError(f"user {user_id} not found")
        self._repository.insert_user_role(session, resource_id, user_id, role)
        self._update_authorization_date(session, resource)

    def delete_user_permission(self, resource_id: int, user_id: str, role: str, session: Session) -> None:
        resource = self._require_resource(session, resource_id)
        self._repository.delete_user_role(session, resource_id, user_id, role)
        self._update_authorization_date(session, resource)

    def insert_group_permission(
        self,
        resource_id: int,
        group: GroupRef | str,
        role: str,
        session: Session,
    ) -> None:
        resource = self._require_resource(session, resource_id)
        group_id = self._resolve_group_id(session, group)
        if group_id is None:
            raise GroupNotFoundError(f"group {self._as_group_ref(group)} not found")
        self._repository.insert_group_role(session, resource_id, group_id, role)
        self._update_authorization_date(session, resource)

    def delete_group_permission(
        self,
        resource_id: int,
        group: GroupRef | str,
        role: str,
        session: Session,
    ) -> None:
        resource = self._require_resource(session, resource_id)
        group_id = self._resolve_group_id(session, group)
        if group_id is not None:
            self._repository.delete_group_role(session, resource_id, group_id, role)
        self._update_authorization_date(session, resource)

    def remove_all_permissions(self, resource_id: int, session: Session) -> None:
        resource = self._require_resource(session, resource_id)
        deleted = self._repository.delete_all_for_resource(session, resource_id)
        self._update_authorization_date(session, resource)
        logger.info("removed %s permission(s) from resource %s", deleted, resource_id)

    def select_permission_template(self, session: Session, template_key: str) -> PermissionTemplate | None:
        return self._repository.get_template_by_key(session, template_key)

    def get_permission_template_with_permissions(
        self,
        session: Session,
        template_key: str,
    ) -> PermissionTemplateRead:
        template = self._repository.get_template_by_key(session, template_key)
        if template is None:
            raise TemplateNotFoundError(f"could not retrieve permission template with key {template_key}")

        template_users = self._repository.select_template_users(session, template.id)
        template_groups = self._repository.select_template_groups(session, template.id)
        logins = self._repository.find_user_logins(session, {item.user_id for item in template_users})
        group_names = self._repository.find_group_names(
            session,
            {item.group_id for item in template_groups if item.group_id != ANYONE_GROUP_ID},
        )

        read = PermissionTemplateRead.model_validate(template)
        read.user_permissions = [
            TemplateUserPermission(
                user_id=item.user_id,
                user_login=logins.get(item.user_id),
                permission=item.permission,
            )
            for item in template_users
        ]
        read.group_permissions = [
            TemplateGroupPermission(
                group_id=item.group_id,
                group_name=group_names.get(item.group_id),
                permission=item.permission,
            )
            for item in template_groups
        ]
        return read

    def apply_permission_template(self, session: Session, template_key: str, resource_id: int) -> None:
        template = self.get_permission_template_with_permissions(session, template_key)
        resource = self._require_resource(session, resource_id)
        group_grants: list[tuple[str, str]] = []
        for item in template.group_permissions:
            # group_name is only resolved for groups that still exist.
            if not item.is_anyone and item.group_name is None:
                logger.warning(
                    "permission template %s refers to missing group %s; skipping %s",
                    template_key,
                    item.group_id,
                    item.permission,
                )
                continue
            group_grants.append((item.group_id, item.permission))
        self._repository.bulk_replace(
            session,
            resource_id,
            user_grants=[(item.user_id, item.permission) for item in template.user_permissions],
            group_grants=group_grants,
        )
        self._update_authorization_date(session, resource)
        logger.info("applied permission template %s to resource %s", template_key, resource_id)

    def find_matching_template(self, session: Session, resource_key: str, qualifier: str) -> PermissionTemplate:
        matching = [
            template
            for template in self._repository.list_templates(session)
            if template.key_pattern and re.fullmatch(template.key_pattern, resource_key)
        ]
        if len(matching) > 1:
            names = ", ".join(template.name for template in matching)
            raise ConflictError(
                f'the "{resource_key}" key matches multiple permission templates: {names}; '
                "update the templates so that only one of them matches the key"
            )
        if matching:
            return matching[0]

        template_key = self._setting(qualifier_template_setting(qualifier)) or self._setting(
            DEFAULT_TEMPLATE_SETTING
        )
        if template_key is None:
            raise TemplateNotFoundError(f"no permission template matches {resource_key} and no default is set")
        template = self._repository.get_template_by_key(session, template_key)
        if template is None:
            raise TemplateNotFoundError(f"could not retrieve permission template with key {template_key}")
        return template

    def apply_default_permission_template(self, session: Session, resource_id: int) -> str:
        resource = self._require_resource(session, resource_id)
        template = self.find_matching_template(session, resource.key, resource.qualifier)
        self.apply_permission_template(session, template.key, resource_id)
        return template.key
