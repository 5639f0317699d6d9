from __future__ import annotations

from typing import Any, Dict, List

from gatehouse.logging import get_logger
from gatehouse.service.errors import NotFoundError, ValidationError, require_id
from gatehouse.storage.common import unique_ids
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Group, Permission, Role, User

logger = get_logger(__name__)

USER_UPDATABLE_FIELDS = ("name", "surname", "lastname")


class DirectoryService:
    """Plain CRUD over users, roles, groups and permissions.

    Every id is shape-checked before the store is asked for it, so callers
    see ``IdNotValidError`` for garbage and ``NotFoundError`` for absence.
    """

    def __init__(self, store) -> None:
        self.store = store

    # users
    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def get_user(self, user_id: str) -> User:
        require_id(user_id, "user id")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"id": user_id})
        return user

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> User:
        require_id(user_id, "user id")
        changes = {k: v for k, v in fields.items() if k in USER_UPDATABLE_FIELDS}
        unknown = sorted(set(fields) - set(USER_UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError("fields not updatable", detail={"fields": unknown})
        user = self.store.update_user(user_id, changes)
        if not user:
            raise NotFoundError("user not found", detail={"id": user_id})
        logger.info("user_updated", user_id=user_id, fields=sorted(changes))
        return user

    def delete_user(self, user_id: str) -> User:
        require_id(user_id, "user id")
        user = self.store.delete_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"id": user_id})
        logger.info("user_deleted", user_id=user_id)
        return user

    def set_user_groups(self, user_id: str, group_ids: List[str]) -> User:
        require_id(user_id, "user id")
        ids = unique_ids(require_id(g, "group id") for g in group_ids or [])
        self._require_all(ids, self.store.get_groups, "group")
        user = self.store.set_user_groups(user_id, ids)
        if not user:
            raise NotFoundError("user not found", detail={"id": user_id})
        logger.info("user_groups_replaced", user_id=user_id, groups=len(ids))
        return user

    # roles
    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, role_id: str) -> Role:
        require_id(role_id, "role id")
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"id": role_id})
        return role

    def create_role(self, name: str, descrip: str = "") -> Role:
        try:
            role = self.store.create_role(name, descrip)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info("role_created", role_id=role.id)
        return role

    def delete_role(self, role_id: str) -> Role:
        require_id(role_id, "role id")
        role = self.store.delete_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"id": role_id})
        logger.info("role_deleted", role_id=role_id)
        return role

    # groups
    def list_groups(self) -> List[Group]:
        return self.store.list_groups()

    def get_group(self, group_id: str) -> Group:
        require_id(group_id, "group id")
        group = self.store.get_group(group_id)
        if not group:
            raise NotFoundError("group not found", detail={"id": group_id})
        return group

    def create_group(self, name: str, descrip: str = "") -> Group:
        try:
            group = self.store.create_group(name, descrip)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info("group_created", group_id=group.id)
        return group

    def delete_group(self, group_id: str) -> Group:
        require_id(group_id, "group id")
        group = self.store.delete_group(group_id)
        if not group:
            raise NotFoundError("group not found", detail={"id": group_id})
        logger.info("group_deleted", group_id=group_id)
        return group

    def group_members(self, group_id: str) -> List[User]:
        self.get_group(group_id)
        return self.store.list_users_in_group(group_id)

    def set_group_members(self, group_id: str, user_ids: List[str]) -> List[User]:
        """Make exactly ``user_ids`` the members of the group.

        Membership lives on each user, so this is one atomic update per user
        whose membership changes.
        """
        self.get_group(group_id)
        wanted = unique_ids(require_id(u, "user id") for u in user_ids or [])
        users = {}
        for user_id in wanted:
            user = self.store.get_user(user_id)
            if not user:
                raise NotFoundError("user not found", detail={"id": user_id})
            users[user_id] = user
        for member in self.store.list_users_in_group(group_id):
            if member.id not in users:
                self.store.set_user_groups(
                    member.id, [g for g in member.groups if g != group_id]
                )
        for user in users.values():
            if group_id not in user.groups:
                self.store.set_user_groups(user.id, user.groups + [group_id])
        logger.info("group_members_replaced", group_id=group_id, members=len(wanted))
        return self.store.list_users_in_group(group_id)

    # permissions
    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def get_permission(self, permission_id: str) -> Permission:
        require_id(permission_id, "permission id")
        permission = self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError("permission not found", detail={"id": permission_id})
        return permission

    def create_permission(
        self, name: str, resource: str, method: str, descrip: str = ""
    ) -> Permission:
        try:
            permission = self.store.create_permission(name, resource, method, descrip)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info(
            "permission_created",
            permission_id=permission.id,
            resource=resource,
            method=method,
        )
        return permission

    def delete_permission(self, permission_id: str) -> Permission:
        require_id(permission_id, "permission id")
        permission = self.store.delete_permission(permission_id)
        if not permission:
            raise NotFoundError("permission not found", detail={"id": permission_id})
        logger.info("permission_deleted", permission_id=permission_id)
        return permission

    @staticmethod
    def _require_all(ids: List[str], fetch, kind: str) -> None:
        found = {item.id for item in fetch(ids)}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError(f"{kind} not found", detail={"missing": missing})

