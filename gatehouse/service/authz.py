from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.errors import ForbiddenError, NotFoundError, require_id
from gatehouse.storage.common import unique_ids
from gatehouse.storage.models import Group, Permission, Role, User

logger = get_logger(__name__)


# route key -> (resource, method) the caller must hold a permission for
ROUTE_PERMISSIONS: Dict[str, Tuple[str, str]] = {
    "roles.query": ("roles", "query"),
    "roles.queryById": ("roles", "queryById"),
    "roles.create": ("roles", "create"),
    "roles.delete": ("roles", "delete"),
    "roles.update": ("roles", "update"),
    "groups.query": ("groups", "query"),
    "groups.queryById": ("groups", "queryById"),
    "groups.create": ("groups", "create"),
    "groups.delete": ("groups", "delete"),
    "groups.update": ("groups", "update"),
    "permissions.query": ("permissions", "query"),
    "permissions.create": ("permissions", "create"),
    "permissions.delete": ("permissions", "delete"),
    "users.query": ("users", "query"),
    "users.queryById": ("users", "queryById"),
    "users.update": ("users", "update"),
    "users.delete": ("users", "delete"),
    "auth.logoutByToken": ("auth", "logoutByToken"),
}


class Decision(str, Enum):
    PERMIT = "permit"
    DENY = "deny"


class AuthzStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_roles(self, role_ids: List[str]) -> List[Role]: ...

    def get_group(self, group_id: str) -> Optional[Group]: ...

    def get_groups(self, group_ids: List[str]) -> List[Group]: ...

    def get_permissions(self, permission_ids: List[str]) -> List[Permission]: ...

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> Optional[User]: ...

    def set_group_roles(self, group_id: str, role_ids: List[str]) -> Optional[Group]: ...

    def set_role_permissions(
        self, role_id: str, permission_ids: List[str]
    ) -> Optional[Role]: ...


class Authorizer:
    """Role and permission resolution for a user, read fresh on every call.

    Effective roles are the user's own roles plus the roles of every group the
    user belongs to. A request is admitted only when one of the permissions of
    those roles names exactly the requested resource and method.
    """

    def __init__(self, store: AuthzStore) -> None:
        self.store = store

    def effective_roles(self, user: User) -> List[Role]:
        role_ids = list(user.roles)
        for group in self.store.get_groups(user.groups):
            role_ids.extend(group.roles)
        return self.store.get_roles(unique_ids(role_ids))

    def effective_permissions(self, user: User) -> List[Permission]:
        permission_ids: List[str] = []
        for role in self.effective_roles(user):
            permission_ids.extend(role.permissions)
        return self.store.get_permissions(unique_ids(permission_ids))

    def authorize(self, user_id: str, resource: str, method: str) -> Decision:
        user = self.store.get_user(user_id)
        if not user:
            return Decision.DENY
        for permission in self.effective_permissions(user):
            if permission.matches(resource, method):
                return Decision.PERMIT
        return Decision.DENY

    def is_permitted(self, user_id: str, resource: str, method: str) -> bool:
        return self.authorize(user_id, resource, method) == Decision.PERMIT

    def require(self, user_id: str, route_key: str) -> None:
        """Raise ``ForbiddenError`` unless the user may call ``route_key``."""
        resource, method = ROUTE_PERMISSIONS[route_key]
        if not self.is_permitted(user_id, resource, method):
            logger.info(
                "authorization_denied", user_id=user_id, resource=resource, method=method
            )
            raise ForbiddenError(
                "permission denied", detail={"resource": resource, "method": method}
            )

    def set_roles(self, kind: str, target_id: str, role_ids: List[str]):
        """Replace the whole role set of a user or a group."""
        require_id(target_id, f"{kind} id")
        ids = self._resolve_ids(role_ids, "role", self.store.get_roles)
        if kind == "user":
            updated = self.store.set_user_roles(target_id, ids)
        elif kind == "group":
            updated = self.store.set_group_roles(target_id, ids)
        else:
            raise ValueError(f"unknown role holder kind: {kind}")
        if not updated:
            raise NotFoundError(f"{kind} not found", detail={"id": target_id})
        logger.info("roles_replaced", kind=kind, target_id=target_id, roles=len(ids))
        return updated

    def set_permissions(self, role_id: str, permission_ids: List[str]) -> Role:
        """Replace the whole permission set of a role."""
        require_id(role_id, "role id")
        ids = self._resolve_ids(permission_ids, "permission", self.store.get_permissions)
        role = self.store.set_role_permissions(role_id, ids)
        if not role:
            raise NotFoundError("role not found", detail={"id": role_id})
        logger.info("permissions_replaced", role_id=role_id, permissions=len(ids))
        return role

    @staticmethod
    def _resolve_ids(ids: List[str], kind: str, fetch) -> List[str]:
        wanted = unique_ids(require_id(value, f"{kind} id") for value in ids or [])
        found = {item.id for item in fetch(wanted)}
        missing = [value for value in wanted if value not in found]
        if missing:
            raise NotFoundError(f"{kind} not found", detail={"missing": missing})
        return wanted


__all__ = ["Authorizer", "Decision", "ROUTE_PERMISSIONS"]
