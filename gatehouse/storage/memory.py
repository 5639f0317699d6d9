from __future__ import annotations

import copy
import json
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.common import (
    group_from_doc,
    group_to_doc,
    normalize_email,
    permission_from_doc,
    permission_to_doc,
    pull_tokens,
    role_from_doc,
    role_to_doc,
    unique_ids,
    user_from_doc,
    user_to_doc,
)
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.ids import new_id
from gatehouse.storage.models import (
    Group,
    Permission,
    Role,
    TokenEntry,
    User,
    now_ms,
)


class MemoryStore:
    """In-process document store.

    Every collection is a dict of JSON-compatible documents keyed by id. Each
    public method runs under one lock, so every mutation is atomic per call.
    When ``fs_root`` is given, a snapshot is written after each mutation and
    reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Dict[str, Any]] = {}
        self.roles: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.permissions: Dict[str, Dict[str, Any]] = {}
        # RLock so helpers can re-enter from within a public method
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "gatehouse_store.json"

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        password_digest: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        lastname: Optional[str] = None,
        roles: Optional[List[str]] = None,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(doc["email"] == email for doc in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                password_digest=password_digest,
                name=name,
                surname=surname,
                lastname=lastname,
                roles=unique_ids(roles or []),
            )
            self.users[user.id] = user_to_doc(user)
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            doc = self.users.get(user_id)
            return user_from_doc(copy.deepcopy(doc)) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            doc = next((d for d in self.users.values() if d["email"] == email), None)
            return user_from_doc(copy.deepcopy(doc)) if doc else None

    def get_user_by_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            for doc in self.users.values():
                if any(entry["token"] == token for entry in doc.get("tokens", [])):
                    return user_from_doc(copy.deepcopy(doc))
            return None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            docs = sorted(self.users.values(), key=lambda d: d["created_at"])
            return [user_from_doc(copy.deepcopy(d)) for d in docs[:limit]]

    def list_users_in_group(self, group_id: str) -> List[User]:
        with self._data_lock:
            return [
                user_from_doc(copy.deepcopy(d))
                for d in self.users.values()
                if group_id in d.get("groups", [])
            ]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        return self._mutate_user(user_id, lambda doc: doc.update(fields))

    def delete_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            doc = self.users.pop(user_id, None)
            if doc is None:
                return None
            self._persist_state()
            return user_from_doc(doc)

    def push_user_token(
        self, user_id: str, entry: TokenEntry, *, max_entries: int = 0
    ) -> Optional[User]:
        """Append a live token and mark the user logged in, in one step."""

        def _apply(doc: Dict[str, Any]) -> None:
            tokens = list(doc.get("tokens") or [])
            tokens.append({"token": entry.token, "session_id": entry.session_id, "issued_at": entry.issued_at})
            if max_entries and len(tokens) > max_entries:
                tokens = tokens[-max_entries:]
            doc["tokens"] = tokens
            doc["logged_in"] = True
            doc["last_login"] = entry.issued_at

        return self._mutate_user(user_id, _apply, touch=False)

    def replace_user_token(
        self, user_id: str, old_token: str, entry: TokenEntry
    ) -> bool:
        """Swap ``old_token`` for ``entry`` if, and only if, it is still live."""
        with self._data_lock:
            doc = self.users.get(user_id)
            if doc is None:
                return False
            tokens = doc.get("tokens") or []
            for index, existing in enumerate(tokens):
                if existing["token"] == old_token:
                    tokens[index] = {
                        "token": entry.token,
                        "session_id": entry.session_id,
                        "issued_at": entry.issued_at,
                    }
                    self._persist_state()
                    return True
            return False

    def pull_user_session(self, user_id: str, session_id: str) -> Optional[int]:
        """Remove the token entry of one session. None when the user is absent."""
        with self._data_lock:
            doc = self.users.get(user_id)
            if doc is None:
                return None
            removed = pull_tokens(doc, lambda e: e["session_id"] == session_id)
            doc["last_logout"] = now_ms()
            self._persist_state()
            return removed

    def pull_token(self, token: str) -> int:
        """Remove ``token`` from whichever user holds it; returns entries removed."""
        removed = 0
        with self._data_lock:
            for doc in self.users.values():
                if any(e["token"] == token for e in doc.get("tokens", [])):
                    removed += pull_tokens(doc, lambda e: e["token"] == token)
                    doc["last_logout"] = now_ms()
            if removed:
                self._persist_state()
        return removed

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> Optional[User]:
        ids = unique_ids(role_ids)
        return self._mutate_user(user_id, lambda doc: doc.__setitem__("roles", ids))

    def set_user_groups(self, user_id: str, group_ids: List[str]) -> Optional[User]:
        ids = unique_ids(group_ids)
        return self._mutate_user(user_id, lambda doc: doc.__setitem__("groups", ids))

    def _mutate_user(
        self,
        user_id: str,
        apply: Callable[[Dict[str, Any]], None],
        *,
        touch: bool = True,
    ) -> Optional[User]:
        with self._data_lock:
            doc = self.users.get(user_id)
            if doc is None:
                return None
            apply(doc)
            if touch:
                doc["updated_at"] = now_ms()
            self._persist_state()
            return user_from_doc(copy.deepcopy(doc))

    # roles
    def create_role(self, name: str, descrip: str = "") -> Role:
        with self._data_lock:
            if any(doc["name"] == name for doc in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(id=new_id(), name=name, descrip=descrip)
            self.roles[role.id] = role_to_doc(role)
            self._persist_state()
            return copy.deepcopy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            doc = self.roles.get(role_id)
            return role_from_doc(copy.deepcopy(doc)) if doc else None

    def get_roles(self, role_ids: List[str]) -> List[Role]:
        with self._data_lock:
            return [
                role_from_doc(copy.deepcopy(self.roles[rid]))
                for rid in unique_ids(role_ids)
                if rid in self.roles
            ]

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            docs = sorted(self.roles.values(), key=lambda d: d["created_at"])
            return [role_from_doc(copy.deepcopy(d)) for d in docs]

    def set_role_permissions(
        self, role_id: str, permission_ids: List[str]
    ) -> Optional[Role]:
        with self._data_lock:
            doc = self.roles.get(role_id)
            if doc is None:
                return None
            doc["permissions"] = unique_ids(permission_ids)
            doc["updated_at"] = now_ms()
            self._persist_state()
            return role_from_doc(copy.deepcopy(doc))

    def delete_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            doc = self.roles.pop(role_id, None)
            if doc is None:
                return None
            for holder in list(self.users.values()) + list(self.groups.values()):
                if role_id in holder.get("roles", []):
                    holder["roles"] = [r for r in holder["roles"] if r != role_id]
            self._persist_state()
            return role_from_doc(doc)

    # groups
    def create_group(self, name: str, descrip: str = "") -> Group:
        with self._data_lock:
            if any(doc["name"] == name for doc in self.groups.values()):
                raise ConstraintViolation("group name already exists", {"field": "name"})
            group = Group(id=new_id(), name=name, descrip=descrip)
            self.groups[group.id] = group_to_doc(group)
            self._persist_state()
            return copy.deepcopy(group)

    def get_group(self, group_id: str) -> Optional[Group]:
        with self._data_lock:
            doc = self.groups.get(group_id)
            return group_from_doc(copy.deepcopy(doc)) if doc else None

    def get_groups(self, group_ids: List[str]) -> List[Group]:
        with self._data_lock:
            return [
                group_from_doc(copy.deepcopy(self.groups[gid]))
                for gid in unique_ids(group_ids)
                if gid in self.groups
            ]

    def list_groups(self) -> List[Group]:
        with self._data_lock:
            docs = sorted(self.groups.values(), key=lambda d: d["created_at"])
            return [group_from_doc(copy.deepcopy(d)) for d in docs]

    def set_group_roles(self, group_id: str, role_ids: List[str]) -> Optional[Group]:
        with self._data_lock:
            doc = self.groups.get(group_id)
            if doc is None:
                return None
            doc["roles"] = unique_ids(role_ids)
            doc["updated_at"] = now_ms()
            self._persist_state()
            return group_from_doc(copy.deepcopy(doc))

    def delete_group(self, group_id: str) -> Optional[Group]:
        with self._data_lock:
            doc = self.groups.pop(group_id, None)
            if doc is None:
                return None
            for user_doc in self.users.values():
                if group_id in user_doc.get("groups", []):
                    user_doc["groups"] = [g for g in user_doc["groups"] if g != group_id]
            self._persist_state()
            return group_from_doc(doc)

    # permissions
    def create_permission(
        self, name: str, resource: str, method: str, descrip: str = ""
    ) -> Permission:
        with self._data_lock:
            if any(doc["name"] == name for doc in self.permissions.values()):
                raise ConstraintViolation(
                    "permission name already exists", {"field": "name"}
                )
            permission = Permission(
                id=new_id(), name=name, resource=resource, method=method, descrip=descrip
            )
            self.permissions[permission.id] = permission_to_doc(permission)
            self._persist_state()
            return copy.deepcopy(permission)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            doc = self.permissions.get(permission_id)
            return permission_from_doc(copy.deepcopy(doc)) if doc else None

    def get_permissions(self, permission_ids: List[str]) -> List[Permission]:
        with self._data_lock:
            return [
                permission_from_doc(copy.deepcopy(self.permissions[pid]))
                for pid in unique_ids(permission_ids)
                if pid in self.permissions
            ]

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            docs = sorted(self.permissions.values(), key=lambda d: d["created_at"])
            return [permission_from_doc(copy.deepcopy(d)) for d in docs]

    def delete_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            doc = self.permissions.pop(permission_id, None)
            if doc is None:
                return None
            for role_doc in self.roles.values():
                if permission_id in role_doc.get("permissions", []):
                    role_doc["permissions"] = [
                        p for p in role_doc["permissions"] if p != permission_id
                    ]
            self._persist_state()
            return permission_from_doc(doc)

    # snapshot
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": list(self.users.values()),
            "roles": list(self.roles.values()),
            "groups": list(self.groups.values()),
            "permissions": list(self.permissions.values()),
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {d["id"]: d for d in data.get("users", [])}
        self.roles = {d["id"]: d for d in data.get("roles", [])}
        self.groups = {d["id"]: d for d in data.get("groups", [])}
        self.permissions = {d["id"]: d for d in data.get("permissions", [])}
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            roles=len(self.roles),
            groups=len(self.groups),
            permissions=len(self.permissions),
        )
        return True
