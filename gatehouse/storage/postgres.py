from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

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

_COLLECTIONS = ("app_user", "app_role", "app_group", "app_permission")


class PostgresStore:
    """Document store on Postgres: one JSONB document per row.

    Read-modify-write operations lock the target row (``FOR UPDATE``) inside a
    single transaction, which keeps each call atomic per document.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for table in _COLLECTIONS:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id UUID PRIMARY KEY,
                        doc JSONB NOT NULL
                    )
                    """
                )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_idx ON app_user ((doc->>'email'))"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS app_user_tokens_idx ON app_user USING GIN ((doc->'tokens') jsonb_path_ops)"
            )
            for table in ("app_role", "app_group", "app_permission"):
                conn.execute(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {table}_name_idx ON {table} ((doc->>'name'))"
                )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    # generic document helpers
    def _insert(self, table: str, doc: Dict[str, Any], field: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {table} (id, doc) VALUES (%s, %s)",
                    (doc["id"], Jsonb(doc)),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{field} already exists", {"field": field}
            ) from exc

    def _get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT doc FROM {table} WHERE id = %s", (doc_id,)
            ).fetchone()
        return row["doc"] if row else None

    def _get_many(self, table: str, ids: List[str]) -> List[Dict[str, Any]]:
        ordered = unique_ids(ids)
        if not ordered:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT doc FROM {table} WHERE id = ANY(%s::uuid[])", (ordered,)
            ).fetchall()
        by_id = {row["doc"]["id"]: row["doc"] for row in rows}
        return [by_id[i] for i in ordered if i in by_id]

    def _list(self, table: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = f"SELECT doc FROM {table} ORDER BY (doc->>'created_at')::bigint"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT %s"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row["doc"] for row in rows]

    def _mutate(
        self,
        table: str,
        doc_id: str,
        apply: Callable[[Dict[str, Any]], Any],
    ) -> tuple[Optional[Dict[str, Any]], Any]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    f"SELECT doc FROM {table} WHERE id = %s FOR UPDATE", (doc_id,)
                ).fetchone()
                if not row:
                    return None, None
                doc = row["doc"]
                result = apply(doc)
                conn.execute(
                    f"UPDATE {table} SET doc = %s WHERE id = %s", (Jsonb(doc), doc_id)
                )
        return doc, result

    def _delete(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                f"DELETE FROM {table} WHERE id = %s RETURNING doc", (doc_id,)
            ).fetchone()
        return row["doc"] if row else None

    def _detach(self, conn, table: str, field: str, ref_id: str) -> None:
        conn.execute(
            f"""
            UPDATE {table}
            SET doc = jsonb_set(doc, %s, (doc->%s) - %s)
            WHERE doc->%s ? %s
            """,
            ([field], field, ref_id, field, ref_id),
        )

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
        user = User(
            id=new_id(),
            email=normalize_email(email),
            password_digest=password_digest,
            name=name,
            surname=surname,
            lastname=lastname,
            roles=unique_ids(roles or []),
        )
        self._insert("app_user", user_to_doc(user), "email")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self._get("app_user", user_id)
        return user_from_doc(doc) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM app_user WHERE doc->>'email' = %s",
                (normalize_email(email),),
            ).fetchone()
        return user_from_doc(row["doc"]) if row else None

    def get_user_by_token(self, token: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM app_user WHERE doc->'tokens' @> %s",
                (Jsonb([{"token": token}]),),
            ).fetchone()
        return user_from_doc(row["doc"]) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        return [user_from_doc(doc) for doc in self._list("app_user", limit)]

    def list_users_in_group(self, group_id: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT doc FROM app_user WHERE doc->'groups' ? %s", (group_id,)
            ).fetchall()
        return [user_from_doc(row["doc"]) for row in rows]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        def _apply(doc: Dict[str, Any]) -> None:
            doc.update(fields)
            doc["updated_at"] = now_ms()

        doc, _ = self._mutate("app_user", user_id, _apply)
        return user_from_doc(doc) if doc else None

    def delete_user(self, user_id: str) -> Optional[User]:
        doc = self._delete("app_user", user_id)
        return user_from_doc(doc) if doc else None

    def push_user_token(
        self, user_id: str, entry: TokenEntry, *, max_entries: int = 0
    ) -> Optional[User]:
        def _apply(doc: Dict[str, Any]) -> None:
            tokens = list(doc.get("tokens") or [])
            tokens.append(
                {"token": entry.token, "session_id": entry.session_id, "issued_at": entry.issued_at}
            )
            if max_entries and len(tokens) > max_entries:
                tokens = tokens[-max_entries:]
            doc["tokens"] = tokens
            doc["logged_in"] = True
            doc["last_login"] = entry.issued_at

        doc, _ = self._mutate("app_user", user_id, _apply)
        return user_from_doc(doc) if doc else None

    def replace_user_token(
        self, user_id: str, old_token: str, entry: TokenEntry
    ) -> bool:
        def _apply(doc: Dict[str, Any]) -> bool:
            for index, existing in enumerate(doc.get("tokens") or []):
                if existing["token"] == old_token:
                    doc["tokens"][index] = {
                        "token": entry.token,
                        "session_id": entry.session_id,
                        "issued_at": entry.issued_at,
                    }
                    return True
            return False

        _, replaced = self._mutate("app_user", user_id, _apply)
        return bool(replaced)

    def pull_user_session(self, user_id: str, session_id: str) -> Optional[int]:
        def _apply(doc: Dict[str, Any]) -> int:
            removed = pull_tokens(doc, lambda e: e["session_id"] == session_id)
            doc["last_logout"] = now_ms()
            return removed

        doc, removed = self._mutate("app_user", user_id, _apply)
        return removed if doc else None

    def pull_token(self, token: str) -> int:
        holder = self.get_user_by_token(token)
        if not holder:
            return 0

        def _apply(doc: Dict[str, Any]) -> int:
            removed = pull_tokens(doc, lambda e: e["token"] == token)
            if removed:
                doc["last_logout"] = now_ms()
            return removed

        _, removed = self._mutate("app_user", holder.id, _apply)
        return removed or 0

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> Optional[User]:
        return self.update_user(user_id, {"roles": unique_ids(role_ids)})

    def set_user_groups(self, user_id: str, group_ids: List[str]) -> Optional[User]:
        return self.update_user(user_id, {"groups": unique_ids(group_ids)})

    # roles
    def create_role(self, name: str, descrip: str = "") -> Role:
        role = Role(id=new_id(), name=name, descrip=descrip)
        self._insert("app_role", role_to_doc(role), "role name")
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        doc = self._get("app_role", role_id)
        return role_from_doc(doc) if doc else None

    def get_roles(self, role_ids: List[str]) -> List[Role]:
        return [role_from_doc(doc) for doc in self._get_many("app_role", role_ids)]

    def list_roles(self) -> List[Role]:
        return [role_from_doc(doc) for doc in self._list("app_role")]

    def set_role_permissions(
        self, role_id: str, permission_ids: List[str]
    ) -> Optional[Role]:
        ids = unique_ids(permission_ids)

        def _apply(doc: Dict[str, Any]) -> None:
            doc["permissions"] = ids
            doc["updated_at"] = now_ms()

        doc, _ = self._mutate("app_role", role_id, _apply)
        return role_from_doc(doc) if doc else None

    def delete_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM app_role WHERE id = %s RETURNING doc", (role_id,)
                ).fetchone()
                if not row:
                    return None
                self._detach(conn, "app_user", "roles", role_id)
                self._detach(conn, "app_group", "roles", role_id)
        return role_from_doc(row["doc"])

    # groups
    def create_group(self, name: str, descrip: str = "") -> Group:
        group = Group(id=new_id(), name=name, descrip=descrip)
        self._insert("app_group", group_to_doc(group), "group name")
        return group

    def get_group(self, group_id: str) -> Optional[Group]:
        doc = self._get("app_group", group_id)
        return group_from_doc(doc) if doc else None

    def get_groups(self, group_ids: List[str]) -> List[Group]:
        return [group_from_doc(doc) for doc in self._get_many("app_group", group_ids)]

    def list_groups(self) -> List[Group]:
        return [group_from_doc(doc) for doc in self._list("app_group")]

    def set_group_roles(self, group_id: str, role_ids: List[str]) -> Optional[Group]:
        ids = unique_ids(role_ids)

        def _apply(doc: Dict[str, Any]) -> None:
            doc["roles"] = ids
            doc["updated_at"] = now_ms()

        doc, _ = self._mutate("app_group", group_id, _apply)
        return group_from_doc(doc) if doc else None

    def delete_group(self, group_id: str) -> Optional[Group]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM app_group WHERE id = %s RETURNING doc", (group_id,)
                ).fetchone()
                if not row:
                    return None
                self._detach(conn, "app_user", "groups", group_id)
        return group_from_doc(row["doc"])

    # permissions
    def create_permission(
        self, name: str, resource: str, method: str, descrip: str = ""
    ) -> Permission:
        permission = Permission(
            id=new_id(), name=name, resource=resource, method=method, descrip=descrip
        )
        self._insert("app_permission", permission_to_doc(permission), "permission name")
        return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        doc = self._get("app_permission", permission_id)
        return permission_from_doc(doc) if doc else None

    def get_permissions(self, permission_ids: List[str]) -> List[Permission]:
        return [
            permission_from_doc(doc)
            for doc in self._get_many("app_permission", permission_ids)
        ]

    def list_permissions(self) -> List[Permission]:
        return [permission_from_doc(doc) for doc in self._list("app_permission")]

    def delete_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM app_permission WHERE id = %s RETURNING doc",
                    (permission_id,),
                ).fetchone()
                if not row:
                    return None
                self._detach(conn, "app_role", "permissions", permission_id)
        return permission_from_doc(row["doc"])
