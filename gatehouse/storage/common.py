"""Document conversion shared between the memory and postgres stores.

Both backends keep every entity as a JSON document; these helpers are the
single place where dataclasses turn into documents and back.
"""

from __future__ import annotations

import unicodedata
from dataclasses import asdict
from typing import Any, Dict, Iterable, List

from gatehouse.storage.models import Group, Permission, Role, TokenEntry, User


_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_email(email: str) -> str:
    """Canonical form of an email, applied at every read and write.

    Zero-width and bidi override characters are dropped, the rest is NFKC
    normalized, trimmed and lowercased.
    """
    cleaned = "".join(
        c for c in (email or "") if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


def unique_ids(ids: Iterable[str]) -> List[str]:
    """Drop duplicate references while keeping first-seen order."""
    seen: set[str] = set()
    ordered: List[str] = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def user_to_doc(user: User) -> Dict[str, Any]:
    return asdict(user)


def user_from_doc(doc: Dict[str, Any]) -> User:
    data = dict(doc)
    data["tokens"] = [TokenEntry(**entry) for entry in data.get("tokens") or []]
    data["roles"] = list(data.get("roles") or [])
    data["groups"] = list(data.get("groups") or [])
    return User(**data)


def role_to_doc(role: Role) -> Dict[str, Any]:
    return asdict(role)


def role_from_doc(doc: Dict[str, Any]) -> Role:
    data = dict(doc)
    data["permissions"] = list(data.get("permissions") or [])
    return Role(**data)


def group_to_doc(group: Group) -> Dict[str, Any]:
    return asdict(group)


def group_from_doc(doc: Dict[str, Any]) -> Group:
    data = dict(doc)
    data["roles"] = list(data.get("roles") or [])
    return Group(**data)


def permission_to_doc(permission: Permission) -> Dict[str, Any]:
    return asdict(permission)


def permission_from_doc(doc: Dict[str, Any]) -> Permission:
    return Permission(**doc)


def pull_tokens(doc: Dict[str, Any], predicate) -> int:
    """Remove token entries matching ``predicate`` from a user document in place.

    Returns the number of entries removed. ``logged_in`` follows whether any
    live entry remains.
    """
    tokens = doc.get("tokens") or []
    kept = [entry for entry in tokens if not predicate(entry)]
    removed = len(tokens) - len(kept)
    doc["tokens"] = kept
    doc["logged_in"] = bool(kept)
    return removed


__all__ = [
    "normalize_email",
    "unique_ids",
    "user_to_doc",
    "user_from_doc",
    "role_to_doc",
    "role_from_doc",
    "group_to_doc",
    "group_from_doc",
    "permission_to_doc",
    "permission_from_doc",
    "pull_tokens",
]
