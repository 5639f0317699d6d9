from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class TokenEntry:
    """A live refresh token held on a user record, one per session."""

    token: str
    session_id: str
    issued_at: int = field(default_factory=now_ms)


@dataclass
class User:
    id: str
    email: str
    password_digest: str
    name: Optional[str] = None
    surname: Optional[str] = None
    lastname: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)
    tokens: List[TokenEntry] = field(default_factory=list)
    email_verified: bool = False
    logged_in: bool = False
    last_login: Optional[int] = None
    last_logout: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def has_token(self, token: str) -> bool:
        return any(entry.token == token for entry in self.tokens)


@dataclass
class Permission:
    """Atomic grant of ``method`` on ``resource``."""

    id: str
    name: str
    resource: str
    method: str
    descrip: str = ""
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def matches(self, resource: str, method: str) -> bool:
        return self.resource == resource and self.method == method


@dataclass
class Role:
    id: str
    name: str
    descrip: str = ""
    permissions: List[str] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class Group:
    id: str
    name: str
    descrip: str = ""
    roles: List[str] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
