from __future__ import annotations

import re
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from gatehouse.logging import get_correlation_id
from gatehouse.service.errors import ErrorCode
from gatehouse.service.tokens import IssuedTokens
from gatehouse.storage.common import normalize_email
from gatehouse.storage.models import Group, Permission, Role, User

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# requests


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)
    surname: Optional[str] = Field(default=None, max_length=128)
    lastname: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # missing, oversized and wrong credentials all answer the same 403
    email: Optional[str] = None
    password: Optional[str] = None


class UserDataRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)


class TokenRenewRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class TokenRejectRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    surname: Optional[str] = Field(default=None, max_length=128)
    lastname: Optional[str] = Field(default=None, max_length=128)


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    descrip: str = Field(default="", max_length=1024)


class GroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    descrip: str = Field(default="", max_length=1024)


class PermissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    resource: str = Field(..., min_length=1, max_length=64)
    method: str = Field(..., min_length=1, max_length=64)
    descrip: str = Field(default="", max_length=1024)


class RoleIdsRequest(BaseModel):
    roles: List[str] = Field(default_factory=list, max_length=1000)


class PermissionIdsRequest(BaseModel):
    permissions: List[str] = Field(default_factory=list, max_length=1000)


class GroupIdsRequest(BaseModel):
    groups: List[str] = Field(default_factory=list, max_length=1000)


class MemberIdsRequest(BaseModel):
    users: List[str] = Field(default_factory=list, max_length=1000)


# output projections; a password digest or token list never appears here


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: int

    @classmethod
    def from_issued(cls, tokens: IssuedTokens) -> "TokenResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            expires_at=tokens.expires_at,
        )


class UserView(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    surname: Optional[str] = None
    lastname: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    email_verified: bool = False
    logged_in: bool = False
    last_login: Optional[int] = None
    last_logout: Optional[int] = None
    created_at: int
    updated_at: int

    @classmethod
    def from_user(cls, user: User) -> "UserView":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            surname=user.surname,
            lastname=user.lastname,
            roles=list(user.roles),
            groups=list(user.groups),
            email_verified=user.email_verified,
            logged_in=user.logged_in,
            last_login=user.last_login,
            last_logout=user.last_logout,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserListResponse(BaseModel):
    items: List[UserView]


class PermissionView(BaseModel):
    id: str
    name: str
    resource: str
    method: str
    descrip: str = ""
    created_at: int
    updated_at: int

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionView":
        return cls(
            id=permission.id,
            name=permission.name,
            resource=permission.resource,
            method=permission.method,
            descrip=permission.descrip,
            created_at=permission.created_at,
            updated_at=permission.updated_at,
        )


class RoleView(BaseModel):
    id: str
    name: str
    descrip: str = ""
    permissions: List[str] = Field(default_factory=list)
    created_at: int
    updated_at: int

    @classmethod
    def from_role(cls, role: Role) -> "RoleView":
        return cls(
            id=role.id,
            name=role.name,
            descrip=role.descrip,
            permissions=list(role.permissions),
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class GroupView(BaseModel):
    id: str
    name: str
    descrip: str = ""
    roles: List[str] = Field(default_factory=list)
    created_at: int
    updated_at: int

    @classmethod
    def from_group(cls, group: Group) -> "GroupView":
        return cls(
            id=group.id,
            name=group.name,
            descrip=group.descrip,
            roles=list(group.roles),
            created_at=group.created_at,
            updated_at=group.updated_at,
        )


class ListResponse(BaseModel):
    items: List[Any]
