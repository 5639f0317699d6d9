from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Response

from gatehouse.api.schemas import (
    Envelope,
    GroupCreateRequest,
    GroupIdsRequest,
    GroupView,
    ListResponse,
    LoginRequest,
    MemberIdsRequest,
    PermissionCreateRequest,
    PermissionIdsRequest,
    PermissionView,
    RegisterRequest,
    RoleCreateRequest,
    RoleIdsRequest,
    RoleView,
    TokenRejectRequest,
    TokenRenewRequest,
    TokenResponse,
    UserDataRequest,
    UserListResponse,
    UserUpdateRequest,
    UserView,
)
from gatehouse.service.auth import AuthContext
from gatehouse.service.runtime import get_runtime

router = APIRouter()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


async def get_principal_allow_expired(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Correctly signed bearer token, expired or not."""
    return get_runtime().auth.authenticate(authorization, allow_expired=True)


def require(route_key: str) -> Callable:
    """Dependency admitting callers whose roles grant the permission of ``route_key``."""

    async def _guard(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        get_runtime().authz.require(principal.user_id, route_key)
        return principal

    return _guard


# auth


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        surname=body.surname,
        lastname=body.lastname,
    )
    return Envelope(status="ok", data=UserView.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access and refresh token pair.

    Unknown accounts and wrong passwords both answer 403 with the same message.
    """
    runtime = get_runtime()
    tokens = runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=TokenResponse.from_issued(tokens))


@router.post("/auth/userData", response_model=Envelope, tags=["auth"])
async def user_data(body: UserDataRequest):
    runtime = get_runtime()
    user = runtime.auth.get_user_data(body.email)
    return Envelope(status="ok", data=UserView.from_user(user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    removed = runtime.auth.logout(principal)
    return Envelope(status="ok", data={"message": "logged out", "removed": removed})


@router.post("/auth/logout/{token}", response_model=Envelope, tags=["auth"])
async def logout_by_token(
    token: str = Path(..., max_length=4096),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    removed = runtime.auth.logout_by_token(token, actor=principal)
    return Envelope(status="ok", data={"message": "logged out", "removed": removed})


@router.post("/auth/token", response_model=Envelope, tags=["auth"])
async def renew_token(
    body: TokenRenewRequest,
    principal: AuthContext = Depends(get_principal_allow_expired),
):
    """Issue a fresh access token for a live refresh token.

    The bearer token may be expired but must be correctly signed and belong
    to the same user as ``email``.
    """
    runtime = get_runtime()
    tokens = runtime.auth.renew(body.email, body.refresh_token, actor=principal)
    return Envelope(status="ok", data=TokenResponse.from_issued(tokens))


@router.post("/auth/token/reject", status_code=204, tags=["auth"])
async def reject_token(
    body: TokenRejectRequest,
    principal: AuthContext = Depends(get_principal_allow_expired),
):
    runtime = get_runtime()
    runtime.auth.reject(body.refresh_token)
    return Response(status_code=204)


# users


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require("users.query")),
):
    runtime = get_runtime()
    users = runtime.directory.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserView.from_user(u) for u in users])
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, principal: AuthContext = Depends(require("users.queryById"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=UserView.from_user(runtime.directory.get_user(user_id)))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UserUpdateRequest,
    principal: AuthContext = Depends(require("users.update")),
):
    runtime = get_runtime()
    user = runtime.directory.update_user(user_id, body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=UserView.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, principal: AuthContext = Depends(require("users.delete"))):
    runtime = get_runtime()
    user = runtime.directory.delete_user(user_id)
    return Envelope(status="ok", data=UserView.from_user(user))


@router.post("/users/{user_id}/setGroups", response_model=Envelope, tags=["users"])
async def set_user_groups(
    user_id: str,
    body: GroupIdsRequest,
    principal: AuthContext = Depends(require("users.update")),
):
    runtime = get_runtime()
    user = runtime.directory.set_user_groups(user_id, body.groups)
    return Envelope(status="ok", data=UserView.from_user(user))


# roles


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: AuthContext = Depends(require("roles.query"))):
    runtime = get_runtime()
    roles = runtime.directory.list_roles()
    return Envelope(status="ok", data=ListResponse(items=[RoleView.from_role(r) for r in roles]))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(role_id: str, principal: AuthContext = Depends(require("roles.queryById"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=RoleView.from_role(runtime.directory.get_role(role_id)))


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest, principal: AuthContext = Depends(require("roles.create"))
):
    runtime = get_runtime()
    role = runtime.directory.create_role(body.name, body.descrip)
    return Envelope(status="ok", data=RoleView.from_role(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(role_id: str, principal: AuthContext = Depends(require("roles.delete"))):
    runtime = get_runtime()
    role = runtime.directory.delete_role(role_id)
    return Envelope(status="ok", data=RoleView.from_role(role))


@router.post("/roles/addRolesToUser/{user_id}", response_model=Envelope, tags=["roles"])
async def set_user_roles(
    user_id: str,
    body: RoleIdsRequest,
    principal: AuthContext = Depends(require("roles.update")),
):
    runtime = get_runtime()
    user = runtime.authz.set_roles("user", user_id, body.roles)
    return Envelope(status="ok", data=UserView.from_user(user))


@router.post("/roles/addRolesToGroup/{group_id}", response_model=Envelope, tags=["roles"])
async def set_group_roles(
    group_id: str,
    body: RoleIdsRequest,
    principal: AuthContext = Depends(require("roles.update")),
):
    runtime = get_runtime()
    group = runtime.authz.set_roles("group", group_id, body.roles)
    return Envelope(status="ok", data=GroupView.from_group(group))


@router.post("/roles/{role_id}/setPermissions", response_model=Envelope, tags=["roles"])
async def set_role_permissions(
    role_id: str,
    body: PermissionIdsRequest,
    principal: AuthContext = Depends(require("roles.update")),
):
    runtime = get_runtime()
    role = runtime.authz.set_permissions(role_id, body.permissions)
    return Envelope(status="ok", data=RoleView.from_role(role))


# groups


@router.get("/groups", response_model=Envelope, tags=["groups"])
async def list_groups(principal: AuthContext = Depends(require("groups.query"))):
    runtime = get_runtime()
    groups = runtime.directory.list_groups()
    return Envelope(
        status="ok", data=ListResponse(items=[GroupView.from_group(g) for g in groups])
    )


@router.get("/groups/{group_id}", response_model=Envelope, tags=["groups"])
async def get_group(group_id: str, principal: AuthContext = Depends(require("groups.queryById"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=GroupView.from_group(runtime.directory.get_group(group_id)))


@router.post("/groups", response_model=Envelope, status_code=201, tags=["groups"])
async def create_group(
    body: GroupCreateRequest, principal: AuthContext = Depends(require("groups.create"))
):
    runtime = get_runtime()
    group = runtime.directory.create_group(body.name, body.descrip)
    return Envelope(status="ok", data=GroupView.from_group(group))


@router.delete("/groups/{group_id}", response_model=Envelope, tags=["groups"])
async def delete_group(group_id: str, principal: AuthContext = Depends(require("groups.delete"))):
    runtime = get_runtime()
    group = runtime.directory.delete_group(group_id)
    return Envelope(status="ok", data=GroupView.from_group(group))


@router.get("/groups/{group_id}/members", response_model=Envelope, tags=["groups"])
async def list_group_members(
    group_id: str, principal: AuthContext = Depends(require("groups.queryById"))
):
    runtime = get_runtime()
    members = runtime.directory.group_members(group_id)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserView.from_user(u) for u in members])
    )


@router.post("/groups/{group_id}/members", response_model=Envelope, tags=["groups"])
async def set_group_members(
    group_id: str,
    body: MemberIdsRequest,
    principal: AuthContext = Depends(require("groups.update")),
):
    runtime = get_runtime()
    members = runtime.directory.set_group_members(group_id, body.users)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserView.from_user(u) for u in members])
    )


# permissions


@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(principal: AuthContext = Depends(require("permissions.query"))):
    runtime = get_runtime()
    permissions = runtime.directory.list_permissions()
    return Envelope(
        status="ok",
        data=ListResponse(items=[PermissionView.from_permission(p) for p in permissions]),
    )


@router.get("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def get_permission(
    permission_id: str, principal: AuthContext = Depends(require("permissions.query"))
):
    runtime = get_runtime()
    permission = runtime.directory.get_permission(permission_id)
    return Envelope(status="ok", data=PermissionView.from_permission(permission))


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
async def create_permission(
    body: PermissionCreateRequest,
    principal: AuthContext = Depends(require("permissions.create")),
):
    runtime = get_runtime()
    permission = runtime.directory.create_permission(
        body.name, body.resource, body.method, body.descrip
    )
    return Envelope(status="ok", data=PermissionView.from_permission(permission))


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def delete_permission(
    permission_id: str,
    principal: AuthContext = Depends(require("permissions.delete")),
):
    runtime = get_runtime()
    permission = runtime.directory.delete_permission(permission_id)
    return Envelope(status="ok", data=PermissionView.from_permission(permission))
