from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Protocol

from gatehouse.config import RefreshPolicy, Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    TokenNotValidError,
    ValidationError,
)
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import (
    IssuedTokens,
    TokenIssuer,
    TokenMalformedError,
    looks_like_access_token,
)
from gatehouse.storage.common import normalize_email
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import User

LOGIN_FAILED_MESSAGE = "Username or password wrong!"
CREDENTIALS_REQUIRED_MESSAGE = "Username and password are required!"
RENEW_FAILED_MESSAGE = "Username or refresh token wrong!"
# longer inputs are refused before hashing
MAX_PASSWORD_LENGTH = 1024

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_digest: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        lastname: Optional[str] = None,
        roles: Optional[list] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_token(self, token: str) -> Optional[User]: ...

    def update_user(self, user_id: str, fields: dict) -> Optional[User]: ...


class PermissionCheck(Protocol):
    def is_permitted(self, user_id: str, resource: str, method: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: str
    expires_at: int


class AuthService:
    """Credential checks and the refresh-token lifecycle.

    Access tokens are never stored: once issued they stay valid until they
    expire, whatever happens to the session they were issued for. Logout and
    reject only remove refresh tokens, which ends the ability to renew.
    """

    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        sessions: SessionRegistry,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        permissions: Optional[PermissionCheck] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.sessions = sessions
        self.settings = settings
        self.hasher = hasher or PasswordHasher()
        self.permissions = permissions
        self.logger = logger
        self._dummy_digest: Optional[str] = None

    def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> User:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration disabled")
        email = normalize_email(email)
        if not email or not password:
            raise ValidationError(CREDENTIALS_REQUIRED_MESSAGE)
        digest = self.hasher.hash(password)
        try:
            user = self.store.create_user(
                email, digest, name=name, surname=surname, lastname=lastname
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", email=email)
            raise ValidationError("email already exists", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    def login(self, email: Optional[str], password: Optional[str]) -> IssuedTokens:
        if not email or not password:
            raise ForbiddenError(CREDENTIALS_REQUIRED_MESSAGE)
        email = normalize_email(email)
        if len(password) > MAX_PASSWORD_LENGTH:
            self.logger.info("login_failed", reason="oversized_password")
            raise ForbiddenError(LOGIN_FAILED_MESSAGE)
        user = self.store.get_user_by_email(email)
        if not user:
            # equal verify cost whether or not the account exists
            self.hasher.verify(password, self._timing_digest())
            self.logger.info("login_failed", reason="unknown_account")
            raise ForbiddenError(LOGIN_FAILED_MESSAGE)
        if not self.hasher.verify(password, user.password_digest):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise ForbiddenError(LOGIN_FAILED_MESSAGE)
        if self.hasher.needs_rehash(user.password_digest):
            self.store.update_user(user.id, {"password_digest": self.hasher.hash(password)})
            self.logger.info("password_rehashed", user_id=user.id)
        tokens = self.issuer.issue(user.id, user.email)
        if not self.sessions.add(user.id, tokens.refresh_token, tokens.session_id):
            # user deleted between lookup and token push
            raise ForbiddenError(LOGIN_FAILED_MESSAGE)
        self.logger.info("login_succeeded", user_id=user.id, session_id=tokens.session_id)
        return tokens

    def renew(
        self,
        email: Optional[str],
        refresh_token: Optional[str],
        *,
        actor: Optional[AuthContext] = None,
    ) -> IssuedTokens:
        if not email or not refresh_token:
            raise ForbiddenError(RENEW_FAILED_MESSAGE)
        user = self.store.get_user_by_email(normalize_email(email))
        entry = None
        if user:
            entry = next((e for e in user.tokens if e.token == refresh_token), None)
        if not user or entry is None or (actor and actor.user_id != user.id):
            self.logger.info("refresh_token_rejected", reason="not_live")
            raise ForbiddenError(RENEW_FAILED_MESSAGE)
        access_token, expires_at = self.issuer.issue_access_token(
            user.id, user.email, entry.session_id
        )
        next_refresh = refresh_token
        if self.settings.refresh_policy == RefreshPolicy.ROTATE:
            next_refresh = self.issuer.new_refresh_token()
            if not self.sessions.rotate(user.id, refresh_token, next_refresh, entry.session_id):
                # lost a race with logout/reject or a concurrent renew
                self.logger.info("refresh_token_rejected", reason="rotated_away", user_id=user.id)
                raise ForbiddenError(RENEW_FAILED_MESSAGE)
        self.logger.info(
            "token_renewed",
            user_id=user.id,
            session_id=entry.session_id,
            rotated=next_refresh != refresh_token,
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=next_refresh,
            session_id=entry.session_id,
            expires_in=self.issuer.access_ttl_seconds,
            expires_at=expires_at,
        )

    def logout(self, ctx: AuthContext) -> int:
        """End the session the presented access token belongs to."""
        removed = self.sessions.remove_session(ctx.user_id, ctx.session_id)
        if removed is None:
            raise NotFoundError("user not found")
        return removed

    def logout_by_token(self, token: str, *, actor: AuthContext) -> int:
        """End the session named by an access token or a refresh token.

        Ending a session of another user requires the ``auth/logoutByToken``
        permission. A refresh token that no user holds is ``NotFound``; a
        known session that is already gone is a no-op.
        """
        if not token:
            raise TokenNotValidError("token required")
        if looks_like_access_token(token):
            claims = self.issuer.validate(token, verify_expiry=False)
            self._check_may_act_for(actor, claims.user_id)
            removed = self.sessions.remove_session(claims.user_id, claims.session_id)
            if removed is None:
                raise NotFoundError("user not found")
            return removed
        if not _is_opaque_token(token):
            raise TokenMalformedError("token is neither an access nor a refresh token")
        holder = self.sessions.holder(token)
        if not holder:
            raise NotFoundError("token not found")
        self._check_may_act_for(actor, holder.id)
        return self.sessions.remove(token)

    def reject(self, refresh_token: Optional[str]) -> int:
        """Revoke a refresh token wherever it lives. Unknown tokens are a no-op."""
        if not refresh_token:
            raise ForbiddenError("refresh token required")
        removed = self.sessions.remove(refresh_token)
        self.logger.info("refresh_token_revoked", removed=removed)
        return removed

    def get_user_data(self, email: Optional[str]) -> User:
        if not email:
            raise ForbiddenError("email required")
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise NotFoundError("user not found")
        return user

    def authenticate(
        self, authorization: Optional[str], *, allow_expired: bool = False
    ) -> AuthContext:
        """Resolve a bearer header to an identity without touching storage.

        ``allow_expired`` accepts a correctly signed token past its expiry;
        renew and reject use it so an expired session can still be recovered
        or shut down.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("bearer token required")
        try:
            claims = self.issuer.validate(token, verify_expiry=not allow_expired)
        except TokenNotValidError as exc:
            self.logger.info("access_token_rejected", reason=type(exc).__name__)
            raise AuthenticationError("invalid access token") from exc
        return AuthContext(
            user_id=claims.user_id,
            email=claims.email,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
        )

    def _check_may_act_for(self, actor: AuthContext, target_user_id: str) -> None:
        if actor.user_id == target_user_id:
            return
        if self.permissions and self.permissions.is_permitted(
            actor.user_id, "auth", "logoutByToken"
        ):
            return
        self.logger.info("logout_by_token_denied", actor=actor.user_id)
        raise ForbiddenError("not allowed to end another user's session")

    def _timing_digest(self) -> str:
        if self._dummy_digest is None:
            self._dummy_digest = self.hasher.hash(secrets.token_urlsafe(16))
        return self._dummy_digest

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None


def _is_opaque_token(token: str) -> bool:
    allowed = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")
    return 16 <= len(token) <= 512 and all(ch in allowed for ch in token)


__all__ = [
    "AuthContext",
    "AuthService",
    "LOGIN_FAILED_MESSAGE",
    "CREDENTIALS_REQUIRED_MESSAGE",
    "RENEW_FAILED_MESSAGE",
]
