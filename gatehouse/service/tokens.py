from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import TokenNotValidError

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenMalformedError(TokenNotValidError):
    """Token is not a decodable three-segment HS256 token."""


class InvalidSignatureError(TokenNotValidError):
    """Token signature does not verify against the signing secret."""


class TokenExpiredError(TokenNotValidError):
    """Token was valid once but its expiry has passed."""


@dataclass(frozen=True)
class Claims:
    user_id: str
    email: str
    session_id: str
    issued_at: int
    expires_at: int
    jti: str


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    expires_at: int
    token_type: str = "bearer"


def looks_like_access_token(token: str) -> bool:
    """Signed access tokens are dotted; refresh tokens are urlsafe base64 without dots."""
    return isinstance(token, str) and token.count(".") == 2


class TokenIssuer:
    """Issues HS256 access tokens and opaque refresh tokens.

    Validation is pure: signature, issuer, audience and expiry are checked
    against the secret and clock given at construction, never against storage.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 3600,
        refresh_token_bytes: int = 48,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_token_bytes = refresh_token_bytes
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def issue(
        self, user_id: str, email: str, *, session_id: Optional[str] = None
    ) -> IssuedTokens:
        session_id = session_id or str(uuid.uuid4())
        access_token, expires_at = self.issue_access_token(user_id, email, session_id)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=self.new_refresh_token(),
            session_id=session_id,
            expires_in=self.access_ttl_seconds,
            expires_at=expires_at,
        )

    def issue_access_token(
        self, user_id: str, email: str, session_id: str
    ) -> tuple[str, int]:
        now = int(self._clock())
        expires_at = now + self.access_ttl_seconds
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email.lower(),
            "sid": session_id,
            "iat": now,
            "exp": expires_at,
            "jti": str(uuid.uuid4()),
        }
        return self._encode(payload), expires_at

    def new_refresh_token(self) -> str:
        return secrets.token_urlsafe(self.refresh_token_bytes)

    def validate(self, token: str, *, verify_expiry: bool = True) -> Claims:
        payload = self._decode(token)
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenMalformedError("token has no expiry")
        if verify_expiry and exp <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired", detail={"expired_at": int(exp)})
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidSignatureError("token issued for another audience")
        try:
            return Claims(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                session_id=str(payload["sid"]),
                issued_at=int(payload["iat"]),
                expires_at=int(exp),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError("token claims incomplete") from exc

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not looks_like_access_token(token):
            raise TokenMalformedError("token is not a signed access token")
        if not token.isascii():
            raise TokenMalformedError("token contains non-ascii characters")
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error) as exc:
            raise TokenMalformedError("token header unreadable") from exc
        # Reject anything but HS256 to rule out algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenMalformedError("unsupported token algorithm")
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise InvalidSignatureError("token signature mismatch")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            raise TokenMalformedError("token payload unreadable") from exc
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload is not an object")
        return payload


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)
