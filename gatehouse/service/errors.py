from __future__ import annotations

from enum import Enum
from typing import Optional

from gatehouse.storage.ids import is_valid_id


class ErrorCode(str, Enum):
    """Closed set of error tags surfaced to callers."""

    ID_NOT_VALID = "id_not_valid"
    NOT_FOUND = "not_found"
    TOKEN_NOT_VALID = "token_not_valid"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION_ERROR = "validation_error"
    SERVER_ERROR = "server_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins one ``ErrorCode`` and the HTTP status the boundary
    answers with:
    - id_not_valid (400)
    - token_not_valid (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (422)
    - server_error (500)
    """

    status_code: int = 500
    error_code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class IdNotValidError(ServiceError):
    """Identifier does not have the shape of a store id (400)."""
    status_code = 400
    error_code = ErrorCode.ID_NOT_VALID


class TokenNotValidError(ServiceError):
    """Token is structurally unusable (400)."""
    status_code = 400
    error_code = ErrorCode.TOKEN_NOT_VALID


class AuthenticationError(ServiceError):
    """Bearer credential missing or rejected (401)."""
    status_code = 401
    error_code = ErrorCode.UNAUTHORIZED


class ForbiddenError(ServiceError):
    """Credential or permission check failed (403)."""
    status_code = 403
    error_code = ErrorCode.FORBIDDEN


class NotFoundError(ServiceError):
    """Requested entity not found (404)."""
    status_code = 404
    error_code = ErrorCode.NOT_FOUND


class ValidationError(ServiceError):
    """Input rejected (422)."""
    status_code = 422
    error_code = ErrorCode.VALIDATION_ERROR


def require_id(value: object, kind: str = "id") -> str:
    """Return ``value`` if it is shaped like a store id, else raise ``IdNotValidError``."""
    if not is_valid_id(value):
        raise IdNotValidError(f"{kind} is not a valid id", detail={"id": str(value)[:64]})
    return value  # type: ignore[return-value]


__all__ = [
    "ErrorCode",
    "ServiceError",
    "IdNotValidError",
    "TokenNotValidError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ValidationError",
    "require_id",
]
