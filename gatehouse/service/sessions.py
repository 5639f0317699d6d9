from __future__ import annotations

from typing import Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.storage.models import TokenEntry, User

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_token(self, token: str) -> Optional[User]: ...

    def push_user_token(
        self, user_id: str, entry: TokenEntry, *, max_entries: int = 0
    ) -> Optional[User]: ...

    def replace_user_token(
        self, user_id: str, old_token: str, entry: TokenEntry
    ) -> bool: ...

    def pull_user_session(self, user_id: str, session_id: str) -> Optional[int]: ...

    def pull_token(self, token: str) -> int: ...


class SessionRegistry:
    """Live refresh tokens, kept inline on each user's ``tokens`` list.

    Refresh token values are random and globally unique, so removal by value
    may scan every user. Removing a token that is not there is a no-op.
    """

    def __init__(self, store: SessionStore, *, max_sessions_per_user: int = 0) -> None:
        self.store = store
        self.max_sessions_per_user = max_sessions_per_user

    def add(self, user_id: str, token: str, session_id: str) -> Optional[User]:
        user = self.store.push_user_token(
            user_id,
            TokenEntry(token=token, session_id=session_id),
            max_entries=self.max_sessions_per_user,
        )
        if user:
            logger.info("session_added", user_id=user_id, session_id=session_id, live=len(user.tokens))
        return user

    def contains(self, user_id: str, token: str) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.has_token(token))

    def holder(self, token: str) -> Optional[User]:
        return self.store.get_user_by_token(token)

    def rotate(self, user_id: str, old_token: str, new_token: str, session_id: str) -> bool:
        """Swap a live token for a new one on the same session."""
        swapped = self.store.replace_user_token(
            user_id, old_token, TokenEntry(token=new_token, session_id=session_id)
        )
        if swapped:
            logger.info("session_rotated", user_id=user_id, session_id=session_id)
        return swapped

    def remove(self, token: str) -> int:
        removed = self.store.pull_token(token)
        logger.info("session_token_removed", removed=removed)
        return removed

    def remove_session(self, user_id: str, session_id: str) -> Optional[int]:
        """Drop the entry of one session. None when the user does not exist."""
        removed = self.store.pull_user_session(user_id, session_id)
        if removed is not None:
            logger.info("session_removed", user_id=user_id, session_id=session_id, removed=removed)
        return removed
