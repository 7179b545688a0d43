"""
Username/password login against the users table and the session slot.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from pydantic import ValidationError

from receipt_cloud.db import TableGateway, eq, utc_now_iso
from receipt_cloud.errors import GatewayError
from receipt_cloud.schemas import LoginResult, SessionUser
from receipt_cloud.sessions import SessionStore

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
DEFAULT_SESSION_KEY = "current_user"

INVALID_CREDENTIALS = "用户名或密码错误"
LOGIN_UNAVAILABLE = "登录失败，请稍后重试"


def hash_password(password: str) -> str:
    """Hex SHA-256 digest, the format stored in users.password_hash."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_password(password: str, password_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password), (password_hash or "").lower())


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def session_slot(prefix: str, token: str) -> str:
    return f"{prefix}:{token}"


class SessionManager:
    """One session slot: an in-memory user mirrored to a persistent store.

    States are anonymous (no user) and authenticated. The in-memory value is
    restored lazily from the store on the first read. Without a session key
    the manager is anonymous and never reads or writes the store.
    """

    def __init__(
        self,
        db: TableGateway,
        store: SessionStore,
        *,
        session_key: Optional[str] = DEFAULT_SESSION_KEY,
    ):
        self.db = db
        self.store = store
        self.session_key = session_key
        self._current_user: Optional[SessionUser] = None

    def _restore(self) -> Optional[SessionUser]:
        if self.session_key is None:
            return None
        stored = self.store.get(self.session_key)
        if not stored:
            return None
        try:
            return SessionUser.model_validate_json(stored)
        except ValidationError as exc:
            logger.error("Discarding unreadable session: %s", exc)
            return None

    def _persist(self, user: Optional[SessionUser]) -> None:
        if self.session_key is None:
            return
        if user is None:
            self.store.delete(self.session_key)
        else:
            self.store.set(self.session_key, user.model_dump_json())

    def login(self, username: str, password: str) -> LoginResult:
        logger.info("Verifying credentials for %s", username)
        try:
            rows = self.db.select(
                USERS_TABLE,
                [eq("username", username), eq("is_active", True)],
                limit=1,
            )
        except GatewayError as exc:
            logger.error("User lookup failed: %s", exc.as_dict())
            return LoginResult(success=False, error=LOGIN_UNAVAILABLE)

        if not rows:
            logger.warning("Login rejected: unknown or inactive user %s", username)
            return LoginResult(success=False, error=INVALID_CREDENTIALS)
        row = rows[0]

        if not verify_password(password, row.get("password_hash") or ""):
            logger.warning("Login rejected: wrong password for %s", username)
            return LoginResult(success=False, error=INVALID_CREDENTIALS)

        login_at = utc_now_iso()
        try:
            self.db.update(USERS_TABLE, {"last_login_at": login_at}, [eq("id", row["id"])])
        except GatewayError as exc:
            logger.warning("Recording last_login_at for %s failed: %s", username, exc.message)

        try:
            user = SessionUser.model_validate({**row, "last_login_at": login_at})
        except ValidationError as exc:
            logger.error("User row for %s is malformed: %s", username, exc)
            return LoginResult(success=False, error=LOGIN_UNAVAILABLE)

        self._current_user = user
        self._persist(user)
        logger.info("Login succeeded for %s", user.username)
        return LoginResult(success=True, user=user)

    def logout(self) -> None:
        self._current_user = None
        if self.session_key is None:
            return
        self._persist(None)
        logger.info("Session cleared")

    def get_current_user(self) -> Optional[SessionUser]:
        if self._current_user is None:
            self._current_user = self._restore()
        return self._current_user

    def is_authenticated(self) -> bool:
        return self.get_current_user() is not None

    def is_admin(self) -> bool:
        user = self.get_current_user()
        return user is not None and user.role == "admin"

    def can_access_settings(self) -> bool:
        # Single capability tier for now.
        return self.is_admin()
