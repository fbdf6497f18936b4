import secrets
import sqlite3
import time
import uuid
from typing import Any, Callable, Dict, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from .config import PASSWORD_MIN_LENGTH
from .db import Store
from .errors import (
    InvalidCredentials,
    PersistenceError,
    SessionExpired,
    SessionNotFound,
    WeakPassword,
)
from .logs import get_logger, sanitize_log_value

logger = get_logger("needadrop.sessions")

SESSION_TOKEN_BYTES = 32


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
        raise WeakPassword(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."
        )


class SessionGuard:
    """Store-backed admin authentication.

    Sessions have a fixed absolute lifetime from creation and are never
    extended. Nothing is cached in process; every check reads the store.
    """

    def __init__(
        self,
        store: Store,
        *,
        session_lifetime_seconds: float,
        hash_method: str = "scrypt",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.session_lifetime_seconds = float(session_lifetime_seconds)
        self.hash_method = hash_method
        self.clock = clock
        # Compared against when the username is unknown so both failure
        # paths pay for one hash verification of the configured cost.
        self._dummy_hash = generate_password_hash(
            secrets.token_urlsafe(16), method=hash_method
        )

    def hash_password(self, password: str) -> str:
        return generate_password_hash(password, method=self.hash_method)

    def _get_admin(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        with self.store.connect() as conn:
            row = conn.execute(
                f"SELECT * FROM admin_users WHERE {column} = ?", (value,)
            ).fetchone()
        return dict(row) if row is not None else None

    def _verify(self, admin: Optional[Dict[str, Any]], password: str) -> bool:
        password_hash = admin["password_hash"] if admin is not None else self._dummy_hash
        matched = check_password_hash(password_hash, password or "")
        return admin is not None and matched

    def ensure_admin(self, username: str, password: Optional[str] = None) -> Optional[str]:
        """Create the first admin account when none exists.

        Returns the generated password when one had to be generated.
        """

        username = (username or "").strip() or "admin"
        generated: Optional[str] = None
        if not password:
            generated = secrets.token_urlsafe(12)
            password = generated
        password_hash = self.hash_password(password)
        admin_id = uuid.uuid4().hex
        now = self.clock()

        def apply(conn: sqlite3.Connection) -> bool:
            count = conn.execute("SELECT COUNT(*) AS count FROM admin_users").fetchone()["count"]
            if count:
                return False
            conn.execute(
                "INSERT INTO admin_users (id, username, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (admin_id, username, password_hash, now),
            )
            return True

        if not self.store.transaction(apply, name="ensure_admin"):
            return None

        if generated:
            logger.warning(
                "admin_bootstrapped username=%s generated_password=%s "
                "(set NEEDADROP_ADMIN_PASSWORD or change it after logging in)",
                sanitize_log_value(username),
                generated,
            )
        else:
            logger.info("admin_bootstrapped username=%s", sanitize_log_value(username))
        return generated

    def authenticate(self, username: str, password: str) -> str:
        """Verify credentials and mint a new session token."""

        admin = self._get_admin("username", (username or "").strip())
        if not self._verify(admin, password):
            logger.warning("login_failed username=%s", sanitize_log_value(username or ""))
            raise InvalidCredentials()

        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        now = self.clock()
        expires_at = now + self.session_lifetime_seconds

        def apply(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO sessions (token, admin_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, admin["id"], now, expires_at),
            )

        self.store.transaction(apply, name="create_session")
        logger.info("login_succeeded admin_id=%s expires_at=%f", admin["id"], expires_at)
        return token

    def validate(self, token: str) -> str:
        """Return the admin id owning *token*.

        Raises :class:`SessionNotFound` for unknown tokens and
        :class:`SessionExpired` once ``expires_at`` is reached, deleting the
        expired row on the way.
        """

        if not token:
            raise SessionNotFound()
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT admin_id, expires_at FROM sessions WHERE token = ?", (token,)
            ).fetchone()
        if row is None:
            raise SessionNotFound()

        if self.clock() >= float(row["expires_at"]):
            try:
                self._delete_session(token)
            except PersistenceError as error:
                logger.warning("expired_session_cleanup_failed error=%s", error)
            raise SessionExpired()
        return row["admin_id"]

    def _delete_session(self, token: str) -> int:
        return self.store.transaction(
            lambda conn: conn.execute("DELETE FROM sessions WHERE token = ?", (token,)).rowcount,
            name="delete_session",
        )

    def revoke(self, token: str) -> None:
        """Delete *token*; unknown or expired tokens are ignored."""

        if not token:
            return
        if self._delete_session(token):
            logger.info("session_revoked")

    def revoke_all(self, admin_id: str, except_token: Optional[str] = None) -> int:
        def apply(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "DELETE FROM sessions WHERE admin_id = ? AND token != ?",
                (admin_id, except_token or ""),
            ).rowcount

        removed = self.store.transaction(apply, name="revoke_all_sessions")
        logger.info("sessions_revoked admin_id=%s count=%d", admin_id, removed)
        return removed

    def change_password(self, admin_id: str, old_password: str, new_password: str) -> None:
        """Replace the password hash after re-verifying *old_password*.

        Other sessions of the admin stay valid; use :meth:`revoke_all` to end
        them explicitly.
        """

        admin = self._get_admin("id", admin_id)
        if not self._verify(admin, old_password):
            logger.warning("password_change_rejected admin_id=%s", sanitize_log_value(admin_id))
            raise InvalidCredentials()
        validate_password_strength(new_password)
        new_hash = self.hash_password(new_password)

        def apply(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE admin_users SET password_hash = ? WHERE id = ?",
                (new_hash, admin_id),
            )

        self.store.transaction(apply, name="change_password")
        logger.info("password_changed admin_id=%s", admin_id)

    def purge_expired(self) -> int:
        now = self.clock()
        removed = self.store.transaction(
            lambda conn: conn.execute(
                "DELETE FROM sessions WHERE expires_at <= ?", (now,)
            ).rowcount,
            name="purge_sessions",
        )
        if removed:
            logger.info("expired_sessions_purged count=%d", removed)
        return removed
