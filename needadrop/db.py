import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Optional, TypeVar

from .errors import PersistenceError

logger = logging.getLogger("needadrop.db")

T = TypeVar("T")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS upload_links (
        id TEXT PRIMARY KEY,
        token TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        quota_total INTEGER NOT NULL CHECK (quota_total >= 0),
        quota_used INTEGER NOT NULL DEFAULT 0
            CHECK (quota_used >= 0 AND quota_used <= quota_total),
        created_at REAL NOT NULL,
        expires_at REAL,
        deleted_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS uploaded_files (
        id TEXT PRIMARY KEY,
        link_id TEXT NOT NULL REFERENCES upload_links (id) ON DELETE CASCADE,
        original_filename TEXT NOT NULL,
        stored_filename TEXT NOT NULL,
        size_bytes INTEGER NOT NULL CHECK (size_bytes >= 0),
        mime_type TEXT NOT NULL DEFAULT 'application/octet-stream',
        uploaded_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_users (
        id TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        token TEXT PRIMARY KEY,
        admin_id TEXT NOT NULL REFERENCES admin_users (id),
        created_at REAL NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_uploaded_files_link_id ON uploaded_files(link_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_uploaded_files_stored ON uploaded_files(link_id, stored_filename)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_upload_links_deleted_at ON upload_links(deleted_at)",
)

_RETRYABLE_MARKERS = ("database is locked", "database is busy", "database table is locked")


def _is_retryable(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


class Store:
    """sqlite3-backed persistence store.

    Connections are opened per operation. Writes go through
    :meth:`transaction`, which takes SQLite's write lock up front with
    ``BEGIN IMMEDIATE`` so that read-modify-write sequences are atomic across
    threads and processes sharing the same database file.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        retry_attempts: int = 5,
        busy_timeout_ms: int = 5000,
        backoff_seconds: float = 0.05,
    ) -> None:
        self.db_path = Path(db_path)
        self.retry_attempts = max(1, int(retry_attempts))
        self.busy_timeout_ms = busy_timeout_ms
        self.backoff_seconds = backoff_seconds

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield an autocommit connection for plain reads."""

        try:
            conn = self._connect()
        except sqlite3.Error as error:
            raise PersistenceError(f"Store unavailable: {error}") from error
        try:
            yield conn
        except sqlite3.Error as error:
            raise PersistenceError(str(error)) from error
        finally:
            conn.close()

    @contextmanager
    def _immediate(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            if conn.in_transaction:
                conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def transaction(self, func: Callable[[sqlite3.Connection], T], *, name: str = "transaction") -> T:
        """Run *func* inside a write transaction, retrying lock contention.

        *func* must be free of side effects outside the database because it
        may run more than once. Exceptions raised by *func* roll the
        transaction back and propagate unchanged.
        """

        last_error: Optional[sqlite3.OperationalError] = None
        for attempt in range(self.retry_attempts):
            try:
                with self._immediate() as conn:
                    return func(conn)
            except sqlite3.OperationalError as error:
                if not _is_retryable(error):
                    raise PersistenceError(str(error)) from error
                last_error = error
                logger.warning(
                    "transaction_conflict name=%s attempt=%d error=%s",
                    name,
                    attempt + 1,
                    error,
                )
                time.sleep(self.backoff_seconds * (attempt + 1) ** 2)
            except sqlite3.Error as error:
                raise PersistenceError(str(error)) from error

        logger.error(
            "transaction_retry_exhausted name=%s attempts=%d",
            name,
            self.retry_attempts,
        )
        raise PersistenceError(
            f"Transaction {name} failed after {self.retry_attempts} attempts"
        ) from last_error

    def init_schema(self) -> None:
        def apply(conn: sqlite3.Connection) -> None:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            columns = {
                row["name"]
                for row in conn.execute("PRAGMA table_info(uploaded_files)")
            }
            if "mime_type" not in columns:
                conn.execute(
                    "ALTER TABLE uploaded_files ADD COLUMN mime_type TEXT NOT NULL "
                    "DEFAULT 'application/octet-stream'"
                )

        self.transaction(apply, name="init_schema")
        logger.info("schema_ready db_path=%s", self.db_path)

    def ping(self) -> None:
        with self.connect() as conn:
            conn.execute("SELECT 1").fetchone()
