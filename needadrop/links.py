import math
import secrets
import sqlite3
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .config import BYTES_PER_MB, MAX_LINK_NAME_LENGTH
from .db import Store
from .errors import InvalidLinkParameters, LinkDeleted, LinkNotFound
from .lifecycle import LinkState, link_state
from .logs import get_logger, sanitize_log_value

logger = get_logger("needadrop.links")

TOKEN_BYTES = 16  # 128-bit bearer capability
MAX_QUOTA_BYTES = 2**63 - 1  # SQLite INTEGER range


def generate_link_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def format_file_size(size_bytes: int) -> str:
    """Format a byte count as ``512 B``, ``1.5 KB``, ``2.0 MB`` and so on."""

    size = float(size_bytes)
    if size < 1024:
        return f"{int(size_bytes)} B"
    for unit in ("KB", "MB", "GB", "TB"):
        size /= 1024.0
        if size < 1024:
            break
    return f"{size:.1f} {unit}"


def megabytes_to_bytes(value: Any) -> int:
    try:
        megabytes = float(value)
    except (TypeError, ValueError) as error:
        raise InvalidLinkParameters("Quota must be a number of megabytes.") from error
    if math.isnan(megabytes) or math.isinf(megabytes) or megabytes < 0:
        raise InvalidLinkParameters("Quota must be a non-negative number of megabytes.")
    return int(megabytes * BYTES_PER_MB)


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidLinkParameters("Link name cannot be empty.")
    name = name.strip()
    if len(name) > MAX_LINK_NAME_LENGTH:
        raise InvalidLinkParameters(
            f"Link name must be {MAX_LINK_NAME_LENGTH} characters or less."
        )
    return name


def _validate_quota(quota_total_bytes: Any) -> int:
    if isinstance(quota_total_bytes, bool):
        raise InvalidLinkParameters("Quota must be an integer number of bytes.")
    try:
        quota = int(quota_total_bytes)
    except (TypeError, ValueError) as error:
        raise InvalidLinkParameters("Quota must be an integer number of bytes.") from error
    if quota != quota_total_bytes and not isinstance(quota_total_bytes, str):
        raise InvalidLinkParameters("Quota must be an integer number of bytes.")
    if quota < 0:
        raise InvalidLinkParameters("Quota cannot be negative.")
    if quota > MAX_QUOTA_BYTES:
        raise InvalidLinkParameters("Quota is too large.")
    return quota


def _expiry_from_hours(expires_in_hours: Any, now: float) -> Optional[float]:
    """Hours from *now*; ``None``, empty or zero means the link never expires."""

    if expires_in_hours in (None, ""):
        return None
    try:
        hours = float(expires_in_hours)
    except (TypeError, ValueError) as error:
        raise InvalidLinkParameters("Expiration must be a number of hours.") from error
    if math.isnan(hours) or math.isinf(hours) or hours < 0:
        raise InvalidLinkParameters("Expiration must be a positive number of hours.")
    if hours == 0:
        return None
    expires_at = now + hours * 3600
    if math.isinf(expires_at):
        raise InvalidLinkParameters("Expiration is too far in the future.")
    return expires_at


class LinkRegistry:
    """Admin-side creation and inspection of upload links."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    def create_link(
        self,
        name: str,
        quota_total_bytes: int,
        expires_in_hours: Optional[float] = None,
    ) -> Dict[str, Any]:
        name = _validate_name(name)
        quota = _validate_quota(quota_total_bytes)
        now = self.clock()
        expires_at = _expiry_from_hours(expires_in_hours, now)
        link_id = uuid.uuid4().hex
        token = generate_link_token()

        def apply(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO upload_links (
                    id, token, name, quota_total, quota_used,
                    created_at, expires_at, deleted_at
                )
                VALUES (?, ?, ?, ?, 0, ?, ?, NULL)
                """,
                (link_id, token, name, quota, now, expires_at),
            )

        self.store.transaction(apply, name="create_link")
        logger.info(
            "link_created link_id=%s name=%s quota_bytes=%d expires_at=%s",
            link_id,
            sanitize_log_value(name),
            quota,
            expires_at,
        )
        return self.get_link(link_id)

    def get_link(self, link_id: str) -> Dict[str, Any]:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM upload_links WHERE id = ?", (link_id,)
            ).fetchone()
        if row is None:
            raise LinkNotFound()
        return dict(row)

    def get_link_by_token(self, token: str) -> Dict[str, Any]:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM upload_links WHERE token = ?", (token,)
            ).fetchone()
        if row is None:
            raise LinkNotFound()
        return dict(row)

    def list_links(self, include_deleted: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM upload_links"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += " ORDER BY created_at DESC"
        with self.store.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [dict(row) for row in rows]

    def state_of(self, link: Dict[str, Any]) -> LinkState:
        return link_state(link, self.clock())

    def update_expiry(self, link_id: str, expires_in_hours: Optional[float]) -> Dict[str, Any]:
        expires_at = _expiry_from_hours(expires_in_hours, self.clock())

        def apply(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT deleted_at FROM upload_links WHERE id = ?", (link_id,)
            ).fetchone()
            if row is None:
                raise LinkNotFound()
            if row["deleted_at"] is not None:
                raise LinkDeleted()
            conn.execute(
                "UPDATE upload_links SET expires_at = ? WHERE id = ?",
                (expires_at, link_id),
            )

        self.store.transaction(apply, name="update_expiry")
        logger.info("link_expiry_updated link_id=%s expires_at=%s", link_id, expires_at)
        return self.get_link(link_id)

    def describe(self, link: Dict[str, Any], *, include_token: bool = True) -> Dict[str, Any]:
        """Serializable view of *link* with derived state and usage."""

        total = int(link["quota_total"])
        used = int(link["quota_used"])
        remaining = max(total - used, 0)
        payload: Dict[str, Any] = {
            "id": link["id"],
            "name": link["name"],
            "state": self.state_of(link).value,
            "quota_total_bytes": total,
            "quota_used_bytes": used,
            "quota_remaining_bytes": remaining,
            "quota_used_percent": round(used * 100.0 / total, 1) if total else 100.0,
            "quota_total_human": format_file_size(total),
            "quota_remaining_human": format_file_size(remaining),
            "created_at": link["created_at"],
            "expires_at": link["expires_at"],
            "deleted_at": link["deleted_at"],
        }
        if include_token:
            payload["token"] = link["token"]
        return payload
