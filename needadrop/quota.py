import sqlite3
import time
from typing import Callable, Dict

from .db import Store
from .errors import LinkNotFound, QuotaExceeded
from .lifecycle import link_state, rejection_for
from .logs import get_logger, sanitize_log_value

logger = get_logger("needadrop.quota")


def release_in_transaction(conn: sqlite3.Connection, link_id: str, size: int) -> int:
    """Decrement ``quota_used`` of *link_id* by *size* on an open transaction.

    Returns the new usage. The counter never drops below zero; a release
    larger than the recorded usage is logged because it means the counter
    and the file rows disagreed.
    """

    row = conn.execute(
        "SELECT quota_used FROM upload_links WHERE id = ?", (link_id,)
    ).fetchone()
    if row is None:
        raise LinkNotFound()
    used = int(row["quota_used"])
    if size > used:
        logger.error(
            "quota_release_underflow link_id=%s used=%d release=%d",
            link_id,
            used,
            size,
        )
    new_used = max(used - size, 0)
    conn.execute(
        "UPDATE upload_links SET quota_used = ? WHERE id = ?",
        (new_used, link_id),
    )
    return new_used


class QuotaEngine:
    """Authoritative arbiter of how many bytes a link may still accept.

    All coordination happens inside store transactions, so concurrent
    reservations for the same token serialize on the database write lock
    and never on an in-process mutex.
    """

    def __init__(self, store: Store, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    def reserve(self, token: str, size: int) -> Dict[str, object]:
        """Reserve *size* bytes on the link addressed by *token*.

        Raises :class:`LinkNotFound`, :class:`LinkExpired`,
        :class:`LinkDeleted` or :class:`QuotaExceeded` without mutating
        anything. On success the returned link dict already reflects the
        incremented usage.
        """

        if size < 0:
            raise ValueError("size must be non-negative")

        def apply(conn: sqlite3.Connection) -> Dict[str, object]:
            row = conn.execute(
                "SELECT * FROM upload_links WHERE token = ?", (token,)
            ).fetchone()
            if row is None:
                raise LinkNotFound()

            link = dict(row)
            state = link_state(link, self.clock())
            if not state.accepts_uploads:
                error = rejection_for(state, size)
                raise error

            used = int(link["quota_used"])
            total = int(link["quota_total"])
            if used + size > total:
                raise QuotaExceeded(size, total - used)

            conn.execute(
                "UPDATE upload_links SET quota_used = quota_used + ? WHERE id = ?",
                (size, link["id"]),
            )
            link["quota_used"] = used + size
            return link

        try:
            link = self.store.transaction(apply, name="quota_reserve")
        except QuotaExceeded as error:
            logger.warning(
                "quota_rejected token=%s requested=%d remaining=%d",
                sanitize_log_value(token[:8]),
                size,
                error.remaining,
            )
            raise

        logger.info(
            "quota_reserved link_id=%s bytes=%d used=%d total=%d",
            link["id"],
            size,
            link["quota_used"],
            link["quota_total"],
        )
        return link

    def release(self, link_id: str, size: int) -> int:
        """Give back *size* bytes previously reserved on *link_id*."""

        if size < 0:
            raise ValueError("size must be non-negative")
        if size == 0:
            return self.usage(link_id)

        new_used = self.store.transaction(
            lambda conn: release_in_transaction(conn, link_id, size),
            name="quota_release",
        )
        logger.info(
            "quota_released link_id=%s bytes=%d used=%d",
            link_id,
            size,
            new_used,
        )
        return new_used

    def usage(self, link_id: str) -> int:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT quota_used FROM upload_links WHERE id = ?", (link_id,)
            ).fetchone()
        if row is None:
            raise LinkNotFound()
        return int(row["quota_used"])
