"""Upload orchestration.

The database and the filesystem share no transaction manager, so an upload
is a reservation followed by a disk write followed by registration, with an
explicit compensating ``release`` when anything after the reservation
fails. Deletions run disk first, then metadata and quota together, so a
crash part way through never leaves a live record pointing at a missing
file.
"""

import re
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple

from .db import Store
from .errors import LinkDeleted, LinkNotFound, NeedADropError, UploadNotFound
from .logs import get_logger, sanitize_log_value
from .quota import QuotaEngine, release_in_transaction
from .storage import StorageManager, sanitize_filename

logger = get_logger("needadrop.uploads")

DEFAULT_MIME_TYPE = "application/octet-stream"
_MIME_TYPE_PATTERN = re.compile(r"^[A-Za-z0-9!#$&^_.+-]+/[A-Za-z0-9!#$&^_.+-]+$")


def normalize_mime_type(content_type: Optional[str]) -> str:
    if not content_type:
        return DEFAULT_MIME_TYPE
    base = content_type.split(";", 1)[0].strip().lower()
    if len(base) > 127 or not _MIME_TYPE_PATTERN.match(base):
        return DEFAULT_MIME_TYPE
    return base


class UploadService:
    def __init__(
        self,
        store: Store,
        storage: StorageManager,
        quota: QuotaEngine,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.storage = storage
        self.quota = quota
        self.clock = clock

    def resolve_and_reserve(self, token: str, size: int) -> Dict[str, Any]:
        return self.quota.reserve(token, size)

    def upload(
        self,
        token: str,
        original_filename: str,
        stream: BinaryIO,
        size: int,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Accept *size* bytes from *stream* for the link addressed by *token*.

        Either the file is on disk, registered and charged against the link,
        or none of those happened and the error propagates.
        """

        display_name = sanitize_filename(original_filename)
        link = self.resolve_and_reserve(token, size)
        link_id = link["id"]
        stored_filename: Optional[str] = None
        try:
            stored_filename, written = self.storage.store_file(
                link_id, display_name, stream, size
            )
            record = self._register(
                link_id, display_name, stored_filename, written, normalize_mime_type(content_type)
            )
        except LinkDeleted:
            # Deletion zeroed the counter, reservation included.
            self._discard_published(link_id, stored_filename)
            logger.warning(
                "upload_aborted_link_deleted link_id=%s filename=%s",
                link_id,
                sanitize_log_value(display_name),
            )
            raise
        except Exception:
            self._discard_published(link_id, stored_filename)
            self._release_after_failure(link_id, size)
            logger.warning(
                "upload_rolled_back link_id=%s filename=%s bytes=%d",
                link_id,
                sanitize_log_value(display_name),
                size,
            )
            raise

        logger.info(
            "file_uploaded file_id=%s link_id=%s filename=%s bytes=%d",
            record["id"],
            link_id,
            sanitize_log_value(display_name),
            record["size_bytes"],
        )
        return record

    def _register(
        self,
        link_id: str,
        display_name: str,
        stored_filename: str,
        size: int,
        mime_type: str,
    ) -> Dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "link_id": link_id,
            "original_filename": display_name,
            "stored_filename": stored_filename,
            "size_bytes": size,
            "mime_type": mime_type,
            "uploaded_at": self.clock(),
        }

        def apply(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT deleted_at FROM upload_links WHERE id = ?", (link_id,)
            ).fetchone()
            if row is None:
                raise LinkNotFound()
            if row["deleted_at"] is not None:
                raise LinkDeleted()
            conn.execute(
                """
                INSERT INTO uploaded_files (
                    id, link_id, original_filename, stored_filename,
                    size_bytes, mime_type, uploaded_at
                )
                VALUES (:id, :link_id, :original_filename, :stored_filename,
                        :size_bytes, :mime_type, :uploaded_at)
                """,
                record,
            )

        self.store.transaction(apply, name="register_upload")
        return record

    def _release_after_failure(self, link_id: str, size: int) -> None:
        try:
            self.quota.release(link_id, size)
        except NeedADropError as error:
            logger.error(
                "upload_release_failed link_id=%s bytes=%d error=%s",
                link_id,
                size,
                error,
            )

    def _discard_published(self, link_id: str, stored_filename: Optional[str]) -> None:
        if stored_filename is None:
            return
        try:
            self.storage.delete_file(link_id, stored_filename)
        except NeedADropError as error:
            logger.error(
                "upload_cleanup_failed link_id=%s stored_filename=%s error=%s",
                link_id,
                stored_filename,
                error,
            )

    def get_upload(self, file_id: str) -> Dict[str, Any]:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM uploaded_files WHERE id = ?", (file_id,)
            ).fetchone()
        if row is None:
            raise UploadNotFound()
        return dict(row)

    def list_uploads(self, link_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM uploaded_files"
        params: Tuple[Any, ...] = ()
        if link_id is not None:
            query += " WHERE link_id = ?"
            params = (link_id,)
        query += " ORDER BY uploaded_at DESC"
        with self.store.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def open_upload(self, file_id: str) -> Tuple[Dict[str, Any], Path]:
        """Return the record and on-disk path of an upload for download."""

        record = self.get_upload(file_id)
        path = self.storage.file_path(record["link_id"], record["stored_filename"])
        if not path.is_file():
            logger.error(
                "upload_missing_on_disk file_id=%s path=%s",
                file_id,
                path,
            )
            raise UploadNotFound()
        return record, path

    def delete_upload(self, file_id: str) -> Dict[str, Any]:
        """Delete an upload's file, its record and its share of the quota.

        Deleting the same id twice raises :class:`UploadNotFound`.
        """

        record = self.get_upload(file_id)
        link_id = record["link_id"]
        size = int(record["size_bytes"])

        try:
            self.storage.delete_file(link_id, record["stored_filename"])
        except UploadNotFound:
            logger.warning(
                "upload_delete_missing_on_disk file_id=%s stored_filename=%s",
                file_id,
                record["stored_filename"],
            )

        def apply(conn: sqlite3.Connection) -> int:
            cursor = conn.execute("DELETE FROM uploaded_files WHERE id = ?", (file_id,))
            if cursor.rowcount == 0:
                raise UploadNotFound()
            return release_in_transaction(conn, link_id, size)

        used = self.store.transaction(apply, name="delete_upload")
        logger.info(
            "file_deleted file_id=%s link_id=%s bytes=%d quota_used=%d",
            file_id,
            link_id,
            size,
            used,
        )
        return record

    def delete_link(self, link_id: str) -> int:
        """Tombstone a link, drop its file records and then its directory.

        Returns the number of file records removed.
        """

        now = self.clock()

        def apply(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT deleted_at FROM upload_links WHERE id = ?", (link_id,)
            ).fetchone()
            if row is None:
                raise LinkNotFound()
            if row["deleted_at"] is not None:
                raise LinkDeleted()
            conn.execute(
                "UPDATE upload_links SET deleted_at = ?, quota_used = 0 WHERE id = ?",
                (now, link_id),
            )
            cursor = conn.execute("DELETE FROM uploaded_files WHERE link_id = ?", (link_id,))
            return cursor.rowcount

        removed = self.store.transaction(apply, name="delete_link")
        tree_removed = self.storage.remove_link_tree(link_id)
        logger.info(
            "link_deleted link_id=%s files=%d tree_removed=%s",
            link_id,
            removed,
            tree_removed,
        )
        return removed

    def check_consistency(self, link_id: str) -> Tuple[int, int]:
        """Return ``(quota_used, sum of file sizes)`` for *link_id*."""

        with self.store.connect() as conn:
            link_row = conn.execute(
                "SELECT quota_used FROM upload_links WHERE id = ?", (link_id,)
            ).fetchone()
            if link_row is None:
                raise LinkNotFound()
            total_row = conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) AS total FROM uploaded_files WHERE link_id = ?",
                (link_id,),
            ).fetchone()
        return int(link_row["quota_used"]), int(total_row["total"])
