import atexit
import time
from typing import Dict

from apscheduler.schedulers.background import BackgroundScheduler

from .db import Store
from .errors import NeedADropError
from .logs import get_logger
from .sessions import SessionGuard
from .storage import TEMP_FILE_MAX_AGE_SECONDS, TEMP_SUFFIX, StorageManager

logger = get_logger("needadrop.maintenance")


class Maintenance:
    """Housekeeping for leftovers of crashes and best-effort deletions.

    None of these jobs is needed for correctness of quota accounting or
    link expiry; they reclaim disk space and prune dead session rows.
    """

    def __init__(self, store: Store, storage: StorageManager, sessions: SessionGuard) -> None:
        self.store = store
        self.storage = storage
        self.sessions = sessions

    def purge_expired_sessions(self) -> int:
        return self.sessions.purge_expired()

    def cleanup_temp_files(self) -> int:
        return self.storage.cleanup_temp_files()

    def _link_index(self) -> Dict[str, bool]:
        """Map every known link id to whether it is tombstoned."""

        with self.store.connect() as conn:
            rows = conn.execute("SELECT id, deleted_at FROM upload_links").fetchall()
        return {row["id"]: row["deleted_at"] is not None for row in rows}

    def cleanup_deleted_link_dirs(self) -> int:
        """Remove directories of tombstoned links that are still on disk."""

        removed = 0
        for link_id, deleted in self._link_index().items():
            if not deleted:
                continue
            try:
                directory = self.storage.link_directory(link_id)
            except NeedADropError:
                continue
            if directory.exists() and self.storage.remove_link_tree(link_id):
                removed += 1
        if removed:
            logger.info("deleted_link_dirs_removed count=%d", removed)
        return removed

    def cleanup_orphaned_files(self, min_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS) -> int:
        """Remove published files no record references.

        Files younger than *min_age_seconds* are kept: an upload publishes its
        file just before registering the record.

        Directories that belong to no link at all are removed entirely.
        Temporary files are left to :meth:`cleanup_temp_files`, which only
        touches them once they are old enough to not be in-flight uploads.
        """

        links = self._link_index()
        with self.store.connect() as conn:
            rows = conn.execute("SELECT link_id, stored_filename FROM uploaded_files").fetchall()
        referenced = {(row["link_id"], row["stored_filename"]) for row in rows}

        cutoff = time.time() - min_age_seconds
        removed = 0
        for directory in self.storage.iter_link_directories():
            link_id = directory.name
            if link_id not in links:
                try:
                    if directory.stat().st_mtime >= cutoff:
                        continue
                    self.storage.remove_link_tree(link_id)
                except (NeedADropError, OSError):
                    logger.warning("orphan_dir_skipped path=%s", directory)
                    continue
                logger.info("orphan_dir_removed path=%s", directory)
                removed += 1
                continue
            if links[link_id]:
                continue
            for entry in directory.iterdir():
                if not entry.is_file() or entry.name.endswith(TEMP_SUFFIX):
                    continue
                if (link_id, entry.name) in referenced:
                    continue
                try:
                    if entry.stat().st_mtime >= cutoff:
                        continue
                    entry.unlink()
                    removed += 1
                    logger.info("orphan_file_removed path=%s", entry)
                except OSError as error:
                    logger.warning(
                        "orphan_cleanup_failed path=%s error=%s",
                        entry,
                        error,
                    )
        if removed:
            logger.info("orphan_cleanup_completed removed=%d", removed)
        return removed

    def run_all(self) -> Dict[str, int]:
        return {
            "expired_sessions": self.purge_expired_sessions(),
            "temp_files": self.cleanup_temp_files(),
            "deleted_link_dirs": self.cleanup_deleted_link_dirs(),
            "orphaned_files": self.cleanup_orphaned_files(),
        }

    def _guarded(self, job):
        def run() -> None:
            try:
                job()
            except (NeedADropError, OSError):
                logger.exception("maintenance_job_failed job=%s", job.__name__)

        run.__name__ = job.__name__
        return run

    def start_scheduler(self, interval_minutes: int) -> BackgroundScheduler:
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            func=self._guarded(self.purge_expired_sessions),
            trigger="interval",
            minutes=max(1, interval_minutes),
            id="purge_expired_sessions",
            name="Purge expired admin sessions",
            replace_existing=True,
        )
        scheduler.add_job(
            func=self._guarded(self.cleanup_temp_files),
            trigger="interval",
            hours=1,
            id="cleanup_temp_files",
            name="Clean up temporary files",
            replace_existing=True,
        )
        scheduler.add_job(
            func=self._guarded(self.cleanup_deleted_link_dirs),
            trigger="interval",
            minutes=max(1, interval_minutes),
            id="cleanup_deleted_link_dirs",
            name="Remove directories of deleted links",
            replace_existing=True,
        )
        scheduler.add_job(
            func=self._guarded(self.cleanup_orphaned_files),
            trigger="interval",
            hours=1,
            id="cleanup_orphaned_files",
            name="Clean up orphaned files",
            replace_existing=True,
        )
        scheduler.start()
        atexit.register(lambda: scheduler.running and scheduler.shutdown(wait=False))
        logger.info("scheduler_started interval_minutes=%d", interval_minutes)
        return scheduler
