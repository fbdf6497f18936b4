import os
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple

from werkzeug.utils import secure_filename

from .errors import InvalidFilename, SizeMismatch, StorageIOError, UploadNotFound
from .logs import get_logger, sanitize_log_value

logger = get_logger("needadrop.storage")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
MAX_FILENAME_LENGTH = 255
MAX_EXTENSION_LENGTH = 16
TEMP_SUFFIX = ".tmp"
TEMP_FILE_MAX_AGE_SECONDS = 3600

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_LINK_DIRECTORY_PATTERN = re.compile(r"^[0-9a-f]{32}$")
_STORED_NAME_PATTERN = re.compile(r"^[0-9a-f]{32}(\.[a-z0-9]{1,16})?$")


def sanitize_filename(original_filename: Optional[str]) -> str:
    """Return the display name kept for *original_filename*.

    Client-side directory components are dropped (browsers and some tools
    send full paths), so ``../../etc/passwd`` becomes ``passwd``. Names that
    are empty afterwards, are ``.`` or ``..``, contain a null byte or other
    control characters, or are too long raise :class:`InvalidFilename`.
    The result is metadata only and never part of a filesystem path.
    """

    if original_filename is None:
        raise InvalidFilename("Missing filename")
    if "\x00" in original_filename:
        raise InvalidFilename("Filename contains a null byte")

    name = re.split(r"[\\/]", original_filename)[-1].strip()
    if not name or name in {".", ".."}:
        raise InvalidFilename("Filename is empty after normalization")
    if _CONTROL_CHAR_PATTERN.search(name):
        raise InvalidFilename("Filename contains control characters")
    if len(name) > MAX_FILENAME_LENGTH:
        raise InvalidFilename(
            f"Filename is too long (maximum {MAX_FILENAME_LENGTH} characters)"
        )
    return name


def safe_extension(display_name: str) -> str:
    """Derive a lowercase, alphanumeric extension from a sanitized name."""

    secured = secure_filename(display_name)
    suffix = Path(secured).suffix.lower().lstrip(".")
    if not suffix or len(suffix) > MAX_EXTENSION_LENGTH or not suffix.isalnum() or not suffix.isascii():
        return ""
    return f".{suffix}"


def generate_stored_filename(display_name: str) -> str:
    return f"{uuid.uuid4().hex}{safe_extension(display_name)}"


class StorageManager:
    """Maps links to isolated directories and moves bytes in and out of them.

    Layout is ``{root}/{link_id}/{stored_filename}``. Link ids and stored
    filenames are both generated, so nothing a guest sends ever becomes part
    of a path.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def link_directory(self, link_id: str) -> Path:
        """Return the directory for *link_id* without creating it."""

        if not isinstance(link_id, str) or not _LINK_DIRECTORY_PATTERN.match(link_id):
            raise StorageIOError(f"Invalid link id for storage: {link_id!r}")
        directory = (self.root / link_id).resolve()
        if directory.parent != self.root:
            raise StorageIOError("Link directory escapes the storage root")
        return directory

    def isolated_root(self, link_id: str) -> Path:
        """Return the link's directory, creating it on first use."""

        directory = self.link_directory(link_id)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageIOError(f"Cannot create link directory: {error}") from error
        return directory

    def file_path(self, link_id: str, stored_filename: str) -> Path:
        if not _STORED_NAME_PATTERN.match(stored_filename or ""):
            raise UploadNotFound(f"Invalid stored filename: {stored_filename!r}")
        return self.link_directory(link_id) / stored_filename

    def store_file(
        self,
        link_id: str,
        original_filename: str,
        stream: BinaryIO,
        declared_size: Optional[int] = None,
    ) -> Tuple[str, int]:
        """Write *stream* into the link's directory under a generated name.

        Data goes to a temporary file that is renamed into place only after
        the stream has been fully consumed, so a partial upload is never
        visible under its final name. On any failure the temporary file is
        removed and the error propagates; the caller owns releasing the
        quota reservation.

        Returns ``(stored_filename, bytes_written)``.
        """

        display_name = sanitize_filename(original_filename)
        directory = self.isolated_root(link_id)
        stored_filename = generate_stored_filename(display_name)
        final_path = directory / stored_filename
        temp_path = directory / f".{stored_filename}{TEMP_SUFFIX}"

        written = 0
        try:
            # Exclusive creation with owner-only permissions set atomically.
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as destination:
                while True:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    if declared_size is not None and written + len(chunk) > declared_size:
                        raise SizeMismatch(declared_size, written + len(chunk))
                    destination.write(chunk)
                    written += len(chunk)
                destination.flush()
                os.fsync(destination.fileno())

            if declared_size is not None and written != declared_size:
                raise SizeMismatch(declared_size, written)

            temp_path.replace(final_path)
        except SizeMismatch as error:
            self._discard(temp_path)
            logger.warning(
                "store_size_mismatch link_id=%s filename=%s declared=%d actual=%d",
                link_id,
                sanitize_log_value(display_name),
                error.declared,
                error.actual,
            )
            raise
        except OSError as error:
            self._discard(temp_path)
            logger.error(
                "store_io_failed link_id=%s filename=%s error=%s",
                link_id,
                sanitize_log_value(display_name),
                error,
            )
            raise StorageIOError(str(error)) from error
        except Exception:
            self._discard(temp_path)
            raise

        logger.info(
            "file_stored link_id=%s stored_filename=%s bytes=%d",
            link_id,
            stored_filename,
            written,
        )
        return stored_filename, written

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            logger.error("temp_discard_failed path=%s error=%s", path, error)

    def delete_file(self, link_id: str, stored_filename: str) -> None:
        """Remove a published file.

        Raises :class:`UploadNotFound` when nothing is on disk and
        :class:`StorageIOError` when removal fails.
        """

        path = self.file_path(link_id, stored_filename)
        try:
            path.unlink()
        except FileNotFoundError as error:
            raise UploadNotFound(f"{stored_filename} is not on disk") from error
        except OSError as error:
            logger.warning(
                "file_delete_disk_failed link_id=%s path=%s error=%s",
                link_id,
                path,
                error,
            )
            raise StorageIOError(str(error)) from error
        logger.info("file_removed link_id=%s stored_filename=%s", link_id, stored_filename)

    def remove_link_tree(self, link_id: str) -> bool:
        """Best-effort removal of a link's whole directory."""

        directory = self.link_directory(link_id)
        if not directory.exists():
            return True
        try:
            shutil.rmtree(directory)
        except OSError as error:
            logger.warning(
                "link_tree_remove_failed link_id=%s path=%s error=%s",
                link_id,
                directory,
                error,
            )
            return False
        logger.info("link_tree_removed link_id=%s", link_id)
        return True

    def iter_link_directories(self) -> Iterator[Path]:
        if not self.root.exists():
            return
        for entry in self.root.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                yield entry

    def cleanup_temp_files(self, max_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS) -> int:
        """Remove lingering temporary upload files."""

        removed = 0
        cutoff = time.time() - max_age_seconds
        for directory in self.iter_link_directories():
            for temp_file in directory.glob(f".*{TEMP_SUFFIX}"):
                try:
                    if temp_file.stat().st_mtime < cutoff:
                        temp_file.unlink()
                        removed += 1
                        logger.info("temp_file_removed path=%s", temp_file)
                except OSError as error:
                    logger.warning(
                        "temp_cleanup_failed path=%s error=%s",
                        temp_file,
                        error,
                    )
        return removed
