import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from needadrop.errors import InvalidFilename, SizeMismatch, StorageIOError, UploadNotFound
from needadrop.storage import (
    StorageManager,
    generate_stored_filename,
    safe_extension,
    sanitize_filename,
)

LINK_ID = "a" * 32


class SanitizeFilenameTests(unittest.TestCase):
    def test_keeps_last_path_component(self):
        self.assertEqual(sanitize_filename("../../etc/passwd"), "passwd")
        self.assertEqual(sanitize_filename("C:\\Users\\me\\report.pdf"), "report.pdf")
        self.assertEqual(sanitize_filename("holiday photo.JPG"), "holiday photo.JPG")

    def test_rejects_unusable_names(self):
        for name in (None, "", "   ", ".", "..", "dir/", "a\x00b", "bell\x07.txt", "x" * 256):
            with self.subTest(name=name):
                with self.assertRaises(InvalidFilename):
                    sanitize_filename(name)

    def test_extension_is_normalized(self):
        self.assertEqual(safe_extension("Photo.JPG"), ".jpg")
        self.assertEqual(safe_extension("archive.tar.gz"), ".gz")
        self.assertEqual(safe_extension("no_extension"), "")
        self.assertEqual(safe_extension("weird.tar-gz"), "")

    def test_stored_names_are_generated(self):
        first = generate_stored_filename("report.pdf")
        second = generate_stored_filename("report.pdf")
        self.assertNotEqual(first, second)
        self.assertTrue(first.endswith(".pdf"))
        self.assertNotIn("report", first)


class StorageManagerTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name) / "uploads"
        self.storage = StorageManager(self.root)
        self.storage.ensure_root()

    def tearDown(self):
        self.storage_dir.cleanup()

    def _files(self, link_id=LINK_ID):
        directory = self.root / link_id
        if not directory.exists():
            return []
        return sorted(entry.name for entry in directory.iterdir())

    def test_isolated_root_is_a_direct_child_of_the_root(self):
        directory = self.storage.isolated_root(LINK_ID)
        self.assertTrue(directory.is_dir())
        self.assertEqual(directory.parent, self.root.resolve())

    def test_rejects_link_ids_that_are_not_generated_ids(self):
        for link_id in ("../outside", "", "A" * 32, "a" * 31, LINK_ID + "/.."):
            with self.subTest(link_id=link_id):
                with self.assertRaises(StorageIOError):
                    self.storage.link_directory(link_id)

    def test_store_file_writes_under_generated_name(self):
        stored, written = self.storage.store_file(
            LINK_ID, "../../etc/passwd", io.BytesIO(b"root:x:0:0"), 10
        )
        self.assertEqual(written, 10)
        self.assertEqual(self._files(), [stored])
        path = self.storage.file_path(LINK_ID, stored)
        self.assertEqual(path.read_bytes(), b"root:x:0:0")
        self.assertEqual(path.parent.parent, self.root.resolve())
        self.assertEqual(os.stat(path).st_mode & 0o777, 0o600)

    def test_store_file_without_declared_size(self):
        stored, written = self.storage.store_file(LINK_ID, "a.bin", io.BytesIO(b"x" * 3000))
        self.assertEqual(written, 3000)
        self.assertEqual(self._files(), [stored])

    def test_longer_stream_than_declared_is_rejected(self):
        with self.assertRaises(SizeMismatch) as context:
            self.storage.store_file(LINK_ID, "big.txt", io.BytesIO(b"0123456789"), 4)
        self.assertEqual(context.exception.declared, 4)
        self.assertEqual(self._files(), [])

    def test_shorter_stream_than_declared_is_rejected(self):
        with self.assertRaises(SizeMismatch):
            self.storage.store_file(LINK_ID, "short.txt", io.BytesIO(b"abc"), 10)
        self.assertEqual(self._files(), [])

    def test_read_failure_leaves_no_partial_file(self):
        stream = mock.Mock()
        stream.read.side_effect = [b"partial", OSError("connection reset")]
        with self.assertRaises(StorageIOError):
            self.storage.store_file(LINK_ID, "broken.txt", stream, 100)
        self.assertEqual(self._files(), [])

    def test_failed_rename_leaves_no_partial_file(self):
        with mock.patch.object(Path, "replace", side_effect=OSError("disk full")):
            with self.assertRaises(StorageIOError):
                self.storage.store_file(LINK_ID, "a.txt", io.BytesIO(b"abc"), 3)
        self.assertEqual(self._files(), [])

    def test_invalid_filename_writes_nothing(self):
        with self.assertRaises(InvalidFilename):
            self.storage.store_file(LINK_ID, "..", io.BytesIO(b"abc"), 3)
        self.assertFalse((self.root / LINK_ID).exists())

    def test_delete_file(self):
        stored, _ = self.storage.store_file(LINK_ID, "a.txt", io.BytesIO(b"abc"), 3)
        self.storage.delete_file(LINK_ID, stored)
        self.assertEqual(self._files(), [])
        with self.assertRaises(UploadNotFound):
            self.storage.delete_file(LINK_ID, stored)

    def test_delete_file_refuses_foreign_names(self):
        with self.assertRaises(UploadNotFound):
            self.storage.delete_file(LINK_ID, "../../etc/passwd")

    def test_remove_link_tree(self):
        self.storage.store_file(LINK_ID, "a.txt", io.BytesIO(b"abc"), 3)
        self.assertTrue(self.storage.remove_link_tree(LINK_ID))
        self.assertFalse((self.root / LINK_ID).exists())
        self.assertTrue(self.storage.remove_link_tree(LINK_ID))

    def test_cleanup_temp_files_only_removes_old_ones(self):
        directory = self.storage.isolated_root(LINK_ID)
        stale = directory / ".stale.bin.tmp"
        fresh = directory / ".fresh.bin.tmp"
        stale.write_bytes(b"x")
        fresh.write_bytes(b"y")
        os.utime(stale, (0, 0))

        self.assertEqual(self.storage.cleanup_temp_files(), 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())


if __name__ == "__main__":
    unittest.main()
