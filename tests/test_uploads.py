import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from needadrop.db import Store
from needadrop.errors import (
    InvalidFilename,
    LinkDeleted,
    LinkExpired,
    LinkNotFound,
    PersistenceError,
    QuotaExceeded,
    SizeMismatch,
    StorageIOError,
    UploadNotFound,
)
from needadrop.lifecycle import LinkState
from needadrop.links import LinkRegistry
from needadrop.quota import QuotaEngine
from needadrop.storage import StorageManager
from needadrop.uploads import UploadService, normalize_mime_type


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class UploadServiceTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        self.uploads_root = root / "uploads"
        self.clock = FakeClock()
        self.store = Store(root / "db" / "needadrop.db")
        self.store.init_schema()
        self.storage = StorageManager(self.uploads_root)
        self.storage.ensure_root()
        self.links = LinkRegistry(self.store, clock=self.clock)
        self.quota = QuotaEngine(self.store, clock=self.clock)
        self.uploads = UploadService(self.store, self.storage, self.quota, clock=self.clock)

    def tearDown(self):
        self.storage_dir.cleanup()

    def _upload(self, link, data=b"hello world", filename="hello.txt", **kwargs):
        return self.uploads.upload(
            link["token"], filename, io.BytesIO(data), len(data), **kwargs
        )

    def _disk_files(self, link):
        directory = self.uploads_root / link["id"]
        if not directory.exists():
            return []
        return sorted(entry.name for entry in directory.iterdir())

    def assertConsistent(self, link):
        used, total = self.uploads.check_consistency(link["id"])
        self.assertEqual(used, total)

    def test_upload_registers_file_and_charges_quota(self):
        link = self.links.create_link("guests", 1000)
        record = self._upload(link, content_type="text/plain; charset=utf-8")

        self.assertEqual(record["original_filename"], "hello.txt")
        self.assertEqual(record["size_bytes"], 11)
        self.assertEqual(record["mime_type"], "text/plain")
        self.assertEqual(record["uploaded_at"], self.clock.now)
        self.assertEqual(self.quota.usage(link["id"]), 11)
        self.assertEqual(self._disk_files(link), [record["stored_filename"]])
        self.assertEqual(self.uploads.get_upload(record["id"])["id"], record["id"])
        self.assertConsistent(link)

    def test_path_components_are_stripped_from_names(self):
        link = self.links.create_link("guests", 1000)
        record = self._upload(link, data=b"not really", filename="../../etc/passwd")

        self.assertEqual(record["original_filename"], "passwd")
        self.assertNotIn("/", record["stored_filename"])
        _, path = self.uploads.open_upload(record["id"])
        self.assertEqual(path.parent, (self.uploads_root / link["id"]).resolve())
        self.assertEqual(path.read_bytes(), b"not really")

    def test_invalid_filename_does_not_touch_quota(self):
        link = self.links.create_link("guests", 1000)
        with self.assertRaises(InvalidFilename):
            self._upload(link, filename="..")
        self.assertEqual(self.quota.usage(link["id"]), 0)
        self.assertEqual(self._disk_files(link), [])

    def test_quota_rejection_writes_nothing(self):
        link = self.links.create_link("small", 10)
        with self.assertRaises(QuotaExceeded):
            self._upload(link, data=b"x" * 11)
        self.assertEqual(self.quota.usage(link["id"]), 0)
        self.assertEqual(self._disk_files(link), [])

    def test_expired_link_rejects_uploads(self):
        link = self.links.create_link("timed", 1000, expires_in_hours=1)
        self.clock.advance(3600)
        with self.assertRaises(LinkExpired):
            self._upload(link)

    def test_failed_write_releases_reservation(self):
        link = self.links.create_link("flaky", 1000)
        stream = mock.Mock()
        stream.read.side_effect = [b"part", OSError("client went away")]

        with self.assertRaises(StorageIOError):
            self.uploads.upload(link["token"], "a.bin", stream, 400)

        self.assertEqual(self.quota.usage(link["id"]), 0)
        self.assertEqual(self._disk_files(link), [])
        self.assertEqual(self.uploads.list_uploads(link["id"]), [])

    def test_failed_release_is_logged_and_original_error_kept(self):
        link = self.links.create_link("stuck", 1000)
        stream = mock.Mock()
        stream.read.side_effect = OSError("client went away")

        with mock.patch.object(
            self.quota, "release", side_effect=PersistenceError("database is locked")
        ):
            with self.assertLogs("needadrop.uploads", level="ERROR") as logs:
                with self.assertRaises(StorageIOError):
                    self.uploads.upload(link["token"], "a.bin", stream, 400)

        self.assertTrue(
            any("upload_release_failed" in line and "bytes=400" in line for line in logs.output)
        )
        used, total = self.uploads.check_consistency(link["id"])
        self.assertEqual((used, total), (400, 0))

    def test_size_mismatch_releases_reservation(self):
        link = self.links.create_link("liar", 1000)
        with self.assertRaises(SizeMismatch):
            self.uploads.upload(link["token"], "a.bin", io.BytesIO(b"x" * 50), 10)
        self.assertEqual(self.quota.usage(link["id"]), 0)
        self.assertEqual(self._disk_files(link), [])

    def test_failed_registration_removes_file_and_releases(self):
        link = self.links.create_link("no-db", 1000)
        with mock.patch.object(
            self.uploads, "_register", side_effect=PersistenceError("disk I/O error")
        ):
            with self.assertRaises(PersistenceError):
                self._upload(link)
        self.assertEqual(self.quota.usage(link["id"]), 0)
        self.assertEqual(self._disk_files(link), [])

    def test_upload_racing_link_deletion_is_rolled_back(self):
        link = self.links.create_link("racy", 1000)
        uploads = self.uploads

        class DeletingStream:
            def __init__(self):
                self.calls = 0

            def read(self, size=-1):
                self.calls += 1
                if self.calls == 1:
                    uploads.delete_link(link["id"])
                    return b"data"
                return b""

        with self.assertRaises((LinkDeleted, StorageIOError)):
            self.uploads.upload(link["token"], "a.txt", DeletingStream(), 4)

        stored = self.links.get_link(link["id"])
        self.assertEqual(stored["quota_used"], 0)
        self.assertIs(self.links.state_of(stored), LinkState.DELETED)
        self.assertEqual(self.uploads.list_uploads(link["id"]), [])
        self.assertFalse((self.uploads_root / link["id"]).exists())

    def test_delete_upload_frees_quota(self):
        link = self.links.create_link("guests", 1000)
        first = self._upload(link, data=b"a" * 400)
        self._upload(link, data=b"b" * 400)
        with self.assertRaises(QuotaExceeded):
            self._upload(link, data=b"c" * 400)

        deleted = self.uploads.delete_upload(first["id"])
        self.assertEqual(deleted["id"], first["id"])
        self.assertEqual(self.quota.usage(link["id"]), 400)
        self.assertNotIn(first["stored_filename"], self._disk_files(link))
        self.assertConsistent(link)

        self._upload(link, data=b"c" * 400)
        self.assertEqual(self.quota.usage(link["id"]), 800)
        self.assertConsistent(link)

    def test_second_delete_of_same_upload_fails(self):
        link = self.links.create_link("guests", 1000)
        record = self._upload(link)
        self.uploads.delete_upload(record["id"])
        with self.assertRaises(UploadNotFound):
            self.uploads.delete_upload(record["id"])
        self.assertEqual(self.quota.usage(link["id"]), 0)

    def test_delete_upload_with_missing_file_still_releases(self):
        link = self.links.create_link("guests", 1000)
        record = self._upload(link)
        (self.uploads_root / link["id"] / record["stored_filename"]).unlink()

        with self.assertLogs("needadrop.uploads", level="WARNING"):
            self.uploads.delete_upload(record["id"])
        self.assertEqual(self.quota.usage(link["id"]), 0)
        self.assertConsistent(link)

    def test_failed_disk_delete_keeps_record_and_quota(self):
        link = self.links.create_link("guests", 1000)
        record = self._upload(link)
        with mock.patch.object(
            self.storage, "delete_file", side_effect=StorageIOError("read-only filesystem")
        ):
            with self.assertRaises(StorageIOError):
                self.uploads.delete_upload(record["id"])
        self.assertEqual(self.quota.usage(link["id"]), 11)
        self.assertEqual(self.uploads.get_upload(record["id"])["id"], record["id"])

    def test_open_upload_of_missing_file(self):
        link = self.links.create_link("guests", 1000)
        record = self._upload(link)
        (self.uploads_root / link["id"] / record["stored_filename"]).unlink()
        with self.assertRaises(UploadNotFound):
            self.uploads.open_upload(record["id"])

    def test_delete_link_cascades(self):
        link = self.links.create_link("party", 1000)
        other = self.links.create_link("other", 1000)
        self._upload(link, data=b"a" * 10)
        self._upload(link, data=b"b" * 20)
        kept = self._upload(other)

        self.assertEqual(self.uploads.delete_link(link["id"]), 2)

        stored = self.links.get_link(link["id"])
        self.assertIsNotNone(stored["deleted_at"])
        self.assertEqual(stored["quota_used"], 0)
        self.assertEqual(self.uploads.list_uploads(link["id"]), [])
        self.assertFalse((self.uploads_root / link["id"]).exists())
        self.assertEqual([r["id"] for r in self.uploads.list_uploads()], [kept["id"]])

        with self.assertRaises(LinkDeleted):
            self._upload(link)
        with self.assertRaises(LinkDeleted):
            self.uploads.delete_link(link["id"])
        with self.assertRaises(LinkNotFound):
            self.uploads.delete_link("0" * 32)

    def test_list_uploads_newest_first(self):
        link = self.links.create_link("guests", 1000)
        first = self._upload(link, filename="first.txt")
        self.clock.advance(5)
        second = self._upload(link, filename="second.txt")
        self.assertEqual(
            [record["id"] for record in self.uploads.list_uploads(link["id"])],
            [second["id"], first["id"]],
        )


class MimeTypeTests(unittest.TestCase):
    def test_normalize_mime_type(self):
        self.assertEqual(normalize_mime_type(None), "application/octet-stream")
        self.assertEqual(normalize_mime_type("Image/PNG"), "image/png")
        self.assertEqual(normalize_mime_type("text/html; charset=utf-8"), "text/html")
        self.assertEqual(normalize_mime_type("not a type"), "application/octet-stream")


if __name__ == "__main__":
    unittest.main()
