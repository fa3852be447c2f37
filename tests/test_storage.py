import io
import os
import sqlite3
import sys
import tempfile
import time
import unittest
from contextlib import contextmanager
from pathlib import Path
from unittest import mock

MODULES = ["imagedrop.storage", "imagedrop"]
ENV_KEYS = [
    "IMAGEDROP_STORAGE_ROOT",
    "IMAGEDROP_DATA_DIR",
    "IMAGEDROP_UPLOADS_DIR",
    "IMAGEDROP_LOGS_DIR",
]


class FailingDeleteConnection:
    """Connection wrapper whose DELETE statements fail as if the disk were gone."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql, *args):
        if sql.lstrip().upper().startswith("DELETE"):
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class StorageTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["IMAGEDROP_STORAGE_ROOT"] = str(root)
        os.environ["IMAGEDROP_DATA_DIR"] = str(root / "data")
        os.environ["IMAGEDROP_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["IMAGEDROP_LOGS_DIR"] = str(root / "logs")
        for module in MODULES:
            sys.modules.pop(module, None)
        import importlib

        self.storage = importlib.import_module("imagedrop.storage")
        self.storage.init_db()
        self.uploads_dir = root / "uploads"

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        for module in MODULES:
            sys.modules.pop(module, None)

    def _age(self, path: Path, seconds: float) -> None:
        past = time.time() - seconds
        os.utime(path, (past, past))

    def _failing_commit_db(self):
        real_get_db = self.storage.get_db

        @contextmanager
        def get_db():
            with real_get_db() as conn:
                yield conn
                if conn.in_transaction:
                    raise sqlite3.OperationalError("disk I/O error")

        return get_db

    def _failing_delete_db(self):
        real_get_db = self.storage.get_db

        @contextmanager
        def get_db():
            with real_get_db() as conn:
                yield FailingDeleteConnection(conn)

        return get_db

    def test_init_db_is_idempotent(self):
        self.storage.register_upload("lookup", "delete", ".png", b"data")
        self.storage.init_db()
        self.assertEqual(self.storage.count_uploads(), 1)

    def test_register_and_lookup(self):
        name = self.storage.register_upload("lookup", "delete", ".png", b"data")
        self.assertEqual(name, "lookup.png")
        self.assertEqual((self.uploads_dir / name).read_bytes(), b"data")

        by_lookup = self.storage.get_upload_by_lookup_key("lookup")
        by_deletion = self.storage.get_upload_by_deletion_key("delete")
        self.assertEqual(by_lookup["deletion_key"], "delete")
        self.assertEqual(by_deletion["lookup_key"], "lookup")
        self.assertEqual(by_lookup["file_extension"], ".png")

        self.assertIsNone(self.storage.get_upload_by_lookup_key("delete"))
        self.assertIsNone(self.storage.get_upload_by_deletion_key("lookup"))

    def test_register_accepts_streams(self):
        self.storage.register_upload("lookup", "delete", ".gif", io.BytesIO(b"GIF89a"))
        with self.storage.open_blob("lookup.gif") as handle:
            self.assertEqual(handle.read(), b"GIF89a")

    def test_duplicate_lookup_key_raises_conflict_without_writing(self):
        self.storage.register_upload("lookup", "delete-1", ".png", b"original")

        with mock.patch.object(self.storage, "write_blob") as write_blob:
            with self.assertRaises(self.storage.ConflictError):
                self.storage.register_upload("lookup", "delete-2", ".png", b"new")
            write_blob.assert_not_called()

        self.assertEqual((self.uploads_dir / "lookup.png").read_bytes(), b"original")

    def test_duplicate_deletion_key_raises_conflict(self):
        self.storage.register_upload("lookup-1", "delete", ".png", b"data")
        with self.assertRaises(self.storage.ConflictError):
            self.storage.register_upload("lookup-2", "delete", ".png", b"data")
        self.assertFalse((self.uploads_dir / "lookup-2.png").exists())

    def test_blob_write_failure_rolls_back_row(self):
        with mock.patch.object(
            self.storage, "write_blob", side_effect=self.storage.BlobStoreError("disk full")
        ):
            with self.assertRaises(self.storage.BlobStoreError):
                self.storage.register_upload("lookup", "delete", ".png", b"data")

        self.assertIsNone(self.storage.get_upload_by_lookup_key("lookup"))
        self.assertEqual(self.storage.count_uploads(), 0)

    def test_write_blob_leaves_no_temp_file(self):
        self.storage.write_blob("name.png", b"data")
        self.assertEqual(
            sorted(path.name for path in self.uploads_dir.iterdir()), ["name.png"]
        )

    def test_delete_upload_removes_blob_and_row(self):
        self.storage.register_upload("lookup", "delete", ".png", b"data")

        self.assertTrue(self.storage.delete_upload("delete"))
        self.assertIsNone(self.storage.get_upload_by_deletion_key("delete"))
        self.assertFalse(self.storage.blob_exists("lookup.png"))
        self.assertFalse(self.storage.delete_upload("delete"))

    def test_blob_delete_failure_keeps_row(self):
        self.storage.register_upload("lookup", "delete", ".png", b"data")

        with mock.patch.object(
            self.storage,
            "delete_blob",
            side_effect=self.storage.BlobStoreError("permission denied"),
        ):
            with self.assertRaises(self.storage.BlobStoreError):
                self.storage.delete_upload("delete")

        self.assertIsNotNone(self.storage.get_upload_by_deletion_key("delete"))
        self.assertTrue(self.storage.blob_exists("lookup.png"))

    def test_commit_failure_after_blob_write_discards_blob(self):
        with mock.patch.object(self.storage, "get_db", self._failing_commit_db()):
            with self.assertRaises(self.storage.StoreError):
                self.storage.register_upload("lookup", "delete", ".png", b"data")

        self.assertIsNone(self.storage.get_upload_by_lookup_key("lookup"))
        self.assertEqual(self.storage.count_uploads(), 0)
        self.assertEqual(list(self.uploads_dir.iterdir()), [])

    def test_row_delete_failure_keeps_blob_and_row(self):
        self.storage.register_upload("lookup", "delete", ".png", b"data")

        with mock.patch.object(self.storage, "get_db", self._failing_delete_db()):
            with self.assertRaises(self.storage.StoreError):
                self.storage.delete_upload("delete")

        self.assertIsNotNone(self.storage.get_upload_by_deletion_key("delete"))
        self.assertEqual((self.uploads_dir / "lookup.png").read_bytes(), b"data")

    def test_commit_failure_after_blob_unlink_logs_dangling_record(self):
        self.storage.register_upload("lookup", "delete", ".png", b"data")

        with mock.patch.object(self.storage, "get_db", self._failing_commit_db()):
            with self.assertLogs("imagedrop.storage", level="ERROR") as logs:
                with self.assertRaises(self.storage.StoreError):
                    self.storage.delete_upload("delete")

        self.assertTrue(
            any("dangling_record lookup_key=lookup" in line for line in logs.output)
        )
        self.assertFalse(self.storage.blob_exists("lookup.png"))
        self.assertIsNotNone(self.storage.get_upload_by_deletion_key("delete"))

        self.assertEqual(self.storage.cleanup_dangling_records(), 1)
        self.assertIsNone(self.storage.get_upload_by_deletion_key("delete"))

    def test_delete_blob_missing_raises(self):
        with self.assertRaises(self.storage.BlobStoreError):
            self.storage.delete_blob("missing.png")

    def test_cleanup_orphaned_blobs_respects_grace_period(self):
        self.storage.register_upload("kept", "delete", ".png", b"data")
        stale = self.uploads_dir / "stale.png"
        fresh = self.uploads_dir / "fresh.png"
        stale.write_bytes(b"old")
        fresh.write_bytes(b"new")
        self._age(stale, self.storage.ORPHAN_GRACE_SECONDS + 60)
        self._age(self.uploads_dir / "kept.png", self.storage.ORPHAN_GRACE_SECONDS + 60)

        removed = self.storage.cleanup_orphaned_blobs()

        self.assertEqual(removed, 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())
        self.assertTrue((self.uploads_dir / "kept.png").exists())

    def test_cleanup_dangling_records(self):
        self.storage.register_upload("gone", "delete-1", ".png", b"data")
        self.storage.register_upload("kept", "delete-2", ".png", b"data")
        (self.uploads_dir / "gone.png").unlink()

        removed = self.storage.cleanup_dangling_records()

        self.assertEqual(removed, 1)
        self.assertIsNone(self.storage.get_upload_by_lookup_key("gone"))
        self.assertIsNotNone(self.storage.get_upload_by_lookup_key("kept"))

    def test_cleanup_temp_files(self):
        old_temp = self.uploads_dir / "old.png.tmp"
        new_temp = self.uploads_dir / "new.png.tmp"
        old_temp.write_bytes(b"partial")
        new_temp.write_bytes(b"partial")
        self._age(old_temp, self.storage.TEMP_FILE_MAX_AGE_SECONDS + 60)

        self.assertEqual(self.storage.cleanup_temp_files(), 1)
        self.assertFalse(old_temp.exists())
        self.assertTrue(new_temp.exists())

    def test_reconcile_storage_reports_counts(self):
        self.storage.register_upload("gone", "delete", ".png", b"data")
        (self.uploads_dir / "gone.png").unlink()
        orphan = self.uploads_dir / "orphan.gif"
        orphan.write_bytes(b"GIF89a")
        self._age(orphan, self.storage.ORPHAN_GRACE_SECONDS + 60)

        results = self.storage.reconcile_storage()

        self.assertEqual(
            results, {"dangling_records": 1, "orphaned_blobs": 1, "temp_files": 0}
        )
        self.assertEqual(self.storage.count_uploads(), 0)
        self.assertEqual(list(self.uploads_dir.iterdir()), [])


if __name__ == "__main__":
    unittest.main()
