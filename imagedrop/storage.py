import io
import logging
import os
import shutil
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Dict, Generator, Optional, Set, Union


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("imagedrop.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


STORAGE_ROOT = _resolve_env_path("IMAGEDROP_STORAGE_ROOT", Path("storage"))
DATA_DIR = _resolve_env_path("IMAGEDROP_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("IMAGEDROP_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("IMAGEDROP_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "database.db"

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
TEMP_SUFFIX = ".tmp"
TEMP_FILE_MAX_AGE_SECONDS = 3600

MAX_UPLOAD_SIZE_MB = _safe_int_env("IMAGEDROP_MAX_UPLOAD_SIZE_MB", 10)
MAX_UPLOAD_BYTES = MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
RECONCILE_INTERVAL_MINUTES = _safe_int_env("IMAGEDROP_RECONCILE_INTERVAL_MINUTES", 60)
ORPHAN_GRACE_SECONDS = _safe_int_env("IMAGEDROP_ORPHAN_GRACE_SECONDS", 300, min_value=0)

logger = logging.getLogger("imagedrop.storage")


class StoreError(RuntimeError):
    """Raised when the metadata store is unavailable or a statement fails."""


class ConflictError(StoreError):
    """Raised when a key collides with an existing upload."""


class BlobStoreError(OSError):
    """Raised when the blob directory cannot be written, read or cleaned."""


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS uploads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                lookup_key TEXT NOT NULL UNIQUE,
                deletion_key TEXT NOT NULL UNIQUE,
                file_extension TEXT NOT NULL
            )
            """
        )
        conn.commit()
    logger.info("uploads_table_ready path=%s", DB_PATH)


# Blob store


def blob_name(lookup_key: str, extension: str) -> str:
    return f"{lookup_key}{extension}"


def get_blob_path(name: str) -> Path:
    return UPLOADS_DIR / name


def blob_exists(name: str) -> bool:
    return get_blob_path(name).is_file()


def write_blob(name: str, data: Union[bytes, BinaryIO]) -> Path:
    """Persist *data* under *name*, replacing any existing blob atomically."""

    ensure_directories()
    target = get_blob_path(name)
    temp_path = target.with_name(target.name + TEMP_SUFFIX)
    source = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
    try:
        with temp_path.open("wb") as handle:
            shutil.copyfileobj(source, handle, CHUNK_SIZE_BYTES)
            handle.flush()
            os.fsync(handle.fileno())
        temp_path.replace(target)
    except OSError as error:
        # Clean up temp file if write failed
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise BlobStoreError(f"Unable to write blob {name}: {error}") from error
    return target


def open_blob(name: str) -> BinaryIO:
    """Open a stored blob for streaming; the caller owns the handle."""

    return get_blob_path(name).open("rb")


def delete_blob(name: str) -> None:
    path = get_blob_path(name)
    try:
        path.unlink()
    except OSError as error:
        raise BlobStoreError(f"Unable to delete blob {name}: {error}") from error


def _discard_blob(name: str) -> None:
    try:
        get_blob_path(name).unlink(missing_ok=True)
    except OSError as error:
        logger.warning("blob_discard_failed name=%s error=%s", name, error)


# Metadata store


def register_upload(
    lookup_key: str,
    deletion_key: str,
    extension: str,
    data: Union[bytes, BinaryIO],
) -> str:
    """Record an upload and write its blob as a single unit.

    The row is inserted inside an immediate transaction before any bytes reach
    disk, so a uniqueness conflict or an unavailable database stops the upload
    without touching the blob directory. The transaction only commits after the
    blob is in place; a failed blob write rolls the row back.

    Returns the blob name.
    """

    name = blob_name(lookup_key, extension)
    blob_written = False
    try:
        with get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO uploads (lookup_key, deletion_key, file_extension)
                VALUES (?, ?, ?)
                """,
                (lookup_key, deletion_key, extension),
            )
            write_blob(name, data)
            blob_written = True
    except sqlite3.IntegrityError as error:
        if blob_written:
            _discard_blob(name)
        raise ConflictError(f"Upload key already in use: {error}") from error
    except sqlite3.Error as error:
        if blob_written:
            _discard_blob(name)
        raise StoreError(f"Unable to record upload: {error}") from error

    logger.info(
        "upload_registered lookup_key=%s extension=%s",
        lookup_key,
        extension,
    )
    return name


def _get_upload(column: str, value: str) -> Optional[sqlite3.Row]:
    try:
        with get_db() as conn:
            cursor = conn.execute(
                f"SELECT * FROM uploads WHERE {column} = ?", (value,)
            )
            return cursor.fetchone()
    except sqlite3.Error as error:
        raise StoreError(f"Unable to query uploads: {error}") from error


def get_upload_by_lookup_key(lookup_key: str) -> Optional[sqlite3.Row]:
    return _get_upload("lookup_key", lookup_key)


def get_upload_by_deletion_key(deletion_key: str) -> Optional[sqlite3.Row]:
    return _get_upload("deletion_key", deletion_key)


def delete_upload(deletion_key: str) -> bool:
    """Remove the blob and then the row for *deletion_key*.

    The row deletion stays uncommitted until the blob is gone. If the blob
    cannot be removed the transaction rolls back and the upload remains
    intact. Returns ``False`` when no upload matches.
    """

    record = get_upload_by_deletion_key(deletion_key)
    if not record:
        return False

    lookup_key = record["lookup_key"]
    name = blob_name(lookup_key, record["file_extension"])

    try:
        with get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "DELETE FROM uploads WHERE deletion_key = ?", (deletion_key,)
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return False

            try:
                delete_blob(name)
            except BlobStoreError as error:
                logger.warning(
                    "blob_delete_failed lookup_key=%s name=%s error=%s - rolling back transaction",
                    lookup_key,
                    name,
                    error,
                )
                raise
    except sqlite3.Error as error:
        if not blob_exists(name):
            logger.error(
                "dangling_record lookup_key=%s name=%s - blob removed but row kept",
                lookup_key,
                name,
            )
        raise StoreError(f"Unable to delete upload: {error}") from error

    logger.info("upload_deleted lookup_key=%s name=%s", lookup_key, name)
    return True


def count_uploads() -> int:
    try:
        with get_db() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM uploads").fetchone()
    except sqlite3.Error as error:
        raise StoreError(f"Unable to count uploads: {error}") from error
    return int(row["count"] if row and row["count"] is not None else 0)


# Reconciliation


def _known_blob_names() -> Set[str]:
    with get_db() as conn:
        cursor = conn.execute("SELECT lookup_key, file_extension FROM uploads")
        return {
            blob_name(row["lookup_key"], row["file_extension"])
            for row in cursor.fetchall()
        }


def cleanup_orphaned_blobs() -> int:
    """Remove blobs on disk that have no corresponding database record.

    Blobs younger than ``ORPHAN_GRACE_SECONDS`` are left alone because an
    upload writes its blob before the row is committed.
    """

    ensure_directories()
    removed = 0
    cutoff = time.time() - ORPHAN_GRACE_SECONDS

    try:
        valid_names = _known_blob_names()
    except sqlite3.Error as error:
        logger.warning("orphan_cleanup_skipped error=%s", error)
        return 0

    for entry in UPLOADS_DIR.iterdir():
        try:
            if not entry.is_file() or entry.name.endswith(TEMP_SUFFIX):
                continue
            if entry.name in valid_names:
                continue
            if entry.stat().st_mtime >= cutoff:
                continue
            entry.unlink()
            removed += 1
            logger.info("orphan_blob_removed path=%s", entry)
        except OSError as error:
            logger.warning(
                "orphan_cleanup_failed path=%s error=%s",
                entry,
                error,
            )

    if removed:
        logger.info("orphan_cleanup_completed removed=%d", removed)
    return removed


def cleanup_dangling_records() -> int:
    """Remove rows whose blob no longer exists on disk."""

    removed = 0
    try:
        with get_db() as conn:
            cursor = conn.execute(
                "SELECT id, lookup_key, file_extension FROM uploads"
            )
            for record in cursor.fetchall():
                name = blob_name(record["lookup_key"], record["file_extension"])
                if blob_exists(name):
                    continue
                conn.execute("DELETE FROM uploads WHERE id = ?", (record["id"],))
                removed += 1
                logger.info(
                    "dangling_record_removed lookup_key=%s name=%s",
                    record["lookup_key"],
                    name,
                )
            conn.commit()
    except sqlite3.Error as error:
        logger.warning("dangling_cleanup_failed error=%s", error)
        return 0

    if removed:
        logger.info("dangling_cleanup_completed removed=%d", removed)
    return removed


def cleanup_temp_files() -> int:
    """Remove lingering temporary upload files."""

    ensure_directories()
    removed = 0
    cutoff = time.time() - TEMP_FILE_MAX_AGE_SECONDS

    for temp_file in UPLOADS_DIR.glob(f"*{TEMP_SUFFIX}"):
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


def reconcile_storage() -> Dict[str, int]:
    """Bring the metadata table and the blob directory back in agreement."""

    results = {
        "dangling_records": cleanup_dangling_records(),
        "orphaned_blobs": cleanup_orphaned_blobs(),
        "temp_files": cleanup_temp_files(),
    }
    logger.info(
        "reconcile_completed dangling_records=%d orphaned_blobs=%d temp_files=%d",
        results["dangling_records"],
        results["orphaned_blobs"],
        results["temp_files"],
    )
    return results
