import atexit
import logging
import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Dict, Iterable, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, has_request_context, jsonify, request, send_file
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .keys import generate_key
from .storage import (
    BYTES_PER_MB,
    LOGS_DIR,
    MAX_UPLOAD_BYTES,
    MAX_UPLOAD_SIZE_MB,
    RECONCILE_INTERVAL_MINUTES,
    UPLOADS_DIR,
    StoreError,
    blob_exists,
    blob_name,
    count_uploads,
    delete_upload,
    ensure_directories,
    get_upload_by_deletion_key,
    get_upload_by_lookup_key,
    init_db,
    open_blob,
    reconcile_storage,
    register_upload,
)

# Constants for logging and limits
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
MULTIPART_OVERHEAD_BYTES = 64 * 1024
DESCRIPTOR_VERSION = "14.1.0"

# Accepted MIME types and the extension each one implies.
ALLOWED_TYPES = {
    "image/png": ".png",
    "image/jpg": ".jpg",
    "image/jpeg": ".jpeg",
    "image/gif": ".gif",
}
ALLOWED_EXTENSIONS = set(ALLOWED_TYPES.values())

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


PUBLIC_URL = (os.environ.get("IMAGEDROP_PUBLIC_URL") or "").strip().rstrip("/")
_scheduler_override = _get_optional_bool_env("IMAGEDROP_SCHEDULER_ENABLED")
SCHEDULER_ENABLED = True if _scheduler_override is None else _scheduler_override


class RequestError(ValueError):
    """Base class for client-facing request failures rendered as JSON."""

    status_code = 400

    def to_payload(self) -> dict:
        return {"error": str(self)}


class InvalidInputError(RequestError):
    """Raised when the request is missing data or carries malformed data."""


class PayloadTooLargeError(RequestError):
    """Raised when an upload exceeds the configured size limit."""


class UnsupportedTypeError(RequestError):
    """Raised when an upload's MIME type is not an accepted image type."""

    def __init__(self, allowed_types: Iterable[str]):
        self.allowed_types = [item.replace("image/", "") for item in allowed_types]
        super().__init__(
            "Invalid filetype provided (allowed types: "
            + ", ".join(self.allowed_types)
            + ")"
        )

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["allowed_types"] = self.allowed_types
        return payload


class NotFoundError(RequestError):
    """Raised when a key matches no upload or the upload's blob is missing."""

    status_code = 404


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

app = Flask(__name__)
# Leave room for the multipart envelope so oversized files reach the upload
# handler and receive the same error as any other oversized upload.
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES + MULTIPART_OVERHEAD_BYTES
app.json.sort_keys = False
app.logger.setLevel(numeric_level)

_base_lifecycle_logger = logging.getLogger("imagedrop.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
scheduler_logger = logging.getLogger("imagedrop.scheduler")

init_db()


def resolve_extension(filename: str, content_type: str) -> str:
    """Pick the stored extension for an upload.

    The filename's suffix wins when it names an accepted image type. Anything
    else, including a missing suffix, falls back to the extension implied by
    the declared MIME type.
    """

    suffix = PurePosixPath(filename or "").suffix.lower()
    if suffix in ALLOWED_EXTENSIONS:
        return suffix
    return ALLOWED_TYPES[content_type]


def content_type_for(extension: str) -> str:
    return f"image/{extension.lstrip('.')}"


def _measure_stream(stream: BinaryIO) -> int:
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={getattr(file_storage, 'filename', 'unknown')}",
        )


def _run_reconciliation() -> None:
    try:
        reconcile_storage()
    except Exception:
        scheduler_logger.exception("Reconciliation job failed")


scheduler: Optional[BackgroundScheduler] = None

# Sweep for consistency faults in the background so requests never wait on it.
if SCHEDULER_ENABLED:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=_run_reconciliation,
        trigger="interval",
        minutes=RECONCILE_INTERVAL_MINUTES,
        id="reconcile_storage",
        name="Reconcile uploads with stored blobs",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    # Repair faults left by a previous process before serving traffic.
    _run_reconciliation()


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_cors_headers(response: Response):
    """Allow any origin to call every route."""

    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Request-ID"
    response.headers["Access-Control-Expose-Headers"] = "X-Request-ID"
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(RequestError)
def handle_request_error(error: RequestError):
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(413)
def handle_file_too_large(error):
    lifecycle_logger.warning(
        "upload_rejected reason=request_too_large content_length=%s",
        request.content_length,
    )
    return jsonify(PayloadTooLargeError(_too_large_message()).to_payload()), 400


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(error):
    lifecycle_logger.error("unhandled_error path=%s", sanitize_log_value(request.path))
    return jsonify({"error": "Internal server error"}), 500


def _too_large_message() -> str:
    return f"The provided file is too big (max {MAX_UPLOAD_SIZE_MB}MB)"


@app.route("/")
def service_descriptor():
    base_url = PUBLIC_URL or request.url_root.rstrip("/")
    return jsonify(
        {
            "Version": DESCRIPTOR_VERSION,
            "DestinationType": "FileUploader",
            "RequestMethod": "POST",
            "RequestURL": f"{base_url}/upload",
            "Body": "MultipartFormData",
            "FileFormName": "file",
            "URL": f"{base_url}/{{json:lookupKey}}",
            "DeletionURL": f"{base_url}/delete/{{json:deletionKey}}",
            "ErrorMessage": "{json:error}",
        }
    ), 200


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        checks["uploads"] = count_uploads()
        checks["database"] = "ok"
    except StoreError as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        ensure_directories()
        usage = shutil.disk_usage(UPLOADS_DIR)
        checks["disk_space_gb"] = round(usage.free / (1024 ** 3), 2)
    except OSError as error:
        checks["disk_space_gb"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler_running"] = bool(scheduler is not None and scheduler.running)
    checks["max_upload_mb"] = round(MAX_UPLOAD_BYTES / BYTES_PER_MB, 2)

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503

    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
        }
    ), code


@app.route("/<lookup_key>")
def retrieve(lookup_key: str):
    if not lookup_key.strip():
        raise InvalidInputError("Invalid lookup key provided")

    try:
        record = get_upload_by_lookup_key(lookup_key)
        if not record:
            lifecycle_logger.info(
                "file_lookup_missing lookup_key=%s", sanitize_log_value(lookup_key)
            )
            raise NotFoundError("File not found")

        name = blob_name(lookup_key, record["file_extension"])
        if not blob_exists(name):
            lifecycle_logger.warning(
                "consistency_fault lookup_key=%s name=%s reason=blob_missing",
                lookup_key,
                name,
            )
            raise NotFoundError("File not found on server")

        stream = open_blob(name)
    except FileNotFoundError:
        lifecycle_logger.warning(
            "file_lookup_missing_race lookup_key=%s", sanitize_log_value(lookup_key)
        )
        raise NotFoundError("File not found on server")
    except (StoreError, OSError) as error:
        lifecycle_logger.error(
            "file_lookup_failed lookup_key=%s error=%s",
            sanitize_log_value(lookup_key),
            error,
        )
        return jsonify({"error": "Error querying database"}), 500

    lifecycle_logger.info("file_served lookup_key=%s name=%s", lookup_key, name)
    return send_file(
        stream,
        mimetype=content_type_for(record["file_extension"]),
        as_attachment=False,
        download_name=name,
    )


@app.route("/upload", methods=["POST"])
def upload():
    file_storage = request.files.get("file")
    if not isinstance(file_storage, FileStorage):
        lifecycle_logger.warning("upload_failed reason=no_file")
        raise InvalidInputError("No file provided")

    with upload_stream_handler(file_storage):
        filename = secure_filename(file_storage.filename) or "unnamed"
        size = _measure_stream(file_storage.stream)
        if size <= 0:
            lifecycle_logger.warning(
                "upload_failed reason=empty filename=%s", sanitize_log_value(filename)
            )
            raise InvalidInputError("Invalid file provided")
        if size > MAX_UPLOAD_BYTES:
            lifecycle_logger.warning(
                "upload_failed reason=too_large filename=%s size=%d",
                sanitize_log_value(filename),
                size,
            )
            raise PayloadTooLargeError(_too_large_message())

        mimetype = file_storage.mimetype
        if mimetype not in ALLOWED_TYPES:
            lifecycle_logger.warning(
                "upload_failed reason=unsupported_type filename=%s content_type=%s",
                sanitize_log_value(filename),
                sanitize_log_value(mimetype),
            )
            raise UnsupportedTypeError(ALLOWED_TYPES)

        extension = resolve_extension(file_storage.filename, mimetype)
        lookup_key = generate_key()
        deletion_key = generate_key()

        try:
            register_upload(lookup_key, deletion_key, extension, file_storage.stream)
        except (StoreError, OSError) as error:
            lifecycle_logger.error(
                "upload_store_failed lookup_key=%s filename=%s error=%s",
                lookup_key,
                sanitize_log_value(filename),
                error,
            )
            return jsonify({"error": "Failed to save the file or update the database"}), 500

    lifecycle_logger.info(
        "upload_completed lookup_key=%s filename=%s size=%d content_type=%s",
        lookup_key,
        sanitize_log_value(filename),
        size,
        mimetype,
    )
    return jsonify({"lookupKey": lookup_key, "deletionKey": deletion_key}), 201


@app.route("/delete/<deletion_key>")
def delete(deletion_key: str):
    if not deletion_key.strip():
        raise InvalidInputError("Invalid deletion key provided")

    try:
        record = get_upload_by_deletion_key(deletion_key)
        if not record:
            lifecycle_logger.info("file_delete_missing")
            raise NotFoundError("File not found")

        lookup_key = record["lookup_key"]
        name = blob_name(lookup_key, record["file_extension"])
        if not blob_exists(name):
            lifecycle_logger.warning(
                "consistency_fault lookup_key=%s name=%s reason=blob_missing",
                lookup_key,
                name,
            )
            raise NotFoundError("File not found on server")

        if not delete_upload(deletion_key):
            raise NotFoundError("File not found")
    except (StoreError, OSError) as error:
        lifecycle_logger.error("file_delete_failed error=%s", error)
        return jsonify({"error": "Error deleting file"}), 500

    lifecycle_logger.info("file_deleted lookup_key=%s", lookup_key)
    return jsonify({"message": "File deleted successfully"}), 200


def main() -> None:
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), debug=False)


if __name__ == "__main__":
    main()
