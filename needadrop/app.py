import os
import secrets
import shutil
import time
import uuid
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, Response, current_app, g, jsonify, request, send_file
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import RequestEntityTooLarge

from .config import BYTES_PER_MB, ensure_directories, normalize_config
from .db import Store
from .errors import (
    INTERNAL_ERROR_MESSAGE,
    InvalidLinkParameters,
    LinkExpired,
    NeedADropError,
    PersistenceError,
    SessionError,
    SessionNotFound,
    StorageIOError,
)
from .lifecycle import LinkState
from .links import LinkRegistry, megabytes_to_bytes
from .logs import configure_logging, get_logger, sanitize_log_value
from .maintenance import Maintenance
from .quota import QuotaEngine
from .sessions import SessionGuard
from .storage import StorageManager
from .uploads import UploadService

SESSION_COOKIE_NAME = "needadrop_session"

logger = get_logger("needadrop.app")


class Services:
    """The core services one application instance works with."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.config = config
        self.store = Store(config["db_path"], retry_attempts=config["db_retry_attempts"])
        self.storage = StorageManager(config["uploads_dir"])
        self.quota = QuotaEngine(self.store)
        self.links = LinkRegistry(self.store)
        self.uploads = UploadService(self.store, self.storage, self.quota)
        self.sessions = SessionGuard(
            self.store,
            session_lifetime_seconds=config["session_lifetime_minutes"] * 60,
            hash_method=config["password_hash_method"],
        )
        self.maintenance = Maintenance(self.store, self.storage, self.sessions)
        self.scheduler = None


def services() -> Services:
    return current_app.extensions["needadrop"]


def _request_values() -> Dict[str, Any]:
    payload = request.get_json(silent=True) if request.is_json else None
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def _session_token_from_request() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE_NAME) or None


def require_admin(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        token = _session_token_from_request()
        if not token:
            raise SessionNotFound()
        g.admin_id = services().sessions.validate(token)
        g.session_token = token
        return view(*args, **kwargs)

    return wrapped


def _measure_stream(stream: Any) -> Optional[int]:
    """Size of a spooled upload part, leaving the read position unchanged."""

    try:
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        size = stream.tell() - position
        stream.seek(position)
    except (AttributeError, OSError, ValueError):
        return None
    return size


def _declared_size(upload: FileStorage) -> Optional[int]:
    raw_value = request.form.get("size") or request.headers.get("X-Upload-Size")
    if raw_value not in (None, ""):
        try:
            value = int(raw_value)
        except (TypeError, ValueError):
            return None
        return value if value >= 0 else None
    return _measure_stream(upload.stream)


def _serialize_upload(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "link_id": record["link_id"],
        "filename": record["original_filename"],
        "size_bytes": record["size_bytes"],
        "mime_type": record["mime_type"],
        "uploaded_at": record["uploaded_at"],
    }


def register_routes(app: Flask) -> None:
    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def finalize_response(response: Response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        logger.info(
            "request_completed method=%s path=%s status=%d",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
        )
        return response

    @app.errorhandler(NeedADropError)
    def handle_core_error(error: NeedADropError):
        if isinstance(error, (PersistenceError, StorageIOError)):
            logger.error(
                "request_failed code=%s error=%s", error.code, sanitize_log_value(str(error))
            )
        else:
            logger.info(
                "request_rejected code=%s error=%s", error.code, sanitize_log_value(str(error))
            )
        response = jsonify(error.to_payload())
        response.status_code = error.status
        if isinstance(error, SessionError):
            response.delete_cookie(SESSION_COOKIE_NAME)
        return response

    @app.errorhandler(RequestEntityTooLarge)
    def handle_file_too_large(error):  # pragma: no cover - framework hook
        return jsonify({"error": "File too large", "code": "too_large"}), 413

    @app.errorhandler(500)
    def handle_internal_error(error):  # pragma: no cover - framework hook
        return jsonify({"error": INTERNAL_ERROR_MESSAGE, "code": "error"}), 500

    @app.route("/health")
    def health_check():
        checks: Dict[str, Any] = {}
        healthy = True
        svc = services()

        try:
            svc.store.ping()
            checks["database"] = "ok"
        except PersistenceError:
            checks["database"] = "error"
            healthy = False

        try:
            svc.storage.ensure_root()
            probe_file = svc.storage.root / f".health_check_{uuid.uuid4().hex}"
            probe_file.write_text("health_check", encoding="utf-8")
            probe_file.unlink(missing_ok=True)
            checks["uploads_writable"] = "ok"
            checks["disk_free_bytes"] = shutil.disk_usage(svc.storage.root).free
        except OSError:
            checks["uploads_writable"] = "error"
            healthy = False

        checks["scheduler_running"] = bool(svc.scheduler is not None and svc.scheduler.running)
        return jsonify(
            {
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": time.time(),
                "checks": checks,
            }
        ), (200 if healthy else 503)

    @app.route("/u/<token>", methods=["GET"])
    def link_info(token: str):
        svc = services()
        link = svc.links.get_link_by_token(token)
        state = svc.links.state_of(link)
        if state not in (LinkState.ACTIVE, LinkState.EXHAUSTED):
            raise LinkExpired()
        return jsonify(svc.links.describe(link, include_token=False))

    @app.route("/u/<token>", methods=["POST"])
    def upload(token: str):
        upload_storage = request.files.get("file")
        if not isinstance(upload_storage, FileStorage) or not upload_storage.filename:
            logger.warning("upload_failed reason=no_file_part")
            return jsonify({"error": "No file was uploaded.", "code": "no_file"}), 400

        size = _declared_size(upload_storage)
        if size is None:
            return jsonify({"error": "Upload size could not be determined.", "code": "size_unknown"}), 400

        svc = services()
        try:
            record = svc.uploads.upload(
                token,
                upload_storage.filename,
                upload_storage.stream,
                size,
                upload_storage.content_type,
            )
        finally:
            upload_storage.close()

        link = svc.links.get_link(record["link_id"])
        payload = _serialize_upload(record)
        payload["link"] = svc.links.describe(link, include_token=False)
        payload["message"] = "File uploaded successfully."
        return jsonify(payload), 201

    @app.route("/login", methods=["POST"])
    def login():
        values = _request_values()
        svc = services()
        token = svc.sessions.authenticate(
            str(values.get("username", "")), str(values.get("password", ""))
        )
        lifetime = int(svc.sessions.session_lifetime_seconds)
        response = jsonify({"token": token, "expires_in": lifetime})
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=lifetime,
            httponly=True,
            secure=current_app.config["SESSION_COOKIE_SECURE"],
            samesite="Strict",
        )
        return response

    @app.route("/logout", methods=["POST"])
    def logout():
        services().sessions.revoke(_session_token_from_request() or "")
        response = jsonify({"message": "Logged out."})
        response.delete_cookie(SESSION_COOKIE_NAME)
        return response

    @app.route("/admin/password", methods=["POST"])
    @require_admin
    def change_password():
        values = _request_values()
        new_password = str(values.get("new_password", ""))
        if new_password != str(values.get("confirm_password", "")):
            return jsonify({"error": "New passwords do not match.", "code": "password_mismatch"}), 400
        services().sessions.change_password(
            g.admin_id, str(values.get("current_password", "")), new_password
        )
        return jsonify({"message": "Password changed successfully."})

    @app.route("/admin/links", methods=["GET"])
    @require_admin
    def admin_links():
        svc = services()
        include_deleted = request.args.get("include_deleted", "").lower() in {"1", "true", "yes"}
        links = svc.links.list_links(include_deleted=include_deleted)
        return jsonify({"links": [svc.links.describe(link) for link in links]})

    @app.route("/admin/links", methods=["POST"])
    @require_admin
    def create_link():
        values = _request_values()
        if values.get("quota_bytes") not in (None, ""):
            quota = values.get("quota_bytes")
        elif values.get("quota_mb") not in (None, ""):
            quota = megabytes_to_bytes(values.get("quota_mb"))
        else:
            raise InvalidLinkParameters("A quota is required.")
        svc = services()
        link = svc.links.create_link(
            values.get("name"), quota, values.get("expires_in_hours")
        )
        payload = svc.links.describe(link)
        payload["upload_path"] = f"/u/{link['token']}"
        return jsonify(payload), 201

    @app.route("/admin/links/<link_id>", methods=["PATCH"])
    @require_admin
    def update_link(link_id: str):
        values = _request_values()
        svc = services()
        link = svc.links.update_expiry(link_id, values.get("expires_in_hours"))
        return jsonify(svc.links.describe(link))

    @app.route("/admin/links/<link_id>", methods=["DELETE"])
    @require_admin
    def delete_link(link_id: str):
        removed = services().uploads.delete_link(link_id)
        logger.info(
            "link_deleted_manual link_id=%s admin_id=%s",
            sanitize_log_value(link_id),
            g.admin_id,
        )
        return jsonify({"message": "Link deleted.", "files_removed": removed})

    @app.route("/admin/uploads", methods=["GET"])
    @require_admin
    def admin_uploads():
        svc = services()
        groups = []
        for link in svc.links.list_links():
            uploads = svc.uploads.list_uploads(link["id"])
            if not uploads:
                continue
            groups.append(
                {
                    "link": svc.links.describe(link),
                    "uploads": [_serialize_upload(record) for record in uploads],
                }
            )
        return jsonify({"groups": groups})

    @app.route("/admin/uploads/<file_id>/download", methods=["GET"])
    @require_admin
    def download_upload(file_id: str):
        record, path = services().uploads.open_upload(file_id)
        return send_file(
            path,
            mimetype=record["mime_type"],
            as_attachment=True,
            download_name=record["original_filename"],
            max_age=0,
        )

    @app.route("/admin/uploads/<file_id>", methods=["DELETE"])
    @require_admin
    def delete_upload(file_id: str):
        record = services().uploads.delete_upload(file_id)
        logger.info(
            "file_deleted_manual file_id=%s admin_id=%s",
            sanitize_log_value(file_id),
            g.admin_id,
        )
        return jsonify({"message": "Upload deleted.", "size_bytes": record["size_bytes"]})


def create_app(config: Optional[Dict[str, Any]] = None) -> Flask:
    """Build a Flask application around a fresh set of core services."""

    settings = normalize_config(config)
    testing = bool(settings.get("TESTING", False))
    if settings.get("log_to_file", not testing):
        configure_logging(settings["log_level"], settings["logs_dir"])
    ensure_directories(settings)

    svc = Services(settings)
    svc.store.init_schema()
    svc.storage.ensure_root()
    svc.sessions.ensure_admin(settings["admin_username"], settings["admin_password"])

    app = Flask(__name__)
    app.config["TESTING"] = testing
    app.config["SECRET_KEY"] = settings.get("secret_key") or secrets.token_hex(32)
    app.config["MAX_CONTENT_LENGTH"] = int(settings["max_upload_size_mb"] * BYTES_PER_MB)
    secure_override = settings.get("session_cookie_secure")
    app.config["SESSION_COOKIE_SECURE"] = (
        (not testing) if secure_override is None else bool(secure_override)
    )
    if not app.config["SESSION_COOKIE_SECURE"] and not testing:
        get_logger("needadrop.security").warning(
            "SECURITY WARNING: SESSION_COOKIE_SECURE is disabled. "
            "Session cookies will be sent over unencrypted HTTP connections."
        )
    app.extensions["needadrop"] = svc
    register_routes(app)

    enable_scheduler = settings.get("enable_scheduler")
    if enable_scheduler is None:
        enable_scheduler = not testing
    if enable_scheduler:
        svc.scheduler = svc.maintenance.start_scheduler(settings["cleanup_interval_minutes"])

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False)
