import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional

BYTES_PER_MB = 1024 * 1024
PASSWORD_MIN_LENGTH = 8
MAX_LINK_NAME_LENGTH = 255

DEFAULT_SESSION_LIFETIME_MINUTES = 720
DEFAULT_MAX_UPLOAD_SIZE_MB = 1024
DEFAULT_DB_RETRY_ATTEMPTS = 5
DEFAULT_CLEANUP_INTERVAL_MINUTES = 15
DEFAULT_PASSWORD_HASH_METHOD = "scrypt"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

logger = logging.getLogger("needadrop.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        coerced = float(value)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(coerced) or math.isinf(coerced) or coerced < 1:
        return fallback
    return int(coerced)


def load_config() -> Dict[str, Any]:
    """Build the runtime configuration from the process environment."""

    storage_root = _resolve_env_path("NEEDADROP_STORAGE_ROOT", Path.cwd() / "data")
    data_dir = _resolve_env_path("NEEDADROP_DATA_DIR", storage_root / "db")
    config: Dict[str, Any] = {
        "storage_root": storage_root,
        "uploads_dir": _resolve_env_path("NEEDADROP_UPLOADS_DIR", storage_root / "uploads"),
        "data_dir": data_dir,
        "logs_dir": _resolve_env_path("NEEDADROP_LOGS_DIR", storage_root / "logs"),
        "db_path": _resolve_env_path("NEEDADROP_DB_PATH", data_dir / "needadrop.db"),
        "session_lifetime_minutes": _safe_int_env(
            "NEEDADROP_SESSION_LIFETIME_MINUTES", DEFAULT_SESSION_LIFETIME_MINUTES
        ),
        "password_hash_method": (
            os.environ.get("NEEDADROP_PASSWORD_HASH_METHOD", "").strip()
            or DEFAULT_PASSWORD_HASH_METHOD
        ),
        "admin_username": (
            os.environ.get("NEEDADROP_ADMIN_USERNAME", "").strip() or "admin"
        ),
        "admin_password": os.environ.get("NEEDADROP_ADMIN_PASSWORD") or None,
        "max_upload_size_mb": _safe_int_env(
            "NEEDADROP_MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB
        ),
        "db_retry_attempts": _safe_int_env(
            "NEEDADROP_DB_RETRY_ATTEMPTS", DEFAULT_DB_RETRY_ATTEMPTS
        ),
        "cleanup_interval_minutes": _safe_int_env(
            "NEEDADROP_CLEANUP_INTERVAL_MINUTES", DEFAULT_CLEANUP_INTERVAL_MINUTES
        ),
        "enable_scheduler": _get_optional_bool_env("NEEDADROP_ENABLE_SCHEDULER"),
        "session_cookie_secure": _get_optional_bool_env("SESSION_COOKIE_SECURE"),
        "log_level": os.environ.get("LOG_LEVEL", "INFO").upper(),
        "secret_key": os.environ.get("SECRET_KEY") or None,
    }
    return config


def normalize_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge *overrides* on top of the environment configuration.

    Paths are coerced to resolved :class:`Path` objects and numeric limits
    fall back to their defaults when they are missing, non-numeric or below
    one, so callers can hand in partially filled dictionaries from tests.
    """

    config = load_config()
    if overrides:
        config.update(overrides)

    for key in ("storage_root", "uploads_dir", "data_dir", "logs_dir", "db_path"):
        config[key] = Path(config[key]).expanduser().resolve()

    config["session_lifetime_minutes"] = _coerce_positive_int(
        config.get("session_lifetime_minutes"), DEFAULT_SESSION_LIFETIME_MINUTES
    )
    config["max_upload_size_mb"] = _coerce_positive_int(
        config.get("max_upload_size_mb"), DEFAULT_MAX_UPLOAD_SIZE_MB
    )
    config["db_retry_attempts"] = _coerce_positive_int(
        config.get("db_retry_attempts"), DEFAULT_DB_RETRY_ATTEMPTS
    )
    config["cleanup_interval_minutes"] = _coerce_positive_int(
        config.get("cleanup_interval_minutes"), DEFAULT_CLEANUP_INTERVAL_MINUTES
    )

    if not isinstance(config.get("password_hash_method"), str) or not config[
        "password_hash_method"
    ].strip():
        config["password_hash_method"] = DEFAULT_PASSWORD_HASH_METHOD

    # Upload directories are named after link ids, so the database must not
    # live inside the uploads tree where orphan cleanup would treat it as junk.
    uploads_dir = config["uploads_dir"]
    if uploads_dir == config["db_path"].parent or uploads_dir in config["db_path"].parents:
        raise ValueError("NEEDADROP_DB_PATH must not be inside NEEDADROP_UPLOADS_DIR")

    return config


def ensure_directories(config: Dict[str, Any]) -> None:
    config["uploads_dir"].mkdir(parents=True, exist_ok=True)
    config["data_dir"].mkdir(parents=True, exist_ok=True)
    config["db_path"].parent.mkdir(parents=True, exist_ok=True)
    config["logs_dir"].mkdir(parents=True, exist_ok=True)
