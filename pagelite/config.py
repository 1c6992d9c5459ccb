import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_UPLOAD_MB = 50
DEFAULT_PORT = 8080
DEFAULT_HOST = "0.0.0.0"
DEFAULT_UPLOAD_RATE_LIMIT = "60 per minute"
DEFAULT_REALM = "PageLite"
DIRECTORY_ORDERS = {"asc", "desc"}

logger = logging.getLogger("pagelite.config")


class ConfigurationError(RuntimeError):
    """Raised when the process environment cannot produce usable settings."""


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class Settings:
    """Immutable server configuration, built once at startup."""

    credentials: Credentials
    storage_root: Path
    logs_dir: Path
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * BYTES_PER_MB
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    log_level: str = "INFO"
    directory_order: str = "desc"
    upload_rate_limit: str = DEFAULT_UPLOAD_RATE_LIMIT
    rate_limit_storage_uri: str = "memory://"
    realm: str = DEFAULT_REALM

    @property
    def max_upload_mb(self) -> float:
        return self.max_upload_bytes / BYTES_PER_MB

    def masked_password(self) -> str:
        return "*" * len(self.credentials.password)


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: str) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key) or default
    return Path(value).expanduser().resolve()


def _safe_int_env(
    environ: Mapping[str, str], key: str, default: int, min_value: int = 1
) -> int:
    """Parse a positive integer variable, warning and falling back on bad input."""
    raw_value = environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    if value < min_value:
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    return value


def _first_env(environ: Mapping[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = environ.get(key)
        if value:
            return value
    return None


def load_credentials(environ: Mapping[str, str]) -> Credentials:
    username = _first_env(environ, "PAGELITE_USER", "USER")
    password = _first_env(environ, "PAGELITE_PASS", "PASS")
    if not username or not password:
        raise ConfigurationError(
            "Environment variables PAGELITE_USER and PAGELITE_PASS "
            "(or USER and PASS) must be set"
        )
    return Credentials(username=username, password=password)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Raises:
        ConfigurationError: if the credential pair is missing.
    """
    if environ is None:
        environ = os.environ

    credentials = load_credentials(environ)

    directory_order = (environ.get("PAGELITE_DIR_ORDER") or "desc").strip().lower()
    if directory_order not in DIRECTORY_ORDERS:
        logger.warning(
            "Invalid value for PAGELITE_DIR_ORDER: %s. Using default: desc",
            directory_order,
        )
        directory_order = "desc"

    return Settings(
        credentials=credentials,
        storage_root=_resolve_env_path(environ, "PAGELITE_DATA_DIR", "./data"),
        logs_dir=_resolve_env_path(environ, "PAGELITE_LOGS_DIR", "./logs"),
        max_upload_bytes=_safe_int_env(environ, "MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)
        * BYTES_PER_MB,
        port=_safe_int_env(environ, "PORT", DEFAULT_PORT),
        host=environ.get("HOST") or DEFAULT_HOST,
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
        directory_order=directory_order,
        upload_rate_limit=environ.get("PAGELITE_UPLOAD_RATE_LIMIT")
        or DEFAULT_UPLOAD_RATE_LIMIT,
        rate_limit_storage_uri=environ.get("PAGELITE_RATE_LIMIT_STORAGE")
        or "memory://",
    )
