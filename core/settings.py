"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``.

    ``FIELDSYNC_DATA_DIR`` wins over the platform default so that a device
    image or a test run can pin the queue database somewhere else.
    """

    platform_id = (platform or sys.platform).lower()
    environ = dict(env if env is not None else os.environ)
    override = environ.get("FIELDSYNC_DATA_DIR")
    if override:
        return Path(override).expanduser()

    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return base.expanduser() / sanitized


APP_NAME = "FieldSync"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
LOG_DIR = DATA_DIR / "logs"
PHOTO_DIR = DATA_DIR / "job-photos"

for _dir in (DATA_DIR, STORAGE_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "fieldsync.db"
SERVER_DB_PATH = STORAGE_DIR / "field-jobs.db"
CONFIG_PATH = STORAGE_DIR / "config.json"
DEVICE_ID_PATH = DATA_DIR / "device_id.txt"


@dataclass(frozen=True)
class ReplaySettings:
    max_attempts: int = 3
    request_timeout_sec: float = 30.0
    server_url: str = "http://localhost:3000"
    idempotency_header: str = "Idempotency-Key"
    device_header: str = "X-Device-Id"
    retryable_status: tuple[int, ...] = (408, 409, 412, 425, 429)


REPLAY = ReplaySettings()


@dataclass(frozen=True)
class CacheSettings:
    version: str = "v1"
    prefix: str = "fieldsync"
    offline_fallback_path: str = "/app/field"
    precache_paths: tuple[str, ...] = (
        "/app/field",
        "/app/field/route",
        "/app/field/shift",
        "/app/field/history",
    )

    @property
    def static_bucket(self) -> str:
        return f"{self.prefix}-static-{self.version}"

    @property
    def dynamic_bucket(self) -> str:
        return f"{self.prefix}-dynamic-{self.version}"


CACHE = CacheSettings()


@dataclass(frozen=True)
class RoutingSettings:
    api_prefixes: tuple[str, ...] = ("/api/field/",)
    page_prefixes: tuple[str, ...] = ("/app/field",)
    static_prefixes: tuple[str, ...] = ("/images/", "/fonts/", "/_next/static/")
    static_destinations: tuple[str, ...] = ("image", "font", "style", "script")
    static_extensions: tuple[str, ...] = (
        ".png",
        ".jpg",
        ".jpeg",
        ".webp",
        ".svg",
        ".gif",
        ".ico",
        ".woff",
        ".woff2",
        ".ttf",
        ".css",
        ".js",
    )


ROUTING = RoutingSettings()


@dataclass(frozen=True)
class PhotoSettings:
    directory: Path = PHOTO_DIR
    max_bytes: int = 10 * 1024 * 1024
    allowed_types: tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")
    photo_types: tuple[str, ...] = ("before", "after", "issue")
    default_type: str = "after"


PHOTOS = PhotoSettings()


@dataclass(frozen=True)
class LoggingSettings:
    path: Path = LOG_DIR / "fieldsync.log"
    max_bytes: int = 1_000_000
    backup_count: int = 3
    level: str = "INFO"


LOGGING = LoggingSettings()


@dataclass(frozen=True)
class ConnectivitySettings:
    health_path: str = "/api/health"
    poll_interval_sec: float = 15.0
    probe_timeout_sec: float = 5.0


CONNECTIVITY = ConnectivitySettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "LOG_DIR",
    "PHOTO_DIR",
    "DB_PATH",
    "SERVER_DB_PATH",
    "CONFIG_PATH",
    "DEVICE_ID_PATH",
    "REPLAY",
    "CACHE",
    "ROUTING",
    "PHOTOS",
    "LOGGING",
    "CONNECTIVITY",
    "CacheSettings",
    "ConnectivitySettings",
    "PhotoSettings",
    "ReplaySettings",
    "RoutingSettings",
    "get_default_data_dir",
]
