"""
Unified configuration and constants for the Tracker application.
Centralizes storage layout, sync tuning, and environment-driven settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# ============================================================================
# STORAGE LAYOUT
# ============================================================================
DEFAULT_DATA_DIR = os.path.join(os.path.expanduser("~"), "Documents", "Tracker")
CONTENT_DIR_NAME = "content"
LEGACY_PROJECTS_FILE = "data.json"
LOCAL_STORAGE_FILE = "local_storage.json"

COLLECTION_SUFFIX = ".json"
TEMP_MARKER = ".tmp-"

# A collection file holding just "[]"
EMPTY_COLLECTION_BYTES = 2

# ============================================================================
# STORE BACKENDS
# ============================================================================
STORE_FILE = "file"
STORE_DB = "db"
STORE_CHOICES = (STORE_FILE, STORE_DB)
SQLITE_URL_PREFIX = "sqlite:///"

# ============================================================================
# PAGE REGISTRY
# ============================================================================
PAGES_COLLECTION = "pages"
USERS_COLLECTION = "users"
PROJECTS_COLLECTION = "projects"

DEFAULT_PAGES = [
    {"slug": "bva", "title": "Budget vs Actual", "isUniversal": True, "isHidden": False},
    {"slug": "admin", "title": "Admin Panel", "isUniversal": False, "isHidden": False},
    {"slug": "home", "title": "Home", "isUniversal": True, "isHidden": False},
]

# ============================================================================
# SESSION / AUTH
# ============================================================================
SESSION_COOKIE = "tracker_session"
PASSWORD_ITERATIONS = 200_000
PASSWORD_SALT_BYTES = 16

# ============================================================================
# CLIENT SYNC
# ============================================================================
LOCAL_KEY_PREFIX = "admin:"
OUTBOX_KEY = "sync:outbox"
OUTBOX_MAX_ATTEMPTS = 5
OUTBOX_BASE_DELAY = 0.5
OUTBOX_MAX_DELAY = 30.0
OUTBOX_POLL_INTERVAL = 2.0

# ============================================================================
# SERVER
# ============================================================================
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5175


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Resolved runtime settings. Built once at startup and passed down."""
    data_dir: Path
    store: str = STORE_FILE
    database_url: str = ""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    cookie_secure: bool = False
    pages: list[dict] = field(default_factory=lambda: [dict(p) for p in DEFAULT_PAGES])

    @property
    def content_dir(self) -> Path:
        return self.data_dir / CONTENT_DIR_NAME

    @property
    def legacy_file(self) -> Path:
        return self.data_dir / LEGACY_PROJECTS_FILE

    @property
    def local_storage_file(self) -> Path:
        return self.data_dir / LOCAL_STORAGE_FILE

    @classmethod
    def from_env(cls, **overrides) -> Settings:
        store = os.getenv("TRACKER_STORE", STORE_FILE).strip().lower() or STORE_FILE
        if store not in STORE_CHOICES:
            raise ValueError(f"TRACKER_STORE must be one of {', '.join(STORE_CHOICES)}, got {store!r}")
        values = {
            "data_dir": Path(os.getenv("TRACKER_DATA_DIR", "").strip() or DEFAULT_DATA_DIR),
            "store": store,
            "database_url": os.getenv("DATABASE_URL", "").strip(),
            "host": os.getenv("TRACKER_HOST", "").strip() or DEFAULT_HOST,
            "port": int(os.getenv("TRACKER_PORT", "").strip() or DEFAULT_PORT),
            "log_level": os.getenv("TRACKER_LOG_LEVEL", "").strip().upper() or "INFO",
            "cookie_secure": _env_flag("TRACKER_COOKIE_SECURE"),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        values["data_dir"] = Path(values["data_dir"])
        return cls(**values)


def load_settings(**overrides) -> Settings:
    return Settings.from_env(**overrides)
