#!/usr/bin/env python3
"""
Tracker Core Module
Shared primitives for the storage, sync and web layers: errors, ids,
timestamps, password hashing and the atomic JSON writer.
"""

import os
import re
import json
import time
import uuid
import string
import hashlib
import secrets
import logging
import binascii
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from config import PASSWORD_ITERATIONS, PASSWORD_SALT_BYTES, TEMP_MARKER

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# ============================================================================
# ERRORS
# ============================================================================

class NotFoundError(LookupError):
    """Raised when an update or delete targets an id that is not stored."""
    status = 404

    def __init__(self, collection: str, item_id: str):
        super().__init__(f"Item not found: {collection}/{item_id}")
        self.collection = collection
        self.item_id = item_id


class ConflictError(ValueError):
    """Raised when a create carries an id that already exists in the collection."""
    status = 409

    def __init__(self, collection: str, item_id: str):
        super().__init__(f"Item already exists: {collection}/{item_id}")
        self.collection = collection
        self.item_id = item_id


# ============================================================================
# IDS & TIMESTAMPS
# ============================================================================
_BASE36 = string.digits + string.ascii_lowercase
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def base36_token(length: int = 8) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def random_id() -> str:
    """Random UUID, or a short base36 token when uuid generation fails."""
    try:
        return str(uuid.uuid4())
    except Exception:
        return "id_" + base36_token()


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def next_timestamp(previous: str | None) -> str:
    """Current time, forced strictly after ``previous`` when the clock ties."""
    now = now_iso()
    if not previous or now > previous:
        return now
    try:
        parsed = datetime.strptime(previous, _TIMESTAMP_FORMAT)
    except ValueError:
        return now
    return (parsed + timedelta(microseconds=1)).strftime(_TIMESTAMP_FORMAT)


# ============================================================================
# VALIDATION
# ============================================================================
_COLLECTION_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def validate_collection_name(name: str) -> str:
    """Collection names double as file names; reject anything not filesystem-safe."""
    if not isinstance(name, str) or not _COLLECTION_NAME.match(name):
        raise ValueError(f"Invalid collection name: {name!r}")
    return name


def normalize_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def slugify(value: object) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", normalize_text(value).lower())
    return slug.strip("-")


def ensure_dirs(*paths) -> None:
    """Ensure directories exist, create if needed."""
    for path in paths:
        os.makedirs(path, exist_ok=True)


# ============================================================================
# ATOMIC JSON FILES
# ============================================================================

def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it over the target.

    Readers see either the old file or the new one. The original is untouched
    until the rename succeeds.
    """
    path = Path(path)
    ensure_dirs(str(path.parent))
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    stamp = int(time.time() * 1000)
    tmp_handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        delete=False,
        dir=str(path.parent),
        prefix=f"{path.name}{TEMP_MARKER}{stamp}-",
    )
    temp_path = tmp_handle.name
    try:
        with tmp_handle:
            tmp_handle.write(payload)
        logger.debug("content write target=%s tmp=%s", path, temp_path)
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                logger.warning("Could not remove temp file %s", temp_path)


def read_json(path: Path, default: Any = None) -> Any:
    """Parse a JSON file; missing or corrupt files yield ``default`` with a warning."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return default
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read JSON %s: %s", path, exc)
        return default


# ============================================================================
# SECURITY FUNCTIONS
# ============================================================================

def _hash_password(password: str, salt: bytes | None = None, iterations: int = PASSWORD_ITERATIONS):
    if salt is None:
        salt = secrets.token_bytes(PASSWORD_SALT_BYTES)
    key = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, iterations)
    return {
        'salt': salt.hex(),
        'iterations': iterations,
        'key': key.hex()
    }


def _verify_password(password: str, salt_hex: str, iterations: int, key_hex: str) -> bool:
    salt = bytes.fromhex(salt_hex)
    key = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, iterations)
    return secrets.compare_digest(binascii.hexlify(key).decode(), key_hex)


def check_user_password(user: dict, password: str) -> bool:
    stored = user.get("passwordHash")
    if not isinstance(stored, dict) or not password:
        return False
    try:
        return _verify_password(
            password,
            stored["salt"],
            int(stored.get("iterations", PASSWORD_ITERATIONS)),
            stored["key"],
        )
    except (KeyError, ValueError, TypeError):
        return False


def public_user(user: dict) -> dict:
    """User record without credential fields."""
    return {key: value for key, value in user.items() if key not in ("passwordHash", "password")}


if __name__ == "__main__":
    print(f"Tracker Core Module v{APP_VERSION}")
