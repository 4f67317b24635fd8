"""
Relational collection store: one row per item keyed by (collection, id) with a
JSON payload column. Runs on sqlite when DATABASE_URL is configured and on an
in-memory mock otherwise.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path

from config import SQLITE_URL_PREFIX
from tracker import (
    ConflictError,
    NotFoundError,
    ensure_dirs,
    next_timestamp,
    now_iso,
    random_id,
    validate_collection_name,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
_TIMESTAMP_KEYS = ("createdAt", "updatedAt", "created_at", "updated_at")


def _page_from_row(row) -> dict:
    return {
        "slug": row["slug"],
        "title": row["title"],
        "isUniversal": bool(row["is_universal"]),
        "isHidden": bool(row["is_hidden"]),
    }


# ============================================================================
# SQLITE BACKEND
# ============================================================================

class SqliteBackend:
    kind = "sqlite"

    def __init__(self, path: str):
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not open")
        return self._conn

    def open(self) -> None:
        if self._conn is not None:
            return
        if self.path != ":memory:":
            ensure_dirs(str(Path(self.path).parent))
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        self._conn = conn
        self._db_init()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _db_init(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS collections (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS items (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            );

            CREATE INDEX IF NOT EXISTS idx_items_collection_updated ON items(collection, updated_at);

            CREATE TABLE IF NOT EXISTS pages (
                slug TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                is_universal INTEGER NOT NULL DEFAULT 0,
                is_hidden INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        self.conn.commit()
        if self._meta_get("schema_version") is None:
            self._meta_set("schema_version", SCHEMA_VERSION)

    def _meta_get(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def _meta_set(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        self.conn.commit()

    def ensure_collection(self, name: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO collections(name, created_at) VALUES(?, ?) ON CONFLICT(name) DO NOTHING",
                (name, now_iso()),
            )
            self.conn.commit()

    def list_collections(self) -> list[str]:
        with self._lock:
            rows = self.conn.execute("SELECT name FROM collections ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    def fetch_all(self, collection: str) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, data, created_at, updated_at FROM items "
                "WHERE collection=? ORDER BY updated_at DESC, rowid DESC",
                (collection,),
            ).fetchall()
        return [self._record(row) for row in rows]

    def fetch_one(self, collection: str, item_id: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT id, data, created_at, updated_at FROM items WHERE collection=? AND id=? LIMIT 1",
                (collection, item_id),
            ).fetchone()
        return self._record(row) if row else None

    @staticmethod
    def _record(row) -> dict:
        return {
            "id": row["id"],
            "data": json.loads(row["data"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def insert(self, collection: str, item_id: str, data: dict, created_at: str, updated_at: str) -> None:
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO items(collection, id, data, created_at, updated_at)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (collection, item_id, json.dumps(data, ensure_ascii=False), created_at, updated_at),
                )
            except sqlite3.IntegrityError as exc:
                self.conn.rollback()
                raise ConflictError(collection, item_id) from exc
            self.conn.commit()

    def update(self, collection: str, item_id: str, data: dict, updated_at: str) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE items SET data=?, updated_at=? WHERE collection=? AND id=?",
                (json.dumps(data, ensure_ascii=False), updated_at, collection, item_id),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM items WHERE collection=? AND id=?", (collection, item_id))
            self.conn.commit()

    def list_pages(self) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT slug, title, is_universal, is_hidden FROM pages ORDER BY slug"
            ).fetchall()
        return [_page_from_row(row) for row in rows]

    def seed_pages(self, pages: list[dict]) -> int:
        added = 0
        with self._lock:
            for page in pages:
                cursor = self.conn.execute(
                    """
                    INSERT INTO pages(slug, title, is_universal, is_hidden)
                    VALUES(?, ?, ?, ?)
                    ON CONFLICT(slug) DO NOTHING
                    """,
                    (
                        page["slug"],
                        page.get("title") or page["slug"],
                        1 if page.get("isUniversal") else 0,
                        1 if page.get("isHidden") else 0,
                    ),
                )
                added += cursor.rowcount
            self.conn.commit()
        return added


# ============================================================================
# MOCK BACKEND
# ============================================================================

class MockBackend:
    """In-memory stand-in with the same ordering and not-found behavior as sqlite.

    State lives as long as this object; the app builds one at startup.
    """

    kind = "mock"

    def __init__(self):
        self.collections: set[str] = set()
        self.items: dict[str, dict] = {}
        self.pages: dict[str, dict] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def open(self) -> None:
        logger.info("Mock database initialized")

    def close(self) -> None:
        pass

    @staticmethod
    def _key(collection: str, item_id: str) -> str:
        return f"{collection}:{item_id}"

    def ensure_collection(self, name: str) -> None:
        with self._lock:
            self.collections.add(name)

    def list_collections(self) -> list[str]:
        with self._lock:
            return sorted(self.collections)

    @staticmethod
    def _record(entry: dict) -> dict:
        return {
            "id": entry["id"],
            "data": json.loads(json.dumps(entry["data"])),
            "created_at": entry["created_at"],
            "updated_at": entry["updated_at"],
        }

    def fetch_all(self, collection: str) -> list[dict]:
        with self._lock:
            entries = [entry for entry in self.items.values() if entry["collection"] == collection]
        entries.sort(key=lambda entry: (entry["updated_at"], entry["seq"]), reverse=True)
        return [self._record(entry) for entry in entries]

    def fetch_one(self, collection: str, item_id: str) -> dict | None:
        with self._lock:
            entry = self.items.get(self._key(collection, item_id))
            return self._record(entry) if entry else None

    def insert(self, collection: str, item_id: str, data: dict, created_at: str, updated_at: str) -> None:
        key = self._key(collection, item_id)
        with self._lock:
            if key in self.items:
                raise ConflictError(collection, item_id)
            self._seq += 1
            self.items[key] = {
                "id": item_id,
                "collection": collection,
                "data": json.loads(json.dumps(data)),
                "created_at": created_at,
                "updated_at": updated_at,
                "seq": self._seq,
            }

    def update(self, collection: str, item_id: str, data: dict, updated_at: str) -> bool:
        with self._lock:
            entry = self.items.get(self._key(collection, item_id))
            if entry is None:
                return False
            entry["data"] = json.loads(json.dumps(data))
            entry["updated_at"] = updated_at
            return True

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            self.items.pop(self._key(collection, item_id), None)

    def list_pages(self) -> list[dict]:
        with self._lock:
            return [dict(self.pages[slug]) for slug in sorted(self.pages)]

    def seed_pages(self, pages: list[dict]) -> int:
        added = 0
        with self._lock:
            for page in pages:
                if page["slug"] in self.pages:
                    continue
                self.pages[page["slug"]] = {
                    "slug": page["slug"],
                    "title": page.get("title") or page["slug"],
                    "isUniversal": bool(page.get("isUniversal")),
                    "isHidden": bool(page.get("isHidden")),
                }
                added += 1
        return added


def resolve_backend(database_url: str | None):
    """Pick the backend once at startup from the connection string."""
    url = (database_url or "").strip()
    if not url:
        logger.warning("No DATABASE_URL found, using mock database for development")
        return MockBackend()
    if not url.startswith(SQLITE_URL_PREFIX):
        raise ValueError(f"Unsupported DATABASE_URL: {url!r} (expected {SQLITE_URL_PREFIX}<path>)")
    path = url[len(SQLITE_URL_PREFIX):] or ":memory:"
    logger.info("Using sqlite database at %s", path)
    return SqliteBackend(path)


# ============================================================================
# STORE
# ============================================================================

class RelationalCollectionStore:
    """Collection CRUD over a relational backend.

    Reads come back most-recently-updated first. Updating a missing id raises
    NotFoundError; deleting a missing id succeeds quietly.
    """

    def __init__(self, backend):
        self.db = backend

    @property
    def backend(self) -> str:
        return self.db.kind

    @property
    def content_dir(self) -> None:
        return None

    def open(self) -> None:
        self.db.open()

    def close(self) -> None:
        self.db.close()

    @staticmethod
    def _item(record: dict) -> dict:
        return {
            **record["data"],
            "id": record["id"],
            "createdAt": record["created_at"],
            "updatedAt": record["updated_at"],
        }

    @staticmethod
    def _payload(item: dict) -> dict:
        return {key: value for key, value in item.items() if key not in _TIMESTAMP_KEYS}

    def _ensure(self, collection: str) -> None:
        validate_collection_name(collection)
        self.db.ensure_collection(collection)

    def list_collections(self) -> list[str]:
        return self.db.list_collections()

    def get_all(self, collection: str) -> list[dict]:
        self._ensure(collection)
        return [self._item(record) for record in self.db.fetch_all(collection)]

    def get_one(self, collection: str, item_id: str) -> dict | None:
        self._ensure(collection)
        record = self.db.fetch_one(collection, item_id)
        return self._item(record) if record else None

    def create_one(self, collection: str, payload: dict | None = None, keep_timestamps: bool = False) -> dict:
        self._ensure(collection)
        payload = dict(payload or {})
        item_id = payload.get("id")
        if not isinstance(item_id, str) or not item_id:
            item_id = random_id()
        nested = payload.get("data")
        source = nested if isinstance(nested, dict) else payload
        name = payload.get("name")
        if name is None and isinstance(nested, dict):
            name = nested.get("name")
        data = {**self._payload(source), "id": item_id, "name": "Untitled" if name is None else name}

        now = now_iso()
        created_at = updated_at = now
        if keep_timestamps:
            created_at = payload.get("createdAt") or payload.get("created_at") or now
            updated_at = payload.get("updatedAt") or payload.get("updated_at") or created_at
        self.db.insert(collection, item_id, data, created_at, updated_at)
        return {**data, "createdAt": created_at, "updatedAt": updated_at}

    def update_one(self, collection: str, item_id: str, patch: dict | None = None) -> dict:
        existing = self.get_one(collection, item_id)
        if existing is None:
            raise NotFoundError(collection, item_id)
        merged = self._payload({**existing, **(patch or {}), "id": item_id})
        updated_at = next_timestamp(existing["updatedAt"])
        if not self.db.update(collection, item_id, merged, updated_at):
            raise NotFoundError(collection, item_id)
        return {**merged, "createdAt": existing["createdAt"], "updatedAt": updated_at}

    def delete_one(self, collection: str, item_id: str) -> dict:
        self._ensure(collection)
        self.db.delete(collection, item_id)
        return {"ok": True, "id": item_id}

    def collection_meta(self, collection: str) -> dict:
        items = self.get_all(collection)
        serialized = json.dumps(items, indent=2, ensure_ascii=False)
        return {
            "name": collection,
            "path": None,
            "size": len(serialized.encode("utf-8")),
            "mtime": items[0]["updatedAt"] if items else None,
            "exists": True,
            "count": len(items),
        }

    def list_pages(self) -> list[dict]:
        return self.db.list_pages()

    def seed_pages(self, pages: list[dict]) -> int:
        added = self.db.seed_pages(pages)
        if added:
            logger.info("Seeded %d page(s)", added)
        return added
