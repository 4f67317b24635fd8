"""
File-backed storage: one JSON array per collection under a content directory,
plus the legacy monolithic projects file.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from config import COLLECTION_SUFFIX, PAGES_COLLECTION, TEMP_MARKER
from tracker import (
    ConflictError,
    NotFoundError,
    atomic_write_json,
    base36_token,
    ensure_dirs,
    next_timestamp,
    now_iso,
    random_id,
    read_json,
    validate_collection_name,
)

logger = logging.getLogger(__name__)


class CollectionRegistry:
    """Discovers collections in the content directory and reports file metadata."""

    def __init__(self, content_dir: Path):
        self.content_dir = Path(content_dir)

    def ensure_content_dir(self) -> None:
        ensure_dirs(str(self.content_dir))

    def file_path(self, collection: str) -> Path:
        validate_collection_name(collection)
        return self.content_dir / f"{collection}{COLLECTION_SUFFIX}"

    def get_collections(self) -> list[str]:
        try:
            self.ensure_content_dir()
            names = [
                entry.name[: -len(COLLECTION_SUFFIX)]
                for entry in os.scandir(self.content_dir)
                if entry.is_file()
                and entry.name.endswith(COLLECTION_SUFFIX)
                and TEMP_MARKER not in entry.name
            ]
        except OSError as exc:
            logger.warning("Failed to read content dir %s: %s", self.content_dir, exc)
            return []
        return sorted(names)

    def get_collection_meta(self, collection: str) -> dict:
        path = self.content_dir / f"{collection}{COLLECTION_SUFFIX}"
        try:
            stats = path.stat()
        except OSError:
            return {"name": collection, "path": str(path), "size": 0, "mtime": None, "exists": False}
        mtime = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
        return {
            "name": collection,
            "path": str(path),
            "size": stats.st_size,
            "mtime": mtime.isoformat().replace("+00:00", "Z"),
            "exists": True,
        }


class AtomicCollectionStore:
    """CRUD over ``<content_dir>/<collection>.json`` with temp-file-then-rename writes.

    Every mutation reads the full list, changes it in memory and writes the full
    list back. There is no locking: two writers racing on one collection can
    lose an update (the last rename wins).
    """

    backend = "file"

    def __init__(self, content_dir: Path):
        self.registry = CollectionRegistry(content_dir)

    @property
    def content_dir(self) -> Path:
        return self.registry.content_dir

    def open(self) -> None:
        self.registry.ensure_content_dir()

    def close(self) -> None:
        pass

    def ensure_collection_file(self, path: Path) -> None:
        if path.exists():
            return
        ensure_dirs(str(path.parent))
        atomic_write_json(path, [])

    def get_all(self, collection: str) -> list[dict]:
        path = self.registry.file_path(collection)
        self.ensure_collection_file(path)
        items = read_json(path, default=[])
        if not isinstance(items, list):
            logger.warning("Collection file %s does not hold an array; treating as empty", path)
            return []
        return items

    def get_one(self, collection: str, item_id: str) -> dict | None:
        for item in self.get_all(collection):
            if isinstance(item, dict) and item.get("id") == item_id:
                return item
        return None

    def _write(self, collection: str, items: list[dict]) -> None:
        atomic_write_json(self.registry.file_path(collection), items)

    @staticmethod
    def _index_of(items: list, item_id: str) -> int:
        for index, item in enumerate(items):
            if isinstance(item, dict) and item.get("id") == item_id:
                return index
        return -1

    def create(self, collection: str, partial: dict | None = None, keep_timestamps: bool = False) -> dict:
        items = self.get_all(collection)
        partial = dict(partial or {})
        item_id = partial.get("id")
        if not isinstance(item_id, str) or not item_id:
            item_id = random_id()
        if self._index_of(items, item_id) != -1:
            raise ConflictError(collection, item_id)
        created_at = updated_at = now_iso()
        if keep_timestamps:
            created_at = partial.get("createdAt") or created_at
            updated_at = partial.get("updatedAt") or created_at
        item = {**partial, "id": item_id, "createdAt": created_at, "updatedAt": updated_at}
        items.append(item)
        self._write(collection, items)
        return item

    def update(self, collection: str, item_id: str, patch: dict | None = None) -> dict:
        items = self.get_all(collection)
        index = self._index_of(items, item_id)
        if index == -1:
            raise NotFoundError(collection, item_id)
        existing = items[index]
        updated = {
            **existing,
            **(patch or {}),
            "id": item_id,
            "createdAt": existing.get("createdAt"),
            "updatedAt": next_timestamp(existing.get("updatedAt")),
        }
        items[index] = updated
        self._write(collection, items)
        return updated

    def remove(self, collection: str, item_id: str) -> dict:
        items = self.get_all(collection)
        index = self._index_of(items, item_id)
        if index == -1:
            raise NotFoundError(collection, item_id)
        items.pop(index)
        self._write(collection, items)
        return {"ok": True, "id": item_id}

    create_one = create
    update_one = update
    delete_one = remove

    def list_collections(self) -> list[str]:
        return self.registry.get_collections()

    def collection_meta(self, collection: str) -> dict:
        return self.registry.get_collection_meta(collection)

    def list_pages(self) -> list[dict]:
        return [page for page in self.get_all(PAGES_COLLECTION) if isinstance(page, dict) and page.get("slug")]

    def seed_pages(self, pages: list[dict]) -> int:
        """Insert pages whose slug is not registered yet. Returns how many were added."""
        known = {page["slug"] for page in self.list_pages()}
        added = 0
        for page in pages:
            if page["slug"] in known:
                continue
            self.create(PAGES_COLLECTION, dict(page))
            known.add(page["slug"])
            added += 1
        return added


class LegacyProjectFile:
    """The original monolithic store: ``{"projects": {id: project}}`` in one file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> dict:
        data = read_json(self.path, default=None)
        if not isinstance(data, dict) or not isinstance(data.get("projects"), dict):
            if data is not None:
                logger.warning("Legacy projects file %s is malformed; treating as empty", self.path)
            return {"projects": {}}
        return data

    def exists(self) -> bool:
        return self.path.exists()

    def get_map(self) -> dict:
        return self._read()["projects"]

    def create(self, project: dict, project_id: str | None = None) -> str:
        data = self._read()
        project_id = project_id or f"p_{base36_token()}"
        if project_id in data["projects"]:
            raise ConflictError("projects", project_id)
        data["projects"][project_id] = project
        atomic_write_json(self.path, data)
        return project_id

    def update(self, project_id: str, project: dict) -> None:
        data = self._read()
        if project_id not in data["projects"]:
            raise NotFoundError("projects", project_id)
        data["projects"][project_id] = project
        atomic_write_json(self.path, data)

    def delete(self, project_id: str) -> None:
        data = self._read()
        if project_id not in data["projects"]:
            raise NotFoundError("projects", project_id)
        del data["projects"][project_id]
        atomic_write_json(self.path, data)
