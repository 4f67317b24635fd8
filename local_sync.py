"""
Client-side sync: a local mirror of each collection, an outbox that pushes
local mutations to the server, and the startup check for orphaned local data.

Local writes happen first and synchronously. The outbox then delivers them
in order, retrying transient failures with exponential backoff. Entries are
recorded as pending, sent or failed so a stuck mutation stays visible.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx

from config import (
    EMPTY_COLLECTION_BYTES,
    LOCAL_KEY_PREFIX,
    OUTBOX_BASE_DELAY,
    OUTBOX_KEY,
    OUTBOX_MAX_ATTEMPTS,
    OUTBOX_MAX_DELAY,
    OUTBOX_POLL_INTERVAL,
)
from tracker import atomic_write_json, next_timestamp, now_iso, random_id, read_json

logger = logging.getLogger(__name__)

PENDING = "pending"
SENT = "sent"
FAILED = "failed"

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"


# ============================================================================
# LOCAL STORAGE
# ============================================================================

class LocalStorage:
    """Key/value JSON file playing the part of browser local storage."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict:
        data = read_json(self.path, default={})
        return data if isinstance(data, dict) else {}

    def get_item(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set_item(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        atomic_write_json(self.path, data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            atomic_write_json(self.path, data)

    def keys(self) -> list[str]:
        return list(self._load())


def mirror_key(collection: str) -> str:
    return f"{LOCAL_KEY_PREFIX}{collection}"


def items_to_map(items: Any) -> dict:
    if isinstance(items, dict):
        return dict(items)
    if not isinstance(items, list):
        return {}
    return {item["id"]: item for item in items if isinstance(item, dict) and item.get("id")}


def merge_server_map(local: dict, server: dict) -> dict:
    """Server wins on shared ids; ids only known locally are kept."""
    merged = dict(local or {})
    merged.update(server or {})
    return merged


class CollectionMirror:
    def __init__(self, storage: LocalStorage, collection: str):
        self.storage = storage
        self.collection = collection
        self.key = mirror_key(collection)

    def read(self) -> dict:
        return items_to_map(self.storage.get_item(self.key, {}))

    def write(self, items: dict) -> None:
        self.storage.set_item(self.key, items)

    def clear(self) -> None:
        self.storage.remove_item(self.key)


# ============================================================================
# REMOTE CLIENT
# ============================================================================

class RemoteClient:
    """Async wrapper over the collection CRUD and health endpoints."""

    def __init__(self, base_url: str = "", *, transport: httpx.AsyncBaseTransport | None = None,
                 cookies: dict | None = None, timeout: float = 10.0):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            cookies=cookies,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RemoteClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _json(self, method: str, url: str, **kwargs) -> Any:
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def get_list(self, collection: str) -> list[dict]:
        return await self._json("GET", f"/api/collections/{collection}")

    async def create_one(self, collection: str, item: dict) -> dict:
        return await self._json("POST", f"/api/collections/{collection}", json=item)

    async def update_one(self, collection: str, item_id: str, patch: dict) -> dict:
        return await self._json("PUT", f"/api/collections/{collection}/{item_id}", json=patch)

    async def delete_one(self, collection: str, item_id: str) -> dict:
        return await self._json("DELETE", f"/api/collections/{collection}/{item_id}")

    async def get_health(self) -> dict:
        return await self._json("GET", "/api/admin/health")


# ============================================================================
# OUTBOX
# ============================================================================

def _is_permanent(status_code: int) -> bool:
    return 400 <= status_code < 500 and status_code not in (408, 429)


class SyncOutbox:
    def __init__(self, storage: LocalStorage, client: RemoteClient, *,
                 max_attempts: int = OUTBOX_MAX_ATTEMPTS,
                 base_delay: float = OUTBOX_BASE_DELAY,
                 max_delay: float = OUTBOX_MAX_DELAY,
                 clock: Callable[[], float] = time.time):
        self.storage = storage
        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock

    def entries(self) -> list[dict]:
        entries = self.storage.get_item(OUTBOX_KEY, [])
        return entries if isinstance(entries, list) else []

    def _save(self, entries: list[dict]) -> None:
        self.storage.set_item(OUTBOX_KEY, entries)

    def pending(self) -> list[dict]:
        return [entry for entry in self.entries() if entry["status"] == PENDING]

    def failed(self) -> list[dict]:
        return [entry for entry in self.entries() if entry["status"] == FAILED]

    def enqueue(self, op: str, collection: str, item_id: str, payload: dict | None = None) -> dict:
        entries = self.entries()
        entry = {
            "seq": max((e["seq"] for e in entries), default=0) + 1,
            "op": op,
            "collection": collection,
            "itemId": item_id,
            "payload": payload,
            "status": PENDING,
            "attempts": 0,
            "lastError": None,
            "nextAttemptAt": 0,
            "queuedAt": now_iso(),
        }
        entries.append(entry)
        self._save(entries)
        return entry

    def _update(self, seq: int, **changes) -> None:
        # Re-read so entries queued while a request was in flight survive.
        entries = self.entries()
        for entry in entries:
            if entry["seq"] == seq:
                entry.update(changes)
        self._save(entries)

    def _next_due(self) -> dict | None:
        for entry in self.entries():
            if entry["status"] != PENDING:
                continue
            if entry["nextAttemptAt"] > self.clock():
                return None
            return entry
        return None

    def backoff(self, attempts: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(attempts - 1, 0)))

    async def _send(self, entry: dict) -> None:
        op = entry["op"]
        if op == OP_CREATE:
            await self.client.create_one(entry["collection"], entry["payload"] or {})
        elif op == OP_UPDATE:
            await self.client.update_one(entry["collection"], entry["itemId"], entry["payload"] or {})
        elif op == OP_DELETE:
            await self.client.delete_one(entry["collection"], entry["itemId"])
        else:
            raise ValueError(f"Unknown outbox op: {op!r}")

    def _transient(self, entry: dict, error: str) -> None:
        attempts = entry["attempts"] + 1
        if attempts >= self.max_attempts:
            logger.error("Giving up on %s %s/%s after %d attempts: %s",
                         entry["op"], entry["collection"], entry["itemId"], attempts, error)
            self._update(entry["seq"], status=FAILED, attempts=attempts, lastError=error)
            return
        delay = self.backoff(attempts)
        logger.warning("Sync of %s %s/%s failed (attempt %d), retrying in %.1fs: %s",
                       entry["op"], entry["collection"], entry["itemId"], attempts, delay, error)
        self._update(entry["seq"], attempts=attempts, lastError=error, nextAttemptAt=self.clock() + delay)

    async def drain(self) -> dict:
        """Deliver due entries in order. Stops at the first transient failure."""
        sent = failed = 0
        while True:
            entry = self._next_due()
            if entry is None:
                break
            try:
                await self._send(entry)
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                already_applied = (entry["op"] == OP_CREATE and code == 409) or (
                    entry["op"] == OP_DELETE and code == 404
                )
                if already_applied:
                    self._update(entry["seq"], status=SENT, attempts=entry["attempts"] + 1, lastError=None)
                    sent += 1
                elif _is_permanent(code):
                    logger.error("Server rejected %s %s/%s with HTTP %d",
                                 entry["op"], entry["collection"], entry["itemId"], code)
                    self._update(entry["seq"], status=FAILED, attempts=entry["attempts"] + 1,
                                 lastError=f"HTTP {code}")
                    failed += 1
                else:
                    self._transient(entry, f"HTTP {code}")
                    break
            except httpx.TransportError as exc:
                self._transient(entry, str(exc) or exc.__class__.__name__)
                break
            else:
                self._update(entry["seq"], status=SENT, attempts=entry["attempts"] + 1, lastError=None)
                sent += 1
        return {"sent": sent, "failed": failed, "pending": len(self.pending())}

    def retry_failed(self) -> int:
        entries = self.entries()
        count = 0
        for entry in entries:
            if entry["status"] == FAILED:
                entry.update(status=PENDING, attempts=0, nextAttemptAt=0)
                count += 1
        if count:
            self._save(entries)
        return count

    def prune_sent(self) -> int:
        entries = self.entries()
        kept = [entry for entry in entries if entry["status"] != SENT]
        if len(kept) != len(entries):
            self._save(kept)
        return len(entries) - len(kept)

    async def run(self, stop_event: asyncio.Event | None = None, interval: float = OUTBOX_POLL_INTERVAL) -> None:
        """Background loop; drains until ``stop_event`` is set.

        Delivered entries are pruned after each pass so the stored queue only
        holds pending and failed work.
        """
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            await self.drain()
            self.prune_sent()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


# ============================================================================
# SYNCED COLLECTION
# ============================================================================

class SyncedCollection:
    """Optimistic CRUD: mutate the local mirror, then queue the server call."""

    def __init__(self, collection: str, storage: LocalStorage, outbox: SyncOutbox):
        self.collection = collection
        self.mirror = CollectionMirror(storage, collection)
        self.outbox = outbox

    def items(self) -> list[dict]:
        return list(self.mirror.read().values())

    def create(self, data: dict) -> dict:
        items = self.mirror.read()
        now = now_iso()
        item = {**data, "id": data.get("id") or random_id(), "createdAt": now, "updatedAt": now}
        items[item["id"]] = item
        self.mirror.write(items)
        self.outbox.enqueue(OP_CREATE, self.collection, item["id"], item)
        return item

    def update(self, item_id: str, patch: dict) -> dict | None:
        items = self.mirror.read()
        updated = None
        if item_id in items:
            current = items[item_id]
            updated = {**current, **patch, "id": item_id, "updatedAt": next_timestamp(current.get("updatedAt"))}
            items[item_id] = updated
            self.mirror.write(items)
        self.outbox.enqueue(OP_UPDATE, self.collection, item_id, dict(patch))
        return updated

    def remove(self, item_id: str) -> None:
        items = self.mirror.read()
        if items.pop(item_id, None) is not None:
            self.mirror.write(items)
        self.outbox.enqueue(OP_DELETE, self.collection, item_id)

    async def reload(self) -> dict:
        server = items_to_map(await self.outbox.client.get_list(self.collection))
        merged = merge_server_map(self.mirror.read(), server)
        self.mirror.write(merged)
        return merged


# ============================================================================
# ORPHAN DETECTION
# ============================================================================

@dataclass
class MigrationBanner:
    collection: str
    local_count: int
    items: list[dict]
    storage: LocalStorage = field(repr=False)
    client: RemoteClient = field(repr=False)

    async def migrate(self) -> int:
        """Upload every local item, one create at a time, then clear the mirror."""
        uploaded = 0
        for item in self.items:
            try:
                await self.client.create_one(self.collection, item)
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code != 409:
                    raise
            uploaded += 1
        self.storage.remove_item(mirror_key(self.collection))
        return uploaded

    def dismiss(self) -> None:
        """Discard the orphaned local data."""
        self.storage.remove_item(mirror_key(self.collection))


async def check_local_migration(storage: LocalStorage, client: RemoteClient) -> list[MigrationBanner]:
    try:
        health = await client.get_health()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Failed to check for local data migration: %s", exc)
        return []

    banners = []
    for meta in health.get("collections", []):
        name = meta.get("name")
        if not name:
            continue
        local = storage.get_item(mirror_key(name))
        if local is None:
            continue
        if not isinstance(local, (list, dict)):
            logger.warning("Local data for %s is not a collection; ignoring", name)
            continue
        items = list(items_to_map(local).values()) if isinstance(local, dict) else [
            item for item in local if isinstance(item, dict)
        ]
        if not items:
            continue
        if (meta.get("size") or 0) > EMPTY_COLLECTION_BYTES:
            continue
        banners.append(MigrationBanner(name, len(items), items, storage, client))
    return banners
