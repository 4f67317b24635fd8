from __future__ import annotations

import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from file_store import AtomicCollectionStore, CollectionRegistry, LegacyProjectFile
from tracker import ConflictError, NotFoundError


class TestAtomicCollectionStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp()
        self.content_dir = Path(self.tmp) / "content"
        self.store = AtomicCollectionStore(self.content_dir)
        self.store.open()

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_get_all_creates_empty_collection_file(self) -> None:
        self.assertEqual(self.store.get_all("tasks"), [])
        path = self.content_dir / "tasks.json"
        self.assertTrue(path.exists())
        self.assertEqual(json.loads(path.read_text(encoding="utf-8")), [])

    def test_create_then_update_keeps_id_and_advances_updated_at(self) -> None:
        created = self.store.create("projects", {"name": "Acme"})
        self.assertTrue(created["id"])
        self.assertEqual(created["createdAt"], created["updatedAt"])

        updated = self.store.update("projects", created["id"], {"status": "Live"})
        self.assertEqual(updated["id"], created["id"])
        self.assertEqual(updated["name"], "Acme")
        self.assertEqual(updated["status"], "Live")
        self.assertGreater(updated["updatedAt"], updated["createdAt"])

    def test_generated_ids_are_unique(self) -> None:
        ids = {self.store.create("tasks", {"title": f"t{i}"})["id"] for i in range(25)}
        self.assertEqual(len(ids), 25)

    def test_round_trip_and_insertion_order(self) -> None:
        first = self.store.create("tasks", {"title": "first"})
        second = self.store.create("tasks", {"title": "second"})
        self.assertEqual(self.store.get_all("tasks"), [first, second])
        self.store.update("tasks", first["id"], {"title": "renamed"})
        fetched = self.store.get_one("tasks", first["id"])
        self.assertEqual(fetched["title"], "renamed")
        self.assertEqual(fetched["id"], first["id"])
        self.assertEqual(fetched["createdAt"], first["createdAt"])

    def test_update_cannot_change_id(self) -> None:
        item = self.store.create("tasks", {"title": "x"})
        updated = self.store.update("tasks", item["id"], {"id": "hijack"})
        self.assertEqual(updated["id"], item["id"])
        self.assertIsNone(self.store.get_one("tasks", "hijack"))

    def test_update_cannot_change_created_at(self) -> None:
        item = self.store.create("tasks", {"title": "x"})
        updated = self.store.update("tasks", item["id"], {"createdAt": "1999-01-01T00:00:00.000Z", "title": "y"})
        self.assertEqual(updated["createdAt"], item["createdAt"])
        self.assertEqual(updated["title"], "y")
        self.assertEqual(self.store.get_one("tasks", item["id"])["createdAt"], item["createdAt"])

    def test_non_string_id_is_replaced(self) -> None:
        for bad_id in (5, None, "", ["a"]):
            item = self.store.create("tasks", {"id": bad_id, "title": "x"})
            self.assertIsInstance(item["id"], str)
            self.assertTrue(item["id"])
            self.assertEqual(self.store.get_one("tasks", item["id"]), item)
            self.assertEqual(self.store.update("tasks", item["id"], {"done": True})["done"], True)

    def test_explicit_id_is_kept_and_duplicate_is_rejected(self) -> None:
        self.store.create("tasks", {"id": "t-1", "title": "x"})
        with self.assertRaises(ConflictError):
            self.store.create("tasks", {"id": "t-1", "title": "y"})
        self.assertEqual(len(self.store.get_all("tasks")), 1)

    def test_missing_id_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.store.update("tasks", "missing-id", {"title": "x"})
        with self.assertRaises(NotFoundError):
            self.store.remove("tasks", "missing-id")

    def test_remove_returns_ok(self) -> None:
        item = self.store.create("tasks", {"title": "x"})
        self.assertEqual(self.store.remove("tasks", item["id"]), {"ok": True, "id": item["id"]})
        self.assertEqual(self.store.get_all("tasks"), [])

    def test_corrupt_file_reads_as_empty_with_warning(self) -> None:
        self.content_dir.mkdir(parents=True, exist_ok=True)
        (self.content_dir / "tasks.json").write_text("{not json", encoding="utf-8")
        with self.assertLogs("tracker", level="WARNING"):
            self.assertEqual(self.store.get_all("tasks"), [])

    def test_non_array_file_reads_as_empty_with_warning(self) -> None:
        self.content_dir.mkdir(parents=True, exist_ok=True)
        (self.content_dir / "tasks.json").write_text('{"a": 1}', encoding="utf-8")
        with self.assertLogs("file_store", level="WARNING"):
            self.assertEqual(self.store.get_all("tasks"), [])

    def test_interrupted_rename_leaves_original_file_intact(self) -> None:
        self.store.create("tasks", {"title": "keep me"})
        path = self.content_dir / "tasks.json"
        before = path.read_bytes()

        with mock.patch("tracker.os.replace"):
            self.store.create("tasks", {"title": "lost"})

        self.assertEqual(path.read_bytes(), before)
        leftovers = [name for name in os.listdir(self.content_dir) if ".tmp-" in name]
        self.assertEqual(leftovers, [])

    def test_failed_rename_propagates_and_keeps_original(self) -> None:
        self.store.create("tasks", {"title": "keep me"})
        path = self.content_dir / "tasks.json"
        before = path.read_bytes()

        with mock.patch("tracker.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                self.store.update("tasks", self.store.get_all("tasks")[0]["id"], {"title": "x"})

        self.assertEqual(path.read_bytes(), before)

    def test_invalid_collection_name_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.get_all("../etc")

    def test_seed_pages_is_idempotent(self) -> None:
        pages = [{"slug": "home", "title": "Home"}, {"slug": "admin", "title": "Admin"}]
        self.assertEqual(self.store.seed_pages(pages), 2)
        self.assertEqual(self.store.seed_pages(pages), 0)
        self.assertEqual(sorted(p["slug"] for p in self.store.list_pages()), ["admin", "home"])


class TestCollectionRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp()
        self.content_dir = Path(self.tmp) / "content"
        self.registry = CollectionRegistry(self.content_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_creates_missing_dir_and_lists_nothing(self) -> None:
        self.assertEqual(self.registry.get_collections(), [])
        self.assertTrue(self.content_dir.is_dir())

    def test_lists_sorted_and_skips_temp_files(self) -> None:
        self.content_dir.mkdir(parents=True)
        for name in ("tasks.json", "projects.json", "tasks.json.tmp-1700000000000-abc", "notes.txt"):
            (self.content_dir / name).write_text("[]", encoding="utf-8")
        (self.content_dir / "nested.json").mkdir()
        self.assertEqual(self.registry.get_collections(), ["projects", "tasks"])

    def test_scan_failure_returns_empty(self) -> None:
        with mock.patch("file_store.os.scandir", side_effect=PermissionError("denied")):
            with self.assertLogs("file_store", level="WARNING"):
                self.assertEqual(self.registry.get_collections(), [])

    def test_meta_for_missing_collection(self) -> None:
        meta = self.registry.get_collection_meta("ghost")
        self.assertEqual(meta["name"], "ghost")
        self.assertFalse(meta["exists"])
        self.assertEqual(meta["size"], 0)
        self.assertIsNone(meta["mtime"])

    def test_meta_for_existing_collection(self) -> None:
        self.content_dir.mkdir(parents=True)
        (self.content_dir / "tasks.json").write_text("[]", encoding="utf-8")
        meta = self.registry.get_collection_meta("tasks")
        self.assertTrue(meta["exists"])
        self.assertEqual(meta["size"], 2)
        self.assertTrue(meta["mtime"].endswith("Z"))
        self.assertEqual(meta["path"], str(self.content_dir / "tasks.json"))


class TestLegacyProjectFile(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp()
        self.legacy = LegacyProjectFile(Path(self.tmp) / "data.json")

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_missing_file_is_empty_map(self) -> None:
        self.assertFalse(self.legacy.exists())
        self.assertEqual(self.legacy.get_map(), {})

    def test_create_update_delete(self) -> None:
        project_id = self.legacy.create({"name": "Acme"})
        self.assertTrue(project_id.startswith("p_"))
        self.assertEqual(len(project_id), 10)
        self.legacy.update(project_id, {"name": "Acme 2"})
        self.assertEqual(self.legacy.get_map(), {project_id: {"name": "Acme 2"}})
        self.legacy.delete(project_id)
        self.assertEqual(self.legacy.get_map(), {})

    def test_missing_project_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.legacy.update("p_nope", {})
        with self.assertRaises(NotFoundError):
            self.legacy.delete("p_nope")

    def test_duplicate_project_id_is_rejected(self) -> None:
        self.legacy.create({"name": "Acme"}, "p_fixed001")
        with self.assertRaises(ConflictError):
            self.legacy.create({"name": "Other"}, "p_fixed001")
        self.assertEqual(self.legacy.get_map(), {"p_fixed001": {"name": "Acme"}})

    def test_malformed_file_is_empty_with_warning(self) -> None:
        self.legacy.path.write_text('["not", "a", "map"]', encoding="utf-8")
        with self.assertLogs("file_store", level="WARNING"):
            self.assertEqual(self.legacy.get_map(), {})


if __name__ == "__main__":
    unittest.main()
