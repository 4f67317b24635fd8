import os
import unittest
from pathlib import Path
from unittest import mock

from config import DEFAULT_PORT, STORE_DB, STORE_FILE, load_settings


class TestSettings(unittest.TestCase):
    @mock.patch.dict(os.environ, {
        "TRACKER_DATA_DIR": "/srv/tracker",
        "TRACKER_STORE": "DB",
        "DATABASE_URL": " sqlite:///tracker.db ",
        "TRACKER_PORT": "8080",
        "TRACKER_COOKIE_SECURE": "yes",
    })
    def test_reads_environment(self):
        settings = load_settings()
        self.assertEqual(settings.data_dir, Path("/srv/tracker"))
        self.assertEqual(settings.content_dir, Path("/srv/tracker/content"))
        self.assertEqual(settings.legacy_file, Path("/srv/tracker/data.json"))
        self.assertEqual(settings.local_storage_file, Path("/srv/tracker/local_storage.json"))
        self.assertEqual(settings.store, STORE_DB)
        self.assertEqual(settings.database_url, "sqlite:///tracker.db")
        self.assertEqual(settings.port, 8080)
        self.assertTrue(settings.cookie_secure)

    @mock.patch.dict(os.environ, {"TRACKER_STORE": "", "TRACKER_PORT": ""})
    def test_defaults_and_overrides(self):
        settings = load_settings(data_dir="/tmp/x", store=None)
        self.assertEqual(settings.data_dir, Path("/tmp/x"))
        self.assertEqual(settings.store, STORE_FILE)
        self.assertEqual(settings.port, DEFAULT_PORT)
        self.assertEqual([page["slug"] for page in settings.pages], ["bva", "admin", "home"])

    @mock.patch.dict(os.environ, {"TRACKER_STORE": "mongo"})
    def test_rejects_unknown_store(self):
        with self.assertRaises(ValueError):
            load_settings()


if __name__ == "__main__":
    unittest.main()
