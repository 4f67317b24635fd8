import unittest

from page_access import (
    access_summary,
    collect_page_access,
    has_page_access,
    normalize_page_access,
    page_slugs,
)

PAGES = [{"slug": "home"}, {"slug": "admin"}, {"slug": "bva"}]


class TestNormalizePageAccess(unittest.TestCase):
    def test_drops_unknown_and_defaults_false(self):
        result = normalize_page_access(PAGES, {"admin": True, "stale": True})
        self.assertEqual(result, {"home": False, "admin": True, "bva": False})

    def test_only_literal_true_grants(self):
        result = normalize_page_access(PAGES, {"home": "true", "admin": 1, "bva": True})
        self.assertEqual(result, {"home": False, "admin": False, "bva": True})

    def test_missing_or_invalid_map(self):
        expected = {"home": False, "admin": False, "bva": False}
        self.assertEqual(normalize_page_access(PAGES, None), expected)
        self.assertEqual(normalize_page_access(PAGES, ["admin"]), expected)

    def test_no_pages(self):
        self.assertEqual(normalize_page_access([], {"admin": True}), {})

    def test_ignores_pages_without_slug(self):
        self.assertEqual(page_slugs([{"slug": "home"}, {"title": "no slug"}, "junk"]), ["home"])


class TestCollectPageAccess(unittest.TestCase):
    def test_superadmin_gets_every_page(self):
        self.assertEqual(
            collect_page_access(PAGES, {"admin": False}, is_superadmin=True),
            {"home": True, "admin": True, "bva": True},
        )

    def test_regular_user_is_normalized(self):
        self.assertEqual(
            collect_page_access(PAGES, {"bva": True, "old": True}),
            {"home": False, "admin": False, "bva": True},
        )


class TestHasPageAccess(unittest.TestCase):
    def test_granted_only_when_true(self):
        access = {"home": True, "admin": False}
        self.assertTrue(has_page_access(access, "home"))
        self.assertFalse(has_page_access(access, "admin"))
        self.assertFalse(has_page_access(access, "bva"))
        self.assertFalse(has_page_access(None, "home"))

    def test_summary_counts_users_per_page(self):
        users = [
            {"pageAccess": {"home": True, "admin": True}},
            {"pageAccess": {"home": True}},
            {},
        ]
        self.assertEqual(access_summary(PAGES, users), {"home": 2, "admin": 1, "bva": 0})


if __name__ == "__main__":
    unittest.main()
