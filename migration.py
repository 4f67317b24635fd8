"""
Maintenance operations that move data between storage generations or repair
stored records. Everything goes through the store protocol used by the API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from config import PAGES_COLLECTION, PROJECTS_COLLECTION, USERS_COLLECTION
from file_store import LegacyProjectFile
from page_access import access_summary, normalize_page_access
from tracker import ConflictError, _hash_password, slugify

logger = logging.getLogger(__name__)


@dataclass
class CollectionReport:
    imported: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class MigrationReport:
    collections: dict[str, CollectionReport] = field(default_factory=dict)

    def collection(self, name: str) -> CollectionReport:
        return self.collections.setdefault(name, CollectionReport())

    @property
    def imported(self) -> int:
        return sum(report.imported for report in self.collections.values())

    @property
    def skipped(self) -> int:
        return sum(report.skipped for report in self.collections.values())

    @property
    def failed(self) -> int:
        return sum(report.failed for report in self.collections.values())


def _import_item(target, collection: str, item, report: CollectionReport) -> None:
    if not isinstance(item, dict):
        logger.warning("Skipping non-object record in %s", collection)
        report.failed += 1
        return
    item_id = item.get("id")
    try:
        if item_id and target.get_one(collection, item_id) is not None:
            report.skipped += 1
            return
        target.create_one(collection, item, keep_timestamps=True)
    except ConflictError:
        report.skipped += 1
    except Exception as exc:
        logger.warning("Failed to migrate item %s in %s: %s", item_id or "<no id>", collection, exc)
        report.failed += 1
    else:
        report.imported += 1


def migrate_json_to_db(source, target, pages: list[dict] | None = None) -> MigrationReport:
    """Copy every file-backed collection into the relational store.

    Records whose id already exists in the target are skipped, so running it
    again does not duplicate rows. A failing record is logged and skipped.
    """
    report = MigrationReport()
    if pages:
        target.seed_pages(pages)

    names = source.list_collections()
    logger.info("Found %d collection file(s) to migrate: %s", len(names), ", ".join(names))
    for name in names:
        items = source.get_all(name)
        collection_report = report.collection(name)
        if name == PAGES_COLLECTION:
            known = [page for page in items if isinstance(page, dict) and page.get("slug")]
            added = target.seed_pages(known)
            collection_report.imported += added
            collection_report.skipped += len(known) - added
            collection_report.failed += len(items) - len(known)
            continue
        for item in items:
            _import_item(target, name, item, collection_report)
        logger.info(
            "Migrated %s: %d imported, %d skipped, %d failed",
            name, collection_report.imported, collection_report.skipped, collection_report.failed,
        )
    return report


def migrate_legacy_projects(legacy: LegacyProjectFile, store, only_if_empty: bool = False) -> CollectionReport:
    """Copy the monolithic ``{"projects": {...}}`` map into the projects collection."""
    report = CollectionReport()
    if not legacy.exists():
        return report
    if only_if_empty and store.get_all(PROJECTS_COLLECTION):
        return report

    for project_id, project in legacy.get_map().items():
        if not isinstance(project, dict):
            report.failed += 1
            continue
        name = project.get("name") or "Untitled"
        item = {**project, "id": project_id, "name": name, "slug": slugify(name)}
        _import_item(store, PROJECTS_COLLECTION, item, report)
    if report.imported:
        logger.info("Migrated %d project(s) from %s", report.imported, legacy.path)
    return report


@dataclass
class NormalizeResult:
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)


def normalize_all_users(store) -> NormalizeResult:
    """Rewrite each user's page map against the page registry."""
    result = NormalizeResult()
    pages = store.list_pages()
    for user in store.get_all(USERS_COLLECTION):
        label = user.get("email") or user["id"]
        original = user.get("pageAccess") or {}
        normalized = normalize_page_access(pages, original)
        if original == normalized:
            result.unchanged.append(label)
            continue
        logger.info("Normalizing %s: %s -> %s", label, original, normalized)
        store.update_one(USERS_COLLECTION, user["id"], {"pageAccess": normalized})
        result.changed.append(label)
    result.summary = access_summary(pages, store.get_all(USERS_COLLECTION))
    return result


def hash_plaintext_passwords(store) -> list[str]:
    """Replace plaintext ``password`` fields with a PBKDF2 ``passwordHash``."""
    fixed = []
    for user in store.get_all(USERS_COLLECTION):
        password = user.get("password")
        if not isinstance(password, str) or not password:
            continue
        store.update_one(USERS_COLLECTION, user["id"], {
            "passwordHash": _hash_password(password),
            "password": None,
        })
        fixed.append(user.get("email") or user["id"])
    if fixed:
        logger.info("Hashed %d plaintext password(s)", len(fixed))
    return fixed
