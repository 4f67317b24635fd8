"""Page-access gate: normalization of per-user page maps and the view check."""

from __future__ import annotations


def page_slugs(pages: list[dict]) -> list[str]:
    return [page["slug"] for page in pages if isinstance(page, dict) and page.get("slug")]


def normalize_page_access(pages: list[dict], incoming: dict | None) -> dict[str, bool]:
    """One key per known page. Only an explicit ``True`` grants access.

    Keys that are not in the page list are dropped.
    """
    incoming = incoming if isinstance(incoming, dict) else {}
    return {slug: incoming.get(slug) is True for slug in page_slugs(pages)}


def collect_page_access(pages: list[dict], incoming: dict | None, is_superadmin: bool = False) -> dict[str, bool]:
    """The map to persist when an admin saves a user's permissions.

    A superadmin gets every known page; the expanded map is what gets stored.
    """
    if is_superadmin:
        return {slug: True for slug in page_slugs(pages)}
    return normalize_page_access(pages, incoming)


def has_page_access(page_access: dict | None, slug: str) -> bool:
    if not isinstance(page_access, dict):
        return False
    return page_access.get(slug) is True


def access_summary(pages: list[dict], users: list[dict]) -> dict[str, int]:
    """How many users can view each page."""
    return {
        slug: sum(1 for user in users if has_page_access(user.get("pageAccess"), slug))
        for slug in page_slugs(pages)
    }
