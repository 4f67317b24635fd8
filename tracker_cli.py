"""tracker CLI: serve the API and run storage maintenance.

Commands:
    tracker serve                   start the HTTP API
    tracker health                  list collections with their metadata
    tracker seed-pages              insert missing default pages
    tracker migrate-json            copy file collections into the database
    tracker migrate-legacy          import data.json projects into the store
    tracker normalize-page-access   rewrite user page maps against the registry
    tracker hash-passwords          replace plaintext passwords with hashes
    tracker create-user EMAIL       add a user
"""

from __future__ import annotations

import contextlib
import logging
import os

import click
import uvicorn

from config import USERS_COLLECTION, Settings, load_settings
from db_store import RelationalCollectionStore, resolve_backend
from file_store import AtomicCollectionStore, LegacyProjectFile
from migration import (
    hash_plaintext_passwords,
    migrate_json_to_db,
    migrate_legacy_projects,
    normalize_all_users,
)
from page_access import collect_page_access
from tracker import APP_VERSION, ConflictError, _hash_password, normalize_text
from web_app import build_store

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _open_store(settings: Settings):
    store = build_store(settings)
    store.open()
    try:
        yield store
    finally:
        store.close()


def _echo_counts(label: str, report) -> None:
    click.echo(f"{label}: {report.imported} imported, {report.skipped} skipped, {report.failed} failed")


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(APP_VERSION)
@click.option("--data-dir", type=click.Path(file_okay=False), default=None, help="Data directory")
@click.option("--store", type=click.Choice(["file", "db"]), default=None, help="Storage backend")
@click.option("--database-url", default=None, help="sqlite:///path, empty for the in-memory mock")
@click.pass_context
def cli(ctx: click.Context, data_dir: str | None, store: str | None, database_url: str | None) -> None:
    """tracker: project tracker storage and API."""
    try:
        settings = load_settings(data_dir=data_dir, store=store, database_url=database_url)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    logging.getLogger().setLevel(settings.log_level)
    ctx.obj = settings


# ---------------------------------------------------------------------------
# tracker serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", type=int, default=None, help="Bind port")
@click.pass_obj
def serve(settings: Settings, host: str | None, port: int | None) -> None:
    """Start the HTTP API."""
    # The factory re-reads settings from the environment in the server process.
    os.environ["TRACKER_DATA_DIR"] = str(settings.data_dir)
    os.environ["TRACKER_STORE"] = settings.store
    os.environ["DATABASE_URL"] = settings.database_url
    uvicorn.run(
        "web_app:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# tracker health / seed-pages
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def health(settings: Settings) -> None:
    """Show the backend and every collection's metadata."""
    with _open_store(settings) as store:
        click.echo(f"Backend     : {store.backend}")
        click.echo(f"Content dir : {store.content_dir or '-'}")
        names = store.list_collections()
        if not names:
            click.echo("No collections.")
            return
        for name in names:
            meta = store.collection_meta(name)
            click.echo(f"  {name:<20} size={meta['size']:<8} mtime={meta['mtime'] or '-'}")


@cli.command("seed-pages")
@click.pass_obj
def seed_pages(settings: Settings) -> None:
    """Insert default pages that are not registered yet."""
    with _open_store(settings) as store:
        added = store.seed_pages(settings.pages)
    click.echo(f"Seeded {added} page(s)")


# ---------------------------------------------------------------------------
# tracker migrate-json / migrate-legacy
# ---------------------------------------------------------------------------


@cli.command("migrate-json")
@click.pass_obj
def migrate_json(settings: Settings) -> None:
    """Copy every collection file into the relational store."""
    if not settings.database_url:
        raise click.ClickException("A database URL is required (--database-url or DATABASE_URL)")
    try:
        backend = resolve_backend(settings.database_url)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    source = AtomicCollectionStore(settings.content_dir)
    target = RelationalCollectionStore(backend)
    source.open()
    target.open()
    try:
        report = migrate_json_to_db(source, target, settings.pages)
    finally:
        target.close()
    for name, collection_report in sorted(report.collections.items()):
        _echo_counts(name, collection_report)
    _echo_counts("Total", report)


@cli.command("migrate-legacy")
@click.pass_obj
def migrate_legacy(settings: Settings) -> None:
    """Import projects from the legacy data.json file."""
    legacy = LegacyProjectFile(settings.legacy_file)
    if not legacy.exists():
        raise click.ClickException(f"Legacy file not found: {legacy.path}")
    with _open_store(settings) as store:
        report = migrate_legacy_projects(legacy, store)
    _echo_counts("projects", report)


# ---------------------------------------------------------------------------
# tracker normalize-page-access / hash-passwords / create-user
# ---------------------------------------------------------------------------


@cli.command("normalize-page-access")
@click.pass_obj
def normalize_page_access(settings: Settings) -> None:
    """Rewrite each user's page map so it has exactly one boolean per page."""
    with _open_store(settings) as store:
        result = normalize_all_users(store)
    click.echo(f"Normalized {len(result.changed)} user(s), {len(result.unchanged)} already clean")
    for slug, count in result.summary.items():
        click.echo(f"  {slug:<12} {count} user(s)")


@cli.command("hash-passwords")
@click.pass_obj
def hash_passwords(settings: Settings) -> None:
    """Replace plaintext passwords with salted hashes."""
    with _open_store(settings) as store:
        fixed = hash_plaintext_passwords(store)
    if not fixed:
        click.echo("No plaintext passwords found.")
        return
    for email in fixed:
        click.echo(f"  hashed {email}")


@cli.command("create-user")
@click.argument("email")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--first-name", default="")
@click.option("--last-name", default="")
@click.option("--superadmin", is_flag=True, help="Grant every page")
@click.option("--page", "pages", multiple=True, help="Page slug to grant (repeatable)")
@click.pass_obj
def create_user(
    settings: Settings,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    superadmin: bool,
    pages: tuple[str, ...],
) -> None:
    """Add a user with a hashed password."""
    email = normalize_text(email)
    with _open_store(settings) as store:
        for user in store.get_all(USERS_COLLECTION):
            if normalize_text(user.get("email")).lower() == email.lower():
                raise click.ClickException(f"User already exists: {email}")
        page_access = collect_page_access(
            store.list_pages(), {slug: True for slug in pages}, superadmin
        )
        try:
            user = store.create_one(USERS_COLLECTION, {
                "email": email,
                "firstName": first_name,
                "lastName": last_name,
                "passwordHash": _hash_password(password),
                "isSuperadmin": superadmin,
                "pageAccess": page_access,
            })
        except ConflictError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Created user {user['email']} ({user['id']})")


if __name__ == "__main__":
    cli()
