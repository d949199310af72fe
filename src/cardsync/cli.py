"""CLI for cardsync: migrations, sync runs and maintenance commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import cast

import click

from cardsync.carddav.client import CardDavClient, client_for_connection, verify_connection
from cardsync.carddav.conflicts import ConflictResolver
from cardsync.carddav.imports import ImportService
from cardsync.carddav.sync import CardDavSyncEngine, SyncProgress, run_scheduled_sync
from cardsync.config import CardSyncConfig, ConfigError, load_config
from cardsync.core.logging import configure_logging
from cardsync.credentials import AesGcmSecretStore, SecretStore
from cardsync.db import Database
from cardsync.errors import CardSyncError
from cardsync.migrations import run_migrations
from cardsync.models import CardDavConnection, ConflictResolution, ImportMode
from cardsync.people.duplicates import (
    DuplicateCandidate,
    DuplicateGroup,
    duplicate_groups_for_user,
    duplicates_for_person,
)
from cardsync.people.merge import MergeEngine
from cardsync.people.reminders import collect_due_reminders
from cardsync.storage.photos import LocalPhotoStore, PhotoStore
from cardsync.store import PostgresStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: PostgresStore
    secrets: SecretStore
    engine: CardDavSyncEngine
    imports: ImportService
    client_factory: Callable[[CardDavConnection], CardDavClient]
    photos: PhotoStore | None = None


@asynccontextmanager
async def _services(config: CardSyncConfig) -> AsyncIterator[Services]:
    secrets = AesGcmSecretStore(config.require_encryption_secret())
    photos = LocalPhotoStore(config.photos.storage_path) if config.photos.storage_path else None
    db = Database.from_config(config.database)
    pool = await db.connect()
    try:
        store = PostgresStore(pool)
        engine = CardDavSyncEngine(
            store,
            secrets,
            photos=photos,
            stale_lease_after=timedelta(minutes=config.sync.stale_lease_minutes),
        )
        yield Services(
            store=store,
            secrets=secrets,
            engine=engine,
            imports=ImportService(store, secrets, photos=photos),
            client_factory=lambda connection: client_for_connection(connection, secrets),
            photos=photos,
        )
    finally:
        await db.close()


def _run(coro: Coroutine[object, object, None]) -> None:
    try:
        asyncio.run(coro)
    except (CardSyncError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to cardsync.toml or a directory containing it",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """cardsync: two-way CardDAV contact synchronization."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    ctx.obj = config


@cli.command()
@click.option(
    "--chain",
    type=click.Choice(["all", "core", "carddav"]),
    default="all",
    show_default=True,
)
@click.pass_obj
def migrate(config: CardSyncConfig, chain: str) -> None:
    """Create the database if needed and upgrade the schema."""

    async def _migrate() -> None:
        db = Database.from_config(config.database)
        await db.provision()
        await run_migrations(db.url, chain=chain)

    _run(_migrate())
    click.echo(f"Migrations applied ({chain})")


@cli.command()
@click.option("--connection-id", required=True, help="CardDAV connection to sync")
@click.option("--verbose", "-v", is_flag=True, help="Print every processed card")
@click.pass_obj
def sync(config: CardSyncConfig, connection_id: str, verbose: bool) -> None:
    """Run one bidirectional sync for a connection."""

    async def _progress(progress: SyncProgress) -> None:
        click.echo(
            f"[{progress.phase} {progress.index}/{progress.total}] "
            f"{progress.outcome} {progress.uid or progress.person_id or ''}"
        )

    async def _sync() -> None:
        async with _services(config) as services:
            result = await services.engine.sync(
                connection_id, on_progress=_progress if verbose else None
            )
        click.echo(
            f"imported={result.imported} exported={result.exported} "
            f"pulled={result.updated_locally} pushed={result.updated_remotely} "
            f"conflicts={result.conflicts} pending={result.pending_imports} "
            f"errors={result.errors}"
        )
        for message in result.error_messages:
            click.echo(f"  error: {message}", err=True)

    _run(_sync())


@cli.command()
@click.pass_obj
def sweep(config: CardSyncConfig) -> None:
    """Sync every connection whose auto-sync interval has elapsed."""

    async def _sweep() -> None:
        async with _services(config) as services:
            result = await run_scheduled_sync(
                services.store, services.engine, delay=config.sync.sweep_delay_s
            )
        click.echo(
            f"checked={result.checked} synced={result.synced} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        for message in result.error_messages:
            logger.warning("Scheduled sync failure: %s", message)

    _run(_sweep())


@cli.command("test-connection")
@click.argument("url")
@click.argument("username")
@click.password_option("--password", confirmation_prompt=False)
def check_connection(url: str, username: str, password: str) -> None:
    """Check a server URL and credentials and list the address books found."""

    async def _check() -> None:
        books = await verify_connection(url, username, password)
        click.echo(f"Connected: {len(books)} address book(s)")
        for book in books:
            click.echo(f"  {book.display_name or '(unnamed)'}  {book.url}")

    _run(_check())


@cli.command()
@click.argument("url")
@click.argument("username")
@click.option("--user-id", required=True)
@click.password_option("--password", confirmation_prompt=False)
@click.option(
    "--import-mode",
    type=click.Choice(["manual", "notify", "auto"]),
    default="manual",
    show_default=True,
)
@click.option("--auto-export/--no-auto-export", default=True, show_default=True)
@click.option(
    "--interval",
    type=click.IntRange(min=0),
    default=43200,
    show_default=True,
    help="Seconds between scheduled syncs",
)
@click.pass_obj
def connect(
    config: CardSyncConfig,
    url: str,
    username: str,
    user_id: str,
    password: str,
    import_mode: str,
    auto_export: bool,
    interval: int,
) -> None:
    """Verify a CardDAV account and store it as the user's connection."""

    async def _connect() -> None:
        books = await verify_connection(url, username, password)
        async with _services(config) as services:
            connection = await services.store.save_connection(
                user_id,
                server_url=url,
                username=username,
                password=services.secrets.encrypt(password),
                import_mode=cast(ImportMode, import_mode),
                auto_export_new=auto_export,
                auto_sync_interval=interval,
            )
        logger.info("Saved CardDAV connection %s for user %s", connection.id, user_id)
        click.echo(f"Connection {connection.id} saved ({len(books)} address book(s))")

    _run(_connect())


@cli.command("stage-vcf")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user-id", required=True)
@click.pass_obj
def stage_vcf(config: CardSyncConfig, file: Path, user_id: str) -> None:
    """Stage the cards of a .vcf file as pending imports."""

    async def _stage() -> None:
        async with _services(config) as services:
            result = await services.imports.stage_upload(
                user_id, file.read_text(encoding="utf-8", errors="replace")
            )
        click.echo(f"staged={result.staged} errors={result.errors}")
        for message in result.error_messages:
            click.echo(f"  error: {message}", err=True)

    _run(_stage())


@cli.command("import-pending")
@click.option("--user-id", required=True)
@click.option("--id", "pending_ids", multiple=True, help="Pending import id (default: all)")
@click.pass_obj
def import_pending(config: CardSyncConfig, user_id: str, pending_ids: tuple[str, ...]) -> None:
    """Import staged cards for a user."""

    async def _import() -> None:
        async with _services(config) as services:
            ids = list(pending_ids) or [
                pending.id or "" for pending in await services.store.list_pending_imports(user_id)
            ]
            result = await services.imports.import_pending(user_id, ids)
        click.echo(
            f"imported={result.imported} skipped={result.skipped} errors={result.errors}"
        )

    _run(_import())


@cli.command("resolve-conflict")
@click.argument("conflict_id")
@click.argument("resolution", type=click.Choice(["keep_local", "keep_remote", "merged"]))
@click.option("--user-id", required=True)
@click.pass_obj
def resolve_conflict(
    config: CardSyncConfig, conflict_id: str, resolution: str, user_id: str
) -> None:
    """Resolve a sync conflict; local-wins resolutions push right away."""

    async def _resolve() -> None:
        async with _services(config) as services:
            resolver = ConflictResolver(
                services.store, push=services.engine.sync, photos=services.photos
            )
            await resolver.resolve(
                conflict_id, cast(ConflictResolution, resolution), user_id=user_id
            )
            await resolver.wait_for_background()
        click.echo(f"Conflict {conflict_id} resolved with {resolution}")

    _run(_resolve())


@cli.command()
@click.argument("primary_id")
@click.argument("secondary_id")
@click.option("--user-id", required=True)
@click.pass_obj
def merge(config: CardSyncConfig, primary_id: str, secondary_id: str, user_id: str) -> None:
    """Merge SECONDARY_ID into PRIMARY_ID."""

    async def _merge() -> None:
        async with _services(config) as services:
            engine = MergeEngine(services.store, client_factory=services.client_factory)
            await engine.merge(user_id, primary_id, secondary_id)
        click.echo(f"Merged {secondary_id} into {primary_id}")

    _run(_merge())


@cli.command()
@click.option(
    "--date",
    "on_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Evaluate reminders for this day (default: today)",
)
@click.pass_obj
def reminders(config: CardSyncConfig, on_date: datetime | None) -> None:
    """List the reminders due today."""
    today = on_date.date() if on_date is not None else date.today()

    async def _list() -> None:
        db = Database.from_config(config.database)
        pool = await db.connect()
        try:
            due = collect_due_reminders(await PostgresStore(pool).list_people(), today)
        finally:
            await db.close()
        if not due:
            click.echo("No reminders due")
            return
        for reminder in due:
            if reminder.kind == "important_date":
                click.echo(f"{reminder.user_id}: {reminder.person_name}: {reminder.title}")
            else:
                click.echo(f"{reminder.user_id}: get in touch with {reminder.person_name}")

    _run(_list())


@cli.command()
@click.option("--user-id", required=True)
@click.option("--person-id", default=None, help="Only list people similar to this person")
@click.pass_obj
def duplicates(config: CardSyncConfig, user_id: str, person_id: str | None) -> None:
    """List people whose names look like duplicates."""

    async def _list() -> None:
        db = Database.from_config(config.database)
        pool = await db.connect()
        try:
            store = PostgresStore(pool)
            candidates: list[DuplicateCandidate] = []
            groups: list[DuplicateGroup] = []
            if person_id is not None:
                candidates = await duplicates_for_person(store, user_id, person_id)
            else:
                groups = await duplicate_groups_for_user(store, user_id)
        finally:
            await db.close()
        if not candidates and not groups:
            click.echo("No duplicates found")
            return
        for candidate in candidates:
            click.echo(
                f"{candidate.person_id}: {_display_name(candidate.name, candidate.surname)}"
                f" ({candidate.similarity:.0%})"
            )
        for group in groups:
            members = ", ".join(
                f"{member.person_id} {_display_name(member.name, member.surname)}"
                for member in group.people
            )
            click.echo(f"{group.similarity:.0%}: {members}")

    _run(_list())


def _display_name(name: str | None, surname: str | None) -> str:
    return " ".join(part for part in (name, surname) if part) or "(no name)"


if __name__ == "__main__":
    cli()
