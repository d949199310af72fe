"""Bidirectional CardDAV sync engine and the periodic sweep.

One run for a connection:

1. claim the connection's sync lease (a single conditional UPDATE)
2. fetch the first address book's cards and classify each one by UID
   against the connection's mappings: stage, link, pull, skip or conflict
3. walk the user's sync-enabled persons and push new or changed ones
4. stamp ``last_sync_at`` (or record the categorized error) and release

Per-contact failures are isolated: they are counted, logged and reported in
``SyncResult.error_messages`` without aborting the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Literal

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field

from cardsync.carddav.client import AddressBook, CardDavClient, RemoteVCard, client_for_connection
from cardsync.carddav.contacts import replace_from_remote, snapshot
from cardsync.carddav.export import export_person, push_person
from cardsync.carddav.fingerprint import contact_fingerprint
from cardsync.carddav.imports import import_contact, pending_from_card
from cardsync.carddav.retry import categorize_error
from cardsync.carddav.vcard import vcard_to_person
from cardsync.core.logging import connection_context
from cardsync.errors import (
    CardDavProtocolError,
    ConnectionNotFoundError,
    SyncAlreadyRunningError,
    SyncDisabledError,
    VCardParseError,
)
from cardsync.models import CardDavConflict, CardDavConnection, CardDavMapping, Person

if TYPE_CHECKING:
    from cardsync.credentials import SecretStore
    from cardsync.repository import CardSyncRepository
    from cardsync.storage.photos import PhotoStore

logger = logging.getLogger(__name__)

SyncPhase = Literal["remote", "local"]
SyncOutcome = Literal[
    "pending_import",
    "imported",
    "linked",
    "unchanged",
    "updated_locally",
    "conflict",
    "skipped",
    "exported",
    "updated_remotely",
    "in_sync",
    "error",
]

DEFAULT_STALE_LEASE_AFTER = timedelta(minutes=30)
SWEEP_DELAY_SECONDS = 0.2

ClientFactory = Callable[[CardDavConnection], CardDavClient]


class SyncProgress(BaseModel):
    """One processed contact, reported to ``on_progress``."""

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase
    index: int
    total: int
    outcome: SyncOutcome
    uid: str | None = None
    person_id: str | None = None


ProgressCallback = Callable[[SyncProgress], Awaitable[None]]


class SyncResult(BaseModel):
    """Counters for one sync run."""

    imported: int = 0
    exported: int = 0
    updated_locally: int = 0
    updated_remotely: int = 0
    conflicts: int = 0
    unchanged: int = 0
    pending_imports: int = 0
    linked: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)

    def record(self, outcome: SyncOutcome) -> None:
        counter = _OUTCOME_COUNTERS.get(outcome)
        if counter is not None:
            setattr(self, counter, getattr(self, counter) + 1)


_OUTCOME_COUNTERS: dict[str, str] = {
    "pending_import": "pending_imports",
    "imported": "imported",
    "linked": "linked",
    "unchanged": "unchanged",
    "updated_locally": "updated_locally",
    "conflict": "conflicts",
    "skipped": "skipped",
    "exported": "exported",
    "updated_remotely": "updated_remotely",
    "error": "errors",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CardDavSyncEngine:
    """Runs one bidirectional sync for a CardDAV connection."""

    def __init__(
        self,
        repository: CardSyncRepository,
        secrets: SecretStore,
        *,
        client_factory: ClientFactory | None = None,
        photos: PhotoStore | None = None,
        stale_lease_after: timedelta = DEFAULT_STALE_LEASE_AFTER,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._photos = photos
        self._stale_lease_after = stale_lease_after
        self._clock = clock
        self._client_factory = client_factory or (
            lambda connection: client_for_connection(connection, secrets)
        )

    async def sync(
        self,
        connection_id: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        connection = await self._repository.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"CardDAV connection {connection_id} not found")
        if not connection.sync_enabled:
            raise SyncDisabledError(f"Sync is disabled for connection {connection_id}")

        now = self._clock()
        claimed = await self._repository.claim_sync_lease(
            connection_id, now=now, stale_before=now - self._stale_lease_after
        )
        if not claimed:
            raise SyncAlreadyRunningError(connection_id)

        tracer = trace.get_tracer("cardsync")
        with connection_context(connection_id), tracer.start_as_current_span(
            "cardsync.carddav.sync"
        ) as span:
            span.set_attribute("carddav.connection_id", connection_id)
            client: CardDavClient | None = None
            try:
                client = self._client_factory(connection)
                result = await self._run(connection, client, on_progress)
                await self._repository.record_sync_success(connection_id, at=self._clock())
            except Exception as exc:
                categorized = categorize_error(exc)
                logger.error(
                    "CardDAV sync failed (%s): %s", categorized.category, categorized.message
                )
                await self._repository.record_sync_error(
                    connection_id, categorized.user_message, at=self._clock()
                )
                span.record_exception(exc)
                raise
            finally:
                if client is not None:
                    await client.shutdown()
                await self._repository.release_sync_lease(connection_id)

            span.set_attribute("carddav.errors", result.errors)
            logger.info(
                "CardDAV sync finished: %s pulled, %s pushed, %s exported, %s staged, "
                "%s conflicts, %s errors",
                result.updated_locally,
                result.updated_remotely,
                result.exported,
                result.pending_imports,
                result.conflicts,
                result.errors,
            )
            return result

    async def _run(
        self,
        connection: CardDavConnection,
        client: CardDavClient,
        on_progress: ProgressCallback | None,
    ) -> SyncResult:
        result = SyncResult()
        books = await client.fetch_address_books()
        if not books:
            raise CardDavProtocolError("No address books found")
        address_book = books[0]

        cards = await client.fetch_vcards(address_book)
        for index, card in enumerate(cards, start=1):
            uid: str | None = None
            person_id: str | None = None
            try:
                outcome, uid, person_id = await self._process_remote(connection, card)
            except Exception as exc:
                outcome = "error"
                result.error_messages.append(f"{card.url}: {exc}")
                logger.warning("Failed to process remote vCard %s: %s", card.url, exc)
            result.record(outcome)
            await _notify(
                on_progress,
                SyncProgress(
                    phase="remote",
                    index=index,
                    total=len(cards),
                    outcome=outcome,
                    uid=uid,
                    person_id=person_id,
                ),
            )

        people = await self._repository.list_sync_people(connection.user_id)
        for index, person in enumerate(people, start=1):
            try:
                outcome = await self._process_local(connection, client, address_book, person)
            except Exception as exc:
                outcome = "error"
                result.error_messages.append(f"{person.display_name}: {exc}")
                logger.warning("Failed to push person %s: %s", person.id, exc)
            result.record(outcome)
            await _notify(
                on_progress,
                SyncProgress(
                    phase="local",
                    index=index,
                    total=len(people),
                    outcome=outcome,
                    uid=person.uid,
                    person_id=person.id,
                ),
            )
        return result

    # ------------------------------------------------------------------
    # Remote -> local
    # ------------------------------------------------------------------

    async def _process_remote(
        self, connection: CardDavConnection, card: RemoteVCard
    ) -> tuple[SyncOutcome, str | None, str | None]:
        data = vcard_to_person(card.data)
        if not data.uid:
            raise VCardParseError("vCard missing UID")
        uid = data.uid
        repo = self._repository

        mapping = await repo.get_mapping_by_uid(connection.id, uid)
        if mapping is None:
            person = await repo.find_person_by_uid(connection.user_id, uid)
            if person is not None:
                return await self._link(connection, card, person, uid), uid, person.id
            if connection.import_mode == "auto":
                async with repo.transaction() as tx:
                    person = await import_contact(
                        tx,
                        self._photos,
                        user_id=connection.user_id,
                        data=data,
                        connection_id=connection.id,
                        href=card.url,
                        etag=card.etag,
                    )
                    await tx.delete_pending_import_by_uid(connection.id, uid)
                return "imported", uid, person.id
            await repo.upsert_pending_import(pending_from_card(connection.id, card, data))
            return "pending_import", uid, None

        if await repo.has_unresolved_conflict(mapping.id or ""):
            return "skipped", uid, mapping.person_id
        if mapping.etag == card.etag:
            return "unchanged", uid, mapping.person_id

        person = await repo.get_person(mapping.person_id)
        if person is None:
            logger.debug("Mapped person %s is deleted; ignoring %s", mapping.person_id, uid)
            return "skipped", uid, mapping.person_id

        now = self._clock()
        if contact_fingerprint(person) == mapping.local_version:
            async with repo.transaction() as tx:
                refreshed = await replace_from_remote(tx, self._photos, person, data)
                await tx.update_mapping(
                    mapping.id or "",
                    {
                        "etag": card.etag,
                        "href": card.url,
                        "local_version": contact_fingerprint(refreshed),
                        "sync_status": "synced",
                        "last_synced_at": now,
                        "last_remote_change": now,
                    },
                )
            logger.debug("Pulled remote changes for %s into person %s", uid, person.id)
            return "updated_locally", uid, person.id

        async with repo.transaction() as tx:
            await tx.create_conflict(
                CardDavConflict(
                    mapping_id=mapping.id or "",
                    local_version=snapshot(person),
                    remote_version=data.model_dump(mode="json"),
                    remote_etag=card.etag,
                    remote_href=card.url,
                    detected_at=now,
                )
            )
            await tx.update_mapping(mapping.id or "", {"sync_status": "conflict"})
        logger.info("Conflict detected for %s (person %s)", uid, person.id)
        return "conflict", uid, person.id

    async def _link(
        self, connection: CardDavConnection, card: RemoteVCard, person: Person, uid: str
    ) -> SyncOutcome:
        if await self._repository.get_mapping_for_person(person.id) is not None:
            return "skipped"
        await self._repository.create_mapping(
            CardDavMapping(
                connection_id=connection.id,
                person_id=person.id,
                uid=uid,
                href=card.url,
                etag=card.etag,
                sync_status="synced",
                local_version=contact_fingerprint(person),
                last_synced_at=self._clock(),
            )
        )
        await self._repository.delete_pending_import_by_uid(connection.id, uid)
        return "linked"

    # ------------------------------------------------------------------
    # Local -> remote
    # ------------------------------------------------------------------

    async def _process_local(
        self,
        connection: CardDavConnection,
        client: CardDavClient,
        address_book: AddressBook,
        person: Person,
    ) -> SyncOutcome:
        mapping = await self._repository.get_mapping_for_person(person.id)
        if mapping is None:
            await export_person(self._repository, client, address_book, connection, person)
            return "exported"
        if mapping.connection_id != connection.id:
            return "in_sync"
        if mapping.sync_status == "conflict":
            return "skipped"
        unchanged = contact_fingerprint(person) == mapping.local_version
        if mapping.sync_status != "pending" and unchanged:
            return "in_sync"
        await push_person(self._repository, client, mapping, person)
        return "updated_remotely"


async def _notify(callback: ProgressCallback | None, progress: SyncProgress) -> None:
    if callback is not None:
        await callback(progress)


# ---------------------------------------------------------------------------
# Periodic sweep
# ---------------------------------------------------------------------------


def should_sync_now(
    last_sync_at: datetime | None, interval_seconds: int, now: datetime
) -> bool:
    """True when no sync ran yet or ``interval_seconds`` have elapsed since the last one."""
    if last_sync_at is None:
        return True
    return now - last_sync_at >= timedelta(seconds=interval_seconds)


class SweepResult(BaseModel):
    checked: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    error_messages: list[str] = Field(default_factory=list)


async def run_scheduled_sync(
    repository: CardSyncRepository,
    engine: CardDavSyncEngine,
    *,
    now: datetime | None = None,
    delay: float = SWEEP_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SweepResult:
    """Sync every due, sync-enabled connection one after another."""
    result = SweepResult()
    now = now or _utcnow()
    connections = await repository.list_connections(sync_enabled_only=True)
    processed = 0
    for connection in connections:
        result.checked += 1
        if not should_sync_now(connection.last_sync_at, connection.auto_sync_interval, now):
            result.skipped += 1
            continue
        if processed:
            await sleep(delay)
        processed += 1
        try:
            await engine.sync(connection.id)
        except SyncAlreadyRunningError:
            logger.info("Skipping connection %s: sync already running", connection.id)
            result.skipped += 1
            continue
        except Exception as exc:
            logger.error("Scheduled sync failed for connection %s: %s", connection.id, exc)
            result.failed += 1
            result.error_messages.append(f"{connection.id}: {exc}")
            continue
        result.synced += 1
    logger.info(
        "CardDAV sweep: %s checked, %s synced, %s skipped, %s failed",
        result.checked,
        result.synced,
        result.skipped,
        result.failed,
    )
    return result
