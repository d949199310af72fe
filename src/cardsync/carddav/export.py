"""Pushing individual persons to the CardDAV server outside a full sync run."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from cardsync.carddav.client import (
    AddressBook,
    CardDavClient,
    RemoteVCard,
    client_for_connection,
)
from cardsync.carddav.fingerprint import contact_fingerprint
from cardsync.carddav.retry import categorize_error
from cardsync.carddav.vcard import person_to_vcard
from cardsync.errors import (
    CardDavProtocolError,
    ConnectionNotFoundError,
    PersonNotFoundError,
    SyncDisabledError,
)
from cardsync.models import CardDavConnection, CardDavMapping, Person

if TYPE_CHECKING:
    from cardsync.credentials import SecretStore
    from cardsync.repository import CardSyncRepository

logger = logging.getLogger(__name__)

EXPORT_BATCH_SIZE = 50

ClientFactory = Callable[[CardDavConnection], CardDavClient]


class BulkExportResult(BaseModel):
    exported: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)


async def export_person(
    repository: CardSyncRepository,
    client: CardDavClient,
    address_book: AddressBook,
    connection: CardDavConnection,
    person: Person,
) -> CardDavMapping:
    """Create ``person`` on the server as ``<uid>.vcf`` and record the mapping.

    A missing UID is generated and stored on the person first.
    """
    uid = person.uid or str(uuid.uuid4())
    if person.uid != uid:
        await repository.update_person_fields(person.id, {"uid": uid})
        person = person.model_copy(update={"uid": uid})
    created = await client.create_vcard(address_book, person_to_vcard(person), f"{uid}.vcf")
    now = datetime.now(UTC)
    return await repository.create_mapping(
        CardDavMapping(
            connection_id=connection.id,
            person_id=person.id,
            uid=uid,
            href=created.url,
            etag=created.etag,
            sync_status="synced",
            local_version=contact_fingerprint(person),
            last_synced_at=now,
            last_local_change=now,
        )
    )


async def push_person(
    repository: CardSyncRepository,
    client: CardDavClient,
    mapping: CardDavMapping,
    person: Person,
) -> None:
    """Overwrite the mapped remote card, guarded by the mapping's etag."""
    updated = await client.update_vcard(
        RemoteVCard(url=mapping.href, etag=mapping.etag), person_to_vcard(person)
    )
    now = datetime.now(UTC)
    await repository.update_mapping(
        mapping.id or "",
        {
            "etag": updated.etag,
            "href": updated.url,
            "local_version": contact_fingerprint(person),
            "sync_status": "synced",
            "last_synced_at": now,
            "last_local_change": now,
        },
    )


async def _first_address_book(client: CardDavClient) -> AddressBook:
    books = await client.fetch_address_books()
    if not books:
        raise CardDavProtocolError("No address books found")
    return books[0]


class ExportService:
    """Auto-export hooks for person create/update/delete and bulk export."""

    def __init__(
        self,
        repository: CardSyncRepository,
        secrets: SecretStore,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._repository = repository
        self._client_factory = client_factory or (
            lambda connection: client_for_connection(connection, secrets)
        )

    async def _auto_export_connection(self, person: Person) -> CardDavConnection | None:
        connection = await self._repository.get_connection_for_user(person.user_id)
        if connection is None or not connection.sync_enabled or not connection.auto_export_new:
            return None
        return connection

    async def _record_failure(self, connection: CardDavConnection, exc: Exception) -> None:
        categorized = categorize_error(exc)
        await self._repository.record_sync_error(
            connection.id, categorized.user_message, at=datetime.now(UTC)
        )

    async def _load_person(self, person_id: str) -> Person:
        person = await self._repository.get_person(person_id)
        if person is None:
            raise PersonNotFoundError(f"Person {person_id} not found")
        return person

    async def auto_export_person(self, person_id: str) -> bool:
        """Export a newly created person when the user's connection asks for it.

        Returns:
            True when a remote card was created
        """
        person = await self._load_person(person_id)
        connection = await self._auto_export_connection(person)
        if connection is None:
            return False
        if await self._repository.get_mapping_for_person(person.id) is not None:
            return False

        client = self._client_factory(connection)
        try:
            address_book = await _first_address_book(client)
            await export_person(self._repository, client, address_book, connection, person)
        except Exception as exc:
            logger.error("Auto-export of person %s failed: %s", person_id, exc)
            await self._record_failure(connection, exc)
            raise
        finally:
            await client.shutdown()
        logger.info("Auto-exported person %s", person_id)
        return True

    async def auto_update_person(self, person_id: str) -> bool:
        """Push a person's local edits; unmapped persons are exported instead."""
        person = await self._load_person(person_id)
        connection = await self._auto_export_connection(person)
        if connection is None:
            return False
        mapping = await self._repository.get_mapping_for_person(person.id)
        if mapping is None:
            return await self.auto_export_person(person_id)

        client = self._client_factory(connection)
        try:
            await push_person(self._repository, client, mapping, person)
        except Exception as exc:
            logger.error("Auto-update of person %s failed: %s", person_id, exc)
            await self._record_failure(connection, exc)
            raise
        finally:
            await client.shutdown()
        logger.info("Auto-updated person %s", person_id)
        return True

    async def export_bulk(self, user_id: str, person_ids: Sequence[str]) -> BulkExportResult:
        """Export the given persons in batches; already mapped persons are skipped."""
        connection = await self._repository.get_connection_for_user(user_id)
        if connection is None:
            raise ConnectionNotFoundError(f"No CardDAV connection for user {user_id}")
        if not connection.sync_enabled:
            raise SyncDisabledError("Sync is disabled for this connection")

        result = BulkExportResult()
        client = self._client_factory(connection)
        try:
            address_book = await _first_address_book(client)
            ids = list(dict.fromkeys(person_ids))
            for start in range(0, len(ids), EXPORT_BATCH_SIZE):
                for person_id in ids[start : start + EXPORT_BATCH_SIZE]:
                    person = await self._repository.get_person(person_id)
                    if person is None or person.user_id != user_id:
                        result.skipped += 1
                        continue
                    if await self._repository.get_mapping_for_person(person.id) is not None:
                        result.skipped += 1
                        continue
                    try:
                        await export_person(
                            self._repository, client, address_book, connection, person
                        )
                        if not person.carddav_sync_enabled:
                            await self._repository.update_person_fields(
                                person.id, {"carddav_sync_enabled": True}
                            )
                    except Exception as exc:
                        result.errors += 1
                        result.error_messages.append(f"{person.display_name}: {exc}")
                        logger.warning("Bulk export of person %s failed: %s", person.id, exc)
                        continue
                    result.exported += 1
        finally:
            await client.shutdown()
        logger.info(
            "Bulk export for user %s: %s exported, %s skipped, %s failed",
            user_id,
            result.exported,
            result.skipped,
            result.errors,
        )
        return result

    async def delete_from_carddav(self, person_id: str) -> bool:
        """Delete the person's remote card; failures are logged and reported as False."""
        mapping = await self._repository.get_mapping_for_person(person_id)
        if mapping is None:
            logger.info("No CardDAV mapping found for person %s", person_id)
            return False
        connection = await self._repository.get_connection(mapping.connection_id)
        if connection is None:
            return False
        try:
            client = self._client_factory(connection)
            try:
                await client.delete_vcard(RemoteVCard(url=mapping.href, etag=mapping.etag))
            finally:
                await client.shutdown()
        except Exception as exc:
            logger.error("Failed to delete person %s from CardDAV server: %s", person_id, exc)
            return False
        logger.info("Deleted %s from CardDAV server", mapping.href)
        return True
