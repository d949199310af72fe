"""Pending imports: staging remote or uploaded vCards and importing them on demand."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from cardsync.carddav.client import CardDavClient, RemoteVCard, client_for_connection
from cardsync.carddav.contacts import create_from_remote, restore_from_remote
from cardsync.carddav.fingerprint import contact_fingerprint
from cardsync.carddav.vcard import display_name, split_vcards, vcard_to_person
from cardsync.errors import ConnectionNotFoundError, VCardParseError
from cardsync.models import CardDavConnection, CardDavMapping, ContactData, PendingImport, Person

if TYPE_CHECKING:
    from cardsync.credentials import SecretStore
    from cardsync.repository import CardSyncRepository
    from cardsync.storage.photos import PhotoStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[CardDavConnection], CardDavClient]


class ImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)
    person_ids: list[str] = Field(default_factory=list)


class StageResult(BaseModel):
    staged: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)


def pending_from_card(connection_id: str, card: RemoteVCard, data: ContactData) -> PendingImport:
    if not data.uid:
        raise VCardParseError("vCard missing UID")
    return PendingImport(
        connection_id=connection_id,
        uid=data.uid,
        href=card.url,
        etag=card.etag,
        vcard_data=card.data,
        display_name=display_name(data),
    )


async def import_contact(
    repository: CardSyncRepository,
    photos: PhotoStore | None,
    *,
    user_id: str,
    data: ContactData,
    connection_id: str | None = None,
    href: str | None = None,
    etag: str | None = None,
    group_ids: Sequence[str] = (),
) -> Person:
    """Create (or restore by UID) a person from ``data`` and link it to the remote card.

    Groups named by the card's categories are created as needed and assigned
    together with ``group_ids``.
    """
    existing = None
    if data.uid:
        existing = await repository.find_person_by_uid(user_id, data.uid, include_deleted=True)
    if existing is not None and existing.deleted_at is not None:
        person = await restore_from_remote(repository, photos, existing, data)
    else:
        person = await create_from_remote(repository, photos, user_id, data)

    category_group_ids = await repository.ensure_groups(user_id, data.categories)
    await repository.add_person_to_groups(person.id, [*category_group_ids, *group_ids])

    if connection_id is not None and href is not None:
        now = datetime.now(UTC)
        await repository.create_mapping(
            CardDavMapping(
                connection_id=connection_id,
                person_id=person.id,
                uid=person.uid or data.uid or "",
                href=href,
                etag=etag,
                sync_status="synced",
                local_version=contact_fingerprint(person),
                last_synced_at=now,
                last_remote_change=now,
            )
        )
    return person


class ImportService:
    """Imports staged vCards for a user and refreshes the staging area."""

    def __init__(
        self,
        repository: CardSyncRepository,
        secrets: SecretStore,
        *,
        photos: PhotoStore | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._repository = repository
        self._photos = photos
        self._client_factory = client_factory or (
            lambda connection: client_for_connection(connection, secrets)
        )

    async def import_pending(
        self,
        user_id: str,
        pending_ids: Sequence[str],
        group_ids: Sequence[str] = (),
    ) -> ImportResult:
        """Import the selected pending rows; each row succeeds or fails on its own."""
        result = ImportResult()
        pending_rows = await self._repository.get_pending_imports(user_id, pending_ids)
        for pending in pending_rows:
            try:
                person_id = await self._import_one(user_id, pending, group_ids)
            except Exception as exc:
                result.errors += 1
                result.error_messages.append(f"{pending.display_name}: {exc}")
                logger.warning("Failed to import pending vCard %s: %s", pending.uid, exc)
                continue
            if person_id is None:
                result.skipped += 1
            else:
                result.imported += 1
                result.person_ids.append(person_id)
        logger.info(
            "Imported %s pending contact(s) for user %s (%s skipped, %s failed)",
            result.imported,
            user_id,
            result.skipped,
            result.errors,
        )
        return result

    async def _import_one(
        self, user_id: str, pending: PendingImport, group_ids: Sequence[str]
    ) -> str | None:
        data = vcard_to_person(pending.vcard_data)
        if not data.uid and pending.connection_id is not None:
            data = data.model_copy(update={"uid": pending.uid})

        async with self._repository.transaction() as tx:
            if pending.connection_id is not None and data.uid:
                mapping = await tx.get_mapping_by_uid(pending.connection_id, data.uid)
                if mapping is not None:
                    await tx.delete_pending_import(pending.id or "")
                    return None

            active = await tx.find_person_by_uid(user_id, data.uid) if data.uid else None
            if active is not None:
                if (
                    pending.connection_id is not None
                    and await tx.get_mapping_for_person(active.id) is None
                ):
                    await tx.create_mapping(
                        CardDavMapping(
                            connection_id=pending.connection_id,
                            person_id=active.id,
                            uid=data.uid or pending.uid,
                            href=pending.href,
                            etag=pending.etag,
                            sync_status="synced",
                            local_version=contact_fingerprint(active),
                            last_synced_at=datetime.now(UTC),
                        )
                    )
                await tx.delete_pending_import(pending.id or "")
                return None

            person = await import_contact(
                tx,
                self._photos,
                user_id=user_id,
                data=data,
                connection_id=pending.connection_id,
                href=pending.href,
                etag=pending.etag,
                group_ids=group_ids,
            )
            await tx.delete_pending_import(pending.id or "")
        return person.id

    async def stage_upload(self, user_id: str, text: str) -> StageResult:
        """Stage every card of an uploaded ``.vcf`` file for import by ``user_id``."""
        result = StageResult()
        blocks = split_vcards(text)
        if not blocks:
            raise VCardParseError("No vCards found in upload")
        for index, block in enumerate(blocks, start=1):
            try:
                data = vcard_to_person(block)
                uid = data.uid or f"upload-{hashlib.sha256(block.encode('utf-8')).hexdigest()[:16]}"
                await self._repository.upsert_pending_import(
                    PendingImport(
                        uploaded_by_user_id=user_id,
                        uid=uid,
                        href=f"upload:{uid}",
                        vcard_data=block,
                        display_name=display_name(data),
                    )
                )
            except (VCardParseError, ValueError) as exc:
                result.errors += 1
                result.error_messages.append(f"vCard #{index}: {exc}")
                continue
            result.staged += 1
        return result

    async def discover_new_contacts(self, connection_id: str) -> int:
        """Stage remote cards that have no mapping yet; returns how many are pending."""
        connection = await self._repository.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"CardDAV connection {connection_id} not found")

        client = self._client_factory(connection)
        try:
            books = await client.fetch_address_books()
            if not books:
                return 0
            cards = await client.fetch_vcards(books[0])
        finally:
            await client.shutdown()

        staged = 0
        for card in cards:
            try:
                data = vcard_to_person(card.data)
            except VCardParseError as exc:
                logger.warning("Skipping unparseable remote vCard %s: %s", card.url, exc)
                continue
            if not data.uid:
                continue
            if await self._repository.get_mapping_by_uid(connection.id, data.uid) is not None:
                continue
            if await self._repository.find_person_by_uid(connection.user_id, data.uid) is not None:
                continue
            pending = pending_from_card(connection.id, card, data)
            await self._repository.upsert_pending_import(pending)
            staged += 1
        logger.info("Discovered %s new remote contact(s) for connection %s", staged, connection_id)
        return staged
