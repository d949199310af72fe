"""Shared test doubles: an in-memory repository and a fake CardDAV server client."""

from __future__ import annotations

import copy
import itertools
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import pytest

from cardsync.carddav.client import AddressBook, RemoteVCard
from cardsync.errors import CardDavRequestError, ConflictAlreadyResolvedError
from cardsync.models import (
    COLLECTION_FIELDS,
    SCALAR_FIELDS,
    CardDavConflict,
    CardDavConnection,
    CardDavMapping,
    ConflictResolution,
    ContactData,
    PendingImport,
    Person,
    Relationship,
)

BOOK_URL = "https://dav.example.com/addressbooks/alice/contacts/"

_PERSON_LOCAL_FIELDS = frozenset(
    {
        "uid",
        *SCALAR_FIELDS,
        "carddav_sync_enabled",
        "relationship_to_user_id",
        "contact_reminder_enabled",
        "contact_reminder_interval",
        "contact_reminder_interval_unit",
        "last_contact_reminder_sent",
    }
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _with_item_ids(data: ContactData) -> dict[str, list[Any]]:
    return {
        collection: [
            item.model_copy(update={"id": _new_id()}) for item in getattr(data, collection)
        ]
        for collection in COLLECTION_FIELDS
    }


class FakeSecrets:
    """Reversible stand-in for the AES secret store."""

    def encrypt(self, plaintext: str) -> str:
        return f"enc:{plaintext}"

    def decrypt(self, token: str) -> str:
        return token.removeprefix("enc:")


class InMemoryRepository:
    """Dict-backed ``CardSyncRepository`` whose transactions roll back on error."""

    def __init__(self) -> None:
        self.people: dict[str, Person] = {}
        self.groups: dict[str, tuple[str, str]] = {}
        self.person_groups: set[tuple[str, str]] = set()
        self.relationships: dict[str, Relationship] = {}
        self.connections: dict[str, CardDavConnection] = {}
        self.mappings: dict[str, CardDavMapping] = {}
        self.conflicts: dict[str, CardDavConflict] = {}
        self.pending: dict[str, PendingImport] = {}
        self.fail_on: dict[str, Exception] = {}

    # -- seeding helpers ---------------------------------------------------

    def seed_person(self, user_id: str = "user-1", **fields: Any) -> Person:
        local = {
            name: fields.pop(name) for name in list(fields) if name not in ContactData.model_fields
        }
        data = ContactData(**fields)
        person = Person(
            id=_new_id(),
            user_id=user_id,
            **data.model_dump(exclude=set(COLLECTION_FIELDS) | {"categories"}),
            **_with_item_ids(data),
            **local,
        )
        self.people[person.id] = person
        for name in data.categories:
            group_id = next(
                (
                    gid
                    for gid, (uid, gname) in self.groups.items()
                    if (uid, gname) == (user_id, name)
                ),
                None,
            ) or _new_id()
            self.groups[group_id] = (user_id, name)
            self.person_groups.add((person.id, group_id))
        return self._hydrate(person)

    def seed_connection(self, user_id: str = "user-1", **fields: Any) -> CardDavConnection:
        values = {
            "id": _new_id(),
            "user_id": user_id,
            "server_url": "https://dav.example.com/",
            "username": "alice",
            "password": "enc:s3cret",
        }
        values.update(fields)
        connection = CardDavConnection(**values)
        self.connections[connection.id] = connection
        return connection

    def seed_relationship(self, person_id: str, related_person_id: str) -> Relationship:
        relationship = Relationship(
            id=_new_id(), person_id=person_id, related_person_id=related_person_id
        )
        self.relationships[relationship.id] = relationship
        return relationship

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def _hydrate(self, person: Person) -> Person:
        memberships = sorted(
            (self.groups[gid][1], gid) for pid, gid in self.person_groups if pid == person.id
        )
        return person.model_copy(
            update={
                "group_ids": [gid for _, gid in memberships],
                "categories": [name for name, _ in memberships],
            },
            deep=True,
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryRepository]:
        saved = copy.deepcopy(
            {
                key: value
                for key, value in self.__dict__.items()
                if key != "fail_on"
            }
        )
        try:
            yield self
        except BaseException:
            self.__dict__.update(saved)
            raise

    # -- people ------------------------------------------------------------

    async def get_person(self, person_id: str, *, include_deleted: bool = False) -> Person | None:
        person = self.people.get(person_id)
        if person is None or (person.deleted_at is not None and not include_deleted):
            return None
        return self._hydrate(person)

    async def find_person_by_uid(
        self, user_id: str, uid: str, *, include_deleted: bool = False
    ) -> Person | None:
        matches = [
            p
            for p in self.people.values()
            if p.user_id == user_id and p.uid == uid and (include_deleted or p.deleted_at is None)
        ]
        matches.sort(key=lambda p: p.deleted_at is not None)
        return self._hydrate(matches[0]) if matches else None

    async def list_sync_people(self, user_id: str) -> list[Person]:
        return [
            self._hydrate(p)
            for p in self.people.values()
            if p.user_id == user_id and p.deleted_at is None and p.carddav_sync_enabled
        ]

    async def list_people(self, user_id: str | None = None) -> list[Person]:
        return [
            self._hydrate(p)
            for p in self.people.values()
            if p.deleted_at is None and (user_id is None or p.user_id == user_id)
        ]

    async def create_person(self, user_id: str, data: ContactData) -> Person:
        self._maybe_fail("create_person")
        person = Person(
            id=_new_id(),
            user_id=user_id,
            **data.model_dump(exclude=set(COLLECTION_FIELDS) | {"categories"}),
            **_with_item_ids(data),
        )
        self.people[person.id] = person
        return self._hydrate(person)

    async def replace_person_data(self, person_id: str, data: ContactData) -> None:
        self._maybe_fail("replace_person_data")
        person = self.people[person_id]
        updates: dict[str, Any] = {name: getattr(data, name) for name in SCALAR_FIELDS}
        updates.update(_with_item_ids(data))
        self.people[person_id] = person.model_copy(update=updates)

    async def update_person_fields(self, person_id: str, fields: dict[str, Any]) -> None:
        self._maybe_fail("update_person_fields")
        unknown = set(fields) - _PERSON_LOCAL_FIELDS
        if unknown:
            raise ValueError(f"Unknown column(s): {', '.join(sorted(unknown))}")
        self.people[person_id] = self.people[person_id].model_copy(update=fields)

    async def restore_person(self, person_id: str) -> None:
        self.people[person_id] = self.people[person_id].model_copy(update={"deleted_at": None})

    async def soft_delete_person(self, person_id: str, *, at: datetime) -> None:
        self._maybe_fail("soft_delete_person")
        self.people[person_id] = self.people[person_id].model_copy(update={"deleted_at": at})

    async def reparent_collection_items(
        self, collection: str, item_ids: Sequence[str], person_id: str
    ) -> None:
        wanted = set(item_ids)
        moved: list[Any] = []
        for pid, person in list(self.people.items()):
            items = getattr(person, collection)
            keep = [item for item in items if item.id not in wanted]
            moved.extend(item for item in items if item.id in wanted)
            if len(keep) != len(items):
                self.people[pid] = person.model_copy(update={collection: keep})
        target = self.people[person_id]
        self.people[person_id] = target.model_copy(
            update={collection: [*getattr(target, collection), *moved]}
        )

    async def delete_collection_items(self, collection: str, person_id: str) -> int:
        person = self.people[person_id]
        count = len(getattr(person, collection))
        self.people[person_id] = person.model_copy(update={collection: []})
        return count

    async def ensure_groups(self, user_id: str, names: Iterable[str]) -> list[str]:
        ids: list[str] = []
        for name in dict.fromkeys(n.strip() for n in names if n and n.strip()):
            existing = next(
                (
                    gid
                    for gid, (uid, gname) in self.groups.items()
                    if uid == user_id and gname == name
                ),
                None,
            )
            if existing is None:
                existing = _new_id()
                self.groups[existing] = (user_id, name)
            ids.append(existing)
        return ids

    async def add_person_to_groups(self, person_id: str, group_ids: Iterable[str]) -> None:
        self._maybe_fail("add_person_to_groups")
        for gid in group_ids:
            self.person_groups.add((person_id, gid))

    async def remove_person_from_all_groups(self, person_id: str) -> None:
        self.person_groups = {pair for pair in self.person_groups if pair[0] != person_id}

    async def list_relationships(self, person_id: str) -> list[Relationship]:
        return [
            r
            for r in self.relationships.values()
            if r.deleted_at is None and person_id in (r.person_id, r.related_person_id)
        ]

    async def reparent_relationship(
        self,
        relationship_id: str,
        *,
        person_id: str | None = None,
        related_person_id: str | None = None,
    ) -> None:
        relationship = self.relationships[relationship_id]
        updates = {}
        if person_id is not None:
            updates["person_id"] = person_id
        if related_person_id is not None:
            updates["related_person_id"] = related_person_id
        self.relationships[relationship_id] = relationship.model_copy(update=updates)

    async def soft_delete_relationships(
        self, relationship_ids: Sequence[str], *, at: datetime
    ) -> None:
        for rid in relationship_ids:
            self.relationships[rid] = self.relationships[rid].model_copy(update={"deleted_at": at})

    # -- connections -------------------------------------------------------

    async def get_connection(self, connection_id: str) -> CardDavConnection | None:
        return self.connections.get(connection_id)

    async def get_connection_for_user(self, user_id: str) -> CardDavConnection | None:
        return next((c for c in self.connections.values() if c.user_id == user_id), None)

    async def list_connections(self, *, sync_enabled_only: bool = False) -> list[CardDavConnection]:
        return [c for c in self.connections.values() if c.sync_enabled or not sync_enabled_only]

    async def save_connection(
        self,
        user_id: str,
        *,
        server_url: str,
        username: str,
        password: str,
        import_mode: str = "manual",
        auto_export_new: bool = True,
        auto_sync_interval: int = 43200,
    ) -> CardDavConnection:
        existing = await self.get_connection_for_user(user_id)
        values = existing.model_dump() if existing is not None else {"id": _new_id()}
        values.update(
            user_id=user_id,
            server_url=server_url,
            username=username,
            password=password,
            import_mode=import_mode,
            auto_export_new=auto_export_new,
            auto_sync_interval=auto_sync_interval,
            sync_enabled=True,
            last_error=None,
            last_error_at=None,
        )
        connection = CardDavConnection(**values)
        self.connections[connection.id] = connection
        return connection

    async def claim_sync_lease(
        self, connection_id: str, *, now: datetime, stale_before: datetime
    ) -> bool:
        connection = self.connections[connection_id]
        if (
            connection.sync_in_progress
            and connection.sync_started_at is not None
            and connection.sync_started_at >= stale_before
        ):
            return False
        self.connections[connection_id] = connection.model_copy(
            update={"sync_in_progress": True, "sync_started_at": now}
        )
        return True

    async def release_sync_lease(self, connection_id: str) -> None:
        self.connections[connection_id] = self.connections[connection_id].model_copy(
            update={"sync_in_progress": False, "sync_started_at": None}
        )

    async def record_sync_success(self, connection_id: str, *, at: datetime) -> None:
        self.connections[connection_id] = self.connections[connection_id].model_copy(
            update={"last_sync_at": at, "last_error": None, "last_error_at": None}
        )

    async def record_sync_error(self, connection_id: str, message: str, *, at: datetime) -> None:
        self.connections[connection_id] = self.connections[connection_id].model_copy(
            update={"last_error": message, "last_error_at": at}
        )

    # -- mappings ----------------------------------------------------------

    async def get_mapping(self, mapping_id: str) -> CardDavMapping | None:
        return self.mappings.get(mapping_id)

    async def get_mapping_by_uid(self, connection_id: str, uid: str) -> CardDavMapping | None:
        return next(
            (
                m
                for m in self.mappings.values()
                if m.connection_id == connection_id and m.uid == uid
            ),
            None,
        )

    async def get_mapping_for_person(self, person_id: str) -> CardDavMapping | None:
        return next((m for m in self.mappings.values() if m.person_id == person_id), None)

    async def create_mapping(self, mapping: CardDavMapping) -> CardDavMapping:
        for existing in self.mappings.values():
            if existing.person_id == mapping.person_id or (
                existing.connection_id == mapping.connection_id and existing.uid == mapping.uid
            ):
                raise ValueError("duplicate mapping")
        created = mapping.model_copy(update={"id": _new_id()})
        self.mappings[created.id or ""] = created
        return created

    async def update_mapping(self, mapping_id: str, fields: dict[str, Any]) -> None:
        self._maybe_fail("update_mapping")
        self.mappings[mapping_id] = self.mappings[mapping_id].model_copy(update=fields)

    async def delete_mapping_for_person(self, person_id: str) -> CardDavMapping | None:
        mapping = await self.get_mapping_for_person(person_id)
        if mapping is not None:
            del self.mappings[mapping.id or ""]
            self.conflicts = {
                cid: c for cid, c in self.conflicts.items() if c.mapping_id != mapping.id
            }
        return mapping

    # -- conflicts ---------------------------------------------------------

    async def has_unresolved_conflict(self, mapping_id: str) -> bool:
        return any(
            c.mapping_id == mapping_id and c.resolved_at is None for c in self.conflicts.values()
        )

    async def create_conflict(self, conflict: CardDavConflict) -> CardDavConflict:
        created = conflict.model_copy(update={"id": _new_id()})
        self.conflicts[created.id or ""] = created
        return created

    async def get_conflict(self, conflict_id: str) -> CardDavConflict | None:
        return self.conflicts.get(conflict_id)

    async def resolve_conflict(
        self,
        conflict_id: str,
        *,
        resolution: ConflictResolution,
        resolved_by: str,
        at: datetime,
    ) -> CardDavConflict:
        self._maybe_fail("resolve_conflict")
        conflict = self.conflicts[conflict_id]
        if conflict.resolved_at is not None:
            raise ConflictAlreadyResolvedError(f"Conflict {conflict_id} is already resolved")
        resolved = conflict.model_copy(
            update={"resolved_at": at, "resolution": resolution, "resolved_by": resolved_by}
        )
        self.conflicts[conflict_id] = resolved
        return resolved

    async def list_unresolved_conflicts(self, connection_id: str) -> list[CardDavConflict]:
        mapping_ids = {m.id for m in self.mappings.values() if m.connection_id == connection_id}
        return [
            c
            for c in self.conflicts.values()
            if c.mapping_id in mapping_ids and c.resolved_at is None
        ]

    # -- pending imports ---------------------------------------------------

    def _pending_owner(self, pending: PendingImport) -> str | None:
        if pending.connection_id is not None:
            connection = self.connections.get(pending.connection_id)
            return connection.user_id if connection else None
        return pending.uploaded_by_user_id

    async def upsert_pending_import(self, pending: PendingImport) -> PendingImport:
        for pid, existing in self.pending.items():
            same_key = existing.uid == pending.uid and (
                (
                    pending.connection_id is not None
                    and existing.connection_id == pending.connection_id
                )
                or (
                    pending.connection_id is None
                    and existing.connection_id is None
                    and existing.uploaded_by_user_id == pending.uploaded_by_user_id
                )
            )
            if same_key:
                updated = pending.model_copy(update={"id": pid})
                self.pending[pid] = updated
                return updated
        created = pending.model_copy(update={"id": _new_id()})
        self.pending[created.id or ""] = created
        return created

    async def list_pending_imports(self, user_id: str) -> list[PendingImport]:
        return [p for p in self.pending.values() if self._pending_owner(p) == user_id]

    async def get_pending_imports(
        self, user_id: str, pending_ids: Sequence[str]
    ) -> list[PendingImport]:
        wanted = set(pending_ids)
        return [
            p
            for p in self.pending.values()
            if p.id in wanted and self._pending_owner(p) == user_id
        ]

    async def delete_pending_import(self, pending_id: str) -> None:
        self.pending.pop(pending_id, None)

    async def delete_pending_import_by_uid(self, connection_id: str, uid: str) -> None:
        self.pending = {
            pid: p
            for pid, p in self.pending.items()
            if not (p.connection_id == connection_id and p.uid == uid)
        }


class FakeCardDavClient:
    """In-memory CardDAV server with etag preconditions, shaped like ``CardDavClient``."""

    def __init__(self, *, books: list[AddressBook] | None = None) -> None:
        self.books = books if books is not None else [
            AddressBook(url=BOOK_URL, display_name="Contacts")
        ]
        self.cards: dict[str, RemoteVCard] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Exception] = {}
        self.shutdown_count = 0
        self._etags = itertools.count(1)

    def _next_etag(self) -> str:
        return f'"etag-{next(self._etags)}"'

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def put_remote(self, data: str, filename: str | None = None) -> RemoteVCard:
        """Create or overwrite a card as another client would."""
        url = BOOK_URL + (filename or f"{uuid.uuid4()}.vcf")
        card = RemoteVCard(url=url, etag=self._next_etag(), data=data)
        self.cards[url] = card
        return card

    async def fetch_address_books(self) -> list[AddressBook]:
        self._maybe_fail("fetch_address_books")
        self.calls.append(("fetch_address_books", ""))
        return list(self.books)

    async def fetch_vcards(self, address_book: AddressBook) -> list[RemoteVCard]:
        self._maybe_fail("fetch_vcards")
        self.calls.append(("fetch_vcards", address_book.url))
        return list(self.cards.values())

    async def create_vcard(
        self, address_book: AddressBook, data: str, filename: str
    ) -> RemoteVCard:
        self._maybe_fail("create_vcard")
        url = address_book.url + filename
        if url in self.cards:
            raise CardDavRequestError(status_code=412, message="Precondition Failed", url=url)
        self.calls.append(("create_vcard", url))
        card = RemoteVCard(url=url, etag=self._next_etag(), data=data)
        self.cards[url] = card
        return card

    async def update_vcard(self, vcard: RemoteVCard, data: str) -> RemoteVCard:
        self._maybe_fail("update_vcard")
        current = self.cards.get(vcard.url)
        if current is None:
            raise CardDavRequestError(status_code=404, message="Not Found", url=vcard.url)
        if vcard.etag is not None and vcard.etag != current.etag:
            raise CardDavRequestError(status_code=412, message="Precondition Failed", url=vcard.url)
        self.calls.append(("update_vcard", vcard.url))
        card = RemoteVCard(url=vcard.url, etag=self._next_etag(), data=data)
        self.cards[vcard.url] = card
        return card

    async def delete_vcard(self, vcard: RemoteVCard) -> None:
        await self.delete_vcard_by_url(vcard.url, etag=vcard.etag or "*")

    async def delete_vcard_by_url(self, url: str, *, etag: str = "*") -> None:
        self._maybe_fail("delete_vcard_by_url")
        self.calls.append(("delete", f"{url} {etag}"))
        current = self.cards.get(url)
        if current is None:
            raise CardDavRequestError(status_code=404, message="Not Found", url=url)
        if etag != "*" and etag != current.etag:
            raise CardDavRequestError(status_code=412, message="Precondition Failed", url=url)
        del self.cards[url]

    async def shutdown(self) -> None:
        self.shutdown_count += 1


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def secrets() -> FakeSecrets:
    return FakeSecrets()


@pytest.fixture
def carddav_server() -> FakeCardDavClient:
    return FakeCardDavClient()


@pytest.fixture
def client_factory(carddav_server: FakeCardDavClient):
    """Factory handing the shared fake server to every service."""
    return lambda connection: carddav_server
