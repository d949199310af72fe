"""Persistence contracts consumed by the sync, conflict, import and merge engines.

``PeopleRepository`` covers the person aggregate (default queries exclude
soft-deleted persons; ``include_deleted=True`` is the unscoped escape hatch),
``CardDavRepository`` covers connections, mappings, conflicts and pending
imports.  ``CardSyncRepository`` is both, plus ``transaction()`` which yields
a repository whose writes commit or roll back together.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from cardsync.models import (
    CardDavConflict,
    CardDavConnection,
    CardDavMapping,
    ConflictResolution,
    ContactData,
    ImportMode,
    PendingImport,
    Person,
    Relationship,
)


class PeopleRepository(Protocol):
    """Person aggregate persistence."""

    async def get_person(
        self, person_id: str, *, include_deleted: bool = False
    ) -> Person | None:
        """Load a person with all child collections and group names."""
        ...

    async def find_person_by_uid(
        self, user_id: str, uid: str, *, include_deleted: bool = False
    ) -> Person | None:
        """Find the person of ``user_id`` carrying vCard ``uid``."""
        ...

    async def list_sync_people(self, user_id: str) -> list[Person]:
        """Active persons of ``user_id`` with CardDAV sync enabled."""
        ...

    async def list_people(self, user_id: str | None = None) -> list[Person]:
        """Active persons, optionally restricted to one user."""
        ...

    async def create_person(self, user_id: str, data: ContactData) -> Person:
        """Insert a person with its collections."""
        ...

    async def replace_person_data(self, person_id: str, data: ContactData) -> None:
        """Overwrite scalars and delete-then-recreate every collection."""
        ...

    async def update_person_fields(self, person_id: str, fields: dict[str, Any]) -> None:
        """Update a subset of scalar columns (``uid`` and ``photo`` included)."""
        ...

    async def restore_person(self, person_id: str) -> None:
        """Clear ``deleted_at``."""
        ...

    async def soft_delete_person(self, person_id: str, *, at: datetime) -> None:
        ...

    async def reparent_collection_items(
        self, collection: str, item_ids: Sequence[str], person_id: str
    ) -> None:
        """Move rows of ``collection`` to ``person_id``."""
        ...

    async def delete_collection_items(self, collection: str, person_id: str) -> int:
        """Hard-delete every row of ``collection`` owned by ``person_id``."""
        ...

    async def ensure_groups(self, user_id: str, names: Iterable[str]) -> list[str]:
        """Return group ids for ``names``, creating missing groups."""
        ...

    async def add_person_to_groups(self, person_id: str, group_ids: Iterable[str]) -> None:
        ...

    async def remove_person_from_all_groups(self, person_id: str) -> None:
        ...

    async def list_relationships(self, person_id: str) -> list[Relationship]:
        """Active relationships where ``person_id`` is either endpoint."""
        ...

    async def reparent_relationship(
        self,
        relationship_id: str,
        *,
        person_id: str | None = None,
        related_person_id: str | None = None,
    ) -> None:
        ...

    async def soft_delete_relationships(
        self, relationship_ids: Sequence[str], *, at: datetime
    ) -> None:
        ...


class CardDavRepository(Protocol):
    """CardDAV connection, mapping, conflict and pending import persistence."""

    async def get_connection(self, connection_id: str) -> CardDavConnection | None:
        ...

    async def get_connection_for_user(self, user_id: str) -> CardDavConnection | None:
        ...

    async def list_connections(
        self, *, sync_enabled_only: bool = False
    ) -> list[CardDavConnection]:
        ...

    async def save_connection(
        self,
        user_id: str,
        *,
        server_url: str,
        username: str,
        password: str,
        import_mode: ImportMode = "manual",
        auto_export_new: bool = True,
        auto_sync_interval: int = 43200,
    ) -> CardDavConnection:
        """Create or replace the connection of ``user_id``; ``password`` is ciphertext."""
        ...

    async def claim_sync_lease(
        self, connection_id: str, *, now: datetime, stale_before: datetime
    ) -> bool:
        """Atomically set ``sync_in_progress``; false when a fresh lease is held."""
        ...

    async def release_sync_lease(self, connection_id: str) -> None:
        ...

    async def record_sync_success(self, connection_id: str, *, at: datetime) -> None:
        """Stamp ``last_sync_at`` and clear ``last_error``."""
        ...

    async def record_sync_error(self, connection_id: str, message: str, *, at: datetime) -> None:
        ...

    async def get_mapping(self, mapping_id: str) -> CardDavMapping | None:
        ...

    async def get_mapping_by_uid(self, connection_id: str, uid: str) -> CardDavMapping | None:
        ...

    async def get_mapping_for_person(self, person_id: str) -> CardDavMapping | None:
        ...

    async def create_mapping(self, mapping: CardDavMapping) -> CardDavMapping:
        ...

    async def update_mapping(self, mapping_id: str, fields: dict[str, Any]) -> None:
        ...

    async def delete_mapping_for_person(self, person_id: str) -> CardDavMapping | None:
        """Delete and return the person's mapping, if any."""
        ...

    async def has_unresolved_conflict(self, mapping_id: str) -> bool:
        ...

    async def create_conflict(self, conflict: CardDavConflict) -> CardDavConflict:
        ...

    async def get_conflict(self, conflict_id: str) -> CardDavConflict | None:
        ...

    async def resolve_conflict(
        self,
        conflict_id: str,
        *,
        resolution: ConflictResolution,
        resolved_by: str,
        at: datetime,
    ) -> CardDavConflict:
        ...

    async def list_unresolved_conflicts(self, connection_id: str) -> list[CardDavConflict]:
        ...

    async def upsert_pending_import(self, pending: PendingImport) -> PendingImport:
        """Insert or refresh by ``(connection_id, uid)`` or ``(uploaded_by_user_id, uid)``."""
        ...

    async def list_pending_imports(self, user_id: str) -> list[PendingImport]:
        """Pending imports of the user's connection and the user's uploads."""
        ...

    async def get_pending_imports(
        self, user_id: str, pending_ids: Sequence[str]
    ) -> list[PendingImport]:
        ...

    async def delete_pending_import(self, pending_id: str) -> None:
        ...

    async def delete_pending_import_by_uid(self, connection_id: str, uid: str) -> None:
        ...


class CardSyncRepository(PeopleRepository, CardDavRepository, Protocol):
    """Full persistence surface with transactional scoping."""

    def transaction(self) -> AbstractAsyncContextManager[CardSyncRepository]:
        """Yield a repository whose writes are atomic."""
        ...
