"""Resolution of sync conflicts recorded by the sync engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cardsync.carddav.contacts import replace_from_remote, store_photo
from cardsync.carddav.fingerprint import contact_fingerprint
from cardsync.errors import ConflictAlreadyResolvedError, ConflictNotFoundError, PersonNotFoundError
from cardsync.models import CardDavConflict, CardDavMapping, ConflictResolution, ContactData

if TYPE_CHECKING:
    from cardsync.repository import CardSyncRepository
    from cardsync.storage.photos import PhotoStore

logger = logging.getLogger(__name__)

PushCallback = Callable[[str], Awaitable[object]]


class ConflictResolver:
    """Applies ``keep_local``, ``keep_remote`` or ``merged`` to an open conflict.

    ``push`` receives the connection id after a local-wins resolution and
    runs as a background task; its failures are logged only.
    """

    def __init__(
        self,
        repository: CardSyncRepository,
        *,
        push: PushCallback | None = None,
        photos: PhotoStore | None = None,
    ) -> None:
        self._repository = repository
        self._push = push
        self._photos = photos
        self._background: set[asyncio.Task[None]] = set()

    async def list_conflicts(self, user_id: str) -> list[CardDavConflict]:
        connection = await self._repository.get_connection_for_user(user_id)
        if connection is None:
            return []
        return await self._repository.list_unresolved_conflicts(connection.id)

    async def resolve(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        *,
        user_id: str,
    ) -> CardDavConflict:
        conflict = await self._repository.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        mapping = await self._repository.get_mapping(conflict.mapping_id)
        connection = (
            await self._repository.get_connection(mapping.connection_id) if mapping else None
        )
        if mapping is None or connection is None or connection.user_id != user_id:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        if conflict.is_resolved:
            raise ConflictAlreadyResolvedError(f"Conflict {conflict_id} is already resolved")

        if resolution == "keep_remote":
            resolved = await self._keep_remote(conflict, mapping, user_id)
        else:
            resolved = await self._keep_local(conflict, mapping, resolution, user_id)
            self._schedule_push(connection.id)

        logger.info("Resolved conflict %s with %s", conflict_id, resolution)
        return resolved

    async def _keep_local(
        self,
        conflict: CardDavConflict,
        mapping: CardDavMapping,
        resolution: ConflictResolution,
        user_id: str,
    ) -> CardDavConflict:
        now = datetime.now(UTC)
        async with self._repository.transaction() as tx:
            resolved = await tx.resolve_conflict(
                conflict.id or "", resolution=resolution, resolved_by=user_id, at=now
            )
            fields: dict[str, object] = {"sync_status": "pending", "last_local_change": now}
            if conflict.remote_etag is not None:
                fields["etag"] = conflict.remote_etag
            if conflict.remote_href is not None:
                fields["href"] = conflict.remote_href
            await tx.update_mapping(mapping.id or "", fields)
        return resolved

    async def _keep_remote(
        self, conflict: CardDavConflict, mapping: CardDavMapping, user_id: str
    ) -> CardDavConflict:
        remote = ContactData.model_validate(conflict.remote_version)
        now = datetime.now(UTC)
        async with self._repository.transaction() as tx:
            person = await tx.get_person(mapping.person_id)
            if person is None:
                raise PersonNotFoundError(f"Person {mapping.person_id} not found")
            # Photo files are written after commit.
            refreshed = await replace_from_remote(
                tx, None, person, remote.model_copy(update={"photo": None})
            )
            resolved = await tx.resolve_conflict(
                conflict.id or "", resolution="keep_remote", resolved_by=user_id, at=now
            )
            fields: dict[str, object] = {
                "sync_status": "synced",
                "local_version": contact_fingerprint(refreshed),
                "last_remote_change": now,
                "last_synced_at": now,
            }
            if conflict.remote_etag is not None:
                fields["etag"] = conflict.remote_etag
            if conflict.remote_href is not None:
                fields["href"] = conflict.remote_href
            await tx.update_mapping(mapping.id or "", fields)

        if remote.photo:
            photo = await store_photo(self._photos, user_id, refreshed.id, remote.photo)
            if photo is not None:
                await self._repository.update_person_fields(refreshed.id, {"photo": photo})
                updated = refreshed.model_copy(update={"photo": photo})
                await self._repository.update_mapping(
                    mapping.id or "", {"local_version": contact_fingerprint(updated)}
                )
        return resolved

    def _schedule_push(self, connection_id: str) -> None:
        if self._push is None:
            return
        task = asyncio.create_task(self._run_push(connection_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_push(self, connection_id: str) -> None:
        try:
            await self._push(connection_id)
        except Exception:
            logger.exception("Background push after conflict resolution failed")

    async def wait_for_background(self) -> None:
        """Await outstanding background pushes."""
        if self._background:
            await asyncio.gather(*self._background)
