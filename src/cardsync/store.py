"""asyncpg-backed implementation of ``CardSyncRepository``.

Tables are created by the ``core`` and ``carddav`` Alembic chains.  Ids are
UUID columns surfaced as strings; ``user_id`` is an opaque text reference to
the surrounding application's user table.

Child collections are always replaced wholesale (delete then recreate) and
every multi-statement write runs inside a transaction, either the caller's
(``transaction()``) or one opened for the call.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from cardsync.errors import ConflictAlreadyResolvedError
from cardsync.models import (
    COLLECTION_FIELDS,
    SCALAR_FIELDS,
    CardDavConflict,
    CardDavConnection,
    CardDavMapping,
    ConflictResolution,
    ContactData,
    CustomField,
    EmailAddress,
    GeoLocation,
    ImHandle,
    ImportantDate,
    ImportMode,
    PendingImport,
    Person,
    PhoneNumber,
    PostalAddress,
    Relationship,
    WebUrl,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

#: collection attribute -> (table, columns, row model)
COLLECTION_TABLES: dict[str, tuple[str, tuple[str, ...], type]] = {
    "phone_numbers": ("person_phone_numbers", ("type", "number"), PhoneNumber),
    "emails": ("person_emails", ("type", "email"), EmailAddress),
    "addresses": (
        "person_addresses",
        ("type", "street_line1", "street_line2", "locality", "region", "postal_code", "country"),
        PostalAddress,
    ),
    "urls": ("person_urls", ("type", "url"), WebUrl),
    "im_handles": ("person_im_handles", ("protocol", "handle"), ImHandle),
    "locations": ("person_locations", ("type", "latitude", "longitude", "label"), GeoLocation),
    "custom_fields": ("person_custom_fields", ("key", "value", "type"), CustomField),
    "important_dates": (
        "person_important_dates",
        (
            "title",
            "date",
            "reminder_enabled",
            "reminder_type",
            "reminder_interval",
            "reminder_interval_unit",
            "last_reminder_sent",
        ),
        ImportantDate,
    ),
}

_PERSON_LOCAL_COLUMNS = (
    "carddav_sync_enabled",
    "relationship_to_user_id",
    "contact_reminder_enabled",
    "contact_reminder_interval",
    "contact_reminder_interval_unit",
    "last_contact_reminder_sent",
)
_PERSON_UPDATABLE_COLUMNS = frozenset({"uid", *SCALAR_FIELDS, *_PERSON_LOCAL_COLUMNS})

_MAPPING_UPDATABLE_COLUMNS = frozenset(
    {
        "uid",
        "href",
        "etag",
        "sync_status",
        "local_version",
        "last_synced_at",
        "last_local_change",
        "last_remote_change",
    }
)

_CONNECTION_COLUMNS = (
    "id",
    "user_id",
    "server_url",
    "username",
    "password",
    "provider",
    "sync_enabled",
    "auto_sync_interval",
    "last_sync_at",
    "auto_export_new",
    "import_mode",
    "last_error",
    "last_error_at",
    "sync_in_progress",
    "sync_started_at",
)


def _str_id(value: Any) -> str | None:
    return None if value is None else str(value)


def _set_clause(
    fields: dict[str, Any], allowed: frozenset[str], *, offset: int
) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown column(s): {', '.join(sorted(unknown))}")
    names = sorted(fields)
    clause = ", ".join(f"{name} = ${index}" for index, name in enumerate(names, start=offset))
    return clause, [fields[name] for name in names]


def _connection_from_row(row: Any) -> CardDavConnection:
    data = dict(row)
    data["id"] = str(data["id"])
    return CardDavConnection(**{key: data[key] for key in _CONNECTION_COLUMNS})


def _mapping_from_row(row: Any) -> CardDavMapping:
    return CardDavMapping(
        id=str(row["id"]),
        connection_id=str(row["connection_id"]),
        person_id=str(row["person_id"]),
        uid=row["uid"],
        href=row["href"],
        etag=row["etag"],
        sync_status=row["sync_status"],
        local_version=row["local_version"],
        last_synced_at=row["last_synced_at"],
        last_local_change=row["last_local_change"],
        last_remote_change=row["last_remote_change"],
    )


def _json_value(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value)
    return dict(value or {})


def _conflict_from_row(row: Any) -> CardDavConflict:
    return CardDavConflict(
        id=str(row["id"]),
        mapping_id=str(row["mapping_id"]),
        local_version=_json_value(row["local_version"]),
        remote_version=_json_value(row["remote_version"]),
        remote_etag=row["remote_etag"],
        remote_href=row["remote_href"],
        detected_at=row["detected_at"],
        resolved_at=row["resolved_at"],
        resolution=row["resolution"],
        resolved_by=row["resolved_by"],
    )


def _pending_from_row(row: Any) -> PendingImport:
    return PendingImport(
        id=str(row["id"]),
        connection_id=_str_id(row["connection_id"]),
        uploaded_by_user_id=row["uploaded_by_user_id"],
        uid=row["uid"],
        href=row["href"],
        etag=row["etag"],
        vcard_data=row["vcard_data"],
        display_name=row["display_name"],
        discovered_at=row["discovered_at"],
    )


class PostgresStore:
    """Repository over an asyncpg pool, or over one connection inside ``transaction()``."""

    def __init__(
        self, pool: asyncpg.Pool | asyncpg.Connection, *, _in_transaction: bool = False
    ) -> None:
        self._db = pool
        self._in_transaction = _in_transaction

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresStore]:
        if self._in_transaction:
            yield self
            return
        async with self._db.acquire() as conn:
            async with conn.transaction():
                yield PostgresStore(conn, _in_transaction=True)

    @asynccontextmanager
    async def _atomic(self) -> AsyncIterator[asyncpg.Connection]:
        if self._in_transaction:
            yield self._db
            return
        async with self._db.acquire() as conn:
            async with conn.transaction():
                yield conn

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def _hydrate(self, rows: Sequence[Any]) -> list[Person]:
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        children: dict[str, dict[str, list[Any]]] = {
            str(pid): {name: [] for name in COLLECTION_FIELDS} for pid in ids
        }
        for collection, (table, columns, model) in COLLECTION_TABLES.items():
            child_rows = await self._db.fetch(
                f"SELECT id, person_id, {', '.join(columns)} FROM {table} "
                "WHERE person_id = ANY($1::uuid[]) ORDER BY position, id",
                ids,
            )
            for child in child_rows:
                values = {column: child[column] for column in columns}
                children[str(child["person_id"])][collection].append(
                    model(id=str(child["id"]), **values)
                )

        group_rows = await self._db.fetch(
            """
            SELECT pg.person_id, g.id, g.name
            FROM person_groups pg
            JOIN groups g ON g.id = pg.group_id
            WHERE pg.person_id = ANY($1::uuid[])
            ORDER BY g.name
            """,
            ids,
        )
        groups: dict[str, list[tuple[str, str]]] = {str(pid): [] for pid in ids}
        for group in group_rows:
            groups[str(group["person_id"])].append((str(group["id"]), group["name"]))

        people: list[Person] = []
        for row in rows:
            pid = str(row["id"])
            scalars = {name: row[name] for name in SCALAR_FIELDS}
            local = {name: row[name] for name in _PERSON_LOCAL_COLUMNS}
            local["relationship_to_user_id"] = _str_id(local["relationship_to_user_id"])
            people.append(
                Person(
                    id=pid,
                    user_id=row["user_id"],
                    uid=row["uid"],
                    deleted_at=row["deleted_at"],
                    group_ids=[gid for gid, _ in groups[pid]],
                    categories=[name for _, name in groups[pid]],
                    **scalars,
                    **local,
                    **children[pid],
                )
            )
        return people

    async def get_person(self, person_id: str, *, include_deleted: bool = False) -> Person | None:
        row = await self._db.fetchrow(
            "SELECT * FROM people WHERE id = $1::uuid AND ($2 OR deleted_at IS NULL)",
            person_id,
            include_deleted,
        )
        if row is None:
            return None
        return (await self._hydrate([row]))[0]

    async def find_person_by_uid(
        self, user_id: str, uid: str, *, include_deleted: bool = False
    ) -> Person | None:
        row = await self._db.fetchrow(
            """
            SELECT * FROM people
            WHERE user_id = $1 AND uid = $2 AND ($3 OR deleted_at IS NULL)
            ORDER BY deleted_at NULLS FIRST
            LIMIT 1
            """,
            user_id,
            uid,
            include_deleted,
        )
        if row is None:
            return None
        return (await self._hydrate([row]))[0]

    async def list_sync_people(self, user_id: str) -> list[Person]:
        rows = await self._db.fetch(
            """
            SELECT * FROM people
            WHERE user_id = $1 AND deleted_at IS NULL AND carddav_sync_enabled
            ORDER BY created_at, id
            """,
            user_id,
        )
        return await self._hydrate(rows)

    async def list_people(self, user_id: str | None = None) -> list[Person]:
        rows = await self._db.fetch(
            """
            SELECT * FROM people
            WHERE deleted_at IS NULL AND ($1::text IS NULL OR user_id = $1)
            ORDER BY created_at, id
            """,
            user_id,
        )
        return await self._hydrate(rows)

    async def create_person(self, user_id: str, data: ContactData) -> Person:
        columns = ("user_id", "uid", *SCALAR_FIELDS)
        values = [user_id, data.uid, *(getattr(data, name) for name in SCALAR_FIELDS)]
        placeholders = ", ".join(f"${index}" for index in range(1, len(columns) + 1))
        async with self._atomic() as conn:
            person_id = await conn.fetchval(
                f"INSERT INTO people ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
                *values,
            )
            await _insert_collections(conn, person_id, data)
        logger.debug("Created person %s for user %s", person_id, user_id)
        person = await self.get_person(str(person_id))
        assert person is not None
        return person

    async def replace_person_data(self, person_id: str, data: ContactData) -> None:
        clause, values = _set_clause(
            {name: getattr(data, name) for name in SCALAR_FIELDS},
            _PERSON_UPDATABLE_COLUMNS,
            offset=2,
        )
        async with self._atomic() as conn:
            await conn.execute(
                f"UPDATE people SET {clause}, updated_at = now() WHERE id = $1::uuid",
                person_id,
                *values,
            )
            for table, _columns, _model in COLLECTION_TABLES.values():
                await conn.execute(f"DELETE FROM {table} WHERE person_id = $1::uuid", person_id)
            await _insert_collections(conn, person_id, data)

    async def update_person_fields(self, person_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        clause, values = _set_clause(fields, _PERSON_UPDATABLE_COLUMNS, offset=2)
        await self._db.execute(
            f"UPDATE people SET {clause}, updated_at = now() WHERE id = $1::uuid",
            person_id,
            *values,
        )

    async def restore_person(self, person_id: str) -> None:
        await self._db.execute(
            "UPDATE people SET deleted_at = NULL, updated_at = now() WHERE id = $1::uuid",
            person_id,
        )

    async def soft_delete_person(self, person_id: str, *, at: datetime) -> None:
        await self._db.execute(
            "UPDATE people SET deleted_at = $2, updated_at = now() WHERE id = $1::uuid",
            person_id,
            at,
        )

    async def reparent_collection_items(
        self, collection: str, item_ids: Sequence[str], person_id: str
    ) -> None:
        if not item_ids:
            return
        table = COLLECTION_TABLES[collection][0]
        await self._db.execute(
            f"UPDATE {table} SET person_id = $1::uuid WHERE id = ANY($2::uuid[])",
            person_id,
            list(item_ids),
        )

    async def delete_collection_items(self, collection: str, person_id: str) -> int:
        table = COLLECTION_TABLES[collection][0]
        status = await self._db.execute(
            f"DELETE FROM {table} WHERE person_id = $1::uuid", person_id
        )
        return int(status.split()[-1])

    async def ensure_groups(self, user_id: str, names: Iterable[str]) -> list[str]:
        ids: list[str] = []
        for name in dict.fromkeys(n.strip() for n in names if n and n.strip()):
            group_id = await self._db.fetchval(
                """
                INSERT INTO groups (user_id, name) VALUES ($1, $2)
                ON CONFLICT (user_id, name) DO UPDATE SET name = EXCLUDED.name
                RETURNING id
                """,
                user_id,
                name,
            )
            ids.append(str(group_id))
        return ids

    async def add_person_to_groups(self, person_id: str, group_ids: Iterable[str]) -> None:
        group_list = list(dict.fromkeys(group_ids))
        if not group_list:
            return
        await self._db.execute(
            """
            INSERT INTO person_groups (person_id, group_id)
            SELECT $1::uuid, gid FROM unnest($2::uuid[]) AS gid
            ON CONFLICT DO NOTHING
            """,
            person_id,
            group_list,
        )

    async def remove_person_from_all_groups(self, person_id: str) -> None:
        await self._db.execute("DELETE FROM person_groups WHERE person_id = $1::uuid", person_id)

    async def list_relationships(self, person_id: str) -> list[Relationship]:
        rows = await self._db.fetch(
            """
            SELECT * FROM relationships
            WHERE (person_id = $1::uuid OR related_person_id = $1::uuid)
              AND deleted_at IS NULL
            ORDER BY created_at, id
            """,
            person_id,
        )
        return [
            Relationship(
                id=str(row["id"]),
                person_id=str(row["person_id"]),
                related_person_id=str(row["related_person_id"]),
                relationship_type_id=_str_id(row["relationship_type_id"]),
                notes=row["notes"],
                deleted_at=row["deleted_at"],
            )
            for row in rows
        ]

    async def reparent_relationship(
        self,
        relationship_id: str,
        *,
        person_id: str | None = None,
        related_person_id: str | None = None,
    ) -> None:
        await self._db.execute(
            """
            UPDATE relationships
            SET person_id = COALESCE($2::uuid, person_id),
                related_person_id = COALESCE($3::uuid, related_person_id)
            WHERE id = $1::uuid
            """,
            relationship_id,
            person_id,
            related_person_id,
        )

    async def soft_delete_relationships(
        self, relationship_ids: Sequence[str], *, at: datetime
    ) -> None:
        if not relationship_ids:
            return
        await self._db.execute(
            "UPDATE relationships SET deleted_at = $2 WHERE id = ANY($1::uuid[])",
            list(relationship_ids),
            at,
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_connection(self, connection_id: str) -> CardDavConnection | None:
        row = await self._db.fetchrow(
            "SELECT * FROM carddav_connections WHERE id = $1::uuid", connection_id
        )
        return _connection_from_row(row) if row is not None else None

    async def get_connection_for_user(self, user_id: str) -> CardDavConnection | None:
        row = await self._db.fetchrow(
            "SELECT * FROM carddav_connections WHERE user_id = $1", user_id
        )
        return _connection_from_row(row) if row is not None else None

    async def list_connections(
        self, *, sync_enabled_only: bool = False
    ) -> list[CardDavConnection]:
        rows = await self._db.fetch(
            "SELECT * FROM carddav_connections"
            " WHERE (NOT $1 OR sync_enabled) ORDER BY created_at, id",
            sync_enabled_only,
        )
        return [_connection_from_row(row) for row in rows]

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
        # Replacing credentials clears the previous error and re-enables sync.
        row = await self._db.fetchrow(
            """
            INSERT INTO carddav_connections
                (user_id, server_url, username, password, import_mode,
                 auto_export_new, auto_sync_interval)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (user_id) DO UPDATE
            SET server_url = EXCLUDED.server_url,
                username = EXCLUDED.username,
                password = EXCLUDED.password,
                import_mode = EXCLUDED.import_mode,
                auto_export_new = EXCLUDED.auto_export_new,
                auto_sync_interval = EXCLUDED.auto_sync_interval,
                sync_enabled = true,
                last_error = NULL,
                last_error_at = NULL,
                updated_at = now()
            RETURNING *
            """,
            user_id,
            server_url,
            username,
            password,
            import_mode,
            auto_export_new,
            auto_sync_interval,
        )
        return _connection_from_row(row)

    async def claim_sync_lease(
        self, connection_id: str, *, now: datetime, stale_before: datetime
    ) -> bool:
        claimed = await self._db.fetchval(
            """
            UPDATE carddav_connections
            SET sync_in_progress = true, sync_started_at = $2
            WHERE id = $1::uuid
              AND (NOT sync_in_progress OR sync_started_at IS NULL OR sync_started_at < $3)
            RETURNING id
            """,
            connection_id,
            now,
            stale_before,
        )
        return claimed is not None

    async def release_sync_lease(self, connection_id: str) -> None:
        await self._db.execute(
            """
            UPDATE carddav_connections
            SET sync_in_progress = false, sync_started_at = NULL
            WHERE id = $1::uuid
            """,
            connection_id,
        )

    async def record_sync_success(self, connection_id: str, *, at: datetime) -> None:
        await self._db.execute(
            """
            UPDATE carddav_connections
            SET last_sync_at = $2, last_error = NULL, last_error_at = NULL, updated_at = now()
            WHERE id = $1::uuid
            """,
            connection_id,
            at,
        )

    async def record_sync_error(self, connection_id: str, message: str, *, at: datetime) -> None:
        await self._db.execute(
            """
            UPDATE carddav_connections
            SET last_error = $2, last_error_at = $3, updated_at = now()
            WHERE id = $1::uuid
            """,
            connection_id,
            message,
            at,
        )

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    async def get_mapping(self, mapping_id: str) -> CardDavMapping | None:
        row = await self._db.fetchrow(
            "SELECT * FROM carddav_mappings WHERE id = $1::uuid", mapping_id
        )
        return _mapping_from_row(row) if row is not None else None

    async def get_mapping_by_uid(self, connection_id: str, uid: str) -> CardDavMapping | None:
        row = await self._db.fetchrow(
            "SELECT * FROM carddav_mappings WHERE connection_id = $1::uuid AND uid = $2",
            connection_id,
            uid,
        )
        return _mapping_from_row(row) if row is not None else None

    async def get_mapping_for_person(self, person_id: str) -> CardDavMapping | None:
        row = await self._db.fetchrow(
            "SELECT * FROM carddav_mappings WHERE person_id = $1::uuid", person_id
        )
        return _mapping_from_row(row) if row is not None else None

    async def create_mapping(self, mapping: CardDavMapping) -> CardDavMapping:
        row = await self._db.fetchrow(
            """
            INSERT INTO carddav_mappings
                (connection_id, person_id, uid, href, etag, sync_status, local_version,
                 last_synced_at, last_local_change, last_remote_change)
            VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
            """,
            mapping.connection_id,
            mapping.person_id,
            mapping.uid,
            mapping.href,
            mapping.etag,
            mapping.sync_status,
            mapping.local_version,
            mapping.last_synced_at,
            mapping.last_local_change,
            mapping.last_remote_change,
        )
        return _mapping_from_row(row)

    async def update_mapping(self, mapping_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        clause, values = _set_clause(fields, _MAPPING_UPDATABLE_COLUMNS, offset=2)
        await self._db.execute(
            f"UPDATE carddav_mappings SET {clause} WHERE id = $1::uuid",
            mapping_id,
            *values,
        )

    async def delete_mapping_for_person(self, person_id: str) -> CardDavMapping | None:
        row = await self._db.fetchrow(
            "DELETE FROM carddav_mappings WHERE person_id = $1::uuid RETURNING *",
            person_id,
        )
        return _mapping_from_row(row) if row is not None else None

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def has_unresolved_conflict(self, mapping_id: str) -> bool:
        return bool(
            await self._db.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM carddav_conflicts
                    WHERE mapping_id = $1::uuid AND resolved_at IS NULL
                )
                """,
                mapping_id,
            )
        )

    async def create_conflict(self, conflict: CardDavConflict) -> CardDavConflict:
        row = await self._db.fetchrow(
            """
            INSERT INTO carddav_conflicts
                (mapping_id, local_version, remote_version, remote_etag, remote_href, detected_at)
            VALUES ($1::uuid, $2::jsonb, $3::jsonb, $4, $5, COALESCE($6, now()))
            RETURNING *
            """,
            conflict.mapping_id,
            json.dumps(conflict.local_version, default=str),
            json.dumps(conflict.remote_version, default=str),
            conflict.remote_etag,
            conflict.remote_href,
            conflict.detected_at,
        )
        return _conflict_from_row(row)

    async def get_conflict(self, conflict_id: str) -> CardDavConflict | None:
        row = await self._db.fetchrow(
            "SELECT * FROM carddav_conflicts WHERE id = $1::uuid", conflict_id
        )
        return _conflict_from_row(row) if row is not None else None

    async def resolve_conflict(
        self,
        conflict_id: str,
        *,
        resolution: ConflictResolution,
        resolved_by: str,
        at: datetime,
    ) -> CardDavConflict:
        row = await self._db.fetchrow(
            """
            UPDATE carddav_conflicts
            SET resolved_at = $2, resolution = $3, resolved_by = $4
            WHERE id = $1::uuid AND resolved_at IS NULL
            RETURNING *
            """,
            conflict_id,
            at,
            resolution,
            resolved_by,
        )
        if row is None:
            raise ConflictAlreadyResolvedError(f"Conflict {conflict_id} is already resolved")
        return _conflict_from_row(row)

    async def list_unresolved_conflicts(self, connection_id: str) -> list[CardDavConflict]:
        rows = await self._db.fetch(
            """
            SELECT c.*
            FROM carddav_conflicts c
            JOIN carddav_mappings m ON m.id = c.mapping_id
            WHERE m.connection_id = $1::uuid AND c.resolved_at IS NULL
            ORDER BY c.detected_at, c.id
            """,
            connection_id,
        )
        return [_conflict_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Pending imports
    # ------------------------------------------------------------------

    async def upsert_pending_import(self, pending: PendingImport) -> PendingImport:
        if pending.connection_id is not None:
            conflict_target = "(connection_id, uid)"
        else:
            conflict_target = "(uploaded_by_user_id, uid) WHERE connection_id IS NULL"
        row = await self._db.fetchrow(
            f"""
            INSERT INTO carddav_pending_imports
                (connection_id, uploaded_by_user_id, uid, href, etag, vcard_data, display_name)
            VALUES ($1::uuid, $2, $3, $4, $5, $6, $7)
            ON CONFLICT {conflict_target} DO UPDATE SET
                href         = EXCLUDED.href,
                etag         = EXCLUDED.etag,
                vcard_data   = EXCLUDED.vcard_data,
                display_name = EXCLUDED.display_name,
                discovered_at = now()
            RETURNING *
            """,
            pending.connection_id,
            pending.uploaded_by_user_id,
            pending.uid,
            pending.href,
            pending.etag,
            pending.vcard_data,
            pending.display_name,
        )
        return _pending_from_row(row)

    async def list_pending_imports(self, user_id: str) -> list[PendingImport]:
        rows = await self._db.fetch(
            """
            SELECT p.*
            FROM carddav_pending_imports p
            LEFT JOIN carddav_connections c ON c.id = p.connection_id
            WHERE c.user_id = $1 OR p.uploaded_by_user_id = $1
            ORDER BY p.discovered_at, p.id
            """,
            user_id,
        )
        return [_pending_from_row(row) for row in rows]

    async def get_pending_imports(
        self, user_id: str, pending_ids: Sequence[str]
    ) -> list[PendingImport]:
        if not pending_ids:
            return []
        rows = await self._db.fetch(
            """
            SELECT p.*
            FROM carddav_pending_imports p
            LEFT JOIN carddav_connections c ON c.id = p.connection_id
            WHERE p.id = ANY($2::uuid[])
              AND (c.user_id = $1 OR p.uploaded_by_user_id = $1)
            ORDER BY p.discovered_at, p.id
            """,
            user_id,
            list(pending_ids),
        )
        return [_pending_from_row(row) for row in rows]

    async def delete_pending_import(self, pending_id: str) -> None:
        await self._db.execute(
            "DELETE FROM carddav_pending_imports WHERE id = $1::uuid", pending_id
        )

    async def delete_pending_import_by_uid(self, connection_id: str, uid: str) -> None:
        await self._db.execute(
            "DELETE FROM carddav_pending_imports WHERE connection_id = $1::uuid AND uid = $2",
            connection_id,
            uid,
        )


async def _insert_collections(
    conn: asyncpg.Connection, person_id: Any, data: ContactData
) -> None:
    for collection, (table, columns, _model) in COLLECTION_TABLES.items():
        items = getattr(data, collection)
        if not items:
            continue
        placeholders = ", ".join(f"${index}" for index in range(3, len(columns) + 3))
        await conn.executemany(
            f"INSERT INTO {table} (person_id, position, {', '.join(columns)}) "
            f"VALUES ($1::uuid, $2, {placeholders})",
            [
                (person_id, position, *(getattr(item, column) for column in columns))
                for position, item in enumerate(items)
            ],
        )
