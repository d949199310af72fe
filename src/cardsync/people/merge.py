"""Merging a secondary person into a primary one.

``plan_merge`` is pure: it decides which scalar values move, which child rows
are re-parented (everything whose dedup key the primary lacks), which groups
are added and what happens to each relationship edge.  ``MergeEngine``
applies a plan in one transaction and cleans up the secondary's remote vCard
on a best-effort basis.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from cardsync.carddav.client import CardDavClient
from cardsync.errors import CardDavRequestError, MergeValidationError, PersonNotFoundError
from cardsync.models import (
    COLLECTION_FIELDS,
    SCALAR_FIELDS,
    CardDavConnection,
    CardDavMapping,
    Person,
    Relationship,
)

if TYPE_CHECKING:
    from cardsync.repository import CardSyncRepository

logger = logging.getLogger(__name__)

ClientFactory = Callable[[CardDavConnection], CardDavClient]

MERGEABLE_FIELDS: tuple[str, ...] = (*SCALAR_FIELDS, "relationship_to_user_id")
_DATE_FIELDS = frozenset({"anniversary", "last_contact"})


def _address_key(item: Any) -> str:
    parts = (
        item.street_line1,
        item.street_line2,
        item.locality,
        item.region,
        item.postal_code,
        item.country,
    )
    return "|".join((part or "").lower().strip() for part in parts)


DEDUP_KEYS: dict[str, Callable[[Any], str]] = {
    "phone_numbers": lambda item: item.number,
    "emails": lambda item: item.email.lower(),
    "addresses": _address_key,
    "urls": lambda item: item.url.lower(),
    "im_handles": lambda item: f"{item.protocol}:{item.handle}".lower(),
    "locations": lambda item: f"{item.latitude},{item.longitude}",
    "custom_fields": lambda item: f"{item.key}:{item.value}",
    "important_dates": lambda item: f"{item.title}:{item.date.isoformat()}",
}


class MergePlan(BaseModel):
    """Everything a merge will change, computed before any write."""

    scalar_updates: dict[str, Any] = Field(default_factory=dict)
    transfers: dict[str, list[str]] = Field(default_factory=dict)
    group_ids_to_add: list[str] = Field(default_factory=list)
    outgoing_to_reparent: list[str] = Field(default_factory=list)
    incoming_to_reparent: list[str] = Field(default_factory=list)
    relationships_to_soft_delete: list[str] = Field(default_factory=list)


def _coerce_override(field: str, value: Any) -> Any:
    if field in _DATE_FIELDS and isinstance(value, str):
        try:
            return date.fromisoformat(value[:10]) if value else None
        except ValueError as exc:
            raise MergeValidationError(f"Invalid date for {field}: {value!r}") from exc
    return value


def plan_merge(
    primary: Person,
    secondary: Person,
    *,
    primary_relationships: Iterable[Relationship] = (),
    secondary_relationships: Iterable[Relationship] = (),
    overrides: dict[str, Any] | None = None,
) -> MergePlan:
    """Compute the merge of ``secondary`` into ``primary``.

    Explicit ``overrides`` win; otherwise empty primary fields take the
    secondary's value.  Relationship edges that would point at the primary
    itself, or duplicate an edge the primary already has with the same
    person in the same direction, are soft-deleted instead of re-parented.
    Both halves of an A->B / B->A pair survive the move.
    """
    overrides = dict(overrides or {})
    unknown = set(overrides) - set(MERGEABLE_FIELDS)
    if unknown:
        raise MergeValidationError(f"Unknown merge field(s): {', '.join(sorted(unknown))}")

    plan = MergePlan()
    for field, value in overrides.items():
        plan.scalar_updates[field] = _coerce_override(field, value)
    for field in MERGEABLE_FIELDS:
        if field in plan.scalar_updates:
            continue
        if not getattr(primary, field) and getattr(secondary, field):
            plan.scalar_updates[field] = getattr(secondary, field)

    for collection in COLLECTION_FIELDS:
        key = DEDUP_KEYS[collection]
        existing = {key(item) for item in getattr(primary, collection)}
        plan.transfers[collection] = [
            item.id
            for item in getattr(secondary, collection)
            if item.id is not None and key(item) not in existing
        ]

    primary_groups = set(primary.group_ids)
    plan.group_ids_to_add = [gid for gid in secondary.group_ids if gid not in primary_groups]

    # (outgoing, other endpoint) seen on the primary, before or during the merge.
    partners: set[tuple[bool, str]] = set()
    for edge in primary_relationships:
        if edge.person_id == primary.id:
            partners.add((True, edge.related_person_id))
        else:
            partners.add((False, edge.person_id))

    for edge in secondary_relationships:
        outgoing = edge.person_id == secondary.id
        other = edge.related_person_id if outgoing else edge.person_id
        if other in (primary.id, secondary.id) or (outgoing, other) in partners:
            plan.relationships_to_soft_delete.append(edge.id)
            continue
        partners.add((outgoing, other))
        if outgoing:
            plan.outgoing_to_reparent.append(edge.id)
        else:
            plan.incoming_to_reparent.append(edge.id)
    return plan


class MergeEngine:
    """Merges two persons of one user and tidies up CardDAV state."""

    def __init__(
        self,
        repository: CardSyncRepository,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._repository = repository
        self._client_factory = client_factory

    async def _load(self, user_id: str, person_id: str, role: str) -> Person:
        person = await self._repository.get_person(person_id)
        if person is None or person.user_id != user_id:
            raise PersonNotFoundError(f"{role.capitalize()} person not found")
        return person

    async def merge(
        self,
        user_id: str,
        primary_id: str,
        secondary_id: str,
        overrides: dict[str, Any] | None = None,
    ) -> str:
        """Merge ``secondary_id`` into ``primary_id`` and return the primary's id."""
        if primary_id == secondary_id:
            raise MergeValidationError("Cannot merge a person with itself")
        primary = await self._load(user_id, primary_id, "primary")
        secondary = await self._load(user_id, secondary_id, "secondary")

        plan = plan_merge(
            primary,
            secondary,
            primary_relationships=await self._repository.list_relationships(primary_id),
            secondary_relationships=await self._repository.list_relationships(secondary_id),
            overrides=overrides,
        )

        known_mapping = await self._repository.get_mapping_for_person(secondary_id)
        if known_mapping is not None:
            await self._delete_remote(known_mapping, secondary, relocate=True)

        now = datetime.now(UTC)
        async with self._repository.transaction() as tx:
            if plan.scalar_updates:
                await tx.update_person_fields(primary_id, plan.scalar_updates)
            for collection, item_ids in plan.transfers.items():
                await tx.reparent_collection_items(collection, item_ids, primary_id)
            for collection in COLLECTION_FIELDS:
                await tx.delete_collection_items(collection, secondary_id)

            await tx.add_person_to_groups(primary_id, plan.group_ids_to_add)
            await tx.remove_person_from_all_groups(secondary_id)

            for relationship_id in plan.outgoing_to_reparent:
                await tx.reparent_relationship(relationship_id, person_id=primary_id)
            for relationship_id in plan.incoming_to_reparent:
                await tx.reparent_relationship(relationship_id, related_person_id=primary_id)
            await tx.soft_delete_relationships(plan.relationships_to_soft_delete, at=now)

            late_mapping = await tx.delete_mapping_for_person(secondary_id)
            await tx.soft_delete_person(secondary_id, at=now)

        if known_mapping is None and late_mapping is not None:
            await self._delete_remote(late_mapping, secondary, relocate=False)

        logger.info("Merged person %s into %s for user %s", secondary_id, primary_id, user_id)
        return primary_id

    # ------------------------------------------------------------------
    # Remote cleanup (best effort)
    # ------------------------------------------------------------------

    async def _delete_remote(
        self, mapping: CardDavMapping, secondary: Person, *, relocate: bool
    ) -> bool:
        if self._client_factory is None:
            logger.debug("No CardDAV client configured; leaving %s on the server", mapping.href)
            return False
        connection = await self._repository.get_connection(mapping.connection_id)
        if connection is None:
            return False

        try:
            client = self._client_factory(connection)
        except Exception as exc:
            logger.warning("Cannot build CardDAV client for merge cleanup: %s", exc)
            return False
        try:
            return await self._delete_with_fallbacks(client, mapping, secondary, relocate=relocate)
        except Exception as exc:
            logger.warning(
                "Failed to delete vCard %s of merged person %s: %s", mapping.href, secondary.id, exc
            )
            return False
        finally:
            await client.shutdown()

    async def _delete_with_fallbacks(
        self,
        client: CardDavClient,
        mapping: CardDavMapping,
        secondary: Person,
        *,
        relocate: bool,
    ) -> bool:
        try:
            await client.delete_vcard_by_url(mapping.href, etag=mapping.etag or "*")
            return True
        except CardDavRequestError as exc:
            status = exc.status_code
            logger.warning("CardDAV delete with etag failed (%s) for %s", status, mapping.href)

        if status == 412:
            try:
                await client.delete_vcard_by_url(mapping.href, etag="*")
                return True
            except CardDavRequestError as exc:
                status = exc.status_code
                logger.warning("CardDAV wildcard delete failed (%s) for %s", status, mapping.href)

        if status != 404 or not relocate:
            return False

        logger.info("Stored href %s returned 404; looking the vCard up by UID", mapping.href)
        url = await _locate_vcard(client, mapping.uid, secondary)
        if url is None:
            logger.warning("vCard of merged person %s not found on server", secondary.id)
            return False
        await client.delete_vcard_by_url(url, etag="*")
        logger.info("Deleted relocated vCard %s of merged person %s", url, secondary.id)
        return True


async def _locate_vcard(client: CardDavClient, uid: str, person: Person) -> str | None:
    """Find a card by UID in its data, then UID in its URL, then by full name."""
    uid_pattern = (
        re.compile(rf"^UID[^:]*:(?:urn:uuid:)?{re.escape(uid)}\s*$", re.IGNORECASE | re.MULTILINE)
        if uid
        else None
    )
    full_name = " ".join(part for part in (person.name, person.surname) if part)
    for book in await client.fetch_address_books():
        cards = await client.fetch_vcards(book)
        if uid_pattern is not None:
            for card in cards:
                if uid_pattern.search(card.data):
                    return card.url
            for card in cards:
                if uid.lower() in card.url.lower():
                    return card.url
        if full_name:
            for card in cards:
                match = re.search(r"^FN[^:]*:(.+)$", card.data, re.IGNORECASE | re.MULTILINE)
                if match and match.group(1).strip() == full_name:
                    return card.url
    return None
