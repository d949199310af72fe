"""Writing parsed vCard data into the local person store.

Shared by the sync engine (pull and auto-import), the conflict resolver
(``keep_remote``) and the import service.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from cardsync.models import ContactData, ImportantDate, Person

if TYPE_CHECKING:
    from cardsync.repository import PeopleRepository
    from cardsync.storage.photos import PhotoStore

logger = logging.getLogger(__name__)

# Scalars a remote card may legitimately omit without meaning "clear it".
_PRESERVED_WHEN_ABSENT = ("photo", "anniversary", "last_contact")

_REMINDER_FIELDS = (
    "reminder_enabled",
    "reminder_type",
    "reminder_interval",
    "reminder_interval_unit",
    "last_reminder_sent",
)


def snapshot(contact: ContactData) -> dict[str, Any]:
    """JSON-ready projection stored in conflict rows."""
    return contact.contact_data().model_dump(mode="json")


def _is_remote_photo_url(photo: str | None) -> bool:
    return bool(photo) and photo.startswith(("http://", "https://"))


def merge_remote_data(local: Person, remote: ContactData) -> ContactData:
    """Return ``remote`` with local-only state carried over from ``local``.

    Reminder settings survive on important dates whose title and date are
    unchanged, and photo/anniversary/last-contact stay when the card has none.
    """
    updates: dict[str, Any] = {"uid": remote.uid or local.uid}
    for name in _PRESERVED_WHEN_ABSENT:
        if getattr(remote, name) is None:
            updates[name] = getattr(local, name)

    local_dates = {(item.title, item.date): item for item in local.important_dates}
    dates: list[ImportantDate] = []
    for item in remote.important_dates:
        previous = local_dates.get((item.title, item.date))
        if previous is None:
            dates.append(item.model_copy(update={"id": None}))
        else:
            carried = {field: getattr(previous, field) for field in _REMINDER_FIELDS}
            dates.append(item.model_copy(update={"id": None, **carried}))
    updates["important_dates"] = dates
    return remote.model_copy(update=updates)


async def store_photo(
    photos: PhotoStore | None, user_id: str, person_id: str, photo: str | None
) -> str | None:
    """Persist a remote photo value; returns what the ``photo`` column should hold."""
    if not photo:
        return None
    if photos is not None:
        filename = await photos.save(user_id, person_id, photo)
        if filename is not None:
            return filename
    return photo if _is_remote_photo_url(photo) else None


async def replace_from_remote(
    repository: PeopleRepository,
    photos: PhotoStore | None,
    person: Person,
    remote: ContactData,
) -> Person:
    """Overwrite ``person`` wholesale from ``remote`` and return the reloaded person."""
    merged = merge_remote_data(person, remote)
    if remote.photo is not None:
        merged = merged.model_copy(
            update={"photo": await store_photo(photos, person.user_id, person.id, remote.photo)}
        )
    await repository.replace_person_data(person.id, merged)
    if merged.uid and merged.uid != person.uid:
        await repository.update_person_fields(person.id, {"uid": merged.uid})
    refreshed = await repository.get_person(person.id)
    if refreshed is None:
        raise LookupError(f"Person {person.id} disappeared during update")
    return refreshed


async def create_from_remote(
    repository: PeopleRepository,
    photos: PhotoStore | None,
    user_id: str,
    remote: ContactData,
) -> Person:
    """Create a person from parsed vCard data, saving the photo once the id exists."""
    data = remote.model_copy(
        update={
            "uid": remote.uid or str(uuid.uuid4()),
            "photo": (
                remote.photo if _is_remote_photo_url(remote.photo) and photos is None else None
            ),
        }
    )
    person = await repository.create_person(user_id, data)
    if remote.photo and photos is not None:
        filename = await store_photo(photos, user_id, person.id, remote.photo)
        if filename is not None:
            await repository.update_person_fields(person.id, {"photo": filename})
            person = person.model_copy(update={"photo": filename})
    logger.info("Created person %s from vCard %s", person.id, person.uid)
    return person


async def restore_from_remote(
    repository: PeopleRepository,
    photos: PhotoStore | None,
    person: Person,
    remote: ContactData,
) -> Person:
    """Bring a soft-deleted person back with fresh vCard data."""
    await repository.restore_person(person.id)
    restored = await replace_from_remote(repository, photos, person, remote)
    logger.info("Restored soft-deleted person %s from vCard %s", person.id, restored.uid)
    return restored
