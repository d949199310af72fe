"""Domain models shared by the codec, sync engine, resolver and merge engine.

The person aggregate is split in two layers:

- ``ContactData`` holds everything a vCard can carry (scalars, the seven
  multi-value collections and group names as categories).  It is what the
  codec produces and what the sync engine writes into the local store.
- ``Person`` adds the local-only identity and bookkeeping fields.
"""

from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

SyncStatus = Literal["synced", "pending", "conflict"]
ImportMode = Literal["manual", "notify", "auto"]
ConflictResolution = Literal["keep_local", "keep_remote", "merged"]
ReminderType = Literal["ONCE", "RECURRING"]
IntervalUnit = Literal["DAYS", "WEEKS", "MONTHS", "YEARS"]

#: Year stored for dates whose year is unknown ("--MMDD" in vCard).
UNKNOWN_YEAR = 1604


class _Row(BaseModel):
    """Child row of a person aggregate; ``id`` is ``None`` until persisted."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None


class PhoneNumber(_Row):
    type: str = "other"
    number: str = Field(min_length=1)

    @field_validator("number")
    @classmethod
    def _normalize_number(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("number must be a non-empty string")
        return normalized


class EmailAddress(_Row):
    type: str = "other"
    email: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("email must be a non-empty string")
        return normalized


class PostalAddress(_Row):
    type: str = "home"
    street_line1: str | None = None
    street_line2: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None


class WebUrl(_Row):
    type: str = "personal"
    url: str = Field(min_length=1)


class ImHandle(_Row):
    protocol: str = Field(min_length=1)
    handle: str = Field(min_length=1)


class GeoLocation(_Row):
    type: str = "other"
    latitude: float
    longitude: float
    label: str | None = None

    @field_validator("latitude", "longitude")
    @classmethod
    def _check_range(cls, value: float, info: ValidationInfo) -> float:
        limit = 90.0 if info.field_name == "latitude" else 180.0
        if not -limit <= value <= limit:
            raise ValueError(f"{info.field_name} out of range: {value}")
        return value


class CustomField(_Row):
    key: str = Field(min_length=1)
    value: str
    type: str | None = None


class ImportantDate(_Row):
    title: str = Field(min_length=1)
    date: dt.date
    reminder_enabled: bool = False
    reminder_type: ReminderType | None = None
    reminder_interval: int | None = None
    reminder_interval_unit: IntervalUnit | None = None
    last_reminder_sent: datetime | None = None


class ContactData(BaseModel):
    """Everything a vCard can express about a person."""

    model_config = ConfigDict(extra="forbid")

    uid: str | None = None
    name: str | None = None
    surname: str | None = None
    middle_name: str | None = None
    second_last_name: str | None = None
    prefix: str | None = None
    suffix: str | None = None
    nickname: str | None = None
    organization: str | None = None
    job_title: str | None = None
    gender: str | None = None
    anniversary: date | None = None
    last_contact: date | None = None
    notes: str | None = None
    photo: str | None = None

    phone_numbers: list[PhoneNumber] = Field(default_factory=list)
    emails: list[EmailAddress] = Field(default_factory=list)
    addresses: list[PostalAddress] = Field(default_factory=list)
    urls: list[WebUrl] = Field(default_factory=list)
    im_handles: list[ImHandle] = Field(default_factory=list)
    locations: list[GeoLocation] = Field(default_factory=list)
    custom_fields: list[CustomField] = Field(default_factory=list)
    important_dates: list[ImportantDate] = Field(default_factory=list)

    categories: list[str] = Field(default_factory=list)

    @field_validator("uid")
    @classmethod
    def _normalize_uid(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def contact_data(self) -> ContactData:
        """Return only the vCard-expressible part of this model."""
        return ContactData.model_validate(self.model_dump(include=set(ContactData.model_fields)))


SCALAR_FIELDS: tuple[str, ...] = (
    "name",
    "surname",
    "middle_name",
    "second_last_name",
    "prefix",
    "suffix",
    "nickname",
    "organization",
    "job_title",
    "gender",
    "anniversary",
    "last_contact",
    "notes",
    "photo",
)

COLLECTION_FIELDS: tuple[str, ...] = (
    "phone_numbers",
    "emails",
    "addresses",
    "urls",
    "im_handles",
    "locations",
    "custom_fields",
    "important_dates",
)


class Person(ContactData):
    """Local person aggregate with its loaded child collections."""

    id: str
    user_id: str
    carddav_sync_enabled: bool = True
    relationship_to_user_id: str | None = None
    deleted_at: datetime | None = None
    contact_reminder_enabled: bool = False
    contact_reminder_interval: int | None = None
    contact_reminder_interval_unit: IntervalUnit | None = None
    last_contact_reminder_sent: datetime | None = None
    group_ids: list[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.name, self.surname) if part)
        return full or self.nickname or "Unknown"


class Relationship(BaseModel):
    """Directed edge between two persons."""

    model_config = ConfigDict(extra="forbid")

    id: str
    person_id: str
    related_person_id: str
    relationship_type_id: str | None = None
    notes: str | None = None
    deleted_at: datetime | None = None


class CardDavConnection(BaseModel):
    """Per-user CardDAV server connection; ``password`` is ciphertext."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    server_url: str
    username: str
    password: str
    provider: str | None = None
    sync_enabled: bool = True
    auto_sync_interval: int = 43200
    last_sync_at: datetime | None = None
    auto_export_new: bool = True
    import_mode: ImportMode = "manual"
    last_error: str | None = None
    last_error_at: datetime | None = None
    sync_in_progress: bool = False
    sync_started_at: datetime | None = None


class CardDavMapping(BaseModel):
    """Link between one local person and one remote vCard resource."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    connection_id: str
    person_id: str
    uid: str
    href: str
    etag: str | None = None
    sync_status: SyncStatus = "synced"
    local_version: str | None = None
    last_synced_at: datetime | None = None
    last_local_change: datetime | None = None
    last_remote_change: datetime | None = None


class CardDavConflict(BaseModel):
    """Snapshot of a concurrent edit; terminal once ``resolved_at`` is set."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    mapping_id: str
    local_version: dict[str, Any]
    remote_version: dict[str, Any]
    remote_etag: str | None = None
    remote_href: str | None = None
    detected_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution: ConflictResolution | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class PendingImport(BaseModel):
    """Remote or uploaded vCard staged for explicit import."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    connection_id: str | None = None
    uploaded_by_user_id: str | None = None
    uid: str
    href: str
    etag: str | None = None
    vcard_data: str
    display_name: str
    discovered_at: datetime | None = None
