"""vCard 3.0 codec for the person aggregate.

Serialization and parsing both go through ``vobject``'s content-line layer:
``ContentLine.serialize`` folds at 75 octets with CRLF terminators, and
``getLogicalLines``/``textLineToContentLine`` unfold and split incoming lines
into name, group and parameters.  Text escaping and the mapping between
properties and ``ContactData`` fields live here, because the mapping carries
vendor conventions vobject knows nothing about:

- Apple item groups (``item1.URL`` + ``item1.X-ABLabel``) for labelled
  URLs, IM handles, geo locations, dates and labelled custom fields.
- Apple ``X-ABDATE`` and Android ``X-ANNIVERSARY`` emitted side by side for
  every important date except the birthday, which only goes to ``BDAY``.
- ``--MMDD`` for dates whose year is unknown (stored as year 1604).
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from urllib.parse import urlparse

import vobject

from cardsync.errors import VCardParseError
from cardsync.models import (
    UNKNOWN_YEAR,
    ContactData,
    CustomField,
    EmailAddress,
    GeoLocation,
    ImHandle,
    ImportantDate,
    PhoneNumber,
    PostalAddress,
    WebUrl,
)

logger = logging.getLogger(__name__)

BIRTHDAY_TITLE = "Birthday"
UNKNOWN_PROPERTIES_HEADER = "--- Unknown vCard Properties ---"

_VCARD_BLOCK_RE = re.compile(r"BEGIN:VCARD.*?END:VCARD", re.IGNORECASE | re.DOTALL)
_APPLE_LABEL_RE = re.compile(r"^_\$!<(.+)>!\$_$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")
_GEO_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"
_GEO_URI_RE = re.compile(rf"geo:\s*({_GEO_NUMBER})\s*,\s*({_GEO_NUMBER})", re.IGNORECASE)
_GEO_PAIR_RE = re.compile(rf"^\s*({_GEO_NUMBER})\s*[;,]\s*({_GEO_NUMBER})\s*$")
_PROPERTY_NAME_RE = re.compile(r"[^A-Za-z0-9-]")

# Server bookkeeping that changes on every remote edit.
_IGNORED_PROPERTIES = frozenset(
    {"BEGIN", "END", "VERSION", "PRODID", "REV", "X-ABLABEL", "X-ABADR"}
)
_CUSTOM_FIELD_PROPERTIES = frozenset({"ROLE", "LANG", "TZ", "KEY", "RELATED"})
_SUPPORTED_IMAGE_TYPES = {"JPEG": "jpeg", "JPG": "jpeg", "PNG": "png", "GIF": "gif", "WEBP": "webp"}


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def escape_text(value: str) -> str:
    """Backslash-escape a text value per RFC 2426 section 4."""
    return (
        value.replace("\\", "\\\\")
        .replace(",", "\\,")
        .replace(";", "\\;")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def unescape_text(value: str) -> str:
    """Reverse ``escape_text``; unknown escapes keep the escaped character."""
    out: list[str] = []
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\" and index + 1 < len(value):
            following = value[index + 1]
            out.append("\n" if following in "nN" else following)
            index += 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


def split_escaped(value: str, separator: str) -> list[str]:
    """Split on ``separator`` occurrences that are not backslash-escaped.

    The parts are returned still escaped; callers unescape each part.
    """
    parts: list[str] = []
    current: list[str] = []
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\" and index + 1 < len(value):
            current.append(value[index : index + 2])
            index += 2
            continue
        if char == separator:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        index += 1
    parts.append("".join(current))
    return parts


def _structured(value: str, separator: str = ";") -> list[str]:
    return [unescape_text(part) for part in split_escaped(value, separator)]


def _param_value(value: str) -> str:
    # Parameter values cannot carry DQUOTE and must not need quoting.
    return re.sub(r'[",;:]', "", value).strip()


def format_vcard_date(value: date) -> str:
    """Format as ``YYYYMMDD``, or ``--MMDD`` when the year is unknown."""
    if value.year <= UNKNOWN_YEAR:
        return f"--{value.month:02d}{value.day:02d}"
    return f"{value.year:04d}{value.month:02d}{value.day:02d}"


def parse_vcard_date(value: str, *, omit_year: bool = False) -> date | None:
    """Parse the date formats found in the wild; ``None`` when unparseable."""
    text = value.strip()
    if not text:
        return None

    if text.startswith("--"):
        rest = text[2:].replace("-", "")
        if len(rest) >= 4 and rest[:4].isdigit():
            return _safe_date(UNKNOWN_YEAR, int(rest[:2]), int(rest[2:4]))
        return None

    match = _ISO_DATE_RE.match(text.split("T", 1)[0])
    if match is None:
        return None
    year = UNKNOWN_YEAR if omit_year else int(match.group(1))
    return _safe_date(year, int(match.group(2)), int(match.group(3)))


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def decode_apple_label(label: str) -> str:
    """Strip Apple's ``_$!<Label>!$_`` wrapper."""
    match = _APPLE_LABEL_RE.match(label.strip())
    if match:
        return match.group(1)
    return label.strip()


def split_vcards(text: str) -> list[str]:
    """Return every ``BEGIN:VCARD`` ... ``END:VCARD`` block in ``text``."""
    return [block.strip() + "\r\n" for block in _VCARD_BLOCK_RE.findall(text)]


def format_full_name(contact: ContactData) -> str:
    parts = [
        part
        for part in (
            contact.prefix,
            contact.name,
            contact.middle_name,
            contact.surname,
            contact.second_last_name,
            contact.suffix,
        )
        if part
    ]
    if not parts and contact.nickname:
        parts.append(contact.nickname)
    return " ".join(parts) or "Unknown"


def display_name(contact: ContactData) -> str:
    """Short name used for pending-import listings."""
    full = " ".join(part for part in (contact.name, contact.surname) if part)
    return full or contact.nickname or contact.organization or "Unknown"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class _VCardWriter:
    """Accumulates folded content lines and hands out ``itemN`` groups."""

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._item_counter = 0

    def next_group(self) -> str:
        self._item_counter += 1
        return f"item{self._item_counter}"

    def add(
        self,
        name: str,
        value: str,
        *,
        params: dict[str, str] | None = None,
        group: str | None = None,
    ) -> None:
        param_list = [[key, val] for key, val in (params or {}).items() if val]
        line = vobject.base.ContentLine(name, param_list, value, group=group)
        text = line.serialize()
        if name != name.upper():
            # vobject upper-cases names; Apple clients write X-ABLabel as is.
            prefix = f"{group}." if group else ""
            text = prefix + name + text[len(prefix) + len(name) :]
        self._chunks.append(text)

    def add_labelled(self, name: str, value: str, label: str) -> None:
        group = self.next_group()
        self.add(name, value, group=group)
        self.add("X-ABLabel", escape_text(label), group=group)

    def render(self) -> str:
        return "".join(self._chunks)


def person_to_vcard(contact: ContactData) -> str:
    """Serialize a person (or parsed contact data) as vCard 3.0 text."""
    writer = _VCardWriter()
    writer.add("BEGIN", "VCARD")
    writer.add("VERSION", "3.0")

    if contact.uid:
        writer.add("UID", escape_text(contact.uid))

    writer.add("FN", escape_text(format_full_name(contact)))

    family = " ".join(part for part in (contact.surname, contact.second_last_name) if part)
    structured_name = [
        family,
        contact.name or "",
        contact.middle_name or "",
        contact.prefix or "",
        contact.suffix or "",
    ]
    writer.add("N", ";".join(escape_text(part) for part in structured_name))

    if contact.nickname:
        writer.add("NICKNAME", escape_text(contact.nickname))

    birthday_written = False
    other_dates: list[ImportantDate] = []
    for important in contact.important_dates:
        if important.title.strip().lower() == BIRTHDAY_TITLE.lower():
            if not birthday_written:
                writer.add("BDAY", format_vcard_date(important.date))
                birthday_written = True
            continue
        other_dates.append(important)

    for important in other_dates:
        group = writer.next_group()
        date_value = format_vcard_date(important.date)
        writer.add(
            "X-ABDATE",
            date_value,
            params={"VALUE": "date-and-or-time"},
            group=group,
        )
        writer.add("X-ABLabel", escape_text(important.title), group=group)
        writer.add(
            "X-ANNIVERSARY",
            date_value,
            params={"TYPE": _param_value(important.title.upper())},
        )

    for phone in contact.phone_numbers:
        phone_type = phone.type.upper()
        if phone_type == "MOBILE":
            phone_type = "CELL"
        writer.add("TEL", escape_text(phone.number), params={"TYPE": _param_value(phone_type)})

    for email in contact.emails:
        writer.add(
            "EMAIL", escape_text(email.email), params={"TYPE": _param_value(email.type.upper())}
        )

    for address in contact.addresses:
        street = "\n".join(part for part in (address.street_line1, address.street_line2) if part)
        fields = [
            "",
            "",
            street,
            address.locality or "",
            address.region or "",
            address.postal_code or "",
            address.country or "",
        ]
        writer.add(
            "ADR",
            ";".join(escape_text(part) for part in fields),
            params={"TYPE": _param_value(address.type.upper())},
        )

    for url in contact.urls:
        writer.add_labelled("URL", escape_text(url.url), url.type)

    for handle in contact.im_handles:
        writer.add_labelled(
            "IMPP",
            f"{handle.protocol.lower()}:{escape_text(handle.handle)}",
            handle.protocol,
        )

    seen_locations: set[str] = set()
    for location in contact.locations:
        location_key = f"{location.latitude};{location.longitude};{location.type}"
        if location_key in seen_locations:
            continue
        seen_locations.add(location_key)
        writer.add_labelled(
            "GEO",
            f"{_format_coordinate(location.latitude)};{_format_coordinate(location.longitude)}",
            location.type,
        )

    if contact.organization:
        writer.add("ORG", escape_text(contact.organization))
    if contact.job_title:
        writer.add("TITLE", escape_text(contact.job_title))

    # Local photos are stored as files; only remote URLs are portable.
    if contact.photo and contact.photo.startswith(("http://", "https://")):
        writer.add("PHOTO", escape_text(contact.photo), params={"VALUE": "uri"})

    if contact.gender:
        writer.add("X-GENDER", escape_text(contact.gender))
    if contact.notes:
        writer.add("NOTE", escape_text(contact.notes))

    if contact.categories:
        writer.add("CATEGORIES", ",".join(escape_text(name) for name in contact.categories))

    seen_custom: set[str] = set()
    for custom in contact.custom_fields:
        key = _custom_property_name(custom.key)
        dedup_key = f"{key}:{custom.value}"
        if dedup_key in seen_custom:
            continue
        seen_custom.add(dedup_key)
        if custom.type:
            writer.add_labelled(key, escape_text(custom.value), custom.type)
        else:
            writer.add(key, escape_text(custom.value))

    if contact.second_last_name:
        writer.add("X-NAMETAG-SECOND-LASTNAME", escape_text(contact.second_last_name))

    writer.add("END", "VCARD")
    return writer.render()


def _custom_property_name(key: str) -> str:
    name = _PROPERTY_NAME_RE.sub("-", key.strip()).upper()
    if name in _CUSTOM_FIELD_PROPERTIES or name.startswith("X-"):
        return name
    return f"X-{name}"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass
class _Property:
    name: str
    group: str | None
    params: dict[str, list[str]]
    singletons: list[str]
    value: str

    def param(self, key: str) -> str | None:
        values = self.params.get(key)
        return values[0] if values else None

    def types(self) -> list[str]:
        raw = list(self.params.get("TYPE", [])) + list(self.singletons)
        types: list[str] = []
        for item in raw:
            types.extend(part.strip().lower() for part in item.split(",") if part.strip())
        return types

    def text(self) -> str:
        return unescape_text(self.value)

    def describe(self) -> str:
        prefix = f"{self.group}." if self.group else ""
        params = ";".join(f"{key}={','.join(vals)}" for key, vals in self.params.items())
        param_text = f";{params}" if params else ""
        return f"{prefix}{self.name}{param_text}: {self.text()}"


@dataclass
class _ParseState:
    data: ContactData
    labels: dict[str, str]
    abdate_values: set[date] = field(default_factory=set)
    android_dates: list[tuple[str, date]] = field(default_factory=list)
    unknown: list[_Property] = field(default_factory=list)
    name_from_n: bool = False


def _read_properties(text: str) -> list[_Property]:
    properties: list[_Property] = []
    for line, line_number in vobject.base.getLogicalLines(io.StringIO(text)):
        if not line.strip():
            continue
        try:
            content = vobject.base.textLineToContentLine(line, line_number)
        except vobject.base.ParseError:
            logger.debug("Skipping unparseable vCard line %s: %r", line_number, line[:80])
            continue
        properties.append(
            _Property(
                name=content.name.upper(),
                group=content.group.lower() if content.group else None,
                params={key.upper(): list(vals) for key, vals in content.params.items()},
                singletons=list(content.singletonparams),
                value=content.value if isinstance(content.value, str) else str(content.value),
            )
        )
    return properties


def vcard_to_person(text: str) -> ContactData:
    """Parse one vCard (3.0 or 4.0) into contact data.

    Missing optional properties yield ``None`` or empty collections.  The
    ``UID`` is kept when present.

    Raises:
        VCardParseError: if ``text`` holds no vCard.
    """
    if not text or "BEGIN:VCARD" not in text.upper():
        raise VCardParseError("Input does not contain a vCard")

    properties = _read_properties(text)
    labels = {
        prop.group: decode_apple_label(prop.text())
        for prop in properties
        if prop.group and prop.name == "X-ABLABEL"
    }
    state = _ParseState(data=ContactData(), labels=labels)
    for prop in properties:
        _apply_property(state, prop)

    data = state.data
    for title, value in state.android_dates:
        if value not in state.abdate_values:
            data.important_dates.append(ImportantDate(title=title, date=value))

    if state.unknown:
        section = "\n".join([UNKNOWN_PROPERTIES_HEADER, *(p.describe() for p in state.unknown)])
        data.notes = f"{data.notes}\n\n{section}" if data.notes else section

    return data


def _apply_property(state: _ParseState, prop: _Property) -> None:  # noqa: C901
    data = state.data
    name = prop.name
    label = state.labels.get(prop.group) if prop.group else None

    if name in _IGNORED_PROPERTIES:
        return

    if name == "FN":
        if not data.name and not state.name_from_n:
            data.name = prop.text().strip() or None
    elif name == "N":
        parts = _structured(prop.value) + [""] * 5
        data.surname = parts[0].strip() or None
        given = parts[1].strip()
        if given:
            data.name = given
            state.name_from_n = True
        data.middle_name = parts[2].strip() or None
        data.prefix = parts[3].strip() or None
        data.suffix = parts[4].strip() or None
        if data.second_last_name:
            _strip_second_last_name(data)
    elif name == "NICKNAME":
        nicknames = [part.strip() for part in _structured(prop.value, ",")]
        data.nickname = next((nick for nick in nicknames if nick), None)
    elif name == "UID":
        data.uid = prop.text()
    elif name == "BDAY":
        omit_year = prop.param("X-APPLE-OMIT-YEAR") is not None
        birthday = parse_vcard_date(prop.value, omit_year=omit_year)
        if birthday is not None:
            data.important_dates.append(ImportantDate(title=BIRTHDAY_TITLE, date=birthday))
    elif name == "ANNIVERSARY":
        value = parse_vcard_date(prop.value)
        if value is not None:
            kind = prop.param("TYPE")
            if kind and kind.upper() == "LAST-CONTACT":
                data.last_contact = value
            else:
                data.important_dates.append(ImportantDate(title=kind or "Anniversary", date=value))
    elif name == "TEL":
        types = [t for t in prop.types() if t not in {"voice", "pref"}] or prop.types()
        phone_type = types[0] if types else "other"
        if phone_type == "cell":
            phone_type = "mobile"
        number = prop.text().strip()
        if number:
            data.phone_numbers.append(PhoneNumber(type=phone_type, number=number))
    elif name == "EMAIL":
        types = [t for t in prop.types() if t not in {"internet", "pref"}]
        email = prop.text().strip()
        if email:
            data.emails.append(EmailAddress(type=types[0] if types else "other", email=email))
    elif name == "ADR":
        parts = _structured(prop.value) + [""] * 7
        street_lines = parts[2].split("\n")
        types = prop.types()
        data.addresses.append(
            PostalAddress(
                type=types[0] if types else "other",
                street_line1=street_lines[0].strip() or None,
                street_line2=(street_lines[1].strip() or None) if len(street_lines) > 1 else None,
                locality=parts[3].strip() or None,
                region=parts[4].strip() or None,
                postal_code=parts[5].strip() or None,
                country=parts[6].strip() or None,
            )
        )
    elif name == "URL":
        url = prop.text().strip()
        if url:
            types = prop.types()
            data.urls.append(WebUrl(type=label or (types[0] if types else "personal"), url=url))
    elif name == "IMPP":
        handle = _parse_impp(prop, label)
        if handle is not None:
            data.im_handles.append(handle)
    elif name == "GEO":
        coordinates = _parse_geo(prop.value)
        if coordinates is not None:
            types = prop.types()
            data.locations.append(
                GeoLocation(
                    type=label or (types[0] if types else "other"),
                    latitude=coordinates[0],
                    longitude=coordinates[1],
                )
            )
    elif name == "ORG":
        data.organization = _structured(prop.value)[0].strip() or None
    elif name == "TITLE":
        data.job_title = prop.text().strip() or None
    elif name == "PHOTO":
        data.photo = _parse_photo(prop)
    elif name in {"GENDER", "X-GENDER"}:
        data.gender = _structured(prop.value)[0].strip() or None
    elif name == "NOTE":
        data.notes = prop.text() or None
    elif name == "CATEGORIES":
        data.categories = [c.strip() for c in _structured(prop.value, ",") if c.strip()]
    elif name == "X-ABDATE":
        value = parse_vcard_date(prop.value)
        if value is not None:
            state.abdate_values.add(value)
            data.important_dates.append(
                ImportantDate(title=label or "Important Date", date=value)
            )
    elif name == "X-ANNIVERSARY":
        value = parse_vcard_date(prop.value)
        if value is not None:
            kind = prop.param("TYPE")
            state.android_dates.append((kind.title() if kind else "Anniversary", value))
    elif name == "X-SOCIALPROFILE":
        data.im_handles.append(_parse_social_profile(prop.text().strip()))
    elif name == "X-NAMETAG-SECOND-LASTNAME":
        data.second_last_name = prop.text().strip() or None
        _strip_second_last_name(data)
    elif name in _CUSTOM_FIELD_PROPERTIES or name.startswith("X-"):
        data.custom_fields.append(CustomField(key=name, value=prop.text(), type=label))
    else:
        state.unknown.append(prop)


def _strip_second_last_name(data: ContactData) -> None:
    suffix = f" {data.second_last_name}"
    if data.surname and data.second_last_name and data.surname.endswith(suffix):
        data.surname = data.surname[: -len(suffix)].strip() or None


def _parse_impp(prop: _Property, label: str | None) -> ImHandle | None:
    raw = prop.text().strip()
    protocol, separator, handle = raw.partition(":")
    if not separator or not protocol or not handle:
        return None
    if label and label.lower() == protocol.lower():
        protocol = label
    return ImHandle(protocol=protocol, handle=handle)


def _format_coordinate(value: float) -> str:
    # Shortest round-tripping digits, never in exponent notation.
    return format(Decimal(repr(value)), "f")


def _parse_geo(value: str) -> tuple[float, float] | None:
    match = _GEO_URI_RE.search(value) or _GEO_PAIR_RE.match(value)
    if match is None:
        return None
    try:
        latitude, longitude = float(match.group(1)), float(match.group(2))
    except ValueError:
        return None
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return None
    return latitude, longitude


def _parse_photo(prop: _Property) -> str | None:
    value = prop.value.strip()
    if not value:
        return None
    if value.startswith(("http://", "https://", "data:")):
        return unescape_text(value)
    encoding = (prop.param("ENCODING") or "").lower()
    if encoding in {"b", "base64"} or "base64" in [s.lower() for s in prop.singletons]:
        image_type = (prop.param("TYPE") or "JPEG").upper()
        mime = _SUPPORTED_IMAGE_TYPES.get(image_type, image_type.lower())
        cleaned = re.sub(r"\s+", "", value)
        return f"data:image/{mime};base64,{cleaned}"
    return unescape_text(value)


def _parse_social_profile(value: str) -> ImHandle:
    parsed = urlparse(value)
    if parsed.scheme in {"http", "https"} and parsed.hostname:
        host = parsed.hostname.removeprefix("www.")
        return ImHandle(protocol=host.split(".")[0], handle=value)
    return ImHandle(protocol="social", handle=value or "unknown")
