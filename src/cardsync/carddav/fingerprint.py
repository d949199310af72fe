"""Content fingerprint of a person's synchronizable state.

The fingerprint is the only signal of local drift between two sync runs, so it
must be stable across reloads: child row ids, reminder bookkeeping and the
order in which the store returns child rows never affect it.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from cardsync.models import COLLECTION_FIELDS, SCALAR_FIELDS, ContactData

# Local bookkeeping on important dates that never leaves this system.
_DATE_BOOKKEEPING_FIELDS = frozenset(
    {
        "reminder_enabled",
        "reminder_type",
        "reminder_interval",
        "reminder_interval_unit",
        "last_reminder_sent",
    }
)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint_payload(contact: ContactData) -> dict[str, Any]:
    """Return the canonical projection that ``contact_fingerprint`` hashes."""
    dumped = contact.model_dump(mode="json")
    payload: dict[str, Any] = {name: dumped.get(name) for name in SCALAR_FIELDS}
    for collection in COLLECTION_FIELDS:
        items = []
        for item in dumped.get(collection) or []:
            projected = {
                key: val
                for key, val in item.items()
                if key != "id" and key not in _DATE_BOOKKEEPING_FIELDS
            }
            items.append(projected)
        payload[collection] = sorted(items, key=_canonical)
    return payload


def contact_fingerprint(contact: ContactData) -> str:
    """SHA-256 hex digest of the canonical synchronizable projection."""
    serialized = _canonical(fingerprint_payload(contact))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
