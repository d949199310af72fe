"""Deciding which important-date and keep-in-touch reminders are due today."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Literal

from pydantic import BaseModel

from cardsync.carddav.vcard import format_full_name
from cardsync.models import ImportantDate, IntervalUnit, Person

# MONTHS and YEARS are approximated as 30 and 365 days outside the
# calendar-exact yearly anniversary rule.
_UNIT_DAYS: dict[str, int] = {"DAYS": 1, "WEEKS": 7, "MONTHS": 30, "YEARS": 365}

# A contact reminder may repeat after 90% of its interval.
CONTACT_REMINDER_SLACK = 0.9


def interval_days(interval: int | None, unit: IntervalUnit | None, default_unit: str) -> int:
    return (interval or 1) * _UNIT_DAYS.get(unit or default_unit, 365)


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


def should_send_important_date_reminder(important_date: ImportantDate, today: date) -> bool:
    """Return True when ``important_date`` should trigger a reminder on ``today``.

    ONCE reminders fire on the event date itself, at most once that day.
    RECURRING reminders never fire before the event date; a yearly interval
    fires on the calendar anniversary, other intervals every N days counted
    from the last reminder (or from the event date when none was sent).
    """
    event = important_date.date
    last_sent = _as_date(important_date.last_reminder_sent)

    if important_date.reminder_type == "ONCE":
        return event == today and last_sent != today

    if important_date.reminder_type != "RECURRING":
        return False
    if today < event:
        return False

    interval = important_date.reminder_interval or 1
    unit = important_date.reminder_interval_unit or "YEARS"
    if unit == "YEARS":
        if (today.month, today.day) != (event.month, event.day):
            return False
        if last_sent is None:
            return True
        return today.year - last_sent.year >= interval

    step = interval_days(interval, unit, "YEARS")
    anchor = last_sent if last_sent is not None else event
    elapsed = (today - anchor).days
    if last_sent is not None and elapsed < step:
        return False
    return elapsed % step == 0


def should_send_contact_reminder(person: Person, today: date) -> bool:
    """Return True when it is time to get back in touch with ``person``.

    The reference point is the last contact, falling back to the last
    reminder sent; with neither there is nothing to measure from.
    """
    step = timedelta(
        days=interval_days(
            person.contact_reminder_interval, person.contact_reminder_interval_unit, "MONTHS"
        )
    )
    last_sent = _as_date(person.last_contact_reminder_sent)
    reference = person.last_contact or last_sent
    if reference is None:
        return False
    if today - reference < step:
        return False
    if last_sent is not None and today - last_sent < step * CONTACT_REMINDER_SLACK:
        return False
    return True


class DueReminder(BaseModel):
    kind: Literal["important_date", "contact"]
    user_id: str
    person_id: str
    person_name: str
    entity_id: str
    title: str | None = None
    event_date: date | None = None
    last_contact: date | None = None


def collect_due_reminders(people: Iterable[Person], today: date) -> list[DueReminder]:
    """List every reminder due on ``today`` across ``people``; deleted persons are ignored."""
    due: list[DueReminder] = []
    for person in people:
        if person.deleted_at is not None:
            continue
        name = format_full_name(person)
        for important_date in person.important_dates:
            if not important_date.reminder_enabled:
                continue
            if should_send_important_date_reminder(important_date, today):
                due.append(
                    DueReminder(
                        kind="important_date",
                        user_id=person.user_id,
                        person_id=person.id,
                        person_name=name,
                        entity_id=important_date.id or "",
                        title=important_date.title,
                        event_date=important_date.date,
                    )
                )
        if person.contact_reminder_enabled and should_send_contact_reminder(person, today):
            due.append(
                DueReminder(
                    kind="contact",
                    user_id=person.user_id,
                    person_id=person.id,
                    person_name=name,
                    entity_id=person.id,
                    last_contact=person.last_contact,
                )
            )
    return due
