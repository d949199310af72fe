"""Person-level operations outside the sync loop: merging, duplicates and reminders."""

from cardsync.people.duplicates import (
    DuplicateCandidate,
    DuplicateGroup,
    DuplicateMember,
    duplicate_groups_for_user,
    duplicates_for_person,
    find_duplicate_groups,
    find_duplicates,
)
from cardsync.people.merge import MergeEngine, MergePlan, plan_merge
from cardsync.people.reminders import (
    DueReminder,
    collect_due_reminders,
    should_send_contact_reminder,
    should_send_important_date_reminder,
)

__all__ = [
    "DueReminder",
    "DuplicateCandidate",
    "DuplicateGroup",
    "DuplicateMember",
    "MergeEngine",
    "MergePlan",
    "collect_due_reminders",
    "duplicate_groups_for_user",
    "duplicates_for_person",
    "find_duplicate_groups",
    "find_duplicates",
    "plan_merge",
    "should_send_contact_reminder",
    "should_send_important_date_reminder",
]
