"""Finding people whose names are similar enough to be merge candidates.

Names are compared as lower-cased ``"name surname"`` strings using a
normalized Levenshtein similarity (``1 - distance / longer length``).  Pairs
at or above ``SIMILARITY_THRESHOLD`` are candidates; candidate pairs are
clustered transitively into groups, so A~B and B~C put A, B and C together
even when A and C are not similar themselves.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from pydantic import BaseModel
from rapidfuzz.distance import Levenshtein

from cardsync.errors import PersonNotFoundError
from cardsync.models import Person
from cardsync.repository import PeopleRepository

SIMILARITY_THRESHOLD = 0.75


class DuplicateMember(BaseModel):
    person_id: str
    name: str | None = None
    surname: str | None = None


class DuplicateCandidate(DuplicateMember):
    similarity: float


class DuplicateGroup(BaseModel):
    people: list[DuplicateMember]
    similarity: float


def comparison_name(name: str | None, surname: str | None) -> str:
    return " ".join(part for part in (name or "", surname or "") if part).lower().strip()


def name_similarity(a: str, b: str) -> float:
    """Return 1.0 for identical strings down to 0.0 for nothing in common."""
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


def find_duplicates(
    target: Person,
    people: Iterable[Person],
    *,
    threshold: float = SIMILARITY_THRESHOLD,
) -> list[DuplicateCandidate]:
    """Return the people similar to ``target``, most similar first."""
    target_name = comparison_name(target.name, target.surname)
    candidates = []
    for person in people:
        if person.id == target.id:
            continue
        similarity = name_similarity(target_name, comparison_name(person.name, person.surname))
        if similarity >= threshold:
            candidates.append(
                DuplicateCandidate(
                    person_id=person.id,
                    name=person.name,
                    surname=person.surname,
                    similarity=similarity,
                )
            )
    candidates.sort(key=lambda candidate: candidate.similarity, reverse=True)
    return candidates


class _DisjointSet:
    def __init__(self, items: Iterable[str]) -> None:
        self._parent = {item: item for item in items}
        self._rank = dict.fromkeys(self._parent, 0)

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1


def find_duplicate_groups(
    people: Sequence[Person],
    *,
    threshold: float = SIMILARITY_THRESHOLD,
) -> list[DuplicateGroup]:
    """Cluster ``people`` into groups of two or more similar names.

    A group's ``similarity`` is the highest pairwise score among its members;
    groups are returned most similar first.
    """
    names = {person.id: comparison_name(person.name, person.surname) for person in people}
    clusters = _DisjointSet(names)
    scores: dict[tuple[str, str], float] = {}
    for i, a in enumerate(people):
        for b in people[i + 1 :]:
            score = name_similarity(names[a.id], names[b.id])
            scores[(a.id, b.id)] = score
            if score >= threshold:
                clusters.union(a.id, b.id)

    members: dict[str, list[Person]] = {}
    for person in people:
        members.setdefault(clusters.find(person.id), []).append(person)

    groups = []
    for group in members.values():
        if len(group) < 2:
            continue
        best = max(
            scores[(a.id, b.id)] for i, a in enumerate(group) for b in group[i + 1 :]
        )
        groups.append(
            DuplicateGroup(
                people=[
                    DuplicateMember(person_id=p.id, name=p.name, surname=p.surname)
                    for p in group
                ],
                similarity=max(best, threshold),
            )
        )
    groups.sort(key=lambda group: group.similarity, reverse=True)
    return groups


async def duplicates_for_person(
    repository: PeopleRepository, user_id: str, person_id: str
) -> list[DuplicateCandidate]:
    person = await repository.get_person(person_id)
    if person is None or person.user_id != user_id:
        raise PersonNotFoundError(f"Person {person_id} not found")
    return find_duplicates(person, await repository.list_people(user_id))


async def duplicate_groups_for_user(
    repository: PeopleRepository, user_id: str
) -> list[DuplicateGroup]:
    return find_duplicate_groups(await repository.list_people(user_id))
