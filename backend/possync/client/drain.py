# Overview: Work queue consumed by SyncEngine.drain(); dependency-first ordering of queued rows.

"""
DrainQueue

Queued rows are replayed in a causally consistent order:

    1. rows are visited oldest edit first (updatedAt, then localId)
    2. before a row, every row it references by localId that has no
       serverId yet is visited (depth first)
    3. a reference back onto the current path is a cycle and aborts the
       plan with DependencyCycleError

The queue has exactly one consumer. cancel() empties it at the next
boundary; rows that were not reached stay queued in the LocalStore.
"""
from __future__ import annotations

from collections import deque
from typing import Callable, Iterable, Iterator, Optional

from ..entities import get_entity, is_local_reference, iter_references
from ..errors import DependencyCycleError
from .local_store import LocalRecord

RowKey = tuple[str, int]
Lookup = Callable[[str, int], Optional[LocalRecord]]


def unpromoted_references(row: LocalRecord, lookup: Lookup) -> list[LocalRecord]:
    """Rows referenced by localId from ``row`` that have not been promoted."""
    targets = []
    for _location, value, entity in iter_references(get_entity(row.entity), row.payload):
        if not is_local_reference(value):
            continue
        target = lookup(entity, value)
        if target is not None and target.server_id is None:
            targets.append(target)
    return targets


class DrainQueue:
    def __init__(self, keys: Iterable[RowKey] = (), prerequisites: dict[RowKey, list[RowKey]] | None = None):
        self._items: deque[RowKey] = deque(keys)
        self.prerequisites = prerequisites or {}
        self._cancelled = False

    @classmethod
    def plan(cls, rows: Iterable[LocalRecord], lookup: Lookup) -> "DrainQueue":
        ordered: list[RowKey] = []
        prerequisites: dict[RowKey, list[RowKey]] = {}
        visiting: list[RowKey] = []
        done: set[RowKey] = set()

        def visit(row: LocalRecord) -> None:
            key = row.key
            if key in done:
                return
            if key in visiting:
                raise DependencyCycleError(visiting[visiting.index(key):] + [key])

            visiting.append(key)
            deps = []
            for target in unpromoted_references(row, lookup):
                deps.append(target.key)
                visit(target)
            visiting.pop()

            prerequisites[key] = deps
            done.add(key)
            ordered.append(key)

        for row in sorted(rows, key=lambda r: (r.updated_at, r.local_id)):
            visit(row)
        return cls(ordered, prerequisites)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[RowKey]:
        while not self._cancelled:
            try:
                key = self._items.popleft()
            except IndexError:
                return
            yield key

    def cancel(self) -> None:
        self._cancelled = True
        self._items.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancelled
