"""
InMemoryDocumentStore — asyncio.Lock-based document collection for testing.

Holds documents as plain dicts in a list. A single asyncio.Lock serializes
every primitive, which gives exactly the guarantee a real document store
gives: each call is atomic with respect to one document, and a
find_one_and_update() can never be interleaved with another.

Unique indexes are enforced on insert, on update, and when the index is
built over existing documents. Missing fields compare as None, as in MongoDB.

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop. NOT safe across processes or threads.
"""
from __future__ import annotations

import asyncio
import copy
import dataclasses
import operator
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from docqueue.domain.errors import DuplicateKeyError, StoreError
from docqueue.ports.store import (
    Document,
    Filter,
    IndexKeys,
    ReturnPolicy,
    SortSpec,
    Update,
)


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    # Ordering operators never match a missing / null field.
    return lambda value, operand: value is not None and op(value, operand)


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$lt": _ordered(operator.lt),
    "$lte": _ordered(operator.le),
    "$gt": _ordered(operator.gt),
    "$gte": _ordered(operator.ge),
}


@dataclasses.dataclass(frozen=True)
class _Index:
    keys: tuple[tuple[str, int], ...]
    unique: bool


@dataclasses.dataclass
class InMemoryDocumentStore:
    """
    In-process document collection.

    Parameters
    ----------
    initial_documents : optional pre-populated documents (useful for test setup)
    """

    initial_documents: Sequence[Mapping[str, Any]] = ()

    def __post_init__(self) -> None:
        self._counter: int = 0
        self._documents: list[Document] = []
        self._indexes: dict[str, _Index] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        for document in self.initial_documents:
            self._documents.append(self._with_id(document))

    async def insert(self, document: Mapping[str, Any]) -> None:
        """Append a copy of `document`, assigning an _id if it has none."""
        async with self._lock:
            new = self._with_id(document)
            self._check_unique(new, exclude=None)
            self._documents.append(new)

    async def find_one(self, filter: Filter) -> Document | None:
        async with self._lock:
            for document in self._documents:
                if _matches(document, filter):
                    return copy.deepcopy(document)
            return None

    async def find_one_and_update(
        self,
        filter: Filter,
        update: Update,
        *,
        sort: SortSpec | None = None,
        return_policy: ReturnPolicy = ReturnPolicy.AFTER,
    ) -> Document | None:
        """Match, mutate and return one document while holding the lock."""
        async with self._lock:
            candidates = [d for d in self._documents if _matches(d, filter)]
            if not candidates:
                return None
            if sort:
                candidates = _sorted(candidates, sort)
            target = candidates[0]
            before = copy.deepcopy(target)
            after = _apply(target, update)
            self._check_unique(after, exclude=target)
            target.clear()
            target.update(after)
            chosen = after if return_policy == ReturnPolicy.AFTER else before
            return copy.deepcopy(chosen)

    async def create_index(
        self,
        keys: IndexKeys,
        *,
        name: str,
        unique: bool = False,
    ) -> None:
        """Register an index. Re-creating an identical index is a no-op."""
        index = _Index(keys=tuple((field, int(d)) for field, d in keys), unique=unique)
        async with self._lock:
            existing = self._indexes.get(name)
            if existing == index:
                return
            if existing is not None:
                raise StoreError(
                    f"Cannot create index {name!r}",
                    ValueError(f"an index named {name!r} exists with different options"),
                )
            if unique:
                _check_no_duplicates(index, self._documents)
            self._indexes[name] = index

    async def snapshot(self) -> list[Document]:
        """Copies of every stored document, in insertion order."""
        async with self._lock:
            return copy.deepcopy(self._documents)

    # ------------------------------------------------------------------ #
    # Internal helpers (callers hold the lock)                            #
    # ------------------------------------------------------------------ #

    def _with_id(self, document: Mapping[str, Any]) -> Document:
        new = copy.deepcopy(dict(document))
        if "_id" not in new:
            self._counter += 1
            new["_id"] = self._counter
        return new

    def _check_unique(self, document: Document, exclude: Document | None) -> None:
        for index in self._indexes.values():
            if not index.unique:
                continue
            key = _key_of(index, document)
            for other in self._documents:
                if other is not exclude and _key_of(index, other) == key:
                    raise DuplicateKeyError(key)


def _key_of(index: _Index, document: Mapping[str, Any]) -> dict[str, Any]:
    return {field: document.get(field) for field, _ in index.keys}


def _check_no_duplicates(index: _Index, documents: Iterable[Document]) -> None:
    seen: list[dict[str, Any]] = []
    for document in documents:
        key = _key_of(index, document)
        if key in seen:
            raise DuplicateKeyError(key)
        seen.append(key)


def _matches(document: Mapping[str, Any], filter: Filter) -> bool:
    for field, condition in filter.items():
        value = document.get(field)
        if isinstance(condition, Mapping):
            for op, operand in condition.items():
                try:
                    predicate = _OPERATORS[op]
                except KeyError:
                    raise ValueError(f"Unsupported filter operator {op!r}") from None
                if not predicate(value, operand):
                    return False
        elif value != condition:
            return False
    return True


def _sorted(documents: list[Document], sort: SortSpec) -> list[Document]:
    # Stable sorts applied from the least significant key to the most.
    result = list(documents)
    for field, direction in reversed(list(sort)):
        result.sort(key=lambda d: d.get(field), reverse=direction < 0)
    return result


def _apply(document: Document, update: Update) -> Document:
    new = copy.deepcopy(document)
    for op, fields in update.items():
        if op != "$set":
            raise ValueError(f"Unsupported update operator {op!r}")
        new.update(copy.deepcopy(dict(fields)))
    return new
