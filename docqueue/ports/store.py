"""
DocumentStorePort — the single port in docqueue.

Any object satisfying this structural Protocol can act as the job store.
No base class or registration is required.

Atomicity contract
------------------
Each method is atomic with respect to a single document, and nothing more.
find_one_and_update() is the primitive that the whole queue protocol rests
on: matching, mutating and returning one document must happen as one step,
so that two concurrent callers can never both match the same document.

Filter language (MongoDB subset)
--------------------------------
  {"field": value}                     — equality
  {"field": {"$lt": value}}            — also $lte, $gt, $gte, $ne

Update language
---------------
  {"$set": {"field": value, ...}}

Sort
----
  [("field", 1), ("other", -1)]        — 1 ascending, -1 descending

Errors
------
  DuplicateKeyError      on a unique index violation
  StoreUnavailableError  on connectivity loss / timeout
  StoreError             for any other store failure
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Protocol, runtime_checkable

Document = dict[str, Any]
Filter = Mapping[str, Any]
Update = Mapping[str, Mapping[str, Any]]
SortSpec = Sequence[tuple[str, int]]
IndexKeys = Sequence[tuple[str, int]]


class ReturnPolicy(str, Enum):
    """Which version of the document find_one_and_update() returns."""

    BEFORE = "before"
    AFTER = "after"


@runtime_checkable
class DocumentStorePort(Protocol):
    """
    Minimal interface required by docqueue core.

    Implementing adapters (built-in):
      - InMemoryDocumentStore — asyncio.Lock-based, for testing
      - MongoDocumentStore    — MongoDB collection via motor
    """

    async def insert(self, document: Mapping[str, Any]) -> None:
        """
        Insert a new document.

        Raises
        ------
        DuplicateKeyError  if a unique index already holds the document's key
        """
        ...

    async def find_one(self, filter: Filter) -> Document | None:
        """Return one document matching `filter`, or None."""
        ...

    async def find_one_and_update(
        self,
        filter: Filter,
        update: Update,
        *,
        sort: SortSpec | None = None,
        return_policy: ReturnPolicy = ReturnPolicy.AFTER,
    ) -> Document | None:
        """
        Atomically pick the first document matching `filter` (in `sort` order),
        apply `update` to it, and return it.

        Returns None if nothing matched; nothing is modified in that case.
        """
        ...

    async def create_index(
        self,
        keys: IndexKeys,
        *,
        name: str,
        unique: bool = False,
    ) -> None:
        """
        Create an index. Idempotent: a no-op if an identical index exists.
        """
        ...
