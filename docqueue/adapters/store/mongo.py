"""
MongoDocumentStore — MongoDB adapter using motor.

Install extras: pip install "docqueue[mongo]"

Atomicity
---------
find_one_and_update() maps to MongoDB's findAndModify command, which matches,
modifies and returns a single document atomically on the server. This is
what prevents two workers from claiming the same job.

Error mapping
-------------
  pymongo DuplicateKeyError                  → DuplicateKeyError (keyValue attached)
  ConnectionFailure (AutoReconnect,
    ServerSelectionTimeoutError, ...),
  NetworkTimeout, ExecutionTimeout,
  WTimeoutError                              → StoreUnavailableError
  any other PyMongoError                     → StoreError

The client is created with tz_aware=True so datetimes come back with UTC
attached.
"""
from __future__ import annotations

import contextlib
import dataclasses
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from pymongo import ReturnDocument
from pymongo import errors as mongo_errors

from docqueue.domain.errors import DuplicateKeyError, StoreError, StoreUnavailableError
from docqueue.ports.store import (
    Document,
    Filter,
    IndexKeys,
    ReturnPolicy,
    SortSpec,
    Update,
)
from docqueue.settings import QueueSettings, get_settings

if TYPE_CHECKING:
    from motor.motor_asyncio import AsyncIOMotorCollection

_UNAVAILABLE = (
    mongo_errors.ConnectionFailure,
    mongo_errors.ExecutionTimeout,
    mongo_errors.WTimeoutError,
)


@dataclasses.dataclass
class MongoDocumentStore:
    """
    MongoDB collection adapter.

    Parameters
    ----------
    collection : motor AsyncIOMotorCollection holding the job documents
    """

    collection: AsyncIOMotorCollection

    @classmethod
    def from_url(
        cls,
        url: str,
        database: str,
        collection: str = "docqueue_jobs",
        **client_kwargs: Any,
    ) -> MongoDocumentStore:
        """Connect lazily to `url` and bind to `database.collection`."""
        try:
            from motor.motor_asyncio import AsyncIOMotorClient
        except ImportError as exc:
            raise ImportError(
                "MongoDocumentStore requires motor. Install with: pip install 'docqueue[mongo]'"
            ) from exc
        client_kwargs.setdefault("tz_aware", True)
        client = AsyncIOMotorClient(url, **client_kwargs)
        return cls(collection=client[database][collection])

    @classmethod
    def from_settings(cls, settings: QueueSettings | None = None) -> MongoDocumentStore:
        settings = settings or get_settings()
        return cls.from_url(settings.mongo_url, settings.database, settings.collection)

    async def insert(self, document: Mapping[str, Any]) -> None:
        # insert_one adds _id to the dict it is given; keep the caller's clean.
        with _translate_errors("Mongo insert failed"):
            await self.collection.insert_one(dict(document))

    async def find_one(self, filter: Filter) -> Document | None:
        with _translate_errors("Mongo find_one failed"):
            return await self.collection.find_one(dict(filter))

    async def find_one_and_update(
        self,
        filter: Filter,
        update: Update,
        *,
        sort: SortSpec | None = None,
        return_policy: ReturnPolicy = ReturnPolicy.AFTER,
    ) -> Document | None:
        return_document = (
            ReturnDocument.AFTER
            if return_policy == ReturnPolicy.AFTER
            else ReturnDocument.BEFORE
        )
        with _translate_errors("Mongo find_one_and_update failed"):
            return await self.collection.find_one_and_update(
                dict(filter),
                dict(update),
                sort=list(sort) if sort else None,
                return_document=return_document,
            )

    async def create_index(
        self,
        keys: IndexKeys,
        *,
        name: str,
        unique: bool = False,
    ) -> None:
        """MongoDB ignores createIndexes for an index that already exists."""
        with _translate_errors(f"Mongo create_index {name!r} failed"):
            await self.collection.create_index(list(keys), name=name, unique=unique)


@contextlib.contextmanager
def _translate_errors(message: str) -> Iterator[None]:
    try:
        yield
    except mongo_errors.DuplicateKeyError as exc:
        details = exc.details or {}
        raise DuplicateKeyError(details.get("keyValue", {})) from exc
    except _UNAVAILABLE as exc:
        raise StoreUnavailableError(message, exc) from exc
    except mongo_errors.PyMongoError as exc:
        raise StoreError(message, exc) from exc
