"""
docqueue — polling job queue on a shared document collection.

Job state lives in one document collection shared by any number of worker
processes. There is no lock service and no transaction: every state change
is a single atomic find-one-and-update whose filter carries the expected
current status. Two workers racing for the same job cannot both win,
because only one of them can match the READY document.

Lifecycle
---------
    enqueue   → READY
    claim     → PROCESSING   (oldest created_at first)
    complete  → COMPLETED
    release   → READY again, created_at reset to now (back of the queue)

Records are never deleted. Delivery is at-least-once: a job whose worker
crashes stays PROCESSING until released, either explicitly or by the
opt-in requeue_stale() sweep driven by heartbeats.

Quick start
-----------
    import asyncio
    from docqueue import DocumentQueue, InMemoryDocumentStore

    async def main():
        q = DocumentQueue(InMemoryDocumentStore())
        await q.ensure_indexes()

        await q.enqueue("J1", "emails", b'{"to": "user@example.com"}')

        handle = await q.claim_next("emails")
        payload = await q.fetch_payload(handle)
        print(f"Processing {handle.job_id}: {payload!r}")
        await q.complete(handle)

    asyncio.run(main())

For long-running consumers use Worker, which wraps the poll / dispatch /
complete-or-release loop.

Store adapters
--------------
Built-in (no extra deps):
  - InMemoryDocumentStore  — for tests and examples

Optional (install extras):
  - MongoDocumentStore     (pip install "docqueue[mongo]")

Custom adapters implement the four-method DocumentStorePort:
  async def insert(document) -> None
  async def find_one(filter) -> dict | None
  async def find_one_and_update(filter, update, *, sort, return_policy) -> dict | None
  async def create_index(keys, *, name, unique) -> None

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (JobRecord, JobStatus, JobHandle) and errors
  ports/    — Protocol interfaces (DocumentStorePort)
  core/     — codec, protocol engine (DocumentQueue), HeartbeatManager, Worker
  adapters/ — concrete document stores
"""
from __future__ import annotations

from docqueue.adapters.store.memory import InMemoryDocumentStore
from docqueue.core.heartbeat import HeartbeatManager
from docqueue.core.queue import DocumentQueue
from docqueue.core.worker import Worker
from docqueue.domain.errors import (
    DecodingError,
    DocQueueError,
    DuplicateKeyError,
    EncodingError,
    MissingJobError,
    ModificationFailedError,
    StoreError,
    StoreUnavailableError,
)
from docqueue.domain.models import JobHandle, JobRecord, JobStatus
from docqueue.ports.store import DocumentStorePort, ReturnPolicy
from docqueue.settings import IndexScope, QueueSettings, get_settings

__all__ = [
    # Domain models
    "JobHandle",
    "JobRecord",
    "JobStatus",
    # Errors
    "DocQueueError",
    "DecodingError",
    "DuplicateKeyError",
    "EncodingError",
    "MissingJobError",
    "ModificationFailedError",
    "StoreError",
    "StoreUnavailableError",
    # Port (for typing custom adapters)
    "DocumentStorePort",
    "ReturnPolicy",
    # Queue API
    "DocumentQueue",
    "HeartbeatManager",
    "Worker",
    # Configuration
    "IndexScope",
    "QueueSettings",
    "get_settings",
    # Built-in store adapters
    "InMemoryDocumentStore",
]
