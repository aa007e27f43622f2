"""
DocumentQueue — the job state machine, one atomic store call per operation.

Every mutating operation is a single find_one_and_update() whose filter
embeds the precondition (queue, job_id, current status). Either the
transition happened or it did not; there is no read-then-write window in
which two workers could act on the same record, and no client-side lock.

State machine
-------------
    enqueue            →  READY
    READY       ─ claim_next ─→  PROCESSING
    PROCESSING  ─ complete   ─→  COMPLETED
    PROCESSING  ─ release    ─→  READY   (created_at reset: back of the queue)

Ordering is oldest created_at first within a queue. Records with equal
timestamps come back in whatever order the store picks.

Crash recovery
--------------
A claimed record has no lease of its own. If a worker dies, the record stays
PROCESSING until someone calls release() or the opt-in requeue_stale() sweep
finds its heartbeat older than the timeout.

Failure policy
--------------
No retries, no silent recovery. Store errors propagate as raised by the
adapter; zero-match transitions raise MissingJobError or
ModificationFailedError with job_id, queue and operation attached.
"""
from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from docqueue.core import codec
from docqueue.domain.errors import MissingJobError, ModificationFailedError
from docqueue.domain.models import JobHandle, JobRecord, JobStatus, utcnow
from docqueue.ports.store import DocumentStorePort, Filter
from docqueue.settings import IndexScope

logger = logging.getLogger(__name__)

INDEX_NAME = "job_index"

_FIFO = [("created_at", 1)]


@dataclasses.dataclass
class DocumentQueue:
    """
    Stateless protocol engine over a DocumentStorePort.

    Parameters
    ----------
    store       : any DocumentStorePort implementation, shared by all workers
    index_scope : which fields the unique job index spans (see IndexScope)
    clock       : returns the current UTC time; replaceable in tests
    """

    store: DocumentStorePort
    index_scope: IndexScope = IndexScope.JOB
    clock: Callable[[], datetime] = utcnow

    async def ensure_indexes(self) -> None:
        """Create the unique job index. Safe to call on every start-up."""
        keys = [("job_id", 1), ("queue", 1)]
        if self.index_scope == IndexScope.STATUS:
            keys.append(("status", 1))
        await self.store.create_index(keys, name=INDEX_NAME, unique=True)

    # ------------------------------------------------------------------ #
    # Producer side                                                       #
    # ------------------------------------------------------------------ #

    async def enqueue(self, job_id: str, queue: str, payload: bytes) -> JobRecord:
        """
        Insert a new READY record. Never touches an existing record.

        Raises DuplicateKeyError if the unique index already holds this
        job_id on this queue (see IndexScope for which statuses count).
        """
        record = JobRecord.new(job_id, queue, payload, created_at=self.clock())
        await self.store.insert(codec.to_document(record))
        logger.debug("Enqueued job %r on queue %r", job_id, queue)
        return record

    # ------------------------------------------------------------------ #
    # Worker side                                                         #
    # ------------------------------------------------------------------ #

    async def claim_next(self, queue: str) -> JobHandle | None:
        """
        Atomically move the oldest READY record of `queue` to PROCESSING.

        Returns None when the queue has nothing ready; that is the normal
        idle outcome, not an error.
        """
        document = await self.store.find_one_and_update(
            {"queue": queue, "status": JobStatus.READY.value},
            {
                "$set": {
                    "status": JobStatus.PROCESSING.value,
                    "heartbeat_at": self.clock(),
                }
            },
            sort=_FIFO,
        )
        if document is None:
            return None
        record = codec.from_document(document)
        logger.debug("Claimed job %r on queue %r", record.job_id, queue)
        return record.handle

    async def fetch_payload(self, handle: JobHandle) -> bytes:
        """Return the payload of the PROCESSING record behind `handle`."""
        document = await self.store.find_one(_processing(handle))
        if document is None:
            raise MissingJobError(handle.job_id, handle.queue)
        return codec.from_document(document).payload

    async def complete(self, handle: JobHandle) -> None:
        """PROCESSING → COMPLETED. Raises ModificationFailedError on a lost race."""
        await self._transition(
            handle,
            "complete",
            {"status": JobStatus.COMPLETED.value},
        )

    async def release(self, handle: JobHandle) -> None:
        """
        PROCESSING → READY, with created_at reset to now.

        The job goes to the back of its queue so a job that keeps failing
        cannot monopolise the head. There is no attempt counter or backoff.
        """
        await self._transition(
            handle,
            "release",
            {
                "status": JobStatus.READY.value,
                "created_at": self.clock(),
                "heartbeat_at": None,
            },
        )

    async def heartbeat(self, handle: JobHandle) -> None:
        """Refresh heartbeat_at of a PROCESSING record."""
        await self._transition(handle, "heartbeat", {"heartbeat_at": self.clock()})

    async def requeue_stale(self, queue: str, timeout: timedelta) -> int:
        """
        Release every PROCESSING record of `queue` whose heartbeat is older
        than `timeout`. Returns the number of records released.

        Each record is reset by its own atomic call, so a worker that
        heartbeats or completes concurrently either wins or is left with a
        ModificationFailedError; it never overwrites the reset.
        """
        requeued = 0
        while True:
            now = self.clock()
            document = await self.store.find_one_and_update(
                {
                    "queue": queue,
                    "status": JobStatus.PROCESSING.value,
                    "heartbeat_at": {"$lt": now - timeout},
                },
                {
                    "$set": {
                        "status": JobStatus.READY.value,
                        "created_at": now,
                        "heartbeat_at": None,
                    }
                },
            )
            if document is None:
                break
            requeued += 1
            logger.warning(
                "Requeued stale job %r on queue %r", document.get("job_id"), queue
            )
        if requeued:
            logger.info("Requeued %d stale job(s) on queue %r", requeued, queue)
        return requeued

    # ------------------------------------------------------------------ #
    # Internal                                                            #
    # ------------------------------------------------------------------ #

    async def _transition(
        self, handle: JobHandle, operation: str, changes: dict[str, object]
    ) -> None:
        document = await self.store.find_one_and_update(
            _processing(handle), {"$set": changes}
        )
        if document is None:
            logger.warning(
                "%s lost: job %r on queue %r is not processing",
                operation,
                handle.job_id,
                handle.queue,
            )
            raise ModificationFailedError(handle.job_id, handle.queue, operation)
        logger.debug("%s job %r on queue %r", operation, handle.job_id, handle.queue)


def _processing(handle: JobHandle) -> Filter:
    return {
        "job_id": handle.job_id,
        "queue": handle.queue,
        "status": JobStatus.PROCESSING.value,
    }
