"""
Worker — polls one logical queue and dispatches claimed jobs to a handler.

Each iteration:
  1. claim_next(queue)              — None means idle, sleep poll_interval
  2. fetch_payload(handle)
  3. await handler(payload)         — optionally under a HeartbeatManager
  4. complete(handle), or release(handle) if the handler raised

Many Worker instances, in one process or many, can poll the same queue;
they share nothing but the store.

Failure policy
--------------
  handler raises           → release (back of queue), log with traceback
  MissingJobError on fetch → attempt abandoned, job left as is
  ModificationFailedError
    on complete            → logged as ambiguous outcome, not retried
  DuplicateKeyError on
    claim / complete /
    release                → logged; only possible under IndexScope.STATUS
  StoreUnavailableError    → run() waits poll_interval and polls again
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from docqueue.core.heartbeat import HeartbeatManager
from docqueue.core.queue import DocumentQueue
from docqueue.domain.errors import (
    DuplicateKeyError,
    MissingJobError,
    ModificationFailedError,
    StoreUnavailableError,
)
from docqueue.domain.models import JobHandle
from docqueue.settings import QueueSettings, get_settings

logger = logging.getLogger(__name__)

Handler = Callable[[bytes], Awaitable[None]]


@dataclasses.dataclass
class Worker:
    """
    Poll loop binding a DocumentQueue to a payload handler.

    Parameters
    ----------
    queue              : the protocol engine
    queue_name         : logical queue to poll
    handler            : async callable receiving the job payload
    poll_interval      : sleep between polls when idle or the store is down
    heartbeat_interval : send heartbeats while the handler runs (None = off)
    stale_timeout      : sweep stale PROCESSING jobs before each poll (None = off)
    """

    queue: DocumentQueue
    queue_name: str
    handler: Handler
    poll_interval: timedelta = timedelta(seconds=1)
    heartbeat_interval: timedelta | None = None
    stale_timeout: timedelta | None = None

    _stopping: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )

    @classmethod
    def from_settings(
        cls,
        queue: DocumentQueue,
        queue_name: str,
        handler: Handler,
        settings: QueueSettings | None = None,
    ) -> Worker:
        settings = settings or get_settings()
        return cls(
            queue=queue,
            queue_name=queue_name,
            handler=handler,
            poll_interval=timedelta(seconds=settings.poll_interval_seconds),
            heartbeat_interval=_seconds(settings.heartbeat_interval_seconds),
            stale_timeout=_seconds(settings.stale_timeout_seconds),
        )

    async def run(self) -> None:
        """Poll until stop() is called. Finishes the job in hand before returning."""
        logger.info("Worker starting on queue %r", self.queue_name)
        while not self._stopping.is_set():
            try:
                if self.stale_timeout is not None:
                    await self.queue.requeue_stale(self.queue_name, self.stale_timeout)
                processed = await self.run_once()
            except StoreUnavailableError as exc:
                logger.warning(
                    "Store unavailable, polling %r again in %.1fs: %s",
                    self.queue_name,
                    self.poll_interval.total_seconds(),
                    exc,
                )
                processed = False
            except DuplicateKeyError as exc:
                logger.error(
                    "Claim on %r blocked: %r is already processing", self.queue_name, exc.key
                )
                processed = False
            if not processed:
                await self._idle()
        logger.info("Worker stopped on queue %r", self.queue_name)

    def stop(self) -> None:
        """Ask run() to return after the current iteration."""
        self._stopping.set()

    async def run_once(self) -> bool:
        """Process at most one job. Returns False if the queue was empty."""
        handle = await self.queue.claim_next(self.queue_name)
        if handle is None:
            return False

        try:
            payload = await self.queue.fetch_payload(handle)
        except MissingJobError:
            logger.error(
                "Job %r left processing right after claim; abandoning attempt",
                handle.job_id,
            )
            return True

        try:
            await self._dispatch(handle, payload)
        except Exception:
            logger.exception(
                "Job %r failed; releasing it to the back of %r",
                handle.job_id,
                self.queue_name,
            )
            await self._release(handle)
            return True

        try:
            await self.queue.complete(handle)
        except ModificationFailedError:
            logger.error(
                "Job %r ran but could not be marked completed; outcome is ambiguous",
                handle.job_id,
            )
        except DuplicateKeyError as exc:
            logger.error(
                "Job %r ran but its completed record collides with %r; outcome is ambiguous",
                handle.job_id,
                exc.key,
            )
        else:
            logger.info("Job %r completed on %r", handle.job_id, self.queue_name)
        return True

    async def _dispatch(self, handle: JobHandle, payload: bytes) -> None:
        if self.heartbeat_interval is None:
            await self.handler(payload)
            return
        async with HeartbeatManager(self.queue, handle, interval=self.heartbeat_interval):
            await self.handler(payload)

    async def _release(self, handle: JobHandle) -> None:
        try:
            await self.queue.release(handle)
        except ModificationFailedError:
            logger.warning("Job %r was no longer ours to release", handle.job_id)
        except DuplicateKeyError as exc:
            logger.warning(
                "Job %r cannot be released while %r is already queued",
                handle.job_id,
                exc.key,
            )

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(
                self._stopping.wait(), self.poll_interval.total_seconds()
            )
        except TimeoutError:
            pass


def _seconds(value: float | None) -> timedelta | None:
    return None if value is None else timedelta(seconds=value)
