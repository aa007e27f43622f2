"""
HeartbeatManager — async context manager for background heartbeats.

A worker holding a long-running job wraps its work in HeartbeatManager so
that the job's heartbeat_at keeps moving, and a requeue_stale() sweep does
not hand the job to another worker.

Usage
-----
    handle = await q.claim_next("process_video")
    async with HeartbeatManager(q, handle, interval=timedelta(seconds=30)):
        result = await do_long_work(await q.fetch_payload(handle))
    await q.complete(handle)

If the body raises, the heartbeat task is cancelled. Callers should
release() the job in an except/finally block.

The task stops by itself once the job is no longer PROCESSING (completed,
released or swept by someone else). Store outages are logged and the next
beat is tried on schedule.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import timedelta
from types import TracebackType
from typing import Protocol

from docqueue.domain.errors import ModificationFailedError, StoreError
from docqueue.domain.models import JobHandle

logger = logging.getLogger(__name__)


class _HasHeartbeat(Protocol):
    """Structural Protocol — any object with an async heartbeat(handle) method."""

    async def heartbeat(self, handle: JobHandle) -> None: ...


@dataclasses.dataclass
class HeartbeatManager:
    """
    Sends periodic heartbeats for a single claimed job.

    Parameters
    ----------
    queue    : any object with async heartbeat(handle: JobHandle) -> None
    handle   : the claimed job to keep alive
    interval : time between heartbeat sends (default 60 seconds)
    """

    queue: _HasHeartbeat
    handle: JobHandle
    interval: timedelta = timedelta(seconds=60)

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    async def __aenter__(self) -> HeartbeatManager:
        self._task = asyncio.create_task(
            self._beat(), name=f"docqueue-heartbeat-{self.handle.job_id}"
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                await self.queue.heartbeat(self.handle)
            except ModificationFailedError:
                # No longer ours.
                return
            except StoreError as exc:
                logger.warning(
                    "Heartbeat for job %r failed: %s", self.handle.job_id, exc
                )
