"""
Domain models for docqueue — backed by Pydantic v2.

One JobRecord is one document in the shared collection. A single physical
collection multiplexes every logical queue through the `queue` field.

Pydantic handles:
  - JSON and document serialization / deserialization (via codec.py)
  - bytes ↔ base64 encoding in JSON mode
  - datetime parsing (ISO-8601 with timezone)
  - rejecting unknown status values

All models are frozen (immutable). The store itself is only ever changed through the
atomic operations in core/queue.py, never by writing a modified model back.
"""

import base64
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Closed set of lifecycle states. Anything else fails to decode."""

    READY = "ready"
    PROCESSING = "processing"
    COMPLETED = "completed"


class JobHandle(BaseModel):
    """Identifies a claimed job: what claim_next() hands back to a worker."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    queue: str


class JobRecord(BaseModel):
    """
    A single enqueue attempt stored in the collection.

    status       — current lifecycle state
    job_id       — opaque identifier, unique per (job_id, queue) under the default index
    queue        — logical queue name
    payload      — opaque bytes owned by the dispatch layer (base64 in JSON)
    created_at   — UTC time the record became eligible for claiming; FIFO key
    heartbeat_at — UTC time of the claim or last heartbeat (None unless PROCESSING)
    """

    model_config = ConfigDict(frozen=True)

    status: JobStatus
    job_id: str
    queue: str
    payload: bytes
    created_at: datetime
    heartbeat_at: datetime | None = None

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, v: str | bytes) -> bytes:
        """Accept base64 strings from JSON; pass bytes through unchanged."""
        match v:
            case bytes():
                return v
            case str():
                return base64.b64decode(v, validate=True)
            case _:
                raise ValueError(
                    f"payload must be bytes or a base64-encoded str, got {type(v).__name__}"
                )

    @field_serializer("payload", when_used="json")
    def _encode_payload(self, v: bytes) -> str:
        """Encode bytes as base64 ASCII for JSON serialisation."""
        return base64.b64encode(v).decode("ascii")

    @field_validator("created_at", "heartbeat_at", mode="after")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        # MongoDB hands back naive datetimes that are UTC.
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def new(
        cls, job_id: str, queue: str, payload: bytes, created_at: datetime | None = None
    ) -> "JobRecord":
        """Factory — a fresh READY record, eligible from `created_at` (default now)."""
        return cls(
            status=JobStatus.READY,
            job_id=job_id,
            queue=queue,
            payload=payload,
            created_at=created_at or utcnow(),
        )

    @property
    def handle(self) -> JobHandle:
        return JobHandle(job_id=self.job_id, queue=self.queue)
