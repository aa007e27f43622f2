"""
Exception hierarchy for docqueue.

DocQueueError
├── StoreError                — underlying store failure (wraps original exception)
│   └── StoreUnavailableError — connectivity loss or timeout; retry later
├── DuplicateKeyError         — insert/update violated a unique index
├── MissingJobError           — no Processing record for (job_id, queue)
├── ModificationFailedError   — a state transition matched zero records
├── EncodingError             — a JobRecord could not be serialized
└── DecodingError             — stored data does not match the JobRecord schema

The core never retries and never swallows these. Each carries enough context
(job_id / queue / operation / key) for the caller to decide what to do.
"""

from __future__ import annotations

from collections.abc import Mapping


class DocQueueError(Exception):
    """Base class for all docqueue exceptions."""


class StoreError(DocQueueError):
    """
    Wraps an underlying failure from a document store adapter.

    Attributes
    ----------
    cause : Exception
        The original exception from the store client.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class StoreUnavailableError(StoreError):
    """
    The store could not be reached (connection refused, timeout, failover).

    Callers should treat this as "try again later" and back off. The core
    does not retry internally.
    """


class DuplicateKeyError(DocQueueError):
    """Raised when a write would create a second document with the same unique key."""

    def __init__(self, key: Mapping[str, object]) -> None:
        self.key = dict(key)
        super().__init__(f"Duplicate key {self.key!r} violates a unique index")


class MissingJobError(DocQueueError):
    """
    Raised when no Processing record exists for (job_id, queue).

    Either the caller never claimed the job, or another actor completed or
    released it concurrently. Fatal for the current attempt.
    """

    def __init__(self, job_id: str, queue: str) -> None:
        self.job_id = job_id
        self.queue = queue
        super().__init__(f"Job {job_id!r} is not being processed in queue {queue!r}")


class ModificationFailedError(DocQueueError):
    """
    Raised when an atomic state transition matched no record.

    Signals a lost race or a logic error upstream. After a failed complete()
    the job outcome is ambiguous.
    """

    def __init__(self, job_id: str, queue: str, operation: str) -> None:
        self.job_id = job_id
        self.queue = queue
        self.operation = operation
        super().__init__(
            f"{operation} matched no processing record for job {job_id!r} "
            f"in queue {queue!r}"
        )


class EncodingError(DocQueueError):
    """Raised when a JobRecord cannot be serialized."""

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class DecodingError(DocQueueError):
    """Raised when stored data does not decode to a valid JobRecord."""

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")
