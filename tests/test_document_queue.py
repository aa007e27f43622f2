import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from docqueue.adapters.store.memory import InMemoryDocumentStore
from docqueue.core import codec
from docqueue.core.queue import INDEX_NAME, DocumentQueue
from docqueue.domain.errors import (
    DecodingError,
    DuplicateKeyError,
    MissingJobError,
    ModificationFailedError,
    StoreUnavailableError,
)
from docqueue.domain.models import JobHandle, JobStatus
from docqueue.settings import IndexScope

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class _Clock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
async def queue(store: InMemoryDocumentStore, clock: _Clock) -> DocumentQueue:
    q = DocumentQueue(store=store, clock=clock)
    await q.ensure_indexes()
    return q


async def _status_of(store: InMemoryDocumentStore, job_id: str) -> list[str]:
    return [d["status"] for d in await store.snapshot() if d["job_id"] == job_id]


# ---------------------------------------------------------------------------
# ensure_indexes
# ---------------------------------------------------------------------------


async def test_ensure_indexes_is_idempotent(queue: DocumentQueue) -> None:
    await queue.ensure_indexes()
    await queue.ensure_indexes()


async def test_ensure_indexes_job_scope_keys() -> None:
    store = AsyncMock()
    await DocumentQueue(store=store).ensure_indexes()
    store.create_index.assert_awaited_once_with(
        [("job_id", 1), ("queue", 1)], name=INDEX_NAME, unique=True
    )


async def test_ensure_indexes_status_scope_keys() -> None:
    store = AsyncMock()
    await DocumentQueue(store=store, index_scope=IndexScope.STATUS).ensure_indexes()
    store.create_index.assert_awaited_once_with(
        [("job_id", 1), ("queue", 1), ("status", 1)], name=INDEX_NAME, unique=True
    )


# ---------------------------------------------------------------------------
# enqueue
# ---------------------------------------------------------------------------


async def test_enqueue_returns_ready_record(queue: DocumentQueue, clock: _Clock) -> None:
    record = await queue.enqueue("J1", "emails", b"payload")
    assert record.status == JobStatus.READY
    assert record.job_id == "J1"
    assert record.queue == "emails"
    assert record.payload == b"payload"
    assert record.created_at == clock.now


async def test_enqueue_stores_document(
    queue: DocumentQueue, store: InMemoryDocumentStore
) -> None:
    record = await queue.enqueue("J1", "emails", b"payload")
    [document] = await store.snapshot()
    assert codec.from_document(document) == record


async def test_enqueue_same_job_twice_raises_duplicate(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"1")
    with pytest.raises(DuplicateKeyError) as exc_info:
        await queue.enqueue("J1", "emails", b"2")
    assert exc_info.value.key == {"job_id": "J1", "queue": "emails"}


async def test_enqueue_same_job_other_queue_is_allowed(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"1")
    await queue.enqueue("J1", "sms", b"2")


async def test_enqueue_treats_ids_as_opaque(queue: DocumentQueue) -> None:
    record = await queue.enqueue("", "emails", b"x")
    assert record.job_id == ""
    handle = await queue.claim_next("emails")
    assert handle == JobHandle(job_id="", queue="emails")
    assert await queue.fetch_payload(handle) == b"x"


async def test_enqueue_after_completion_fails_with_job_scope(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"1")
    handle = await queue.claim_next("emails")
    assert handle is not None
    await queue.complete(handle)
    with pytest.raises(DuplicateKeyError):
        await queue.enqueue("J1", "emails", b"again")


async def test_enqueue_after_completion_allowed_with_status_scope(
    store: InMemoryDocumentStore, clock: _Clock
) -> None:
    q = DocumentQueue(store=store, index_scope=IndexScope.STATUS, clock=clock)
    await q.ensure_indexes()
    await q.enqueue("J1", "emails", b"1")
    handle = await q.claim_next("emails")
    assert handle is not None
    await q.complete(handle)

    await q.enqueue("J1", "emails", b"again")

    assert sorted(await _status_of(store, "J1")) == ["completed", "ready"]


async def test_status_scope_second_completion_collides(
    store: InMemoryDocumentStore, clock: _Clock
) -> None:
    q = DocumentQueue(store=store, index_scope=IndexScope.STATUS, clock=clock)
    await q.ensure_indexes()
    await q.enqueue("J1", "emails", b"1")
    handle = await q.claim_next("emails")
    assert handle is not None
    await q.complete(handle)
    await q.enqueue("J1", "emails", b"again")
    handle = await q.claim_next("emails")
    assert handle is not None

    with pytest.raises(DuplicateKeyError):
        await q.complete(handle)


async def test_enqueue_store_unavailable_propagates() -> None:
    store = AsyncMock()
    store.insert.side_effect = StoreUnavailableError("down", ConnectionError("refused"))
    with pytest.raises(StoreUnavailableError):
        await DocumentQueue(store=store).enqueue("J1", "emails", b"")


# ---------------------------------------------------------------------------
# claim_next
# ---------------------------------------------------------------------------


async def test_claim_empty_queue_returns_none(queue: DocumentQueue) -> None:
    assert await queue.claim_next("emails") is None


async def test_claim_returns_handle_and_marks_processing(
    queue: DocumentQueue, store: InMemoryDocumentStore, clock: _Clock
) -> None:
    await queue.enqueue("J1", "emails", b"data")
    handle = await queue.claim_next("emails")
    assert handle == JobHandle(job_id="J1", queue="emails")
    [document] = await store.snapshot()
    assert document["status"] == "processing"
    assert document["heartbeat_at"] == clock.now


async def test_claim_only_sees_its_queue(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "sms", b"data")
    assert await queue.claim_next("emails") is None
    assert await queue.claim_next("sms") is not None


async def test_claim_skips_processing_and_completed(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"1")
    await queue.enqueue("J2", "emails", b"2")
    first = await queue.claim_next("emails")
    assert first is not None
    await queue.complete(first)
    await queue.enqueue("J3", "emails", b"3")
    second = await queue.claim_next("emails")
    third = await queue.claim_next("emails")
    assert [second.job_id, third.job_id] == ["J2", "J3"]  # type: ignore[union-attr]
    assert await queue.claim_next("emails") is None


async def test_claim_fifo_order(queue: DocumentQueue) -> None:
    ids = [f"J{i}" for i in range(1, 6)]
    for job_id in ids:
        await queue.enqueue(job_id, "emails", b"")
    claimed = []
    for _ in ids:
        handle = await queue.claim_next("emails")
        assert handle is not None
        claimed.append(handle.job_id)
    assert claimed == ids


async def test_single_claim_under_concurrency(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")

    results = await asyncio.gather(*(queue.claim_next("emails") for _ in range(20)))

    winners = [r for r in results if r is not None]
    assert winners == [JobHandle(job_id="J1", queue="emails")]


async def test_concurrent_claims_never_share_a_job(queue: DocumentQueue) -> None:
    for i in range(10):
        await queue.enqueue(f"J{i}", "emails", b"")

    results = await asyncio.gather(*(queue.claim_next("emails") for _ in range(25)))

    winners = [r.job_id for r in results if r is not None]
    assert len(winners) == 10
    assert len(set(winners)) == 10


async def test_claim_malformed_document_raises_decoding_error(
    store: InMemoryDocumentStore,
) -> None:
    await store.insert(
        {
            "status": "ready",
            "job_id": "J1",
            "queue": "emails",
            "created_at": datetime(2024, 1, 1, tzinfo=UTC),
        }
    )
    with pytest.raises(DecodingError):
        await DocumentQueue(store=store).claim_next("emails")


async def test_claim_is_a_single_atomic_call() -> None:
    store = AsyncMock()
    store.find_one_and_update.return_value = None
    await DocumentQueue(store=store).claim_next("emails")
    store.find_one_and_update.assert_awaited_once()
    store.find_one.assert_not_awaited()
    args, kwargs = store.find_one_and_update.await_args
    assert args[0] == {"queue": "emails", "status": "ready"}
    assert kwargs["sort"] == [("created_at", 1)]


# ---------------------------------------------------------------------------
# fetch_payload
# ---------------------------------------------------------------------------


async def test_fetch_payload_of_claimed_job(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"\x00binary\xff")
    handle = await queue.claim_next("emails")
    assert handle is not None
    assert await queue.fetch_payload(handle) == b"\x00binary\xff"


async def test_fetch_payload_of_unclaimed_job_raises(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")
    with pytest.raises(MissingJobError) as exc_info:
        await queue.fetch_payload(JobHandle(job_id="J1", queue="emails"))
    assert exc_info.value.job_id == "J1"
    assert exc_info.value.queue == "emails"


async def test_fetch_payload_of_unknown_job_raises(queue: DocumentQueue) -> None:
    with pytest.raises(MissingJobError):
        await queue.fetch_payload(JobHandle(job_id="nope", queue="emails"))


async def test_fetch_payload_after_complete_raises(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")
    handle = await queue.claim_next("emails")
    assert handle is not None
    await queue.complete(handle)
    with pytest.raises(MissingJobError):
        await queue.fetch_payload(handle)


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


async def test_complete_marks_completed(
    queue: DocumentQueue, store: InMemoryDocumentStore
) -> None:
    await queue.enqueue("J1", "emails", b"data")
    handle = await queue.claim_next("emails")
    assert handle is not None
    await queue.complete(handle)
    assert await _status_of(store, "J1") == ["completed"]


async def test_complete_unclaimed_job_raises(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")
    with pytest.raises(ModificationFailedError) as exc_info:
        await queue.complete(JobHandle(job_id="J1", queue="emails"))
    assert exc_info.value.operation == "complete"


async def test_complete_never_deletes(
    queue: DocumentQueue, store: InMemoryDocumentStore
) -> None:
    for job_id in ("J1", "J2"):
        await queue.enqueue(job_id, "emails", b"")
        handle = await queue.claim_next("emails")
        assert handle is not None
        await queue.complete(handle)
    assert len(await store.snapshot()) == 2


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------


async def test_release_returns_job_to_ready(
    queue: DocumentQueue, store: InMemoryDocumentStore, clock: _Clock
) -> None:
    await queue.enqueue("J1", "emails", b"data")
    handle = await queue.claim_next("emails")
    assert handle is not None
    await queue.release(handle)
    [document] = await store.snapshot()
    assert document["status"] == "ready"
    assert document["created_at"] == clock.now
    assert document["heartbeat_at"] is None


async def test_release_moves_job_behind_ready_jobs(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"")
    await queue.enqueue("J2", "emails", b"")
    await queue.enqueue("J3", "emails", b"")
    handle = await queue.claim_next("emails")
    assert handle is not None and handle.job_id == "J1"
    await queue.release(handle)

    order = []
    while (h := await queue.claim_next("emails")) is not None:
        order.append(h.job_id)

    assert order == ["J2", "J3", "J1"]


async def test_released_job_is_claimable_again(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")
    handle = await queue.claim_next("emails")
    assert handle is not None
    await queue.release(handle)
    again = await queue.claim_next("emails")
    assert again == handle
    assert await queue.fetch_payload(again) == b"data"


async def test_release_unclaimed_job_raises(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")
    with pytest.raises(ModificationFailedError) as exc_info:
        await queue.release(JobHandle(job_id="J1", queue="emails"))
    assert exc_info.value.operation == "release"


# ---------------------------------------------------------------------------
# heartbeat
# ---------------------------------------------------------------------------


async def test_heartbeat_updates_timestamp(
    queue: DocumentQueue, store: InMemoryDocumentStore, clock: _Clock
) -> None:
    await queue.enqueue("J1", "emails", b"data")
    handle = await queue.claim_next("emails")
    assert handle is not None
    claimed_at = clock.now
    await queue.heartbeat(handle)
    [document] = await store.snapshot()
    assert document["heartbeat_at"] > claimed_at


async def test_heartbeat_unclaimed_job_raises(queue: DocumentQueue) -> None:
    with pytest.raises(ModificationFailedError):
        await queue.heartbeat(JobHandle(job_id="J1", queue="emails"))


# ---------------------------------------------------------------------------
# requeue_stale
# ---------------------------------------------------------------------------


async def test_requeue_stale_no_stale_jobs_returns_zero(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"data")
    await queue.claim_next("emails")
    assert await queue.requeue_stale("emails", timedelta(hours=1)) == 0


async def test_requeue_stale_releases_old_claims(
    queue: DocumentQueue, store: InMemoryDocumentStore, clock: _Clock
) -> None:
    for job_id in ("J1", "J2", "J3"):
        await queue.enqueue(job_id, "emails", b"")
    await queue.claim_next("emails")
    await queue.claim_next("emails")
    clock.advance(timedelta(minutes=10))

    count = await queue.requeue_stale("emails", timedelta(minutes=5))

    assert count == 2
    assert sorted(d["status"] for d in await store.snapshot()) == ["ready"] * 3


async def test_requeue_stale_sends_jobs_to_back(
    queue: DocumentQueue, clock: _Clock
) -> None:
    await queue.enqueue("J1", "emails", b"")
    await queue.enqueue("J2", "emails", b"")
    await queue.claim_next("emails")
    clock.advance(timedelta(minutes=10))
    await queue.requeue_stale("emails", timedelta(minutes=5))

    first = await queue.claim_next("emails")
    second = await queue.claim_next("emails")
    assert [first.job_id, second.job_id] == ["J2", "J1"]  # type: ignore[union-attr]


async def test_requeue_stale_ignores_other_queues(
    queue: DocumentQueue, clock: _Clock
) -> None:
    await queue.enqueue("J1", "sms", b"")
    await queue.claim_next("sms")
    clock.advance(timedelta(minutes=10))
    assert await queue.requeue_stale("emails", timedelta(minutes=5)) == 0


async def test_requeue_stale_spares_heartbeating_job(
    queue: DocumentQueue, clock: _Clock
) -> None:
    await queue.enqueue("J1", "emails", b"")
    handle = await queue.claim_next("emails")
    assert handle is not None
    clock.advance(timedelta(minutes=10))
    await queue.heartbeat(handle)
    assert await queue.requeue_stale("emails", timedelta(minutes=5)) == 0


async def test_worker_loses_race_after_sweep(queue: DocumentQueue, clock: _Clock) -> None:
    await queue.enqueue("J1", "emails", b"")
    handle = await queue.claim_next("emails")
    assert handle is not None
    clock.advance(timedelta(minutes=10))
    await queue.requeue_stale("emails", timedelta(minutes=5))
    with pytest.raises(ModificationFailedError):
        await queue.complete(handle)


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


async def test_scenario_claim_fetch_complete_twice(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b'{"to": "a@example.com"}')
    handle = await queue.claim_next("emails")
    assert handle is not None and handle.job_id == "J1"
    assert await queue.fetch_payload(handle) == b'{"to": "a@example.com"}'
    await queue.complete(handle)
    with pytest.raises(ModificationFailedError):
        await queue.complete(handle)


async def test_scenario_two_jobs_in_order_then_empty(queue: DocumentQueue) -> None:
    await queue.enqueue("J1", "emails", b"")
    await queue.enqueue("J2", "emails", b"")
    first = await queue.claim_next("emails")
    second = await queue.claim_next("emails")
    assert first is not None and first.job_id == "J1"
    assert second is not None and second.job_id == "J2"
    assert await queue.claim_next("emails") is None
