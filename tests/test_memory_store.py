"""Tests for the store contract, exercised on the in-memory backend."""

import asyncio
from datetime import UTC, datetime, timedelta

from import_worker.models import Job, JobStatus
from import_worker.store import MemoryJobStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def make_store() -> MemoryJobStore:
    return MemoryJobStore(clock=lambda: NOW)


def test_job_keeps_extra_columns_as_payload() -> None:
    job = Job.model_validate(
        {
            "id": 17,
            "status": "pending",
            "created_at": "2024-05-01T10:00:00+00:00",
            "updated_at": "2024-05-01T10:00:00+00:00",
            "source_file": "contacts.csv",
        }
    )

    assert job.id == "17"
    assert job.status is JobStatus.PENDING
    assert job.worker_id is None
    assert job.payload == {"source_file": "contacts.csv"}


def test_claim_takes_oldest_pending_job() -> None:
    store = make_store()
    store.enqueue("newer", created_at=NOW - timedelta(minutes=1))
    store.enqueue("older", created_at=NOW - timedelta(minutes=5))
    store.enqueue("done", status=JobStatus.COMPLETED, created_at=NOW - timedelta(hours=1))

    job = asyncio.run(store.claim_next_pending_job("worker-a"))

    assert job is not None
    assert job.id == "older"
    assert job.status is JobStatus.PROCESSING
    assert job.worker_id == "worker-a"
    assert store.get("older").status is JobStatus.PROCESSING  # type: ignore[union-attr]


def test_claim_on_empty_queue_returns_nothing_repeatedly() -> None:
    store = make_store()

    async def claim_three() -> list[Job | None]:
        return [await store.claim_next_pending_job("worker-a") for _ in range(3)]

    assert asyncio.run(claim_three()) == [None, None, None]


def test_concurrent_claims_never_share_a_job() -> None:
    store = make_store()
    for i in range(5):
        store.enqueue(f"job-{i}", created_at=NOW - timedelta(minutes=i))

    async def claim_all() -> list[Job | None]:
        return await asyncio.gather(
            *[store.claim_next_pending_job(f"worker-{i}") for i in range(8)]
        )

    claimed = [job.id for job in asyncio.run(claim_all()) if job is not None]

    assert sorted(claimed) == [f"job-{i}" for i in range(5)]


def test_stalled_boundary_is_strict() -> None:
    """updated_at exactly at the threshold is not stalled; 1ms older is."""
    store = make_store()
    threshold = NOW - timedelta(minutes=1)
    store.enqueue(
        "at-boundary", status=JobStatus.PROCESSING, created_at=NOW - timedelta(hours=2),
        updated_at=threshold, worker_id="dead",
    )

    assert asyncio.run(store.claim_stalled_job("worker-b", threshold)) is None

    store.enqueue(
        "past-boundary", status=JobStatus.PROCESSING, created_at=NOW - timedelta(hours=1),
        updated_at=threshold - timedelta(milliseconds=1), worker_id="dead",
    )
    job = asyncio.run(store.claim_stalled_job("worker-b", threshold))

    assert job is not None
    assert job.id == "past-boundary"
    assert job.worker_id == "worker-b"
    assert job.updated_at == NOW


def test_reclaimed_job_is_no_longer_stalled() -> None:
    """A second recoverer cannot re-claim the job the first one took."""
    store = make_store()
    threshold = NOW - timedelta(minutes=1)
    store.enqueue(
        "stuck", status=JobStatus.PROCESSING, created_at=NOW - timedelta(hours=1),
        updated_at=NOW - timedelta(minutes=10), worker_id="dead",
    )

    first = asyncio.run(store.claim_stalled_job("worker-a", threshold))
    second = asyncio.run(store.claim_stalled_job("worker-b", threshold))

    assert first is not None and first.worker_id == "worker-a"
    assert second is None


def test_find_stalled_jobs_orders_by_created_at() -> None:
    store = make_store()
    stale = NOW - timedelta(minutes=10)
    processing = JobStatus.PROCESSING
    store.enqueue("b", status=processing, created_at=NOW - timedelta(hours=1), updated_at=stale)
    store.enqueue("a", status=processing, created_at=NOW - timedelta(hours=2), updated_at=stale)
    store.enqueue("fresh", status=processing, created_at=NOW - timedelta(hours=3), updated_at=NOW)

    threshold = NOW - timedelta(minutes=1)
    assert [job.id for job in asyncio.run(store.find_stalled_jobs(threshold))] == ["a"]
    stalled = asyncio.run(store.find_stalled_jobs(threshold, limit=5))
    assert [job.id for job in stalled] == ["a", "b"]


def test_update_status_and_touch() -> None:
    store = make_store()
    store.enqueue(
        "job-1", status=JobStatus.PROCESSING, created_at=NOW - timedelta(hours=1),
        updated_at=NOW - timedelta(hours=1), worker_id="worker-a",
    )

    asyncio.run(store.touch_job("job-1", "worker-other"))
    assert store.get("job-1").updated_at == NOW - timedelta(hours=1)  # type: ignore[union-attr]

    asyncio.run(store.touch_job("job-1", "worker-a"))
    assert store.get("job-1").updated_at == NOW  # type: ignore[union-attr]

    asyncio.run(store.update_job_status("job-1", JobStatus.FAILED, error="bad mapping"))
    job = store.get("job-1")
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.payload["error"] == "bad mapping"
