"""In-process job store for local runs and tests."""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ..models import Job, JobStatus
from .base import JobStore


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MemoryJobStore(JobStore):
    """Job store holding jobs in a dict.

    Claims contain no await point, so they are atomic with respect to every
    task on the event loop. Not shared across processes.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.clock = clock
        self.jobs: dict[str, Job] = {}

    def enqueue(
        self,
        job_id: str | None = None,
        *,
        status: JobStatus = JobStatus.PENDING,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        worker_id: str | None = None,
        **payload: Any,
    ) -> Job:
        """Insert a job (pending unless told otherwise) and return it."""
        now = self.clock()
        job = Job(
            id=job_id or str(uuid.uuid4()),
            status=status,
            created_at=created_at or now,
            updated_at=updated_at or created_at or now,
            worker_id=worker_id,
            **payload,
        )
        self.jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    def _oldest(self, predicate: Callable[[Job], bool]) -> Job | None:
        matching = [job for job in self.jobs.values() if predicate(job)]
        if not matching:
            return None
        return min(matching, key=lambda job: job.created_at)

    def _replace(self, job: Job, **changes: Any) -> Job:
        updated = Job.model_validate({**job.model_dump(), **changes})
        self.jobs[job.id] = updated
        return updated

    async def claim_next_pending_job(self, worker_id: str) -> Job | None:
        job = self._oldest(lambda j: j.status is JobStatus.PENDING)
        if job is None:
            return None
        return self._replace(
            job, status=JobStatus.PROCESSING, worker_id=worker_id, updated_at=self.clock()
        )

    async def claim_stalled_job(self, worker_id: str, stalled_before: datetime) -> Job | None:
        job = self._oldest(
            lambda j: j.status is JobStatus.PROCESSING and j.updated_at < stalled_before
        )
        if job is None:
            return None
        return self._replace(job, worker_id=worker_id, updated_at=self.clock())

    async def find_stalled_jobs(self, stalled_before: datetime, limit: int = 1) -> list[Job]:
        stalled = [
            job
            for job in self.jobs.values()
            if job.status is JobStatus.PROCESSING and job.updated_at < stalled_before
        ]
        stalled.sort(key=lambda job: job.created_at)
        return stalled[:limit]

    async def update_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        changes: dict[str, Any] = {"status": status, "updated_at": self.clock()}
        if error is not None:
            changes["error"] = error
        self._replace(job, **changes)

    async def touch_job(self, job_id: str, worker_id: str) -> None:
        job = self.jobs.get(job_id)
        if job is not None and job.worker_id == worker_id:
            self._replace(job, updated_at=self.clock())
