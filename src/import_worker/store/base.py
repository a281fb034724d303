"""Job store contract shared by every backend."""

from abc import ABC, abstractmethod
from datetime import datetime

from ..models import Job, JobStatus


class JobStore(ABC):
    """Persistent job queue as seen by the worker.

    Implementations must make both claim operations exclusive across every
    worker process sharing the store: two concurrent callers never receive
    the same job. A read followed by a separate write is not enough.

    Failures the store reports (bad request, constraint, missing function)
    are raised as ``WorkerError.supabase``. Transport failures may propagate
    as-is; the worker normalizes them.
    """

    @abstractmethod
    async def claim_next_pending_job(self, worker_id: str) -> Job | None:
        """Atomically claim the oldest pending job.

        Sets ``status = processing``, stamps ``worker_id`` and returns the
        job, or None when nothing is pending.
        """

    @abstractmethod
    async def claim_stalled_job(self, worker_id: str, stalled_before: datetime) -> Job | None:
        """Atomically re-claim the oldest stalled job.

        A job is stalled when ``status = processing`` and
        ``updated_at < stalled_before`` (strictly). The claimed job gets the
        new ``worker_id`` and a fresh ``updated_at``.
        """

    @abstractmethod
    async def find_stalled_jobs(self, stalled_before: datetime, limit: int = 1) -> list[Job]:
        """List stalled jobs, oldest ``created_at`` first. Read-only."""

    @abstractmethod
    async def update_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        """Set a job's status (and error message for failures)."""

    @abstractmethod
    async def touch_job(self, job_id: str, worker_id: str) -> None:
        """Bump ``updated_at`` on a job this worker holds."""

    async def health_check(self) -> bool:
        """Check store connectivity."""
        return True

    async def close(self) -> None:
        """Release connections."""
