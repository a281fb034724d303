"""Shared fixtures and test doubles."""

from datetime import datetime
from typing import Any

import pytest

from import_worker import logger as logger_module
from import_worker.config import WorkerConfig
from import_worker.lifecycle import ShutdownToken
from import_worker.models import Job, JobStatus
from import_worker.processor import JobProcessor
from import_worker.store import MemoryJobStore

WORKER_ENV_VARS = [
    "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "DATABASE_URL",
    "JOBS_TABLE",
    "REQUEST_TIMEOUT",
    "WORKER_ID",
    "POLLING_INTERVAL",
    "STALLED_JOB_TIMEOUT",
    "CIRCUIT_BREAKER_RESET_TIMEOUT",
    "RETRY_DELAY",
    "HEARTBEAT_INTERVAL",
    "SHUTDOWN_GRACE_PERIOD",
    "JOB_PROCESSOR",
    "ENVIRONMENT",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """No worker env vars and no .env file leak into tests."""
    for name in WORKER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    logger_module.configure("debug")


def make_config(**overrides: Any) -> WorkerConfig:
    """Fast timings (milliseconds), distinct per delay kind."""
    values: dict[str, Any] = {
        "worker_id": "worker-test",
        "polling_interval": 10,
        "retry_delay": 20,
        "circuit_breaker_reset_timeout": 30,
        "stalled_job_timeout": 60_000,
        "shutdown_grace_period": 1_000,
    }
    values.update(overrides)
    return WorkerConfig(_env_file=None, **values)  # type: ignore[call-arg]


class RecordingToken(ShutdownToken):
    """Token that records requested sleeps instead of sleeping.

    Cancels itself once ``max_sleeps`` sleeps have been requested.
    """

    def __init__(self, max_sleeps: int) -> None:
        super().__init__()
        self.max_sleeps = max_sleeps
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        if len(self.sleeps) >= self.max_sleeps:
            self.cancel("test")
        return self.cancelled


class SpyStore(MemoryJobStore):
    """Memory store that records calls and can fail on demand."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.calls: list[str] = []
        self.claim_failures: list[Exception] = []
        self.stalled_failures: list[Exception] = []
        self.token: ShutdownToken | None = None
        self.calls_after_cancel: list[str] = []
        self.closed = False

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.token is not None and self.token.cancelled:
            self.calls_after_cancel.append(name)

    async def claim_next_pending_job(self, worker_id: str) -> Job | None:
        self._record("claim_next_pending_job")
        if self.claim_failures:
            raise self.claim_failures.pop(0)
        return await super().claim_next_pending_job(worker_id)

    async def claim_stalled_job(self, worker_id: str, stalled_before: datetime) -> Job | None:
        self._record("claim_stalled_job")
        if self.stalled_failures:
            raise self.stalled_failures.pop(0)
        return await super().claim_stalled_job(worker_id, stalled_before)

    async def update_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        self._record("update_job_status")
        await super().update_job_status(job_id, status, error)

    async def touch_job(self, job_id: str, worker_id: str) -> None:
        self._record("touch_job")
        await super().touch_job(job_id, worker_id)

    async def close(self) -> None:
        self.closed = True


class RecordingProcessor(JobProcessor):
    """Completes jobs through the store and remembers who processed what."""

    def __init__(self, store: MemoryJobStore, fail_ids: set[str] | None = None) -> None:
        self.store = store
        self.fail_ids = fail_ids or set()
        self.calls: list[tuple[str, str]] = []

    async def process(self, job: Job, worker_id: str) -> None:
        self.calls.append((job.id, worker_id))
        if job.id in self.fail_ids:
            raise RuntimeError(f"cannot import {job.id}")
        await self.store.update_job_status(job.id, JobStatus.COMPLETED)
