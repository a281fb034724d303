"""Job processor seam: the part of the worker that actually migrates data."""

import asyncio
import importlib
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from .config import WorkerConfig
from .errors import WorkerError, describe_exception
from .logger import Logger, logger
from .models import Job, JobStatus
from .store import JobStore

ProcessFunction = Callable[[Job, str], Awaitable[Any]]


class JobProcessor(ABC):
    """Processes one claimed job.

    The processor owns the job's terminal status: it must leave the job
    ``completed`` or ``failed``. Exceptions it raises reach the worker and are
    reported as processing failures for that job.
    """

    @abstractmethod
    async def process(self, job: Job, worker_id: str) -> None:
        """Run the job on behalf of ``worker_id``."""

    @property
    def name(self) -> str:
        """Processor name (defaults to class name)."""
        return self.__class__.__name__


class FunctionProcessor(JobProcessor):
    """Adapts a plain ``async def fn(job, worker_id)`` to the processor interface."""

    def __init__(self, fn: ProcessFunction) -> None:
        self.fn = fn

    async def process(self, job: Job, worker_id: str) -> None:
        await self.fn(job, worker_id)

    @property
    def name(self) -> str:
        return getattr(self.fn, "__qualname__", repr(self.fn))


class MigrationProcessor(JobProcessor):
    """Base for processors that persist their own outcome.

    Subclasses implement :meth:`transform`. On success the job is marked
    ``completed``; on failure it is marked ``failed`` with the error message
    and a processing error is raised. While ``transform`` runs, ``updated_at``
    is bumped every ``heartbeat_interval`` seconds (0 disables) so long jobs
    are not mistaken for stalled ones.
    """

    def __init__(self, store: JobStore, *, heartbeat_interval: float = 0.0) -> None:
        self.store = store
        self.heartbeat_interval = heartbeat_interval

    @abstractmethod
    async def transform(self, job: Job) -> None:
        """Do the migration work for ``job``."""

    async def process(self, job: Job, worker_id: str) -> None:
        job_logger = logger.child({"worker_id": worker_id, **job.log_context()})
        heartbeat: asyncio.Task[None] | None = None
        if self.heartbeat_interval > 0:
            heartbeat = asyncio.create_task(self._heartbeat_loop(job, worker_id, job_logger))

        try:
            await self.transform(job)
        except Exception as e:
            job_logger.error("Job failed", describe_exception(e))
            await self._mark_failed(job, str(e), job_logger)
            raise WorkerError.job_processing(str(e), job.id) from e
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

        await self.store.update_job_status(job.id, JobStatus.COMPLETED)
        job_logger.info("Job completed")

    async def _mark_failed(self, job: Job, error: str, job_logger: Logger) -> None:
        try:
            await self.store.update_job_status(job.id, JobStatus.FAILED, error=error)
        except Exception as e:
            job_logger.error("Failed to mark job as failed", describe_exception(e))

    async def _heartbeat_loop(self, job: Job, worker_id: str, job_logger: Logger) -> None:
        """Send periodic heartbeats for a job."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.store.touch_job(job.id, worker_id)
            except Exception as e:
                job_logger.warn("Heartbeat failed", describe_exception(e))


def load_processor(reference: str, store: JobStore, config: WorkerConfig) -> JobProcessor:
    """Resolve ``package.module:attribute`` to a processor.

    The attribute may be a processor instance, a processor class (a
    MigrationProcessor subclass receives the store and heartbeat interval),
    or an ``async def fn(job, worker_id)``.
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Processor reference must look like 'module:attribute', got {reference!r}"
        )

    target = getattr(importlib.import_module(module_name), attr)

    if isinstance(target, JobProcessor):
        return target
    if inspect.isclass(target) and issubclass(target, MigrationProcessor):
        return target(store, heartbeat_interval=config.heartbeat_interval_seconds)
    if inspect.isclass(target) and issubclass(target, JobProcessor):
        return target()
    if inspect.iscoroutinefunction(target):
        return FunctionProcessor(target)
    raise ValueError(f"{reference!r} is not a JobProcessor or async function")
