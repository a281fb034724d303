"""Worker control loop and stalled-job recovery."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .config import WorkerConfig
from .errors import (
    ErrorKind,
    WorkerError,
    classify,
    clear_correlation_id,
    generate_correlation_id,
    guarded_call,
    set_correlation_id,
)
from .lifecycle import Lifecycle, ShutdownToken
from .logger import Logger, logger
from .models import Job
from .processor import JobProcessor
from .store import JobStore

# Extra pause after a failed iteration, on top of the polling interval.
BACKOFF_DELAYS: dict[ErrorKind, Callable[[WorkerConfig], float]] = {
    ErrorKind.CIRCUIT_BREAKER: lambda c: c.circuit_breaker_reset_timeout_seconds,
    ErrorKind.JOB_PROCESSING: lambda c: c.retry_delay_seconds,
    ErrorKind.SUPABASE: lambda c: c.retry_delay_seconds,
    ErrorKind.STALLED_JOB: lambda c: c.retry_delay_seconds,
    ErrorKind.WORKER: lambda c: c.retry_delay_seconds,
}


def backoff_delay(error: WorkerError, config: WorkerConfig) -> float:
    """Seconds to back off after ``error``."""
    return BACKOFF_DELAYS[error.kind](config)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _JobRunner:
    """Shared plumbing: hands claimed jobs to the processor.

    The processing slot is one lock per process, held from claim to the end
    of processing, so a worker never has two jobs in flight.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: JobStore,
        processor: JobProcessor,
        token: ShutdownToken,
        *,
        slot: asyncio.Lock | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.processor = processor
        self.token = token
        self.slot = slot or asyncio.Lock()
        self.logger = logger.child({"worker_id": config.worker_id})

    async def _process(self, job: Job) -> None:
        """Execute a single job, reporting any failure as a processing error."""
        set_correlation_id(generate_correlation_id())
        job_logger = self.logger.child(job.log_context())
        try:
            job_logger.info("Processing job", {"processor": self.processor.name})
            await self.processor.process(job, self.config.worker_id)
        except WorkerError:
            raise
        except Exception as e:
            raise WorkerError.job_processing(str(e) or type(e).__name__, job.id) from e
        finally:
            clear_correlation_id()


class WorkerLoop(_JobRunner):
    """Claims pending jobs one at a time until shutdown."""

    _FAILURE_MESSAGES = {
        ErrorKind.CIRCUIT_BREAKER: "Circuit breaker triggered, waiting before retry...",
        ErrorKind.JOB_PROCESSING: "Job processing error",
        ErrorKind.SUPABASE: "Supabase error",
        ErrorKind.STALLED_JOB: "Stalled job error",
        ErrorKind.WORKER: "Unexpected error",
    }

    async def run_once(self) -> bool:
        """Claim and process at most one pending job.

        Returns True when a job was handed to the processor. Failures are
        raised as WorkerError.
        """
        async with self.slot:
            if self.token.cancelled:
                return False
            job = await guarded_call(
                lambda: self.store.claim_next_pending_job(self.config.worker_id), self.logger
            )
            if job is None:
                return False
            await self._process(job)
            return True

    def _log_failure(self, error: WorkerError, delay: float) -> None:
        extra = {**error.to_dict(), "retry_in_s": delay}
        message = self._FAILURE_MESSAGES[error.kind]
        if error.kind is ErrorKind.CIRCUIT_BREAKER:
            self.logger.info(message, extra)
        else:
            self.logger.error(message, extra)

    async def run(self) -> None:
        """Poll until the shutdown token is cancelled."""
        self.logger.info(
            "Worker loop started", {"polling_interval_ms": self.config.polling_interval}
        )
        while not self.token.cancelled:
            try:
                await self.run_once()
            except Exception as e:
                error = classify(e)
                delay = backoff_delay(error, self.config)
                self._log_failure(error, delay)
                if await self.token.sleep(delay):
                    break
            if await self.token.sleep(self.config.polling_interval_seconds):
                break
        self.logger.info("Worker loop stopped")


class StalledJobRecoverer(_JobRunner):
    """Periodically re-claims jobs left in processing by a dead or hung worker.

    Every ``stalled_job_timeout`` the oldest job whose ``updated_at`` is
    strictly older than ``now - stalled_job_timeout`` is re-claimed through
    the store's atomic operation and processed again under this worker's id.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: JobStore,
        processor: JobProcessor,
        token: ShutdownToken,
        *,
        slot: asyncio.Lock | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(config, store, processor, token, slot=slot)
        self.clock = clock
        self.logger = self.logger.child({"activity": "stalled-job-recovery"})

    def stalled_before(self) -> datetime:
        """Jobs last updated before this instant are stalled."""
        return self.clock() - timedelta(milliseconds=self.config.stalled_job_timeout)

    async def scan_once(self) -> Job | None:
        """Recover at most one stalled job. Returns it, if any."""
        async with self.slot:
            if self.token.cancelled:
                return None
            threshold = self.stalled_before()
            job = await guarded_call(
                lambda: self.store.claim_stalled_job(self.config.worker_id, threshold),
                self.logger,
            )
            if job is None:
                self.logger.debug("No stalled jobs")
                return None
            self.logger.info("Recovering stalled job", {"job_id": job.id})
            await self._process(job)
            return job

    async def run(self) -> None:
        """Scan on a fixed period until the shutdown token is cancelled."""
        period = self.config.stalled_job_timeout_seconds
        while not await self.token.sleep(period):
            try:
                await self.scan_once()
            except Exception as e:
                error = classify(e)
                self.logger.error("Error recovering stalled jobs", error.to_dict())
                if await self.token.sleep(self.config.retry_delay_seconds):
                    break
        self.logger.info("Stalled job recovery stopped")


async def _startup(config: WorkerConfig, store: JobStore, log: Logger) -> None:
    log.info("Starting import worker...")
    log.info("Configuration", {"config": config.summary()})
    if not await store.health_check():
        log.warn("Store health check failed (will retry during operation)")


async def serve(
    config: WorkerConfig,
    store: JobStore,
    processor: JobProcessor,
    token: ShutdownToken | None = None,
) -> int:
    """Run the worker loop and stalled-job recovery until shutdown.

    Returns the process exit code. The store is closed on the way out.
    """
    lifecycle = Lifecycle(config, token)
    log = logger.child({"worker_id": config.worker_id})

    slot = asyncio.Lock()
    loop = WorkerLoop(config, store, processor, lifecycle.token, slot=slot)
    recoverer = StalledJobRecoverer(config, store, processor, lifecycle.token, slot=slot)

    return await lifecycle.run(
        {
            "worker-loop": loop.run(),
            "stalled-job-recovery": recoverer.run(),
        },
        cleanup=store.close,
        startup=_startup(config, store, log),
    )


async def run_once(config: WorkerConfig, store: JobStore, processor: JobProcessor) -> int:
    """Single claim cycle plus single recovery scan, then exit."""
    log = logger.child({"worker_id": config.worker_id})
    token = ShutdownToken()
    slot = asyncio.Lock()
    exit_code = 0
    try:
        await _startup(config, store, log)
        steps = (
            ("worker-loop", WorkerLoop(config, store, processor, token, slot=slot).run_once),
            (
                "stalled-job-recovery",
                StalledJobRecoverer(config, store, processor, token, slot=slot).scan_once,
            ),
        )
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                log.error("Run once step failed", {"activity": name, **classify(e).to_dict()})
                exit_code = 1
    finally:
        await store.close()
    return exit_code
