"""Error taxonomy, store-call normalization and correlation ID tracking."""

import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from .logger import Logger

T = TypeVar("T")

# Context variable for correlation ID (async-safe)
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """Generate a new correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_current_correlation_id() -> str | None:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID in context."""
    _correlation_id.set(correlation_id)


def clear_correlation_id() -> None:
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


class ErrorKind(str, Enum):
    """Closed set of failure kinds the worker distinguishes.

    Extend by adding a member here and a row to every table keyed on it.
    """

    WORKER = "WorkerError"
    SUPABASE = "SupabaseError"
    CIRCUIT_BREAKER = "CircuitBreakerError"
    JOB_PROCESSING = "JobProcessingError"
    STALLED_JOB = "StalledJobError"


UNKNOWN_ERROR = "UNKNOWN_ERROR"

_KIND_CODES = {
    ErrorKind.SUPABASE: "SUPABASE_ERROR",
    ErrorKind.CIRCUIT_BREAKER: "CIRCUIT_BREAKER_ERROR",
    ErrorKind.JOB_PROCESSING: "JOB_PROCESSING_ERROR",
    ErrorKind.STALLED_JOB: "STALLED_JOB_ERROR",
}


class WorkerError(Exception):
    """Tagged worker failure.

    A single exception type whose ``kind`` says which variant it is. Use the
    constructors below rather than subclassing.

    Attributes:
        kind: Variant tag
        message: Human-readable error message
        code: Stable machine-readable code
        job_id: Job concerned (processing and stalled-job variants)
        original: Underlying store error (Supabase variant)
    """

    def __init__(
        self,
        message: str,
        code: str = UNKNOWN_ERROR,
        *,
        kind: ErrorKind = ErrorKind.WORKER,
        job_id: str | None = None,
        original: Any = None,
    ) -> None:
        """Initialize worker error."""
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.job_id = job_id
        self.original = original

    @classmethod
    def generic(cls, message: str, code: str = UNKNOWN_ERROR) -> "WorkerError":
        return cls(message, code)

    @classmethod
    def supabase(cls, message: str, original: Any) -> "WorkerError":
        """The backing store rejected or failed a call."""
        return cls(
            message,
            _KIND_CODES[ErrorKind.SUPABASE],
            kind=ErrorKind.SUPABASE,
            original=original,
        )

    @classmethod
    def circuit_breaker(cls, message: str = "Circuit breaker is open") -> "WorkerError":
        """Back off before touching the store again.

        Reserved: nothing in the worker raises it yet.
        """
        return cls(message, _KIND_CODES[ErrorKind.CIRCUIT_BREAKER], kind=ErrorKind.CIRCUIT_BREAKER)

    @classmethod
    def job_processing(cls, message: str, job_id: str) -> "WorkerError":
        """A specific job failed while being processed."""
        return cls(
            message,
            _KIND_CODES[ErrorKind.JOB_PROCESSING],
            kind=ErrorKind.JOB_PROCESSING,
            job_id=job_id,
        )

    @classmethod
    def stalled_job(cls, message: str, job_id: str) -> "WorkerError":
        """Stalled-job specific failure. Reserved, never raised."""
        return cls(
            message,
            _KIND_CODES[ErrorKind.STALLED_JOB],
            kind=ErrorKind.STALLED_JOB,
            job_id=job_id,
        )

    def __str__(self) -> str:
        """String representation of error."""
        if self.job_id:
            return f"{self.message} (job_id: {self.job_id})"
        return self.message

    def __repr__(self) -> str:
        return f"WorkerError(kind={self.kind.value}, code={self.code}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        """Render for structured logs."""
        data: dict[str, Any] = {
            "error_kind": self.kind.value,
            "error_code": self.code,
            "error": self.message,
        }
        if self.job_id:
            data["job_id"] = self.job_id
        if self.original is not None:
            data["original_error"] = str(self.original)
        return data


def describe_exception(error: BaseException) -> dict[str, Any]:
    """Structured log fields for any exception."""
    if isinstance(error, WorkerError):
        return error.to_dict()
    return {"error": str(error), "type": type(error).__name__}


def classify(error: Exception) -> WorkerError:
    """Map any failure onto the closed taxonomy."""
    if isinstance(error, WorkerError):
        return error
    wrapped = WorkerError.generic(str(error) or type(error).__name__)
    wrapped.__cause__ = error
    return wrapped


async def guarded_call(operation: Callable[[], Awaitable[T]], logger: "Logger") -> T:
    """Await a store operation, normalizing every failure into a WorkerError.

    WorkerErrors pass through unchanged. Anything else becomes a generic
    ``UNKNOWN_ERROR`` chained from the original exception.
    """
    try:
        return await operation()
    except WorkerError as e:
        if e.kind is ErrorKind.SUPABASE:
            logger.error("Supabase error", e.to_dict())
        raise
    except Exception as e:
        logger.error("Unexpected error during store operation", describe_exception(e))
        raise WorkerError.generic("Unexpected error during Supabase operation") from e
