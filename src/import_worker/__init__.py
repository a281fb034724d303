"""
Import Worker

Background worker for long-running import jobs kept in a shared
Postgres/Supabase queue. Atomic claiming, stalled-job recovery,
classified backoff, crash-fast lifecycle.
"""

from importlib import import_module
from typing import TYPE_CHECKING, Any

__version__ = "0.1.0"

__all__ = [
    "Job",
    "JobProcessor",
    "JobStatus",
    "MigrationProcessor",
    "StoreConfig",
    "WorkerConfig",
    "WorkerError",
]

if TYPE_CHECKING:
    from .config import StoreConfig, WorkerConfig
    from .errors import WorkerError
    from .models import Job, JobStatus
    from .processor import JobProcessor, MigrationProcessor

_EXPORTS = {
    "Job": ".models",
    "JobStatus": ".models",
    "JobProcessor": ".processor",
    "MigrationProcessor": ".processor",
    "StoreConfig": ".config",
    "WorkerConfig": ".config",
    "WorkerError": ".errors",
}


def __getattr__(name: str) -> Any:
    """Lazy attribute access to avoid importing store drivers at startup."""
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module, __name__), name)
