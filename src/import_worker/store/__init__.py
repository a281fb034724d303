"""Job store backends."""

from ..config import StoreConfig
from .base import JobStore
from .memory import MemoryJobStore
from .postgres import PostgresJobStore
from .supabase import SupabaseJobStore

__all__ = [
    "JobStore",
    "MemoryJobStore",
    "PostgresJobStore",
    "SupabaseJobStore",
    "create_store",
]


def create_store(config: StoreConfig) -> JobStore:
    """Build the store selected by the configured credentials."""
    if config.backend == "supabase":
        return SupabaseJobStore(
            config.supabase_url,  # type: ignore[arg-type]
            config.supabase_service_role_key,  # type: ignore[arg-type]
            table=config.jobs_table,
            timeout=config.request_timeout,
        )
    return PostgresJobStore(
        config.database_url,  # type: ignore[arg-type]
        table=config.jobs_table,
        timeout=config.request_timeout,
    )
