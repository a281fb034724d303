"""Environment-resolved worker and store configuration."""

import re
from typing import Any, Literal

from pydantic import AliasChoices, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WORKER_ID = "worker1"
DEFAULT_POLLING_INTERVAL_MS = 15_000
DEFAULT_STALLED_JOB_TIMEOUT_MS = 60_000
DEFAULT_CIRCUIT_BREAKER_RESET_TIMEOUT_MS = 15_000
DEFAULT_RETRY_DELAY_MS = 15_000
DEFAULT_SHUTDOWN_GRACE_PERIOD_MS = 30_000

ENVIRONMENTS = ("development", "production", "test")
LOG_LEVELS = ("debug", "info", "warn", "error")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_millis(value: Any, default: int) -> int:
    """Parse a millisecond duration the lenient way.

    Accepts ints and strings with a leading integer (``"250ms"`` -> 250).
    Anything unparsable, zero or negative yields ``default``.
    """
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float):
        parsed = int(value)
    else:
        match = _LEADING_INT.match(str(value))
        if not match:
            return default
        parsed = int(match.group(1))
    return parsed if parsed > 0 else default


class WorkerConfig(BaseSettings):
    """Immutable per-process worker configuration.

    Every field has a default. Timing values are milliseconds and fall back
    to their defaults when missing or invalid, so a typo in a duration never
    aborts startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    worker_id: str = Field(
        default=DEFAULT_WORKER_ID,
        description="Identifier written onto claimed jobs",
    )

    polling_interval: int = Field(
        default=DEFAULT_POLLING_INTERVAL_MS,
        description="Milliseconds slept after every loop iteration",
    )

    stalled_job_timeout: int = Field(
        default=DEFAULT_STALLED_JOB_TIMEOUT_MS,
        description="Milliseconds without updated_at progress before a job counts as stalled; "
        "also the recovery scan period",
    )

    circuit_breaker_reset_timeout: int = Field(
        default=DEFAULT_CIRCUIT_BREAKER_RESET_TIMEOUT_MS,
        description="Milliseconds to back off after a circuit-breaker signal",
    )

    retry_delay: int = Field(
        default=DEFAULT_RETRY_DELAY_MS,
        description="Milliseconds to back off after an ordinary failure",
    )

    heartbeat_interval: int = Field(
        default=0,
        description="Milliseconds between updated_at heartbeats while a job runs (0 disables)",
    )

    shutdown_grace_period: int = Field(
        default=DEFAULT_SHUTDOWN_GRACE_PERIOD_MS,
        description="Milliseconds to wait for running activities after a shutdown signal",
    )

    job_processor: str | None = Field(
        default=None,
        description="Processor reference as 'package.module:attribute'",
    )

    environment: Literal["development", "production", "test"] = Field(
        default="development",
        description="Runtime environment",
    )

    log_level: Literal["debug", "info", "warn", "error"] | None = Field(
        default=None,
        description="Log threshold (defaults to debug outside production)",
    )

    @field_validator("worker_id", mode="before")
    @classmethod
    def default_blank_worker_id(cls, v: Any) -> Any:
        """An empty WORKER_ID means the default identity."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_WORKER_ID
        return v

    @field_validator(
        "polling_interval",
        "stalled_job_timeout",
        "circuit_breaker_reset_timeout",
        "retry_delay",
        "shutdown_grace_period",
        mode="before",
    )
    @classmethod
    def lenient_duration(cls, v: Any, info: ValidationInfo) -> int:
        """Fall back to the field default on invalid durations."""
        default = cls.model_fields[info.field_name].default
        return parse_millis(v, default)

    @field_validator("heartbeat_interval", mode="before")
    @classmethod
    def lenient_heartbeat(cls, v: Any) -> int:
        """Heartbeat stays disabled unless a positive value is given."""
        return parse_millis(v, 0)

    @field_validator("environment", mode="before")
    @classmethod
    def lenient_environment(cls, v: Any) -> str:
        """Unknown environments (e.g. 'staging') run with development defaults."""
        name = str(v).strip().lower() if v is not None else ""
        return name if name in ENVIRONMENTS else "development"

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Unknown levels fall back to the environment default."""
        if v is None:
            return None
        level = str(v).strip().lower()
        if level == "warning":
            return "warn"
        return level if level in LOG_LEVELS else None

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level
        return "info" if self.is_production else "debug"

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval / 1000

    @property
    def stalled_job_timeout_seconds(self) -> float:
        return self.stalled_job_timeout / 1000

    @property
    def circuit_breaker_reset_timeout_seconds(self) -> float:
        return self.circuit_breaker_reset_timeout / 1000

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay / 1000

    @property
    def heartbeat_interval_seconds(self) -> float:
        return self.heartbeat_interval / 1000

    @property
    def shutdown_grace_period_seconds(self) -> float:
        return self.shutdown_grace_period / 1000

    def summary(self) -> dict[str, Any]:
        """Configuration as logged at startup."""
        return {
            "id": self.worker_id,
            "pollingInterval": self.polling_interval,
            "stalledJobTimeout": self.stalled_job_timeout,
            "circuitBreakerResetTimeout": self.circuit_breaker_reset_timeout,
            "retryDelay": self.retry_delay,
            "heartbeatInterval": self.heartbeat_interval,
            "shutdownGracePeriod": self.shutdown_grace_period,
            "environment": self.environment,
        }


class StoreConfig(BaseSettings):
    """Backing store credentials.

    Either the Supabase pair (URL + service-role key) or a direct Postgres
    DSN must be set. Fails fast on startup otherwise.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    supabase_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("supabase_url", "next_public_supabase_url"),
        description="Supabase project URL",
    )

    supabase_service_role_key: str | None = Field(
        default=None,
        description="Supabase service role key (server-only)",
    )

    database_url: str | None = Field(
        default=None,
        description="PostgreSQL connection string, used instead of the Supabase REST API",
    )

    jobs_table: str = Field(
        default="import_jobs",
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description="Table holding job records",
    )

    request_timeout: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Timeout in seconds for store requests",
    )

    @field_validator("supabase_url", "supabase_service_role_key", "database_url", mode="before")
    @classmethod
    def blank_as_missing(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def require_credentials(self) -> "StoreConfig":
        """Ensure one complete set of store credentials is present."""
        if self.database_url:
            return self
        if self.supabase_url and self.supabase_service_role_key:
            return self
        raise ValueError(
            "Missing store credentials: set NEXT_PUBLIC_SUPABASE_URL and "
            "SUPABASE_SERVICE_ROLE_KEY, or DATABASE_URL"
        )

    @property
    def backend(self) -> Literal["supabase", "postgres"]:
        """Backend selected from the credentials (Supabase wins when both are set)."""
        if self.supabase_url and self.supabase_service_role_key:
            return "supabase"
        return "postgres"

    def credentials_summary(self) -> dict[str, bool]:
        """Which credentials are present, without leaking them."""
        return {
            "hasUrl": bool(self.supabase_url),
            "hasKey": bool(self.supabase_service_role_key),
            "hasDatabaseUrl": bool(self.database_url),
        }
