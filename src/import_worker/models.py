"""Pydantic models for import jobs."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class JobStatus(str, Enum):
    """Job status enum."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(BaseModel):
    """Job row from the jobs table.

    Only the columns the worker relies on are declared. Any other column
    (source file, mapping, counters, error...) is kept as an extra field and
    exposed through :attr:`payload`.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    worker_id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        # Tables may key on uuid or bigint
        if v is not None and not isinstance(v, str):
            return str(v)
        return v

    @property
    def payload(self) -> dict[str, Any]:
        """Job-specific columns, opaque to the worker."""
        return dict(self.model_extra or {})

    def log_context(self) -> dict[str, Any]:
        return {"job_id": self.id, "job_status": self.status.value}
