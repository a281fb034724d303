"""Supabase (PostgREST) job store."""

from datetime import UTC, datetime
from typing import Any

import httpx

from ..errors import WorkerError
from ..models import Job, JobStatus
from .base import JobStore


class SupabaseJobStore(JobStore):
    """Job store backed by the Supabase REST API.

    Server-only: authenticates with the service-role key. Pending jobs are
    claimed through the ``claim_next_pending_job`` Postgres function (see
    ``sql/claim_next_pending_job.sql``), which locks with SKIP LOCKED.
    Stalled jobs are re-claimed with a conditional PATCH that only matches
    while ``updated_at`` still holds the value observed by the scan, so two
    workers racing on the same stalled job cannot both win it.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        *,
        table: str = "import_jobs",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Supabase store.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service role key (server-only!)
            table: Jobs table name
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.supabase_url = supabase_url.rstrip("/")
        self.table = table
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=f"{self.supabase_url}/rest/v1",
            headers={
                "apikey": supabase_key,
                "Authorization": f"Bearer {supabase_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()

    @staticmethod
    def _raise_for_error(response: httpx.Response, message: str) -> None:
        if response.status_code < 400:
            return
        try:
            original: Any = response.json()
        except ValueError:
            original = response.text
        raise WorkerError.supabase(f"{message}: {response.status_code}", original)

    async def _rpc(self, function: str, params: dict[str, Any]) -> Any:
        """Call Supabase RPC function."""
        response = await self._client.post(f"/rpc/{function}", json=params)
        self._raise_for_error(response, f"RPC call {function} failed")
        if not response.content:
            return None
        return response.json()

    async def _patch(
        self, filters: dict[str, str], values: dict[str, Any], message: str
    ) -> list[dict[str, Any]]:
        response = await self._client.patch(
            f"/{self.table}",
            params=filters,
            json=values,
            headers={"Prefer": "return=representation"},
        )
        self._raise_for_error(response, message)
        return response.json() if response.content else []

    async def claim_next_pending_job(self, worker_id: str) -> Job | None:
        data = await self._rpc("claim_next_pending_job", {"worker_id_input": worker_id})
        if not data:
            return None
        row = data[0] if isinstance(data, list) else data
        return Job.model_validate(row)

    async def find_stalled_jobs(self, stalled_before: datetime, limit: int = 1) -> list[Job]:
        response = await self._client.get(
            f"/{self.table}",
            params={
                "select": "*",
                "status": f"eq.{JobStatus.PROCESSING.value}",
                "updated_at": f"lt.{stalled_before.isoformat()}",
                "order": "created_at.asc",
                "limit": str(limit),
            },
        )
        self._raise_for_error(response, "Failed to fetch stalled jobs")
        return [Job.model_validate(row) for row in response.json() or []]

    async def claim_stalled_job(self, worker_id: str, stalled_before: datetime) -> Job | None:
        candidates = await self.find_stalled_jobs(stalled_before, limit=1)
        if not candidates:
            return None

        candidate = candidates[0]
        rows = await self._patch(
            {
                "id": f"eq.{candidate.id}",
                "status": f"eq.{JobStatus.PROCESSING.value}",
                "updated_at": f"eq.{candidate.updated_at.isoformat()}",
            },
            {"worker_id": worker_id, "updated_at": datetime.now(UTC).isoformat()},
            "Failed to claim stalled job",
        )
        # Empty when another worker touched or re-claimed the job first
        if not rows:
            return None
        return Job.model_validate(rows[0])

    async def update_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        values: dict[str, Any] = {
            "status": status.value,
            "updated_at": datetime.now(UTC).isoformat(),
        }
        if error is not None:
            values["error"] = error
        await self._patch({"id": f"eq.{job_id}"}, values, "Failed to update job status")

    async def touch_job(self, job_id: str, worker_id: str) -> None:
        await self._patch(
            {"id": f"eq.{job_id}", "worker_id": f"eq.{worker_id}"},
            {"updated_at": datetime.now(UTC).isoformat()},
            "Failed to touch job",
        )

    async def health_check(self) -> bool:
        """Check API and table reachability."""
        try:
            response = await self._client.get(
                f"/{self.table}", params={"select": "id", "limit": "1"}, timeout=5
            )
            return response.status_code < 400
        except httpx.HTTPError:
            return False
