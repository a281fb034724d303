"""Example processor demonstrating an idempotent import.

Run with:
    DATABASE_URL=postgresql://... import-worker --processor=examples.example_processor:CsvImportProcessor
"""

import asyncio

from import_worker import Job, MigrationProcessor
from import_worker.logger import logger


class CsvImportProcessor(MigrationProcessor):
    """Example: import rows listed on the job (idempotent).

    Expected job columns:
        {
            "source": "uploads/contacts.csv",
            "rows": [...]
        }
    """

    async def transform(self, job: Job) -> None:
        """Import each row."""
        payload = job.payload

        source = payload.get("source")
        if not source:
            raise ValueError("Missing required field: source")

        rows = payload.get("rows") or []
        job_logger = logger.child({"job_id": job.id})
        job_logger.info(f"Importing {len(rows)} rows from {source}")

        for i, _row in enumerate(rows):
            # Upsert keyed on (job.id, i) so a recovered job does not duplicate rows
            job_logger.debug(f"Importing row {i + 1}/{len(rows)}")
            await asyncio.sleep(0.1)  # Simulate work

        job_logger.info(f"Imported {len(rows)} rows from {source}")
