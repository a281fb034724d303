"""Import worker CLI."""

import asyncio
import os
import sys
import traceback

from .logger import configure as configure_logging
from .logger import logger

EXIT_CODES = {"success": 0, "failure": 1}
DEBUG_ENABLED = os.getenv("DEBUG", "").lower() in {"1", "true"}


def show_help() -> None:
    """Print CLI help."""
    print(
        """
Import Worker CLI

Usage:
  import-worker [options]
  python -m import_worker [options]

Options:
  --once                       Run one claim cycle and one stalled-job scan, then exit
  --processor=<module:attr>    Job processor to use (overrides JOB_PROCESSOR)
  --help, -h                   Show this help and exit

Environment:
  NEXT_PUBLIC_SUPABASE_URL       Supabase project URL (or SUPABASE_URL)
  SUPABASE_SERVICE_ROLE_KEY      Supabase service role key
  DATABASE_URL                   Direct Postgres DSN (alternative to Supabase)
  JOBS_TABLE                     Job table (default: import_jobs)
  WORKER_ID                      Worker ID (default: worker1)
  POLLING_INTERVAL               Poll interval in ms (default: 15000)
  STALLED_JOB_TIMEOUT            Stalled job timeout and scan period in ms (default: 60000)
  CIRCUIT_BREAKER_RESET_TIMEOUT  Circuit breaker backoff in ms (default: 15000)
  RETRY_DELAY                    Backoff after failures in ms (default: 15000)
  HEARTBEAT_INTERVAL             Job heartbeat in ms, 0 disables (default: 0)
  SHUTDOWN_GRACE_PERIOD          Shutdown grace period in ms (default: 30000)
  JOB_PROCESSOR                  Job processor as module:attr
  LOG_LEVEL                      debug, info, warn or error

Examples:
  SUPABASE_URL=... SUPABASE_SERVICE_ROLE_KEY=... import-worker --processor=myapp.jobs:ImportProcessor
  DATABASE_URL=postgresql://... import-worker --once
"""
    )


def log_unexpected_error(message: str, error: BaseException) -> None:
    """Log an unexpected error with optional stack trace."""
    logger.error(message, {"error": str(error), "type": type(error).__name__})
    if DEBUG_ENABLED:
        logger.error("Stack trace", {"trace": "".join(traceback.format_exception(error))})


def main(argv: list[str] | None = None) -> None:
    """Main CLI entrypoint."""
    try:
        args = sys.argv[1:] if argv is None else argv
        if "--help" in args or "-h" in args:
            show_help()
            sys.exit(EXIT_CODES["success"])

        from pydantic import ValidationError

        from .config import StoreConfig, WorkerConfig
        from .processor import load_processor
        from .store import create_store
        from .worker import run_once, serve

        mode = "once" if "--once" in args else "loop"
        processor_ref: str | None = None
        for arg in args:
            if arg.startswith("--processor="):
                processor_ref = arg.split("=", 1)[1]

        # Load settings
        try:
            config = WorkerConfig()
            store_config = StoreConfig()
        except ValidationError as e:
            logger.error("Configuration error", {"errors": str(e)})
            sys.exit(EXIT_CODES["failure"])

        configure_logging(config.effective_log_level)

        processor_ref = processor_ref or config.job_processor
        if not processor_ref:
            logger.error(
                "Configuration error", {"errors": "No job processor configured (JOB_PROCESSOR)"}
            )
            sys.exit(EXIT_CODES["failure"])

        store = create_store(store_config)
        try:
            processor = load_processor(processor_ref, store, config)
        except (ImportError, AttributeError, ValueError) as e:
            logger.error("Invalid job processor", {"processor": processor_ref, "error": str(e)})
            sys.exit(EXIT_CODES["failure"])

        logger.info(
            "Worker initialized",
            {
                "worker_id": config.worker_id,
                "mode": mode,
                "backend": store_config.backend,
                "processor": processor.name,
            },
        )

        if mode == "once":
            exit_code = asyncio.run(run_once(config, store, processor))
        else:
            exit_code = asyncio.run(serve(config, store, processor))
        sys.exit(exit_code)

    except KeyboardInterrupt:
        logger.info("Worker interrupted")
        sys.exit(EXIT_CODES["success"])
    except Exception as e:
        log_unexpected_error("Worker crashed", e)
        sys.exit(EXIT_CODES["failure"])


if __name__ == "__main__":
    main()
