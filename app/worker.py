"""
Background worker for processing scheduled jobs.

Usage:
    python -m app.worker

The worker polls for pending jobs (channel syncs, deferred webhook ingests,
outbound sends) and processes them.
For production, run this as a separate process (e.g., systemd service, Docker container).
"""

import asyncio
import logging
import os

from app.core.config import settings
from app.core.structured_logging import build_log_context
from app.db.session import SessionLocal
from app.jobs.registry import resolve_job_handler
from app.services import job_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Worker configuration
POLL_INTERVAL_SECONDS = int(os.getenv("WORKER_POLL_INTERVAL", "10"))
BATCH_SIZE = int(os.getenv("WORKER_BATCH_SIZE", "10"))


def _init_sentry() -> None:
    if not settings.SENTRY_DSN or settings.ENV == "dev":
        return
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        release=settings.VERSION,
        traces_sample_rate=0.0,
        send_default_pii=False,
    )


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info("Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts)
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_pending_jobs(db, limit: int = BATCH_SIZE) -> int:
    """Run one batch of pending jobs. Returns the number processed."""
    jobs = job_service.get_pending_jobs(db, limit=limit)
    if jobs:
        logger.info("Found %s pending jobs", len(jobs))

    for job in jobs:
        try:
            job_service.mark_job_running(db, job)
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            logger.info("Job %s completed successfully", job.id)
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, str(e))
            logger.error(
                "Job %s failed: %s",
                job.id,
                type(e).__name__,
                extra=build_log_context(
                    org_id=job.organization_id,
                    channel_id=(job.payload or {}).get("channel_id"),
                    job_id=job.id,
                    job_type=job.job_type,
                ),
            )
    return len(jobs)


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        POLL_INTERVAL_SECONDS,
        BATCH_SIZE,
    )

    while True:
        with SessionLocal() as db:
            try:
                await run_pending_jobs(db)
            except Exception as e:
                logger.error("Error in worker loop: %s", type(e).__name__)

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    _init_sentry()
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
