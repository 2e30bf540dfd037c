"""
Background worker for processing scheduled jobs.

Usage:
    python -m eventcrm.worker

The worker polls for pending jobs and processes them.
For production, run this as a separate process (e.g., systemd service, Docker container).
"""

import asyncio
import logging

from eventcrm.core.config import settings
from eventcrm.core.structured_logging import build_log_context
from eventcrm.db.session import SessionLocal
from eventcrm.jobs.registry import resolve_job_handler
from eventcrm.services import job_service

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_pending_jobs(db, limit: int = BATCH_SIZE) -> int:
    """Claim and run due jobs one at a time, up to ``limit``. Returns how many ran."""
    processed = 0
    while processed < limit:
        job = job_service.claim_next_job(db)
        if job is None:
            break
        processed += 1
        try:
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            logger.info("Job %s completed successfully", job.id)
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, str(e) or type(e).__name__)
            logger.error(
                "Job %s failed: %s",
                job.id,
                type(e).__name__,
                extra=build_log_context(job_id=str(job.id), route="worker"),
            )
    return processed


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
            except Exception:
                logger.exception("Error in worker loop")

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
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
