"""
APScheduler Configuration

In-process scheduler for the fiscal retry sweep. Only one instance of the
sweep runs at a time, and missed runs are coalesced into one.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.FISCAL_TIMEZONE
)


async def run_fiscal_retry_job():
    """Called by APScheduler; a failed sweep is logged and retried on the next tick."""
    from app.jobs.fiscal_retry_job import retry_pending_invoices

    try:
        await retry_pending_invoices()
    except Exception as e:
        logger.error(f"Job 'fiscal_retry_sweep' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        # Retry pending fiscal invoices
        scheduler.add_job(
            run_fiscal_retry_job,
            'interval',
            minutes=settings.FISCAL_RETRY_INTERVAL_MINUTES,
            id='fiscal_retry_sweep',
            name='Retry Pending Fiscal Invoices',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
