"""
Background Jobs Module

Handles scheduled tasks for:
- Fiscal invoice retries (pending invoice queue)
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from app.jobs.fiscal_retry_job import retry_pending_invoices

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "retry_pending_invoices",
]
