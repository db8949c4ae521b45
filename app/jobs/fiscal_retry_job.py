"""
Fiscal Retry Job

Background sweep of the pending invoice queue. Runs every
FISCAL_RETRY_INTERVAL_MINUTES when the in-process scheduler is enabled;
deployments with an external scheduler call the retry endpoint instead.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from app.database import get_db_session
from app.services.fiscal_errors import ConfigurationError
from app.services.fiscal_retry_service import run_scheduled_retry_sweep

logger = logging.getLogger(__name__)


async def retry_pending_invoices() -> Dict[str, Any]:
    """
    Retry due pending invoices across all tenants.

    Returns:
        The batch counters, or an error entry when fiscal settings are
        incomplete (no invoice is touched in that case)
    """
    logger.info("Starting fiscal retry sweep...")
    start_time = datetime.now(timezone.utc)

    try:
        async with get_db_session() as session:
            result = await run_scheduled_retry_sweep(session)
    except ConfigurationError as e:
        logger.error(f"Fiscal retry sweep skipped, configuration error: {e.message}")
        return {"error": e.message, "error_code": e.error_code}

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Fiscal retry sweep completed in {duration:.2f}s: "
        f"processed={result['processed']} issued={result['issued']} "
        f"failed={result['failed']} invalid={result['invalid']} pending={result['pending']}"
    )
    return result
