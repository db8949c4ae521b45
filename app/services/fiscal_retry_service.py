"""
Pending invoice retry queue.

Owns the lifecycle of invoices that could not be authorized when the sale
completed:

    pending --(authorized)--> issued
    pending --(failure)-----> pending   attempts + 1, next retry = now + interval

Issued, credited and voided invoices never re-enter the queue. The scheduled
sweep and operator retries share one per-row routine, and every row is
claimed before emission so concurrent callers cannot both authorize it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from app.config import settings
from app.models.fiscal_invoice import FiscalInvoice, FiscalInvoiceStatus
from app.services.fiscal_config import FiscalConfig, resolve_fiscal_config
from app.services.fiscal_errors import (
    AmbiguousOutcome,
    ClaimLostError,
    FiscalError,
    InvoiceNotFound,
    IssuedNotRecordedError,
)
from app.services.fiscal_invoice_repository import FiscalInvoiceRepository
from app.services.invoice_document_service import InvoiceDocumentRenderer
from app.services.invoice_emitter import InvoiceEmitter
from app.services.retry_payload import decode_retry_payload, rebuild_retry_payload


logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 5


class RowOutcome(str, Enum):
    ISSUED = "issued"
    FAILED = "failed"
    INVALID = "invalid"
    SKIPPED = "skipped"  # Already issued or claimed by another caller


@dataclass
class RowResult:
    invoice_id: uuid.UUID
    outcome: RowOutcome
    error: Optional[str] = None
    voucher_number: Optional[int] = None


@dataclass
class RetryBatchReport:
    """Counters for one sweep. processed = issued + failed + invalid."""
    interval_minutes: int
    results: List[RowResult] = field(default_factory=list)
    pending: int = 0
    overdue: int = 0

    def _count(self, outcome: RowOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def issued(self) -> int:
        return self._count(RowOutcome.ISSUED)

    @property
    def failed(self) -> int:
        return self._count(RowOutcome.FAILED)

    @property
    def invalid(self) -> int:
        return self._count(RowOutcome.INVALID)

    @property
    def skipped(self) -> int:
        return self._count(RowOutcome.SKIPPED)

    @property
    def processed(self) -> int:
        return self.issued + self.failed + self.invalid

    @property
    def errors(self) -> List[str]:
        messages = [f"{r.invoice_id}: {r.error}" for r in self.results if r.error]
        return messages[-MAX_REPORTED_ERRORS:]

    @property
    def last_error(self) -> Optional[str]:
        errors = [r.error for r in self.results if r.error]
        return errors[-1] if errors else None

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "issued": self.issued,
            "failed": self.failed,
            "invalid": self.invalid,
            "skipped": self.skipped,
            "last_error": self.last_error,
            "errors": self.errors,
            "pending": self.pending,
            "overdue": self.overdue,
            "interval_minutes": self.interval_minutes,
        }


def _default_emitter_factory(config: FiscalConfig) -> InvoiceEmitter:
    return InvoiceEmitter(config, renderer=InvoiceDocumentRenderer())


class RetryQueueManager:
    """Re-emits due pending invoices."""

    def __init__(
        self,
        repository: FiscalInvoiceRepository,
        config: FiscalConfig = None,
        emitter_factory: Callable[[FiscalConfig], InvoiceEmitter] = None,
        retry_interval_minutes: int = None,
        claim_lease_seconds: int = None,
        default_batch_size: int = None,
        max_batch_size: int = None,
    ):
        self.repository = repository
        self.config = config or resolve_fiscal_config()
        self.emitter_factory = emitter_factory or _default_emitter_factory
        self.retry_interval_minutes = retry_interval_minutes or settings.FISCAL_RETRY_INTERVAL_MINUTES
        self.retry_interval = timedelta(minutes=self.retry_interval_minutes)
        self.claim_lease = timedelta(seconds=claim_lease_seconds or settings.FISCAL_CLAIM_LEASE_SECONDS)
        self.default_batch_size = default_batch_size or settings.FISCAL_RETRY_BATCH_SIZE
        self.max_batch_size = max_batch_size or settings.FISCAL_RETRY_MAX_BATCH_SIZE

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit or limit <= 0:
            return self.default_batch_size
        return min(limit, self.max_batch_size)

    async def status(self, tenant_id: uuid.UUID = None) -> dict:
        """Queue counters without processing anything."""
        summary = await self.repository.pending_summary(tenant_id)
        return {
            "pending": summary["pending"],
            "overdue": summary["overdue"],
            "interval_minutes": self.retry_interval_minutes,
        }

    async def run_sweep(self, limit: int = None) -> RetryBatchReport:
        """Scheduled sweep: due pending invoices across all tenants, oldest first."""
        self.config.validate_for_emission()
        rows = await self.repository.list_pending(due_only=True, limit=self.clamp_limit(limit))
        return await self._process_batch(rows, tenant_id=None)

    async def run_manual(
        self,
        tenant_id: uuid.UUID,
        invoice_id: uuid.UUID = None,
        force: bool = False,
        limit: int = None,
    ) -> RetryBatchReport:
        """
        Operator retry for one tenant.

        Args:
            tenant_id: Operator's tenant
            invoice_id: Retry only this invoice, ignoring its due time
            force: Ignore due times for the whole tenant queue

        Raises:
            ConfigurationError: fiscal settings incomplete, nothing was touched
            InvoiceNotFound: invoice_id unknown for this tenant
        """
        self.config.validate_for_emission()

        if invoice_id is not None:
            invoice = await self.repository.get(invoice_id, tenant_id=tenant_id)
            if invoice is None:
                raise InvoiceNotFound(
                    f"Invoice {invoice_id} not found", error_code="INVOICE_NOT_FOUND"
                )
            if invoice.status != FiscalInvoiceStatus.PENDING.value:
                report = RetryBatchReport(interval_minutes=self.retry_interval_minutes)
                report.results.append(RowResult(invoice_id=invoice.id, outcome=RowOutcome.SKIPPED))
                return await self._with_summary(report, tenant_id)

        rows = await self.repository.list_pending(
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            due_only=not force,
            limit=self.clamp_limit(limit),
        )
        return await self._process_batch(rows, tenant_id=tenant_id)

    async def _with_summary(self, report: RetryBatchReport, tenant_id: Optional[uuid.UUID]) -> RetryBatchReport:
        summary = await self.repository.pending_summary(tenant_id)
        report.pending = summary["pending"]
        report.overdue = summary["overdue"]
        return report

    async def _process_batch(
        self,
        rows: List[FiscalInvoice],
        tenant_id: Optional[uuid.UUID],
    ) -> RetryBatchReport:
        report = RetryBatchReport(interval_minutes=self.retry_interval_minutes)
        suggestions: Dict[Tuple[uuid.UUID, int, int], Optional[int]] = {}

        # A rollback expires every loaded row, so the batch works from ids
        invoice_ids = [row.id for row in rows]
        for invoice_id in invoice_ids:
            result = await self._process_row(invoice_id, suggestions)
            report.results.append(result)

        if report.results:
            logger.info(
                f"Fiscal retry batch: processed={report.processed} issued={report.issued} "
                f"failed={report.failed} invalid={report.invalid} skipped={report.skipped}"
            )
        return await self._with_summary(report, tenant_id)

    async def _suggested_number(
        self,
        tenant_id: uuid.UUID,
        suggestions: Dict[Tuple[uuid.UUID, int, int], Optional[int]],
    ) -> Optional[int]:
        key = (tenant_id, int(self.config.point_of_sale), int(self.config.voucher_type))
        if key not in suggestions:
            suggestions[key] = await self.repository.suggest_next_number(*key)
        return suggestions[key]

    async def _fail(
        self,
        invoice_id: uuid.UUID,
        token: str,
        outcome: RowOutcome,
        message: str,
        **kwargs,
    ) -> RowResult:
        await self.repository.mark_failed(invoice_id, token, message, self.retry_interval, **kwargs)
        return RowResult(invoice_id=invoice_id, outcome=outcome, error=message)

    async def _process_row(
        self,
        invoice_id: uuid.UUID,
        suggestions: Dict[Tuple[uuid.UUID, int, int], Optional[int]],
    ) -> RowResult:
        """Claim, emit and record one pending invoice. Never raises."""
        token = await self.repository.claim(invoice_id, self.claim_lease)
        if token is None:
            logger.info(f"Pending invoice {invoice_id} is issued or claimed elsewhere, skipping")
            return RowResult(invoice_id=invoice_id, outcome=RowOutcome.SKIPPED)

        async def renew_claim(number: int) -> None:
            if not await self.repository.renew_claim(invoice_id, token, self.claim_lease):
                raise ClaimLostError(
                    f"Claim on pending invoice {invoice_id} expired before submitting voucher {number}",
                    error_code="CLAIM_LOST",
                )

        try:
            row = await self.repository.get(invoice_id)
            # Plain copies: a rollback further down expires the instance
            tenant_id = row.tenant_id
            attempt = (row.retry_attempts or 0) + 1
            ambiguous_number = row.ambiguous_voucher_number
            payload = decode_retry_payload(row.retry_payload)
            if payload is None:
                payload = rebuild_retry_payload(row)
                if payload is None:
                    return await self._fail(
                        invoice_id, token, RowOutcome.INVALID,
                        "Retry payload is invalid and cannot be rebuilt: the invoice total must be positive",
                    )
                await self.repository.update_payload(invoice_id, token, payload)
                logger.info(f"Rebuilt retry payload for pending invoice {invoice_id}")

            suggested = await self._suggested_number(tenant_id, suggestions)
            emitter = self.emitter_factory(self.config)
            try:
                result = await emitter.emit(
                    customer=payload.customer,
                    items=payload.items,
                    total=payload.total,
                    payment_method=payload.payment_method,
                    deposit_discount=payload.deposit_discount,
                    adjustments=payload.adjustments,
                    suggested_number=suggested,
                    recover_voucher_number=ambiguous_number,
                    voucher_recorded=partial(self.repository.voucher_exists, tenant_id),
                    before_submit=renew_claim,
                )
            except ClaimLostError as e:
                logger.warning(e.message)
                return RowResult(invoice_id=invoice_id, outcome=RowOutcome.SKIPPED, error=e.message)
            except AmbiguousOutcome as e:
                logger.warning(f"Pending invoice {invoice_id}: voucher {e.voucher_number} outcome unknown")
                return await self._fail(
                    invoice_id, token, RowOutcome.FAILED, e.message,
                    ambiguous_voucher_number=e.voucher_number,
                )
            except FiscalError as e:
                logger.warning(f"Pending invoice {invoice_id} failed attempt {attempt}: {e.message}")
                return await self._fail(invoice_id, token, RowOutcome.FAILED, e.message)

            issued = result.invoice
            try:
                await self.repository.mark_issued(invoice_id, token, result, tenant_id)
            except IssuedNotRecordedError as e:
                # Next attempt looks this number up instead of authorizing again
                return await self._fail(
                    invoice_id, token, RowOutcome.FAILED, e.message,
                    ambiguous_voucher_number=issued.voucher_number,
                )

            key = (tenant_id, issued.point_of_sale, issued.voucher_type)
            suggestions[key] = max(suggestions.get(key) or 0, issued.voucher_number + 1)
            logger.info(f"Pending invoice {invoice_id} issued as {issued.formatted_number}")
            return RowResult(
                invoice_id=invoice_id,
                outcome=RowOutcome.ISSUED,
                voucher_number=issued.voucher_number,
            )

        except Exception as e:
            logger.exception(f"Unexpected error retrying pending invoice {invoice_id}")
            message = f"Unexpected error: {e}"
            try:
                await self.repository.mark_failed(invoice_id, token, message, self.retry_interval)
            except Exception:
                logger.exception(f"Could not record failure for pending invoice {invoice_id}")
            return RowResult(invoice_id=invoice_id, outcome=RowOutcome.FAILED, error=message)


async def run_scheduled_retry_sweep(db, limit: int = None) -> dict:
    """Entry point for the scheduler and the cron endpoint."""
    manager = RetryQueueManager(FiscalInvoiceRepository(db))
    report = await manager.run_sweep(limit=limit)
    return report.as_dict()
