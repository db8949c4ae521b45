"""
Sale billing.

Entry point used by sale flows (appointment payments, product sales, gift
cards...) when a sale completes. Billing never fails the sale: when the
voucher cannot be authorized the sale is stored as a pending invoice for the
retry queue and a warning is returned instead.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from functools import partial
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.fiscal_invoice import FiscalInvoice
from app.services.fiscal_config import FiscalConfig, resolve_fiscal_config
from app.services.fiscal_errors import (
    AmbiguousOutcome,
    ConfigurationError,
    FiscalError,
    InvalidEmissionRequest,
    IssuedNotRecordedError,
)
from app.services.fiscal_invoice_repository import FiscalInvoiceRepository
from app.services.invoice_document_service import InvoiceDocumentRenderer
from app.services.invoice_emitter import InvoiceEmitter
from app.services.retry_payload import (
    InvoiceAdjustment,
    InvoiceCustomer,
    InvoiceLine,
    build_retry_payload,
)


logger = logging.getLogger(__name__)


@dataclass
class BillingOutcome:
    """What happened to the sale's invoice."""
    invoice: Optional[FiscalInvoice] = None
    warning: Optional[str] = None

    @property
    def issued(self) -> bool:
        return self.invoice is not None and self.invoice.voucher_number is not None

    @property
    def pending(self) -> bool:
        return self.invoice is not None and self.invoice.voucher_number is None


class FiscalBillingService:
    """Bills completed sales for one tenant."""

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: uuid.UUID,
        config: FiscalConfig = None,
        emitter: InvoiceEmitter = None,
        repository: FiscalInvoiceRepository = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.config = config or resolve_fiscal_config()
        self.emitter = emitter or InvoiceEmitter(self.config, renderer=InvoiceDocumentRenderer())
        self.repository = repository or FiscalInvoiceRepository(db)
        self.retry_interval = timedelta(minutes=settings.FISCAL_RETRY_INTERVAL_MINUTES)

    async def bill_sale(
        self,
        customer: InvoiceCustomer,
        items: List[InvoiceLine],
        total: Decimal,
        payment_method: str,
        deposit_discount: Optional[Decimal] = None,
        adjustments: Optional[List[InvoiceAdjustment]] = None,
        fiscal_date: Optional[date] = None,
        origin_kind: Optional[str] = None,
        origin_id: Optional[str] = None,
        customer_id: uuid.UUID = None,
        created_by: uuid.UUID = None,
        created_by_username: Optional[str] = None,
    ) -> BillingOutcome:
        """
        Authorize the sale's invoice, or queue it for retry.

        Returns:
            BillingOutcome with the stored invoice (issued or pending) and an
            optional warning for the operator
        """
        if not self.config.enabled:
            return BillingOutcome(warning="Fiscal billing is disabled, no invoice was issued")

        payload = build_retry_payload(
            customer=customer,
            items=items,
            total=total,
            payment_method=payment_method,
            deposit_discount=deposit_discount,
            adjustments=adjustments,
            fiscal_date=fiscal_date or self.config.today(),
        )
        if payload.total <= 0:
            return BillingOutcome(warning="Nothing to invoice: the sale total is zero")

        suggested = None
        if self.config.point_of_sale and self.config.voucher_type:
            suggested = await self.repository.suggest_next_number(
                self.tenant_id, self.config.point_of_sale, self.config.voucher_type
            )

        ambiguous_number = None
        try:
            result = await self.emitter.emit(
                customer=payload.customer,
                items=payload.items,
                total=payload.total,
                payment_method=payload.payment_method,
                deposit_discount=payload.deposit_discount,
                adjustments=payload.adjustments,
                fiscal_date=fiscal_date,
                suggested_number=suggested,
                voucher_recorded=partial(self.repository.voucher_exists, self.tenant_id),
            )
        except AmbiguousOutcome as e:
            error_message = e.message
            ambiguous_number = e.voucher_number
        except InvalidEmissionRequest as e:
            return BillingOutcome(warning=f"Invoice not issued: {e.message}")
        except ConfigurationError as e:
            logger.error(f"Fiscal configuration error, queuing sale for later: {e.message}")
            error_message = e.message
        except FiscalError as e:
            error_message = e.message
        else:
            try:
                invoice = await self.repository.record_issued(
                    self.tenant_id,
                    result,
                    origin_kind=origin_kind,
                    origin_id=origin_id,
                    customer_id=customer_id,
                    created_by=created_by,
                    created_by_username=created_by_username,
                )
                return BillingOutcome(invoice=invoice)
            except IssuedNotRecordedError as e:
                error_message = e.message
                ambiguous_number = e.voucher_number

        return await self._record_pending(
            payload,
            error_message,
            ambiguous_number=ambiguous_number,
            origin_kind=origin_kind,
            origin_id=origin_id,
            customer_id=customer_id,
            created_by=created_by,
            created_by_username=created_by_username,
        )

    async def _record_pending(self, payload, error_message: str, ambiguous_number: Optional[int], **kwargs) -> BillingOutcome:
        logger.warning(f"Invoice for tenant {self.tenant_id} queued for retry: {error_message}")
        try:
            invoice = await self.repository.record_pending(
                self.tenant_id,
                payload,
                error_message,
                retry_interval=self.retry_interval,
                ambiguous_voucher_number=ambiguous_number,
                **kwargs,
            )
        except SQLAlchemyError as e:
            logger.critical(f"Could not store pending invoice for tenant {self.tenant_id}: {e}")
            return BillingOutcome(
                warning=f"{error_message}. The pending invoice could not be stored for retry: {e}"
            )
        return BillingOutcome(
            invoice=invoice,
            warning=f"Invoice pending, it will be retried automatically: {error_message}",
        )
