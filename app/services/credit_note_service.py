"""
Credit notes.

Cancels an issued invoice, fully or partially, by authorizing a credit note
(voucher type 3/8/13 for invoices A/B/C) that references it. The credit note
is numbered in its own stream through the same emission engine.
"""

import logging
import uuid
from decimal import Decimal
from functools import partial
from typing import List, Optional, Tuple

from app.models.fiscal_invoice import (
    CREDIT_NOTE_VOUCHER_TYPES,
    FiscalInvoice,
    FiscalInvoiceKind,
    FiscalInvoiceStatus,
    InvoiceLineKind,
)
from app.services.fiscal_config import FiscalConfig, resolve_fiscal_config
from app.services.fiscal_errors import InvoiceNotFound, InvoiceStateConflict
from app.services.fiscal_invoice_repository import FiscalInvoiceRepository
from app.services.invoice_document_service import InvoiceDocumentRenderer
from app.services.invoice_emitter import AssociatedVoucher, InvoiceEmitter
from app.services.retry_payload import (
    InvoiceAdjustment,
    InvoiceCustomer,
    InvoiceLine,
    round_money,
)


logger = logging.getLogger(__name__)


def credit_note_lines(
    invoice: FiscalInvoice,
    amount: Decimal,
    reason: Optional[str] = None,
) -> Tuple[List[InvoiceLine], List[InvoiceAdjustment]]:
    """
    Lines for a credit note.

    A full credit repeats the invoice lines; a partial credit is a single
    line for the credited amount.
    """
    if amount == round_money(invoice.total):
        items: List[InvoiceLine] = []
        adjustments: List[InvoiceAdjustment] = []
        for raw in invoice.items or []:
            line = InvoiceLine.model_validate(raw)
            if line.subtotal < 0:
                adjustments.append(InvoiceAdjustment(description=line.description, amount=-line.subtotal))
            elif line.subtotal > 0 and line.kind != InvoiceLineKind.ADJUSTMENT:
                items.append(line)
        if items:
            return items, adjustments

    description = f"Nota de crédito {invoice.formatted_number}"
    if reason:
        description = f"{description} - {reason.strip()}"
    line = InvoiceLine(
        kind=InvoiceLineKind.SERVICE,
        description=description,
        quantity=Decimal("1"),
        unit_price=amount,
        subtotal=amount,
    )
    return [line], []


class CreditNoteService:
    """Issues credit notes for one tenant."""

    def __init__(
        self,
        repository: FiscalInvoiceRepository,
        tenant_id: uuid.UUID,
        config: FiscalConfig = None,
        emitter: InvoiceEmitter = None,
    ):
        self.repository = repository
        self.tenant_id = tenant_id
        self.config = config or resolve_fiscal_config()
        self.emitter = emitter or InvoiceEmitter(self.config, renderer=InvoiceDocumentRenderer())

    async def issue(
        self,
        invoice_id: uuid.UUID,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        created_by: uuid.UUID = None,
        created_by_username: Optional[str] = None,
    ) -> FiscalInvoice:
        """
        Authorize a credit note against an issued invoice.

        Args:
            invoice_id: Invoice to cancel
            amount: Credited amount, defaults to (and is capped at) the invoice total
            reason: Printed on the credit note line and stored as its note

        Returns:
            The stored credit note

        Raises:
            InvoiceNotFound: unknown invoice for this tenant
            InvoiceStateConflict: not an issued invoice, or no credit note type for it
            ConfigurationError, AuthorityCallError: emission failed, nothing stored
            IssuedNotRecordedError: credit note authorized but not recorded
        """
        invoice = await self.repository.get(invoice_id, tenant_id=self.tenant_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found", error_code="INVOICE_NOT_FOUND")

        if invoice.kind != FiscalInvoiceKind.INVOICE.value:
            raise InvoiceStateConflict(
                "Credit notes can only be issued for invoices", error_code="NOT_AN_INVOICE"
            )
        if invoice.status != FiscalInvoiceStatus.ISSUED.value:
            raise InvoiceStateConflict(
                f"Invoice is {invoice.status}, only issued invoices can be credited",
                error_code="INVOICE_NOT_ISSUED",
                details={"status": invoice.status},
            )

        credit_type = CREDIT_NOTE_VOUCHER_TYPES.get(invoice.voucher_type)
        if credit_type is None:
            raise InvoiceStateConflict(
                f"No credit note voucher type for voucher type {invoice.voucher_type}",
                error_code="UNSUPPORTED_VOUCHER_TYPE",
            )

        total = round_money(invoice.total)
        credited = total if amount is None else min(round_money(amount), total)
        items, adjustments = credit_note_lines(invoice, credited, reason)

        suggested = await self.repository.suggest_next_number(
            self.tenant_id, invoice.point_of_sale, credit_type
        )
        result = await self.emitter.emit(
            customer=InvoiceCustomer(name=invoice.customer_name or "", surname=invoice.customer_surname),
            items=items,
            total=credited,
            payment_method=invoice.payment_method,
            adjustments=adjustments,
            suggested_number=suggested,
            voucher_type=credit_type,
            associated_voucher=AssociatedVoucher(
                voucher_type=invoice.voucher_type,
                point_of_sale=invoice.point_of_sale,
                number=invoice.voucher_number,
                fiscal_date=invoice.fiscal_date,
            ),
            voucher_recorded=partial(self.repository.voucher_exists, self.tenant_id),
        )

        credit_note = await self.repository.record_issued(
            self.tenant_id,
            result,
            origin_kind=invoice.origin_kind,
            origin_id=invoice.origin_id,
            kind=FiscalInvoiceKind.CREDIT_NOTE,
            customer_id=invoice.customer_id,
            related_invoice_id=invoice.id,
            note=reason,
            created_by=created_by,
            created_by_username=created_by_username,
        )
        await self.repository.mark_credited(invoice, credit_note.id)
        logger.info(
            f"Credit note {credit_note.formatted_number} issued for invoice {invoice.formatted_number}"
        )
        return credit_note
