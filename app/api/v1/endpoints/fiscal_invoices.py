"""API endpoints for fiscal invoices (ARCA/AFIP electronic invoicing)."""
import base64
import logging
import math
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status

from app.api.deps import (
    DB,
    BillingOperator,
    CreditNoteOperator,
    EmitterFactory,
    FiscalConfigDep,
    RetryCallerDep,
)
from app.core.storage import StorageClient
from app.models.fiscal_invoice import FiscalInvoiceKind, FiscalInvoiceStatus
from app.schemas.fiscal_invoice import (
    CreditNoteRequest,
    FiscalInvoiceBrief,
    FiscalInvoiceListResponse,
    FiscalInvoiceResponse,
    RetryBatchResponse,
    RetryStatusResponse,
    SaleBillingRequest,
    SaleBillingResponse,
)
from app.services.credit_note_service import CreditNoteService
from app.services.fiscal_billing_service import FiscalBillingService
from app.services.fiscal_errors import (
    AuthorityCallError,
    ConfigurationError,
    FiscalError,
    InvalidEmissionRequest,
    InvoiceNotFound,
    InvoiceStateConflict,
    IssuedNotRecordedError,
)
from app.services.fiscal_invoice_repository import FiscalInvoiceRepository
from app.services.fiscal_retry_service import RetryQueueManager
from app.services.retry_payload import InvoiceAdjustment, InvoiceCustomer, InvoiceLine


logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: FiscalError) -> HTTPException:
    """Map fiscal errors to HTTP responses."""
    if isinstance(e, ConfigurationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, InvoiceNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, InvoiceStateConflict):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(e, InvalidEmissionRequest):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, AuthorityCallError):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    detail = e.message
    if isinstance(e, IssuedNotRecordedError):
        detail = {
            "message": e.message,
            "voucher_number": e.voucher_number,
            "cae": e.cae,
            "point_of_sale": e.point_of_sale,
            "voucher_type": e.voucher_type,
        }
    return HTTPException(
        status_code=status_code,
        detail=detail,
        headers={"X-Error-Code": e.error_code or "FISCAL_ERROR"},
    )


# ==================== Retry Queue ====================

@router.api_route(
    "/retries",
    methods=["GET", "POST"],
    response_model=RetryBatchResponse | RetryStatusResponse,
)
async def run_retries(
    db: DB,
    caller: RetryCallerDep,
    config: FiscalConfigDep,
    emitter_factory: EmitterFactory,
    limit: Optional[int] = Query(None, ge=1),
    invoice_id: Optional[UUID] = None,
    force: bool = False,
    status_only: bool = Query(False, alias="status"),
):
    """
    Retry pending invoices.

    - Scheduler (`Authorization: Bearer <CRON_SECRET>`): due invoices of all tenants.
    - Operator (JWT): the operator's tenant; `invoice_id` retries one invoice,
      `force` ignores due times.
    - `status=true`: only pending/overdue counts, nothing is processed.

    Both GET and POST process, since most schedulers can only issue GET.
    """
    manager = RetryQueueManager(
        FiscalInvoiceRepository(db),
        config=config,
        emitter_factory=emitter_factory,
    )
    tenant_id = None if caller.is_cron else caller.operator.tenant_id

    if status_only:
        return RetryStatusResponse(**await manager.status(tenant_id))

    try:
        if caller.is_cron:
            report = await manager.run_sweep(limit=limit)
        else:
            report = await manager.run_manual(
                tenant_id,
                invoice_id=invoice_id,
                force=force,
                limit=limit,
            )
    except FiscalError as e:
        raise _http_error(e)

    return RetryBatchResponse(**report.as_dict())


# ==================== Invoices ====================

@router.post("", response_model=SaleBillingResponse, status_code=status.HTTP_201_CREATED)
async def bill_sale(
    sale_in: SaleBillingRequest,
    db: DB,
    operator: BillingOperator,
    config: FiscalConfigDep,
    emitter_factory: EmitterFactory,
):
    """
    Bill a completed sale.

    Never fails because of the fiscal authority: when the voucher cannot be
    authorized the invoice is stored as pending and a warning is returned.
    """
    service = FiscalBillingService(
        db,
        operator.tenant_id,
        config=config,
        emitter=emitter_factory(config),
    )
    outcome = await service.bill_sale(
        customer=InvoiceCustomer(name=sale_in.customer.name or "", surname=sale_in.customer.surname),
        items=[InvoiceLine(**line.model_dump()) for line in sale_in.items],
        total=sale_in.total,
        payment_method=sale_in.payment_method,
        deposit_discount=sale_in.deposit_discount,
        adjustments=[InvoiceAdjustment(**a.model_dump()) for a in sale_in.adjustments or []],
        fiscal_date=sale_in.fiscal_date,
        origin_kind=sale_in.origin_kind.value if sale_in.origin_kind else None,
        origin_id=sale_in.origin_id,
        customer_id=sale_in.customer_id,
        created_by=operator.id,
        created_by_username=operator.username,
    )

    if outcome.invoice is None:
        return SaleBillingResponse(warning=outcome.warning)
    return SaleBillingResponse(
        status=outcome.invoice.status,
        invoice=FiscalInvoiceResponse.model_validate(outcome.invoice),
        warning=outcome.warning,
    )


@router.get("", response_model=FiscalInvoiceListResponse)
async def list_invoices(
    db: DB,
    operator: BillingOperator,
    q: Optional[str] = None,
    kind: Optional[FiscalInvoiceKind] = None,
    invoice_status: Optional[FiscalInvoiceStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(50, ge=1, le=200),
    page: int = Query(1, ge=1),
):
    """List the tenant's invoices and credit notes, newest first."""
    rows, total = await FiscalInvoiceRepository(db).list_invoices(
        operator.tenant_id,
        q=q,
        kind=kind.value if kind else None,
        status=invoice_status.value if invoice_status else None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        page=page,
    )
    return FiscalInvoiceListResponse(
        items=[FiscalInvoiceBrief.model_validate(row) for row in rows],
        total=total,
        page=page,
        size=limit,
        pages=max(1, math.ceil(total / limit)),
    )


@router.get("/{invoice_id}", response_model=FiscalInvoiceResponse)
async def get_invoice(
    invoice_id: UUID,
    db: DB,
    operator: BillingOperator,
):
    """Get invoice by ID."""
    invoice = await FiscalInvoiceRepository(db).get(invoice_id, tenant_id=operator.tenant_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.get("/{invoice_id}/document")
async def get_invoice_document(
    invoice_id: UUID,
    db: DB,
    operator: BillingOperator,
):
    """Download the rendered invoice document."""
    invoice = await FiscalInvoiceRepository(db).get(invoice_id, tenant_id=operator.tenant_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    if not invoice.has_document:
        raise HTTPException(status_code=404, detail="Invoice has no document")

    if invoice.document_base64:
        content = base64.b64decode(invoice.document_base64)
    else:
        try:
            content = StorageClient.download(invoice.document_bucket, invoice.document_path)
        except Exception as e:
            logger.error(f"Could not download document for invoice {invoice_id}: {e}")
            raise HTTPException(status_code=502, detail="Document storage is unavailable")

    filename = invoice.document_filename or f"{invoice.formatted_number or invoice.id}.html"
    return Response(
        content=content,
        media_type=invoice.document_content_type or "text/html",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@router.post(
    "/{invoice_id}/credit-note",
    response_model=FiscalInvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_credit_note(
    invoice_id: UUID,
    db: DB,
    operator: CreditNoteOperator,
    config: FiscalConfigDep,
    emitter_factory: EmitterFactory,
    credit_in: Optional[CreditNoteRequest] = None,
):
    """Issue a credit note cancelling an issued invoice (fully or partially)."""
    credit_in = credit_in or CreditNoteRequest()
    service = CreditNoteService(
        FiscalInvoiceRepository(db),
        operator.tenant_id,
        config=config,
        emitter=emitter_factory(config),
    )
    try:
        return await service.issue(
            invoice_id,
            amount=credit_in.amount,
            reason=credit_in.reason,
            created_by=operator.id,
            created_by_username=operator.username,
        )
    except FiscalError as e:
        raise _http_error(e)
