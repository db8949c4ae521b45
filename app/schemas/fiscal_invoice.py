"""Pydantic schemas for fiscal invoices and the retry queue."""
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.base import BaseResponseSchema, BaseCreateSchema
from app.models.fiscal_invoice import (
    FiscalInvoiceKind, FiscalInvoiceStatus, InvoiceLineKind, InvoiceOriginKind
)


# ==================== Billing Schemas ====================

class SaleCustomer(BaseModel):
    """Buyer as printed on the invoice (final consumer)."""
    name: Optional[str] = Field(None, max_length=200)
    surname: Optional[str] = Field(None, max_length=200)


class SaleLine(BaseModel):
    """One billed line of a sale."""
    kind: InvoiceLineKind = InvoiceLineKind.SERVICE
    description: str = Field(..., min_length=1, max_length=300)
    quantity: Decimal = Field(Decimal("1"), gt=0)
    unit_price: Decimal = Field(Decimal("0"), ge=0)
    subtotal: Decimal


class SaleAdjustment(BaseModel):
    """Amount deducted from the sale lines (applied deposit, gift card)."""
    description: str = Field(..., min_length=1, max_length=300)
    amount: Decimal = Field(..., gt=0)


class SaleBillingRequest(BaseCreateSchema):
    """Completed sale to be billed."""
    customer: SaleCustomer = Field(default_factory=SaleCustomer)
    items: List[SaleLine] = Field(..., min_length=1)
    total: Decimal = Field(..., ge=0)
    payment_method: Optional[str] = Field(None, max_length=50)
    deposit_discount: Optional[Decimal] = Field(None, ge=0)
    adjustments: Optional[List[SaleAdjustment]] = None
    fiscal_date: Optional[date] = None
    origin_kind: Optional[InvoiceOriginKind] = None
    origin_id: Optional[str] = Field(None, max_length=64)
    customer_id: Optional[UUID] = None


class CreditNoteRequest(BaseCreateSchema):
    """Credit note against an issued invoice."""
    amount: Optional[Decimal] = Field(None, gt=0, description="Defaults to (and is capped at) the invoice total")
    reason: Optional[str] = Field(None, max_length=300)


# ==================== Invoice Response Schemas ====================

class InvoiceLineResponse(BaseModel):
    kind: InvoiceLineKind = InvoiceLineKind.SERVICE
    description: str
    quantity: Decimal
    unit_price: Decimal
    subtotal: Decimal


class FiscalInvoiceBrief(BaseResponseSchema):
    """Invoice row without document or retry payload."""
    id: UUID
    kind: FiscalInvoiceKind
    status: FiscalInvoiceStatus
    point_of_sale: Optional[int] = None
    voucher_type: Optional[int] = None
    voucher_number: Optional[int] = None
    formatted_number: Optional[str] = None
    cae: Optional[str] = None
    cae_expires_on: Optional[date] = None
    fiscal_date: Optional[date] = None
    customer_name: Optional[str] = None
    customer_surname: Optional[str] = None
    payment_method: Optional[str] = None
    total: Decimal
    origin_kind: Optional[str] = None
    origin_id: Optional[str] = None
    has_document: bool = False
    created_at: datetime


class FiscalInvoiceResponse(FiscalInvoiceBrief):
    """Full invoice, including retry bookkeeping while pending."""
    items: List[InvoiceLineResponse] = []
    deposit_discount: Optional[Decimal] = None
    retry_attempts: int = 0
    retry_last_error: Optional[str] = None
    retry_last_attempt_at: Optional[datetime] = None
    retry_next_at: Optional[datetime] = None
    related_invoice_id: Optional[UUID] = None
    credit_note_id: Optional[UUID] = None
    customer_id: Optional[UUID] = None
    note: Optional[str] = None
    document_filename: Optional[str] = None
    created_by_username: Optional[str] = None
    updated_at: datetime


class FiscalInvoiceListResponse(BaseModel):
    """Response for listing fiscal invoices."""
    items: List[FiscalInvoiceBrief]
    total: int
    page: int = 1
    size: int = 50
    pages: int = 1


class SaleBillingResponse(BaseModel):
    """Outcome of billing a sale. The sale itself always succeeds."""
    status: Optional[FiscalInvoiceStatus] = None
    invoice: Optional[FiscalInvoiceResponse] = None
    warning: Optional[str] = None


# ==================== Retry Queue Schemas ====================

class RetryStatusResponse(BaseModel):
    pending: int
    overdue: int
    interval_minutes: int


class RetryBatchResponse(RetryStatusResponse):
    processed: int
    issued: int
    failed: int
    invalid: int
    skipped: int
    last_error: Optional[str] = None
    errors: List[str] = []
