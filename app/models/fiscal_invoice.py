"""Fiscal invoice model.

One row per billed (or to-be-billed) sale:
- Invoices and credit notes authorized by ARCA/AFIP (status ISSUED)
- Sales whose authorization failed and wait in the retry queue (status PENDING)
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Text, Numeric, Date
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, UUIDType


class FiscalInvoiceKind(str, Enum):
    """Voucher kind."""
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"


class FiscalInvoiceStatus(str, Enum):
    """Invoice lifecycle status."""
    PENDING = "pending"      # Not yet authorized, in the retry queue
    ISSUED = "issued"        # Authorized, carries number and CAE
    CREDITED = "credited"    # Issued and later cancelled by a credit note
    VOIDED = "voided"        # Withdrawn by an operator before authorization


class InvoiceLineKind(str, Enum):
    """Invoice line classification."""
    SERVICE = "service"
    PRODUCT = "product"
    PENALTY = "penalty"        # Late cancellation / no-show fee, billed as a service
    ADJUSTMENT = "adjustment"  # Negative line: applied deposit, gift card, etc.


class VoucherConcept(int, Enum):
    """WSFE Concepto."""
    GOODS = 1
    SERVICES = 2
    MIXED = 3


class InvoiceOriginKind(str, Enum):
    """Sale flow that produced the invoice."""
    APPOINTMENT = "appointment"
    GROUP_PAYMENT = "group_payment"
    GIFTCARD = "giftcard"
    PRODUCT_SALE = "product_sale"
    MANUAL = "manual"


# Invoice voucher type -> credit note voucher type (A, B, C)
CREDIT_NOTE_VOUCHER_TYPES = {1: 3, 6: 8, 11: 13}


class FiscalInvoice(Base):
    """
    Fiscal invoice or credit note.

    An ISSUED row carries numbering and CAE with empty retry fields.
    A PENDING row has no numbering and carries a retry payload.
    """
    __tablename__ = "fiscal_invoices"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "point_of_sale", "voucher_type", "voucher_number",
            name="uq_fiscal_invoices_voucher",
        ),
        Index("ix_fiscal_invoices_retry_due", "status", "retry_next_at"),
        Index("ix_fiscal_invoices_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True,
        comment="Business that owns the invoice"
    )

    # Type & Status
    kind: Mapped[str] = mapped_column(
        String(20),
        default=FiscalInvoiceKind.INVOICE.value,
        nullable=False,
        comment="invoice, credit_note"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=FiscalInvoiceStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, issued, credited, voided"
    )

    # Fiscal numbering (set once issued)
    point_of_sale: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    voucher_type: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="WSFE CbteTipo: 1/6/11 invoice A/B/C, 3/8/13 credit note A/B/C"
    )
    voucher_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Authorization
    cae: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    cae_expires_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    fiscal_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Voucher date as authorized (CbteFch)"
    )

    # Commercial content
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_surname: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    items: Mapped[list] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
        comment="Lines: kind, description, quantity, unit_price, subtotal (adjustments negative)"
    )
    deposit_discount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)

    # Retry bookkeeping (only while pending)
    retry_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_next_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ambiguous_voucher_number: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Number submitted with an unknown outcome; looked up before numbering again"
    )
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provenance
    origin_kind: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment="appointment, group_payment, giftcard, product_sale, manual"
    )
    origin_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    related_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Invoice cancelled by this credit note"
    )
    credit_note_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Credit note that cancelled this invoice"
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Rendered document: inline base64 or storage reference
    document_base64: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_bucket: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    document_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    document_filename: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    document_content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Audit
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    created_by_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def has_document(self) -> bool:
        return bool(self.document_base64 or self.document_path)

    @property
    def formatted_number(self) -> Optional[str]:
        """PPPPP-NNNNNNNN"""
        if self.voucher_number is None:
            return None
        return f"{(self.point_of_sale or 0):05d}-{self.voucher_number:08d}"

    def __repr__(self) -> str:
        return f"<FiscalInvoice(id={self.id}, status='{self.status}', number={self.formatted_number})>"
