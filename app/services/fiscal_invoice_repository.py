"""
Fiscal invoice persistence.

All writes commit immediately: an invoice authorized upstream must reach the
database even if the surrounding request later fails. Writes on pending rows
that are being retried are conditional on holding the row claim, so two
callers can never both act on the same pending invoice.
"""

import base64
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.storage import StorageClient
from app.models.fiscal_invoice import (
    FiscalInvoice,
    FiscalInvoiceKind,
    FiscalInvoiceStatus,
)
from app.services.fiscal_errors import IssuedNotRecordedError
from app.services.invoice_emitter import EmissionResult, InvoiceDocument, IssuedInvoice
from app.services.retry_payload import RetryPayload, encode_retry_payload, payload_lines


logger = logging.getLogger(__name__)

# Sentinel for "leave the column unchanged"
_KEEP = object()


def document_columns(tenant_id: uuid.UUID, document: Optional[InvoiceDocument]) -> Dict[str, Any]:
    """
    Storage columns for a rendered document.

    The document is uploaded to Supabase Storage when configured; otherwise,
    or when the upload fails, it is kept inline as base64.
    """
    columns: Dict[str, Any] = {
        "document_base64": None,
        "document_bucket": None,
        "document_path": None,
        "document_filename": None,
        "document_content_type": None,
    }
    if document is None:
        return columns

    columns["document_filename"] = document.filename
    columns["document_content_type"] = document.content_type

    if StorageClient.is_configured():
        try:
            bucket, path = StorageClient.upload_invoice_document(
                tenant_id, document.content, document.filename, document.content_type
            )
            columns["document_bucket"] = bucket
            columns["document_path"] = path
            return columns
        except Exception as e:
            logger.warning(f"Could not upload invoice document to storage, keeping it inline: {e}")

    columns["document_base64"] = base64.b64encode(document.content).decode("ascii")
    return columns


def issued_columns(invoice: IssuedInvoice) -> Dict[str, Any]:
    """Columns describing an authorized voucher, with retry state cleared."""
    return {
        "status": FiscalInvoiceStatus.ISSUED.value,
        "point_of_sale": invoice.point_of_sale,
        "voucher_type": invoice.voucher_type,
        "voucher_number": invoice.voucher_number,
        "cae": invoice.cae,
        "cae_expires_on": invoice.cae_expires_on,
        "fiscal_date": invoice.fiscal_date,
        "customer_name": invoice.customer.name,
        "customer_surname": invoice.customer.surname,
        "payment_method": invoice.payment_method,
        "total": invoice.total,
        "items": [line.as_row() for line in invoice.items],
        "deposit_discount": invoice.deposit_discount,
        "retry_attempts": 0,
        "retry_last_error": None,
        "retry_last_attempt_at": None,
        "retry_next_at": None,
        "retry_payload": None,
        "ambiguous_voucher_number": None,
        "claim_token": None,
        "claimed_until": None,
    }


class FiscalInvoiceRepository:
    """Data access for fiscal_invoices, scoped per tenant."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Reads ====================
    # Claimed writes bypass the identity map, so row reads refresh loaded instances.

    async def get(self, invoice_id: uuid.UUID, tenant_id: uuid.UUID = None) -> Optional[FiscalInvoice]:
        stmt = (
            select(FiscalInvoice)
            .where(FiscalInvoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        if tenant_id is not None:
            stmt = stmt.where(FiscalInvoice.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def suggest_next_number(
        self,
        tenant_id: uuid.UUID,
        point_of_sale: int,
        voucher_type: int,
    ) -> Optional[int]:
        """Local max voucher number + 1 for the stream, or None without history."""
        result = await self.db.execute(
            select(func.max(FiscalInvoice.voucher_number)).where(
                FiscalInvoice.tenant_id == tenant_id,
                FiscalInvoice.point_of_sale == point_of_sale,
                FiscalInvoice.voucher_type == voucher_type,
                FiscalInvoice.voucher_number.is_not(None),
            )
        )
        max_number = result.scalar()
        return int(max_number) + 1 if max_number else None

    async def voucher_exists(
        self,
        tenant_id: uuid.UUID,
        point_of_sale: int,
        voucher_type: int,
        voucher_number: int,
    ) -> bool:
        """Whether the number is already recorded for this tenant's stream."""
        result = await self.db.execute(
            select(FiscalInvoice.id).where(
                FiscalInvoice.tenant_id == tenant_id,
                FiscalInvoice.point_of_sale == point_of_sale,
                FiscalInvoice.voucher_type == voucher_type,
                FiscalInvoice.voucher_number == voucher_number,
            ).limit(1)
        )
        return result.scalar() is not None

    def _pending_filter(self, tenant_id: Optional[uuid.UUID]):
        conditions = [FiscalInvoice.status == FiscalInvoiceStatus.PENDING.value]
        if tenant_id is not None:
            conditions.append(FiscalInvoice.tenant_id == tenant_id)
        return conditions

    async def list_pending(
        self,
        tenant_id: uuid.UUID = None,
        invoice_id: uuid.UUID = None,
        due_only: bool = True,
        now: datetime = None,
        limit: int = 30,
    ) -> List[FiscalInvoice]:
        """
        Pending invoices, oldest due first.

        Args:
            tenant_id: Restrict to one tenant (None: all tenants)
            invoice_id: Only this invoice (due time ignored)
            due_only: Skip rows whose next retry is in the future
        """
        now = now or datetime.now(timezone.utc)
        stmt = (
            select(FiscalInvoice)
            .where(*self._pending_filter(tenant_id))
            .execution_options(populate_existing=True)
        )
        if invoice_id is not None:
            stmt = stmt.where(FiscalInvoice.id == invoice_id)
        elif due_only:
            stmt = stmt.where(
                or_(FiscalInvoice.retry_next_at.is_(None), FiscalInvoice.retry_next_at <= now)
            )
        stmt = stmt.order_by(
            FiscalInvoice.retry_next_at.asc().nulls_first(),
            FiscalInvoice.created_at.asc(),
        ).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def pending_summary(self, tenant_id: uuid.UUID = None, now: datetime = None) -> Dict[str, int]:
        """Pending and overdue (due now) counts."""
        now = now or datetime.now(timezone.utc)
        conditions = self._pending_filter(tenant_id)
        pending = await self.db.execute(select(func.count(FiscalInvoice.id)).where(*conditions))
        overdue = await self.db.execute(
            select(func.count(FiscalInvoice.id)).where(
                *conditions,
                or_(FiscalInvoice.retry_next_at.is_(None), FiscalInvoice.retry_next_at <= now),
            )
        )
        return {"pending": pending.scalar() or 0, "overdue": overdue.scalar() or 0}

    async def list_invoices(
        self,
        tenant_id: uuid.UUID,
        q: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        page: int = 1,
    ) -> Tuple[List[FiscalInvoice], int]:
        """Tenant invoices, newest first, with the total count for pagination."""
        conditions = [FiscalInvoice.tenant_id == tenant_id]
        if kind:
            conditions.append(FiscalInvoice.kind == kind)
        if status:
            conditions.append(FiscalInvoice.status == status)
        if date_from:
            conditions.append(
                FiscalInvoice.created_at >= datetime.combine(date_from, datetime.min.time(), timezone.utc)
            )
        if date_to:
            conditions.append(
                FiscalInvoice.created_at
                < datetime.combine(date_to + timedelta(days=1), datetime.min.time(), timezone.utc)
            )
        if q:
            pattern = f"%{q.strip()}%"
            search = [
                FiscalInvoice.customer_name.ilike(pattern),
                FiscalInvoice.customer_surname.ilike(pattern),
                FiscalInvoice.cae.ilike(pattern),
            ]
            if q.strip().isdigit():
                search.append(FiscalInvoice.voucher_number == int(q.strip()))
            conditions.append(or_(*search))

        count_result = await self.db.execute(select(func.count(FiscalInvoice.id)).where(*conditions))
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(FiscalInvoice)
            .where(*conditions)
            .order_by(FiscalInvoice.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    # ==================== Inserts ====================

    async def record_issued(
        self,
        tenant_id: uuid.UUID,
        result: EmissionResult,
        origin_kind: Optional[str] = None,
        origin_id: Optional[str] = None,
        kind: FiscalInvoiceKind = FiscalInvoiceKind.INVOICE,
        customer_id: uuid.UUID = None,
        related_invoice_id: uuid.UUID = None,
        note: Optional[str] = None,
        created_by: uuid.UUID = None,
        created_by_username: Optional[str] = None,
    ) -> FiscalInvoice:
        """
        Insert an authorized voucher.

        Raises:
            IssuedNotRecordedError: the CAE exists upstream but the row could not be written
        """
        invoice = result.invoice
        row = FiscalInvoice(
            tenant_id=tenant_id,
            kind=kind.value,
            origin_kind=origin_kind,
            origin_id=origin_id,
            customer_id=customer_id,
            related_invoice_id=related_invoice_id,
            note=note,
            created_by=created_by,
            created_by_username=created_by_username,
            **issued_columns(invoice),
            **document_columns(tenant_id, result.document),
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(
                f"Voucher {invoice.formatted_number} CAE {invoice.cae} issued upstream but not recorded: {e}"
            )
            raise IssuedNotRecordedError(
                f"Voucher {invoice.formatted_number} was issued (CAE {invoice.cae}) "
                f"but could not be recorded: {e}",
                voucher_number=invoice.voucher_number,
                cae=invoice.cae,
                point_of_sale=invoice.point_of_sale,
                voucher_type=invoice.voucher_type,
            )
        await self.db.refresh(row)
        return row

    async def record_pending(
        self,
        tenant_id: uuid.UUID,
        payload: RetryPayload,
        error_message: str,
        retry_interval: timedelta,
        origin_kind: Optional[str] = None,
        origin_id: Optional[str] = None,
        customer_id: uuid.UUID = None,
        ambiguous_voucher_number: Optional[int] = None,
        created_by: uuid.UUID = None,
        created_by_username: Optional[str] = None,
        now: datetime = None,
    ) -> FiscalInvoice:
        """Insert a sale that could not be authorized, due again after ``retry_interval``."""
        now = now or datetime.now(timezone.utc)
        row = FiscalInvoice(
            tenant_id=tenant_id,
            kind=FiscalInvoiceKind.INVOICE.value,
            status=FiscalInvoiceStatus.PENDING.value,
            origin_kind=origin_kind,
            origin_id=origin_id,
            customer_id=customer_id,
            customer_name=payload.customer.name,
            customer_surname=payload.customer.surname,
            payment_method=payload.payment_method,
            total=payload.total,
            fiscal_date=payload.fiscal_date,
            items=[line.as_row() for line in payload_lines(payload)],
            deposit_discount=payload.deposit_discount,
            retry_payload=encode_retry_payload(payload),
            retry_attempts=0,
            retry_last_error=error_message or "Could not issue the voucher",
            retry_last_attempt_at=now,
            retry_next_at=now + retry_interval,
            ambiguous_voucher_number=ambiguous_voucher_number,
            created_by=created_by,
            created_by_username=created_by_username,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        await self.db.refresh(row)
        return row

    # ==================== Claimed updates ====================

    async def claim(self, invoice_id: uuid.UUID, lease: timedelta, now: datetime = None) -> Optional[str]:
        """
        Take exclusive ownership of a pending row.

        Returns:
            The claim token, or None when the row is not pending or another
            caller holds an unexpired claim.
        """
        now = now or datetime.now(timezone.utc)
        token = uuid.uuid4().hex
        result = await self.db.execute(
            update(FiscalInvoice)
            .where(
                FiscalInvoice.id == invoice_id,
                FiscalInvoice.status == FiscalInvoiceStatus.PENDING.value,
                or_(
                    FiscalInvoice.claim_token.is_(None),
                    FiscalInvoice.claimed_until.is_(None),
                    FiscalInvoice.claimed_until < now,
                ),
            )
            .values(claim_token=token, claimed_until=now + lease)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return token if result.rowcount == 1 else None

    def _claimed(self, invoice_id: uuid.UUID, claim_token: str):
        return and_(
            FiscalInvoice.id == invoice_id,
            FiscalInvoice.claim_token == claim_token,
            FiscalInvoice.status == FiscalInvoiceStatus.PENDING.value,
        )

    async def _update_claimed(self, invoice_id: uuid.UUID, claim_token: str, values: Dict[str, Any]) -> bool:
        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(FiscalInvoice)
            .where(self._claimed(invoice_id, claim_token))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_issued(
        self,
        invoice_id: uuid.UUID,
        claim_token: str,
        result: EmissionResult,
        tenant_id: uuid.UUID,
    ) -> None:
        """
        Turn a claimed pending row into an issued invoice.

        Raises:
            IssuedNotRecordedError: the write failed or the claim was lost
        """
        invoice = result.invoice
        values = {**issued_columns(invoice), **document_columns(tenant_id, result.document)}
        try:
            updated = await self._update_claimed(invoice_id, claim_token, values)
        except SQLAlchemyError as e:
            await self.db.rollback()
            updated = False
            reason = str(e)
        else:
            reason = "the row claim was lost"

        if not updated:
            logger.critical(
                f"Voucher {invoice.formatted_number} CAE {invoice.cae} issued upstream "
                f"but pending invoice {invoice_id} was not updated: {reason}"
            )
            raise IssuedNotRecordedError(
                f"Voucher {invoice.formatted_number} was issued (CAE {invoice.cae}) "
                f"but the pending invoice could not be updated: {reason}",
                voucher_number=invoice.voucher_number,
                cae=invoice.cae,
                point_of_sale=invoice.point_of_sale,
                voucher_type=invoice.voucher_type,
                details={"invoice_id": str(invoice_id)},
            )

    async def mark_failed(
        self,
        invoice_id: uuid.UUID,
        claim_token: str,
        error_message: str,
        retry_interval: timedelta,
        ambiguous_voucher_number: Any = _KEEP,
        now: datetime = None,
    ) -> bool:
        """Record a failed attempt, reschedule the row and release the claim."""
        now = now or datetime.now(timezone.utc)
        values: Dict[str, Any] = {
            "retry_attempts": FiscalInvoice.retry_attempts + 1,
            "retry_last_error": error_message,
            "retry_last_attempt_at": now,
            "retry_next_at": now + retry_interval,
            "claim_token": None,
            "claimed_until": None,
        }
        if ambiguous_voucher_number is not _KEEP:
            values["ambiguous_voucher_number"] = ambiguous_voucher_number
        return await self._update_claimed(invoice_id, claim_token, values)

    async def update_payload(self, invoice_id: uuid.UUID, claim_token: str, payload: RetryPayload) -> bool:
        """Store a rebuilt retry payload."""
        return await self._update_claimed(
            invoice_id, claim_token, {"retry_payload": encode_retry_payload(payload)}
        )

    async def renew_claim(
        self,
        invoice_id: uuid.UUID,
        claim_token: str,
        lease: timedelta,
        now: datetime = None,
    ) -> bool:
        """Push the lease forward. False when the claim was lost."""
        now = now or datetime.now(timezone.utc)
        return await self._update_claimed(invoice_id, claim_token, {"claimed_until": now + lease})

    # ==================== Credit notes ====================

    async def mark_credited(self, invoice: FiscalInvoice, credit_note_id: uuid.UUID) -> None:
        """Flag an issued invoice as cancelled by a credit note."""
        invoice.status = FiscalInvoiceStatus.CREDITED.value
        invoice.credit_note_id = credit_note_id
        await self.db.commit()
