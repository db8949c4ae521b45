from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import TENANT_ID, OTHER_TENANT_ID, FakeAuthority, make_config, unavailable

from app.models.fiscal_invoice import FiscalInvoice, FiscalInvoiceKind, FiscalInvoiceStatus, InvoiceLineKind
from app.services.credit_note_service import CreditNoteService, credit_note_lines
from app.services.fiscal_billing_service import FiscalBillingService
from app.services.fiscal_errors import AuthorityUnavailable, InvoiceNotFound, InvoiceStateConflict
from app.services.fiscal_invoice_repository import FiscalInvoiceRepository
from app.services.invoice_emitter import InvoiceEmitter
from app.services.retry_payload import InvoiceAdjustment, InvoiceCustomer, InvoiceLine


pytestmark = pytest.mark.anyio


async def _issued_invoice(db_session, authority=None):
    config = make_config()
    service = FiscalBillingService(
        db_session,
        TENANT_ID,
        config=config,
        emitter=InvoiceEmitter(config, client=authority or FakeAuthority()),
    )
    outcome = await service.bill_sale(
        InvoiceCustomer(name="Ana", surname="Paz"),
        [InvoiceLine(kind=InvoiceLineKind.SERVICE, description="Corte", unit_price=100, subtotal=100)],
        total=Decimal("70"),
        payment_method="efectivo",
        adjustments=[InvoiceAdjustment(description="Seña aplicada", amount=Decimal("30"))],
    )
    return outcome.invoice


def _credit_service(db_session, authority, tenant_id=TENANT_ID):
    config = make_config()
    return CreditNoteService(
        FiscalInvoiceRepository(db_session),
        tenant_id,
        config=config,
        emitter=InvoiceEmitter(config, client=authority),
    )


async def test_full_credit_note_cancels_invoice(db_session):
    invoice = await _issued_invoice(db_session)
    credit_authority = FakeAuthority()

    credit_note = await _credit_service(db_session, credit_authority).issue(invoice.id, reason="Error de carga")

    assert credit_note.kind == FiscalInvoiceKind.CREDIT_NOTE.value
    assert credit_note.status == FiscalInvoiceStatus.ISSUED.value
    assert credit_note.voucher_type == 13
    assert credit_note.voucher_number == 1
    assert credit_note.total == Decimal("70.00")
    assert credit_note.related_invoice_id == invoice.id
    assert credit_note.note == "Error de carga"
    assert [line["subtotal"] for line in credit_note.items] == [100.0, -30.0]

    request = credit_authority.requests[0]
    assert request["CbteTipo"] == 13
    assert request["CbtesAsoc"][0]["Nro"] == invoice.voucher_number
    assert request["CbtesAsoc"][0]["Tipo"] == 11

    refreshed = await FiscalInvoiceRepository(db_session).get(invoice.id)
    assert refreshed.status == FiscalInvoiceStatus.CREDITED.value
    assert refreshed.credit_note_id == credit_note.id


async def test_partial_credit_note_is_a_single_line(db_session):
    invoice = await _issued_invoice(db_session)
    credit_authority = FakeAuthority()

    credit_note = await _credit_service(db_session, credit_authority).issue(
        invoice.id, amount=Decimal("20"), reason="Devolución"
    )

    assert credit_note.total == Decimal("20.00")
    assert len(credit_note.items) == 1
    assert credit_note.items[0]["description"] == f"Nota de crédito {invoice.formatted_number} - Devolución"
    assert credit_authority.requests[0]["ImpTotal"] == 20.0


async def test_credit_is_capped_at_invoice_total(db_session):
    invoice = await _issued_invoice(db_session)

    credit_note = await _credit_service(db_session, FakeAuthority()).issue(invoice.id, amount=Decimal("500"))

    assert credit_note.total == Decimal("70.00")


async def test_credited_invoice_cannot_be_credited_again(db_session):
    invoice = await _issued_invoice(db_session)
    service = _credit_service(db_session, FakeAuthority())
    credit_note = await service.issue(invoice.id)

    with pytest.raises(InvoiceStateConflict) as excinfo:
        await service.issue(invoice.id)
    assert excinfo.value.error_code == "INVOICE_NOT_ISSUED"

    with pytest.raises(InvoiceStateConflict) as excinfo:
        await service.issue(credit_note.id)
    assert excinfo.value.error_code == "NOT_AN_INVOICE"


async def test_pending_invoice_cannot_be_credited(db_session):
    authority = FakeAuthority()
    authority.last_voucher_error = unavailable()
    pending = await _issued_invoice(db_session, authority)
    assert pending.status == FiscalInvoiceStatus.PENDING.value

    with pytest.raises(InvoiceStateConflict) as excinfo:
        await _credit_service(db_session, FakeAuthority()).issue(pending.id)

    assert excinfo.value.error_code == "INVOICE_NOT_ISSUED"


async def test_unknown_or_foreign_invoice_is_not_found(db_session):
    invoice = await _issued_invoice(db_session)

    with pytest.raises(InvoiceNotFound):
        await _credit_service(db_session, FakeAuthority(), tenant_id=OTHER_TENANT_ID).issue(invoice.id)


async def test_authority_failure_stores_nothing(db_session):
    invoice = await _issued_invoice(db_session)
    credit_authority = FakeAuthority()
    credit_authority.last_voucher_error = unavailable()

    with pytest.raises(AuthorityUnavailable):
        await _credit_service(db_session, credit_authority).issue(invoice.id)

    result = await db_session.execute(
        select(FiscalInvoice).where(FiscalInvoice.kind == FiscalInvoiceKind.CREDIT_NOTE.value)
    )
    assert result.scalars().all() == []
    refreshed = await FiscalInvoiceRepository(db_session).get(invoice.id)
    assert refreshed.status == FiscalInvoiceStatus.ISSUED.value


def test_full_credit_repeats_invoice_lines():
    invoice = FiscalInvoice(
        total=Decimal("70.00"),
        point_of_sale=1,
        voucher_number=3,
        items=[
            {"kind": "service", "description": "Corte", "quantity": 1, "unit_price": 100, "subtotal": 100},
            {"kind": "adjustment", "description": "Seña", "quantity": 1, "unit_price": -30, "subtotal": -30},
        ],
    )

    items, adjustments = credit_note_lines(invoice, Decimal("70.00"))

    assert [i.description for i in items] == ["Corte"]
    assert adjustments[0].amount == Decimal("30.00")

    items, adjustments = credit_note_lines(invoice, Decimal("10.00"), "Ajuste de precio")
    assert items[0].description == "Nota de crédito 00001-00000003 - Ajuste de precio"
    assert adjustments == []
