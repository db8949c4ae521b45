"""
Invoice Emitter

Runs one emission attempt end to end:
1. Check fiscal settings and sale data (no network call when they are wrong)
2. Normalize lines, classify the concept and compute the VAT breakdown
3. Choose number and date and obtain the CAE (VoucherNumberResolver)
4. Assemble the issued invoice and render its document

Failures propagate to the caller, which decides between recording a pending
invoice (sale flow) and rescheduling it (retry queue).
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from app.models.fiscal_invoice import InvoiceLineKind, VoucherConcept
from app.services.fiscal_authority_client import FiscalAuthorityClient, to_afip_date
from app.services.fiscal_config import FiscalConfig, IssuerBranding
from app.services.fiscal_errors import InvalidEmissionRequest
from app.services.retry_payload import (
    InvoiceAdjustment,
    InvoiceCustomer,
    InvoiceLine,
    adjustment_lines,
    normalize_lines,
    round_money,
)
from app.services.voucher_number_resolver import (
    BeforeSubmitHook,
    VoucherNumberResolver,
    VoucherRecordedCheck,
)


logger = logging.getLogger(__name__)

# Final consumer, unidentified
RECEIVER_DOC_TYPE = 99
RECEIVER_DOC_NUMBER = 0
RECEIVER_VAT_CONDITION = 5
CURRENCY_ID = "PES"
CURRENCY_RATE = 1


@dataclass
class AssociatedVoucher:
    """Voucher referenced by a credit note (CbtesAsoc)."""
    voucher_type: int
    point_of_sale: int
    number: int
    fiscal_date: Optional[date] = None


@dataclass
class InvoiceDocument:
    content: bytes
    filename: str
    content_type: str = "text/html"


@dataclass
class IssuedInvoice:
    """An authorized voucher, ready to persist and render."""
    voucher_number: int
    point_of_sale: int
    voucher_type: int
    cae: str
    cae_expires_on: Optional[date]
    fiscal_date: date
    total: Decimal
    payment_method: str
    customer: InvoiceCustomer
    items: List[InvoiceLine]
    concept: VoucherConcept
    net_amount: Decimal
    vat_amount: Decimal
    tax_id: Optional[str] = None
    deposit_discount: Optional[Decimal] = None
    associated_voucher: Optional[AssociatedVoucher] = None
    branding: IssuerBranding = field(default_factory=IssuerBranding)
    recovered: bool = False

    @property
    def formatted_number(self) -> str:
        return f"{self.point_of_sale:05d}-{self.voucher_number:08d}"

    @property
    def letter(self) -> str:
        return voucher_letter(self.voucher_type)

    @property
    def label(self) -> str:
        return voucher_label(self.voucher_type)


@dataclass
class EmissionResult:
    invoice: IssuedInvoice
    document: Optional[InvoiceDocument] = None


class DocumentRenderer(Protocol):
    def render(self, invoice: IssuedInvoice) -> InvoiceDocument:
        ...


def voucher_letter(voucher_type: int) -> str:
    if voucher_type in (1, 3):
        return "A"
    if voucher_type in (6, 8):
        return "B"
    if voucher_type in (11, 13):
        return "C"
    return ""


def voucher_label(voucher_type: int) -> str:
    if voucher_type in (1, 6, 11):
        return "Factura"
    if voucher_type in (3, 8, 13):
        return "Nota de crédito"
    return f"Comprobante {voucher_type}"


def infer_concept(items: List[InvoiceLine]) -> VoucherConcept:
    """Products are goods; services and penalties are services."""
    has_products = any(i.kind == InvoiceLineKind.PRODUCT for i in items)
    has_services = any(i.kind in (InvoiceLineKind.SERVICE, InvoiceLineKind.PENALTY) for i in items)
    if has_products and has_services:
        return VoucherConcept.MIXED
    if has_services:
        return VoucherConcept.SERVICES
    return VoucherConcept.GOODS


def vat_breakdown(total: Decimal, rate: Decimal) -> tuple:
    """(net, vat) for a VAT-inclusive total."""
    net = round_money(total / (1 + rate / Decimal("100")))
    return net, round_money(total - net)


class InvoiceEmitter:
    """Emits one voucher per call. Build one per emission attempt."""

    def __init__(
        self,
        config: FiscalConfig,
        client: FiscalAuthorityClient = None,
        renderer: DocumentRenderer = None,
    ):
        self.config = config
        self._client = client
        self.renderer = renderer

    @property
    def client(self) -> FiscalAuthorityClient:
        if self._client is None:
            self._client = FiscalAuthorityClient(self.config)
        return self._client

    async def emit(
        self,
        customer: InvoiceCustomer,
        items: List[InvoiceLine],
        total: Decimal,
        payment_method: str,
        deposit_discount: Optional[Decimal] = None,
        adjustments: Optional[List[InvoiceAdjustment]] = None,
        fiscal_date: Optional[date] = None,
        suggested_number: Optional[int] = None,
        recover_voucher_number: Optional[int] = None,
        voucher_type: Optional[int] = None,
        associated_voucher: Optional[AssociatedVoucher] = None,
        voucher_recorded: Optional[VoucherRecordedCheck] = None,
        before_submit: Optional[BeforeSubmitHook] = None,
    ) -> EmissionResult:
        """
        Authorize a voucher for a sale.

        Args:
            customer: Buyer name (final consumer)
            items: Billable lines; non-positive lines are dropped
            total: Amount to authorize (VAT included)
            payment_method: Printed on the document
            deposit_discount: Deposit already paid, informational
            adjustments: Amounts deducted from the lines (deposits, gift cards)
            fiscal_date: Desired voucher date, defaults to today
            suggested_number: Local max + 1, used when the authority cannot be asked
            recover_voucher_number: Number of an earlier attempt with unknown outcome
            voucher_type: Overrides the configured voucher type (credit notes)
            associated_voucher: Voucher cancelled by a credit note
            voucher_recorded: Tells whether a number already belongs to a local invoice
            before_submit: Called before each number is sent to the authority

        Raises:
            ConfigurationError: fiscal settings incomplete
            InvalidEmissionRequest: nothing billable
            AuthorityCallError: authority failure left unresolved
        """
        self.config.validate_for_emission()

        normalized_items = normalize_lines(items)
        total = round_money(total or 0)
        if total <= 0:
            raise InvalidEmissionRequest(
                f"Invoice total must be positive, got {total}", error_code="INVALID_TOTAL"
            )
        if not normalized_items:
            raise InvalidEmissionRequest("Invoice has no billable lines", error_code="NO_ITEMS")

        point_of_sale = int(self.config.point_of_sale)
        voucher_type = int(voucher_type or self.config.voucher_type)
        concept = infer_concept(normalized_items)
        carries_tax = self.config.carries_tax(voucher_type)
        if carries_tax:
            net_amount, vat_amount = vat_breakdown(total, self.config.vat_rate)
        else:
            net_amount, vat_amount = total, Decimal("0.00")

        def build_request(number: int, voucher_date: date) -> Dict[str, Any]:
            afip_date = to_afip_date(voucher_date)
            data: Dict[str, Any] = {
                "CantReg": 1,
                "PtoVta": point_of_sale,
                "CbteTipo": voucher_type,
                "Concepto": int(concept),
                "DocTipo": RECEIVER_DOC_TYPE,
                "DocNro": RECEIVER_DOC_NUMBER,
                "CondicionIVAReceptorId": RECEIVER_VAT_CONDITION,
                "CbteDesde": number,
                "CbteHasta": number,
                "CbteFch": afip_date,
                "ImpTotal": float(total),
                "ImpTotConc": 0,
                "ImpNeto": float(net_amount),
                "ImpOpEx": 0,
                "ImpIVA": float(vat_amount),
                "ImpTrib": 0,
                "MonId": CURRENCY_ID,
                "MonCotiz": CURRENCY_RATE,
            }
            if concept != VoucherConcept.GOODS:
                data["FchServDesde"] = afip_date
                data["FchServHasta"] = afip_date
                data["FchVtoPago"] = afip_date
            if carries_tax:
                data["Iva"] = [{
                    "Id": self.config.vat_rate_id,
                    "BaseImp": float(net_amount),
                    "Importe": float(vat_amount),
                }]
            if associated_voucher:
                asoc = {
                    "Tipo": associated_voucher.voucher_type,
                    "PtoVta": associated_voucher.point_of_sale,
                    "Nro": associated_voucher.number,
                    "Cuit": self.config.cuit,
                }
                if associated_voucher.fiscal_date:
                    asoc["CbteFch"] = to_afip_date(associated_voucher.fiscal_date)
                data["CbtesAsoc"] = [asoc]
            return data

        resolver = VoucherNumberResolver(
            self.client,
            self.config,
            point_of_sale,
            voucher_type,
            voucher_recorded=voucher_recorded,
            before_submit=before_submit,
        )
        resolved = await resolver.submit(
            build_request,
            total=total,
            suggested_next=suggested_number,
            desired_date=fiscal_date,
            recover_number=recover_voucher_number,
        )

        lines = normalized_items + adjustment_lines(adjustments)
        residual = total - sum((line.subtotal for line in lines), Decimal("0"))
        if residual != 0:
            logger.warning(
                f"Invoice lines differ from total {total} by {residual}, adding a balancing line"
            )
            lines.append(
                InvoiceLine(
                    kind=InvoiceLineKind.ADJUSTMENT,
                    description="Ajuste",
                    quantity=Decimal("1"),
                    unit_price=residual,
                    subtotal=residual,
                )
            )

        deposit = round_money(deposit_discount or 0)
        invoice = IssuedInvoice(
            voucher_number=resolved.number,
            point_of_sale=point_of_sale,
            voucher_type=voucher_type,
            cae=resolved.authorization.cae,
            cae_expires_on=resolved.authorization.cae_expires_on,
            fiscal_date=resolved.fiscal_date,
            total=total,
            payment_method=payment_method,
            customer=customer,
            items=lines,
            concept=concept,
            net_amount=net_amount,
            vat_amount=vat_amount,
            tax_id=self.config.tax_id,
            deposit_discount=deposit if deposit > 0 else None,
            associated_voucher=associated_voucher,
            branding=self.config.branding,
            recovered=resolved.recovered,
        )
        logger.info(
            f"Issued {invoice.label} {invoice.letter} {invoice.formatted_number} CAE {invoice.cae}"
        )

        document = None
        if self.renderer is not None:
            try:
                document = self.renderer.render(invoice)
            except Exception as e:
                logger.error(f"Could not render document for {invoice.formatted_number}: {e}")

        return EmissionResult(invoice=invoice, document=document)
