"""
Retry payload codec.

A pending invoice stores a self-sufficient snapshot of the sale so that a
later attempt can re-emit it without consulting any other table:

    {
      "customer": {"name": "Ana", "surname": "Paz"},
      "items": [{"kind": "service", "description": "Haircut", "quantity": 1,
                 "unitPrice": 100.0, "subtotal": 100.0}],
      "total": 80.0,
      "paymentMethod": "cash",
      "depositDiscount": 20.0,
      "adjustments": [{"description": "Deposit applied", "amount": 20.0}],
      "fiscalDate": "2026-10-18"
    }

The snapshot can also be rebuilt from the invoice row alone when the stored
payload is missing or corrupt.
"""

import json
import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Any, List, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    PlainSerializer,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from app.models.fiscal_invoice import FiscalInvoice, InvoiceLineKind


logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = "Consumidor"
DEFAULT_CUSTOMER_SURNAME = "Final"
DEFAULT_PAYMENT_METHOD = "efectivo"
DEFAULT_LINE_DESCRIPTION = "Servicio"


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _date_prefix(value: Any) -> Any:
    # Accept full ISO timestamps written by older clients
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


Money = Annotated[
    Decimal,
    AfterValidator(round_money),
    PlainSerializer(float, return_type=float, when_used="json"),
]
Quantity = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
PayloadDate = Annotated[date, BeforeValidator(_date_prefix)]


class PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class InvoiceCustomer(PayloadModel):
    name: str
    surname: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.name, self.surname) if p)


class InvoiceLine(PayloadModel):
    kind: InvoiceLineKind = InvoiceLineKind.SERVICE
    description: str
    quantity: Quantity = Decimal("1")
    unit_price: Money = Decimal("0")
    subtotal: Money

    def as_row(self) -> dict:
        """Snake-case dict stored in FiscalInvoice.items."""
        return self.model_dump(mode="json")


class InvoiceAdjustment(PayloadModel):
    description: str
    amount: Money


class RetryPayload(PayloadModel):
    customer: InvoiceCustomer
    items: List[InvoiceLine]
    total: Money
    payment_method: str = DEFAULT_PAYMENT_METHOD
    deposit_discount: Optional[Money] = None
    adjustments: Optional[List[InvoiceAdjustment]] = None
    fiscal_date: Optional[PayloadDate] = None


def normalize_lines(items: List[InvoiceLine]) -> List[InvoiceLine]:
    """Default descriptions and quantities, drop lines that bill nothing."""
    normalized = []
    for item in items or []:
        quantity = item.quantity if item.quantity and item.quantity > 0 else Decimal("1")
        if item.subtotal <= 0:
            continue
        normalized.append(
            InvoiceLine(
                kind=item.kind,
                description=(item.description or "").strip() or "Item",
                quantity=quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
        )
    return normalized


def normalize_adjustments(adjustments: Optional[List[InvoiceAdjustment]]) -> List[InvoiceAdjustment]:
    return [
        InvoiceAdjustment(description=a.description.strip(), amount=a.amount)
        for a in adjustments or []
        if (a.description or "").strip() and a.amount > 0
    ]


def adjustment_lines(adjustments: Optional[List[InvoiceAdjustment]]) -> List[InvoiceLine]:
    """One negative line per adjustment."""
    return [
        InvoiceLine(
            kind=InvoiceLineKind.ADJUSTMENT,
            description=a.description,
            quantity=Decimal("1"),
            unit_price=-a.amount,
            subtotal=-a.amount,
        )
        for a in normalize_adjustments(adjustments)
    ]


def build_retry_payload(
    customer: InvoiceCustomer,
    items: List[InvoiceLine],
    total: Decimal,
    payment_method: Optional[str] = None,
    deposit_discount: Optional[Decimal] = None,
    adjustments: Optional[List[InvoiceAdjustment]] = None,
    fiscal_date: Optional[date] = None,
) -> RetryPayload:
    """Normalize sale data into a retry payload."""
    deposit = round_money(deposit_discount or 0)
    normalized_adjustments = normalize_adjustments(adjustments)
    return RetryPayload(
        customer=InvoiceCustomer(
            name=(customer.name or "").strip() or DEFAULT_CUSTOMER_NAME,
            surname=(customer.surname or "").strip() or DEFAULT_CUSTOMER_SURNAME,
        ),
        items=normalize_lines(items),
        total=max(round_money(total or 0), Decimal("0.00")),
        payment_method=(payment_method or "").strip() or DEFAULT_PAYMENT_METHOD,
        deposit_discount=deposit if deposit > 0 else None,
        adjustments=normalized_adjustments or None,
        fiscal_date=fiscal_date or date.today(),
    )


def payload_lines(payload: RetryPayload) -> List[InvoiceLine]:
    """Item lines plus negative adjustment lines, as stored on the invoice row."""
    return list(payload.items) + adjustment_lines(payload.adjustments)


def encode_retry_payload(payload: RetryPayload) -> dict:
    """JSON-ready dict for FiscalInvoice.retry_payload."""
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


def decode_retry_payload(raw: Union[str, dict, None]) -> Optional[RetryPayload]:
    """
    Parse a stored payload.

    Returns:
        The normalized payload, or None when it is missing, malformed, has no
        customer name, a non-positive total or no billable line.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None

    customer = raw.get("customer")
    if not isinstance(customer, dict) or not str(customer.get("name") or "").strip():
        return None

    try:
        parsed = RetryPayload.model_validate(raw)
    except ValidationError as e:
        logger.info(f"Discarding malformed retry payload: {e.error_count()} errors")
        return None

    if parsed.total <= 0:
        return None

    payload = build_retry_payload(
        customer=parsed.customer,
        items=parsed.items,
        total=parsed.total,
        payment_method=parsed.payment_method,
        deposit_discount=parsed.deposit_discount,
        adjustments=parsed.adjustments,
        fiscal_date=parsed.fiscal_date,
    )
    if not payload.items:
        return None
    return payload


def rebuild_retry_payload(invoice: FiscalInvoice) -> Optional[RetryPayload]:
    """
    Reconstruct the payload from the invoice row's own columns.

    Negative lines become adjustments again. When no positive line survives,
    the whole total is billed as a single service line.

    Returns:
        None when the row has no positive total.
    """
    total = round_money(invoice.total or 0)
    if total <= 0:
        return None

    items: List[InvoiceLine] = []
    adjustments: List[InvoiceAdjustment] = []
    for raw in invoice.items or []:
        if not isinstance(raw, dict):
            continue
        try:
            line = InvoiceLine.model_validate(raw)
        except ValidationError:
            continue
        if line.subtotal < 0 or line.kind == InvoiceLineKind.ADJUSTMENT:
            if line.subtotal < 0:
                adjustments.append(InvoiceAdjustment(description=line.description, amount=-line.subtotal))
            continue
        items.append(line)

    items = normalize_lines(items)
    if not items:
        items = [
            InvoiceLine(
                kind=InvoiceLineKind.SERVICE,
                description=DEFAULT_LINE_DESCRIPTION,
                quantity=Decimal("1"),
                unit_price=total,
                subtotal=total,
            )
        ]

    fiscal_date = invoice.fiscal_date
    if fiscal_date is None and invoice.created_at is not None:
        fiscal_date = invoice.created_at.date()

    return build_retry_payload(
        customer=InvoiceCustomer(name=invoice.customer_name or "", surname=invoice.customer_surname),
        items=items,
        total=total,
        payment_method=invoice.payment_method,
        deposit_discount=invoice.deposit_discount,
        adjustments=adjustments,
        fiscal_date=fiscal_date,
    )
