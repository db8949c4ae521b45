"""
Invoice document rendering.

Renders an issued voucher as a printable HTML document carrying the fiscal
QR code required by ARCA (RG 4892). The QR encodes
https://www.arca.gob.ar/fe/qr/?p=<base64 json> with the voucher data.
"""

import base64
import json
import logging
from html import escape
from io import BytesIO
from typing import Optional
from urllib.parse import quote

import qrcode

from app.services.invoice_emitter import IssuedInvoice, InvoiceDocument
from app.services.invoice_emitter import RECEIVER_DOC_NUMBER, RECEIVER_DOC_TYPE, CURRENCY_ID, CURRENCY_RATE


logger = logging.getLogger(__name__)

FISCAL_QR_BASE_URL = "https://www.arca.gob.ar/fe/qr/"


def build_fiscal_qr_url(invoice: IssuedInvoice) -> Optional[str]:
    """Verification URL encoded in the fiscal QR, or None without CUIT/CAE."""
    cuit = int("".join(c for c in str(invoice.tax_id or "") if c.isdigit()) or 0)
    cod_aut = int("".join(c for c in str(invoice.cae or "") if c.isdigit()) or 0)
    if not cuit or not cod_aut:
        return None

    payload = {
        "ver": 1,
        "fecha": invoice.fiscal_date.isoformat(),
        "cuit": cuit,
        "ptoVta": invoice.point_of_sale,
        "tipoCmp": invoice.voucher_type,
        "nroCmp": invoice.voucher_number,
        "importe": float(invoice.total),
        "moneda": CURRENCY_ID,
        "ctz": CURRENCY_RATE,
        "tipoDocRec": RECEIVER_DOC_TYPE,
        "nroDocRec": RECEIVER_DOC_NUMBER,
        "tipoCodAut": "E",
        "codAut": cod_aut,
    }
    encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
    return f"{FISCAL_QR_BASE_URL}?p={quote(encoded, safe='')}"


def generate_qr_png(data: str) -> bytes:
    """Encode text as a QR code PNG image."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=6,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def _money(value) -> str:
    return f"$ {value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


def _text(value) -> str:
    return escape(str(value)) if value is not None else ""


class InvoiceDocumentRenderer:
    """Default DocumentRenderer: HTML with embedded QR image."""

    content_type = "text/html"

    def filename_for(self, invoice: IssuedInvoice) -> str:
        prefix = "NotaCredito" if invoice.voucher_type in (3, 8, 13) else "Factura"
        return f"{prefix}-{invoice.point_of_sale}-{invoice.voucher_number}.html"

    def render(self, invoice: IssuedInvoice) -> InvoiceDocument:
        html = self._generate_html(invoice)
        return InvoiceDocument(
            content=html.encode("utf-8"),
            filename=self.filename_for(invoice),
            content_type=self.content_type,
        )

    def _qr_image_tag(self, invoice: IssuedInvoice) -> str:
        qr_url = build_fiscal_qr_url(invoice)
        if not qr_url:
            return ""
        try:
            png = generate_qr_png(qr_url)
        except (ValueError, OSError) as e:
            logger.warning(f"Could not generate fiscal QR for {invoice.formatted_number}: {e}")
            return ""
        data_url = "data:image/png;base64," + base64.b64encode(png).decode("ascii")
        return f'<a href="{escape(qr_url)}"><img class="qr" src="{data_url}" alt="QR ARCA"/></a>'

    def _generate_html(self, invoice: IssuedInvoice) -> str:
        branding = invoice.branding
        rows_html = ""
        for item in invoice.items:
            rows_html += f"""
            <tr>
                <td>{_text(item.description)}</td>
                <td style="text-align: center;">{item.quantity.normalize():f}</td>
                <td style="text-align: right;">{_money(item.unit_price)}</td>
                <td style="text-align: right;">{_money(item.subtotal)}</td>
            </tr>
            """

        tax_html = ""
        if invoice.vat_amount:
            tax_html = f"""
                <tr><td>Neto gravado</td><td style="text-align: right;">{_money(invoice.net_amount)}</td></tr>
                <tr><td>IVA</td><td style="text-align: right;">{_money(invoice.vat_amount)}</td></tr>
            """

        deposit_html = ""
        if invoice.deposit_discount:
            deposit_html = f"""
                <tr><td>Seña aplicada</td><td style="text-align: right;">{_money(invoice.deposit_discount)}</td></tr>
            """

        associated_html = ""
        if invoice.associated_voucher:
            asoc = invoice.associated_voucher
            associated_html = (
                f"<p>Comprobante asociado: {asoc.point_of_sale:05d}-{asoc.number:08d}</p>"
            )

        logo_html = f'<img class="logo" src="{_text(branding.logo_url)}"/>' if branding.logo_url else ""
        cae_expiry = invoice.cae_expires_on.strftime("%d/%m/%Y") if invoice.cae_expires_on else ""

        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8"/>
            <title>{_text(invoice.label)} {invoice.formatted_number}</title>
            <style>
                body {{ font-family: Arial, sans-serif; font-size: 12px; margin: 20px; }}
                .header {{ display: flex; justify-content: space-between; border-bottom: 1px solid #000; }}
                .letter {{ font-size: 32px; font-weight: bold; border: 1px solid #000; padding: 4px 14px; }}
                .logo {{ max-height: 60px; }}
                .data-table {{ width: 100%; border-collapse: collapse; margin-top: 10px; }}
                .data-table th, .data-table td {{ border: 1px solid #000; padding: 5px; }}
                .data-table th {{ background: #f0f0f0; }}
                .totals {{ margin-top: 15px; margin-left: auto; }}
                .footer {{ margin-top: 30px; display: flex; align-items: center; gap: 20px; }}
                .qr {{ width: 120px; height: 120px; }}
            </style>
        </head>
        <body>
            <div class="header">
                <div>
                    {logo_html}
                    <h2>{_text(branding.name)}</h2>
                    <div>{_text(branding.address)}</div>
                    <div>{_text(branding.phone)} {_text(branding.email)}</div>
                    <div>CUIT: {_text(invoice.tax_id)}</div>
                </div>
                <div class="letter">{_text(invoice.letter)}<br/><small>COD. {invoice.voucher_type:03d}</small></div>
                <div>
                    <h2>{_text(invoice.label)}</h2>
                    <div>N° {invoice.formatted_number}</div>
                    <div>Fecha: {invoice.fiscal_date.strftime("%d/%m/%Y")}</div>
                </div>
            </div>

            <p>Cliente: <strong>{_text(invoice.customer.full_name)}</strong> - Consumidor Final</p>
            <p>Forma de pago: {_text(invoice.payment_method)}</p>
            {associated_html}
            {f"<p>{_text(branding.legend)}</p>" if branding.legend else ""}

            <table class="data-table">
                <thead>
                    <tr><th>Descripción</th><th>Cant.</th><th>Precio unit.</th><th>Subtotal</th></tr>
                </thead>
                <tbody>
                    {rows_html}
                </tbody>
            </table>

            <table class="totals">
                {tax_html}
                {deposit_html}
                <tr><td><strong>Total</strong></td><td style="text-align: right;"><strong>{_money(invoice.total)}</strong></td></tr>
            </table>

            <div class="footer">
                {self._qr_image_tag(invoice)}
                <div>
                    <div>CAE: <strong>{_text(invoice.cae)}</strong></div>
                    <div>Vto. CAE: {cae_expiry}</div>
                    {f"<div>{_text(branding.footer_legend)}</div>" if branding.footer_legend else ""}
                </div>
            </div>
        </body>
        </html>
        """
