"""
Fiscal emission configuration.

Settings are read once per request or retry attempt into an immutable
FiscalConfig, which is then handed to the authority client, the number
resolver and the emitter. Nothing below this module reads the environment.
"""

import base64
import binascii
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from app.config import Settings, get_settings
from app.services.fiscal_errors import ConfigurationError


logger = logging.getLogger(__name__)

# Voucher types without a tax breakdown (regime C)
TAX_EXEMPT_VOUCHER_TYPES = frozenset({11, 12, 13, 15})

CUIT_PATTERN = re.compile(r"^\d{11}$")


@dataclass(frozen=True)
class IssuerBranding:
    """Issuer data printed on the invoice document."""
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    logo_url: Optional[str] = None
    legend: Optional[str] = None
    footer_legend: Optional[str] = None


@dataclass(frozen=True)
class FiscalConfig:
    """Resolved fiscal settings for one emission attempt."""
    enabled: bool
    tax_id: Optional[str]
    point_of_sale: Optional[int]
    voucher_type: Optional[int]
    production: bool = False
    access_token: Optional[str] = None
    certificate: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    vat_rate_id: int = 5
    vat_rate: Decimal = Decimal("21")
    sdk_url: str = "https://app.afipsdk.com/api/"
    timezone: str = "America/Argentina/Buenos_Aires"
    http_timeout: float = 30.0
    probe_max_attempts: int = 20
    branding: IssuerBranding = field(default_factory=IssuerBranding)

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token)

    @property
    def has_certificate(self) -> bool:
        return bool(self.certificate and self.private_key)

    @property
    def cuit(self) -> Optional[str]:
        """Tax id as plain digits (`20-12345678-9` becomes `20123456789`)."""
        if not self.tax_id:
            return None
        return re.sub(r"[\s.\-]", "", str(self.tax_id))

    @property
    def environment(self) -> str:
        return "prod" if self.production else "dev"

    def carries_tax(self, voucher_type: int = None) -> bool:
        """Whether vouchers of this type itemize VAT."""
        voucher_type = voucher_type or self.voucher_type
        return (
            voucher_type not in TAX_EXEMPT_VOUCHER_TYPES
            and self.vat_rate_id > 0
            and self.vat_rate > 0
        )

    def today(self) -> date:
        """Current calendar date in the fiscal timezone."""
        return datetime.now(ZoneInfo(self.timezone)).date()

    def validate_for_emission(self) -> None:
        """
        Check everything an emission needs before any network call.

        Raises:
            ConfigurationError: naming the first missing setting.
        """
        if not self.enabled:
            raise ConfigurationError(
                "Fiscal billing is disabled (AFIP_FACTURACION_ACTIVA)",
                error_code="FISCAL_DISABLED",
            )
        if not self.tax_id:
            raise ConfigurationError("AFIP_CUIT is not configured", error_code="MISSING_CUIT")
        if not CUIT_PATTERN.match(self.cuit):
            raise ConfigurationError(
                f"AFIP_CUIT must have 11 digits, got {self.tax_id!r}", error_code="INVALID_CUIT"
            )
        if not self.point_of_sale:
            raise ConfigurationError(
                "AFIP_PUNTO_VENTA is not configured", error_code="MISSING_POINT_OF_SALE"
            )
        if not self.voucher_type:
            raise ConfigurationError(
                "AFIP_CBTE_TIPO is not configured", error_code="MISSING_VOUCHER_TYPE"
            )
        if not self.has_access_token and not self.has_certificate:
            raise ConfigurationError(
                "Missing fiscal credentials: configure AFIP_ACCESS_TOKEN or the "
                "AFIP_CERT/AFIP_KEY pair",
                error_code="MISSING_CREDENTIALS",
            )

    def check_certificate(self) -> None:
        """
        Make sure the certificate and key are loadable PEM.

        Raises:
            ConfigurationError: when the pair is missing or malformed.
        """
        if not self.has_certificate:
            raise ConfigurationError(
                "The fiscal gateway requires a certificate and private key. Configure "
                "AFIP_CERT and AFIP_KEY (or AFIP_CERT_PATH/AFIP_KEY_PATH).",
                error_code="MISSING_CERTIFICATE",
            )
        try:
            x509.load_pem_x509_certificate(self.certificate.encode("utf-8"))
        except ValueError as e:
            raise ConfigurationError(
                f"AFIP_CERT is not a valid PEM certificate: {e}",
                error_code="INVALID_CERTIFICATE",
            )
        try:
            serialization.load_pem_private_key(self.private_key.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"AFIP_KEY is not a valid unencrypted PEM private key: {e}",
                error_code="INVALID_PRIVATE_KEY",
            )


def _normalize_pem(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.replace("\\n", "\n")


def _decode_base64_pem(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Ignoring fiscal credential that is not valid base64")
        return None


def _read_pem_file(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    if not os.path.isabs(path):
        path = os.path.join(os.getcwd(), path)
    if not os.path.exists(path):
        logger.warning(f"Fiscal credential file not found: {path}")
        return None
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _first_pem(inline: Optional[str], encoded: Optional[str], path: Optional[str]) -> Optional[str]:
    """Inline PEM wins over base64, which wins over a file path."""
    return (
        _normalize_pem(inline)
        or _normalize_pem(_decode_base64_pem(encoded))
        or _normalize_pem(_read_pem_file(path))
    )


def resolve_fiscal_config(settings: Settings = None) -> FiscalConfig:
    """Build the fiscal configuration from application settings."""
    settings = settings or get_settings()

    return FiscalConfig(
        enabled=settings.AFIP_FACTURACION_ACTIVA,
        tax_id=settings.AFIP_CUIT,
        point_of_sale=settings.AFIP_PUNTO_VENTA,
        voucher_type=settings.AFIP_CBTE_TIPO,
        production=settings.AFIP_PRODUCCION,
        access_token=settings.AFIP_ACCESS_TOKEN,
        certificate=_first_pem(settings.AFIP_CERT, settings.AFIP_CERT_BASE64, settings.AFIP_CERT_PATH),
        private_key=_first_pem(settings.AFIP_KEY, settings.AFIP_KEY_BASE64, settings.AFIP_KEY_PATH),
        vat_rate_id=settings.AFIP_IVA_ID,
        vat_rate=Decimal(str(settings.AFIP_IVA_PORCENTAJE)),
        sdk_url=settings.AFIP_SDK_URL,
        timezone=settings.FISCAL_TIMEZONE,
        http_timeout=settings.FISCAL_HTTP_TIMEOUT_SECONDS,
        probe_max_attempts=settings.FISCAL_PROBE_MAX_ATTEMPTS,
        branding=IssuerBranding(
            name=settings.FACTURA_EMISOR_NOMBRE,
            address=settings.FACTURA_EMISOR_DOMICILIO,
            phone=settings.FACTURA_EMISOR_TELEFONO,
            email=settings.FACTURA_EMISOR_EMAIL,
            logo_url=settings.FACTURA_LOGO_URL,
            legend=settings.FACTURA_LEYENDA,
            footer_legend=settings.FACTURA_LEYENDA_FOOTER,
        ),
    )
