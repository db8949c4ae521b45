import os
import sys
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

# Settings are read at import time; point them at throwaway values first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("SUPABASE_URL", "")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "")

# Allow running pytest from the repo root or from within `tests/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base  # noqa: E402
from app.models import fiscal_invoice  # noqa: E402,F401
from app.services.fiscal_authority_client import VoucherAuthorization, to_afip_date  # noqa: E402
from app.services.fiscal_config import FiscalConfig  # noqa: E402
from app.services.fiscal_errors import (  # noqa: E402
    AmbiguousOutcome,
    AuthorityError,
    AuthorityErrorCategory,
    AuthorityUnavailable,
    DesynchronizationError,
)


TENANT_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_config(**overrides) -> FiscalConfig:
    values = dict(
        enabled=True,
        tax_id="20123456789",
        point_of_sale=1,
        voucher_type=11,
        access_token="sdk-token",
        probe_max_attempts=5,
        timezone="UTC",
    )
    values.update(overrides)
    return FiscalConfig(**values)


@pytest.fixture
def config() -> FiscalConfig:
    return make_config()


def unavailable(message: str = "connection refused") -> AuthorityUnavailable:
    return AuthorityUnavailable(
        AuthorityError(code=None, message=message, category=AuthorityErrorCategory.UNAVAILABLE)
    )


class FakeAuthority:
    """
    In-memory WSFE stream for one (point of sale, voucher type).

    Authorizes only the exact next number, like the real service, and
    rejects anything else with a desynchronization error.
    """

    def __init__(self, last: int = 0, today: date = None):
        self.last = last
        self.today = today or date.today()
        self.vouchers = {}
        self.created = []
        self.requests = []
        # Values returned by get_last_voucher before falling back to `last`
        self.stale_last = []
        self.last_voucher_error = None
        self.info_error = None
        # Exceptions raised by create_voucher before the authority sees the request
        self.create_failures = []
        # Numbers the authority authorizes but whose response is lost
        self.lose_response_for = set()

    def add_voucher(self, number: int, total, fiscal_date: date = None, cae: str = None):
        self.vouchers[number] = {
            "CbteDesde": number,
            "CbteHasta": number,
            "CbteFch": str(to_afip_date(fiscal_date or self.today)),
            "ImpTotal": float(total),
            "CodAutorizacion": cae or f"7{number:013d}",
            "FchVto": str(to_afip_date((fiscal_date or self.today) + timedelta(days=10))),
        }
        self.last = max(self.last, number)

    async def get_last_voucher(self, point_of_sale: int, voucher_type: int) -> int:
        if self.last_voucher_error is not None:
            raise self.last_voucher_error
        if self.stale_last:
            return self.stale_last.pop(0)
        return self.last

    async def get_voucher_info(self, number: int, point_of_sale: int, voucher_type: int):
        if self.info_error is not None:
            raise self.info_error
        return self.vouchers.get(number)

    async def create_voucher(self, data: dict) -> VoucherAuthorization:
        number = int(data["CbteDesde"])
        self.created.append(number)
        self.requests.append(data)
        if self.create_failures:
            raise self.create_failures.pop(0)

        if number != self.last + 1:
            raise DesynchronizationError(
                AuthorityError(
                    code="10016",
                    message="10016: El numero o fecha del comprobante no se corresponde con el proximo a autorizar",
                    category=AuthorityErrorCategory.DESYNCHRONIZATION,
                )
            )

        fiscal_date = datetime.strptime(str(data["CbteFch"]), "%Y%m%d").date()
        self.add_voucher(number, data["ImpTotal"], fiscal_date)
        if number in self.lose_response_for:
            self.lose_response_for.discard(number)
            raise lost_response(number, int(data["PtoVta"]), int(data["CbteTipo"]))

        info = self.vouchers[number]
        return VoucherAuthorization(
            cae=info["CodAutorizacion"],
            cae_expires_on=fiscal_date + timedelta(days=10),
            voucher_number=number,
            raw=info,
        )


def lost_response(number: int, point_of_sale: int = 1, voucher_type: int = 11) -> AmbiguousOutcome:
    return AmbiguousOutcome(
        AuthorityError(code=None, message="ReadTimeout", category=AuthorityErrorCategory.AMBIGUOUS),
        voucher_number=number,
        point_of_sale=point_of_sale,
        voucher_type=voucher_type,
    )


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


def make_engine():
    """Private in-memory database; StaticPool keeps a single connection alive."""
    return create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


async def create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def db_session():
    engine = make_engine()
    await create_tables(engine)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


@lru_cache()
def pem_pair():
    """Self-signed certificate and unencrypted key, both PEM text."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "fiscal-test")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    return cert_pem, key_pem
