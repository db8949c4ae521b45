import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import OTHER_TENANT_ID, TENANT_ID, FakeAuthority, create_tables, make_config, make_engine, unavailable

from app.api.deps import get_emitter_factory, get_fiscal_config
from app.config import settings
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.services.invoice_document_service import InvoiceDocumentRenderer
from app.services.invoice_emitter import InvoiceEmitter


pytestmark = pytest.mark.anyio

BASE = "/api/v1/fiscal-invoices"

SALE = {
    "customer": {"name": "Ana", "surname": "Paz"},
    "items": [
        {"kind": "service", "description": "Corte", "quantity": 1, "unit_price": 100, "subtotal": 100},
    ],
    "total": 70,
    "payment_method": "tarjeta",
    "deposit_discount": 30,
    "adjustments": [{"description": "Seña aplicada", "amount": 30}],
    "origin_kind": "appointment",
    "origin_id": "turno-7",
}


class _Backend:
    """Fiscal settings and authority seen by the app during one test."""

    def __init__(self):
        self.config = make_config()
        self.authority = FakeAuthority()

    def emitter_factory(self):
        def factory(config):
            return InvoiceEmitter(config, client=self.authority, renderer=InvoiceDocumentRenderer())
        return factory


@pytest.fixture
def backend():
    return _Backend()


@pytest.fixture
async def client(backend):
    engine = make_engine()
    await create_tables(engine)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fiscal_config] = lambda: backend.config
    app.dependency_overrides[get_emitter_factory] = backend.emitter_factory
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        await engine.dispose()


def auth(role="reception", tenant_id=TENANT_ID):
    token = create_access_token(uuid.uuid4(), tenant_id, role, username=f"{role}-user")
    return {"Authorization": f"Bearer {token}"}


CRON = {"Authorization": f"Bearer {settings.CRON_SECRET}"}


async def _bill(client, headers=None, sale=None):
    response = await client.post(BASE, json=sale or SALE, headers=headers or auth())
    assert response.status_code == 201, response.text
    return response.json()


async def test_bill_sale_issues_invoice(client, backend):
    backend.authority.last = 41

    body = await _bill(client)

    assert body["status"] == "issued"
    assert body["warning"] is None
    invoice = body["invoice"]
    assert invoice["voucher_number"] == 42
    assert invoice["formatted_number"] == "00001-00000042"
    assert Decimal(str(invoice["total"])) == Decimal("70")
    assert invoice["has_document"] is True
    assert invoice["created_by_username"] == "reception-user"
    assert [Decimal(str(line["subtotal"])) for line in invoice["items"]] == [Decimal("100"), Decimal("-30")]


async def test_bill_sale_survives_authority_outage(client, backend):
    backend.authority.last_voucher_error = unavailable("gateway down")

    body = await _bill(client)

    assert body["status"] == "pending"
    assert "gateway down" in body["warning"]
    assert body["invoice"]["voucher_number"] is None
    assert body["invoice"]["retry_next_at"] is not None


async def test_bill_sale_with_billing_disabled_returns_warning(client, backend):
    backend.config = make_config(enabled=False)

    body = await _bill(client)

    assert body["invoice"] is None
    assert body["status"] is None
    assert "disabled" in body["warning"]


async def test_bill_sale_validates_body(client):
    response = await client.post(BASE, json={**SALE, "items": []}, headers=auth())
    assert response.status_code == 422


async def test_operator_token_and_role_are_required(client):
    assert (await client.post(BASE, json=SALE)).status_code == 401
    assert (await client.post(BASE, json=SALE, headers={"Authorization": "Bearer garbage"})).status_code == 401
    assert (await client.post(BASE, json=SALE, headers=auth("viewer"))).status_code == 403
    # The cron secret is not an operator token
    assert (await client.post(BASE, json=SALE, headers=CRON)).status_code == 401


async def test_get_list_and_document(client):
    invoice = (await _bill(client))["invoice"]

    response = await client.get(f"{BASE}/{invoice['id']}", headers=auth())
    assert response.status_code == 200
    assert response.json()["cae"] == invoice["cae"]

    response = await client.get(BASE, params={"q": "ana", "status": "issued"}, headers=auth())
    assert response.status_code == 200
    listing = response.json()
    assert listing["total"] == 1
    assert listing["pages"] == 1
    assert listing["items"][0]["id"] == invoice["id"]

    response = await client.get(f"{BASE}/{invoice['id']}/document", headers=auth())
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert 'filename="Factura-1-1.html"' in response.headers["content-disposition"]
    assert invoice["cae"] in response.text


async def test_invoices_are_tenant_scoped(client):
    invoice = (await _bill(client))["invoice"]
    other = auth(tenant_id=OTHER_TENANT_ID)

    assert (await client.get(f"{BASE}/{invoice['id']}", headers=other)).status_code == 404
    assert (await client.get(f"{BASE}/{invoice['id']}/document", headers=other)).status_code == 404
    assert (await client.get(BASE, headers=other)).json()["total"] == 0
    assert (await client.get(f"{BASE}/{uuid.uuid4()}", headers=auth())).status_code == 404


async def test_credit_note_flow(client):
    invoice = (await _bill(client))["invoice"]
    url = f"{BASE}/{invoice['id']}/credit-note"

    assert (await client.post(url, json={}, headers=auth("reception"))).status_code == 403

    response = await client.post(url, json={"reason": "Error de carga"}, headers=auth("owner"))
    assert response.status_code == 201, response.text
    credit_note = response.json()
    assert credit_note["kind"] == "credit_note"
    assert credit_note["voucher_type"] == 13
    assert credit_note["related_invoice_id"] == invoice["id"]
    assert credit_note["note"] == "Error de carga"

    response = await client.get(f"{BASE}/{invoice['id']}", headers=auth())
    assert response.json()["status"] == "credited"
    assert response.json()["credit_note_id"] == credit_note["id"]

    response = await client.post(url, headers=auth("admin"))
    assert response.status_code == 409
    assert response.headers["X-Error-Code"] == "INVOICE_NOT_ISSUED"


async def test_credit_note_for_unknown_invoice_is_404(client):
    response = await client.post(f"{BASE}/{uuid.uuid4()}/credit-note", json={}, headers=auth("owner"))

    assert response.status_code == 404
    assert response.headers["X-Error-Code"] == "INVOICE_NOT_FOUND"


async def test_cron_sweep_issues_pending_invoices(client, backend):
    backend.authority.last_voucher_error = unavailable()
    pending = (await _bill(client))["invoice"]
    await _bill(client, headers=auth(tenant_id=OTHER_TENANT_ID))
    backend.authority.last_voucher_error = None

    # Not due yet
    response = await client.post(f"{BASE}/retries", headers=CRON)
    assert response.status_code == 200
    assert response.json()["processed"] == 0
    assert response.json()["pending"] == 2

    response = await client.get(f"{BASE}/retries", params={"invoice_id": pending["id"]}, headers=auth())
    report = response.json()
    assert response.status_code == 200
    assert report["issued"] == 1
    assert report["processed"] == report["issued"] + report["failed"] + report["invalid"]
    # Only the operator's tenant is counted
    assert report["pending"] == 0

    response = await client.get(f"{BASE}/{pending['id']}", headers=auth())
    assert response.json()["status"] == "issued"


async def test_retry_status_does_not_process(client, backend):
    backend.authority.last_voucher_error = unavailable()
    await _bill(client)
    backend.authority.last_voucher_error = None

    response = await client.get(f"{BASE}/retries", params={"status": "true"}, headers=CRON)

    assert response.status_code == 200
    assert response.json() == {
        "pending": 1,
        "overdue": 0,
        "interval_minutes": settings.FISCAL_RETRY_INTERVAL_MINUTES,
    }
    assert backend.authority.created == []


async def test_forced_operator_retry(client, backend):
    backend.authority.last_voucher_error = unavailable()
    await _bill(client)
    backend.authority.last_voucher_error = None

    response = await client.post(f"{BASE}/retries", params={"force": "true"}, headers=auth("admin"))

    assert response.json()["issued"] == 1


async def test_retry_requires_credentials_and_billing_role(client):
    assert (await client.post(f"{BASE}/retries")).status_code == 401
    assert (await client.post(f"{BASE}/retries", headers={"Authorization": "Bearer nope"})).status_code == 401
    assert (await client.post(f"{BASE}/retries", headers=auth("viewer"))).status_code == 403


async def test_retry_with_incomplete_settings_is_503(client, backend):
    backend.config = make_config(access_token=None)

    response = await client.post(f"{BASE}/retries", headers=CRON)

    assert response.status_code == 503
    assert response.headers["X-Error-Code"] == "MISSING_CREDENTIALS"


async def test_retry_unknown_invoice_is_404(client):
    response = await client.post(f"{BASE}/retries", params={"invoice_id": str(uuid.uuid4())}, headers=auth())

    assert response.status_code == 404
    assert response.headers["X-Error-Code"] == "INVOICE_NOT_FOUND"
