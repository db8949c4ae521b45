import json
from datetime import date

import httpx
import pytest

from conftest import make_config, pem_pair

from app.services.fiscal_authority_client import (
    FiscalAuthorityClient,
    normalize_authority_error,
    parse_afip_date,
    to_wsfe_voucher_params,
)
from app.services.fiscal_errors import (
    AmbiguousOutcome,
    AuthenticationFailed,
    AuthorityErrorCategory,
    AuthorityRejected,
    AuthorityUnavailable,
    ConfigurationError,
    DesynchronizationError,
)


pytestmark = pytest.mark.anyio

TICKET = {"token": "tkn", "sign": "sgn", "expiration": "2099-01-01T00:00:00Z"}

VOUCHER = {
    "CantReg": 1,
    "PtoVta": 1,
    "CbteTipo": 6,
    "Concepto": 2,
    "CbteDesde": 42,
    "CbteHasta": 42,
    "CbteFch": 20261018,
    "ImpTotal": 121.0,
    "Iva": [{"Id": 5, "BaseImp": 100.0, "Importe": 21.0}],
}


class Gateway:
    """Scripted gateway: `requests` maps a WSFE method to a response or exception."""

    def __init__(self, requests=None, auth=None):
        self.requests = requests or {}
        self.auth = auth or [httpx.Response(200, json=TICKET)]
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append((request, body))
        if request.url.path.endswith("/auth"):
            outcome = self.auth.pop(0) if len(self.auth) > 1 else self.auth[0]
        else:
            outcome = self.requests[body["method"]]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def bodies(self, suffix):
        return [body for request, body in self.calls if request.url.path.endswith(suffix)]


def _client(gateway, **overrides):
    return FiscalAuthorityClient(make_config(**overrides), transport=gateway.transport)


async def test_get_last_voucher_sends_ticket_and_meta():
    gateway = Gateway({
        "FECompUltimoAutorizado": httpx.Response(
            200, json={"FECompUltimoAutorizadoResult": {"PtoVta": 1, "CbteTipo": 11, "CbteNro": 41}}
        )
    })

    assert await _client(gateway).get_last_voucher(1, 11) == 41

    request, body = gateway.calls[-1]
    assert request.headers["Authorization"] == "Bearer sdk-token"
    assert request.url.path.endswith("/requests")
    assert body["method"] == "FECompUltimoAutorizado"
    assert body["environment"] == "dev"
    assert body["wsid"] == "wsfe"
    assert body["params"]["Auth"] == {"Token": "tkn", "Sign": "sgn", "Cuit": 20123456789}
    assert body["params"]["PtoVta"] == 1

    auth_body = gateway.bodies("/auth")[0]
    assert auth_body["tax_id"] == "20123456789"
    assert "cert" not in auth_body


async def test_formatted_cuit_is_sent_as_digits():
    gateway = Gateway({
        "FECompUltimoAutorizado": httpx.Response(200, json={"FECompUltimoAutorizadoResult": {"CbteNro": 3}})
    })

    await _client(gateway, tax_id="20-12345678-9").get_last_voucher(1, 11)

    assert gateway.bodies("/requests")[0]["params"]["Auth"]["Cuit"] == 20123456789
    assert gateway.bodies("/auth")[0]["tax_id"] == "20123456789"


async def test_ticket_is_reused_between_calls():
    gateway = Gateway({
        "FECompUltimoAutorizado": httpx.Response(200, json={"FECompUltimoAutorizadoResult": {"CbteNro": 3}})
    })
    client = _client(gateway)

    await client.get_last_voucher(1, 11)
    await client.get_last_voucher(1, 11)

    assert len(gateway.bodies("/auth")) == 1
    assert len(gateway.bodies("/requests")) == 2


async def test_create_voucher_returns_cae():
    gateway = Gateway({
        "FECAESolicitar": httpx.Response(200, json={"FECAESolicitarResult": {
            "FeCabResp": {"Resultado": "A"},
            "FeDetResp": {"FECAEDetResponse": [
                {"CAE": "76123456789012", "CAEFchVto": "20261028", "CbteDesde": 42, "Resultado": "A"}
            ]},
        }})
    })

    authorization = await _client(gateway, voucher_type=6).create_voucher(dict(VOUCHER))

    assert authorization.cae == "76123456789012"
    assert authorization.cae_expires_on == date(2026, 10, 28)
    assert authorization.voucher_number == 42

    params = gateway.bodies("/requests")[0]["params"]
    assert params["FeCAEReq"]["FeCabReq"] == {"CantReg": 1, "PtoVta": 1, "CbteTipo": 6}
    detail = params["FeCAEReq"]["FeDetReq"]["FECAEDetRequest"]
    assert detail["Iva"] == {"AlicIva": [{"Id": 5, "BaseImp": 100.0, "Importe": 21.0}]}


async def test_out_of_sequence_number_is_desynchronization():
    gateway = Gateway({
        "FECAESolicitar": httpx.Response(200, json={"FECAESolicitarResult": {
            "FeCabResp": {"Resultado": "R"},
            "FeDetResp": {"FECAEDetResponse": {"Resultado": "R", "Observaciones": {"Obs": {
                "Code": 10016,
                "Msg": "El numero o fecha del comprobante no se corresponde con el proximo a autorizar",
            }}}},
        }})
    })

    with pytest.raises(DesynchronizationError) as excinfo:
        await _client(gateway).create_voucher(dict(VOUCHER))

    assert excinfo.value.category == AuthorityErrorCategory.DESYNCHRONIZATION
    assert excinfo.value.error_code == "10016"


async def test_structured_rejection_is_not_retried_as_desync():
    gateway = Gateway({
        "FECAESolicitar": httpx.Response(400, json={
            "message": "Bad request",
            "data_errors": {"ImpTotal": "must match the line amounts"},
        })
    })

    with pytest.raises(AuthorityRejected) as excinfo:
        await _client(gateway).create_voucher(dict(VOUCHER))

    assert not isinstance(excinfo.value, DesynchronizationError)
    assert "ImpTotal: must match the line amounts" in excinfo.value.message


async def test_lost_response_on_create_is_ambiguous():
    gateway = Gateway({"FECAESolicitar": httpx.ReadTimeout("timed out")})

    with pytest.raises(AmbiguousOutcome) as excinfo:
        await _client(gateway).create_voucher(dict(VOUCHER))

    assert excinfo.value.voucher_number == 42
    assert excinfo.value.point_of_sale == 1
    assert excinfo.value.voucher_type == 6
    assert excinfo.value.fiscal_date == date(2026, 10, 18)


async def test_server_error_on_create_is_ambiguous():
    gateway = Gateway({"FECAESolicitar": httpx.Response(502, text="Bad gateway")})

    with pytest.raises(AmbiguousOutcome):
        await _client(gateway).create_voucher(dict(VOUCHER))


async def test_server_error_on_query_is_unavailable():
    gateway = Gateway({"FECompUltimoAutorizado": httpx.Response(500, json={"message": "boom"})})

    with pytest.raises(AuthorityUnavailable) as excinfo:
        await _client(gateway).get_last_voucher(1, 11)

    assert not isinstance(excinfo.value, AmbiguousOutcome)


async def test_connection_refused_on_create_is_not_ambiguous():
    gateway = Gateway({"FECAESolicitar": httpx.ConnectError("connection refused")})

    with pytest.raises(AuthorityUnavailable) as excinfo:
        await _client(gateway).create_voucher(dict(VOUCHER))

    assert not isinstance(excinfo.value, AmbiguousOutcome)


async def test_unauthorized_gateway_is_authentication_failure():
    gateway = Gateway(auth=[httpx.Response(401, json={"message": "invalid token"})])

    with pytest.raises(AuthenticationFailed) as excinfo:
        await _client(gateway).get_last_voucher(1, 11)

    assert "AFIP_ACCESS_TOKEN" in excinfo.value.message


async def test_voucher_info_not_found_returns_none():
    gateway = Gateway({
        "FECompConsultar": httpx.Response(200, json={"FECompConsultarResult": {
            "Errors": {"Err": [{"Code": 602, "Msg": "No existen datos en nuestros registros"}]}
        }})
    })

    assert await _client(gateway).get_voucher_info(99, 1, 11) is None


async def test_voucher_info_returns_result():
    result_get = {"CbteDesde": 7, "CbteFch": "20261018", "ImpTotal": 50.0, "CodAutorizacion": "71234567890123"}
    gateway = Gateway({
        "FECompConsultar": httpx.Response(200, json={"FECompConsultarResult": {"ResultGet": result_get}})
    })

    assert await _client(gateway).get_voucher_info(7, 1, 11) == result_get
    params = gateway.bodies("/requests")[0]["params"]
    assert params["FeCompConsReq"] == {"CbteNro": 7, "PtoVta": 1, "CbteTipo": 11}


async def test_certificate_required_without_certificate_is_configuration_error():
    gateway = Gateway(auth=[httpx.Response(400, json={
        "message": "Invalid data",
        "data_errors": {"cert": "El campo cert es obligatorio", "key": "El campo key es obligatorio"},
    })])

    with pytest.raises(ConfigurationError) as excinfo:
        await _client(gateway).get_last_voucher(1, 11)

    assert excinfo.value.error_code == "MISSING_CERTIFICATE"


async def test_token_mode_switches_to_certificate_when_required():
    cert, key = pem_pair()
    gateway = Gateway(
        {"FECompUltimoAutorizado": httpx.Response(200, json={"FECompUltimoAutorizadoResult": {"CbteNro": 5}})},
        auth=[
            httpx.Response(400, json={"data_errors": {"cert": "El campo cert es obligatorio"}}),
            httpx.Response(200, json=TICKET),
        ],
    )
    client = _client(gateway, certificate=cert, private_key=key)

    assert await client.get_last_voucher(1, 11) == 5

    assert client.uses_certificate
    auth_bodies = gateway.bodies("/auth")
    assert "cert" not in auth_bodies[0]
    assert auth_bodies[1]["cert"] == cert


def test_missing_credentials_fail_before_any_call():
    with pytest.raises(ConfigurationError) as excinfo:
        FiscalAuthorityClient(make_config(access_token=None))

    assert excinfo.value.error_code == "MISSING_CREDENTIALS"


def test_normalize_authority_error_categories():
    assert normalize_authority_error(401, {}).category == AuthorityErrorCategory.AUTHENTICATION
    assert normalize_authority_error(503, {}).category == AuthorityErrorCategory.UNAVAILABLE

    desync = normalize_authority_error(None, {"Errors": {"Err": {"Code": 10016, "Msg": "fuera de secuencia"}}})
    assert desync.category == AuthorityErrorCategory.DESYNCHRONIZATION
    assert desync.message == "10016: fuera de secuencia"

    # Recognized by message when the code is only embedded in the text
    text_only = normalize_authority_error(400, {"message": "Error 10016: numero incorrecto"})
    assert text_only.category == AuthorityErrorCategory.DESYNCHRONIZATION

    rejected = normalize_authority_error(None, {"Errors": {"Err": {"Code": 10015, "Msg": "DocNro invalido"}}})
    assert rejected.category == AuthorityErrorCategory.REJECTED
    assert rejected.code == "10015"

    missing = normalize_authority_error(400, {"data_errors": {"cert": "The cert field is required"}})
    assert missing.category == AuthorityErrorCategory.MISSING_CREDENTIALS


def test_wsfe_params_leave_flat_data_untouched():
    data = dict(VOUCHER)
    params = to_wsfe_voucher_params(data)

    assert "PtoVta" not in params["FeCAEReq"]["FeDetReq"]["FECAEDetRequest"]
    assert data["PtoVta"] == 1


def test_parse_afip_date():
    assert parse_afip_date(20261018) == date(2026, 10, 18)
    assert parse_afip_date("2026-10-18") == date(2026, 10, 18)
    assert parse_afip_date("") is None
    assert parse_afip_date("20261340") is None
