"""
Fiscal Authority Client (ARCA/AFIP WSFE)

Thin adapter over the electronic billing web service, reached through the
AFIP SDK HTTP gateway which proxies WSFE SOAP methods as JSON:

- FECompUltimoAutorizado: last authorized voucher number
- FECAESolicitar: authorize a voucher and obtain its CAE
- FECompConsultar: query an issued voucher

Two authentication modes are supported. With an access token the gateway
signs tickets with the certificate it holds for the tax id. With a
certificate/key pair the pair is sent to the gateway to obtain the ticket.
Token mode falls back to certificate mode when the gateway reports that a
certificate is required.

Gateway documentation: https://docs.afipsdk.com/
WSFE manual: https://www.afip.gob.ar/fe/documentos/manual-desarrollador-ARCA-COMPG-v4-0.pdf
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.services.fiscal_config import FiscalConfig
from app.services.fiscal_errors import (
    AmbiguousOutcome,
    AuthenticationFailed,
    AuthorityError,
    AuthorityErrorCategory,
    ConfigurationError,
    authority_exception,
)


logger = logging.getLogger(__name__)

WSFE_SERVICE = "wsfe"
WSFE_URL_PROD = "https://servicios1.afip.gov.ar/wsfev1/service.asmx"
WSFE_URL_HOMO = "https://wswhomo.afip.gov.ar/wsfev1/service.asmx"
WSFE_WSDL_PROD = "wsfe-production.wsdl"
WSFE_WSDL_HOMO = "wsfe.wsdl"

# Authority error codes
DESYNCHRONIZATION_CODES = ("10016",)
VOUCHER_NOT_FOUND_CODE = "602"

# Exceptions raised after the request may have reached the authority
_AMBIGUOUS_TRANSPORT_ERRORS = (
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


@dataclass
class VoucherAuthorization:
    """Result of a successful FECAESolicitar call."""
    cae: str
    cae_expires_on: Optional[date]
    voucher_number: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# ==================== Date helpers ====================

def to_afip_date(value: date) -> int:
    """date(2026, 10, 18) -> 20261018"""
    return int(value.strftime("%Y%m%d"))


def parse_afip_date(value: Any) -> Optional[date]:
    """Parse an authority date (20261018, "20261018" or "2026-10-18")."""
    digits = re.sub(r"\D", "", str(value or ""))
    if len(digits) != 8:
        return None
    try:
        return datetime.strptime(digits, "%Y%m%d").date()
    except ValueError:
        return None


# ==================== Response normalization ====================

def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    return [] if value is None else [value]


def _push_unique(target: List[str], value: Any) -> None:
    text = str(value or "").strip()
    if text and text not in target:
        target.append(text)


def _format_code_message(entry: Any) -> str:
    if not isinstance(entry, dict):
        return ""
    code = str(entry.get("Code") or "").strip()
    msg = str(entry.get("Msg") or "").strip()
    if code and msg:
        return f"{code}: {msg}"
    return code or msg


def collect_error_entries(source: Any, include_observations: bool = True) -> List[Dict[str, Any]]:
    """Gather Err (and optionally Obs) entries from a WSFE result tree."""
    entries: List[Dict[str, Any]] = []
    if not isinstance(source, dict):
        return entries

    entries.extend(e for e in _as_list((source.get("Errors") or {}).get("Err")) if isinstance(e, dict))
    if include_observations:
        entries.extend(
            e for e in _as_list((source.get("Observaciones") or {}).get("Obs")) if isinstance(e, dict)
        )

    for node in _as_list((source.get("FeDetResp") or {}).get("FECAEDetResponse")):
        if not isinstance(node, dict):
            continue
        entries.extend(e for e in _as_list((node.get("Errors") or {}).get("Err")) if isinstance(e, dict))
        if include_observations:
            entries.extend(
                e for e in _as_list((node.get("Observaciones") or {}).get("Obs")) if isinstance(e, dict)
            )

    for key, value in source.items():
        if key.endswith("Result"):
            entries.extend(collect_error_entries(value, include_observations))

    return entries


def collect_messages(source: Any) -> List[str]:
    """Human readable, deduplicated messages found anywhere in a gateway payload."""
    messages: List[str] = []
    if not isinstance(source, dict):
        return messages

    if isinstance(source.get("message"), str):
        _push_unique(messages, source["message"])

    data_errors = source.get("data_errors")
    if isinstance(data_errors, dict):
        for name, value in data_errors.items():
            if value:
                _push_unique(messages, f"{name}: {value}")

    for entry in collect_error_entries(source):
        _push_unique(messages, _format_code_message(entry))

    result = source.get("Resultado")
    if isinstance(result, str):
        if result.upper() == "R":
            _push_unique(messages, "Voucher rejected by the authority")
        elif result.upper() == "O":
            _push_unique(messages, "Voucher observed by the authority")

    return messages


def is_missing_certificate_response(payload: Any) -> bool:
    """The gateway reports that cert/key are mandatory for this tax id."""
    if not isinstance(payload, dict):
        return False
    data_errors = payload.get("data_errors")
    if not isinstance(data_errors, dict):
        return False
    combined = f"{data_errors.get('cert') or ''} {data_errors.get('key') or ''}".lower()
    return "obligatorio" in combined or "required" in combined


def normalize_authority_error(
    status_code: Optional[int],
    payload: Any,
    fallback_message: str = "Fiscal authority request failed",
) -> AuthorityError:
    """
    Reduce any failed gateway/authority response to an AuthorityError.

    Desynchronization is recognized by authority code, everything else by
    HTTP status and payload shape.
    """
    messages = collect_messages(payload)
    codes = [
        str(entry.get("Code")).strip()
        for entry in collect_error_entries(payload)
        if entry.get("Code") is not None
    ]
    message = " | ".join(messages) or fallback_message
    code = codes[0] if codes else None
    details = {"status_code": status_code, "response": payload}

    if status_code == 401:
        return AuthorityError(
            code=code or "401",
            message=(
                "The fiscal gateway returned 401 Unauthorized. Check that AFIP_ACCESS_TOKEN "
                "(or ARCA_ACCESS_TOKEN) is valid for this environment. " + message
            ).strip(),
            category=AuthorityErrorCategory.AUTHENTICATION,
            status_code=status_code,
            details=details,
        )

    if is_missing_certificate_response(payload):
        return AuthorityError(
            code=code,
            message=message,
            category=AuthorityErrorCategory.MISSING_CREDENTIALS,
            status_code=status_code,
            details=details,
        )

    if status_code is not None and status_code >= 500:
        return AuthorityError(
            code=code or str(status_code),
            message=f"Fiscal gateway error {status_code}: {message}",
            category=AuthorityErrorCategory.UNAVAILABLE,
            status_code=status_code,
            details=details,
        )

    desync_pattern = re.compile(r"\b(" + "|".join(DESYNCHRONIZATION_CODES) + r")\b")
    if any(c in DESYNCHRONIZATION_CODES for c in codes) or desync_pattern.search(message):
        desync_code = next((c for c in codes if c in DESYNCHRONIZATION_CODES), DESYNCHRONIZATION_CODES[0])
        return AuthorityError(
            code=desync_code,
            message=message,
            category=AuthorityErrorCategory.DESYNCHRONIZATION,
            status_code=status_code,
            details=details,
        )

    return AuthorityError(
        code=code,
        message=message,
        category=AuthorityErrorCategory.REJECTED,
        status_code=status_code,
        details=details,
    )


def to_wsfe_voucher_params(data: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap flat voucher data into the FECAESolicitar request structure."""
    detail = dict(data)
    header = {
        "CantReg": detail.pop("CantReg", 1),
        "PtoVta": detail.pop("PtoVta"),
        "CbteTipo": detail.pop("CbteTipo"),
    }
    wrappers = {
        "Iva": "AlicIva",
        "Tributos": "Tributo",
        "CbtesAsoc": "CbteAsoc",
        "Compradores": "Comprador",
        "Opcionales": "Opcional",
    }
    for key, inner in wrappers.items():
        if detail.get(key):
            detail[key] = {inner: detail[key]}
    return {
        "FeCAEReq": {
            "FeCabReq": header,
            "FeDetReq": {"FECAEDetRequest": detail},
        }
    }


class FiscalAuthorityClient:
    """
    Client for WSFE operations through the AFIP SDK gateway.

    A single instance caches the access ticket, so reuse it for all the calls
    of one emission attempt.
    """

    AUTH_PATH = "v1/afip/auth"
    REQUESTS_PATH = "v1/afip/requests"

    # Tickets last 12 hours; refresh a little before the authority does
    TICKET_TTL = timedelta(hours=12)
    TICKET_REFRESH_MARGIN = timedelta(minutes=10)

    def __init__(self, config: FiscalConfig, transport: httpx.AsyncBaseTransport = None):
        if not config.has_access_token and not config.has_certificate:
            raise ConfigurationError(
                "Missing fiscal credentials: configure AFIP_ACCESS_TOKEN or the AFIP_CERT/AFIP_KEY pair",
                error_code="MISSING_CREDENTIALS",
            )
        self.config = config
        self._transport = transport
        self._use_certificate = not config.has_access_token
        self._ticket: Optional[Dict[str, str]] = None
        self._ticket_expiry: Optional[datetime] = None

    @property
    def uses_certificate(self) -> bool:
        return self._use_certificate

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.access_token:
            headers["Authorization"] = f"Bearer {self.config.access_token}"
        return headers

    def _request_meta(self) -> Dict[str, Any]:
        production = self.config.production
        return {
            "environment": self.config.environment,
            "wsid": WSFE_SERVICE,
            "url": WSFE_URL_PROD if production else WSFE_URL_HOMO,
            "wsdl": WSFE_WSDL_PROD if production else WSFE_WSDL_HOMO,
            "soap_v_1_2": True,
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.config.sdk_url,
            timeout=self.config.http_timeout,
            transport=self._transport,
        ) as client:
            return await client.post(path, json=payload, headers=self._headers())

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"message": response.text[:500]}

    def _switch_to_certificate(self) -> None:
        """Token mode was refused; continue with the certificate pair."""
        self.config.check_certificate()
        logger.warning("Fiscal gateway requires certificate authentication, switching from token mode")
        self._use_certificate = True
        self._ticket = None
        self._ticket_expiry = None

    async def authenticate(self, force: bool = False) -> Dict[str, str]:
        """
        Obtain (or reuse) the WSFE access ticket.

        Returns:
            Dict with token and sign
        """
        if (
            not force
            and self._ticket
            and self._ticket_expiry
            and datetime.now(timezone.utc) < self._ticket_expiry
        ):
            return self._ticket

        if self._use_certificate:
            self.config.check_certificate()

        payload: Dict[str, Any] = {
            "environment": self.config.environment,
            "tax_id": self.config.cuit,
            "wsid": WSFE_SERVICE,
            "force_create": force,
        }
        if self._use_certificate:
            payload["cert"] = self.config.certificate
            payload["key"] = self.config.private_key

        try:
            response = await self._post(self.AUTH_PATH, payload)
        except httpx.RequestError as e:
            raise authority_exception(
                AuthorityError(
                    code=None,
                    message=f"Authentication request failed: {e!r}",
                    category=AuthorityErrorCategory.UNAVAILABLE,
                ),
                context="Could not authenticate with the fiscal authority",
            )

        body = self._json(response)
        if response.status_code >= 400:
            error = normalize_authority_error(response.status_code, body, "Authentication failed")
            if error.category == AuthorityErrorCategory.MISSING_CREDENTIALS and not self._use_certificate:
                self._switch_to_certificate()
                return await self.authenticate(force=force)
            raise authority_exception(error, context="Could not authenticate with the fiscal authority")

        token = str((body or {}).get("token") or "").strip()
        sign = str((body or {}).get("sign") or "").strip()
        if not token or not sign:
            raise AuthenticationFailed(
                AuthorityError(
                    code=None,
                    message="The fiscal gateway did not return a token/sign pair for WSFE",
                    category=AuthorityErrorCategory.AUTHENTICATION,
                    details={"response": body},
                )
            )

        expiry = datetime.now(timezone.utc) + self.TICKET_TTL
        expiration = (body or {}).get("expiration")
        if expiration:
            try:
                expiry = datetime.fromisoformat(str(expiration).replace("Z", "+00:00"))
                if expiry.tzinfo is None:
                    expiry = expiry.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning(f"Unparseable ticket expiration from fiscal gateway: {expiration}")

        self._ticket = {"token": token, "sign": sign}
        self._ticket_expiry = expiry - self.TICKET_REFRESH_MARGIN
        return self._ticket

    async def _execute(
        self,
        method: str,
        params: Dict[str, Any],
        context: str,
        ambiguous: Optional[Dict[str, Any]] = None,
        _retried: bool = False,
    ) -> Dict[str, Any]:
        """
        Run one WSFE method and return its unwrapped ``{method}Result``.

        ``ambiguous`` carries the voucher being authorized; when set, failures
        that may have happened after the authority received the request raise
        AmbiguousOutcome instead of AuthorityUnavailable.
        """
        ticket = await self.authenticate()
        payload = {
            "method": method,
            "params": {
                "Auth": {
                    "Token": ticket["token"],
                    "Sign": ticket["sign"],
                    "Cuit": int(self.config.cuit),
                },
                **params,
            },
            **self._request_meta(),
        }

        try:
            response = await self._post(self.REQUESTS_PATH, payload)
        except _AMBIGUOUS_TRANSPORT_ERRORS as e:
            error = AuthorityError(
                code=None,
                message=f"No response from the fiscal authority: {e!r}",
                category=(
                    AuthorityErrorCategory.AMBIGUOUS if ambiguous else AuthorityErrorCategory.UNAVAILABLE
                ),
            )
            if ambiguous:
                raise AmbiguousOutcome(error, context=context, **ambiguous)
            raise authority_exception(error, context=context)
        except httpx.RequestError as e:
            raise authority_exception(
                AuthorityError(
                    code=None,
                    message=f"Fiscal authority unreachable: {e!r}",
                    category=AuthorityErrorCategory.UNAVAILABLE,
                ),
                context=context,
            )

        body = self._json(response)

        if response.status_code >= 400:
            error = normalize_authority_error(response.status_code, body)
            if error.category == AuthorityErrorCategory.AUTHENTICATION:
                self._ticket = None
                self._ticket_expiry = None
            if (
                error.category == AuthorityErrorCategory.MISSING_CREDENTIALS
                and not self._use_certificate
                and not _retried
            ):
                self._switch_to_certificate()
                return await self._execute(method, params, context, ambiguous, _retried=True)
            if error.category == AuthorityErrorCategory.UNAVAILABLE and ambiguous:
                error.category = AuthorityErrorCategory.AMBIGUOUS
                raise AmbiguousOutcome(error, context=context, **ambiguous)
            raise authority_exception(error, context=context)

        if isinstance(body, dict) and f"{method}Result" in body:
            return body[f"{method}Result"] or {}
        return body or {}

    async def get_last_voucher(self, point_of_sale: int, voucher_type: int) -> int:
        """Last voucher number the authority authorized for (point of sale, type)."""
        result = await self._execute(
            "FECompUltimoAutorizado",
            {"PtoVta": point_of_sale, "CbteTipo": voucher_type},
            context="Could not query the last authorized voucher",
        )
        errors = collect_error_entries(result, include_observations=False)
        if errors:
            raise authority_exception(
                normalize_authority_error(None, result),
                context="Could not query the last authorized voucher",
            )
        return int(result.get("CbteNro") or 0)

    async def create_voucher(self, data: Dict[str, Any]) -> VoucherAuthorization:
        """
        Request a CAE for one voucher.

        Args:
            data: Flat voucher data (PtoVta, CbteTipo, CbteDesde, CbteFch, ImpTotal, ...)

        Raises:
            AmbiguousOutcome: the request may have been processed; query before retrying
        """
        number = int(data["CbteDesde"])
        context = "Could not authorize the voucher"
        ambiguous = {
            "voucher_number": number,
            "point_of_sale": int(data["PtoVta"]),
            "voucher_type": int(data["CbteTipo"]),
            "fiscal_date": parse_afip_date(data.get("CbteFch")),
        }
        result = await self._execute(
            "FECAESolicitar",
            to_wsfe_voucher_params(data),
            context=context,
            ambiguous=ambiguous,
        )

        detail = (result.get("FeDetResp") or {}).get("FECAEDetResponse")
        if isinstance(detail, list):
            detail = detail[0] if detail else None
        detail = detail or {}

        cae = str(detail.get("CAE") or "").strip()
        rejected = str(detail.get("Resultado") or result.get("Resultado") or "").upper() == "R"
        if rejected or not cae or collect_error_entries(result, include_observations=False):
            raise authority_exception(
                normalize_authority_error(None, result, "The authority did not return a CAE"),
                context=context,
            )

        return VoucherAuthorization(
            cae=cae,
            cae_expires_on=parse_afip_date(detail.get("CAEFchVto")),
            voucher_number=int(detail.get("CbteDesde") or number),
            raw=result,
        )

    async def get_voucher_info(
        self,
        number: int,
        point_of_sale: int,
        voucher_type: int,
    ) -> Optional[Dict[str, Any]]:
        """
        Fetch an issued voucher.

        Returns:
            The authority's ResultGet dict (CbteFch, ImpTotal, CodAutorizacion, ...),
            or None when the voucher does not exist.
        """
        result = await self._execute(
            "FECompConsultar",
            {
                "FeCompConsReq": {
                    "CbteNro": number,
                    "PtoVta": point_of_sale,
                    "CbteTipo": voucher_type,
                }
            },
            context=f"Could not query voucher {number}",
        )
        errors = collect_error_entries(result, include_observations=False)
        if errors:
            if any(str(e.get("Code")).strip() == VOUCHER_NOT_FOUND_CODE for e in errors):
                return None
            raise authority_exception(
                normalize_authority_error(None, result),
                context=f"Could not query voucher {number}",
            )
        return result.get("ResultGet") or None
