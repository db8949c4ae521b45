import base64
from decimal import Decimal

import pytest

from conftest import make_config, pem_pair

from app.config import Settings
from app.services.fiscal_config import resolve_fiscal_config
from app.services.fiscal_errors import ConfigurationError


def _settings(**values):
    values.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    values.setdefault("SECRET_KEY", "test-secret-key")
    return Settings(**values)


@pytest.mark.parametrize("overrides,code", [
    ({"enabled": False}, "FISCAL_DISABLED"),
    ({"tax_id": None}, "MISSING_CUIT"),
    ({"tax_id": "20-1234567-8"}, "INVALID_CUIT"),
    ({"tax_id": "CUIT 20123456789"}, "INVALID_CUIT"),
    ({"point_of_sale": None}, "MISSING_POINT_OF_SALE"),
    ({"voucher_type": None}, "MISSING_VOUCHER_TYPE"),
    ({"access_token": None}, "MISSING_CREDENTIALS"),
])
def test_validate_for_emission_names_missing_setting(overrides, code):
    with pytest.raises(ConfigurationError) as excinfo:
        make_config(**overrides).validate_for_emission()
    assert excinfo.value.error_code == code


def test_formatted_cuit_is_normalized():
    config = make_config(tax_id="20-12345678-9")

    config.validate_for_emission()
    assert config.cuit == "20123456789"
    assert make_config(tax_id=" 20.12345678.9 ").cuit == "20123456789"


def test_certificate_pair_is_enough_without_token():
    cert, key = pem_pair()
    config = make_config(access_token=None, certificate=cert, private_key=key)

    config.validate_for_emission()
    config.check_certificate()


def test_check_certificate_rejects_garbage():
    cert, key = pem_pair()

    with pytest.raises(ConfigurationError) as excinfo:
        make_config(certificate="not a cert", private_key=key).check_certificate()
    assert excinfo.value.error_code == "INVALID_CERTIFICATE"

    with pytest.raises(ConfigurationError) as excinfo:
        make_config(certificate=cert, private_key="not a key").check_certificate()
    assert excinfo.value.error_code == "INVALID_PRIVATE_KEY"

    with pytest.raises(ConfigurationError) as excinfo:
        make_config().check_certificate()
    assert excinfo.value.error_code == "MISSING_CERTIFICATE"


def test_carries_tax_only_for_discriminated_vat():
    assert make_config(voucher_type=11).carries_tax() is False
    assert make_config(voucher_type=6).carries_tax() is True
    assert make_config(voucher_type=6).carries_tax(13) is False
    assert make_config(voucher_type=1, vat_rate_id=0).carries_tax() is False
    assert make_config(voucher_type=1, vat_rate=Decimal("0")).carries_tax() is False


def test_resolve_reads_arca_aliases():
    settings = _settings(
        ARCA_CUIT=' "20111111112" ',
        ARCA_PUNTO_VENTA="4",
        ARCA_CBTE_TIPO="6",
        ARCA_ACCESS_TOKEN="arca-token",
        ARCA_PRODUCCION="true",
        FACTURA_EMISOR_NOMBRE="Peluqueria Paz",
    )

    config = resolve_fiscal_config(settings)

    assert config.tax_id == "20111111112"
    assert config.point_of_sale == 4
    assert config.voucher_type == 6
    assert config.access_token == "arca-token"
    assert config.production is True
    assert config.environment == "prod"
    assert config.branding.name == "Peluqueria Paz"


def test_resolve_blank_values_count_as_unset():
    config = resolve_fiscal_config(_settings(AFIP_CUIT="  ", AFIP_ACCESS_TOKEN=""))

    assert config.tax_id is None
    assert config.access_token is None


def test_resolve_pem_sources():
    cert, key = pem_pair()

    escaped = resolve_fiscal_config(_settings(AFIP_CERT=cert.replace("\n", "\\n"), AFIP_KEY=key))
    assert escaped.certificate == cert

    encoded = resolve_fiscal_config(_settings(
        AFIP_CERT_BASE64=base64.b64encode(cert.encode()).decode(),
        AFIP_KEY_B64=base64.b64encode(key.encode()).decode(),
    ))
    assert encoded.certificate == cert
    assert encoded.private_key == key
    encoded.check_certificate()


def test_resolve_reads_pem_files(tmp_path):
    cert, key = pem_pair()
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_text(cert)
    key_path.write_text(key)

    config = resolve_fiscal_config(_settings(AFIP_CERT_PATH=str(cert_path), AFIP_KEY_PATH=str(key_path)))

    assert config.has_certificate
    assert config.private_key == key


def test_resolve_ignores_missing_file_and_bad_base64(tmp_path):
    config = resolve_fiscal_config(_settings(
        AFIP_CERT_BASE64="%%%not-base64%%%",
        AFIP_KEY_PATH=str(tmp_path / "missing.pem"),
    ))

    assert config.certificate is None
    assert config.private_key is None
