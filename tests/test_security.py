import uuid
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from conftest import TENANT_ID

from app.api.deps import get_current_operator, get_retry_caller, require_roles
from app.config import settings
from app.core.security import create_access_token, decode_token, verify_access_token, verify_cron_secret


pytestmark = pytest.mark.anyio


def _bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_access_token_carries_operator_claims():
    user_id = uuid.uuid4()
    token = create_access_token(user_id, TENANT_ID, "owner", username="dueña")

    claims = verify_access_token(token)

    assert claims["sub"] == str(user_id)
    assert claims["tenant_id"] == str(TENANT_ID)
    assert claims["role"] == "owner"
    assert claims["username"] == "dueña"
    assert claims["type"] == "access"


def test_expired_or_foreign_tokens_are_rejected():
    expired = create_access_token(uuid.uuid4(), TENANT_ID, "owner", expires_delta=timedelta(minutes=-1))
    assert verify_access_token(expired) is None

    refresh = create_access_token(uuid.uuid4(), TENANT_ID, "owner", additional_claims={"type": "refresh"})
    assert decode_token(refresh) is not None
    assert verify_access_token(refresh) is None

    assert verify_access_token("not-a-jwt") is None


def test_cron_secret_check(monkeypatch):
    assert verify_cron_secret(settings.CRON_SECRET) is True
    assert verify_cron_secret("wrong") is False
    assert verify_cron_secret(None) is False

    monkeypatch.setattr(settings, "CRON_SECRET", "")
    assert verify_cron_secret("") is False
    assert verify_cron_secret("anything") is False


async def test_current_operator_from_token():
    user_id = uuid.uuid4()
    token = create_access_token(user_id, TENANT_ID, "Reception", username="recepcion")

    operator = await get_current_operator(_bearer(token))

    assert operator.id == user_id
    assert operator.tenant_id == TENANT_ID
    assert operator.role == "reception"
    assert operator.username == "recepcion"


async def test_current_operator_requires_valid_token():
    with pytest.raises(HTTPException) as excinfo:
        await get_current_operator(None)
    assert excinfo.value.status_code == 401

    bad_ids = create_access_token("not-a-uuid", TENANT_ID, "owner")
    with pytest.raises(HTTPException) as excinfo:
        await get_current_operator(_bearer(bad_ids))
    assert excinfo.value.status_code == 401


async def test_require_roles():
    dependency = require_roles("admin", "owner")
    owner = await get_current_operator(_bearer(create_access_token(uuid.uuid4(), TENANT_ID, "owner")))
    reception = await get_current_operator(_bearer(create_access_token(uuid.uuid4(), TENANT_ID, "reception")))

    assert await dependency(owner) is owner
    with pytest.raises(HTTPException) as excinfo:
        await dependency(reception)
    assert excinfo.value.status_code == 403


async def test_retry_caller_accepts_cron_secret_or_billing_operator():
    cron = await get_retry_caller(_bearer(settings.CRON_SECRET))
    assert cron.is_cron is True
    assert cron.operator is None

    caller = await get_retry_caller(_bearer(create_access_token(uuid.uuid4(), TENANT_ID, "reception")))
    assert caller.is_cron is False
    assert caller.operator.tenant_id == TENANT_ID

    with pytest.raises(HTTPException) as excinfo:
        await get_retry_caller(_bearer(create_access_token(uuid.uuid4(), TENANT_ID, "stylist")))
    assert excinfo.value.status_code == 403

    with pytest.raises(HTTPException) as excinfo:
        await get_retry_caller(_bearer("wrong-secret"))
    assert excinfo.value.status_code == 401
