import datetime as dt
import json

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from redsys_payments.config import Settings, get_settings
from redsys_payments.database import Base, get_db
from redsys_payments.gateway import GatewayClient
from redsys_payments.main import app as fastapi_app
from redsys_payments.models import Subscription
from redsys_payments.routes import get_gateway_client
from redsys_payments.signature import (
    SIGNATURE_VERSION,
    create_signature,
    decode_merchant_params,
    encode_merchant_params,
)

# Public sandbox key published by the gateway for integration testing
TEST_SECRET_KEY = "sq7HjrUOBfKmC576ILgskD5srU870gJ7"
CRON_SECRET = "cron-test-secret"

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def sign_params(params, key=TEST_SECRET_KEY):
    params_b64 = encode_merchant_params(params)
    order = params.get("Ds_Order") or params.get("DS_MERCHANT_ORDER")
    return {
        "Ds_SignatureVersion": SIGNATURE_VERSION,
        "Ds_MerchantParameters": params_b64,
        "Ds_Signature": create_signature(key, params_b64, order),
    }


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url=SQLALCHEMY_DATABASE_URL,
        app_env="test",
        redsys_env="test",
        redsys_merchant_code="999008881",
        redsys_secret_key_test=TEST_SECRET_KEY,
        cron_secret=CRON_SECRET,
        renewal_max_concurrency=2,
    )


@pytest.fixture
def gateway_responses():
    """Map of card token -> Ds_Response code (or "timeout"/"http_error")."""
    return {}


@pytest.fixture
def gateway_requests():
    return []


@pytest.fixture
def gateway(settings, gateway_responses, gateway_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        sent = decode_merchant_params(json.loads(request.content)["Ds_MerchantParameters"])
        gateway_requests.append(sent)

        outcome = gateway_responses.get(sent.get("DS_MERCHANT_IDENTIFIER"), "0000")
        if outcome == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if outcome == "http_error":
            return httpx.Response(502, text="Bad Gateway")

        reply = {
            "Ds_Order": sent["DS_MERCHANT_ORDER"],
            "Ds_Amount": sent["DS_MERCHANT_AMOUNT"],
            "Ds_Currency": "978",
            "Ds_Response": outcome,
            "Ds_AuthorisationCode": "123456" if outcome == "0000" else "",
            "Ds_Merchant_Cof_Txnid": "COF-NEW-1",
        }
        return httpx.Response(200, json=sign_params(reply))

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayClient(settings, http_client=http_client)


@pytest.fixture
def client(settings, gateway):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    fastapi_app.dependency_overrides[get_gateway_client] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_subscription(db):
    def _make(**overrides):
        end = dt.datetime(2025, 1, 31, 10, 0, 0)
        values = dict(
            user_id="user-1",
            status="active",
            plan_name="Adulto Mensual",
            interval="monthly",
            amount=1000,
            currency="978",
            current_period_start=dt.datetime(2024, 12, 31, 10, 0, 0),
            current_period_end=end,
            next_renewal_at=end,
            recurring_token="tok-ok",
            cof_transaction_id="COF-1",
        )
        values.update(overrides)
        sub = Subscription(**values)
        db.add(sub)
        db.commit()
        db.refresh(sub)
        return sub

    return _make
