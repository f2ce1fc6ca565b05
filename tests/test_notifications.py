import pytest

from conftest import TestingSessionLocal, sign_params
from redsys_payments.errors import InternalError
from redsys_payments.ledger import TransactionLedger
from redsys_payments.models import PaymentContext, PaymentTransaction, ShopOrder
from redsys_payments.notifications import NotificationHandler
from redsys_payments.orders import OrderService


def _seed(gateway_order="2501011234AB", context=PaymentContext.SHOP, amount=1000, with_order=True):
    db = TestingSessionLocal()
    TransactionLedger(db).create_pending(gateway_order, context, amount)
    if with_order:
        db.add(ShopOrder(gateway_order=gateway_order))
        db.commit()
    db.close()


def _state(gateway_order="2501011234AB"):
    db = TestingSessionLocal()
    txn = db.query(PaymentTransaction).filter_by(gateway_order=gateway_order).first()
    order = db.query(ShopOrder).filter_by(gateway_order=gateway_order).first()
    result = (txn.status if txn else None, order.status if order else None, txn)
    db.close()
    return result


def _notification(order="2501011234AB", code="0000", **extra):
    params = {
        "Ds_Order": order,
        "Ds_Response": code,
        "Ds_Amount": "1000",
        "Ds_Currency": "978",
        "Ds_AuthorisationCode": "123456",
        "Ds_CardNumber": "454881******0004",
        "Ds_Card_Brand": "1",
        "Ds_Card_Country": "724",
    }
    params.update(extra)
    return sign_params(params)


def test_shop_payment_authorized_marks_order_paid(client):
    _seed()

    response = client.post("/payments/notification", json=_notification())

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    status, order_status, txn = _state()
    assert status == "authorized"
    assert order_status == "paid"
    assert txn.authorization_code == "123456"
    assert txn.last_four == "0004"
    assert txn.card_country == "724"


def test_form_encoded_notification_accepted(client):
    _seed()

    response = client.post("/payments/notification", data=_notification())

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert _state()[:2] == ("authorized", "paid")


def test_unknown_order_acknowledged_without_writes(client):
    response = client.post("/payments/notification", json=_notification(order="2501XNOTFOUN"))

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    db = TestingSessionLocal()
    assert db.query(PaymentTransaction).count() == 0
    db.close()


def test_late_authorization_after_denial_is_ignored(client):
    """First resolution wins: a denied row stays denied."""
    _seed()

    denied = client.post("/payments/notification", json=_notification(code="0190"))
    late = client.post("/payments/notification", json=_notification(code="0000"))

    assert denied.json() == {"status": "ok"}
    assert late.status_code == 200
    assert late.json() == {"status": "ok", "message": "Already processed"}
    status, order_status, txn = _state()
    assert status == "denied"
    assert order_status == "pending"
    assert txn.response_code == "0190"


def test_duplicate_delivery_marks_order_paid_once(client, mocker):
    _seed()
    mark_paid = mocker.spy(OrderService, "mark_paid")

    client.post("/payments/notification", json=_notification())
    client.post("/payments/notification", json=_notification())

    assert mark_paid.call_count == 1


def test_missing_parameters_still_acknowledged(client):
    response = client.post("/payments/notification", json={"Ds_SignatureVersion": "HMAC_SHA256_V1"})

    assert response.status_code == 200
    assert response.json() == {"status": "error", "message": "Missing parameters"}


def test_empty_body_still_acknowledged(client):
    response = client.post("/payments/notification", content=b"", headers={"content-type": "text/plain"})

    assert response.status_code == 200
    assert response.json()["status"] == "error"


def test_invalid_signature_leaves_row_untouched(client):
    _seed()
    forged = _notification()
    forged["Ds_Signature"] = _notification(code="9999")["Ds_Signature"]

    response = client.post("/payments/notification", json=forged)

    assert response.status_code == 200
    assert response.json() == {"status": "error", "message": "Invalid signature"}
    assert _state()[:2] == ("pending", "pending")


def test_unparseable_response_code_resolves_as_error(client):
    _seed()

    response = client.post("/payments/notification", json=_notification(code="SIS0051"))

    assert response.status_code == 200
    assert _state()[:2] == ("error", "pending")


def test_membership_authorization_has_no_order_side_effect(client):
    _seed("2501M0000001", PaymentContext.MEMBERSHIP, with_order=False)

    response = client.post("/payments/notification", json=_notification(order="2501M0000001"))

    assert response.json() == {"status": "ok"}
    assert _state("2501M0000001")[:2] == ("authorized", None)


def test_unexpected_error_returns_200(client, mocker):
    _seed()
    mocker.patch("redsys_payments.ledger.TransactionLedger.find", side_effect=RuntimeError("db down"))

    response = client.post("/payments/notification", json=_notification())

    assert response.status_code == 200
    assert response.json() == {"status": "error", "message": "Internal error"}
    assert _state()[:2] == ("pending", "pending")


def test_unexpected_error_wrapped_as_internal_error(db, settings, mocker):
    _seed()
    mocker.patch("redsys_payments.ledger.TransactionLedger.find", side_effect=RuntimeError("db down"))

    with pytest.raises(InternalError) as exc_info:
        NotificationHandler(db, settings).handle(_notification())
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_missing_merchant_key_still_acknowledged(client, settings):
    _seed()
    settings.redsys_secret_key_test = None

    response = client.post("/payments/notification", json=_notification())

    assert response.status_code == 200
    assert response.json() == {"status": "error", "message": "Internal error"}
    assert _state()[:2] == ("pending", "pending")


def test_malformed_order_acknowledged_without_lookup(client, mocker):
    find = mocker.spy(TransactionLedger, "find")

    response = client.post("/payments/notification", json=_notification(order="ORDER-1"))

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert find.call_count == 0
