import hashlib
import hmac
import json

import pytest

import main
import orders
from conftest import CUSTOMER_ID


@pytest.fixture
def client(notifier, monkeypatch):
    monkeypatch.setattr(main, "notifier", notifier)
    main.flask_app.config['TESTING'] = True
    return main.flask_app.test_client()


def _crypto_body(product_id, invoice_id="INV1", status="paid", user_id=CUSTOMER_ID):
    return {
        'invoice_id': invoice_id,
        'status': status,
        'payload': json.dumps({'userId': user_id, 'productId': product_id}),
    }


def test_payment_status_scenario(client, pending_order, notifier):
    response = client.post("/payment-status", json={'invoice_id': "INV1", 'status': "paid"})
    assert response.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID
    assert len(notifier.to(CUSTOMER_ID)) == 1

    replay = client.post("/payment-status", json={'invoice_id': "INV1", 'status': "paid"})
    assert replay.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID
    assert len(notifier.to(CUSTOMER_ID)) == 1


def test_payment_status_unknown_invoice(client, pending_order, notifier):
    response = client.post("/payment-status", json={'invoice_id': "INV404", 'status': "paid"})
    assert response.status_code == 404
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING
    assert notifier.sent == []


def test_payment_status_ignores_unknown_status(client, pending_order, notifier):
    response = client.post("/payment-status", json={'invoice_id': "INV1", 'status': "active"})
    assert response.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING
    assert notifier.sent == []


@pytest.mark.parametrize("kwargs", [
    {'data': "not json", 'content_type': "application/json"},
    {'json': {'status': "paid"}},
    {'json': {'invoice_id': "INV1"}},
])
def test_payment_status_bad_requests(client, pending_order, kwargs):
    assert client.post("/payment-status", **kwargs).status_code == 400
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING


def test_payment_status_rejects_bad_payload(client, pending_order, notifier):
    response = client.post("/payment-status", json={'invoice_id': "INV1", 'status': "paid", 'payload': "{broken"})
    assert response.status_code == 500
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING
    assert notifier.sent == []


def test_payment_status_accepts_matching_payload(client, pending_order, headphones, notifier):
    body = _crypto_body(headphones['id'])
    response = client.post("/payment-status", json=body)
    assert response.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID
    assert len(notifier.to(CUSTOMER_ID)) == 1


def test_notification_failure_still_acknowledged(client, pending_order, monkeypatch):
    def broken_notify(chat_id, text):
        raise RuntimeError("bot loop gone")

    monkeypatch.setattr(main, "notifier", broken_notify)
    response = client.post("/payment-status", json={'invoice_id': "INV1", 'status': "paid"})
    assert response.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID


def test_crypto_webhook_paid(client, pending_order, headphones, notifier):
    response = client.post("/crypto-webhook", json=_crypto_body(headphones['id']))
    assert response.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID
    assert len(notifier.to(CUSTOMER_ID)) == 1

    assert client.post("/crypto-webhook", json=_crypto_body(headphones['id'])).status_code == 200
    assert len(notifier.to(CUSTOMER_ID)) == 1


def test_crypto_webhook_envelope(client, pending_order, headphones, notifier):
    envelope = {
        'update_id': 1,
        'update_type': "invoice_paid",
        'request_date': "2026-01-01T00:00:00.000Z",
        'payload': _crypto_body(headphones['id']),
    }
    response = client.post("/crypto-webhook", json=envelope)
    assert response.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID


def test_crypto_webhook_unknown_invoice(client, pending_order, headphones, notifier):
    response = client.post("/crypto-webhook", json=_crypto_body(headphones['id'], invoice_id="INV404"))
    assert response.status_code == 404
    assert notifier.sent == []


@pytest.mark.parametrize("payload", ["{broken", "", json.dumps({'userId': "intruder", 'productId': 1})])
def test_crypto_webhook_bad_payload(client, pending_order, notifier, payload):
    body = {'invoice_id': "INV1", 'status': "paid", 'payload': payload}
    response = client.post("/crypto-webhook", json=body)
    assert response.status_code == 500
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING
    assert notifier.sent == []


def test_crypto_webhook_signature(client, pending_order, headphones, monkeypatch):
    monkeypatch.setattr(main, "CRYPTO_PAY_VERIFY_SIGNATURE", True)
    monkeypatch.setattr(main, "CRYPTO_PAY_API_KEY", "api-token")
    body = json.dumps(_crypto_body(headphones['id'])).encode()

    rejected = client.post("/crypto-webhook", data=body, content_type="application/json",
                           headers={'crypto-pay-api-signature': "0" * 64})
    assert rejected.status_code == 401
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING

    secret = hashlib.sha256(b"api-token").digest()
    signature = hmac.new(secret, body, hashlib.sha256).hexdigest()
    accepted = client.post("/crypto-webhook", data=body, content_type="application/json",
                           headers={'crypto-pay-api-signature': signature})
    assert accepted.status_code == 200
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID


def test_telegram_webhook_not_ready(client, monkeypatch):
    monkeypatch.setattr(main, "telegram_app", None)
    response = client.post(f"/telegram/{main.TOKEN}", json={'update_id': 1})
    assert response.status_code == 503
