from decimal import Decimal

import pytest

import catalog
import orders
import profiles
import utils
from utils import NotFound, ValidationError, Unauthorized
from conftest import ADMIN_ID, CUSTOMER_ID


def test_create_order_starts_pending(pending_order, headphones):
    assert pending_order['status'] == orders.STATUS_PENDING
    assert pending_order['amount'] == Decimal("90.00")
    assert pending_order['user_id'] == CUSTOMER_ID
    assert pending_order['product_id'] == headphones['id']
    assert pending_order['payment_id'] == "INV1"
    assert orders.find_by_payment_id("INV1")['id'] == pending_order['id']


def test_repeat_purchases_are_independent(headphones):
    first = orders.create_order(CUSTOMER_ID, headphones['id'], "90", "INV-A")
    second = orders.create_order(CUSTOMER_ID, headphones['id'], "90", "INV-B")
    assert first['id'] != second['id']


@pytest.mark.parametrize("amount", [0, "-1", "abc"])
def test_create_order_rejects_bad_amount(headphones, amount):
    with pytest.raises(ValidationError):
        orders.create_order(CUSTOMER_ID, headphones['id'], amount, "INV1")


def test_create_order_rejects_unknown_product():
    with pytest.raises(ValidationError):
        orders.create_order(CUSTOMER_ID, 404, "10", "INV1")


def test_payment_id_is_unique(pending_order, headphones):
    with pytest.raises(ValidationError):
        orders.create_order("43", headphones['id'], "90", "INV1")


def test_find_by_payment_id_not_found():
    with pytest.raises(NotFound):
        orders.find_by_payment_id("missing")


def test_transition_notifies_exactly_once(pending_order, notifier):
    updated = orders.transition_order(pending_order['id'], orders.STATUS_PAID, notify=notifier)
    assert updated['status'] == orders.STATUS_PAID
    assert len(notifier.sent) == 1
    chat_id, text = notifier.sent[0]
    assert chat_id == CUSTOMER_ID
    assert "Headphones" in text

    for target in (orders.STATUS_PAID, orders.STATUS_CANCELED, orders.STATUS_EXPIRED):
        assert orders.transition_order(pending_order['id'], target, notify=notifier) is None
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID
    assert len(notifier.sent) == 1


def test_transition_rejects_non_terminal_target(pending_order):
    with pytest.raises(ValidationError):
        orders.transition_order(pending_order['id'], orders.STATUS_PENDING)
    with pytest.raises(ValidationError):
        orders.transition_order(pending_order['id'], "refunded")


def test_transition_unknown_order():
    with pytest.raises(NotFound):
        orders.transition_order(999, orders.STATUS_PAID)


def test_notification_failure_keeps_status(pending_order):
    def broken_notify(chat_id, text):
        raise RuntimeError("telegram down")

    updated = orders.transition_order(pending_order['id'], orders.STATUS_EXPIRED, notify=broken_notify)
    assert updated['status'] == orders.STATUS_EXPIRED
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_EXPIRED


def test_notification_without_product_name(pending_order, notifier, monkeypatch):
    def missing_product(product_id):
        raise NotFound("gone")

    monkeypatch.setattr(catalog, "get_product", missing_product)
    updated = orders.transition_order(pending_order['id'], orders.STATUS_PAID, notify=notifier)
    assert updated['status'] == orders.STATUS_PAID
    assert len(notifier.sent) == 1
    assert "Headphones" not in notifier.sent[0][1]
    assert f"#{pending_order['id']}" in notifier.sent[0][1]


def test_lists_are_chronological(headphones):
    a = orders.create_order(CUSTOMER_ID, headphones['id'], "90", "INV-A")
    b = orders.create_order("43", headphones['id'], "90", "INV-B")
    c = orders.create_order(CUSTOMER_ID, headphones['id'], "90", "INV-C")
    orders.transition_order(c['id'], orders.STATUS_CANCELED)

    assert [o['id'] for o in orders.list_orders_by_user(CUSTOMER_ID)] == [a['id'], c['id']]
    assert [o['id'] for o in orders.list_pending_orders()] == [a['id'], b['id']]


def test_admin_cancel_notifies_user(pending_order, notifier):
    updated = orders.cancel_order(ADMIN_ID, pending_order['id'], notify=notifier)
    assert updated['status'] == orders.STATUS_CANCELED
    assert notifier.to(CUSTOMER_ID) and "canceled" in notifier.to(CUSTOMER_ID)[0]

    with utils.get_db_connection() as conn:
        rows = conn.execute("SELECT * FROM admin_log").fetchall()
    assert len(rows) == 1
    assert rows[0]['action'] == utils.ACTION_ORDER_CANCEL
    assert rows[0]['order_id'] == pending_order['id']


def test_non_admin_cannot_cancel(pending_order, notifier):
    with pytest.raises(Unauthorized):
        orders.cancel_order(CUSTOMER_ID, pending_order['id'], notify=notifier)
    with pytest.raises(Unauthorized):
        orders.approve_order("12345", pending_order['id'], notify=notifier)
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PENDING
    assert notifier.sent == []


def test_admin_cannot_reopen_terminal_order(pending_order, notifier):
    assert orders.approve_order(ADMIN_ID, pending_order['id'], notify=notifier)['status'] == orders.STATUS_PAID
    assert orders.cancel_order(ADMIN_ID, pending_order['id'], notify=notifier) is None
    assert orders.get_order(pending_order['id'])['status'] == orders.STATUS_PAID
    assert len(notifier.sent) == 1


def test_admin_unknown_order():
    with pytest.raises(NotFound):
        orders.approve_order(ADMIN_ID, 31337)


def test_additional_admins(pending_order, monkeypatch):
    monkeypatch.setattr(utils, "ADMIN_IDS", {ADMIN_ID, "1000"})
    assert orders.cancel_order(1000, pending_order['id'])['status'] == orders.STATUS_CANCELED


def test_shop_stats_count_only_paid_revenue(headphones):
    profiles.get_or_create_user(CUSTOMER_ID, "alice", "Alice")
    paid = orders.create_order(CUSTOMER_ID, headphones['id'], "90", "INV-A")
    orders.create_order(CUSTOMER_ID, headphones['id'], "90", "INV-B")
    expired = orders.create_order(CUSTOMER_ID, headphones['id'], "45.50", "INV-C")
    orders.transition_order(paid['id'], orders.STATUS_PAID)
    orders.transition_order(paid['id'], orders.STATUS_PAID)
    orders.transition_order(expired['id'], orders.STATUS_EXPIRED)

    stats = orders.get_shop_stats()
    assert stats == {
        'total_users': 1,
        'total_orders': 3,
        'pending_orders': 1,
        'revenue': Decimal("90.00"),
    }
