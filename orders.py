# --- START OF FILE orders.py ---

import logging
import sqlite3
from decimal import Decimal, ROUND_HALF_UP

from utils import (
    get_db_connection, utc_now_iso, require_admin, log_admin_action,
    NotFound, ValidationError, ACTION_ORDER_APPROVE, ACTION_ORDER_CANCEL,
)
import catalog
import profiles

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"
TERMINAL_STATUSES = frozenset({STATUS_PAID, STATUS_CANCELED, STATUS_EXPIRED})

STATUS_MESSAGES = {
    STATUS_PAID: "✅ Your payment was successful! Order #{order_id}{product} is paid ({amount}).",
    STATUS_CANCELED: "❌ Your order #{order_id}{product} has been canceled.",
    STATUS_EXPIRED: "⌛ The invoice for order #{order_id}{product} has expired. You can place a new order at any time.",
}


def _row_to_order(row):
    order = dict(row)
    order['amount'] = Decimal(order['amount'])
    return order


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES


def create_order(user_id, product_id, amount, payment_id=None):
    """Inserts a new order in the pending state."""
    amount = catalog.to_decimal(amount, "amount")
    if amount <= 0:
        raise ValidationError("Order amount must be positive.")
    try:
        product = catalog.get_product(product_id)
    except NotFound:
        raise ValidationError(f"Product {product_id!r} does not exist.")
    now = utc_now_iso()
    try:
        with get_db_connection() as conn:
            c = conn.cursor()
            c.execute("""
                INSERT INTO orders (user_id, product_id, amount, status, payment_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (str(user_id), product['id'], str(amount.quantize(catalog.CENT, rounding=ROUND_HALF_UP)), STATUS_PENDING,
                  str(payment_id) if payment_id is not None else None, now, now))
            order_id = c.lastrowid
            conn.commit()
    except sqlite3.IntegrityError:
        logger.warning(f"Attempted to create order with duplicate payment ID: {payment_id}")
        raise ValidationError(f"Payment {payment_id} is already attached to an order.")
    logger.info(f"Created order {order_id} for user {user_id}: product {product['id']}, amount {amount}, payment {payment_id}.")
    return get_order(order_id)


def get_order(order_id):
    try:
        order_id = int(order_id)
    except (ValueError, TypeError):
        raise NotFound(f"Order {order_id!r} not found.")
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM orders WHERE id = ?", (order_id,))
        row = c.fetchone()
    if not row:
        raise NotFound(f"Order {order_id} not found.")
    return _row_to_order(row)


def find_by_payment_id(payment_id):
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM orders WHERE payment_id = ?", (str(payment_id),))
        row = c.fetchone()
    if not row:
        raise NotFound(f"No order for payment {payment_id}.")
    return _row_to_order(row)


def list_orders_by_user(user_id):
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM orders WHERE user_id = ? ORDER BY created_at, id", (str(user_id),))
        return [_row_to_order(r) for r in c.fetchall()]


def list_pending_orders():
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM orders WHERE status = ? ORDER BY created_at, id", (STATUS_PENDING,))
        return [_row_to_order(r) for r in c.fetchall()]


def build_status_message(order, asset=""):
    try:
        product_part = f" ({catalog.get_product(order['product_id'])['name']})"
    except Exception as e:
        # Status is already stored; the message just loses the product name
        logger.warning(f"Could not resolve product {order['product_id']} for order {order['id']} notification: {e}")
        product_part = ""
    amount = f"{catalog.format_currency(order['amount'])} {asset}".strip()
    return STATUS_MESSAGES[order['status']].format(order_id=order['id'], product=product_part, amount=amount)


def transition_order(order_id, target_status, notify=None, asset=""):
    """
    Moves a pending order to a terminal status with one conditional UPDATE.

    Returns the updated order, or None when the order was no longer pending
    (terminal already, or another writer got there first). On success the
    owner gets exactly one notification through ``notify(chat_id, text)``;
    notification errors are logged and never undo the write.
    """
    if target_status not in TERMINAL_STATUSES:
        raise ValidationError(f"Invalid target status: {target_status!r}")

    conn = None
    try:
        conn = get_db_connection()
        c = conn.cursor()
        c.execute(
            "UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (target_status, utc_now_iso(), int(order_id), STATUS_PENDING),
        )
        changed = c.rowcount == 1
        conn.commit()
    except sqlite3.Error as e:
        logger.error(f"DB error transitioning order {order_id} to {target_status}: {e}", exc_info=True)
        if conn and conn.in_transaction: conn.rollback()
        raise
    finally:
        if conn: conn.close()

    if not changed:
        current = get_order(order_id)  # raises NotFound for unknown ids
        logger.info(f"Ignoring transition of order {order_id} to '{target_status}': status is already '{current['status']}'.")
        return None

    order = get_order(order_id)
    logger.info(f"Order {order_id} moved from '{STATUS_PENDING}' to '{target_status}'.")

    if notify is not None:
        try:
            notify(order['user_id'], build_status_message(order, asset))
        except Exception as e:
            logger.error(f"Failed to dispatch notification for order {order_id} to user {order['user_id']}: {e}", exc_info=True)
    else:
        logger.warning(f"No notifier available; user {order['user_id']} not informed about order {order_id}.")
    return order


def _admin_transition(admin_id, order_id, target_status, action, notify, reason):
    require_admin(admin_id)
    order = get_order(order_id)
    updated = transition_order(order['id'], target_status, notify=notify)
    if updated is not None:
        log_admin_action(admin_id, action, order_id=order['id'], reason=reason,
                         old_value=order['status'], new_value=target_status)
    return updated


def approve_order(admin_id, order_id, notify=None, reason=None):
    """Admin marks a pending order as paid. Returns the order, or None if it was not pending."""
    return _admin_transition(admin_id, order_id, STATUS_PAID, ACTION_ORDER_APPROVE, notify, reason)


def cancel_order(admin_id, order_id, notify=None, reason=None):
    """Admin cancels a pending order. Returns the order, or None if it was not pending."""
    return _admin_transition(admin_id, order_id, STATUS_CANCELED, ACTION_ORDER_CANCEL, notify, reason)


def get_shop_stats():
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT COUNT(*) FROM orders")
        total_orders = c.fetchone()[0]
        c.execute("SELECT COUNT(*) FROM orders WHERE status = ?", (STATUS_PENDING,))
        pending_orders = c.fetchone()[0]
        c.execute("SELECT amount FROM orders WHERE status = ?", (STATUS_PAID,))
        revenue = sum((Decimal(r['amount']) for r in c.fetchall()), Decimal("0.00"))
    return {
        'total_users': profiles.count_users(),
        'total_orders': total_orders,
        'pending_orders': pending_orders,
        'revenue': revenue,
    }


def format_order(order) -> str:
    try:
        product_name = catalog.get_product(order['product_id'])['name']
    except NotFound:
        product_name = f"product #{order['product_id']}"
    created = (order.get('created_at') or '').split('T')[0]
    return f"#{order['id']} {product_name}: ${catalog.format_currency(order['amount'])} [{order['status']}] {created}"

# --- END OF FILE orders.py ---
