# --- START OF FILE payment.py ---

import logging
import asyncio
import json
import hmac
import hashlib
from decimal import Decimal

import requests # For making API calls to Crypto Pay

from utils import (
    CRYPTO_PAY_API_KEY, CRYPTO_PAY_API_URL, CRYPTO_PAY_ASSET,
    NotFound, ValidationError, UpstreamError, Unauthorized, is_admin,
)
import utils
import catalog
import orders

logger = logging.getLogger(__name__)

# Reported gateway status -> order status. Anything missing is ignored.
PAYMENT_STATUS_MAP = {
    'paid': orders.STATUS_PAID,
    'expired': orders.STATUS_EXPIRED,
}
CRYPTO_PAY_STATUS_MAP = {
    'paid': orders.STATUS_PAID,
    'expired': orders.STATUS_EXPIRED,
}

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"


# --- Crypto Pay API ---
def _crypto_pay_request(method: str, http_method: str = "POST", **params) -> dict:
    """Calls one Crypto Pay API method and returns its ``result``."""
    if not CRYPTO_PAY_API_KEY:
        logger.error("Crypto Pay API key is not configured.")
        raise UpstreamError()
    url = f"{CRYPTO_PAY_API_URL}/{method}"
    headers = {'Crypto-Pay-API-Token': CRYPTO_PAY_API_KEY}
    try:
        if http_method == "GET":
            response = requests.get(url, headers=headers, params=params, timeout=15)
        else:
            response = requests.post(url, headers=headers, json=params, timeout=20)
        logger.debug(f"Crypto Pay {method} response status: {response.status_code}, content: {response.text[:200]}")
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.Timeout:
        logger.error(f"Crypto Pay {method} request timed out.")
        raise UpstreamError()
    except requests.exceptions.RequestException as e:
        status_code = e.response.status_code if e.response is not None else None
        if status_code == 401: logger.critical("Crypto Pay API key seems invalid!")
        logger.error(f"Crypto Pay {method} request error (status {status_code}): {e}")
        raise UpstreamError()
    except ValueError:
        logger.error(f"Crypto Pay {method} returned a non-JSON response.")
        raise UpstreamError()
    if not isinstance(data, dict) or not data.get('ok'):
        logger.error(f"Crypto Pay {method} returned an error: {data}")
        raise UpstreamError()
    return data.get('result')


async def create_invoice(asset: str, amount: Decimal, description: str, metadata: dict) -> dict:
    """
    Creates a Crypto Pay invoice. ``metadata`` travels back in the webhook
    as the invoice payload. Returns ``{'invoice_id', 'pay_url'}``.
    """
    params = {
        'asset': asset,
        'amount': catalog.format_currency(amount),
        'description': description[:1024],
        'payload': json.dumps(metadata, separators=(',', ':')),
    }
    logger.info(f"Creating Crypto Pay invoice: {params['amount']} {asset} ({description[:60]})")
    result = await asyncio.to_thread(_crypto_pay_request, "createInvoice", "POST", **params)

    if not isinstance(result, dict) or 'invoice_id' not in result:
        logger.error(f"Invalid response from Crypto Pay createInvoice: {result}")
        raise UpstreamError()
    pay_url = result.get('bot_invoice_url') or result.get('pay_url') or result.get('mini_app_invoice_url')
    if not pay_url:
        logger.error(f"Crypto Pay invoice {result['invoice_id']} has no payment URL: {result}")
        raise UpstreamError()
    logger.info(f"Payment invoice created: ID={result['invoice_id']}, Amount={params['amount']} {asset}")
    return {'invoice_id': str(result['invoice_id']), 'pay_url': pay_url}


async def get_invoice(invoice_id) -> dict:
    result = await asyncio.to_thread(_crypto_pay_request, "getInvoices", "GET", invoice_ids=str(invoice_id))
    items = result.get('items', []) if isinstance(result, dict) else []
    for item in items:
        if str(item.get('invoice_id')) == str(invoice_id):
            return item
    raise NotFound(f"Invoice {invoice_id} not found at the payment provider.")


# --- Webhook Signature ---
def verify_crypto_pay_signature(request_data_bytes, signature_header, api_token) -> bool:
    if not api_token or not signature_header:
        logger.warning("Crypto Pay API token or signature header missing. Cannot verify webhook.")
        return False
    secret = hashlib.sha256(api_token.encode('utf-8')).digest()
    expected = hmac.new(secret, request_data_bytes, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)


# --- Reconciliation ---
def parse_invoice_payload(raw_payload) -> dict:
    """Decodes the opaque invoice payload into ``{'userId', 'productId'}``."""
    if isinstance(raw_payload, (bytes, bytearray)):
        raw_payload = raw_payload.decode('utf-8', errors='replace')
    if isinstance(raw_payload, str):
        try:
            raw_payload = json.loads(raw_payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invoice payload is not valid JSON: {e}")
    if not isinstance(raw_payload, dict):
        raise ValidationError("Invoice payload must be a JSON object.")
    user_id = raw_payload.get('userId')
    product_id = raw_payload.get('productId')
    if user_id in (None, "") or product_id in (None, ""):
        raise ValidationError("Invoice payload lacks userId or productId.")
    return {'userId': str(user_id), 'productId': str(product_id)}


def reconcile_payment(payment_id, reported_status, status_map, payload=None, require_payload=False, notify=None):
    """
    Applies a gateway status report to the order that owns ``payment_id``.

    Raises NotFound for unknown payments and ValidationError for a bad
    payload; both happen before any write. Returns one of OUTCOME_APPLIED,
    OUTCOME_DUPLICATE (order already terminal) or OUTCOME_IGNORED
    (status not in ``status_map``).
    """
    if payment_id in (None, ""):
        raise ValidationError("Missing payment id.")
    order = orders.find_by_payment_id(payment_id)

    if payload is not None or require_payload:
        metadata = parse_invoice_payload(payload)
        if metadata['userId'] != str(order['user_id']) or metadata['productId'] != str(order['product_id']):
            logger.error(f"Payload mismatch for payment {payment_id}: payload {metadata}, order user {order['user_id']} product {order['product_id']}")
            raise ValidationError("Invoice payload does not match the order.")

    target_status = status_map.get(str(reported_status or "").lower())
    if target_status is None:
        logger.info(f"Webhook received for payment {payment_id} with status: {reported_status} (ignored).")
        return OUTCOME_IGNORED

    if orders.is_terminal(order['status']):
        logger.info(f"Payment {payment_id} reported '{reported_status}' but order {order['id']} is already '{order['status']}'. Replay ignored.")
        return OUTCOME_DUPLICATE

    updated = orders.transition_order(order['id'], target_status, notify=notify, asset=CRYPTO_PAY_ASSET)
    if updated is None:
        return OUTCOME_DUPLICATE
    if updated['status'] == orders.STATUS_PAID:
        notify_admins_of_purchase(updated, notify)
    return OUTCOME_APPLIED


def notify_admins_of_purchase(order, notify):
    """Tells every admin about a completed purchase. Failures are logged only."""
    if notify is None:
        logger.warning(f"No notifier available; admins not informed about paid order {order['id']}.")
        return
    try:
        product_name = catalog.get_product(order['product_id'])['name']
    except Exception as e:
        logger.warning(f"Could not resolve product {order['product_id']} for admin purchase notice: {e}")
        product_name = f"product #{order['product_id']}"
    text = (f"🛒 New purchase completed! Order #{order['id']}: {product_name} for "
            f"{catalog.format_currency(order['amount'])} {CRYPTO_PAY_ASSET} (user {order['user_id']}).")
    for admin_id in sorted(utils.ADMIN_IDS):
        try:
            notify(admin_id, text)
        except Exception as e:
            logger.error(f"Failed to notify admin {admin_id} about order {order['id']}: {e}", exc_info=True)


# --- Manual Payment Status Check ---
async def check_and_reconcile_order(order_id, requester_id, notify=None) -> dict:
    """Asks the gateway about an order's invoice and reconciles the result."""
    order = await asyncio.to_thread(orders.get_order, order_id)
    if str(order['user_id']) != str(requester_id) and not is_admin(requester_id):
        raise Unauthorized()
    if orders.is_terminal(order['status']) or not order.get('payment_id'):
        return {'order': order, 'outcome': OUTCOME_DUPLICATE, 'invoice_status': None}

    invoice = await get_invoice(order['payment_id'])
    invoice_status = invoice.get('status')
    logger.info(f"Order {order['id']} invoice {order['payment_id']} status check: {invoice_status}")
    outcome = await asyncio.to_thread(
        reconcile_payment, order['payment_id'], invoice_status, CRYPTO_PAY_STATUS_MAP,
        invoice.get('payload'), False, notify,
    )
    order = await asyncio.to_thread(orders.get_order, order['id'])
    return {'order': order, 'outcome': outcome, 'invoice_status': invoice_status}

# --- END OF FILE payment.py ---
