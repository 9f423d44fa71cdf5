import logging
import asyncio

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import ContextTypes

from utils import require_admin, log_admin_action, ValidationError, ACTION_PRODUCT_ADD
import catalog
import orders
from user import get_notifier

logger = logging.getLogger(__name__)

ADD_PRODUCT_USAGE = (
    "Usage: /addproduct name | price | category | discount | description | image_url\n"
    "Only name and price are required, e.g.\n"
    "/addproduct Headphones | 100 | Electronics | 10"
)


def parse_add_product_args(text: str) -> dict:
    """Splits the pipe-separated /addproduct arguments into product fields."""
    parts = [p.strip() for p in (text or "").split('|')]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ValidationError(ADD_PRODUCT_USAGE)
    if len(parts) > 6:
        raise ValidationError(ADD_PRODUCT_USAGE)
    parts += [""] * (6 - len(parts))
    name, price, category, discount, description, image_url = parts
    return {
        'name': name,
        'price': price,
        'category': category or None,
        'discount': discount or 0,
        'description': description,
        'image_url': image_url or None,
    }


async def handle_admin_menu(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    admin_id = update.effective_user.id
    require_admin(admin_id)
    stats = await asyncio.to_thread(orders.get_shop_stats)
    keyboard = [[InlineKeyboardButton(f"📋 Pending orders ({stats['pending_orders']})", callback_data="manage_orders")]]
    await update.effective_message.reply_text(
        f"Admin Stats:\n\nTotal Users: {stats['total_users']}\nTotal Orders: {stats['total_orders']}\n"
        f"Pending Orders: {stats['pending_orders']}\nTotal Revenue: ${catalog.format_currency(stats['revenue'])}\n\n"
        "/addproduct - add a product\n/manage_orders - review pending orders",
        reply_markup=InlineKeyboardMarkup(keyboard))


async def handle_add_product(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    admin_id = update.effective_user.id
    require_admin(admin_id)
    fields = parse_add_product_args(" ".join(context.args or []))
    product = await asyncio.to_thread(catalog.create_product, **fields)
    await asyncio.to_thread(log_admin_action, admin_id, ACTION_PRODUCT_ADD, new_value=f"{product['id']}:{product['name']}")
    await update.effective_message.reply_text(f"✅ Product added (#{product['id']}):\n\n{catalog.format_product(product)}")


async def handle_manage_orders(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    admin_id = update.effective_user.id
    require_admin(admin_id)
    if update.callback_query:
        await update.callback_query.answer()
    pending = await asyncio.to_thread(orders.list_pending_orders)
    if not pending:
        await update.effective_message.reply_text("No pending orders.")
        return
    for order in pending:
        text = await asyncio.to_thread(orders.format_order, order)
        keyboard = [[
            InlineKeyboardButton("✅ Approve", callback_data=f"approve_{order['id']}"),
            InlineKeyboardButton("❌ Cancel", callback_data=f"cancel_{order['id']}"),
        ]]
        await update.effective_message.reply_text(f"{text}\nUser: {order['user_id']}", reply_markup=InlineKeyboardMarkup(keyboard))


async def _handle_order_decision(update: Update, context: ContextTypes.DEFAULT_TYPE, params, decide, verb: str):
    query = update.callback_query
    admin_id = update.effective_user.id
    require_admin(admin_id)
    if not params:
        raise ValidationError("Missing order.")
    updated = await asyncio.to_thread(decide, admin_id, params[0], get_notifier(context))
    if updated is None:
        order = await asyncio.to_thread(orders.get_order, params[0])
        await query.answer(f"Order #{order['id']} is already {order['status']}.", show_alert=True)
        return
    await query.answer(f"Order #{updated['id']} {verb}.")
    await query.edit_message_reply_markup(reply_markup=None)
    logger.info(f"Admin {admin_id} {verb} order {updated['id']}.")


async def handle_approve_order(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    await _handle_order_decision(update, context, params, orders.approve_order, "approved")


async def handle_cancel_order(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    await _handle_order_decision(update, context, params, orders.cancel_order, "canceled")
