import logging
import asyncio

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import ContextTypes
import telegram.error as telegram_error

from utils import SUPPORT_USERNAME, CRYPTO_PAY_ASSET, NotFound, ValidationError
import catalog
import profiles
import orders
import payment

logger = logging.getLogger(__name__)

MAX_PRODUCTS_PER_LIST = 20


# --- Helpers ---
def get_notifier(context: ContextTypes.DEFAULT_TYPE):
    """The fire-and-forget notifier installed by main(), if any."""
    return context.bot_data.get('notifier') if context.bot_data is not None else None


async def _reply(update: Update, text: str, reply_markup=None):
    message = update.effective_message
    if message is None:
        logger.warning(f"No message to reply to for update {update.update_id}.")
        return None
    return await message.reply_text(text, reply_markup=reply_markup)


async def register_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> dict:
    """Explicit registration on first contact; called at the top of every user handler."""
    tg_user = update.effective_user
    full_name = f"{tg_user.first_name or ''} {tg_user.last_name or ''}".strip()
    user, created = await asyncio.to_thread(profiles.get_or_create_user, tg_user.id, tg_user.username, full_name)
    if created:
        await _reply(update, "Welcome to the shop! You are now registered.")
    return user


def _product_keyboard(product_id) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("🛒 Buy Now", callback_data=f"buy_{product_id}"),
        InlineKeyboardButton("❤️ Wishlist", callback_data=f"wishlist_add_{product_id}"),
    ]])


async def _send_product(update: Update, product):
    caption = catalog.format_product(product)
    markup = _product_keyboard(product['id'])
    message = update.effective_message
    if product.get('image_url'):
        try:
            await message.reply_photo(product['image_url'], caption=caption, reply_markup=markup)
            return
        except telegram_error.BadRequest as e:
            logger.warning(f"Could not send image for product {product['id']}: {e}. Falling back to text.")
    await message.reply_text(caption, reply_markup=markup)


async def _send_product_list(update: Update, products, empty_text: str):
    if not products:
        await _reply(update, empty_text)
        return
    for product in products[:MAX_PRODUCTS_PER_LIST]:
        await _send_product(update, product)
    if len(products) > MAX_PRODUCTS_PER_LIST:
        await _reply(update, f"Showing {MAX_PRODUCTS_PER_LIST} of {len(products)} products. Narrow it down with /categories or /search.")


# --- Commands ---
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    user = await register_user(update, context)
    name = user.get('full_name') or user.get('username') or "there"
    await _reply(update,
        f"Hi {name}! 👋\n\n"
        "/products - browse all products\n"
        "/categories - browse by category\n"
        "/search <text> - find a product\n"
        "/orders - your orders\n"
        "/wishlist - your wishlist\n"
        "/profile - your profile\n"
        "/contact - contact support")


async def handle_products(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    await register_user(update, context)
    products = await asyncio.to_thread(catalog.list_products)
    await _send_product_list(update, products, "No products available yet.")


async def handle_categories(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    await register_user(update, context)
    categories = await asyncio.to_thread(catalog.list_categories)
    keyboard = [[InlineKeyboardButton(cat, callback_data=f"category_{cat}")] for cat in categories]
    await _reply(update, "Choose a category:", reply_markup=InlineKeyboardMarkup(keyboard))


async def handle_category_selection(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    query = update.callback_query
    await query.answer()
    await register_user(update, context)
    category = params[0] if params else ""
    products = await asyncio.to_thread(catalog.list_products_by_category, category)
    await _send_product_list(update, products, "No products found in this category.")


async def handle_search(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    await register_user(update, context)
    text = " ".join(context.args or []).strip()
    if not text:
        await _reply(update, "Usage: /search <product name>")
        return
    products = await asyncio.to_thread(catalog.search_products, text)
    await _send_product_list(update, products, f"Nothing found for \"{text}\".")


async def handle_my_orders(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    user = await register_user(update, context)
    user_orders = await asyncio.to_thread(orders.list_orders_by_user, user['telegram_id'])
    if not user_orders:
        await _reply(update, "You have no orders yet. Browse /products to place one.")
        return
    lines = await asyncio.to_thread(lambda: [orders.format_order(o) for o in user_orders])
    pending = [o for o in user_orders if o['status'] == orders.STATUS_PENDING]
    keyboard = [[InlineKeyboardButton(f"🔄 Check payment #{o['id']}", callback_data=f"check_{o['id']}")] for o in pending[-5:]]
    await _reply(update, "Your orders:\n\n" + "\n".join(lines),
                 reply_markup=InlineKeyboardMarkup(keyboard) if keyboard else None)


async def handle_wishlist(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    user = await register_user(update, context)
    products = await asyncio.to_thread(profiles.get_wishlist, user['telegram_id'])
    if not products:
        await _reply(update, "Your wishlist is empty.")
        return
    keyboard = [[InlineKeyboardButton(f"🛒 {p['name']} - ${catalog.format_currency(p['effective_price'])}", callback_data=f"buy_{p['id']}"),
                 InlineKeyboardButton("🗑", callback_data=f"wishlist_remove_{p['id']}")] for p in products]
    keyboard.append([InlineKeyboardButton("Clear wishlist", callback_data="wishlist_clear")])
    await _reply(update, f"Your wishlist ({len(products)}):", reply_markup=InlineKeyboardMarkup(keyboard))


async def handle_profile(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    user = await register_user(update, context)
    registered = (user.get('registered_at') or '').split('T')[0]
    await _reply(update,
        f"Your Profile:\n\nName: {user.get('full_name') or '-'}\n"
        f"Username: {user.get('username') or '-'}\nRegistered At: {registered}")


async def handle_contact(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    await register_user(update, context)
    await _reply(update, f"Need help? Contact our support: @{SUPPORT_USERNAME}")


async def handle_settings(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    user = await register_user(update, context)
    wishlist = await asyncio.to_thread(profiles.get_wishlist, user['telegram_id'])
    keyboard = [[InlineKeyboardButton("Clear wishlist", callback_data="wishlist_clear")]]
    await _reply(update,
        f"Settings\n\nPayment asset: {CRYPTO_PAY_ASSET}\nWishlist items: {len(wishlist)}\nSupport: @{SUPPORT_USERNAME}",
        reply_markup=InlineKeyboardMarkup(keyboard))


# --- Callback Actions ---
async def handle_buy(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    """Creates an invoice for the product and a pending order bound to it."""
    query = update.callback_query
    await query.answer()
    user = await register_user(update, context)
    if not params:
        raise ValidationError("Missing product.")
    product = await asyncio.to_thread(catalog.get_product, params[0])
    amount = product['effective_price']
    if amount <= 0:
        logger.warning(f"Refusing to invoice product {product['id']} with non-positive price {amount}.")
        raise ValidationError(f"{product['name']} cannot be bought right now.")
    invoice = await payment.create_invoice(
        CRYPTO_PAY_ASSET, amount, f"{product['name']} - {catalog.format_currency(amount)} {CRYPTO_PAY_ASSET}",
        {'userId': user['telegram_id'], 'productId': product['id']},
    )
    order = await asyncio.to_thread(orders.create_order, user['telegram_id'], product['id'], amount, invoice['invoice_id'])
    keyboard = [
        [InlineKeyboardButton(f"💳 Pay {catalog.format_currency(amount)} {CRYPTO_PAY_ASSET}", url=invoice['pay_url'])],
        [InlineKeyboardButton("🔄 Check payment", callback_data=f"check_{order['id']}")],
    ]
    await _reply(update, f"Order #{order['id']} created for {product['name']}.\nPay the invoice to complete your purchase.",
                 reply_markup=InlineKeyboardMarkup(keyboard))


async def handle_check_payment(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    query = update.callback_query
    await query.answer()
    user = await register_user(update, context)
    if not params:
        raise ValidationError("Missing order.")
    result = await payment.check_and_reconcile_order(params[0], user['telegram_id'], notify=get_notifier(context))
    order = result['order']
    if result['outcome'] == payment.OUTCOME_APPLIED:
        return  # the status notification was dispatched
    if order['status'] == orders.STATUS_PENDING:
        await _reply(update, f"Order #{order['id']} is still awaiting payment.")
    else:
        await _reply(update, f"Order #{order['id']} is {order['status']}.")


async def handle_wishlist_add(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    query = update.callback_query
    user = await register_user(update, context)
    if not params:
        raise ValidationError("Missing product.")
    added = await asyncio.to_thread(profiles.add_to_wishlist, user['telegram_id'], params[0])
    await query.answer("Added to your wishlist ❤️" if added else "Already in your wishlist.")


async def handle_wishlist_remove(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    query = update.callback_query
    user = await register_user(update, context)
    try:
        product_id = int(params[0])
    except (IndexError, TypeError, ValueError):
        raise NotFound("Product not found.")
    removed = await asyncio.to_thread(profiles.remove_from_wishlist, user['telegram_id'], product_id)
    await query.answer("Removed from your wishlist." if removed else "Not in your wishlist.")


async def handle_wishlist_clear(update: Update, context: ContextTypes.DEFAULT_TYPE, params=None):
    query = update.callback_query
    user = await register_user(update, context)
    removed = await asyncio.to_thread(profiles.clear_wishlist, user['telegram_id'])
    await query.answer(f"Wishlist cleared ({removed} removed).")
