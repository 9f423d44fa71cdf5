# --- START OF FILE main.py ---

import logging
import asyncio
import inspect
import signal
import sqlite3
import threading # Flask runs beside the bot loop
import json
from functools import wraps

# --- Telegram Imports ---
from telegram import Update, BotCommand
from telegram.ext import (
    Application, ApplicationBuilder, Defaults, ContextTypes,
    CommandHandler, CallbackQueryHandler,
)
from telegram.error import Forbidden, BadRequest, NetworkError, RetryAfter

# --- Flask Imports ---
from flask import Flask, request, Response

# --- Local Imports ---
from utils import (
    TOKEN, WEBHOOK_URL, PORT, CRYPTO_PAY_API_KEY, CRYPTO_PAY_VERIFY_SIGNATURE,
    init_db, validate_config, make_notifier, send_notification,
    ShopError, NotFound, ValidationError,
)
import user
import admin
import payment

# --- Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger('werkzeug').setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

flask_app = Flask(__name__)

telegram_app: Application | None = None
main_loop = None
notifier = None # notify(chat_id, text), installed by main()


# --- Callback Data Parsing ---
KNOWN_HANDLERS = {
    # User Handlers (from user.py)
    "buy": user.handle_buy,
    "check": user.handle_check_payment,
    "category": user.handle_category_selection,
    "wishlist_add": user.handle_wishlist_add,
    "wishlist_remove": user.handle_wishlist_remove,
    "wishlist_clear": user.handle_wishlist_clear,

    # Admin Handlers (from admin.py)
    "approve": admin.handle_approve_order,
    "cancel": admin.handle_cancel_order,
    "manage_orders": admin.handle_manage_orders,
}


def parse_callback_data(data: str):
    """Splits ``<command>_<param>`` callback data; longest command name wins."""
    for command in sorted(KNOWN_HANDLERS, key=len, reverse=True):
        if data == command:
            return command, []
        if data.startswith(command + "_"):
            return command, [data[len(command) + 1:]]
    return None, []


def callback_query_router(func):
    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if query and query.data:
            command, params = parse_callback_data(query.data)
            target_func = KNOWN_HANDLERS.get(command)

            if target_func and inspect.iscoroutinefunction(target_func):
                await target_func(update, context, params)
            else:
                logger.warning(f"No async handler function found or mapped for callback data: {query.data}")
                try: await query.answer("Unknown action.", show_alert=True)
                except Exception as e: logger.error(f"Error answering unknown callback query {query.data}: {e}")
        elif query:
            logger.warning("Callback query handler received update without data.")
            try: await query.answer()
            except Exception as e: logger.error(f"Error answering callback query without data: {e}")
        else:
            logger.warning("Callback query handler received update without query object.")
    return wrapper

@callback_query_router
async def handle_callback_query(update: Update, context: ContextTypes.DEFAULT_TYPE):
    pass


# --- Error Handler ---
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    error = context.error
    chat_id = None
    user_id = None

    if isinstance(update, Update):
        if update.effective_chat: chat_id = update.effective_chat.id
        if update.effective_user: user_id = update.effective_user.id

    if isinstance(error, ShopError):
        # Expected outcome (not found, unauthorized, bad input): tell the user, no stack trace
        logger.info(f"{type(error).__name__} for chat {chat_id} (User: {user_id}): {error}")
        error_message = str(error)
    else:
        logger.error(msg="Exception while handling an update:", exc_info=error)
        if not chat_id:
            return
        error_message = "An internal error occurred. Please try again later or contact support."
        if isinstance(error, BadRequest):
            error_str_lower = str(error).lower()
            if "message is not modified" in error_str_lower or "query is too old" in error_str_lower:
                logger.debug(f"Ignoring harmless BadRequest for chat {chat_id}: {error}")
                return
            logger.warning(f"Telegram API BadRequest for chat {chat_id} (User: {user_id}): {error}")
            error_message = "An error occurred communicating with Telegram. Please try again."
        elif isinstance(error, NetworkError):
            logger.warning(f"Telegram API NetworkError for chat {chat_id} (User: {user_id}): {error}")
            error_message = "A network error occurred. Please check your connection and try again."
        elif isinstance(error, Forbidden):
            logger.warning(f"Forbidden error for chat {chat_id} (User: {user_id}): Bot possibly blocked or kicked.")
            return
        elif isinstance(error, RetryAfter):
            logger.warning(f"Rate limit hit during update processing for chat {chat_id}. Error: {error}")
            return
        elif isinstance(error, sqlite3.Error):
            logger.error(f"Database error during update handling for chat {chat_id} (User: {user_id}): {error}")

    if isinstance(update, Update) and update.callback_query:
        try: await update.callback_query.answer()
        except Exception as e: logger.debug(f"Could not answer callback query after error: {e}")
    if chat_id:
        await send_notification(context.bot, chat_id, error_message)


# --- Bot Setup Functions ---
async def post_init(application: Application) -> None:
    logger.info("Running post_init setup...")
    logger.info("Setting bot commands...")
    await application.bot.set_my_commands([
        BotCommand("start", "Start the bot / Main menu"),
        BotCommand("products", "Browse all products"),
        BotCommand("categories", "Browse by category"),
        BotCommand("search", "Search products"),
        BotCommand("orders", "Your orders"),
        BotCommand("wishlist", "Your wishlist"),
        BotCommand("profile", "Your profile"),
        BotCommand("settings", "Settings"),
        BotCommand("contact", "Contact support"),
        BotCommand("admin", "Access admin panel (Admin only)"),
    ])
    logger.info("Post_init finished.")

async def post_shutdown(application: Application) -> None:
    logger.info("Running post_shutdown cleanup...")
    logger.info("Post_shutdown finished.")


def build_application() -> Application:
    defaults = Defaults(parse_mode=None, block=False)
    app_builder = ApplicationBuilder().token(TOKEN).defaults(defaults)
    app_builder.post_init(post_init)
    app_builder.post_shutdown(post_shutdown)
    application = app_builder.build()
    commands = {
        "start": user.start,
        "products": user.handle_products,
        "categories": user.handle_categories,
        "search": user.handle_search,
        "orders": user.handle_my_orders,
        "my_orders": user.handle_my_orders,
        "wishlist": user.handle_wishlist,
        "profile": user.handle_profile,
        "contact": user.handle_contact,
        "contact_support": user.handle_contact,
        "settings": user.handle_settings,
        "admin": admin.handle_admin_menu,
        "addproduct": admin.handle_add_product,
        "manage_orders": admin.handle_manage_orders,
    }
    for name, callback in commands.items():
        application.add_handler(CommandHandler(name, callback))
    application.add_handler(CallbackQueryHandler(handle_callback_query))
    application.add_error_handler(error_handler)
    return application


# --- Flask Webhook Routes ---
def _reconcile_response(payment_id, status, status_map, payload=None, require_payload=False):
    try:
        outcome = payment.reconcile_payment(
            payment_id, status, status_map,
            payload=payload, require_payload=require_payload, notify=notifier,
        )
    except NotFound:
        logger.warning(f"Webhook Warning: no order for payment {payment_id}.")
        return Response("Order not found", status=404)
    except ValidationError as e:
        logger.error(f"Webhook Error: invalid data for payment {payment_id}: {e}")
        return Response("Invalid payload", status=500)
    except Exception:
        logger.error(f"Webhook Error: Could not process payment update {payment_id}.", exc_info=True)
        return Response("Internal Server Error", status=500)
    logger.info(f"Payment {payment_id} status '{status}' handled: {outcome}")
    return Response(outcome, status=200)


@flask_app.route("/payment-status", methods=['POST'])
def payment_status_webhook():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        logger.warning("Payment status webhook received non-JSON request.")
        return Response("Invalid Request: Not JSON", status=400)
    logger.info(f"Payment status webhook data: {json.dumps(data)}")
    if not data.get('invoice_id') or 'status' not in data:
        logger.error(f"Webhook missing required keys. Data: {data}")
        return Response("Missing required keys", status=400)
    return _reconcile_response(
        str(data['invoice_id']), data.get('status'), payment.PAYMENT_STATUS_MAP,
        payload=data.get('payload'), require_payload=False,
    )


@flask_app.route("/crypto-webhook", methods=['POST'])
def crypto_webhook():
    raw_body = request.get_data() # Get raw body once
    if CRYPTO_PAY_VERIFY_SIGNATURE:
        signature = request.headers.get('crypto-pay-api-signature')
        if not payment.verify_crypto_pay_signature(raw_body, signature, CRYPTO_PAY_API_KEY):
            logger.warning("Crypto Pay webhook signature verification failed.")
            return Response("Invalid signature", status=401)

    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Crypto webhook received non-JSON request.")
        return Response("Invalid Request: Not JSON", status=400)
    if not isinstance(data, dict):
        return Response("Invalid Request: Not an object", status=400)

    logger.info(f"Crypto Pay webhook data: {json.dumps(data)}")

    # Crypto Pay wraps the invoice in an update envelope
    invoice = data['payload'] if data.get('update_type') and isinstance(data.get('payload'), dict) else data
    if not invoice.get('invoice_id') or 'status' not in invoice:
        logger.error(f"Webhook missing required keys. Data: {data}")
        return Response("Missing required keys", status=400)
    return _reconcile_response(
        str(invoice['invoice_id']), invoice.get('status'), payment.CRYPTO_PAY_STATUS_MAP,
        payload=invoice.get('payload'), require_payload=True,
    )


@flask_app.route(f"/telegram/{TOKEN}", methods=['POST'])
def telegram_webhook():
    if not telegram_app or not main_loop:
        logger.error("Telegram webhook received but app/loop not ready.")
        return Response(status=503)
    update_data = request.get_json(silent=True)
    if update_data is None:
        logger.error("Telegram webhook received invalid JSON.")
        return Response("Invalid JSON", status=400)
    try:
        update = Update.de_json(update_data, telegram_app.bot)
        asyncio.run_coroutine_threadsafe(telegram_app.process_update(update), main_loop)
        return Response(status=200)
    except Exception as e:
        logger.error(f"Error processing Telegram webhook: {e}", exc_info=True)
        return Response("Internal Server Error", status=500)


def main() -> None:
    global telegram_app, main_loop, notifier
    logger.info("Starting bot...")
    validate_config()
    init_db()
    main_loop = asyncio.new_event_loop()
    asyncio.set_event_loop(main_loop)
    application = build_application()
    telegram_app = application
    notifier = make_notifier(application.bot, main_loop)
    application.bot_data['notifier'] = notifier

    async def setup_webhooks_and_run():
        logger.info("Initializing application...")
        await application.initialize()
        logger.info(f"Setting Telegram webhook to: {WEBHOOK_URL}/telegram/<token>")
        if await application.bot.set_webhook(url=f"{WEBHOOK_URL}/telegram/{TOKEN}", allowed_updates=Update.ALL_TYPES):
            logger.info("Telegram webhook set successfully.")
        else:
            logger.error("Failed to set Telegram webhook.")
            return
        await application.start()
        logger.info("Telegram application started (webhook mode).")
        flask_thread = threading.Thread(target=lambda: flask_app.run(host='0.0.0.0', port=PORT, debug=False), daemon=True)
        flask_thread.start()
        logger.info(f"Flask server started in a background thread on port {PORT}.")
        logger.info("Main thread entering keep-alive loop...")
        for s in (signal.SIGHUP, signal.SIGTERM, signal.SIGINT):
            main_loop.add_signal_handler(s, lambda s=s: asyncio.create_task(shutdown(s, application)))
        try:
            while True: await asyncio.sleep(3600)
        except asyncio.CancelledError: logger.info("Keep-alive loop cancelled.")
        finally: logger.info("Exiting keep-alive loop.")

    async def shutdown(sig, application):
        logger.info(f"Received exit signal {sig.name}...")
        logger.info("Shutting down application...")
        await application.stop()
        await application.shutdown()
        tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        for task in tasks: task.cancel()
        logger.info(f"Cancelling {len(tasks)} outstanding tasks")
        await asyncio.gather(*tasks, return_exceptions=True)
        main_loop.stop()

    try:
        main_loop.run_until_complete(setup_webhooks_and_run())
    except (KeyboardInterrupt, SystemExit) as e:
        logger.info(f"Shutdown initiated by {type(e).__name__}.")
    except RuntimeError as e:
        # run_until_complete raises when shutdown() stops the loop first
        logger.info(f"Event loop stopped: {e}")
    except Exception as e:
        logger.critical(f"Critical error in main execution loop: {e}", exc_info=True)
    finally:
        logger.info("Bot shutdown complete.")

if __name__ == '__main__':
    main()

# --- END OF FILE main.py ---
