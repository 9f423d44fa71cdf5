import sqlite3
import os
import logging
import asyncio
from datetime import datetime, timezone

# --- Telegram Imports ---
from telegram import Bot
import telegram.error as telegram_error
# -------------------------

# --- Logging Setup ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# --- Configuration Loading (from Environment Variables) ---
TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()  # Strip whitespace
CRYPTO_PAY_API_KEY = os.environ.get("CRYPTO_PAY_API_KEY", "").strip()
CRYPTO_PAY_TESTNET = os.environ.get("CRYPTO_PAY_TESTNET", "0").lower() in ("1", "true", "yes")
CRYPTO_PAY_ASSET = os.environ.get("CRYPTO_PAY_ASSET", "USDT").upper()
CRYPTO_PAY_VERIFY_SIGNATURE = os.environ.get("CRYPTO_PAY_VERIFY_SIGNATURE", "0").lower() in ("1", "true", "yes")
DATABASE_PATH = os.environ.get("DATABASE_PATH", "shop.db")
WEBHOOK_URL = os.environ.get("WEBHOOK_URL", "").rstrip("/") # Public base URL (e.g., https://app-name.onrender.com)
ADMIN_ID_RAW = os.environ.get("ADMIN_ID", "")
ADMIN_IDS_STR = os.environ.get("ADMIN_IDS", "")
SUPPORT_USERNAME = os.environ.get("SUPPORT_USERNAME", "support")
PORT_STR = os.environ.get("PORT", "10000")

CRYPTO_PAY_API_URL = "https://testnet-pay.crypt.bot/api" if CRYPTO_PAY_TESTNET else "https://pay.crypt.bot/api"

# Chat ids are kept as strings, matching how orders store their owner
ADMIN_IDS = set()
if ADMIN_ID_RAW.strip():
    ADMIN_IDS.add(ADMIN_ID_RAW.strip())
if ADMIN_IDS_STR:
    ADMIN_IDS.update(uid.strip() for uid in ADMIN_IDS_STR.split(',') if uid.strip())

PORT = 10000
try:
    PORT = int(PORT_STR)
except ValueError: logger.warning(f"Invalid PORT '{PORT_STR}', using default 10000.")

DEFAULT_CATEGORIES = ['Electronics', 'Books', 'Clothing', 'Accessories']


def validate_config():
    """Checks the settings the running bot cannot start without."""
    if not TOKEN:
        logger.critical("CRITICAL ERROR: TELEGRAM_BOT_TOKEN environment variable is missing.")
        raise SystemExit("TELEGRAM_BOT_TOKEN not set.")
    token_parts = TOKEN.split(':')
    if len(token_parts) != 2 or not token_parts[0].isdigit():
        logger.critical("CRITICAL ERROR: TELEGRAM_BOT_TOKEN format is invalid. Expected format: 'bot_id:secret_key'")
        raise SystemExit("TELEGRAM_BOT_TOKEN format is invalid.")
    if not CRYPTO_PAY_API_KEY:
        logger.critical("CRITICAL ERROR: CRYPTO_PAY_API_KEY environment variable is missing.")
        raise SystemExit("CRYPTO_PAY_API_KEY not set.")
    if not WEBHOOK_URL:
        logger.critical("CRITICAL ERROR: WEBHOOK_URL environment variable is missing.")
        raise SystemExit("WEBHOOK_URL not set.")
    if not ADMIN_IDS: logger.warning("No admin IDs configured. Admin features disabled.")
    if not CRYPTO_PAY_VERIFY_SIGNATURE: logger.info("Crypto Pay webhook signature verification is disabled by configuration.")
    logger.info(f"TOKEN validation passed. Bot ID: {token_parts[0]}")
    logger.info(f"Loaded {len(ADMIN_IDS)} admin ID(s).")
    logger.info(f"Using Database Path: {DATABASE_PATH}")
    logger.info(f"Crypto Pay API: {CRYPTO_PAY_API_URL} (asset {CRYPTO_PAY_ASSET})")
    logger.info(f"Crypto Pay webhook expected at: {WEBHOOK_URL}/crypto-webhook")
    logger.info(f"Telegram webhook expected at: {WEBHOOK_URL}/telegram/<token>")


# --- Error Taxonomy ---
class ShopError(Exception):
    """Base class for errors whose message can be shown to the user."""
    user_message = "Something went wrong. Please try again later."

    def __init__(self, message=None):
        super().__init__(message or self.user_message)


class NotFound(ShopError):
    user_message = "Not found."


class ValidationError(ShopError):
    user_message = "Invalid input."


class Unauthorized(ShopError):
    user_message = "Unauthorized access."


class UpstreamError(ShopError):
    user_message = "The payment service is unavailable right now. Please try again later."


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Database Connection Helper ---
def get_db_connection():
    """Returns a connection to the SQLite database using the configured path."""
    db_dir = os.path.dirname(DATABASE_PATH)
    if db_dir:
        try: os.makedirs(db_dir, exist_ok=True)
        except OSError as e: logger.warning(f"Could not create DB dir {db_dir}: {e}")
    conn = sqlite3.connect(DATABASE_PATH, timeout=10)
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.row_factory = sqlite3.Row
    return conn


# --- Database Initialization ---
def init_db():
    """Initializes the database schema."""
    try:
        with get_db_connection() as conn:
            c = conn.cursor()
            # --- users table ---
            c.execute('''CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id TEXT NOT NULL UNIQUE,
                username TEXT, full_name TEXT,
                registered_at TEXT NOT NULL
            )''')
            # --- products table ---
            c.execute('''CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL, description TEXT DEFAULT '',
                price TEXT NOT NULL, discount TEXT DEFAULT '0',
                image_url TEXT, category TEXT
            )''')
            # --- orders table ---
            c.execute('''CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                product_id INTEGER NOT NULL,
                amount TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                payment_id TEXT UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY (product_id) REFERENCES products(id)
            )''')
            # --- wishlist table ---
            c.execute('''CREATE TABLE IF NOT EXISTS wishlist (
                user_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                added_at TEXT NOT NULL,
                PRIMARY KEY (user_id, product_id),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE
            )''')
            # --- admin_log table ---
            c.execute('''CREATE TABLE IF NOT EXISTS admin_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL, admin_id TEXT NOT NULL,
                action TEXT NOT NULL, order_id INTEGER,
                reason TEXT, old_value TEXT, new_value TEXT
            )''')
            c.execute("CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at)")
            c.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, created_at)")
            c.execute("CREATE INDEX IF NOT EXISTS idx_products_category ON products(category)")
            conn.commit()
            logger.info(f"Database schema at {DATABASE_PATH} initialized/verified successfully.")
    except sqlite3.Error as e:
        logger.critical(f"CRITICAL ERROR: Database initialization failed for {DATABASE_PATH}: {e}", exc_info=True)
        raise SystemExit("Database initialization failed.")


# --- Admin Action Log ---
ACTION_ORDER_APPROVE = "ORDER_APPROVE"
ACTION_ORDER_CANCEL = "ORDER_CANCEL"
ACTION_PRODUCT_ADD = "PRODUCT_ADD"

def log_admin_action(admin_id, action: str, order_id: int | None = None, reason: str | None = None, old_value=None, new_value=None):
    """Logs an administrative action to the admin_log table."""
    try:
        with get_db_connection() as conn:
            c = conn.cursor()
            c.execute("""
                INSERT INTO admin_log (timestamp, admin_id, action, order_id, reason, old_value, new_value)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                utc_now_iso(),
                str(admin_id),
                action,
                order_id,
                reason,
                str(old_value) if old_value is not None else None,
                str(new_value) if new_value is not None else None
            ))
            conn.commit()
            logger.info(f"Admin Action Logged: Admin={admin_id}, Action='{action}', Order={order_id}, Reason='{reason}', Old='{old_value}', New='{new_value}'")
    except sqlite3.Error as e:
        logger.error(f"Failed to log admin action: {e}", exc_info=True)


# --- Admin Authorization Helpers ---
def is_admin(user_id) -> bool:
    """Check if a chat id holds the admin capability."""
    return user_id is not None and str(user_id) in ADMIN_IDS

def require_admin(user_id):
    if not is_admin(user_id):
        logger.warning(f"User {user_id} attempted an admin action without authorization.")
        raise Unauthorized()


# --- Notification Dispatcher ---
async def send_notification(bot: Bot, chat_id, text: str, reply_markup=None) -> bool:
    """Sends one message to a chat. Errors are logged, never raised or retried."""
    try:
        await bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup)
        return True
    except telegram_error.Forbidden:
        logger.warning(f"Forbidden sending to {chat_id}. User may have blocked the bot.")
    except telegram_error.BadRequest as e:
        logger.warning(f"BadRequest sending to {chat_id}: {e}. Text: {text[:100]}...")
    except telegram_error.RetryAfter as e:
        logger.warning(f"Rate limit hit sending to {chat_id} (retry after {e.retry_after}s). Message dropped.")
    except telegram_error.NetworkError as e:
        logger.warning(f"NetworkError sending to {chat_id}: {e}")
    except telegram_error.TelegramError as e:
        logger.error(f"Telegram error sending to {chat_id}: {e}", exc_info=True)
    return False


def _log_notification_result(future):
    try:
        future.result()
    except Exception as e:
        logger.error(f"Notification dispatch failed: {e}", exc_info=True)


def make_notifier(bot: Bot, loop: asyncio.AbstractEventLoop):
    """
    Returns a synchronous fire-and-forget ``notify(chat_id, text)``.
    Safe to call from worker threads and from Flask request threads; the
    message is sent on the bot's event loop.
    """
    def notify(chat_id, text):
        future = asyncio.run_coroutine_threadsafe(send_notification(bot, chat_id, text), loop)
        future.add_done_callback(_log_notification_result)
    return notify
