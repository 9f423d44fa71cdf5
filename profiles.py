import logging
import sqlite3

from utils import get_db_connection, utc_now_iso, NotFound
import catalog

logger = logging.getLogger(__name__)


def get_user(telegram_id):
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM users WHERE telegram_id = ?", (str(telegram_id),))
        row = c.fetchone()
    if not row:
        raise NotFound(f"User {telegram_id} is not registered.")
    return dict(row)


def get_or_create_user(telegram_id, username=None, full_name=None):
    """Returns (user, created). Creation is idempotent on the telegram id."""
    telegram_id = str(telegram_id)
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("""
            INSERT OR IGNORE INTO users (telegram_id, username, full_name, registered_at)
            VALUES (?, ?, ?, ?)
        """, (telegram_id, username, (full_name or "").strip(), utc_now_iso()))
        created = c.rowcount > 0
        conn.commit()
    if created:
        logger.info(f"Registered new user {telegram_id} (@{username}).")
    return get_user(telegram_id), created


def count_users() -> int:
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT COUNT(*) FROM users")
        return c.fetchone()[0]


# --- Wishlist ---
def add_to_wishlist(telegram_id, product_id) -> bool:
    """Adds a product; returns False if it was already on the wishlist."""
    user = get_user(telegram_id)
    product = catalog.get_product(product_id)
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT 1 FROM wishlist WHERE user_id = ? AND product_id = ?", (user['id'], product['id']))
        if c.fetchone():
            logger.debug(f"Product {product['id']} already on wishlist of user {telegram_id}.")
            return False
        try:
            c.execute("INSERT INTO wishlist (user_id, product_id, added_at) VALUES (?, ?, ?)",
                      (user['id'], product['id'], utc_now_iso()))
            conn.commit()
        except sqlite3.IntegrityError:
            # Concurrent add of the same product
            return False
    logger.info(f"User {telegram_id} added product {product['id']} to wishlist.")
    return True


def remove_from_wishlist(telegram_id, product_id) -> bool:
    user = get_user(telegram_id)
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("DELETE FROM wishlist WHERE user_id = ? AND product_id = ?", (user['id'], int(product_id)))
        conn.commit()
        return c.rowcount > 0


def clear_wishlist(telegram_id) -> int:
    user = get_user(telegram_id)
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("DELETE FROM wishlist WHERE user_id = ?", (user['id'],))
        conn.commit()
        return c.rowcount


def get_wishlist(telegram_id):
    """Wishlist products in the order they were added."""
    user = get_user(telegram_id)
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("""
            SELECT p.id FROM wishlist w JOIN products p ON p.id = w.product_id
            WHERE w.user_id = ? ORDER BY w.added_at, p.id
        """, (user['id'],))
        product_ids = [r['id'] for r in c.fetchall()]
    return [catalog.get_product(pid) for pid in product_ids]
