# --- START OF FILE catalog.py ---

import logging
import sqlite3
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from utils import (
    get_db_connection, NotFound, ValidationError, DEFAULT_CATEGORIES,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_decimal(value, field="amount") -> Decimal:
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid {field}: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return result


def clamp_discount(discount) -> Decimal:
    d = to_decimal(discount if discount is not None else 0, "discount")
    return min(max(d, Decimal("0")), Decimal("100"))


def effective_price(price, discount) -> Decimal:
    """price x (1 - discount/100), discount clamped to [0, 100], rounded to cents."""
    base = to_decimal(price, "price")
    pct = clamp_discount(discount)
    return (base * (Decimal("100") - pct) / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(value):
    try: return f"{Decimal(str(value)):.2f}"
    except (InvalidOperation, ValueError, TypeError): logger.warning(f"Could format currency {value}"); return "0.00"


def _row_to_product(row):
    product = dict(row)
    product['price'] = Decimal(product['price'])
    product['discount'] = clamp_discount(product.get('discount'))
    product['effective_price'] = effective_price(product['price'], product['discount'])
    return product


def get_product(product_id):
    try:
        product_id = int(product_id)
    except (ValueError, TypeError):
        raise NotFound(f"Product {product_id!r} not found.")
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM products WHERE id = ?", (product_id,))
        row = c.fetchone()
    if not row:
        raise NotFound(f"Product {product_id} not found.")
    return _row_to_product(row)


def list_products():
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM products ORDER BY id")
        return [_row_to_product(r) for r in c.fetchall()]


def list_products_by_category(category: str):
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT * FROM products WHERE category = ? ORDER BY id", (category,))
        return [_row_to_product(r) for r in c.fetchall()]


def list_categories() -> list[str]:
    """Default categories first, then any other category stored on a product."""
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("SELECT DISTINCT category FROM products WHERE category IS NOT NULL AND category != '' ORDER BY category")
        stored = [r['category'] for r in c.fetchall()]
    return DEFAULT_CATEGORIES + [cat for cat in stored if cat not in DEFAULT_CATEGORIES]


def search_products(query: str):
    query = (query or "").strip()
    if not query:
        return []
    pattern = f"%{query.lower()}%"
    with get_db_connection() as conn:
        c = conn.cursor()
        c.execute("""
            SELECT * FROM products
            WHERE lower(name) LIKE ? OR lower(COALESCE(description, '')) LIKE ?
            ORDER BY id
        """, (pattern, pattern))
        return [_row_to_product(r) for r in c.fetchall()]


def create_product(name, price, description="", discount=0, image_url=None, category=None):
    name = (name or "").strip()
    if not name:
        raise ValidationError("Product name is required.")
    price = to_decimal(price, "price")
    if price <= 0:
        raise ValidationError("Price must be positive.")
    discount = to_decimal(discount if discount not in (None, "") else 0, "discount")
    if discount < 0 or discount > 100:
        raise ValidationError("Discount must be between 0 and 100.")
    try:
        with get_db_connection() as conn:
            c = conn.cursor()
            c.execute("""
                INSERT INTO products (name, description, price, discount, image_url, category)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (name, description or "", str(price.quantize(CENT, rounding=ROUND_HALF_UP)), str(discount),
                  image_url or None, (category or "").strip() or None))
            product_id = c.lastrowid
            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"DB error adding product '{name}': {e}", exc_info=True)
        raise
    logger.info(f"Added product {product_id} '{name}' ({price} / -{discount}%) in category '{category}'.")
    return get_product(product_id)


def format_product(product) -> str:
    lines = [product['name']]
    if product.get('description'):
        lines.append(product['description'])
    if product['discount'] > 0:
        lines.append(f"Price: ${format_currency(product['effective_price'])} (was ${format_currency(product['price'])}, -{product['discount'].normalize():f}%)")
    else:
        lines.append(f"Price: ${format_currency(product['effective_price'])}")
    if product.get('category'):
        lines.append(f"Category: {product['category']}")
    return "\n".join(lines)

# --- END OF FILE catalog.py ---
