from decimal import Decimal

import pytest

import catalog
from utils import NotFound, ValidationError, DEFAULT_CATEGORIES


@pytest.mark.parametrize("price, discount, expected", [
    ("100", 10, Decimal("90.00")),
    ("100", 0, Decimal("100.00")),
    ("100", 100, Decimal("0.00")),
    ("100", 150, Decimal("0.00")),
    ("100", -20, Decimal("100.00")),
    ("19.99", "33", Decimal("13.39")),
    (Decimal("10"), None, Decimal("10.00")),
])
def test_effective_price(price, discount, expected):
    assert catalog.effective_price(price, discount) == expected


def test_effective_price_rejects_garbage():
    with pytest.raises(ValidationError):
        catalog.effective_price("ten", 0)
    with pytest.raises(ValidationError):
        catalog.effective_price("NaN", 0)


def test_create_and_get_product(headphones):
    product = catalog.get_product(headphones['id'])
    assert product['name'] == "Headphones"
    assert product['price'] == Decimal("100.00")
    assert product['discount'] == Decimal("10")
    assert product['effective_price'] == Decimal("90.00")
    assert product['category'] == "Electronics"


@pytest.mark.parametrize("fields", [
    {'name': "", 'price': "10"},
    {'name': "Book", 'price': "0"},
    {'name': "Book", 'price': "-5"},
    {'name': "Book", 'price': "abc"},
    {'name': "Book", 'price': "10", 'discount': "101"},
    {'name': "Book", 'price': "10", 'discount': "-1"},
])
def test_create_product_validation(fields):
    with pytest.raises(ValidationError):
        catalog.create_product(**fields)
    assert catalog.list_products() == []


def test_get_product_not_found():
    with pytest.raises(NotFound):
        catalog.get_product(12345)
    with pytest.raises(NotFound):
        catalog.get_product("not-a-number")


def test_list_by_category_and_categories(headphones):
    novel = catalog.create_product("Novel", "12.50", category="Books")
    catalog.create_product("Lamp", "30", category="Home")

    assert [p['id'] for p in catalog.list_products_by_category("Books")] == [novel['id']]
    assert catalog.list_products_by_category("Clothing") == []
    categories = catalog.list_categories()
    assert categories[:len(DEFAULT_CATEGORIES)] == DEFAULT_CATEGORIES
    assert categories.count("Electronics") == 1
    assert "Home" in categories


def test_search_products(headphones):
    catalog.create_product("Cookbook", "20", description="Recipes for wireless chefs", category="Books")
    catalog.create_product("Scarf", "15", category="Clothing")

    names = [p['name'] for p in catalog.search_products("WIRELESS")]
    assert names == ["Headphones", "Cookbook"]
    assert catalog.search_products("   ") == []
    assert catalog.search_products("nothing-like-this") == []


def test_format_product_shows_effective_price(headphones):
    text = catalog.format_product(headphones)
    assert "Price: $90.00 (was $100.00, -10%)" in text
    plain = catalog.create_product("Pen", "2")
    assert "Price: $2.00" in catalog.format_product(plain)
