import pytest

import utils
import catalog
import orders

ADMIN_ID = "999"
CUSTOMER_ID = "42"


class NotificationRecorder:
    """Stands in for the fire-and-forget notifier; keeps (chat_id, text) pairs."""

    def __init__(self):
        self.sent = []

    def __call__(self, chat_id, text):
        self.sent.append((chat_id, text))

    def to(self, chat_id):
        return [text for cid, text in self.sent if str(cid) == str(chat_id)]


@pytest.fixture(autouse=True)
def shop_db(tmp_path, monkeypatch):
    monkeypatch.setattr(utils, "DATABASE_PATH", str(tmp_path / "shop.db"))
    monkeypatch.setattr(utils, "ADMIN_IDS", {ADMIN_ID})
    utils.init_db()
    return utils.DATABASE_PATH


@pytest.fixture
def notifier():
    return NotificationRecorder()


@pytest.fixture
def headphones():
    return catalog.create_product("Headphones", "100", description="Wireless", discount=10, category="Electronics")


@pytest.fixture
def pending_order(headphones):
    return orders.create_order(CUSTOMER_ID, headphones['id'], headphones['effective_price'], "INV1")
