"""Shared pytest fixtures: fixed clock, sample data, in-memory stores"""

from datetime import datetime, timedelta
from typing import Dict, List

import pytest
import pytz

from database import DatabaseManager
from errors import PersistenceError
from plan_types import Deal, DealType, ShoppingListItem

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=pytz.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeListStore:
    """In-memory ListStore that can be told to fail for specific items"""

    def __init__(self, items=()):
        self.items: Dict[int, ShoppingListItem] = {item.id: item for item in items}
        self.fail_delete_ids = set()
        self.fail_update_ids = set()
        self.delete_calls: List[int] = []
        self.update_calls: List[tuple] = []

    def get_items(self, list_id):
        return [item for item in self.items.values() if item.shopping_list_id in (None, list_id)]

    def update_item(self, item_id, **changes):
        self.update_calls.append((item_id, changes))
        if item_id in self.fail_update_ids:
            raise PersistenceError(f"update of {item_id} failed")
        item = self.items[item_id].model_copy(update=changes)
        self.items[item_id] = item
        return item

    def delete_item(self, item_id):
        self.delete_calls.append(item_id)
        if item_id in self.fail_delete_ids:
            raise PersistenceError(f"delete of {item_id} failed")
        return self.items.pop(item_id, None) is not None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    # file-backed so worker threads each get their own connection
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'shopping.db'}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def make_item():
    def _make(item_id, name, quantity=1.0, category=None, suggested_price=None, list_id=1):
        return ShoppingListItem(
            id=item_id,
            product_name=name,
            quantity=quantity,
            category=category,
            suggested_price=suggested_price,
            shopping_list_id=list_id,
        )
    return _make


@pytest.fixture
def make_deal():
    counter = {"next": 1}

    def _make(retailer_id, name, regular, sale, category=None, deal_type=None,
              discount_percentage=None, min_spend=None, start=None, end=None, retailer_name=None):
        deal_id = counter["next"]
        counter["next"] += 1
        return Deal(
            id=deal_id,
            retailer_id=retailer_id,
            product_name=name,
            regular_price=regular,
            sale_price=sale,
            start_date=start or NOW - timedelta(days=1),
            end_date=end or NOW + timedelta(days=6),
            category=category,
            deal_type=deal_type,
            discount_percentage=discount_percentage,
            min_spend=min_spend,
            retailer_name=retailer_name,
        )
    return _make


@pytest.fixture
def make_coupon(make_deal):
    def _make(retailer_id, percent, min_spend=None, name="Store coupon"):
        deal_type = DealType.SPEND_THRESHOLD_PERCENTAGE if min_spend else DealType.STORE_WIDE
        return make_deal(retailer_id, name, None, None, deal_type=deal_type,
                         discount_percentage=percent, min_spend=min_spend)
    return _make
