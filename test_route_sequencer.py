"""Route sequencing: categories, aisle order, hints, time estimate, upgrades"""

import pytest

from categorizer import KeywordCategorizer, LLMCategorizer, _extract_json_from_response
from config import GENERIC_CATEGORY, RouteConfig
from plan_types import CategoryResult, PlannedItem, ShoppingListItem, StorePlan
from route_sequencer import RouteSequencer


def _store(*names, categories=None):
    categories = categories or {}
    items = []
    for index, name in enumerate(names, start=1):
        item = ShoppingListItem(id=index, product_name=name, category=categories.get(name))
        items.append(PlannedItem(item=item, retailer_id=1, unit_price=1.0, price=1.0, original_price=1.0))
    return StorePlan(retailer_id=1, retailer_name="Retailer A", items=tuple(items))


class StubCategorizer:
    def __init__(self, answers=None, error=None):
        self.answers = answers or {}
        self.error = error
        self.calls = []

    def categorize(self, product_name):
        self.calls.append(product_name)
        if self.error:
            raise self.error
        return self.answers.get(product_name, CategoryResult(GENERIC_CATEGORY, 0.0))


@pytest.fixture
def sequencer():
    return RouteSequencer()


# ============================================================================
# CATEGORY RESOLUTION
# ============================================================================

def test_known_item_category_wins(sequencer):
    item = ShoppingListItem(id=1, product_name="Mystery box", category="dairy")
    stub = StubCategorizer()

    result = sequencer.resolve_category(item, stub)

    assert result == CategoryResult("Dairy & Eggs", 1.0)
    assert stub.calls == []


def test_confident_categorizer_used(sequencer):
    item = ShoppingListItem(id=1, product_name="Tofu")
    stub = StubCategorizer({"Tofu": CategoryResult("Produce", 0.9)})

    assert sequencer.resolve_category(item, stub) == CategoryResult("Produce", 0.9)


def test_low_confidence_or_failing_categorizer_falls_back(sequencer):
    item = ShoppingListItem(id=1, product_name="Whole milk")

    low = sequencer.resolve_category(item, StubCategorizer({"Whole milk": CategoryResult("Bakery", 0.3)}))
    broken = sequencer.resolve_category(item, StubCategorizer(error=RuntimeError("offline")))

    assert low.category == broken.category == "Dairy & Eggs"


def test_keyword_categorizer_generic_catch_all():
    categorizer = KeywordCategorizer()

    assert categorizer.categorize("Frozen peas").category == "Frozen Foods"
    assert categorizer.categorize("Bananas").category == "Produce"
    assert categorizer.categorize("Widget").category == GENERIC_CATEGORY


# ============================================================================
# AISLES
# ============================================================================

def test_aisles_follow_walking_order(sequencer):
    store = _store("Shampoo", "Milk", "Bananas", "Chicken thighs", "Rice", "Widget")

    route = sequencer.sequence(store)

    assert [aisle.category for aisle in route.aisles] == [
        "Produce", "Dairy & Eggs", "Meat & Seafood", "Pantry & Canned Goods", "Personal Care", GENERIC_CATEGORY,
    ]
    assert [aisle.order for aisle in route.aisles] == sorted(aisle.order for aisle in route.aisles)
    assert route.item_count == 6


def test_aisle_order_independent_of_item_order(sequencer):
    names = ["Shampoo", "Milk", "Bananas", "Bread", "Ice cream"]
    forward = sequencer.sequence(_store(*names))
    backward = sequencer.sequence(_store(*reversed(names)))

    assert [a.name for a in forward.aisles] == [a.name for a in backward.aisles]


def test_location_hints(sequencer):
    route = sequencer.sequence(_store("Whole milk", "Kombucha"))
    hints = {routed.product_name: routed.location_hint for aisle in route.aisles for routed in aisle.items}

    assert hints["Whole milk"] == "Back wall, dairy cooler"
    assert hints["Kombucha"] == "Check store directory"


def test_route_store_attaches_aisles(sequencer):
    store = sequencer.route_store(_store("Milk", "Bread"))

    assert len(store.aisles) == 2
    assert store.estimated_minutes == 15
    assert sorted(routed.item_id for routed in store.routed_items()) == [1, 2]


# ============================================================================
# TIME ESTIMATE
# ============================================================================

def test_estimate_includes_complex_and_fresh_items(sequencer):
    names = ["Organic spinach", "Salmon fillet"] + [f"Rice {i}" for i in range(30)]
    route = sequencer.sequence(_store(*names))

    # 3 aisles * 3 + 32 items * 0.5 = 25, + 1.5 organic + 1 spinach + 1 salmon = 28.5
    assert route.estimated_minutes == 29


def test_estimate_never_below_base(sequencer):
    assert sequencer.sequence(_store("Milk")).estimated_minutes == 15


def test_estimate_monotonic_in_item_count(sequencer):
    previous = 0
    for count in range(1, 60):
        minutes = sequencer.sequence(_store(*[f"Pasta {i}" for i in range(count)])).estimated_minutes
        assert minutes >= previous
        previous = minutes


# ============================================================================
# ASYNCHRONOUS UPGRADE
# ============================================================================

def test_upgrade_moves_item_without_duplication(sequencer):
    route = sequencer.sequence(_store("Kombucha", "Milk"))
    kombucha = next(r for a in route.aisles for r in a.items if r.product_name == "Kombucha")
    assert kombucha.category == GENERIC_CATEGORY

    upgraded = sequencer.apply_upgrade(route.aisles, kombucha.item_id, CategoryResult("Dairy & Eggs", 0.9))

    item_ids = [r.item_id for a in upgraded for r in a.items]
    assert sorted(item_ids) == [1, 2]
    assert [a.category for a in upgraded] == ["Dairy & Eggs"]


def test_upgrade_keeps_empty_aisles_when_requested(sequencer):
    route = sequencer.sequence(_store("Kombucha", "Milk"))

    upgraded = sequencer.apply_upgrade(route.aisles, 1, CategoryResult("Produce", 0.95), keep_empty=True)

    assert [a.category for a in upgraded] == ["Produce", "Dairy & Eggs", GENERIC_CATEGORY]
    assert upgraded[-1].items == ()


def test_upgrade_ignored_without_confidence_margin(sequencer):
    route = sequencer.sequence(_store("Milk"))

    assert sequencer.apply_upgrade(route.aisles, 1, CategoryResult("Bakery", 0.8)) is None
    assert sequencer.apply_upgrade(route.aisles, 1, CategoryResult("Dairy & Eggs", 0.99)) is None
    assert sequencer.apply_upgrade(route.aisles, 99, CategoryResult("Bakery", 0.99)) is None


# ============================================================================
# LLM CATEGORIZER
# ============================================================================

class _FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error

    def create(self, **kwargs):
        if self.error:
            raise self.error
        message = type("Message", (), {"content": self.content})
        choice = type("Choice", (), {"message": message})
        return type("Response", (), {"choices": [choice]})


class _FakeClient:
    def __init__(self, completions):
        self.chat = type("Chat", (), {"completions": completions})


def test_llm_categorizer_parses_fenced_json():
    client = _FakeClient(_FakeCompletions('```json\n{"category": "produce", "confidence": 0.92}\n```'))

    result = LLMCategorizer(client=client).categorize("Tofu")

    assert result == CategoryResult("Produce", 0.92)


@pytest.mark.parametrize("completions", [
    _FakeCompletions("not json at all"),
    _FakeCompletions('{"category": "Spaceship parts", "confidence": 0.99}'),
    _FakeCompletions('{"category": "Produce", "confidence": 7}'),
    _FakeCompletions(error=TimeoutError("slow")),
])
def test_llm_categorizer_never_raises(completions):
    result = LLMCategorizer(client=_FakeClient(completions)).categorize("Tofu")

    assert result == CategoryResult(GENERIC_CATEGORY, 0.0)


def test_llm_categorizer_requires_key_without_client():
    with pytest.raises(ValueError):
        LLMCategorizer(config=RouteConfig())


def test_extract_json_from_plain_reply():
    assert _extract_json_from_response('Sure! {"a": 1} hope that helps') == '{"a": 1}'
