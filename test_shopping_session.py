"""Shopping session state machine"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from analytics import LoggingAnalyticsSink
from conftest import NOW, FakeListStore
from errors import (
    ConcurrentModificationError, ExpiredSessionError, InvalidTransitionError, LoyaltyCardRequiredError,
    NotFoundError, PersistenceError, UnresolvedItemsError,
)
from plan_types import LoyaltyCard, PlannedItem, PlanStrategy, ShoppingListItem, ShoppingPlan, StorePlan
from route_sequencer import RouteSequencer
from session_state import (
    AdvanceStore, ApplyCategoryUpgrade, EndStore, MarkUnavailable, NavigateAisle, NavigateDirection,
    SessionStatus, ShowLoyaltyCard, ToggleItem, UnavailableResolution, UncompletedReason,
)
from session_store import InMemorySessionStore
from shopping_session import ShoppingSessionManager

LIST_ID = 1


def _plan(*stores, strategy=PlanStrategy.BEST_VALUE):
    """stores: (retailer_id, retailer_name, [(item_id, product_name), ...])"""
    sequencer = RouteSequencer()
    store_plans = []
    for retailer_id, retailer_name, entries in stores:
        planned = tuple(
            PlannedItem(
                item=ShoppingListItem(id=item_id, product_name=name, shopping_list_id=LIST_ID),
                retailer_id=retailer_id,
                unit_price=2.0,
                price=2.0,
                original_price=2.0,
            )
            for item_id, name in entries
        )
        store_plans.append(sequencer.route_store(
            StorePlan(retailer_id=retailer_id, retailer_name=retailer_name, items=planned)
        ))
    return ShoppingPlan(list_id=LIST_ID, strategy=strategy, stores=tuple(store_plans), generated_at=NOW)


def _list_store_for(plan):
    return FakeListStore(planned.item for store in plan.stores for planned in store.items)


class FakeLoyaltyLookup:
    def get_loyalty_card(self, user_id, retailer_name):
        if retailer_name == "Retailer A":
            return LoyaltyCard(retailer_id=1, card_number="LC-42", discount_percentage=5)
        return None


SINGLE = ((1, "Retailer A", [(1, "Bananas"), (2, "Milk"), (3, "Rice")]),)
MULTI = (
    (1, "Retailer A", [(1, "Bananas"), (2, "Milk")]),
    (2, "Retailer B", [(3, "Rice"), (4, "Shampoo")]),
)


@pytest.fixture
def session_store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def analytics():
    return LoggingAnalyticsSink()


@pytest.fixture
def setup(session_store, analytics):
    """Build (plan, list_store, manager) for a plan layout"""
    def _setup(*stores, loyalty_lookup=None):
        plan = _plan(*stores)
        list_store = _list_store_for(plan)
        manager = ShoppingSessionManager(
            list_store, session_store, analytics=analytics, loyalty_lookup=loyalty_lookup,
        )
        return plan, list_store, manager
    return _setup


# ============================================================================
# START / TOGGLE / PERSISTENCE
# ============================================================================

def test_start_initializes_session(setup, session_store):
    plan, _, manager = setup(*SINGLE)

    state = manager.start(plan)

    assert state.status == SessionStatus.NOT_STARTED
    assert (state.current_store_index, state.current_aisle_index) == (0, 0)
    assert state.completed_item_ids == frozenset()
    assert not state.is_multi_store
    assert session_store.load(LIST_ID) is None


def test_first_toggle_starts_and_persists(setup, session_store):
    plan, _, manager = setup(*SINGLE)
    manager.start(plan)

    state = manager.apply_event(LIST_ID, ToggleItem(1))

    assert state.status == SessionStatus.IN_PROGRESS
    assert state.started_at == NOW
    assert state.completed_item_ids == {1}
    assert state.version == 1
    assert session_store.load(LIST_ID).completed_item_ids == {1}

    state = manager.apply_event(LIST_ID, ToggleItem(1))
    assert state.completed_item_ids == frozenset()
    assert state.version == 2


def test_toggle_rejects_items_outside_current_store(setup):
    plan, _, manager = setup(*MULTI)
    manager.start(plan)

    with pytest.raises(InvalidTransitionError):
        manager.apply_event(LIST_ID, ToggleItem(3))
    with pytest.raises(NotFoundError):
        manager.apply_event(LIST_ID, ToggleItem(99))


def test_unopened_session_is_not_resumed(setup, session_store):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)

    assert manager.suspend(LIST_ID) is False

    reopened = ShoppingSessionManager(list_store, session_store)
    assert reopened.resume(LIST_ID) is None
    assert session_store.load(LIST_ID) is None


def test_resume_round_trip(setup, session_store):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.apply_event(LIST_ID, ToggleItem(2))
    before = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.FORWARD))

    assert manager.suspend(LIST_ID) is True
    reopened = ShoppingSessionManager(list_store, session_store)
    after = reopened.resume(LIST_ID)

    assert after.current_store_index == before.current_store_index
    assert after.current_aisle_index == before.current_aisle_index == 1
    assert after.completed_item_ids == before.completed_item_ids == {1, 2}
    assert after.status == SessionStatus.IN_PROGRESS
    assert after.restored is True
    assert after.started_at == before.started_at


def test_restore_alone_is_not_progress(setup, session_store, clock):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.suspend(LIST_ID)
    saved_version = session_store.load(LIST_ID).version

    clock.advance(hours=1)
    restored = ShoppingSessionManager(list_store, session_store).resume(LIST_ID)

    assert restored.started_at == NOW
    assert session_store.load(LIST_ID).version == saved_version


def test_expired_session_is_discarded(setup, session_store, clock):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.suspend(LIST_ID)

    clock.advance(hours=25)
    with pytest.raises(ExpiredSessionError):
        ShoppingSessionManager(list_store, session_store).resume(LIST_ID)
    assert session_store.load(LIST_ID) is None


def test_session_within_window_resumes(setup, session_store, clock):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.suspend(LIST_ID)

    clock.advance(hours=23, minutes=59)
    assert ShoppingSessionManager(list_store, session_store).resume(LIST_ID) is not None


def test_expired_live_session_rejects_events(setup, clock):
    plan, _, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))

    clock.advance(hours=24, seconds=1)
    with pytest.raises(ExpiredSessionError):
        manager.apply_event(LIST_ID, ToggleItem(2))
    with pytest.raises(NotFoundError):
        manager.get(LIST_ID)


def test_concurrent_writer_detected(setup, session_store):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.suspend(LIST_ID)

    phone = ShoppingSessionManager(list_store, session_store)
    tablet = ShoppingSessionManager(list_store, session_store)
    phone.resume(LIST_ID)
    tablet.resume(LIST_ID)

    phone.apply_event(LIST_ID, ToggleItem(2))
    with pytest.raises(ConcurrentModificationError):
        tablet.apply_event(LIST_ID, ToggleItem(3))
    assert tablet.get(LIST_ID).completed_item_ids == {1}


def test_concurrent_toggles_are_not_lost(session_store):
    items = [(i, f"Rice {i}") for i in range(1, 21)]
    plan = _plan((1, "Retailer A", items))
    manager = ShoppingSessionManager(_list_store_for(plan), session_store)
    manager.start(plan)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda item_id: manager.apply_event(LIST_ID, ToggleItem(item_id)), range(1, 21)))

    assert manager.get(LIST_ID).completed_item_ids == frozenset(range(1, 21))
    assert session_store.load(LIST_ID).version == 20


# ============================================================================
# UNAVAILABLE ITEMS
# ============================================================================

def test_found_anyway_completes_item(setup):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)

    state = manager.apply_event(LIST_ID, MarkUnavailable(2, UnavailableResolution.FOUND_ANYWAY))

    assert 2 in state.completed_item_ids
    assert list_store.update_calls == []


def test_move_to_next_store(setup):
    plan, list_store, manager = setup(*MULTI)
    manager.start(plan)

    state = manager.apply_event(
        LIST_ID, MarkUnavailable(2, UnavailableResolution.MOVE_TO_NEXT_STORE, UncompletedReason.OUT_OF_STOCK)
    )

    assert 2 not in state.plan.stores[0].item_ids()
    assert 2 in state.plan.stores[1].item_ids()
    assert state.plan.stores[1].find_routed(2) is not None
    assert sorted(state.plan.item_ids()) == [1, 2, 3, 4]
    assert list_store.items[2].notes == "Moved from Retailer A: Out of stock"
    assert list_store.items[2].suggested_retailer_id == 2
    assert state.moved_items[0].to_retailer_name == "Retailer B"


def test_move_at_last_store_saves_for_next_trip(setup):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)

    state = manager.apply_event(
        LIST_ID, MarkUnavailable(3, UnavailableResolution.MOVE_TO_NEXT_STORE, UncompletedReason.OUT_OF_STOCK)
    )

    assert 3 in state.saved_item_ids
    assert 3 not in state.plan.item_ids()
    assert list_store.items[3].notes == "Out of stock at Retailer A on 03/14/2026"
    assert state.moved_items == ()


def test_remove_from_list(setup):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)

    state = manager.apply_event(LIST_ID, MarkUnavailable(2, UnavailableResolution.REMOVE_FROM_LIST))

    assert 2 not in list_store.items
    assert 2 not in state.plan.item_ids()
    assert 2 in state.removed_item_ids


def test_failed_list_write_leaves_state_untouched(setup):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    before = manager.get(LIST_ID)
    list_store.fail_update_ids = {3}

    with pytest.raises(PersistenceError):
        manager.apply_event(LIST_ID, MarkUnavailable(3, UnavailableResolution.SAVE_FOR_NEXT_TRIP))

    assert manager.get(LIST_ID) == before

    list_store.fail_update_ids = set()
    state = manager.apply_event(LIST_ID, MarkUnavailable(3, UnavailableResolution.SAVE_FOR_NEXT_TRIP))
    assert 3 in state.saved_item_ids


# ============================================================================
# NAVIGATION
# ============================================================================

def test_navigation_skips_empty_aisles(setup):
    plan, _, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, MarkUnavailable(2, UnavailableResolution.REMOVE_FROM_LIST))

    state = manager.get(LIST_ID)
    assert [len(aisle.items) for aisle in state.current_store.aisles] == [1, 0, 1]

    state = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.FORWARD))
    assert state.current_aisle_index == 2

    state = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.FORWARD))
    assert state.at_checkout

    state = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.BACK))
    assert (state.current_aisle_index, state.at_checkout) == (2, False)

    state = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.BACK))
    assert state.current_aisle_index == 0

    state = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.JUMP, index=1))
    assert state.current_aisle_index == 2


# ============================================================================
# END STORE / END TRIP
# ============================================================================

def test_finalize_isolates_failed_deletion(setup):
    plan, list_store, manager = setup((1, "Retailer A", [
        (1, "Bananas"), (2, "Milk"), (3, "Rice"), (4, "Bread"), (5, "Shampoo"),
    ]))
    manager.start(plan)
    for item_id in (1, 2, 3):
        manager.apply_event(LIST_ID, ToggleItem(item_id))
    list_store.fail_delete_ids = {2}

    state = manager.apply_event(
        LIST_ID, EndStore(UnavailableResolution.SAVE_FOR_NEXT_TRIP, UncompletedReason.NOT_FOUND)
    )

    assert sorted(list_store.delete_calls) == [1, 2, 3]
    assert set(list_store.items) == {2, 4, 5}
    result = state.store_results[0]
    assert sorted(result.deleted_item_ids) == [1, 3]
    assert result.failed_deletion_ids == (2,)
    assert sorted(result.annotated_item_ids) == [4, 5]
    for item_id in (4, 5):
        assert list_store.items[item_id].notes == "Not found at Retailer A on 03/14/2026"
    assert state.status == SessionStatus.ALL_STORES_COMPLETE

    list_store.fail_delete_ids = set()
    state = manager.retry_failed_deletions(LIST_ID)
    assert state.store_results[0].failed_deletion_ids == ()
    assert set(list_store.items) == {4, 5}


def test_end_store_requires_resolution_for_leftovers(setup):
    plan, _, manager = setup(*MULTI)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))

    with pytest.raises(UnresolvedItemsError) as excinfo:
        manager.apply_event(LIST_ID, EndStore())

    assert excinfo.value.item_ids == [2]
    assert excinfo.value.allowed_resolutions == ["found_anyway", "move_to_next_store", "save_for_next_trip"]


def test_final_store_does_not_offer_move(setup):
    plan, _, manager = setup(*SINGLE)
    manager.start(plan)

    with pytest.raises(UnresolvedItemsError) as excinfo:
        manager.apply_event(LIST_ID, EndStore())
    assert excinfo.value.allowed_resolutions == ["found_anyway", "save_for_next_trip"]

    with pytest.raises(InvalidTransitionError):
        manager.apply_event(LIST_ID, EndStore(UnavailableResolution.MOVE_TO_NEXT_STORE))


def test_mark_all_found_deletes_everything(setup):
    plan, list_store, manager = setup(*SINGLE)
    manager.start(plan)

    state = manager.apply_event(LIST_ID, EndStore(UnavailableResolution.FOUND_ANYWAY))

    assert list_store.items == {}
    assert sorted(state.store_results[0].deleted_item_ids) == [1, 2, 3]


def test_loyalty_card_gate(setup):
    plan, _, manager = setup(*MULTI, loyalty_lookup=FakeLoyaltyLookup())
    state = manager.start(plan, user_id=7)
    assert state.pending_loyalty_card == "LC-42"

    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.apply_event(LIST_ID, ToggleItem(2))
    with pytest.raises(LoyaltyCardRequiredError) as excinfo:
        manager.apply_event(LIST_ID, EndStore())
    assert excinfo.value.card_number == "LC-42"

    manager.apply_event(LIST_ID, ShowLoyaltyCard())
    state = manager.apply_event(LIST_ID, EndStore())
    assert state.status == SessionStatus.STORE_COMPLETE

    # Retailer B has no card: no gate, and nothing to show
    state = manager.apply_event(LIST_ID, AdvanceStore())
    assert state.pending_loyalty_card is None
    with pytest.raises(InvalidTransitionError):
        manager.apply_event(LIST_ID, ShowLoyaltyCard())


def test_multi_store_trip_end_to_end(setup, analytics, session_store, clock):
    plan, list_store, manager = setup(*MULTI)
    manager.start(plan)

    manager.apply_event(LIST_ID, ToggleItem(1))
    manager.apply_event(
        LIST_ID, MarkUnavailable(2, UnavailableResolution.MOVE_TO_NEXT_STORE, UncompletedReason.OUT_OF_STOCK)
    )
    state = manager.apply_event(LIST_ID, EndStore())
    assert state.status == SessionStatus.STORE_COMPLETE
    with pytest.raises(InvalidTransitionError):
        manager.apply_event(LIST_ID, ToggleItem(2))
    with pytest.raises(InvalidTransitionError):
        manager.end_trip(LIST_ID)

    state = manager.apply_event(LIST_ID, AdvanceStore())
    assert (state.current_store_index, state.current_aisle_index) == (1, 0)
    assert state.completed_item_ids == frozenset()
    assert state.status == SessionStatus.IN_PROGRESS

    for item_id in (3, 4, 2):
        manager.apply_event(LIST_ID, ToggleItem(item_id))
    state = manager.apply_event(LIST_ID, EndStore())
    assert state.status == SessionStatus.ALL_STORES_COMPLETE
    with pytest.raises(InvalidTransitionError):
        manager.apply_event(LIST_ID, AdvanceStore())

    clock.advance(minutes=30)
    summary = manager.end_trip(LIST_ID)

    assert summary.total_items == 4
    assert summary.completed == 4
    assert summary.moved == 1
    assert summary.completion_rate == 100.0
    assert summary.deleted_count == 4
    assert summary.updated_count == 1
    assert summary.duration_minutes == 30
    assert summary.retailer_names == ("Retailer A", "Retailer B")
    assert summary.plan_type == "multi-store"
    assert list_store.items == {}

    assert len(analytics.records) == 1
    assert analytics.records[0]["moved_items"][0]["to_retailer_name"] == "Retailer B"
    assert session_store.load(LIST_ID) is None
    with pytest.raises(NotFoundError):
        manager.get(LIST_ID)


def test_analytics_failure_does_not_block_trip_end(session_store):
    class BrokenSink:
        def record_trip_completion(self, payload):
            raise ConnectionError("analytics down")

    plan = _plan(*SINGLE)
    manager = ShoppingSessionManager(_list_store_for(plan), session_store, analytics=BrokenSink())
    manager.start(plan)
    manager.apply_event(LIST_ID, EndStore(UnavailableResolution.FOUND_ANYWAY))

    summary = manager.end_trip(LIST_ID)

    assert summary.completed == 3


def test_sessions_leaving_memory_release_their_locks(setup):
    plan, _, manager = setup(*SINGLE)
    manager.start(plan)
    manager.apply_event(LIST_ID, ToggleItem(1))
    assert LIST_ID in manager._locks

    manager.suspend(LIST_ID)
    assert LIST_ID not in manager._locks

    manager.resume(LIST_ID)
    manager.apply_event(LIST_ID, EndStore(UnavailableResolution.FOUND_ANYWAY))
    manager.end_trip(LIST_ID)

    assert manager._locks == {}


# ============================================================================
# CATEGORY UPGRADES
# ============================================================================

def test_category_upgrade_is_not_progress(setup, session_store):
    plan, _, manager = setup((1, "Retailer A", [(1, "Kombucha"), (2, "Bananas")]))
    manager.start(plan)

    state = manager.apply_event(LIST_ID, ApplyCategoryUpgrade(1, "Dairy & Eggs", 0.9))

    assert [aisle.category for aisle in state.current_store.aisles] == ["Produce", "Dairy & Eggs", "Generic"]
    assert state.started_at is None
    assert session_store.load(LIST_ID) is None


def test_category_upgrade_keeps_shopper_on_same_aisle(setup):
    plan, _, manager = setup((1, "Retailer A", [(1, "Kombucha"), (2, "Bananas"), (3, "Shampoo")]))
    manager.start(plan)
    state = manager.apply_event(LIST_ID, NavigateAisle(NavigateDirection.FORWARD))
    assert state.current_store.aisles[state.current_aisle_index].category == "Personal Care"

    state = manager.apply_event(LIST_ID, ApplyCategoryUpgrade(1, "Produce", 0.95))

    assert state.current_store.aisles[state.current_aisle_index].category == "Personal Care"
    assert state.current_store.aisles[0].item_ids() == [2, 1]
    assert sum(len(aisle.items) for aisle in state.current_store.aisles) == 3


def test_weak_category_upgrade_ignored(setup):
    plan, _, manager = setup(*SINGLE)
    state = manager.start(plan)

    assert manager.apply_event(LIST_ID, ApplyCategoryUpgrade(2, "Bakery", 0.5)) is state
