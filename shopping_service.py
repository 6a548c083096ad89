"""
Shopping Service - entry point used by the UI / API layer

Pipeline:
    list items + concurrent per-retailer deal fetch
      -> Store Allocator (Deal Matcher + Price Optimizer per retailer)
      -> Route Sequencer (keyword categories, immediate)
      -> ShoppingPlan

Sessions:
    start_session / apply_session_event / end_trip / resume_session /
    suspend_session delegate to ShoppingSessionManager.

Background category upgrades:
    When an LLM categorizer is configured, items that were routed without a
    known category are re-categorized in a thread pool. Each result is posted
    back as an ApplyCategoryUpgrade event through the session lock, so the
    displayed route is never mutated from a worker thread. Pending upgrades
    are cancelled when the trip ends or the session is suspended.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional

from analytics import LoggingAnalyticsSink
from categorizer import LLMCategorizer
from config import Settings, load_settings
from database import DatabaseManager
from deal_feed import CachedDealFeed, HttpDealFeed, SqlDealFeed, SqlLoyaltyLookup, fetch_deal_catalog
from errors import ExpiredSessionError, InvalidTransitionError, NotFoundError, PersistenceError, describe
from list_store import SqlListStore
from plan_types import LoyaltyCard, PlanStrategy, ShoppingPlan, utcnow
from route_sequencer import KNOWN_CATEGORY_CONFIDENCE, RouteSequencer
from session_state import ApplyCategoryUpgrade, SessionState, TripSummary
from session_store import SqlSessionStore
from shopping_session import ShoppingSessionManager
from store_allocator import StoreAllocator

logger = logging.getLogger(__name__)


class ShoppingService:
    """Plan generation plus the shopping-session lifecycle"""

    def __init__(
        self,
        list_store,
        deal_feed,
        session_manager: ShoppingSessionManager,
        allocator: Optional[StoreAllocator] = None,
        sequencer: Optional[RouteSequencer] = None,
        retailer_directory=None,
        loyalty_lookup=None,
        upgrade_categorizer=None,
        clock: Optional[Callable[[], datetime]] = None,
        max_workers: int = 4,
    ):
        """
        Initialize the service.

        Args:
            list_store: ListStore for the shopper's items
            deal_feed: DealFeed queried once per retailer
            session_manager: Session state machine
            allocator: StoreAllocator (defaults to stock configuration)
            sequencer: RouteSequencer (defaults to the session manager's)
            retailer_directory: Object with get_retailers() -> {id: name};
                defaults to the deal feed when it provides one
            loyalty_lookup: LoyaltyLookup used to price loyalty discounts
            upgrade_categorizer: Categorizer used for background upgrades
            clock: Time source for plan generation
            max_workers: Thread pool size for background upgrades
        """
        self.list_store = list_store
        self.deal_feed = deal_feed
        self.sessions = session_manager
        self.allocator = allocator or StoreAllocator()
        self.sequencer = sequencer or session_manager.sequencer
        self.retailer_directory = retailer_directory or (deal_feed if hasattr(deal_feed, "get_retailers") else None)
        self.loyalty_lookup = loyalty_lookup
        self.upgrade_categorizer = upgrade_categorizer
        self.clock = clock or utcnow

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="category-upgrade")
        self._upgrades: Dict[int, List[Future]] = {}
        self._upgrades_lock = threading.Lock()

    # ========================================================================
    # PLAN GENERATION
    # ========================================================================

    def generate_plan(
        self,
        list_id: int,
        strategy: PlanStrategy = PlanStrategy.SINGLE_STORE,
        user_id: Optional[int] = None,
    ) -> ShoppingPlan:
        """
        Generate a shopping plan for a list.

        Args:
            list_id: Shopping list id
            strategy: single-store, multi-store (best value) or balanced
            user_id: Shopper id, used to look up loyalty cards

        Returns:
            ShoppingPlan with routed StorePlans
        """
        return asyncio.run(self.agenerate_plan(list_id, strategy, user_id))

    async def agenerate_plan(
        self,
        list_id: int,
        strategy: PlanStrategy = PlanStrategy.SINGLE_STORE,
        user_id: Optional[int] = None,
    ) -> ShoppingPlan:
        now = self.clock()
        strategy = PlanStrategy(strategy)
        items = [item for item in self.list_store.get_items(list_id) if not item.is_completed]
        if not items:
            logger.warning(f"List {list_id} has no open items; returning an empty plan")
            return ShoppingPlan(list_id=list_id, strategy=strategy, stores=(), generated_at=now)

        retailers = self.retailer_directory.get_retailers() if self.retailer_directory else {}
        deals = await fetch_deal_catalog(self.deal_feed, retailers.keys())
        loyalty_cards = self._loyalty_cards(user_id, retailers)

        stores = self.allocator.allocate(
            items,
            deals,
            strategy,
            retailers=retailers,
            loyalty_cards=loyalty_cards,
            now=now,
        )
        routed = tuple(self.sequencer.route_store(store) for store in stores)
        plan = ShoppingPlan(list_id=list_id, strategy=strategy, stores=routed, generated_at=now)

        logger.info(
            f"✓ Plan for list {list_id}: {len(plan.stores)} store(s), "
            f"${plan.total:.2f} total, ${plan.total_savings:.2f} saved"
        )
        return plan

    def _loyalty_cards(self, user_id: Optional[int], retailers: Dict[int, str]) -> Dict[int, LoyaltyCard]:
        if self.loyalty_lookup is None or user_id is None:
            return {}
        cards = {}
        for retailer_id, name in retailers.items():
            try:
                card = self.loyalty_lookup.get_loyalty_card(user_id, name)
            except Exception as e:
                logger.warning(f"Loyalty lookup failed for {name}, pricing without card: {describe(e)}")
                continue
            if card is not None:
                cards[retailer_id] = card
        return cards

    # ========================================================================
    # SESSIONS
    # ========================================================================

    def start_session(self, plan: ShoppingPlan, user_id: Optional[int] = None) -> int:
        """Start a trip and return its session id (the list id)."""
        state = self.sessions.start(plan, user_id=user_id)
        self._schedule_upgrades(state)
        return state.session_id

    def apply_session_event(self, session_id: int, event) -> SessionState:
        return self.sessions.apply_event(session_id, event)

    def end_trip(self, session_id: int) -> TripSummary:
        summary = self.sessions.end_trip(session_id)
        self._cancel_upgrades(session_id)
        return summary

    def resume_session(self, list_id: int) -> Optional[SessionState]:
        state = self.sessions.resume(list_id)
        if state is not None:
            self._schedule_upgrades(state)
        return state

    def suspend_session(self, list_id: int) -> bool:
        self._cancel_upgrades(list_id)
        return self.sessions.suspend(list_id)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ========================================================================
    # BACKGROUND CATEGORY UPGRADES
    # ========================================================================

    def _schedule_upgrades(self, state: SessionState) -> None:
        if self.upgrade_categorizer is None:
            return

        futures = []
        for store in state.plan.stores:
            for routed in store.routed_items():
                if routed.category_confidence >= KNOWN_CATEGORY_CONFIDENCE:
                    continue
                futures.append(self._executor.submit(
                    self._upgrade_item, state.session_id, routed.item_id, routed.product_name
                ))

        if futures:
            with self._upgrades_lock:
                self._upgrades.setdefault(state.session_id, []).extend(futures)
            logger.info(f"Scheduled {len(futures)} category upgrade(s) for session {state.session_id}")

    def _upgrade_item(self, session_id: int, item_id: int, product_name: str) -> None:
        result = self.upgrade_categorizer.categorize(product_name)
        try:
            self.sessions.apply_event(
                session_id,
                ApplyCategoryUpgrade(item_id=item_id, category=result.category, confidence=result.confidence),
            )
        except (NotFoundError, InvalidTransitionError, ExpiredSessionError) as e:
            logger.debug(f"Dropped category upgrade for item {item_id}: {describe(e)}")
        except PersistenceError as e:
            logger.warning(f"Category upgrade for item {item_id} not saved: {describe(e)}")

    def _cancel_upgrades(self, session_id: int) -> int:
        with self._upgrades_lock:
            futures = self._upgrades.pop(session_id, [])
        cancelled = sum(1 for future in futures if future.cancel())
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending category upgrade(s) for session {session_id}")
        return cancelled


def build_service(settings: Optional[Settings] = None, db_manager: Optional[DatabaseManager] = None) -> ShoppingService:
    """
    Wire the service against the database and the configured collaborators.

    The HTTP deal feed is used when DEAL_FEED_URL is set (with the database as
    cache); the LLM upgrade path is enabled when DEEPSEEK_API_KEY is set.
    """
    settings = settings or load_settings()
    db = db_manager or DatabaseManager(settings.database_url)

    sql_feed = SqlDealFeed(db)
    deal_feed = sql_feed
    if settings.deal_feed_url:
        deal_feed = CachedDealFeed(HttpDealFeed(settings.deal_feed_url, settings.deal_feed_api_key), sql_feed)

    sequencer = RouteSequencer()
    upgrade_categorizer = None
    if settings.deepseek_api_key:
        upgrade_categorizer = LLMCategorizer(api_key=settings.deepseek_api_key, config=sequencer.config)

    list_store = SqlListStore(db)
    loyalty_lookup = SqlLoyaltyLookup(db)
    manager = ShoppingSessionManager(
        list_store=list_store,
        session_store=SqlSessionStore(db),
        analytics=LoggingAnalyticsSink(),
        loyalty_lookup=loyalty_lookup,
        sequencer=sequencer,
        config=settings.session_config(),
    )
    return ShoppingService(
        list_store=list_store,
        deal_feed=deal_feed,
        session_manager=manager,
        sequencer=sequencer,
        retailer_directory=sql_feed,
        loyalty_lookup=loyalty_lookup,
        upgrade_categorizer=upgrade_categorizer,
    )


if __name__ == "__main__":
    from datetime import timedelta

    from models import Retailer, StoreDealRecord
    from session_state import AdvanceStore, EndStore, ShowLoyaltyCard, ToggleItem

    logging.basicConfig(level=logging.INFO)

    db = DatabaseManager("sqlite://")
    db.init_db()
    now = utcnow()
    with db.session_scope() as session:
        session.add_all([Retailer(id=1, name="Fresh Market"), Retailer(id=2, name="Value Foods")])
        session.add_all([
            StoreDealRecord(retailer_id=1, product_name="Milk", regular_price=4.00, sale_price=3.00,
                            start_date=now - timedelta(days=1), end_date=now + timedelta(days=6)),
            StoreDealRecord(retailer_id=2, product_name="Milk", regular_price=3.50, sale_price=3.50,
                            start_date=now - timedelta(days=1), end_date=now + timedelta(days=6)),
            StoreDealRecord(retailer_id=2, product_name="Bananas", regular_price=1.20, sale_price=0.59,
                            start_date=now - timedelta(days=1), end_date=now + timedelta(days=6)),
        ])

    service = build_service(Settings(database_url="sqlite://"), db_manager=db)
    service.list_store.add_item(1, "Milk")
    service.list_store.add_item(1, "Bananas", quantity=2)
    service.list_store.add_item(1, "Organic spinach", suggested_price=3.99)

    plan = service.generate_plan(1, PlanStrategy.BEST_VALUE)
    print(f"\nPlan ({plan.strategy.value}): ${plan.total:.2f}, saved ${plan.total_savings:.2f}")
    for store in plan.stores:
        print(f"  {store.retailer_name} (~{store.estimated_minutes} min)")
        for aisle in store.aisles:
            for routed in aisle.items:
                print(f"    {aisle.name}: {routed.product_name} ${routed.planned.price:.2f} [{routed.location_hint}]")

    session_id = service.start_session(plan)
    for index, store in enumerate(plan.stores):
        for item_id in store.item_ids():
            service.apply_session_event(session_id, ToggleItem(item_id))
        state = service.sessions.get(session_id)
        if state.pending_loyalty_card:
            service.apply_session_event(session_id, ShowLoyaltyCard())
        state = service.apply_session_event(session_id, EndStore())
        if index < len(plan.stores) - 1:
            service.apply_session_event(session_id, AdvanceStore())

    summary = service.end_trip(session_id)
    print(f"\nTrip: {summary.completed}/{summary.total_items} items, {summary.completion_rate}% complete")
    service.shutdown()
