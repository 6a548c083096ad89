"""
Route Sequencer - turn a StorePlan into an ordered walk through the aisles

1. Resolve a category per item: known item category first, then the external
   categorizer (if confident enough), then the local keyword table, with
   "Generic" as the catch-all.
2. Map categories onto the fixed aisle table. The table order is the walking
   route, so the same set of categories always yields the same aisle order.
3. Attach a shelf-location hint per item.
4. Estimate shopping time:
       max(15, aisles*3 + items*0.5) + 1.5 per complex item + 1 per fresh item
   rounded to the nearest minute.

Aisle snapshots are immutable; reassignment after an asynchronous category
upgrade returns a new tuple of aisles.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from categorizer import Categorizer, KeywordCategorizer
from config import RouteConfig
from plan_types import Aisle, CategoryResult, PlannedItem, RoutedItem, ShoppingListItem, StorePlan

logger = logging.getLogger(__name__)

KNOWN_CATEGORY_CONFIDENCE = 1.0


@dataclass(frozen=True)
class RouteResult:
    aisles: Tuple[Aisle, ...]
    estimated_minutes: int

    @property
    def item_count(self) -> int:
        return sum(len(aisle.items) for aisle in self.aisles)


class RouteSequencer:
    """Groups a store's items into ordered aisles"""

    def __init__(
        self,
        config: Optional[RouteConfig] = None,
        fallback: Optional[KeywordCategorizer] = None,
    ):
        self.config = config or RouteConfig()
        self.fallback = fallback or KeywordCategorizer(self.config)

    # ------------------------------------------------------------------
    # Category resolution
    # ------------------------------------------------------------------

    def resolve_category(
        self,
        item: ShoppingListItem,
        categorizer: Optional[Categorizer] = None,
    ) -> CategoryResult:
        """
        Resolve the aisle category of an item.

        Args:
            item: List item (its own category wins when it maps onto the table)
            categorizer: External categorizer; failures and low confidence
                fall through to the local keyword table

        Returns:
            CategoryResult with a canonical category
        """
        known = self.config.canonical_category(item.category)
        if known is not None:
            return CategoryResult(category=known, confidence=KNOWN_CATEGORY_CONFIDENCE)

        if categorizer is not None:
            try:
                result = categorizer.categorize(item.product_name)
            except Exception as e:
                logger.warning(f"Categorizer failed for {item.product_name!r}, using keyword table: {e}")
                result = None
            if result is not None and result.confidence >= self.config.min_confidence:
                category = self.config.canonical_category(result.category)
                if category is not None:
                    return CategoryResult(category=category, confidence=result.confidence)

        return self.fallback.categorize(item.product_name)

    def location_hint(self, category: str, product_name: str) -> str:
        name = product_name.lower()
        for hint_category, substring, hint in self.config.location_hints:
            if hint_category == category and substring in name:
                return hint
        return self.config.default_location_hint

    def route_item(self, planned: PlannedItem, result: CategoryResult) -> RoutedItem:
        return RoutedItem(
            planned=planned,
            category=result.category,
            category_confidence=result.confidence,
            location_hint=self.location_hint(result.category, planned.item.product_name),
        )

    # ------------------------------------------------------------------
    # Aisles
    # ------------------------------------------------------------------

    def build_aisles(self, routed_items: Iterable[RoutedItem]) -> Tuple[Aisle, ...]:
        """Group routed items by category, ordered by the aisle table."""
        aisles: Tuple[Aisle, ...] = ()
        for routed in routed_items:
            aisles = self.insert_item(aisles, routed)
        return aisles

    def insert_item(self, aisles: Tuple[Aisle, ...], routed: RoutedItem) -> Tuple[Aisle, ...]:
        """Add an item to its category's aisle, creating the aisle in table order."""
        spec = self.config.aisle_for(routed.category)
        result: List[Aisle] = []
        inserted = False
        for aisle in aisles:
            if not inserted and aisle.category == spec.category:
                result.append(aisle.model_copy(update={"items": aisle.items + (routed,)}))
                inserted = True
                continue
            if not inserted and aisle.order > spec.order:
                result.append(self._new_aisle(spec, routed))
                inserted = True
            result.append(aisle)
        if not inserted:
            result.append(self._new_aisle(spec, routed))
        return tuple(result)

    @staticmethod
    def _new_aisle(spec, routed: RoutedItem) -> Aisle:
        return Aisle(
            name=spec.name,
            order=spec.order,
            color=spec.color,
            category=spec.category,
            items=(routed,),
        )

    def estimate_minutes(self, aisles: Iterable[Aisle]) -> int:
        """Heuristic walking time; non-decreasing in the number of items."""
        aisles = [aisle for aisle in aisles if aisle.items]
        names = [routed.product_name.lower() for aisle in aisles for routed in aisle.items]
        cfg = self.config

        minutes = max(cfg.base_minutes, len(aisles) * cfg.minutes_per_aisle + len(names) * cfg.minutes_per_item)
        for name in names:
            if any(keyword in name for keyword in cfg.complex_keywords):
                minutes += cfg.complex_item_minutes
            if any(keyword in name for keyword in cfg.fresh_keywords):
                minutes += cfg.fresh_item_minutes
        return int(math.floor(minutes + 0.5))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sequence(self, store_plan: StorePlan, categorizer: Optional[Categorizer] = None) -> RouteResult:
        """
        Sequence a store's items into aisles.

        Args:
            store_plan: Allocated items for one retailer
            categorizer: External categorizer (optional)

        Returns:
            RouteResult with ordered non-empty aisles and estimated minutes
        """
        routed = [
            self.route_item(planned, self.resolve_category(planned.item, categorizer))
            for planned in store_plan.items
        ]
        aisles = self.build_aisles(routed)
        minutes = self.estimate_minutes(aisles)
        logger.info(
            f"✓ Sequenced {len(routed)} items at {store_plan.retailer_name} "
            f"into {len(aisles)} aisles (~{minutes} min)"
        )
        return RouteResult(aisles=aisles, estimated_minutes=minutes)

    def route_store(self, store_plan: StorePlan, categorizer: Optional[Categorizer] = None) -> StorePlan:
        """Return a copy of the StorePlan with its aisles and time estimate attached."""
        route = self.sequence(store_plan, categorizer)
        return store_plan.model_copy(update={
            "aisles": route.aisles,
            "estimated_minutes": route.estimated_minutes,
        })

    def apply_upgrade(
        self,
        aisles: Tuple[Aisle, ...],
        item_id: int,
        result: CategoryResult,
        keep_empty: bool = False,
    ) -> Optional[Tuple[Aisle, ...]]:
        """
        Move an item to a better category reported after the initial route.

        The item is removed from its old aisle and added to the new one in a
        single new snapshot, so it is never in two aisles at once.

        Returns:
            New aisles, or None if the upgrade does not warrant a move
        """
        current = next((r for aisle in aisles for r in aisle.items if r.item_id == item_id), None)
        if current is None:
            return None

        category = self.config.canonical_category(result.category)
        if category is None or category == current.category:
            return None
        if result.confidence < current.category_confidence + self.config.upgrade_margin:
            return None

        moved = self.route_item(current.planned, CategoryResult(category=category, confidence=result.confidence))
        remaining = tuple(
            aisle.model_copy(update={"items": tuple(r for r in aisle.items if r.item_id != item_id)})
            for aisle in aisles
        )
        if not keep_empty:
            remaining = tuple(aisle for aisle in remaining if aisle.items)

        logger.info(f"Recategorized item {item_id}: {current.category} -> {category} ({result.confidence:.2f})")
        return self.insert_item(remaining, moved)
