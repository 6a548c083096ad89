"""
Store Allocator - assign every list item to exactly one retailer

Strategies:
- single-store: the retailer with the lowest optimized total for the whole
  list (ties: fewest items without a deal, then retailer id). Every item goes
  there even when it is cheaper elsewhere.
- best-value multi-store: each item goes to the retailer with its lowest
  optimized price; retailers left without items are dropped.
- balanced: items leave the dominant (single-store) retailer only when the
  saving clears both an absolute and a percentage threshold (or when the
  dominant retailer does not carry them), and the number of stores is capped.

When retailer totals are compared, an item a retailer does not carry counts
at its suggested price, else at the highest price any retailer charges.

In the multi-store strategies, items that no retailer can price go to the
unknown retailer (id 0) at default pricing instead of failing the allocation.
The balanced cap counts the unknown retailer as a store; at the cap those
items stay at the dominant retailer instead.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from config import AllocatorConfig
from plan_types import (
    Deal,
    LoyaltyCard,
    PlanStrategy,
    PlannedItem,
    ShoppingListItem,
    StorePlan,
    utcnow,
)
from price_optimizer import DEFAULT_PRICE_CONFIDENCE, PriceOptimizer, loyalty_percentage

logger = logging.getLogger(__name__)


class PriceMatrix:
    """
    Two-sided price matrix: rows are list item ids, columns are retailer ids.

    Values are the optimized line price of an item at a retailer (loyalty
    percentage included). If the retailer has no matching deal the value is
    float('inf').
    """

    def __init__(self, item_ids: List[int], retailer_ids: List[int]):
        self.item_ids = item_ids
        self.retailer_ids = sorted(retailer_ids)
        self.data = pd.DataFrame(
            data=float('inf'),
            index=item_ids,
            columns=self.retailer_ids,
            dtype=float,
        )

    def set_price(self, item_id: int, retailer_id: int, price: float) -> None:
        if item_id not in self.data.index:
            raise ValueError(f"Item {item_id} not in price matrix")
        if retailer_id not in self.data.columns:
            raise ValueError(f"Retailer {retailer_id} not in price matrix")
        self.data.loc[item_id, retailer_id] = price

    def get_price(self, item_id: int, retailer_id: int) -> float:
        if retailer_id not in self.data.columns:
            return float('inf')
        return float(self.data.loc[item_id, retailer_id])

    def cheapest_retailer(
        self,
        item_id: int,
        among: Optional[Iterable[int]] = None,
    ) -> Optional[Tuple[int, float]]:
        """Lowest-priced retailer for an item (ties go to the lowest retailer id)."""
        row = self.data.loc[item_id]
        if among is not None:
            allowed = [r for r in self.retailer_ids if r in set(among)]
            row = row[allowed]
        row = row[row < float('inf')]
        if row.empty:
            return None
        # Columns are sorted, so idxmin resolves ties to the lowest retailer id
        retailer_id = int(row.idxmin())
        return retailer_id, float(row[retailer_id])


class StoreAllocator:
    """Allocates list items to retailers under a PlanStrategy"""

    def __init__(
        self,
        optimizer: Optional[PriceOptimizer] = None,
        config: Optional[AllocatorConfig] = None,
    ):
        self.config = config or AllocatorConfig()
        self.optimizer = optimizer or PriceOptimizer(default_price=self.config.default_price)

    def allocate(
        self,
        items: Sequence[ShoppingListItem],
        deals: Iterable[Deal],
        strategy: PlanStrategy,
        retailers: Optional[Dict[int, str]] = None,
        loyalty_cards: Optional[Dict[int, LoyaltyCard]] = None,
        now: Optional[datetime] = None,
    ) -> List[StorePlan]:
        """
        Assign every item to exactly one retailer.

        Args:
            items: Shopping list items
            deals: Deal catalog across all retailers
            strategy: Allocation strategy
            retailers: Retailer directory {id: name}; retailers only present in
                the catalog are included as well
            loyalty_cards: Shopper's cards keyed by retailer id
            now: Evaluation time (defaults to current UTC time)

        Returns:
            StorePlans, one per retailer with at least one item
        """
        items = list(items)
        if not items:
            return []

        now = now or utcnow()
        retailers = dict(retailers or {})
        loyalty_cards = loyalty_cards or {}
        deals_by_retailer = self._group_deals(deals)
        for retailer_id, retailer_deals in deals_by_retailer.items():
            if retailer_id not in retailers:
                named = next((d.retailer_name for d in retailer_deals if d.retailer_name), None)
                retailers[retailer_id] = named or f"Retailer {retailer_id}"
        retailers.pop(self.config.unknown_retailer_id, None)

        retailer_ids = list(retailers)
        matrix = self.build_price_matrix(items, deals_by_retailer, retailer_ids, loyalty_cards, now)

        strategy = PlanStrategy(strategy)
        if strategy == PlanStrategy.BEST_VALUE:
            assignment = self._assign_best_value(items, matrix)
        else:
            reference = self.reference_items(items, deals_by_retailer, retailer_ids, now)
            dominant = self.choose_single_store(reference, deals_by_retailer, retailer_ids, loyalty_cards, now)
            if strategy == PlanStrategy.SINGLE_STORE:
                assignment = self._assign_single_store(items, dominant)
            else:
                assignment = self._assign_balanced(items, matrix, dominant)

        grouped: Dict[int, List[ShoppingListItem]] = {}
        for item in items:
            grouped.setdefault(assignment[item.id], []).append(item)

        plans = [
            self._build_store_plan(retailer_id, group, deals_by_retailer, retailers, loyalty_cards, now)
            for retailer_id, group in grouped.items()
        ]
        unknown = self.config.unknown_retailer_id
        plans.sort(key=lambda plan: (plan.retailer_id == unknown, -len(plan.items), plan.retailer_id))

        logger.info(
            f"✓ Allocated {len(items)} items to {len(plans)} store(s) using {strategy.value}: "
            f"{[plan.retailer_name for plan in plans]}"
        )
        return plans

    # ------------------------------------------------------------------
    # Price matrix
    # ------------------------------------------------------------------

    def build_price_matrix(
        self,
        items: List[ShoppingListItem],
        deals_by_retailer: Dict[int, List[Deal]],
        retailer_ids: List[int],
        loyalty_cards: Dict[int, LoyaltyCard],
        now: datetime,
    ) -> PriceMatrix:
        """Price every item at every retailer that carries a matching deal."""
        matrix = PriceMatrix([item.id for item in items], retailer_ids)
        for retailer_id in retailer_ids:
            retailer_deals = deals_by_retailer.get(retailer_id, [])
            factor = self._loyalty_factor(loyalty_cards.get(retailer_id))
            for item in items:
                planned = self.optimizer.match_price(item, retailer_deals, now, retailer_id)
                if planned is not None:
                    matrix.set_price(item.id, retailer_id, round(planned.price * factor, 4))
        return matrix

    @staticmethod
    def _loyalty_factor(card: Optional[LoyaltyCard]) -> float:
        return 1.0 - loyalty_percentage(card) / 100

    @staticmethod
    def _group_deals(deals: Iterable[Deal]) -> Dict[int, List[Deal]]:
        grouped: Dict[int, List[Deal]] = {}
        for deal in deals:
            grouped.setdefault(deal.retailer_id, []).append(deal)
        return grouped

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def reference_items(
        self,
        items: List[ShoppingListItem],
        deals_by_retailer: Dict[int, List[Deal]],
        retailer_ids: List[int],
        now: datetime,
    ) -> List[ShoppingListItem]:
        """
        Items as used for comparing retailer totals.

        An item without a suggested price is given the highest unit price any
        retailer charges for it, so a retailer that does not carry the item
        never looks cheaper for it.
        """
        reference = []
        for item in items:
            if item.suggested_price is not None:
                reference.append(item)
                continue
            unit_prices = []
            for retailer_id in retailer_ids:
                planned = self.optimizer.match_price(item, deals_by_retailer.get(retailer_id, []), now, retailer_id)
                if planned is not None:
                    unit_prices.append(planned.unit_price)
            if unit_prices:
                item = item.model_copy(update={"suggested_price": max(unit_prices)})
            reference.append(item)
        return reference

    def choose_single_store(
        self,
        items: List[ShoppingListItem],
        deals_by_retailer: Dict[int, List[Deal]],
        retailer_ids: List[int],
        loyalty_cards: Dict[int, LoyaltyCard],
        now: datetime,
    ) -> Optional[int]:
        """Retailer with the lowest optimized total for the whole list (see reference_items)."""
        best_key = None
        best_retailer = None
        for retailer_id in sorted(retailer_ids):
            result = self.optimizer.optimize(
                items,
                deals_by_retailer.get(retailer_id, []),
                loyalty_card=loyalty_cards.get(retailer_id),
                retailer_id=retailer_id,
                now=now,
                default_price=self.config.default_price,
            )
            key = (result.final_total, result.items_without_deal, retailer_id)
            logger.debug(f"Single-store candidate {retailer_id}: ${result.final_total:.2f}")
            if best_key is None or key < best_key:
                best_key = key
                best_retailer = retailer_id
        return best_retailer

    def _assign_single_store(self, items: List[ShoppingListItem], chosen: Optional[int]) -> Dict[int, int]:
        if chosen is None:
            chosen = self.config.unknown_retailer_id
        return {item.id: chosen for item in items}

    def _assign_best_value(self, items: List[ShoppingListItem], matrix: PriceMatrix) -> Dict[int, int]:
        assignment = {}
        for item in items:
            cheapest = matrix.cheapest_retailer(item.id)
            assignment[item.id] = cheapest[0] if cheapest else self.config.unknown_retailer_id
        return assignment

    def _assign_balanced(
        self,
        items: List[ShoppingListItem],
        matrix: PriceMatrix,
        dominant: Optional[int],
    ) -> Dict[int, int]:
        if dominant is None:
            return {item.id: self.config.unknown_retailer_id for item in items}

        assignment: Dict[int, int] = {}
        move_savings: Dict[int, float] = {}
        for item in items:
            retailer_id, saving = self._balanced_choice(item, matrix, dominant)
            assignment[item.id] = retailer_id
            if retailer_id not in (dominant, self.config.unknown_retailer_id):
                move_savings[retailer_id] = move_savings.get(retailer_id, 0.0) + saving

        # Cap the number of stores; keep the secondary retailers that save the most
        max_secondary = max(self.config.max_stores - 1, 0)
        if len(move_savings) > max_secondary:
            ranked = sorted(move_savings.items(), key=lambda kv: (-kv[1], kv[0]))
            kept = {retailer_id for retailer_id, _ in ranked[:max_secondary]}
            allowed = kept | {dominant}
            for item in items:
                if assignment[item.id] in move_savings and assignment[item.id] not in kept:
                    assignment[item.id], _ = self._balanced_choice(item, matrix, dominant, allowed)
            logger.info(f"Balanced plan capped at {self.config.max_stores} stores; dropped {sorted(set(move_savings) - kept)}")

        # The unknown retailer counts against the cap; when it would exceed it,
        # unpriceable items stay at the dominant retailer at fallback pricing
        unknown = self.config.unknown_retailer_id
        stores = set(assignment.values())
        if unknown in stores and len(stores) > max(self.config.max_stores, 1):
            for item_id, retailer_id in assignment.items():
                if retailer_id == unknown:
                    assignment[item_id] = dominant
            logger.info(f"Balanced plan at its {self.config.max_stores}-store cap; unpriceable items kept at {dominant}")

        return assignment

    def _balanced_choice(
        self,
        item: ShoppingListItem,
        matrix: PriceMatrix,
        dominant: int,
        allowed: Optional[Iterable[int]] = None,
    ) -> Tuple[int, float]:
        """Pick the item's retailer under the balanced thresholds; returns (retailer, saving)."""
        cheapest = matrix.cheapest_retailer(item.id, among=allowed)
        if cheapest is None:
            if matrix.cheapest_retailer(item.id) is None:
                return self.config.unknown_retailer_id, 0.0
            return dominant, 0.0

        retailer_id, price = cheapest
        if retailer_id == dominant:
            return dominant, 0.0

        dominant_price = matrix.get_price(item.id, dominant)
        if dominant_price == float('inf'):
            # dominant retailer does not carry the item
            return retailer_id, 0.0
        if dominant_price <= 0:
            return dominant, 0.0

        saving = dominant_price - price
        saving_pct = saving / dominant_price * 100
        if saving >= self.config.min_savings_amount and saving_pct >= self.config.min_savings_percent:
            return retailer_id, saving
        return dominant, 0.0

    # ------------------------------------------------------------------
    # Store plans
    # ------------------------------------------------------------------

    def _build_store_plan(
        self,
        retailer_id: int,
        items: List[ShoppingListItem],
        deals_by_retailer: Dict[int, List[Deal]],
        retailers: Dict[int, str],
        loyalty_cards: Dict[int, LoyaltyCard],
        now: datetime,
    ) -> StorePlan:
        """Re-run the optimizer scoped to the retailer's deal set."""
        assigned = [item.model_copy(update={"suggested_retailer_id": retailer_id}) for item in items]
        result = self.optimizer.optimize(
            assigned,
            deals_by_retailer.get(retailer_id, []),
            loyalty_card=loyalty_cards.get(retailer_id),
            retailer_id=retailer_id,
            now=now,
            default_price=self.config.default_price,
        )

        planned: List[PlannedItem] = [result.item_prices[item.id] for item in assigned]
        if retailer_id == self.config.unknown_retailer_id:
            planned = [p.model_copy(update={"confidence": DEFAULT_PRICE_CONFIDENCE}) for p in planned]
            name = self.config.unknown_retailer_name
        else:
            name = retailers.get(retailer_id, f"Retailer {retailer_id}")

        return StorePlan(
            retailer_id=retailer_id,
            retailer_name=name,
            items=tuple(planned),
            subtotal=result.final_total,
            savings=result.total_savings,
            loyalty_discount=result.loyalty_discount,
            stacked_coupons=tuple(result.stacked_coupons),
        )


if __name__ == "__main__":
    from datetime import timedelta

    logging.basicConfig(level=logging.INFO)

    now = utcnow()
    week = dict(start_date=now - timedelta(days=1), end_date=now + timedelta(days=6))
    catalog = [
        Deal(id=1, retailer_id=1, product_name="Milk", regular_price=4.00, sale_price=3.00, **week),
        Deal(id=2, retailer_id=2, product_name="Milk", regular_price=3.50, sale_price=3.50, **week),
        Deal(id=3, retailer_id=1, product_name="Ribeye steak", regular_price=14.00, sale_price=14.00, **week),
        Deal(id=4, retailer_id=2, product_name="Ribeye steak", regular_price=12.00, sale_price=9.99, **week),
        Deal(id=5, retailer_id=1, product_name="Bread", regular_price=2.50, sale_price=2.20, **week),
        Deal(id=6, retailer_id=2, product_name="Bread", regular_price=2.50, sale_price=2.50, **week),
    ]
    shopping_list = [
        ShoppingListItem(id=1, product_name="Milk"),
        ShoppingListItem(id=2, product_name="Steak"),
        ShoppingListItem(id=3, product_name="Bread", quantity=2),
        ShoppingListItem(id=4, product_name="Saffron", suggested_price=8.99),
    ]

    allocator = StoreAllocator()
    for plan_strategy in PlanStrategy:
        print(f"\n{plan_strategy.value}:")
        for store in allocator.allocate(shopping_list, catalog, plan_strategy, {1: "Fresh Market", 2: "Value Foods"}):
            names = ", ".join(p.item.product_name for p in store.items)
            print(f"  {store.retailer_name}: ${store.subtotal:.2f} (saved ${store.savings:.2f}) - {names}")
