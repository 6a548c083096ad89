"""
Price Optimizer - lowest achievable price per item and per basket

Algorithm:
1. For each item take the Deal Matcher's best candidate. Without a match the
   item is priced at its suggested price, else at the caller's default price.
2. Sum the per-item prices into a running total.
3. Loyalty card with a discount percentage in (0, 100]: subtract
   running * pct / 100 once. Out-of-range percentages are ignored.
4. Store-wide / spend-threshold coupons compound after the loyalty discount;
   a threshold coupon applies only if the discounted total meets its threshold.
5. The final total is clamped to [0, undiscounted sum]; reported savings never
   exceed the undiscounted sum minus the final total.

Malformed deals are skipped; the optimizer always returns a result.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from config import UNKNOWN_RETAILER_ID
from deal_matcher import DealMatcher
from plan_types import (
    AppliedDeal,
    Deal,
    DealType,
    LoyaltyCard,
    PlannedItem,
    ShoppingListItem,
    StackedCoupon,
    utcnow,
)

logger = logging.getLogger(__name__)

# Confidence attached to each pricing source
DEAL_CONFIDENCE = 1.0
SUGGESTED_PRICE_CONFIDENCE = 0.5
DEFAULT_PRICE_CONFIDENCE = 0.0


def loyalty_percentage(card: Optional[LoyaltyCard]) -> float:
    """Usable discount percentage of a loyalty card; 0.0 when absent or outside (0, 100]."""
    if card is None or not card.discount_percentage:
        return 0.0
    percentage = float(card.discount_percentage)
    if not 0 < percentage <= 100:
        logger.warning(f"⚠ Ignoring loyalty card {card.card_number}: discount {percentage}% is out of range")
        return 0.0
    return percentage


@dataclass
class OptimizationResult:
    """Outcome of pricing a basket at one retailer (or across a catalog)"""
    applied_deals: List[AppliedDeal]
    total_savings: float
    final_total: float
    loyalty_discount: float
    stacked_coupons: List[StackedCoupon]
    subtotal: float  # undiscounted sum
    priced_total: float  # after item deals, before loyalty and coupons
    item_prices: Dict[int, PlannedItem] = field(default_factory=dict)

    @property
    def items_without_deal(self) -> int:
        """Items priced from a fallback rather than a deal record"""
        return sum(1 for planned in self.item_prices.values() if planned.confidence < DEAL_CONFIDENCE)


class PriceOptimizer:
    """Stacks item deals, loyalty discounts and store coupons"""

    def __init__(self, matcher: Optional[DealMatcher] = None, default_price: float = 0.0):
        self.matcher = matcher or DealMatcher()
        self.default_price = default_price

    # ------------------------------------------------------------------
    # Per-item pricing
    # ------------------------------------------------------------------

    def match_price(
        self,
        item: ShoppingListItem,
        deals: Iterable[Deal],
        now: Optional[datetime] = None,
        retailer_id: Optional[int] = None,
    ) -> Optional[PlannedItem]:
        """
        Price an item from the deal catalog only.

        Returns:
            PlannedItem priced from the best matching deal, or None when no
            deal matches (the item is not priceable from this catalog)
        """
        best = self.matcher.best_deal(item, deals, now)
        if best is None:
            return None

        unit_original = float(best.regular_price)
        unit_price = min(float(best.sale_price), unit_original)
        # A sale price above the regular price is not a deal; the shelf price still applies
        deal_id = best.id if unit_price < unit_original else None

        return PlannedItem(
            item=item,
            retailer_id=retailer_id if retailer_id is not None else best.retailer_id,
            unit_price=round(unit_price, 2),
            price=round(unit_price * item.quantity, 2),
            original_price=round(unit_original * item.quantity, 2),
            deal_id=deal_id,
            confidence=DEAL_CONFIDENCE,
        )

    def fallback_price(
        self,
        item: ShoppingListItem,
        retailer_id: Optional[int] = None,
        default_price: Optional[float] = None,
    ) -> PlannedItem:
        """Price an item without a deal: suggested price, else the default."""
        if item.suggested_price is not None and item.suggested_price >= 0:
            unit_price = float(item.suggested_price)
            confidence = SUGGESTED_PRICE_CONFIDENCE
        else:
            unit_price = self.default_price if default_price is None else default_price
            confidence = DEFAULT_PRICE_CONFIDENCE

        line = round(unit_price * item.quantity, 2)
        return PlannedItem(
            item=item,
            retailer_id=UNKNOWN_RETAILER_ID if retailer_id is None else retailer_id,
            unit_price=round(unit_price, 2),
            price=line,
            original_price=line,
            confidence=confidence,
        )

    def price_item(
        self,
        item: ShoppingListItem,
        deals: Iterable[Deal],
        now: Optional[datetime] = None,
        retailer_id: Optional[int] = None,
        default_price: Optional[float] = None,
    ) -> PlannedItem:
        matched = self.match_price(item, deals, now, retailer_id)
        if matched is not None:
            return matched
        return self.fallback_price(item, retailer_id, default_price)

    # ------------------------------------------------------------------
    # Basket pricing
    # ------------------------------------------------------------------

    def optimize(
        self,
        items: Iterable[ShoppingListItem],
        deals: Iterable[Deal],
        loyalty_card: Optional[LoyaltyCard] = None,
        retailer_id: Optional[int] = None,
        now: Optional[datetime] = None,
        default_price: Optional[float] = None,
    ) -> OptimizationResult:
        """
        Compute the lowest achievable price for a basket.

        Args:
            items: Items to price
            deals: Deal catalog (item deals and coupons)
            loyalty_card: Shopper's card for the retailer, if any
            retailer_id: Scope coupons and the loyalty card to this retailer
            now: Evaluation time (defaults to current UTC time)
            default_price: Price for items with no deal and no suggested price

        Returns:
            OptimizationResult (never raises for missing or malformed deals)
        """
        now = now or utcnow()
        deals = list(deals)
        skipped = [deal.id for deal in deals if not deal.is_priceable()]
        if skipped:
            logger.warning(f"Skipping {len(skipped)} malformed deal(s): {skipped[:5]}")

        applied_deals: List[AppliedDeal] = []
        item_prices: Dict[int, PlannedItem] = {}
        subtotal = 0.0
        running = 0.0

        # Steps 1-2: per-item best price and running total
        for item in items:
            planned = self.price_item(item, deals, now, retailer_id, default_price)
            item_prices[item.id] = planned
            subtotal += planned.original_price
            running += planned.price
            if planned.deal_id is not None and planned.savings > 0:
                applied_deals.append(AppliedDeal(
                    item_id=item.id,
                    deal_id=planned.deal_id,
                    original_price=planned.original_price,
                    deal_price=planned.price,
                    savings=planned.savings,
                ))

        priced_total = running
        item_savings = sum(deal.savings for deal in applied_deals)

        # Step 3: loyalty discount, once
        loyalty_discount = 0.0
        if self._loyalty_applies(loyalty_card, retailer_id):
            loyalty_discount = round(running * loyalty_percentage(loyalty_card) / 100, 2)
            running -= loyalty_discount

        # Step 4: store-wide and threshold coupons, compounding
        stacked: List[StackedCoupon] = []
        for coupon in self._coupons(deals, retailer_id, now):
            threshold = coupon.min_spend or 0.0
            if coupon.deal_type == DealType.SPEND_THRESHOLD_PERCENTAGE and running < threshold:
                logger.debug(f"Coupon {coupon.id} not applied: ${running:.2f} < ${threshold:.2f}")
                continue
            coupon_savings = round(running * coupon.discount_percentage / 100, 2)
            if coupon_savings <= 0:
                continue
            running -= coupon_savings
            stacked.append(StackedCoupon(
                deal_id=coupon.id,
                description=coupon.product_name,
                savings=coupon_savings,
            ))

        # Step 5: clamp
        final_total = round(min(max(running, 0.0), subtotal), 2)
        total_savings = round(min(
            item_savings + loyalty_discount + sum(c.savings for c in stacked),
            subtotal - final_total,
        ), 2)

        return OptimizationResult(
            applied_deals=applied_deals,
            total_savings=total_savings,
            final_total=final_total,
            loyalty_discount=loyalty_discount,
            stacked_coupons=stacked,
            subtotal=round(subtotal, 2),
            priced_total=round(priced_total, 2),
            item_prices=item_prices,
        )

    @staticmethod
    def _loyalty_applies(card: Optional[LoyaltyCard], retailer_id: Optional[int]) -> bool:
        if loyalty_percentage(card) <= 0:
            return False
        return retailer_id is None or card.retailer_id == retailer_id

    @staticmethod
    def _coupons(deals: List[Deal], retailer_id: Optional[int], now: datetime) -> List[Deal]:
        """Active coupons for the retailer, highest threshold first."""
        coupons = [
            deal for deal in deals
            if deal.is_coupon
            and deal.is_priceable()
            and deal.is_active(now)
            and (retailer_id is None or deal.retailer_id == retailer_id)
        ]
        return sorted(coupons, key=lambda deal: (-(deal.min_spend or 0.0), deal.id))
