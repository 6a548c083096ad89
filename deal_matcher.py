"""
Deal Matcher - match a shopping list item against a deal catalog

Matching rules, applied in priority order until one produces candidates:
1. Exact case-insensitive name equality
2. Substring containment in either direction
3. Category equality (only when both sides carry a category)
4. Semantic keyword buckets (e.g. {milk, dairy}): both names contain a
   keyword from the same bucket

Only item deals (not store-wide coupons) that are priceable and valid "now"
are eligible. Candidates are ordered by effective price (the lower of sale
and regular price), then regular price, then retailer id.
"""

import logging
import re
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from config import MatcherConfig
from plan_types import Deal, ShoppingListItem, utcnow

logger = logging.getLogger(__name__)


def normalize_name(name: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return re.sub(r"\s+", " ", (name or "").lower()).strip()


def effective_price(deal: Deal) -> float:
    """Shelf price actually paid: a sale price above the regular price does not apply."""
    return min(deal.sale_price, deal.regular_price)


def candidate_sort_key(deal: Deal):
    return (effective_price(deal), deal.regular_price, deal.retailer_id, deal.id)


class DealMatcher:
    """Pure matcher over (item, deal catalog); holds only its configuration"""

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()
        self._bucket_patterns = [
            [re.compile(rf"\b{re.escape(keyword)}\b") for keyword in sorted(bucket)]
            for bucket in self.config.keyword_buckets
        ]

    def eligible_deals(self, deal_catalog: Iterable[Deal], now: datetime) -> List[Deal]:
        """Active, priceable item deals. Malformed records are skipped."""
        eligible = []
        for deal in deal_catalog:
            if deal.is_coupon:
                continue
            if not deal.is_priceable():
                logger.debug(f"Skipping malformed deal {deal.id} ({deal.product_name!r}): missing price")
                continue
            if deal.is_active(now):
                eligible.append(deal)
        return eligible

    def match_deals(
        self,
        item: ShoppingListItem,
        deal_catalog: Iterable[Deal],
        now: Optional[datetime] = None,
    ) -> List[Deal]:
        """
        Find candidate deals for an item.

        Args:
            item: Shopping list item to match
            deal_catalog: Deals from one or more retailers
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Matching deals ordered by ascending effective price (empty if no rule matched)
        """
        deals = self.eligible_deals(deal_catalog, now or utcnow())
        if not deals:
            return []

        item_name = normalize_name(item.product_name)
        rules: List[Callable[[Deal], bool]] = [
            lambda deal: normalize_name(deal.product_name) == item_name,
            lambda deal: self._contains_either_way(item_name, normalize_name(deal.product_name)),
            lambda deal: self._same_category(item.category, deal.category),
            lambda deal: self._share_keyword_bucket(item_name, normalize_name(deal.product_name)),
        ]

        for rule in rules:
            matched = [deal for deal in deals if rule(deal)]
            if matched:
                return sorted(matched, key=candidate_sort_key)
        return []

    def best_deal(
        self,
        item: ShoppingListItem,
        deal_catalog: Iterable[Deal],
        now: Optional[datetime] = None,
    ) -> Optional[Deal]:
        candidates = self.match_deals(item, deal_catalog, now)
        return candidates[0] if candidates else None

    @staticmethod
    def _contains_either_way(item_name: str, deal_name: str) -> bool:
        if not item_name or not deal_name:
            return False
        return item_name in deal_name or deal_name in item_name

    @staticmethod
    def _same_category(item_category: Optional[str], deal_category: Optional[str]) -> bool:
        if not item_category or not deal_category:
            return False
        return normalize_name(item_category) == normalize_name(deal_category)

    def _share_keyword_bucket(self, item_name: str, deal_name: str) -> bool:
        for patterns in self._bucket_patterns:
            if any(p.search(item_name) for p in patterns) and any(p.search(deal_name) for p in patterns):
                return True
        return False


def match_deals(
    item: ShoppingListItem,
    deal_catalog: Iterable[Deal],
    now: Optional[datetime] = None,
    config: Optional[MatcherConfig] = None,
) -> List[Deal]:
    """Convenience wrapper around DealMatcher.match_deals."""
    return DealMatcher(config).match_deals(item, deal_catalog, now)
