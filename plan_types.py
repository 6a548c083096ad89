"""
Core data structures for the shopping plan engine.

Inputs coming from collaborators (deals, loyalty cards) are plain dataclasses.
Everything that ends up inside a generated plan, and therefore inside a
persisted session payload, is a frozen pydantic model so a plan can be
serialized and restored wholesale.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(pytz.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


# ============================================================================
# ENUMS
# ============================================================================

class DealType(str, Enum):
    FLAT_DISCOUNT = "flat_discount"
    SPEND_THRESHOLD_PERCENTAGE = "spend_threshold_percentage"
    STORE_WIDE = "store_wide"


class PlanStrategy(str, Enum):
    SINGLE_STORE = "single-store"
    BEST_VALUE = "multi-store"
    BALANCED = "balanced"


# ============================================================================
# COLLABORATOR INPUTS
# ============================================================================

@dataclass(frozen=True)
class Deal:
    """Retailer-specific, time-bounded price offer (or store-wide coupon)."""
    id: int
    retailer_id: int
    product_name: str
    regular_price: Optional[float]
    sale_price: Optional[float]
    start_date: datetime
    end_date: datetime
    category: Optional[str] = None
    deal_type: Optional[DealType] = None
    discount_percentage: Optional[float] = None  # coupons only
    min_spend: Optional[float] = None  # spend threshold for coupons
    retailer_name: Optional[str] = None

    @property
    def is_coupon(self) -> bool:
        return self.deal_type in (DealType.SPEND_THRESHOLD_PERCENTAGE, DealType.STORE_WIDE)

    def is_active(self, now: datetime) -> bool:
        """Validity window is [start_date, end_date)."""
        now = ensure_utc(now)
        return ensure_utc(self.start_date) <= now < ensure_utc(self.end_date)

    def is_priceable(self) -> bool:
        """Item deals need both prices; coupons need a percentage in (0, 100]."""
        if self.is_coupon:
            return self.discount_percentage is not None and 0 < self.discount_percentage <= 100
        return (
            self.regular_price is not None
            and self.sale_price is not None
            and self.regular_price >= 0
            and self.sale_price >= 0
        )


@dataclass(frozen=True)
class LoyaltyCard:
    retailer_id: int
    card_number: str
    retailer_name: Optional[str] = None
    discount_percentage: Optional[float] = None


@dataclass(frozen=True)
class AppliedDeal:
    """Derived per plan generation, never persisted on its own."""
    item_id: int
    deal_id: int
    original_price: float
    deal_price: float
    savings: float


@dataclass(frozen=True)
class CategoryResult:
    category: str
    confidence: float


# ============================================================================
# PLAN SNAPSHOT MODELS
# ============================================================================

class ShoppingListItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    product_name: str
    quantity: float = 1.0
    unit: str = "COUNT"
    is_completed: bool = False
    suggested_retailer_id: Optional[int] = None
    suggested_price: Optional[float] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    shopping_list_id: Optional[int] = None

    @field_validator("product_name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("product_name must not be blank")
        return value.strip()

    @field_validator("quantity")
    @classmethod
    def _quantity_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("quantity must be positive")
        return value


class StackedCoupon(BaseModel):
    model_config = ConfigDict(frozen=True)

    deal_id: int
    description: str
    savings: float


class PlannedItem(BaseModel):
    """A list item with its resolved price at the assigned retailer."""
    model_config = ConfigDict(frozen=True)

    item: ShoppingListItem
    retailer_id: int
    unit_price: float
    price: float  # line total after the item deal
    original_price: float  # line total before the item deal
    deal_id: Optional[int] = None
    confidence: float = 1.0  # 0.0 means default pricing

    @property
    def item_id(self) -> int:
        return self.item.id

    @property
    def savings(self) -> float:
        return round(max(0.0, self.original_price - self.price), 2)


class RoutedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    planned: PlannedItem
    category: str
    category_confidence: float
    location_hint: str

    @property
    def item_id(self) -> int:
        return self.planned.item.id

    @property
    def product_name(self) -> str:
        return self.planned.item.product_name


class Aisle(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    order: int
    color: str
    category: str
    items: Tuple[RoutedItem, ...] = ()

    def item_ids(self) -> List[int]:
        return [routed.item_id for routed in self.items]


class StorePlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    retailer_id: int
    retailer_name: str
    items: Tuple[PlannedItem, ...] = ()
    subtotal: float = 0.0
    savings: float = 0.0
    loyalty_discount: float = 0.0
    stacked_coupons: Tuple[StackedCoupon, ...] = ()
    aisles: Tuple[Aisle, ...] = ()
    estimated_minutes: int = 0

    def item_ids(self) -> List[int]:
        return [planned.item_id for planned in self.items]

    def routed_items(self) -> Iterator[RoutedItem]:
        for aisle in self.aisles:
            yield from aisle.items

    def find_routed(self, item_id: int) -> Optional[RoutedItem]:
        for routed in self.routed_items():
            if routed.item_id == item_id:
                return routed
        return None

    def without_item(self, item_id: int) -> "StorePlan":
        """Drop an item from the store; aisles are kept even when they empty out."""
        return self.model_copy(update={
            "items": tuple(p for p in self.items if p.item_id != item_id),
            "aisles": tuple(
                aisle.model_copy(update={
                    "items": tuple(r for r in aisle.items if r.item_id != item_id)
                })
                for aisle in self.aisles
            ),
        })


class ShoppingPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    list_id: int
    strategy: PlanStrategy
    stores: Tuple[StorePlan, ...]
    generated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_multi_store(self) -> bool:
        return len(self.stores) > 1

    @property
    def total(self) -> float:
        return round(sum(store.subtotal for store in self.stores), 2)

    @property
    def total_savings(self) -> float:
        return round(sum(store.savings for store in self.stores), 2)

    def item_ids(self) -> List[int]:
        return [item_id for store in self.stores for item_id in store.item_ids()]

    def store_index_of(self, item_id: int) -> Optional[int]:
        for index, store in enumerate(self.stores):
            if item_id in store.item_ids():
                return index
        return None

    def replace_store(self, index: int, store: StorePlan) -> "ShoppingPlan":
        stores = list(self.stores)
        stores[index] = store
        return self.model_copy(update={"stores": tuple(stores)})
