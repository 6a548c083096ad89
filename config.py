"""
Configuration for the shopping plan & session engine.

Lookup tables (semantic keyword buckets, aisle order, shelf hints) and
tunables are frozen dataclasses handed to each component at construction.
Runtime settings (database URL, API keys) come from the environment via
python-dotenv.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv

GENERIC_CATEGORY = "Generic"
DEFAULT_LOCATION_HINT = "Check store directory"
UNKNOWN_RETAILER_ID = 0
UNKNOWN_RETAILER_NAME = "Unknown / local pricing"


# ============================================================================
# DEAL MATCHER
# ============================================================================

DEFAULT_KEYWORD_BUCKETS: Tuple[FrozenSet[str], ...] = (
    frozenset({"milk", "dairy", "cream", "lactose"}),
    frozenset({"cheese", "cheddar", "mozzarella", "parmesan", "swiss"}),
    frozenset({"egg", "eggs", "dozen"}),
    frozenset({"bread", "loaf", "bakery", "bagel", "bun", "baguette"}),
    frozenset({"chicken", "poultry", "turkey"}),
    frozenset({"beef", "steak", "burger", "brisket"}),
    frozenset({"fish", "salmon", "tuna", "seafood", "shrimp", "tilapia"}),
    frozenset({"pasta", "spaghetti", "penne", "macaroni", "noodles"}),
    frozenset({"coffee", "espresso", "beans"}),
    frozenset({"soda", "cola", "pop", "soft drink"}),
    frozenset({"toilet paper", "tissue", "paper towels", "napkins"}),
    frozenset({"detergent", "laundry", "fabric softener"}),
)


@dataclass(frozen=True)
class MatcherConfig:
    """Semantic keyword clusters used by the last matching rule"""
    keyword_buckets: Tuple[FrozenSet[str], ...] = DEFAULT_KEYWORD_BUCKETS


# ============================================================================
# STORE ALLOCATOR
# ============================================================================

@dataclass(frozen=True)
class AllocatorConfig:
    """Balanced strategy thresholds and default pricing"""
    min_savings_amount: float = 0.50  # dollars
    min_savings_percent: float = 10.0  # percent of the dominant retailer's price
    max_stores: int = 3
    default_price: float = 0.0  # used when an item carries no suggested price
    unknown_retailer_id: int = UNKNOWN_RETAILER_ID
    unknown_retailer_name: str = UNKNOWN_RETAILER_NAME


# ============================================================================
# ROUTE SEQUENCER
# ============================================================================

@dataclass(frozen=True)
class AisleSpec:
    """One row of the fixed walking-order table"""
    category: str
    name: str
    order: int
    color: str


DEFAULT_AISLES: Tuple[AisleSpec, ...] = (
    AisleSpec("Produce", "Aisle 1: Fresh Produce", 1, "green"),
    AisleSpec("Dairy & Eggs", "Aisle 2: Dairy & Eggs", 2, "blue"),
    AisleSpec("Meat & Seafood", "Aisle 3: Meat & Seafood", 3, "red"),
    AisleSpec("Pantry & Canned Goods", "Aisles 4-6: Pantry & Canned Goods", 4, "amber"),
    AisleSpec("Frozen Foods", "Aisle 7: Frozen Foods", 5, "cyan"),
    AisleSpec("Bakery", "Aisle 8: Bakery", 6, "orange"),
    AisleSpec("Personal Care", "Aisle 9: Personal Care", 7, "pink"),
    AisleSpec("Household Items", "Aisle 10: Household Items", 8, "purple"),
    AisleSpec(GENERIC_CATEGORY, "Other Items", 9, "gray"),
)

# Short names that callers and categorizers commonly use for the same aisles
DEFAULT_CATEGORY_ALIASES: Dict[str, str] = {
    "produce": "Produce",
    "fruit": "Produce",
    "vegetables": "Produce",
    "dairy": "Dairy & Eggs",
    "eggs": "Dairy & Eggs",
    "meat": "Meat & Seafood",
    "seafood": "Meat & Seafood",
    "pantry": "Pantry & Canned Goods",
    "canned goods": "Pantry & Canned Goods",
    "frozen": "Frozen Foods",
    "bakery": "Bakery",
    "personal care": "Personal Care",
    "personal_care": "Personal Care",
    "household": "Household Items",
    "generic": GENERIC_CATEGORY,
    "other": GENERIC_CATEGORY,
}

# Checked in order; the first category whose pattern matches wins
DEFAULT_CATEGORY_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("Frozen Foods", r"\b(frozen|ice cream|popsicle|freezer)\w*\b"),
    ("Produce", r"\b(banana|apple|orange|grape|strawberr|blueberr|raspberr|peach|pear|lemon|lime|avocado)\w*\b"),
    ("Produce", r"\b(tomato|onion|carrot|potato|lettuce|spinach|broccoli|cucumber|celery|kale)\w*\b"),
    ("Dairy & Eggs", r"\b(milk|cheese|yogurt|butter|cream|egg)\w*\b"),
    ("Meat & Seafood", r"\b(beef|chicken|pork|turkey|fish|salmon|tuna|shrimp|steak|bacon|sausage)\w*\b"),
    ("Bakery", r"\b(bread|loaf|roll|bun|bagel|muffin|cake|cookie|croissant|tortilla)\w*\b"),
    ("Personal Care", r"\b(shampoo|soap|toothpaste|deodorant|lotion|sunscreen|conditioner|razor)\w*\b"),
    ("Household Items", r"\b(cleaner|detergent|towel|tissue|trash|garbage|bleach|sponge|foil)\w*\b"),
    ("Pantry & Canned Goods", r"\b(rice|pasta|flour|sugar|salt|spice|sauce|cereal|oatmeal|beans|soup|oil|coffee)\w*\b"),
)

DEFAULT_LOCATION_HINTS: Tuple[Tuple[str, str, str], ...] = (
    ("Produce", "banana", "Front of produce, fruit tables"),
    ("Produce", "lettuce", "Produce wall, misted greens"),
    ("Produce", "spinach", "Produce wall, misted greens"),
    ("Produce", "apple", "Produce, fruit bins"),
    ("Dairy & Eggs", "milk", "Back wall, dairy cooler"),
    ("Dairy & Eggs", "egg", "Dairy cooler, end of aisle"),
    ("Dairy & Eggs", "cheese", "Dairy cooler, cheese case"),
    ("Dairy & Eggs", "yogurt", "Dairy cooler, middle shelves"),
    ("Meat & Seafood", "chicken", "Meat counter, poultry case"),
    ("Meat & Seafood", "beef", "Meat counter, red meat case"),
    ("Meat & Seafood", "salmon", "Seafood counter"),
    ("Pantry & Canned Goods", "pasta", "Aisle 4, dry goods"),
    ("Pantry & Canned Goods", "rice", "Aisle 4, grains"),
    ("Pantry & Canned Goods", "can", "Aisle 5, canned goods"),
    ("Pantry & Canned Goods", "cereal", "Aisle 6, breakfast"),
    ("Frozen Foods", "ice cream", "Frozen aisle, dessert freezers"),
    ("Bakery", "bread", "Bakery, bread racks"),
    ("Personal Care", "shampoo", "Health & beauty, hair care"),
    ("Household Items", "detergent", "Household, laundry"),
    ("Household Items", "paper", "Household, paper goods"),
)

DEFAULT_COMPLEX_KEYWORDS: Tuple[str, ...] = (
    "organic", "specialty", "imported", "gourmet", "artisan", "gluten-free",
)

DEFAULT_FRESH_KEYWORDS: Tuple[str, ...] = (
    "fresh", "produce", "lettuce", "spinach", "banana", "apple", "tomato", "berries",
    "beef", "chicken", "pork", "turkey", "steak", "fish", "salmon", "shrimp", "seafood",
)


@dataclass(frozen=True)
class RouteConfig:
    """Aisle order, local category patterns and time-estimate keywords"""
    aisles: Tuple[AisleSpec, ...] = DEFAULT_AISLES
    category_aliases: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_ALIASES))
    category_patterns: Tuple[Tuple[str, str], ...] = DEFAULT_CATEGORY_PATTERNS
    location_hints: Tuple[Tuple[str, str, str], ...] = DEFAULT_LOCATION_HINTS
    complex_keywords: Tuple[str, ...] = DEFAULT_COMPLEX_KEYWORDS
    fresh_keywords: Tuple[str, ...] = DEFAULT_FRESH_KEYWORDS
    min_confidence: float = 0.6
    upgrade_margin: float = 0.15
    default_location_hint: str = DEFAULT_LOCATION_HINT

    # Estimated minutes = max(base, aisles*per_aisle + items*per_item) + extras
    base_minutes: float = 15.0
    minutes_per_aisle: float = 3.0
    minutes_per_item: float = 0.5
    complex_item_minutes: float = 1.5
    fresh_item_minutes: float = 1.0

    def aisle_for(self, category: str) -> AisleSpec:
        """Return the aisle row for a canonical category (Generic if unknown)."""
        for spec in self.aisles:
            if spec.category == category:
                return spec
        return self.aisles[-1]

    def canonical_category(self, category: Optional[str]) -> Optional[str]:
        """Map a free-text category onto the aisle table, or None if unknown."""
        if not category:
            return None
        cleaned = category.strip()
        for spec in self.aisles:
            if spec.category.lower() == cleaned.lower():
                return spec.category
        return self.category_aliases.get(cleaned.lower())


# ============================================================================
# SESSION
# ============================================================================

@dataclass(frozen=True)
class SessionConfig:
    """Session validity window and note formatting"""
    ttl: timedelta = timedelta(hours=24)
    timezone: str = "UTC"
    note_date_format: str = "%m/%d/%Y"


# ============================================================================
# ENVIRONMENT SETTINGS
# ============================================================================

@dataclass(frozen=True)
class Settings:
    """Deployment settings read from the environment (.env supported)"""
    database_url: str
    deal_feed_url: Optional[str] = None
    deal_feed_api_key: Optional[str] = None
    deepseek_api_key: Optional[str] = None
    timezone: str = "UTC"
    session_ttl_hours: int = 24

    def session_config(self) -> SessionConfig:
        return SessionConfig(ttl=timedelta(hours=self.session_ttl_hours), timezone=self.timezone)


def load_settings() -> Settings:
    """
    Load settings from environment variables (and a .env file if present).

    Returns:
        Settings with defaults for anything not configured
    """
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///shopping.db"),
        deal_feed_url=os.getenv("DEAL_FEED_URL"),
        deal_feed_api_key=os.getenv("DEAL_FEED_API_KEY"),
        deepseek_api_key=os.getenv("DEEPSEEK_API_KEY"),
        timezone=os.getenv("SHOPPING_TIMEZONE", "UTC"),
        session_ttl_hours=int(os.getenv("SESSION_TTL_HOURS", "24")),
    )
