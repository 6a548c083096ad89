"""
Deal feed and loyalty lookup collaborators

- SqlDealFeed: deals cached in the store_deals table
- HttpDealFeed: uniform deal-feed HTTP endpoint (requests)
- CachedDealFeed: HTTP first, database cache when the remote feed is down
- fetch_deal_catalog: one concurrent fetch per retailer, joined before allocation

Features:
- Expired deals are dropped at the feed boundary
- Rate limit handling (429)
- Malformed records are skipped, not fatal
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import requests
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from database import DatabaseManager
from errors import ExternalServiceError, PersistenceError
from models import LoyaltyCardRecord, Retailer, StoreDealRecord
from plan_types import Deal, DealType, LoyaltyCard, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class DealFeed(Protocol):
    def get_deals(self, retailer_id: Optional[int] = None, category: Optional[str] = None) -> List[Deal]:
        ...


class LoyaltyLookup(Protocol):
    def get_loyalty_card(self, user_id: int, retailer_name: str) -> Optional[LoyaltyCard]:
        ...


def _unexpired(deals: Iterable[Deal], now: datetime) -> List[Deal]:
    now = ensure_utc(now)
    return [deal for deal in deals if ensure_utc(deal.end_date) > now]


# ============================================================================
# DATABASE FEED
# ============================================================================

class SqlDealFeed:
    """Deals and retailer directory read from the database"""

    def __init__(self, db_manager: DatabaseManager, clock: Optional[Callable[[], datetime]] = None):
        self.db = db_manager
        self.clock = clock or utcnow

    def get_deals(self, retailer_id: Optional[int] = None, category: Optional[str] = None) -> List[Deal]:
        """
        Fetch unexpired deals.

        Args:
            retailer_id: Only deals issued by this retailer
            category: Only deals in this category (case-insensitive)

        Returns:
            List of Deal whose end date has not passed
        """
        try:
            with self.db.session_scope() as session:
                query = session.query(StoreDealRecord)
                if retailer_id is not None:
                    query = query.filter(StoreDealRecord.retailer_id == retailer_id)
                records = query.order_by(StoreDealRecord.id).all()

                deals = []
                for record in records:
                    if category and (record.category or "").lower() != category.lower():
                        continue
                    try:
                        deals.append(record.to_deal())
                    except ValueError as e:
                        logger.warning(f"Skipping malformed deal {record.id}: {e}")
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read deals: {e}") from e

        return _unexpired(deals, self.clock())

    def get_retailers(self) -> Dict[int, str]:
        """Retailer id -> display name"""
        try:
            with self.db.session_scope() as session:
                return {r.id: r.name for r in session.query(Retailer).order_by(Retailer.id).all()}
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read retailers: {e}") from e


class SqlLoyaltyLookup:
    """Loyalty cards per shopper and retailer"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def get_loyalty_card(self, user_id: int, retailer_name: str) -> Optional[LoyaltyCard]:
        try:
            with self.db.session_scope() as session:
                record = (
                    session.query(LoyaltyCardRecord)
                    .join(Retailer, LoyaltyCardRecord.retailer_id == Retailer.id)
                    .filter(LoyaltyCardRecord.user_id == user_id)
                    .filter(Retailer.name == retailer_name)
                    .first()
                )
                return record.to_card() if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up loyalty card for {retailer_name}: {e}") from e


# ============================================================================
# HTTP FEED
# ============================================================================

class DealRecord(BaseModel):
    """Wire format of one deal returned by the feed endpoint"""
    id: int
    retailer_id: int
    product_name: str
    regular_price: Optional[float] = None
    sale_price: Optional[float] = None
    start_date: datetime
    end_date: datetime
    category: Optional[str] = None
    deal_type: Optional[DealType] = None
    discount_percentage: Optional[float] = None
    min_spend: Optional[float] = None
    retailer_name: Optional[str] = None

    def to_deal(self) -> Deal:
        return Deal(**self.model_dump())


class HttpDealFeed:
    """Client for a uniform deal-feed HTTP endpoint"""

    TIMEOUT = 10  # seconds

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the deal feed client.

        Args:
            base_url: Feed root, e.g. https://deals.example.com/api
            api_key: Bearer token (optional)
            session: requests session (tests inject one with a mocked adapter)
            clock: Time source used to drop expired deals
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.clock = clock or utcnow
        logger.info(f"HttpDealFeed initialized for {self.base_url}")

    def get_deals(self, retailer_id: Optional[int] = None, category: Optional[str] = None) -> List[Deal]:
        """
        Fetch unexpired deals from the feed.

        Raises:
            ExternalServiceError: Timeout, rate limit, HTTP error or unparseable body
        """
        params = {}
        if retailer_id is not None:
            params["retailer_id"] = retailer_id
        if category:
            params["category"] = category
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            response = self.session.get(
                f"{self.base_url}/deals",
                params=params,
                headers=headers,
                timeout=self.TIMEOUT,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise ExternalServiceError(f"Deal feed timed out after {self.TIMEOUT}s") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            if status == 429:
                retry_after = e.response.headers.get("Retry-After", "60")
                raise ExternalServiceError(f"Deal feed rate limited (429). Retry after {retry_after}s") from e
            raise ExternalServiceError(f"Deal feed returned HTTP {status}") from e
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError(f"Deal feed unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(f"Invalid JSON from deal feed: {e}") from e

        raw_records = data.get("deals", []) if isinstance(data, dict) else data
        deals = []
        for raw in raw_records:
            try:
                deals.append(DealRecord.model_validate(raw).to_deal())
            except ValidationError as e:
                logger.warning(f"Skipping malformed deal record {raw.get('id') if isinstance(raw, dict) else raw!r}: "
                               f"{e.errors()[0]['msg']}")

        deals = _unexpired(deals, self.clock())
        logger.debug(f"Fetched {len(deals)} deals (retailer={retailer_id}, category={category})")
        return deals


class CachedDealFeed:
    """Remote feed with a local fallback"""

    def __init__(self, primary: DealFeed, fallback: DealFeed):
        self.primary = primary
        self.fallback = fallback

    def get_deals(self, retailer_id: Optional[int] = None, category: Optional[str] = None) -> List[Deal]:
        try:
            return self.primary.get_deals(retailer_id=retailer_id, category=category)
        except ExternalServiceError as e:
            logger.warning(f"⚠ Deal feed unavailable, using cached deals for retailer {retailer_id}: {e}")
            return self.fallback.get_deals(retailer_id=retailer_id, category=category)


# ============================================================================
# CONCURRENT FAN-OUT
# ============================================================================

async def fetch_deal_catalog(feed: DealFeed, retailer_ids: Iterable[int]) -> List[Deal]:
    """
    Fetch every retailer's deals concurrently and join them.

    A retailer whose fetch fails contributes no deals; the rest of the
    catalog is still returned.

    Args:
        feed: Deal feed (blocking calls run in worker threads)
        retailer_ids: Retailers to fetch

    Returns:
        Combined deal catalog, ordered by retailer id then deal id
    """
    retailer_ids = sorted(set(retailer_ids))
    results = await asyncio.gather(
        *(asyncio.to_thread(feed.get_deals, retailer_id) for retailer_id in retailer_ids),
        return_exceptions=True,
    )

    catalog: List[Deal] = []
    for retailer_id, result in zip(retailer_ids, results):
        if isinstance(result, Exception):
            logger.warning(f"✗ Deals for retailer {retailer_id} unavailable: {result}")
            continue
        catalog.extend(result)

    catalog.sort(key=lambda deal: (deal.retailer_id, deal.id))
    logger.info(f"✓ Deal catalog: {len(catalog)} deals from {len(retailer_ids)} retailers")
    return catalog
