"""
SQLAlchemy ORM Models for the shopping plan & session engine

Tables:
- retailers: Retailer directory (id, display name)
- shopping_list_items: Items on a shopper's list
- store_deals: Deals and store-wide coupons issued by the deal feed
- loyalty_cards: Shopper loyalty cards per retailer
- shopping_sessions: Durable in-progress trip state (JSON payload + version stamp)
"""

from datetime import datetime

import pytz
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from plan_types import Deal, DealType, LoyaltyCard, ShoppingListItem

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(pytz.utc)


class Retailer(Base):
    """Retailer directory entry"""
    __tablename__ = 'retailers'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)
    logo_color = Column(String(20))

    deals = relationship("StoreDealRecord", back_populates="retailer", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Retailer {self.name}>"


class ShoppingListItemRecord(Base):
    """Item on a shopping list"""
    __tablename__ = 'shopping_list_items'
    __table_args__ = (
        Index('idx_items_list_id', 'shopping_list_id'),
    )

    id = Column(Integer, primary_key=True)
    shopping_list_id = Column(Integer, nullable=False)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Float, nullable=False, default=1.0)
    unit = Column(String(20), default="COUNT")
    is_completed = Column(Boolean, default=False)
    suggested_retailer_id = Column(Integer, nullable=True)
    suggested_price = Column(Float, nullable=True)  # dollars
    category = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    def to_item(self) -> ShoppingListItem:
        return ShoppingListItem(
            id=self.id,
            shopping_list_id=self.shopping_list_id,
            product_name=self.product_name,
            quantity=self.quantity if self.quantity is not None else 1.0,
            unit=self.unit or "COUNT",
            is_completed=bool(self.is_completed),
            suggested_retailer_id=self.suggested_retailer_id,
            suggested_price=self.suggested_price,
            category=self.category,
            notes=self.notes,
        )

    def __repr__(self):
        return f"<ShoppingListItem {self.id} {self.product_name}>"


class StoreDealRecord(Base):
    """Deal or coupon issued by a retailer's deal feed"""
    __tablename__ = 'store_deals'
    __table_args__ = (
        Index('idx_deals_retailer_id', 'retailer_id'),
        Index('idx_deals_end_date', 'end_date'),
        Index('idx_deals_category', 'category'),
    )

    id = Column(Integer, primary_key=True)
    retailer_id = Column(Integer, ForeignKey('retailers.id'), nullable=False)
    product_name = Column(String(255), nullable=False)
    regular_price = Column(Float, nullable=True)  # dollars
    sale_price = Column(Float, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    category = Column(String(100), nullable=True)
    deal_type = Column(String(50), nullable=True)  # flat_discount, spend_threshold_percentage, store_wide
    discount_percentage = Column(Float, nullable=True)
    min_spend = Column(Float, nullable=True)
    deal_source = Column(String(50), default="manual")

    retailer = relationship("Retailer", back_populates="deals")

    def to_deal(self) -> Deal:
        return Deal(
            id=self.id,
            retailer_id=self.retailer_id,
            product_name=self.product_name,
            regular_price=self.regular_price,
            sale_price=self.sale_price,
            start_date=self.start_date,
            end_date=self.end_date,
            category=self.category,
            deal_type=DealType(self.deal_type) if self.deal_type else None,
            discount_percentage=self.discount_percentage,
            min_spend=self.min_spend,
            retailer_name=self.retailer.name if self.retailer else None,
        )

    def __repr__(self):
        return f"<StoreDeal {self.product_name} @ retailer {self.retailer_id}: ${self.sale_price}>"


class LoyaltyCardRecord(Base):
    """Shopper loyalty card for one retailer"""
    __tablename__ = 'loyalty_cards'
    __table_args__ = (
        UniqueConstraint('user_id', 'retailer_id', name='unique_user_retailer_card'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    retailer_id = Column(Integer, ForeignKey('retailers.id'), nullable=False)
    card_number = Column(String(100), nullable=False)
    discount_percentage = Column(Float, nullable=True)

    retailer = relationship("Retailer")

    def to_card(self) -> LoyaltyCard:
        return LoyaltyCard(
            retailer_id=self.retailer_id,
            card_number=self.card_number,
            retailer_name=self.retailer.name if self.retailer else None,
            discount_percentage=self.discount_percentage,
        )


class ShoppingSessionRecord(Base):
    """Persisted in-progress shopping trip, keyed by shopping list id"""
    __tablename__ = 'shopping_sessions'
    __table_args__ = (
        Index('idx_sessions_status', 'status'),
    )

    list_id = Column(Integer, primary_key=True)
    status = Column(String(30), nullable=False)
    version = Column(Integer, nullable=False, default=0)
    payload = Column(Text, nullable=False)  # SessionState JSON
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<ShoppingSession list={self.list_id} status={self.status} v{self.version}>"
