"""
Shopping list store: CRUD for ShoppingListItem backed by SQLAlchemy.

Every call is independent and individually fallible. Database failures are
surfaced as PersistenceError; deletes are idempotent.
"""

import logging
from typing import List, Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from database import DatabaseManager
from errors import NotFoundError, PersistenceError
from models import ShoppingListItemRecord
from plan_types import ShoppingListItem

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "product_name",
    "quantity",
    "unit",
    "is_completed",
    "suggested_retailer_id",
    "suggested_price",
    "category",
    "notes",
}


class ListStore(Protocol):
    def get_items(self, list_id: int) -> List[ShoppingListItem]:
        ...

    def update_item(self, item_id: int, **changes) -> ShoppingListItem:
        ...

    def delete_item(self, item_id: int) -> bool:
        ...


class SqlListStore:
    """ListStore implementation over the shopping_list_items table"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def get_items(self, list_id: int) -> List[ShoppingListItem]:
        """
        Bulk fetch the items of a list.

        Malformed rows (e.g. blank product name) are skipped and logged.
        """
        try:
            with self.db.session_scope() as session:
                records = (
                    session.query(ShoppingListItemRecord)
                    .filter(ShoppingListItemRecord.shopping_list_id == list_id)
                    .order_by(ShoppingListItemRecord.id)
                    .all()
                )
                items = []
                for record in records:
                    try:
                        items.append(record.to_item())
                    except ValidationError as e:
                        logger.warning(f"Skipping malformed list item {record.id}: {e.errors()[0]['msg']}")
                return items
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load list {list_id}: {e}") from e

    def get_item(self, item_id: int) -> Optional[ShoppingListItem]:
        try:
            with self.db.session_scope() as session:
                record = session.get(ShoppingListItemRecord, item_id)
                return record.to_item() if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load item {item_id}: {e}") from e

    def add_item(
        self,
        list_id: int,
        product_name: str,
        quantity: float = 1.0,
        unit: str = "COUNT",
        category: Optional[str] = None,
        suggested_price: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> ShoppingListItem:
        try:
            with self.db.session_scope() as session:
                record = ShoppingListItemRecord(
                    shopping_list_id=list_id,
                    product_name=product_name,
                    quantity=quantity,
                    unit=unit,
                    category=category,
                    suggested_price=suggested_price,
                    notes=notes,
                )
                session.add(record)
                session.flush()
                return record.to_item()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to add {product_name!r} to list {list_id}: {e}") from e

    def update_item(self, item_id: int, **changes) -> ShoppingListItem:
        """
        Update fields of a list item.

        Raises:
            ValueError: Unknown field name
            NotFoundError: Item does not exist
            PersistenceError: Database failure
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        try:
            with self.db.session_scope() as session:
                record = session.get(ShoppingListItemRecord, item_id)
                if record is None:
                    raise NotFoundError(f"Shopping list item {item_id} not found")
                for name, value in changes.items():
                    setattr(record, name, value)
                session.flush()
                return record.to_item()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update item {item_id}: {e}") from e

    def delete_item(self, item_id: int) -> bool:
        """
        Delete a list item.

        Returns:
            True if a row was deleted, False if it was already gone
        """
        try:
            with self.db.session_scope() as session:
                record = session.get(ShoppingListItemRecord, item_id)
                if record is None:
                    logger.debug(f"Item {item_id} already deleted")
                    return False
                session.delete(record)
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete item {item_id}: {e}") from e
