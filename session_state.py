"""
Shopping session snapshot and its pure transitions.

A SessionState is immutable. Every event produces a new snapshot that the
session manager swaps in wholesale; nothing here performs I/O.

States:
    not_started -> in_progress -> store_complete (multi-store only)
                -> all_stores_complete -> reconciled
    any active state -> interrupted (resumable)
    persisted state older than the validity window -> expired
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from errors import InputError, InvalidTransitionError, NotFoundError
from plan_types import PlannedItem, ShoppingPlan, StorePlan, ensure_utc, utcnow


# ============================================================================
# ENUMS
# ============================================================================

class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    STORE_COMPLETE = "store_complete"
    ALL_STORES_COMPLETE = "all_stores_complete"
    RECONCILED = "reconciled"
    INTERRUPTED = "interrupted"
    EXPIRED = "expired"


SHOPPING_STATUSES = (SessionStatus.NOT_STARTED, SessionStatus.IN_PROGRESS)
TERMINAL_STATUSES = (SessionStatus.RECONCILED, SessionStatus.EXPIRED)


class UnavailableResolution(str, Enum):
    FOUND_ANYWAY = "found_anyway"
    MOVE_TO_NEXT_STORE = "move_to_next_store"
    SAVE_FOR_NEXT_TRIP = "save_for_next_trip"
    REMOVE_FROM_LIST = "remove_from_list"


class UncompletedReason(str, Enum):
    NOT_FOUND = "not_found"
    OUT_OF_STOCK = "out_of_stock"

    @property
    def label(self) -> str:
        return "Out of stock" if self is UncompletedReason.OUT_OF_STOCK else "Not found"


class NavigateDirection(str, Enum):
    FORWARD = "forward"
    BACK = "back"
    JUMP = "jump"


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class ToggleItem:
    item_id: int


@dataclass(frozen=True)
class MarkUnavailable:
    item_id: int
    resolution: UnavailableResolution
    reason: UncompletedReason = UncompletedReason.OUT_OF_STOCK


@dataclass(frozen=True)
class NavigateAisle:
    direction: NavigateDirection
    index: Optional[int] = None  # jump target


@dataclass(frozen=True)
class ShowLoyaltyCard:
    pass


@dataclass(frozen=True)
class EndStore:
    resolution: Optional[UnavailableResolution] = None  # required when items remain
    reason: UncompletedReason = UncompletedReason.NOT_FOUND


@dataclass(frozen=True)
class AdvanceStore:
    pass


@dataclass(frozen=True)
class ApplyCategoryUpgrade:
    item_id: int
    category: str
    confidence: float


@dataclass(frozen=True)
class Interrupt:
    pass


# Events that count as the shopper actually shopping
PROGRESS_EVENTS = (ToggleItem, MarkUnavailable, NavigateAisle, EndStore, AdvanceStore)


# ============================================================================
# RECORDS
# ============================================================================

class MovedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: int
    product_name: str
    from_retailer_id: int
    from_retailer_name: str
    to_retailer_id: int
    to_retailer_name: str
    reason: UncompletedReason


class UnavailableItem(BaseModel):
    """An item left on the list for a future trip"""
    model_config = ConfigDict(frozen=True)

    item_id: int
    product_name: str
    category: Optional[str] = None
    reason: UncompletedReason
    retailer_id: int
    retailer_name: str


class StoreResult(BaseModel):
    """Outcome of finalizing one store"""
    model_config = ConfigDict(frozen=True)

    retailer_id: int
    retailer_name: str
    completed_item_ids: Tuple[int, ...] = ()
    deleted_item_ids: Tuple[int, ...] = ()
    failed_deletion_ids: Tuple[int, ...] = ()
    annotated_item_ids: Tuple[int, ...] = ()
    failed_annotation_ids: Tuple[int, ...] = ()
    moved_item_ids: Tuple[int, ...] = ()
    finalized_at: datetime


# ============================================================================
# SESSION SNAPSHOT
# ============================================================================

class SessionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: int  # shopping list id
    plan: ShoppingPlan
    status: SessionStatus = SessionStatus.NOT_STARTED
    resume_status: Optional[SessionStatus] = None
    user_id: Optional[int] = None

    current_store_index: int = 0
    current_aisle_index: int = 0
    at_checkout: bool = False
    completed_item_ids: FrozenSet[int] = frozenset()
    saved_item_ids: FrozenSet[int] = frozenset()
    removed_item_ids: FrozenSet[int] = frozenset()
    initial_item_ids: FrozenSet[int] = frozenset()

    loyalty_cards: Dict[int, str] = Field(default_factory=dict)  # retailer id -> card number
    loyalty_card_shown: bool = False

    moved_items: Tuple[MovedItem, ...] = ()
    unavailable_items: Tuple[UnavailableItem, ...] = ()
    store_results: Tuple[StoreResult, ...] = ()

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    restored: bool = False
    version: int = 0

    @classmethod
    def start(
        cls,
        plan: ShoppingPlan,
        now: datetime,
        user_id: Optional[int] = None,
        loyalty_cards: Optional[Dict[int, str]] = None,
    ) -> "SessionState":
        state = cls(
            session_id=plan.list_id,
            plan=plan,
            user_id=user_id,
            initial_item_ids=frozenset(plan.item_ids()),
            loyalty_cards=dict(loyalty_cards or {}),
            created_at=now,
            updated_at=now,
        )
        return state._settle_aisle()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_store(self) -> StorePlan:
        return self.plan.stores[self.current_store_index]

    @property
    def is_multi_store(self) -> bool:
        return self.plan.is_multi_store

    @property
    def is_last_store(self) -> bool:
        return self.current_store_index >= len(self.plan.stores) - 1

    @property
    def has_started(self) -> bool:
        return self.started_at is not None

    @property
    def pending_loyalty_card(self) -> Optional[str]:
        """Card number that still has to be shown at the current store"""
        if self.loyalty_card_shown:
            return None
        return self.loyalty_cards.get(self.current_store.retailer_id)

    def is_expired(self, now: datetime, ttl) -> bool:
        return ensure_utc(now) - ensure_utc(self.created_at) > ttl

    def current_item(self, item_id: int) -> PlannedItem:
        for planned in self.current_store.items:
            if planned.item_id == item_id:
                return planned
        if self.plan.store_index_of(item_id) is not None:
            raise InvalidTransitionError(
                f"Item {item_id} belongs to another store in this trip"
            )
        raise NotFoundError(f"Item {item_id} is not part of session {self.session_id}")

    def uncompleted_items(self) -> List[PlannedItem]:
        return [p for p in self.current_store.items if p.item_id not in self.completed_item_ids]

    def allowed_end_store_resolutions(self) -> List[UnavailableResolution]:
        allowed = [UnavailableResolution.FOUND_ANYWAY]
        if not self.is_last_store:
            allowed.append(UnavailableResolution.MOVE_TO_NEXT_STORE)
        allowed.append(UnavailableResolution.SAVE_FOR_NEXT_TRIP)
        return allowed

    def category_of(self, item_id: int) -> Optional[str]:
        for store in self.plan.stores:
            routed = store.find_routed(item_id)
            if routed is not None:
                return routed.category
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_progress(self, now: datetime) -> "SessionState":
        """Record genuine shopper activity; the first one starts the trip."""
        update: Dict[str, Any] = {"restored": False, "updated_at": now}
        if self.started_at is None:
            update["started_at"] = now
        if self.status == SessionStatus.NOT_STARTED:
            update["status"] = SessionStatus.IN_PROGRESS
        return self.model_copy(update=update)

    def toggle(self, item_id: int) -> "SessionState":
        self.current_item(item_id)
        if item_id in self.completed_item_ids:
            completed = self.completed_item_ids - {item_id}
        else:
            completed = self.completed_item_ids | {item_id}
        return self.model_copy(update={"completed_item_ids": completed})

    def complete(self, item_ids) -> "SessionState":
        return self.model_copy(update={"completed_item_ids": self.completed_item_ids | frozenset(item_ids)})

    def navigate(self, direction: NavigateDirection, index: Optional[int] = None) -> "SessionState":
        """
        Move between aisles of the current store.

        Empty destination aisles are skipped in the direction of travel; when
        no non-empty aisle remains ahead the shopper is at checkout.
        """
        aisles = self.current_store.aisles
        step = 1
        if direction == NavigateDirection.FORWARD:
            target = self.current_aisle_index + 1
        elif direction == NavigateDirection.BACK:
            target = len(aisles) - 1 if self.at_checkout else self.current_aisle_index - 1
            step = -1
        else:
            if index is None or not 0 <= index < len(aisles):
                raise InputError(f"Aisle index {index} out of range (0-{len(aisles) - 1})")
            target = index

        found = self._non_empty_aisle(target, step)
        if found is None and step == -1:
            # nothing behind us, stay on the first non-empty aisle ahead
            found = self._non_empty_aisle(0, 1)
        if found is None:
            return self.model_copy(update={
                "at_checkout": True,
                "current_aisle_index": max(0, len(aisles) - 1),
            })
        return self.model_copy(update={"current_aisle_index": found, "at_checkout": False})

    def _non_empty_aisle(self, start: int, step: int) -> Optional[int]:
        aisles = self.current_store.aisles
        position = start
        while 0 <= position < len(aisles):
            if aisles[position].items:
                return position
            position += step
        return None

    def _settle_aisle(self) -> "SessionState":
        """Skip forward off an aisle that has emptied out."""
        aisles = self.current_store.aisles
        if not aisles:
            return self.model_copy(update={"current_aisle_index": 0, "at_checkout": not self.current_store.items})
        if self.current_aisle_index < len(aisles) and aisles[self.current_aisle_index].items:
            return self
        found = self._non_empty_aisle(self.current_aisle_index, 1)
        if found is None:
            found = self._non_empty_aisle(0, 1)
        if found is None:
            return self.model_copy(update={"at_checkout": True})
        return self.model_copy(update={"current_aisle_index": found})

    def _drop_from_current_store(self, item_id: int) -> ShoppingPlan:
        return self.plan.replace_store(self.current_store_index, self.current_store.without_item(item_id))

    def remove_item(self, item_id: int) -> "SessionState":
        """Item deleted from the list: it leaves the plan entirely."""
        return self.model_copy(update={
            "plan": self._drop_from_current_store(item_id),
            "completed_item_ids": self.completed_item_ids - {item_id},
            "removed_item_ids": self.removed_item_ids | {item_id},
        })._settle_aisle()

    def save_for_next_trip(self, item_id: int, record: UnavailableItem) -> "SessionState":
        """Item stays on the list but leaves this trip's working set."""
        return self.model_copy(update={
            "plan": self._drop_from_current_store(item_id),
            "completed_item_ids": self.completed_item_ids - {item_id},
            "saved_item_ids": self.saved_item_ids | {item_id},
            "unavailable_items": self.unavailable_items + (record,),
        })._settle_aisle()

    def move_to_next_store(self, item_id: int, note: str, reason: UncompletedReason, sequencer) -> "SessionState":
        """
        Reassign an item to the next store of the plan.

        The item is removed from the current store and appended to the next
        store's items and aisles in one snapshot.
        """
        if self.is_last_store:
            raise InvalidTransitionError("No further store to move the item to")

        source = self.current_store
        target_index = self.current_store_index + 1
        target = self.plan.stores[target_index]
        planned = self.current_item(item_id)

        item = planned.item.model_copy(update={"notes": note, "suggested_retailer_id": target.retailer_id})
        moved_planned = planned.model_copy(update={"item": item, "retailer_id": target.retailer_id})
        routed = source.find_routed(item_id)
        if routed is None:
            routed = sequencer.route_item(moved_planned, sequencer.resolve_category(item))
        else:
            routed = routed.model_copy(update={"planned": moved_planned})

        new_target = target.model_copy(update={
            "items": target.items + (moved_planned,),
            "aisles": sequencer.insert_item(target.aisles, routed),
        })
        plan = self._drop_from_current_store(item_id).replace_store(target_index, new_target)
        record = MovedItem(
            item_id=item_id,
            product_name=item.product_name,
            from_retailer_id=source.retailer_id,
            from_retailer_name=source.retailer_name,
            to_retailer_id=target.retailer_id,
            to_retailer_name=target.retailer_name,
            reason=reason,
        )
        return self.model_copy(update={
            "plan": plan,
            "completed_item_ids": self.completed_item_ids - {item_id},
            "moved_items": self.moved_items + (record,),
        })._settle_aisle()

    def finish_store(self, result: StoreResult) -> "SessionState":
        status = SessionStatus.ALL_STORES_COMPLETE if self.is_last_store else SessionStatus.STORE_COMPLETE
        return self.model_copy(update={
            "status": status,
            "store_results": self.store_results + (result,),
            "at_checkout": True,
        })

    def replace_store_result(self, index: int, result: StoreResult) -> "SessionState":
        results = list(self.store_results)
        results[index] = result
        return self.model_copy(update={"store_results": tuple(results)})

    def advance(self) -> "SessionState":
        """Move on to the next store; completion tracking restarts per store."""
        if self.status != SessionStatus.STORE_COMPLETE or self.is_last_store:
            raise InvalidTransitionError(f"Cannot advance from status {self.status.value}")
        return self.model_copy(update={
            "status": SessionStatus.IN_PROGRESS,
            "current_store_index": self.current_store_index + 1,
            "current_aisle_index": 0,
            "completed_item_ids": frozenset(),
            "saved_item_ids": frozenset(),
            "loyalty_card_shown": False,
            "at_checkout": False,
        })._settle_aisle()

    def with_store(self, index: int, store: StorePlan) -> "SessionState":
        """Swap one store's plan, keeping the shopper on the same aisle by name."""
        update: Dict[str, Any] = {"plan": self.plan.replace_store(index, store)}
        if index == self.current_store_index:
            old_aisles = self.current_store.aisles
            if 0 <= self.current_aisle_index < len(old_aisles):
                name = old_aisles[self.current_aisle_index].name
                for position, aisle in enumerate(store.aisles):
                    if aisle.name == name:
                        update["current_aisle_index"] = position
                        break
        return self.model_copy(update=update)

    def interrupt(self) -> "SessionState":
        if self.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot interrupt a {self.status.value} session")
        if self.status == SessionStatus.INTERRUPTED:
            return self
        return self.model_copy(update={"status": SessionStatus.INTERRUPTED, "resume_status": self.status})

    def restore(self) -> "SessionState":
        """Resume an interrupted snapshot without counting it as progress."""
        status = self.status
        if status == SessionStatus.INTERRUPTED:
            status = self.resume_status or SessionStatus.IN_PROGRESS
        return self.model_copy(update={"status": status, "resume_status": None, "restored": True})


# ============================================================================
# TRIP SUMMARY
# ============================================================================

class TripSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    list_id: int
    plan_type: str
    retailer_names: Tuple[str, ...]
    total_stores: int
    started_at: Optional[datetime]
    ended_at: datetime
    duration_minutes: int
    total_items: int
    completed: int
    uncompleted: int
    moved: int
    completion_rate: float  # percent
    deleted_count: int
    updated_count: int
    stores: Tuple[StoreResult, ...]
    moved_items: Tuple[MovedItem, ...]
    uncompleted_items: Tuple[UnavailableItem, ...]

    @classmethod
    def from_state(cls, state: SessionState, now: datetime) -> "TripSummary":
        started = state.started_at or state.created_at
        duration = int((ensure_utc(now) - ensure_utc(started)).total_seconds() // 60)
        total = len(state.initial_item_ids)
        completed = sum(len(result.completed_item_ids) for result in state.store_results)
        updated = sum(len(result.annotated_item_ids) for result in state.store_results)
        return cls(
            list_id=state.session_id,
            plan_type=state.plan.strategy.value,
            retailer_names=tuple(store.retailer_name for store in state.plan.stores),
            total_stores=len(state.plan.stores),
            started_at=state.started_at,
            ended_at=now,
            duration_minutes=max(0, duration),
            total_items=total,
            completed=completed,
            uncompleted=len(state.unavailable_items),
            moved=len(state.moved_items),
            completion_rate=round(completed / total * 100, 1) if total else 0.0,
            deleted_count=sum(len(result.deleted_item_ids) for result in state.store_results),
            updated_count=updated + len(state.moved_items),
            stores=state.store_results,
            moved_items=state.moved_items,
            uncompleted_items=state.unavailable_items,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Analytics payload (JSON-safe)"""
        return self.model_dump(mode="json")
