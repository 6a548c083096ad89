"""
Shopping Session Manager - the in-store trip state machine

Owns the live SessionState per shopping list and applies events to it:
    ToggleItem, MarkUnavailable, NavigateAisle, ShowLoyaltyCard, EndStore,
    AdvanceStore, ApplyCategoryUpgrade, Interrupt

Rules:
- Events for one session are serialized by a per-session lock; different
  sessions never block each other.
- List-store side effects run first. If they (or the session save) raise
  PersistenceError, the in-memory snapshot is left as it was and the event
  can simply be applied again.
- A session is persisted only once the shopper has made real progress.
- Finalizing a store deletes purchased items one call at a time; a failed
  deletion is recorded on the StoreResult and never blocks the others.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

import pytz

from analytics import record_safely
from config import SessionConfig
from errors import (
    ExpiredSessionError, InvalidTransitionError, LoyaltyCardRequiredError, NotFoundError,
    UnresolvedItemsError, describe,
)
from plan_types import CategoryResult, ShoppingPlan, ensure_utc
from route_sequencer import RouteSequencer
from session_state import (
    PROGRESS_EVENTS, SHOPPING_STATUSES, TERMINAL_STATUSES, AdvanceStore, ApplyCategoryUpgrade,
    EndStore, Interrupt, MarkUnavailable, NavigateAisle, SessionState, SessionStatus, ShowLoyaltyCard,
    StoreResult, ToggleItem, TripSummary, UnavailableItem, UnavailableResolution, UncompletedReason,
)

logger = logging.getLogger(__name__)


class ShoppingSessionManager:
    """Applies shopper events to live sessions and persists their progress"""

    def __init__(
        self,
        list_store,
        session_store,
        analytics=None,
        loyalty_lookup=None,
        sequencer: Optional[RouteSequencer] = None,
        config: Optional[SessionConfig] = None,
    ):
        """
        Initialize the session manager.

        Args:
            list_store: ListStore used for deletions and notes
            session_store: SessionStore used for durable progress (and the clock)
            analytics: AnalyticsSink for trip completions (optional)
            loyalty_lookup: LoyaltyLookup used when a session starts (optional)
            sequencer: RouteSequencer used to place moved items and upgrades
            config: Session validity window and note formatting
        """
        self.list_store = list_store
        self.session_store = session_store
        self.analytics = analytics
        self.loyalty_lookup = loyalty_lookup
        self.sequencer = sequencer or RouteSequencer()
        self.config = config or SessionConfig()

        self._sessions: Dict[int, SessionState] = {}
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

        self._handlers: Dict[type, Callable] = {
            ToggleItem: self._on_toggle,
            MarkUnavailable: self._on_unavailable,
            NavigateAisle: self._on_navigate,
            ShowLoyaltyCard: self._on_show_loyalty_card,
            EndStore: self._on_end_store,
            AdvanceStore: self._on_advance,
            ApplyCategoryUpgrade: self._on_category_upgrade,
            Interrupt: self._on_interrupt,
        }

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def start(self, plan: ShoppingPlan, user_id: Optional[int] = None) -> SessionState:
        """
        Start a trip from a generated plan.

        Any session previously persisted for the same list is replaced. The
        new session is held in memory only until the shopper makes progress.
        """
        if not plan.stores:
            raise InvalidTransitionError(f"Plan for list {plan.list_id} has no stores")

        with self._lock_for(plan.list_id):
            if self.session_store.delete(plan.list_id):
                logger.info(f"Replaced persisted session for list {plan.list_id}")

            state = SessionState.start(
                plan,
                now=self.session_store.now(),
                user_id=user_id,
                loyalty_cards=self._lookup_loyalty_cards(plan, user_id),
            )
            self._sessions[plan.list_id] = state
            logger.info(
                f"✓ Session {plan.list_id} started: {len(plan.stores)} store(s), "
                f"{len(state.initial_item_ids)} items"
            )
            return state

    def get(self, session_id: int) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError(f"No active session {session_id}")
        return state

    def apply_event(self, session_id: int, event) -> SessionState:
        """
        Apply one shopper event.

        Returns:
            The new session snapshot

        Raises:
            InvalidTransitionError: Event not allowed in the current state
            ExpiredSessionError: Session outlived the validity window
            PersistenceError: List or session store write failed (retryable)
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise InvalidTransitionError(f"Unknown session event {type(event).__name__}")

        with self._lock_for(session_id):
            state = self.get(session_id)
            self._check_expiry(state)

            new_state = handler(state, event)
            if new_state is state:
                return state
            if isinstance(event, PROGRESS_EVENTS):
                new_state = new_state.mark_progress(self.session_store.now())
            return self._commit(state, new_state)

    def end_trip(self, session_id: int) -> TripSummary:
        """
        Close out a finished trip.

        Marks the persisted session reconciled, records analytics
        (fire-and-forget), then removes the session.
        """
        with self._lock_for(session_id):
            state = self.get(session_id)
            if state.status != SessionStatus.ALL_STORES_COMPLETE:
                raise InvalidTransitionError(
                    f"Trip cannot end while session is {state.status.value}"
                )

            now = self.session_store.now()
            reconciled = state.model_copy(update={
                "status": SessionStatus.RECONCILED,
                "ended_at": now,
                "updated_at": now,
            })
            if state.has_started:
                reconciled = self.session_store.save(reconciled, expected_version=state.version)

            summary = TripSummary.from_state(reconciled, now)
            record_safely(self.analytics, summary.to_payload())

            self._sessions.pop(session_id, None)
            try:
                self.session_store.delete(session_id)
            except Exception as e:
                # a reconciled row is ignored and cleaned up on the next resume
                logger.error(f"✗ Could not remove reconciled session {session_id}: {describe(e)}")

            logger.info(
                f"✓ Trip {session_id} ended: {summary.completed}/{summary.total_items} items "
                f"in {summary.duration_minutes} min across {summary.total_stores} store(s)"
            )
            self._release_lock(session_id)
            return summary

    def resume(self, session_id: int) -> Optional[SessionState]:
        """
        Restore a session after an app restart.

        Returns:
            The restored snapshot, or None if nothing resumable exists

        Raises:
            ExpiredSessionError: The persisted session is too old (it is discarded)
        """
        with self._lock_for(session_id):
            live = self._sessions.get(session_id)
            if live is not None:
                self._check_expiry(live)
                if live.status == SessionStatus.INTERRUPTED:
                    live = live.restore()
                    self._sessions[session_id] = live
                return live

            persisted = self.session_store.load(session_id)
            if persisted is None:
                return None
            if persisted.status in TERMINAL_STATUSES:
                self.session_store.delete(session_id)
                return None
            self._check_expiry(persisted)

            restored = persisted.restore()
            self._sessions[session_id] = restored
            logger.info(
                f"✓ Resumed session {session_id} at store {restored.current_store_index}, "
                f"aisle {restored.current_aisle_index} ({len(restored.completed_item_ids)} done)"
            )
            return restored

    def suspend(self, session_id: int) -> bool:
        """
        Interrupt a session and release it from memory (app closed).

        Returns:
            True if the session was persisted and can be resumed later
        """
        with self._lock_for(session_id):
            state = self.apply_event(session_id, Interrupt())
            self._sessions.pop(session_id, None)
            if not state.has_started:
                logger.info(f"Session {session_id} dropped without progress")
            self._release_lock(session_id)
            return state.has_started

    def retry_failed_deletions(self, session_id: int) -> SessionState:
        """Retry list-store deletions that failed while finalizing stores."""
        with self._lock_for(session_id):
            state = self.get(session_id)
            new_state = state
            for index, result in enumerate(state.store_results):
                if not result.failed_deletion_ids:
                    continue
                deleted, failed = self._delete_items(result.failed_deletion_ids)
                new_state = new_state.replace_store_result(index, result.model_copy(update={
                    "deleted_item_ids": result.deleted_item_ids + tuple(deleted),
                    "failed_deletion_ids": tuple(failed),
                }))
            if new_state is state:
                return state
            return self._commit(state, new_state)

    # ========================================================================
    # EVENT HANDLERS
    # ========================================================================

    def _on_toggle(self, state: SessionState, event: ToggleItem) -> SessionState:
        self._require_shopping(state)
        return state.toggle(event.item_id)

    def _on_navigate(self, state: SessionState, event: NavigateAisle) -> SessionState:
        self._require_shopping(state)
        return state.navigate(event.direction, event.index)

    def _on_show_loyalty_card(self, state: SessionState, event: ShowLoyaltyCard) -> SessionState:
        self._require_shopping(state)
        if state.current_store.retailer_id not in state.loyalty_cards:
            raise InvalidTransitionError(f"No loyalty card for {state.current_store.retailer_name}")
        if state.loyalty_card_shown:
            return state
        return state.model_copy(update={"loyalty_card_shown": True})

    def _on_unavailable(self, state: SessionState, event: MarkUnavailable) -> SessionState:
        self._require_shopping(state)
        planned = state.current_item(event.item_id)
        resolution = event.resolution

        if resolution == UnavailableResolution.MOVE_TO_NEXT_STORE and state.is_last_store:
            logger.info(f"No store after {state.current_store.retailer_name}; saving item {event.item_id} for next trip")
            resolution = UnavailableResolution.SAVE_FOR_NEXT_TRIP

        if resolution == UnavailableResolution.FOUND_ANYWAY:
            return state.complete([event.item_id])

        if resolution == UnavailableResolution.MOVE_TO_NEXT_STORE:
            note = self._moved_note(state, event.reason)
            target = state.plan.stores[state.current_store_index + 1]
            self.list_store.update_item(event.item_id, suggested_retailer_id=target.retailer_id, notes=note)
            return state.move_to_next_store(event.item_id, note, event.reason, self.sequencer)

        if resolution == UnavailableResolution.SAVE_FOR_NEXT_TRIP:
            note = self._unavailable_note(state, event.reason)
            self.list_store.update_item(event.item_id, notes=note, is_completed=False)
            return state.save_for_next_trip(event.item_id, self._unavailable_record(state, planned.item_id, event.reason))

        self.list_store.delete_item(event.item_id)
        logger.info(f"Removed item {event.item_id} ({planned.item.product_name}) from list {state.session_id}")
        return state.remove_item(event.item_id)

    def _on_end_store(self, state: SessionState, event: EndStore) -> SessionState:
        """
        Finalize the current store.

        Gates, in order: the loyalty card must have been shown when one
        exists, and uncompleted items need an explicit resolution.
        """
        self._require_shopping(state)
        store = state.current_store

        card = state.pending_loyalty_card
        if card is not None:
            raise LoyaltyCardRequiredError(store.retailer_id, card)

        uncompleted = state.uncompleted_items()
        allowed = state.allowed_end_store_resolutions()
        resolution = event.resolution
        if uncompleted:
            if resolution is None:
                raise UnresolvedItemsError([p.item_id for p in uncompleted], [r.value for r in allowed])
            if resolution not in allowed:
                raise InvalidTransitionError(
                    f"{resolution.value} is not allowed here; choose one of {[r.value for r in allowed]}"
                )
            if resolution == UnavailableResolution.FOUND_ANYWAY:
                state = state.complete(p.item_id for p in uncompleted)
                uncompleted = []

        completed_ids = tuple(p.item_id for p in store.items if p.item_id in state.completed_item_ids)
        deleted, failed = self._delete_items(completed_ids)

        annotated: List[int] = []
        failed_annotations: List[int] = []
        moved: List[int] = []
        for planned in uncompleted:
            if resolution == UnavailableResolution.MOVE_TO_NEXT_STORE:
                note = self._moved_note(state, event.reason)
                target = state.plan.stores[state.current_store_index + 1]
                changes = {"suggested_retailer_id": target.retailer_id, "notes": note}
            else:
                note = self._unavailable_note(state, event.reason)
                changes = {"notes": note, "is_completed": False}

            try:
                self.list_store.update_item(planned.item_id, **changes)
                annotated.append(planned.item_id)
            except Exception as e:
                logger.error(f"✗ Could not annotate item {planned.item_id}: {describe(e)}")
                failed_annotations.append(planned.item_id)

            if resolution == UnavailableResolution.MOVE_TO_NEXT_STORE:
                state = state.move_to_next_store(planned.item_id, note, event.reason, self.sequencer)
                moved.append(planned.item_id)
            else:
                record = self._unavailable_record(state, planned.item_id, event.reason)
                state = state.save_for_next_trip(planned.item_id, record)

        result = StoreResult(
            retailer_id=store.retailer_id,
            retailer_name=store.retailer_name,
            completed_item_ids=completed_ids,
            deleted_item_ids=tuple(deleted),
            failed_deletion_ids=tuple(failed),
            annotated_item_ids=tuple(i for i in annotated if i not in moved),
            failed_annotation_ids=tuple(failed_annotations),
            moved_item_ids=tuple(moved),
            finalized_at=self.session_store.now(),
        )
        logger.info(
            f"✓ Finalized {store.retailer_name}: {len(deleted)} deleted, {len(failed)} failed, "
            f"{len(annotated)} annotated, {len(moved)} moved"
        )
        return state.finish_store(result)

    def _on_advance(self, state: SessionState, event: AdvanceStore) -> SessionState:
        new_state = state.advance()
        logger.info(f"Session {state.session_id} advanced to {new_state.current_store.retailer_name}")
        return new_state

    def _on_category_upgrade(self, state: SessionState, event: ApplyCategoryUpgrade) -> SessionState:
        if state.status in TERMINAL_STATUSES:
            return state
        index = state.plan.store_index_of(event.item_id)
        if index is None:
            return state

        store = state.plan.stores[index]
        aisles = self.sequencer.apply_upgrade(
            store.aisles,
            event.item_id,
            CategoryResult(category=event.category, confidence=event.confidence),
            keep_empty=True,
        )
        if aisles is None:
            return state
        return state.with_store(index, store.model_copy(update={"aisles": aisles}))

    def _on_interrupt(self, state: SessionState, event: Interrupt) -> SessionState:
        return state.interrupt()

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _lock_for(self, session_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    def _release_lock(self, session_id: int) -> None:
        """Drop the lock of a session that has left memory; a later call gets a fresh one."""
        with self._locks_guard:
            self._locks.pop(session_id, None)

    def _commit(self, old: SessionState, new: SessionState) -> SessionState:
        """Persist (once started) and swap in the new snapshot."""
        new = new.model_copy(update={"updated_at": self.session_store.now()})
        if new.has_started:
            new = self.session_store.save(new, expected_version=old.version)
        self._sessions[new.session_id] = new
        return new

    def _check_expiry(self, state: SessionState) -> None:
        if not state.is_expired(self.session_store.now(), self.config.ttl):
            return
        self._sessions.pop(state.session_id, None)
        self.session_store.delete(state.session_id)
        self._release_lock(state.session_id)
        logger.warning(f"✗ Session {state.session_id} expired (created {state.created_at.isoformat()}); discarded")
        raise ExpiredSessionError(
            f"Session {state.session_id} is older than {self.config.ttl}; generate a new plan"
        )

    @staticmethod
    def _require_shopping(state: SessionState) -> None:
        if state.status not in SHOPPING_STATUSES:
            raise InvalidTransitionError(f"Session {state.session_id} is {state.status.value}")

    def _delete_items(self, item_ids) -> Tuple[List[int], List[int]]:
        """Delete each item independently; returns (deleted, failed)."""
        deleted: List[int] = []
        failed: List[int] = []
        for item_id in item_ids:
            try:
                self.list_store.delete_item(item_id)
                deleted.append(item_id)
            except Exception as e:
                logger.error(f"✗ Failed to delete purchased item {item_id}: {describe(e)}")
                failed.append(item_id)
        return deleted, failed

    def _lookup_loyalty_cards(self, plan: ShoppingPlan, user_id: Optional[int]) -> Dict[int, str]:
        if self.loyalty_lookup is None or user_id is None:
            return {}
        cards = {}
        for store in plan.stores:
            try:
                card = self.loyalty_lookup.get_loyalty_card(user_id, store.retailer_name)
            except Exception as e:
                logger.warning(f"Loyalty lookup failed for {store.retailer_name}: {describe(e)}")
                continue
            if card is not None:
                cards[store.retailer_id] = card.card_number
        return cards

    def _note_date(self) -> str:
        now = ensure_utc(self.session_store.now()).astimezone(pytz.timezone(self.config.timezone))
        return now.strftime(self.config.note_date_format)

    def _unavailable_note(self, state: SessionState, reason: UncompletedReason) -> str:
        return f"{reason.label} at {state.current_store.retailer_name} on {self._note_date()}"

    @staticmethod
    def _moved_note(state: SessionState, reason: UncompletedReason) -> str:
        return f"Moved from {state.current_store.retailer_name}: {reason.label}"

    @staticmethod
    def _unavailable_record(state: SessionState, item_id: int, reason: UncompletedReason) -> UnavailableItem:
        planned = state.current_item(item_id)
        return UnavailableItem(
            item_id=item_id,
            product_name=planned.item.product_name,
            category=state.category_of(item_id) or planned.item.category,
            reason=reason,
            retailer_id=state.current_store.retailer_id,
            retailer_name=state.current_store.retailer_name,
        )
