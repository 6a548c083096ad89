"""
Durable session storage keyed by shopping list id.

Both stores keep the SessionState as a JSON payload with a version stamp.
`save` only succeeds when the caller's expected version matches the stored
one (a missing row counts as version 0) and returns the state stamped with
the new version.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from database import DatabaseManager
from errors import ConcurrentModificationError, PersistenceError
from models import ShoppingSessionRecord
from plan_types import utcnow
from session_state import SessionState

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def save(self, state: SessionState, expected_version: int) -> SessionState:
        ...

    def load(self, session_id: int) -> Optional[SessionState]:
        ...

    def delete(self, session_id: int) -> bool:
        ...

    def now(self) -> datetime:
        ...


def _decode(session_id: int, payload: str) -> Optional[SessionState]:
    try:
        return SessionState.model_validate_json(payload)
    except ValidationError as e:
        logger.warning(f"✗ Discarding unreadable session {session_id}: {e.error_count()} validation errors")
        return None


class InMemorySessionStore:
    """Process-local store (tests, demos)"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow
        self._rows: Dict[int, Tuple[int, str]] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self.clock()

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        with self._lock:
            actual = self._rows[state.session_id][0] if state.session_id in self._rows else 0
            if actual != expected_version:
                raise ConcurrentModificationError(state.session_id, expected_version, actual)
            stamped = state.model_copy(update={"version": expected_version + 1})
            self._rows[state.session_id] = (stamped.version, stamped.model_dump_json())
            return stamped

    def load(self, session_id: int) -> Optional[SessionState]:
        with self._lock:
            row = self._rows.get(session_id)
        return _decode(session_id, row[1]) if row else None

    def delete(self, session_id: int) -> bool:
        with self._lock:
            return self._rows.pop(session_id, None) is not None


class SqlSessionStore:
    """Session store over the shopping_sessions table"""

    def __init__(self, db_manager: DatabaseManager, clock: Optional[Callable[[], datetime]] = None):
        self.db = db_manager
        self.clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        """
        Persist a session snapshot.

        Raises:
            ConcurrentModificationError: Stored version differs from expected_version
            PersistenceError: Database failure
        """
        stamped = state.model_copy(update={"version": expected_version + 1})
        try:
            with self.db.session_scope() as session:
                record = (
                    session.query(ShoppingSessionRecord)
                    .filter(ShoppingSessionRecord.list_id == state.session_id)
                    .with_for_update()
                    .first()
                )
                actual = record.version if record else 0
                if actual != expected_version:
                    raise ConcurrentModificationError(state.session_id, expected_version, actual)

                if record is None:
                    record = ShoppingSessionRecord(list_id=state.session_id, created_at=state.created_at)
                    session.add(record)
                record.status = stamped.status.value
                record.version = stamped.version
                record.payload = stamped.model_dump_json()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save session {state.session_id}: {e}") from e

        logger.debug(f"Saved session {state.session_id} v{stamped.version} ({stamped.status.value})")
        return stamped

    def load(self, session_id: int) -> Optional[SessionState]:
        try:
            with self.db.session_scope() as session:
                record = session.get(ShoppingSessionRecord, session_id)
                payload = record.payload if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load session {session_id}: {e}") from e
        return _decode(session_id, payload) if payload else None

    def delete(self, session_id: int) -> bool:
        try:
            with self.db.session_scope() as session:
                record = session.get(ShoppingSessionRecord, session_id)
                if record is None:
                    return False
                session.delete(record)
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete session {session_id}: {e}") from e
