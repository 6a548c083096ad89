"""
Error taxonomy for the shopping plan & session engine.

- InputError: malformed item/deal data (skip the record, continue)
- NotFoundError: no deals/categorization/session available (degrade to defaults)
- ExternalServiceError: deal feed, categorizer or analytics unreachable
- PersistenceError: session or list-store write failure (retryable)
- ExpiredSessionError: persisted session older than the validity window
- InvalidTransitionError: a session event is not allowed in the current state
"""

from typing import Iterable, List, Optional


class ShoppingPlanError(Exception):
    """Base class for every error raised by the engine"""


class InputError(ShoppingPlanError):
    """Malformed item or deal data"""


class NotFoundError(ShoppingPlanError):
    """Requested record (item, session, deal) does not exist"""


class ExternalServiceError(ShoppingPlanError):
    """A remote collaborator (deal feed, categorizer, analytics) failed"""


class PersistenceError(ShoppingPlanError):
    """A write to the list store or session store failed.

    The in-memory session state is left untouched, so the same event can be
    applied again once the store is reachable.
    """

    retryable = True


class ConcurrentModificationError(PersistenceError):
    """Session version stamp did not match the persisted copy"""

    def __init__(self, session_id: int, expected: int, actual: int):
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Session {session_id} was modified elsewhere "
            f"(expected version {expected}, found {actual})"
        )


class ExpiredSessionError(ShoppingPlanError):
    """Persisted session is older than the validity window.

    Not recoverable by the shopper: a fresh plan has to be generated.
    """

    retryable = False


class InvalidTransitionError(ShoppingPlanError):
    """Event is not valid for the session's current state"""


class LoyaltyCardRequiredError(InvalidTransitionError):
    """The loyalty card barcode must be shown before the store can be finalized"""

    def __init__(self, retailer_id: int, card_number: str):
        self.retailer_id = retailer_id
        self.card_number = card_number
        super().__init__(
            f"Loyalty card for retailer {retailer_id} must be presented before checkout"
        )


class UnresolvedItemsError(InvalidTransitionError):
    """Uncompleted items remain and the shopper has not chosen what to do with them"""

    def __init__(self, item_ids: Iterable[int], allowed_resolutions: Iterable[str]):
        self.item_ids: List[int] = list(item_ids)
        self.allowed_resolutions: List[str] = list(allowed_resolutions)
        super().__init__(
            f"{len(self.item_ids)} uncompleted item(s) need a resolution: "
            f"{', '.join(self.allowed_resolutions)}"
        )


def describe(error: Optional[BaseException]) -> str:
    """Short human-readable description used in log lines"""
    if error is None:
        return "unknown error"
    return f"{type(error).__name__}: {error}"
