"""
Exception classes for the reservation and settlement engine.

Every error is scoped to a single board, square or transaction. None of them
is fatal to the process.
"""
from typing import Any, Dict, Optional, Sequence


class GridPlayError(Exception):
    """Base exception for all engine errors."""

    error_code = "gridplay_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for callers that return errors as data."""
        return {
            "code": self.error_code,
            "message": self.message,
            "type": self.__class__.__name__,
            **{key: value for key, value in self.context.items() if value is not None},
        }


class AlreadyClaimed(GridPlayError):
    """
    Raised when a reservation targets a square that is not available.

    Recoverable: the user retries with a different square.
    """

    error_code = "already_claimed"

    def __init__(self, square_ids: Sequence[str], message: Optional[str] = None):
        super().__init__(
            message or f"Squares no longer available: {', '.join(square_ids)}",
            square_ids=list(square_ids),
        )
        self.square_ids = list(square_ids)


class InvalidTransition(GridPlayError):
    """Raised when a requested state change does not match the current state."""

    error_code = "invalid_transition"


class BoardNotOpen(InvalidTransition):
    """Raised when squares are reserved on a board that is not open."""

    error_code = "board_not_open"


class DuplicateEvent(GridPlayError):
    """Raised internally when a settlement event was already applied."""

    error_code = "duplicate_event"


class ConfigInvalid(GridPlayError):
    """Raised when a payout configuration is malformed."""

    error_code = "config_invalid"

    def __init__(self, errors: Sequence[str]):
        super().__init__("; ".join(errors), errors=list(errors))
        self.errors = list(errors)


class AssignmentAlreadyDone(GridPlayError):
    """Raised when numbers were already assigned to a board."""

    error_code = "assignment_already_done"


class NumberAssignmentError(GridPlayError):
    """Raised when assigned numbers are not a permutation of the axis digits."""

    error_code = "number_assignment_error"


class BoardNotFound(GridPlayError):
    """Raised when a board does not exist."""

    error_code = "board_not_found"


class SquareNotFound(GridPlayError):
    """Raised when one or more squares do not exist."""

    error_code = "square_not_found"


class StaleSquareState(GridPlayError):
    """Raised by a store when a conditional square update loses the race."""

    error_code = "stale_square_state"

    def __init__(self, square_id: str):
        super().__init__(f"Square {square_id} changed concurrently", square_id=square_id)
        self.square_id = square_id


class TransactionConflict(GridPlayError):
    """Raised by a store when a transaction insert or update loses the race."""

    error_code = "transaction_conflict"


class WebhookPayloadError(GridPlayError):
    """Raised when a provider payload cannot be normalized."""

    error_code = "webhook_payload_error"
