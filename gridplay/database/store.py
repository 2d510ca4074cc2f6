"""
Persistent store interface consumed by the ledger, board service and
settlement processor.

Square mutations go through ``apply_square_updates``: a conditional update
that compares each square's status and version before writing, applied to a
batch as one unit.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Union

from gridplay.domain import (
    AssignedNumbers,
    Available,
    Board,
    BoardStatus,
    PaymentProvider,
    PaymentTransaction,
    Purchased,
    Reserved,
    Square,
    SquareStatus,
    TransactionEvent,
    TransactionStatus,
)


@dataclass(frozen=True)
class SquareUpdate:
    """Compare-and-swap request for one square."""

    square_id: str
    expected_status: SquareStatus
    expected_version: int
    new_state: Union[Available, Reserved, Purchased]

    @classmethod
    def from_square(
        cls, square: Square, new_state: Union[Available, Reserved, Purchased]
    ) -> "SquareUpdate":
        return cls(
            square_id=square.id,
            expected_status=square.status,
            expected_version=square.version,
            new_state=new_state,
        )


class GridStore(Protocol):
    """Storage operations the engine relies on."""

    async def add_board(self, board: Board, squares: Sequence[Square]) -> Board:
        """Persist a new board with all of its squares."""
        ...

    async def get_board(self, board_id: str) -> Board:
        """Raises BoardNotFound."""
        ...

    async def update_board_status(
        self, board_id: str, expected: BoardStatus, new: BoardStatus, at: datetime
    ) -> Board:
        """Move a board between statuses; raises InvalidTransition on mismatch."""
        ...

    async def set_board_numbers(
        self, board_id: str, numbers: AssignedNumbers, locked_at: datetime
    ) -> Board:
        """
        Store numbers and lock the board, only if numbers are still unset.

        Raises AssignmentAlreadyDone when another caller got there first.
        """
        ...

    async def list_squares(self, board_id: str) -> List[Square]:
        ...

    async def get_squares(self, square_ids: Sequence[str]) -> List[Square]:
        """Squares in the requested order; raises SquareNotFound."""
        ...

    async def apply_square_updates(self, updates: Sequence[SquareUpdate]) -> List[Square]:
        """All-or-nothing conditional update; raises StaleSquareState."""
        ...

    async def get_transaction(
        self, provider: PaymentProvider, external_id: str
    ) -> Optional[PaymentTransaction]:
        ...

    async def find_transaction_by_ref(
        self, provider: PaymentProvider, provider_ref: str
    ) -> Optional[PaymentTransaction]:
        """Oldest record carrying this provider-side payment id, if any."""
        ...

    async def insert_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """Raises TransactionConflict if the key already exists."""
        ...

    async def update_transaction(
        self, transaction: PaymentTransaction, expected_status: TransactionStatus
    ) -> PaymentTransaction:
        """Replace the record if its status still matches; raises TransactionConflict."""
        ...

    async def add_transaction_event(self, event: TransactionEvent) -> TransactionEvent:
        ...

    async def list_transaction_events(
        self, provider: PaymentProvider, external_id: str
    ) -> List[TransactionEvent]:
        ...
