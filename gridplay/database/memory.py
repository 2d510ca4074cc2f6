"""
In-process implementation of ``GridStore``.

Used by tests and single-process deployments. The mutex only covers the
compare-and-swap section of each call, so it never spans an await.
"""
import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from gridplay.core.exceptions import (
    AssignmentAlreadyDone,
    BoardNotFound,
    InvalidTransition,
    SquareNotFound,
    StaleSquareState,
    TransactionConflict,
)
from gridplay.database.store import SquareUpdate
from gridplay.domain import (
    AssignedNumbers,
    Board,
    BoardStatus,
    PaymentProvider,
    PaymentTransaction,
    Square,
    TransactionEvent,
    TransactionStatus,
)

logger = structlog.get_logger(__name__)


class InMemoryStore:
    """Dictionary-backed store with conditional updates."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._boards: Dict[str, Board] = {}
        self._squares: Dict[str, Square] = {}
        self._board_squares: Dict[str, List[str]] = {}
        self._transactions: Dict[Tuple[PaymentProvider, str], PaymentTransaction] = {}
        self._events: List[TransactionEvent] = []

    async def add_board(self, board: Board, squares: Sequence[Square]) -> Board:
        with self._lock:
            if board.id in self._boards:
                raise InvalidTransition(f"Board {board.id} already exists", board_id=board.id)
            self._boards[board.id] = board
            self._board_squares[board.id] = [square.id for square in squares]
            for square in squares:
                self._squares[square.id] = square
        return board

    async def get_board(self, board_id: str) -> Board:
        board = self._boards.get(board_id)
        if board is None:
            raise BoardNotFound(f"Board {board_id} not found", board_id=board_id)
        return board

    async def update_board_status(
        self, board_id: str, expected: BoardStatus, new: BoardStatus, at: datetime
    ) -> Board:
        with self._lock:
            board = self._boards.get(board_id)
            if board is None:
                raise BoardNotFound(f"Board {board_id} not found", board_id=board_id)
            if board.status is not expected:
                raise InvalidTransition(
                    f"Board {board_id} is {board.status.value}, expected {expected.value}",
                    board_id=board_id,
                )
            changes: Dict[str, object] = {"status": new}
            if new is BoardStatus.LOCKED:
                changes["locked_at"] = at
            elif new is BoardStatus.COMPLETED:
                changes["completed_at"] = at
            updated = board.model_copy(update=changes)
            self._boards[board_id] = updated
        return updated

    async def set_board_numbers(
        self, board_id: str, numbers: AssignedNumbers, locked_at: datetime
    ) -> Board:
        with self._lock:
            board = self._boards.get(board_id)
            if board is None:
                raise BoardNotFound(f"Board {board_id} not found", board_id=board_id)
            if board.numbers_assigned:
                raise AssignmentAlreadyDone(
                    f"Numbers already assigned for board {board_id}", board_id=board_id
                )
            if board.status is not BoardStatus.OPEN:
                raise InvalidTransition(
                    f"Board {board_id} is {board.status.value}, cannot lock",
                    board_id=board_id,
                )
            updated = board.model_copy(
                update={
                    "row_numbers": numbers.row_numbers,
                    "col_numbers": numbers.col_numbers,
                    "numbers_seed": numbers.seed,
                    "status": BoardStatus.LOCKED,
                    "locked_at": locked_at,
                }
            )
            self._boards[board_id] = updated
        return updated

    async def list_squares(self, board_id: str) -> List[Square]:
        if board_id not in self._boards:
            raise BoardNotFound(f"Board {board_id} not found", board_id=board_id)
        squares = [self._squares[square_id] for square_id in self._board_squares[board_id]]
        return sorted(squares, key=lambda square: (square.row, square.col))

    async def get_squares(self, square_ids: Sequence[str]) -> List[Square]:
        missing = [square_id for square_id in square_ids if square_id not in self._squares]
        if missing:
            raise SquareNotFound(f"Squares not found: {', '.join(missing)}", square_ids=missing)
        return [self._squares[square_id] for square_id in square_ids]

    async def apply_square_updates(self, updates: Sequence[SquareUpdate]) -> List[Square]:
        with self._lock:
            for update in updates:
                current = self._squares.get(update.square_id)
                if current is None:
                    raise SquareNotFound(
                        f"Square {update.square_id} not found", square_ids=[update.square_id]
                    )
                if (
                    current.status is not update.expected_status
                    or current.version != update.expected_version
                ):
                    raise StaleSquareState(update.square_id)

            applied = []
            for update in updates:
                square = self._squares[update.square_id].with_state(update.new_state)
                self._squares[square.id] = square
                applied.append(square)
        return applied

    async def get_transaction(
        self, provider: PaymentProvider, external_id: str
    ) -> Optional[PaymentTransaction]:
        return self._transactions.get((provider, external_id))

    async def find_transaction_by_ref(
        self, provider: PaymentProvider, provider_ref: str
    ) -> Optional[PaymentTransaction]:
        matches = [
            transaction
            for transaction in self._transactions.values()
            if transaction.provider is provider and transaction.provider_ref == provider_ref
        ]
        return min(matches, key=lambda transaction: transaction.created_at, default=None)

    async def insert_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with self._lock:
            if transaction.key in self._transactions:
                raise TransactionConflict(
                    f"Transaction {transaction.provider.value}:{transaction.external_id} exists",
                    external_id=transaction.external_id,
                )
            self._transactions[transaction.key] = transaction
        return transaction

    async def update_transaction(
        self, transaction: PaymentTransaction, expected_status: TransactionStatus
    ) -> PaymentTransaction:
        with self._lock:
            current = self._transactions.get(transaction.key)
            if current is None or current.status is not expected_status:
                raise TransactionConflict(
                    f"Transaction {transaction.provider.value}:{transaction.external_id} "
                    f"is no longer {expected_status.value}",
                    external_id=transaction.external_id,
                )
            self._transactions[transaction.key] = transaction
        return transaction

    async def add_transaction_event(self, event: TransactionEvent) -> TransactionEvent:
        with self._lock:
            stored = event.model_copy(update={"id": len(self._events) + 1})
            self._events.append(stored)
        return stored

    async def list_transaction_events(
        self, provider: PaymentProvider, external_id: str
    ) -> List[TransactionEvent]:
        return [
            event
            for event in self._events
            if event.provider is provider and event.external_id == external_id
        ]
