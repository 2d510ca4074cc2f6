"""
Board lifecycle: creation, opening, locking with number assignment,
completion and winner computation.

Number assignment happens once per board. The store only writes numbers
while they are unset, so two triggers racing on a board that just filled
up produce one shuffle; the loser gets ``AssignmentAlreadyDone`` and returns
the board the winner wrote.
"""
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog

from gridplay.config import Settings, get_settings
from gridplay.core import numbers
from gridplay.core.clock import Clock, SystemClock
from gridplay.core.exceptions import AssignmentAlreadyDone, ConfigInvalid, InvalidTransition
from gridplay.core.payouts import compute_winners, default_payouts, validate_payout_config
from gridplay.database.store import GridStore
from gridplay.domain import (
    Board,
    BoardProgress,
    BoardSize,
    BoardStatus,
    PayoutConfig,
    PayoutResult,
    QuarterScore,
    Reserved,
    Square,
    SquareStatus,
)
from gridplay.monitoring import metrics

logger = structlog.get_logger(__name__)

MIN_PRICE_PER_SQUARE = Decimal("1")


class BoardService:
    """Board state transitions on top of a ``GridStore``."""

    def __init__(
        self,
        store: GridStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    async def create_board(
        self,
        size: BoardSize,
        price_per_square: Decimal,
        home_team: str,
        away_team: str,
        created_by: str,
        name: Optional[str] = None,
        game_id: Optional[str] = None,
        payout: Optional[PayoutConfig] = None,
        open_immediately: bool = False,
    ) -> Board:
        """
        Create a board together with all of its squares.

        Args:
            size: Grid size
            price_per_square: Price charged for every square
            home_team: Team whose score picks the row
            away_team: Team whose score picks the column
            created_by: User creating the board
            name: Display name (defaults to "<home> vs <away>")
            game_id: Scores feed identifier
            payout: Pot split (defaults to 20/20/20/40 of the pot)
            open_immediately: Create the board already open for reservations

        Returns:
            Board: The persisted board

        Raises:
            ConfigInvalid: If the price or the payout split is malformed
        """
        price = Decimal(price_per_square)
        if price < MIN_PRICE_PER_SQUARE:
            raise ConfigInvalid([f"Price per square must be at least {MIN_PRICE_PER_SQUARE}"])

        total_pot = price * size.total_squares
        payout = payout or default_payouts(total_pot)
        validate_payout_config(payout, expected_total=total_pot)

        now = self.clock.now()
        board = Board(
            name=name or f"{home_team} vs {away_team}",
            size=size,
            price_per_square=price,
            home_team=home_team,
            away_team=away_team,
            game_id=game_id,
            status=BoardStatus.OPEN if open_immediately else BoardStatus.DRAFT,
            payout=payout,
            created_by=created_by,
            created_at=now,
        )
        squares = [
            Square(board_id=board.id, row=row, col=col, price=price)
            for row in range(size.dimension)
            for col in range(size.dimension)
        ]
        board = await self.store.add_board(board, squares)

        logger.info(
            "board_created",
            board_id=board.id,
            size=size.value,
            price_per_square=str(price),
            total_pot=str(total_pot),
            status=board.status.value,
        )
        return board

    async def get_board(self, board_id: str) -> Board:
        return await self.store.get_board(board_id)

    async def open_board(self, board_id: str) -> Board:
        """Draft to open."""
        board = await self.store.update_board_status(
            board_id, BoardStatus.DRAFT, BoardStatus.OPEN, self.clock.now()
        )
        logger.info("board_opened", board_id=board_id)
        return board

    async def complete_board(self, board_id: str) -> Board:
        """Locked to completed, once the game is over."""
        board = await self.store.update_board_status(
            board_id, BoardStatus.LOCKED, BoardStatus.COMPLETED, self.clock.now()
        )
        logger.info("board_completed", board_id=board_id)
        return board

    async def board_progress(self, board_id: str) -> BoardProgress:
        """Square counts by status; lapsed reservations count as available."""
        now = self.clock.now()
        squares = await self.store.list_squares(board_id)
        reserved = sum(
            1
            for square in squares
            if isinstance(square.state, Reserved) and not square.state.is_expired(now)
        )
        purchased = sum(1 for square in squares if square.status is SquareStatus.PURCHASED)
        return BoardProgress(
            board_id=board_id,
            total=len(squares),
            available=len(squares) - reserved - purchased,
            reserved=reserved,
            purchased=purchased,
        )

    async def assign_numbers_if_needed(self, board_id: str, seed: Optional[str] = None) -> Board:
        """
        Assign numbers and lock the board once every square is purchased.

        Boards that are not full, or already have numbers, are returned as
        they are.
        """
        board = await self.store.get_board(board_id)
        if board.numbers_assigned:
            metrics.record_number_assignment("already_assigned")
            return board

        if not await self._is_full(board_id):
            metrics.record_number_assignment("not_full")
            return board

        return await self._assign(board, seed)

    async def lock_board(self, board_id: str, seed: Optional[str] = None) -> Board:
        """
        Explicitly lock a full board, assigning numbers if still unset.

        Raises:
            InvalidTransition: If any square is not purchased
        """
        board = await self.store.get_board(board_id)
        if not await self._is_full(board_id):
            raise InvalidTransition(
                f"Board {board_id} cannot lock until every square is purchased",
                board_id=board_id,
            )
        if board.numbers_assigned:
            metrics.record_number_assignment("already_assigned")
            return board
        return await self._assign(board, seed)

    async def _assign(self, board: Board, seed: Optional[str]) -> Board:
        assigned = (
            numbers.assign_seeded(board.size, seed)
            if seed is not None
            else numbers.assign(board.size)
        )
        try:
            locked = await self.store.set_board_numbers(board.id, assigned, self.clock.now())
        except AssignmentAlreadyDone:
            metrics.record_number_assignment("already_assigned")
            logger.info("numbers_already_assigned", board_id=board.id)
            return await self.store.get_board(board.id)

        metrics.record_number_assignment("assigned")
        logger.info(
            "numbers_assigned",
            board_id=board.id,
            row_numbers=list(assigned.row_numbers),
            col_numbers=list(assigned.col_numbers),
            seeded=seed is not None,
        )
        return locked

    async def compute_board_winners(
        self, board_id: str, scores: Sequence[QuarterScore]
    ) -> PayoutResult:
        """
        Winners for a board's current scores.

        Raises:
            InvalidTransition: If numbers have not been assigned yet
        """
        board = await self.store.get_board(board_id)
        if not board.numbers_assigned:
            raise InvalidTransition(
                f"Board {board_id} has no numbers assigned", board_id=board_id
            )

        squares: List[Square] = await self.store.list_squares(board_id)
        result = compute_winners(
            squares,
            board.row_numbers,
            board.col_numbers,
            scores,
            board.payout,
            board.size,
        )

        metrics.record_payout_computation(
            board.size.value, [entry.quarter.value for entry in result.unclaimed]
        )
        if result.unclaimed:
            logger.warning(
                "unclaimed_quarters",
                board_id=board_id,
                quarters=[entry.quarter.value for entry in result.unclaimed],
                remaining_pot=str(result.remaining_pot),
            )
        logger.info(
            "winners_computed",
            board_id=board_id,
            winners=len(result.winners),
            total_payout=str(result.total_payout),
        )
        return result

    async def _is_full(self, board_id: str) -> bool:
        squares = await self.store.list_squares(board_id)
        return bool(squares) and all(
            square.status is SquareStatus.PURCHASED for square in squares
        )
