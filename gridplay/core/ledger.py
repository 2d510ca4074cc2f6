"""
Square ledger: the only writer of square ownership.

Every transition is a conditional update against the store (expected status
and version in, new state out), so two callers racing for the same square
cannot both win. Batches are applied as one unit: either every square in the
batch moves or none does.

Reservations are optimistic holds. Expiry is evaluated lazily against the
injected clock; an expired reservation reads as available and can be
re-claimed, and ``sweep_expired`` releases lapsed holds in bulk.
"""
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from gridplay.config import Settings, get_settings
from gridplay.core.clock import Clock, SystemClock
from gridplay.core.exceptions import (
    AlreadyClaimed,
    BoardNotOpen,
    InvalidTransition,
    StaleSquareState,
)
from gridplay.database.store import GridStore, SquareUpdate
from gridplay.domain import (
    Available,
    BoardStatus,
    Purchased,
    Reserved,
    Square,
    SquareStatus,
)
from gridplay.monitoring import metrics

logger = structlog.get_logger(__name__)

# Re-reads allowed when a release loses a conditional update.
RELEASE_ATTEMPTS = 3


def _unique(square_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(square_ids))


class SquareLedger:
    """
    Square state transitions with exclusivity guarantees.

    Mutating calls return the post-operation squares and raise typed errors
    (``AlreadyClaimed``, ``InvalidTransition``) on failure.
    """

    def __init__(
        self,
        store: GridStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def effective_square(self, square: Square, now: Optional[datetime] = None) -> Square:
        """Square as callers should see it: lapsed reservations read as available."""
        now = now or self.clock.now()
        if isinstance(square.state, Reserved) and square.state.is_expired(now):
            return square.model_copy(update={"state": Available()})
        return square

    async def get_square(self, square_id: str) -> Square:
        (square,) = await self.store.get_squares([square_id])
        return self.effective_square(square)

    async def list_squares(self, board_id: str) -> List[Square]:
        now = self.clock.now()
        squares = await self.store.list_squares(board_id)
        return [self.effective_square(square, now) for square in squares]

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------

    async def reserve(
        self, square_id: str, user_id: str, ttl: Optional[float] = None
    ) -> Square:
        """Reserve one square. See ``reserve_many``."""
        (square,) = await self.reserve_many([square_id], user_id, ttl=ttl)
        return square

    async def reserve_many(
        self, square_ids: Sequence[str], user_id: str, ttl: Optional[float] = None
    ) -> List[Square]:
        """
        Reserve a group of squares for one user, all or nothing.

        Args:
            square_ids: Squares to hold, all on the same board
            user_id: Holder of the reservation
            ttl: Hold duration in seconds (defaults to the configured TTL)

        Returns:
            List[Square]: The reserved squares, in request order

        Raises:
            BoardNotOpen: If the board is not accepting reservations
            AlreadyClaimed: If any square is held by someone
            InvalidTransition: If the request is empty or spans boards
        """
        ids = _unique(square_ids)
        if not ids:
            raise InvalidTransition("No squares requested", user_id=user_id)
        if not user_id:
            raise InvalidTransition("A reservation needs an owner")

        squares = await self.store.get_squares(ids)
        board_id = self._single_board(squares)
        board = await self.store.get_board(board_id)
        if board.status is not BoardStatus.OPEN:
            raise BoardNotOpen(
                f"Board {board_id} is {board.status.value}, not open for reservations",
                board_id=board_id,
            )

        now = self.clock.now()
        hold = timedelta(
            seconds=ttl if ttl is not None else self.settings.reservation_ttl_seconds
        )

        taken = [
            square.id
            for square in squares
            if self.effective_square(square, now).status is not SquareStatus.AVAILABLE
        ]
        if taken:
            raise self._conflict(board_id, user_id, taken)

        new_state = Reserved(owner_id=user_id, reserved_at=now, expires_at=now + hold)
        updates = [SquareUpdate.from_square(square, new_state) for square in squares]
        try:
            reserved = await self.store.apply_square_updates(updates)
        except StaleSquareState as exc:
            raise self._conflict(board_id, user_id, [exc.square_id]) from exc

        metrics.record_reservation(len(reserved))
        logger.info(
            "squares_reserved",
            board_id=board_id,
            user_id=user_id,
            square_ids=ids,
            expires_at=new_state.expires_at.isoformat(),
        )
        return reserved

    reserve_squares = reserve_many

    def _conflict(self, board_id: str, user_id: str, square_ids: List[str]) -> AlreadyClaimed:
        metrics.record_reservation_conflict()
        logger.info(
            "squares_already_claimed",
            board_id=board_id,
            user_id=user_id,
            square_ids=square_ids,
        )
        return AlreadyClaimed(square_ids)

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------

    async def confirm_purchase(
        self, square_id: str, owner_id: str, payment_ref: Optional[str] = None
    ) -> Square:
        """Confirm one reserved square. See ``confirm_many``."""
        (square,) = await self.confirm_many([square_id], owner_id, payment_ref=payment_ref)
        return square

    async def confirm_many(
        self,
        square_ids: Sequence[str],
        owner_id: str,
        payment_ref: Optional[str] = None,
    ) -> List[Square]:
        """
        Move reserved squares to purchased, all or nothing.

        A reservation past its TTL is still confirmable as long as nobody
        released or re-claimed it: the payment has already been captured.

        Raises:
            InvalidTransition: If any square is not reserved by ``owner_id``
        """
        ids = _unique(square_ids)
        if not ids:
            raise InvalidTransition("No squares to confirm", owner_id=owner_id)

        squares = await self.store.get_squares(ids)
        mismatched: Dict[str, str] = {}
        for square in squares:
            if square.status is not SquareStatus.RESERVED:
                mismatched[square.id] = square.status.value
            elif square.owner_id != owner_id:
                mismatched[square.id] = f"reserved by {square.owner_id}"
        if mismatched:
            raise InvalidTransition(
                f"Cannot confirm squares for {owner_id}: "
                + ", ".join(f"{sid} ({state})" for sid, state in mismatched.items()),
                owner_id=owner_id,
                square_ids=list(mismatched),
                payment_ref=payment_ref,
            )

        new_state = Purchased(
            owner_id=owner_id, purchased_at=self.clock.now(), payment_ref=payment_ref
        )
        try:
            purchased = await self.store.apply_square_updates(
                [SquareUpdate.from_square(square, new_state) for square in squares]
            )
        except StaleSquareState as exc:
            raise InvalidTransition(
                f"Square {exc.square_id} changed while confirming",
                owner_id=owner_id,
                square_ids=[exc.square_id],
                payment_ref=payment_ref,
            ) from exc

        metrics.record_transition("confirm", len(purchased))
        logger.info(
            "squares_purchased",
            board_id=purchased[0].board_id,
            owner_id=owner_id,
            square_ids=ids,
            payment_ref=payment_ref,
        )
        return purchased

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, square_id: str) -> Square:
        """Return a square to available. Releasing an available square is a no-op."""
        (square,) = await self.release_many([square_id])
        return square

    async def release_many(
        self,
        square_ids: Sequence[str],
        owner_id: Optional[str] = None,
        only_reserved: bool = False,
    ) -> List[Square]:
        """
        Release squares back to available.

        Args:
            square_ids: Squares to release
            owner_id: Only release squares currently held by this owner
            only_reserved: Leave purchased squares untouched

        Returns:
            List[Square]: Post-operation state of every requested square
        """
        ids = _unique(square_ids)
        if not ids:
            return []

        for attempt in range(1, RELEASE_ATTEMPTS + 1):
            squares = await self.store.get_squares(ids)
            targets = [
                square
                for square in squares
                if square.status is not SquareStatus.AVAILABLE
                and (owner_id is None or square.owner_id == owner_id)
                and not (only_reserved and square.status is SquareStatus.PURCHASED)
            ]
            if not targets:
                return squares

            try:
                released = await self.store.apply_square_updates(
                    [SquareUpdate.from_square(square, Available()) for square in targets]
                )
            except StaleSquareState as exc:
                if attempt == RELEASE_ATTEMPTS:
                    raise
                logger.debug("release_retry", square_id=exc.square_id, attempt=attempt)
                continue

            metrics.record_transition("release", len(released))
            logger.info(
                "squares_released",
                board_id=released[0].board_id,
                square_ids=[square.id for square in released],
                owner_id=owner_id,
            )
            by_id = {square.id: square for square in released}
            return [by_id.get(square.id, square) for square in squares]

        return []  # pragma: no cover

    release_squares = release_many

    async def sweep_expired(self, board_id: str) -> List[Square]:
        """
        Release every lapsed reservation on a board.

        Squares are released one at a time so a square re-claimed between the
        read and the write is skipped without blocking the rest.
        """
        now = self.clock.now()
        released = []
        for square in await self.store.list_squares(board_id):
            if not (isinstance(square.state, Reserved) and square.state.is_expired(now)):
                continue
            try:
                (updated,) = await self.store.apply_square_updates(
                    [SquareUpdate.from_square(square, Available())]
                )
            except StaleSquareState:
                logger.debug("sweep_skipped_square", square_id=square.id, board_id=board_id)
                continue
            released.append(updated)

        if released:
            metrics.record_transition("expire", len(released))
            logger.info("expired_reservations_swept", board_id=board_id, count=len(released))
        return released

    @staticmethod
    def _single_board(squares: Sequence[Square]) -> str:
        board_ids = {square.board_id for square in squares}
        if len(board_ids) != 1:
            raise InvalidTransition(
                "Squares in one batch must belong to a single board",
                board_ids=sorted(board_ids),
            )
        return board_ids.pop()
