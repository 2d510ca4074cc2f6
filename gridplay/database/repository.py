"""
SQLAlchemy implementation of ``GridStore``.

Square batches run in one database transaction. Each square is written with
``UPDATE ... WHERE id = :id AND status = :expected AND version = :version``;
a row count other than one raises ``StaleSquareState``, which rolls the
whole batch back.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gridplay.core.exceptions import (
    AssignmentAlreadyDone,
    BoardNotFound,
    InvalidTransition,
    SquareNotFound,
    StaleSquareState,
    TransactionConflict,
)
from gridplay.database.connection import get_session_factory
from gridplay.database.models import (
    BoardRecord,
    BoardSquareRecord,
    PaymentTransactionRecord,
    TransactionEventRecord,
)
from gridplay.database.store import SquareUpdate
from gridplay.domain import (
    AssignedNumbers,
    Available,
    Board,
    BoardSize,
    BoardStatus,
    PaymentProvider,
    PaymentTransaction,
    PayoutConfig,
    Purchased,
    Reserved,
    Square,
    TransactionEvent,
    TransactionStatus,
)

logger = structlog.get_logger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _board_from_record(record: BoardRecord) -> Board:
    return Board(
        id=record.id,
        name=record.name,
        size=BoardSize(record.size),
        price_per_square=record.price_per_square,
        home_team=record.home_team,
        away_team=record.away_team,
        game_id=record.game_id,
        status=BoardStatus(record.status),
        row_numbers=tuple(record.row_numbers) if record.row_numbers is not None else None,
        col_numbers=tuple(record.col_numbers) if record.col_numbers is not None else None,
        numbers_seed=record.numbers_seed,
        payout=PayoutConfig.model_validate(record.payout),
        created_by=record.created_by,
        created_at=_utc(record.created_at),
        locked_at=_utc(record.locked_at),
        completed_at=_utc(record.completed_at),
    )


def _square_state(record: BoardSquareRecord) -> Union[Available, Reserved, Purchased]:
    if record.status == "reserved":
        return Reserved(
            owner_id=record.owner_id,
            reserved_at=_utc(record.reserved_at),
            expires_at=_utc(record.expires_at),
        )
    if record.status == "purchased":
        return Purchased(
            owner_id=record.owner_id,
            purchased_at=_utc(record.purchased_at),
            payment_ref=record.payment_ref,
        )
    return Available()


def _square_from_record(record: BoardSquareRecord) -> Square:
    return Square(
        id=record.id,
        board_id=record.board_id,
        row=record.row,
        col=record.col,
        price=record.price,
        state=_square_state(record),
        version=record.version,
    )


def _state_columns(state: Union[Available, Reserved, Purchased]) -> Dict[str, Any]:
    columns: Dict[str, Any] = {
        "status": state.status.value,
        "owner_id": None,
        "reserved_at": None,
        "expires_at": None,
        "purchased_at": None,
        "payment_ref": None,
    }
    if isinstance(state, Reserved):
        columns.update(
            owner_id=state.owner_id,
            reserved_at=state.reserved_at,
            expires_at=state.expires_at,
        )
    elif isinstance(state, Purchased):
        columns.update(
            owner_id=state.owner_id,
            purchased_at=state.purchased_at,
            payment_ref=state.payment_ref,
        )
    return columns


def _transaction_from_record(record: PaymentTransactionRecord) -> PaymentTransaction:
    return PaymentTransaction(
        provider=PaymentProvider(record.provider),
        external_id=record.external_id,
        provider_ref=record.provider_ref,
        board_id=record.board_id,
        square_ids=tuple(record.square_ids or ()),
        user_id=record.user_id,
        amount=record.amount,
        currency=record.currency,
        status=TransactionStatus(record.status),
        error_message=record.error_message,
        created_at=_utc(record.created_at),
        updated_at=_utc(record.updated_at),
        completed_at=_utc(record.completed_at),
        refunded_at=_utc(record.refunded_at),
    )


def _transaction_columns(transaction: PaymentTransaction) -> Dict[str, Any]:
    return {
        "provider_ref": transaction.provider_ref,
        "board_id": transaction.board_id,
        "square_ids": list(transaction.square_ids),
        "user_id": transaction.user_id,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "status": transaction.status.value,
        "error_message": transaction.error_message,
        "created_at": transaction.created_at,
        "updated_at": transaction.updated_at,
        "completed_at": transaction.completed_at,
        "refunded_at": transaction.refunded_at,
    }


class SqlAlchemyStore:
    """``GridStore`` backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    async def add_board(self, board: Board, squares: Sequence[Square]) -> Board:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    BoardRecord(
                        id=board.id,
                        name=board.name,
                        size=board.size.value,
                        price_per_square=board.price_per_square,
                        home_team=board.home_team,
                        away_team=board.away_team,
                        game_id=board.game_id,
                        status=board.status.value,
                        row_numbers=list(board.row_numbers) if board.row_numbers else None,
                        col_numbers=list(board.col_numbers) if board.col_numbers else None,
                        numbers_seed=board.numbers_seed,
                        payout=board.payout.model_dump(mode="json"),
                        created_by=board.created_by,
                        created_at=board.created_at,
                    )
                )
                # Parent row first so the foreign key holds without relationships.
                await session.flush()
                session.add_all(
                    BoardSquareRecord(
                        id=square.id,
                        board_id=square.board_id,
                        row=square.row,
                        col=square.col,
                        price=square.price,
                        version=square.version,
                        **_state_columns(square.state),
                    )
                    for square in squares
                )
        logger.debug("board_persisted", board_id=board.id, squares=len(squares))
        return board

    async def get_board(self, board_id: str) -> Board:
        async with self._session_factory() as session:
            record = await session.get(BoardRecord, board_id)
            if record is None:
                raise BoardNotFound(f"Board {board_id} not found", board_id=board_id)
            return _board_from_record(record)

    async def update_board_status(
        self, board_id: str, expected: BoardStatus, new: BoardStatus, at: datetime
    ) -> Board:
        values: Dict[str, Any] = {"status": new.value}
        if new is BoardStatus.LOCKED:
            values["locked_at"] = at
        elif new is BoardStatus.COMPLETED:
            values["completed_at"] = at

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BoardRecord)
                    .where(BoardRecord.id == board_id, BoardRecord.status == expected.value)
                    .values(**values)
                )
            if result.rowcount != 1:
                board = await self.get_board(board_id)
                raise InvalidTransition(
                    f"Board {board_id} is {board.status.value}, expected {expected.value}",
                    board_id=board_id,
                )
        return await self.get_board(board_id)

    async def set_board_numbers(
        self, board_id: str, numbers: AssignedNumbers, locked_at: datetime
    ) -> Board:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BoardRecord)
                    .where(
                        BoardRecord.id == board_id,
                        BoardRecord.row_numbers.is_(None),
                        BoardRecord.status == BoardStatus.OPEN.value,
                    )
                    .values(
                        row_numbers=list(numbers.row_numbers),
                        col_numbers=list(numbers.col_numbers),
                        numbers_seed=numbers.seed,
                        status=BoardStatus.LOCKED.value,
                        locked_at=locked_at,
                    )
                )

        board = await self.get_board(board_id)
        if result.rowcount != 1:
            if board.numbers_assigned:
                raise AssignmentAlreadyDone(
                    f"Numbers already assigned for board {board_id}", board_id=board_id
                )
            raise InvalidTransition(
                f"Board {board_id} is {board.status.value}, cannot lock", board_id=board_id
            )
        return board

    # ------------------------------------------------------------------
    # Squares
    # ------------------------------------------------------------------

    async def list_squares(self, board_id: str) -> List[Square]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BoardSquareRecord)
                .where(BoardSquareRecord.board_id == board_id)
                .order_by(BoardSquareRecord.row, BoardSquareRecord.col)
            )
            records = result.scalars().all()
            if not records and await session.get(BoardRecord, board_id) is None:
                raise BoardNotFound(f"Board {board_id} not found", board_id=board_id)
            return [_square_from_record(record) for record in records]

    async def get_squares(self, square_ids: Sequence[str]) -> List[Square]:
        async with self._session_factory() as session:
            return await self._load_squares(session, square_ids)

    @staticmethod
    async def _load_squares(session: AsyncSession, square_ids: Sequence[str]) -> List[Square]:
        result = await session.execute(
            select(BoardSquareRecord).where(BoardSquareRecord.id.in_(list(square_ids)))
        )
        by_id = {record.id: _square_from_record(record) for record in result.scalars()}
        missing = [square_id for square_id in square_ids if square_id not in by_id]
        if missing:
            raise SquareNotFound(f"Squares not found: {', '.join(missing)}", square_ids=missing)
        return [by_id[square_id] for square_id in square_ids]

    async def apply_square_updates(self, updates: Sequence[SquareUpdate]) -> List[Square]:
        async with self._session_factory() as session:
            async with session.begin():
                for change in updates:
                    result = await session.execute(
                        update(BoardSquareRecord)
                        .where(
                            BoardSquareRecord.id == change.square_id,
                            BoardSquareRecord.status == change.expected_status.value,
                            BoardSquareRecord.version == change.expected_version,
                        )
                        .values(
                            version=BoardSquareRecord.version + 1,
                            **_state_columns(change.new_state),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        logger.debug("square_update_stale", square_id=change.square_id)
                        raise StaleSquareState(change.square_id)
                return await self._load_squares(
                    session, [change.square_id for change in updates]
                )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_transaction(
        self, provider: PaymentProvider, external_id: str
    ) -> Optional[PaymentTransaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentTransactionRecord).where(
                    PaymentTransactionRecord.provider == provider.value,
                    PaymentTransactionRecord.external_id == external_id,
                )
            )
            record = result.scalar_one_or_none()
            return _transaction_from_record(record) if record is not None else None

    async def find_transaction_by_ref(
        self, provider: PaymentProvider, provider_ref: str
    ) -> Optional[PaymentTransaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentTransactionRecord)
                .where(
                    PaymentTransactionRecord.provider == provider.value,
                    PaymentTransactionRecord.provider_ref == provider_ref,
                )
                .order_by(PaymentTransactionRecord.created_at, PaymentTransactionRecord.id)
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _transaction_from_record(record) if record is not None else None

    async def insert_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        PaymentTransactionRecord(
                            provider=transaction.provider.value,
                            external_id=transaction.external_id,
                            **_transaction_columns(transaction),
                        )
                    )
        except IntegrityError as exc:
            raise TransactionConflict(
                f"Transaction {transaction.provider.value}:{transaction.external_id} exists",
                external_id=transaction.external_id,
            ) from exc
        return transaction

    async def update_transaction(
        self, transaction: PaymentTransaction, expected_status: TransactionStatus
    ) -> PaymentTransaction:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PaymentTransactionRecord)
                    .where(
                        PaymentTransactionRecord.provider == transaction.provider.value,
                        PaymentTransactionRecord.external_id == transaction.external_id,
                        PaymentTransactionRecord.status == expected_status.value,
                    )
                    .values(**_transaction_columns(transaction))
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            raise TransactionConflict(
                f"Transaction {transaction.provider.value}:{transaction.external_id} "
                f"is no longer {expected_status.value}",
                external_id=transaction.external_id,
            )
        return transaction

    async def add_transaction_event(self, event: TransactionEvent) -> TransactionEvent:
        async with self._session_factory() as session:
            async with session.begin():
                record = TransactionEventRecord(
                    provider=event.provider.value,
                    external_id=event.external_id,
                    event_type=event.event_type,
                    outcome=event.outcome,
                    payload=event.payload,
                    correlation_id=event.correlation_id,
                    created_at=event.created_at,
                )
                session.add(record)
                await session.flush()
                event_id = record.id
        return event.model_copy(update={"id": event_id})

    async def list_transaction_events(
        self, provider: PaymentProvider, external_id: str
    ) -> List[TransactionEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionEventRecord)
                .where(
                    TransactionEventRecord.provider == provider.value,
                    TransactionEventRecord.external_id == external_id,
                )
                .order_by(TransactionEventRecord.id)
            )
            return [
                TransactionEvent(
                    id=record.id,
                    provider=PaymentProvider(record.provider),
                    external_id=record.external_id,
                    event_type=record.event_type,
                    outcome=record.outcome,
                    payload=record.payload or {},
                    correlation_id=record.correlation_id,
                    created_at=_utc(record.created_at),
                )
                for record in result.scalars()
            ]
