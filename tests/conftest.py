"""
Pytest configuration and fixtures.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, List, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from gridplay.config import Settings
from gridplay.core import BoardService, ManualClock, SettlementProcessor, SquareLedger
from gridplay.database import (
    InMemoryStore,
    SqlAlchemyStore,
    SquareUpdate,
    create_session_factory,
    init_db,
)
from gridplay.domain import (
    Board,
    BoardSize,
    PaymentProvider,
    Purchased,
    Square,
    SettlementEvent,
    SettlementEventType,
)

GAME_START = datetime(2025, 2, 9, 23, 30, tzinfo=timezone.utc)


class YieldingStore(InMemoryStore):
    """
    In-memory store that yields to the event loop after every read.

    Concurrent callers all observe the same pre-state before anyone writes,
    so only the conditional update decides who wins. With
    ``yield_after_writes`` it also yields after each square write, so another
    caller runs between a square commit and the record write that follows it.
    """

    def __init__(self, yield_after_writes: bool = False) -> None:
        super().__init__()
        self.yield_after_writes = yield_after_writes
        self.numbers_written = 0

    async def apply_square_updates(self, updates: Sequence[SquareUpdate]) -> List[Square]:
        squares = await super().apply_square_updates(updates)
        if self.yield_after_writes:
            await asyncio.sleep(0)
        return squares

    async def get_squares(self, square_ids: Sequence[str]) -> List[Square]:
        squares = await super().get_squares(square_ids)
        await asyncio.sleep(0)
        return squares

    async def list_squares(self, board_id: str) -> List[Square]:
        squares = await super().list_squares(board_id)
        await asyncio.sleep(0)
        return squares

    async def set_board_numbers(self, board_id, numbers, locked_at):  # type: ignore[no-untyped-def]
        board = await super().set_board_numbers(board_id, numbers, locked_at)
        self.numbers_written += 1
        return board


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_webhook_secret="whsec_test_fake_secret",
        app_name="gridplay-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        reservation_ttl_seconds=900,
        auto_assign_numbers=True,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(GAME_START)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def ledger(store: InMemoryStore, clock: ManualClock, test_settings: Settings) -> SquareLedger:
    return SquareLedger(store, clock=clock, settings=test_settings)


@pytest.fixture
def boards(store: InMemoryStore, clock: ManualClock, test_settings: Settings) -> BoardService:
    return BoardService(store, clock=clock, settings=test_settings)


@pytest.fixture
def processor(
    store: InMemoryStore,
    ledger: SquareLedger,
    boards: BoardService,
    clock: ManualClock,
    test_settings: Settings,
) -> SettlementProcessor:
    return SettlementProcessor(
        store, ledger=ledger, boards=boards, clock=clock, settings=test_settings
    )


@pytest_asyncio.fixture
async def open_board(boards: BoardService) -> Board:
    """An open 5x5 board at $10 a square."""
    return await boards.create_board(
        name="Championship Pool",
        size=BoardSize.FIVE,
        price_per_square=Decimal("10"),
        home_team="Eagles",
        away_team="Chiefs",
        created_by="organizer",
        game_id="401671889",
        open_immediately=True,
    )


@pytest_asyncio.fixture
async def squares(store: InMemoryStore, open_board: Board) -> List[Square]:
    return await store.list_squares(open_board.id)


@pytest_asyncio.fixture
async def sql_store(tmp_path: Any) -> AsyncGenerator[SqlAlchemyStore, Any]:
    """SQLAlchemy store on a throwaway SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'gridplay.db'}",
        poolclass=NullPool,
    )
    await init_db(engine)

    yield SqlAlchemyStore(create_session_factory(engine))

    await engine.dispose()


def completed_event(
    external_id: str,
    square_ids: Sequence[str],
    user_id: str | None = "user-1",
    board_id: str | None = None,
    provider: PaymentProvider = PaymentProvider.STRIPE,
    event_type: SettlementEventType = SettlementEventType.COMPLETED,
    amount: str = "20.00",
) -> SettlementEvent:
    """Build a normalized settlement event."""
    return SettlementEvent(
        type=event_type,
        provider=provider,
        external_id=external_id,
        board_id=board_id,
        square_ids=tuple(square_ids),
        user_id=user_id,
        amount=Decimal(amount),
        raw_type=event_type.value,
    )


def purchased_grid(size: BoardSize, board_id: str = "board-1") -> List[Square]:
    """Every square of a board, each bought by its own owner."""
    return [
        Square(
            board_id=board_id,
            row=row,
            col=col,
            price=Decimal("1"),
            state=Purchased(owner_id=f"user-{row}-{col}", purchased_at=GAME_START),
            version=2,
        )
        for row in range(size.dimension)
        for col in range(size.dimension)
    ]
