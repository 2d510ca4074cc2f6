"""
Domain types for boards, squares, transactions and scores.

Square ownership is a tagged union (Available | Reserved | Purchased) so an
owner without a status, or a purchase without an owner, cannot be expressed.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, model_validator


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid.uuid4())


class BoardSize(str, Enum):
    """Supported grid sizes."""

    FIVE = "5x5"
    TEN = "10x10"

    @property
    def dimension(self) -> int:
        """Rows (and columns) on the grid."""
        return 5 if self is BoardSize.FIVE else 10

    @property
    def total_squares(self) -> int:
        return self.dimension * self.dimension


class BoardStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    LOCKED = "locked"
    COMPLETED = "completed"


class SquareStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    PURCHASED = "purchased"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    VOIDED = "voided"


class Quarter(str, Enum):
    """Scoring checkpoints. Overtime pays out of the final share."""

    Q1 = "Q1"
    Q2 = "Q2"
    Q3 = "Q3"
    FINAL = "Final"
    OT = "OT"

    @classmethod
    def _missing_(cls, value: object) -> Optional["Quarter"]:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


# ---------------------------------------------------------------------------
# Square states
# ---------------------------------------------------------------------------


class Available(BaseModel):
    """Nobody holds the square."""

    status: Literal[SquareStatus.AVAILABLE] = SquareStatus.AVAILABLE

    model_config = {"frozen": True}


class Reserved(BaseModel):
    """Optimistic hold pending payment; lapses at ``expires_at``."""

    status: Literal[SquareStatus.RESERVED] = SquareStatus.RESERVED
    owner_id: str
    reserved_at: datetime
    expires_at: datetime

    model_config = {"frozen": True}

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class Purchased(BaseModel):
    """Paid for and owned."""

    status: Literal[SquareStatus.PURCHASED] = SquareStatus.PURCHASED
    owner_id: str
    purchased_at: datetime
    payment_ref: Optional[str] = None

    model_config = {"frozen": True}


SquareState = Annotated[Union[Available, Reserved, Purchased], Field(discriminator="status")]


class Square(BaseModel):
    """One cell of a board."""

    id: str = Field(default_factory=new_id)
    board_id: str
    row: int = Field(..., ge=0, lt=10)
    col: int = Field(..., ge=0, lt=10)
    price: Decimal
    state: SquareState = Field(default_factory=Available)
    version: int = Field(default=0, ge=0)

    model_config = {"frozen": True}

    @property
    def status(self) -> SquareStatus:
        return self.state.status

    @property
    def owner_id(self) -> Optional[str]:
        return getattr(self.state, "owner_id", None)

    def with_state(self, state: Union[Available, Reserved, Purchased]) -> "Square":
        """Return the square moved to ``state`` with its version bumped."""
        return self.model_copy(update={"state": state, "version": self.version + 1})


# ---------------------------------------------------------------------------
# Boards
# ---------------------------------------------------------------------------


class PayoutConfig(BaseModel):
    """
    Pot split across the four payout buckets.

    Not validated on construction: ``validate_payout_config`` reports every
    problem at board creation time instead.
    """

    first_quarter: Decimal
    second_quarter: Decimal
    third_quarter: Decimal
    final: Decimal
    total: Decimal

    model_config = {"frozen": True}

    def share_for(self, quarter: Quarter) -> Decimal:
        """Payout share for a quarter label (OT reuses the final share)."""
        return {
            Quarter.Q1: self.first_quarter,
            Quarter.Q2: self.second_quarter,
            Quarter.Q3: self.third_quarter,
            Quarter.FINAL: self.final,
            Quarter.OT: self.final,
        }[quarter]


class Board(BaseModel):
    """One grid tied to a game and a price."""

    id: str = Field(default_factory=new_id)
    name: str
    size: BoardSize
    price_per_square: Decimal
    home_team: str
    away_team: str
    game_id: Optional[str] = None
    status: BoardStatus = BoardStatus.DRAFT
    row_numbers: Optional[Tuple[int, ...]] = None
    col_numbers: Optional[Tuple[int, ...]] = None
    numbers_seed: Optional[str] = None
    payout: PayoutConfig
    created_by: str
    created_at: datetime
    locked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def numbers_set_together(self) -> "Board":
        if (self.row_numbers is None) != (self.col_numbers is None):
            raise ValueError("row_numbers and col_numbers must be assigned together")
        return self

    @property
    def numbers_assigned(self) -> bool:
        return self.row_numbers is not None

    @property
    def total_pot(self) -> Decimal:
        return self.price_per_square * self.size.total_squares


class BoardProgress(BaseModel):
    """Square counts for a board."""

    board_id: str
    total: int
    available: int
    reserved: int
    purchased: int

    @property
    def completion_percentage(self) -> int:
        if self.total == 0:
            return 0
        return round(self.purchased * 100 / self.total)

    @property
    def is_full(self) -> bool:
        return self.total > 0 and self.purchased == self.total


class AssignedNumbers(BaseModel):
    """Row and column digits produced by the number assigner."""

    row_numbers: Tuple[int, ...]
    col_numbers: Tuple[int, ...]
    seed: Optional[str] = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTransaction(BaseModel):
    """Settlement state of one provider transaction."""

    provider: PaymentProvider
    external_id: str
    provider_ref: Optional[str] = None
    board_id: Optional[str] = None
    square_ids: Tuple[str, ...] = ()
    user_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    status: TransactionStatus = TransactionStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def key(self) -> Tuple[PaymentProvider, str]:
        return (self.provider, self.external_id)


class TransactionEvent(BaseModel):
    """Immutable audit record of a settlement event."""

    id: Optional[int] = None
    provider: PaymentProvider
    external_id: str
    event_type: str
    outcome: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: str
    created_at: datetime

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Scores and winners
# ---------------------------------------------------------------------------


class QuarterScore(BaseModel):
    """Score at a quarter checkpoint."""

    quarter: Quarter
    home_score: int = Field(..., ge=0)
    away_score: int = Field(..., ge=0)

    model_config = {"frozen": True}


class Winner(BaseModel):
    """A square that won a quarter's share."""

    square: Square
    quarter: Quarter
    payout: Decimal
    home_digit: int
    away_digit: int
    score: QuarterScore

    model_config = {"frozen": True}

    @property
    def owner_id(self) -> str:
        return self.square.owner_id or ""


class UnclaimedQuarter(BaseModel):
    """A quarter whose share stays in the pot because nobody owns the winning square."""

    quarter: Quarter
    share: Decimal
    home_digit: int
    away_digit: int
    square_id: Optional[str] = None
    reason: str

    model_config = {"frozen": True}


class PayoutResult(BaseModel):
    winners: Tuple[Winner, ...]
    total_payout: Decimal
    remaining_pot: Decimal
    unclaimed: Tuple[UnclaimedQuarter, ...] = ()

    model_config = {"frozen": True}


class OwnerWinnings(BaseModel):
    """Winnings aggregated per square owner."""

    owner_id: str
    total_payout: Decimal
    wins: int
    quarters: Tuple[Quarter, ...]
