"""SQLAlchemy database models for boards, squares and payment settlement."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere. SQL NULL (not JSON null) for None
# so "numbers unset" can be tested with IS NULL.
JsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class BoardRecord(Base):
    """
    Boards table.

    Row and column numbers stay NULL until the board fills up; the number
    assignment update is conditional on them being NULL.
    """

    __tablename__ = "boards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    size: Mapped[str] = mapped_column(String(8), nullable=False)
    price_per_square: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    home_team: Mapped[str] = mapped_column(String(100), nullable=False)
    away_team: Mapped[str] = mapped_column(String(100), nullable=False)
    game_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    row_numbers: Mapped[List[int] | None] = mapped_column(JsonType, nullable=True)
    col_numbers: Mapped[List[int] | None] = mapped_column(JsonType, nullable=True)
    numbers_seed: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payout: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("price_per_square > 0", name="positive_price"),
        CheckConstraint("size IN ('5x5', '10x10')", name="valid_board_size"),
        CheckConstraint(
            "status IN ('draft', 'open', 'locked', 'completed')",
            name="valid_board_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of BoardRecord."""
        return f"<BoardRecord(id={self.id}, size={self.size}, status={self.status})>"


class BoardSquareRecord(Base):
    """
    Board squares table.

    ``version`` is bumped on every state change; ledger updates compare both
    status and version before writing.
    """

    __tablename__ = "board_squares"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    board_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("boards.id", ondelete="CASCADE"), nullable=False
    )
    row: Mapped[int] = mapped_column(Integer, nullable=False)
    col: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")
    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("board_id", "row", "col", name="uq_board_squares_position"),
        CheckConstraint(
            "status IN ('available', 'reserved', 'purchased')",
            name="valid_square_status",
        ),
        CheckConstraint(
            "(status = 'available') = (owner_id IS NULL)",
            name="owner_iff_claimed",
        ),
        Index("idx_board_squares_board_status", "board_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of BoardSquareRecord."""
        return (
            f"<BoardSquareRecord(id={self.id}, row={self.row}, col={self.col}, "
            f"status={self.status}, version={self.version})>"
        )


class PaymentTransactionRecord(Base):
    """
    Payment transactions table.

    One row per provider transaction. The unique ``(provider, external_id)``
    key is what makes webhook processing idempotent.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    board_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    square_ids: Mapped[List[str]] = mapped_column(JsonType, nullable=False, default=list)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_payment_transactions_key"),
        Index("idx_payment_transactions_provider_ref", "provider", "provider_ref"),
        CheckConstraint("provider IN ('stripe', 'paypal')", name="valid_provider"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'refunded', 'voided')",
            name="valid_transaction_status",
        ),
        CheckConstraint("amount >= 0", name="non_negative_amount"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransactionRecord."""
        return (
            f"<PaymentTransactionRecord(provider={self.provider}, "
            f"external_id={self.external_id}, status={self.status})>"
        )


class TransactionEventRecord(Base):
    """
    Settlement audit trail table.

    One immutable row per webhook delivery, including duplicates.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        Index("idx_transaction_events_key", "provider", "external_id"),
        Index("idx_transaction_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionEventRecord."""
        return (
            f"<TransactionEventRecord(id={self.id}, type={self.event_type}, "
            f"outcome={self.outcome})>"
        )
