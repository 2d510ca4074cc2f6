"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create boards table
    op.create_table(
        "boards",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("size", sa.String(length=8), nullable=False),
        sa.Column("price_per_square", sa.Numeric(10, 2), nullable=False),
        sa.Column("home_team", sa.String(length=100), nullable=False),
        sa.Column("away_team", sa.String(length=100), nullable=False),
        sa.Column("game_id", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("row_numbers", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("col_numbers", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("numbers_seed", sa.String(length=100), nullable=True),
        sa.Column("payout", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("price_per_square > 0", name="positive_price"),
        sa.CheckConstraint("size IN ('5x5', '10x10')", name="valid_board_size"),
        sa.CheckConstraint(
            "status IN ('draft', 'open', 'locked', 'completed')",
            name="valid_board_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_boards_game_id"), "boards", ["game_id"], unique=False)
    op.create_index(op.f("ix_boards_status"), "boards", ["status"], unique=False)

    # Create board_squares table
    op.create_table(
        "board_squares",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("board_id", sa.String(length=36), nullable=False),
        sa.Column("row", sa.Integer(), nullable=False),
        sa.Column("col", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_ref", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "status IN ('available', 'reserved', 'purchased')",
            name="valid_square_status",
        ),
        sa.CheckConstraint(
            "(status = 'available') = (owner_id IS NULL)",
            name="owner_iff_claimed",
        ),
        sa.ForeignKeyConstraint(["board_id"], ["boards.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("board_id", "row", "col", name="uq_board_squares_position"),
    )
    op.create_index(
        "idx_board_squares_board_status",
        "board_squares",
        ["board_id", "status"],
        unique=False,
    )
    op.create_index(
        op.f("ix_board_squares_owner_id"), "board_squares", ["owner_id"], unique=False
    )

    # Create payment_transactions table
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("provider_ref", sa.String(length=255), nullable=True),
        sa.Column("board_id", sa.String(length=36), nullable=True),
        sa.Column("square_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("provider IN ('stripe', 'paypal')", name="valid_provider"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'refunded', 'voided')",
            name="valid_transaction_status",
        ),
        sa.CheckConstraint("amount >= 0", name="non_negative_amount"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "external_id", name="uq_payment_transactions_key"),
    )
    op.create_index(
        "idx_payment_transactions_provider_ref",
        "payment_transactions",
        ["provider", "provider_ref"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_transactions_board_id"),
        "payment_transactions",
        ["board_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_transactions_status"),
        "payment_transactions",
        ["status"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_transactions_user_id"),
        "payment_transactions",
        ["user_id"],
        unique=False,
    )

    # Create transaction_events table
    op.create_table(
        "transaction_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("correlation_id", sa.String(length=36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_transaction_events_key",
        "transaction_events",
        ["provider", "external_id"],
        unique=False,
    )
    op.create_index(
        "idx_transaction_events_type",
        "transaction_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        op.f("ix_transaction_events_correlation_id"),
        "transaction_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_transaction_events_created_at"),
        "transaction_events",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_transaction_events_created_at"), table_name="transaction_events")
    op.drop_index(
        op.f("ix_transaction_events_correlation_id"), table_name="transaction_events"
    )
    op.drop_index("idx_transaction_events_type", table_name="transaction_events")
    op.drop_index("idx_transaction_events_key", table_name="transaction_events")
    op.drop_table("transaction_events")
    op.drop_index(op.f("ix_payment_transactions_user_id"), table_name="payment_transactions")
    op.drop_index(op.f("ix_payment_transactions_status"), table_name="payment_transactions")
    op.drop_index(op.f("ix_payment_transactions_board_id"), table_name="payment_transactions")
    op.drop_index("idx_payment_transactions_provider_ref", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index(op.f("ix_board_squares_owner_id"), table_name="board_squares")
    op.drop_index("idx_board_squares_board_status", table_name="board_squares")
    op.drop_table("board_squares")
    op.drop_index(op.f("ix_boards_status"), table_name="boards")
    op.drop_index(op.f("ix_boards_game_id"), table_name="boards")
    op.drop_table("boards")
