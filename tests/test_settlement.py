"""
Unit tests for the settlement processor.

Covers idempotent delivery, out-of-order events and the precedence between
completion and refunds.
"""
from decimal import Decimal
from typing import List

import pytest

from gridplay.core import ManualClock, SettlementProcessor, SquareLedger
from gridplay.core.exceptions import InvalidTransition, TransactionConflict
from gridplay.database import InMemoryStore
from gridplay.domain import (
    Board,
    BoardStatus,
    PaymentProvider,
    SettlementEvent,
    Square,
    SquareStatus,
    SettlementEventType,
    SettlementOutcome,
    TransactionStatus,
)

from conftest import completed_event


class TestCompleted:
    """Test suite for completed payments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_confirms_squares(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        open_board: Board,
        squares: List[Square],
        clock: ManualClock,
    ) -> None:
        ids = [squares[0].id, squares[1].id]
        await ledger.reserve_many(ids, "user-1")

        result = await processor.process_payment_event(completed_event("cs_1", ids))

        assert result.applied
        assert [square.status for square in result.squares] == [SquareStatus.PURCHASED] * 2
        assert result.transaction.status is TransactionStatus.COMPLETED
        assert result.transaction.board_id == open_board.id
        assert result.transaction.completed_at == clock.now()
        assert result.transaction.amount == Decimal("20.00")
        assert result.board.status is BoardStatus.OPEN

        stored = await store.get_transaction(PaymentProvider.STRIPE, "cs_1")
        assert stored == result.transaction

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_is_a_duplicate(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        first = await processor.process_payment_event(completed_event("cs_1", ids))
        before = await store.get_squares(ids)

        second = await processor.process_payment_event(completed_event("cs_1", ids))

        assert second.outcome is SettlementOutcome.DUPLICATE
        assert second.transaction == first.transaction
        assert await store.get_squares(ids) == before

        events = await store.list_transaction_events(PaymentProvider.STRIPE, "cs_1")
        assert [event.outcome for event in events] == ["applied", "duplicate"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_last_purchase_locks_board(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [square.id for square in squares]
        await ledger.reserve_many(ids, "user-1")

        result = await processor.process_payment_event(
            completed_event("cs_all", ids, amount="250.00")
        )

        assert result.board.status is BoardStatus.LOCKED
        assert result.board.numbers_assigned

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_squares_held_by_someone_else_is_an_anomaly(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
    ) -> None:
        await ledger.reserve(squares[0].id, "user-2")

        result = await processor.process_payment_event(
            completed_event("cs_1", [squares[0].id], user_id="user-1")
        )

        assert result.outcome is SettlementOutcome.ANOMALY
        assert isinstance(result.error, InvalidTransition)
        assert result.transaction.status is TransactionStatus.PENDING
        assert result.transaction.error_message
        (square,) = await store.get_squares([squares[0].id])
        assert square.owner_id == "user-2"
        assert square.status is SquareStatus.RESERVED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_squares_confirmed_without_record_are_completed(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
    ) -> None:
        """A delivery that bought the squares but never wrote its record is finished on retry."""
        ids = [squares[0].id, squares[1].id]
        await ledger.reserve_many(ids, "user-1")
        await ledger.confirm_many(ids, "user-1", payment_ref="cs_1")

        result = await processor.process_payment_event(completed_event("cs_1", ids))

        assert result.applied
        assert result.transaction.status is TransactionStatus.COMPLETED
        assert result.transaction.error_message is None
        assert [square.id for square in result.squares] == ids

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_squares_bought_under_another_payment_is_an_anomaly(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        squares: List[Square],
    ) -> None:
        await ledger.reserve(squares[0].id, "user-1")
        await ledger.confirm_purchase(squares[0].id, "user-1", payment_ref="cs_other")

        result = await processor.process_payment_event(completed_event("cs_1", [squares[0].id]))

        assert result.outcome is SettlementOutcome.ANOMALY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_squares_is_an_anomaly(
        self, processor: SettlementProcessor
    ) -> None:
        result = await processor.process_payment_event(completed_event("cs_empty", []))

        assert result.outcome is SettlementOutcome.ANOMALY
        assert result.transaction.error_message == "Completed payment carries no squares"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_owner_taken_from_registered_checkout(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        await processor.register_checkout(
            PaymentProvider.STRIPE, "cs_1", open_board.id, ids, "user-1", Decimal("10")
        )

        result = await processor.process_payment_event(
            completed_event("cs_1", [], user_id=None)
        )

        assert result.applied
        assert result.transaction.user_id == "user-1"
        assert result.squares[0].owner_id == "user-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_owner_taken_from_single_holder(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id, squares[1].id]
        await ledger.reserve_many(ids, "user-7")

        result = await processor.process_payment_event(
            completed_event(
                "ORDER-1", ids, user_id=None, provider=PaymentProvider.PAYPAL
            )
        )

        assert result.applied
        assert result.transaction.user_id == "user-7"


class TestReversals:
    """Test suite for expiry, voids, denials and refunds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_checkout_releases_reservation(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")

        result = await processor.process_payment_event(
            completed_event("cs_1", ids, event_type=SettlementEventType.EXPIRED)
        )
        again = await processor.process_payment_event(
            completed_event("cs_1", ids, event_type=SettlementEventType.EXPIRED)
        )

        assert result.applied
        assert result.transaction.status is TransactionStatus.VOIDED
        assert result.squares[0].status is SquareStatus.AVAILABLE
        assert again.outcome is SettlementOutcome.DUPLICATE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expiry_leaves_another_users_hold(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        squares: List[Square],
        clock: ManualClock,
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1", ttl=60)
        clock.advance(120)
        await ledger.reserve_many(ids, "user-2")

        result = await processor.process_payment_event(
            completed_event("cs_1", ids, user_id="user-1", event_type=SettlementEventType.EXPIRED)
        )

        assert result.applied
        assert result.squares[0].owner_id == "user-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_void_after_completion_is_an_anomaly(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        await processor.process_payment_event(completed_event("cs_1", ids))

        result = await processor.process_payment_event(
            completed_event("cs_1", ids, event_type=SettlementEventType.VOIDED)
        )

        assert result.outcome is SettlementOutcome.ANOMALY
        assert result.transaction.status is TransactionStatus.COMPLETED
        (square,) = await store.get_squares(ids)
        assert square.status is SquareStatus.PURCHASED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_after_completion_releases_squares(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
        clock: ManualClock,
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        await processor.process_payment_event(completed_event("cs_1", ids))
        clock.advance(3600)

        result = await processor.process_payment_event(
            completed_event("cs_1", ids, event_type=SettlementEventType.REFUNDED)
        )

        assert result.applied
        assert result.transaction.status is TransactionStatus.REFUNDED
        assert result.transaction.refunded_at == clock.now()
        (square,) = await store.get_squares(ids)
        assert square.status is SquareStatus.AVAILABLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_before_completion_wins(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")

        refund = await processor.process_payment_event(
            completed_event("cs_1", ids, event_type=SettlementEventType.REFUNDED)
        )
        late_completion = await processor.process_payment_event(completed_event("cs_1", ids))

        assert refund.applied
        assert late_completion.outcome is SettlementOutcome.DUPLICATE
        assert late_completion.transaction.status is TransactionStatus.REFUNDED
        (square,) = await store.get_squares(ids)
        assert square.status is SquareStatus.AVAILABLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_keyed_by_payment_id_before_completion_wins(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        squares: List[Square],
    ) -> None:
        """A charge refund seen before its checkout session still blocks the sale."""
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        refund = SettlementEvent(
            type=SettlementEventType.REFUNDED,
            provider=PaymentProvider.STRIPE,
            external_id="pi_1",
            provider_ref="pi_1",
            amount=Decimal("10"),
        )
        completion = completed_event("cs_1", ids).model_copy(update={"provider_ref": "pi_1"})

        await processor.process_payment_event(refund)
        late_completion = await processor.process_payment_event(completion)

        assert late_completion.outcome is SettlementOutcome.DUPLICATE
        assert late_completion.transaction.external_id == "pi_1"
        (square,) = await store.get_squares(ids)
        assert square.status is SquareStatus.RESERVED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_denied_records_reason(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")

        result = await processor.process_payment_event(
            completed_event(
                "ORDER-9", ids, provider=PaymentProvider.PAYPAL, event_type=SettlementEventType.DENIED
            )
        )

        assert result.transaction.status is TransactionStatus.REFUNDED
        assert result.transaction.error_message == "Payment denied"
        assert result.squares[0].status is SquareStatus.AVAILABLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_external_id_is_scoped_per_provider(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        squares: List[Square],
    ) -> None:
        await ledger.reserve(squares[0].id, "user-1")
        await ledger.reserve(squares[1].id, "user-1")

        stripe = await processor.process_payment_event(completed_event("shared", [squares[0].id]))
        paypal = await processor.process_payment_event(
            completed_event("shared", [squares[1].id], provider=PaymentProvider.PAYPAL)
        )

        assert stripe.applied
        assert paypal.applied


class TestRegisterCheckout:
    """Test suite for checkout registration."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_register_pending_checkout(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id, squares[1].id]
        await ledger.reserve_many(ids, "user-1")

        transaction = await processor.register_checkout(
            PaymentProvider.STRIPE, "cs_1", open_board.id, ids, "user-1", Decimal("20")
        )
        again = await processor.register_checkout(
            PaymentProvider.STRIPE, "cs_1", open_board.id, list(reversed(ids)), "user-1", Decimal("20")
        )

        assert transaction.status is TransactionStatus.PENDING
        assert transaction.currency == "USD"
        assert again == transaction

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_register_requires_live_reservation(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
        clock: ManualClock,
    ) -> None:
        await ledger.reserve(squares[0].id, "user-1", ttl=60)
        clock.advance(61)

        with pytest.raises(InvalidTransition):
            await processor.register_checkout(
                PaymentProvider.STRIPE,
                "cs_1",
                open_board.id,
                [squares[0].id],
                "user-1",
                Decimal("10"),
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_register_conflicting_checkout_id(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        await ledger.reserve(squares[0].id, "user-1")
        await ledger.reserve(squares[1].id, "user-2")
        await processor.register_checkout(
            PaymentProvider.STRIPE, "cs_1", open_board.id, [squares[0].id], "user-1", Decimal("10")
        )

        with pytest.raises(TransactionConflict):
            await processor.register_checkout(
                PaymentProvider.STRIPE,
                "cs_1",
                open_board.id,
                [squares[1].id],
                "user-2",
                Decimal("10"),
            )
