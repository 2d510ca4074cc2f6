"""
Tests for provider webhook normalization and the webhook handler.
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from gridplay.core import SettlementProcessor, SquareLedger
from gridplay.core.exceptions import WebhookPayloadError
from gridplay.database import InMemoryStore
from gridplay.domain import (
    Board,
    PaymentProvider,
    Square,
    SquareStatus,
    SettlementEventType,
    SettlementOutcome,
    TransactionStatus,
)
from gridplay.integrations import (
    WebhookHandler,
    construct_stripe_event,
    normalize_paypal_event,
    normalize_stripe_event,
)

WEBHOOK_SECRET = "whsec_test_fake_secret"


def stripe_session_event(
    event_type: str,
    session_id: str = "cs_test_123",
    square_ids: Optional[List[str]] = None,
    board_id: str = "board-1",
    user_id: str = "user-1",
    **session: Any,
) -> Dict[str, Any]:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": 2000,
        "payment_status": "paid",
        "client_reference_id": user_id,
        "metadata": {
            "boardId": board_id,
            "squareIds": ",".join(square_ids or ["sq-1", "sq-2"]),
            "userId": user_id,
        },
    }
    obj.update(session)
    return {"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}}


def paypal_order_event(
    event_type: str = "CHECKOUT.ORDER.VOIDED",
    order_id: str = "ORDER-1",
    square_ids: Optional[List[str]] = None,
    board_id: str = "board-1",
) -> Dict[str, Any]:
    return {
        "id": "WH-1",
        "event_type": event_type,
        "resource": {
            "id": order_id,
            "purchase_units": [
                {
                    "reference_id": board_id,
                    "custom_id": ",".join(square_ids or ["sq-1", "sq-2"]),
                    "amount": {"currency_code": "USD", "value": "20.00"},
                }
            ],
        },
    }


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestStripeNormalization:
    """Test suite for Stripe event mapping."""

    @pytest.mark.unit
    def test_completed_session(self) -> None:
        event = normalize_stripe_event(stripe_session_event("checkout.session.completed"))

        assert event.type is SettlementEventType.COMPLETED
        assert event.provider is PaymentProvider.STRIPE
        assert event.external_id == "cs_test_123"
        assert event.board_id == "board-1"
        assert event.square_ids == ("sq-1", "sq-2")
        assert event.user_id == "user-1"
        assert event.amount == Decimal("20.00")
        assert event.raw_type == "checkout.session.completed"

    @pytest.mark.unit
    def test_unpaid_session_waits_for_async_payment(self) -> None:
        body = stripe_session_event("checkout.session.completed", payment_status="unpaid")
        assert normalize_stripe_event(body) is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "event_type,expected",
        [
            ("checkout.session.async_payment_succeeded", SettlementEventType.COMPLETED),
            ("checkout.session.expired", SettlementEventType.EXPIRED),
            ("checkout.session.async_payment_failed", SettlementEventType.DENIED),
        ],
    )
    def test_session_event_types(self, event_type: str, expected: SettlementEventType) -> None:
        assert normalize_stripe_event(stripe_session_event(event_type)).type is expected

    @pytest.mark.unit
    def test_completed_session_records_payment_intent(self) -> None:
        body = stripe_session_event("checkout.session.completed", payment_intent="pi_1")
        assert normalize_stripe_event(body).provider_ref == "pi_1"

    @pytest.mark.unit
    def test_charge_refund_keyed_by_payment_intent(self) -> None:
        body = {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_1",
                    "object": "charge",
                    "payment_intent": "pi_1",
                    "amount_refunded": 2000,
                    "metadata": {},
                }
            },
        }

        event = normalize_stripe_event(body)

        assert event.type is SettlementEventType.REFUNDED
        assert event.external_id == "pi_1"
        assert event.provider_ref == "pi_1"
        assert event.square_ids == ()
        assert event.amount == Decimal("20")

    @pytest.mark.unit
    def test_expanded_payment_intent(self) -> None:
        body = {
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": {"id": "pi_2"}}},
        }
        assert normalize_stripe_event(body).external_id == "pi_2"

    @pytest.mark.unit
    def test_unrelated_event_ignored(self) -> None:
        assert normalize_stripe_event({"type": "customer.created", "data": {"object": {}}}) is None

    @pytest.mark.unit
    def test_missing_object_rejected(self) -> None:
        with pytest.raises(WebhookPayloadError):
            normalize_stripe_event({"id": "evt_3", "type": "checkout.session.completed"})

    @pytest.mark.unit
    def test_refund_without_payment_intent_rejected(self) -> None:
        body = {"type": "charge.refunded", "data": {"object": {"id": "ch_1", "metadata": {}}}}
        with pytest.raises(WebhookPayloadError, match="no session or payment intent"):
            normalize_stripe_event(body)


class TestStripeSignature:
    """Test suite for Stripe signature verification."""

    @pytest.mark.unit
    def test_valid_signature(self) -> None:
        payload = json.dumps(stripe_session_event("checkout.session.completed"))

        event = construct_stripe_event(payload, sign(payload), secret=WEBHOOK_SECRET)

        assert event["type"] == "checkout.session.completed"
        assert event["data"]["object"]["id"] == "cs_test_123"

    @pytest.mark.unit
    def test_invalid_signature(self) -> None:
        payload = json.dumps(stripe_session_event("checkout.session.completed"))

        with pytest.raises(WebhookPayloadError, match="Invalid webhook signature"):
            construct_stripe_event(payload, sign(payload, "whsec_other"), secret=WEBHOOK_SECRET)


class TestPayPalNormalization:
    """Test suite for PayPal event mapping."""

    @pytest.mark.unit
    def test_capture_completed(self) -> None:
        body = {
            "id": "WH-1",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAPTURE-1",
                "custom_id": "sq-1,sq-2",
                "amount": {"currency_code": "USD", "value": "20.00"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }

        event = normalize_paypal_event(body)

        assert event.type is SettlementEventType.COMPLETED
        assert event.provider is PaymentProvider.PAYPAL
        assert event.external_id == "ORDER-1"
        assert event.square_ids == ("sq-1", "sq-2")
        assert event.user_id is None
        assert event.amount == Decimal("20.00")
        assert event.provider_event_id == "WH-1"

    @pytest.mark.unit
    def test_approved_order_waits_for_capture(self) -> None:
        assert normalize_paypal_event(paypal_order_event("CHECKOUT.ORDER.APPROVED")) is None

    @pytest.mark.unit
    def test_voided_order(self) -> None:
        event = normalize_paypal_event(paypal_order_event())

        assert event.type is SettlementEventType.VOIDED
        assert event.external_id == "ORDER-1"
        assert event.board_id == "board-1"
        assert event.square_ids == ("sq-1", "sq-2")

    @pytest.mark.unit
    def test_capture_keyed_by_order(self) -> None:
        body = {
            "id": "WH-2",
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "CAPTURE-1",
                "custom_id": "sq-1,sq-2",
                "amount": {"currency_code": "USD", "value": "20.00"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }

        event = normalize_paypal_event(body)

        assert event.type is SettlementEventType.REFUNDED
        assert event.external_id == "ORDER-1"
        assert event.square_ids == ("sq-1", "sq-2")

    @pytest.mark.unit
    def test_unrelated_event_ignored(self) -> None:
        assert normalize_paypal_event({"event_type": "BILLING.PLAN.CREATED"}) is None

    @pytest.mark.unit
    def test_bad_amount_rejected(self) -> None:
        body = paypal_order_event()
        body["resource"]["purchase_units"][0]["amount"]["value"] = "twenty"

        with pytest.raises(WebhookPayloadError, match="Invalid PayPal amount"):
            normalize_paypal_event(body)


class TestWebhookHandler:
    """Test suite for routing webhooks into settlement."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_completion_applied_then_duplicate(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id, squares[1].id]
        await ledger.reserve_many(ids, "user-1")
        handler = WebhookHandler(processor)
        body = stripe_session_event(
            "checkout.session.completed", square_ids=ids, board_id=open_board.id
        )

        first = await handler.handle("stripe", body, correlation_id="req-1")
        second = await handler.handle(PaymentProvider.STRIPE, body)

        assert first["status"] == "applied"
        assert first["external_id"] == "cs_test_123"
        assert first["result"]["square_ids"] == ids
        assert first["result"]["transaction_status"] == "completed"
        assert second["status"] == "duplicate"

        purchased = await ledger.list_squares(open_board.id)
        assert sum(1 for square in purchased if square.status is SquareStatus.PURCHASED) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_refund_found_through_payment_intent(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        store: InMemoryStore,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id, squares[1].id]
        await ledger.reserve_many(ids, "user-1")
        handler = WebhookHandler(processor)
        await handler.handle(
            "stripe",
            stripe_session_event(
                "checkout.session.completed",
                square_ids=ids,
                board_id=open_board.id,
                payment_intent="pi_1",
            ),
        )
        refund = {
            "id": "evt_refund",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_1",
                    "object": "charge",
                    "payment_intent": "pi_1",
                    "amount_refunded": 2000,
                    "metadata": {},
                }
            },
        }

        response = await handler.handle("stripe", refund)
        again = await handler.handle("stripe", refund)

        assert response["status"] == "applied"
        assert response["result"]["external_id"] == "cs_test_123"
        assert response["result"]["transaction_status"] == "refunded"
        assert again["status"] == "duplicate"
        assert all(
            square.status is SquareStatus.AVAILABLE for square in await store.get_squares(ids)
        )
        transaction = await store.get_transaction(PaymentProvider.STRIPE, "cs_test_123")
        assert transaction.status is TransactionStatus.REFUNDED
        assert transaction.provider_ref == "pi_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paypal_denied_releases_squares(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        handler = WebhookHandler(processor)
        body = {
            "id": "WH-3",
            "event_type": "PAYMENT.CAPTURE.DENIED",
            "resource": {
                "id": "CAPTURE-2",
                "custom_id": ids[0],
                "supplementary_data": {"related_ids": {"order_id": "ORDER-2"}},
            },
        }

        response = await handler.handle("paypal", body)

        assert response["status"] == "applied"
        assert response["result"]["transaction_status"] == "refunded"
        assert (await ledger.get_square(ids[0])).status is SquareStatus.AVAILABLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignored_event(self, processor: SettlementProcessor) -> None:
        handler = WebhookHandler(processor)

        response = await handler.handle(
            "stripe", {"type": "invoice.paid", "data": {"object": {}}}
        )

        assert response["status"] == SettlementOutcome.IGNORED.value
        assert response["event_type"] == "invoice.paid"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_provider(self, processor: SettlementProcessor) -> None:
        handler = WebhookHandler(processor)

        with pytest.raises(WebhookPayloadError, match="Unknown payment provider"):
            await handler.handle("venmo", {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handle_signed_stripe_request(
        self,
        processor: SettlementProcessor,
        ledger: SquareLedger,
        open_board: Board,
        squares: List[Square],
    ) -> None:
        ids = [squares[0].id]
        await ledger.reserve_many(ids, "user-1")
        handler = WebhookHandler(processor)
        payload = json.dumps(
            stripe_session_event(
                "checkout.session.completed", square_ids=ids, board_id=open_board.id
            )
        )

        response = await handler.handle_stripe(payload, sign(payload), secret=WEBHOOK_SECRET)

        assert response["status"] == "applied"
