"""
Stripe webhook normalization.

Checkout sessions carry the reservation in their metadata (``boardId``,
``squareIds`` as a comma-separated list, ``userId``) and are keyed by the
session id. Refunds arrive on the charge, which carries none of the session's
metadata; it is keyed by its payment intent, which the completed session
records as ``provider_ref`` so the processor can find the checkout again.
"""
import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

import stripe
import structlog

from gridplay.config import get_settings
from gridplay.core.exceptions import WebhookPayloadError
from gridplay.domain import PaymentProvider, SettlementEvent, SettlementEventType

logger = structlog.get_logger(__name__)

STRIPE_EVENT_TYPES: Dict[str, SettlementEventType] = {
    "checkout.session.completed": SettlementEventType.COMPLETED,
    "checkout.session.async_payment_succeeded": SettlementEventType.COMPLETED,
    "checkout.session.expired": SettlementEventType.EXPIRED,
    "checkout.session.async_payment_failed": SettlementEventType.DENIED,
    "charge.refunded": SettlementEventType.REFUNDED,
}


def _cents_to_amount(cents: Any) -> Optional[Decimal]:
    if cents is None:
        return None
    return Decimal(int(cents)) / 100


def _object_id(value: Any) -> Optional[str]:
    """Id of a Stripe reference, whether collapsed to a string or expanded."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def construct_stripe_event(
    payload: Union[bytes, str], signature: str, secret: Optional[str] = None
) -> Dict[str, Any]:
    """
    Verify a Stripe webhook signature and return the decoded event.

    Args:
        payload: Raw request body
        signature: Stripe-Signature header value
        secret: Webhook signing secret (uses config if not provided)

    Returns:
        Dict[str, Any]: The event as plain JSON data

    Raises:
        WebhookPayloadError: If the secret is missing, the signature does not
            verify or the body is not JSON
    """
    webhook_secret = secret or get_settings().stripe_webhook_secret
    if not webhook_secret:
        raise WebhookPayloadError("Stripe webhook secret is not configured")

    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=webhook_secret,
        )
    except stripe.SignatureVerificationError as e:
        logger.error("webhook_signature_verification_failed", error=str(e))
        raise WebhookPayloadError(f"Invalid webhook signature: {str(e)}") from e
    except ValueError as e:
        logger.error("webhook_payload_invalid", error=str(e))
        raise WebhookPayloadError(f"Invalid webhook payload: {str(e)}") from e

    logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    return json.loads(body)


def normalize_stripe_event(event: Mapping[str, Any]) -> Optional[SettlementEvent]:
    """
    Map a Stripe event onto a ``SettlementEvent``.

    Returns None for event types the settlement engine does not act on, and
    for ``checkout.session.completed`` while an asynchronous payment method
    is still pending (``async_payment_succeeded`` follows).

    Raises:
        WebhookPayloadError: If a relevant event is missing its id or object
    """
    event_type = event.get("type")
    if not event_type:
        raise WebhookPayloadError("Stripe event has no type")

    settlement_type = STRIPE_EVENT_TYPES.get(event_type)
    if settlement_type is None:
        return None

    obj = (event.get("data") or {}).get("object")
    if not isinstance(obj, Mapping):
        raise WebhookPayloadError(f"Stripe event {event.get('id')} has no data object")

    if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
        logger.info("stripe_session_awaiting_payment", session_id=obj.get("id"))
        return None

    metadata = obj.get("metadata") or {}
    payment_intent = _object_id(obj.get("payment_intent"))
    if event_type == "charge.refunded":
        # Re-keyed to the checkout session by the processor when one recorded it.
        external_id = payment_intent
        amount = _cents_to_amount(obj.get("amount_refunded"))
    else:
        external_id = obj.get("id")
        amount = _cents_to_amount(obj.get("amount_total"))

    if not external_id:
        raise WebhookPayloadError(
            f"Stripe {event_type} event carries no session or payment intent id",
            event_id=event.get("id"),
        )

    return SettlementEvent(
        type=settlement_type,
        provider=PaymentProvider.STRIPE,
        external_id=external_id,
        provider_ref=payment_intent,
        board_id=metadata.get("boardId"),
        square_ids=metadata.get("squareIds"),
        user_id=metadata.get("userId") or obj.get("client_reference_id"),
        amount=amount,
        raw_type=event_type,
        provider_event_id=event.get("id"),
        payload=dict(event),
    )
