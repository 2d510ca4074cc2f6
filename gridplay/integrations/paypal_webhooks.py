"""
PayPal webhook normalization.

Orders carry the board id in ``purchase_units[0].reference_id`` and the
squares in ``custom_id``. Capture resources repeat ``custom_id`` and point at
their order through ``supplementary_data.related_ids.order_id``; the order
id is the transaction key for every event.

``CHECKOUT.ORDER.APPROVED`` is not a payment: the checkout flow captures the
approved order, and only ``PAYMENT.CAPTURE.COMPLETED`` settles the squares.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import structlog

from gridplay.core.exceptions import WebhookPayloadError
from gridplay.domain import PaymentProvider, SettlementEvent, SettlementEventType

logger = structlog.get_logger(__name__)

PAYPAL_EVENT_TYPES: Dict[str, SettlementEventType] = {
    "PAYMENT.CAPTURE.COMPLETED": SettlementEventType.COMPLETED,
    "CHECKOUT.ORDER.VOIDED": SettlementEventType.VOIDED,
    "PAYMENT.CAPTURE.DENIED": SettlementEventType.DENIED,
    "PAYMENT.CAPTURE.REFUNDED": SettlementEventType.REFUNDED,
}


def _amount(value: Any) -> Optional[Decimal]:
    if not isinstance(value, Mapping) or value.get("value") in (None, ""):
        return None
    try:
        return Decimal(str(value["value"]))
    except InvalidOperation as e:
        raise WebhookPayloadError(f"Invalid PayPal amount: {value['value']}") from e


def _order_id(resource: Mapping[str, Any]) -> Optional[str]:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id") or resource.get("id")


def normalize_paypal_event(body: Mapping[str, Any]) -> Optional[SettlementEvent]:
    """
    Map a PayPal webhook body onto a ``SettlementEvent``.

    Returns None for event types the settlement engine does not act on.

    Raises:
        WebhookPayloadError: If a relevant event is missing its resource or id
    """
    event_type = body.get("event_type")
    if not event_type:
        raise WebhookPayloadError("PayPal event has no event_type")

    settlement_type = PAYPAL_EVENT_TYPES.get(event_type)
    if settlement_type is None:
        return None

    resource = body.get("resource")
    if not isinstance(resource, Mapping):
        raise WebhookPayloadError(f"PayPal event {body.get('id')} has no resource")

    units = resource.get("purchase_units") or []
    unit: Mapping[str, Any] = units[0] if units else {}

    external_id = _order_id(resource)
    if not external_id:
        raise WebhookPayloadError(
            f"PayPal {event_type} event carries no order id", event_id=body.get("id")
        )

    return SettlementEvent(
        type=settlement_type,
        provider=PaymentProvider.PAYPAL,
        external_id=external_id,
        board_id=unit.get("reference_id"),
        square_ids=unit.get("custom_id") or resource.get("custom_id"),
        amount=_amount(unit.get("amount") or resource.get("amount")),
        raw_type=event_type,
        provider_event_id=body.get("id"),
        payload=dict(body),
    )
