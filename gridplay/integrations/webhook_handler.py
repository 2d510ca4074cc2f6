"""
Webhook entry point for payment providers.

The transport verifies and decodes the request, then hands the payload to
``WebhookHandler.handle`` together with the provider name. Each provider has
a registered normalizer that turns its payload into a ``SettlementEvent``;
everything past that point is provider-agnostic.
"""
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog

from gridplay.core.exceptions import WebhookPayloadError
from gridplay.core.settlement import SettlementProcessor
from gridplay.domain import PaymentProvider, SettlementEvent, SettlementOutcome
from gridplay.integrations.paypal_webhooks import normalize_paypal_event
from gridplay.integrations.stripe_webhooks import construct_stripe_event, normalize_stripe_event

logger = structlog.get_logger(__name__)

Normalizer = Callable[[Mapping[str, Any]], Optional[SettlementEvent]]


class WebhookHandler:
    """
    Routes provider webhooks to the settlement processor.

    Deduplication is left entirely to the processor's transaction records,
    so the handler is safe to call again for a redelivered webhook.
    """

    def __init__(self, processor: SettlementProcessor):
        """
        Initialize webhook handler.

        Args:
            processor: Settlement processor that applies normalized events
        """
        self.processor = processor
        self.normalizers: Dict[PaymentProvider, Normalizer] = {}
        self.register_normalizer(PaymentProvider.STRIPE, normalize_stripe_event)
        self.register_normalizer(PaymentProvider.PAYPAL, normalize_paypal_event)

        logger.info("webhook_handler_initialized")

    def register_normalizer(self, provider: PaymentProvider, normalizer: Normalizer) -> None:
        """
        Register the payload normalizer for a provider.

        Args:
            provider: Payment provider
            normalizer: Callable returning a SettlementEvent, or None for
                event types that need no settlement
        """
        self.normalizers[provider] = normalizer
        logger.debug("webhook_normalizer_registered", provider=provider.value)

    async def handle(
        self,
        provider: Union[PaymentProvider, str],
        payload: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Normalize and apply an authenticated webhook payload.

        Args:
            provider: Provider that sent the webhook
            payload: Decoded webhook body
            correlation_id: Optional trace id

        Returns:
            Dict[str, Any]: Processing result with a ``status`` of
                ``applied``, ``duplicate``, ``anomaly`` or ``ignored``

        Raises:
            WebhookPayloadError: If the provider is unknown or the payload is
                malformed
        """
        try:
            provider = PaymentProvider(provider)
        except ValueError as e:
            raise WebhookPayloadError(f"Unknown payment provider: {provider}") from e

        normalizer = self.normalizers.get(provider)
        if normalizer is None:
            raise WebhookPayloadError(f"No normalizer registered for {provider.value}")

        event = normalizer(payload)
        if event is None:
            event_type = payload.get("type") or payload.get("event_type")
            logger.info("webhook_event_ignored", provider=provider.value, event_type=event_type)
            return {
                "status": SettlementOutcome.IGNORED.value,
                "provider": provider.value,
                "event_type": event_type,
                "message": f"No settlement action for event type: {event_type}",
            }

        result = await self.processor.process_payment_event(event, correlation_id=correlation_id)
        logger.info(
            "webhook_event_processed",
            provider=provider.value,
            external_id=event.external_id,
            event_type=event.raw_type,
            outcome=result.outcome.value,
        )
        return {
            "status": result.outcome.value,
            "provider": provider.value,
            "external_id": event.external_id,
            "event_type": event.raw_type,
            "result": result.to_dict(),
        }

    async def handle_stripe(
        self, payload: Union[bytes, str], signature: str, secret: Optional[str] = None
    ) -> Dict[str, Any]:
        """Verify a raw Stripe request in-process, then handle it."""
        event = construct_stripe_event(payload, signature, secret)
        return await self.handle(PaymentProvider.STRIPE, event)
