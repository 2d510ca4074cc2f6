"""Payment provider integrations."""
from .paypal_webhooks import normalize_paypal_event
from .stripe_webhooks import construct_stripe_event, normalize_stripe_event
from .webhook_handler import WebhookHandler

__all__ = [
    "WebhookHandler",
    "construct_stripe_event",
    "normalize_paypal_event",
    "normalize_stripe_event",
]
