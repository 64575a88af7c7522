"""Payment state reconciliation between a commerce platform and Stripe."""

from .config import Settings, get_settings
from .services import (
    PaymentCreationService,
    PaymentService,
    StripeService,
    SubscriptionService,
    WebhookHandler,
)

__version__ = "0.1.0"

__all__ = [
    "PaymentCreationService",
    "PaymentService",
    "Settings",
    "StripeService",
    "SubscriptionService",
    "WebhookHandler",
    "get_settings",
]
