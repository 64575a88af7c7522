"""Stripe event to platform transaction converters."""

from .stripe_event_converter import StripeEventConverter
from .subscription_event_converter import CUSTOMER_BALANCE_PAYMENT_METHOD, SubscriptionEventConverter

__all__ = [
    "CUSTOMER_BALANCE_PAYMENT_METHOD",
    "StripeEventConverter",
    "SubscriptionEventConverter",
]
