"""Reconciliation services."""

from .commerce import CommercePlatformClient
from .converters import StripeEventConverter, SubscriptionEventConverter
from .coupon_service import CouponService
from .order_service import OrderService
from .payment_creation_service import PaymentCreationService
from .payment_service import PaymentService
from .price_service import PriceService
from .ssm_service import SSMService, SSMServiceError
from .stripe_service import StripeService, wrap_stripe_error
from .subscription_service import SubscriptionService
from .webhook_handler import WebhookHandler

__all__ = [
    "CommercePlatformClient",
    "CouponService",
    "OrderService",
    "PaymentCreationService",
    "PaymentService",
    "PriceService",
    "SSMService",
    "SSMServiceError",
    "StripeEventConverter",
    "StripeService",
    "SubscriptionEventConverter",
    "SubscriptionService",
    "WebhookHandler",
    "wrap_stripe_error",
]
