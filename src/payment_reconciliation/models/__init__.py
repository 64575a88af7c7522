"""Pydantic models for payment reconciliation."""

from .cart import (
    Address,
    Attribute,
    Cart,
    CartDiscount,
    CartDraft,
    Customer,
    DiscountCode,
    LineItem,
    LineItemDraft,
    LineItemPrice,
    Order,
    ProductVariant,
    ShippingInfo,
)
from .enums import (
    BillingEventPolicy,
    CaptureMethod,
    PaymentAction,
    PaymentModificationStatus,
    ProcessingResult,
    StripeEvent,
    StripeSubscriptionEvent,
    SubscriptionOutcome,
    TransactionState,
    TransactionType,
)
from .errors import (
    ERROR_MESSAGES,
    ErrorCode,
    EventProcessingResult,
    InvalidJsonInputError,
    InvalidOperationError,
    MetadataSyncError,
    MissingLinkageError,
    PSPApiError,
    ReconciliationError,
    ReconciliationFailure,
    SubscriptionValidationError,
    UnsupportedEventError,
)
from .link import PspLink
from .payment import (
    ModifyPaymentAction,
    ModifyPaymentRequest,
    ModifyPaymentResponse,
    Money,
    NormalizedTransactionUpdate,
    Payment,
    PaymentDraft,
    PaymentIntentResponse,
    PaymentMethodInfo,
    PaymentProviderModificationResponse,
    PaymentUpdate,
    PspInteraction,
    Transaction,
)
from .subscription import (
    ConfirmSubscriptionRequest,
    SetupIntentResponse,
    SubscriptionAttributes,
    SubscriptionData,
    SubscriptionFromSetupIntentResponse,
    SubscriptionModifyResponse,
    SubscriptionResponse,
    SubscriptionTypes,
)

__all__ = [
    # Enums
    "BillingEventPolicy",
    "CaptureMethod",
    "PaymentAction",
    "PaymentModificationStatus",
    "ProcessingResult",
    "StripeEvent",
    "StripeSubscriptionEvent",
    "SubscriptionOutcome",
    "TransactionState",
    "TransactionType",
    # Payment
    "Money",
    "Payment",
    "PaymentDraft",
    "PaymentIntentResponse",
    "PaymentMethodInfo",
    "PaymentUpdate",
    "PspInteraction",
    "NormalizedTransactionUpdate",
    "Transaction",
    "ModifyPaymentAction",
    "ModifyPaymentRequest",
    "ModifyPaymentResponse",
    "PaymentProviderModificationResponse",
    # Cart
    "Address",
    "Attribute",
    "Cart",
    "CartDiscount",
    "CartDraft",
    "Customer",
    "DiscountCode",
    "LineItem",
    "LineItemDraft",
    "LineItemPrice",
    "Order",
    "ProductVariant",
    "ShippingInfo",
    # Link
    "PspLink",
    # Subscription
    "ConfirmSubscriptionRequest",
    "SetupIntentResponse",
    "SubscriptionAttributes",
    "SubscriptionData",
    "SubscriptionFromSetupIntentResponse",
    "SubscriptionModifyResponse",
    "SubscriptionResponse",
    "SubscriptionTypes",
    # Errors
    "ERROR_MESSAGES",
    "ErrorCode",
    "EventProcessingResult",
    "InvalidJsonInputError",
    "InvalidOperationError",
    "MetadataSyncError",
    "MissingLinkageError",
    "PSPApiError",
    "ReconciliationError",
    "ReconciliationFailure",
    "SubscriptionValidationError",
    "UnsupportedEventError",
]
