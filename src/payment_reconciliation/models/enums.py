"""Enumerations shared by the reconciliation models and services."""

from enum import Enum


class TransactionType(str, Enum):
    """Platform transaction types."""

    AUTHORIZATION = "Authorization"
    CHARGE = "Charge"
    CANCEL_AUTHORIZATION = "CancelAuthorization"
    REFUND = "Refund"
    CHARGEBACK = "Chargeback"


class TransactionState(str, Enum):
    """Platform transaction states."""

    INITIAL = "Initial"
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILURE = "Failure"


class PaymentAction(str, Enum):
    """Modification actions accepted by modify_payment."""

    CAPTURE = "capturePayment"
    CANCEL = "cancelPayment"
    REFUND = "refundPayment"


class PaymentModificationStatus(str, Enum):
    """Outcome of a PSP modification call."""

    APPROVED = "approved"
    RECEIVED = "received"
    REJECTED = "rejected"


class StripeEvent(str, Enum):
    """One-shot payment events handled by StripeEventConverter."""

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_REQUIRES_ACTION = "payment_intent.requires_action"
    CHARGE_REFUNDED = "charge.refunded"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_UPDATED = "charge.updated"


class StripeSubscriptionEvent(str, Enum):
    """Invoice events driving the subscription billing cycle."""

    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"


class BillingEventPolicy(str, Enum):
    """How a recurring billing event is mapped onto platform orders."""

    CREATE_NEW_ORDER = "create_new_order"
    ATTACH_TO_EXISTING_ORDER = "attach_to_existing_order"


class CaptureMethod(str, Enum):
    """Stripe PaymentIntent capture methods."""

    AUTOMATIC = "automatic"
    AUTOMATIC_ASYNC = "automatic_async"
    MANUAL = "manual"


class ProcessingResult(str, Enum):
    """Result of processing one webhook event."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class SubscriptionOutcome(str, Enum):
    """Outcome of a customer-facing subscription mutation."""

    CANCELED = "canceled"
    UPDATED = "updated"
