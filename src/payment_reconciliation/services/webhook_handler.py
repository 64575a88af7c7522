"""Webhook handler routing Stripe events to their processors.

Provides business logic for handling webhook events separate from
HTTP routing concerns. The event is expected to be authenticated and
parsed already.
"""

from collections.abc import Mapping
from typing import Any

from ..models.enums import StripeEvent, StripeSubscriptionEvent
from ..models.errors import EventProcessingResult, UnsupportedEventError
from ..utils.logging import bind_event_id, clear_event_id, get_logger, log_webhook_event
from .converters.stripe_event_converter import event_object, object_id
from .payment_service import PaymentService
from .subscription_service import SubscriptionService

logger = get_logger(__name__)

_ONE_SHOT_EVENTS = {event.value for event in StripeEvent}
_INVOICE_BILLING_EVENTS = (
    StripeSubscriptionEvent.INVOICE_PAID.value,
    StripeSubscriptionEvent.INVOICE_PAYMENT_FAILED.value,
)
_CHARGE_EVENT_PREFIX = "charge."


class WebhookHandler:
    """Routes Stripe events to payment or subscription processing.

    One-shot payment failures propagate so the transport answers non-2xx
    and Stripe redelivers. Subscription processors return their failures.
    Charges of subscription invoices other than refunds are skipped; the
    invoice events carry their outcome.
    """

    def __init__(
        self,
        payment_service: PaymentService,
        subscription_service: SubscriptionService,
    ) -> None:
        self._payments = payment_service
        self._subscriptions = subscription_service

    def handle(self, event: Mapping[str, Any]) -> EventProcessingResult:
        """Process one Stripe event.

        Args:
            event: Parsed Stripe event.

        Returns:
            The processing result.

        Raises:
            UnsupportedEventError: If no processor handles the event type.
            ReconciliationError: If a one-shot payment event fails.
        """
        event_type = event.get("type", "")
        billing_policy = None
        if event_type in _INVOICE_BILLING_EVENTS:
            billing_policy = self._subscriptions.billing_event_policy.value

        bind_event_id(event.get("id"))
        try:
            try:
                result = self._route(event)
            except Exception as e:
                log_webhook_event(logger, event, error=e, billing_policy=billing_policy)
                raise

            log_webhook_event(logger, event, result, billing_policy=billing_policy)
            return result
        finally:
            clear_event_id()

    def _route(self, event: Mapping[str, Any]) -> EventProcessingResult:
        event_id = event.get("id", "")
        event_type = event.get("type", "")

        if event_type in _INVOICE_BILLING_EVENTS:
            return self._subscriptions.process_subscription_event(event)
        if event_type == StripeSubscriptionEvent.INVOICE_UPCOMING.value:
            return self._subscriptions.process_upcoming_invoice(event)
        is_charge = event_type in _ONE_SHOT_EVENTS and event_type.startswith(_CHARGE_EVENT_PREFIX)
        if is_charge and event_object(event).get("invoice"):
            if event_type == StripeEvent.CHARGE_REFUNDED.value:
                return self._subscriptions.process_subscription_refund(event)
            # Invoice charges are settled by invoice.paid / invoice.payment_failed
            return EventProcessingResult.skipped(
                event_id,
                event_type,
                f"Charge belongs to invoice {object_id(event_object(event).get('invoice'))}",
            )
        if event_type in _ONE_SHOT_EVENTS:
            payment_id = self._payments.process_payment_event(event)
            if payment_id is None:
                return EventProcessingResult.skipped(event_id, event_type, "Event implies no transactions")
            return EventProcessingResult.success(event_id, event_type, payment_id)

        raise UnsupportedEventError(event_type)
