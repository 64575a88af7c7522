"""Converts subscription invoice events into platform transactions."""

from collections.abc import Mapping
from typing import Any

from ...models.enums import StripeSubscriptionEvent, TransactionState, TransactionType
from ...models.errors import UnsupportedEventError
from ...models.link import PspLink
from ...models.payment import Money, NormalizedTransactionUpdate, Payment, PspInteraction, Transaction
from .stripe_event_converter import charge_payment_method, object_id, serialize_event

# Payment method label for invoices settled from the customer's Stripe balance
CUSTOMER_BALANCE_PAYMENT_METHOD = "customer_balance"

_CONVERTIBLE_EVENTS = (
    StripeSubscriptionEvent.INVOICE_PAID,
    StripeSubscriptionEvent.INVOICE_PAYMENT_FAILED,
)


class SubscriptionEventConverter:
    """Maps invoice.paid and invoice.payment_failed to cycle transactions."""

    def convert(
        self,
        event: Mapping[str, Any],
        invoice: Mapping[str, Any],
        is_payment_charge_pending: bool = False,
        payment: Payment | None = None,
    ) -> NormalizedTransactionUpdate:
        """Convert an invoice event.

        Args:
            event: Parsed Stripe event.
            invoice: The invoice with payment_intent and charge expanded.
            is_payment_charge_pending: Whether the cycle's charge is still
                pending on the platform Payment. A pending charge only gets
                its Charge transaction; the authorization already exists.
            payment: The resolved platform Payment, when known.

        Returns:
            The normalized update for the cycle.

        Raises:
            UnsupportedEventError: If the event is not an invoice paid or
                payment failed event.
        """
        event_type = event.get("type", "")
        try:
            subscription_event = StripeSubscriptionEvent(event_type)
        except ValueError:
            raise UnsupportedEventError(event_type) from None
        if subscription_event not in _CONVERTIBLE_EVENTS:
            raise UnsupportedEventError(event_type)

        payment_intent_id = object_id(invoice.get("payment_intent"))
        charge = invoice.get("charge")

        psp_reference = invoice.get("id")
        if payment_intent_id and not is_payment_charge_pending:
            psp_reference = payment_intent_id

        payment_method = charge_payment_method(charge)
        if not payment_method and not charge and not payment_intent_id and invoice.get("paid"):
            payment_method = CUSTOMER_BALANCE_PAYMENT_METHOD

        if payment is not None:
            payment_id = payment.id
        else:
            details = invoice.get("subscription_details") or {}
            payment_id = PspLink.from_metadata(details.get("metadata")).payment_id

        return NormalizedTransactionUpdate(
            id=payment_id,
            psp_reference=psp_reference,
            payment_method=payment_method,
            psp_interaction=PspInteraction(raw_response=serialize_event(event)),
            transactions=self._populate_transactions(
                subscription_event,
                invoice,
                psp_reference,
                is_payment_charge_pending,
            ),
        )

    @staticmethod
    def _populate_transactions(
        subscription_event: StripeSubscriptionEvent,
        invoice: Mapping[str, Any],
        interaction_id: str,
        is_payment_charge_pending: bool,
    ) -> list[Transaction]:
        if subscription_event == StripeSubscriptionEvent.INVOICE_PAID:
            state = TransactionState.SUCCESS
            cent_amount = invoice.get("amount_paid")
        else:
            state = TransactionState.FAILURE
            cent_amount = invoice.get("amount_due")

        amount = Money(
            cent_amount=cent_amount or 0,
            currency_code=(invoice.get("currency") or "").upper(),
        )
        transactions = []
        if not is_payment_charge_pending:
            transactions.append(
                Transaction(
                    type=TransactionType.AUTHORIZATION,
                    state=state,
                    amount=amount,
                    interaction_id=interaction_id,
                )
            )
        transactions.append(
            Transaction(
                type=TransactionType.CHARGE,
                state=state,
                amount=amount,
                interaction_id=interaction_id,
            )
        )
        return transactions
