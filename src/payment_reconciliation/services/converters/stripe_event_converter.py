"""Converts one-shot Stripe payment events into platform transactions.

Pure and synchronous: no Stripe or platform calls are made here.
"""

import json
from collections.abc import Mapping
from typing import Any

from ...models.enums import StripeEvent, TransactionState, TransactionType
from ...models.errors import UnsupportedEventError
from ...models.link import PspLink
from ...models.payment import Money, NormalizedTransactionUpdate, PspInteraction, Transaction


def event_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the ``data.object`` of a Stripe event."""
    return (event.get("data") or {}).get("object") or {}


def object_id(value: Any) -> str | None:
    """Id of a Stripe reference that may be expanded or a plain id string."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def charge_payment_method(charge: Any) -> str | None:
    """Payment method type of an expanded charge, if known."""
    if not charge or isinstance(charge, str):
        return None
    details = charge.get("payment_method_details") or {}
    return details.get("type") or None


def serialize_event(event: Mapping[str, Any]) -> str:
    return json.dumps(event, default=str, sort_keys=True)


class StripeEventConverter:
    """Maps payment_intent.* and charge.* events to transactions.

    payment_intent events take their amount from amount_received, refunded
    charges from amount_refunded and other charges from amount.
    """

    def convert(self, event: Mapping[str, Any]) -> NormalizedTransactionUpdate:
        """Convert a Stripe event.

        Args:
            event: Parsed Stripe event.

        Returns:
            The normalized update; its transaction list may be empty for
            charges that carry no economic effect.

        Raises:
            UnsupportedEventError: If the event type has no mapping.
        """
        event_type = event.get("type", "")
        try:
            stripe_event = StripeEvent(event_type)
        except ValueError:
            raise UnsupportedEventError(event_type) from None

        data = event_object(event)
        if event_type.startswith("payment_intent."):
            psp_reference = data.get("id")
            payment_method = None
        else:
            psp_reference = object_id(data.get("payment_intent")) or data.get("id")
            payment_method = charge_payment_method(data)

        return NormalizedTransactionUpdate(
            id=PspLink.from_metadata(data.get("metadata")).payment_id,
            psp_reference=psp_reference,
            payment_method=payment_method,
            psp_interaction=PspInteraction(raw_response=serialize_event(event)),
            transactions=self._populate_transactions(stripe_event, data, psp_reference),
        )

    def _populate_transactions(
        self,
        stripe_event: StripeEvent,
        data: Mapping[str, Any],
        interaction_id: str,
    ) -> list[Transaction]:
        amount = self._populate_amount(stripe_event, data)

        def tx(transaction_type: TransactionType, state: TransactionState) -> Transaction:
            return Transaction(
                type=transaction_type,
                state=state,
                amount=amount,
                interaction_id=interaction_id,
            )

        if stripe_event == StripeEvent.PAYMENT_INTENT_SUCCEEDED:
            return [tx(TransactionType.CHARGE, TransactionState.SUCCESS)]
        if stripe_event == StripeEvent.PAYMENT_INTENT_CANCELED:
            return [
                tx(TransactionType.AUTHORIZATION, TransactionState.FAILURE),
                tx(TransactionType.CANCEL_AUTHORIZATION, TransactionState.SUCCESS),
            ]
        if stripe_event == StripeEvent.PAYMENT_INTENT_PAYMENT_FAILED:
            return [tx(TransactionType.AUTHORIZATION, TransactionState.FAILURE)]
        if stripe_event == StripeEvent.PAYMENT_INTENT_REQUIRES_ACTION:
            return [tx(TransactionType.AUTHORIZATION, TransactionState.INITIAL)]
        if stripe_event == StripeEvent.CHARGE_REFUNDED:
            if not data.get("captured"):
                return []
            return [
                tx(TransactionType.REFUND, TransactionState.SUCCESS),
                tx(TransactionType.CHARGEBACK, TransactionState.SUCCESS),
            ]
        if stripe_event == StripeEvent.CHARGE_SUCCEEDED:
            if data.get("captured"):
                return []
            return [tx(TransactionType.AUTHORIZATION, TransactionState.SUCCESS)]
        if stripe_event == StripeEvent.CHARGE_UPDATED:
            return [tx(TransactionType.CHARGE, TransactionState.SUCCESS)]
        raise UnsupportedEventError(stripe_event.value)

    @staticmethod
    def _populate_amount(stripe_event: StripeEvent, data: Mapping[str, Any]) -> Money:
        if stripe_event.value.startswith("payment_intent."):
            cent_amount = data.get("amount_received")
        elif stripe_event == StripeEvent.CHARGE_REFUNDED:
            cent_amount = data.get("amount_refunded")
        elif stripe_event == StripeEvent.CHARGE_UPDATED and data.get("amount_captured"):
            cent_amount = data.get("amount_captured")
        else:
            cent_amount = data.get("amount")

        return Money(
            cent_amount=cent_amount or 0,
            currency_code=(data.get("currency") or "").upper(),
        )
