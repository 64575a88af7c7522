"""Payment modification state machine and one-shot webhook processing.

Every modification writes an Initial transaction before Stripe is called
and a terminal transaction of the same type afterwards, so an interrupted
modification stays visible on the platform Payment.
"""

from collections.abc import Mapping
from typing import Any

from ..models.enums import (
    PaymentAction,
    PaymentModificationStatus,
    TransactionState,
    TransactionType,
)
from ..models.errors import InvalidJsonInputError, InvalidOperationError, MissingLinkageError, PSPApiError
from ..models.payment import (
    ModifyPaymentRequest,
    ModifyPaymentResponse,
    Money,
    Payment,
    PaymentProviderModificationResponse,
    PaymentUpdate,
    Transaction,
)
from ..utils.logging import get_logger, log_payment_operation
from .commerce import CommercePlatformClient
from .converters.stripe_event_converter import StripeEventConverter, object_id
from .stripe_service import StripeService, new_idempotency_key

logger = get_logger(__name__)

INVOICE_PREFIX = "in_"

ACTION_TRANSACTION_TYPES: dict[PaymentAction, TransactionType] = {
    PaymentAction.CAPTURE: TransactionType.CHARGE,
    PaymentAction.CANCEL: TransactionType.CANCEL_AUTHORIZATION,
    PaymentAction.REFUND: TransactionType.REFUND,
}

OUTCOME_TRANSACTION_STATES: dict[PaymentModificationStatus, TransactionState] = {
    PaymentModificationStatus.APPROVED: TransactionState.SUCCESS,
    PaymentModificationStatus.RECEIVED: TransactionState.PENDING,
    PaymentModificationStatus.REJECTED: TransactionState.FAILURE,
}

# Stripe object status -> outcome, per action; anything else is rejected
_CAPTURE_OUTCOMES = {
    "succeeded": PaymentModificationStatus.APPROVED,
    "processing": PaymentModificationStatus.RECEIVED,
}
_CANCEL_OUTCOMES = {
    "canceled": PaymentModificationStatus.APPROVED,
}
_REFUND_OUTCOMES = {
    "succeeded": PaymentModificationStatus.APPROVED,
    "pending": PaymentModificationStatus.RECEIVED,
    "requires_action": PaymentModificationStatus.RECEIVED,
}


def parse_action(action: str) -> PaymentAction:
    """Parse a modification action name.

    Raises:
        InvalidJsonInputError: If the action is not supported.
    """
    try:
        return PaymentAction(action)
    except ValueError:
        raise InvalidJsonInputError(
            f"Operation not supported: {action}",
            details={"action": action},
        ) from None


class PaymentService:
    """Drives capture, cancel and refund against Stripe.

    Also applies one-shot payment webhooks to the Payment they belong to.
    """

    def __init__(
        self,
        commerce: CommercePlatformClient,
        stripe_service: StripeService,
        converter: StripeEventConverter | None = None,
    ) -> None:
        self._commerce = commerce
        self._stripe = stripe_service
        self._converter = converter or StripeEventConverter()

    def modify_payment(self, request: ModifyPaymentRequest) -> ModifyPaymentResponse:
        """Capture, cancel or refund a platform Payment.

        Cancel always uses the planned amount; capture and refund use the
        amount of the request.

        Args:
            request: The modification request. Its first action is executed.

        Returns:
            The modification outcome.

        Raises:
            InvalidJsonInputError: If the action is unknown or an amount is
                missing. Nothing is written in that case.
            PSPApiError: If Stripe rejects the call. The Initial transaction
                has already been written.
        """
        request_action = request.actions[0]
        action = parse_action(request_action.action)

        payment = self._commerce.get_payment(request.payment_id)

        if action == PaymentAction.CANCEL:
            amount = payment.amount_planned
        elif request_action.amount is None:
            raise InvalidJsonInputError(
                f"Amount is required for {action.value}",
                details={"action": action.value},
            )
        else:
            amount = request_action.amount

        transaction_type = ACTION_TRANSACTION_TYPES[action]
        payment = self._commerce.update_payment(
            PaymentUpdate(
                id=payment.id,
                psp_reference=request.psp_reference or payment.interface_id,
                transaction=Transaction(
                    type=transaction_type,
                    state=TransactionState.INITIAL,
                    amount=amount,
                ),
            )
        )
        logger.info("Processing payment modification %s for payment %s", action.value, payment.id)

        try:
            result = self.process_payment_modification(payment, action, amount)
        except PSPApiError as e:
            log_payment_operation(
                logger,
                action.value,
                payment.id,
                psp_reference=payment.interface_id,
                amount=amount,
                error=e.message,
                stripe_error_code=e.stripe_error_code,
            )
            raise

        self._commerce.update_payment(
            PaymentUpdate(
                id=payment.id,
                transaction=Transaction(
                    type=transaction_type,
                    state=OUTCOME_TRANSACTION_STATES[result.outcome],
                    amount=amount,
                    interaction_id=result.psp_reference,
                ),
            )
        )

        log_payment_operation(
            logger,
            action.value,
            payment.id,
            psp_reference=result.psp_reference,
            amount=amount,
            outcome=result.outcome.value,
        )
        return ModifyPaymentResponse(outcome=result.outcome)

    def process_payment_modification(
        self,
        payment: Payment,
        action: PaymentAction,
        amount: Money,
    ) -> PaymentProviderModificationResponse:
        if action == PaymentAction.CAPTURE:
            return self.capture_payment(payment, amount)
        if action == PaymentAction.CANCEL:
            return self.cancel_payment(payment)
        if action == PaymentAction.REFUND:
            return self.refund_payment(payment, amount)
        raise InvalidOperationError(f"Operation not supported: {action.value}")

    def capture_payment(self, payment: Payment, amount: Money) -> PaymentProviderModificationResponse:
        payment_intent_id = self.resolve_payment_intent_id(payment)
        intent = self._stripe.capture_payment_intent(
            payment_intent_id,
            amount_to_capture=amount.cent_amount,
            idempotency_key=new_idempotency_key(),
        )
        return PaymentProviderModificationResponse(
            outcome=_CAPTURE_OUTCOMES.get(intent.get("status"), PaymentModificationStatus.REJECTED),
            psp_reference=intent.get("id") or payment_intent_id,
        )

    def cancel_payment(self, payment: Payment) -> PaymentProviderModificationResponse:
        payment_intent_id = self.resolve_payment_intent_id(payment)
        intent = self._stripe.cancel_payment_intent(
            payment_intent_id,
            idempotency_key=new_idempotency_key(),
        )
        return PaymentProviderModificationResponse(
            outcome=_CANCEL_OUTCOMES.get(intent.get("status"), PaymentModificationStatus.REJECTED),
            psp_reference=intent.get("id") or payment_intent_id,
        )

    def refund_payment(self, payment: Payment, amount: Money) -> PaymentProviderModificationResponse:
        payment_intent_id = self.resolve_payment_intent_id(payment)
        refund = self._stripe.create_refund(
            payment_intent_id=payment_intent_id,
            amount_cents=amount.cent_amount,
            idempotency_key=new_idempotency_key(),
        )
        return PaymentProviderModificationResponse(
            outcome=_REFUND_OUTCOMES.get(refund.get("status"), PaymentModificationStatus.REJECTED),
            psp_reference=refund.get("id") or payment_intent_id,
        )

    def resolve_payment_intent_id(self, payment: Payment) -> str:
        """Payment intent behind a Payment's interface id.

        Subscription cycle Payments may reference an invoice; its payment
        intent is used instead.

        Raises:
            InvalidOperationError: If no payment intent can be found.
        """
        interface_id = payment.interface_id
        if not interface_id:
            raise InvalidOperationError(
                f"Payment {payment.id} has no payment provider reference",
                details={"payment_id": payment.id},
            )
        if not interface_id.startswith(INVOICE_PREFIX):
            return interface_id

        invoice = self._stripe.get_invoice_expanded(interface_id)
        payment_intent_id = object_id(invoice.get("payment_intent"))
        if not payment_intent_id:
            raise InvalidOperationError(
                f"Invoice {interface_id} has no payment intent",
                details={"payment_id": payment.id, "invoice_id": interface_id},
            )
        return payment_intent_id

    def process_payment_event(self, event: Mapping[str, Any]) -> str | None:
        """Apply a one-shot payment webhook to its platform Payment.

        Args:
            event: Parsed Stripe event (payment_intent.* or charge.*).

        Returns:
            The updated payment id, or None when the event implies no
            transactions.

        Raises:
            UnsupportedEventError: If the event type has no mapping.
            MissingLinkageError: If no Payment can be found for the event.
        """
        update = self._converter.convert(event)
        if not update.transactions:
            logger.info(
                "Event %s (%s) implies no transactions for %s",
                event.get("id"),
                event.get("type"),
                update.psp_reference,
            )
            return None

        payment_id = update.id or self._find_payment_id(update.psp_reference)
        for payment_update in update.to_payment_updates(payment_id):
            self._commerce.update_payment(payment_update)

        logger.info(
            "Applied %d transaction(s) from %s to payment %s",
            len(update.transactions),
            event.get("type"),
            payment_id,
        )
        return payment_id

    def _find_payment_id(self, psp_reference: str) -> str:
        payments = self._commerce.find_payments_by_interface_id(psp_reference)
        if not payments:
            raise MissingLinkageError(
                f"No payment found for {psp_reference}",
                details={"psp_reference": psp_reference},
            )
        return payments[0].id
