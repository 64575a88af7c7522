"""Creates platform Payments and links them to Stripe objects.

The link is kept in Stripe metadata (ct_payment_id and friends) so that
later webhooks can be resolved back to the platform Payment.
"""

from ..config import Settings
from ..models.cart import Cart
from ..models.enums import TransactionState, TransactionType
from ..models.errors import MetadataSyncError, PSPApiError
from ..models.link import PspLink
from ..models.payment import (
    Money,
    Payment,
    PaymentDraft,
    PaymentIntentResponse,
    PaymentMethodInfo,
    PaymentUpdate,
    Transaction,
)
from ..utils.logging import get_logger
from .commerce import CommercePlatformClient
from .stripe_service import StripeService, new_idempotency_key, wrap_stripe_error

logger = get_logger(__name__)

PAYMENT_INTENT_PREFIX = "pi_"


class PaymentCreationService:
    """Creates platform Payments and keeps the Stripe metadata link current."""

    def __init__(
        self,
        commerce: CommercePlatformClient,
        stripe_service: StripeService,
        settings: Settings,
    ) -> None:
        self._commerce = commerce
        self._stripe = stripe_service
        self._settings = settings

    def create_payment(self, cart: Cart, amount_planned: Money, interaction_id: str) -> str:
        """Create a Payment with one Authorization/Initial transaction.

        The Payment is linked to the cart's customer, or to its anonymous
        session when the cart has no customer.

        Args:
            cart: Cart the Payment belongs to.
            amount_planned: Planned amount.
            interaction_id: Stripe object id stored as the interface id.

        Returns:
            The new platform payment id.
        """
        draft = PaymentDraft(
            amount_planned=amount_planned,
            interface_id=interaction_id,
            payment_method_info=PaymentMethodInfo(
                payment_interface=self._settings.payment_interface or "stripe",
            ),
            customer_id=cart.customer_id,
            anonymous_id=None if cart.customer_id else cart.anonymous_id,
            transactions=[
                Transaction(
                    type=TransactionType.AUTHORIZATION,
                    state=TransactionState.INITIAL,
                    amount=amount_planned,
                    interaction_id=interaction_id,
                )
            ],
        )
        payment = self._commerce.create_payment(draft)
        return payment.id

    def create_payment_intent(self, cart_id: str) -> PaymentIntentResponse:
        """Start a one-shot checkout for a cart.

        Creates the PaymentIntent for the cart total with the configured
        capture method, then creates the Payment and links both ways.

        Args:
            cart_id: Cart being checked out.

        Returns:
            The client secret for the storefront and the platform payment id.

        Raises:
            PSPApiError: If Stripe rejects the PaymentIntent. No Payment is
                created in that case.
        """
        cart = self._commerce.get_cart(cart_id)
        amount_planned = self._commerce.get_payment_amount(cart)

        payment_intent = self._stripe.create_payment_intent(
            {
                "amount": amount_planned.cent_amount,
                "currency": amount_planned.currency_code.lower(),
                "automatic_payment_methods": {"enabled": True},
                "capture_method": self._settings.capture_method.value,
                "metadata": self.get_payment_metadata(cart),
            },
            idempotency_key=new_idempotency_key(),
        )
        logger.info("PaymentIntent %s created for cart %s", payment_intent["id"], cart.id)

        payment_id = self.handle_payment_creation(cart, amount_planned, payment_intent["id"])
        return PaymentIntentResponse(
            client_secret=payment_intent.get("client_secret") or "",
            payment_reference=payment_id,
        )

    def link_to_cart(self, cart: Cart, payment_id: str) -> Cart:
        """Attach the Payment to the cart."""
        return self._commerce.add_payment(cart, payment_id)

    def handle_payment_creation(
        self,
        cart: Cart,
        amount_planned: Money,
        interaction_id: str,
        subscription_id: str | None = None,
    ) -> str:
        """Create a Payment, attach it to the cart and link it on Stripe.

        A failed metadata sync is logged and does not fail the creation;
        webhook resolution then falls back to the interface id lookup.

        Returns:
            The new platform payment id.
        """
        payment_id = self.create_payment(cart, amount_planned, interaction_id)
        self.link_to_cart(cart, payment_id)

        logger.info(
            "Payment %s and initial transaction created for cart %s (interaction %s)",
            payment_id,
            cart.id,
            interaction_id,
        )

        payment_intent_id = interaction_id if interaction_id.startswith(PAYMENT_INTENT_PREFIX) else None
        try:
            self.sync_metadata(
                cart,
                payment_id,
                psp_reference=payment_intent_id,
                subscription_reference=subscription_id,
            )
        except MetadataSyncError as e:
            logger.error(
                "Payment %s is not linked on Stripe (%s): %s",
                payment_id,
                payment_intent_id or subscription_id,
                e.message,
            )

        return payment_id

    def sync_metadata(
        self,
        cart: Cart,
        payment_id: str,
        psp_reference: str | None = None,
        subscription_reference: str | None = None,
    ) -> bool:
        """Upsert the payment id link on a payment intent and/or subscription.

        A subscription's payment intent also receives the cart link and the
        subscription id. Each Stripe call uses a fresh idempotency key.

        Args:
            cart: Cart the Payment belongs to.
            payment_id: Platform payment id to link.
            psp_reference: Payment intent id.
            subscription_reference: Subscription id.

        Returns:
            False when there was nothing to update, True otherwise.

        Raises:
            MetadataSyncError: If a Stripe update fails.
        """
        if not psp_reference and not subscription_reference:
            logger.warning(
                "No payment intent or subscription id provided for metadata update of payment %s, skipping",
                payment_id,
            )
            return False

        try:
            if psp_reference:
                link = PspLink(payment_id=payment_id)
                if subscription_reference:
                    link = self.get_payment_link(cart).merge(
                        PspLink(payment_id=payment_id, subscription_id=subscription_reference)
                    )
                self._stripe.update_payment_intent(
                    psp_reference,
                    {"metadata": link.to_metadata()},
                    idempotency_key=new_idempotency_key(),
                )

            if subscription_reference:
                self._stripe.update_subscription(
                    subscription_reference,
                    {"metadata": PspLink(payment_id=payment_id).to_metadata()},
                    idempotency_key=new_idempotency_key(),
                )
        except PSPApiError as e:
            raise wrap_stripe_error(e, MetadataSyncError) from e

        logger.info("Stripe metadata linked to payment %s", payment_id)
        return True

    def get_payment_link(self, cart: Cart) -> PspLink:
        return PspLink(
            cart_id=cart.id,
            project_key=self._settings.project_key or None,
            customer_id=cart.customer_id,
        )

    def get_payment_metadata(self, cart: Cart) -> dict[str, str]:
        """Stripe metadata linking an object to the cart, project and customer."""
        return self.get_payment_link(cart).to_metadata()

    def update_subscription_cycle_transactions(
        self,
        payment: Payment,
        interaction_id: str,
        subscription_id: str,
        is_pending: bool = False,
    ) -> None:
        """Record one billing cycle's Authorization and Charge on the Payment.

        Both transactions use the Payment's planned amount. The Charge is
        Pending when the invoice is collected asynchronously.
        """
        for transaction_type, state in (
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (
                TransactionType.CHARGE,
                TransactionState.PENDING if is_pending else TransactionState.SUCCESS,
            ),
        ):
            self._commerce.update_payment(
                PaymentUpdate(
                    id=payment.id,
                    psp_reference=interaction_id,
                    transaction=Transaction(
                        type=transaction_type,
                        state=state,
                        amount=payment.amount_planned,
                        interaction_id=interaction_id,
                    ),
                )
            )

        logger.info(
            "Payment %s for subscription %s has been confirmed (interaction %s)",
            payment.id,
            subscription_id,
            interaction_id,
        )

    def handle_subscription_cycle_payment(
        self,
        cart: Cart,
        amount_planned: Money,
        interaction_id: str,
    ) -> str:
        """Create a per-cycle Payment that is not attached to any cart."""
        payment_id = self.create_payment(cart, amount_planned, interaction_id)
        logger.info(
            "Subscription cycle payment %s created for cart %s (interaction %s)",
            payment_id,
            cart.id,
            interaction_id,
        )
        return payment_id
