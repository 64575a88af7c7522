"""Subscription lifecycle orchestration.

Creates Stripe subscriptions (directly or from a setup intent) for
subscription carts and reconciles their billing events with platform
Payments and orders.

Webhook processors in this module never raise: every failure is logged
and returned as an EventProcessingResult carrying a ReconciliationFailure.
"""

import time
from collections.abc import Callable, Mapping
from typing import Any

from ..config import Settings
from ..models.cart import CART_STATE_ORDERED, Cart
from ..models.enums import (
    BillingEventPolicy,
    ProcessingResult,
    StripeSubscriptionEvent,
    SubscriptionOutcome,
    TransactionState,
    TransactionType,
)
from ..models.errors import (
    EventProcessingResult,
    InvalidOperationError,
    MetadataSyncError,
    MissingLinkageError,
    ReconciliationError,
    SubscriptionValidationError,
)
from ..models.link import METADATA_PRODUCT_ID_FIELD, PspLink
from ..models.payment import Money, Payment
from ..models.subscription import (
    ConfirmSubscriptionRequest,
    SetupIntentResponse,
    SubscriptionData,
    SubscriptionFromSetupIntentResponse,
    SubscriptionModifyResponse,
    SubscriptionResponse,
    SubscriptionTypes,
)
from ..utils.logging import get_logger
from .commerce import SET_LINE_ITEM_CUSTOM_FIELD, SUBSCRIPTION_ID_CUSTOM_FIELD, CommercePlatformClient
from .converters.stripe_event_converter import StripeEventConverter, event_object, object_id
from .converters.subscription_event_converter import SubscriptionEventConverter
from .coupon_service import CouponService
from .order_service import OrderService
from .payment_creation_service import PaymentCreationService
from .price_service import PriceService
from .stripe_service import StripeService, new_idempotency_key
from .subscription_attributes import (
    get_subscription_params,
    get_subscription_types,
    transform_variant_attributes,
)

logger = get_logger(__name__)


class SubscriptionService:
    """Creates subscriptions and processes their billing events."""

    def __init__(
        self,
        commerce: CommercePlatformClient,
        stripe_service: StripeService,
        settings: Settings,
        payment_creation: PaymentCreationService,
        price_service: PriceService | None = None,
        coupon_service: CouponService | None = None,
        order_service: OrderService | None = None,
        converter: SubscriptionEventConverter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            commerce: Commerce platform client.
            stripe_service: Stripe API access.
            settings: Engine settings, including the billing event policy
                and the payment link wait.
            payment_creation: Payment creation and linking service.
            price_service: Stripe price reconciliation.
            coupon_service: Discount code to coupon translation.
            order_service: Order and cart creation.
            converter: Invoice event converter.
            sleep: Called between payment link lookups.
        """
        self._commerce = commerce
        self._stripe = stripe_service
        self._settings = settings
        self._payment_creation = payment_creation
        self._prices = price_service or PriceService(stripe_service)
        self._coupons = coupon_service or CouponService(stripe_service)
        self._orders = order_service or OrderService(commerce)
        self._converter = converter or SubscriptionEventConverter()
        self._refund_converter = StripeEventConverter()
        self._sleep = sleep

    @property
    def billing_event_policy(self) -> BillingEventPolicy:
        return self._settings.billing_event_policy

    # === Subscription creation ===

    def prepare_subscription_data(self, cart_id: str, *, basic_data: bool = False) -> SubscriptionData:
        """Collect the cart, customer and Stripe parameters for a subscription.

        Args:
            cart_id: Subscription cart id.
            basic_data: Skip amounts and price reconciliation.

        Returns:
            The subscription data; price ids and amounts only when
            basic_data is False.

        Raises:
            InvalidOperationError: If the cart holds more than one item.
            SubscriptionValidationError: If the cart is not a subscription
                or its customer has no Stripe customer.
        """
        cart = self._commerce.get_cart(cart_id)
        if len(cart.line_items) != 1 or cart.line_items[0].quantity > 1:
            raise InvalidOperationError(
                "Only one line item is allowed in the cart for subscription. Please remove the others.",
                details={"cart_id": cart.id},
            )

        line_item = cart.line_items[0]
        if not line_item.is_subscription:
            raise SubscriptionValidationError("Cart is not a subscription.", details={"cart_id": cart.id})

        stripe_customer_id = self._get_stripe_customer_id(cart.customer_id)
        attributes = transform_variant_attributes(line_item.variant.attributes)
        billing_address = (
            cart.billing_address.model_dump_json(exclude_none=True) if cart.billing_address else None
        )

        data = SubscriptionData(
            cart=cart,
            stripe_customer_id=stripe_customer_id,
            subscription_params=get_subscription_params(attributes),
            attributes=attributes,
            merchant_return_url=self._settings.merchant_return_url,
            billing_address=billing_address,
        )
        if basic_data:
            return data

        line_item_amount = line_item.price.value
        data.amount_planned = self._commerce.get_payment_amount(cart)
        data.line_item_amount = line_item_amount
        data.price_id = self._prices.get_subscription_price_id(line_item, line_item_amount, attributes)
        data.shipping_price_id = self._prices.get_shipping_price_id(cart.shipping_info, attributes)
        return data

    def create_setup_intent(self, cart_id: str) -> SetupIntentResponse:
        """Create a setup intent collecting the payment method for a deferred subscription."""
        data = self.prepare_subscription_data(cart_id, basic_data=True)
        setup_intent = self._stripe.create_setup_intent(
            {
                "customer": data.stripe_customer_id,
                "usage": "off_session" if data.attributes.off_session else "on_session",
                "metadata": self._payment_creation.get_payment_metadata(data.cart),
            },
            idempotency_key=new_idempotency_key(),
        )
        if not setup_intent.get("client_secret"):
            raise SubscriptionValidationError("Failed to create Setup Intent.")

        logger.info("Stripe setup intent %s created for cart %s", setup_intent["id"], data.cart.id)
        return SetupIntentResponse(
            client_secret=setup_intent["client_secret"],
            merchant_return_url=data.merchant_return_url,
            billing_address=data.billing_address,
        )

    def create_subscription(self, cart_id: str) -> SubscriptionResponse:
        """Create an incomplete subscription whose first invoice the customer pays.

        Returns:
            The subscription, its payment intent client secret and the
            platform payment id.

        Raises:
            SubscriptionValidationError: If the first invoice has no
                payment intent.
            PSPApiError: If a Stripe call fails.
        """
        data = self.prepare_subscription_data(cart_id)
        params = {
            **data.subscription_params,
            "customer": data.stripe_customer_id,
            "items": self._subscription_items(data),
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": self._payment_creation.get_payment_metadata(data.cart),
        }
        discounts = self._coupons.get_stripe_coupons(data.cart)
        if discounts:
            params["discounts"] = discounts

        subscription = self._stripe.create_subscription(params, idempotency_key=new_idempotency_key())
        payment_intent_id, client_secret = self.validate_subscription(subscription)

        logger.info(
            "Stripe subscription %s created for cart %s (payment intent %s)",
            subscription["id"],
            data.cart.id,
            payment_intent_id,
        )

        cart = self.save_subscription_id(data.cart, subscription["id"])
        payment_reference = self._payment_creation.handle_payment_creation(
            cart,
            data.amount_planned,
            payment_intent_id,
            subscription_id=subscription["id"],
        )

        return SubscriptionResponse(
            subscription_id=subscription["id"],
            cart_id=cart.id,
            client_secret=client_secret,
            payment_reference=payment_reference,
            merchant_return_url=data.merchant_return_url,
            billing_address=data.billing_address,
        )

    def create_subscription_from_setup_intent(
        self,
        cart_id: str,
        setup_intent_id: str,
    ) -> SubscriptionFromSetupIntentResponse:
        """Create a subscription charging the payment method of a setup intent.

        The platform Payment references the first invoice, or the
        subscription itself when free anchor days produce no invoice.
        """
        data = self.prepare_subscription_data(cart_id)
        setup_intent = self._stripe.retrieve_setup_intent(setup_intent_id)
        payment_method_id = object_id(setup_intent.get("payment_method"))
        if not payment_method_id:
            raise SubscriptionValidationError(
                "Failed to create Subscription. Invalid setup intent.",
                details={"setup_intent_id": setup_intent_id},
            )

        types = self.get_subscription_types(data.subscription_params)
        params = {
            **data.subscription_params,
            "customer": data.stripe_customer_id,
            "default_payment_method": payment_method_id,
            "items": self._subscription_items(data),
            "expand": ["latest_invoice"],
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": self._payment_creation.get_payment_metadata(data.cart),
        }
        discounts = self._coupons.get_stripe_coupons(data.cart)
        if discounts:
            params["discounts"] = discounts

        subscription = self._stripe.create_subscription(params, idempotency_key=new_idempotency_key())
        logger.info(
            "Stripe subscription %s created from setup intent %s for cart %s",
            subscription["id"],
            setup_intent_id,
            data.cart.id,
        )

        invoice_id = object_id(subscription.get("latest_invoice"))
        if types.is_send_invoice and invoice_id:
            sent = self._stripe.send_invoice(invoice_id, idempotency_key=new_idempotency_key())
            if sent.get("status") == "open":
                logger.info("Stripe subscription invoice %s was sent", invoice_id)
            elif sent.get("status") == "paid":
                logger.info("Stripe subscription invoice %s is paid", invoice_id)
            else:
                logger.warning("Stripe subscription invoice %s was not sent", invoice_id)

        cart = self.save_subscription_id(data.cart, subscription["id"])
        interaction_id = subscription["id"] if types.has_free_anchor_days else (invoice_id or subscription["id"])
        payment_reference = self._payment_creation.handle_payment_creation(
            cart,
            data.amount_planned,
            interaction_id,
            subscription_id=subscription["id"],
        )
        return SubscriptionFromSetupIntentResponse(
            subscription_id=subscription["id"],
            payment_reference=payment_reference,
        )

    def confirm_subscription_payment(self, cart_id: str, request: ConfirmSubscriptionRequest) -> None:
        """Record the first cycle's Authorization and Charge.

        Free anchor days produce no invoice; the cycle is recorded with a
        zero amount against the subscription id.
        """
        cart = self._commerce.get_cart(cart_id)
        attributes = transform_variant_attributes(cart.line_items[0].variant.attributes)
        types = self.get_subscription_types(get_subscription_params(attributes))

        if types.has_no_invoice:
            payment = self._commerce.get_payment(request.payment_reference)
            self._payment_creation.update_subscription_cycle_transactions(
                self._with_amount(payment, 0),
                request.subscription_id,
                request.subscription_id,
            )
            return

        invoice = self.get_invoice_from_subscription(request.subscription_id)
        payment = self.get_current_payment(request.payment_reference, invoice, types)
        self._payment_creation.update_subscription_cycle_transactions(
            payment,
            request.payment_intent_id or invoice.get("id") or request.subscription_id,
            request.subscription_id,
            is_pending=types.is_send_invoice and not types.has_trial,
        )

    def get_invoice_from_subscription(self, subscription_id: str) -> Any:
        subscription = self._stripe.retrieve_subscription(
            subscription_id,
            expand=["latest_invoice.payment_intent"],
        )
        invoice = subscription.get("latest_invoice")
        if not invoice or isinstance(invoice, str):
            raise SubscriptionValidationError(
                f'Subscription with ID "{subscription_id}" does not have an invoice.',
                details={"subscription_id": subscription_id},
            )
        return invoice

    def get_current_payment(
        self,
        payment_reference: str,
        invoice: Mapping[str, Any],
        types: SubscriptionTypes,
    ) -> Payment:
        """Get the Payment with its amount adjusted to what the first invoice charges.

        Trials and free anchor days charge nothing; prorated anchors charge
        the invoice amount (due for send_invoice, paid otherwise).
        """
        payment = self._commerce.get_payment(payment_reference)
        if not types.has_trial and not types.has_free_anchor_days and not types.has_prorations:
            return payment

        if types.has_trial or types.has_free_anchor_days:
            cent_amount = 0
        elif types.is_send_invoice:
            cent_amount = invoice.get("amount_due") or 0
        else:
            cent_amount = invoice.get("amount_paid") or 0
        return self._with_amount(payment, cent_amount)

    def get_subscription_types(self, params: dict[str, Any]) -> SubscriptionTypes:
        return get_subscription_types(params)

    def save_subscription_id(self, cart: Cart, subscription_id: str) -> Cart:
        """Store the Stripe subscription id on the cart's line item."""
        line_item_id = cart.line_items[0].id
        updated = self._commerce.update_cart(
            cart,
            [
                {
                    "action": SET_LINE_ITEM_CUSTOM_FIELD,
                    "lineItemId": line_item_id,
                    "name": SUBSCRIPTION_ID_CUSTOM_FIELD,
                    "value": subscription_id,
                }
            ],
        )
        logger.info(
            "Stripe subscription %s saved to line item %s of cart %s",
            subscription_id,
            line_item_id,
            cart.id,
        )
        return updated

    @staticmethod
    def validate_subscription(subscription: Mapping[str, Any]) -> tuple[str, str]:
        """Extract the first invoice's payment intent id and client secret.

        Raises:
            SubscriptionValidationError: If either is missing.
        """
        invoice = subscription.get("latest_invoice")
        payment_intent = invoice.get("payment_intent") if invoice and not isinstance(invoice, str) else None
        if not payment_intent or isinstance(payment_intent, str) or not payment_intent.get("client_secret"):
            raise SubscriptionValidationError(
                "Failed to create Subscription, missing Payment Intent.",
                details={"subscription_id": subscription.get("id") or ""},
            )
        return payment_intent["id"], payment_intent["client_secret"]

    # === Customer subscriptions ===

    def get_customer_subscriptions(self, customer_id: str) -> list:
        stripe_customer_id = self._get_stripe_customer_id(customer_id)
        subscriptions = self._stripe.list_subscriptions(stripe_customer_id)
        logger.info("Retrieved %d subscriptions for customer %s", len(subscriptions), customer_id)
        return subscriptions

    def validate_customer_subscription(self, customer_id: str, subscription_id: str) -> Any:
        """Get a subscription, checking that it belongs to the customer.

        Raises:
            InvalidOperationError: If the customer has no such subscription.
        """
        for subscription in self.get_customer_subscriptions(customer_id):
            if subscription.get("id") == subscription_id:
                logger.info(
                    "Subscription %s is valid for customer %s (status %s)",
                    subscription_id,
                    customer_id,
                    subscription.get("status"),
                )
                return subscription
        raise InvalidOperationError(
            f"Subscription {subscription_id} does not belong to customer {customer_id}",
            details={"customer_id": customer_id, "subscription_id": subscription_id},
        )

    def cancel_subscription(self, customer_id: str, subscription_id: str) -> SubscriptionModifyResponse:
        """Cancel a customer's subscription, prorated and without an immediate invoice."""
        self.validate_customer_subscription(customer_id, subscription_id)
        canceled = self._stripe.cancel_subscription(
            subscription_id,
            {"invoice_now": False, "prorate": True},
            idempotency_key=new_idempotency_key(),
        )
        logger.info("Canceled subscription %s for customer %s", subscription_id, customer_id)
        return SubscriptionModifyResponse(
            id=canceled["id"],
            status=canceled.get("status") or "canceled",
            outcome=SubscriptionOutcome.CANCELED,
            message=f"Subscription {subscription_id} has been successfully canceled.",
        )

    def update_subscription(
        self, customer_id: str, subscription_id: str, params: dict[str, Any]
    ) -> SubscriptionModifyResponse:
        """Apply a customer-requested change, e.g. cancel at period end."""
        self.validate_customer_subscription(customer_id, subscription_id)
        updated = self._stripe.update_subscription(
            subscription_id,
            params,
            idempotency_key=new_idempotency_key(),
        )
        logger.info(
            "Updated subscription %s for customer %s: %s",
            subscription_id,
            customer_id,
            sorted(params),
        )
        return SubscriptionModifyResponse(
            id=updated["id"],
            status=updated.get("status") or "active",
            outcome=SubscriptionOutcome.UPDATED,
            message=f"Subscription {subscription_id} has been successfully updated.",
        )

    # === Billing events ===

    def process_subscription_event(self, event: Mapping[str, Any]) -> EventProcessingResult:
        """Apply an invoice.paid or invoice.payment_failed event.

        Returns:
            The processing result; failures are returned, not raised.
        """
        logger.info("Processing subscription notification %s (%s)", event.get("id"), event.get("type"))
        return self._guard(event, self._process_subscription_event)

    def process_subscription_refund(self, event: Mapping[str, Any]) -> EventProcessingResult:
        """Apply a charge.refunded event for a subscription invoice charge."""
        return self._guard(event, self._process_subscription_refund)

    def process_upcoming_invoice(self, event: Mapping[str, Any]) -> EventProcessingResult:
        """Move a subscription to the platform's current price before it renews.

        Does nothing unless subscription price sync is enabled.
        """
        return self._guard(event, self._process_upcoming_invoice)

    def _guard(
        self,
        event: Mapping[str, Any],
        processor: Callable[[Mapping[str, Any]], EventProcessingResult],
    ) -> EventProcessingResult:
        event_id = event.get("id", "")
        event_type = event.get("type", "")
        try:
            return processor(event)
        except MissingLinkageError as e:
            logger.error("Cannot link %s event %s: %s", event_type, event_id, e.message)
            return EventProcessingResult(
                event_id=event_id,
                event_type=event_type,
                result=ProcessingResult.SKIPPED,
                failure=e.to_failure(),
            )
        except ReconciliationError as e:
            logger.error("Error processing %s event %s: %s", event_type, event_id, e.message)
            return EventProcessingResult.from_exception(event_id, event_type, e)
        except Exception as e:
            logger.exception("Unexpected error processing %s event %s", event_type, event_id)
            return EventProcessingResult.from_exception(event_id, event_type, e)

    def _process_subscription_event(self, event: Mapping[str, Any]) -> EventProcessingResult:
        policy = self._settings.billing_event_policy
        invoice_id = event_object(event).get("id")
        invoice = self._stripe.get_invoice_expanded(invoice_id)
        subscription = invoice.get("subscription")
        link = self._subscription_link(invoice, subscription)

        linked_payment = self._resolve_linked_payment(link, invoice_id)
        payment, is_redelivery = self._resolve_cycle_payment(invoice, linked_payment)

        is_pending = self._commerce.has_transaction_in_state(
            payment,
            TransactionType.CHARGE,
            [TransactionState.PENDING],
        )
        update = self._converter.convert(event, invoice, is_pending, payment)

        target_payment_id = payment.id
        if not is_pending and not is_redelivery:
            logger.info("Payment %s has no pending charge, creating a payment for the new cycle", payment.id)
            target_payment_id = self._create_cycle_payment(
                policy,
                event,
                invoice,
                subscription,
                link,
                linked_payment,
                update.psp_reference,
            )

        for payment_update in update.to_payment_updates(target_payment_id):
            updated = self._commerce.update_payment(payment_update)
            logger.info(
                "Subscription payment %s (version %d) updated with %s/%s for %s",
                updated.id,
                updated.version,
                payment_update.transaction.type.value,
                payment_update.transaction.state.value,
                update.psp_reference,
            )

        self._complete_order(target_payment_id, payment.id, invoice, update.psp_reference)
        return EventProcessingResult.success(event.get("id", ""), event.get("type", ""), target_payment_id)

    def _subscription_link(self, invoice: Mapping[str, Any], subscription: Any) -> PspLink:
        details = invoice.get("subscription_details") or {}
        link = PspLink.from_metadata(details.get("metadata"))
        if subscription and not isinstance(subscription, str):
            link = link.merge(PspLink.from_metadata(subscription.get("metadata")))
        return link.merge(PspLink(subscription_id=object_id(subscription)))

    def _resolve_linked_payment(self, link: PspLink, invoice_id: str) -> Payment:
        if link.payment_id:
            return self._commerce.get_payment(link.payment_id)
        return self._wait_for_payment_link(invoice_id)

    def _wait_for_payment_link(self, invoice_id: str) -> Payment:
        """Find a Payment created concurrently with the invoice.

        Trial and setup-intent subscriptions may bill before their metadata
        names a Payment. Lookups by invoice id are retried with a doubling
        delay.

        Raises:
            MissingLinkageError: If no Payment references the invoice.
        """
        delay = self._settings.payment_link_wait_seconds
        attempts = self._settings.payment_link_max_attempts
        for attempt in range(1, attempts + 1):
            logger.info(
                "Subscription metadata has no payment yet, waiting %.1fs for invoice %s (attempt %d/%d)",
                delay,
                invoice_id,
                attempt,
                attempts,
            )
            self._sleep(delay)
            payments = self._commerce.find_payments_by_interface_id(invoice_id)
            if payments:
                return payments[0]
            delay *= 2

        raise MissingLinkageError(
            f"Cannot process invoice {invoice_id}: no payment is linked to it",
            details={"invoice_id": invoice_id},
        )

    def _resolve_cycle_payment(self, invoice: Mapping[str, Any], linked_payment: Payment) -> tuple[Payment, bool]:
        """Pick the Payment the event updates.

        A Payment whose interface id is the invoice's payment intent or the
        invoice itself already belongs to this cycle; one carrying a Failure
        transaction wins. Invoices settled without a payment intent (customer
        balance, zero-amount trial invoices) are matched by invoice id only.
        The metadata-linked Payment counts as this cycle's when one of its
        transactions was recorded against either reference.
        """
        references = [
            reference
            for reference in (object_id(invoice.get("payment_intent")), invoice.get("id"))
            if reference
        ]

        payments: list[Payment] = []
        for reference in references:
            for candidate in self._commerce.find_payments_by_interface_id(reference):
                if all(candidate.id != p.id for p in payments):
                    payments.append(candidate)

        if not payments:
            if any(tx.interaction_id in references for tx in linked_payment.transactions):
                return linked_payment, True
            return linked_payment, False

        for candidate in payments:
            if any(tx.state == TransactionState.FAILURE for tx in candidate.transactions):
                return candidate, True
        return payments[0], True

    def _create_cycle_payment(
        self,
        policy: BillingEventPolicy,
        event: Mapping[str, Any],
        invoice: Mapping[str, Any],
        subscription: Any,
        link: PspLink,
        linked_payment: Payment,
        psp_reference: str,
    ) -> str:
        is_paid = event.get("type") == StripeSubscriptionEvent.INVOICE_PAID.value
        amount_planned = Money(
            cent_amount=(invoice.get("amount_paid") if is_paid else invoice.get("amount_due")) or 0,
            currency_code=(invoice.get("currency") or "").upper(),
        )

        if policy == BillingEventPolicy.ATTACH_TO_EXISTING_ORDER:
            if not link.cart_id:
                raise MissingLinkageError(
                    f"Cannot process invoice {invoice.get('id')}: missing cart",
                    details={"invoice_id": invoice.get("id") or ""},
                )
            cart = self._commerce.get_cart(link.cart_id)
            payment_id = self._payment_creation.handle_subscription_cycle_payment(
                cart,
                amount_planned,
                psp_reference,
            )
            self._orders.add_payment_to_order(linked_payment.id, payment_id)
            return payment_id

        order = self._commerce.get_order_by_payment_id(linked_payment.id)
        if order is None:
            raise MissingLinkageError(
                f"No order found for payment {linked_payment.id}",
                details={"payment_id": linked_payment.id},
            )
        cart = self._orders.create_cart_from_order(order, self._current_unit_price(subscription))
        payment_id = self._payment_creation.create_payment(cart, amount_planned, psp_reference)
        self._payment_creation.link_to_cart(cart, payment_id)

        try:
            self._payment_creation.sync_metadata(
                cart,
                payment_id,
                subscription_reference=link.subscription_id,
            )
        except MetadataSyncError as e:
            logger.error(
                "Subscription %s still links payment %s instead of %s: %s",
                link.subscription_id,
                linked_payment.id,
                payment_id,
                e.message,
            )
        return payment_id

    @staticmethod
    def _current_unit_price(subscription: Any) -> Money | None:
        if not subscription or isinstance(subscription, str):
            return None
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            return None
        price = items[0].get("price") or {}
        if price.get("unit_amount") is None:
            return None
        return Money(
            cent_amount=price["unit_amount"],
            currency_code=(price.get("currency") or "").upper(),
        )

    def _complete_order(
        self,
        payment_id: str,
        fallback_payment_id: str,
        invoice: Mapping[str, Any],
        psp_reference: str,
    ) -> None:
        cart = self._commerce.get_cart_by_payment_id(payment_id)
        if cart is None and fallback_payment_id != payment_id:
            cart = self._commerce.get_cart_by_payment_id(fallback_payment_id)
        if cart is None:
            logger.warning("No cart found for payment %s, order not created", payment_id)
            return
        if cart.cart_state == CART_STATE_ORDERED:
            return

        logger.info("Updating cart %s address from invoice %s", cart.id, invoice.get("id"))
        cart = self._orders.update_cart_address(invoice.get("charge"), cart)
        self._orders.create_order(cart, psp_reference)

    def _process_subscription_refund(self, event: Mapping[str, Any]) -> EventProcessingResult:
        charge = event_object(event)
        invoice_id = object_id(charge.get("invoice"))
        update = self._refund_converter.convert(event)
        if not update.transactions:
            return EventProcessingResult.skipped(
                event.get("id", ""),
                event.get("type", ""),
                f"Charge {charge.get('id')} was never captured",
            )

        payments = self._commerce.find_payments_by_interface_id(update.psp_reference)
        if not payments and invoice_id:
            payments = self._commerce.find_payments_by_interface_id(invoice_id)
        if payments:
            payment_id = payments[0].id
        elif invoice_id:
            invoice = self._stripe.get_invoice_expanded(invoice_id)
            payment_id = self._subscription_link(invoice, invoice.get("subscription")).payment_id
        else:
            payment_id = None
        if not payment_id:
            raise MissingLinkageError(
                f"No payment found for refunded charge {charge.get('id')}",
                details={"charge_id": charge.get("id") or ""},
            )

        for payment_update in update.to_payment_updates(payment_id):
            self._commerce.update_payment(payment_update)
        logger.info("Refund of invoice %s applied to payment %s", invoice_id, payment_id)
        return EventProcessingResult.success(event.get("id", ""), event.get("type", ""), payment_id)

    def _process_upcoming_invoice(self, event: Mapping[str, Any]) -> EventProcessingResult:
        event_id = event.get("id", "")
        event_type = event.get("type", "")
        if not self._settings.subscription_price_sync_enabled:
            return EventProcessingResult.skipped(event_id, event_type, "Subscription price sync is disabled")

        subscription_id = object_id(event_object(event).get("subscription"))
        subscription = self._stripe.retrieve_subscription(subscription_id)
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            return EventProcessingResult.skipped(event_id, event_type, f"Subscription {subscription_id} has no items")

        item = items[0]
        price = item.get("price") or {}
        stripe_product_id = object_id(price.get("product"))
        product = self._stripe.retrieve_product(stripe_product_id)
        ct_product_id = (product.get("metadata") or {}).get(METADATA_PRODUCT_ID_FIELD)
        if not ct_product_id:
            return EventProcessingResult.skipped(
                event_id, event_type, f"Stripe product {stripe_product_id} is not linked to a platform product"
            )

        current = self._commerce.get_product_price(ct_product_id)
        if current is None:
            return EventProcessingResult.skipped(event_id, event_type, f"No platform price for product {ct_product_id}")

        if (
            current.cent_amount == price.get("unit_amount")
            and current.currency_code.lower() == (price.get("currency") or "").lower()
        ):
            logger.info("Subscription %s price is up to date", subscription_id)
            return EventProcessingResult.success(event_id, event_type)

        recurring = price.get("recurring") or {}
        new_price_id = self._prices.resolve_price_for_interval(
            stripe_product_id,
            current,
            recurring.get("interval") or "month",
            recurring.get("interval_count") or 1,
        )
        self._stripe.update_subscription(
            subscription_id,
            {
                "items": [{"id": item["id"], "price": new_price_id}],
                "proration_behavior": "none",
                "billing_cycle_anchor": "unchanged",
            },
            idempotency_key=new_idempotency_key(),
        )
        logger.info(
            "Subscription %s moved from price %s to %s",
            subscription_id,
            price.get("id"),
            new_price_id,
        )
        return EventProcessingResult.success(event_id, event_type)

    # === Helpers ===

    def _get_stripe_customer_id(self, customer_id: str | None) -> str:
        if not customer_id:
            raise SubscriptionValidationError("Subscriptions require a registered customer.")
        customer = self._commerce.get_customer(customer_id)
        if not customer.stripe_customer_id:
            logger.warning("No Stripe customer id found for customer %s", customer_id)
            raise SubscriptionValidationError(
                f"No Stripe customer ID found for customer {customer_id}",
                details={"customer_id": customer_id},
            )
        return customer.stripe_customer_id

    @staticmethod
    def _subscription_items(data: SubscriptionData) -> list[dict[str, str]]:
        items = [{"price": data.price_id}]
        if data.shipping_price_id:
            items.append({"price": data.shipping_price_id})
        return items

    @staticmethod
    def _with_amount(payment: Payment, cent_amount: int) -> Payment:
        return payment.model_copy(
            update={"amount_planned": payment.amount_planned.model_copy(update={"cent_amount": cent_amount})}
        )
