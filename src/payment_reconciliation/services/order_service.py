"""Order creation and cart cloning for subscription billing cycles."""

from collections.abc import Mapping
from typing import Any

from ..models.cart import Address, Cart, CartDraft, LineItemDraft, Order
from ..models.errors import MissingLinkageError
from ..models.payment import Money
from ..utils.logging import get_logger
from .commerce import SET_BILLING_ADDRESS, CommercePlatformClient

logger = get_logger(__name__)


def address_from_billing_details(billing_details: Mapping[str, Any] | None) -> Address | None:
    """Convert a Stripe charge's billing_details to a platform address."""
    if not billing_details:
        return None
    stripe_address = billing_details.get("address") or {}
    if not stripe_address.get("country"):
        return None

    first_name, last_name = None, None
    if billing_details.get("name"):
        first_name, _, last_name = billing_details["name"].partition(" ")

    return Address(
        first_name=first_name or None,
        last_name=last_name or None,
        street_name=stripe_address.get("line1"),
        additional_street_info=stripe_address.get("line2"),
        postal_code=stripe_address.get("postal_code"),
        city=stripe_address.get("city"),
        state=stripe_address.get("state"),
        country=stripe_address.get("country"),
        email=billing_details.get("email"),
        phone=billing_details.get("phone"),
    )


class OrderService:
    """Creates orders and carts on the commerce platform."""

    def __init__(self, commerce: CommercePlatformClient) -> None:
        self._commerce = commerce

    def create_order(self, cart: Cart, psp_reference: str | None = None) -> Order:
        order = self._commerce.create_order_from_cart(cart)
        logger.info("Order %s created from cart %s (%s)", order.id, cart.id, psp_reference)
        return order

    def add_payment_to_order(self, existing_payment_id: str, payment_id: str) -> Order:
        """Attach a new cycle Payment to the order of an existing Payment.

        Raises:
            MissingLinkageError: If no order holds the existing Payment.
        """
        order = self._commerce.get_order_by_payment_id(existing_payment_id)
        if order is None:
            raise MissingLinkageError(
                f"No order found for payment {existing_payment_id}",
                details={"payment_id": existing_payment_id},
            )
        updated = self._commerce.add_order_payment(order, payment_id)
        logger.info("Payment %s added to order %s", payment_id, order.id)
        return updated

    def create_cart_from_order(self, order: Order, unit_price: Money | None = None) -> Cart:
        """Clone an order into a new cart for the next billing cycle.

        Args:
            order: The order to clone.
            unit_price: External unit price for the line items, usually the
                subscription's current Stripe price.

        Returns:
            The new cart.
        """
        currency = order.currency or (unit_price.currency_code if unit_price else None)
        if currency is None and order.line_items:
            currency = order.line_items[0].price.value.currency_code

        draft = CartDraft(
            currency=currency or "",
            customer_id=order.customer_id,
            anonymous_id=None if order.customer_id else order.anonymous_id,
            customer_email=order.customer_email,
            line_items=[
                LineItemDraft(
                    product_id=item.product_id,
                    variant_id=item.variant.id,
                    quantity=item.quantity,
                    external_price=unit_price,
                    custom_fields=item.custom_fields,
                )
                for item in order.line_items
            ],
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            shipping_method_id=order.shipping_info.shipping_method_id if order.shipping_info else None,
        )
        cart = self._commerce.create_cart(draft)
        logger.info("Cart %s created from order %s", cart.id, order.id)
        return cart

    def update_cart_address(self, charge: Any, cart: Cart) -> Cart:
        """Set the cart billing address from the charge's billing details.

        The cart is returned unchanged when the charge carries no address.
        """
        if not charge or isinstance(charge, str):
            return cart
        address = address_from_billing_details(charge.get("billing_details"))
        if address is None:
            return cart
        return self._commerce.update_cart(
            cart,
            [{"action": SET_BILLING_ADDRESS, "address": address.model_dump(exclude_none=True)}],
        )
