"""Translates cart discount codes into Stripe coupons for subscription creation."""

from collections.abc import Mapping
from typing import Any

from ..models.cart import Cart, DiscountCode
from ..models.errors import PSPApiError, SubscriptionValidationError
from ..utils.logging import get_logger
from .stripe_service import StripeService, new_idempotency_key
from .subscription_attributes import convert_date_to_unix_timestamp

logger = get_logger(__name__)

UNSUPPORTED_DISCOUNT_TYPES = ("fixed", "giftLineItem")
STOP_AFTER_THIS_DISCOUNT = "StopAfterThisDiscount"


class CouponService:
    """Keeps one Stripe coupon per platform discount code, keyed by its id."""

    def __init__(self, stripe_service: StripeService) -> None:
        self._stripe = stripe_service

    def get_stripe_coupons(self, cart: Cart) -> list[dict[str, str]] | None:
        """Stripe ``discounts`` for the cart's discount codes.

        An existing coupon that no longer matches its discount code is
        deleted and created again.

        Returns:
            The discounts parameter, or None when the cart has no codes.

        Raises:
            SubscriptionValidationError: If a discount cannot be expressed
                as a Stripe coupon.
        """
        if not cart.discount_codes:
            return None

        coupons: list[dict[str, str]] = []
        for discount in cart.discount_codes:
            if len(discount.cart_discounts) != 1:
                raise SubscriptionValidationError(
                    f'Discount "{discount.id}" has multiple cart discounts. Not supported by Stripe.'
                )

            stripe_coupon = self.get_stripe_coupon(discount.id)
            if stripe_coupon is not None and self.validate_discount_code(discount, stripe_coupon):
                logger.info('Stripe coupon "%s" is valid', stripe_coupon["id"])
                coupons.append({"coupon": stripe_coupon["id"]})
            else:
                if stripe_coupon is not None:
                    self.delete_stripe_coupon(discount.id)
                coupons.append({"coupon": self.create_stripe_coupon(discount)})

            if discount.cart_discounts[0].stacking_mode == STOP_AFTER_THIS_DISCOUNT:
                break
        return coupons

    def get_stripe_coupon(self, coupon_id: str) -> Any | None:
        try:
            return self._stripe.retrieve_coupon(coupon_id)
        except PSPApiError as e:
            if e.http_status != 404:
                raise
            logger.warning("Stripe coupon not found: %s", coupon_id)
            return None

    def create_stripe_coupon(self, discount: DiscountCode) -> str:
        config = self.get_discount_config(discount)
        params: dict[str, Any] = {"id": discount.id, "duration": "once", **config["amount"]}
        for key in ("name", "currency", "max_redemptions", "redeem_by"):
            if config[key] is not None:
                params[key] = config[key]

        coupon = self._stripe.create_coupon(params, idempotency_key=new_idempotency_key())
        logger.info('Stripe coupon "%s" created', coupon["id"])
        return coupon["id"]

    def delete_stripe_coupon(self, coupon_id: str) -> None:
        self._stripe.delete_coupon(coupon_id)
        logger.info('Stripe coupon "%s" is no longer valid and has been deleted', coupon_id)

    def validate_discount_code(self, discount: DiscountCode, stripe_coupon: Mapping[str, Any]) -> bool:
        """Whether the Stripe coupon still matches the platform discount."""
        if not stripe_coupon.get("valid") or stripe_coupon.get("deleted"):
            return False

        config = self.get_discount_config(discount)
        amount = config["amount"]
        if "percent_off" in amount and stripe_coupon.get("percent_off") != amount["percent_off"]:
            return False
        if "amount_off" in amount and stripe_coupon.get("amount_off") != amount["amount_off"]:
            return False
        if config["redeem_by"] and stripe_coupon.get("redeem_by") != config["redeem_by"]:
            return False
        if config["currency"] and (stripe_coupon.get("currency") or "").lower() != config["currency"]:
            return False
        if config["max_redemptions"] and stripe_coupon.get("max_redemptions") != config["max_redemptions"]:
            return False
        return True

    @staticmethod
    def get_discount_config(discount: DiscountCode) -> dict[str, Any]:
        """Coupon settings derived from a discount code.

        Raises:
            SubscriptionValidationError: For fixed-price or gift discounts.
        """
        cart_discount = discount.cart_discounts[0]
        if cart_discount.value_type in UNSUPPORTED_DISCOUNT_TYPES:
            raise SubscriptionValidationError(
                f"Cart discount type {cart_discount.value_type} is not supported"
            )

        amount: dict[str, Any] = {}
        currency = None
        if cart_discount.value_type == "relative":
            amount["percent_off"] = (cart_discount.permyriad or 0) / 100
        elif cart_discount.value_type == "absolute" and cart_discount.money:
            amount["amount_off"] = cart_discount.money[0].cent_amount
            currency = cart_discount.money[0].currency_code.lower()

        return {
            "amount": amount,
            "currency": currency,
            "name": discount.name.get("en-US") or discount.name.get("en"),
            "max_redemptions": discount.max_applications,
            "redeem_by": (
                convert_date_to_unix_timestamp(discount.valid_until.isoformat())
                if discount.valid_until
                else None
            ),
        }
