"""Stripe product and price reconciliation for subscriptions.

Prices are matched to platform prices through metadata. A Stripe price
that no longer matches is deprecated (deactivated and renamed), never
deleted, and a replacement is created.
"""

from collections.abc import Mapping
from typing import Any

from ..models.cart import LineItem, ShippingInfo
from ..models.link import (
    METADATA_PRICE_ID_FIELD,
    METADATA_PRODUCT_ID_FIELD,
    METADATA_SHIPPING_METHOD_ID_FIELD,
    METADATA_VARIANT_SKU_FIELD,
)
from ..models.payment import Money
from ..models.subscription import SubscriptionAttributes
from ..utils.logging import get_logger
from .stripe_service import StripeService, new_idempotency_key

logger = get_logger(__name__)

DEPRECATED_PREFIX = "deprecated_"


def metadata_query(**fields: str) -> str:
    """Build a Stripe search query matching every metadata field."""
    return " AND ".join(f"metadata['{key}']:'{value}'" for key, value in fields.items())


def price_matches(
    price: Mapping[str, Any],
    amount: Money,
    interval: str,
    interval_count: int,
) -> bool:
    """Whether an active Stripe price has the amount and recurrence wanted."""
    recurring = price.get("recurring") or {}
    return bool(
        price.get("active")
        and price.get("unit_amount") == amount.cent_amount
        and (price.get("currency") or "").lower() == amount.currency_code.lower()
        and recurring.get("interval") == interval
        and recurring.get("interval_count") == interval_count
    )


class PriceService:
    """Finds, creates and deprecates Stripe prices and products."""

    def __init__(self, stripe_service: StripeService) -> None:
        self._stripe = stripe_service

    def get_subscription_price_id(
        self,
        line_item: LineItem,
        amount: Money,
        attributes: SubscriptionAttributes,
    ) -> str:
        """Get the Stripe price for a subscription line item.

        Reuses the price found through the variant SKU and platform price id
        when it is active and matches amount, interval and interval count.
        Otherwise the found price is deprecated and a new one is created.

        Args:
            line_item: The subscription line item.
            amount: Unit amount of the line item.
            attributes: Subscription settings of the variant.

        Returns:
            The Stripe price id.
        """
        metadata = {
            METADATA_VARIANT_SKU_FIELD: line_item.variant.sku or "",
            METADATA_PRICE_ID_FIELD: line_item.price.id,
        }
        price = self.search_price_by_metadata(metadata)
        if price is not None:
            if price_matches(
                price,
                amount,
                attributes.recurring_interval,
                attributes.recurring_interval_count,
            ):
                logger.info("Found existing Stripe price %s", price["id"])
                return price["id"]
            self.disable_price(price, metadata)

        logger.info("A new Stripe price will be created for line item %s", line_item.id)
        product_id = self.get_or_create_product(
            {METADATA_PRODUCT_ID_FIELD: line_item.product_id},
            name=line_item.localized_name(),
        )
        return self.create_price(
            product_id=product_id,
            amount=amount,
            interval=attributes.recurring_interval,
            interval_count=attributes.recurring_interval_count,
            metadata=metadata,
            nickname=attributes.description,
        )

    def get_shipping_price_id(
        self,
        shipping_info: ShippingInfo | None,
        attributes: SubscriptionAttributes,
    ) -> str | None:
        """Get the Stripe price billing shipping as a subscription item.

        Returns:
            The price id, or None when the cart has no priced shipping.
        """
        if shipping_info is None or shipping_info.price.cent_amount <= 0:
            return None

        metadata = {METADATA_SHIPPING_METHOD_ID_FIELD: shipping_info.shipping_method_id}
        price = self.search_price_by_metadata(metadata)
        if price is not None:
            if price_matches(
                price,
                shipping_info.price,
                attributes.recurring_interval,
                attributes.recurring_interval_count,
            ):
                logger.info("Found existing Stripe shipping price %s", price["id"])
                return price["id"]
            self.disable_price(price, metadata)

        product_id = self.get_or_create_product(
            metadata,
            name=shipping_info.shipping_method_name,
        )
        return self.create_price(
            product_id=product_id,
            amount=shipping_info.price,
            interval=attributes.recurring_interval,
            interval_count=attributes.recurring_interval_count,
            metadata=metadata,
            nickname=shipping_info.shipping_method_name,
        )

    def search_price_by_metadata(self, metadata: dict[str, str]) -> Any | None:
        prices = self._stripe.search_prices(metadata_query(**metadata))
        if prices and prices[0].get("id"):
            return prices[0]
        return None

    def disable_price(self, price: Mapping[str, Any], metadata: dict[str, str]) -> None:
        """Deactivate a price and move its metadata out of the search space."""
        nickname = price.get("nickname")
        self._stripe.update_price(
            price["id"],
            {
                "nickname": f"DEPRECATED - {nickname}" if nickname else "DEPRECATED PRICE",
                "active": False,
                "metadata": {key: f"{DEPRECATED_PREFIX}{value}" for key, value in metadata.items()},
            },
            idempotency_key=new_idempotency_key(),
        )
        logger.warning("Existing Stripe price %s has been deprecated", price["id"])

    def get_or_create_product(self, metadata: dict[str, str], *, name: str) -> str:
        products = self._stripe.search_products(metadata_query(**metadata))
        if products and products[0].get("id"):
            logger.info("Found existing Stripe product %s", products[0]["id"])
            return products[0]["id"]

        logger.info("No Stripe product found for %s, creating one", metadata)
        product = self._stripe.create_product(
            {"name": name, "metadata": metadata},
            idempotency_key=new_idempotency_key(),
        )
        return product["id"]

    def create_price(
        self,
        *,
        product_id: str,
        amount: Money,
        interval: str,
        interval_count: int,
        metadata: dict[str, str] | None = None,
        nickname: str | None = None,
    ) -> str:
        params: dict[str, Any] = {
            "currency": amount.currency_code.lower(),
            "product": product_id,
            "unit_amount": amount.cent_amount,
            "recurring": {"interval": interval, "interval_count": interval_count},
        }
        if metadata:
            params["metadata"] = metadata
        if nickname:
            params["nickname"] = nickname

        price = self._stripe.create_price(params, idempotency_key=new_idempotency_key())
        logger.info(
            "Stripe price %s created for product %s, amount %d",
            price["id"],
            product_id,
            amount.cent_amount,
        )
        return price["id"]

    def resolve_price_for_interval(
        self,
        product_id: str,
        amount: Money,
        interval: str,
        interval_count: int,
    ) -> str:
        """Find an active price of a product with the given amount and recurrence, or create one."""
        prices = self._stripe.search_prices(f"product:'{product_id}' AND active:'true'")
        for price in prices:
            if price_matches(price, amount, interval, interval_count):
                logger.info("Reusing Stripe price %s of product %s", price["id"], product_id)
                return price["id"]
        return self.create_price(
            product_id=product_id,
            amount=amount,
            interval=interval,
            interval_count=interval_count,
        )
