"""Commerce platform cart, order and customer models.

Only the fields the reconciliation engine reads or writes are modelled.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .payment import Money

SUBSCRIPTION_PRODUCT_TYPE = "payment-connector-subscription-information"
CART_STATE_ORDERED = "Ordered"


class Address(BaseModel):
    """Postal address on a cart or order."""

    first_name: str | None = None
    last_name: str | None = None
    street_name: str | None = None
    street_number: str | None = None
    additional_street_info: str | None = None
    postal_code: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = Field(default=None, description="ISO 3166-1 alpha-2")
    email: str | None = None
    phone: str | None = None


class Attribute(BaseModel):
    """A product variant attribute."""

    name: str
    value: Any = None


class ProductVariant(BaseModel):
    """The variant of a line item."""

    id: int = 1
    sku: str | None = None
    attributes: list[Attribute] = Field(default_factory=list)


class LineItemPrice(BaseModel):
    """The platform price selected for a line item."""

    id: str
    value: Money


class LineItem(BaseModel):
    """A cart or order line item."""

    id: str
    product_id: str
    name: dict[str, str] = Field(default_factory=dict, description="Localized product name")
    variant: ProductVariant = Field(default_factory=ProductVariant)
    price: LineItemPrice
    quantity: int = Field(default=1, ge=1)
    product_type_name: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_subscription(self) -> bool:
        return self.product_type_name == SUBSCRIPTION_PRODUCT_TYPE

    def localized_name(self, locale: str = "en-US") -> str:
        """Get the name for a locale, falling back to any available name."""
        if locale in self.name:
            return self.name[locale]
        if self.name:
            return next(iter(self.name.values()))
        return self.product_id


class ShippingInfo(BaseModel):
    """Shipping method selected on a cart."""

    shipping_method_id: str
    shipping_method_name: str
    price: Money


class CartDiscount(BaseModel):
    """Cart discount referenced by a discount code."""

    id: str
    value_type: str = Field(..., description="relative, absolute, fixed or giftLineItem")
    permyriad: int | None = None
    money: list[Money] = Field(default_factory=list)
    stacking_mode: str = "Stacking"


class DiscountCode(BaseModel):
    """A discount code applied to a cart."""

    id: str
    code: str
    name: dict[str, str] = Field(default_factory=dict)
    valid_until: datetime | None = None
    max_applications: int | None = None
    cart_discounts: list[CartDiscount] = Field(default_factory=list)


class Cart(BaseModel):
    """Commerce platform cart."""

    id: str
    version: int = 1
    cart_state: str = "Active"
    currency: str | None = None
    customer_id: str | None = None
    anonymous_id: str | None = None
    customer_email: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_info: ShippingInfo | None = None
    discount_codes: list[DiscountCode] = Field(default_factory=list)
    payment_ids: list[str] = Field(default_factory=list)


class LineItemDraft(BaseModel):
    """Line item to add to a new cart."""

    product_id: str
    variant_id: int
    quantity: int = 1
    external_price: Money | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class CartDraft(BaseModel):
    """Data required to create a cart."""

    currency: str
    customer_id: str | None = None
    anonymous_id: str | None = None
    customer_email: str | None = None
    line_items: list[LineItemDraft] = Field(default_factory=list)
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_method_id: str | None = None


class Order(BaseModel):
    """Commerce platform order."""

    id: str
    version: int = 1
    cart_id: str | None = None
    customer_id: str | None = None
    anonymous_id: str | None = None
    customer_email: str | None = None
    currency: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_info: ShippingInfo | None = None
    payment_ids: list[str] = Field(default_factory=list)


class Customer(BaseModel):
    """Commerce platform customer."""

    id: str
    email: str | None = None
    stripe_customer_id: str | None = Field(
        default=None,
        description="Stripe customer id stored in the customer's custom fields",
        examples=["cus_ABC123"],
    )
