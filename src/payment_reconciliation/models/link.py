"""Typed view of the metadata link stored on Stripe objects.

Stripe metadata is a flat string map. PspLink keeps the key names at this
boundary so services never deal with raw metadata keys.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict

METADATA_PAYMENT_ID_FIELD = "ct_payment_id"
METADATA_CART_ID_FIELD = "cart_id"
METADATA_CUSTOMER_ID_FIELD = "ct_customer_id"
METADATA_PROJECT_KEY_FIELD = "ct_project_key"
METADATA_SUBSCRIPTION_ID_FIELD = "ct_subscription_id"

# Product/price metadata used for price reconciliation
METADATA_PRODUCT_ID_FIELD = "ct_product_id"
METADATA_VARIANT_SKU_FIELD = "ct_variant_sku"
METADATA_PRICE_ID_FIELD = "ct_price_id"
METADATA_SHIPPING_METHOD_ID_FIELD = "ct_shipping_method_id"

_FIELD_TO_KEY = {
    "payment_id": METADATA_PAYMENT_ID_FIELD,
    "cart_id": METADATA_CART_ID_FIELD,
    "customer_id": METADATA_CUSTOMER_ID_FIELD,
    "project_key": METADATA_PROJECT_KEY_FIELD,
    "subscription_id": METADATA_SUBSCRIPTION_ID_FIELD,
}


class PspLink(BaseModel):
    """Reference from a Stripe object back to the platform entities."""

    model_config = ConfigDict(frozen=True)

    payment_id: str | None = None
    cart_id: str | None = None
    customer_id: str | None = None
    project_key: str | None = None
    subscription_id: str | None = None

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, Any] | None) -> "PspLink":
        """Build a link from Stripe metadata, ignoring unrelated keys."""
        if not metadata:
            return cls()
        values = {
            field: metadata.get(key) or None
            for field, key in _FIELD_TO_KEY.items()
        }
        return cls(**values)

    def to_metadata(self) -> dict[str, str]:
        """Serialize to Stripe metadata, omitting unset fields."""
        return {
            key: value
            for field, key in _FIELD_TO_KEY.items()
            if (value := getattr(self, field))
        }

    def merge(self, other: "PspLink") -> "PspLink":
        """Return a link where fields set on ``other`` win."""
        return self.model_copy(update=other.model_dump(exclude_none=True))
