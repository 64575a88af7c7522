"""Subscription configuration and request/response models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .cart import Cart
from .enums import SubscriptionOutcome
from .payment import Money


class SubscriptionAttributes(BaseModel):
    """Subscription settings read from the product variant attributes."""

    model_config = ConfigDict(extra="ignore")

    description: str | None = None
    recurring_interval: str = Field(default="month", description="day, week, month or year")
    recurring_interval_count: int = Field(default=1, ge=1)
    off_session: bool = False
    collection_method: str = Field(
        default="charge_automatically",
        description="charge_automatically or send_invoice",
    )
    days_until_due: int | None = None
    cancel_at_period_end: bool | None = None
    cancel_at: str | None = Field(default=None, description="ISO date or datetime")
    billing_cycle_anchor_day: int | None = Field(default=None, ge=1, le=31)
    billing_cycle_anchor_time: str | None = Field(default=None, examples=["13:30:00"])
    billing_cycle_anchor_date: str | None = None
    trial_period_days: int | None = None
    trial_end_date: str | None = None
    missing_payment_method_at_trial_end: str | None = None
    proration_behavior: str | None = None


class SubscriptionTypes(BaseModel):
    """Flags derived from the Stripe subscription parameters."""

    has_trial: bool = False
    has_anchor_days: bool = False
    has_free_anchor_days: bool = False
    has_prorations: bool = False
    is_send_invoice: bool = False

    @property
    def has_no_invoice(self) -> bool:
        # Free anchor days do not produce a first invoice
        return self.has_free_anchor_days

    @property
    def is_setup_mode(self) -> bool:
        """Whether the checkout collects a payment method through a setup intent."""
        return self.has_trial or self.has_free_anchor_days or self.is_send_invoice


class ConfirmSubscriptionRequest(BaseModel):
    """Confirmation sent by the checkout once the first payment was handled."""

    subscription_id: str
    payment_reference: str
    payment_intent_id: str | None = None


class SetupIntentResponse(BaseModel):
    """Response of create_setup_intent."""

    client_secret: str
    merchant_return_url: str
    billing_address: str | None = None


class SubscriptionResponse(BaseModel):
    """Response of create_subscription."""

    subscription_id: str
    cart_id: str
    client_secret: str
    payment_reference: str
    merchant_return_url: str
    billing_address: str | None = None


class SubscriptionFromSetupIntentResponse(BaseModel):
    """Response of create_subscription_from_setup_intent."""

    subscription_id: str
    payment_reference: str


class SubscriptionModifyResponse(BaseModel):
    """Response of a customer-facing subscription mutation."""

    id: str
    status: str
    outcome: SubscriptionOutcome
    message: str


class SubscriptionData(BaseModel):
    """Everything needed to create a subscription for a cart.

    Price ids and amounts are only present when full data was prepared.
    """

    cart: Cart
    stripe_customer_id: str
    subscription_params: dict[str, Any]
    attributes: SubscriptionAttributes
    merchant_return_url: str
    billing_address: str | None = None
    amount_planned: Money | None = None
    line_item_amount: Money | None = None
    price_id: str | None = None
    shipping_price_id: str | None = None
