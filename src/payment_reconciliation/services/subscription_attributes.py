"""Maps product variant attributes to Stripe subscription parameters."""

import datetime as dt
from typing import Any

from ..models.cart import Attribute
from ..models.subscription import SubscriptionAttributes, SubscriptionTypes

DEFAULT_PRORATION_BEHAVIOR = "create_prorations"
SEND_INVOICE = "send_invoice"


def _attribute_value(value: Any) -> Any:
    # Enum attributes arrive as {"key": ..., "label": ...}
    if isinstance(value, dict) and "key" in value:
        return value["key"]
    return value


def transform_variant_attributes(attributes: list[Attribute] | None) -> SubscriptionAttributes:
    """Read the subscription settings from a variant's attribute list."""
    values = {
        attribute.name: _attribute_value(attribute.value)
        for attribute in attributes or []
        if attribute.value is not None
    }
    return SubscriptionAttributes.model_validate(values)


def convert_date_to_unix_timestamp(value: str) -> int:
    """Convert an ISO date or datetime to a Unix timestamp.

    Values without a timezone are read as UTC.
    """
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return int(parsed.timestamp())


def parse_time_string(value: str) -> dict[str, int]:
    """Split an ``HH:MM[:SS]`` string into hour, minute and second."""
    parts = [int(part) for part in value.strip().split(":")]
    parts += [0] * (3 - len(parts))
    hour, minute, second = parts[:3]
    return {"hour": hour, "minute": minute, "second": second}


def get_billing_anchor(attributes: SubscriptionAttributes) -> dict[str, Any]:
    if attributes.billing_cycle_anchor_day and attributes.billing_cycle_anchor_time:
        return {
            "billing_cycle_anchor_config": {
                "day_of_month": attributes.billing_cycle_anchor_day,
                **parse_time_string(attributes.billing_cycle_anchor_time),
            }
        }
    if attributes.billing_cycle_anchor_day:
        return {
            "billing_cycle_anchor_config": {
                "day_of_month": attributes.billing_cycle_anchor_day,
            }
        }
    if attributes.billing_cycle_anchor_date:
        return {
            "billing_cycle_anchor": convert_date_to_unix_timestamp(attributes.billing_cycle_anchor_date),
        }
    return {}


def get_trial_settings(attributes: SubscriptionAttributes) -> dict[str, Any]:
    settings: dict[str, Any] = {}
    if attributes.missing_payment_method_at_trial_end:
        settings["trial_settings"] = {
            "end_behavior": {
                "missing_payment_method": attributes.missing_payment_method_at_trial_end,
            }
        }

    if attributes.trial_period_days:
        return {"trial_period_days": attributes.trial_period_days, **settings}
    if attributes.trial_end_date:
        return {"trial_end": convert_date_to_unix_timestamp(attributes.trial_end_date), **settings}
    return {}


def get_cancel_at(attributes: SubscriptionAttributes) -> dict[str, Any]:
    if attributes.cancel_at_period_end:
        return {"cancel_at_period_end": True}
    if attributes.cancel_at:
        return {"cancel_at": convert_date_to_unix_timestamp(attributes.cancel_at)}
    return {}


def get_subscription_params(attributes: SubscriptionAttributes) -> dict[str, Any]:
    """Build Stripe subscription create parameters from the attributes.

    Args:
        attributes: Subscription settings of the cart's line item.

    Returns:
        Subscription parameters without customer, items or metadata.
        Unset options are omitted.
    """
    params: dict[str, Any] = {
        "off_session": attributes.off_session,
        "collection_method": attributes.collection_method,
        "proration_behavior": attributes.proration_behavior or DEFAULT_PRORATION_BEHAVIOR,
    }
    if attributes.description:
        params["description"] = attributes.description
    if attributes.collection_method == SEND_INVOICE:
        params["days_until_due"] = attributes.days_until_due if attributes.days_until_due is not None else 1

    params.update(get_billing_anchor(attributes))
    params.update(get_trial_settings(attributes))
    params.update(get_cancel_at(attributes))
    return params


def get_subscription_types(params: dict[str, Any]) -> SubscriptionTypes:
    """Derive the subscription flags from Stripe subscription parameters."""
    has_anchor_days = bool(params.get("billing_cycle_anchor") or params.get("billing_cycle_anchor_config"))
    proration_behavior = params.get("proration_behavior")
    return SubscriptionTypes(
        has_trial=bool(params.get("trial_period_days") or params.get("trial_end")),
        has_anchor_days=has_anchor_days,
        has_free_anchor_days=has_anchor_days and proration_behavior == "none",
        has_prorations=has_anchor_days and proration_behavior == DEFAULT_PRORATION_BEHAVIOR,
        is_send_invoice=params.get("collection_method") == SEND_INVOICE,
    )
