"""Runtime configuration read from environment variables.

Secrets are not part of Settings; the Stripe secret key is read from SSM
Parameter Store by StripeService.
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field

from .models.enums import BillingEventPolicy, CaptureMethod

DEFAULT_STRIPE_API_VERSION = "2024-09-30.acacia"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Engine settings.

    The billing event policy is read once per event by the subscription
    orchestrator and applied to the whole event.
    """

    environment: str = Field(default="dev", description="Deployment environment (dev, prod)")
    project_key: str = Field(default="", description="Commerce platform project key")
    payment_interface: str = Field(default="stripe")
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    stripe_api_version: str = DEFAULT_STRIPE_API_VERSION
    billing_event_policy: BillingEventPolicy = BillingEventPolicy.CREATE_NEW_ORDER
    subscription_price_sync_enabled: bool = False
    payment_link_wait_seconds: float = Field(default=10.0, ge=0)
    payment_link_max_attempts: int = Field(default=1, ge=1)
    merchant_return_url: str = ""

    @property
    def stripe_secret_key_parameter(self) -> str:
        """SSM parameter holding the Stripe secret key."""
        return f"/payments/{self.environment}/stripe/secret_key"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment.

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value.
        """
        env = os.environ
        values: dict = {
            "environment": env.get("ENVIRONMENT", "dev"),
            "project_key": env.get("CTP_PROJECT_KEY", ""),
            "payment_interface": env.get("PAYMENT_INTERFACE") or "stripe",
            "stripe_api_version": env.get("STRIPE_API_VERSION") or DEFAULT_STRIPE_API_VERSION,
            "subscription_price_sync_enabled": _env_bool("SUBSCRIPTION_PRICE_SYNC_ENABLED", False),
            "merchant_return_url": env.get("MERCHANT_RETURN_URL", ""),
        }
        if env.get("STRIPE_CAPTURE_METHOD"):
            values["capture_method"] = env["STRIPE_CAPTURE_METHOD"]
        if env.get("SUBSCRIPTION_BILLING_POLICY"):
            values["billing_event_policy"] = env["SUBSCRIPTION_BILLING_POLICY"]
        if env.get("PAYMENT_LINK_WAIT_SECONDS"):
            values["payment_link_wait_seconds"] = env["PAYMENT_LINK_WAIT_SECONDS"]
        if env.get("PAYMENT_LINK_MAX_ATTEMPTS"):
            values["payment_link_max_attempts"] = env["PAYMENT_LINK_MAX_ATTEMPTS"]
        return cls.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide Settings, read from the environment once.

    Returns:
        Settings: Shared settings instance.
    """
    return Settings.from_env()
