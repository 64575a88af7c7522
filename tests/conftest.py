"""Pytest configuration and fixtures for payment reconciliation tests.

This module provides reusable fixtures for testing:
- An in-memory commerce platform implementing CommercePlatformClient
- A mocked StripeService (no Stripe API calls are made)
- Services wired against both
"""

import os
from unittest.mock import MagicMock

import pytest

from fakes import TEST_CUSTOMER_ID, TEST_PROJECT_KEY, TEST_STRIPE_CUSTOMER_ID, FakeCommercePlatform
from payment_reconciliation.config import Settings
from payment_reconciliation.models.cart import Customer
from payment_reconciliation.services.coupon_service import CouponService
from payment_reconciliation.services.order_service import OrderService
from payment_reconciliation.services.payment_creation_service import PaymentCreationService
from payment_reconciliation.services.payment_service import PaymentService
from payment_reconciliation.services.price_service import PriceService
from payment_reconciliation.services.stripe_service import StripeService
from payment_reconciliation.services.subscription_service import SubscriptionService
from payment_reconciliation.services.webhook_handler import WebhookHandler

# === Environment Setup ===

os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")


# === Fixtures ===


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="dev",
        project_key=TEST_PROJECT_KEY,
        payment_link_wait_seconds=0.5,
        payment_link_max_attempts=1,
        merchant_return_url="https://shop.example.com/return",
    )


@pytest.fixture
def commerce() -> FakeCommercePlatform:
    platform = FakeCommercePlatform()
    platform.customers[TEST_CUSTOMER_ID] = Customer(
        id=TEST_CUSTOMER_ID,
        email="customer@example.com",
        stripe_customer_id=TEST_STRIPE_CUSTOMER_ID,
    )
    return platform


@pytest.fixture
def mock_stripe() -> MagicMock:
    """StripeService double; configure return values per test."""
    return MagicMock(spec=StripeService)


@pytest.fixture
def payment_creation(commerce, mock_stripe, settings) -> PaymentCreationService:
    return PaymentCreationService(commerce, mock_stripe, settings)


@pytest.fixture
def payment_service(commerce, mock_stripe) -> PaymentService:
    return PaymentService(commerce, mock_stripe)


@pytest.fixture
def sleep_calls() -> list[float]:
    return []


@pytest.fixture
def subscription_service(
    commerce,
    mock_stripe,
    settings,
    payment_creation,
    sleep_calls,
) -> SubscriptionService:
    return SubscriptionService(
        commerce,
        mock_stripe,
        settings,
        payment_creation,
        price_service=PriceService(mock_stripe),
        coupon_service=CouponService(mock_stripe),
        order_service=OrderService(commerce),
        sleep=sleep_calls.append,
    )


@pytest.fixture
def webhook_handler(payment_service, subscription_service) -> WebhookHandler:
    return WebhookHandler(payment_service, subscription_service)
