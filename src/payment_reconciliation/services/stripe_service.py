"""Stripe API access for payment intents, subscriptions, invoices and prices.

Provides integration with Stripe using the v8+ StripeClient pattern.
The secret key is read from SSM Parameter Store on first use.
"""

import uuid
from typing import Any, Callable

import stripe
from stripe import StripeClient

from ..config import Settings
from ..models.errors import PSPApiError
from ..utils.logging import get_logger
from .ssm_service import SSMService, SSMServiceError

logger = get_logger(__name__)

INVOICE_EXPAND_FIELDS = ["payment_intent", "subscription", "charge"]


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


def wrap_stripe_error(
    exc: Exception,
    error_cls: type[PSPApiError] = PSPApiError,
) -> PSPApiError:
    """Build a PSPApiError from any exception raised by a Stripe call.

    Args:
        exc: The raised exception, usually a stripe.StripeError.
        error_cls: PSPApiError subclass to build.

    Returns:
        The wrapped error, carrying Stripe's code, HTTP status and request id.
    """
    if isinstance(exc, error_cls):
        return exc
    if isinstance(exc, stripe.StripeError):
        return error_cls(
            exc.user_message or str(exc) or exc.__class__.__name__,
            stripe_error_code=exc.code,
            http_status=exc.http_status,
            request_id=exc.request_id,
        )
    if isinstance(exc, PSPApiError):
        return error_cls(
            exc.message,
            stripe_error_code=exc.stripe_error_code,
            http_status=exc.http_status,
            request_id=exc.request_id,
        )
    return error_cls(str(exc) or exc.__class__.__name__)


class StripeService:
    """Service for Stripe API operations.

    Every mutating call sends an idempotency key; callers may pass their
    own, otherwise a fresh one is generated per call.

    Usage:
        stripe_svc = StripeService(settings)
        intent = stripe_svc.capture_payment_intent(
            "pi_123", amount_to_capture=1000, idempotency_key=key
        )
    """

    def __init__(
        self,
        settings: Settings,
        ssm: SSMService | None = None,
    ) -> None:
        """Initialize the service without contacting SSM or Stripe.

        Args:
            settings: Engine settings (environment and API version).
            ssm: SSM service used to read the secret key.
        """
        self._settings = settings
        self._ssm = ssm
        self._client: StripeClient | None = None

    def _get_client(self) -> StripeClient:
        """Get or create the Stripe client (lazy initialization).

        Raises:
            PSPApiError: If credentials cannot be retrieved.
        """
        if self._client is None:
            if self._ssm is None:
                self._ssm = SSMService()
            try:
                secret_key = self._ssm.get_parameter(
                    self._settings.stripe_secret_key_parameter
                )
            except SSMServiceError as e:
                raise PSPApiError(
                    f"Failed to initialize Stripe client: {e}",
                    http_status=500,
                ) from e
            self._client = StripeClient(
                secret_key,
                stripe_version=self._settings.stripe_api_version,
            )
            logger.info(
                "Stripe client initialized for environment: %s",
                self._settings.environment,
            )
        return self._client

    def _execute(self, operation: str, call: Callable[[StripeClient], Any]) -> Any:
        client = self._get_client()
        try:
            return call(client)
        except stripe.StripeError as e:
            logger.error(
                "Stripe %s failed: %s (code: %s)",
                operation,
                str(e),
                getattr(e, "code", None),
            )
            raise wrap_stripe_error(e) from e

    @staticmethod
    def _options(idempotency_key: str | None) -> dict[str, str]:
        return {"idempotency_key": idempotency_key or new_idempotency_key()}

    # === Payment intents ===

    def create_payment_intent(self, params: dict, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "payment_intents.create",
            lambda c: c.payment_intents.create(params=params, options=self._options(idempotency_key)),
        )

    def update_payment_intent(
        self,
        payment_intent_id: str,
        params: dict,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        return self._execute(
            "payment_intents.update",
            lambda c: c.payment_intents.update(
                payment_intent_id,
                params=params,
                options=self._options(idempotency_key),
            ),
        )

    def capture_payment_intent(
        self,
        payment_intent_id: str,
        *,
        amount_to_capture: int,
        idempotency_key: str | None = None,
    ) -> Any:
        """Capture an authorized payment intent.

        Args:
            payment_intent_id: Stripe PaymentIntent ID (pi_xxx).
            amount_to_capture: Amount in minor units.
            idempotency_key: Key for safe retries.

        Returns:
            The updated PaymentIntent.

        Raises:
            PSPApiError: If Stripe rejects the capture.
        """
        logger.info(
            "Capturing PaymentIntent %s, amount %d",
            payment_intent_id,
            amount_to_capture,
        )
        return self._execute(
            "payment_intents.capture",
            lambda c: c.payment_intents.capture(
                payment_intent_id,
                params={"amount_to_capture": amount_to_capture},
                options=self._options(idempotency_key),
            ),
        )

    def cancel_payment_intent(
        self,
        payment_intent_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        logger.info("Canceling PaymentIntent %s", payment_intent_id)
        return self._execute(
            "payment_intents.cancel",
            lambda c: c.payment_intents.cancel(
                payment_intent_id,
                options=self._options(idempotency_key),
            ),
        )

    # === Refunds ===

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Any:
        """Create a refund for a payment intent.

        Args:
            payment_intent_id: Stripe PaymentIntent ID (pi_xxx).
            amount_cents: Refund amount in minor units.
            idempotency_key: Key for safe retries.
            metadata: Metadata stored on the refund.

        Returns:
            The created Refund.

        Raises:
            PSPApiError: If refund creation fails.
        """
        params: dict = {"payment_intent": payment_intent_id, "amount": amount_cents}
        if metadata:
            params["metadata"] = metadata

        logger.info(
            "Creating refund for PaymentIntent %s, amount %d cents",
            payment_intent_id,
            amount_cents,
        )
        return self._execute(
            "refunds.create",
            lambda c: c.refunds.create(params=params, options=self._options(idempotency_key)),
        )

    # === Subscriptions ===

    def create_subscription(self, params: dict, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "subscriptions.create",
            lambda c: c.subscriptions.create(params=params, options=self._options(idempotency_key)),
        )

    def retrieve_subscription(self, subscription_id: str, *, expand: list[str] | None = None) -> Any:
        params = {"expand": expand} if expand else None
        return self._execute(
            "subscriptions.retrieve",
            lambda c: c.subscriptions.retrieve(subscription_id, params=params),
        )

    def update_subscription(
        self,
        subscription_id: str,
        params: dict,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        return self._execute(
            "subscriptions.update",
            lambda c: c.subscriptions.update(
                subscription_id,
                params=params,
                options=self._options(idempotency_key),
            ),
        )

    def list_subscriptions(self, stripe_customer_id: str) -> list:
        """List all subscriptions of a Stripe customer, any status."""
        result = self._execute(
            "subscriptions.list",
            lambda c: c.subscriptions.list(
                params={"customer": stripe_customer_id, "status": "all", "limit": 100}
            ),
        )
        return list(result.get("data", []))

    def cancel_subscription(
        self,
        subscription_id: str,
        params: dict,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        logger.info("Canceling subscription %s", subscription_id)
        return self._execute(
            "subscriptions.cancel",
            lambda c: c.subscriptions.cancel(
                subscription_id,
                params=params,
                options=self._options(idempotency_key),
            ),
        )

    # === Invoices ===

    def get_invoice_expanded(self, invoice_id: str) -> Any:
        """Retrieve an invoice with its payment intent, subscription and charge expanded."""
        return self._execute(
            "invoices.retrieve",
            lambda c: c.invoices.retrieve(
                invoice_id,
                params={"expand": INVOICE_EXPAND_FIELDS},
            ),
        )

    def send_invoice(self, invoice_id: str, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "invoices.send_invoice",
            lambda c: c.invoices.send_invoice(
                invoice_id,
                options=self._options(idempotency_key),
            ),
        )

    # === Prices and products ===

    def search_prices(self, query: str) -> list:
        result = self._execute(
            "prices.search",
            lambda c: c.prices.search(params={"query": query}),
        )
        return list(result.get("data", []))

    def create_price(self, params: dict, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "prices.create",
            lambda c: c.prices.create(params=params, options=self._options(idempotency_key)),
        )

    def update_price(
        self,
        price_id: str,
        params: dict,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        return self._execute(
            "prices.update",
            lambda c: c.prices.update(
                price_id,
                params=params,
                options=self._options(idempotency_key),
            ),
        )

    def search_products(self, query: str) -> list:
        result = self._execute(
            "products.search",
            lambda c: c.products.search(params={"query": query}),
        )
        return list(result.get("data", []))

    def create_product(self, params: dict, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "products.create",
            lambda c: c.products.create(params=params, options=self._options(idempotency_key)),
        )

    def retrieve_product(self, product_id: str) -> Any:
        return self._execute(
            "products.retrieve",
            lambda c: c.products.retrieve(product_id),
        )

    # === Coupons ===

    def retrieve_coupon(self, coupon_id: str) -> Any:
        return self._execute(
            "coupons.retrieve",
            lambda c: c.coupons.retrieve(coupon_id),
        )

    def create_coupon(self, params: dict, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "coupons.create",
            lambda c: c.coupons.create(params=params, options=self._options(idempotency_key)),
        )

    def delete_coupon(self, coupon_id: str) -> Any:
        return self._execute(
            "coupons.delete",
            lambda c: c.coupons.delete(coupon_id),
        )

    # === Setup intents ===

    def create_setup_intent(self, params: dict, *, idempotency_key: str | None = None) -> Any:
        return self._execute(
            "setup_intents.create",
            lambda c: c.setup_intents.create(params=params, options=self._options(idempotency_key)),
        )

    def retrieve_setup_intent(self, setup_intent_id: str) -> Any:
        return self._execute(
            "setup_intents.retrieve",
            lambda c: c.setup_intents.retrieve(setup_intent_id),
        )
