"""Unit tests for SubscriptionService.

Stripe is mocked; the commerce platform is the in-memory fake. The
payment link wait uses a recording sleep so no test blocks.

Test categories:
- Subscription creation
- First cycle confirmation
- Customer subscription management
- Billing events under both order policies
- Payment link race
- Subscription refunds
- Upcoming invoice price sync
- Failure results
"""

import pytest

from fakes import TEST_CUSTOMER_ID, make_cart, make_event, make_payment, usd
from payment_reconciliation.models.cart import Attribute, Customer
from payment_reconciliation.models.enums import (
    BillingEventPolicy,
    ProcessingResult,
    SubscriptionOutcome,
    TransactionState,
    TransactionType,
)
from payment_reconciliation.models.errors import (
    ErrorCode,
    InvalidOperationError,
    PSPApiError,
    SubscriptionValidationError,
)
from payment_reconciliation.models.payment import Transaction
from payment_reconciliation.models.subscription import ConfirmSubscriptionRequest
from payment_reconciliation.services.commerce import SUBSCRIPTION_ID_CUSTOM_FIELD

# === Test Configuration ===

SUBSCRIPTION_ID = "sub_TEST123"
INVOICE_ID = "in_cycle2"
PAYMENT_INTENT_ID = "pi_cycle2"


def tx(transaction_type, state, interaction_id, amount=1000) -> Transaction:
    return Transaction(type=transaction_type, state=state, amount=usd(amount), interaction_id=interaction_id)


def shape(payment) -> list[tuple[TransactionType, TransactionState]]:
    return [(t.type, t.state) for t in payment.transactions]


def cycle_invoice(
    *,
    payment_id: str | None = "payment-100",
    payment_intent: str | None = PAYMENT_INTENT_ID,
    amount: int = 1000,
    unit_amount: int = 1000,
) -> dict:
    metadata = {"cart_id": "cart-1"}
    if payment_id:
        metadata["ct_payment_id"] = payment_id
    return {
        "id": INVOICE_ID,
        "object": "invoice",
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "paid": True,
        "payment_intent": {"id": payment_intent, "status": "succeeded"} if payment_intent else None,
        "charge": {
            "id": "ch_cycle2",
            "payment_method_details": {"type": "card"},
            "billing_details": {
                "name": "Jane Doe",
                "email": "jane@example.com",
                "address": {"line1": "1 Main St", "city": "Springfield", "postal_code": "12345", "country": "US"},
            },
        },
        "subscription": {
            "id": SUBSCRIPTION_ID,
            "metadata": metadata,
            "items": {"data": [{"id": "si_1", "price": {"unit_amount": unit_amount, "currency": "usd"}}]},
        },
        "subscription_details": {"metadata": metadata},
    }


def matching_price() -> dict:
    return {
        "id": "price_existing",
        "active": True,
        "unit_amount": 1000,
        "currency": "usd",
        "recurring": {"interval": "month", "interval_count": 1},
    }


@pytest.fixture
def subscription_cart(commerce):
    return commerce.add_cart(make_cart("cart-1", subscription=True))


@pytest.fixture
def ordered_subscription(commerce):
    """A subscription whose first cycle was paid and ordered."""
    cart = commerce.add_cart(make_cart("cart-1", subscription=True))
    commerce.add_payment_record(
        make_payment(
            "payment-100",
            interface_id="pi_first",
            transactions=[
                tx(TransactionType.AUTHORIZATION, TransactionState.SUCCESS, "pi_first"),
                tx(TransactionType.CHARGE, TransactionState.SUCCESS, "pi_first"),
            ],
        )
    )
    commerce.add_payment(cart, "payment-100")
    return commerce.create_order_from_cart(cart)


# === Subscription creation ===


class TestCreateSubscription:
    """Test create_subscription() and related creation flows."""

    def test_creates_subscription_and_payment(self, subscription_service, commerce, mock_stripe, subscription_cart):
        mock_stripe.search_prices.return_value = [matching_price()]
        mock_stripe.create_subscription.return_value = {
            "id": SUBSCRIPTION_ID,
            "latest_invoice": {"id": "in_first", "payment_intent": {"id": "pi_first", "client_secret": "pi_secret"}},
        }

        response = subscription_service.create_subscription("cart-1")

        assert response.subscription_id == SUBSCRIPTION_ID
        assert response.client_secret == "pi_secret"
        assert response.merchant_return_url == "https://shop.example.com/return"

        payment = commerce.payments[response.payment_reference]
        assert payment.interface_id == "pi_first"
        assert shape(payment) == [(TransactionType.AUTHORIZATION, TransactionState.INITIAL)]
        assert response.payment_reference in commerce.carts["cart-1"].payment_ids
        assert commerce.carts["cart-1"].line_items[0].custom_fields[SUBSCRIPTION_ID_CUSTOM_FIELD] == SUBSCRIPTION_ID

        params = mock_stripe.create_subscription.call_args.args[0]
        assert params["customer"] == "cus_TEST123"
        assert params["items"] == [{"price": "price_existing"}]
        assert params["payment_behavior"] == "default_incomplete"
        assert "discounts" not in params
        assert mock_stripe.create_subscription.call_args.kwargs["idempotency_key"]

    def test_links_payment_intent_and_subscription(self, subscription_service, commerce, mock_stripe, subscription_cart):
        mock_stripe.search_prices.return_value = [matching_price()]
        mock_stripe.create_subscription.return_value = {
            "id": SUBSCRIPTION_ID,
            "latest_invoice": {"id": "in_first", "payment_intent": {"id": "pi_first", "client_secret": "pi_secret"}},
        }

        response = subscription_service.create_subscription("cart-1")

        intent_id, intent_params = mock_stripe.update_payment_intent.call_args.args
        assert intent_id == "pi_first"
        assert intent_params["metadata"] == {
            "ct_payment_id": response.payment_reference,
            "cart_id": "cart-1",
            "ct_customer_id": TEST_CUSTOMER_ID,
            "ct_project_key": "test-project",
            "ct_subscription_id": SUBSCRIPTION_ID,
        }
        sub_id, sub_params = mock_stripe.update_subscription.call_args.args
        assert sub_id == SUBSCRIPTION_ID
        assert sub_params == {"metadata": {"ct_payment_id": response.payment_reference}}

        first_key = mock_stripe.update_payment_intent.call_args.kwargs["idempotency_key"]
        second_key = mock_stripe.update_subscription.call_args.kwargs["idempotency_key"]
        assert first_key != second_key

    def test_missing_payment_intent_raises(self, subscription_service, mock_stripe, subscription_cart):
        mock_stripe.search_prices.return_value = [matching_price()]
        mock_stripe.create_subscription.return_value = {"id": SUBSCRIPTION_ID, "latest_invoice": {"id": "in_first"}}

        with pytest.raises(SubscriptionValidationError):
            subscription_service.create_subscription("cart-1")

    def test_cart_with_multiple_items_rejected(self, subscription_service, commerce):
        cart = make_cart("cart-2", subscription=True, quantity=2)
        commerce.add_cart(cart)

        with pytest.raises(InvalidOperationError):
            subscription_service.create_subscription("cart-2")

    def test_non_subscription_cart_rejected(self, subscription_service, commerce):
        commerce.add_cart(make_cart("cart-3"))

        with pytest.raises(SubscriptionValidationError):
            subscription_service.prepare_subscription_data("cart-3")

    def test_customer_without_stripe_customer_rejected(self, subscription_service, commerce):
        commerce.customers["customer-456"] = Customer(id="customer-456")
        commerce.add_cart(make_cart("cart-4", subscription=True, customer_id="customer-456"))

        with pytest.raises(SubscriptionValidationError):
            subscription_service.prepare_subscription_data("cart-4")

    def test_setup_intent_for_off_session_subscription(self, subscription_service, commerce, mock_stripe):
        commerce.add_cart(
            make_cart("cart-5", subscription=True, attributes=[Attribute(name="off_session", value=True)])
        )
        mock_stripe.create_setup_intent.return_value = {"id": "seti_1", "client_secret": "seti_secret"}

        response = subscription_service.create_setup_intent("cart-5")

        assert response.client_secret == "seti_secret"
        params = mock_stripe.create_setup_intent.call_args.args[0]
        assert params["customer"] == "cus_TEST123"
        assert params["usage"] == "off_session"
        assert params["metadata"]["cart_id"] == "cart-5"
        mock_stripe.search_prices.assert_not_called()

    def test_from_setup_intent_sends_invoice(self, subscription_service, commerce, mock_stripe):
        commerce.add_cart(
            make_cart(
                "cart-6",
                subscription=True,
                attributes=[Attribute(name="collection_method", value={"key": "send_invoice", "label": "Invoice"})],
            )
        )
        mock_stripe.search_prices.return_value = [matching_price()]
        mock_stripe.retrieve_setup_intent.return_value = {"id": "seti_1", "payment_method": "pm_1"}
        mock_stripe.create_subscription.return_value = {"id": SUBSCRIPTION_ID, "latest_invoice": {"id": "in_first"}}
        mock_stripe.send_invoice.return_value = {"id": "in_first", "status": "open"}

        response = subscription_service.create_subscription_from_setup_intent("cart-6", "seti_1")

        mock_stripe.send_invoice.assert_called_once()
        assert mock_stripe.send_invoice.call_args.args == ("in_first",)
        params = mock_stripe.create_subscription.call_args.args[0]
        assert params["default_payment_method"] == "pm_1"
        assert params["days_until_due"] == 1
        assert commerce.payments[response.payment_reference].interface_id == "in_first"
        mock_stripe.update_payment_intent.assert_not_called()

    def test_from_setup_intent_with_free_anchor_days(self, subscription_service, commerce, mock_stripe):
        commerce.add_cart(
            make_cart(
                "cart-7",
                subscription=True,
                attributes=[
                    Attribute(name="billing_cycle_anchor_day", value=1),
                    Attribute(name="proration_behavior", value="none"),
                ],
            )
        )
        mock_stripe.search_prices.return_value = [matching_price()]
        mock_stripe.retrieve_setup_intent.return_value = {"id": "seti_1", "payment_method": {"id": "pm_1"}}
        mock_stripe.create_subscription.return_value = {"id": SUBSCRIPTION_ID, "latest_invoice": None}

        response = subscription_service.create_subscription_from_setup_intent("cart-7", "seti_1")

        assert commerce.payments[response.payment_reference].interface_id == SUBSCRIPTION_ID
        mock_stripe.send_invoice.assert_not_called()

    def test_setup_intent_without_payment_method_rejected(self, subscription_service, mock_stripe, subscription_cart):
        mock_stripe.search_prices.return_value = [matching_price()]
        mock_stripe.retrieve_setup_intent.return_value = {"id": "seti_1", "payment_method": None}

        with pytest.raises(SubscriptionValidationError):
            subscription_service.create_subscription_from_setup_intent("cart-1", "seti_1")
        mock_stripe.create_subscription.assert_not_called()


# === First cycle confirmation ===


class TestConfirmSubscriptionPayment:
    """Test confirm_subscription_payment()."""

    def _initial_payment(self, commerce, interaction_id):
        return commerce.add_payment_record(
            make_payment(
                "payment-200",
                interface_id=interaction_id,
                transactions=[tx(TransactionType.AUTHORIZATION, TransactionState.INITIAL, interaction_id)],
            )
        )

    def test_records_authorization_and_charge(self, subscription_service, commerce, mock_stripe, subscription_cart):
        self._initial_payment(commerce, "pi_first")
        mock_stripe.retrieve_subscription.return_value = {
            "id": SUBSCRIPTION_ID,
            "latest_invoice": {"id": "in_first", "amount_paid": 1000},
        }

        subscription_service.confirm_subscription_payment(
            "cart-1",
            ConfirmSubscriptionRequest(
                subscription_id=SUBSCRIPTION_ID,
                payment_reference="payment-200",
                payment_intent_id="pi_first",
            ),
        )

        assert shape(commerce.payments["payment-200"]) == [
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (TransactionType.CHARGE, TransactionState.SUCCESS),
        ]

    def test_trial_records_zero_amount(self, subscription_service, commerce, mock_stripe):
        commerce.add_cart(
            make_cart("cart-8", subscription=True, attributes=[Attribute(name="trial_period_days", value=7)])
        )
        self._initial_payment(commerce, "in_trial")
        mock_stripe.retrieve_subscription.return_value = {
            "id": SUBSCRIPTION_ID,
            "latest_invoice": {"id": "in_trial", "amount_paid": 0},
        }

        subscription_service.confirm_subscription_payment(
            "cart-8",
            ConfirmSubscriptionRequest(subscription_id=SUBSCRIPTION_ID, payment_reference="payment-200"),
        )

        transactions = commerce.payments["payment-200"].transactions
        assert transactions[-1].type == TransactionType.CHARGE
        assert transactions[-1].amount.cent_amount == 0
        assert transactions[-1].interaction_id == "in_trial"

    def test_subscription_without_invoice_rejected(self, subscription_service, commerce, mock_stripe, subscription_cart):
        self._initial_payment(commerce, "pi_first")
        mock_stripe.retrieve_subscription.return_value = {"id": SUBSCRIPTION_ID, "latest_invoice": None}

        with pytest.raises(SubscriptionValidationError):
            subscription_service.confirm_subscription_payment(
                "cart-1",
                ConfirmSubscriptionRequest(subscription_id=SUBSCRIPTION_ID, payment_reference="payment-200"),
            )


# === Customer subscriptions ===


class TestCustomerSubscriptions:
    """Test cancel and update of a customer's subscriptions."""

    def test_cancel_subscription(self, subscription_service, mock_stripe):
        mock_stripe.list_subscriptions.return_value = [{"id": SUBSCRIPTION_ID, "status": "active"}]
        mock_stripe.cancel_subscription.return_value = {"id": SUBSCRIPTION_ID, "status": "canceled"}

        response = subscription_service.cancel_subscription(TEST_CUSTOMER_ID, SUBSCRIPTION_ID)

        assert response.outcome == SubscriptionOutcome.CANCELED
        assert response.status == "canceled"
        mock_stripe.list_subscriptions.assert_called_once_with("cus_TEST123")
        call_args = mock_stripe.cancel_subscription.call_args
        assert call_args.args == (SUBSCRIPTION_ID, {"invoice_now": False, "prorate": True})
        assert call_args.kwargs["idempotency_key"]

    def test_cancel_foreign_subscription_rejected(self, subscription_service, mock_stripe):
        mock_stripe.list_subscriptions.return_value = [{"id": "sub_OTHER", "status": "active"}]

        with pytest.raises(InvalidOperationError):
            subscription_service.cancel_subscription(TEST_CUSTOMER_ID, SUBSCRIPTION_ID)
        mock_stripe.cancel_subscription.assert_not_called()

    def test_update_subscription(self, subscription_service, mock_stripe):
        mock_stripe.list_subscriptions.return_value = [{"id": SUBSCRIPTION_ID, "status": "active"}]
        mock_stripe.update_subscription.return_value = {
            "id": SUBSCRIPTION_ID,
            "status": "active",
            "cancel_at_period_end": True,
        }

        response = subscription_service.update_subscription(
            TEST_CUSTOMER_ID,
            SUBSCRIPTION_ID,
            {"cancel_at_period_end": True},
        )

        assert response.id == SUBSCRIPTION_ID
        assert response.status == "active"
        assert response.outcome == SubscriptionOutcome.UPDATED
        assert mock_stripe.update_subscription.call_args.args == (SUBSCRIPTION_ID, {"cancel_at_period_end": True})


# === Billing events: create new order policy ===


class TestCreateNewOrderPolicy:
    """Test invoice events when every cycle gets its own order."""

    def test_paid_cycle_creates_payment_cart_and_order(
        self, subscription_service, commerce, mock_stripe, ordered_subscription
    ):
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice(unit_amount=1200, amount=1200)

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SUCCESS
        new_payment = commerce.payments[result.payment_id]
        assert new_payment.id != "payment-100"
        assert new_payment.interface_id == PAYMENT_INTENT_ID
        assert new_payment.amount_planned.cent_amount == 1200
        assert shape(new_payment) == [
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (TransactionType.CHARGE, TransactionState.SUCCESS),
        ]
        assert new_payment.payment_method_info.method == "card"

        assert len(commerce.payments["payment-100"].transactions) == 2
        assert len(commerce.orders) == 2

        new_cart = commerce.get_cart_by_payment_id(result.payment_id)
        assert new_cart.cart_state == "Ordered"
        assert new_cart.line_items[0].price.value.cent_amount == 1200
        assert new_cart.billing_address.city == "Springfield"
        assert new_cart.billing_address.first_name == "Jane"

        sub_id, sub_params = mock_stripe.update_subscription.call_args.args
        assert sub_id == SUBSCRIPTION_ID
        assert sub_params == {"metadata": {"ct_payment_id": result.payment_id}}

    def test_failed_cycle_records_failure(self, subscription_service, commerce, mock_stripe, ordered_subscription):
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()

        result = subscription_service.process_subscription_event(
            make_event("invoice.payment_failed", {"id": INVOICE_ID})
        )

        assert result.result == ProcessingResult.SUCCESS
        assert shape(commerce.payments[result.payment_id]) == [
            (TransactionType.AUTHORIZATION, TransactionState.FAILURE),
            (TransactionType.CHARGE, TransactionState.FAILURE),
        ]

    def test_metadata_sync_failure_does_not_fail_event(
        self, subscription_service, commerce, mock_stripe, ordered_subscription
    ):
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()
        mock_stripe.update_subscription.side_effect = PSPApiError("Stripe unavailable", http_status=503)

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SUCCESS
        assert len(commerce.orders) == 2

    def test_missing_order_is_skipped(self, subscription_service, commerce, mock_stripe):
        commerce.add_cart(make_cart("cart-1", subscription=True))
        commerce.add_payment_record(make_payment("payment-100", interface_id="pi_first"))
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SKIPPED
        assert result.failure.error_code == ErrorCode.MISSING_LINKAGE
        assert list(commerce.payments) == ["payment-100"]


# === Billing events: attach to existing order policy ===


class TestAttachToExistingOrderPolicy:
    """Test invoice events when cycles are attached to the first order."""

    def test_paid_cycle_attaches_payment_to_order(
        self, subscription_service, settings, commerce, mock_stripe, ordered_subscription
    ):
        settings.billing_event_policy = BillingEventPolicy.ATTACH_TO_EXISTING_ORDER
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SUCCESS
        assert len(commerce.orders) == 1
        order = commerce.orders[ordered_subscription.id]
        assert order.payment_ids == ["payment-100", result.payment_id]
        assert shape(commerce.payments[result.payment_id]) == [
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (TransactionType.CHARGE, TransactionState.SUCCESS),
        ]
        assert result.payment_id not in commerce.carts["cart-1"].payment_ids
        mock_stripe.update_subscription.assert_not_called()

    def test_missing_cart_link_is_skipped(self, subscription_service, settings, commerce, mock_stripe, ordered_subscription):
        settings.billing_event_policy = BillingEventPolicy.ATTACH_TO_EXISTING_ORDER
        invoice = cycle_invoice()
        invoice["subscription"]["metadata"] = {"ct_payment_id": "payment-100"}
        invoice["subscription_details"]["metadata"] = {"ct_payment_id": "payment-100"}
        mock_stripe.get_invoice_expanded.return_value = invoice

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SKIPPED
        assert result.failure.error_code == ErrorCode.MISSING_LINKAGE
        assert ordered_subscription.payment_ids == ["payment-100"]


# === Pending charges and redelivery ===


class TestCycleResolution:
    """Test pending charges and redelivered events."""

    def test_pending_charge_is_settled_in_place(self, subscription_service, commerce, mock_stripe):
        cart = commerce.add_cart(make_cart("cart-1", subscription=True))
        commerce.add_payment_record(
            make_payment(
                "payment-100",
                interface_id=INVOICE_ID,
                transactions=[
                    tx(TransactionType.AUTHORIZATION, TransactionState.SUCCESS, INVOICE_ID),
                    tx(TransactionType.CHARGE, TransactionState.PENDING, INVOICE_ID),
                ],
            )
        )
        commerce.add_payment(cart, "payment-100")
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SUCCESS
        assert result.payment_id == "payment-100"
        assert list(commerce.payments) == ["payment-100"]
        assert shape(commerce.payments["payment-100"]) == [
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (TransactionType.CHARGE, TransactionState.SUCCESS),
        ]
        assert commerce.carts["cart-1"].cart_state == "Ordered"
        assert len(commerce.orders) == 1

    def test_redelivered_event_updates_existing_cycle_payment(
        self, subscription_service, commerce, mock_stripe, ordered_subscription
    ):
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()
        event = make_event("invoice.paid", {"id": INVOICE_ID})

        first = subscription_service.process_subscription_event(event)
        second = subscription_service.process_subscription_event(event)

        assert second.result == ProcessingResult.SUCCESS
        assert second.payment_id == first.payment_id
        assert len(commerce.payments) == 2
        assert len(commerce.orders) == 2
        assert len(commerce.payments[first.payment_id].transactions) == 2

    def test_failed_attempt_wins_on_redelivery(self, subscription_service, commerce, mock_stripe, ordered_subscription):
        commerce.add_payment_record(
            make_payment(
                "payment-ok",
                interface_id=PAYMENT_INTENT_ID,
                transactions=[tx(TransactionType.AUTHORIZATION, TransactionState.SUCCESS, PAYMENT_INTENT_ID)],
            )
        )
        commerce.add_payment_record(
            make_payment(
                "payment-failed",
                interface_id=PAYMENT_INTENT_ID,
                transactions=[tx(TransactionType.AUTHORIZATION, TransactionState.FAILURE, PAYMENT_INTENT_ID)],
            )
        )
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.payment_id == "payment-failed"
        assert len(commerce.payments) == 3

    def test_redelivered_balance_invoice_keeps_one_cycle_payment(
        self, subscription_service, commerce, mock_stripe, ordered_subscription
    ):
        invoice = cycle_invoice(payment_intent=None)
        invoice["charge"] = None
        mock_stripe.get_invoice_expanded.return_value = invoice
        event = make_event("invoice.paid", {"id": INVOICE_ID})

        first = subscription_service.process_subscription_event(event)
        second = subscription_service.process_subscription_event(event)

        assert second.result == ProcessingResult.SUCCESS
        assert second.payment_id == first.payment_id
        assert sorted(commerce.payments) == sorted(["payment-100", first.payment_id])
        assert len(commerce.orders) == 2
        cycle_payment = commerce.payments[first.payment_id]
        assert cycle_payment.interface_id == INVOICE_ID
        assert cycle_payment.payment_method_info.method == "customer_balance"
        assert shape(cycle_payment) == [
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (TransactionType.CHARGE, TransactionState.SUCCESS),
        ]
        mock_stripe.update_subscription.assert_called_once()

    def test_zero_trial_invoice_after_confirmation_updates_first_payment(
        self, subscription_service, commerce, mock_stripe
    ):
        cart = commerce.add_cart(
            make_cart("cart-1", subscription=True, attributes=[Attribute(name="trial_period_days", value=7)])
        )
        commerce.add_payment_record(
            make_payment(
                "payment-100",
                interface_id=INVOICE_ID,
                transactions=[tx(TransactionType.AUTHORIZATION, TransactionState.INITIAL, INVOICE_ID)],
            )
        )
        commerce.add_payment(cart, "payment-100")
        mock_stripe.retrieve_subscription.return_value = {
            "id": SUBSCRIPTION_ID,
            "latest_invoice": {"id": INVOICE_ID, "amount_paid": 0},
        }
        subscription_service.confirm_subscription_payment(
            "cart-1",
            ConfirmSubscriptionRequest(subscription_id=SUBSCRIPTION_ID, payment_reference="payment-100"),
        )
        invoice = cycle_invoice(payment_intent=None, amount=0)
        invoice["charge"] = None
        mock_stripe.get_invoice_expanded.return_value = invoice

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.SUCCESS
        assert result.payment_id == "payment-100"
        assert list(commerce.payments) == ["payment-100"]
        assert len(commerce.orders) == 1
        assert shape(commerce.payments["payment-100"]) == [
            (TransactionType.AUTHORIZATION, TransactionState.SUCCESS),
            (TransactionType.CHARGE, TransactionState.SUCCESS),
        ]

    def test_linked_payment_recorded_against_invoice_is_this_cycle(
        self, subscription_service, commerce, mock_stripe
    ):
        cart = commerce.add_cart(make_cart("cart-1", subscription=True))
        commerce.add_payment_record(
            make_payment(
                "payment-100",
                interface_id=SUBSCRIPTION_ID,
                transactions=[
                    tx(TransactionType.AUTHORIZATION, TransactionState.SUCCESS, INVOICE_ID, amount=0),
                    tx(TransactionType.CHARGE, TransactionState.SUCCESS, INVOICE_ID, amount=0),
                ],
            )
        )
        commerce.add_payment(cart, "payment-100")
        commerce.create_order_from_cart(cart)
        invoice = cycle_invoice(payment_intent=None, amount=0)
        invoice["charge"] = None
        mock_stripe.get_invoice_expanded.return_value = invoice

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.payment_id == "payment-100"
        assert list(commerce.payments) == ["payment-100"]
        assert len(commerce.orders) == 1
        mock_stripe.update_subscription.assert_not_called()


# === Payment link race ===


class TestPaymentLinkRace:
    """Test invoices billed before the subscription metadata names a Payment."""

    def test_waits_then_finds_payment_by_invoice(self, subscription_service, commerce, mock_stripe, sleep_calls):
        cart = commerce.add_cart(make_cart("cart-1", subscription=True))
        commerce.add_payment_record(
            make_payment(
                "payment-100",
                interface_id=INVOICE_ID,
                transactions=[
                    tx(TransactionType.AUTHORIZATION, TransactionState.SUCCESS, INVOICE_ID),
                    tx(TransactionType.CHARGE, TransactionState.PENDING, INVOICE_ID),
                ],
            )
        )
        commerce.add_payment(cart, "payment-100")
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice(payment_id=None)

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert sleep_calls == [0.5]
        assert result.result == ProcessingResult.SUCCESS
        assert result.payment_id == "payment-100"

    def test_unresolved_race_is_skipped_without_writes(self, subscription_service, commerce, mock_stripe, sleep_calls):
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice(payment_id=None)

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert sleep_calls == [0.5]
        assert result.result == ProcessingResult.SKIPPED
        assert result.failure.error_code == ErrorCode.MISSING_LINKAGE
        assert result.failure.details == {"invoice_id": INVOICE_ID}
        assert commerce.payments == {}
        assert commerce.orders == {}
        mock_stripe.update_subscription.assert_not_called()

    def test_wait_doubles_between_attempts(self, subscription_service, settings, mock_stripe, sleep_calls):
        settings.payment_link_max_attempts = 3
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice(payment_id=None)

        subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert sleep_calls == [0.5, 1.0, 2.0]


# === Subscription refunds ===


class TestSubscriptionRefund:
    """Test process_subscription_refund()."""

    def refund_event(self, **overrides) -> dict:
        charge = {
            "id": "ch_cycle2",
            "invoice": INVOICE_ID,
            "payment_intent": PAYMENT_INTENT_ID,
            "captured": True,
            "amount_refunded": 1000,
            "currency": "usd",
            "metadata": {},
        }
        charge.update(overrides)
        return make_event("charge.refunded", charge)

    def test_refund_applied_to_cycle_payment(self, subscription_service, commerce):
        commerce.add_payment_record(make_payment("payment-cycle", interface_id=PAYMENT_INTENT_ID))

        result = subscription_service.process_subscription_refund(self.refund_event())

        assert result.result == ProcessingResult.SUCCESS
        assert result.payment_id == "payment-cycle"
        assert shape(commerce.payments["payment-cycle"]) == [
            (TransactionType.REFUND, TransactionState.SUCCESS),
            (TransactionType.CHARGEBACK, TransactionState.SUCCESS),
        ]

    def test_refund_found_by_invoice(self, subscription_service, commerce):
        commerce.add_payment_record(make_payment("payment-invoice", interface_id=INVOICE_ID))

        result = subscription_service.process_subscription_refund(self.refund_event())

        assert result.payment_id == "payment-invoice"

    def test_refund_found_through_subscription_metadata(self, subscription_service, commerce, mock_stripe):
        commerce.add_payment_record(make_payment("payment-100", interface_id="pi_first"))
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice()

        result = subscription_service.process_subscription_refund(self.refund_event())

        assert result.payment_id == "payment-100"
        mock_stripe.get_invoice_expanded.assert_called_once_with(INVOICE_ID)

    def test_uncaptured_refund_is_skipped(self, subscription_service, mock_stripe):
        result = subscription_service.process_subscription_refund(self.refund_event(captured=False))

        assert result.result == ProcessingResult.SKIPPED
        mock_stripe.get_invoice_expanded.assert_not_called()

    def test_unlinked_refund_is_skipped(self, subscription_service, commerce, mock_stripe):
        mock_stripe.get_invoice_expanded.return_value = cycle_invoice(payment_id=None)

        result = subscription_service.process_subscription_refund(self.refund_event())

        assert result.result == ProcessingResult.SKIPPED
        assert result.failure.error_code == ErrorCode.MISSING_LINKAGE


# === Upcoming invoice price sync ===


class TestUpcomingInvoice:
    """Test process_upcoming_invoice()."""

    def subscription(self, unit_amount=1000) -> dict:
        return {
            "id": SUBSCRIPTION_ID,
            "items": {
                "data": [
                    {
                        "id": "si_1",
                        "price": {
                            "id": "price_old",
                            "unit_amount": unit_amount,
                            "currency": "usd",
                            "product": "prod_1",
                            "recurring": {"interval": "month", "interval_count": 1},
                        },
                    }
                ]
            },
        }

    @pytest.fixture
    def event(self):
        return make_event("invoice.upcoming", {"object": "invoice", "subscription": SUBSCRIPTION_ID})

    def test_disabled_sync_is_skipped(self, subscription_service, mock_stripe, event):
        result = subscription_service.process_upcoming_invoice(event)

        assert result.result == ProcessingResult.SKIPPED
        mock_stripe.retrieve_subscription.assert_not_called()

    def test_changed_price_moves_subscription(self, subscription_service, settings, commerce, mock_stripe, event):
        settings.subscription_price_sync_enabled = True
        commerce.product_prices["product-1"] = usd(1200)
        mock_stripe.retrieve_subscription.return_value = self.subscription()
        mock_stripe.retrieve_product.return_value = {"id": "prod_1", "metadata": {"ct_product_id": "product-1"}}
        mock_stripe.search_prices.return_value = []
        mock_stripe.create_price.return_value = {"id": "price_new"}

        result = subscription_service.process_upcoming_invoice(event)

        assert result.result == ProcessingResult.SUCCESS
        created = mock_stripe.create_price.call_args.args[0]
        assert created["unit_amount"] == 1200
        assert created["product"] == "prod_1"
        sub_id, params = mock_stripe.update_subscription.call_args.args
        assert sub_id == SUBSCRIPTION_ID
        assert params == {
            "items": [{"id": "si_1", "price": "price_new"}],
            "proration_behavior": "none",
            "billing_cycle_anchor": "unchanged",
        }

    def test_unchanged_price_is_left_alone(self, subscription_service, settings, commerce, mock_stripe, event):
        settings.subscription_price_sync_enabled = True
        commerce.product_prices["product-1"] = usd(1000)
        mock_stripe.retrieve_subscription.return_value = self.subscription()
        mock_stripe.retrieve_product.return_value = {"id": "prod_1", "metadata": {"ct_product_id": "product-1"}}

        result = subscription_service.process_upcoming_invoice(event)

        assert result.result == ProcessingResult.SUCCESS
        mock_stripe.update_subscription.assert_not_called()

    def test_unlinked_product_is_skipped(self, subscription_service, settings, mock_stripe, event):
        settings.subscription_price_sync_enabled = True
        mock_stripe.retrieve_subscription.return_value = self.subscription()
        mock_stripe.retrieve_product.return_value = {"id": "prod_1", "metadata": {}}

        result = subscription_service.process_upcoming_invoice(event)

        assert result.result == ProcessingResult.SKIPPED
        mock_stripe.update_subscription.assert_not_called()


# === Failure results ===


class TestFailureResults:
    """Test that processors return failures instead of raising."""

    def test_stripe_error_becomes_error_result(self, subscription_service, mock_stripe):
        mock_stripe.get_invoice_expanded.side_effect = PSPApiError("No such invoice", http_status=404)

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.ERROR
        assert result.failure.error_code == ErrorCode.STRIPE_API_ERROR
        assert result.failure.message == "No such invoice"

    def test_unexpected_error_becomes_error_result(self, subscription_service, mock_stripe):
        mock_stripe.get_invoice_expanded.side_effect = RuntimeError("boom")

        result = subscription_service.process_subscription_event(make_event("invoice.paid", {"id": INVOICE_ID}))

        assert result.result == ProcessingResult.ERROR
        assert result.failure.error_code == ErrorCode.RECONCILIATION_FAILED
        assert result.failure.details == {"exception": "RuntimeError"}
        assert result.event_id == "evt_123"
