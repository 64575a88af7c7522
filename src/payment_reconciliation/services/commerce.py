"""Commerce platform collaborator.

The engine reads and writes carts, orders, customers and Payments through
this protocol; the HTTP client implementing it lives outside the package.
"""

from typing import Any, Protocol, runtime_checkable

from ..models.cart import Cart, CartDraft, Customer, Order
from ..models.enums import TransactionState, TransactionType
from ..models.payment import Money, Payment, PaymentDraft, PaymentUpdate

# Cart update action names understood by update_cart
SET_LINE_ITEM_CUSTOM_FIELD = "setLineItemCustomField"
SET_BILLING_ADDRESS = "setBillingAddress"

# Line item custom field holding the Stripe subscription id
SUBSCRIPTION_ID_CUSTOM_FIELD = "stripeConnector_stripeSubscriptionId"


@runtime_checkable
class CommercePlatformClient(Protocol):
    """Read/write access to the commerce platform.

    Writes use the platform's optimistic-concurrency version carried on
    the passed entity. update_payment appends the transaction, or changes
    the state of an existing transaction with the same type and
    interaction id.
    """

    def get_cart(self, cart_id: str) -> Cart: ...

    def update_cart(self, cart: Cart, actions: list[dict[str, Any]]) -> Cart: ...

    def get_payment_amount(self, cart: Cart) -> Money: ...

    def add_payment(self, cart: Cart, payment_id: str) -> Cart: ...

    def get_payment(self, payment_id: str) -> Payment: ...

    def update_payment(self, update: PaymentUpdate) -> Payment: ...

    def create_payment(self, draft: PaymentDraft) -> Payment: ...

    def find_payments_by_interface_id(self, interface_id: str) -> list[Payment]: ...

    def has_transaction_in_state(
        self,
        payment: Payment,
        transaction_type: TransactionType,
        states: list[TransactionState],
    ) -> bool: ...

    def get_order_by_payment_id(self, payment_id: str) -> Order | None: ...

    def get_cart_by_payment_id(self, payment_id: str) -> Cart | None: ...

    def get_customer(self, customer_id: str) -> Customer: ...

    def create_cart(self, draft: CartDraft) -> Cart: ...

    def create_order_from_cart(self, cart: Cart) -> Order: ...

    def add_order_payment(self, order: Order, payment_id: str) -> Order: ...

    def get_product_price(self, product_id: str) -> Money | None: ...
