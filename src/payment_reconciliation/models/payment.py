"""Payment and transaction models mirrored from the commerce platform.

Amounts are stored in minor units (cents) with an upper-case ISO currency.
"""

from pydantic import BaseModel, Field

from .enums import PaymentModificationStatus, TransactionState, TransactionType


class Money(BaseModel):
    """An amount in minor units."""

    cent_amount: int = Field(..., description="Amount in minor units")
    currency_code: str = Field(..., description="ISO 4217 currency code", examples=["USD"])
    fraction_digits: int = Field(default=2, ge=0)


class Transaction(BaseModel):
    """A single state-carrying event in a Payment's history."""

    id: str | None = Field(default=None, description="Platform transaction id")
    type: TransactionType
    state: TransactionState
    amount: Money
    interaction_id: str | None = Field(
        default=None,
        description="PSP object id that produced this transaction",
        examples=["pi_3ABC123DEF456"],
    )


class PaymentMethodInfo(BaseModel):
    """Payment method information stored on the platform Payment."""

    payment_interface: str = Field(default="stripe")
    method: str | None = None


class Payment(BaseModel):
    """Platform Payment tracking a planned amount and its transactions."""

    id: str = Field(..., description="Platform payment id")
    version: int = Field(default=1, ge=1)
    amount_planned: Money
    interface_id: str | None = Field(
        default=None,
        description="PSP reference (payment intent, invoice or subscription id)",
    )
    payment_method_info: PaymentMethodInfo = Field(default_factory=PaymentMethodInfo)
    customer_id: str | None = None
    anonymous_id: str | None = None
    transactions: list[Transaction] = Field(default_factory=list)

    def has_transaction_in_state(
        self,
        transaction_type: TransactionType,
        states: list[TransactionState],
    ) -> bool:
        """Check whether a transaction of the given type is in one of the states."""
        return any(
            tx.type == transaction_type and tx.state in states
            for tx in self.transactions
        )


class PaymentDraft(BaseModel):
    """Data required to create a platform Payment."""

    amount_planned: Money
    interface_id: str | None = None
    payment_method_info: PaymentMethodInfo = Field(default_factory=PaymentMethodInfo)
    customer_id: str | None = None
    anonymous_id: str | None = None
    transactions: list[Transaction] = Field(default_factory=list)


class PaymentUpdate(BaseModel):
    """A single write against a platform Payment.

    Carries exactly one transaction; the platform client appends it or
    changes the state of an existing transaction with the same type and
    interaction id.
    """

    id: str
    psp_reference: str | None = None
    payment_method: str | None = None
    transaction: Transaction


class PspInteraction(BaseModel):
    """Raw PSP response kept alongside a transaction update."""

    raw_response: str | None = None


class NormalizedTransactionUpdate(BaseModel):
    """Converter output: the transactions a PSP event implies for a Payment.

    Ephemeral; it is the input contract of the write phase.
    """

    id: str | None = Field(default=None, description="Platform payment id, when known")
    psp_reference: str
    payment_method: str | None = None
    psp_interaction: PspInteraction = Field(default_factory=PspInteraction)
    transactions: list[Transaction] = Field(default_factory=list)

    def to_payment_updates(self, payment_id: str | None = None) -> list[PaymentUpdate]:
        """Split into one PaymentUpdate per transaction.

        Args:
            payment_id: Overrides the converter-resolved payment id.

        Raises:
            ValueError: If no payment id is known.
        """
        target = payment_id or self.id
        if not target:
            raise ValueError("Cannot build payment updates without a payment id")
        return [
            PaymentUpdate(
                id=target,
                psp_reference=self.psp_reference,
                payment_method=self.payment_method,
                transaction=tx,
            )
            for tx in self.transactions
        ]


class ModifyPaymentAction(BaseModel):
    """One modification action of a modify request.

    The action is kept as a plain string so unknown values reach the
    modification service and are rejected there.
    """

    action: str
    amount: Money | None = None


class ModifyPaymentRequest(BaseModel):
    """Request to capture, cancel or refund a platform Payment."""

    payment_id: str
    actions: list[ModifyPaymentAction] = Field(..., min_length=1)
    psp_reference: str | None = None


class PaymentProviderModificationResponse(BaseModel):
    """Result of a PSP modification call."""

    outcome: PaymentModificationStatus
    psp_reference: str


class ModifyPaymentResponse(BaseModel):
    """Result returned by modify_payment."""

    outcome: PaymentModificationStatus


class PaymentIntentResponse(BaseModel):
    """Checkout payment intent handed back to the storefront."""

    client_secret: str = Field(..., description="PaymentIntent client secret for the Stripe Elements form")
    payment_reference: str = Field(..., description="Platform payment id")
