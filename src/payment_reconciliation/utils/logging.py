"""Logging helpers for webhook deliveries and payment operations.

While a Stripe event is processed its id is bound to the current context.
Loggers obtained through get_logger stamp every record with it as
``event_id``, so all lines written for one delivery can be grouped, e.g.
with the format ``"%(asctime)s %(levelname)s [%(event_id)s] %(name)s: %(message)s"``.

Usage:
    from payment_reconciliation.utils.logging import bind_event_id, get_logger

    logger = get_logger(__name__)
    bind_event_id(event["id"])
"""

import logging
from collections.abc import Mapping
from contextvars import ContextVar
from typing import Any

from ..models.enums import ProcessingResult
from ..models.errors import EventProcessingResult
from ..models.payment import Money

NO_EVENT_ID = "-"

_event_id: ContextVar[str | None] = ContextVar("event_id", default=None)


def bind_event_id(event_id: str | None) -> None:
    """Bind the id of the Stripe event being processed."""
    _event_id.set(event_id or None)


def current_event_id() -> str | None:
    return _event_id.get()


def clear_event_id() -> None:
    _event_id.set(None)


class EventIdFilter(logging.Filter):
    """Adds the bound Stripe event id to each record as ``event_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.event_id = _event_id.get() or NO_EVENT_ID
        return True


def get_logger(name: str) -> logging.Logger:
    """Get a module logger whose records carry the bound event id."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, EventIdFilter) for f in logger.filters):
        logger.addFilter(EventIdFilter())
    return logger


def _join(fields: Mapping[str, Any]) -> str:
    return " | ".join(f"{key}={value}" for key, value in fields.items() if value is not None)


def _format_amount(amount: Money | None) -> str | None:
    if amount is None:
        return None
    return f"{amount.cent_amount} {amount.currency_code}"


def log_payment_operation(
    logger: logging.Logger,
    action: str,
    payment_id: str,
    *,
    psp_reference: str | None = None,
    amount: Money | None = None,
    outcome: str | None = None,
    error: str | None = None,
    stripe_error_code: str | None = None,
) -> None:
    """Log one capture, cancel or refund against a platform Payment.

    Logged at error level when ``error`` is set, info otherwise.

    Args:
        logger: Logger instance
        action: Modification action (capturePayment, cancelPayment, refundPayment)
        payment_id: Platform payment id
        psp_reference: Stripe object the action ran against
        amount: Amount of the modification
        outcome: Modification outcome (approved, received, rejected)
        error: Error message if Stripe rejected the call
        stripe_error_code: Stripe error code if any
    """
    fields = {
        "payment": payment_id,
        "psp_reference": psp_reference,
        "amount": _format_amount(amount),
        "outcome": outcome,
        "stripe_error_code": stripe_error_code,
        "error": error,
    }
    extra = {"action": action, "payment_id": payment_id, "psp_reference": psp_reference, "outcome": outcome}
    level = logging.ERROR if error else logging.INFO
    logger.log(level, "Payment %s | %s", action, _join(fields), extra=extra)


def _invoice_id(event: Mapping[str, Any]) -> str | None:
    obj = (event.get("data") or {}).get("object") or {}
    if obj.get("object") == "invoice":
        return obj.get("id")
    invoice = obj.get("invoice")
    if isinstance(invoice, Mapping):
        return invoice.get("id")
    return invoice


def log_webhook_event(
    logger: logging.Logger,
    event: Mapping[str, Any],
    result: EventProcessingResult | None = None,
    *,
    error: Exception | None = None,
    billing_policy: str | None = None,
) -> None:
    """Log the outcome of one webhook delivery.

    Skipped results are logged as warnings and errors at error level. The
    invoice id is included for invoice events and invoice charges.

    Args:
        logger: Logger instance
        event: Parsed Stripe event
        result: Processing result, when processing returned one
        error: Exception that escaped processing
        billing_policy: Billing event policy applied to invoice events
    """
    if error is not None:
        outcome = ProcessingResult.ERROR.value
        reason = str(error)
    elif result is not None:
        outcome = result.result.value
        reason = result.failure.message if result.failure else None
    else:
        outcome, reason = None, None

    invoice_id = _invoice_id(event)
    fields = {
        "result": outcome,
        "payment": result.payment_id if result is not None else None,
        "invoice": invoice_id,
        "policy": billing_policy,
        "error": reason,
    }
    extra = {
        "event_type": event.get("type"),
        "result": outcome,
        "invoice_id": invoice_id,
        "billing_policy": billing_policy,
    }

    if outcome == ProcessingResult.ERROR.value:
        level = logging.ERROR
    elif outcome == ProcessingResult.SKIPPED.value:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(level, "Webhook %s (%s) | %s", event.get("type"), event.get("id"), _join(fields), extra=extra)
