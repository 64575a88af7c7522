"""Logging helpers."""

from .logging import (
    EventIdFilter,
    bind_event_id,
    clear_event_id,
    current_event_id,
    get_logger,
    log_payment_operation,
    log_webhook_event,
)

__all__ = [
    "EventIdFilter",
    "bind_event_id",
    "clear_event_id",
    "current_event_id",
    "get_logger",
    "log_payment_operation",
    "log_webhook_event",
]
