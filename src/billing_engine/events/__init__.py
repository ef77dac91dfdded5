"""Billing events and their publisher."""

from billing_engine.events.publisher import EventPublisher, EventSink
from billing_engine.events.types import (
    BillingEvent,
    EventType,
    InvoiceEvent,
    ScheduleEvent,
    invoice_created,
    invoice_event,
    invoice_renewal_review,
    run_failed,
    schedule_event,
)

__all__ = [
    "BillingEvent",
    "EventPublisher",
    "EventSink",
    "EventType",
    "InvoiceEvent",
    "ScheduleEvent",
    "invoice_created",
    "invoice_event",
    "invoice_renewal_review",
    "run_failed",
    "schedule_event",
]
