"""Invoice and schedule state machines."""

from billing_engine.lifecycle.invoice import (
    ALLOWED_TRANSITIONS,
    AUTO_SEND_FREQUENCIES,
    MAX_FOLLOW_UP_LEVEL,
    CreationOutcome,
    InvoiceLifecycle,
    Transition,
)
from billing_engine.lifecycle.schedule import ScheduleLifecycle, ScheduleTransition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AUTO_SEND_FREQUENCIES",
    "MAX_FOLLOW_UP_LEVEL",
    "CreationOutcome",
    "InvoiceLifecycle",
    "ScheduleLifecycle",
    "ScheduleTransition",
    "Transition",
]
