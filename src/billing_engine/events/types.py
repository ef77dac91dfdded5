"""Event type definitions for the audit and notification sink.

Events are produced by the lifecycle state machines and published after
the persistence unit that caused them has committed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from billing_engine.models import BillingRun, BillingSchedule, Invoice


class EventType(str, Enum):
    """Types of events published by the billing engine."""

    # Invoice lifecycle
    INVOICE_CREATED = "invoice.created"
    INVOICE_PENDING = "invoice.pending"
    INVOICE_APPROVED = "invoice.approved"
    INVOICE_REJECTED = "invoice.rejected"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    INVOICE_VOID = "invoice.void"
    INVOICE_FOLLOW_UP = "invoice.follow_up"
    INVOICE_RENEWAL_REVIEW = "invoice.renewal_review"

    # Schedule lifecycle
    SCHEDULE_CREATED = "schedule.created"
    SCHEDULE_APPROVED = "schedule.approved"
    SCHEDULE_REJECTED = "schedule.rejected"
    SCHEDULE_PAUSED = "schedule.paused"
    SCHEDULE_RESUMED = "schedule.resumed"
    SCHEDULE_ENDED = "schedule.ended"

    # Runs
    RUN_FAILED = "run.failed"


@dataclass
class BillingEvent:
    """Base event structure for all billing events."""

    event_type: EventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: UUID = field(default_factory=uuid4)
    actor_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to a plain dictionary."""
        return {
            "id": str(self.event_id),
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "data": self.data,
        }


@dataclass
class InvoiceEvent(BillingEvent):
    """Event about a single invoice."""

    invoice_id: str = ""
    billing_no: str = ""
    customer_name: str = ""
    net_amount: str = ""

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["invoice"] = {
            "id": self.invoice_id,
            "billing_no": self.billing_no,
            "customer": self.customer_name,
            "net_amount": self.net_amount,
        }
        return base


@dataclass
class ScheduleEvent(BillingEvent):
    """Event about a billing schedule."""

    schedule_id: str = ""
    status: str = ""
    next_billing_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["schedule"] = {
            "id": self.schedule_id,
            "status": self.status,
            "next_billing_date": self.next_billing_date,
        }
        return base


# Factory functions for creating events


def invoice_event(
    event_type: EventType,
    invoice: "Invoice",
    actor_id: str | None = None,
    **data: Any,
) -> InvoiceEvent:
    """Create an event for an invoice transition."""
    return InvoiceEvent(
        event_type=event_type,
        actor_id=actor_id,
        invoice_id=invoice.id,
        billing_no=invoice.billing_no,
        customer_name=invoice.customer.name,
        net_amount=str(invoice.net_amount),
        data=data,
    )


def invoice_created(invoice: "Invoice", actor_id: str | None = None) -> InvoiceEvent:
    """Create an invoice created event."""
    return invoice_event(
        EventType.INVOICE_CREATED,
        invoice,
        actor_id,
        schedule_id=invoice.schedule_id,
        statement_date=invoice.statement_date.isoformat(),
    )


def invoice_renewal_review(invoice: "Invoice") -> InvoiceEvent:
    """Create a renewal review notice for an annual invoice held back from auto-send."""
    return invoice_event(
        EventType.INVOICE_RENEWAL_REVIEW,
        invoice,
        message=f"Annual invoice {invoice.billing_no} for {invoice.customer.name} "
        "requires renewal review before sending",
    )


def schedule_event(
    event_type: EventType,
    schedule: "BillingSchedule",
    actor_id: str | None = None,
    **data: Any,
) -> ScheduleEvent:
    """Create an event for a schedule transition."""
    next_date = schedule.next_billing_date
    return ScheduleEvent(
        event_type=event_type,
        actor_id=actor_id,
        schedule_id=schedule.id,
        status=schedule.status.value,
        next_billing_date=next_date.isoformat() if next_date else None,
        data=data,
    )


def run_failed(run: "BillingRun", error: str) -> BillingEvent:
    """Create a run failed event."""
    return BillingEvent(
        event_type=EventType.RUN_FAILED,
        data={
            "run_id": run.id,
            "schedule_id": run.schedule_id,
            "period_key": run.period_key,
            "error": error[:500],
        },
    )
