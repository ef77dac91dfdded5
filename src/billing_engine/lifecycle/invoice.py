"""Invoice state machine.

``PENDING -> {APPROVED, REJECTED}``, ``APPROVED -> {SENT, VOID}``,
``SENT -> {PAID, VOID}``. REJECTED, PAID and VOID are terminal.

Every transition returns a new invoice together with the events it caused;
the input invoice is never mutated.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal

import structlog

from billing_engine.errors import InvalidAmountError, InvalidTransitionError, ValidationError
from billing_engine.events.types import (
    BillingEvent,
    EventType,
    invoice_created,
    invoice_event,
    invoice_renewal_review,
)
from billing_engine.models import (
    BillingFrequency,
    DeliveryResult,
    EmailStatus,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    utc_now,
)
from billing_engine.tax import quantize, to_decimal

logger = structlog.get_logger(__name__)

AUTO_SEND_FREQUENCIES = frozenset({BillingFrequency.MONTHLY, BillingFrequency.QUARTERLY})
MAX_FOLLOW_UP_LEVEL = 3

ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.APPROVED, InvoiceStatus.REJECTED}),
    InvoiceStatus.APPROVED: frozenset({InvoiceStatus.SENT, InvoiceStatus.VOID}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.REJECTED: frozenset(),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Accepted payment method aliases from payment gateways.
_PAYMENT_ALIASES = {"HITPAY": PaymentMethod.ONLINE}


@dataclass
class Transition:
    """Result of a lifecycle operation: the new invoice and its events."""

    invoice: Invoice
    events: list[BillingEvent] = field(default_factory=list)


@dataclass
class CreationOutcome(Transition):
    """Result of the creation-time branch."""

    should_send: bool = False


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def coerce_payment_method(method: PaymentMethod | str) -> PaymentMethod:
    """Accept enum members, their names, or gateway aliases such as ``HITPAY``."""
    if isinstance(method, PaymentMethod):
        return method
    key = str(method).strip().upper()
    if key in _PAYMENT_ALIASES:
        return _PAYMENT_ALIASES[key]
    try:
        return PaymentMethod(key)
    except ValueError as exc:
        raise ValidationError(f"Unknown payment method: {method!r}") from exc


def _require_reason(reason: str | None, action: str) -> str:
    if reason is None or not reason.strip():
        raise ValidationError(f"A reason is required to {action} an invoice")
    return reason.strip()


class InvoiceLifecycle:
    """Applies invoice transitions.

    Args:
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._logger = logger.bind(component="invoice_lifecycle")

    def _check(self, invoice: Invoice, target: InvoiceStatus, action: str) -> None:
        if not can_transition(invoice.status, target):
            raise InvalidTransitionError(
                "invoice",
                invoice.status.value,
                action,
                details={"invoice_id": invoice.id, "target": target.value},
            )

    def _log(self, action: str, invoice: Invoice, **extra) -> None:
        self._logger.info(
            action,
            invoice_id=invoice.id,
            billing_no=invoice.billing_no,
            status=invoice.status.value,
            **extra,
        )

    def approve(self, invoice: Invoice, actor_id: str | None = None) -> Transition:
        """Approve a PENDING invoice. ``actor_id=None`` means system automation."""
        self._check(invoice, InvoiceStatus.APPROVED, "approve")
        now = self._clock()
        updated = replace(
            invoice,
            status=InvoiceStatus.APPROVED,
            approved_by_id=actor_id,
            approved_at=now,
            updated_at=now,
        )
        self._log("invoice_approved", updated, actor_id=actor_id)
        return Transition(
            updated,
            [invoice_event(EventType.INVOICE_APPROVED, updated, actor_id, automatic=actor_id is None)],
        )

    def reject(
        self,
        invoice: Invoice,
        actor_id: str,
        reason: str,
        reschedule_date: date | None = None,
    ) -> Transition:
        """Reject a PENDING invoice, optionally recording a reschedule date."""
        self._check(invoice, InvoiceStatus.REJECTED, "reject")
        reason = _require_reason(reason, "reject")
        now = self._clock()
        updated = replace(
            invoice,
            status=InvoiceStatus.REJECTED,
            rejected_by_id=actor_id,
            rejected_at=now,
            rejection_reason=reason,
            reschedule_date=reschedule_date,
            updated_at=now,
        )
        self._log("invoice_rejected", updated, actor_id=actor_id)
        return Transition(
            updated,
            [
                invoice_event(
                    EventType.INVOICE_REJECTED,
                    updated,
                    actor_id,
                    reason=reason,
                    reschedule_date=reschedule_date.isoformat() if reschedule_date else None,
                )
            ],
        )

    def reschedule(self, invoice: Invoice, reschedule_date: date) -> Transition:
        """Record a reschedule date on a REJECTED invoice without changing status."""
        if invoice.status != InvoiceStatus.REJECTED:
            raise InvalidTransitionError("invoice", invoice.status.value, "reschedule")
        updated = replace(invoice, reschedule_date=reschedule_date, updated_at=self._clock())
        return Transition(updated)

    def mark_sent(self, invoice: Invoice, delivery: DeliveryResult) -> Transition:
        """Record the outcome of a delivery attempt on an APPROVED invoice.

        A failed delivery records the error and leaves the invoice APPROVED.
        """
        self._check(invoice, InvoiceStatus.SENT, "send")
        now = self._clock()
        if not delivery.success:
            updated = replace(
                invoice,
                email_status=EmailStatus.FAILED,
                email_error=delivery.error,
                updated_at=now,
            )
            self._logger.warning(
                "invoice_delivery_failed",
                invoice_id=invoice.id,
                billing_no=invoice.billing_no,
                error=delivery.error,
            )
            return Transition(updated)

        updated = replace(
            invoice,
            status=InvoiceStatus.SENT,
            email_status=EmailStatus.SENT,
            email_message_id=delivery.message_id,
            email_error=None,
            sent_at=now,
            updated_at=now,
        )
        self._log("invoice_sent", updated, message_id=delivery.message_id)
        return Transition(
            updated,
            [invoice_event(EventType.INVOICE_SENT, updated, message_id=delivery.message_id)],
        )

    def mark_paid(
        self,
        invoice: Invoice,
        amount: Decimal | int | float | str,
        method: PaymentMethod | str,
        reference: str | None = None,
        paid_at: datetime | None = None,
    ) -> Transition:
        """Record payment of a SENT invoice."""
        self._check(invoice, InvoiceStatus.PAID, "mark paid")
        paid_amount = quantize(to_decimal(amount, "paid_amount"))
        if paid_amount <= 0:
            raise InvalidAmountError(f"paid_amount must be positive, got {paid_amount}")
        payment_method = coerce_payment_method(method)
        now = self._clock()
        updated = replace(
            invoice,
            status=InvoiceStatus.PAID,
            paid_amount=paid_amount,
            payment_method=payment_method,
            payment_reference=reference,
            paid_at=paid_at or now,
            updated_at=now,
        )
        self._log("invoice_paid", updated, amount=str(paid_amount), method=payment_method.value)
        return Transition(
            updated,
            [
                invoice_event(
                    EventType.INVOICE_PAID,
                    updated,
                    amount=str(paid_amount),
                    method=payment_method.value,
                    reference=reference,
                )
            ],
        )

    def void(self, invoice: Invoice, actor_id: str, reason: str) -> Transition:
        """Void an APPROVED or SENT invoice."""
        self._check(invoice, InvoiceStatus.VOID, "void")
        reason = _require_reason(reason, "void")
        now = self._clock()
        updated = replace(
            invoice,
            status=InvoiceStatus.VOID,
            voided_by_id=actor_id,
            voided_at=now,
            void_reason=reason,
            updated_at=now,
        )
        self._log("invoice_voided", updated, actor_id=actor_id)
        return Transition(
            updated,
            [invoice_event(EventType.INVOICE_VOID, updated, actor_id, reason=reason)],
        )

    def initialize(
        self,
        invoice: Invoice,
        auto_approve: bool,
        auto_send_enabled: bool,
        frequency: BillingFrequency,
    ) -> CreationOutcome:
        """Creation-time branch for a freshly built PENDING invoice.

        Auto-approved invoices are approved by the system. Auto-send is only
        requested for auto-approved invoices of a frequency in
        ``AUTO_SEND_FREQUENCIES``; annual invoices that would otherwise be
        sent raise a renewal review instead. Invoices left PENDING emit an
        approval-pending event.
        """
        if invoice.status != InvoiceStatus.PENDING:
            raise InvalidTransitionError("invoice", invoice.status.value, "initialize")

        events: list[BillingEvent] = [invoice_created(invoice)]
        if not auto_approve:
            events.append(invoice_event(EventType.INVOICE_PENDING, invoice))
            return CreationOutcome(invoice, events, should_send=False)

        approved = self.approve(invoice, actor_id=None)
        events.extend(approved.events)

        should_send = auto_send_enabled and frequency in AUTO_SEND_FREQUENCIES
        if auto_send_enabled and frequency == BillingFrequency.ANNUALLY:
            events.append(invoice_renewal_review(approved.invoice))
        return CreationOutcome(approved.invoice, events, should_send=should_send)

    def set_follow_up(self, invoice: Invoice, enabled: bool) -> Transition:
        """Enable or disable payment reminders on a non-terminal invoice."""
        if invoice.status in TERMINAL_STATUSES:
            raise InvalidTransitionError("invoice", invoice.status.value, "change follow-up on")
        return Transition(replace(invoice, follow_up_enabled=enabled, updated_at=self._clock()))

    def record_follow_up(
        self,
        invoice: Invoice,
        level: int,
        sent_at: datetime | None = None,
    ) -> Transition:
        """Record a payment reminder. Levels go 1, 2, 3 in order."""
        if invoice.status != InvoiceStatus.SENT:
            raise InvalidTransitionError("invoice", invoice.status.value, "follow up")
        if not invoice.follow_up_enabled:
            raise ValidationError(f"Follow-ups are disabled for invoice {invoice.billing_no}")
        expected = invoice.last_follow_up_level + 1
        if level != expected or level > MAX_FOLLOW_UP_LEVEL:
            raise ValidationError(
                f"Expected follow-up level {expected}, got {level}",
                details={"max_level": MAX_FOLLOW_UP_LEVEL},
            )
        now = sent_at or self._clock()
        updated = replace(
            invoice,
            follow_up_count=invoice.follow_up_count + 1,
            last_follow_up_level=level,
            last_follow_up_at=now,
            updated_at=now,
        )
        self._log("invoice_follow_up_recorded", updated, level=level)
        return Transition(
            updated,
            [invoice_event(EventType.INVOICE_FOLLOW_UP, updated, level=level)],
        )
