"""Invoice e-mail delivery and payment follow-ups.

The transport and renderer are collaborators supplied by the host
application; this module composes the messages and records outcomes on
the invoice through the lifecycle.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from html import escape

import structlog

from billing_engine.errors import DeliveryError, InvalidTransitionError
from billing_engine.lifecycle.invoice import MAX_FOLLOW_UP_LEVEL, InvoiceLifecycle, Transition
from billing_engine.models import DeliveryResult, Invoice, InvoiceStatus

logger = structlog.get_logger(__name__)

# Subject prefix and opening line per follow-up level.
FOLLOW_UP_TONES: dict[int, tuple[str, str]] = {
    1: ("Friendly Reminder", "This is a friendly reminder that the statement below is now due."),
    2: ("Second Reminder", "Our records show the statement below remains unpaid."),
    3: ("Final Notice", "This is a final notice regarding the overdue statement below."),
}


class EmailTransport(ABC):
    """Sends one e-mail with an optional attachment."""

    @abstractmethod
    def send(
        self,
        to: list[str],
        subject: str,
        body_text: str,
        body_html: str,
        attachment: bytes | None = None,
        attachment_name: str | None = None,
    ) -> DeliveryResult:
        pass


class DocumentRenderer(ABC):
    """Renders an invoice into a printable document such as a PDF."""

    @abstractmethod
    def render(self, invoice: Invoice) -> bytes:
        pass


@dataclass(frozen=True)
class EmailMessage:
    """A composed invoice e-mail."""

    to: list[str]
    subject: str
    body_text: str
    body_html: str
    attachment_name: str


def format_currency(amount: Decimal) -> str:
    return f"PHP {amount:,.2f}"


def format_date(value: date | None) -> str:
    return value.strftime("%B %d, %Y") if value else ""


def billing_subject(invoice: Invoice) -> str:
    return f"Billing Statement {invoice.billing_no} - {invoice.customer.name}"


def attachment_name(invoice: Invoice) -> str:
    return f"Invoice-{invoice.billing_no}.pdf"


def compose_invoice_email(invoice: Invoice, issuer_name: str) -> EmailMessage:
    """Compose the billing statement e-mail for an invoice."""
    customer = invoice.customer
    greeting = f"Dear {customer.attention or customer.name},"
    period = ""
    if invoice.period_start and invoice.period_end:
        period = (
            f" covering {format_date(invoice.period_start)} to {format_date(invoice.period_end)}"
        )
    lines = [
        greeting,
        "",
        f"Please find attached Billing Statement {invoice.billing_no}{period}.",
        "",
        f"Amount due: {format_currency(invoice.net_amount)}",
        f"Due date: {format_date(invoice.due_date)}",
        "",
        "Thank you for your business.",
        "",
        issuer_name,
    ]
    html_body = (
        f"<p>{escape(greeting)}</p>"
        f"<p>Please find attached Billing Statement <strong>{escape(invoice.billing_no)}</strong>"
        f"{escape(period)}.</p>"
        "<table>"
        f"<tr><td>Amount due</td><td>{escape(format_currency(invoice.net_amount))}</td></tr>"
        f"<tr><td>Due date</td><td>{escape(format_date(invoice.due_date))}</td></tr>"
        "</table>"
        "<p>Thank you for your business.</p>"
        f"<p>{escape(issuer_name)}</p>"
    )
    return EmailMessage(
        to=list(customer.emails),
        subject=billing_subject(invoice),
        body_text="\n".join(lines),
        body_html=html_body,
        attachment_name=attachment_name(invoice),
    )


def compose_follow_up_email(
    invoice: Invoice,
    level: int,
    days_overdue: int,
    issuer_name: str,
) -> EmailMessage:
    """Compose a level-specific payment reminder."""
    if level not in FOLLOW_UP_TONES:
        raise DeliveryError(f"No follow-up template for level {level}")
    prefix, opening = FOLLOW_UP_TONES[level]
    customer = invoice.customer
    overdue = f"{days_overdue} day(s) overdue" if days_overdue else "due"
    lines = [
        f"Dear {customer.attention or customer.name},",
        "",
        opening,
        "",
        f"Billing Statement: {invoice.billing_no}",
        f"Amount: {format_currency(invoice.net_amount)}",
        f"Due date: {format_date(invoice.due_date)} ({overdue})",
        "",
        "Kindly disregard this notice if payment has already been made.",
        "",
        issuer_name,
    ]
    html_body = "".join(f"<p>{escape(line)}</p>" for line in lines if line)
    return EmailMessage(
        to=list(customer.emails),
        subject=f"{prefix}: {billing_subject(invoice)}",
        body_text="\n".join(lines),
        body_html=html_body,
        attachment_name=attachment_name(invoice),
    )


class InvoiceMailer:
    """Delivers invoice e-mails and records the outcome on the invoice.

    Transport and renderer exceptions are converted into failed
    ``DeliveryResult`` values; they never propagate to the caller.
    """

    def __init__(
        self,
        transport: EmailTransport,
        renderer: DocumentRenderer | None = None,
        lifecycle: InvoiceLifecycle | None = None,
        issuer_name: str = "Billing Department",
    ):
        self._transport = transport
        self._renderer = renderer
        self._lifecycle = lifecycle or InvoiceLifecycle()
        self._issuer_name = issuer_name
        self._logger = logger.bind(component="invoice_mailer")

    @property
    def issuer_name(self) -> str:
        return self._issuer_name

    def _render(self, invoice: Invoice) -> bytes | None:
        if self._renderer is None:
            return None
        return self._renderer.render(invoice)

    def deliver(self, invoice: Invoice, message: EmailMessage) -> DeliveryResult:
        """Render the attachment and hand the message to the transport."""
        if not message.to:
            return DeliveryResult.failed("No email address for this customer")
        try:
            document = self._render(invoice)
            result = self._transport.send(
                message.to,
                message.subject,
                message.body_text,
                message.body_html,
                document,
                message.attachment_name if document is not None else None,
            )
        except Exception as e:
            self._logger.error("delivery_error", invoice_id=invoice.id, error=str(e))
            return DeliveryResult.failed(str(e))

        self._logger.info(
            "delivery_attempted",
            invoice_id=invoice.id,
            billing_no=invoice.billing_no,
            success=result.success,
            message_id=result.message_id,
        )
        return result

    def send_invoice(self, invoice: Invoice) -> Transition:
        """Send an APPROVED invoice and apply ``mark_sent`` with the outcome."""
        if invoice.status != InvoiceStatus.APPROVED:
            raise InvalidTransitionError("invoice", invoice.status.value, "send")
        message = compose_invoice_email(invoice, self._issuer_name)
        result = self.deliver(invoice, message)
        return self._lifecycle.mark_sent(invoice, result)


@dataclass(frozen=True)
class FollowUpEligibility:
    can_send: bool
    reason: str | None = None
    next_level: int | None = None


def days_overdue(due_date: date, today: date) -> int:
    """Whole days past the due date, never negative."""
    return max(0, (today - due_date).days)


class FollowUpService:
    """Sends payment reminders for SENT invoices, up to three levels."""

    def __init__(
        self,
        mailer: InvoiceMailer,
        lifecycle: InvoiceLifecycle | None = None,
        today: Callable[[], date] = date.today,
        clock: Callable[[], datetime] | None = None,
    ):
        self._mailer = mailer
        self._lifecycle = lifecycle or InvoiceLifecycle()
        self._today = today
        self._clock = clock
        self._logger = logger.bind(component="follow_up_service")

    def can_send_follow_up(self, invoice: Invoice) -> FollowUpEligibility:
        if invoice.status != InvoiceStatus.SENT:
            return FollowUpEligibility(False, "Invoice must be in SENT status to send follow-up")
        if not invoice.follow_up_enabled:
            return FollowUpEligibility(False, "Follow-up is disabled for this invoice")
        next_level = invoice.last_follow_up_level + 1
        if next_level > MAX_FOLLOW_UP_LEVEL:
            return FollowUpEligibility(
                False, f"Maximum follow-up level ({MAX_FOLLOW_UP_LEVEL}) reached"
            )
        if not invoice.customer.emails:
            return FollowUpEligibility(False, "No email address for this customer")
        return FollowUpEligibility(True, next_level=next_level)

    def send_follow_up(self, invoice: Invoice) -> tuple[Transition, DeliveryResult]:
        """Send the next reminder and record it when delivery succeeds.

        Raises:
            DeliveryError: If the invoice is not eligible for a follow-up.
        """
        eligibility = self.can_send_follow_up(invoice)
        if not eligibility.can_send:
            raise DeliveryError(
                eligibility.reason or "Cannot send follow-up",
                details={"invoice_id": invoice.id},
            )
        level = eligibility.next_level or 1
        overdue = days_overdue(invoice.due_date, self._today())
        message = compose_follow_up_email(invoice, level, overdue, self._mailer.issuer_name)
        result = self._mailer.deliver(invoice, message)

        if not result.success:
            self._logger.warning(
                "follow_up_failed",
                invoice_id=invoice.id,
                level=level,
                error=result.error,
            )
            return Transition(invoice), result

        sent_at = self._clock() if self._clock else None
        transition = self._lifecycle.record_follow_up(invoice, level, sent_at)
        self._logger.info(
            "follow_up_sent",
            invoice_id=invoice.id,
            level=level,
            days_overdue=overdue,
        )
        return transition, result
