"""Tests for invoice delivery and follow-ups."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from billing_engine.delivery import (
    EmailTransport,
    FollowUpService,
    InvoiceMailer,
    compose_follow_up_email,
    compose_invoice_email,
    days_overdue,
    format_currency,
    format_date,
)
from billing_engine.errors import DeliveryError, InvalidTransitionError
from billing_engine.models import (
    CustomerSnapshot,
    DeliveryResult,
    EmailStatus,
    Invoice,
    InvoiceStatus,
)

NOW = datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc)


def make_invoice(**overrides) -> Invoice:
    values = {
        "billing_no": "INV-2026-00007",
        "billing_entity_id": "e1",
        "customer": CustomerSnapshot(
            name="Acme Trading",
            emails=("billing@acme.test",),
            attention="Maria Santos",
        ),
        "statement_date": date(2026, 1, 15),
        "due_date": date(2026, 1, 30),
        "service_fee": Decimal("10000.00"),
        "vat_amount": Decimal("1200.00"),
        "gross_amount": Decimal("11200.00"),
        "withholding_tax": Decimal("200.00"),
        "net_amount": Decimal("11000.00"),
        "period_start": date(2026, 1, 1),
        "period_end": date(2026, 1, 31),
        "status": InvoiceStatus.APPROVED,
    }
    values.update(overrides)
    return Invoice(**values)


@pytest.fixture
def mock_transport():
    transport = MagicMock(spec=EmailTransport)
    transport.send.return_value = DeliveryResult.ok("msg-42")
    return transport


class TestFormatting:
    """Tests for message formatting helpers."""

    def test_format_currency(self):
        assert format_currency(Decimal("1234.5")) == "PHP 1,234.50"

    def test_format_date(self):
        assert format_date(date(2026, 1, 5)) == "January 05, 2026"
        assert format_date(None) == ""

    def test_days_overdue(self):
        """Test overdue days never go negative."""
        assert days_overdue(date(2026, 1, 30), date(2026, 2, 10)) == 11
        assert days_overdue(date(2026, 1, 30), date(2026, 1, 20)) == 0


class TestCompose:
    """Tests for e-mail composition."""

    def test_invoice_email(self):
        """Test the billing statement e-mail."""
        message = compose_invoice_email(make_invoice(), "Abba Corp")

        assert message.to == ["billing@acme.test"]
        assert message.subject == "Billing Statement INV-2026-00007 - Acme Trading"
        assert message.attachment_name == "Invoice-INV-2026-00007.pdf"
        assert "Dear Maria Santos," in message.body_text
        assert "PHP 11,000.00" in message.body_text
        assert "January 01, 2026 to January 31, 2026" in message.body_text
        assert "Abba Corp" in message.body_html

    def test_html_is_escaped(self):
        """Test customer-supplied text is escaped in HTML."""
        invoice = make_invoice(customer=CustomerSnapshot(name="<Acme & Co>", emails=("a@b.test",)))

        message = compose_invoice_email(invoice, "Abba Corp")

        assert "&lt;Acme &amp; Co&gt;" in message.body_html

    @pytest.mark.parametrize(
        "level,prefix",
        [(1, "Friendly Reminder"), (2, "Second Reminder"), (3, "Final Notice")],
    )
    def test_follow_up_tone(self, level, prefix):
        """Test follow-up subjects escalate by level."""
        message = compose_follow_up_email(make_invoice(), level, 11, "Abba Corp")

        assert message.subject.startswith(f"{prefix}: Billing Statement INV-2026-00007")
        assert "11 day(s) overdue" in message.body_text

    def test_follow_up_unknown_level(self):
        with pytest.raises(DeliveryError):
            compose_follow_up_email(make_invoice(), 4, 0, "Abba Corp")


class TestInvoiceMailer:
    """Tests for InvoiceMailer."""

    def test_send_invoice(self, mock_transport):
        """Test sending an approved invoice."""
        renderer = MagicMock()
        renderer.render.return_value = b"%PDF"
        mailer = InvoiceMailer(mock_transport, renderer, issuer_name="Abba Corp")

        result = mailer.send_invoice(make_invoice())

        assert result.invoice.status == InvoiceStatus.SENT
        assert result.invoice.email_message_id == "msg-42"
        args = mock_transport.send.call_args.args
        assert args[0] == ["billing@acme.test"]
        assert args[4] == b"%PDF"
        assert args[5] == "Invoice-INV-2026-00007.pdf"

    def test_send_without_renderer(self, mock_transport):
        """Test invoices are sent without attachment when no renderer exists."""
        mailer = InvoiceMailer(mock_transport)

        mailer.send_invoice(make_invoice())

        args = mock_transport.send.call_args.args
        assert args[4] is None
        assert args[5] is None

    def test_transport_exception_becomes_failure(self, mock_transport):
        """Test transport errors are recorded, not raised."""
        mock_transport.send.side_effect = ConnectionError("connection refused")
        mailer = InvoiceMailer(mock_transport)

        result = mailer.send_invoice(make_invoice())

        assert result.invoice.status == InvoiceStatus.APPROVED
        assert result.invoice.email_status == EmailStatus.FAILED
        assert result.invoice.email_error == "connection refused"

    def test_renderer_exception_becomes_failure(self, mock_transport):
        """Test renderer errors are recorded, not raised."""
        renderer = MagicMock()
        renderer.render.side_effect = RuntimeError("template missing")
        mailer = InvoiceMailer(mock_transport, renderer)

        result = mailer.send_invoice(make_invoice())

        assert result.invoice.email_error == "template missing"
        mock_transport.send.assert_not_called()

    def test_no_recipients(self, mock_transport):
        """Test customers without e-mail fail delivery."""
        mailer = InvoiceMailer(mock_transport)
        invoice = make_invoice(customer=CustomerSnapshot(name="Acme Trading"))

        result = mailer.send_invoice(invoice)

        assert result.invoice.email_error == "No email address for this customer"
        mock_transport.send.assert_not_called()

    def test_send_requires_approved(self, mock_transport):
        """Test pending invoices are not sent."""
        mailer = InvoiceMailer(mock_transport)

        with pytest.raises(InvalidTransitionError):
            mailer.send_invoice(make_invoice(status=InvoiceStatus.PENDING))


class TestFollowUpService:
    """Tests for FollowUpService."""

    @pytest.fixture
    def service(self, mock_transport):
        mailer = InvoiceMailer(mock_transport, issuer_name="Abba Corp")
        return FollowUpService(mailer, today=lambda: date(2026, 2, 10), clock=lambda: NOW)

    def test_eligibility(self, service):
        """Test a sent invoice is eligible for level 1."""
        eligibility = service.can_send_follow_up(make_invoice(status=InvoiceStatus.SENT))

        assert eligibility.can_send is True
        assert eligibility.next_level == 1

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"status": InvoiceStatus.APPROVED}, "SENT status"),
            ({"status": InvoiceStatus.SENT, "follow_up_enabled": False}, "disabled"),
            ({"status": InvoiceStatus.SENT, "last_follow_up_level": 3}, "Maximum"),
            (
                {"status": InvoiceStatus.SENT, "customer": CustomerSnapshot(name="Acme")},
                "No email",
            ),
        ],
    )
    def test_ineligible(self, service, overrides, reason):
        """Test reasons for refusing a follow-up."""
        eligibility = service.can_send_follow_up(make_invoice(**overrides))

        assert eligibility.can_send is False
        assert reason in eligibility.reason

    def test_send_follow_up(self, service, mock_transport):
        """Test sending a reminder records the level."""
        transition, result = service.send_follow_up(make_invoice(status=InvoiceStatus.SENT))

        assert result.success is True
        assert transition.invoice.last_follow_up_level == 1
        assert transition.invoice.last_follow_up_at == NOW
        subject = mock_transport.send.call_args.args[1]
        assert subject.startswith("Friendly Reminder:")

    def test_failed_follow_up_not_recorded(self, service, mock_transport):
        """Test a failed reminder leaves the invoice unchanged."""
        mock_transport.send.return_value = DeliveryResult.failed("bounced")
        invoice = make_invoice(status=InvoiceStatus.SENT)

        transition, result = service.send_follow_up(invoice)

        assert result.success is False
        assert transition.invoice == invoice
        assert transition.events == []

    def test_ineligible_raises(self, service):
        """Test sending to an ineligible invoice raises."""
        with pytest.raises(DeliveryError):
            service.send_follow_up(make_invoice(status=InvoiceStatus.PAID))
