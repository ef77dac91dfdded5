"""Pytest configuration and fixtures."""

import os
from datetime import date
from decimal import Decimal

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_FORMAT", "console")

from billing_engine.config.settings import BillingSettings  # noqa: E402
from billing_engine.delivery import DocumentRenderer, EmailTransport  # noqa: E402
from billing_engine.engine import BillingEngine  # noqa: E402
from billing_engine.events import EventPublisher  # noqa: E402
from billing_engine.models import (  # noqa: E402
    BillingEntity,
    BillingFrequency,
    BillingSchedule,
    Contract,
    DeliveryResult,
    Invoice,
)
from billing_engine.persistence import InMemoryBillingRepository  # noqa: E402
from billing_engine.settings_provider import SettingsProvider  # noqa: E402


class RecordingTransport(EmailTransport):
    """E-mail transport that records messages instead of sending them."""

    def __init__(self, fail_with: str | None = None, raise_with: Exception | None = None):
        self.sent: list[dict] = []
        self.fail_with = fail_with
        self.raise_with = raise_with

    def send(self, to, subject, body_text, body_html, attachment=None, attachment_name=None):
        if self.raise_with is not None:
            raise self.raise_with
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "body_text": body_text,
                "body_html": body_html,
                "attachment": attachment,
                "attachment_name": attachment_name,
            }
        )
        if self.fail_with is not None:
            return DeliveryResult.failed(self.fail_with)
        return DeliveryResult.ok(f"msg-{len(self.sent)}")


class StaticRenderer(DocumentRenderer):
    """Renderer that returns a fixed PDF payload."""

    def render(self, invoice: Invoice) -> bytes:
        return b"%PDF-1.4 " + invoice.billing_no.encode()


@pytest.fixture
def repository():
    """Create an empty in-memory repository."""
    return InMemoryBillingRepository()


@pytest.fixture
def entity(repository):
    """Register a billing entity with prefix INV."""
    return repository.add_entity(BillingEntity(code="ABBA", name="Abba Corp", invoice_prefix="INV"))


@pytest.fixture
def contract(repository):
    """Register a customer contract."""
    return repository.add_contract(
        Contract(
            company_name="Acme Trading",
            emails=("billing@acme.test", "ap@acme.test"),
            contact_person="Maria Santos",
            address="123 Ayala Ave, Makati",
            tin="123-456-789-000",
            product_type="Payroll Service",
        )
    )


@pytest.fixture
def settings():
    """Settings built from defaults and the test environment."""
    return BillingSettings()


@pytest.fixture
def settings_provider(settings):
    """Settings provider with packaged defaults only."""
    return SettingsProvider(settings=settings)


@pytest.fixture
def publisher():
    """Create an event publisher."""
    return EventPublisher()


@pytest.fixture
def transport():
    """Create a recording e-mail transport."""
    return RecordingTransport()


@pytest.fixture
def engine(repository, settings_provider, publisher, transport):
    """Billing engine wired with in-memory collaborators."""
    return BillingEngine(
        repository,
        settings=settings_provider,
        publisher=publisher,
        transport=transport,
        renderer=StaticRenderer(),
        issuer_name="Abba Corp",
    )


@pytest.fixture
def make_schedule(entity, contract):
    """Factory for unsaved schedules with sensible defaults."""

    def _make(**overrides) -> BillingSchedule:
        values = {
            "contract_id": contract.id,
            "billing_entity_id": entity.id,
            "billing_amount": Decimal("10000.00"),
            "billing_day_of_month": 15,
            "start_date": date(2026, 1, 1),
            "frequency": BillingFrequency.MONTHLY,
        }
        values.update(overrides)
        return BillingSchedule(**values)

    return _make


@pytest.fixture
def active_schedule(engine, make_schedule):
    """Factory that creates and approves a schedule through the engine."""

    def _activate(today: date = date(2026, 1, 1), **overrides) -> BillingSchedule:
        created = engine.create_schedule(make_schedule(**overrides), created_by_id="creator")
        return engine.approve_schedule(created.id, actor_id="approver", today=today)

    return _activate
