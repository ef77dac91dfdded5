"""Billing engine - wires the collaborators and persists human-facing operations.

The engine is the entry point for host applications. It manages:
- Billing entity registration with the configured invoice prefix
- Schedule lifecycle operations (create, approve, pause, resume, end, amend)
- Invoice lifecycle operations (approve, reject, send, mark paid, void)
- Ad-hoc invoice generation and the scheduled billing sweep
- Event publishing after each committed transition
"""

from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog

from billing_engine.delivery import DocumentRenderer, EmailTransport, FollowUpService, InvoiceMailer
from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.events.publisher import EventPublisher
from billing_engine.invoicing import AdHocInvoiceRequest, CreatedInvoice, InvoiceFactory, InvoiceGenerator
from billing_engine.lifecycle.invoice import InvoiceLifecycle, Transition
from billing_engine.lifecycle.schedule import ScheduleLifecycle, ScheduleTransition
from billing_engine.models import (
    BillingEntity,
    BillingSchedule,
    DeliveryResult,
    Invoice,
    PaymentMethod,
)
from billing_engine.persistence.base import BillingRepository
from billing_engine.runner import RunExecutor, RunResult, SweepSummary
from billing_engine.settings_provider import SettingsProvider

logger = structlog.get_logger(__name__)


class BillingEngine:
    """Main coordinator for recurring billing.

    Usage:
        engine = BillingEngine(repository, settings=SettingsProvider(source))
        schedule = engine.create_schedule(schedule, created_by_id="u1")
        engine.approve_schedule(schedule.id, actor_id="u2", today=date.today())

        summary = engine.execute_due_runs(date.today())
    """

    def __init__(
        self,
        repository: BillingRepository,
        settings: SettingsProvider | None = None,
        publisher: EventPublisher | None = None,
        transport: EmailTransport | None = None,
        renderer: DocumentRenderer | None = None,
        clock: Callable[[], datetime] | None = None,
        issuer_name: str = "Billing Department",
    ):
        self._repository = repository
        self._settings = settings or SettingsProvider()
        self._publisher = publisher or EventPublisher()

        lifecycle_kwargs: dict[str, Any] = {"clock": clock} if clock else {}
        self._invoices = InvoiceLifecycle(**lifecycle_kwargs)
        self._schedules = ScheduleLifecycle(**lifecycle_kwargs)

        self._mailer = (
            InvoiceMailer(transport, renderer, self._invoices, issuer_name)
            if transport is not None
            else None
        )
        self._factory = InvoiceFactory(
            repository,
            self._settings,
            self._publisher,
            self._mailer,
            self._invoices,
        )
        self._generator = InvoiceGenerator(repository, self._factory)
        self._executor = RunExecutor(repository, self._factory, self._schedules)

        self._logger = logger.bind(component="billing_engine")

    @property
    def repository(self) -> BillingRepository:
        return self._repository

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    @property
    def settings(self) -> SettingsProvider:
        return self._settings

    @property
    def executor(self) -> RunExecutor:
        return self._executor

    @property
    def mailer(self) -> InvoiceMailer | None:
        return self._mailer

    # ── Helpers ──────────────────────────────────────────────────────

    def _schedule(self, schedule_id: str) -> BillingSchedule:
        schedule = self._repository.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    def _invoice(self, invoice_id: str) -> Invoice:
        invoice = self._repository.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def _commit_schedule(self, transition: ScheduleTransition) -> BillingSchedule:
        saved = self._repository.save_schedule(transition.schedule)
        self._publisher.publish_all(transition.events)
        return saved

    def _commit_invoice(self, transition: Transition) -> Invoice:
        self._repository.save_invoice(transition.invoice)
        self._publisher.publish_all(transition.events)
        return transition.invoice

    # ── Reference data ───────────────────────────────────────────────

    def register_entity(self, code: str, name: str, invoice_prefix: str | None = None) -> BillingEntity:
        """Register an issuing company; the prefix defaults to the configured one."""
        prefix = (invoice_prefix or self._settings.invoice_prefix()).strip()
        if not code.strip() or not name.strip():
            raise ValidationError("Billing entity code and name are required")
        if not prefix:
            raise ValidationError("Invoice prefix must not be blank")
        entity = self._repository.add_entity(
            BillingEntity(code=code.strip(), name=name.strip(), invoice_prefix=prefix)
        )
        self._logger.info("entity_registered", entity_id=entity.id, code=entity.code, prefix=prefix)
        return entity

    # ── Schedules ────────────────────────────────────────────────────

    def create_schedule(
        self,
        schedule: BillingSchedule,
        created_by_id: str | None = None,
    ) -> BillingSchedule:
        """Validate and store a new PENDING schedule."""
        if self._repository.get_contract(schedule.contract_id) is None:
            raise NotFoundError(f"Contract {schedule.contract_id} not found")
        if self._repository.get_entity(schedule.billing_entity_id) is None:
            raise NotFoundError(f"Billing entity {schedule.billing_entity_id} not found")
        transition = self._schedules.create(schedule, created_by_id)
        self._repository.add_schedule(transition.schedule)
        self._publisher.publish_all(transition.events)
        return transition.schedule

    def approve_schedule(self, schedule_id: str, actor_id: str, today: date) -> BillingSchedule:
        return self._commit_schedule(
            self._schedules.approve(self._schedule(schedule_id), actor_id, today)
        )

    def reject_schedule(
        self,
        schedule_id: str,
        actor_id: str,
        reason: str | None = None,
    ) -> BillingSchedule:
        return self._commit_schedule(
            self._schedules.reject(self._schedule(schedule_id), actor_id, reason)
        )

    def pause_schedule(self, schedule_id: str) -> BillingSchedule:
        return self._commit_schedule(self._schedules.pause(self._schedule(schedule_id)))

    def resume_schedule(self, schedule_id: str, today: date) -> BillingSchedule:
        return self._commit_schedule(self._schedules.resume(self._schedule(schedule_id), today))

    def end_schedule(self, schedule_id: str, today: date) -> BillingSchedule:
        """End a schedule. Deleting a schedule maps to this."""
        return self._commit_schedule(self._schedules.end(self._schedule(schedule_id), today))

    def amend_schedule(self, schedule_id: str, today: date, **changes: Any) -> BillingSchedule:
        return self._commit_schedule(
            self._schedules.amend(self._schedule(schedule_id), today, **changes)
        )

    # ── Runs ─────────────────────────────────────────────────────────

    def execute_due_runs(self, as_of: date) -> SweepSummary:
        return self._executor.execute_due_runs(as_of)

    def run_now(self, schedule_id: str, as_of: date, occurrence: date | None = None) -> RunResult:
        return self._executor.run_now(schedule_id, as_of, occurrence)

    # ── Invoices ─────────────────────────────────────────────────────

    def generate_invoice(self, request: AdHocInvoiceRequest) -> CreatedInvoice:
        return self._generator.generate(request)

    def approve_invoice(self, invoice_id: str, actor_id: str | None) -> Invoice:
        return self._commit_invoice(self._invoices.approve(self._invoice(invoice_id), actor_id))

    def reject_invoice(
        self,
        invoice_id: str,
        actor_id: str,
        reason: str,
        reschedule_date: date | None = None,
    ) -> Invoice:
        return self._commit_invoice(
            self._invoices.reject(self._invoice(invoice_id), actor_id, reason, reschedule_date)
        )

    def reschedule_invoice(self, invoice_id: str, reschedule_date: date) -> Invoice:
        return self._commit_invoice(
            self._invoices.reschedule(self._invoice(invoice_id), reschedule_date)
        )

    def record_delivery(self, invoice_id: str, delivery: DeliveryResult) -> Invoice:
        """Record the outcome of a delivery performed outside the engine."""
        return self._commit_invoice(self._invoices.mark_sent(self._invoice(invoice_id), delivery))

    def send_invoice(self, invoice_id: str) -> Invoice:
        """Deliver an APPROVED invoice through the configured transport."""
        if self._mailer is None:
            raise ValidationError("No email transport is configured")
        return self._commit_invoice(self._mailer.send_invoice(self._invoice(invoice_id)))

    def mark_invoice_paid(
        self,
        invoice_id: str,
        amount: Decimal | int | float | str,
        method: PaymentMethod | str,
        reference: str | None = None,
        paid_at: datetime | None = None,
    ) -> Invoice:
        return self._commit_invoice(
            self._invoices.mark_paid(self._invoice(invoice_id), amount, method, reference, paid_at)
        )

    def void_invoice(self, invoice_id: str, actor_id: str, reason: str) -> Invoice:
        return self._commit_invoice(self._invoices.void(self._invoice(invoice_id), actor_id, reason))

    def set_invoice_follow_up(self, invoice_id: str, enabled: bool) -> Invoice:
        return self._commit_invoice(
            self._invoices.set_follow_up(self._invoice(invoice_id), enabled)
        )

    def follow_up_service(self, today: Callable[[], date] = date.today) -> FollowUpService:
        """Follow-up service bound to this engine's mailer and lifecycle."""
        if self._mailer is None:
            raise ValidationError("No email transport is configured")
        return FollowUpService(self._mailer, self._invoices, today=today)

    def send_follow_up(self, invoice_id: str, today: date | None = None) -> DeliveryResult:
        """Send the next payment reminder for a SENT invoice."""
        service = self.follow_up_service((lambda: today) if today else date.today)
        transition, result = service.send_follow_up(self._invoice(invoice_id))
        if result.success:
            self._commit_invoice(transition)
        return result
