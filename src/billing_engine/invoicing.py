"""Invoice construction for scheduled runs and ad-hoc requests.

Both paths share the tax engine, the billing number allocator and the
invoice lifecycle's creation-time branch. Events are published and
auto-send is attempted only after the invoice has been committed.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import structlog

from billing_engine.delivery import InvoiceMailer
from billing_engine.errors import NotFoundError, ValidationError
from billing_engine.events.publisher import EventPublisher
from billing_engine.lifecycle.invoice import CreationOutcome, InvoiceLifecycle
from billing_engine.models import (
    BillingFrequency,
    BillingSchedule,
    Contract,
    CustomerSnapshot,
    DeliveryResult,
    DiscountType,
    EmailStatus,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    VatPolicy,
)
from billing_engine.numbering import BillingNumberAllocator
from billing_engine.persistence.base import BillingRepository
from billing_engine.recurrence import BillingPeriod, billing_period, due_date_for, period_label
from billing_engine.settings_provider import SettingsProvider
from billing_engine.tax import (
    TaxBreakdown,
    compute_breakdown,
    compute_line_breakdown,
    sum_breakdowns,
    to_decimal,
)

logger = structlog.get_logger(__name__)


@dataclass
class LineItemInput:
    """One requested charge on an ad-hoc invoice."""

    description: str
    amount: Decimal
    quantity: int = 1
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    period_start: date | None = None
    period_end: date | None = None


@dataclass
class CustomBillTo:
    """Bill-to details for an invoice without a contract."""

    name: str
    emails: tuple[str, ...] = ()
    attention: str | None = None
    address: str | None = None
    tin: str | None = None


@dataclass
class AdHocInvoiceRequest:
    """A manually requested invoice."""

    billing_entity_id: str
    line_items: list[LineItemInput]
    statement_date: date
    due_date: date | None = None
    contract_id: str | None = None
    bill_to: CustomBillTo | None = None
    vat_policy: VatPolicy = VatPolicy.VAT
    amount_is_vat_inclusive: bool = False
    has_withholding: bool = False
    withholding_rate: Decimal | None = None
    withholding_code: str | None = None
    billing_frequency: BillingFrequency = BillingFrequency.MONTHLY
    period_start: date | None = None
    period_end: date | None = None
    remarks: str | None = None
    auto_approve: bool = False
    auto_send_enabled: bool = False
    created_by_id: str | None = None


@dataclass
class CreatedInvoice:
    """A committed invoice and what happened after commit."""

    invoice: Invoice
    events: list = field(default_factory=list)
    send_attempted: bool = False
    delivery: DeliveryResult | None = None

    @property
    def auto_sent(self) -> bool:
        return (
            self.delivery is not None
            and self.delivery.success
            and self.invoice.status == InvoiceStatus.SENT
        )


class InvoiceFactory:
    """Builds invoices from schedules and records them.

    Args:
        repository: Persistence collaborator.
        settings: Runtime settings for VAT and withholding defaults.
        publisher: Receives events after commit.
        mailer: Sends auto-send invoices. Without one, auto-send is skipped.
        lifecycle: Invoice state machine.
    """

    def __init__(
        self,
        repository: BillingRepository,
        settings: SettingsProvider,
        publisher: EventPublisher | None = None,
        mailer: InvoiceMailer | None = None,
        lifecycle: InvoiceLifecycle | None = None,
    ):
        self._repository = repository
        self._settings = settings
        self._publisher = publisher or EventPublisher()
        self._mailer = mailer
        self._lifecycle = lifecycle or InvoiceLifecycle()
        self._allocator = BillingNumberAllocator(repository)
        self._logger = logger.bind(component="invoice_factory")

    @property
    def lifecycle(self) -> InvoiceLifecycle:
        return self._lifecycle

    @property
    def settings(self) -> SettingsProvider:
        return self._settings

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    def withholding_for(self, schedule: BillingSchedule) -> tuple[Decimal | None, str | None]:
        """Rate and code for a schedule, falling back to the configured default."""
        if not schedule.has_withholding:
            return None, None
        default = self._settings.default_withholding()
        rate = schedule.withholding_rate if schedule.withholding_rate is not None else default.rate
        return rate, schedule.withholding_code or default.code

    def schedule_breakdown(self, schedule: BillingSchedule) -> TaxBreakdown:
        rate, _ = self.withholding_for(schedule)
        return compute_breakdown(
            schedule.billing_amount,
            schedule.amount_is_vat_inclusive,
            schedule.vat_policy,
            schedule.has_withholding,
            rate,
            self._settings.vat_rate(),
        )

    def build_from_schedule(
        self,
        schedule: BillingSchedule,
        contract: Contract,
        occurrence: date,
        billing_no: str,
        breakdown: TaxBreakdown,
        period: BillingPeriod | None = None,
    ) -> Invoice:
        """Construct the invoice for one schedule occurrence."""
        period = period or billing_period(schedule, occurrence)
        rate, code = self.withholding_for(schedule)
        base = schedule.description or contract.product_type or "Services"
        line = InvoiceLineItem(
            description=f"{base} - {period_label(schedule, period)}",
            service_fee=breakdown.service_fee,
            vat_amount=breakdown.vat_amount,
            withholding_tax=breakdown.withholding_tax,
            amount=breakdown.net_amount,
            unit_price=breakdown.service_fee,
            period_start=period.start,
            period_end=period.end,
        )
        return Invoice(
            billing_no=billing_no,
            billing_entity_id=schedule.billing_entity_id,
            customer=CustomerSnapshot.from_contract(contract),
            statement_date=occurrence,
            due_date=due_date_for(schedule, occurrence),
            service_fee=breakdown.service_fee,
            vat_amount=breakdown.vat_amount,
            gross_amount=breakdown.gross_amount,
            withholding_tax=breakdown.withholding_tax,
            net_amount=breakdown.net_amount,
            vat_policy=schedule.vat_policy,
            has_withholding=schedule.has_withholding,
            withholding_rate=rate,
            withholding_code=code,
            billing_frequency=schedule.frequency,
            schedule_id=schedule.id,
            contract_id=contract.id,
            period_start=period.start,
            period_end=period.end,
            remarks=schedule.remarks,
            line_items=[line],
        )

    def create_for_schedule(
        self,
        schedule: BillingSchedule,
        contract: Contract,
        occurrence: date,
        period: BillingPeriod | None = None,
    ) -> CreationOutcome:
        """Compute, number, initialize and insert a scheduled invoice.

        Must be called inside ``repository.atomic()``.
        """
        breakdown = self.schedule_breakdown(schedule)
        billing_no = self._allocator.allocate(schedule.billing_entity_id, occurrence)
        invoice = self.build_from_schedule(
            schedule, contract, occurrence, billing_no, breakdown, period
        )
        outcome = self._lifecycle.initialize(
            invoice,
            auto_approve=schedule.auto_approve,
            auto_send_enabled=schedule.auto_send_enabled,
            frequency=schedule.frequency,
        )
        self._repository.add_invoice(outcome.invoice)
        return outcome

    def after_commit(self, outcome: CreationOutcome) -> CreatedInvoice:
        """Publish creation events and perform auto-send when requested.

        A failed delivery leaves the invoice APPROVED with its e-mail status
        set to FAILED. The stored invoice is re-read before sending and again
        before the result is saved; if it changed in between, for example a
        manual void, the stored state is kept.
        """
        self._publisher.publish_all(outcome.events)
        created = CreatedInvoice(invoice=outcome.invoice, events=list(outcome.events))

        if not outcome.should_send:
            return created
        if self._mailer is None:
            self._logger.warning("auto_send_without_mailer", invoice_id=outcome.invoice.id)
            return created

        current = self._repository.get_invoice(outcome.invoice.id)
        if current is None or current.status != InvoiceStatus.APPROVED:
            self._logger.warning(
                "auto_send_skipped",
                invoice_id=outcome.invoice.id,
                status=current.status.value if current else None,
            )
            created.invoice = current or outcome.invoice
            return created

        sent = self._mailer.send_invoice(current)
        created.send_attempted = True
        created.delivery = (
            DeliveryResult.ok(sent.invoice.email_message_id)
            if sent.invoice.email_status == EmailStatus.SENT
            else DeliveryResult.failed(sent.invoice.email_error or "delivery failed")
        )

        with self._repository.atomic():
            stored = self._repository.get_invoice(current.id)
            superseded = stored != current
            if not superseded:
                self._repository.save_invoice(sent.invoice)

        if superseded:
            self._logger.warning(
                "auto_send_result_discarded",
                invoice_id=current.id,
                status=stored.status.value if stored else None,
                delivered=created.delivery.success,
            )
            created.invoice = stored or current
            return created

        self._publisher.publish_all(sent.events)
        created.invoice = sent.invoice
        created.events.extend(sent.events)
        return created


class InvoiceGenerator:
    """Creates ad-hoc invoices through the same numbering and lifecycle path."""

    def __init__(self, repository: BillingRepository, factory: InvoiceFactory):
        self._repository = repository
        self._factory = factory
        self._allocator = BillingNumberAllocator(repository)
        self._logger = logger.bind(component="invoice_generator")

    def _customer(self, request: AdHocInvoiceRequest) -> tuple[CustomerSnapshot, str | None]:
        if request.contract_id:
            contract = self._repository.get_contract(request.contract_id)
            if contract is None:
                raise NotFoundError(f"Contract {request.contract_id} not found")
            return CustomerSnapshot.from_contract(contract), contract.id
        if request.bill_to is None:
            raise ValidationError("Either contract_id or bill_to is required")
        bill_to = request.bill_to
        if not bill_to.name.strip():
            raise ValidationError("bill_to.name is required")
        return (
            CustomerSnapshot(
                name=bill_to.name.strip(),
                emails=tuple(bill_to.emails),
                attention=bill_to.attention,
                address=bill_to.address,
                tin=bill_to.tin,
            ),
            None,
        )

    def _withholding(self, request: AdHocInvoiceRequest) -> tuple[Decimal | None, str | None]:
        if not request.has_withholding:
            return None, None
        default = self._factory.settings.default_withholding()
        rate = request.withholding_rate if request.withholding_rate is not None else default.rate
        return rate, request.withholding_code or default.code

    def _line_items(
        self,
        request: AdHocInvoiceRequest,
        withholding_rate: Decimal | None,
        vat_rate: Decimal,
    ) -> tuple[list[InvoiceLineItem], TaxBreakdown]:
        if not request.line_items:
            raise ValidationError("At least one line item is required")

        items: list[InvoiceLineItem] = []
        breakdowns: list[TaxBreakdown] = []
        for index, item in enumerate(request.line_items):
            if item.quantity < 1:
                raise ValidationError(f"line_items[{index}]: quantity must be at least 1")
            if not item.description.strip():
                raise ValidationError(f"line_items[{index}]: description is required")
            unit_price = to_decimal(item.amount, f"line_items[{index}].amount")
            breakdown = compute_line_breakdown(
                unit_price * item.quantity,
                request.vat_policy,
                request.has_withholding,
                withholding_rate,
                vat_rate,
                request.amount_is_vat_inclusive,
                item.discount_type,
                item.discount_value,
            )
            breakdowns.append(breakdown)
            items.append(
                InvoiceLineItem(
                    description=item.description.strip(),
                    service_fee=breakdown.service_fee,
                    vat_amount=breakdown.vat_amount,
                    withholding_tax=breakdown.withholding_tax,
                    amount=breakdown.net_amount,
                    sort_order=index,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    discount_type=item.discount_type,
                    discount_value=item.discount_value,
                    discount_amount=breakdown.discount_amount or None,
                    period_start=item.period_start,
                    period_end=item.period_end,
                )
            )
        return items, sum_breakdowns(breakdowns)

    def generate(self, request: AdHocInvoiceRequest) -> CreatedInvoice:
        """Create, number and initialize an ad-hoc invoice.

        Raises:
            ValidationError: On a malformed request.
            NotFoundError: If the referenced contract does not exist.
            UnknownBillingEntityError: If the billing entity does not exist.
        """
        customer, contract_id = self._customer(request)
        withholding_rate, withholding_code = self._withholding(request)
        vat_rate = self._factory.settings.vat_rate()
        items, totals = self._line_items(request, withholding_rate, vat_rate)
        due_date = request.due_date or request.statement_date
        if due_date < request.statement_date:
            raise ValidationError("due_date must not precede statement_date")

        with self._repository.atomic():
            billing_no = self._allocator.allocate(request.billing_entity_id, request.statement_date)
            invoice = Invoice(
                billing_no=billing_no,
                billing_entity_id=request.billing_entity_id,
                customer=customer,
                statement_date=request.statement_date,
                due_date=due_date,
                service_fee=totals.service_fee,
                vat_amount=totals.vat_amount,
                gross_amount=totals.gross_amount,
                withholding_tax=totals.withholding_tax,
                net_amount=totals.net_amount,
                vat_policy=request.vat_policy,
                has_withholding=request.has_withholding,
                withholding_rate=withholding_rate,
                withholding_code=withholding_code,
                discount_amount=totals.discount_amount or None,
                billing_frequency=request.billing_frequency,
                contract_id=contract_id,
                period_start=request.period_start,
                period_end=request.period_end,
                remarks=request.remarks,
                line_items=items,
            )
            outcome = self._factory.lifecycle.initialize(
                invoice,
                auto_approve=request.auto_approve,
                auto_send_enabled=request.auto_send_enabled,
                frequency=request.billing_frequency,
            )
            self._repository.add_invoice(outcome.invoice)

        self._logger.info(
            "ad_hoc_invoice_created",
            invoice_id=outcome.invoice.id,
            billing_no=billing_no,
            line_items=len(items),
            status=outcome.invoice.status.value,
        )
        return self._factory.after_commit(outcome)
