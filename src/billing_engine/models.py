"""Data model for schedules, runs, invoices and their reference data."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid4().hex


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


ZERO = Decimal("0.00")


class VatPolicy(str, Enum):
    """Whether the customer is VAT-registered."""

    VAT = "VAT"
    NON_VAT = "NON_VAT"


class BillingFrequency(str, Enum):
    """Cadence of a billing schedule."""

    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUALLY = "ANNUALLY"
    CUSTOM = "CUSTOM"


class IntervalUnit(str, Enum):
    """Unit of a CUSTOM schedule interval."""

    DAYS = "DAYS"
    MONTHS = "MONTHS"


class ScheduleStatus(str, Enum):
    """Lifecycle status of a billing schedule."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"


class RunOutcome(str, Enum):
    """Outcome of one billing attempt."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class InvoiceStatus(str, Enum):
    """Lifecycle status of an invoice."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SENT = "SENT"
    PAID = "PAID"
    VOID = "VOID"


class EmailStatus(str, Enum):
    """Delivery tracking for an invoice e-mail."""

    NOT_SENT = "NOT_SENT"
    SENT = "SENT"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    """How an invoice was settled."""

    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHECK = "CHECK"
    ONLINE = "ONLINE"


class DiscountType(str, Enum):
    """Line-item discount kinds."""

    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing an invoice e-mail to the transport."""

    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, message_id: str | None = None) -> "DeliveryResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(success=False, error=error)


@dataclass
class BillingEntity:
    """The issuing company under which invoices are numbered."""

    code: str
    name: str
    invoice_prefix: str
    next_invoice_no: int = 1
    id: str = field(default_factory=new_id)


@dataclass
class Contract:
    """Customer reference data an invoice snapshots at creation time."""

    company_name: str
    emails: tuple[str, ...] = ()
    contact_person: str | None = None
    address: str | None = None
    tin: str | None = None
    product_type: str | None = None
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class CustomerSnapshot:
    """Customer identity copied onto an invoice, not live-linked."""

    name: str
    emails: tuple[str, ...] = ()
    attention: str | None = None
    address: str | None = None
    tin: str | None = None

    @classmethod
    def from_contract(cls, contract: Contract) -> "CustomerSnapshot":
        return cls(
            name=contract.company_name,
            emails=tuple(contract.emails),
            attention=contract.contact_person,
            address=contract.address,
            tin=contract.tin,
        )

    @property
    def primary_email(self) -> str | None:
        return self.emails[0] if self.emails else None


@dataclass
class BillingSchedule:
    """A recurring invoicing instruction bound to a contract and an entity."""

    contract_id: str
    billing_entity_id: str
    billing_amount: Decimal
    billing_day_of_month: int
    start_date: date
    frequency: BillingFrequency = BillingFrequency.MONTHLY
    vat_policy: VatPolicy = VatPolicy.VAT
    amount_is_vat_inclusive: bool = False
    has_withholding: bool = False
    withholding_rate: Decimal | None = None
    withholding_code: str | None = None
    custom_interval_value: int | None = None
    custom_interval_unit: IntervalUnit | None = None
    due_day_of_month: int | None = None
    end_date: date | None = None
    next_billing_date: date | None = None
    description: str | None = None
    remarks: str | None = None
    auto_approve: bool = False
    auto_send_enabled: bool = True
    status: ScheduleStatus = ScheduleStatus.PENDING
    run_count: int = 0
    created_by_id: str | None = None
    approved_by_id: str | None = None
    approved_at: datetime | None = None
    rejected_by_id: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    ended_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class BillingRun:
    """One execution attempt of a schedule for one occurrence."""

    schedule_id: str
    run_date: date
    occurrence_date: date | None = None
    period_key: str | None = None
    outcome: RunOutcome = RunOutcome.PENDING
    invoice_id: str | None = None
    error_message: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    finalized_at: datetime | None = None


@dataclass
class InvoiceLineItem:
    """An itemized charge on an invoice."""

    description: str
    service_fee: Decimal
    vat_amount: Decimal
    withholding_tax: Decimal
    amount: Decimal
    sort_order: int = 0
    quantity: int = 1
    unit_price: Decimal | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    discount_amount: Decimal | None = None
    period_start: date | None = None
    period_end: date | None = None
    id: str = field(default_factory=new_id)

    @property
    def gross_amount(self) -> Decimal:
        return self.service_fee + self.vat_amount


@dataclass
class Invoice:
    """A billable document derived from a schedule or an ad-hoc request."""

    billing_no: str
    billing_entity_id: str
    customer: CustomerSnapshot
    statement_date: date
    due_date: date
    service_fee: Decimal
    vat_amount: Decimal
    gross_amount: Decimal
    withholding_tax: Decimal
    net_amount: Decimal
    vat_policy: VatPolicy = VatPolicy.VAT
    has_withholding: bool = False
    withholding_rate: Decimal | None = None
    withholding_code: str | None = None
    discount_amount: Decimal | None = None
    billing_frequency: BillingFrequency = BillingFrequency.MONTHLY
    schedule_id: str | None = None
    contract_id: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    remarks: str | None = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    line_items: list[InvoiceLineItem] = field(default_factory=list)

    # Approval / rejection / void
    approved_by_id: str | None = None
    approved_at: datetime | None = None
    rejected_by_id: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    reschedule_date: date | None = None
    voided_by_id: str | None = None
    voided_at: datetime | None = None
    void_reason: str | None = None

    # Send tracking
    email_status: EmailStatus = EmailStatus.NOT_SENT
    email_message_id: str | None = None
    sent_at: datetime | None = None
    email_error: str | None = None

    # Payment tracking
    paid_at: datetime | None = None
    paid_amount: Decimal | None = None
    payment_method: PaymentMethod | None = None
    payment_reference: str | None = None

    # Follow-up tracking
    follow_up_enabled: bool = True
    follow_up_count: int = 0
    last_follow_up_level: int = 0
    last_follow_up_at: datetime | None = None

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
