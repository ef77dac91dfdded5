"""Billing Engine - recurring invoicing with VAT and withholding tax computation."""

__version__ = "0.1.0"

from billing_engine.config import configure_logging, get_settings
from billing_engine.delivery import DocumentRenderer, EmailTransport, FollowUpService, InvoiceMailer
from billing_engine.engine import BillingEngine
from billing_engine.errors import (
    BillingError,
    DeliveryError,
    DuplicateRunError,
    InvalidAmountError,
    InvalidRateError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    UnknownBillingEntityError,
    ValidationError,
)
from billing_engine.events import BillingEvent, EventPublisher, EventType
from billing_engine.invoicing import AdHocInvoiceRequest, CustomBillTo, InvoiceGenerator, LineItemInput
from billing_engine.lifecycle import InvoiceLifecycle, ScheduleLifecycle
from billing_engine.numbering import BillingNumberAllocator
from billing_engine.persistence import BillingRepository, InMemoryBillingRepository
from billing_engine.recurrence import billing_period, due_date_for, next_occurrence
from billing_engine.runner import RunExecutor, RunResult, SweepSummary
from billing_engine.scheduler import BillingScheduler
from billing_engine.settings_provider import SettingsProvider
from billing_engine.tax import VAT_RATE, TaxBreakdown, compute_breakdown

__all__ = [
    # Version
    "__version__",
    # Engine
    "BillingEngine",
    "BillingScheduler",
    "RunExecutor",
    "RunResult",
    "SweepSummary",
    # Computation
    "VAT_RATE",
    "TaxBreakdown",
    "compute_breakdown",
    "next_occurrence",
    "billing_period",
    "due_date_for",
    "BillingNumberAllocator",
    # Lifecycle
    "InvoiceLifecycle",
    "ScheduleLifecycle",
    # Invoicing & delivery
    "AdHocInvoiceRequest",
    "CustomBillTo",
    "LineItemInput",
    "InvoiceGenerator",
    "InvoiceMailer",
    "FollowUpService",
    "EmailTransport",
    "DocumentRenderer",
    # Persistence
    "BillingRepository",
    "InMemoryBillingRepository",
    # Events
    "BillingEvent",
    "EventPublisher",
    "EventType",
    # Settings
    "SettingsProvider",
    "get_settings",
    "configure_logging",
    # Errors
    "BillingError",
    "DeliveryError",
    "DuplicateRunError",
    "InvalidAmountError",
    "InvalidRateError",
    "InvalidTransitionError",
    "NotFoundError",
    "PersistenceError",
    "UnknownBillingEntityError",
    "ValidationError",
]
