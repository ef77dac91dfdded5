"""Persistence contract for the billing engine.

Implementations must make ``increment_invoice_counter`` and ``claim_run``
atomic with respect to concurrent callers, and give ``atomic()`` blocks
all-or-nothing semantics.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import date

from billing_engine.models import (
    BillingEntity,
    BillingRun,
    BillingSchedule,
    Contract,
    Invoice,
    InvoiceStatus,
    RunOutcome,
    ScheduleStatus,
)


class BillingRepository(ABC):
    """Storage for entities, contracts, schedules, runs and invoices."""

    @abstractmethod
    def atomic(self) -> AbstractContextManager[None]:
        """Context manager grouping writes into one all-or-nothing unit."""

    # Reference data

    @abstractmethod
    def add_entity(self, entity: BillingEntity) -> BillingEntity:
        pass

    @abstractmethod
    def get_entity(self, entity_id: str) -> BillingEntity | None:
        pass

    @abstractmethod
    def increment_invoice_counter(self, entity_id: str) -> tuple[str, int]:
        """Atomically read and bump an entity's invoice counter.

        Returns:
            ``(invoice_prefix, sequence)`` where ``sequence`` is the value
            before the increment.

        Raises:
            UnknownBillingEntityError: If the entity does not exist.
        """

    @abstractmethod
    def add_contract(self, contract: Contract) -> Contract:
        pass

    @abstractmethod
    def get_contract(self, contract_id: str) -> Contract | None:
        pass

    # Schedules

    @abstractmethod
    def add_schedule(self, schedule: BillingSchedule) -> BillingSchedule:
        pass

    @abstractmethod
    def save_schedule(self, schedule: BillingSchedule) -> BillingSchedule:
        """Replace a stored schedule.

        Raises:
            NotFoundError: If the schedule was never added.
        """

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> BillingSchedule | None:
        pass

    @abstractmethod
    def list_schedules(self, status: ScheduleStatus | None = None) -> list[BillingSchedule]:
        pass

    def list_due_schedules(self, as_of: date) -> list[BillingSchedule]:
        """ACTIVE schedules whose next billing date is on or before ``as_of``."""
        due = [
            s
            for s in self.list_schedules(ScheduleStatus.ACTIVE)
            if s.next_billing_date is not None and s.next_billing_date <= as_of
        ]
        return sorted(due, key=lambda s: (s.next_billing_date, s.created_at))

    # Runs

    @abstractmethod
    def claim_run(
        self,
        schedule_id: str,
        period_key: str,
        occurrence_date: date,
        run_date: date,
    ) -> BillingRun:
        """Insert a PENDING run for a (schedule, period) slot.

        A PENDING run left by an earlier business day, or older than the
        implementation's claim lease, is abandoned: it is marked FAILED and
        the new claim proceeds.

        Raises:
            DuplicateRunError: If a live PENDING run or a SUCCESS run already
                holds the slot and its invoice has not been voided.
        """

    @abstractmethod
    def add_run(self, run: BillingRun) -> BillingRun:
        pass

    @abstractmethod
    def finalize_run(
        self,
        run_id: str,
        outcome: RunOutcome,
        invoice_id: str | None = None,
        error_message: str | None = None,
    ) -> BillingRun:
        """Record a run outcome.

        Raises:
            PersistenceError: If ``outcome`` is SUCCESS and the run is no
                longer PENDING, e.g. its claim expired.
        """

    @abstractmethod
    def list_runs(self, schedule_id: str | None = None) -> list[BillingRun]:
        pass

    # Invoices

    @abstractmethod
    def add_invoice(self, invoice: Invoice) -> Invoice:
        pass

    @abstractmethod
    def save_invoice(self, invoice: Invoice) -> Invoice:
        pass

    @abstractmethod
    def get_invoice(self, invoice_id: str) -> Invoice | None:
        pass

    @abstractmethod
    def list_invoices(
        self,
        status: InvoiceStatus | None = None,
        schedule_id: str | None = None,
    ) -> list[Invoice]:
        pass
