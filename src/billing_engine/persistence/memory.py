"""In-memory repository.

Thread-safe via a reentrant lock. Records are copied on the way in and out
so callers never hold references into the store, and ``atomic()`` restores
a snapshot of every table when its block raises.
"""

import copy
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta

import structlog

from billing_engine.errors import (
    DuplicateRunError,
    NotFoundError,
    PersistenceError,
    UnknownBillingEntityError,
)
from billing_engine.models import (
    BillingEntity,
    BillingRun,
    BillingSchedule,
    Contract,
    Invoice,
    InvoiceStatus,
    RunOutcome,
    ScheduleStatus,
    utc_now,
)
from billing_engine.persistence.base import BillingRepository

logger = structlog.get_logger(__name__)

_BLOCKING_OUTCOMES = (RunOutcome.PENDING, RunOutcome.SUCCESS)

DEFAULT_CLAIM_LEASE = timedelta(minutes=30)


class InMemoryBillingRepository(BillingRepository):
    """Reference repository backed by dictionaries.

    Example:
        repo = InMemoryBillingRepository()
        entity = repo.add_entity(BillingEntity(code="ACME", name="Acme Inc.", invoice_prefix="INV"))
        with repo.atomic():
            prefix, seq = repo.increment_invoice_counter(entity.id)
            repo.add_invoice(invoice)

    Args:
        claim_lease: How long a PENDING run may hold its slot before a new
            claim treats it as abandoned.
        clock: Source of claim timestamps.
    """

    def __init__(
        self,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._claim_lease = claim_lease
        self._clock = clock
        self._lock = threading.RLock()
        self._entities: dict[str, BillingEntity] = {}
        self._contracts: dict[str, Contract] = {}
        self._schedules: dict[str, BillingSchedule] = {}
        self._runs: dict[str, BillingRun] = {}
        self._invoices: dict[str, Invoice] = {}

        self._logger = logger.bind(component="memory_repository")

    def _tables(self) -> tuple[dict, ...]:
        return (self._entities, self._contracts, self._schedules, self._runs, self._invoices)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._tables())
            try:
                yield
            except BaseException:
                for table, saved in zip(self._tables(), snapshot):
                    table.clear()
                    table.update(saved)
                self._logger.debug("atomic_rolled_back")
                raise

    # ── Reference data ───────────────────────────────────────────────

    def add_entity(self, entity: BillingEntity) -> BillingEntity:
        with self._lock:
            self._entities[entity.id] = copy.deepcopy(entity)
        return entity

    def get_entity(self, entity_id: str) -> BillingEntity | None:
        with self._lock:
            entity = self._entities.get(entity_id)
            return copy.deepcopy(entity) if entity else None

    def increment_invoice_counter(self, entity_id: str) -> tuple[str, int]:
        with self._lock:
            entity = self._entities.get(entity_id)
            if entity is None:
                raise UnknownBillingEntityError(
                    f"Billing entity {entity_id} not found",
                    details={"entity_id": entity_id},
                )
            sequence = entity.next_invoice_no
            entity.next_invoice_no = sequence + 1
            return entity.invoice_prefix, sequence

    def add_contract(self, contract: Contract) -> Contract:
        with self._lock:
            self._contracts[contract.id] = copy.deepcopy(contract)
        return contract

    def get_contract(self, contract_id: str) -> Contract | None:
        with self._lock:
            contract = self._contracts.get(contract_id)
            return copy.deepcopy(contract) if contract else None

    # ── Schedules ────────────────────────────────────────────────────

    def add_schedule(self, schedule: BillingSchedule) -> BillingSchedule:
        with self._lock:
            if schedule.id in self._schedules:
                raise PersistenceError(f"Schedule {schedule.id} already exists")
            self._schedules[schedule.id] = copy.deepcopy(schedule)
        return schedule

    def save_schedule(self, schedule: BillingSchedule) -> BillingSchedule:
        with self._lock:
            if schedule.id not in self._schedules:
                raise NotFoundError(f"Schedule {schedule.id} not found")
            stored = replace(schedule, updated_at=utc_now())
            self._schedules[schedule.id] = copy.deepcopy(stored)
            return stored

    def get_schedule(self, schedule_id: str) -> BillingSchedule | None:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            return copy.deepcopy(schedule) if schedule else None

    def list_schedules(self, status: ScheduleStatus | None = None) -> list[BillingSchedule]:
        with self._lock:
            return [
                copy.deepcopy(s)
                for s in self._schedules.values()
                if status is None or s.status == status
            ]

    # ── Runs ─────────────────────────────────────────────────────────

    def claim_run(
        self,
        schedule_id: str,
        period_key: str,
        occurrence_date: date,
        run_date: date,
    ) -> BillingRun:
        with self._lock:
            for existing in self._runs.values():
                if existing.schedule_id != schedule_id or existing.period_key != period_key:
                    continue
                if existing.outcome not in _BLOCKING_OUTCOMES:
                    continue
                invoice = self._invoices.get(existing.invoice_id) if existing.invoice_id else None
                if invoice is not None and invoice.status == InvoiceStatus.VOID:
                    continue
                if existing.outcome == RunOutcome.PENDING and self._is_stale(existing, run_date):
                    self._expire_claim(existing)
                    continue
                raise DuplicateRunError(schedule_id, period_key, existing.id, existing.outcome)

            run = BillingRun(
                schedule_id=schedule_id,
                run_date=run_date,
                occurrence_date=occurrence_date,
                period_key=period_key,
                created_at=self._clock(),
            )
            self._runs[run.id] = copy.deepcopy(run)
            return run

    def _is_stale(self, claim: BillingRun, run_date: date) -> bool:
        """A claim from an earlier business day or past its lease is abandoned."""
        return claim.run_date < run_date or self._clock() - claim.created_at >= self._claim_lease

    def _expire_claim(self, claim: BillingRun) -> None:
        stored = self._runs[claim.id]
        stored.outcome = RunOutcome.FAILED
        stored.error_message = "Claim expired before the run completed"
        stored.finalized_at = self._clock()
        self._logger.warning(
            "stale_claim_expired",
            run_id=claim.id,
            schedule_id=claim.schedule_id,
            period_key=claim.period_key,
            claimed_at=claim.created_at.isoformat(),
        )

    def add_run(self, run: BillingRun) -> BillingRun:
        with self._lock:
            self._runs[run.id] = copy.deepcopy(run)
        return run

    def finalize_run(
        self,
        run_id: str,
        outcome: RunOutcome,
        invoice_id: str | None = None,
        error_message: str | None = None,
    ) -> BillingRun:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            if outcome == RunOutcome.SUCCESS and run.outcome != RunOutcome.PENDING:
                raise PersistenceError(
                    f"Run {run_id} is no longer pending",
                    details={"outcome": run.outcome.value, "error": run.error_message},
                )
            run.outcome = outcome
            run.invoice_id = invoice_id
            run.error_message = error_message
            run.finalized_at = utc_now()
            return copy.deepcopy(run)

    def list_runs(self, schedule_id: str | None = None) -> list[BillingRun]:
        with self._lock:
            runs = [
                copy.deepcopy(r)
                for r in self._runs.values()
                if schedule_id is None or r.schedule_id == schedule_id
            ]
        return sorted(runs, key=lambda r: r.created_at)

    # ── Invoices ─────────────────────────────────────────────────────

    def add_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            if invoice.id in self._invoices:
                raise PersistenceError(f"Invoice {invoice.id} already exists")
            if any(
                i.billing_entity_id == invoice.billing_entity_id and i.billing_no == invoice.billing_no
                for i in self._invoices.values()
            ):
                raise PersistenceError(
                    f"Billing number {invoice.billing_no} already used",
                    details={"billing_entity_id": invoice.billing_entity_id},
                )
            self._invoices[invoice.id] = copy.deepcopy(invoice)
        return invoice

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            if invoice.id not in self._invoices:
                raise NotFoundError(f"Invoice {invoice.id} not found")
            self._invoices[invoice.id] = copy.deepcopy(invoice)
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            return copy.deepcopy(invoice) if invoice else None

    def list_invoices(
        self,
        status: InvoiceStatus | None = None,
        schedule_id: str | None = None,
    ) -> list[Invoice]:
        with self._lock:
            invoices = [
                copy.deepcopy(i)
                for i in self._invoices.values()
                if (status is None or i.status == status)
                and (schedule_id is None or i.schedule_id == schedule_id)
            ]
        return sorted(invoices, key=lambda i: i.created_at)
