"""Tests for the in-memory repository."""

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_engine.errors import DuplicateRunError, NotFoundError, PersistenceError
from billing_engine.models import (
    BillingSchedule,
    CustomerSnapshot,
    Invoice,
    InvoiceStatus,
    RunOutcome,
    ScheduleStatus,
)
from billing_engine.persistence.memory import InMemoryBillingRepository


def make_invoice(entity_id: str, billing_no: str = "INV-2026-00001", **overrides) -> Invoice:
    values = {
        "billing_no": billing_no,
        "billing_entity_id": entity_id,
        "customer": CustomerSnapshot(name="Acme Trading"),
        "statement_date": date(2026, 1, 15),
        "due_date": date(2026, 1, 15),
        "service_fee": Decimal("100.00"),
        "vat_amount": Decimal("12.00"),
        "gross_amount": Decimal("112.00"),
        "withholding_tax": Decimal("0.00"),
        "net_amount": Decimal("112.00"),
    }
    values.update(overrides)
    return Invoice(**values)


def make_schedule(**overrides) -> BillingSchedule:
    values = {
        "contract_id": "c1",
        "billing_entity_id": "e1",
        "billing_amount": Decimal("1000"),
        "billing_day_of_month": 15,
        "start_date": date(2026, 1, 1),
    }
    values.update(overrides)
    return BillingSchedule(**values)


class ManualClock:
    """Wall clock advanced by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestIsolation:
    """Tests for copy-on-read and copy-on-write."""

    def test_reads_are_copies(self, repository, contract):
        """Test mutating a returned record does not touch the store."""
        fetched = repository.get_contract(contract.id)
        fetched.company_name = "Changed"

        assert repository.get_contract(contract.id).company_name == "Acme Trading"

    def test_missing_records(self, repository):
        """Test lookups of unknown ids return None."""
        assert repository.get_contract("nope") is None
        assert repository.get_schedule("nope") is None
        assert repository.get_invoice("nope") is None
        assert repository.get_entity("nope") is None


class TestAtomic:
    """Tests for all-or-nothing blocks."""

    def test_rollback_restores_all_tables(self, repository, entity):
        """Test writes inside a failed block are discarded."""
        schedule = repository.add_schedule(make_schedule())

        with pytest.raises(RuntimeError):
            with repository.atomic():
                repository.increment_invoice_counter(entity.id)
                repository.add_invoice(make_invoice(entity.id))
                repository.save_schedule(replace(schedule, run_count=5))
                raise RuntimeError("boom")

        assert repository.list_invoices() == []
        assert repository.get_entity(entity.id).next_invoice_no == 1
        assert repository.get_schedule(schedule.id).run_count == 0

    def test_commit_keeps_writes(self, repository, entity):
        """Test writes inside a successful block persist."""
        with repository.atomic():
            repository.add_invoice(make_invoice(entity.id))

        assert len(repository.list_invoices()) == 1

    def test_nested_blocks(self, repository, entity):
        """Test an inner failure rolls back only the inner block."""
        with repository.atomic():
            repository.add_invoice(make_invoice(entity.id, "INV-2026-00001"))
            with pytest.raises(RuntimeError):
                with repository.atomic():
                    repository.add_invoice(make_invoice(entity.id, "INV-2026-00002"))
                    raise RuntimeError("inner")

        assert [i.billing_no for i in repository.list_invoices()] == ["INV-2026-00001"]


class TestSchedules:
    """Tests for schedule storage."""

    def test_duplicate_id_rejected(self, repository):
        """Test a schedule id can only be added once."""
        schedule = repository.add_schedule(make_schedule())

        with pytest.raises(PersistenceError):
            repository.add_schedule(schedule)

    def test_save_unknown_schedule(self, repository):
        """Test saving a never-added schedule fails."""
        with pytest.raises(NotFoundError):
            repository.save_schedule(make_schedule())

    def test_list_due_schedules(self, repository):
        """Test only ACTIVE schedules due by the date are listed, oldest first."""
        later = repository.add_schedule(
            make_schedule(status=ScheduleStatus.ACTIVE, next_billing_date=date(2026, 1, 15))
        )
        earlier = repository.add_schedule(
            make_schedule(status=ScheduleStatus.ACTIVE, next_billing_date=date(2026, 1, 10))
        )
        repository.add_schedule(
            make_schedule(status=ScheduleStatus.PAUSED, next_billing_date=date(2026, 1, 1))
        )
        repository.add_schedule(
            make_schedule(status=ScheduleStatus.ACTIVE, next_billing_date=date(2026, 2, 1))
        )

        due = repository.list_due_schedules(date(2026, 1, 15))

        assert [s.id for s in due] == [earlier.id, later.id]


class TestRuns:
    """Tests for the duplicate-run guard."""

    def test_claim_then_duplicate(self, repository):
        """Test a claimed slot cannot be claimed again."""
        run = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        with pytest.raises(DuplicateRunError) as exc_info:
            repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        assert exc_info.value.existing_run_id == run.id
        assert exc_info.value.existing_outcome == RunOutcome.PENDING

    def test_failed_run_frees_slot(self, repository):
        """Test a FAILED run does not block a retry."""
        run = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))
        repository.finalize_run(run.id, RunOutcome.FAILED, error_message="boom")

        retry = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 16))

        assert retry.outcome == RunOutcome.PENDING

    def test_voided_invoice_frees_slot(self, repository, entity):
        """Test a period whose invoice was voided can be billed again."""
        invoice = repository.add_invoice(make_invoice(entity.id, status=InvoiceStatus.VOID))
        run = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))
        repository.finalize_run(run.id, RunOutcome.SUCCESS, invoice_id=invoice.id)

        again = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 20))

        assert again.id != run.id

    def test_other_periods_unaffected(self, repository):
        """Test slots are per schedule and period."""
        repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        repository.claim_run("s1", "2026-02", date(2026, 2, 15), date(2026, 2, 15))
        repository.claim_run("s2", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        assert len(repository.list_runs()) == 3
        assert len(repository.list_runs("s1")) == 2

    def test_stale_claim_from_earlier_day_expires(self, repository):
        """Test an abandoned claim from an earlier sweep does not block the period."""
        stale = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        retry = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 16))

        runs = {r.id: r for r in repository.list_runs("s1")}
        assert runs[stale.id].outcome == RunOutcome.FAILED
        assert runs[stale.id].error_message == "Claim expired before the run completed"
        assert runs[retry.id].outcome == RunOutcome.PENDING

    def test_claim_expires_after_lease(self):
        """Test a same-day claim is released once its lease has passed."""
        clock = ManualClock(datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc))
        repository = InMemoryBillingRepository(claim_lease=timedelta(minutes=30), clock=clock)
        stale = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        clock.now += timedelta(minutes=29)
        with pytest.raises(DuplicateRunError):
            repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        clock.now += timedelta(minutes=1)
        retry = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))

        assert retry.id != stale.id
        assert retry.created_at == clock.now

    def test_expired_claim_cannot_succeed(self, repository):
        """Test a run whose claim expired cannot be finalized as SUCCESS."""
        stale = repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 15))
        repository.claim_run("s1", "2026-01", date(2026, 1, 15), date(2026, 1, 16))

        with pytest.raises(PersistenceError):
            repository.finalize_run(stale.id, RunOutcome.SUCCESS, invoice_id="i1")

    def test_finalize_unknown_run(self, repository):
        """Test finalizing a missing run fails."""
        with pytest.raises(NotFoundError):
            repository.finalize_run("missing", RunOutcome.SUCCESS)


class TestInvoices:
    """Tests for invoice storage."""

    def test_billing_no_unique_per_entity(self, repository, entity):
        """Test a billing number cannot be reused within an entity."""
        repository.add_invoice(make_invoice(entity.id))

        with pytest.raises(PersistenceError):
            repository.add_invoice(make_invoice(entity.id))

    def test_same_billing_no_other_entity(self, repository, entity):
        """Test billing numbers are scoped to their entity."""
        repository.add_invoice(make_invoice(entity.id))
        repository.add_invoice(make_invoice("other-entity"))

        assert len(repository.list_invoices()) == 2

    def test_save_unknown_invoice(self, repository, entity):
        """Test saving a never-added invoice fails."""
        with pytest.raises(NotFoundError):
            repository.save_invoice(make_invoice(entity.id))

    def test_list_filters(self, repository, entity):
        """Test filtering invoices by status and schedule."""
        repository.add_invoice(make_invoice(entity.id, "INV-2026-00001", schedule_id="s1"))
        repository.add_invoice(
            make_invoice(entity.id, "INV-2026-00002", schedule_id="s2", status=InvoiceStatus.SENT)
        )

        assert len(repository.list_invoices(schedule_id="s1")) == 1
        assert [i.billing_no for i in repository.list_invoices(InvoiceStatus.SENT)] == [
            "INV-2026-00002"
        ]
