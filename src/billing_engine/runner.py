"""Run executor: turns due schedules into invoices.

Each schedule is processed independently. The (schedule, period) slot is
claimed first, so overlapping sweeps cannot bill the same period twice.
The invoice, the run outcome and the schedule advance are committed in one
atomic unit; a failure inside it marks the run FAILED and leaves the
schedule's next billing date untouched so the occurrence is retried.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

import structlog

from billing_engine.config.logging import bound_run_context
from billing_engine.errors import (
    DuplicateRunError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from billing_engine.events.types import BillingEvent, run_failed
from billing_engine.invoicing import CreatedInvoice, InvoiceFactory
from billing_engine.lifecycle.invoice import CreationOutcome
from billing_engine.lifecycle.schedule import ScheduleLifecycle
from billing_engine.models import (
    BillingRun,
    BillingSchedule,
    InvoiceStatus,
    RunOutcome,
    ScheduleStatus,
    utc_now,
)
from billing_engine.persistence.base import BillingRepository
from billing_engine.recurrence import BillingPeriod, billing_period, next_occurrence

logger = structlog.get_logger(__name__)


@dataclass
class RunResult:
    """Outcome of processing one schedule."""

    schedule_id: str
    outcome: RunOutcome
    run_id: str | None = None
    occurrence_date: date | None = None
    period_key: str | None = None
    invoice_id: str | None = None
    billing_no: str | None = None
    invoice_status: InvoiceStatus | None = None
    auto_sent: bool = False
    delivery_error: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "outcome": self.outcome.value,
            "run_id": self.run_id,
            "occurrence_date": self.occurrence_date.isoformat() if self.occurrence_date else None,
            "period_key": self.period_key,
            "invoice_id": self.invoice_id,
            "billing_no": self.billing_no,
            "invoice_status": self.invoice_status.value if self.invoice_status else None,
            "auto_sent": self.auto_sent,
            "delivery_error": self.delivery_error,
            "error": self.error,
        }


@dataclass
class SweepSummary:
    """Aggregate of one ``execute_due_runs`` invocation."""

    as_of: date
    results: list[RunResult] = field(default_factory=list)

    def _count(self, outcome: RunOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(RunOutcome.SUCCESS)

    @property
    def skipped(self) -> int:
        return self._count(RunOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(RunOutcome.FAILED)

    @property
    def auto_sent(self) -> int:
        return sum(1 for r in self.results if r.auto_sent)

    @property
    def pending_approval(self) -> int:
        return sum(1 for r in self.results if r.invoice_status == InvoiceStatus.PENDING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "auto_sent": self.auto_sent,
            "pending_approval": self.pending_approval,
            "results": [r.to_dict() for r in self.results],
        }


class RunExecutor:
    """Executes billing runs for due schedules.

    Args:
        repository: Persistence collaborator.
        factory: Builds and records invoices, publishes events and
            performs auto-send.
        schedule_lifecycle: Schedule state machine.
    """

    def __init__(
        self,
        repository: BillingRepository,
        factory: InvoiceFactory,
        schedule_lifecycle: ScheduleLifecycle | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._repository = repository
        self._factory = factory
        self._schedules = schedule_lifecycle or ScheduleLifecycle()
        self._today = today
        self._logger = logger.bind(component="run_executor")

    def execute_due_runs(self, as_of: date | None = None) -> SweepSummary:
        """Process every ACTIVE schedule due on or before ``as_of``.

        Schedules are processed sequentially. One schedule's failure never
        prevents the others from running.
        """
        as_of = as_of or self._today()
        summary = SweepSummary(as_of=as_of)
        due = self._repository.list_due_schedules(as_of)
        self._logger.info("sweep_started", as_of=as_of.isoformat(), due=len(due))

        for schedule in due:
            try:
                result = self._process(schedule.id, as_of, require_due=True)
            except Exception as e:
                self._logger.error("schedule_processing_failed", schedule_id=schedule.id, error=str(e))
                result = RunResult(schedule_id=schedule.id, outcome=RunOutcome.FAILED, error=str(e))
            if result is not None:
                summary.results.append(result)

        self._logger.info(
            "sweep_completed",
            as_of=as_of.isoformat(),
            processed=summary.processed,
            succeeded=summary.succeeded,
            skipped=summary.skipped,
            failed=summary.failed,
            auto_sent=summary.auto_sent,
            pending_approval=summary.pending_approval,
        )
        return summary

    def run_now(
        self,
        schedule_id: str,
        as_of: date | None = None,
        occurrence: date | None = None,
    ) -> RunResult:
        """Bill one ACTIVE schedule immediately, whether or not it is due.

        The duplicate guard still applies.

        Args:
            schedule_id: The schedule to run.
            as_of: Run date. Defaults to today.
            occurrence: A past occurrence to bill again, typically after its
                invoice was voided. Defaults to the next billing date.

        Raises:
            NotFoundError: If the schedule does not exist.
            InvalidTransitionError: If the schedule is not ACTIVE.
            ValidationError: If ``occurrence`` is not an occurrence of the
                schedule.
        """
        as_of = as_of or self._today()
        schedule = self._repository.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        if schedule.status != ScheduleStatus.ACTIVE or schedule.next_billing_date is None:
            raise InvalidTransitionError("schedule", schedule.status.value, "run")

        if occurrence is not None and next_occurrence(schedule, occurrence - timedelta(days=1)) != occurrence:
            raise ValidationError(
                f"{occurrence.isoformat()} is not a billing date of schedule {schedule_id}"
            )

        result = self._process(schedule_id, as_of, require_due=False, occurrence=occurrence)
        if result is None:
            raise InvalidTransitionError("schedule", schedule.status.value, "run")
        return result

    def _process(
        self,
        schedule_id: str,
        as_of: date,
        require_due: bool,
        occurrence: date | None = None,
    ) -> RunResult | None:
        """Per-schedule procedure. Returns None if the schedule is no longer runnable."""
        schedule = self._repository.get_schedule(schedule_id)
        if schedule is None or schedule.status != ScheduleStatus.ACTIVE:
            return None
        occurrence = occurrence or schedule.next_billing_date
        if occurrence is None or (require_due and occurrence > as_of):
            return None

        period = billing_period(schedule, occurrence)
        with bound_run_context(schedule_id=schedule.id, period=period.key):
            try:
                run = self._repository.claim_run(schedule.id, period.key, occurrence, as_of)
            except DuplicateRunError as dup:
                return self._skip(schedule, occurrence, period.key, as_of, dup)

            try:
                with self._repository.atomic():
                    outcome, schedule_events = self._bill(schedule, run, occurrence, period)
            except Exception as e:
                return self._fail(schedule, run, e)

            result = RunResult(
                schedule_id=schedule.id,
                outcome=RunOutcome.SUCCESS,
                run_id=run.id,
                occurrence_date=occurrence,
                period_key=period.key,
                invoice_id=outcome.invoice.id,
                billing_no=outcome.invoice.billing_no,
                invoice_status=outcome.invoice.status,
            )
            self._logger.info(
                "run_succeeded",
                run_id=run.id,
                billing_no=outcome.invoice.billing_no,
                invoice_status=outcome.invoice.status.value,
            )
            self._after_commit(outcome, schedule_events, result)
            return result

    def _bill(
        self,
        schedule: BillingSchedule,
        run: BillingRun,
        occurrence: date,
        period: BillingPeriod,
    ) -> tuple[CreationOutcome, list[BillingEvent]]:
        contract = self._repository.get_contract(schedule.contract_id)
        if contract is None:
            raise NotFoundError(f"Contract {schedule.contract_id} not found")

        outcome = self._factory.create_for_schedule(schedule, contract, occurrence, period)
        self._repository.finalize_run(run.id, RunOutcome.SUCCESS, invoice_id=outcome.invoice.id)
        schedule_events = self._advance(schedule.id, occurrence, counted=True)
        return outcome, schedule_events

    def _advance(self, schedule_id: str, occurrence: date, counted: bool) -> list[BillingEvent]:
        """Advance the stored schedule past ``occurrence`` if it still points at it."""
        current = self._repository.get_schedule(schedule_id)
        if (
            current is None
            or current.status != ScheduleStatus.ACTIVE
            or current.next_billing_date != occurrence
        ):
            return []
        transition = self._schedules.advance(current, occurrence, counted)
        self._repository.save_schedule(transition.schedule)
        return transition.events

    def _after_commit(
        self,
        outcome: CreationOutcome,
        schedule_events: list[BillingEvent],
        result: RunResult,
    ) -> None:
        try:
            created: CreatedInvoice = self._factory.after_commit(outcome)
            self._factory.publisher.publish_all(schedule_events)
        except Exception as e:
            self._logger.error("post_commit_failed", invoice_id=result.invoice_id, error=str(e))
            result.delivery_error = str(e)
            return

        result.invoice_status = created.invoice.status
        result.auto_sent = created.auto_sent
        if created.send_attempted and not created.auto_sent and created.delivery is not None:
            result.delivery_error = created.delivery.error

    def _skip(
        self,
        schedule: BillingSchedule,
        occurrence: date,
        period_key: str,
        as_of: date,
        dup: DuplicateRunError,
    ) -> RunResult:
        run = BillingRun(
            schedule_id=schedule.id,
            run_date=as_of,
            occurrence_date=occurrence,
            period_key=period_key,
            outcome=RunOutcome.SKIPPED,
            error_message=dup.message,
            finalized_at=utc_now(),
        )
        with self._repository.atomic():
            self._repository.add_run(run)
            # An in-flight run advances the schedule itself when it commits.
            if dup.existing_outcome == RunOutcome.PENDING:
                events = []
            else:
                events = self._advance(schedule.id, occurrence, counted=False)
        self._factory.publisher.publish_all(events)
        self._logger.info("schedule_skipped", run_id=run.id, existing_run_id=dup.existing_run_id)
        return RunResult(
            schedule_id=schedule.id,
            outcome=RunOutcome.SKIPPED,
            run_id=run.id,
            occurrence_date=occurrence,
            period_key=period_key,
            error=dup.message,
        )

    def _fail(self, schedule: BillingSchedule, run: BillingRun, error: Exception) -> RunResult:
        message = str(error) or error.__class__.__name__
        failed = self._repository.finalize_run(run.id, RunOutcome.FAILED, error_message=message)
        self._logger.error(
            "run_failed",
            run_id=run.id,
            error=message,
            error_type=error.__class__.__name__,
        )
        self._factory.publisher.publish(run_failed(failed, message))
        return RunResult(
            schedule_id=schedule.id,
            outcome=RunOutcome.FAILED,
            run_id=run.id,
            occurrence_date=run.occurrence_date,
            period_key=run.period_key,
            error=message,
        )
