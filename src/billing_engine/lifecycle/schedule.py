"""Billing schedule state machine.

``PENDING -> ACTIVE`` on approval, ``PENDING -> ENDED`` on rejection,
``ACTIVE <-> PAUSED``, and any non-terminal status ``-> ENDED``. ENDED is
terminal and keeps its last ``next_billing_date`` for reference.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog

from billing_engine.errors import InvalidAmountError, InvalidTransitionError, ValidationError
from billing_engine.events.types import BillingEvent, EventType, schedule_event
from billing_engine.models import (
    BillingFrequency,
    BillingSchedule,
    IntervalUnit,
    ScheduleStatus,
    VatPolicy,
    utc_now,
)
from billing_engine.recurrence import first_occurrence_on_or_after, next_occurrence, validate_cadence
from billing_engine.tax import to_decimal, validate_rate

logger = structlog.get_logger(__name__)

# Fields whose change invalidates the computed next billing date.
CADENCE_FIELDS = frozenset(
    {
        "frequency",
        "billing_day_of_month",
        "custom_interval_value",
        "custom_interval_unit",
        "start_date",
        "end_date",
    }
)

# Fields owned by the state machine; ``amend`` refuses to touch them.
_PROTECTED_FIELDS = frozenset(
    {
        "id",
        "status",
        "run_count",
        "next_billing_date",
        "created_at",
        "updated_at",
        "approved_by_id",
        "approved_at",
        "rejected_by_id",
        "rejected_at",
        "rejection_reason",
        "ended_at",
    }
)


@dataclass
class ScheduleTransition:
    """Result of a schedule operation: the new schedule and its events."""

    schedule: BillingSchedule
    events: list[BillingEvent] = field(default_factory=list)


def validate_schedule(schedule: BillingSchedule) -> BillingSchedule:
    """Validate and normalise user-supplied schedule fields.

    Raises:
        ValidationError: On malformed cadence or withholding fields.
        InvalidAmountError: On a non-positive billing amount.
        InvalidRateError: On an out-of-range withholding rate. A missing rate
            falls back to the configured default at billing time.
    """
    amount = to_decimal(schedule.billing_amount, "billing_amount")
    if amount <= 0:
        raise InvalidAmountError(f"billing_amount must be positive, got {amount}")

    withholding_rate: Decimal | None = schedule.withholding_rate
    if schedule.has_withholding and withholding_rate is not None:
        withholding_rate = validate_rate(withholding_rate, "withholding_rate")

    normalised = replace(
        schedule,
        billing_amount=amount,
        withholding_rate=withholding_rate,
        frequency=BillingFrequency(schedule.frequency),
        vat_policy=VatPolicy(schedule.vat_policy),
        custom_interval_unit=(
            IntervalUnit(schedule.custom_interval_unit)
            if schedule.custom_interval_unit is not None
            else None
        ),
    )
    validate_cadence(normalised)
    return normalised


class ScheduleLifecycle:
    """Applies schedule transitions.

    Args:
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._logger = logger.bind(component="schedule_lifecycle")

    def _require(self, schedule: BillingSchedule, allowed: set[ScheduleStatus], action: str) -> None:
        if schedule.status not in allowed:
            raise InvalidTransitionError(
                "schedule",
                schedule.status.value,
                action,
                details={"schedule_id": schedule.id},
            )

    def create(self, schedule: BillingSchedule, created_by_id: str | None = None) -> ScheduleTransition:
        """Validate a new schedule and put it in PENDING without a next date."""
        validated = validate_schedule(schedule)
        now = self._clock()
        created = replace(
            validated,
            status=ScheduleStatus.PENDING,
            next_billing_date=None,
            run_count=0,
            created_by_id=created_by_id or validated.created_by_id,
            created_at=now,
            updated_at=now,
        )
        self._logger.info("schedule_created", schedule_id=created.id, frequency=created.frequency.value)
        return ScheduleTransition(
            created,
            [schedule_event(EventType.SCHEDULE_CREATED, created, created.created_by_id)],
        )

    def _end(self, schedule: BillingSchedule, now: datetime, **changes: Any) -> BillingSchedule:
        return replace(schedule, status=ScheduleStatus.ENDED, ended_at=now, updated_at=now, **changes)

    def approve(self, schedule: BillingSchedule, actor_id: str, today: date) -> ScheduleTransition:
        """Activate a PENDING schedule and compute its first billing date.

        Billing starts at the first occurrence on or after both the start
        date and ``today``; periods before approval are not billed. A
        schedule with no remaining occurrence is ended instead.
        """
        self._require(schedule, {ScheduleStatus.PENDING}, "approve")
        now = self._clock()
        first = first_occurrence_on_or_after(schedule, max(schedule.start_date, today))
        approved = replace(schedule, approved_by_id=actor_id, approved_at=now)

        if first is None:
            ended = self._end(approved, now)
            self._logger.info("schedule_ended_on_approval", schedule_id=schedule.id)
            return ScheduleTransition(
                ended,
                [
                    schedule_event(EventType.SCHEDULE_APPROVED, ended, actor_id),
                    schedule_event(EventType.SCHEDULE_ENDED, ended, reason="no_occurrence"),
                ],
            )

        activated = replace(
            approved,
            status=ScheduleStatus.ACTIVE,
            next_billing_date=first,
            updated_at=now,
        )
        self._logger.info(
            "schedule_approved",
            schedule_id=schedule.id,
            next_billing_date=first.isoformat(),
        )
        return ScheduleTransition(
            activated,
            [schedule_event(EventType.SCHEDULE_APPROVED, activated, actor_id)],
        )

    def reject(
        self,
        schedule: BillingSchedule,
        actor_id: str,
        reason: str | None = None,
    ) -> ScheduleTransition:
        """Reject a PENDING schedule; it ends without ever running."""
        self._require(schedule, {ScheduleStatus.PENDING}, "reject")
        now = self._clock()
        rejected = self._end(
            schedule,
            now,
            rejected_by_id=actor_id,
            rejected_at=now,
            rejection_reason=reason,
        )
        self._logger.info("schedule_rejected", schedule_id=schedule.id, actor_id=actor_id)
        return ScheduleTransition(
            rejected,
            [schedule_event(EventType.SCHEDULE_REJECTED, rejected, actor_id, reason=reason)],
        )

    def pause(self, schedule: BillingSchedule) -> ScheduleTransition:
        self._require(schedule, {ScheduleStatus.ACTIVE}, "pause")
        paused = replace(schedule, status=ScheduleStatus.PAUSED, updated_at=self._clock())
        self._logger.info("schedule_paused", schedule_id=schedule.id)
        return ScheduleTransition(paused, [schedule_event(EventType.SCHEDULE_PAUSED, paused)])

    def resume(self, schedule: BillingSchedule, today: date) -> ScheduleTransition:
        """Reactivate a PAUSED schedule.

        Occurrences missed while paused are not billed: a next date in the
        past moves to the first occurrence on or after ``today``.
        """
        self._require(schedule, {ScheduleStatus.PAUSED}, "resume")
        now = self._clock()
        next_date = schedule.next_billing_date
        if next_date is None or next_date < today:
            next_date = first_occurrence_on_or_after(schedule, today)

        if next_date is None:
            ended = self._end(schedule, now)
            self._logger.info("schedule_ended_on_resume", schedule_id=schedule.id)
            return ScheduleTransition(
                ended,
                [schedule_event(EventType.SCHEDULE_ENDED, ended, reason="no_occurrence")],
            )

        resumed = replace(
            schedule,
            status=ScheduleStatus.ACTIVE,
            next_billing_date=next_date,
            updated_at=now,
        )
        self._logger.info(
            "schedule_resumed",
            schedule_id=schedule.id,
            next_billing_date=next_date.isoformat(),
        )
        return ScheduleTransition(resumed, [schedule_event(EventType.SCHEDULE_RESUMED, resumed)])

    def end(self, schedule: BillingSchedule, today: date) -> ScheduleTransition:
        """End a schedule permanently. Deleting a schedule maps to this.

        ``today`` becomes the end date unless an earlier one is already set.
        """
        self._require(
            schedule,
            {ScheduleStatus.PENDING, ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED},
            "end",
        )
        end_date = today if schedule.end_date is None else min(schedule.end_date, today)
        ended = self._end(schedule, self._clock(), end_date=end_date)
        self._logger.info(
            "schedule_ended", schedule_id=schedule.id, end_date=end_date.isoformat()
        )
        return ScheduleTransition(ended, [schedule_event(EventType.SCHEDULE_ENDED, ended)])

    def advance(
        self,
        schedule: BillingSchedule,
        occurrence: date,
        counted: bool,
    ) -> ScheduleTransition:
        """Move past a processed occurrence.

        Args:
            schedule: The ACTIVE schedule that was run.
            occurrence: The occurrence just billed or skipped.
            counted: Whether the run produced an invoice.
        """
        self._require(schedule, {ScheduleStatus.ACTIVE}, "advance")
        now = self._clock()
        run_count = schedule.run_count + 1 if counted else schedule.run_count
        following = next_occurrence(schedule, occurrence)

        if following is None:
            ended = self._end(schedule, now, run_count=run_count)
            self._logger.info("schedule_exhausted", schedule_id=schedule.id, run_count=run_count)
            return ScheduleTransition(
                ended,
                [schedule_event(EventType.SCHEDULE_ENDED, ended, reason="end_date_reached")],
            )

        advanced = replace(
            schedule,
            next_billing_date=following,
            run_count=run_count,
            updated_at=now,
        )
        return ScheduleTransition(advanced)

    def amend(self, schedule: BillingSchedule, today: date, **changes: Any) -> ScheduleTransition:
        """Edit a non-terminal schedule.

        Changes are re-validated. When an ACTIVE schedule's cadence changes,
        its next date becomes the first occurrence on or after ``today``.
        """
        self._require(
            schedule,
            {ScheduleStatus.PENDING, ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED},
            "amend",
        )
        known = {f.name for f in fields(BillingSchedule)}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {sorted(unknown)}")
        protected = set(changes) & _PROTECTED_FIELDS
        if protected:
            raise ValidationError(f"Fields cannot be amended directly: {sorted(protected)}")

        amended = validate_schedule(replace(schedule, **changes))
        now = self._clock()
        amended = replace(amended, updated_at=now)

        if schedule.status == ScheduleStatus.ACTIVE and CADENCE_FIELDS & set(changes):
            next_date = first_occurrence_on_or_after(amended, today)
            if next_date is None:
                ended = self._end(amended, now)
                return ScheduleTransition(
                    ended,
                    [schedule_event(EventType.SCHEDULE_ENDED, ended, reason="no_occurrence")],
                )
            amended = replace(amended, next_billing_date=next_date)

        self._logger.info("schedule_amended", schedule_id=schedule.id, fields=sorted(changes))
        return ScheduleTransition(amended)
