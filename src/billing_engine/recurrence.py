"""Recurrence calculation for billing schedules.

Occurrences are computed directly from the schedule's first occurrence, not
by stepping from the previous clamped date, so a billing day of 31 yields
Jan 31, Feb 28 (or 29) and Mar 31 rather than drifting to the 28th.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from billing_engine.errors import ValidationError
from billing_engine.models import BillingFrequency, BillingSchedule, IntervalUnit

_MONTH_STEPS = {
    BillingFrequency.MONTHLY: 1,
    BillingFrequency.QUARTERLY: 3,
    BillingFrequency.ANNUALLY: 12,
}


@dataclass(frozen=True)
class BillingPeriod:
    """Service period covered by one occurrence and its duplicate-guard key."""

    start: date
    end: date
    key: str


def shift_to_day(value: date, months: int, day: int) -> date:
    """Move ``value`` by ``months`` and onto ``day``, clamped to the month end."""
    return value + relativedelta(months=months, day=day)


def validate_cadence(schedule: BillingSchedule) -> None:
    """Check the fields recurrence depends on.

    Raises:
        ValidationError: If the billing day, due day, interval or date range
            is malformed.
    """
    if not 1 <= schedule.billing_day_of_month <= 31:
        raise ValidationError(
            f"billing_day_of_month must be 1-31, got {schedule.billing_day_of_month}"
        )
    if schedule.due_day_of_month is not None and not 1 <= schedule.due_day_of_month <= 31:
        raise ValidationError(
            f"due_day_of_month must be 1-31, got {schedule.due_day_of_month}"
        )
    if schedule.frequency == BillingFrequency.CUSTOM:
        if schedule.custom_interval_unit is None:
            raise ValidationError("custom_interval_unit is required for CUSTOM schedules")
        if not schedule.custom_interval_value or schedule.custom_interval_value < 1:
            raise ValidationError("custom_interval_value must be a positive integer")
    if schedule.end_date is not None and schedule.end_date < schedule.start_date:
        raise ValidationError("end_date must not precede start_date")


def _month_step(schedule: BillingSchedule) -> int | None:
    """Months between occurrences, or None for day-based intervals."""
    if schedule.frequency == BillingFrequency.CUSTOM:
        if schedule.custom_interval_unit == IntervalUnit.DAYS:
            return None
        return int(schedule.custom_interval_value or 1)
    return _MONTH_STEPS[schedule.frequency]


def first_occurrence(schedule: BillingSchedule) -> date:
    """First occurrence on or after the start date, ignoring the end date."""
    validate_cadence(schedule)
    start = schedule.start_date
    if _month_step(schedule) is None:
        return start

    candidate = shift_to_day(start, 0, schedule.billing_day_of_month)
    if candidate < start:
        candidate = shift_to_day(start, 1, schedule.billing_day_of_month)
    return candidate


def occurrence_at(schedule: BillingSchedule, index: int) -> date:
    """The occurrence ``index`` steps after the first one."""
    anchor = first_occurrence(schedule)
    step = _month_step(schedule)
    if step is None:
        return anchor + timedelta(days=index * int(schedule.custom_interval_value or 1))
    return shift_to_day(anchor, index * step, schedule.billing_day_of_month)


def next_occurrence(schedule: BillingSchedule, after_date: date | None = None) -> date | None:
    """Compute the next billing date of a schedule.

    Args:
        schedule: The schedule whose cadence to follow.
        after_date: When None, return the first occurrence on or after the
            start date. Otherwise return the first occurrence strictly after
            this date.

    Returns:
        The occurrence, or None when it would fall after the end date.
    """
    anchor = first_occurrence(schedule)

    if after_date is None or after_date < anchor:
        candidate = anchor
    else:
        step = _month_step(schedule)
        if step is None:
            interval = int(schedule.custom_interval_value or 1)
            index = (after_date - anchor).days // interval + 1
        else:
            elapsed = (after_date.year - anchor.year) * 12 + (after_date.month - anchor.month)
            index = max(elapsed // step, 0)
        candidate = occurrence_at(schedule, index)
        while candidate <= after_date:
            index += 1
            candidate = occurrence_at(schedule, index)

    if schedule.end_date is not None and candidate > schedule.end_date:
        return None
    return candidate


def first_occurrence_on_or_after(schedule: BillingSchedule, day: date) -> date | None:
    """First occurrence that is not before ``day``, or None past the end date."""
    return next_occurrence(schedule, day - timedelta(days=1))


def billing_period(schedule: BillingSchedule, occurrence: date) -> BillingPeriod:
    """Service period and duplicate-guard key for an occurrence."""
    frequency = schedule.frequency
    if frequency == BillingFrequency.MONTHLY:
        return BillingPeriod(
            start=occurrence.replace(day=1),
            end=shift_to_day(occurrence, 0, 31),
            key=f"{occurrence.year:04d}-{occurrence.month:02d}",
        )

    if frequency == BillingFrequency.QUARTERLY:
        quarter = (occurrence.month - 1) // 3 + 1
        first_month = (quarter - 1) * 3 + 1
        start = date(occurrence.year, first_month, 1)
        return BillingPeriod(
            start=start,
            end=shift_to_day(start, 2, 31),
            key=f"{occurrence.year:04d}-Q{quarter}",
        )

    if frequency == BillingFrequency.ANNUALLY:
        return BillingPeriod(
            start=date(occurrence.year, 1, 1),
            end=date(occurrence.year, 12, 31),
            key=f"{occurrence.year:04d}",
        )

    # CUSTOM covers the occurrence up to the day before the next one.
    interval = int(schedule.custom_interval_value or 1)
    if schedule.custom_interval_unit == IntervalUnit.DAYS:
        end = occurrence + timedelta(days=interval - 1)
    else:
        end = shift_to_day(occurrence, interval, schedule.billing_day_of_month) - timedelta(days=1)
    return BillingPeriod(start=occurrence, end=end, key=occurrence.isoformat())


def due_date_for(schedule: BillingSchedule, occurrence: date) -> date:
    """Due date of the invoice issued on ``occurrence``.

    The due day defaults to the billing day. A due day earlier than the
    billing day falls in the following month.
    """
    if schedule.due_day_of_month is None:
        return occurrence

    billing_day = (
        occurrence.day
        if _month_step(schedule) is None
        else schedule.billing_day_of_month
    )
    months = 1 if schedule.due_day_of_month < billing_day else 0
    return shift_to_day(occurrence, months, schedule.due_day_of_month)


def _short_date(value: date) -> str:
    return f"{calendar.month_abbr[value.month]} {value.day}"


def period_label(schedule: BillingSchedule, period: BillingPeriod) -> str:
    """Human-readable period such as ``Jan 2026``, ``Q1 2026`` or ``2026``."""
    frequency = schedule.frequency
    if frequency == BillingFrequency.MONTHLY:
        return f"{calendar.month_abbr[period.start.month]} {period.start.year}"
    if frequency == BillingFrequency.QUARTERLY:
        quarter = (period.start.month - 1) // 3 + 1
        return f"Q{quarter} {period.start.year}"
    if frequency == BillingFrequency.ANNUALLY:
        return str(period.start.year)
    if period.start.year == period.end.year:
        return f"{_short_date(period.start)} to {_short_date(period.end)}, {period.end.year}"
    return (
        f"{_short_date(period.start)}, {period.start.year} to "
        f"{_short_date(period.end)}, {period.end.year}"
    )
