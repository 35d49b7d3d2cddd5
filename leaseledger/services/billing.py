"""
Billing-period canonicalisation: pure date arithmetic, no I/O.

Canonical keys:
  monthly    YYYY-MM    due on day_of_cycle, clamped to the month's last day
  quarterly  YYYY-Qn    due on day_of_cycle of the quarter's first month
  yearly     YYYY       due on day_of_cycle of the anchor's month
  weekly     YYYY-Www   ISO week, due on ISO weekday day_of_cycle (1 = Monday)
  biweekly   YYYY-Www   ISO week starting each two-week cycle counted from the
                        anchor's week, due on ISO weekday day_of_cycle
"""

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from leaseledger.models.enums import Cadence


@dataclass(frozen=True)
class BillingPeriod:
    key: str
    start: date
    end: date
    due_date: date


@dataclass(frozen=True)
class ScheduleTerms:
    cadence: Cadence
    day_of_cycle: int
    anchor: date
    amount: Decimal
    currency: str
    end_date: date | None = None


_DAY_RANGES = {
    Cadence.MONTHLY: (1, 31),
    Cadence.QUARTERLY: (1, 31),
    Cadence.YEARLY: (1, 31),
    Cadence.WEEKLY: (1, 7),
    Cadence.BIWEEKLY: (1, 7),
}


def validate_day_of_cycle(cadence: Cadence, day: int) -> None:
    low, high = _DAY_RANGES[Cadence(cadence)]
    if not low <= day <= high:
        raise ValueError(f"day_of_cycle for {Cadence(cadence).value} schedules must be between {low} and {high}")


def clamp_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, monthrange(year, month)[1]))


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _iso_key(d: date) -> str:
    iso_year, iso_week, _ = d.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def _monday(d: date) -> date:
    return d - timedelta(days=d.isoweekday() - 1)


def period_containing(terms: ScheduleTerms, d: date) -> BillingPeriod:
    """The billing period of ``terms`` that contains calendar day ``d``."""
    cadence = Cadence(terms.cadence)
    day = terms.day_of_cycle

    if cadence == Cadence.MONTHLY:
        start = date(d.year, d.month, 1)
        end = clamp_day(d.year, d.month, 31)
        return BillingPeriod(f"{d.year:04d}-{d.month:02d}", start, end, clamp_day(d.year, d.month, day))

    if cadence == Cadence.QUARTERLY:
        quarter = (d.month - 1) // 3 + 1
        first_month = 3 * (quarter - 1) + 1
        start = date(d.year, first_month, 1)
        end = clamp_day(d.year, first_month + 2, 31)
        return BillingPeriod(f"{d.year:04d}-Q{quarter}", start, end, clamp_day(d.year, first_month, day))

    if cadence == Cadence.YEARLY:
        start = date(d.year, 1, 1)
        end = date(d.year, 12, 31)
        return BillingPeriod(f"{d.year:04d}", start, end, clamp_day(d.year, terms.anchor.month, day))

    if cadence == Cadence.WEEKLY:
        start = _monday(d)
        return BillingPeriod(_iso_key(start), start, start + timedelta(days=6), start + timedelta(days=day - 1))

    # biweekly: two-week cycles counted from the anchor's ISO week
    anchor_monday = _monday(terms.anchor)
    weeks = (_monday(d) - anchor_monday).days // 7
    start = anchor_monday + timedelta(weeks=2 * (weeks // 2))
    return BillingPeriod(_iso_key(start), start, start + timedelta(days=13), start + timedelta(days=day - 1))


def next_period(terms: ScheduleTerms, period: BillingPeriod) -> BillingPeriod:
    return period_containing(terms, period.end + timedelta(days=1))


def period_for_key(terms: ScheduleTerms, key: str) -> BillingPeriod:
    """Inverse of ``period_containing(...).key``; raises ValueError on a malformed key."""
    cadence = Cadence(terms.cadence)
    try:
        if cadence == Cadence.MONTHLY:
            year, month = key.split("-")
            return period_containing(terms, date(int(year), int(month), 1))
        if cadence == Cadence.QUARTERLY:
            year, quarter = key.split("-Q")
            return period_containing(terms, date(int(year), 3 * (int(quarter) - 1) + 1, 1))
        if cadence == Cadence.YEARLY:
            return period_containing(terms, date(int(key), 1, 1))
        year, week = key.split("-W")
        period = period_containing(terms, date.fromisocalendar(int(year), int(week), 1))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{key}' is not a valid {cadence.value} billing period") from exc
    if period.key != key:
        raise ValueError(f"'{key}' does not start a biweekly cycle for this schedule")
    return period


def applicable_periods(
    terms: ScheduleTerms,
    target: date,
    lead_days: int,
    backfill_days: int,
    lease_end: date | None = None,
) -> list[BillingPeriod]:
    """Billing periods to materialise for ``target``.

    Starts at the period containing ``target - backfill`` and runs while the
    due date is within ``target + lead``. Due dates before
    ``anchor - backfill``, after the schedule end or after the lease end are
    excluded.
    """
    lower = target - timedelta(days=backfill_days)
    upper = target + timedelta(days=lead_days)
    floor = terms.anchor - timedelta(days=backfill_days)

    periods: list[BillingPeriod] = []
    period = period_containing(terms, lower)
    while period.due_date <= upper:
        if terms.end_date is not None and period.due_date > terms.end_date:
            break
        if lease_end is not None and period.due_date > lease_end:
            break
        if period.due_date >= floor:
            periods.append(period)
        period = next_period(terms, period)
    return periods
