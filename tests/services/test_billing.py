"""
Tests for billing-period canonicalisation.
Pure date arithmetic, no database.
"""

from datetime import date
from decimal import Decimal

import pytest

from leaseledger.models.enums import Cadence
from leaseledger.services.billing import (
    ScheduleTerms,
    applicable_periods,
    clamp_day,
    next_period,
    period_containing,
    period_for_key,
    validate_day_of_cycle,
)


def _terms(cadence=Cadence.MONTHLY, day=1, anchor=date(2024, 1, 1), end=None) -> ScheduleTerms:
    return ScheduleTerms(
        cadence=cadence, day_of_cycle=day, anchor=anchor,
        amount=Decimal("1500.00"), currency="USD", end_date=end,
    )


# ── Monthly ──────────────────────────────────────────────────────────────────

class TestMonthly:
    def test_key_and_due_date(self):
        p = period_containing(_terms(day=5), date(2024, 3, 17))
        assert p.key == "2024-03"
        assert p.start == date(2024, 3, 1)
        assert p.end == date(2024, 3, 31)
        assert p.due_date == date(2024, 3, 5)

    def test_due_day_clamped_to_short_month(self):
        p = period_containing(_terms(day=31), date(2024, 2, 10))
        assert p.due_date == date(2024, 2, 29)
        p = period_containing(_terms(day=31), date(2023, 2, 10))
        assert p.due_date == date(2023, 2, 28)

    def test_next_period_rolls_over_year(self):
        p = next_period(_terms(), period_containing(_terms(), date(2024, 12, 15)))
        assert p.key == "2025-01"
        assert p.due_date == date(2025, 1, 1)

    def test_clamp_day(self):
        assert clamp_day(2024, 4, 31) == date(2024, 4, 30)
        assert clamp_day(2024, 4, 15) == date(2024, 4, 15)


# ── Other cadences ───────────────────────────────────────────────────────────

class TestOtherCadences:
    def test_quarterly(self):
        p = period_containing(_terms(Cadence.QUARTERLY, day=10), date(2024, 5, 20))
        assert p.key == "2024-Q2"
        assert p.start == date(2024, 4, 1)
        assert p.end == date(2024, 6, 30)
        assert p.due_date == date(2024, 4, 10)

    def test_yearly_due_in_anchor_month(self):
        p = period_containing(_terms(Cadence.YEARLY, day=15, anchor=date(2023, 7, 1)), date(2024, 2, 1))
        assert p.key == "2024"
        assert p.due_date == date(2024, 7, 15)

    def test_weekly_uses_iso_week(self):
        # 2024-02-14 is a Wednesday in ISO week 7
        p = period_containing(_terms(Cadence.WEEKLY, day=5), date(2024, 2, 14))
        assert p.key == "2024-W07"
        assert p.start == date(2024, 2, 12)
        assert p.due_date == date(2024, 2, 16)

    def test_weekly_key_uses_iso_year(self):
        p = period_containing(_terms(Cadence.WEEKLY, day=1), date(2024, 12, 31))
        assert p.key == "2025-W01"

    def test_biweekly_cycles_from_anchor_week(self):
        terms = _terms(Cadence.BIWEEKLY, day=1, anchor=date(2024, 1, 1))
        first = period_containing(terms, date(2024, 1, 10))
        assert first.key == "2024-W01"
        assert first.end == date(2024, 1, 14)
        second = next_period(terms, first)
        assert second.key == "2024-W03"
        assert second.due_date == date(2024, 1, 15)


# ── Keys ─────────────────────────────────────────────────────────────────────

class TestPeriodForKey:
    def test_round_trips_each_cadence(self):
        cases = [
            (Cadence.MONTHLY, "2024-03"),
            (Cadence.QUARTERLY, "2024-Q3"),
            (Cadence.YEARLY, "2024"),
            (Cadence.WEEKLY, "2024-W09"),
        ]
        for cadence, key in cases:
            assert period_for_key(_terms(cadence), key).key == key

    def test_malformed_key(self):
        with pytest.raises(ValueError):
            period_for_key(_terms(), "March 2024")

    def test_biweekly_key_off_cycle(self):
        terms = _terms(Cadence.BIWEEKLY, anchor=date(2024, 1, 1))
        with pytest.raises(ValueError):
            period_for_key(terms, "2024-W02")


# ── Day of cycle ─────────────────────────────────────────────────────────────

class TestValidateDayOfCycle:
    def test_weekly_range(self):
        validate_day_of_cycle(Cadence.WEEKLY, 7)
        with pytest.raises(ValueError):
            validate_day_of_cycle(Cadence.WEEKLY, 8)

    def test_monthly_range(self):
        validate_day_of_cycle(Cadence.MONTHLY, 31)
        with pytest.raises(ValueError):
            validate_day_of_cycle(Cadence.MONTHLY, 0)


# ── Applicable periods ───────────────────────────────────────────────────────

class TestApplicablePeriods:
    def test_happy_monthly_cycle(self):
        periods = applicable_periods(_terms(), date(2024, 2, 10), lead_days=35, backfill_days=0)
        assert [p.key for p in periods] == ["2024-02", "2024-03"]
        assert [p.due_date for p in periods] == [date(2024, 2, 1), date(2024, 3, 1)]

    def test_backfill_reaches_earlier_periods(self):
        periods = applicable_periods(_terms(), date(2024, 2, 10), lead_days=0, backfill_days=40)
        assert [p.key for p in periods] == ["2024-01", "2024-02"]

    def test_nothing_before_anchor(self):
        terms = _terms(anchor=date(2024, 3, 1))
        periods = applicable_periods(terms, date(2024, 3, 5), lead_days=0, backfill_days=20)
        assert [p.key for p in periods] == ["2024-03"]

    def test_schedule_end_stops_generation(self):
        terms = _terms(end=date(2024, 2, 20))
        periods = applicable_periods(terms, date(2024, 2, 10), lead_days=35, backfill_days=0)
        assert [p.key for p in periods] == ["2024-02"]

    def test_lease_end_stops_generation(self):
        periods = applicable_periods(
            _terms(), date(2024, 2, 10), lead_days=35, backfill_days=0, lease_end=date(2024, 2, 28)
        )
        assert [p.key for p in periods] == ["2024-02"]
