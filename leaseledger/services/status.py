"""
Rent record status rules.

Stored statuses are due, partially_paid, paid, waived and cancelled.
``overdue`` is derived when read: an open record whose due date has passed.
"""

from datetime import date
from decimal import Decimal

from leaseledger.models.enums import OPEN_RENT_STATUSES, RentStatus

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENTS)


def derive_status(amount_due: Decimal, amount_paid: Decimal, current: RentStatus | str) -> RentStatus:
    """Stored status after an amount change. Waived and cancelled are sticky."""
    current = RentStatus(current)
    if current in (RentStatus.WAIVED, RentStatus.CANCELLED):
        return current
    if amount_paid >= amount_due:
        return RentStatus.PAID
    if amount_paid > 0:
        return RentStatus.PARTIALLY_PAID
    return RentStatus.DUE


def is_overdue(status: RentStatus | str, due_date: date, today: date) -> bool:
    return RentStatus(status) in OPEN_RENT_STATUSES and due_date < today


def effective_status(record, today: date) -> RentStatus:
    if is_overdue(record.status, record.due_date, today):
        return RentStatus.OVERDUE
    return RentStatus(record.status)


def apply_payment(amount_due: Decimal, amount_paid: Decimal, amount: Decimal) -> tuple[Decimal, Decimal]:
    """Return (applied, credited_excess) for a payment against the balance."""
    outstanding = max(amount_due - amount_paid, Decimal("0"))
    applied = min(amount, outstanding)
    return money(applied), money(amount - applied)
