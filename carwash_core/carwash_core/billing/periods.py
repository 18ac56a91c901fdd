"""Calendar and money arithmetic for plan invoices.

All functions are deterministic given ``now``; the state machine passes
the clock in so tests can pin it.
"""

from __future__ import annotations

import calendar
import time
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from carwash_core.billing.models import PlanInterval, ReminderType

DEFAULT_TAX_RATE = Decimal("0.19")

# Invoice is due this many days before the period it pays for starts.
DUE_DAYS_BEFORE_PERIOD = 5
# Grace given when the computed due date is already past.
MIN_DUE_DAYS_FROM_NOW = 3

REMINDER_OFFSETS_DAYS: tuple[tuple[ReminderType, int], ...] = (
    (ReminderType.EXPIRING_7_DAYS, 7),
    (ReminderType.EXPIRING_3_DAYS, 3),
    (ReminderType.EXPIRING_1_DAY, 1),
    (ReminderType.EXPIRED, 0),
)

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_interval(start: datetime, interval: PlanInterval | str) -> datetime:
    """Return the end of a period of *interval* anchored at *start*."""
    if PlanInterval(interval) is PlanInterval.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def calculate_next_period(
    current_period_end: datetime | None,
    interval: PlanInterval | str,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the next billable period.

    The period starts when the current paid period ends if that is still
    in the future, otherwise immediately.
    """
    if current_period_end is not None and current_period_end > now:
        start = current_period_end
    else:
        start = now
    return start, add_interval(start, interval)


def compute_due_date(period_start: datetime, now: datetime) -> datetime:
    """Due date is five days before the period, but never in the past."""
    due = period_start - timedelta(days=DUE_DAYS_BEFORE_PERIOD)
    if due < now:
        due = now + timedelta(days=MIN_DUE_DAYS_FROM_NOW)
    return due


def reminder_schedule(due_date: datetime, now: datetime) -> list[tuple[ReminderType, datetime]]:
    """Return the reminders to create for an invoice due at *due_date*.

    Past-dated reminders are dropped, except ``EXPIRED`` which is always
    kept so the overdue transition still fires.
    """
    schedule: list[tuple[ReminderType, datetime]] = []
    for reminder_type, days_before in REMINDER_OFFSETS_DAYS:
        scheduled_for = due_date - timedelta(days=days_before)
        if scheduled_for < now and reminder_type is not ReminderType.EXPIRED:
            continue
        schedule.append((reminder_type, scheduled_for))
    return schedule


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------


def compute_tax(amount: Decimal, rate: Decimal = DEFAULT_TAX_RATE) -> Decimal:
    """Return the tax on *amount*, rounded half-up to whole currency units."""
    return (Decimal(amount) * Decimal(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def invoice_number_prefix(now: datetime) -> str:
    """Return the monthly prefix, e.g. ``FAC-2606``."""
    return f"FAC-{now.strftime('%y%m')}"


def format_invoice_number(prefix: str, sequence: int) -> str:
    """Return ``{prefix}-{sequence:05d}``."""
    return f"{prefix}-{sequence:05d}"


def parse_invoice_sequence(invoice_number: str) -> int:
    """Return the trailing sequence of an invoice number (``0`` if malformed)."""
    tail = invoice_number.rsplit("-", 1)[-1]
    return int(tail) if tail.isdigit() else 0


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def generate_reference_code(invoice_id: str, timestamp_ms: int | None = None) -> str:
    """Return a unique gateway reference code for a payment attempt.

    Format: ``CW-{last 8 chars of invoice id}-{base36 epoch ms}``.
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    return f"CW-{invoice_id[-8:]}-{_to_base36(timestamp_ms)}"
