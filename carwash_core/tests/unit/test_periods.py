"""Unit tests for carwash_core.billing.periods.

Covers:
- Calendar month arithmetic with day clamping
- Next-period and due-date computation
- Reminder schedule pruning
- Tax rounding, invoice numbering and gateway reference codes
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from carwash_core.billing import PlanInterval, ReminderType
from carwash_core.billing.periods import (
    add_interval,
    add_months,
    calculate_next_period,
    compute_due_date,
    compute_tax,
    format_invoice_number,
    generate_reference_code,
    invoice_number_prefix,
    parse_invoice_sequence,
    reminder_schedule,
)

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


class TestAddMonths:
    @pytest.mark.parametrize(
        ("start", "months", "expected"),
        [
            (datetime(2026, 1, 31, tzinfo=UTC), 1, datetime(2026, 2, 28, tzinfo=UTC)),
            (datetime(2028, 1, 31, tzinfo=UTC), 1, datetime(2028, 2, 29, tzinfo=UTC)),
            (datetime(2026, 11, 15, tzinfo=UTC), 3, datetime(2027, 2, 15, tzinfo=UTC)),
            (datetime(2026, 3, 31, tzinfo=UTC), 12, datetime(2027, 3, 31, tzinfo=UTC)),
        ],
    )
    def test_clamps_day(self, start: datetime, months: int, expected: datetime) -> None:
        assert add_months(start, months) == expected

    def test_interval(self) -> None:
        assert add_interval(NOW, PlanInterval.MONTHLY) == datetime(2026, 7, 15, 12, 0, tzinfo=UTC)
        assert add_interval(NOW, "YEARLY") == datetime(2027, 6, 15, 12, 0, tzinfo=UTC)


class TestNextPeriod:
    def test_starts_after_current_paid_period(self) -> None:
        end = NOW + timedelta(days=20)
        assert calculate_next_period(end, PlanInterval.MONTHLY, NOW) == (end, add_months(end, 1))

    def test_starts_now_when_lapsed(self) -> None:
        start, end = calculate_next_period(NOW - timedelta(days=2), PlanInterval.MONTHLY, NOW)
        assert start == NOW
        assert end == add_months(NOW, 1)

    def test_starts_now_without_period(self) -> None:
        start, _ = calculate_next_period(None, PlanInterval.YEARLY, NOW)
        assert start == NOW


class TestDueDate:
    def test_five_days_before_period(self) -> None:
        assert compute_due_date(NOW + timedelta(days=20), NOW) == NOW + timedelta(days=15)

    def test_never_in_the_past(self) -> None:
        assert compute_due_date(NOW + timedelta(days=2), NOW) == NOW + timedelta(days=3)
        assert compute_due_date(NOW, NOW) == NOW + timedelta(days=3)


class TestReminderSchedule:
    """Reminders are offset from the due date; past ones are pruned."""

    def test_full_schedule(self) -> None:
        due = NOW + timedelta(days=15)
        assert reminder_schedule(due, NOW) == [
            (ReminderType.EXPIRING_7_DAYS, due - timedelta(days=7)),
            (ReminderType.EXPIRING_3_DAYS, due - timedelta(days=3)),
            (ReminderType.EXPIRING_1_DAY, due - timedelta(days=1)),
            (ReminderType.EXPIRED, due),
        ]

    def test_drops_past_reminders(self) -> None:
        due = NOW + timedelta(days=3)
        kinds = [kind for kind, _ in reminder_schedule(due, NOW)]
        assert kinds == [ReminderType.EXPIRING_3_DAYS, ReminderType.EXPIRING_1_DAY, ReminderType.EXPIRED]

    def test_keeps_expired_even_when_past(self) -> None:
        due = NOW - timedelta(days=1)
        assert reminder_schedule(due, NOW) == [(ReminderType.EXPIRED, due)]


# ---------------------------------------------------------------------------
# Money and identifiers
# ---------------------------------------------------------------------------


class TestTax:
    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            (Decimal("50000"), Decimal("9500")),
            (Decimal("99900"), Decimal("18981")),
            (Decimal("50"), Decimal("10")),
            (Decimal("0"), Decimal("0")),
        ],
    )
    def test_default_rate(self, amount: Decimal, expected: Decimal) -> None:
        assert compute_tax(amount) == expected

    def test_custom_rate(self) -> None:
        assert compute_tax(Decimal("1000"), Decimal("0.05")) == Decimal("50")


class TestInvoiceNumbers:
    def test_prefix(self) -> None:
        assert invoice_number_prefix(NOW) == "FAC-2606"

    def test_format(self) -> None:
        assert format_invoice_number("FAC-2606", 7) == "FAC-2606-00007"

    @pytest.mark.parametrize(
        ("number", "expected"),
        [("FAC-2606-00042", 42), ("FAC-2606-123456", 123456), ("FAC-2606-x1", 0), ("garbage", 0)],
    )
    def test_parse_sequence(self, number: str, expected: int) -> None:
        assert parse_invoice_sequence(number) == expected


class TestReferenceCode:
    def test_format(self) -> None:
        assert generate_reference_code("clinv0000abcdefgh", 36**3) == "CW-abcdefgh-1000"

    def test_short_invoice_id(self) -> None:
        assert generate_reference_code("inv1", 35) == "CW-inv1-z"

    def test_unique_per_attempt(self) -> None:
        assert generate_reference_code("inv-1", 1_000) != generate_reference_code("inv-1", 1_001)

    def test_defaults_to_clock(self) -> None:
        code = generate_reference_code("abcdefgh12345678")
        assert code.startswith("CW-12345678-")
