"""Tests for billing period date helpers."""
from datetime import datetime

import pytest

from billing_core.services.renewal_service import renewal_idempotency_key
from billing_core.utils.dates import add_months, billing_cycle_key, days_in_month, days_remaining


@pytest.mark.parametrize(
    "start, months, expected",
    [
        (datetime(2026, 1, 31, 9, 0), 1, datetime(2026, 2, 28, 9, 0)),
        (datetime(2028, 1, 31, 9, 0), 1, datetime(2028, 2, 29, 9, 0)),
        (datetime(2026, 3, 15), 1, datetime(2026, 4, 15)),
        (datetime(2026, 12, 31), 1, datetime(2027, 1, 31)),
        (datetime(2026, 3, 31), -1, datetime(2026, 2, 28)),
    ],
)
def test_add_months_clamps_day(start, months, expected) -> None:
    assert add_months(start, months) == expected


def test_days_remaining_rounds_up_and_never_negative() -> None:
    now = datetime(2026, 4, 1, 8, 0)

    assert days_remaining(datetime(2026, 4, 16, 8, 0), now) == 15
    assert days_remaining(datetime(2026, 4, 1, 9, 0), now) == 1
    assert days_remaining(datetime(2026, 3, 30), now) == 0
    assert days_in_month(now) == 30


def test_renewal_key_identifies_the_cycle() -> None:
    period_end = datetime(2026, 2, 28, 9, 0)

    assert billing_cycle_key(period_end) == "2026-02-28"
    assert renewal_idempotency_key("sub-1", period_end) == "renewal:sub-1:2026-02-28"
