from __future__ import annotations

from datetime import date, datetime, timezone

from app.utils.datetime_utils import (
    add_months,
    anchored_month_period,
    day_bounds_utc,
    ensure_utc,
    iso_week_period,
    local_date,
)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)


def test_anchored_month_period():
    assert anchored_month_period(date(2025, 1, 31), date(2025, 3, 5)) == (date(2025, 2, 28), date(2025, 3, 30))
    assert anchored_month_period(date(2025, 1, 10), date(2025, 1, 10)) == (date(2025, 1, 10), date(2025, 2, 9))
    assert anchored_month_period(date(2025, 1, 10), date(2025, 2, 9)) == (date(2025, 1, 10), date(2025, 2, 9))


def test_iso_week_period():
    assert iso_week_period(date(2025, 3, 16)) == (date(2025, 3, 10), date(2025, 3, 16))
    assert iso_week_period(date(2025, 3, 10)) == (date(2025, 3, 10), date(2025, 3, 16))


def test_local_date_uses_gym_timezone():
    late_utc = datetime(2025, 3, 10, 23, 30, tzinfo=timezone.utc)
    assert local_date(late_utc, "UTC") == date(2025, 3, 10)
    assert local_date(late_utc, "Europe/Berlin") == date(2025, 3, 11)


def test_ensure_utc_and_day_bounds():
    naive = datetime(2025, 3, 10, 12, 0)
    assert ensure_utc(naive).tzinfo == timezone.utc

    lower, upper = day_bounds_utc(date(2025, 3, 10), date(2025, 3, 10), "Europe/Berlin")
    assert lower == datetime(2025, 3, 9, 23, 0, tzinfo=timezone.utc)
    assert upper == datetime(2025, 3, 10, 23, 0, tzinfo=timezone.utc)
