from __future__ import annotations

from datetime import date

import pytest

from minifleet.due_dates import DueProjection, next_due


def test_next_due_adds_months_and_miles() -> None:
    projection = next_due(date(2024, 3, 15), 6, 5000, 42000)

    assert projection == DueProjection(next_due_date=date(2024, 9, 15), next_due_odometer=47000)


def test_next_due_clamps_to_end_of_shorter_month() -> None:
    assert next_due(date(2024, 1, 31), 1, None, 0).next_due_date == date(2024, 2, 29)
    assert next_due(date(2023, 1, 31), 1, None, 0).next_due_date == date(2023, 2, 28)
    assert next_due(date(2024, 8, 31), 1, None, 0).next_due_date == date(2024, 9, 30)


def test_next_due_crosses_year_boundary() -> None:
    assert next_due(date(2024, 11, 30), 3, None, 0).next_due_date == date(2025, 2, 28)


def test_next_due_treats_zero_and_missing_intervals_as_absent() -> None:
    assert next_due(date(2024, 5, 1), 0, 0, 1000) == DueProjection(None, None)
    assert next_due(date(2024, 5, 1), None, 3000, 1000) == DueProjection(None, 4000)
    assert next_due(date(2024, 5, 1), 12, None, 1000) == DueProjection(date(2025, 5, 1), None)


def test_next_due_rejects_negative_intervals() -> None:
    with pytest.raises(ValueError):
        next_due(date(2024, 5, 1), -1, None, 0)
    with pytest.raises(ValueError):
        next_due(date(2024, 5, 1), None, -10, 0)
