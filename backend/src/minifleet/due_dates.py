from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from dateutil.relativedelta import relativedelta


@dataclass(frozen=True)
class DueProjection:
    next_due_date: date | None
    next_due_odometer: int | None


def next_due(
    last_service_date: date,
    interval_months: int | None,
    interval_miles: int | None,
    last_service_odometer: int,
) -> DueProjection:
    """Project the next service from the last one.

    Month intervals use calendar-month arithmetic and clamp to the last valid
    day of the target month, so 2024-01-31 plus one month is 2024-02-29.
    Zero or missing intervals leave the matching output empty.
    """
    if interval_months is not None and interval_months < 0:
        raise ValueError("interval_months must not be negative")
    if interval_miles is not None and interval_miles < 0:
        raise ValueError("interval_miles must not be negative")

    next_due_date: date | None = None
    next_due_odometer: int | None = None
    if interval_months:
        next_due_date = last_service_date + relativedelta(months=interval_months)
    if interval_miles:
        next_due_odometer = last_service_odometer + interval_miles
    return DueProjection(next_due_date=next_due_date, next_due_odometer=next_due_odometer)
