# feeledger/utils/dates.py
# Date helpers shared by ledgers (due dates) and installment plans.

from datetime import datetime, timezone, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta


# Months per billing period. Yearly is expressed in months too so
# that relativedelta clamps Feb 29 → Feb 28 the same way for all plans.
PERIOD_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming from clients are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_periods(start: datetime, plan_type: str, count: int = 1) -> datetime:
    """
    Advance `start` by `count` billing periods.

    Month arithmetic clamps to the end of the month:
    Jan 31 + 1 month → Feb 28/29, never Mar 2/3.
    """
    key = getattr(plan_type, "value", plan_type)
    try:
        months = PERIOD_MONTHS[key]
    except KeyError:
        raise ValueError(f"Unknown plan type: {plan_type}")
    return start + relativedelta(months=months * count)


def due_date_from(now: datetime, days: int) -> datetime:
    return now + timedelta(days=days)


def academic_year_for(now: datetime) -> str:
    """Academic years start in June: 2024-06-01 → "2024-25"."""
    start = now.year if now.month >= 6 else now.year - 1
    return f"{start}-{(start + 1) % 100:02d}"
