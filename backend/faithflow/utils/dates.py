"""Date helpers shared by reconciliation and billing jobs"""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

RECURRING_INTERVALS = ("WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value) -> Optional[datetime]:
    """Unix seconds (Stripe) to an aware datetime"""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_iso_datetime(value) -> Optional[datetime]:
    """ISO-8601 string (Paystack) to an aware datetime, None when unparseable"""
    if not value or not isinstance(value, str):
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29)"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_recurring_charge_at(from_date: datetime, interval: str) -> datetime:
    """Next charge date one interval after from_date"""
    if interval == "WEEKLY":
        return from_date + timedelta(days=7)
    if interval == "QUARTERLY":
        return add_months(from_date, 3)
    if interval == "YEARLY":
        return add_months(from_date, 12)
    return add_months(from_date, 1)


def start_of_utc_month(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)
