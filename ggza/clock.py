"""Canonical time handling.

Timestamps are stored as naive UTC. Calendar buckets (days, hours, ISO weeks,
months) are always derived after shifting by the configured offset so that
two players on the same wall-clock day in the home timezone share a bucket
no matter where their browser is.
"""
from datetime import date, datetime, timedelta, timezone

from ggza.config import TZ_OFFSET_HOURS

PERIOD_TYPES = ("weekly", "monthly", "all_time")
ALL_TIME_KEY = "all"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(moment: datetime) -> datetime:
    return moment + timedelta(hours=TZ_OFFSET_HOURS)


def to_utc(local_moment: datetime) -> datetime:
    return local_moment - timedelta(hours=TZ_OFFSET_HOURS)


def local_day(moment: datetime) -> date:
    return to_local(moment).date()


def day_key(moment: datetime) -> str:
    return local_day(moment).isoformat()


def hour_bucket(moment: datetime) -> tuple[str, datetime, datetime]:
    """Return (key, start_utc, end_utc) for the local clock hour holding ``moment``."""
    local_start = to_local(moment).replace(minute=0, second=0, microsecond=0)
    start = to_utc(local_start)
    return local_start.strftime("%Y-%m-%dT%H"), start, start + timedelta(hours=1)


def week_key(moment: datetime) -> str:
    year, week, _ = local_day(moment).isocalendar()
    return f"{year}-W{week:02d}"


def week_key_for(year: int, week_number: int) -> str:
    return f"{year}-W{week_number:02d}"


def month_key(moment: datetime) -> str:
    return local_day(moment).strftime("%Y-%m")


def period_keys(moment: datetime, *, year: int | None = None, week_number: int | None = None) -> dict[str, str]:
    weekly = week_key_for(year, week_number) if year and week_number else week_key(moment)
    return {"weekly": weekly, "monthly": month_key(moment), "all_time": ALL_TIME_KEY}


def current_period_key(period_type: str, moment: datetime) -> str:
    return period_keys(moment)[period_type]
