"""Period model shared by the department and community calculators.

A single ``PeriodType`` covers both families of snapshots. Department KPIs use
fixed lookback windows ending "now"; community stats use calendar-aligned
windows. The scheduler uses ``TriggerSpec`` and ``next_fire_time`` to decide
when each recurring department run fires.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.models.metrics import PeriodType
from app.services.metrics.errors import UnsupportedPeriodError

DEPARTMENT_PERIODS = frozenset(
    {PeriodType.daily, PeriodType.weekly, PeriodType.monthly, PeriodType.quarterly}
)
COMMUNITY_PERIODS = frozenset(
    {PeriodType.daily, PeriodType.weekly, PeriodType.monthly, PeriodType.yearly, PeriodType.all_time}
)

ALL_TIME_START = datetime(2020, 1, 1, tzinfo=UTC)
ALL_TIME_END = datetime(2030, 12, 31, 23, 59, 59, 999999, tzinfo=UTC)


@dataclass(frozen=True)
class PeriodWindow:
    period: PeriodType
    start_at: datetime
    end_at: datetime


def coerce_period(value: PeriodType | str) -> PeriodType:
    if isinstance(value, PeriodType):
        return value
    raw = str(value).strip().lower()
    if raw in PeriodType.__members__:
        return PeriodType[raw]
    try:
        return PeriodType(raw)
    except ValueError:
        raise UnsupportedPeriodError(f"Unknown period: {value}") from None


def require_period(value: PeriodType | str, allowed: frozenset[PeriodType], label: str) -> PeriodType:
    period = coerce_period(value)
    if period not in allowed:
        supported = ", ".join(sorted(p.value for p in allowed))
        raise UnsupportedPeriodError(f"{label} does not support period '{period.value}' (supported: {supported})")
    return period


def _subtract_months(reference: datetime, months: int) -> datetime:
    month_index = reference.month - 1 - months
    year = reference.year + month_index // 12
    month = month_index % 12 + 1
    day = min(reference.day, calendar.monthrange(year, month)[1])
    return reference.replace(year=year, month=month, day=day)


def resolve_lookback_window(period: PeriodType | str, now: datetime) -> PeriodWindow:
    period = require_period(period, DEPARTMENT_PERIODS, "Department metrics")
    if period == PeriodType.daily:
        start_at = now - timedelta(days=1)
    elif period == PeriodType.weekly:
        start_at = now - timedelta(days=7)
    elif period == PeriodType.monthly:
        start_at = _subtract_months(now, 1)
    else:
        start_at = _subtract_months(now, 3)
    return PeriodWindow(period=period, start_at=start_at, end_at=now)


def _end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999999)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def resolve_calendar_window(period: PeriodType | str, reference: datetime) -> PeriodWindow:
    period = require_period(period, COMMUNITY_PERIODS, "Community stats")
    if period == PeriodType.daily:
        start_at = _start_of_day(reference)
        end_at = _end_of_day(reference)
    elif period == PeriodType.weekly:
        # Weeks run Sunday through Saturday.
        days_since_sunday = (reference.weekday() + 1) % 7
        start_at = _start_of_day(reference - timedelta(days=days_since_sunday))
        end_at = _end_of_day(start_at + timedelta(days=6))
    elif period == PeriodType.monthly:
        last_day = calendar.monthrange(reference.year, reference.month)[1]
        start_at = _start_of_day(reference.replace(day=1))
        end_at = _end_of_day(reference.replace(day=last_day))
    elif period == PeriodType.yearly:
        start_at = _start_of_day(reference.replace(month=1, day=1))
        end_at = _end_of_day(reference.replace(month=12, day=31))
    else:
        tz = reference.tzinfo or UTC
        start_at = ALL_TIME_START.replace(tzinfo=tz)
        end_at = ALL_TIME_END.replace(tzinfo=tz)
    return PeriodWindow(period=period, start_at=start_at, end_at=end_at)


@dataclass(frozen=True)
class TriggerSpec:
    """Wall-clock firing rule.

    ``weekday`` follows ``datetime.weekday()`` (Monday is 0). ``months``
    restricts firing to the listed calendar months.
    """

    hour: int
    minute: int = 0
    weekday: int | None = None
    month_day: int | None = None
    months: tuple[int, ...] | None = None

    def describe(self) -> str:
        parts = [f"{self.hour:02d}:{self.minute:02d}"]
        if self.weekday is not None:
            parts.append(f"on {calendar.day_name[self.weekday]}")
        if self.month_day is not None:
            parts.append(f"on day {self.month_day}")
        if self.months:
            parts.append("in " + ",".join(calendar.month_abbr[m] for m in self.months))
        return " ".join(parts)

    def matches_date(self, day: datetime) -> bool:
        if self.weekday is not None and day.weekday() != self.weekday:
            return False
        if self.month_day is not None and day.day != self.month_day:
            return False
        if self.months and day.month not in self.months:
            return False
        return True


DEFAULT_TRIGGERS: dict[PeriodType, TriggerSpec] = {
    PeriodType.daily: TriggerSpec(hour=2),
    PeriodType.weekly: TriggerSpec(hour=3, weekday=0),
    PeriodType.monthly: TriggerSpec(hour=4, month_day=1),
    PeriodType.quarterly: TriggerSpec(hour=5, month_day=1, months=(1, 4, 7, 10)),
}

# Longest gap between two fires is a quarter.
_MAX_SCAN_DAYS = 400


def safe_zoneinfo(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def next_fire_time(trigger: TriggerSpec, after: datetime, tz: ZoneInfo) -> datetime:
    """Return the first instant strictly after ``after`` that satisfies ``trigger``.

    The result is timezone-aware in ``tz``.
    """
    local_after = after.astimezone(tz)
    day = local_after.date()
    for offset in range(_MAX_SCAN_DAYS):
        candidate_day = day + timedelta(days=offset)
        candidate = datetime.combine(candidate_day, time(trigger.hour, trigger.minute), tzinfo=tz)
        if candidate <= local_after:
            continue
        if trigger.matches_date(candidate):
            return candidate
    raise ValueError(f"Trigger {trigger.describe()} never fires")
