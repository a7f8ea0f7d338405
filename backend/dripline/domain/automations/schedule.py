"""Due-time calculation for ``scheduled_time`` trigger nodes.

Two schedule shapes exist:

* ``EverySchedule`` - recurring, "every N minutes/days/weeks/months" counted
  from the last time the trigger fired. A trigger that never fired is due
  immediately.
* ``SpecificSchedule`` - calendar anchored, "daily/weekly/monthly at HH:MM".
  The most recent occurrence at or before ``now`` is due once; firing credits
  that occurrence so the same slot never fires twice no matter how often the
  runner is invoked.

All arithmetic is UTC. Naive datetimes are treated as UTC.
"""

from __future__ import annotations

import calendar
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Union

from dripline.domain.automations.statuses import EveryUnit, SpecificKind

TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

DEFAULT_HOUR = 9
DEFAULT_MINUTE = 0
EVERY_VALUE_MIN = 1
EVERY_VALUE_MAX = 10_000
LEGACY_INTERVAL_DEFAULT = 60
LEGACY_INTERVAL_MIN = 5
# Legacy intervals are re-clamped to EVERY_VALUE_MAX once converted.
LEGACY_INTERVAL_MAX = 43_200

_UNIT_DELTAS = {
    EveryUnit.minutes: timedelta(minutes=1),
    EveryUnit.days: timedelta(days=1),
    EveryUnit.weeks: timedelta(weeks=1),
}


@dataclass(frozen=True)
class EverySchedule:
    value: int
    unit: EveryUnit


@dataclass(frozen=True)
class SpecificSchedule:
    kind: SpecificKind
    hour: int = DEFAULT_HOUR
    minute: int = DEFAULT_MINUTE
    weekday: int = 1  # 0=Sunday
    day_of_month: int = 1


TriggerSchedule = Union[EverySchedule, SpecificSchedule]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_number(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if not isinstance(raw, (int, float)) and not (isinstance(raw, str) and raw.strip()):
        return None
    try:
        value = float(raw)
    except (ValueError, OverflowError):
        return None
    return value if math.isfinite(value) else None


def _enum_member(enum_cls, raw: Any, default):
    if isinstance(raw, str) and raw in enum_cls._value2member_map_:
        return enum_cls(raw)
    return default


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def clamp_every_value(raw: Any) -> int:
    number = _coerce_number(raw)
    value = _round_half_up(number) if number is not None else EVERY_VALUE_MIN
    return _clamp(value, EVERY_VALUE_MIN, EVERY_VALUE_MAX)


def clamp_weekday(raw: Any) -> int:
    number = _coerce_number(1 if raw is None else raw)
    value = _round_half_up(number) if number is not None else 1
    return _clamp(value, 0, 6)


def clamp_day_of_month(raw: Any) -> int:
    number = _coerce_number(1 if raw is None else raw)
    value = _round_half_up(number) if number is not None else 1
    return _clamp(value, 1, 31)


def parse_legacy_interval_minutes(raw: Any) -> int:
    number = _coerce_number(raw)
    if number is None or _round_half_up(number) <= 0:
        return LEGACY_INTERVAL_DEFAULT
    return _clamp(_round_half_up(number), LEGACY_INTERVAL_MIN, LEGACY_INTERVAL_MAX)


def parse_time_hhmm(raw: Any) -> tuple[int, int]:
    text = raw.strip() if isinstance(raw, str) else ""
    match = TIME_RE.match(text)
    if not match:
        return DEFAULT_HOUR, DEFAULT_MINUTE
    return int(match.group(1)), int(match.group(2))


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse a persisted ISO timestamp; anything unusable reads as "never fired"."""
    if isinstance(raw, datetime):
        return _as_utc(raw)
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    parsed = _as_utc(parsed)
    if parsed.timestamp() <= 0:
        return None
    return parsed


def format_timestamp(value: datetime) -> str:
    return _as_utc(value).isoformat().replace("+00:00", "Z")


def parse_schedule(config: Mapping[str, Any]) -> TriggerSchedule:
    """Normalize a loosely typed trigger config. Never raises."""
    if config.get("scheduleMode") == "specific":
        raw_kind = config.get("specificKind")
        kind = _enum_member(SpecificKind, raw_kind, SpecificKind.daily)
        hour, minute = parse_time_hhmm(config.get("specificTime") or "09:00")
        return SpecificSchedule(
            kind=kind,
            hour=hour,
            minute=minute,
            weekday=clamp_weekday(config.get("specificWeekday")),
            day_of_month=clamp_day_of_month(config.get("specificDayOfMonth")),
        )

    has_every = "everyValue" in config or "everyUnit" in config
    if has_every:
        raw_unit = config.get("everyUnit")
        unit = _enum_member(EveryUnit, raw_unit, EveryUnit.minutes)
        return EverySchedule(value=clamp_every_value(config.get("everyValue")), unit=unit)

    interval = parse_legacy_interval_minutes(config.get("intervalMinutes"))
    return EverySchedule(value=clamp_every_value(interval), unit=EveryUnit.minutes)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition clamping the day to the destination month length."""
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def next_due_at(schedule: EverySchedule, last_fired_at: datetime | None, now: datetime) -> datetime:
    if last_fired_at is None:
        return _as_utc(now)
    last = _as_utc(last_fired_at)
    if schedule.unit == EveryUnit.months:
        return add_months(last, schedule.value)
    return last + _UNIT_DELTAS[schedule.unit] * schedule.value


def _at(day: datetime, hour: int, minute: int) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def most_recent_occurrence(schedule: SpecificSchedule, now: datetime) -> datetime:
    now = _as_utc(now)
    hour, minute = schedule.hour, schedule.minute

    if schedule.kind == SpecificKind.daily:
        occurrence = _at(now, hour, minute)
        if now >= occurrence:
            return occurrence
        return occurrence - timedelta(days=1)

    if schedule.kind == SpecificKind.weekly:
        today = (now.weekday() + 1) % 7  # Sunday=0
        diff = (today - clamp_weekday(schedule.weekday)) % 7
        occurrence = _at(now, hour, minute) - timedelta(days=diff)
        if now >= occurrence:
            return occurrence
        return occurrence - timedelta(days=7)

    day_of_month = clamp_day_of_month(schedule.day_of_month)
    this_month = _at(
        now.replace(day=min(day_of_month, days_in_month(now.year, now.month))), hour, minute
    )
    if now >= this_month:
        return this_month
    previous = add_months(now.replace(day=1), -1)
    return _at(
        previous.replace(day=min(day_of_month, days_in_month(previous.year, previous.month))),
        hour,
        minute,
    )


def is_due(schedule: TriggerSchedule, last_fired_at: datetime | None, now: datetime) -> bool:
    now = _as_utc(now)
    if isinstance(schedule, SpecificSchedule):
        occurrence = most_recent_occurrence(schedule, now)
        if now < occurrence:
            return False
        return last_fired_at is None or _as_utc(last_fired_at) < occurrence
    return now >= next_due_at(schedule, last_fired_at, now)
