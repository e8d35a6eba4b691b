"""Five-field cron schedules: matching, humanizing, and preset building.

Fields are minute, hour, day-of-month, month, day-of-week. Parsing and
matching are done by croniter; this module pins the accepted shape to
exactly five fields and requires all five to match, so a schedule that
restricts both day-of-month and day-of-week fires only when both hold.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from croniter import croniter


class CronError(ValueError):
    """Raised for a malformed schedule string."""


DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
_SHORT_DAYS = [d[:3] for d in DAY_NAMES]


def validate(schedule: str) -> str | None:
    """Return an error message for a malformed schedule, None if valid."""
    parts = schedule.split()
    if len(parts) != 5:
        return f"expected 5 fields, got {len(parts)}: {schedule!r}"
    if not croniter.is_valid(schedule):
        return f"bad field value in {schedule!r}"
    return None


def matches(schedule: str, when: datetime) -> bool:
    """True when ``when`` falls in a minute the schedule fires on."""
    error = validate(schedule)
    if error:
        raise CronError(error)
    return croniter.match(schedule, when, day_or=False)


# ─── Presets ────────────────────────────────────────────────────

class Frequency(str, Enum):
    EVERY_MINUTE = "every-minute"
    EVERY_5_MIN = "every-5-min"
    EVERY_15_MIN = "every-15-min"
    EVERY_30_MIN = "every-30-min"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


def build_cron(freq: Frequency | str, hour: int = 9, minute: int = 0,
               day_of_week: int = 1, day_of_month: int = 1,
               custom: str = "") -> str:
    freq = Frequency(freq)
    if freq is Frequency.EVERY_MINUTE:
        return "* * * * *"
    if freq is Frequency.EVERY_5_MIN:
        return "*/5 * * * *"
    if freq is Frequency.EVERY_15_MIN:
        return "*/15 * * * *"
    if freq is Frequency.EVERY_30_MIN:
        return "*/30 * * * *"
    if freq is Frequency.HOURLY:
        return f"{minute} * * * *"
    if freq is Frequency.DAILY:
        return f"{minute} {hour} * * *"
    if freq is Frequency.WEEKDAYS:
        return f"{minute} {hour} * * 1-5"
    if freq is Frequency.WEEKLY:
        return f"{minute} {hour} * * {day_of_week}"
    if freq is Frequency.MONTHLY:
        return f"{minute} {hour} {day_of_month} * *"
    return custom or "0 9 * * *"


def format_time(hour: int, minute: int) -> str:
    """9, 0 → '9:00 AM'."""
    suffix = "PM" if hour >= 12 else "AM"
    h12 = hour % 12 or 12
    return f"{h12}:{minute:02d} {suffix}"


def _ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


_NUM = re.compile(r"^\d+$")
_STEP = re.compile(r"^\*/(\d+)$")


def humanize(schedule: str) -> str:
    """Describe common schedule shapes in words; anything else is returned as-is."""
    parts = schedule.split()
    if len(parts) != 5:
        return schedule
    minute, hour, dom, month, dow = parts

    if month != "*":
        return schedule

    if parts == ["*"] * 5:
        return "Every minute"

    step = _STEP.match(minute)
    if step and hour == dom == dow == "*":
        n = int(step.group(1))
        return "Every minute" if n == 1 else f"Every {n} minutes"

    if not _NUM.match(minute):
        return schedule
    m = int(minute)

    if hour == "*" and dom == "*" and dow == "*":
        return "Every hour" if m == 0 else f"Every hour at :{m:02d}"

    if not _NUM.match(hour) or int(hour) > 23 or m > 59:
        return schedule
    at = format_time(int(hour), m)

    if dom == "*" and dow == "*":
        return f"Every day at {at}"
    if dom == "*" and dow == "1-5":
        return f"Weekdays at {at}"
    if dom == "*" and re.match(r"^[0-7](,[0-7])*$", dow):
        days = [int(d) % 7 for d in dow.split(",")]
        if len(days) == 1:
            return f"Every {DAY_NAMES[days[0]]} at {at}"
        return f"Every {', '.join(_SHORT_DAYS[d] for d in days)} at {at}"
    if dow == "*" and _NUM.match(dom):
        return f"Monthly on the {_ordinal(int(dom))} at {at}"
    return schedule
