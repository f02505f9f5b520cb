"""Wake-time computation for delay steps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .constants import DEFAULT_WEEKDAY_WAKE_HOUR
from .errors import SchedulingError
from .graph import DelayConfig, DelayType, DelayUnit, parse_clock

_UNIT_DELTAS = {
    DelayUnit.MINUTES: timedelta(minutes=1),
    DelayUnit.HOURS: timedelta(hours=1),
    DelayUnit.DAYS: timedelta(days=1),
    DelayUnit.WEEKS: timedelta(weeks=1),
}


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def compute_wake_time(config: DelayConfig, now: datetime, step_id: str | None = None) -> datetime:
    """Return when an enrollment parked on a delay with ``config`` becomes due.

    Raises:
        SchedulingError: the configuration does not describe a point in time.
    """
    problems = config.problems()
    if problems:
        raise SchedulingError("; ".join(problems), step_id=step_id)
    now = _aware(now)

    if config.delay_type == DelayType.DURATION:
        return now + _UNIT_DELTAS[config.unit] * config.value

    if config.delay_type == DelayType.UNTIL_DATE:
        target = _aware(config.date)
        return max(target, now)

    if config.delay_type == DelayType.UNTIL_TIME:
        hour, minute = parse_clock(config.time)
        target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return target

    days_ahead = (config.weekday - now.weekday()) % 7
    target = (now + timedelta(days=days_ahead)).replace(
        hour=DEFAULT_WEEKDAY_WAKE_HOUR, minute=0, second=0, microsecond=0
    )
    if target <= now:
        target += timedelta(weeks=1)
    return target


def delay_ms(config: DelayConfig, now: datetime, step_id: str | None = None) -> int:
    """Length of the wait in milliseconds, as it would be at ``now``."""
    return int((compute_wake_time(config, now, step_id) - _aware(now)).total_seconds() * 1000)


def describe_delay(config: DelayConfig) -> str:
    if config.delay_type == DelayType.DURATION:
        unit = config.unit.value if config.unit else "?"
        value = config.value if config.value is not None else "?"
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return f"{value} {unit}"
    if config.delay_type == DelayType.UNTIL_DATE:
        return f"until {config.date.isoformat() if config.date else '?'}"
    if config.delay_type == DelayType.UNTIL_TIME:
        return f"until {config.time}"
    names = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
    if config.weekday is not None and 0 <= config.weekday <= 6:
        return f"until {names[config.weekday]}"
    return "until ?"
