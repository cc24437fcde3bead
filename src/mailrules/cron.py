"""Cron expression handling for automation jobs.

Next occurrences are computed by APScheduler's `CronTrigger`. Besides
standard 5-field expressions a few simplified forms are accepted and
normalized to cron first:

    @every 15m   -> */15 * * * *
    @every 2h    -> 0 */2 * * *
    @hourly      -> 0 * * * *
    @daily       -> 0 0 * * *
    @weekly      -> 0 0 * * sun
"""

import re
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

_EVERY_PATTERN = re.compile(r"^@every\s+(\d+)\s*([mh])$", re.IGNORECASE)

_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * sun",
}

_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


class InvalidCronExpression(ValueError):
    """Raised when a job's schedule cannot be parsed."""


def normalize_cron_expression(expression: str) -> str:
    """Translate simplified forms to a standard 5-field expression."""
    expr = " ".join((expression or "").split())
    if not expr:
        raise InvalidCronExpression("Empty cron expression")

    lowered = expr.lower()
    if lowered in _ALIASES:
        return _ALIASES[lowered]

    match = _EVERY_PATTERN.match(expr)
    if match:
        interval = int(match.group(1))
        unit = match.group(2).lower()
        if unit == "m":
            if not 1 <= interval <= 59:
                raise InvalidCronExpression(f"Minute interval must be 1-59: {expression}")
            return f"*/{interval} * * * *"
        if not 1 <= interval <= 23:
            raise InvalidCronExpression(f"Hour interval must be 1-23: {expression}")
        return f"0 */{interval} * * *"

    if lowered.startswith("@"):
        raise InvalidCronExpression(f"Unsupported cron shorthand: {expression}")

    fields = expr.split(" ")
    if len(fields) != 5:
        raise InvalidCronExpression(f"Expected 5 cron fields: {expression}")

    fields[4] = _day_of_week_names(fields[4], expression)
    return " ".join(fields)


def _day_of_week_names(field: str, expression: str) -> str:
    """Rewrite numeric crontab weekdays (0 or 7 = Sunday) as names.

    APScheduler numbers weekdays from Monday, names are unambiguous.
    """
    parts = []
    for part in field.split(","):
        base, slash, step = part.partition("/")
        if not re.fullmatch(r"\d+(-\d+)?", base):
            parts.append(part)
            continue

        start, _, end = base.partition("-")
        first = int(start)
        last = int(end) if end else first
        if first > 7 or last > 7:
            raise InvalidCronExpression(f"Day of week out of range: {expression}")

        if first == 0 and last > 0:
            parts.append("sun")
            first = 1

        if first == last:
            name = _DAY_NAMES[first % 7]
        else:
            name = f"{_DAY_NAMES[first % 7]}-{_DAY_NAMES[last % 7]}"
        parts.append(f"{name}{slash}{step}")
    return ",".join(parts)


def _resolve_timezone(tz: str | tzinfo | None) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def build_trigger(expression: str, tz: str | tzinfo | None = None) -> CronTrigger:
    """Build a CronTrigger, raising InvalidCronExpression for bad input."""
    normalized = normalize_cron_expression(expression)
    try:
        return CronTrigger.from_crontab(normalized, timezone=_resolve_timezone(tz))
    except ValueError as e:
        raise InvalidCronExpression(f"Invalid cron expression '{expression}': {e}") from e


def validate_cron_expression(expression: str) -> None:
    build_trigger(expression)


def compute_next_run(
    expression: str,
    anchor: datetime,
    tz: str | tzinfo | None = None,
) -> datetime:
    """First occurrence strictly after `anchor`, as an aware UTC datetime.

    Args:
        expression: Cron expression or simplified form.
        anchor: Reference instant. Naive values are taken as UTC.
        tz: Timezone the cron fields are interpreted in.

    Raises:
        InvalidCronExpression: If the expression is invalid or never fires.
    """
    trigger = build_trigger(expression, tz)
    if anchor.tzinfo is None:
        anchor = anchor.replace(tzinfo=timezone.utc)

    # Cron resolution is one minute; start from the next whole second so an
    # anchor that sits exactly on an occurrence is not returned again.
    start = anchor.replace(microsecond=0) + timedelta(seconds=1)
    next_fire = trigger.get_next_fire_time(None, start)
    if next_fire is None:
        raise InvalidCronExpression(f"Cron expression never fires: {expression}")
    return next_fire.astimezone(timezone.utc)


def next_run_after(
    expression: str,
    scheduled_for: datetime,
    now: datetime,
    tz: str | tzinfo | None = None,
) -> datetime:
    """Next due time for a job whose occurrence at `scheduled_for` was claimed.

    Anchoring at the later of the two instants means a job that fell behind
    skips the missed occurrences instead of replaying them.
    """
    return compute_next_run(expression, max(scheduled_for, now), tz)
