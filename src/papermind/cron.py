"""Cron expression evaluation for instance scan schedules."""

from datetime import datetime, timezone

from croniter import croniter


class ScheduleConfigError(ValueError):
    """Raised when an instance's cron expression cannot be evaluated."""


def _now() -> datetime:
    """Current UTC time. Wrapper for testability."""
    return datetime.now(timezone.utc)


def calculate_next_scan_time(cron_expression: str, base: datetime | None = None) -> datetime:
    """
    Return the next time matching cron_expression strictly after base.

    Accepts standard 5-field expressions and 6-field expressions with a
    leading seconds field (`sec min hour dom mon dow`). base defaults to
    now; the result is aware UTC.
    """
    expression = (cron_expression or "").strip()
    if not expression:
        raise ScheduleConfigError("Empty cron expression")
    if len(expression.split()) not in (5, 6):
        raise ScheduleConfigError(f"Invalid cron expression: {cron_expression!r}")

    if base is None:
        base = _now()
    elif base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)

    try:
        cron = croniter(
            expression, base.astimezone(timezone.utc), second_at_beginning=True,
        )
        next_time = cron.get_next(datetime)
    except (ValueError, KeyError) as e:
        raise ScheduleConfigError(f"Invalid cron expression {cron_expression!r}: {e}") from e

    return next_time.astimezone(timezone.utc)
