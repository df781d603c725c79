"""
Cron-style recurrence rules.

Standard 5-field expressions (minute, hour, day of month, month, day of week)
evaluated in UTC with croniter. Occurrences are computed from the previous
*scheduled* time, not from when the handler finished, so long-running handlers
do not drift the schedule.
"""

from datetime import datetime

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from taskqueue.constants import MissedRunPolicy
from taskqueue.errors import InvalidScheduleError
from taskqueue.utils import ensure_utc


def validate_cron(rule: str) -> str:
    """
    Check that ``rule`` is a usable 5-field cron expression.

    Returns:
        The normalized rule.

    Raises:
        InvalidScheduleError: If the rule cannot be parsed.
    """
    normalized = " ".join(rule.split())
    if len(normalized.split(" ")) != 5:
        raise InvalidScheduleError(f"Invalid cron expression (expected 5 fields): {rule!r}")
    if not croniter.is_valid(normalized):
        raise InvalidScheduleError(f"Invalid cron expression: {rule!r}")
    return normalized


def _after(rule: str, moment: datetime) -> datetime:
    try:
        return ensure_utc(croniter(rule, ensure_utc(moment)).get_next(datetime))
    except (CroniterBadCronError, CroniterBadDateError) as e:
        raise InvalidScheduleError(f"Cannot evaluate cron expression {rule!r}: {e}") from e


def first_occurrence(rule: str, now: datetime) -> datetime:
    """First occurrence strictly after ``now``."""
    return _after(rule, now)


def next_occurrence(
    rule: str,
    previous: datetime,
    now: datetime,
    policy: MissedRunPolicy = MissedRunPolicy.SKIP,
) -> datetime:
    """
    Next occurrence after the previous scheduled run.

    If that occurrence has already passed (the handler overran one or more
    intervals), SKIP drops the missed occurrences and returns the first one
    after ``now``; CATCH_UP returns it anyway so missed runs execute one at a
    time. The result is always strictly later than ``previous``.
    """
    candidate = _after(rule, previous)
    if policy == MissedRunPolicy.SKIP and candidate <= now:
        candidate = _after(rule, now)
    return candidate
