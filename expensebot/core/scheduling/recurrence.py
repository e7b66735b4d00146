"""Recurrence calculator — pure (rule, now) -> next fire instant.

All wall-clock arithmetic happens in the rule's own timezone; the returned
instant is always UTC. No clock is read here.
"""

from __future__ import annotations

import calendar
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

from expensebot.core.scheduling.types import RecurrenceRule

WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)

_ONE_TICK = timedelta(microseconds=1)


def next_fire_time(rule: RecurrenceRule, reference_now: datetime) -> datetime | None:
    """Return the first instant strictly after ``reference_now`` at which ``rule`` fires.

    Returns None when the rule is disabled, paused, missing its
    interval-specific config, or when the next instant falls past ``end_date``.
    A ``start_date`` in the future moves the search window to start there.
    """
    if reference_now.tzinfo is None:
        raise ValueError("reference_now must be timezone-aware")
    if not rule.active:
        return None

    reference = reference_now
    if rule.start_date and rule.start_date > reference:
        # First instant at or after start_date
        reference = rule.start_date - _ONE_TICK

    fire = _CALCULATORS[rule.interval](rule, reference)
    if fire is None:
        return None
    if rule.end_date and fire > rule.end_date:
        return None
    return fire.astimezone(timezone.utc)


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


# ── Per-interval calculators ─────────────────────────────────


def _at(rule: RecurrenceRule, day: date) -> datetime:
    """``day`` at the rule's execution time, in the rule's zone."""
    t = rule.execution_time
    return datetime(day.year, day.month, day.day, t.hour, t.minute, tzinfo=t.zone)


def _local_today(rule: RecurrenceRule, reference: datetime) -> date:
    return reference.astimezone(rule.execution_time.zone).date()


def _daily(rule: RecurrenceRule, reference: datetime) -> datetime:
    today = _local_today(rule, reference)
    target = _at(rule, today)
    if target <= reference:
        target = _at(rule, today + timedelta(days=1))
    return target


def _weekly(rule: RecurrenceRule, reference: datetime) -> datetime | None:
    days = rule.interval_config.days_of_week
    if not days:
        return None
    wanted = {WEEKDAYS.index(d) for d in days}
    today = _local_today(rule, reference)

    # Offset 7 is today's weekday next week, reached only when today's slot passed
    for offset in range(8):
        day = today + timedelta(days=offset)
        if day.weekday() not in wanted:
            continue
        target = _at(rule, day)
        if target > reference:
            return target
    return None


def _monthly(rule: RecurrenceRule, reference: datetime) -> datetime | None:
    day_of_month = rule.interval_config.day_of_month
    if day_of_month is None:
        return None
    today = _local_today(rule, reference)
    year, month = today.year, today.month

    for _ in range(2):
        last = last_day_of_month(year, month)
        # Days past the end of a short month clamp to its last day
        day = last if day_of_month == "last" else min(day_of_month, last)
        target = _at(rule, date(year, month, day))
        if target > reference:
            return target
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return None


def _custom(rule: RecurrenceRule, reference: datetime) -> datetime | None:
    interval_ms = rule.interval_config.custom_interval_ms
    if not interval_ms:
        return None
    target = _at(rule, _local_today(rule, reference))
    if target > reference:
        return target
    # A window opening after today's slot starts the interval at start_date
    if rule.start_date is not None and rule.start_date > reference:
        return rule.start_date
    return reference + timedelta(milliseconds=interval_ms)


_CALCULATORS: dict[str, Callable[[RecurrenceRule, datetime], datetime | None]] = {
    "daily": _daily,
    "weekly": _weekly,
    "monthly": _monthly,
    "custom": _custom,
}
