"""Recurring expense scheduling."""

from expensebot.core.scheduling.errors import (
    AuthenticationRequiredError,
    SchedulingError,
    SchedulingNotEnabledError,
    TemplateNotFoundError,
)
from expensebot.core.scheduling.recurrence import next_fire_time
from expensebot.core.scheduling.retry import RetryPolicy
from expensebot.core.scheduling.timer import APSchedulerTimer, HostTimer, ManualTimer
from expensebot.core.scheduling.types import (
    CategorizedError,
    ErrorCategory,
    ExecutionQueue,
    ExecutionTime,
    IntervalConfig,
    QueuedExecution,
    RecurrenceRule,
)

__all__ = [
    "APSchedulerTimer",
    "AuthenticationRequiredError",
    "CategorizedError",
    "ErrorCategory",
    "ExecutionQueue",
    "ExecutionTime",
    "HostTimer",
    "IntervalConfig",
    "ManualTimer",
    "QueuedExecution",
    "RecurrenceRule",
    "RetryPolicy",
    "SchedulingError",
    "SchedulingNotEnabledError",
    "TemplateNotFoundError",
    "next_fire_time",
]
