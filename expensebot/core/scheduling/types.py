"""Scheduling types — recurrence rules, the persisted execution queue, auth cache, errors."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, Field, field_validator

ScheduleInterval = Literal["daily", "weekly", "monthly", "custom"]
Weekday = Literal[
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"
]
QueueStatus = Literal["pending", "processing", "completed", "failed"]

# Shortest custom interval a rule may carry
MIN_CUSTOM_INTERVAL_MS = 5 * 60 * 1000


# ════════════════════════════════════════════════════════════
# RECURRENCE RULE
# ════════════════════════════════════════════════════════════


class ExecutionTime(BaseModel):
    """Wall-clock time of day in the rule's own timezone."""

    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class IntervalConfig(BaseModel):
    """Interval-specific payload; only the field matching the interval is read."""

    days_of_week: list[Weekday] | None = None
    day_of_month: Annotated[int, Field(ge=1, le=31)] | Literal["last"] | None = None
    custom_interval_ms: int | None = None

    @field_validator("custom_interval_ms")
    @classmethod
    def _min_interval(cls, v: int | None) -> int | None:
        if v is not None and v < MIN_CUSTOM_INTERVAL_MS:
            raise ValueError(
                f"Custom interval must be at least {MIN_CUSTOM_INTERVAL_MS} ms (5 minutes)"
            )
        return v


class RecurrenceRule(BaseModel):
    """User-configured schedule attached to a template.

    ``next_execution`` is a cached calculator result and is advisory only.
    """

    enabled: bool = False
    paused: bool = False
    paused_at: AwareDatetime | None = None
    pause_reason: str | None = None
    interval: ScheduleInterval = "daily"
    interval_config: IntervalConfig = Field(default_factory=IntervalConfig)
    execution_time: ExecutionTime
    start_date: AwareDatetime | None = None
    end_date: AwareDatetime | None = None
    next_execution: AwareDatetime | None = None

    @property
    def active(self) -> bool:
        return self.enabled and not self.paused


# ════════════════════════════════════════════════════════════
# EXECUTION QUEUE
# ════════════════════════════════════════════════════════════


def _new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


class QueuedExecution(BaseModel):
    """One scheduled attempt for a template — mirrors an entry of the persisted queue."""

    id: str = Field(default_factory=_new_execution_id)
    template_id: str
    scheduled_at: AwareDatetime
    retry_count: int = Field(default=0, ge=0)
    next_retry: AwareDatetime | None = None
    status: QueueStatus = "pending"
    finished_at: AwareDatetime | None = None


class ExecutionQueue(BaseModel):
    """The whole persisted queue. At most one entry per template."""

    executions: list[QueuedExecution] = Field(default_factory=list)
    last_processed: AwareDatetime | None = None

    def enqueue(self, template_id: str, scheduled_at: datetime) -> QueuedExecution:
        """Replace any entry for ``template_id`` with a fresh pending one."""
        self.remove(template_id)
        execution = QueuedExecution(template_id=template_id, scheduled_at=scheduled_at)
        self.executions.append(execution)
        return execution

    def remove(self, template_id: str) -> int:
        """Drop every entry for ``template_id``. Returns how many were removed."""
        before = len(self.executions)
        self.executions = [e for e in self.executions if e.template_id != template_id]
        return before - len(self.executions)

    def get(self, template_id: str) -> QueuedExecution | None:
        for execution in self.executions:
            if execution.template_id == template_id:
                return execution
        return None

    def due(self, now: datetime) -> list[QueuedExecution]:
        """Pending entries whose due time has elapsed, oldest first."""
        ready = [
            e for e in self.executions
            if e.status == "pending" and e.scheduled_at <= now
        ]
        return sorted(ready, key=lambda e: e.scheduled_at)

    def overdue(self, now: datetime, grace: timedelta) -> list[QueuedExecution]:
        """Pending entries missed by more than ``grace``."""
        cutoff = now - grace
        late = [
            e for e in self.executions
            if e.status == "pending" and e.scheduled_at < cutoff
        ]
        return sorted(late, key=lambda e: e.scheduled_at)

    def prune(self, cutoff: datetime) -> int:
        """Remove terminal entries that finished before ``cutoff``."""
        before = len(self.executions)
        self.executions = [
            e for e in self.executions
            if e.status not in ("completed", "failed")
            or (e.finished_at or e.scheduled_at) > cutoff
        ]
        return before - len(self.executions)


# ════════════════════════════════════════════════════════════
# AUTH CACHE + ERROR CLASSIFICATION
# ════════════════════════════════════════════════════════════


class AuthCacheEntry(BaseModel):
    is_valid: bool
    last_checked: AwareDatetime
    valid_until: AwareDatetime


class ErrorCategory(str, Enum):
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    SYSTEM = "system"


class CategorizedError(BaseModel):
    """Classifier output. Never persisted beyond an execution record's error summary."""

    category: ErrorCategory
    message: str
    retryable: bool
    retry_delay: timedelta | None = None  # explicit delay; None = exponential backoff
