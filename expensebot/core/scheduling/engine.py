"""SchedulingEngine — persisted execution queue driven by a single host timer.

Nothing lives in memory between wake-ups: every decision is made from the
queue document in the key-value store and the templates in the repository.
Due executions are processed one at a time within a wake-up.

Known limitation: queue writes are read-modify-write with last writer wins.
An execution's outcome is only written back if its entry is still in the
queue, so unscheduling (or rescheduling) a template while its execution is
in flight keeps the caller's change. Any other interleaving of
``schedule_template`` with a running pass may still lose an update.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from loguru import logger

from expensebot.core.config.schema import SchedulingConfig
from expensebot.core.expense.payload import build_expense_payload
from expensebot.core.scheduling.auth_cache import AuthenticationCache, TokenStore
from expensebot.core.scheduling.errors import (
    AuthenticationRequiredError,
    SchedulingNotEnabledError,
    TemplateNotFoundError,
)
from expensebot.core.scheduling.protocols import (
    ExpenseCreator,
    KeyValueStore,
    Notifier,
    TemplateStore,
)
from expensebot.core.scheduling.recurrence import next_fire_time
from expensebot.core.scheduling.retry import RetryPolicy
from expensebot.core.scheduling.timer import HostTimer, MasterTimerManager
from expensebot.core.scheduling.types import (
    CategorizedError,
    ErrorCategory,
    ExecutionQueue,
    QueuedExecution,
)
from expensebot.memory.models import (
    ExecutionError,
    ExecutionRecord,
    ExecutionStatus,
    Template,
)

if TYPE_CHECKING:
    from expensebot.core.config.schema import Config
    from expensebot.memory.store import MemoryStore

QUEUE_KEY = "expensebot.scheduling.queue"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulingEngine:
    """Coordinates recurrence, the execution queue, auth checks and retries.

    Public operations return booleans and log instead of raising. The one
    exception is :meth:`initialize`, which propagates a failure to create the
    host timer.
    """

    def __init__(
        self,
        store: KeyValueStore,
        templates: TemplateStore,
        client: ExpenseCreator,
        notifier: Notifier,
        timer: HostTimer,
        auth: AuthenticationCache,
        config: SchedulingConfig | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or SchedulingConfig()
        self.store = store
        self.templates = templates
        self.client = client
        self.notifier = notifier
        self.auth = auth
        self.retry = retry or RetryPolicy(max_retries=self.config.max_retries)
        self.clock = clock
        self.timer_manager = MasterTimerManager(
            timer,
            name=self.config.timer_name,
            period_minutes=self.config.timer_period_minutes,
        )
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        db: MemoryStore,
        timer: HostTimer,
        client: ExpenseCreator | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> SchedulingEngine:
        """Wire the engine to the SQLite store, the HTTP client and notifications."""
        from expensebot.core.expense.client import ExpenseClient
        from expensebot.core.notifications import NotificationManager
        from expensebot.memory.templates import TemplateRepository

        tokens = TokenStore(db, ttl=timedelta(hours=config.auth.token_ttl_hours), clock=clock)
        auth = AuthenticationCache(
            db, tokens.is_valid, ttl=timedelta(seconds=config.auth.cache_ttl_s), clock=clock,
        )
        if client is None:
            client = ExpenseClient(
                config.api.base_url,
                tokens.current,
                timezone=config.api.timezone,
                timeout=config.api.timeout_s,
            )
        return cls(
            store=db,
            templates=TemplateRepository(db),
            client=client,
            notifier=notifier or NotificationManager(db, config.notifications),
            timer=timer,
            auth=auth,
            config=config.scheduling,
            retry=RetryPolicy(config.retry, max_retries=config.scheduling.max_retries),
            clock=clock,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ── Lifecycle ────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Register the master timer, then recover executions missed while down."""
        if self._initialized:
            logger.info("Scheduling engine already initialized")
            return True

        logger.info("Initializing scheduling engine...")
        self.timer_manager.initialize(self.on_timer_fired)
        self._initialized = True
        await self.process_pending_on_startup()
        logger.info("Scheduling engine initialized")
        return True

    # ── Public operations ────────────────────────────────────

    def schedule_template(self, template_id: str) -> bool:
        """(Re)place the template's single queue entry at its next fire time."""
        try:
            template = self._require_template(template_id)
            rule = template.scheduling
            if rule is None or not rule.enabled:
                raise SchedulingNotEnabledError(template_id)

            next_at = next_fire_time(rule, self.clock())
            if next_at is None:
                raise SchedulingNotEnabledError(
                    template_id, "could not calculate next execution time"
                )

            queue = self._load_queue()
            execution = queue.enqueue(template_id, next_at)
            self._save_queue(queue)
            self._cache_next_execution(template, next_at)
            logger.info(
                f"Template {template_id} scheduled for {next_at.isoformat()} ({execution.id})"
            )
            return True
        except Exception as e:
            logger.error(f"Failed to schedule template {template_id}: {e}")
            return False

    def unschedule_template(self, template_id: str) -> bool:
        """Drop any queue entry for the template. Idempotent."""
        try:
            removed = self._remove_from_queue(template_id)
            logger.info(f"Template {template_id} unscheduled ({removed} entries removed)")
            return True
        except Exception as e:
            logger.error(f"Failed to unschedule template {template_id}: {e}")
            return False

    def pause_template(self, template_id: str, reason: str | None = None) -> bool:
        try:
            self._remove_from_queue(template_id)

            template = self._require_template(template_id)
            if template.scheduling is None:
                raise SchedulingNotEnabledError(template_id, "no recurrence rule")
            rule = template.scheduling.model_copy(update={
                "paused": True,
                "paused_at": self.clock(),
                "pause_reason": reason,
                "next_execution": None,
            })
            self.templates.update(template_id, {"scheduling": rule})
            logger.info(f"Template {template_id} paused")
            return True
        except Exception as e:
            logger.error(f"Failed to pause template {template_id}: {e}")
            return False

    def resume_template(self, template_id: str) -> bool:
        try:
            template = self._require_template(template_id)
            if template.scheduling is None or not template.scheduling.enabled:
                raise SchedulingNotEnabledError(template_id)

            rule = template.scheduling.model_copy(update={
                "paused": False, "paused_at": None, "pause_reason": None,
            })
            next_at = next_fire_time(rule, self.clock())
            rule.next_execution = next_at
            self.templates.update(template_id, {"scheduling": rule})

            if next_at is None:
                logger.warning(f"Template {template_id} resumed but has no upcoming execution")
                return True

            queue = self._load_queue()
            queue.enqueue(template_id, next_at)
            self._save_queue(queue)
            logger.info(f"Template {template_id} resumed, next run {next_at.isoformat()}")
            return True
        except Exception as e:
            logger.error(f"Failed to resume template {template_id}: {e}")
            return False

    def queue_snapshot(self) -> ExecutionQueue:
        return self._load_queue()

    # ── Wake-ups ─────────────────────────────────────────────

    async def on_timer_fired(self) -> None:
        """Master timer handler: run every pending entry that is due."""
        if not self._initialized:
            logger.info("Scheduling engine not initialized, skipping timer")
            return

        try:
            ready = self._load_queue().due(self.clock())
            if ready:
                logger.info(f"Processing {len(ready)} ready executions")
            else:
                logger.debug("No executions ready for processing")

            for execution in ready:
                await self.process_execution(execution)
            self._finish_pass(len(ready))
        except Exception as e:
            logger.error(f"Error processing master timer: {e}")

    async def process_pending_on_startup(self) -> None:
        """Run pending entries missed by more than the startup grace window."""
        try:
            overdue = self._load_queue().overdue(self.clock(), self.config.startup_grace)
            if not overdue:
                return
            logger.info(f"Found {len(overdue)} overdue executions, processing...")
            for execution in overdue:
                await self.process_execution(execution)
            self._finish_pass(len(overdue))
        except Exception as e:
            logger.error(f"Error processing pending executions: {e}")

    async def process_execution(self, execution: QueuedExecution) -> QueuedExecution:
        """Run one queue entry and persist its outcome. Returns the updated entry."""
        entry = execution.model_copy(deep=True)
        entry.status = "processing"
        started = self.clock()
        template: Template | None = None
        auth_rejected = False
        logger.info(f"Processing execution {entry.id} for template {entry.template_id}")

        try:
            if not await self.auth.validate():
                auth_rejected = True
                raise AuthenticationRequiredError()

            template = self.templates.get(entry.template_id)
            if template is None:
                raise TemplateNotFoundError(entry.template_id)
            if template.scheduling is None or not template.scheduling.active:
                raise SchedulingNotEnabledError(entry.template_id, "scheduling disabled or paused")

            payload = build_expense_payload(template, self.clock())
            result = await self.client.create_expense(payload)
            expense_id = _expense_id(result)
        except SchedulingNotEnabledError as e:
            return self._skip(entry, template, started, str(e))
        except Exception as e:
            return await self._fail(entry, template, e, started, auth_rejected)

        return await self._succeed(entry, template, expense_id, started)

    # ── Outcomes ─────────────────────────────────────────────

    async def _succeed(
        self, entry: QueuedExecution, template: Template, expense_id: str | None,
        started: datetime,
    ) -> QueuedExecution:
        now = self.clock()
        record = self._record(entry, "success", started, now, expense_id=expense_id)

        # The rule may have been paused or disabled during the remote call
        current = self._get_template_quietly(entry.template_id)
        rule = current.scheduling if current else None
        next_at = next_fire_time(rule, now) if rule else None

        entry.status = "completed"
        entry.finished_at = now
        requeued = self._commit(entry, next_at)
        self._write_back(entry.template_id, record, used_at=now, next_at=next_at, requeued=requeued)

        await self._notify(self.notifier.notify_success(
            "Scheduled Expense Created",
            f'Template "{template.name}" executed successfully',
            {"template_id": template.id, "template_name": template.name, "expense_id": expense_id},
        ))
        logger.info(f"Execution {entry.id} completed successfully (expense {expense_id})")
        return entry

    async def _fail(
        self, entry: QueuedExecution, template: Template | None, error: Exception,
        started: datetime, auth_rejected: bool = False,
    ) -> QueuedExecution:
        categorized = self.retry.classify(error)
        logger.error(
            f"Execution {entry.id} failed [{categorized.category.value}]: {categorized.message}"
        )

        if categorized.category is ErrorCategory.AUTHENTICATION:
            if not auth_rejected:
                # Failed after the cache said "valid"; force a real check next time
                self.auth.invalidate()
            await self._notify(self.notifier.notify_auth_required(
                metadata={"template_id": entry.template_id},
            ))

        if template is None:
            template = self._get_template_quietly(entry.template_id)

        now = self.clock()
        if self.retry.should_retry(entry.retry_count, categorized):
            delay = self.retry.backoff_delay(entry.retry_count, categorized)
            record = self._record(entry, "retry", started, now, error=categorized)
            entry.retry_count += 1
            entry.next_retry = now + delay
            entry.scheduled_at = entry.next_retry
            entry.status = "pending"
            logger.info(
                f"Scheduling retry {entry.retry_count} for execution {entry.id} "
                f"in {int(delay.total_seconds() * 1000)}ms"
            )
        else:
            record = self._record(entry, "failed", started, now, error=categorized)
            entry.status = "failed"
            entry.finished_at = now

        self._commit(entry)
        self._write_back(entry.template_id, record)

        if entry.status == "failed":
            name = template.name if template else entry.template_id
            await self._notify(self.notifier.notify_failure(
                "Scheduled Expense Failed",
                f'Template "{name}" failed: {categorized.message}',
                {
                    "template_id": entry.template_id,
                    "template_name": name,
                    "error_details": categorized.message,
                },
            ))
        return entry

    def _skip(
        self, entry: QueuedExecution, template: Template | None, started: datetime, reason: str,
    ) -> QueuedExecution:
        now = self.clock()
        logger.info(f"Execution {entry.id} skipped: {reason}")
        if template is not None:
            self._write_back(entry.template_id, self._record(entry, "skipped", started, now))
        entry.status = "completed"
        entry.finished_at = now
        self._commit(entry)
        return entry

    # ── History ──────────────────────────────────────────────

    def _record(
        self,
        entry: QueuedExecution,
        status: ExecutionStatus,
        started: datetime,
        now: datetime,
        expense_id: str | None = None,
        error: CategorizedError | None = None,
    ) -> ExecutionRecord:
        return ExecutionRecord(
            id=f"{entry.id}#{entry.retry_count}",
            scheduled_at=entry.scheduled_at,
            executed_at=now,
            status=status,
            expense_id=expense_id,
            error=ExecutionError(
                code=error.category.value, message=error.message, retriable=error.retryable,
            ) if error else None,
            retry_count=entry.retry_count,
            duration_ms=int((now - started).total_seconds() * 1000),
        )

    def _with_record(self, template: Template, record: ExecutionRecord) -> list[ExecutionRecord]:
        """Newest first, capped at ``history_limit``."""
        return [record, *template.execution_history][: self.config.history_limit]

    def _write_back(
        self,
        template_id: str,
        record: ExecutionRecord,
        used_at: datetime | None = None,
        next_at: datetime | None = None,
        requeued: bool = False,
    ) -> None:
        """Apply one run's outcome to the template as currently stored.

        Only history, usage counters and (when this run requeued the
        template) ``next_execution`` are touched; the rest of the rule is
        left as the caller last saved it.
        """
        try:
            current = self.templates.get(template_id)
            if current is None:
                return
            partial: dict[str, Any] = {
                "execution_history": self._with_record(current, record),
            }
            if used_at is not None:
                partial["metadata"] = current.metadata.model_copy(update={
                    "use_count": current.metadata.use_count + 1,
                    "scheduled_use_count": current.metadata.scheduled_use_count + 1,
                    "last_used": used_at,
                })
            if requeued and current.scheduling is not None:
                partial["scheduling"] = current.scheduling.model_copy(
                    update={"next_execution": next_at}
                )
            self.templates.update(template_id, partial)
        except Exception as e:
            logger.warning(f"Could not update history of template {template_id}: {e}")

    def _cache_next_execution(self, template: Template, next_at: datetime) -> None:
        rule = template.scheduling.model_copy(update={"next_execution": next_at})
        try:
            self.templates.update(template.id, {"scheduling": rule})
        except Exception as e:
            logger.warning(f"Could not cache next execution of template {template.id}: {e}")

    # ── Queue persistence ────────────────────────────────────

    def _load_queue(self) -> ExecutionQueue:
        data = self.store.get(QUEUE_KEY)
        return ExecutionQueue.model_validate(data) if data else ExecutionQueue()

    def _save_queue(self, queue: ExecutionQueue) -> None:
        self.store.set(QUEUE_KEY, queue.model_dump(mode="json"))

    def _remove_from_queue(self, template_id: str) -> int:
        queue = self._load_queue()
        removed = queue.remove(template_id)
        if removed:
            self._save_queue(queue)
        return removed

    def _commit(self, entry: QueuedExecution, next_at: datetime | None = None) -> bool:
        """Write one execution's outcome back, plus the template's next occurrence.

        Returns False when the entry left the queue while it was processing.
        """
        try:
            queue = self._load_queue()
            if not any(e.id == entry.id for e in queue.executions):
                logger.info(
                    f"Execution {entry.id} left the queue while processing; outcome not requeued"
                )
                return False
            queue.executions = [entry if e.id == entry.id else e for e in queue.executions]
            if next_at is not None:
                queue.enqueue(entry.template_id, next_at)
            self._save_queue(queue)
            return True
        except Exception as e:
            logger.error(f"Could not persist outcome of execution {entry.id}: {e}")
            return False

    def _finish_pass(self, processed: int) -> None:
        try:
            now = self.clock()
            queue = self._load_queue()
            pruned = queue.prune(now - self.config.retention)
            if processed or pruned:
                queue.last_processed = now
                self._save_queue(queue)
            if pruned:
                logger.debug(f"Pruned {pruned} finished executions")
        except Exception as e:
            logger.warning(f"Could not prune execution queue: {e}")

    # ── Helpers ──────────────────────────────────────────────

    def _require_template(self, template_id: str) -> Template:
        template = self.templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def _get_template_quietly(self, template_id: str) -> Template | None:
        try:
            return self.templates.get(template_id)
        except Exception as e:
            logger.warning(f"Could not load template {template_id}: {e}")
            return None

    async def _notify(self, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as e:
            logger.warning(f"Notification dispatch failed: {e}")


def _expense_id(result: dict[str, Any]) -> str | None:
    data = (result or {}).get("data") or {}
    expense_id = data.get("uuid") or data.get("id")
    return str(expense_id) if expense_id is not None else None
