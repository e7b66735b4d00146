"""Tests for expensebot.core.scheduling.engine."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from expensebot.core.config.schema import SchedulingConfig
from expensebot.core.expense.client import ExpenseAPIError
from expensebot.core.scheduling.auth_cache import AUTH_CACHE_KEY, AuthenticationCache
from expensebot.core.scheduling.engine import QUEUE_KEY, SchedulingEngine
from expensebot.core.scheduling.timer import HostTimer, ManualTimer
from expensebot.memory.templates import TemplateRepository

TIMER = "expensebot_master_scheduler"
OK = {"data": {"uuid": "exp_1"}}


@pytest.fixture
def repo(store):
    return TemplateRepository(store)


@pytest.fixture
def client():
    c = MagicMock()
    c.create_expense = AsyncMock(return_value=OK)
    return c


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def auth_check():
    return AsyncMock(return_value=True)


@pytest.fixture
def timer():
    return ManualTimer()


@pytest.fixture
def engine(store, repo, client, notifier, timer, auth_check, clock):
    auth = AuthenticationCache(store, auth_check, clock=clock)
    return SchedulingEngine(
        store=store,
        templates=repo,
        client=client,
        notifier=notifier,
        timer=timer,
        auth=auth,
        config=SchedulingConfig(),
        clock=clock,
    )


@pytest.fixture
def template(repo, make_template):
    """Daily 08:00 UTC, enabled. The clock starts at 07:00 UTC."""
    return repo.create(make_template())


async def _tick(engine, timer):
    if not engine.initialized:
        await engine.initialize()
    await timer.fire(TIMER)


# ── Lifecycle ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_initialize_registers_master_timer(engine, timer):
    assert await engine.initialize() is True
    assert await engine.initialize() is True
    assert list(timer.registrations) == [TIMER]
    assert engine.initialized


@pytest.mark.asyncio
async def test_initialize_propagates_timer_failure(store, repo, client, notifier, auth_check):
    host = MagicMock(spec=HostTimer)
    host.create.side_effect = RuntimeError("host refused")
    engine = SchedulingEngine(
        store, repo, client, notifier, host, AuthenticationCache(store, auth_check),
    )
    with pytest.raises(RuntimeError):
        await engine.initialize()
    assert not engine.initialized


@pytest.mark.asyncio
async def test_timer_ignored_before_initialize(engine, template, client, clock):
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await engine.on_timer_fired()

    client.create_expense.assert_not_awaited()


# ── schedule / unschedule ────────────────────────────────────


def test_schedule_template(engine, template, repo, clock):
    assert engine.schedule_template(template.id) is True

    entry = engine.queue_snapshot().get(template.id)
    assert entry.status == "pending"
    assert entry.scheduled_at == clock.now + timedelta(hours=1)
    assert repo.get(template.id).scheduling.next_execution == entry.scheduled_at


def test_schedule_is_idempotent(engine, template):
    engine.schedule_template(template.id)
    engine.schedule_template(template.id)

    queue = engine.queue_snapshot()
    assert [e.template_id for e in queue.executions] == [template.id]


def test_schedule_missing_or_disabled(engine, repo, make_template):
    assert engine.schedule_template("tpl_missing") is False

    disabled = repo.create(make_template(enabled=False))
    assert engine.schedule_template(disabled.id) is False

    unscheduled = repo.create(make_template())
    repo.update(unscheduled.id, {"scheduling": None})
    assert engine.schedule_template(unscheduled.id) is False
    assert engine.queue_snapshot().executions == []


def test_schedule_past_end_date(engine, repo, make_template, clock):
    template = repo.create(make_template(end_date=clock.now))
    assert engine.schedule_template(template.id) is False


def test_unschedule(engine, template):
    engine.schedule_template(template.id)
    assert engine.unschedule_template(template.id) is True
    assert engine.unschedule_template(template.id) is True
    assert engine.queue_snapshot().executions == []


def test_public_operations_do_not_raise(engine, template, store):
    store.set(QUEUE_KEY, {"executions": "corrupt"})
    assert engine.schedule_template(template.id) is False
    assert engine.unschedule_template(template.id) is False


# ── Execution ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_due_execution_succeeds(engine, timer, template, repo, client, notifier, clock):
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    client.create_expense.assert_awaited_once()
    payload = client.create_expense.await_args.args[0]
    assert payload.date == "2026-03-10T08:00:00.000Z"

    saved = repo.get(template.id)
    assert [r.status for r in saved.execution_history] == ["success"]
    assert saved.execution_history[0].expense_id == "exp_1"
    assert saved.metadata.scheduled_use_count == 1
    assert saved.metadata.last_used == clock.now

    queue = engine.queue_snapshot()
    assert len(queue.executions) == 1
    assert queue.executions[0].status == "pending"
    assert queue.executions[0].scheduled_at == clock.now + timedelta(days=1)
    assert saved.scheduling.next_execution == queue.executions[0].scheduled_at
    assert queue.last_processed == clock.now

    notifier.notify_success.assert_awaited_once()
    assert notifier.notify_success.await_args.args[2]["expense_id"] == "exp_1"


@pytest.mark.asyncio
async def test_not_yet_due_is_left_alone(engine, timer, template, client, clock):
    engine.schedule_template(template.id)
    clock.advance(minutes=59)

    await _tick(engine, timer)

    client.create_expense.assert_not_awaited()
    assert engine.queue_snapshot().get(template.id).status == "pending"


@pytest.mark.asyncio
async def test_network_failure_retries_then_succeeds(engine, timer, template, repo, client, clock):
    client.create_expense.side_effect = [ExpenseAPIError(0, "connection refused"), OK]
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    entry = engine.queue_snapshot().get(template.id)
    assert entry.status == "pending"
    assert entry.retry_count == 1
    assert entry.next_retry == clock.now + timedelta(seconds=30)
    assert entry.scheduled_at == entry.next_retry

    clock.advance(seconds=10)
    await _tick(engine, timer)
    assert client.create_expense.await_count == 1

    clock.advance(seconds=20)
    await _tick(engine, timer)
    assert client.create_expense.await_count == 2

    history = repo.get(template.id).execution_history
    assert [r.status for r in history] == ["success", "retry"]
    assert history[1].error.code == "network"


@pytest.mark.asyncio
async def test_retry_cap(engine, timer, template, repo, client, notifier, clock):
    client.create_expense.side_effect = ExpenseAPIError(500, "Internal Server Error")
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    for _ in range(6):
        await _tick(engine, timer)
        clock.advance(minutes=10)

    assert client.create_expense.await_count == 4
    entry = engine.queue_snapshot().get(template.id)
    assert entry.status == "failed"
    assert entry.retry_count == 3
    assert entry.finished_at is not None

    history = repo.get(template.id).execution_history
    assert [r.status for r in history] == ["failed", "retry", "retry", "retry"]
    assert history[0].error.retriable is True
    notifier.notify_failure.assert_awaited_once()


@pytest.mark.asyncio
async def test_backoff_delays_between_attempts(engine, timer, template, client, clock):
    client.create_expense.side_effect = ExpenseAPIError(500, "Internal Server Error")
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)
    first = engine.queue_snapshot().get(template.id)
    assert first.scheduled_at - clock.now == timedelta(seconds=1)

    clock.advance(seconds=1)
    await _tick(engine, timer)
    second = engine.queue_snapshot().get(template.id)
    assert second.scheduled_at - clock.now == timedelta(seconds=2)


@pytest.mark.asyncio
async def test_validation_failure_is_terminal(engine, timer, template, repo, client, notifier, clock):
    client.create_expense.side_effect = ExpenseAPIError(400, "Invalid merchant")
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    entry = engine.queue_snapshot().get(template.id)
    assert entry.status == "failed"
    assert entry.retry_count == 0
    assert repo.get(template.id).execution_history[0].error.code == "validation"
    notifier.notify_failure.assert_awaited_once()


# ── Authentication ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_auth_invalid_skips_remote_and_requeues(
    engine, timer, template, repo, client, notifier, auth_check, clock
):
    auth_check.return_value = False
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    client.create_expense.assert_not_awaited()
    notifier.notify_auth_required.assert_awaited_once()
    notifier.notify_failure.assert_not_awaited()

    entry = engine.queue_snapshot().get(template.id)
    assert entry.status == "pending"
    assert entry.retry_count == 1
    assert entry.scheduled_at == clock.now + timedelta(minutes=1)
    assert repo.get(template.id).execution_history[0].error.code == "authentication"


@pytest.mark.asyncio
async def test_auth_check_is_cached_within_ttl(engine, timer, repo, make_template, auth_check, clock):
    for name in ("A", "B", "C"):
        engine.schedule_template(repo.create(make_template(name)).id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    auth_check.assert_awaited_once()


@pytest.mark.asyncio
async def test_remote_auth_rejection_invalidates_cache(
    engine, timer, template, store, client, notifier, clock
):
    client.create_expense.side_effect = ExpenseAPIError(401, "Unauthorized")
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    assert store.get(AUTH_CACHE_KEY) is None
    notifier.notify_auth_required.assert_awaited_once()
    assert engine.queue_snapshot().get(template.id).retry_count == 1


# ── Cancellation, pause, skip ────────────────────────────────


@pytest.mark.asyncio
async def test_unscheduled_template_is_not_processed(engine, timer, template, client, clock):
    engine.schedule_template(template.id)
    engine.unschedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    client.create_expense.assert_not_awaited()
    assert engine.queue_snapshot().executions == []


@pytest.mark.asyncio
async def test_unschedule_while_in_flight_is_kept(engine, timer, template, client, clock):
    async def create(payload):
        engine.unschedule_template(template.id)
        return OK

    client.create_expense.side_effect = create
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    client.create_expense.assert_awaited_once()
    assert engine.queue_snapshot().get(template.id) is None


@pytest.mark.asyncio
async def test_pause_while_in_flight_is_kept(engine, timer, template, repo, client, clock):
    async def create(payload):
        engine.pause_template(template.id, "vacation")
        return OK

    client.create_expense.side_effect = create
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    saved = repo.get(template.id)
    assert saved.scheduling.paused is True
    assert saved.scheduling.pause_reason == "vacation"
    assert saved.scheduling.next_execution is None
    assert [r.status for r in saved.execution_history] == ["success"]
    assert saved.metadata.scheduled_use_count == 1
    assert engine.queue_snapshot().get(template.id) is None


@pytest.mark.asyncio
async def test_disable_while_in_flight_is_kept(engine, timer, template, repo, client, clock):
    async def create(payload):
        rule = repo.get(template.id).scheduling.model_copy(
            update={"enabled": False, "next_execution": None}
        )
        repo.update(template.id, {"scheduling": rule})
        engine.unschedule_template(template.id)
        return OK

    client.create_expense.side_effect = create
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    saved = repo.get(template.id)
    assert saved.scheduling.enabled is False
    assert saved.scheduling.next_execution is None
    assert engine.queue_snapshot().get(template.id) is None


@pytest.mark.asyncio
async def test_disable_while_in_flight_without_unschedule(engine, timer, template, repo, client, clock):
    """The entry stays queued but the next occurrence is not enqueued."""
    async def create(payload):
        rule = repo.get(template.id).scheduling.model_copy(update={"enabled": False})
        repo.update(template.id, {"scheduling": rule})
        return OK

    client.create_expense.side_effect = create
    engine.schedule_template(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    saved = repo.get(template.id)
    assert saved.scheduling.enabled is False
    assert saved.scheduling.next_execution is None
    assert engine.queue_snapshot().get(template.id).status == "completed"


def test_pause_and_resume(engine, template, repo):
    engine.schedule_template(template.id)

    assert engine.pause_template(template.id, "vacation") is True
    assert engine.queue_snapshot().get(template.id) is None
    paused = repo.get(template.id).scheduling
    assert paused.paused and paused.pause_reason == "vacation"
    assert paused.paused_at is not None
    assert engine.schedule_template(template.id) is False

    assert engine.resume_template(template.id) is True
    resumed = repo.get(template.id).scheduling
    assert not resumed.paused and resumed.pause_reason is None
    entry = engine.queue_snapshot().get(template.id)
    assert entry.scheduled_at == resumed.next_execution


def test_pause_missing_template(engine):
    assert engine.pause_template("tpl_missing") is False
    assert engine.resume_template("tpl_missing") is False


@pytest.mark.asyncio
async def test_disabled_since_enqueue_is_skipped(engine, timer, template, repo, client, notifier, clock):
    engine.schedule_template(template.id)
    rule = repo.get(template.id).scheduling.model_copy(update={"enabled": False})
    repo.update(template.id, {"scheduling": rule})
    clock.advance(hours=1)

    await _tick(engine, timer)

    client.create_expense.assert_not_awaited()
    notifier.notify_success.assert_not_awaited()
    notifier.notify_failure.assert_not_awaited()
    assert engine.queue_snapshot().get(template.id).status == "completed"
    assert [r.status for r in repo.get(template.id).execution_history] == ["skipped"]


@pytest.mark.asyncio
async def test_deleted_template_fails_without_retry(engine, timer, template, repo, client, notifier, clock):
    engine.schedule_template(template.id)
    repo.delete(template.id)
    clock.advance(hours=1)

    await _tick(engine, timer)

    client.create_expense.assert_not_awaited()
    entry = engine.queue_snapshot().get(template.id)
    assert entry.status == "failed"
    assert entry.retry_count == 0
    notifier.notify_failure.assert_awaited_once()


# ── Startup recovery + ordering + pruning ────────────────────


@pytest.mark.asyncio
async def test_startup_processes_overdue(engine, template, client, clock):
    engine.schedule_template(template.id)
    clock.advance(hours=3)

    await engine.initialize()

    client.create_expense.assert_awaited_once()
    entry = engine.queue_snapshot().get(template.id)
    assert entry.scheduled_at == clock.now.replace(hour=8) + timedelta(days=1)


@pytest.mark.asyncio
async def test_startup_leaves_recent_entries_for_the_timer(engine, template, client, clock):
    engine.schedule_template(template.id)
    clock.advance(hours=1, minutes=3)

    await engine.initialize()

    client.create_expense.assert_not_awaited()


@pytest.mark.asyncio
async def test_due_entries_processed_oldest_first(engine, timer, repo, make_template, client, clock):
    late = make_template("Late", execution_time={"hour": 7, "minute": 30})
    late.expense_data.merchant_amount = 30.0
    early = make_template("Early", execution_time={"hour": 7, "minute": 10})
    early.expense_data.merchant_amount = 10.0
    engine.schedule_template(repo.create(late).id)
    engine.schedule_template(repo.create(early).id)
    clock.advance(hours=1)

    seen = []

    async def create(payload):
        seen.append(payload.merchant_amount)
        return OK

    client.create_expense.side_effect = create
    await _tick(engine, timer)

    assert seen == [10.0, 30.0]


@pytest.mark.asyncio
async def test_finished_entries_are_pruned(engine, timer, template, client, clock):
    client.create_expense.side_effect = ExpenseAPIError(400, "Invalid merchant")
    engine.schedule_template(template.id)
    clock.advance(hours=1)
    await _tick(engine, timer)
    assert engine.queue_snapshot().get(template.id).status == "failed"

    clock.advance(hours=23)
    await _tick(engine, timer)
    assert engine.queue_snapshot().get(template.id) is not None

    clock.advance(hours=2)
    await _tick(engine, timer)
    assert engine.queue_snapshot().executions == []


@pytest.mark.asyncio
async def test_history_is_capped(store, repo, client, notifier, timer, auth_check, clock, make_template):
    engine = SchedulingEngine(
        store, repo, client, notifier, timer,
        AuthenticationCache(store, auth_check, clock=clock),
        config=SchedulingConfig(history_limit=2),
        clock=clock,
    )
    template = repo.create(make_template())
    engine.schedule_template(template.id)

    for _ in range(3):
        clock.advance(days=1)
        await _tick(engine, timer)

    assert client.create_expense.await_count == 3
    assert len(repo.get(template.id).execution_history) == 2


@pytest.mark.asyncio
async def test_from_config_wires_store(tmp_path, make_template):
    from expensebot.core.config.schema import Config
    from expensebot.memory.store import MemoryStore

    config = Config(database={"path": str(tmp_path / "e.db")})
    db = MemoryStore(config.database.path)
    engine = SchedulingEngine.from_config(config, db, ManualTimer())
    template = engine.templates.create(make_template())

    assert engine.schedule_template(template.id) is True
    assert db.get(QUEUE_KEY)["executions"][0]["template_id"] == template.id
