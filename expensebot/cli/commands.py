"""expensebot CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from expensebot import __version__

app = typer.Typer(
    name="expensebot",
    help="expensebot - recurring expense scheduler",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"expensebot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """expensebot - recurring expense scheduler."""


def _open():
    from expensebot.core.config.loader import load_config
    from expensebot.memory.store import MemoryStore

    config = load_config()
    return config, MemoryStore(config.database.path)


def _engine(config, db, timer=None):
    from expensebot.core.scheduling.engine import SchedulingEngine
    from expensebot.core.scheduling.timer import ManualTimer

    return SchedulingEngine.from_config(config, db, timer or ManualTimer())


def _fmt(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M %Z") if dt else "-"


# ════════════════════════════════════════════════════════════
# run — long-lived scheduler
# ════════════════════════════════════════════════════════════


@app.command()
def run() -> None:
    """Start the scheduler and keep it running (APScheduler master timer)."""
    from expensebot.core.scheduling.timer import APSchedulerTimer

    config, db = _open()

    async def _serve() -> None:
        timer = APSchedulerTimer()
        engine = _engine(config, db, timer)
        timer.start()
        try:
            await engine.initialize()
            console.print(
                f"[green]expensebot running[/green] "
                f"(timer {engine.timer_manager.name}, every "
                f"{config.scheduling.timer_period_minutes} min)"
            )
            await asyncio.Event().wait()
        finally:
            timer.shutdown()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\nBye!")


# ════════════════════════════════════════════════════════════
# tick — one wake-up (system cron driven hosts)
# ════════════════════════════════════════════════════════════


@app.command()
def tick() -> None:
    """Run a single wake-up: recover missed runs, then process due executions."""
    from expensebot.core.scheduling.timer import ManualTimer

    config, db = _open()
    timer = ManualTimer()
    engine = _engine(config, db, timer)

    async def _once() -> None:
        await engine.initialize()
        await timer.fire(engine.timer_manager.name)

    asyncio.run(_once())

    queue = engine.queue_snapshot()
    pending = sum(1 for e in queue.executions if e.status == "pending")
    console.print(f"[green]Tick complete.[/green] {pending} pending executions")


# ════════════════════════════════════════════════════════════
# status — config + queue info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration, authentication and queue status."""
    from expensebot.core.scheduling.auth_cache import TokenStore
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    engine = _engine(config, db)
    queue = engine.queue_snapshot()
    templates = TemplateRepository(db).list_all()
    scheduled = [t for t in templates if t.scheduling and t.scheduling.active]

    table = Table(title="expensebot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("DB Path", config.database.path)
    table.add_row("API", config.api.base_url)
    table.add_row("Token", "valid" if TokenStore(db).current() else "missing or expired")
    table.add_row("Templates", f"{len(templates)} ({len(scheduled)} scheduled)")
    for state in ("pending", "completed", "failed"):
        count = sum(1 for e in queue.executions if e.status == state)
        table.add_row(f"Queue {state}", str(count))
    table.add_row("Last processed", _fmt(queue.last_processed))
    table.add_row("Telegram", "on" if config.telegram_enabled else "off")

    console.print(table)


# ════════════════════════════════════════════════════════════
# queue — execution queue (sub-command group)
# ════════════════════════════════════════════════════════════

queue_app = typer.Typer(help="Inspect the execution queue")
app.add_typer(queue_app, name="queue")


@queue_app.command("list")
def queue_list() -> None:
    """List queued executions."""
    config, db = _open()
    queue = _engine(config, db).queue_snapshot()

    if not queue.executions:
        console.print("[dim]Execution queue is empty.[/dim]")
        return

    table = Table(title="Execution Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Template", style="blue")
    table.add_column("Scheduled", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Retries", style="white")

    for e in sorted(queue.executions, key=lambda e: e.scheduled_at):
        table.add_row(e.id, e.template_id, _fmt(e.scheduled_at), e.status, str(e.retry_count))

    console.print(table)


# ════════════════════════════════════════════════════════════
# template — template management (sub-command group)
# ════════════════════════════════════════════════════════════

template_app = typer.Typer(help="Manage expense templates")
app.add_typer(template_app, name="template")


@template_app.command("add")
def template_add(
    path: Path = typer.Argument(help="YAML or JSON file describing the template"),
) -> None:
    """Create a template from a file; schedules it if its rule is enabled."""
    import yaml
    from pydantic import ValidationError

    from expensebot.memory.models import Template
    from expensebot.memory.templates import TemplateRepository

    if not path.exists():
        console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(code=1)

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    try:
        template = Template.model_validate(data)
    except ValidationError as e:
        console.print(f"[red]Invalid template:[/red]\n{e}")
        raise typer.Exit(code=1)

    config, db = _open()
    repo = TemplateRepository(db)
    if repo.get(template.id):
        console.print(f"[yellow]Template already exists:[/yellow] {template.id}")
        raise typer.Exit(code=1)

    repo.create(template)
    console.print(f"[green]Template created:[/green] {template.id} ({template.name})")

    if template.scheduling and template.scheduling.active:
        if _engine(config, db).schedule_template(template.id):
            console.print(f"  [dim]Scheduled ({template.scheduling.interval})[/dim]")
        else:
            console.print("  [yellow]Could not schedule template[/yellow]")


@template_app.command("list")
def template_list() -> None:
    """List templates and their schedules."""
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    templates = TemplateRepository(db).list_all()

    if not templates:
        console.print("[dim]No templates found.[/dim]")
        return

    table = Table(title="Templates")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Amount", style="white")
    table.add_column("Schedule", style="yellow")
    table.add_column("State", style="green")
    table.add_column("Next run", style="dim")

    for t in templates:
        rule = t.scheduling
        if rule is None:
            schedule, state, next_run = "-", "-", "-"
        else:
            schedule = f"{rule.interval} {rule.execution_time.hour:02d}:{rule.execution_time.minute:02d}"
            state = "paused" if rule.paused else ("enabled" if rule.enabled else "disabled")
            next_run = _fmt(rule.next_execution)
        amount = f"{t.expense_data.merchant_amount:.2f} {t.expense_data.merchant_currency}"
        table.add_row(t.id, t.name, amount, schedule, state, next_run)

    console.print(table)


@template_app.command("show")
def template_show(
    template_id: str = typer.Argument(help="Template ID"),
) -> None:
    """Print a template as JSON."""
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    template = TemplateRepository(db).get(template_id)
    if template is None:
        console.print(f"[red]Template not found:[/red] {template_id}")
        raise typer.Exit(code=1)
    console.print_json(template.model_dump_json(exclude={"execution_history"}))


@template_app.command("remove")
def template_remove(
    template_id: str = typer.Argument(help="Template ID to remove"),
) -> None:
    """Unschedule and delete a template."""
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    _engine(config, db).unschedule_template(template_id)
    if TemplateRepository(db).delete(template_id):
        console.print(f"[green]Removed template:[/green] {template_id}")
    else:
        console.print(f"[red]Template not found:[/red] {template_id}")
        raise typer.Exit(code=1)


@template_app.command("schedule")
def template_schedule(
    template_id: str = typer.Argument(help="Template ID"),
) -> None:
    """Enable the template's recurrence rule and queue its next run."""
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    repo = TemplateRepository(db)
    template = repo.get(template_id)
    if template is None or template.scheduling is None:
        console.print(f"[red]Template not found or has no schedule:[/red] {template_id}")
        raise typer.Exit(code=1)

    if not template.scheduling.enabled:
        repo.update(template_id, {
            "scheduling": template.scheduling.model_copy(update={"enabled": True}),
        })

    if not _engine(config, db).schedule_template(template_id):
        console.print(f"[red]Could not schedule:[/red] {template_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Scheduled:[/green] {template_id}")


@template_app.command("unschedule")
def template_unschedule(
    template_id: str = typer.Argument(help="Template ID"),
) -> None:
    """Disable the template's recurrence rule and drop its queued run."""
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    repo = TemplateRepository(db)
    template = repo.get(template_id)
    if template is not None and template.scheduling is not None:
        repo.update(template_id, {
            "scheduling": template.scheduling.model_copy(
                update={"enabled": False, "next_execution": None}
            ),
        })

    _engine(config, db).unschedule_template(template_id)
    console.print(f"[green]Unscheduled:[/green] {template_id}")


@template_app.command("pause")
def template_pause(
    template_id: str = typer.Argument(help="Template ID"),
    reason: str | None = typer.Option(None, "--reason", "-r", help="Why it is paused"),
) -> None:
    """Pause a scheduled template."""
    config, db = _open()
    if not _engine(config, db).pause_template(template_id, reason):
        console.print(f"[red]Could not pause:[/red] {template_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Paused:[/green] {template_id}")


@template_app.command("resume")
def template_resume(
    template_id: str = typer.Argument(help="Template ID"),
) -> None:
    """Resume a paused template."""
    config, db = _open()
    if not _engine(config, db).resume_template(template_id):
        console.print(f"[red]Could not resume:[/red] {template_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Resumed:[/green] {template_id}")


@template_app.command("history")
def template_history(
    template_id: str = typer.Argument(help="Template ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of records"),
) -> None:
    """Show a template's recent scheduled executions."""
    from expensebot.memory.templates import TemplateRepository

    config, db = _open()
    template = TemplateRepository(db).get(template_id)
    if template is None:
        console.print(f"[red]Template not found:[/red] {template_id}")
        raise typer.Exit(code=1)

    if not template.execution_history:
        console.print("[dim]No executions yet.[/dim]")
        return

    table = Table(title=f"History: {template.name}")
    table.add_column("Executed", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Expense", style="cyan")
    table.add_column("Retries", style="white")
    table.add_column("Error", style="red")

    for r in template.execution_history[:limit]:
        table.add_row(
            _fmt(r.executed_at),
            r.status,
            r.expense_id or "-",
            str(r.retry_count),
            r.error.message if r.error else "",
        )

    console.print(table)


# ════════════════════════════════════════════════════════════
# auth — API token (sub-command group)
# ════════════════════════════════════════════════════════════

auth_app = typer.Typer(help="Manage the API token")
app.add_typer(auth_app, name="auth")


def _auth_parts(config, db):
    from datetime import timedelta

    from expensebot.core.scheduling.auth_cache import AuthenticationCache, TokenStore

    tokens = TokenStore(db, ttl=timedelta(hours=config.auth.token_ttl_hours))
    cache = AuthenticationCache(
        db, tokens.is_valid, ttl=timedelta(seconds=config.auth.cache_ttl_s)
    )
    return tokens, cache


@auth_app.command("set-token")
def auth_set_token(
    token: str = typer.Argument(help="Bearer token for the expense API"),
) -> None:
    """Store a new API token."""
    config, db = _open()
    tokens, cache = _auth_parts(config, db)
    try:
        tokens.save(token)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    cache.invalidate()
    console.print("[green]Token saved.[/green]")


@auth_app.command("clear")
def auth_clear() -> None:
    """Forget the stored API token."""
    config, db = _open()
    tokens, cache = _auth_parts(config, db)
    tokens.clear()
    cache.invalidate()
    console.print("[green]Token cleared.[/green]")


@auth_app.command("status")
def auth_status() -> None:
    """Show whether a usable token is stored."""
    config, db = _open()
    tokens, _ = _auth_parts(config, db)
    info = tokens.info()

    if not info:
        console.print("[yellow]No token stored.[/yellow]")
        return

    valid = tokens.current() is not None
    table = Table(title="API token")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Valid", str(valid))
    table.add_row("Captured", info.get("captured_at", "-"))
    table.add_row("Expires", info.get("expires_at", "-"))
    console.print(table)


# ════════════════════════════════════════════════════════════
# notifications — delivered notifications (sub-command group)
# ════════════════════════════════════════════════════════════

notifications_app = typer.Typer(help="Notification history")
app.add_typer(notifications_app, name="notifications")


@notifications_app.command("list")
def notifications_list(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of notifications"),
) -> None:
    """List recent notifications."""
    config, db = _open()
    items = db.get_notifications(limit)

    if not items:
        console.print("[dim]No notifications.[/dim]")
        return

    table = Table(title="Notifications")
    table.add_column("When", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Title", style="blue")
    table.add_column("Message", style="white")

    for n in items:
        table.add_row(n["created_at"], n["kind"], n["title"], n["message"])

    console.print(table)


if __name__ == "__main__":
    app()
