"""Command-line interface for mailrules."""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from mailrules import __version__
from mailrules.config import Settings, load_settings
from mailrules.cron import InvalidCronExpression, compute_next_run
from mailrules.models import (
    AutomationJob,
    ExecutedRuleStatus,
    ScheduledActionStatus,
    utc_now,
)
from mailrules.service.state import AutomationState

app = typer.Typer(
    name="mailrules",
    help="Email rule matching, delayed actions and recurring automation jobs.",
    no_args_is_help=True,
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    "APPLIED": "green",
    "DONE": "green",
    "PENDING": "yellow",
    "APPLYING": "cyan",
    "EXECUTING": "cyan",
    "PROCESSING": "cyan",
    "ERROR": "red",
    "FAILED": "red",
    "REJECTED": "magenta",
    "CANCELLED": "dim",
    "SKIPPED": "dim",
}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"mailrules version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Email rule automation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
    )


# ─── Helper Functions ───────────────────────────────────────────────────────


def _error_with_help(ctx: typer.Context, message: str) -> None:
    """Print error message followed by relevant help text, then exit."""
    console.print(f"[red]Error: {message}[/red]\n")
    console.print(ctx.get_help())
    raise typer.Exit(1)


def _get_state(settings: Settings) -> AutomationState:
    settings.ensure_dirs()
    assert settings.db_path is not None
    return AutomationState(settings.db_path, settings.db_busy_timeout)


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _require_account(ctx: typer.Context, settings: Settings, account: str) -> None:
    if account not in settings.imap_accounts:
        state = _get_state(settings)
        if state.get_account(account) is None:
            _error_with_help(ctx, f"Unknown account: {account}")


# ─── Rule Commands ──────────────────────────────────────────────────────────


rules_app = typer.Typer(help="Manage rules", no_args_is_help=True)
app.add_typer(rules_app, name="rules")


@rules_app.command("list")
def rules_list(
    account: Annotated[str, typer.Argument(help="Account id")],
    all_rules: Annotated[bool, typer.Option("--all", "-a", help="Include disabled rules")] = False,
) -> None:
    """List an account's rules in matching order."""
    state = _get_state(load_settings())
    rules = state.list_rules(account, enabled_only=not all_rules)

    if not rules:
        console.print("[yellow]No rules found.[/yellow]")
        return

    table = Table(title=f"Rules for {account}")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Name", style="cyan")
    table.add_column("Match")
    table.add_column("Actions")
    table.add_column("Automate", width=8)
    table.add_column("Enabled", width=7)

    for rule in rules:
        match = []
        if rule.from_pattern:
            match.append(f"from: {rule.from_pattern}")
        if rule.to_pattern:
            match.append(f"to: {rule.to_pattern}")
        if rule.subject_pattern:
            match.append(f"subject: {rule.subject_pattern}")
        if rule.body_pattern:
            match.append(f"body: {rule.body_pattern}")
        if rule.has_ai_instructions:
            match.append("AI")
        actions = ", ".join(
            f"{a.type.value}" + (f" (+{a.delay_in_minutes}m)" if a.is_delayed else "")
            for a in rule.actions
        )
        table.add_row(
            rule.id[:8],
            rule.name,
            f" {rule.conditional_operator.value} ".join(match) or "-",
            actions or "-",
            "[green]Yes[/green]" if rule.can_automate else "No",
            "[green]Yes[/green]" if rule.enabled else "[red]No[/red]",
        )

    console.print(table)


@rules_app.command("import")
def rules_import(
    ctx: typer.Context,
    account: Annotated[str, typer.Argument(help="Account id")],
    path: Annotated[Path, typer.Argument(help="YAML rules file")],
) -> None:
    """Create or update rules from a YAML file."""
    from mailrules.rules_file import import_rules

    settings = load_settings()
    if not path.exists():
        _error_with_help(ctx, f"File not found: {path}")

    state = _get_state(settings)
    if state.get_account(account) is None:
        from mailrules.models import Account

        email = settings.imap_accounts[account].username if account in settings.imap_accounts else account
        state.save_account(Account(id=account, email=email))

    try:
        rules = import_rules(path, account, state)
    except ValueError as e:
        _error_with_help(ctx, f"Invalid rules file: {e}")

    console.print(f"[green]Imported {len(rules)} rules for {account}.[/green]")


@rules_app.command("show")
def rules_show(
    ctx: typer.Context,
    rule_id: Annotated[str, typer.Argument(help="Rule ID")],
) -> None:
    """Show a rule with its actions and learned patterns."""
    state = _get_state(load_settings())
    rule = state.get_rule(rule_id)
    if not rule:
        _error_with_help(ctx, f"Rule not found: {rule_id}")

    console.print(Panel(f"[bold]{rule.name}[/bold]  [dim]{rule.id}[/dim]"))
    console.print(f"[bold]Account:[/bold] {rule.account_id}")
    console.print(f"[bold]Enabled:[/bold] {'Yes' if rule.enabled else 'No'}")
    console.print(f"[bold]Operator:[/bold] {rule.conditional_operator.value}")
    console.print(f"[bold]Automate:[/bold] {'Yes' if rule.automate else 'No'}"
                  + (" [yellow](requires approval)[/yellow]" if rule.requires_approval else ""))
    console.print(f"[bold]Run on threads:[/bold] {'Yes' if rule.run_on_threads else 'No'}")

    for label, value in (
        ("From", rule.from_pattern),
        ("To", rule.to_pattern),
        ("Subject", rule.subject_pattern),
        ("Body", rule.body_pattern),
        ("Instructions", rule.instructions),
    ):
        if value:
            console.print(f"[bold]{label}:[/bold] {value}")

    if rule.category_filter_type:
        console.print(
            f"[bold]Categories ({rule.category_filter_type.value}):[/bold] "
            f"{', '.join(rule.category_filters)}"
        )

    if rule.conditions:
        console.print("\n[bold]Conditions:[/bold]")
        for condition in rule.conditions:
            console.print(f"  - {condition.model_dump(exclude_none=True)}")

    console.print("\n[bold]Actions:[/bold]")
    for i, action in enumerate(rule.actions, 1):
        delay = f" after {action.delay_in_minutes} min" if action.is_delayed else ""
        console.print(f"  {i}. {action.type.value}{delay} {action.params() or ''}")

    patterns = state.get_learned_patterns([rule.id])[rule.id]
    if patterns:
        console.print("\n[bold]Learned patterns:[/bold]")
        for pattern in patterns:
            kind = "[red]exclude[/red]" if pattern.exclude else "include"
            console.print(f"  - {pattern.type.value} {pattern.value!r} ({kind})")


# ─── Processing Commands ────────────────────────────────────────────────────


@app.command("process")
def process(
    ctx: typer.Context,
    account: Annotated[str, typer.Argument(help="Account id")],
    message_id: Annotated[str, typer.Argument(help="Provider message id, e.g. INBOX:1234")],
) -> None:
    """Run the rules over one message."""
    settings = load_settings()
    _require_account(ctx, settings, account)

    from mailrules.service.daemon import AutomationService

    service = AutomationService(settings)

    async def _process() -> None:
        service.queue.start()
        try:
            provider = service.provider_for(account)
            email = await provider.get_message(message_id)
            if email is None:
                console.print(f"[red]Message not found: {message_id}[/red]")
                raise typer.Exit(1)

            account_record = service.state.get_account(account)
            assert account_record is not None
            executed = await service.runner_for(account).process_email(account_record, email)
        finally:
            await service.queue.shutdown()
            for provider in service.providers.values():
                await provider.disconnect()

        console.print(f"[bold]Executed rule:[/bold] {executed.id}")
        console.print(f"[bold]Status:[/bold] {_styled(executed.status.value)}")
        console.print(f"[bold]Reason:[/bold] {executed.reason}")

    try:
        asyncio.run(_process())
    except LookupError as e:
        _error_with_help(ctx, str(e))


# ─── Automation Job Commands ────────────────────────────────────────────────


jobs_app = typer.Typer(help="Manage recurring automation jobs", no_args_is_help=True)
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    account: Annotated[str | None, typer.Option(help="Filter by account")] = None,
) -> None:
    """List automation jobs."""
    state = _get_state(load_settings())
    jobs = state.list_automation_jobs(account_id=account)

    if not jobs:
        console.print("[yellow]No automation jobs.[/yellow]")
        return

    table = Table(title="Automation Jobs")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Account")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Schedule")
    table.add_column("Next run", width=19)
    table.add_column("Enabled", width=7)

    for job in jobs:
        table.add_row(
            job.id[:8],
            job.account_id,
            job.name or "-",
            job.job_type,
            job.cron_expression,
            job.next_run_at.strftime("%Y-%m-%d %H:%M:%S"),
            "[green]Yes[/green]" if job.enabled else "[red]No[/red]",
        )

    console.print(table)


@jobs_app.command("add")
def jobs_add(
    ctx: typer.Context,
    account: Annotated[str, typer.Argument(help="Account id")],
    cron: Annotated[str, typer.Argument(help="Cron expression, e.g. '0 9 * * 1' or '@every 30m'")],
    job_type: Annotated[str, typer.Option("--type", "-t", help="Job type")] = "activity_summary",
    name: Annotated[str, typer.Option(help="Display name")] = "",
    prompt: Annotated[str | None, typer.Option(help="Prompt passed to the job")] = None,
) -> None:
    """Add a recurring automation job."""
    settings = load_settings()
    _require_account(ctx, settings, account)

    try:
        next_run = compute_next_run(cron, utc_now(), settings.automation.timezone)
    except InvalidCronExpression as e:
        _error_with_help(ctx, str(e))

    state = _get_state(settings)
    job = state.save_automation_job(
        AutomationJob(
            id=str(uuid.uuid4()),
            account_id=account,
            name=name,
            job_type=job_type,
            cron_expression=cron,
            next_run_at=next_run,
            prompt=prompt,
        )
    )
    console.print(f"[green]Added job {job.id[:8]}[/green], first run at {next_run.isoformat()}")


def _set_job_enabled(ctx: typer.Context, job_id: str, enabled: bool) -> None:
    settings = load_settings()
    state = _get_state(settings)
    job = state.get_automation_job(job_id)
    if not job:
        _error_with_help(ctx, f"Job not found: {job_id}")

    next_run = None
    if enabled and not job.enabled:
        # Re-enabled jobs resume from now instead of replaying missed runs
        next_run = compute_next_run(job.cron_expression, utc_now(), settings.automation.timezone)
    state.set_automation_job_enabled(job_id, enabled, next_run_at=next_run)
    console.print(f"[green]Job {job_id[:8]} {'enabled' if enabled else 'disabled'}.[/green]")


@jobs_app.command("enable")
def jobs_enable(
    ctx: typer.Context,
    job_id: Annotated[str, typer.Argument(help="Job ID")],
) -> None:
    """Enable an automation job."""
    _set_job_enabled(ctx, job_id, True)


@jobs_app.command("disable")
def jobs_disable(
    ctx: typer.Context,
    job_id: Annotated[str, typer.Argument(help="Job ID")],
) -> None:
    """Disable an automation job."""
    _set_job_enabled(ctx, job_id, False)


@jobs_app.command("runs")
def jobs_runs(
    job_id: Annotated[str | None, typer.Argument(help="Job ID")] = None,
    limit: Annotated[int, typer.Option(help="Max runs to show")] = 20,
) -> None:
    """Show recent automation job runs."""
    state = _get_state(load_settings())
    runs = state.list_automation_job_runs(job_id=job_id, limit=limit)

    if not runs:
        console.print("[yellow]No runs found.[/yellow]")
        return

    table = Table(title="Automation Job Runs")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Job", style="dim", width=8)
    table.add_column("Scheduled for", width=19)
    table.add_column("Status")
    table.add_column("Result")

    for run in runs:
        table.add_row(
            run.id[:8],
            run.job_id[:8],
            run.scheduled_for.strftime("%Y-%m-%d %H:%M:%S"),
            _styled(run.status.value),
            run.error or run.output or "-",
        )

    console.print(table)


# ─── Scheduler Commands ─────────────────────────────────────────────────────


scheduler_app = typer.Typer(help="Automation job scheduler", no_args_is_help=True)
app.add_typer(scheduler_app, name="scheduler")


@scheduler_app.command("tick")
def scheduler_tick(
    wait: Annotated[float, typer.Option(help="Seconds to wait for queued runs")] = 60.0,
) -> None:
    """Claim due jobs once and run them.

    Safe to invoke from cron on several machines at the same time.
    """
    from mailrules.service.daemon import AutomationService

    service = AutomationService(load_settings())
    results = asyncio.run(service.run_once(wait_seconds=wait))

    console.print("\n[bold cyan]Scheduler Results:[/bold cyan]")
    for key in ("due", "claimed", "queued", "skipped", "failed"):
        console.print(f"  {key.capitalize()}: {results[key]}")
    if not results["drained"]:
        console.print("[yellow]Some queued work did not finish before the timeout.[/yellow]")


# ─── Scheduled Action Commands ──────────────────────────────────────────────


scheduled_app = typer.Typer(help="Manage delayed actions", no_args_is_help=True)
app.add_typer(scheduled_app, name="scheduled")


@scheduled_app.command("list")
def scheduled_list(
    ctx: typer.Context,
    account: Annotated[str | None, typer.Option(help="Filter by account")] = None,
    status: Annotated[str | None, typer.Option(help="Filter by status")] = "PENDING",
    limit: Annotated[int, typer.Option(help="Max entries to show")] = 50,
) -> None:
    """List scheduled actions."""
    status_filter = None
    if status:
        try:
            status_filter = ScheduledActionStatus(status.upper())
        except ValueError:
            valid = ", ".join(s.value for s in ScheduledActionStatus)
            _error_with_help(ctx, f"Unknown status: {status}. Valid statuses: {valid}")

    state = _get_state(load_settings())
    actions = state.list_scheduled_actions(account_id=account, status=status_filter, limit=limit)

    if not actions:
        console.print("[yellow]No scheduled actions found.[/yellow]")
        return

    table = Table(title="Scheduled Actions")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Message")
    table.add_column("Action", style="cyan")
    table.add_column("Scheduled for", width=19)
    table.add_column("Status")
    table.add_column("Retries", width=7)
    table.add_column("Note")

    for action in actions:
        table.add_row(
            action.id[:8],
            action.message_id,
            action.action.type.value,
            action.scheduled_for.strftime("%Y-%m-%d %H:%M:%S"),
            _styled(action.status.value),
            str(action.retry_count),
            action.error_message or "-",
        )

    console.print(table)


@scheduled_app.command("cancel")
def scheduled_cancel(
    ctx: typer.Context,
    scheduled_action_id: Annotated[str, typer.Argument(help="Scheduled action ID")],
) -> None:
    """Cancel a delayed action that has not started."""
    from mailrules.service.daemon import AutomationService

    service = AutomationService(load_settings())
    if service.scheduled_actions.cancel(scheduled_action_id, reason="Cancelled from CLI"):
        console.print(f"[green]Cancelled {scheduled_action_id}.[/green]")
        return

    scheduled = service.state.get_scheduled_action(scheduled_action_id)
    if scheduled is None:
        _error_with_help(ctx, f"Scheduled action not found: {scheduled_action_id}")
    console.print(f"[yellow]Cannot cancel: action is {scheduled.status.value}.[/yellow]")
    raise typer.Exit(1)


# ─── History Commands ───────────────────────────────────────────────────────


@app.command("history")
def history(
    ctx: typer.Context,
    account: Annotated[str | None, typer.Option(help="Filter by account")] = None,
    status: Annotated[str | None, typer.Option(help="Filter by status")] = None,
    limit: Annotated[int, typer.Option(help="Max entries to show")] = 20,
) -> None:
    """Show recent rule executions."""
    status_filter = None
    if status:
        try:
            status_filter = ExecutedRuleStatus(status.upper())
        except ValueError:
            valid = ", ".join(s.value for s in ExecutedRuleStatus)
            _error_with_help(ctx, f"Unknown status: {status}. Valid statuses: {valid}")

    state = _get_state(load_settings())
    records = state.list_executed_rules(account_id=account, status=status_filter, limit=limit)

    if not records:
        console.print("[yellow]No executed rules found.[/yellow]")
        return

    rule_names: dict[str, str] = {}
    table = Table(title="Rule History")
    table.add_column("ID", style="dim", width=8)
    table.add_column("When", width=19)
    table.add_column("Message")
    table.add_column("Rule", style="cyan")
    table.add_column("Status")
    table.add_column("Reason")

    for record in records:
        rule_name = "-"
        if record.rule_id:
            if record.rule_id not in rule_names:
                rule = state.get_rule(record.rule_id)
                rule_names[record.rule_id] = rule.name if rule else "(deleted)"
            rule_name = rule_names[record.rule_id]
        table.add_row(
            record.id[:8],
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.message_id,
            rule_name,
            _styled(record.status.value),
            record.reason.replace("\n", " | "),
        )

    console.print(table)


# ─── Service Commands ───────────────────────────────────────────────────────


@app.command("serve")
def serve() -> None:
    """Run the background service in the foreground.

    Delivers delayed actions and polls for due automation jobs.
    """
    settings = load_settings()

    if not settings.service.enabled:
        console.print("[yellow]Service is disabled in configuration.[/yellow]")
        console.print("Set 'service.enabled: true' in config.yaml to enable.")
        raise typer.Exit(1)

    from mailrules.service.daemon import AutomationService

    service = AutomationService(settings)
    console.print("[cyan]Starting mailrules service in foreground...[/cyan]")
    console.print("Press Ctrl+C to stop.\n")
    asyncio.run(service.start())


@app.command("status")
def status() -> None:
    """Show stored counts per status."""
    state = _get_state(load_settings())
    stats = state.get_stats()

    console.print("[bold cyan]mailrules status[/bold cyan]\n")
    console.print(f"  Rules: {stats['rules']}")
    console.print(f"  Enabled automation jobs: {stats['automation_jobs']}")
    for table, title in (
        ("executed_rules", "Executed rules"),
        ("scheduled_actions", "Scheduled actions"),
        ("automation_job_runs", "Automation job runs"),
    ):
        if stats[table]:
            console.print(f"\n[bold]{title}:[/bold]")
            for state_name, count in sorted(stats[table].items()):
                console.print(f"    - {_styled(state_name)}: {count}")
