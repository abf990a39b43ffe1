"""
Proofgate Command Line Interface.

This module provides the CLI entry point for the verification gate.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from proofgate.version import __version__

console = Console()

STAGE_STYLES = {
    "completed": "green",
    "escalated": "yellow",
    "timed_out": "red",
    "failed": "red",
}


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.run(coro)


@click.group()
@click.version_option(version=__version__, prog_name="proofgate")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True),
    help="Path to configuration file",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Proofgate: evidence-based verification of automated test runs.

    Runs tests through an execution service, checks the evidence for red
    flags, verifies claimed results independently and drives an escalating
    repair loop when a result cannot be trusted.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _load_config(ctx: click.Context):
    """Load configuration from --config, PROOFGATE_CONFIG or defaults."""
    from proofgate.config import ConfigurationError, load_config, load_config_from_env

    config_path = ctx.obj.get("config_path")
    try:
        cfg = load_config(config_path) if config_path else load_config_from_env()
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    _configure_logging(cfg, ctx.obj.get("verbose", False))
    return cfg


def _configure_logging(cfg, verbose: bool) -> None:
    level = logging.DEBUG if verbose or cfg.debug else getattr(logging, cfg.logging.level.value)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if cfg.logging.file:
        handlers.append(logging.FileHandler(cfg.logging.file, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    logging.getLogger("proofgate").setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_orchestrator(cfg, backend=None):
    from proofgate.orchestrator import TestOrchestrator

    return TestOrchestrator(backend, cfg)


def _build_backend(cfg, backend_url: str | None):
    from proofgate.orchestrator import HttpExecutionBackend

    backend_config = cfg.backend
    if backend_url:
        backend_config = backend_config.model_copy(update={"base_url": backend_url})
    if not backend_config.base_url:
        console.print(
            "[red]Error:[/red] No execution service configured. "
            "Pass --backend-url, set backend.base_url or PROOFGATE_BACKEND_URL."
        )
        sys.exit(1)
    return HttpExecutionBackend(backend_config)


def _stage_text(stage: str) -> str:
    style = STAGE_STYLES.get(stage, "cyan")
    return f"[{style}]{stage}[/{style}]"


def _print_progress(state) -> None:
    last = state.history[-1] if state.history else None
    if last is None:
        return
    reason = f" [dim]({last.reason})[/dim]" if last.reason else ""
    console.print(
        f"  [dim]{state.run_id}[/dim] {last.from_stage.value} -> {_stage_text(last.to_stage.value)}"
        f"{reason}"
    )


def _display_state(state) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Run", state.run_id)
    table.add_row("Target", state.target)
    table.add_row("Stage", _stage_text(state.stage.value))
    table.add_row("Status", state.status.value)
    table.add_row("Executions", str(state.execution_attempt))
    table.add_row("Fix Attempts", str(state.retry_count))
    table.add_row("Cost", f"${state.total_cost_usd:.4f}")
    if state.current_change_ref != state.target:
        table.add_row("Change", state.current_change_ref)
    if state.flagged_for_review:
        table.add_row("Review", "[yellow]flagged for human review[/yellow]")
    if state.escalation_reason:
        table.add_row("Escalation", state.escalation_reason.value)
    if state.terminal_reason:
        table.add_row("Reason", state.terminal_reason)
    if state.error:
        table.add_row("Error", f"[red]{state.error}[/red]")
    console.print(table)


def _display_report(report) -> None:
    console.print(Panel(f"[bold blue]Run {report.run_id}[/bold blue]", title="Report"))
    _display_state(report.state)
    console.print()

    if report.verification:
        v = report.verification
        console.print(
            f"[bold]Verification[/bold] (attempt {v.attempt}): "
            f"confidence {v.confidence_score}, {v.recommendation.value}"
        )
        if v.reasoning:
            console.print(f"  [dim]{v.reasoning}[/dim]")
        console.print()

    if report.red_flags and report.red_flags.flags:
        flag_table = Table(title="Red Flags", show_header=True)
        flag_table.add_column("Severity", style="red")
        flag_table.add_column("Check", style="cyan")
        flag_table.add_column("Description")
        for flag in report.red_flags.flags:
            flag_table.add_row(flag.severity.value, flag.check, flag.description)
        console.print(flag_table)
        console.print()

    if report.root_cause:
        rca = report.root_cause
        console.print(
            f"[bold]Root Cause[/bold]: {rca.category.value}/{rca.complexity.value}: {rca.root_cause}"
        )
        console.print()

    if report.fix_attempts:
        fix_table = Table(title="Fix Attempts", show_header=True)
        fix_table.add_column("#", style="dim")
        fix_table.add_column("Tier", style="cyan")
        fix_table.add_column("Model")
        fix_table.add_column("Strategy", style="magenta")
        fix_table.add_column("Result")
        fix_table.add_column("Cost", justify="right")
        for attempt in report.fix_attempts:
            result = "[green]fixed[/green]" if attempt.success else "[red]failed[/red]"
            fix_table.add_row(
                str(attempt.attempt_number),
                attempt.tier.value,
                attempt.model_used,
                attempt.strategy.value,
                result,
                f"${attempt.cost_usd:.4f}",
            )
        console.print(fix_table)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@main.command()
@click.argument("run_id")
@click.argument("target")
@click.option(
    "--criterion",
    "-k",
    "criteria",
    multiple=True,
    help="Acceptance criterion (repeatable)",
)
@click.option("--backend-url", type=str, default=None, help="Execution service URL")
@click.option(
    "--metrics-file",
    type=click.Path(),
    default=None,
    help="Write a metrics summary to this JSON file",
)
@click.pass_context
def verify(
    ctx: click.Context,
    run_id: str,
    target: str,
    criteria: tuple[str, ...],
    backend_url: str | None,
    metrics_file: str | None,
) -> None:
    """Verify a code change and wait for a terminal outcome.

    RUN_ID identifies the run; TARGET is the code-change reference the
    execution service understands.
    """
    cfg = _load_config(ctx)
    backend = _build_backend(cfg, backend_url)

    console.print(
        Panel(
            f"[bold blue]Proofgate v{__version__}[/bold blue]\n"
            f"Verifying {target}",
            title="Proofgate",
        )
    )

    try:
        state = run_async(_run_verification(cfg, backend, run_id, target, criteria, metrics_file))
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if ctx.obj.get("verbose"):
            console.print_exception()
        sys.exit(1)

    console.print()
    _display_state(state)
    if state.stage.value != "completed":
        sys.exit(2)


async def _run_verification(cfg, backend, run_id, target, criteria, metrics_file):
    from proofgate.models import StartResult

    async with backend:
        orchestrator = _build_orchestrator(cfg, backend)
        orchestrator.on_progress(_print_progress)
        result = await orchestrator.start_verification(run_id, target, criteria)
        if result == StartResult.ALREADY_EXISTS:
            console.print(f"[yellow]Run {run_id} already exists[/yellow]")
            if not await orchestrator.resume(run_id):
                return orchestrator.get_status(run_id)
        state = await orchestrator.wait(run_id)
        await orchestrator.shutdown()

    if metrics_file:
        orchestrator.metrics.export_json(metrics_file)
        console.print(f"[dim]Metrics written to {metrics_file}[/dim]")
    return state


@main.command()
@click.argument("run_id", required=False)
@click.option("--backend-url", type=str, default=None, help="Execution service URL")
@click.pass_context
def resume(ctx: click.Context, run_id: str | None, backend_url: str | None) -> None:
    """Resume interrupted runs.

    Resumes RUN_ID, or every run that has not reached a terminal stage.
    """
    cfg = _load_config(ctx)
    backend = _build_backend(cfg, backend_url)

    try:
        states = run_async(_run_resume(cfg, backend, run_id))
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if ctx.obj.get("verbose"):
            console.print_exception()
        sys.exit(1)

    if not states:
        console.print("[dim]No incomplete runs found.[/dim]")
        return
    for state in states:
        console.print()
        _display_state(state)


async def _run_resume(cfg, backend, run_id):
    async with backend:
        orchestrator = _build_orchestrator(cfg, backend)
        orchestrator.on_progress(_print_progress)
        if run_id:
            run_ids = [run_id] if await orchestrator.resume(run_id) else []
        else:
            run_ids = await orchestrator.resume_incomplete()
        await orchestrator.wait_all()
        await orchestrator.shutdown()
    return [orchestrator.get_status(r) for r in run_ids]


@main.command()
@click.argument("run_id", required=False)
@click.pass_context
def status(ctx: click.Context, run_id: str | None) -> None:
    """Show the state of a run, or list all runs."""
    from proofgate.errors import RunNotFoundError

    cfg = _load_config(ctx)
    orchestrator = _build_orchestrator(cfg)

    if run_id:
        try:
            _display_state(orchestrator.get_status(run_id))
        except RunNotFoundError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        return

    from proofgate.orchestrator import WorkflowStateStore
    from proofgate.storage import create_stores

    _, records = create_stores(cfg.storage.backend.value, cfg.storage.base_dir)
    states = WorkflowStateStore(records).load_all()
    if not states:
        console.print("[dim]No runs found.[/dim]")
        return

    table = Table(title="Runs", show_header=True)
    table.add_column("Run", style="cyan")
    table.add_column("Stage")
    table.add_column("Executions", justify="right")
    table.add_column("Fixes", justify="right")
    table.add_column("Started", style="dim")
    for state in sorted(states, key=lambda s: s.started_at):
        table.add_row(
            state.run_id,
            _stage_text(state.stage.value),
            str(state.execution_attempt),
            str(state.retry_count),
            state.started_at.isoformat()[:19],
        )
    console.print(table)


@main.command()
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def report(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Show the review package for a run."""
    from proofgate.errors import RunNotFoundError

    cfg = _load_config(ctx)
    orchestrator = _build_orchestrator(cfg)
    try:
        run_report = orchestrator.get_report(run_id)
    except RunNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if as_json:
        click.echo(run_report.model_dump_json(indent=2))
    else:
        _display_report(run_report)


@main.group()
def learnings() -> None:
    """Inspect and move the fix learning store."""


def _learning_store(ctx: click.Context):
    from proofgate.learning import FixLearningStore
    from proofgate.storage import create_stores

    cfg = _load_config(ctx)
    _, records = create_stores(cfg.storage.backend.value, cfg.storage.base_dir)
    return FixLearningStore(records, cfg.learning)


@learnings.command("stats")
@click.pass_context
def learnings_stats(ctx: click.Context) -> None:
    """Show statistics over reliable learnings."""
    store = _learning_store(ctx)
    stats = run_async(store.stats())

    console.print(
        Panel(
            f"Reliable patterns: {stats.total_patterns}\n"
            f"Average success rate: {stats.avg_success_rate:.0%}",
            title="Fix Learnings",
        )
    )
    if stats.top_strategies:
        table = Table(show_header=True)
        table.add_column("Strategy", style="magenta")
        table.add_column("Success Rate", justify="right")
        for row in stats.top_strategies:
            table.add_row(str(row["strategy"]), f"{row['success_rate']:.0%}")
        console.print(table)


@learnings.command("export")
@click.argument("output", type=click.Path())
@click.pass_context
def learnings_export(ctx: click.Context, output: str) -> None:
    """Export every learning row to a JSON file."""
    store = _learning_store(ctx)
    rows = run_async(store.export_learnings())
    Path(output).write_text(json.dumps(rows, indent=2), encoding="utf-8")
    console.print(f"[green]Exported {len(rows)} learning(s) to {output}[/green]")


@learnings.command("import")
@click.argument("source", type=click.Path(exists=True))
@click.pass_context
def learnings_import(ctx: click.Context, source: str) -> None:
    """Merge learning rows from a JSON file."""
    store = _learning_store(ctx)
    try:
        rows = json.loads(Path(source).read_text(encoding="utf-8"))
        count = run_async(store.import_learnings(rows))
    except (json.JSONDecodeError, ValueError) as e:
        console.print(f"[red]Error:[/red] Invalid learnings file: {e}")
        sys.exit(1)
    console.print(f"[green]Imported {count} learning(s) from {source}[/green]")


@main.command()
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["json", "dot", "summary"]),
    default="summary",
    help="Output format",
)
@click.option("--output", "-o", type=click.Path(), default=None, help="Write to a file")
@click.pass_context
def graph(ctx: click.Context, output_format: str, output: str | None) -> None:
    """Export the failure/strategy knowledge graph."""
    from proofgate.learning import KnowledgeGraph

    store = _learning_store(ctx)
    knowledge = run_async(KnowledgeGraph.from_store(store))

    if output_format == "summary":
        stats = knowledge.stats()
        console.print(Panel("[bold blue]Knowledge Graph[/bold blue]", title="Graph"))
        for key, value in stats.items():
            console.print(f"  {key}: {value}")
        top = knowledge.top_strategies()
        if top:
            table = Table(title="Top Strategies", show_header=True)
            table.add_column("Strategy", style="magenta")
            table.add_column("Success Rate", justify="right")
            table.add_column("Uses", justify="right")
            for ranking in top:
                table.add_row(
                    ranking.strategy,
                    f"{ranking.avg_success:.0%}",
                    str(ranking.uses),
                )
            console.print(table)
        return

    content = knowledge.to_dot() if output_format == "dot" else knowledge.to_json()
    if output:
        Path(output).write_text(content, encoding="utf-8")
        console.print(f"[green]Graph written to {output}[/green]")
    else:
        click.echo(content)


@main.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Display current configuration."""
    cfg = _load_config(ctx)

    console.print(Panel("[bold blue]Proofgate Configuration[/bold blue]", title="Configuration"))

    console.print("[bold]Orchestrator[/bold]")
    console.print(f"  Max Concurrent Runs: {cfg.orchestrator.max_concurrent_runs}")
    console.print(f"  Default Stage Timeout: {cfg.orchestrator.default_stage_timeout}s")
    console.print(f"  Stage Retry Limit: {cfg.orchestrator.stage_retry_limit}")
    console.print()

    console.print("[bold]Verification[/bold]")
    console.print(f"  Accept Threshold: {cfg.verification.accept_threshold}")
    console.print(f"  Review Threshold: {cfg.verification.review_threshold}")
    console.print(f"  Verifier Tier: {cfg.verification.verifier_tier.value}")
    console.print()

    console.print("[bold]Retry[/bold]")
    console.print(f"  Max Attempts: {cfg.retry.max_attempts}")
    budget = cfg.retry.max_total_cost_usd
    console.print(f"  Cost Budget: {'none' if budget is None else f'${budget:.2f}'}")
    console.print()

    console.print("[bold]Models[/bold]")
    for tier, model in cfg.models.tiers.items():
        console.print(f"  {tier.value}: {model.name} (${model.cost_per_million_tokens}/M tokens)")
    console.print()

    console.print("[bold]Storage[/bold]")
    console.print(f"  Backend: {cfg.storage.backend.value}")
    console.print(f"  Directory: {cfg.storage.base_dir}")
    console.print()

    console.print("[bold]Execution Service[/bold]")
    console.print(f"  URL: {cfg.backend.base_url or '[yellow]not configured[/yellow]'}")
    console.print(f"  Timeout: {cfg.backend.timeout}s")


if __name__ == "__main__":
    main()
