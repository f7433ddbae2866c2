"""
REPOSCOUT command line interface.

Usage:
    reposcout discover
    reposcout schedule
    reposcout tiers 1 --limit 20
    reposcout batch start tier1
    reposcout batch status batch_20250101_120000_ab12cd34
"""

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import Settings, load_settings
from .errors import BatchNotFoundError, ReposcoutError
from .logging_config import configure_logging
from .service import BATCH_TARGETS, ScoutService


console = Console()


def _run(ctx: click.Context, action: Callable[[ScoutService], Awaitable[Any]]) -> Any:
    """Run one service action inside a fresh event loop"""
    settings: Settings = ctx.obj["settings"]

    async def runner():
        async with ScoutService(settings) as service:
            return await action(service)

    try:
        return asyncio.run(runner())
    except BatchNotFoundError as e:
        console.print(f"[bold red]{e}[/bold red]")
        sys.exit(2)
    except ReposcoutError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="REPOSCOUT")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str], json_logs: bool):
    """
    REPOSCOUT - Repository Discovery and Analysis Scheduler

    Discovers repositories, keeps them tiered, and runs analysis batches.
    """
    try:
        settings = load_settings(config_path)
    except ReposcoutError as e:
        raise click.ClickException(str(e))

    configure_logging(log_level or settings.log_level, json_logs or settings.log_json)
    ctx.obj = {"settings": settings}


@cli.command()
@click.pass_context
def discover(ctx: click.Context):
    """Run the search strategies and add new repositories to the tiers"""
    counts = _run(ctx, lambda service: service.discover())

    console.print(
        f"[green]Discovery complete:[/green] {counts['created']} new, "
        f"{counts['updated']} refreshed, {counts['filtered']} filtered"
    )
    if counts.get("failed_queries"):
        console.print(f"[yellow]{counts['failed_queries']} search queries failed[/yellow]")


@cli.command()
@click.pass_context
def schedule(ctx: click.Context):
    """Run one time-boxed scan pass over due repositories"""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("[cyan]Scanning due repositories...", total=None)
        result = _run(ctx, lambda service: service.run_scheduler())
        progress.update(task, description="[green]Scan pass complete!")

    table = Table(title="Scan Pass")
    table.add_column("Tier", style="cyan")
    table.add_column("Processed", style="green", justify="right")
    for tier, count in result["processedCounts"].items():
        table.add_row(tier, str(count))
    console.print(table)

    console.print(
        f"Rate limited: {result['rateLimited']}  Failed: {result['failed']}  "
        f"Unscheduled: {result['unscheduled']}  "
        f"Elapsed: {result['elapsedSeconds']}s"
    )
    if result["budgetExhausted"]:
        console.print("[yellow]Time budget exhausted; remaining items stay due for the next pass[/yellow]")


@cli.command()
@click.pass_context
def rebalance(ctx: click.Context):
    """Re-tier the whole population"""
    counts = _run(ctx, lambda service: service.rebalance())
    console.print(
        f"[green]Rebalanced:[/green] tier1={counts['tier1']} tier2={counts['tier2']} tier3={counts['tier3']}"
    )


@cli.command()
@click.argument("tier", type=click.IntRange(1, 3))
@click.option("--limit", default=50, type=int, help="Maximum rows to show (default: 50)")
@click.pass_context
def tiers(ctx: click.Context, tier: int, limit: int):
    """List the repositories of one tier, most urgent first"""
    records = _run(ctx, lambda service: service.list_tier(tier, limit=limit))

    table = Table(title=f"Tier {tier}")
    table.add_column("Repository", style="cyan", no_wrap=True)
    table.add_column("Stars", justify="right")
    table.add_column("Growth/day", justify="right")
    table.add_column("Engagement", justify="right")
    table.add_column("Priority", justify="right", style="green")
    table.add_column("Next scan", style="yellow")

    for record in records:
        table.add_row(
            record.item_id,
            str(record.stars),
            f"{record.growth_velocity:.2f}",
            f"{record.engagement_score:.1f}",
            str(record.scan_priority),
            record.next_scan_due.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.pass_context
def limits(ctx: click.Context):
    """Show rate limiter buckets"""
    stats = _run(ctx, _limits)

    table = Table(title="Rate Limits")
    table.add_column("Resource", style="cyan")
    table.add_column("Remaining", justify="right", style="green")
    table.add_column("Capacity", justify="right")
    table.add_column("Full at", style="yellow")
    for key, status in stats.items():
        table.add_row(key, str(status["remaining"]), str(status["capacity"]), status["reset_time"])
    console.print(table)


async def _limits(service: ScoutService) -> Dict[str, Any]:
    return service.get_limits()


@cli.command()
def version():
    """Show version information"""
    console.print(f"\n[bold cyan]REPOSCOUT v{__version__}[/bold cyan]")
    console.print("[cyan]Repository Discovery and Analysis Scheduler[/cyan]\n")


# ----------------------------------------------------------------------
# Batches
# ----------------------------------------------------------------------


@cli.group()
def batch():
    """Start, inspect, stop and clear analysis batches"""


async def _run_batch_with_progress(service: ScoutService, start: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    """Start a batch and follow it until it finishes; Ctrl-C stops it"""
    batch_id = (await start())["batch_id"]
    status = await service.get_batch_status(batch_id)
    console.print(f"[green]Batch started:[/green] {batch_id} ({status['total']} items)")

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        ) as progress:
            task = progress.add_task("[cyan]Analyzing...", total=status["total"])
            while status["status"] == "running":
                await asyncio.sleep(1.0)
                status = await service.get_batch_status(batch_id)
                eta = status["eta_seconds"]
                progress.update(
                    task,
                    completed=status["completed"] + status["failed"],
                    description=f"[cyan]Analyzing {status['current_item'] or ''}"
                    + (f" (ETA {eta:.0f}s)" if eta is not None else ""),
                )
    except asyncio.CancelledError:
        await service.stop_batch(batch_id)
        console.print("\n[yellow]Batch stopped by user[/yellow]")
        raise

    return await service.wait_for_batch(batch_id)


def _print_batch_status(status: Dict[str, Any], show_items: bool):
    colors = {"running": "cyan", "completed": "green", "stopped": "yellow", "failed": "red"}
    color = colors.get(status["status"], "white")

    console.print(f"\n[bold]Batch {status['batch_id']}[/bold]  [{color}]{status['status'].upper()}[/{color}]")
    console.print(
        f"Total: {status['total']}  Completed: {status['completed']}  "
        f"Failed: {status['failed']}  Pending: {status['pending']}"
    )
    if status["eta_seconds"] is not None:
        console.print(f"ETA: {status['eta_seconds']:.0f}s")
    if status.get("stop_reason"):
        console.print(f"[yellow]Stopped automatically: {status['stop_reason']}[/yellow]")

    if show_items and status["items"]:
        table = Table()
        table.add_column("#", justify="right")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("State")
        table.add_column("Attempts", justify="right")
        table.add_column("Error kind", style="red")
        table.add_column("Retryable")
        for item in status["items"]:
            table.add_row(
                str(item["position"] + 1),
                item["item_id"],
                item["state"],
                str(item["attempts"]),
                item["error_kind"] or "",
                "" if item["retryable"] is None else ("yes" if item["retryable"] else "no"),
            )
        console.print(table)


@batch.command("start")
@click.argument("target", required=False, type=click.Choice(BATCH_TARGETS))
@click.option("--item", "items", multiple=True, help="Explicit repository (repeatable)")
@click.option("--force", is_flag=True, help="Re-analyze repositories with a recent analysis")
@click.option("--chunk-size", type=click.IntRange(min=1), default=None, help="Analyze at most N repositories")
@click.option("--start-index", type=click.IntRange(min=0), default=0, help="Offset of the chunk")
@click.pass_context
def batch_start(
    ctx: click.Context,
    target: Optional[str],
    items: Tuple[str, ...],
    force: bool,
    chunk_size: Optional[int],
    start_index: int,
):
    """
    Analyze a tier (tier1, tier2, tier3, all) or explicit repositories.

    Example:
        reposcout batch start tier1 --chunk-size 20
        reposcout batch start --item owner/name --item owner/other --force
    """
    if not target and not items:
        raise click.UsageError("Give a TARGET or at least one --item")

    status = _run(
        ctx,
        lambda service: _run_batch_with_progress(
            service,
            lambda: service.start_batch(
                target=target,
                item_ids=list(items) or None,
                force=force,
                chunk_size=chunk_size,
                start_index=start_index,
            ),
        ),
    )
    _print_batch_status(status, show_items=status["failed"] > 0)


@batch.command("status")
@click.argument("batch_id", required=False)
@click.option("--items/--no-items", default=True, help="Show per-item state")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def batch_status(ctx: click.Context, batch_id: Optional[str], items: bool, as_json: bool):
    """Show one batch, or list all batches when no id is given"""
    if batch_id is None:
        batches = _run(ctx, lambda service: service.list_batches())
        table = Table(title="Batches")
        table.add_column("Batch", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Total", justify="right")
        table.add_column("Completed", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Created")
        for entry in batches:
            table.add_row(
                entry["batch_id"],
                entry["status"],
                str(entry["total"]),
                str(entry["completed"]),
                str(entry["failed"]),
                entry["created_at"],
            )
        console.print(table)
        return

    status = _run(ctx, lambda service: service.get_batch_status(batch_id))
    if as_json:
        console.print_json(json.dumps(status))
    else:
        _print_batch_status(status, show_items=items)


@batch.command("stop")
@click.argument("batch_id")
@click.pass_context
def batch_stop(ctx: click.Context, batch_id: str):
    """Stop a running batch (no-op if already finished)"""
    result = _run(ctx, lambda service: service.stop_batch(batch_id))
    console.print(f"Batch {batch_id}: [yellow]{result['status']}[/yellow]")


@batch.command("clear")
@click.confirmation_option(prompt="Delete every batch record?")
@click.pass_context
def batch_clear(ctx: click.Context):
    """Delete all batch records"""
    result = _run(ctx, lambda service: service.clear_batches())
    console.print(f"[green]Cleared {result['batchesCleared']} batches[/green]")


@batch.command("retry")
@click.argument("batch_id")
@click.pass_context
def batch_retry(ctx: click.Context, batch_id: str):
    """Re-run the retryable failures of a finished batch"""
    status = _run(
        ctx,
        lambda service: _run_batch_with_progress(service, lambda: service.retry_failed(batch_id)),
    )
    _print_batch_status(status, show_items=status["failed"] > 0)


if __name__ == "__main__":
    cli()
