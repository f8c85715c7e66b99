"""publish command — re-enqueue annotation publishing for a run."""

from __future__ import annotations

import click
from rich.console import Console

console = Console()


@click.command("publish")
@click.argument("run_id")
@click.pass_context
def publish_cmd(ctx, run_id: str):
    """Queue annotation publishing for a completed run.

    Publishing is idempotent: a run whose findings were already posted is
    left untouched by the worker.
    """
    from sentinel_core.pipeline import PUBLISH_ANNOTATIONS_TASK
    from sentinel_store.models import RunStatus

    store = ctx.obj["store"]
    run = store.get_run(run_id)
    if run is None:
        raise click.ClickException(f"Run {run_id} not found.")
    if run.status is not RunStatus.COMPLETED:
        raise click.ClickException(f"Run {run_id} is {run.status.value}; only completed runs can be published.")
    if store.has_annotations(run.id):
        console.print(f"[yellow]Run {run_id} already has annotations; nothing to publish.[/yellow]")
        return

    task = ctx.obj["queue"].enqueue(PUBLISH_ANNOTATIONS_TASK, {"run_id": run.id})
    console.print(f"[green]Queued[/green] publish task {task.id} for run {run.id}.")
