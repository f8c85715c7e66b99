"""worker command — drain the task queue."""

from __future__ import annotations

import click
from rich.console import Console

console = Console()


@click.command("worker")
@click.option("--once", is_flag=True, help="Process one batch of ready tasks and exit.")
@click.option("--concurrency", type=int, default=None, help="Tasks processed in parallel (default from config).")
@click.pass_context
def worker_cmd(ctx, once: bool, concurrency: int | None):
    """Execute queued reviews and publish their annotations."""
    from sentinel_cli.services import build_worker

    config = ctx.obj["config"]
    worker = build_worker(config, ctx.obj["store"], ctx.obj["queue"], concurrency=concurrency)

    if once:
        processed = worker.run_once()
        console.print(f"Processed {processed} task(s).")
        return

    console.print(f"[bold]Worker running[/bold] (concurrency={worker.concurrency}). Press Ctrl+C to stop.")
    try:
        worker.run_forever(poll_interval=config.get("poll_interval_seconds", 2.0))
    except KeyboardInterrupt:
        worker.stop()
        console.print("Stopped.")
