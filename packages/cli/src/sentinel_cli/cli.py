"""CLI entry point for sentinel.

Commands:
  ingest   — feed a pull_request webhook payload into the pipeline
  worker   — run the worker pool that executes reviews and publishes annotations
  runs     — list review runs for a repository
  show     — show one run with its findings
  stats    — aggregate findings across a repository's runs
  publish  — re-enqueue annotation publishing for a completed run
"""

from __future__ import annotations

import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from sentinel_cli.commands.ingest import ingest_cmd
from sentinel_cli.commands.publish import publish_cmd
from sentinel_cli.commands.runs import runs_cmd, show_cmd
from sentinel_cli.commands.stats import stats_cmd
from sentinel_cli.commands.worker import worker_cmd

console = Console()

_LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def _build_store(config: dict):
    """Instantiate the configured store from sentinel.yml settings.

    Store selection:
      store: sqlite → SQLiteStore (store_path, default .sentinel.db)
      store: memory → MemoryStore (state is lost when the process exits)

    This factory lives in cli.py so neither sentinel_core nor sentinel_store
    know about the CLI config format.
    """
    store_type = config.get("store", "sqlite")

    if store_type == "memory":
        from sentinel_store.memory import MemoryStore

        return MemoryStore()

    if store_type == "sqlite":
        from sentinel_store.sqlite import SQLiteStore

        return SQLiteStore(db_path=config.get("store_path", ".sentinel.db"))

    raise click.UsageError(f"Unknown store type {store_type!r}. Use 'sqlite' or 'memory'.")


def _build_queue(config: dict):
    visibility_timeout = config.get("task_visibility_timeout_seconds", 900)
    if config.get("store", "sqlite") == "memory":
        from sentinel_store.queue import MemoryQueue

        return MemoryQueue(visibility_timeout=visibility_timeout)

    from sentinel_store.queue import SQLiteQueue

    return SQLiteQueue(db_path=config.get("store_path", ".sentinel.db"), visibility_timeout=visibility_timeout)


def _configure_logging(verbosity: int) -> None:
    logging.basicConfig(
        level=_LOG_LEVELS.get(verbosity, logging.DEBUG),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(package_name="sentinel-review", prog_name="sentinel")
@click.option(
    "--config",
    "config_path",
    default="sentinel.yml",
    show_default=True,
    help="Path to the service configuration file.",
    envvar="SENTINEL_CONFIG",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug).")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: int):
    """AI-assisted pull request review pipeline."""
    from sentinel_cli.auth import resolve_github_credentials
    from sentinel_cli.services import seed_registry
    from sentinel_core.config import load_config

    _configure_logging(verbose)
    ctx.ensure_object(dict)

    config = load_config(config_path)
    config.update(resolve_github_credentials(config))

    store = _build_store(config)
    queue = _build_queue(config)
    seed_registry(store, config)

    ctx.obj["config"] = config
    ctx.obj["store"] = store
    ctx.obj["queue"] = queue
    ctx.call_on_close(store.close)
    ctx.call_on_close(queue.close)


main.add_command(ingest_cmd)
main.add_command(worker_cmd)
main.add_command(runs_cmd)
main.add_command(show_cmd)
main.add_command(stats_cmd)
main.add_command(publish_cmd)
