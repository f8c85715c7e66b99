"""ingest command — feed a GitHub webhook payload into the pipeline."""

from __future__ import annotations

import json

import click
from rich.console import Console

console = Console()


@click.command("ingest")
@click.argument("payload_file", type=click.File("r"))
@click.option(
    "--event",
    default="pull_request",
    show_default=True,
    help="Value of the X-GitHub-Event header the payload was delivered with.",
)
@click.pass_context
def ingest_cmd(ctx, payload_file, event: str):
    """Ingest a webhook payload (JSON file, or '-' for stdin).

    Creates at most one Run per pull request commit and queues it for the
    worker. Re-delivering the same payload is safe.
    """
    from sentinel_cli.services import build_github_client, build_policy_resolver, has_github_credentials
    from sentinel_core.webhooks import WebhookIngestor, WebhookPayloadError

    if event != "pull_request":
        console.print(f"[yellow]Ignoring '{event}' event; only pull_request events start reviews.[/yellow]")
        return

    try:
        payload = json.load(payload_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise click.ClickException("Payload must be a JSON object.")

    config = ctx.obj["config"]
    github = build_github_client(config) if has_github_credentials(config) else None
    ingestor = WebhookIngestor(ctx.obj["store"], ctx.obj["queue"], build_policy_resolver(github))

    try:
        result = ingestor.handle_pull_request(payload)
    except WebhookPayloadError as e:
        raise click.ClickException(str(e)) from e

    if result.run is None:
        console.print(f"[yellow]No run created:[/yellow] {result.reason}")
        return

    status = result.run.status.value
    if not result.created:
        console.print(f"Run [bold]{result.run.id}[/bold] already exists ({status}).")
    elif result.allowed:
        console.print(f"[green]Queued run[/green] [bold]{result.run.id}[/bold] for {result.run.external_reference}.")
    else:
        console.print(f"[yellow]Run {result.run.id} skipped:[/yellow] {result.reason}")
