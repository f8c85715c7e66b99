"""runs and show commands — display review runs from the store."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_STATUS_STYLE = {
    "queued": "cyan",
    "in_progress": "blue",
    "completed": "green",
    "failed": "red",
    "skipped": "dim",
}

_SEVERITY_STYLE = {
    "critical": "red",
    "high": "magenta",
    "medium": "yellow",
    "low": "blue",
    "info": "dim",
}


def _styled(value: str, styles: dict) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _timestamp(value: str | None) -> str:
    return value[:19].replace("T", " ") if value else ""


def get_repository_or_fail(store, repo: str):
    repository = store.find_repository_by_name(repo)
    if repository is None:
        raise click.UsageError(f"Repository {repo} is not connected. Add it under 'repositories' in sentinel.yml.")
    return repository


@click.command("runs")
@click.option("--repo", required=True, help="GitHub repository (owner/name).")
@click.option("--pr", "pr_number", type=int, default=None, help="Filter by PR number.")
@click.option("--limit", default=20, show_default=True, help="Maximum number of runs to show.")
@click.pass_context
def runs_cmd(ctx, repo: str, pr_number: int | None, limit: int):
    """Show review runs for a repository, most recent first."""
    store = ctx.obj["store"]
    repository = get_repository_or_fail(store, repo)

    runs = store.list_runs(repository.id, pr_number=pr_number, limit=limit)
    if not runs:
        console.print("[yellow]No review runs found.[/yellow]")
        return

    table = Table(title=f"Review Runs — {repo}", show_header=True, header_style="bold cyan")
    table.add_column("Run", no_wrap=True)
    table.add_column("PR", style="bold", width=6)
    table.add_column("Title", max_width=40)
    table.add_column("SHA", width=8)
    table.add_column("Status", width=12)
    table.add_column("Findings", justify="right", width=9)
    table.add_column("Created At", width=20)

    for run in runs:
        title = run.metadata.get("pull_request_title") or ""
        table.add_row(
            run.id,
            f"#{run.pull_request_number}",
            title[:40],
            (run.metadata.get("head_sha") or "")[:7],
            _styled(run.status.value, _STATUS_STYLE),
            str(len(store.list_findings(run.id))),
            _timestamp(run.created_at),
        )

    console.print(table)


@click.command("show")
@click.argument("run_id")
@click.pass_context
def show_cmd(ctx, run_id: str):
    """Show one run with its outcome and findings."""
    store = ctx.obj["store"]
    run = store.get_run(run_id)
    if run is None:
        raise click.ClickException(f"Run {run_id} not found.")

    console.print(f"\n[bold]Run {run.id}[/bold]  {_styled(run.status.value, _STATUS_STYLE)}")
    console.print(f"  Reference:  {run.external_reference}")
    console.print(f"  Repository: {run.metadata.get('repository_full_name', run.repository_id)}")
    console.print(f"  Created:    {_timestamp(run.created_at)}")
    if run.duration_seconds is not None:
        console.print(f"  Duration:   {run.duration_seconds:.1f}s")
    if run.metrics:
        console.print(
            f"  Model:      {run.metrics.get('provider')}/{run.metrics.get('model')}"
            f"  ({run.metrics.get('tokens_used_estimated', 0)} tokens)"
        )

    failure = run.metadata.get("review_failure")
    if failure:
        console.print(f"  [red]Failure:[/red]    {failure.get('code')}: {failure.get('message')}")
    if run.metadata.get("skip_reason"):
        console.print(f"  [dim]Skipped:[/dim]    {run.metadata['skip_reason']}")

    summary = run.metadata.get("review_summary")
    if summary:
        console.print(f"\n{summary.get('overview', '')}")

    findings = store.list_findings(run.id)
    if not findings:
        return

    table = Table(title="Findings", show_header=True, header_style="bold cyan")
    table.add_column("Severity", width=10)
    table.add_column("Category", width=16)
    table.add_column("Location", max_width=40)
    table.add_column("Title", max_width=60)
    for finding in findings:
        location = finding.file_path or ""
        if finding.line_start is not None:
            location = f"{location}:{finding.line_start}"
        table.add_row(
            _styled(finding.severity, _SEVERITY_STYLE),
            finding.category,
            location,
            finding.title,
        )
    console.print(table)

    published = store.list_annotations(run.id)
    console.print(f"{len(published)} of {len(findings)} finding(s) published.")
