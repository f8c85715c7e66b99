"""stats command — aggregate findings across review runs."""

from __future__ import annotations

from collections import Counter

import click
from rich.console import Console
from rich.table import Table

from sentinel_cli.commands.runs import get_repository_or_fail

console = Console()

_SEVERITY_ORDER = ["critical", "high", "medium", "low", "info"]
_SEVERITY_STYLE = {"critical": "red", "high": "magenta", "medium": "yellow", "low": "blue", "info": "dim"}


@click.command("stats")
@click.option("--repo", required=True, help="GitHub repository (owner/name).")
@click.option("--top", default=10, show_default=True, help="Number of top entries to show per table.")
@click.pass_context
def stats_cmd(ctx, repo: str, top: int):
    """Show aggregated review statistics for a repository.

    Reports run outcomes, severity and category distribution, and the most
    frequently flagged files, which is useful for spotting systemic issues
    and tuning the repository's review policy.
    """
    store = ctx.obj["store"]
    repository = get_repository_or_fail(store, repo)

    runs = store.list_runs(repository.id)
    if not runs:
        console.print("[yellow]No review runs found for this repository.[/yellow]")
        return

    status_counter: Counter[str] = Counter()
    severity_counter: Counter[str] = Counter()
    category_counter: Counter[str] = Counter()
    file_counter: Counter[str] = Counter()
    total_tokens = 0

    for run in runs:
        status_counter[run.status.value] += 1
        total_tokens += run.metrics.get("tokens_used_estimated", 0) if run.metrics else 0
        for finding in store.list_findings(run.id):
            severity_counter[finding.severity] += 1
            category_counter[finding.category] += 1
            if finding.file_path:
                file_counter[finding.file_path] += 1

    total_findings = sum(severity_counter.values())
    completed = status_counter.get("completed", 0)

    # --- Summary ---
    console.print(f"\n[bold]Review stats for [cyan]{repo}[/cyan][/bold]")
    console.print(f"  Total runs:     {len(runs)}")
    for status, count in sorted(status_counter.items()):
        console.print(f"    {status:<12} {count}")
    console.print(f"  Total findings: {total_findings}")
    if completed:
        console.print(f"  Avg per review: {total_findings / completed:.1f}")
    console.print(f"  Tokens used:    {total_tokens}")

    # --- Severity breakdown ---
    if severity_counter:
        sev_table = Table(title="Severity Breakdown", show_header=True)
        sev_table.add_column("Severity", style="bold")
        sev_table.add_column("Count", justify="right")
        sev_table.add_column("% of total", justify="right")
        for sev in _SEVERITY_ORDER:
            count = severity_counter.get(sev, 0)
            pct = f"{count / total_findings * 100:.1f}%" if total_findings else "0%"
            style = _SEVERITY_STYLE.get(sev, "white")
            sev_table.add_row(f"[{style}]{sev}[/{style}]", str(count), pct)
        console.print(sev_table)

    # --- Categories ---
    if category_counter:
        cat_table = Table(title="Categories", show_header=True)
        cat_table.add_column("Category")
        cat_table.add_column("Count", justify="right")
        for category, count in category_counter.most_common(top):
            cat_table.add_row(category, str(count))
        console.print(cat_table)

    # --- Most flagged files ---
    if file_counter:
        file_table = Table(title=f"Top {top} Most Flagged Files", show_header=True)
        file_table.add_column("File")
        file_table.add_column("Findings", justify="right")
        for file_path, count in file_counter.most_common(top):
            file_table.add_row(file_path, str(count))
        console.print(file_table)
