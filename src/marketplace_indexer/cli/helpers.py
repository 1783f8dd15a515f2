"""Shared helpers for CLI modules: settings, store factories, rendering."""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from marketplace_indexer.catalog import Catalog
from marketplace_indexer.config import Settings, configure_logging, get_settings
from marketplace_indexer.errors import ConfigurationError
from marketplace_indexer.models import Marketplace, Plugin
from marketplace_indexer.pipeline.report import RunReport
from marketplace_indexer.storage import SnapshotStore, get_store

console = Console()
err_console = Console(stderr=True)


def load_settings(verbose: bool = False) -> Settings:
    """Load settings and configure logging for a command."""
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        format=settings.log_format,
        sanitize_logs=settings.sanitize_logs,
    )
    return settings


def get_configured_store(settings: Settings) -> SnapshotStore:
    """Build the configured store, exiting with a message when misconfigured."""
    try:
        settings.validate_storage()
        return get_store(settings)
    except ConfigurationError as e:
        fail(str(e))


def get_catalog(settings: Settings) -> Catalog:
    return Catalog(get_configured_store(settings))


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    err_console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def print_json(data: Any) -> None:
    # Plain print: rich would wrap long lines and break the JSON
    typer.echo(json.dumps(data, indent=2, default=str))


def marketplace_table(marketplaces: list[Marketplace], title: str = "Marketplaces") -> Table:
    table = Table(title=title)
    table.add_column("Slug", style="cyan")
    table.add_column("Repository")
    table.add_column("Plugins", justify="right")
    table.add_column("Stars", justify="right")
    table.add_column("Categories", style="dim")
    table.add_column("Source")

    for m in marketplaces:
        source = m.source.value
        if m.stale:
            source += " [yellow](stale)[/yellow]"
        table.add_row(
            m.slug,
            m.repo,
            str(m.plugin_count),
            str(m.stars) if m.stars is not None else "-",
            ", ".join(m.categories) or "-",
            source,
        )
    return table


def plugin_table(plugins: list[Plugin], title: str = "Plugins") -> Table:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Category")
    table.add_column("Description")
    table.add_column("Install", style="green")

    for p in plugins:
        description = p.description
        if len(description) > 60:
            description = description[:57] + "..."
        table.add_row(
            p.name,
            p.version or "-",
            p.category or "-",
            description or "-",
            p.install_command,
        )
    return table


def render_report(report: RunReport) -> None:
    """Print a run report as rich tables."""
    title = "Run Report (dry run)" if report.dry_run else "Run Report"
    summary = Table(title=title, show_header=False)
    summary.add_column("Metric", style="bold")
    summary.add_column("Value", justify="right")
    for label, value in (
        ("Candidates", report.candidates),
        ("Processed", report.processed),
        ("Validated", report.validated),
        ("Added", report.added),
        ("Updated", report.updated),
        ("Removed", report.removed),
        ("Flagged", report.flagged),
        ("Total marketplaces", report.total),
        ("Total plugins", report.plugins_total),
    ):
        summary.add_row(label, str(value))
    if report.duration_seconds is not None:
        summary.add_row("Duration", f"{report.duration_seconds:.1f}s")
    console.print(summary)

    if report.truncated:
        console.print("\n[yellow]Run was truncated:[/yellow]")
        for reason in report.truncation_reasons:
            console.print(f"  - {reason}")

    if report.failures:
        failures = Table(title=f"Failures ({len(report.failures)})")
        failures.add_column("Repository", style="cyan")
        failures.add_column("Stage")
        failures.add_column("Errors")
        for failure in report.failures:
            stage = failure.stage.value
            if failure.transient:
                stage += " [dim](transient)[/dim]"
            failures.add_row(failure.repo, stage, "\n".join(failure.errors))
        console.print(failures)

    if report.conflicts:
        conflicts = Table(title="Slug conflicts", style="red")
        conflicts.add_column("Slug")
        conflicts.add_column("Kept")
        conflicts.add_column("Rejected")
        for c in report.conflicts:
            conflicts.add_row(c.slug, c.existing_repo, c.rejected_repo)
        console.print(conflicts)

    if report.diagnostics:
        console.print("\n[dim]Diagnostics:[/dim]")
        for note in report.diagnostics:
            console.print(f"  - {note}")
