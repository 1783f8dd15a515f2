"""Marketplace indexer CLI - Main entry point."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel

from marketplace_indexer.cli.helpers import (
    console,
    fail,
    get_catalog,
    get_configured_store,
    load_settings,
    marketplace_table,
    plugin_table,
    print_json,
    render_report,
)
from marketplace_indexer.errors import ConfigurationError, IndexerError, StorageError

app = typer.Typer(
    name="marketplace-indexer",
    help="Discover, validate and index plugin marketplaces published on GitHub",
    add_completion=False,
)


@app.command()
def scan(
    limit: Optional[int] = typer.Option(
        None,
        "--limit", "-n",
        min=1,
        help="Maximum number of candidate repositories to process",
    ),
    time_budget: Optional[float] = typer.Option(
        None,
        "--time-budget", "-t",
        min=1,
        help="Stop starting new work after this many seconds",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Run the full pipeline but do not write anything",
    ),
    json_output: bool = typer.Option(
        False,
        "--json", "-j",
        help="Output the run report as JSON",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Debug logging and per-plugin diagnostics",
    ),
):
    """Search GitHub for marketplaces and reconcile them into storage."""
    from marketplace_indexer.pipeline import DiscoveryPipeline
    from marketplace_indexer.storage import RunLock

    settings = load_settings(verbose)
    store = get_configured_store(settings)

    try:
        with RunLock(settings.data_dir):
            pipeline = DiscoveryPipeline(
                settings=settings,
                store=store,
                limit=limit,
                time_budget=time_budget,
                dry_run=dry_run,
                verbose=verbose,
            )
            report = pipeline.run_sync()
    except (ConfigurationError, StorageError) as e:
        fail(str(e))

    if json_output:
        print_json(report.model_dump(mode="json"))
        return
    render_report(report)
    if dry_run:
        console.print("\n[yellow]Dry run: nothing was written.[/yellow]")


@app.command()
def validate(
    path: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="Path to a marketplace.json descriptor",
    ),
    repo: Optional[str] = typer.Option(
        None,
        "--repo", "-r",
        help="Owning repository (owner/name) for the reachability check",
    ),
    skip_access_check: bool = typer.Option(
        False,
        "--skip-access-check",
        help="Validate offline, without checking the repository on GitHub",
    ),
    json_output: bool = typer.Option(
        False,
        "--json", "-j",
        help="Output the result as JSON",
    ),
):
    """Validate a local descriptor and preview the plugins it would yield."""
    from marketplace_indexer.api_clients import GitHubClient
    from marketplace_indexer.pipeline import MarketplaceValidator, extract_plugins
    from marketplace_indexer.utils import is_valid_repo

    settings = load_settings()
    if not skip_access_check and not repo:
        fail("--repo is required unless --skip-access-check is given")
    if repo and not is_valid_repo(repo):
        fail(f"Invalid repository name: {repo} (expected owner/name)")

    raw_content = path.read_text(encoding="utf-8")
    if skip_access_check:
        validator = MarketplaceValidator(check_access=False)
    else:
        validator = MarketplaceValidator(github=GitHubClient(settings=settings))
    result = asyncio.run(validator.validate(repo or "local/descriptor", raw_content))

    if not result.valid:
        if json_output:
            print_json(
                {"valid": False, "stage": result.stage.value, "errors": result.errors}
            )
        else:
            console.print(f"[red]Invalid ({result.stage.value}):[/red] {path}")
            for error in result.errors:
                console.print(f"  - {error}")
        raise typer.Exit(1)

    diagnostics: list[str] = []
    try:
        plugins = extract_plugins(result.marketplace, raw_content, diagnostics)
    except IndexerError as e:
        fail(str(e))

    if json_output:
        print_json(
            {
                "valid": True,
                "marketplace": result.marketplace.to_record(),
                "plugins": [p.to_record() for p in plugins],
                "diagnostics": diagnostics,
            }
        )
        return

    console.print(f"[green]Valid:[/green] {path}")
    console.print(plugin_table(plugins))
    for note in diagnostics:
        console.print(f"[yellow]Note:[/yellow] {note}")


@app.command("list")
def list_marketplaces(
    category: Optional[str] = typer.Option(
        None,
        "--category", "-c",
        help="Only marketplaces offering this category",
    ),
    include_empty: bool = typer.Option(
        False,
        "--include-empty",
        help="Include marketplaces that list no plugins",
    ),
    json_output: bool = typer.Option(
        False,
        "--json", "-j",
        help="Output as JSON",
    ),
):
    """List stored marketplaces."""
    catalog = get_catalog(load_settings())
    try:
        if category:
            marketplaces = catalog.list_by_category(category)
        else:
            marketplaces = catalog.list_marketplaces(include_empty=include_empty)
    except StorageError as e:
        fail(str(e))

    if json_output:
        print_json([m.to_record() for m in marketplaces])
        return
    if not marketplaces:
        console.print("[yellow]No marketplaces found[/yellow]")
        return
    console.print(marketplace_table(marketplaces))


@app.command()
def show(
    slug: str = typer.Argument(..., help="Marketplace slug (owner-name)"),
    json_output: bool = typer.Option(
        False,
        "--json", "-j",
        help="Output as JSON",
    ),
):
    """Show a marketplace and its plugins."""
    catalog = get_catalog(load_settings())
    try:
        marketplace = catalog.get_marketplace_by_slug(slug)
        plugins = catalog.list_plugins_by_marketplace(slug) if marketplace else []
    except StorageError as e:
        fail(str(e))

    if marketplace is None:
        fail(f"Marketplace not found: {slug}")

    if json_output:
        print_json(
            {
                "marketplace": marketplace.to_record(),
                "plugins": [p.to_record() for p in plugins],
            }
        )
        return

    details = [
        f"[bold]{marketplace.repo}[/bold]",
        f"[dim]{marketplace.description or 'No description'}[/dim]",
        "",
        f"URL: {marketplace.url}",
        f"Source: {marketplace.source.value}",
        f"Categories: {', '.join(marketplace.categories) or '-'}",
    ]
    if marketplace.stars is not None:
        details.append(f"Stars: {marketplace.stars}")
    if marketplace.stale:
        details.append("[yellow]Failed its last revalidation[/yellow]")
    console.print(Panel("\n".join(details), title=marketplace.slug, border_style="blue"))
    if plugins:
        console.print(plugin_table(plugins))


@app.command()
def categories():
    """List every category used by a stored marketplace."""
    catalog = get_catalog(load_settings())
    try:
        names = catalog.list_categories()
    except StorageError as e:
        fail(str(e))

    if not names:
        console.print("[yellow]No categories found[/yellow]")
        return
    for name in names:
        console.print(f"  {name}")


if __name__ == "__main__":
    app()
