"""Command line interface for codeseek."""

import asyncio
import json
from pathlib import Path
from typing import Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from . import __version__, configure_logging
from .config import index_dir
from .service import EVENT_INDEXING_PROGRESS, EVENT_INDEXING_START, IndexService
from .storage.base import SearchFilters

console = Console()
err_console = Console(stderr=True)


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


async def _open(ctx: click.Context, directory: str) -> IndexService:
    """Initialize a service for `directory` or fail the command."""
    service = IndexService(ctx.obj["overrides"])
    result = await service.initialize(directory)
    if not result["ready"]:
        await service.dispose()
        raise click.ClickException(f"Cannot open index for {directory}: {result['error']}")
    for warning in result.get("warnings", []):
        err_console.print(f"[yellow]warning:[/yellow] {warning}", highlight=False)
    return service


@click.group()
@click.option(
    "--db-path",
    type=click.Path(file_okay=False),
    envvar="CODESEEK_DB_PATH",
    help="Index directory (default: <project>/.codeseek)",
)
@click.option("--model-cache", type=click.Path(file_okay=False), help="Directory for downloaded embedding models")
@click.option(
    "--shards",
    "--workers",
    "shards",
    type=click.IntRange(min=0),
    envvar="CODESEEK_SHARDS",
    help="Worker processes for indexing; 0 runs everything in this process",
)
@click.option(
    "--backend",
    type=click.Choice(["sentence_transformers", "hashing"]),
    help="Embedding backend",
)
@click.option("--output", "-o", type=click.Choice(["rich", "json"]), default="rich", help="Output format")
@click.option("--verbose", "-v", is_flag=True, help="Log progress and debug details")
@click.version_option(__version__, prog_name="codeseek")
@click.pass_context
def cli(ctx, db_path, model_cache, shards, backend, output, verbose):
    """codeseek - local semantic code search."""
    configure_logging("DEBUG" if verbose else "WARNING")

    # Builds are always explicit on the command line
    overrides: Dict = {"auto_index": False}
    if db_path:
        overrides["index_path"] = str(Path(db_path).expanduser().resolve())
    if model_cache:
        overrides["model_cache_dir"] = model_cache
    if shards is not None:
        overrides["workers"] = {"max_workers": shards}
    if backend:
        overrides["embedding"] = {"backend": backend}

    ctx.ensure_object(dict)
    ctx.obj["overrides"] = overrides
    ctx.obj["output"] = output
    ctx.obj["verbose"] = verbose


@cli.command()
@click.argument("directory", default=".", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def index(ctx, directory):
    """Index DIRECTORY (default: the current directory)."""

    async def run_index() -> Dict:
        service = await _open(ctx, directory)
        progress: Optional[Progress] = None
        task = None

        def on_event(event) -> None:
            if progress is None:
                return
            if event.type == EVENT_INDEXING_START:
                progress.update(task, total=event.data["total_files"])
            elif event.type == EVENT_INDEXING_PROGRESS:
                progress.update(task, completed=event.data["files_processed"], total=event.data["total_files"])

        if ctx.obj["output"] == "rich" and console.is_terminal:
            progress = Progress(
                TextColumn("[bold blue]Indexing"), BarColumn(), MofNCompleteColumn(), console=console, transient=True
            )
            task = progress.add_task("index", total=None)
        service.events.add_listener(on_event)
        try:
            if progress is not None:
                with progress:
                    return await service.reindex()
            return await service.reindex()
        finally:
            service.events.remove_listener(on_event)
            await service.dispose()

    result = asyncio.run(run_index())
    if not result["success"]:
        raise click.ClickException(f"Indexing failed: {result['error']}")

    summary = result["summary"]
    if ctx.obj["output"] == "json":
        click.echo(json.dumps(summary, indent=2))
    else:
        table = Table(title=f"Indexed {Path(directory).resolve()}")
        table.add_column("Files", style="cyan")
        table.add_column("Count", justify="right", style="green")
        for label, key in (
            ("Total", "files_total"),
            ("Indexed", "files_succeeded"),
            ("Unchanged", "files_unchanged"),
            ("Skipped", "files_skipped"),
            ("Failed", "files_failed"),
            ("Removed", "files_removed"),
        ):
            table.add_row(label, str(summary[key]))
        console.print(table)
        console.print(f"{summary['chunks_indexed']} chunks in {summary['elapsed_ms']} ms", highlight=False)
        for path, error in sorted(summary["errors"].items()):
            console.print(f"[red]failed[/red] {escape(path)}: {escape(error)}", highlight=False)
    if summary["files_failed"]:
        ctx.exit(1)


@cli.command()
@click.argument("query")
@click.option("--directory", "-d", default=".", type=click.Path(exists=True, file_okay=False), help="Project to search")
@click.option("--limit", "-n", default=10, type=click.IntRange(1, 100), help="Maximum results to return")
@click.option("--language", "-l", "languages", multiple=True, help="Only chunks in this language")
@click.option("--extension", "-e", "extensions", multiple=True, help="Only files with this extension")
@click.pass_context
def search(ctx, query, directory, limit, languages, extensions):
    """Search the index of a project for QUERY."""

    async def run_search() -> Dict:
        service = await _open(ctx, directory)
        filters = None
        if languages or extensions:
            filters = SearchFilters(extensions=list(extensions) or None, languages=list(languages) or None)
        try:
            return await service.search(query, limit=limit, filters=filters)
        finally:
            await service.dispose()

    response = asyncio.run(run_search())
    if not response["success"]:
        raise click.ClickException(response["error"])

    results = response["results"]
    if ctx.obj["output"] == "json":
        click.echo(json.dumps(results, indent=2))
        return
    if not results:
        console.print("No results found.")
        return

    console.print(f"Found {len(results)} results:\n")
    for i, r in enumerate(results, 1):
        meta = r["metadata"]
        console.print(
            f"[bold][{i}][/bold] [cyan]{escape(r['file_path'])}[/cyan]:L{meta['start_line']}-{meta['end_line']} "
            f"({r['similarity'] * 100:.1f}%)",
            highlight=False,
        )
        console.print(r["content"], markup=False, highlight=False)
        console.print()


@cli.command()
@click.option("--directory", "-d", default=".", type=click.Path(exists=True, file_okay=False), help="Project to inspect")
@click.pass_context
def status(ctx, directory):
    """Show what the index of a project holds."""

    async def show_status() -> Dict:
        service = await _open(ctx, directory)
        try:
            status = await service.get_status()
            status["index_path"] = str(index_dir(service.project_path, service.cfg))
            return status
        finally:
            await service.dispose()

    status = asyncio.run(show_status())
    if ctx.obj["output"] == "json":
        click.echo(json.dumps(status, indent=2))
        return

    stats = status["stats"] or {}
    table = Table(title="Index Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Project", status["project_path"])
    table.add_row("Index", status["index_path"])
    table.add_row("Files indexed", str(stats.get("total_files", 0)))
    table.add_row("Total chunks", str(stats.get("total_chunks", 0)))
    table.add_row("Database size", _format_bytes(stats.get("database_size", 0)))
    table.add_row("Last indexed", stats.get("last_indexed_at") or "Never")
    console.print(table)


if __name__ == "__main__":
    cli()
