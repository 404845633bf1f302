"""obracalc CLI.

Commands:
- init: Initialize database schema
- ingest: Ingest a PDF price book for a year (inline or via the worker queue)
- job: Show an ingestion job's status and log
- search: Semantic catalog search
- resolve: Resolve a single task into a priced line item
- budget: Generate a full budget from a project description
- delete-year: Remove a catalog year
- web serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import typer
from rich.console import Console
from rich.table import Table

from obracalc.budget.orchestrator import BudgetGenerationError
from obracalc.config import get_config
from obracalc.core.logging import configure_logging
from obracalc.db.connection import close_db, get_engine, init_db
from obracalc.db.models import Base
from obracalc.models import Assembly, IngestionJob, ResolvedLineItem
from obracalc.services import get_services

app = typer.Typer(
    name="obracalc",
    help="obracalc - Price book ingestion and construction budget generation",
    no_args_is_help=True,
)

web_cli = typer.Typer(help="Web UI / API")
app.add_typer(web_cli, name="web")

console = Console()


def _run(coro):
    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    return asyncio.run(_wrapped())


def _print_job(job: IngestionJob) -> None:
    console.print(
        f"[bold]Job {job.id}[/bold] {job.status.value} ({job.progress}%) "
        f"items={job.total_items} skipped={job.skipped_items} dropped={job.dropped_items}"
    )
    table = Table(title="Job log")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Message")
    styles = {"error": "red", "warning": "yellow", "success": "green"}
    for entry in job.logs:
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            f"[{styles.get(entry.level, 'cyan')}]{entry.level}[/]",
            entry.message,
        )
    console.print(table)
    if job.error:
        console.print(f"[red]✗[/red] {job.error}")


def _print_item(item: ResolvedLineItem, indent: int = 0) -> None:
    pad = "  " * indent
    if isinstance(item, Assembly):
        console.print(
            f"{pad}[magenta]{item.synthetic_code}[/magenta] {item.description} "
            f"= [bold]{item.total_price} €[/bold]"
        )
        for component in item.components:
            _print_item(component, indent + 1)
        return

    flags = []
    if item.is_estimate:
        flags.append("estimate")
    if item.needs_review:
        flags.append("review")
    suffix = f" [yellow]({', '.join(flags)})[/yellow]" if flags else ""
    console.print(
        f"{pad}[cyan]{item.code}[/cyan] {item.description} "
        f"{item.quantity} {item.unit} x {item.unit_price} € = [bold]{item.total_price} €[/bold] "
        f"[dim]conf={item.match_confidence:.2f}[/dim]{suffix}"
    )


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        if drop:
            console.print("[yellow]Dropping existing tables...[/yellow]")
            async with get_engine().begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
        console.print("[green]Creating tables...[/green]")
        await init_db()

    _run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def ingest(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Price book PDF"),
    year: int = typer.Option(..., "--year", help="Catalog year"),
    concurrency: int = typer.Option(None, "--concurrency", min=1, help="Parallel embedding batches"),
    enqueue: bool = typer.Option(False, "--enqueue", help="Run on the arq worker instead"),
):
    """Ingest a PDF price book, replacing the catalog for that year."""
    configure_logging()

    if enqueue:
        async def _enqueue():
            from obracalc.core.queue import get_queue

            services = get_services()
            job = await services.ingestion.create_job(year, file.name)
            queue = await get_queue()
            await queue.enqueue_job(
                "run_price_book_ingestion", str(file.resolve()), year, concurrency, job.id
            )
            return job.id

        job_id = _run(_enqueue())
        console.print(f"[green]✓[/green] Queued job {job_id}")
        return

    async def _ingest():
        services = get_services()
        result = await services.ingestion.run(
            file.read_bytes(), year, concurrency, file_name=file.name
        )
        return await services.ingestion.get_job_status(result.job_id)

    console.print(f"[bold]Ingesting[/bold] {file} for {year}")
    job = _run(_ingest())
    if job is not None:
        _print_job(job)
        if job.error:
            raise typer.Exit(code=1)


@app.command()
def job(job_id: str = typer.Argument(..., help="Ingestion job id")):
    """Show an ingestion job's status and log."""

    async def _job():
        return await get_services().ingestion.get_job_status(job_id)

    found = _run(_job())
    if found is None:
        console.print(f"[red]✗[/red] Job {job_id} not found")
        raise typer.Exit(code=1)
    _print_job(found)


@app.command()
def search(
    query: str = typer.Argument(..., help="Search text"),
    k: int = typer.Option(5, "--k", min=1, help="Number of results"),
    year: int = typer.Option(None, "--year", help="Catalog year filter"),
    rerank: bool = typer.Option(False, "--rerank", help="Hybrid keyword re-ranking"),
):
    """Semantic search over the catalog."""

    async def _search():
        return await get_services().search.search(query, k=k, year=year, rerank=rerank)

    matches = _run(_search())
    if not matches:
        console.print("[yellow]No matches[/yellow]")
        return

    table = Table(title=f"Catalog matches for '{query}'")
    table.add_column("Code", style="cyan")
    table.add_column("Description")
    table.add_column("Unit")
    table.add_column("Price", justify="right", style="green")
    table.add_column("Year", justify="right")
    table.add_column("Score", justify="right")
    for match in matches:
        table.add_row(
            match.item.code,
            match.item.description[:80],
            match.item.unit,
            f"{match.item.unit_price} €",
            str(match.item.year),
            f"{match.score:.3f}",
        )
    console.print(table)


@app.command()
def resolve(
    task: str = typer.Argument(..., help="Task description"),
    quantity: float = typer.Option(1.0, "--quantity", "-q"),
    unit: str = typer.Option("u", "--unit", "-u"),
    year: int = typer.Option(None, "--year", help="Catalog year filter"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Resolve one task into a priced line item."""

    async def _resolve():
        return await get_services().resolver.resolve(
            task, Decimal(str(quantity)), unit, year=year
        )

    item = _run(_resolve())
    if as_json:
        console.print_json(json.dumps(item.model_dump(mode="json")))
    else:
        _print_item(item)


@app.command()
def budget(
    description: str = typer.Argument(..., help="Project description"),
    area: float = typer.Option(None, "--area", help="Total area in m2"),
    context: str = typer.Option(None, "--context", help="Site notes, e.g. '4th floor, no lift'"),
    year: int = typer.Option(None, "--year", help="Catalog year filter"),
    output: Path = typer.Option(None, "--out", "-o", help="Write the budget as JSON"),
):
    """Generate a full budget from a project description."""
    configure_logging()
    scope_id = str(uuid4())

    async def _budget():
        return await get_services().orchestrator.generate_budget(
            description, scope_id=scope_id, total_area=area, context=context, year=year
        )

    try:
        result = _run(_budget())
    except BudgetGenerationError as e:
        console.print(f"[red]✗[/red] Budget generation failed: {e}")
        raise typer.Exit(code=1)

    for chapter in result.chapters:
        console.print(f"\n[bold]{chapter.name}[/bold] ({chapter.subtotal} €)")
        for item in chapter.items:
            _print_item(item, indent=1)

    breakdown = result.cost_breakdown
    table = Table(title=result.title)
    table.add_column("Concept", style="cyan")
    table.add_column("Amount", justify="right", style="green")
    table.add_row("PEM", f"{breakdown.material_execution_price} €")
    table.add_row("Gastos generales", f"{breakdown.overhead_expenses} €")
    table.add_row("Beneficio industrial", f"{breakdown.industrial_benefit} €")
    table.add_row("IVA", f"{breakdown.tax} €")
    table.add_row("Ajuste global", f"{breakdown.global_adjustment} €")
    table.add_row("[bold]Total[/bold]", f"[bold]{breakdown.total} €[/bold]")
    console.print(table)

    if result.pending_review:
        console.print(f"[yellow]⚠[/yellow] {len(result.pending_review)} items need review:")
        for task in result.pending_review:
            console.print(f"  {task}", style="dim")

    if output:
        output.write_text(result.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[green]✓[/green] Saved to {output}")


@app.command(name="delete-year")
def delete_year(
    year: int = typer.Argument(..., help="Catalog year to remove"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete every catalog item of a year."""
    if not yes:
        typer.confirm(f"Delete the {year} catalog?", abort=True)

    async def _delete():
        return await get_services().store.delete_by_year(year)

    deleted = _run(_delete())
    console.print(f"[bold green]✓[/bold green] Deleted {deleted} items for {year}")


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI HTTP API."""
    import uvicorn

    typer.echo(f"Starting obracalc API on http://{host}:{port}")
    uvicorn.run("obracalc.web.app:app", host=host, port=port, reload=reload, workers=1)


def main():
    app()


if __name__ == "__main__":
    main()
