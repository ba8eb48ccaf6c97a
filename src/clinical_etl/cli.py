"""Command Line Interface for the Clinical-ETL pipeline.

This module provides a CLI using Typer for running the ingest, normalize and
persist stages end-to-end on a local file and for inspecting stored records.

Security Impact:
    - Credentials are never printed; only store type, host and path
    - Every run is scoped to one tenant
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from clinical_etl import __version__
from clinical_etl.domain.ports import PipelineError, StoreError
from clinical_etl.infrastructure.logging_config import setup_logging
from clinical_etl.infrastructure.settings import settings
from clinical_etl.main import create_keyed_store, process_file

# Initialize Typer app and Rich console
app = typer.Typer(
    name="clinical-etl",
    help="Clinical-ETL: idempotent normalization pipeline for clinical records",
    add_completion=False
)
console = Console()


@app.command()
def ingest(
    input_file: Path = typer.Argument(..., help="Input file path (CSV, HL7 v2, or JSON)", exists=True, dir_okay=False),
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant the records belong to"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Source label (defaults to file:<name>)"),
    content_type: Optional[str] = typer.Option(None, "--content-type", help="Override the content type inferred from the extension"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Ingest a clinical file and run it through normalization and persistence.

    Examples:
        clinical-etl ingest data/labs.csv --tenant acme
        clinical-etl ingest data/oru.hl7 --tenant acme --source hl7v2:lab-a
        clinical-etl ingest data/study.json --tenant acme --content-type application/json
    """
    setup_logging(use_json=settings.json_logs, log_level="DEBUG" if verbose else settings.log_level)

    console.print(f"\n[bold blue]{settings.app_name} Pipeline[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {input_file}")
    console.print(f"[dim]Tenant:[/dim] {tenant}")
    console.print(f"[dim]Store:[/dim] {settings.store_config.db_type}")
    console.print(f"[dim]Replay policy:[/dim] {settings.replay_policy.value}")
    console.print()

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Processing records...", total=None)
            run = process_file(str(input_file), tenant, source=source, content_type=content_type)
            progress.update(task, completed=True)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Ingestion interrupted by user")
        raise typer.Exit(code=130)
    except (PipelineError, OSError, ValueError) as e:
        console.print(f"\n[red]✗[/red] Ingestion failed: {str(e)}")
        if verbose:
            console.print_exception()
        raise typer.Exit(code=1)

    counters = run.metrics.get("counters", {})
    console.print("\n[bold]Ingestion Summary:[/bold]")
    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    for receipt in run.receipts:
        summary_table.add_row("Raw blob:", receipt.key)
    summary_table.add_row("Records normalized:", f"[bold]{counters.get('normalize_count', 0):,}[/bold]")
    summary_table.add_row("Records persisted:", f"[green]{counters.get('persist_success_count', 0):,}[/green]")
    summary_table.add_row("Replays ignored:", f"{counters.get('persist_duplicate_count', 0):,}")
    dropped = counters.get("dto_invalid_count", 0) + counters.get("fhir_invalid_count", 0)
    summary_table.add_row("Records dropped:", f"[yellow]{dropped:,}[/yellow]" if dropped else "0")
    summary_table.add_row("Failed deliveries:", f"{run.item_failures:,}")
    summary_table.add_row(
        "Dead-lettered:", f"[red]{run.dead_lettered:,}[/red]" if run.dead_lettered else "0"
    )
    console.print(summary_table)

    if run.failed:
        console.print("\n[yellow]⚠[/yellow] Ingestion completed with failures")
        raise typer.Exit(code=1)
    console.print("\n[green]✓[/green] Ingestion completed successfully")


@app.command()
def show(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant (omit to list every tenant holding the entity)"),
    entity_type: str = typer.Option(..., "--entity-type", help="observation, study or patient"),
    entity_id: str = typer.Option(..., "--entity-id", help="Entity identifier"),
) -> None:
    """Print a stored record, or every tenant's copy of an entity."""
    try:
        store = create_keyed_store(settings.store_config)
    except StoreError as e:
        console.print(f"[red]✗[/red] Failed to initialize store: {str(e)}")
        raise typer.Exit(code=1)

    try:
        if tenant:
            record = store.get(tenant, entity_type, entity_id)
            records = [record] if record is not None else []
        else:
            records = store.list_by_entity(entity_type, entity_id)
    except StoreError as e:
        console.print(f"[red]✗[/red] Lookup failed: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        store.close()

    if not records:
        console.print(f"[yellow]⚠[/yellow] No record found for {entity_type} {entity_id}")
        raise typer.Exit(code=1)

    for record in records:
        record_table = Table(show_header=False, box=None, padding=(0, 2))
        record_table.add_row("PK:", record.pk)
        record_table.add_row("SK:", record.sk)
        record_table.add_row("Version:", f"[bold]{record.version}[/bold]")
        record_table.add_row("Updated:", record.updated_at)
        record_table.add_row("Idempotency key:", record.idempotency_key or "-")
        console.print(record_table)
        console.print_json(json.dumps(record.attributes))
        console.print()


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    store_config = settings.store_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", __version__)
    info_table.add_row("Store Type:", store_config.db_type)
    if store_config.db_type == "duckdb":
        info_table.add_row("Store Path:", store_config.db_path or ":memory:")
    elif store_config.db_type == "postgresql":
        info_table.add_row("Store Host:", store_config.host or "-")
        info_table.add_row("Store Name:", store_config.database or "-")

    info_table.add_row("Blob Root:", settings.blob_root)
    info_table.add_row("Batch Size:", str(settings.batch_size))
    info_table.add_row("Batch Budget:", f"{settings.batch_budget_seconds:g}s")
    info_table.add_row("Max Receive Count:", str(settings.max_receive_count))
    info_table.add_row("Replay Policy:", settings.replay_policy.value)
    info_table.add_row("Audit:", "Enabled" if settings.audit_enabled else "Disabled")

    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """Clinical-ETL: idempotent normalization pipeline for clinical records."""
    if version:
        console.print(f"Clinical-ETL v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


if __name__ == "__main__":
    app()
