"""Command line for running the API and inspecting local traceability data."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from herbtrace.config import Config, get_config
from herbtrace.core.workflow import BatchNotFound
from herbtrace.logging_config import configure_logging
from herbtrace.service import TraceabilityService, create_service

app = typer.Typer(help="Herb supply-chain traceability: workflow, provenance and sync")

DataDirOption = typer.Option(
    None,
    "--data-dir",
    "-d",
    file_okay=False,
    dir_okay=True,
    help="Local data directory (default: HERBTRACE_DATA_DIR)",
)


def _service(data_dir: Optional[Path]) -> TraceabilityService:
    config = get_config()
    if data_dir is not None:
        config = type("CliConfig", (config,), {"DATA_DIR": data_dir})
    return create_service(config)


@app.callback()
def main(
    log_level: str = typer.Option(Config.LOG_LEVEL, "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    configure_logging(level=log_level, json_format=json_logs)


@app.command()
def serve(
    host: str = typer.Option(Config.HOST, "--host", help="Bind address"),
    port: int = typer.Option(Config.PORT, "--port", "-p", help="Bind port"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from herbtrace.api import create_app

    get_config()
    uvicorn.run(create_app(), host=host, port=port, log_level=Config.LOG_LEVEL)


@app.command()
def status(data_dir: Optional[Path] = DataDirOption) -> None:
    """Show batch counts by workflow status and sync queue counts."""
    service = _service(data_dir)
    batches = service.get_all_batches()

    typer.echo(f"Batches: {len(batches)}")
    counts = {}
    for batch in batches:
        counts[batch.status.value] = counts.get(batch.status.value, 0) + 1
    for name, count in sorted(counts.items()):
        typer.echo(f"  {name}: {count}")

    sync = service.sync_queue.status()
    typer.echo(
        f"Sync queue: {sync.total} items "
        f"({sync.pending} pending, {sync.completed} completed, {sync.failed} failed)"
    )


@app.command()
def sync(
    data_dir: Optional[Path] = DataDirOption,
    force: bool = typer.Option(
        False, "--force", "-f", help="Reset failed items to pending before syncing"
    ),
) -> None:
    """Deliver pending sync items to the authoritative store."""
    queue = _service(data_dir).sync_queue
    delivered = asyncio.run(queue.force_sync_all() if force else queue.drain())
    result = queue.status()
    typer.echo(
        f"Delivered {delivered} items; {result.pending} pending, {result.failed} failed"
    )
    if result.failed:
        raise typer.Exit(code=1)


@app.command("clear-completed")
def clear_completed(data_dir: Optional[Path] = DataDirOption) -> None:
    """Remove delivered items from the sync queue."""
    removed = _service(data_dir).sync_queue.clear_completed()
    typer.echo(f"Removed {removed} completed items")


@app.command()
def provenance(
    qr_code: str = typer.Argument(..., help="Batch QR code"),
    data_dir: Optional[Path] = DataDirOption,
    as_json: bool = typer.Option(False, "--json", help="Print the full bundle as JSON"),
) -> None:
    """Print the provenance timeline and traceability scores of a batch."""
    try:
        bundle = _service(data_dir).get_provenance(qr_code)
    except BatchNotFound as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(bundle.to_dict(), indent=2))
        return

    typer.echo(f"Provenance for {qr_code}")
    for event in bundle.events:
        typer.echo(f"  {event.performed_at.isoformat()}  [{event.kind.value}] {event.summary}")
    scores = bundle.scores
    typer.echo(
        f"Traceability score: {bundle.score():.1f} "
        f"(completeness {scores.completeness:.0f}, accuracy {scores.accuracy:.0f}, "
        f"timeliness {scores.timeliness:.0f}, transparency {scores.transparency:.0f}, "
        f"verifiability {scores.verifiability:.0f})"
    )


if __name__ == "__main__":
    app()
