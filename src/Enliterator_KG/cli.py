"""Command line interface for operating pipeline batches.

The bundled pipeline store is in-memory, so batch ids are only meaningful
inside the process that created them: ``ingest --follow`` runs a batch end
to end and the remaining commands operate on the process application.
"""

import time
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from Enliterator_KG.application import Application, build_application, load_collaborators
from Enliterator_KG.config.settings import get_settings
from Enliterator_KG.observability.metrics import start_metrics_server
from Enliterator_KG.pipeline.controller import BatchStatusView, IngestSource
from Enliterator_KG.pipeline.errors import PipelineError
from Enliterator_KG.pipeline.models import PipelineStage
from Enliterator_KG.utils.logging import configure_logging

app = typer.Typer(help="Enliterator batch pipeline operations")
console = Console()

TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".rst", ".csv", ".json"}

_state: dict[str, Application] = {}


@app.callback()
def main(
    collaborators: str = typer.Option(
        None,
        "--collaborators",
        "-c",
        envvar="EK_COLLABORATORS",
        help="Extraction collaborators as 'module:factory'",
    ),
    neo4j: bool = typer.Option(False, "--neo4j", help="Write graphs to Neo4j instead of memory"),
    metrics: bool = typer.Option(False, "--metrics", help="Expose Prometheus metrics while running"),
) -> None:
    settings = get_settings()
    configure_logging(settings=settings.logging)
    if metrics and settings.metrics.enabled:
        start_metrics_server(settings.metrics.port)
    _state["app"] = build_application(
        settings,
        collaborators=load_collaborators(collaborators),
        use_neo4j=neo4j,
    )


def _application() -> Application:
    return _state["app"]


# ==============================================================================
# RENDERING
# ==============================================================================


def display_status(view: BatchStatusView) -> None:
    table = Table(title=f"Batch {view.batch_id} ({view.name})")
    table.add_column("Stage", style="cyan")
    for column in ("total", "success", "failed", "skipped", "pending", "in_progress"):
        table.add_column(column, justify="right")
    for item_stage, counts in view.counts.items():
        table.add_row(item_stage, *(str(counts.get(column, 0)) for column in (
            "total", "success", "failed", "skipped", "pending", "in_progress"
        )))
    console.print(table)
    style = "red" if view.status.is_failure else "green"
    console.print(f"Status: {view.status.value}", style=style)
    if view.paused:
        console.print("Paused", style="yellow")
    if view.literacy_score is not None:
        console.print(f"Literacy score: {view.literacy_score:.2f}")
    for warning in view.quality_warnings:
        console.print(f"⚠ {warning['code']}: {warning['message']}", style="yellow")
    if view.error:
        console.print(Panel(str(view.error.get("title")), title="Error", style="red"))


def _fail(exc: PipelineError) -> None:
    console.print(f"✗ {exc.report.title}", style="red")
    raise typer.Exit(code=1)


def _collect_sources(paths: list[Path]) -> list[IngestSource]:
    sources: list[IngestSource] = []
    for path in paths:
        files = sorted(p for p in path.rglob("*") if p.is_file()) if path.is_dir() else [path]
        for file in files:
            if file.suffix.lower() not in TEXT_SUFFIXES:
                continue
            sources.append(IngestSource(pointer=str(file), content=file.read_text(encoding="utf-8")))
    return sources


# ==============================================================================
# COMMANDS
# ==============================================================================


@app.command()
def ingest(
    paths: list[Path] = typer.Argument(..., exists=True, help="Files or directories to ingest"),
    name: str = typer.Option("cli batch", "--name", "-n", help="Batch name"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Serve queued work until the batch settles"),
) -> None:
    """Create a batch from text files and run it through the pipeline."""
    application = _application()
    controller = application.controller
    sources = _collect_sources(paths)
    if not sources:
        console.print("✗ No text files found", style="red")
        raise typer.Exit(code=1)
    batch = controller.create_batch(name)
    console.print(Panel(f"Batch {batch.id}: {len(sources)} sources", style="bold blue"))
    try:
        report = controller.ingest(batch.id, sources)
        console.print(f"✓ {report.created} items created, {report.existing} already known", style="green")
        controller.run(batch.id)
        if follow:
            while application.queue.pending():
                if not application.worker.run_once():
                    next_task = application.queue.peek()
                    wait = max(next_task.available_at - application.queue.now(), 0.0) if next_task else 0.0
                    with console.status(f"Waiting {wait:.0f}s for queued work"):
                        time.sleep(min(wait, application.settings.worker.poll_interval_seconds))
    except PipelineError as exc:
        display_status(controller.get_batch_status(batch.id))
        _fail(exc)
    display_status(controller.get_batch_status(batch.id))


@app.command()
def status(batch_id: str = typer.Argument(..., help="Batch id")) -> None:
    """Show stage counts, literacy score and quality warnings."""
    try:
        display_status(_application().controller.get_batch_status(batch_id))
    except PipelineError as exc:
        _fail(exc)


@app.command()
def logs(
    batch_id: str = typer.Argument(..., help="Batch id"),
    label: str = typer.Option(None, "--label", "-l", help="pipeline, errors or stage_<n>"),
) -> None:
    """Print the operator log of a batch."""
    try:
        entries = _application().controller.list_logs(batch_id, label=label)
    except PipelineError as exc:
        _fail(exc)
        return
    table = Table(title=f"Logs for {batch_id}")
    table.add_column("At")
    table.add_column("Label", style="cyan")
    table.add_column("Level")
    table.add_column("Message")
    for entry in entries:
        table.add_row(entry.at.isoformat(timespec="seconds"), entry.label, entry.level.value, entry.message)
    console.print(table)


@app.command()
def pause(batch_id: str = typer.Argument(..., help="Batch id")) -> None:
    """Stop the batch before its next stage starts."""
    try:
        display_status(_application().controller.pause(batch_id))
    except PipelineError as exc:
        _fail(exc)


@app.command()
def resume(batch_id: str = typer.Argument(..., help="Batch id")) -> None:
    """Re-enter the batch at its recorded stage."""
    controller = _application().controller
    try:
        controller.resume(batch_id)
        display_status(controller.get_batch_status(batch_id))
    except PipelineError as exc:
        _fail(exc)


@app.command()
def retry(
    batch_id: str = typer.Argument(..., help="Batch id"),
    stage: PipelineStage = typer.Argument(..., help="Item-tracked stage whose failed items are retried"),
) -> None:
    """Return failed items of a stage to pending."""
    try:
        reset = _application().controller.retry_failed_items(batch_id, stage)
    except PipelineError as exc:
        _fail(exc)
        return
    console.print(f"✓ {reset} items reset to pending", style="green")


@app.command()
def worker(once: bool = typer.Option(False, "--once", help="Drain due tasks and exit")) -> None:
    """Run queued pipeline and embedding monitor tasks."""
    application = _application()
    if once:
        ran = application.worker.drain()
        console.print(f"✓ Ran {ran} tasks, {application.queue.pending()} still scheduled", style="green")
        return
    console.print(Panel("Serving pipeline worker", style="bold blue"))
    try:
        application.worker.serve()
    except KeyboardInterrupt:
        application.worker.shutdown()
    finally:
        application.close()


if __name__ == "__main__":
    app()
