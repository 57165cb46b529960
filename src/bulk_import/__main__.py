"""Command-line entry point for the bulk image import pipeline."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from bulk_import.classifier import classify, is_supported_image, needs_conversion
from bulk_import.config_utils import CONFIG_PATH, load_settings
from bulk_import.controller import build_controller
from bulk_import.errors import BulkImportError, CommitError
from bulk_import.logging_utils import configure_logging
from bulk_import.report import (
    build_commit_table,
    build_failure_table,
    build_status_table,
    session_rows,
    write_session_csv,
)
from bulk_import.schema import ConversionState, RawItem

app = typer.Typer(help="Convert, group and commit batches of product photos.")
console = Console()
error_console = Console(stderr=True)
logger = logging.getLogger(__name__)


@app.callback()
def cli(
    ctx: typer.Context,
    config: Annotated[
        Path, typer.Option("--config", "-c", help="Path to the YAML configuration.")
    ] = CONFIG_PATH,
    debug: Annotated[bool, typer.Option(help="Enable debug logging.")] = False,
) -> None:
    try:
        settings = load_settings(config)
    except (OSError, ValueError, TypeError) as e:
        error_console.print(f"[bold red]Invalid configuration {config}: {e}[/bold red]")
        raise typer.Exit(code=1)

    log_file = settings.logging.file
    if log_file is None:
        log_file = os.getenv("BULK_IMPORT_LOG_FILE", "bulk_import.log")
    configure_logging(
        level=logging.DEBUG if debug else settings.logging.level,
        log_file=log_file,
        console=debug or not log_file,
        force=True,
    )
    ctx.obj = {"config": config, "debug": debug, "settings": settings}


def collect_files(paths: list[Path]) -> list[Path]:
    """Expand directories and keep supported images, in a stable order."""
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(
                sorted(p for p in path.rglob("*") if p.is_file() and is_supported_image(p.name))
            )
        elif path.is_file() and is_supported_image(path.name):
            files.append(path)
        else:
            logger.warning("Skipping %s: not a supported image", path)
    return files


@app.command("classify")
def classify_command(
    files: Annotated[list[str], typer.Argument(help="File names to classify.")],
) -> None:
    """Show the look key and view the importer would assign to each file."""
    table = Table(title="Filename Classification")
    table.add_column("File", style="cyan", overflow="fold")
    table.add_column("Group key", style="magenta")
    table.add_column("Subtype")
    table.add_column("Descriptor")
    table.add_column("Convert", justify="center")
    for name in files:
        classification = classify(Path(name).name)
        table.add_row(
            name,
            classification.group_key or "—",
            classification.subtype.value,
            classification.descriptor or "—",
            "yes" if needs_conversion(name) else "no",
        )
    console.print(table)


@app.command("run")
def run_command(
    ctx: typer.Context,
    paths: Annotated[
        list[Path], typer.Argument(help="Image files or directories to import.")
    ],
    retries: Annotated[
        int,
        typer.Option(min=0, help="How many times to retry failed files before grouping."),
    ] = 1,
    csv_output: Annotated[
        str,
        typer.Option(
            help="Path to save a CSV report of every file.", rich_help_panel="Output"
        ),
    ] = "",
) -> None:
    """Convert, group and commit a batch of images."""
    settings = ctx.obj["settings"]

    files = collect_files(paths)
    if not files:
        error_console.print("[bold red]No supported images found.[/bold red]")
        raise typer.Exit(code=1)

    progress = Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=error_console,
    )
    task_id = progress.add_task("Converting", total=len(files))
    finished: set[int] = set()
    finished_lock = threading.Lock()

    def _on_update(index: int, state: ConversionState) -> None:
        with finished_lock:
            if state.is_terminal:
                finished.add(index)
            else:
                finished.discard(index)
            progress.update(task_id, completed=len(finished))

    try:
        controller = build_controller(settings, on_item_update=_on_update)
    except (BulkImportError, ValueError) as e:
        error_console.print(f"[bold red]Could not start the import: {e}[/bold red]")
        raise typer.Exit(code=1)

    session = controller.submit(RawItem.from_path(path) for path in files)
    logger.info("Importing %d file(s)", len(files))

    with progress:
        controller.start()
        for attempt in range(1, retries + 1):
            if not controller.summary().failed:
                break
            progress.update(task_id, description=f"Retry {attempt}/{retries}")
            controller.retry_all_failed()

    console.print(build_status_table(session))
    failure_table = build_failure_table(session)
    if failure_table is not None:
        console.print(failure_table)

    exit_code = 0
    if controller.summary().done == 0:
        error_console.print("[bold red]No file converted successfully.[/bold red]")
        exit_code = 1
    else:
        controller.advance_to_grouping(allow_failed=True)
        try:
            committed = controller.commit()
        except CommitError as e:
            error_console.print(f"[bold red]{e}[/bold red]")
            exit_code = 1
        else:
            console.print(build_commit_table(committed))
        if failure_table is not None:
            exit_code = 1

    if csv_output:
        write_session_csv(session_rows(session), csv_output)
        console.print(f"Report written to {csv_output}")

    raise typer.Exit(code=exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
