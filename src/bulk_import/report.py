"""Run reports: per-file CSV export and rich summary tables."""

from __future__ import annotations

import csv
from pathlib import Path

import pandas as pd
from rich.table import Table

from bulk_import.schema import CommittedGroup, ConversionStatus
from bulk_import.session import PipelineSession

REPORT_COLUMNS = [
    "index",
    "original_filename",
    "status",
    "group_key",
    "subtype",
    "output_url",
    "error_message",
]


def session_rows(session: PipelineSession) -> list[dict]:
    """One flat row per submitted file, in submission order."""
    rows = []
    for index, (raw_item, state, classification) in enumerate(
        zip(session.raw_items, session.states, session.classifications)
    ):
        rows.append(
            {
                "index": index,
                "original_filename": raw_item.original_filename,
                "status": state.status.value,
                "group_key": classification.group_key or "",
                "subtype": classification.subtype.value,
                "output_url": state.output_url or "",
                "error_message": state.error_message or "",
            }
        )
    return rows


def write_session_csv(rows: list[dict], file_path: Path | str) -> None:
    """Write report rows to a CSV file using pandas."""
    if not rows:
        return

    df = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    df.to_csv(file_path, index=False, quoting=csv.QUOTE_ALL)


def build_status_table(session: PipelineSession) -> Table:
    counts = session.counts()
    table = Table(title="Files by Status")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="magenta")
    for status in ConversionStatus:
        if counts[status]:
            table.add_row(status.value, str(counts[status]))
    table.add_row("total", str(len(session)))
    return table


def build_failure_table(session: PipelineSession) -> Table | None:
    failed = session.indices_with_status(ConversionStatus.FAILED)
    if not failed:
        return None
    table = Table(title="Failed Files", header_style="bold red")
    table.add_column("File", overflow="fold")
    table.add_column("Error", overflow="fold")
    for index in failed:
        table.add_row(
            session.raw_items[index].original_filename,
            session.states[index].error_message or "—",
        )
    return table


def build_commit_table(groups: list[CommittedGroup]) -> Table:
    table = Table(title="Committed Groups")
    table.add_column("Group", style="cyan", overflow="fold")
    table.add_column("Items", style="magenta", justify="right")
    table.add_column("Subtypes", overflow="fold")
    for group in groups:
        subtypes = sorted({item.subtype.value for item in group.items})
        table.add_row(group.group_name, str(len(group.items)), ", ".join(subtypes))
    return table
