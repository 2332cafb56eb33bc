"""
CSV Export
==========
Renders the records of one variant as a CSV document.

Every cell is double-quoted with internal quotes doubled; rows are joined
with ``\\n``. When any exported record belongs to a linked sheet-set, a
leading "Linked Group ID" column is added.
"""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from .models import Record, SheetVariant

GROUP_COLUMN = "Linked Group ID"
SCANNED_AT_FORMAT = "%Y-%m-%d %H:%M:%S"


def _info_row(record: Record) -> list[Any]:
    f = record.fields
    return [
        f.student_id, f.student_name, f.first_name, f.last_name, f.parent_name,
        f.school_name, f.date, f.grade, f.city, f.phone_number, f.email,
    ]


def _vibe_row(record: Record) -> list[Any]:
    f = record.fields
    return [f.student_id, *f.answers(), f.handwritten_statement]


def _stats_row(record: Record) -> list[Any]:
    f = record.fields
    return [f.student_id, *f.answers()]


COLUMNS: dict[SheetVariant, tuple[list[str], Callable[[Record], list[Any]]]] = {
    SheetVariant.INFO: (
        [
            "Student ID", "Student Name", "First Name", "Last Name",
            "Parent Name", "School", "Date", "Grade", "City", "Contact", "Email",
        ],
        _info_row,
    ),
    SheetVariant.VIBE: (
        ["Student ID", *(f"Q{i}" for i in range(1, 15)), "Q15 (Statement)"],
        _vibe_row,
    ),
    SheetVariant.STATS: (
        ["Student ID", *(f"Q{i}" for i in range(1, 16))],
        _stats_row,
    ),
}


def _write_rows(rows: Sequence[Sequence[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows([["" if cell is None else cell for cell in row] for row in rows])
    return buf.getvalue()[:-1]


def escape_csv(value: Any) -> str:
    """Quote one cell: None → "", internal quotes doubled."""
    return _write_rows([[value]])


def _scanned_at(record: Record) -> str:
    return record.created_at.astimezone().strftime(SCANNED_AT_FORMAT)


def generate_csv(records: Sequence[Record], variant: SheetVariant) -> Optional[str]:
    """
    Build the CSV document for one variant.

    Returns:
        CSV text, or None for a meta-mode variant or when no record of the
        variant is present.
    """
    variant = SheetVariant(variant)
    if variant not in COLUMNS:
        return None

    selected = [r for r in records if r.variant == variant]
    if not selected:
        return None

    headers, row_builder = COLUMNS[variant]
    with_group = any(r.group_id for r in selected)

    header = ([GROUP_COLUMN] if with_group else []) + headers + ["Scanned At"]
    rows = [header]
    for record in selected:
        cells = row_builder(record) + [_scanned_at(record)]
        if with_group:
            cells.insert(0, record.group_id)
        rows.append(cells)
    return _write_rows(rows)


def export_filename(variant: SheetVariant) -> str:
    return f"{SheetVariant(variant).label.replace(' ', '_')}_export.csv"


def parse_csv_line(line: str) -> list[str]:
    """Split one exported CSV line back into cell values."""
    return next(csv.reader([line]))
