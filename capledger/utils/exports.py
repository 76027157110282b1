from __future__ import annotations

import io
from collections.abc import Iterable
from typing import Any

import pandas as pd

SUMMARY_COLUMNS = [
    "GroupingKey",
    "ItemCode",
    "Item",
    "Status",
    "Score",
    "Answered",
    "Questions",
    "Tags",
    "UpdatedAt",
    "FinalizedAt",
]


def make_summary_frame(rows: Iterable[dict[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame(list(rows))
    # Guarantee column ordering and presence for consumers opening the sheet in Excel
    for column in SUMMARY_COLUMNS:
        if column not in frame.columns:
            frame[column] = pd.NA
    frame = frame[SUMMARY_COLUMNS]
    if not frame.empty:
        frame = frame.sort_values(["GroupingKey", "ItemCode", "Status"], kind="stable")
    return frame


def make_xlsx_export_bytes(rows: Iterable[dict[str, Any]]) -> bytes:
    """Create a single-sheet Excel summary, one row per assessment."""
    frame = make_summary_frame(rows)

    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        frame.to_excel(writer, index=False, sheet_name="Assessments")
    return bio.getvalue()
