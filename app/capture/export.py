"""CSV and Excel export of captured results, plus links CSV import/export."""

from __future__ import annotations

import io
from pathlib import Path
from typing import IO, Iterable, List, Optional, Union

import pandas as pd

from . import config
from .job_store import Job
from .rows import LINK_COLUMNS, RESULT_COLUMNS, Row, validate_link_columns
from .utils import timestamp_slug


def results_frame(job: Job) -> pd.DataFrame:
    """All results of ``job`` in ``RESULT_COLUMNS`` order (pending rows blank)."""

    records = [result.to_record() for result in job.results]
    return pd.DataFrame(records, columns=list(RESULT_COLUMNS))


def results_csv_text(job: Job) -> str:
    return results_frame(job).to_csv(index=False)


def write_results_csv(job: Job, dest_path: Optional[Path] = None) -> Path:
    if dest_path is None:
        config.EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
        dest_path = config.EXPORTS_DIR / f"message_bodies_{timestamp_slug()}.csv"
    dest_path = Path(dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    results_frame(job).to_csv(dest_path, index=False)
    return dest_path


def export_results_to_excel(job: Job, dest_path: Optional[Path] = None) -> Path:
    """Workbook with all results, captured/error splits and summaries."""

    df = results_frame(job)
    processed = df.iloc[: min(job.cursor, len(df))]
    captured = processed[processed["captured_at"] != ""].copy()
    errors = processed[processed["error"] != ""].copy()

    def safe_pivot(frame: pd.DataFrame, by: List[str]) -> pd.DataFrame:
        if frame.empty:
            return pd.DataFrame()
        return frame.groupby(by).size().reset_index(name="count").sort_values("count", ascending=False)

    summary_error = safe_pivot(errors, ["error"])
    summary_source = safe_pivot(captured, ["capture_source"])

    if dest_path is None:
        config.EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
        dest_path = config.EXPORTS_DIR / f"message_bodies_{timestamp_slug()}.xlsx"
    dest_path = Path(dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="All")
        captured.to_excel(writer, index=False, sheet_name="Captured")
        errors.to_excel(writer, index=False, sheet_name="Errors")
        if not summary_error.empty:
            summary_error.to_excel(writer, index=False, sheet_name="Summary_Error")
        if not summary_source.empty:
            summary_source.to_excel(writer, index=False, sheet_name="Summary_Source")
    return dest_path


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------


def links_frame(rows: Iterable[Row]) -> pd.DataFrame:
    return pd.DataFrame([row.to_link() for row in rows], columns=list(LINK_COLUMNS))


def links_csv_text(rows: Iterable[Row]) -> str:
    return links_frame(rows).to_csv(index=False)


def write_links_csv(rows: Iterable[Row], dest_path: Optional[Path] = None) -> Path:
    if dest_path is None:
        config.EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
        dest_path = config.EXPORTS_DIR / f"message_links_{timestamp_slug()}.csv"
    dest_path = Path(dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    links_frame(rows).to_csv(dest_path, index=False)
    return dest_path


def read_links_csv(source: Union[str, Path, IO[str]]) -> List[Row]:
    """Load rows from a links CSV; raise ``ValueError`` when it is unusable.

    Duplicate ``(prospect_id, message id)`` pairs keep their first occurrence;
    rows missing an id are kept as-is so the job can record them.
    """

    if isinstance(source, str) and "\n" in source:
        source = io.StringIO(source)
    df = pd.read_csv(source, dtype=str, keep_default_na=False)
    df.columns = [str(column).strip() for column in df.columns]
    records = df.to_dict(orient="records")
    problem = validate_link_columns(df.columns, records)
    if problem:
        raise ValueError(problem)

    rows: List[Row] = []
    seen = set()
    for record in records:
        row = Row.from_link(record)
        if row.target_message_id:
            if row.dedup_key in seen:
                continue
            seen.add(row.dedup_key)
        rows.append(row)
    return rows


__all__ = [
    "results_frame",
    "results_csv_text",
    "write_results_csv",
    "export_results_to_excel",
    "links_frame",
    "links_csv_text",
    "write_links_csv",
    "read_links_csv",
]
