from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import openpyxl

from briefing.models import Report, ReportFile

log = logging.getLogger(__name__)

_INT_RE = re.compile(r"^[-+]?\d+$")
_FLOAT_RE = re.compile(r"^[-+]?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")
_DELIMITERS = ",;\t|"

CSV_MIME_TYPES = ("text/csv", "application/csv", "text/plain")
XLSX_SUFFIXES = (".xlsx", ".xlsm")


@dataclass
class ParsedTable:
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


def coerce_value(value: object) -> object:
    """Best-effort dynamic typing: numeric strings become numbers, booleans become bools."""
    if not isinstance(value, str):
        return value
    s = value.strip()
    if s == "":
        return None
    lower = s.lower()
    if lower in ("true", "false"):
        return lower == "true"
    if _INT_RE.match(s):
        # Leading zeros are identifiers (zip codes, SKUs), not numbers
        if len(s.lstrip("+-")) > 1 and s.lstrip("+-").startswith("0"):
            return s
        return int(s)
    if _FLOAT_RE.match(s):
        try:
            return float(s)
        except ValueError:
            return s
    return s


def _unique_headers(raw: Iterable[object]) -> list[str]:
    """Trim headers, name blanks, and suffix duplicates so every column is unique."""
    seen: dict[str, int] = {}
    out: list[str] = []
    for idx, h in enumerate(raw):
        name = str(h).strip() if h is not None else ""
        if not name:
            name = f"column_{idx + 1}"
        if name in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
            while candidate in seen:
                seen[name] += 1
                candidate = f"{name}_{seen[name]}"
            name = candidate
        seen.setdefault(name, 0)
        out.append(name)
    return out


def _sniff_delimiter(sample: str) -> str:
    try:
        return csv.Sniffer().sniff(sample, delimiters=_DELIMITERS).delimiter
    except csv.Error:
        return ","


def _build_rows(records: Iterable[list[object]], columns: list[str], errors: list[str],
                start_line: int = 2) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    width = len(columns)
    for offset, record in enumerate(records):
        if not record or all(v is None or str(v).strip() == "" for v in record):
            continue
        line = start_line + offset
        if len(record) < width:
            errors.append(f"Row {line}: too few fields (expected {width}, got {len(record)})")
        elif len(record) > width:
            errors.append(f"Row {line}: too many fields (expected {width}, got {len(record)})")
        padded = list(record[:width]) + [None] * (width - len(record))
        rows.append({col: coerce_value(val) for col, val in zip(columns, padded)})
    return rows


def parse_csv(content: str) -> ParsedTable:
    """Parse delimited text with a header row into typed row records."""
    content = content.lstrip("\ufeff")
    if not content.strip():
        return ParsedTable()
    delimiter = _sniff_delimiter(content[:4096])
    reader = csv.reader(io.StringIO(content), delimiter=delimiter)
    errors: list[str] = []
    try:
        header: list[str] | None = None
        records: list[list[object]] = []
        for record in reader:
            if header is None:
                if not record or all(not c.strip() for c in record):
                    continue
                header = record
                continue
            records.append(list(record))
    except csv.Error as exc:
        errors.append(f"Line {reader.line_num}: {exc}")
    if header is None:
        return ParsedTable(errors=errors)
    columns = _unique_headers(header)
    rows = _build_rows(records, columns, errors)
    return ParsedTable(rows=rows, columns=columns, errors=errors)


def parse_xlsx(file_path: str | Path) -> ParsedTable:
    """Parse the first worksheet of an XLSX workbook (header on the first non-empty row)."""
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        it = ws.iter_rows(values_only=True)
        header: tuple | None = None
        for row in it:
            if row and any(c is not None and str(c).strip() for c in row):
                header = row
                break
        if header is None:
            return ParsedTable()
        columns = _unique_headers(header)
        # Trailing empty cells are common in sheets; trim before width checks
        records = [list(_rstrip_none(row)) for row in it]
        errors: list[str] = []
        rows = _build_rows(records, columns, errors)
        return ParsedTable(rows=rows, columns=columns, errors=errors)
    finally:
        wb.close()


def _rstrip_none(row: tuple) -> tuple:
    end = len(row)
    while end > 0 and row[end - 1] is None:
        end -= 1
    return row[:end]


def is_tabular(rf: ReportFile) -> bool:
    name = (rf.original_name or "").lower()
    return (
        rf.mime_type in CSV_MIME_TYPES and not name.endswith(XLSX_SUFFIXES)
        or name.endswith(".csv")
        or name.endswith(XLSX_SUFFIXES)
    )


def parse_report_file(rf: ReportFile) -> ParsedTable:
    path = Path(rf.path)
    if (rf.original_name or "").lower().endswith(XLSX_SUFFIXES):
        return parse_xlsx(path)
    return parse_csv(path.read_text(encoding="utf-8-sig"))


def ingest_report_files(report: Report) -> list[dict[str, Any]]:
    """Parse every tabular file attached to *report* and return the combined rows.

    A file that fails to parse is logged and skipped; the rest of the batch
    continues.  Parsed data is stored on each ReportFile (caller must commit).
    """
    all_rows: list[dict[str, Any]] = []
    for rf in report.files:
        if not is_tabular(rf):
            continue
        try:
            parsed = parse_report_file(rf)
        except Exception as exc:
            log.warning("Failed to parse %s for report %s: %s", rf.original_name, report.id, exc)
            continue
        if parsed.errors:
            log.info("Parsed %s with %d warnings (first: %s)",
                     rf.original_name, len(parsed.errors), parsed.errors[0])
        rf.parsed_data_json = json.dumps(parsed.rows, default=str)
        rf.columns_json = json.dumps(parsed.columns)
        rf.row_count = parsed.row_count
        all_rows.extend(parsed.rows)
    return all_rows
