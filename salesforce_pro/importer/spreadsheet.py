from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

XLSX_SUFFIXES = {".xlsx", ".xlsm"}
CSV_SUFFIXES = {".csv", ".txt"}


class ImportFileError(Exception):
    """The spreadsheet cannot be read at all; nothing from it can be imported."""


@dataclass
class SheetRow:
    row_number: int
    values: dict[str, Any]


@dataclass
class SheetData:
    headers: list[str]
    rows: list[SheetRow] = field(default_factory=list)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _build_sheet(raw_rows: list[tuple[Any, ...]], *, first_row_number: int = 1) -> SheetData:
    header_index = next((i for i, row in enumerate(raw_rows) if not all(_is_blank(cell) for cell in row)), None)
    if header_index is None:
        raise ImportFileError("Spreadsheet is empty")

    headers = [str(cell).strip() if not _is_blank(cell) else "" for cell in raw_rows[header_index]]
    if not any(headers):
        raise ImportFileError("Spreadsheet has no header row")

    sheet = SheetData(headers=[header for header in headers if header])
    for offset, row in enumerate(raw_rows[header_index + 1 :], start=header_index + 1):
        if all(_is_blank(cell) for cell in row):
            continue
        values = {header: row[i] if i < len(row) else None for i, header in enumerate(headers) if header}
        sheet.rows.append(SheetRow(row_number=first_row_number + offset, values=values))
    return sheet


def read_xlsx(content: bytes) -> SheetData:
    try:
        workbook = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise ImportFileError(f"Could not read spreadsheet: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        raw_rows = list(sheet.iter_rows(values_only=True))
    finally:
        workbook.close()
    return _build_sheet(raw_rows)


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def read_csv(content: bytes) -> SheetData:
    text = _decode(content)
    sample = text[:4096]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=";,\t")
    except csv.Error:
        dialect = csv.excel
    try:
        raw_rows = [tuple(row) for row in csv.reader(io.StringIO(text), dialect)]
    except csv.Error as exc:
        raise ImportFileError(f"Could not read CSV file: {exc}") from exc
    return _build_sheet(raw_rows)


def read_spreadsheet(path: str | Path) -> SheetData:
    source = Path(path)
    suffix = source.suffix.lower()
    if suffix not in XLSX_SUFFIXES | CSV_SUFFIXES:
        raise ImportFileError(f"Unsupported file type: {suffix or source.name}")
    try:
        content = source.read_bytes()
    except OSError as exc:
        raise ImportFileError(f"Could not open {source}: {exc}") from exc
    if suffix in XLSX_SUFFIXES:
        return read_xlsx(content)
    return read_csv(content)
