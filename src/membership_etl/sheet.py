"""membership_etl.sheet

Tabular input model and header resolution.

A parsed sheet is a list of ImportRow values: ordered mappings from the
(trimmed) column header to a tagged Cell.  resolve_field() finds the cell
for a logical field given a prioritized list of header aliases, tolerating
the header drift between spreadsheet exports:

  1. exact, case-sensitive header match
  2. case-insensitive exact match
  3. case-insensitive substring match (header contains alias), skipping the
     generic aliases 'Address' and 'Name'
  4. 'Residential Address' lists also match any header containing both
     'residential' and 'address'
  5. otherwise MISSING, which is distinct from a present-but-blank cell
"""

from __future__ import annotations

import csv
import enum
import io
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Any

from openpyxl import load_workbook

from membership_etl.normalize import trim

EXCEL_SUFFIXES = (".xlsx", ".xlsm")
CSV_SUFFIXES = (".csv",)

# Generic aliases that would over-match in the substring pass
GENERIC_ALIASES = frozenset({"Address", "Name"})

RESIDENTIAL_ADDRESS = "residential address"

_EMPTY_HEADER = "__EMPTY"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SheetFormatError(ValueError):
    """Raised when an input file cannot be read as a spreadsheet."""


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------

class CellKind(enum.Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    EMPTY = "empty"


@dataclass(frozen=True)
class Cell:
    """One spreadsheet cell tagged with its value kind."""

    kind: CellKind
    value: str | float | int | datetime | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "Cell":
        if raw is None:
            return cls(CellKind.EMPTY)
        if isinstance(raw, bool):
            return cls(CellKind.TEXT, "TRUE" if raw else "FALSE")
        if isinstance(raw, (int, float)):
            return cls(CellKind.NUMBER, raw)
        if isinstance(raw, datetime):
            return cls(CellKind.DATE, raw)
        if isinstance(raw, date):
            return cls(CellKind.DATE, datetime(raw.year, raw.month, raw.day))
        if isinstance(raw, time):
            return cls(CellKind.TEXT, raw.isoformat())
        text = str(raw)
        if not text.strip():
            return cls(CellKind.EMPTY, text)
        return cls(CellKind.TEXT, text)

    @property
    def is_blank(self) -> bool:
        return self.kind is CellKind.EMPTY

    def as_text(self) -> str | None:
        """Trimmed text rendering; None for blank cells.

        Integral floats render without a trailing '.0' so long digit strings
        (national IDs, phone numbers) survive a numeric cell type.
        """
        if self.kind is CellKind.EMPTY:
            return None
        if self.kind is CellKind.NUMBER:
            if isinstance(self.value, float) and self.value.is_integer():
                return f"{self.value:.0f}"
            return str(self.value)
        if self.kind is CellKind.DATE:
            return self.value.isoformat()  # type: ignore[union-attr]
        return trim(str(self.value))


class _Missing:
    """Sentinel type for a logical field whose column is absent."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

class ImportRow(Mapping[str, Cell]):
    """Ordered header → Cell mapping for one data row."""

    def __init__(self, cells: Mapping[str, Cell] | Sequence[tuple[str, Cell]] = ()) -> None:
        items = cells.items() if isinstance(cells, Mapping) else cells
        self._cells: dict[str, Cell] = dict(items)

    @classmethod
    def from_values(cls, values: Mapping[str, Any]) -> "ImportRow":
        """Build a row from raw values, e.g. {'Email': 'a@b.com', 'Age': 31}."""
        return cls({header: Cell.from_raw(raw) for header, raw in values.items()})

    def __getitem__(self, header: str) -> Cell:
        return self._cells[header]

    def __iter__(self) -> Iterator[str]:
        return iter(self._cells)

    def __len__(self) -> int:
        return len(self._cells)

    def __repr__(self) -> str:
        return f"ImportRow({self._cells!r})"

    @property
    def headers(self) -> list[str]:
        return list(self._cells)

    def is_blank(self) -> bool:
        return all(cell.is_blank for cell in self._cells.values())

    def as_text_dict(self) -> dict[str, str]:
        """Header → text rendering ('' for blanks), for CSV reject output."""
        return {h: (c.as_text() or "") for h, c in self._cells.items()}


# ---------------------------------------------------------------------------
# Header resolution
# ---------------------------------------------------------------------------

def resolve_field(row: Mapping[str, Cell], aliases: Sequence[str]) -> Cell | _Missing:
    """Return the cell for the first matching alias, or MISSING."""
    headers = list(row)

    # Step 1: exact
    for alias in aliases:
        if alias in row:
            return row[alias]

    # Step 2: case-insensitive exact
    for alias in aliases:
        key = alias.lower()
        for header in headers:
            if header.lower() == key:
                return row[header]

    # Step 3: case-insensitive substring, generic aliases excluded
    for alias in aliases:
        if alias in GENERIC_ALIASES:
            continue
        key = alias.lower()
        for header in headers:
            if key in header.lower():
                return row[header]

    # Step 4: residential address fallback
    if any(alias.lower() == RESIDENTIAL_ADDRESS for alias in aliases):
        for header in headers:
            lowered = header.lower()
            if "residential" in lowered and "address" in lowered:
                return row[header]

    return MISSING


def resolve_header(headers: Sequence[str], aliases: Sequence[str]) -> str | None:
    """Name of the header resolve_field() would pick, or None."""
    probe = ImportRow({h: Cell(CellKind.TEXT, h) for h in headers})
    cell = resolve_field(probe, aliases)
    if cell is MISSING:
        return None
    return cell.value  # type: ignore[union-attr,return-value]


def resolve_text(row: Mapping[str, Cell], aliases: Sequence[str]) -> str | None:
    """resolve_field() rendered as trimmed text; None when missing or blank."""
    cell = resolve_field(row, aliases)
    if cell is MISSING:
        return None
    return cell.as_text()  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Tabular file parser
# ---------------------------------------------------------------------------

def normalize_headers(raw_headers: Sequence[Any]) -> list[str]:
    """Strip header text; name blank headers __EMPTY and suffix duplicates _1, _2…"""
    seen: dict[str, int] = {}
    headers: list[str] = []
    for raw in raw_headers:
        name = trim(str(raw)) if raw is not None else None
        base = name or _EMPTY_HEADER
        count = seen.get(base, 0)
        seen[base] = count + 1
        headers.append(base if count == 0 else f"{base}_{count}")
    return headers


def _rows_from_matrix(matrix: Iterator[Sequence[Any]]) -> list[ImportRow]:
    try:
        header_values = next(matrix)
    except StopIteration:
        return []
    headers = normalize_headers(header_values)
    rows: list[ImportRow] = []
    for values in matrix:
        cells = [
            (header, Cell.from_raw(values[i] if i < len(values) else None))
            for i, header in enumerate(headers)
        ]
        row = ImportRow(cells)
        if row.is_blank():
            continue
        rows.append(row)
    return rows


def _read_workbook(content: bytes) -> list[ImportRow]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise SheetFormatError(f"unreadable workbook: {exc}") from exc
    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        return _rows_from_matrix(sheet.iter_rows(values_only=True))
    finally:
        workbook.close()


def _read_csv(content: bytes) -> list[ImportRow]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SheetFormatError(f"CSV is not UTF-8: {exc}") from exc
    return _rows_from_matrix(iter(csv.reader(io.StringIO(text, newline=""))))


def read_sheet(content: bytes, filename: str) -> list[ImportRow]:
    """Parse the first sheet of an .xlsx/.xlsm or .csv file into rows.

    The first row is the header row; fully blank data rows are dropped.
    """
    suffix = Path(filename).suffix.lower()
    if suffix in EXCEL_SUFFIXES:
        return _read_workbook(content)
    if suffix in CSV_SUFFIXES:
        return _read_csv(content)
    raise SheetFormatError(f"unsupported file type: {filename!r}")
