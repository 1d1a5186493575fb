"""Source spreadsheet readers.

Provider exports arrive as ``.xlsx``/``.xlsm`` workbooks or ``.csv`` files.
Both are read into plain lists of cell text so the billing pipeline never
deals with spreadsheet types: dates become ISO strings and whole numbers
lose their trailing ``.0``.
"""

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Set, Tuple, Union

import openpyxl

from carbon_report.models.outcomes import SourceUnavailable
from carbon_report.models.proration import parse_date

logger = logging.getLogger(__name__)

WORKBOOK_SUFFIXES = (".xlsx", ".xlsm")
CSV_SUFFIXES = (".csv", ".txt")

_YEAR = re.compile(r"(19|20)\d{2}")


def cell_text(value) -> str:
    """Text form of a cell value as the pipeline expects it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value).replace("\u00a0", " ").strip()


def _is_blank(cells: Sequence[str]) -> bool:
    return all(not c for c in cells)


@dataclass
class SourceTable:
    """Rows of one sheet, with the header located.

    ``header_index`` is -1 when the sheet has no non-empty row.
    """

    name: str
    rows: List[List[str]] = field(default_factory=list)
    header_index: int = -1

    @property
    def header(self) -> List[str]:
        if self.header_index < 0:
            return []
        return self.rows[self.header_index]

    def column_index(self, header: str) -> int:
        """Zero-based index of the column titled ``header`` (case-insensitive), or -1."""
        wanted = header.strip().lower()
        for i, title in enumerate(self.header):
            if title.strip().lower() == wanted:
                return i
        return -1

    def data_rows(self) -> Iterator[Tuple[int, List[str]]]:
        """``(row_index, cells)`` for each non-blank row after the header."""
        if self.header_index < 0:
            return
        for index in range(self.header_index + 1, len(self.rows)):
            cells = self.rows[index]
            if not _is_blank(cells):
                yield index, cells


def find_header_row(rows: Sequence[Sequence[str]]) -> int:
    """Index of the first row with any non-empty cell, or -1."""
    for index, cells in enumerate(rows):
        if not _is_blank(cells):
            return index
    return -1


def _check_path(path: Path) -> None:
    if not path.is_file():
        raise SourceUnavailable(f"source file not found: {path}")
    if path.suffix.lower() not in WORKBOOK_SUFFIXES + CSV_SUFFIXES:
        raise SourceUnavailable(
            f"unsupported source format '{path.suffix}' (use .xlsx, .xlsm or .csv): {path}")


def _read_csv(path: Path) -> List[List[str]]:
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            sample = f.read(8192)
            f.seek(0)
            try:
                dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
            except csv.Error:
                dialect = csv.excel
            return [[cell_text(c) for c in row] for row in csv.reader(f, dialect)]
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise SourceUnavailable(f"cannot read {path}: {exc}") from exc


def _read_workbook(path: Path, sheet: Optional[str]) -> Tuple[str, List[List[str]]]:
    try:
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise SourceUnavailable(f"cannot open workbook {path}: {exc}") from exc
    try:
        if sheet is None:
            ws = wb.worksheets[0]
        elif sheet in wb.sheetnames:
            ws = wb[sheet]
        else:
            raise SourceUnavailable(
                f"sheet '{sheet}' not found in {path.name} (sheets: {', '.join(wb.sheetnames)})")
        rows = [[cell_text(v) for v in row] for row in ws.iter_rows(values_only=True)]
        return ws.title, rows
    finally:
        wb.close()


def read_table(path: Union[str, Path], sheet: Optional[str] = None) -> SourceTable:
    """Read one sheet of a workbook (or a CSV file) as text rows.

    Args:
        path: Source file.
        sheet: Sheet name; the first sheet when omitted. Ignored for CSV.

    Raises:
        SourceUnavailable: Missing file, unknown sheet or unreadable content.
    """
    path = Path(path)
    _check_path(path)
    if path.suffix.lower() in CSV_SUFFIXES:
        name, rows = path.stem, _read_csv(path)
    else:
        name, rows = _read_workbook(path, sheet)
    width = max((len(r) for r in rows), default=0)
    rows = [r + [""] * (width - len(r)) for r in rows]
    table = SourceTable(name, rows, find_header_row(rows))
    logger.debug("Read %s [%s]: %d rows, header at %d", path.name, name, len(rows),
                 table.header_index)
    return table


def year_of(text: str) -> Optional[int]:
    """Year of a date-like string, or None."""
    parsed = parse_date(text)
    if parsed is not None:
        return parsed.year
    match = _YEAR.search(text or "")
    return int(match.group(0)) if match else None


def load_erp_invoices(path: Union[str, Path], sheet: Optional[str], invoice_header: str,
                      conformity_header: str, year: int) -> Set[str]:
    """Invoice numbers from an ERP export whose conformity date is in ``year`` or later.

    Columns are located by header text. Missing columns give an empty set,
    which disables the invoice filter.

    Raises:
        SourceUnavailable: The ERP file or sheet cannot be read.
    """
    table = read_table(path, sheet)
    invoice_col = table.column_index(invoice_header)
    conformity_col = table.column_index(conformity_header)
    if invoice_col < 0 or conformity_col < 0:
        logger.warning("ERP sheet %s lacks '%s' or '%s'; invoice filter disabled",
                       table.name, invoice_header, conformity_header)
        return set()
    invoices = set()
    for _, cells in table.data_rows():
        invoice = cells[invoice_col].strip()
        conformity_year = year_of(cells[conformity_col])
        if invoice and conformity_year is not None and conformity_year >= year:
            invoices.add(invoice)
    logger.info("Loaded %d valid invoices from %s", len(invoices), Path(path).name)
    return invoices
