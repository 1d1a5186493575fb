"""Reading and writing ``ReportDocument`` workbooks.

Writing goes through xlsxwriter, which stores each formula together with
its cached result. Reading uses openpyxl twice: once for formulas and once
(``data_only``) for the cached values next to them.
"""

import logging
import os
import tempfile
from datetime import date, datetime
from pathlib import Path
from typing import Union

import openpyxl
import xlsxwriter
from xlsxwriter.exceptions import XlsxWriterException

from carbon_report.models.outcomes import ExportError, SourceUnavailable
from carbon_report.reports.document import Formula, Number, ReportDocument, Text

logger = logging.getLogger(__name__)


def _create_formats(wb) -> dict:
    f = {}
    green = '#2E7D32'
    lgreen = '#E8F5E9'

    f['header'] = wb.add_format({'bold': True, 'font_color': 'white', 'bg_color': green,
                                 'align': 'center', 'border': 1, 'valign': 'vcenter',
                                 'text_wrap': True})
    f['text'] = wb.add_format({'border': 1})
    f['number'] = wb.add_format({'num_format': '#,##0.00', 'border': 1})
    f['percent'] = wb.add_format({'num_format': '0.00', 'border': 1})
    f['factor'] = wb.add_format({'num_format': '0.000000', 'border': 1})
    f['emissions'] = wb.add_format({'num_format': '#,##0.0000', 'border': 1, 'bg_color': lgreen})
    f['total'] = wb.add_format({'bold': True, 'num_format': '#,##0.0000', 'border': 2,
                                'bg_color': lgreen})
    f['total_label'] = wb.add_format({'bold': True, 'border': 2})
    return f


def write_document(document: ReportDocument, output_path: Union[str, Path]) -> Path:
    """Write ``document`` to ``output_path`` atomically.

    The workbook is built in a temporary file next to the destination and
    moved into place only after it has been closed, so an interrupted or
    failed export never leaves a partial file behind.

    Returns:
        The final path.

    Raises:
        ExportError: The workbook could not be written.
    """
    output_path = Path(output_path)
    if output_path.suffix.lower() not in (".xlsx", ".xlsm"):
        output_path = output_path.with_suffix(".xlsx")
    directory = output_path.parent if str(output_path.parent) else Path(".")
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".carbon-", suffix=".xlsx", dir=str(directory))
    except OSError as exc:
        raise ExportError(f"cannot write to {directory}: {exc}") from exc
    os.close(fd)
    try:
        workbook = xlsxwriter.Workbook(tmp_name, {'nan_inf_to_errors': True})
        fmt = _create_formats(workbook)
        for sheet in document:
            ws = workbook.add_worksheet(sheet.name)
            for col, width in sheet.column_widths.items():
                ws.set_column(col, col, width)
            for row, col, cell in sheet.cells():
                style = fmt.get(cell.style) if cell.style else None
                if isinstance(cell, Formula):
                    value = cell.value if cell.value is not None else 0
                    ws.write_formula(row, col, "=" + cell.expr, style, value)
                elif isinstance(cell, Number):
                    ws.write_number(row, col, float(cell.value), style)
                else:
                    ws.write_string(row, col, str(cell.value), style)
            if sheet.max_row >= 0:
                ws.freeze_panes(1, 0)
        workbook.close()
        os.replace(tmp_name, output_path)
    except (OSError, XlsxWriterException) as exc:
        raise ExportError(f"could not write {output_path}: {exc}") from exc
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)

    logger.info("Workbook written: %s (%s)", output_path, ", ".join(document.sheet_names))
    return output_path


def _to_cell(value, data_type, cached):
    if data_type == "f" and isinstance(value, str):
        return Formula(value.lstrip("="), cached)
    if isinstance(value, bool):
        return Text("TRUE" if value else "FALSE")
    if isinstance(value, (int, float)):
        return Number(float(value))
    if isinstance(value, datetime):
        return Text(value.date().isoformat())
    if isinstance(value, date):
        return Text(value.isoformat())
    if hasattr(value, "text"):
        # openpyxl ArrayFormula
        return Formula(str(value.text).lstrip("="), cached)
    return Text(str(value))


def read_document(path: Union[str, Path]) -> ReportDocument:
    """Load a workbook (typically a module report) into a ``ReportDocument``.

    Raises:
        SourceUnavailable: The file is missing or not a readable workbook.
    """
    path = Path(path)
    if not path.is_file():
        raise SourceUnavailable(f"workbook not found: {path}")
    try:
        formulas_wb = openpyxl.load_workbook(path, data_only=False)
        values_wb = openpyxl.load_workbook(path, data_only=True)
    except Exception as exc:
        raise SourceUnavailable(f"cannot read workbook {path}: {exc}") from exc

    document = ReportDocument()
    try:
        for ws in formulas_wb.worksheets:
            sheet = document.add_sheet(ws.title)
            cached_ws = values_wb[ws.title]
            for row in ws.iter_rows():
                for cell in row:
                    if cell.value is None:
                        continue
                    cached = cached_ws.cell(row=cell.row, column=cell.column).value
                    sheet.set(cell.row - 1, cell.column - 1, _to_cell(cell.value, cell.data_type, cached))
    finally:
        formulas_wb.close()
        values_wb.close()
    logger.debug("Read %s: %s", path, ", ".join(document.sheet_names))
    return document
