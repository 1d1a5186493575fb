"""Cross-module summary workbook.

Combines up to four module workbooks into one report:

* ``Resultados generales``: one row per center with a case-sensitive
  ``SUMPRODUCT(EXACT(...)*...)`` lookup into each module's per-center sheet,
  scope 1 and scope 2 subtotals and totals.
* ``Resultados por alcance``: the scope columns only, taken from the same
  row of the general sheet.
* ``Diagnostics``: which sheet and column each module was read from.
* Copies of the module sheets the lookups point at.

A module that is missing, or whose per-center sheet cannot be found,
contributes zeros; the summary is still produced.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from xlsxwriter.utility import xl_col_to_name

from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, MODULES, REFRIGERANT
from carbon_report.reports.document import Formula, Number, ReportDocument, Text, Worksheet, quote_sheet
from carbon_report.reports.formulas import fill_cached_values
from carbon_report.reports.module_report import DIAGNOSTICS_SHEET, MODULE_LABELS, fill_diagnostics

logger = logging.getLogger(__name__)

GENERAL_SHEET = "Resultados generales"
SCOPE_SHEET = "Resultados por alcance"
HEADER_SCAN_ROWS = 3
_SKIPPED_SHEET_WORDS = ("diagn", "debug", "error", "log")

GENERAL_HEADERS = [
    "Centro",
    "Emisiones electricidad Market-based (tCO2e)",
    "Emisiones electricidad Location-based (tCO2e)",
    "Emisiones gas (tCO2e)",
    "Emisiones combustibles (tCO2e)",
    "Emisiones refrigerantes (tCO2e)",
    "Alcance 1 (tCO2e)",
    "Alcance 2 Market-based (tCO2e)",
    "Alcance 2 Location-based (tCO2e)",
    "Total Market-based (tCO2e)",
    "Total Location-based (tCO2e)",
]

SCOPE_HEADERS = [
    "Centro",
    "Alcance 1 (tCO2e)",
    "Alcance 2 Market-based (tCO2e)",
    "Alcance 2 Location-based (tCO2e)",
    "Total Market-based (tCO2e)",
    "Total Location-based (tCO2e)",
]


@dataclass(frozen=True)
class ColumnSpec:
    """A value column looked up from a module's per-center sheet.

    Attributes:
        module: Module the column belongs to.
        general_col: Zero-based column in ``Resultados generales``.
        keywords: Header keywords, matched case-insensitively.
        default_col: Zero-based column used when no header matches.
    """

    module: str
    general_col: int
    keywords: Tuple[str, ...]
    default_col: int


COLUMN_SPECS = [
    ColumnSpec(ELECTRICITY, 1, ("market",), 2),
    ColumnSpec(ELECTRICITY, 2, ("location",), 3),
    ColumnSpec(GAS, 3, ("emisiones", "gas"), 2),
    ColumnSpec(FUEL, 4, ("emisiones", "combust"), 2),
    ColumnSpec(REFRIGERANT, 5, ("emisiones", "refriger"), 2),
]


class SheetLocator:
    """Finds a module's per-center sheet by trying name variants in order."""

    def __init__(self, label: str):
        self.label = label
        self.variants = [f"{label} - Por centro", f"{label} Por centro", "Por centro"]

    def locate(self, document: Optional[ReportDocument]) -> Optional[Worksheet]:
        if document is None:
            return None
        for name in self.variants:
            if document.has_sheet(name):
                return document.sheet(name)
        return None


@dataclass(frozen=True)
class ColumnMatch:
    col: int
    header_row: int
    method: str


class ColumnLocator:
    """Finds a value column by its header text.

    The first ``HEADER_SCAN_ROWS`` rows are scanned for a header containing
    all keywords, then for one containing any keyword. If neither exists the
    positional default is used with row 0 as the header.
    """

    def __init__(self, keywords: Sequence[str], default_col: int):
        self.keywords = [k.lower() for k in keywords]
        self.default_col = default_col

    def _scan(self, sheet: Worksheet, predicate) -> Optional[Tuple[int, int]]:
        for row in range(min(HEADER_SCAN_ROWS, sheet.max_row + 1)):
            for col in range(sheet.max_col + 1):
                text = sheet.text(row, col).lower()
                if text and predicate(text):
                    return row, col
        return None

    def locate(self, sheet: Worksheet) -> ColumnMatch:
        found = self._scan(sheet, lambda text: all(k in text for k in self.keywords))
        if found:
            return ColumnMatch(found[1], found[0], "all keywords")
        found = self._scan(sheet, lambda text: any(k in text for k in self.keywords))
        if found:
            return ColumnMatch(found[1], found[0], "any keyword")
        return ColumnMatch(self.default_col, 0, "default position")


@dataclass
class ModuleInput:
    """A module workbook handed to the merger."""

    module: str
    document: Optional[ReportDocument]
    file_name: str = ""


@dataclass
class _Located:
    module: str
    sheet_name: Optional[str] = None
    columns: Dict[int, ColumnMatch] = field(default_factory=dict)
    centers: List[str] = field(default_factory=list)
    # Zero-based first and last center rows; empty when last < first.
    rows: Tuple[int, int] = (0, -1)


def _is_totals_row(sheet: Worksheet, row: int) -> bool:
    """True for a "Total" row whose values are literals or same-sheet formulas.

    A center named "Total" in a module workbook sums the detail sheet, so a
    cross-sheet formula in the row marks it as a center.
    """
    if sheet.text(row, 0).strip().lower() != "total":
        return False
    for col in range(1, sheet.max_col + 1):
        cell = sheet.get(row, col)
        if isinstance(cell, Formula) and "!" in cell.expr:
            return False
    return True


def _skip_copy(name: str) -> bool:
    lowered = name.lower()
    return any(word in lowered for word in _SKIPPED_SHEET_WORDS)


def _rename_references(expr: str, renames: Dict[str, str]) -> str:
    for old, new in renames.items():
        if old == new:
            continue
        pattern = re.compile(r"(?:'" + re.escape(old.replace("'", "''")) + r"'|\b" + re.escape(old) + r")!",
                             re.IGNORECASE)
        expr = pattern.sub(lambda _m: quote_sheet(new) + "!", expr)
    return expr


class CrossModuleSummaryMerger:
    """Builds the summary workbook from module workbooks."""

    def __init__(self):
        self.diagnostics: List[str] = []

    def merge(self, electricity: Optional[ModuleInput] = None, gas: Optional[ModuleInput] = None,
              fuel: Optional[ModuleInput] = None,
              refrigerant: Optional[ModuleInput] = None) -> ReportDocument:
        """Merge the given module workbooks; any of them may be None."""
        self.diagnostics = []
        inputs = {ELECTRICITY: electricity, GAS: gas, FUEL: fuel, REFRIGERANT: refrigerant}
        document = ReportDocument()
        general = document.add_sheet(GENERAL_SHEET)
        scope = document.add_sheet(SCOPE_SHEET)
        diagnostics = document.add_sheet(DIAGNOSTICS_SHEET)

        located = {module: self._locate(module, inputs.get(module)) for module in MODULES}
        copied_names = self._copy_module_sheets(document, inputs)

        centers = self._unified_centers(located)
        self._write_general(general, centers, located, copied_names)
        self._write_scope(scope, centers)
        self._write_summary_diagnostics(document, diagnostics, inputs, centers)

        fill_cached_values(document, [GENERAL_SHEET, SCOPE_SHEET], use_cached=True)
        logger.info("Summary built: %d centers, sheets: %s", len(centers),
                    ", ".join(document.sheet_names))
        return document

    def _locate(self, module: str, source: Optional[ModuleInput]) -> _Located:
        result = _Located(module)
        label = MODULE_LABELS[module]
        if source is None:
            self.diagnostics.append(f"{label}: no workbook provided; module contributes 0")
            return result
        if source.document is None:
            self.diagnostics.append(f"{label}: workbook '{source.file_name}' could not be read; "
                                    f"module contributes 0")
            return result
        sheet = SheetLocator(label).locate(source.document)
        if sheet is None:
            message = (f"{label}: no per-center sheet found in '{source.file_name}' "
                       f"(sheets: {', '.join(source.document.sheet_names)}); module contributes 0")
            self.diagnostics.append(message)
            logger.warning(message)
            return result
        result.sheet_name = sheet.name
        header_row = 0
        for spec in COLUMN_SPECS:
            if spec.module != module:
                continue
            match = ColumnLocator(spec.keywords, spec.default_col).locate(sheet)
            result.columns[spec.general_col] = match
            header_row = max(header_row, match.header_row)
            self.diagnostics.append(
                f"{label}: file '{source.file_name}', sheet '{sheet.name}', "
                f"column {match.col + 1} ({xl_col_to_name(match.col)}) for "
                f"'{GENERAL_HEADERS[spec.general_col]}' by {match.method}")
        first, last = header_row + 1, sheet.max_row
        if last >= first and _is_totals_row(sheet, last):
            last -= 1
        result.rows = (first, last)
        for row in range(first, last + 1):
            name = sheet.text(row, 0)
            if name.strip():
                result.centers.append(name)
        return result

    @staticmethod
    def _unified_centers(located: Dict[str, _Located]) -> List[str]:
        seen = set()
        centers: List[str] = []
        for module in MODULES:
            for center in located[module].centers:
                if center not in seen:
                    seen.add(center)
                    centers.append(center)
        return centers

    def _write_general(self, sheet: Worksheet, centers: List[str], located: Dict[str, _Located],
                       copied_names: Dict[str, Dict[str, str]]) -> None:
        sheet.write_row(0, [Text(h, "header") for h in GENERAL_HEADERS])
        for col, header in enumerate(GENERAL_HEADERS):
            sheet.column_widths[col] = max(14, min(40, len(header) + 2))

        # (names range, values range) per general column; names compare with EXACT.
        lookups: Dict[int, Optional[Tuple[str, str]]] = {}
        for spec in COLUMN_SPECS:
            info = located[spec.module]
            match = info.columns.get(spec.general_col)
            first, last = info.rows
            if info.sheet_name is None or match is None or last < first:
                lookups[spec.general_col] = None
                continue
            target = quote_sheet(copied_names[spec.module].get(info.sheet_name, info.sheet_name))
            letter = xl_col_to_name(match.col)
            lookups[spec.general_col] = (f"{target}!$A${first + 1}:$A${last + 1}",
                                         f"{target}!${letter}${first + 1}:${letter}${last + 1}")

        for offset, center in enumerate(centers):
            row = offset + 1
            r = row + 1
            sheet.set(row, 0, Text(center))
            for col in range(1, 6):
                lookup = lookups.get(col)
                if lookup is None:
                    sheet.set(row, col, Number(0.0, "emissions"))
                else:
                    names, values = lookup
                    sheet.set(row, col, Formula(f"IFERROR(SUMPRODUCT(EXACT({names},$A{r})*{values}),0)",
                                                style="emissions"))
            sheet.set(row, 6, Formula(f"SUM(D{r}:F{r})", style="emissions"))
            sheet.set(row, 7, Formula(f"B{r}", style="emissions"))
            sheet.set(row, 8, Formula(f"C{r}", style="emissions"))
            sheet.set(row, 9, Formula(f"G{r}+H{r}", style="emissions"))
            sheet.set(row, 10, Formula(f"G{r}+I{r}", style="emissions"))

        self._totals_row(sheet, len(centers), len(GENERAL_HEADERS))

    def _write_scope(self, sheet: Worksheet, centers: List[str]) -> None:
        sheet.write_row(0, [Text(h, "header") for h in SCOPE_HEADERS])
        for col, header in enumerate(SCOPE_HEADERS):
            sheet.column_widths[col] = max(14, min(40, len(header) + 2))
        general = quote_sheet(GENERAL_SHEET)
        for offset, center in enumerate(centers):
            row = offset + 1
            r = row + 1
            sheet.set(row, 0, Text(center))
            for col, general_col in enumerate(range(6, 11), start=1):
                letter = xl_col_to_name(general_col)
                sheet.set(row, col, Formula(f"{general}!{letter}{r}", style="emissions"))
        self._totals_row(sheet, len(centers), len(SCOPE_HEADERS))

    @staticmethod
    def _totals_row(sheet: Worksheet, count: int, width: int) -> None:
        row = count + 1
        sheet.set(row, 0, Text("Total", "total_label"))
        for col in range(1, width):
            letter = xl_col_to_name(col)
            if count:
                expr = f"SUM({letter}2:{letter}{count + 1})"
            else:
                expr = "0"
            sheet.set(row, col, Formula(expr, style="total"))

    @staticmethod
    def _copy_module_sheets(document: ReportDocument,
                            inputs: Dict[str, Optional[ModuleInput]]) -> Dict[str, Dict[str, str]]:
        """Copy every non-diagnostic module sheet, returning old -> new names per module.

        Sheets are created first so that formulas can be rewritten to point
        at the names their targets ended up with.
        """
        copied_names: Dict[str, Dict[str, str]] = {module: {} for module in MODULES}
        pending: List[Tuple[str, Worksheet, Worksheet]] = []
        for module in MODULES:
            source = inputs.get(module)
            if source is None or source.document is None:
                continue
            label = MODULE_LABELS[module]
            for sheet in source.document:
                if _skip_copy(sheet.name):
                    continue
                wanted = sheet.name if sheet.name.lower().startswith(label.lower()) else f"{label} - {sheet.name}"
                target = document.add_sheet(document.unique_name(wanted))
                copied_names[module][sheet.name] = target.name
                pending.append((module, sheet, target))

        for module, source, target in pending:
            renames = copied_names[module]
            target.column_widths.update(source.column_widths)
            for row, col, cell in source.cells():
                if isinstance(cell, Formula):
                    cell = Formula(_rename_references(cell.expr, renames), cell.value, cell.style)
                target.set(row, col, cell)
        return copied_names

    def _write_summary_diagnostics(self, document: ReportDocument, sheet: Worksheet,
                                   inputs: Dict[str, Optional[ModuleInput]],
                                   centers: List[str]) -> None:
        lines = list(self.diagnostics)
        files = [f"{MODULE_LABELS[m]}='{inputs[m].file_name}'" for m in MODULES
                 if inputs.get(m) is not None]
        lines.append("Files: " + (", ".join(files) if files else "none"))
        lines.append(f"Centers discovered: {len(centers)}")
        if centers:
            lines.append("Centers: " + ", ".join(centers))
            general = document.sheet(GENERAL_SHEET)
            for col in (1, 3, 6, 9):
                cell = general.get(1, col)
                if isinstance(cell, Formula):
                    lines.append(f"Sample formula (row 2): ={cell.expr}")
        lines.append("Sheets: " + ", ".join(document.sheet_names))
        fill_diagnostics(sheet, lines)
