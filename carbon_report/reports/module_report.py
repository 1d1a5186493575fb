"""Formula-backed module workbook.

Builds the four sheets of a module export:

* ``<Label> - Extendido``: one detail row per (billing row, center). Raw
  values are literals; the year-applicable quantity, the per-center quantity
  and the emissions are formulas over cells to their left, each carrying the
  value the engine computed.
* ``<Label> - Por centro``: one row per center with case-sensitive
  ``SUMPRODUCT(EXACT(...)*...)`` formulas over the detail sheet, so centers
  whose names differ only in case stay separate as they do in the aggregates.
* ``<Label> - Total``: ``SUM`` over the per-center columns.
* ``Diagnostics``: skipped rows, unresolved factors and a closing count.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from xlsxwriter.utility import xl_col_to_name

from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, REFRIGERANT
from carbon_report.models.outcomes import Accepted
from carbon_report.models.allocation import Allocation
from carbon_report.models.pipeline import PipelineResult
from carbon_report.reports.document import Formula, Number, ReportDocument, Text, Worksheet, quote_sheet

MODULE_LABELS = {
    ELECTRICITY: "Electricidad",
    GAS: "Gas",
    FUEL: "Combustibles",
    REFRIGERANT: "Refrigerantes",
}

UNITS = {
    ELECTRICITY: "kWh",
    GAS: "kWh",
    FUEL: "L",
    REFRIGERANT: "kg",
}

DIAGNOSTICS_SHEET = "Diagnostics"


def detail_sheet_name(module: str) -> str:
    return f"{MODULE_LABELS[module]} - Extendido"


def per_center_sheet_name(module: str) -> str:
    return f"{MODULE_LABELS[module]} - Por centro"


def total_sheet_name(module: str) -> str:
    return f"{MODULE_LABELS[module]} - Total"


@dataclass(frozen=True)
class DetailColumn:
    key: str
    header: str
    style: Optional[str] = None


class DetailLayout:
    """Column order of a module's detail sheet, addressable by key."""

    def __init__(self, module: str, columns: Sequence[DetailColumn]):
        self.module = module
        self.columns = list(columns)
        self._index = {c.key: i for i, c in enumerate(self.columns)}

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def index(self, key: str) -> int:
        return self._index[key]

    def letter(self, key: str) -> str:
        return xl_col_to_name(self._index[key])

    @property
    def headers(self) -> List[str]:
        return [c.header for c in self.columns]

    @property
    def emission_keys(self) -> List[str]:
        return [k for k in ("market_emissions", "location_emissions") if k in self._index]


def _base_columns(unit: str) -> List[DetailColumn]:
    return [
        DetailColumn("id", "Id"),
        DetailColumn("center", "Centro"),
        DetailColumn("entity", "Sociedad emisora"),
        DetailColumn("cups", "CUPS"),
        DetailColumn("invoice", "Factura"),
        DetailColumn("start", "Fecha inicio"),
        DetailColumn("end", "Fecha fin"),
        DetailColumn("quantity", f"Consumo ({unit})", "number"),
        DetailColumn("applicable_pct", "% aplicable año", "percent"),
        DetailColumn("applicable", f"Consumo aplicable año ({unit})", "number"),
        DetailColumn("center_pct", "% centro", "percent"),
        DetailColumn("center_quantity", f"Consumo aplicable centro ({unit})", "number"),
    ]


def layout_for(module: str) -> DetailLayout:
    """Detail layout of ``module``. Factor columns precede emission columns."""
    if module not in UNITS:
        raise ValueError(f"unknown module: {module}")
    unit = UNITS[module]
    columns = _base_columns(unit)
    if module == ELECTRICITY:
        columns += [
            DetailColumn("market_factor", "Factor de emisión market-based (kgCO2e/kWh)", "factor"),
            DetailColumn("location_factor", "Factor de emisión location-based (kgCO2e/kWh)", "factor"),
            DetailColumn("market_emissions", "Emisiones Market-based (tCO2e)", "emissions"),
            DetailColumn("location_emissions", "Emisiones Location-based (tCO2e)", "emissions"),
        ]
    elif module == GAS:
        columns += [
            DetailColumn("type", "Tipo de gas"),
            DetailColumn("market_factor", "Factor de emisión market-based (kgCO2e/kWh)", "factor"),
            DetailColumn("location_factor", "Factor de emisión location-based (kgCO2e/kWh)", "factor"),
            DetailColumn("market_emissions", "Emisiones gas Market-based (tCO2e)", "emissions"),
            DetailColumn("location_emissions", "Emisiones gas Location-based (tCO2e)", "emissions"),
        ]
    elif module == FUEL:
        columns += [
            DetailColumn("type", "Tipo combustible"),
            DetailColumn("vehicle", "Tipo vehículo"),
            DetailColumn("market_factor", "Factor de emisión (kgCO2e/L)", "factor"),
            DetailColumn("market_emissions", "Emisiones combustibles (tCO2e)", "emissions"),
        ]
    else:
        columns += [
            DetailColumn("type", "Tipo refrigerante"),
            DetailColumn("market_factor", "PCA (kgCO2e/kg)", "factor"),
            DetailColumn("market_emissions", "Emisiones refrigerantes (tCO2e)", "emissions"),
        ]
    return DetailLayout(module, columns)


def per_center_headers(module: str) -> List[str]:
    unit = UNITS[module]
    if module == ELECTRICITY:
        return ["Centro", f"Consumo ({unit})", "Emisiones Market-based (tCO2e)",
                "Emisiones Location-based (tCO2e)"]
    if module == GAS:
        return ["Centro", f"Consumo ({unit})", "Emisiones gas Market-based (tCO2e)",
                "Emisiones gas Location-based (tCO2e)"]
    if module == FUEL:
        return ["Centro", f"Consumo ({unit})", "Emisiones combustibles (tCO2e)"]
    return ["Centro", f"Consumo ({unit})", "Emisiones refrigerantes (tCO2e)"]


class FormulaBackedRowWriter:
    """Writes detail rows whose derived cells are formulas with cached values.

    Every formula in a row references only cells to its left in the same
    row, so the sheet recalculates in a single left-to-right pass.

    Args:
        sheet: Detail worksheet to write into.
        layout: Column layout for the module.
    """

    def __init__(self, sheet: Worksheet, layout: DetailLayout):
        self.sheet = sheet
        self.layout = layout
        self.next_row = 0
        self.rows_written = 0

    def write_header(self) -> None:
        self.sheet.write_row(0, [Text(h, "header") for h in self.layout.headers])
        self.next_row = max(self.next_row, 1)

    def _cell(self, key: str, excel_row: int) -> str:
        return f"{self.layout.letter(key)}{excel_row}"

    def write_row(self, accepted: Accepted, allocation: Allocation) -> int:
        """Write one detail row and return its zero-based sheet row."""
        layout = self.layout
        row_index = self.next_row
        excel_row = row_index + 1
        billing = accepted.row
        factor = accepted.factor

        applicable_pct = accepted.applicable_percent
        applicable = billing.quantity * (applicable_pct / 100)
        center_quantity = applicable * (allocation.percentage / 100)

        values: Dict[str, object] = {
            "id": Number(self.rows_written + 1),
            "center": Text(allocation.center),
            "entity": Text(self._entity(accepted)),
            "cups": Text(billing.connection_point or ""),
            "invoice": Text(billing.invoice),
            "start": Text(billing.start_text),
            "end": Text(billing.end_text),
            "quantity": Number(billing.quantity, "number"),
            "applicable_pct": Number(applicable_pct, "percent"),
            "applicable": Formula(
                f"{self._cell('quantity', excel_row)}*({self._cell('applicable_pct', excel_row)}/100)",
                applicable, "number"),
            "center_pct": Number(allocation.percentage, "percent"),
            "center_quantity": Formula(
                f"{self._cell('applicable', excel_row)}*({self._cell('center_pct', excel_row)}/100)",
                center_quantity, "number"),
            "market_factor": Number(factor.market, "factor"),
        }
        if "type" in layout:
            values["type"] = Text(accepted.factor_key)
        if "vehicle" in layout:
            values["vehicle"] = Text(billing.vehicle_type)
        if "location_factor" in layout:
            values["location_factor"] = Number(factor.location or 0.0, "factor")

        values["market_emissions"] = self._emissions(
            excel_row, "market_factor", center_quantity * factor.market / 1000)
        if "location_emissions" in layout:
            values["location_emissions"] = self._emissions(
                excel_row, "location_factor", center_quantity * (factor.location or 0.0) / 1000)

        for key, value in values.items():
            self.sheet.set(row_index, layout.index(key), value)
        self.next_row += 1
        self.rows_written += 1
        return row_index

    def _emissions(self, excel_row: int, factor_key: str, cached: float) -> Formula:
        expr = f"({self._cell('center_quantity', excel_row)}*{self._cell(factor_key, excel_row)})/1000"
        return Formula(expr, cached, "emissions")

    def _entity(self, accepted: Accepted) -> str:
        billing = accepted.row
        if self.layout.module == ELECTRICITY:
            return accepted.factor_key
        return billing.emission_entity or billing.provider


def _write_per_center(document: ReportDocument, result: PipelineResult,
                      layout: DetailLayout, detail: Worksheet) -> Worksheet:
    sheet = document.add_sheet(per_center_sheet_name(result.module))
    headers = per_center_headers(result.module)
    sheet.write_row(0, [Text(h, "header") for h in headers])
    source = quote_sheet(detail.name)
    center_col = layout.letter("center")
    sum_keys = ["center_quantity"] + layout.emission_keys
    # Ranges stop at the last detail row.
    last_row = max(2, detail.max_row + 1)
    centers = f"{source}!${center_col}$2:${center_col}${last_row}"

    for offset, (center, totals) in enumerate(result.totals.items()):
        row = offset + 1
        excel_row = row + 1
        sheet.set(row, 0, Text(center))
        cached = [totals.quantity, totals.emissions, totals.location_emissions]
        for col, key in enumerate(sum_keys, start=1):
            letter = layout.letter(key)
            expr = (f"IFERROR(SUMPRODUCT(EXACT({centers},$A{excel_row})*"
                    f"{source}!${letter}$2:${letter}${last_row}),0)")
            style = "number" if key == "center_quantity" else "emissions"
            sheet.set(row, col, Formula(expr, cached[col - 1], style))
    return sheet


def _write_total(document: ReportDocument, result: PipelineResult, per_center: Worksheet,
                 width: int) -> Worksheet:
    sheet = document.add_sheet(total_sheet_name(result.module))
    headers = per_center_headers(result.module)[1:width + 1]
    sheet.write_row(0, [Text(h, "header") for h in headers])
    source = quote_sheet(per_center.name)
    totals = list(result.totals.values())
    cached = [
        sum(t.quantity for t in totals),
        sum(t.emissions for t in totals),
        sum(t.location_emissions for t in totals),
    ]
    for col in range(width):
        letter = xl_col_to_name(col + 1)
        style = "number" if col == 0 else "emissions"
        sheet.set(1, col, Formula(f"SUM({source}!${letter}:${letter})", cached[col], style))
    return sheet


def fill_diagnostics(sheet: Worksheet, lines: Sequence[str]) -> None:
    sheet.set(0, 0, Text("Diagnostics", "header"))
    for offset, line in enumerate(lines, start=1):
        sheet.set(offset, 0, Text(line))
    sheet.column_widths[0] = 100


def write_diagnostics(document: ReportDocument, lines: Sequence[str]) -> Worksheet:
    sheet = document.add_sheet(document.unique_name(DIAGNOSTICS_SHEET))
    fill_diagnostics(sheet, lines)
    return sheet


def build_module_report(result: PipelineResult) -> ReportDocument:
    """Assemble the module workbook for a finished pipeline run."""
    layout = layout_for(result.module)
    document = ReportDocument()
    detail = document.add_sheet(detail_sheet_name(result.module))
    writer = FormulaBackedRowWriter(detail, layout)
    writer.write_header()
    for accepted in result.accepted:
        for allocation in accepted.allocations:
            writer.write_row(accepted, allocation)
    for col, column in enumerate(layout.columns):
        detail.column_widths[col] = max(12, min(45, len(column.header) + 2))

    per_center = _write_per_center(document, result, layout, detail)
    _write_total(document, result, per_center, 1 + len(layout.emission_keys))
    write_diagnostics(document, result.diagnostics)
    return document
