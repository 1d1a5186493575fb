"""Tests for the formula-backed module workbook."""

import pytest

from carbon_report.config import ExportConfig
from carbon_report.models.allocation import CenterRegistration, CenterRegistry
from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, REFRIGERANT, ColumnMapping
from carbon_report.models.factors import FactorTable, fuel_key
from carbon_report.models.pipeline import run_pipeline
from carbon_report.reports.document import Formula
from carbon_report.reports.formulas import FormulaEvaluator, references
from carbon_report.reports.module_report import (
    DIAGNOSTICS_SHEET,
    build_module_report,
    detail_sheet_name,
    layout_for,
    per_center_sheet_name,
    total_sheet_name,
)


@pytest.fixture
def electricity_result():
    factors = FactorTable.from_rows(ELECTRICITY, 2023, [("Endesa", 0.25, None), ("Iberdrola", 0.1, None)],
                                    location_factor=0.3)
    registry = CenterRegistry([
        CenterRegistration("ES001", "Endesa", "Norte"),
        CenterRegistration("ES001", "Endesa", "Sur"),
        CenterRegistration("ES001", "Endesa", "Este"),
    ])
    mapping = ColumnMapping(connection_point=0, emission_entity=1, invoice=2, start_date=3,
                            end_date=4, quantity=5, center=6)
    rows = [
        (1, ["ES001", "", "F1", "15/12/2022", "14/01/2023", "3100", ""]),
        (2, ["ES777", "Iberdrola", "F2", "2023-03-01", "2023-03-31", "1.000,5", "Biblioteca"]),
        (3, ["ES777", "Acme", "F3", "2023-04-01", "2023-04-30", "200", "Biblioteca"]),
        (4, ["ES777", "Iberdrola", "F4", "2021-01-01", "2021-01-31", "50", "Biblioteca"]),
    ]
    return run_pipeline(ELECTRICITY, rows, mapping, ExportConfig(2023, factors, registry))


def formula_cells(document):
    for sheet in document:
        for row, col, cell in sheet.cells():
            if isinstance(cell, Formula):
                yield sheet, row, col, cell


# ---- Layout Tests ----

class TestLayout:
    @pytest.mark.parametrize("module", [ELECTRICITY, GAS, FUEL, REFRIGERANT])
    def test_factors_left_of_emissions(self, module):
        layout = layout_for(module)
        for key in layout.emission_keys:
            assert layout.index("market_factor") < layout.index(key)
        assert layout.index("center_quantity") < layout.index("market_emissions")

    def test_emission_keys(self):
        assert layout_for(ELECTRICITY).emission_keys == ["market_emissions", "location_emissions"]
        assert layout_for(FUEL).emission_keys == ["market_emissions"]

    def test_unknown_module(self):
        with pytest.raises(ValueError):
            layout_for("water")


# ---- Workbook Tests ----

class TestModuleWorkbook:
    def test_sheet_names(self, electricity_result):
        document = build_module_report(electricity_result)
        assert document.sheet_names == [
            detail_sheet_name(ELECTRICITY), per_center_sheet_name(ELECTRICITY),
            total_sheet_name(ELECTRICITY), DIAGNOSTICS_SHEET]

    def test_one_detail_row_per_allocation(self, electricity_result):
        document = build_module_report(electricity_result)
        detail = document.sheet(detail_sheet_name(ELECTRICITY))
        # 3 allocations for F1 + F2 + F3; F4 is outside 2023
        assert detail.max_row == 5
        layout = layout_for(ELECTRICITY)
        assert detail.text(1, layout.index("center")) == "Norte"
        assert detail.text(1, layout.index("entity")) == "Endesa"
        assert detail.text(5, layout.index("invoice")) == "F3"

    def test_formula_literal_parity(self, electricity_result):
        """Recomputing every formula reproduces the value written with it."""
        document = build_module_report(electricity_result)
        evaluator = FormulaEvaluator(document)
        count = 0
        for sheet, row, col, cell in formula_cells(document):
            value = evaluator.cell_value(sheet.name, row, col)
            assert value == pytest.approx(cell.value, rel=1e-9, abs=1e-12), (sheet.name, row, col, cell.expr)
            count += 1
        assert count > 0

    def test_no_forward_references_in_detail(self, electricity_result):
        document = build_module_report(electricity_result)
        detail = document.sheet(detail_sheet_name(ELECTRICITY))
        for row, col, cell in detail.cells():
            if not isinstance(cell, Formula):
                continue
            for rng in references(cell.expr, detail.name):
                assert rng.sheet == detail.name
                assert rng.first_row == row
                assert rng.last_col < col

    def test_per_center_matches_aggregates(self, electricity_result):
        document = build_module_report(electricity_result)
        per_center = document.sheet(per_center_sheet_name(ELECTRICITY))
        totals = electricity_result.totals
        centers = [per_center.text(r, 0) for r in range(1, per_center.max_row + 1)]
        assert centers == list(totals)
        evaluator = FormulaEvaluator(document)
        for r, center in enumerate(centers, start=1):
            assert evaluator.cell_value(per_center.name, r, 1) == pytest.approx(totals[center].quantity)
            assert evaluator.cell_value(per_center.name, r, 2) == pytest.approx(totals[center].emissions)
            assert evaluator.cell_value(per_center.name, r, 3) == pytest.approx(
                totals[center].location_emissions)

    def test_split_row_figures(self, electricity_result):
        """F1: 3100 kWh, 14 of 31 days in 2023 = 1400, split three ways."""
        norte = electricity_result.totals["Norte"]
        assert norte.quantity == pytest.approx(1400 / 3)
        assert norte.emissions == pytest.approx(1400 / 3 * 0.25 / 1000)
        assert norte.location_emissions == pytest.approx(1400 / 3 * 0.3 / 1000)

    def test_total_sheet(self, electricity_result):
        document = build_module_report(electricity_result)
        total = document.sheet(total_sheet_name(ELECTRICITY))
        expected = sum(t.quantity for t in electricity_result.totals.values())
        assert total.get(1, 0).value == pytest.approx(expected)
        assert total.get(1, 0).expr == "SUM('Electricidad - Por centro'!$B:$B)"
        assert total.max_col == 2

    def test_diagnostics_sheet(self, electricity_result):
        document = build_module_report(electricity_result)
        diagnostics = document.sheet(DIAGNOSTICS_SHEET)
        lines = [diagnostics.text(r, 0) for r in range(1, diagnostics.max_row + 1)]
        assert any("marketer 'Acme' not found for year 2023" in line for line in lines)
        assert any(line.startswith("Row 5 skipped: dates do not overlap") for line in lines)
        assert lines[-1] == "Processed 4 centers in aggregates"


class TestOtherModules:
    def test_fuel_detail_columns(self):
        factors = FactorTable.from_rows(FUEL, 2023, [(fuel_key("Diésel", "Turismo"), 2.6, None)])
        mapping = ColumnMapping(invoice_date=0, quantity=1, factor_type=2, vehicle_type=3,
                                provider=4, center=5)
        rows = [(1, ["2023-05-02", "40", "Diésel", "Turismo", "Repsol", "Flota"])]
        result = run_pipeline(FUEL, rows, mapping, ExportConfig(2023, factors))
        document = build_module_report(result)
        detail = document.sheet("Combustibles - Extendido")
        layout = layout_for(FUEL)
        assert detail.text(1, layout.index("type")) == "Diésel"
        assert detail.text(1, layout.index("vehicle")) == "Turismo"
        assert detail.text(1, layout.index("entity")) == "Repsol"
        emissions = detail.get(1, layout.index("market_emissions"))
        assert emissions.value == pytest.approx(40 * 2.6 / 1000)
        assert document.sheet("Combustibles - Total").max_col == 1

    def test_empty_run_still_builds(self):
        result = run_pipeline(REFRIGERANT, [], ColumnMapping(quantity=0, fixed_type="R-410A"),
                              ExportConfig(2023, FactorTable.empty(REFRIGERANT, 2023)))
        document = build_module_report(result)
        total = document.sheet("Refrigerantes - Total")
        assert total.get(1, 0).value == 0
        assert FormulaEvaluator(document).cell_value(total.name, 1, 1) == 0.0


class TestCenterNameMatching:
    @pytest.fixture
    def gas_document(self):
        factors = FactorTable.from_rows(GAS, 2023, [("Gas natural", 0.18, 0.2)])
        mapping = ColumnMapping(quantity=0, center=1, fixed_type="Gas natural")
        rows = [
            (1, ["100", "Norte"]),
            (2, ["100", "NORTE"]),
            (3, ["40", "Nor*"]),
            (4, ["7", "<5"]),
        ]
        result = run_pipeline(GAS, rows, mapping, ExportConfig(2023, factors))
        return result, build_module_report(result)

    def test_case_variants_stay_separate(self, gas_document):
        """Centers differing only in case recalculate to their own totals."""
        result, document = gas_document
        per_center = document.sheet(per_center_sheet_name(GAS))
        evaluator = FormulaEvaluator(document)
        centers = [per_center.text(r, 0) for r in range(1, per_center.max_row + 1)]
        assert centers == ["Norte", "NORTE", "Nor*", "<5"]
        for r, center in enumerate(centers, start=1):
            for col in (1, 2, 3):
                cell = per_center.get(r, col)
                assert evaluator.cell_value(per_center.name, r, col) == pytest.approx(cell.value)
            assert per_center.get(r, 1).value == pytest.approx(result.totals[center].quantity)
        assert per_center.get(2, 1).value == pytest.approx(100.0)
        assert per_center.get(3, 1).value == pytest.approx(40.0)

    def test_formulas_use_exact_ranges(self, gas_document):
        _, document = gas_document
        cell = document.sheet(per_center_sheet_name(GAS)).get(1, 1)
        assert cell.expr == ("IFERROR(SUMPRODUCT(EXACT('Gas - Extendido'!$B$2:$B$5,$A2)*"
                             "'Gas - Extendido'!$L$2:$L$5),0)")
