"""Unit tests for factor tables, key normalization and factor resolution."""

import pytest

from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, REFRIGERANT
from carbon_report.models.factors import (
    Factor,
    FactorResolver,
    FactorTable,
    fuel_key,
    normalize_key,
)


# ---- Key Normalization Tests ----

class TestNormalizeKey:
    def test_case_and_whitespace(self):
        assert normalize_key("  IBERDROLA   Clientes ") == "iberdrola clientes"

    def test_nbsp(self):
        assert normalize_key("Gas\u00a0natural") == "gas natural"

    def test_none(self):
        assert normalize_key(None) == ""

    def test_fuel_key(self):
        assert fuel_key("Diésel", "Turismo ") == "diésel|turismo"
        assert fuel_key("Diésel") == "diésel"
        assert fuel_key("Diésel", "  ") == "diésel"


# ---- Factor Tests ----

class TestFactor:
    def test_emissions_in_tonnes(self):
        """1000 kWh at 0.25 kg/kWh = 0.25 t."""
        market, location = Factor(0.25, 0.3).emissions(1000)
        assert abs(market - 0.25) < 1e-12
        assert abs(location - 0.3) < 1e-12

    def test_no_location(self):
        market, location = Factor(2.5).emissions(100)
        assert abs(market - 0.25) < 1e-12
        assert location is None


class TestFactorTable:
    def test_lookup_is_normalized(self):
        table = FactorTable.from_rows(ELECTRICITY, 2023, [("Iberdrola Clientes", 0.1, None)])
        assert table.get("IBERDROLA  CLIENTES").market == 0.1
        assert "iberdrola clientes" in table
        assert len(table) == 1

    def test_later_duplicates_override(self):
        table = FactorTable.from_rows(GAS, 2023, [("Gas natural", 0.18, 0.2),
                                                  ("gas natural", 0.19, 0.21)])
        assert len(table) == 1
        assert table.get("Gas natural") == Factor(0.19, 0.21)

    def test_empty(self):
        table = FactorTable.empty(FUEL, 2023)
        assert len(table) == 0
        assert table.get("Diésel") is None


# ---- Resolver Tests ----

class TestFactorResolver:
    def test_electricity_gets_grid_location_factor(self):
        table = FactorTable.from_rows(ELECTRICITY, 2023, [("Endesa", 0.2, None)], location_factor=0.27)
        factor = FactorResolver(table).resolve("endesa")
        assert factor == Factor(0.2, 0.27)

    def test_miss_is_zero_with_diagnostic(self):
        table = FactorTable.from_rows(ELECTRICITY, 2023, [("Endesa", 0.2, None)], location_factor=0.27)
        resolver = FactorResolver(table)
        factor = resolver.resolve("Desconocida", sheet_row=7)
        assert factor.market == 0.0
        assert factor.location == 0.27
        assert resolver.diagnostics == [
            "Row 7: marketer 'Desconocida' not found for year 2023; using factor=0.0"]

    def test_gas_miss_has_zero_location(self):
        resolver = FactorResolver(FactorTable.empty(GAS, 2022))
        factor = resolver.resolve("Propano", sheet_row=3)
        assert factor == Factor(0.0, 0.0)
        assert "gas type 'Propano' not found for year 2022" in resolver.diagnostics[0]

    def test_fuel_prefers_vehicle_specific_factor(self):
        table = FactorTable.from_rows(FUEL, 2023, [
            (fuel_key("Diésel", "Turismo"), 2.6, None),
            ("Diésel", 2.5, None),
        ])
        resolver = FactorResolver(table)
        assert resolver.resolve("Diésel", vehicle_type="Turismo").market == 2.6
        assert resolver.resolve("Diésel", vehicle_type="Furgoneta").market == 2.5
        assert resolver.resolve("diesel ").market == 0.0
        assert len(resolver.diagnostics) == 1

    def test_refrigerant_miss_without_row(self):
        resolver = FactorResolver(FactorTable.empty(REFRIGERANT, 2023))
        factor = resolver.resolve("R-410A")
        assert factor == Factor(0.0)
        assert resolver.diagnostics[0].startswith("refrigerant type 'R-410A'")

    @pytest.mark.parametrize("module, label", [
        (ELECTRICITY, "marketer"), (GAS, "gas type"),
        (FUEL, "fuel type"), (REFRIGERANT, "refrigerant type"),
    ])
    def test_entity_labels(self, module, label):
        assert FactorResolver(FactorTable.empty(module, 2023)).entity_label == label
