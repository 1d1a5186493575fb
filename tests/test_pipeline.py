"""Tests for the row pipeline: proration, filtering, splitting and totals."""

import pytest

from carbon_report.config import ExportConfig
from carbon_report.models.allocation import CenterRegistration, CenterRegistry
from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, ColumnMapping, read_billing_row
from carbon_report.models.factors import FactorTable
from carbon_report.models.outcomes import Accepted, ExportCancelled, SkipReason, Skipped
from carbon_report.models.pipeline import RowPipeline, run_pipeline

# cups, marketer, invoice, start, end, quantity, center
ELECTRICITY_MAPPING = ColumnMapping(connection_point=0, emission_entity=1, invoice=2,
                                    start_date=3, end_date=4, quantity=5, center=6)


def electricity_config(year=2023, registrations=(), invoices=(), should_cancel=None, batch_size=500):
    factors = FactorTable.from_rows(ELECTRICITY, year, [("Endesa", 0.2, None)], location_factor=0.3)
    return ExportConfig(year, factors, CenterRegistry(registrations), frozenset(invoices),
                        should_cancel, batch_size)


def rows(*cells_list):
    return [(index + 1, list(cells)) for index, cells in enumerate(cells_list)]


# ---- Billing Row Tests ----

class TestReadBillingRow:
    def test_fields(self):
        row = read_billing_row(["ES001", " Endesa ", "F-1", "01/06/2023", "30/06/2023", "1.234,5", ""],
                               ELECTRICITY_MAPPING, 4, ELECTRICITY)
        assert row.connection_point == "ES001"
        assert row.factor_key == "Endesa"
        assert row.quantity == 1234.5
        assert row.center is None
        assert row.sheet_row == 5

    def test_short_row_and_bad_quantity(self):
        row = read_billing_row(["ES001"], ELECTRICITY_MAPPING, 0, ELECTRICITY)
        assert row.quantity == 0.0
        assert row.invoice == ""

    def test_fixed_type_wins(self):
        mapping = ColumnMapping(quantity=0, factor_type=1, fixed_type="Gas natural")
        row = read_billing_row(["10", "Propano"], mapping, 1, GAS)
        assert row.factor_key == "Gas natural"

    def test_invoice_date_used_for_both_ends(self):
        mapping = ColumnMapping(invoice_date=0, quantity=1, factor_type=2)
        row = read_billing_row(["2023-03-10", "40", "Gasolina"], mapping, 1, FUEL)
        assert row.start_text == row.end_text == "2023-03-10"


class TestColumnMapping:
    def test_negative_means_unmapped(self):
        mapping = ColumnMapping.from_dict({"quantity": 3, "center": -1})
        assert mapping.quantity == 3
        assert mapping.center is None
        assert mapping.to_dict()["center"] == -1

    def test_rejects_non_integer(self):
        with pytest.raises(ValueError):
            ColumnMapping(quantity="C")


# ---- Scenario Tests ----

class TestPipelineScenarios:
    def test_period_inside_year(self):
        """June 2023, qty 300: all of it applies to 2023."""
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "2023-06-01", "2023-06-30", "300", "Norte"]),
                              ELECTRICITY_MAPPING, electricity_config(2023))
        accepted = result.accepted
        assert len(accepted) == 1
        assert accepted[0].applicable_quantity == pytest.approx(300.0)
        assert result.totals["Norte"].quantity == pytest.approx(300.0)

    def test_period_outside_year_is_skipped(self):
        """Same row reported for 2024: skipped, no center total."""
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "2023-06-01", "2023-06-30", "300", "Norte"]),
                              ELECTRICITY_MAPPING, electricity_config(2024))
        assert result.accepted == []
        assert result.skipped[0].reason == SkipReason.OUTSIDE_YEAR
        assert "Norte" not in result.totals
        assert result.diagnostics[0].startswith("Row 2 skipped: dates do not overlap reporting year 2024")

    def test_shared_connection_point(self):
        """ES001 shared by two centers: 50 each at 50%."""
        registrations = [CenterRegistration("ES001", "Endesa", "Norte"),
                         CenterRegistration("ES001", "Endesa", "Sur")]
        result = run_pipeline(ELECTRICITY, rows(["ES001", "", "F1", "2023-01-01", "2023-12-31", "100", ""]),
                              ELECTRICITY_MAPPING, electricity_config(2023, registrations))
        allocations = result.accepted[0].allocations
        assert [(a.center, a.quantity, a.percentage) for a in allocations] == [
            ("Norte", 50.0, 50.0), ("Sur", 50.0, 50.0)]
        assert result.totals["Norte"].quantity == pytest.approx(50.0)
        assert result.totals["Sur"].quantity == pytest.approx(50.0)

    def test_unknown_marketer(self):
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Acme Powerco", "F1", "", "", "1000", "Norte"]),
                              ELECTRICITY_MAPPING, electricity_config(2023))
        assert result.totals["Norte"].emissions == 0.0
        assert any("Acme Powerco" in line and "not found for year 2023" in line
                   for line in result.diagnostics)

    def test_registry_marketer_overrides_row(self):
        registrations = [CenterRegistration("ES001", "Endesa", "Norte")]
        result = run_pipeline(ELECTRICITY, rows(["ES001", "Otra", "F1", "", "", "1000", ""]),
                              ELECTRICITY_MAPPING, electricity_config(2023, registrations))
        accepted = result.accepted[0]
        assert accepted.factor_key == "Endesa"
        assert result.totals["Norte"].emissions == pytest.approx(0.2)
        assert result.totals["Norte"].location_emissions == pytest.approx(0.3)


# ---- Skip Reason Tests ----

class TestSkipReasons:
    def test_inverted_period(self):
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "2023-06-30", "2023-06-01", "10", "A"]),
                              ELECTRICITY_MAPPING, electricity_config())
        assert result.skipped[0].reason == SkipReason.INVALID_PERIOD

    def test_non_positive_quantity(self):
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "", "", "0", "A"],
                                                ["ES9", "Endesa", "F2", "", "", "abc", "A"]),
                              ELECTRICITY_MAPPING, electricity_config())
        assert [s.reason for s in result.skipped] == [SkipReason.NON_POSITIVE_QUANTITY] * 2

    def test_invoice_filter(self):
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "", "", "10", "A"],
                                                ["ES9", "Endesa", "F2", "", "", "10", "A"]),
                              ELECTRICITY_MAPPING, electricity_config(invoices={"F2"}))
        assert [type(o) for o in result.outcomes] == [Skipped, Accepted]
        assert result.skipped[0].reason == SkipReason.INVOICE_FILTERED
        assert "invoice 'F1' is not in valid invoices set" in result.skipped[0].detail

    def test_empty_invoice_set_disables_filter(self):
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "", "", "10", "A"]),
                              ELECTRICITY_MAPPING, electricity_config(invoices=()))
        assert len(result.accepted) == 1

    def test_row_error_does_not_abort(self):
        class Unprintable:
            def __str__(self):
                raise RuntimeError("broken cell")

        result = run_pipeline(ELECTRICITY, rows(["ES9", Unprintable(), "F1", "", "", "10", "A"],
                                                ["ES9", "Endesa", "F2", "", "", "10", "A"]),
                              ELECTRICITY_MAPPING, electricity_config())
        assert result.skipped[0].reason == SkipReason.ROW_ERROR
        assert "broken cell" in result.skipped[0].detail
        assert len(result.accepted) == 1

    def test_closing_count_line(self):
        result = run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "", "", "10", "A"],
                                                ["ES9", "Endesa", "F2", "", "", "10", "B"]),
                              ELECTRICITY_MAPPING, electricity_config())
        assert result.diagnostics[-1] == "Processed 2 centers in aggregates"


# ---- Cancellation and Config Tests ----

class TestCancellation:
    def test_cancel_before_first_batch(self):
        config = electricity_config(should_cancel=lambda: True)
        with pytest.raises(ExportCancelled):
            run_pipeline(ELECTRICITY, rows(["ES9", "Endesa", "F1", "", "", "10", "A"]),
                         ELECTRICITY_MAPPING, config)

    def test_cancel_checked_per_batch(self):
        calls = []

        def should_cancel():
            calls.append(1)
            return len(calls) > 1

        config = electricity_config(should_cancel=should_cancel, batch_size=2)
        data = rows(*[["ES9", "Endesa", f"F{i}", "", "", "10", "A"] for i in range(5)])
        with pytest.raises(ExportCancelled, match="after 2 rows"):
            run_pipeline(ELECTRICITY, data, ELECTRICITY_MAPPING, config)


class TestExportConfig:
    def test_year_must_match_factors(self):
        with pytest.raises(ValueError):
            ExportConfig(2024, FactorTable.empty(ELECTRICITY, 2023))

    def test_batch_size(self):
        with pytest.raises(ValueError):
            ExportConfig(2023, FactorTable.empty(ELECTRICITY, 2023), batch_size=0)

    def test_with_invoices(self):
        config = ExportConfig(2023, FactorTable.empty(GAS, 2023)).with_invoices([" A1 ", "", "B2"])
        assert config.valid_invoices == frozenset({"A1", "B2"})
        assert config.module == GAS

    def test_pipeline_rejects_other_module(self):
        with pytest.raises(ValueError):
            RowPipeline(GAS, ColumnMapping(quantity=0), electricity_config())
