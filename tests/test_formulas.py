"""Unit tests for the in-memory workbook model and the formula evaluator."""

import pytest

from carbon_report.reports.document import (
    Formula,
    Number,
    ReportDocument,
    Text,
    clean_sheet_name,
    quote_sheet,
)
from carbon_report.reports.formulas import (
    FormulaError,
    FormulaEvaluator,
    Range,
    fill_cached_values,
    parse_formula,
    references,
)


@pytest.fixture
def document():
    doc = ReportDocument()
    data = doc.add_sheet("Datos")
    data.write_row(0, [Text("Centro"), Text("Consumo"), Text("Emisiones")])
    data.write_row(1, [Text("Norte"), Number(10.0), Number(1.5)])
    data.write_row(2, [Text("Sur"), Number(20.0), Number(2.5)])
    data.write_row(3, [Text("norte"), Number(5.0), Formula("B4*0.1")])
    other = doc.add_sheet("Bob's sheet")
    other.set(0, 0, Number(4.0))
    return doc


# ---- Document Tests ----

class TestReportDocument:
    def test_duplicate_names_case_insensitive(self):
        doc = ReportDocument()
        doc.add_sheet("Resumen")
        with pytest.raises(ValueError):
            doc.add_sheet("RESUMEN")

    def test_unique_name(self):
        doc = ReportDocument()
        doc.add_sheet("Gas - Total")
        assert doc.unique_name("Gas - Total") == "Gas - Total (2)"
        assert doc.unique_name("Otro") == "Otro"

    def test_unique_name_keeps_length_limit(self):
        doc = ReportDocument()
        long_name = "x" * 40
        doc.add_sheet(long_name)
        candidate = doc.unique_name(long_name)
        assert len(candidate) <= 31
        assert candidate.endswith(" (2)")

    def test_clean_sheet_name(self):
        assert clean_sheet_name("a/b:c") == "a b c"
        assert clean_sheet_name("") == "Sheet"

    def test_quote_sheet(self):
        assert quote_sheet("Bob's sheet") == "'Bob''s sheet'"

    def test_formula_strips_equals(self):
        assert Formula("=SUM(A1:A2)").expr == "SUM(A1:A2)"

    def test_text_of_integral_number(self, document):
        assert document.sheet("datos").text(1, 1) == "10"

    def test_missing_sheet(self, document):
        with pytest.raises(KeyError):
            document.sheet("Nada")


# ---- Parser Tests ----

class TestParser:
    def test_references(self):
        found = references("IFERROR(SUMIF('Gas - Extendido'!$B:$B,$A2,'Gas - Extendido'!$L:$L),0)", "Hoja")
        assert found[0] == Range("Gas - Extendido", 0, 1, None, 1)
        assert found[1] == Range("Hoja", 1, 0, 1, 0)
        assert found[2].first_col == 11

    def test_operator_precedence(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate("1+2*3", "Datos") == 7.0
        assert evaluator.evaluate("(1+2)*3", "Datos") == 9.0
        assert evaluator.evaluate("-2*-3", "Datos") == 6.0

    def test_syntax_error(self):
        with pytest.raises(FormulaError):
            parse_formula("SUM(A1", "Hoja")


# ---- Evaluator Tests ----

class TestFormulaEvaluator:
    def test_cell_and_sum(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate("B2+B3", "Datos") == 30.0
        assert evaluator.evaluate("SUM(Datos!$B:$B)", "Hoja") == 35.0
        assert evaluator.evaluate("SUM(B2:C3)", "Datos") == 34.0

    def test_nested_formula_cell(self, document):
        assert FormulaEvaluator(document).cell_value("Datos", 3, 2) == pytest.approx(0.5)

    def test_quoted_sheet_with_apostrophe(self, document):
        assert FormulaEvaluator(document).evaluate("'Bob''s sheet'!A1*2", "Datos") == 8.0

    def test_sumif_case_insensitive(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate('SUMIF($A:$A,"Norte",$B:$B)', "Datos") == 15.0
        assert evaluator.evaluate('SUMIF(B:B,">=10")', "Datos") == 30.0

    def test_exact_is_case_sensitive(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate('EXACT("Norte","norte")', "Datos") is False
        assert evaluator.evaluate('EXACT(A2,"Norte")', "Datos") is True
        assert evaluator.evaluate('EXACT(B2,"10")', "Datos") is True

    def test_sumproduct_with_exact_match(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate('SUMPRODUCT(EXACT($A$2:$A$4,"Norte")*$B$2:$B$4)', "Datos") == 10.0
        assert evaluator.evaluate('SUMPRODUCT(EXACT($A$2:$A$4,"norte")*$C$2:$C$4)',
                                  "Datos") == pytest.approx(0.5)
        # No wildcard expansion.
        assert evaluator.evaluate('SUMPRODUCT(EXACT($A$2:$A$4,"N*")*$B$2:$B$4)', "Datos") == 0.0

    def test_sumproduct_of_ranges(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate("SUMPRODUCT($B$2:$B$4,$C$2:$C$4)", "Datos") == pytest.approx(67.5)
        assert evaluator.safe_evaluate("SUMPRODUCT($B$2:$B$4,$C$2:$C$3)", "Datos") == "#VALUE!"
        assert evaluator.safe_evaluate("$B$2:$B$4*2", "Datos") == "#VALUE!"

    def test_vlookup_exact(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate('VLOOKUP("Sur",$A:$C,3,FALSE)', "Datos") == 2.5
        with pytest.raises(FormulaError) as exc:
            evaluator.evaluate('VLOOKUP("Este",$A:$C,3,FALSE)', "Datos")
        assert exc.value.code == "#N/A"
        assert evaluator.safe_evaluate('VLOOKUP("Sur",$A:$C,9,FALSE)', "Datos") == "#REF!"

    def test_iferror(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate('IFERROR(VLOOKUP("Este",$A:$C,3,FALSE),0)', "Datos") == 0.0
        assert evaluator.evaluate("IFERROR(1/0,-1)", "Datos") == -1.0

    def test_division_by_zero(self, document):
        assert FormulaEvaluator(document).safe_evaluate("B2/0", "Datos") == "#DIV/0!"

    def test_if_min_max(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.evaluate("IF(B2>5,1,2)", "Datos") == 1.0
        assert evaluator.evaluate("MIN(B2:B4)", "Datos") == 5.0
        assert evaluator.evaluate("MAX(B2:B4)", "Datos") == 20.0

    def test_unknown_function_and_sheet(self, document):
        evaluator = FormulaEvaluator(document)
        assert evaluator.safe_evaluate("NPV(0.1,B2)", "Datos") == "#NAME?"
        assert evaluator.safe_evaluate("Nada!A1", "Datos") == "#REF!"

    def test_circular_reference(self):
        doc = ReportDocument()
        sheet = doc.add_sheet("Ciclo")
        sheet.set(0, 0, Formula("B1+1"))
        sheet.set(0, 1, Formula("A1+1"))
        assert FormulaEvaluator(doc).safe_evaluate("A1", "Ciclo") == "#REF!"

    def test_use_cached(self):
        doc = ReportDocument()
        sheet = doc.add_sheet("Copia")
        sheet.set(0, 0, Formula("SUMIF(Origen!A:A,\"x\",Origen!B:B)", 42.0))
        assert FormulaEvaluator(doc, use_cached=True).evaluate("A1*2", "Copia") == 84.0
        assert FormulaEvaluator(doc).safe_evaluate("A1*2", "Copia") == "#REF!"


class TestFillCachedValues:
    def test_fills_only_requested_sheets(self, document):
        other = document.add_sheet("Resumen")
        other.set(0, 0, Formula("SUM(Datos!B:B)"))
        other.set(1, 0, Formula("1/0"))
        fill_cached_values(document, ["Resumen"])
        assert other.get(0, 0).value == 35.0
        assert other.get(1, 0).value == "#DIV/0!"
        assert document.sheet("Datos").get(3, 2).value is None
