#!/usr/bin/env python3
"""
Carbon Report CLI - yearly greenhouse-gas report from provider billing sheets

Commands:
- electricity / gas / fuel / refrigerant: read a provider spreadsheet,
  prorate each billing period to the reporting year, split shared
  connection points across centers and write a formula-backed workbook
- summary: merge module workbooks into the scope 1 / scope 2 report
- factors: list the emission factors loaded for a module and year

Usage:
    python carbon_cli.py electricity bills.xlsx --sheet Facturas --year 2023 \\
        --col connection_point=B --col start_date=E --col end_date=F \\
        --col quantity=H --col emission_entity=C -o electricidad_2023.xlsx
    python carbon_cli.py summary --electricity electricidad_2023.xlsx \\
        --gas gas_2023.xlsx -o resumen_2023.xlsx
    python carbon_cli.py --help
"""

import argparse
import logging
import sys
from typing import List, Optional

from xlsxwriter.utility import xl_cell_to_rowcol

from carbon_report.data.libraries import FactorLibrary, factor_rows
from carbon_report.data.sources import load_erp_invoices
from carbon_report.data.storage import load_mapping, load_valid_invoices, save_mapping
from carbon_report.data.validators import validate_export_request, validate_output_path
from carbon_report.export import build_config, export_module, export_summary
from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, MODULES, REFRIGERANT, ColumnMapping
from carbon_report.models.outcomes import ExportCancelled, ExportError
from carbon_report.reports.module_report import UNITS
from carbon_report.utils.formatters import format_emissions, format_number, format_percent, format_quantity
from carbon_report.utils.logging import configure_logging

logger = logging.getLogger("carbon_cli")


# ============================================================================
# FORMATTING UTILITIES
# ============================================================================

def print_header(text: str, char: str = "=") -> None:
    """Print a formatted section header."""
    width = 70
    print(f"\n{char * width}")
    print(f" {text}")
    print(f"{char * width}")


def print_table(headers: List[str], rows: List[List[str]],
                col_widths: Optional[List[int]] = None) -> None:
    """Print a formatted ASCII table."""
    if col_widths is None:
        col_widths = [max(len(str(row[i])) for row in [headers] + rows) + 2
                      for i in range(len(headers))]

    header_line = "|".join(h.center(w) for h, w in zip(headers, col_widths))
    separator = "+".join("-" * w for w in col_widths)
    print(f"+{separator}+")
    print(f"|{header_line}|")
    print(f"+{separator}+")

    for row in rows:
        row_line = "|".join(str(cell).rjust(w - 1) + " " for cell, w in zip(row, col_widths))
        print(f"|{row_line}|")
    print(f"+{separator}+")


# ============================================================================
# ARGUMENT HELPERS
# ============================================================================

def parse_column(text: str) -> int:
    """Column given as a letter ("C") or a zero-based index ("2")."""
    text = text.strip()
    if text.lstrip("-").isdigit():
        return int(text)
    if text.isalpha():
        return xl_cell_to_rowcol(text.upper() + "1")[1]
    raise argparse.ArgumentTypeError(f"invalid column: {text!r}")


def build_mapping(args) -> ColumnMapping:
    """Column mapping from ``--mapping`` JSON, overridden by ``--col`` pairs."""
    data = load_mapping(args.mapping).to_dict() if args.mapping else {}
    fields = ColumnMapping.column_fields()
    for pair in args.col or []:
        name, sep, value = pair.partition("=")
        name = name.strip()
        if not sep or name not in fields:
            raise argparse.ArgumentTypeError(
                f"--col expects field=column with field in: {', '.join(fields)}")
        data[name] = parse_column(value)
    fixed = getattr(args, "fixed_type", None)
    if fixed:
        data["fixed_type"] = fixed
    return ColumnMapping.from_dict(data)


def collect_invoices(args) -> set:
    invoices = set()
    if args.invoices:
        invoices |= load_valid_invoices(args.invoices)
    if args.erp:
        invoices |= load_erp_invoices(args.erp, args.erp_sheet, args.erp_invoice_col,
                                      args.erp_date_col, args.year)
    return invoices


def print_module_result(export) -> None:
    result = export.result
    unit = UNITS[result.module]
    print_header(f"{result.module.upper()} {result.year}")
    print(f"\n  Rows accepted: {len(result.accepted)}   Rows skipped: {len(result.skipped)}")
    headers = ["Center", "Quantity", "Emissions"]
    with_location = result.module in (ELECTRICITY, GAS)
    if with_location:
        headers = ["Center", "Quantity", "Market-based", "Location-based"]
    headers.append("Share")
    overall = sum(totals.emissions for totals in result.totals.values())
    rows = []
    for totals in result.totals.values():
        row = [totals.center, format_quantity(totals.quantity, unit),
               format_emissions(totals.emissions)]
        if with_location:
            row.append(format_emissions(totals.location_emissions))
        row.append(format_percent(100.0 * totals.emissions / overall) if overall else "N/A")
        rows.append(row)
    if rows:
        print()
        print_table(headers, rows)
    print(f"\n  Workbook: {export.path}")


# ============================================================================
# COMMANDS
# ============================================================================

def run_module_command(args) -> int:
    module = args.command
    mapping = build_mapping(args)
    ok, messages = validate_export_request(module, args.year, mapping, args.output, args.source)
    for message in messages:
        print(message, file=sys.stderr if not ok else sys.stdout)
    if not ok:
        return 2
    if args.save_mapping:
        save_mapping(mapping, args.save_mapping, module)
        print(f"Mapping saved to {args.save_mapping}")

    library = FactorLibrary(args.data_dir)
    config = build_config(module, args.year, library, collect_invoices(args))
    export = export_module(module, args.source, args.sheet, mapping, config, args.output)
    if not args.quiet:
        print_module_result(export)
    return 0


def run_summary_command(args) -> int:
    ok, message = validate_output_path(args.output)
    if message:
        print(message, file=sys.stderr if not ok else sys.stdout)
    if not ok:
        return 2
    if not any([args.electricity, args.gas, args.fuel, args.refrigerant]):
        print("Give at least one module workbook.", file=sys.stderr)
        return 2
    export = export_summary(args.output, args.electricity, args.gas, args.fuel, args.refrigerant)
    if not args.quiet:
        print_header("SUMMARY")
        for line in export.diagnostics:
            print(f"  {line}")
        print(f"\n  Workbook: {export.path}")
    return 0


def run_factors_command(args) -> int:
    library = FactorLibrary(args.data_dir)
    table = library.load_factors(args.module, args.year)
    print_header(f"{args.module.upper()} FACTORS {args.year}  ({library.year_dir(args.year)})")
    if table.location_factor is not None:
        print(f"\n  Location-based grid factor: {format_number(table.location_factor, 6)}")
    rows = [[key, format_number(market, 6), "" if location is None else format_number(location, 6)]
            for key, market, location in factor_rows(table)]
    if rows:
        print()
        print_table(["Key", "Market", "Location"], rows)
    else:
        print("\n  No factors found.")
    return 0


def _add_module_parser(subparsers, module: str, help_text: str) -> argparse.ArgumentParser:
    p = subparsers.add_parser(module, help=help_text)
    p.add_argument("source", type=str, help="Provider workbook (.xlsx/.xlsm) or .csv file")
    p.add_argument("--sheet", type=str, help="Sheet name (default: first sheet)")
    p.add_argument("--year", "-y", type=int, required=True, help="Reporting year")
    p.add_argument("--mapping", type=str, help="Column mapping JSON file")
    p.add_argument("--col", action="append", metavar="FIELD=COLUMN",
                   help="Map a field to a column letter or zero-based index (repeatable)")
    p.add_argument("--save-mapping", type=str, help="Save the effective mapping to JSON")
    p.add_argument("--invoices", type=str, help="Text file of valid invoice numbers")
    p.add_argument("--erp", type=str, help="ERP export listing conformed invoices")
    p.add_argument("--erp-sheet", type=str, help="Sheet of the ERP export")
    p.add_argument("--erp-invoice-col", type=str, default="Factura",
                   help="ERP header holding the invoice number (default: Factura)")
    p.add_argument("--erp-date-col", type=str, default="Fecha conformidad",
                   help="ERP header holding the conformity date (default: Fecha conformidad)")
    p.add_argument("--data-dir", type=str, help="Factor and registry directory")
    p.add_argument("--output", "-o", type=str, required=True, help="Output workbook (.xlsx)")
    if module == GAS:
        p.add_argument("--gas-type", dest="fixed_type", type=str,
                       help="Gas type applied to every row")
    if module == REFRIGERANT:
        p.add_argument("--refrigerant-type", dest="fixed_type", type=str,
                       help="Refrigerant type applied to every row (default: type column)")
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Carbon Report CLI - yearly emissions per center from billing data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Mapping fields:
  connection_point invoice start_date end_date invoice_date quantity center
  emission_entity factor_type vehicle_type provider person

Examples:
  python carbon_cli.py gas gas.csv --year 2023 --gas-type "Gas natural" \\
      --col invoice=A --col start_date=C --col end_date=D --col quantity=E -o gas_2023.xlsx
  python carbon_cli.py fuel fuel.xlsx --year 2023 --mapping fuel_mapping.json -o fuel.xlsx
  python carbon_cli.py factors electricity 2023
        """
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress detailed output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    _add_module_parser(subparsers, ELECTRICITY, "Electricity invoices (kWh)")
    _add_module_parser(subparsers, GAS, "Natural gas invoices (kWh)")
    _add_module_parser(subparsers, FUEL, "Vehicle fuel purchases (L)")
    _add_module_parser(subparsers, REFRIGERANT, "Refrigerant top-ups (kg)")

    summary = subparsers.add_parser("summary", help="Merge module workbooks")
    summary.add_argument("--electricity", type=str, help="Electricity module workbook")
    summary.add_argument("--gas", type=str, help="Gas module workbook")
    summary.add_argument("--fuel", type=str, help="Fuel module workbook")
    summary.add_argument("--refrigerant", type=str, help="Refrigerant module workbook")
    summary.add_argument("--output", "-o", type=str, required=True, help="Output workbook (.xlsx)")

    factors = subparsers.add_parser("factors", help="List loaded emission factors")
    factors.add_argument("module", choices=MODULES)
    factors.add_argument("year", type=int)
    factors.add_argument("--data-dir", type=str, help="Factor and registry directory")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else ("WARNING" if args.quiet else "INFO"))

    try:
        if args.command in MODULES:
            return run_module_command(args)
        if args.command == "summary":
            return run_summary_command(args)
        return run_factors_command(args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except ExportCancelled as exc:
        print(f"\nExport cancelled: {exc}", file=sys.stderr)
        return 130
    except ExportError as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        logger.debug("Unexpected failure", exc_info=True)
        print(f"\nError: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
