"""Input validation functions for carbon report exports.

Each validator returns a tuple of (is_valid: bool, message: str).
Messages describe errors or warnings for user display.
"""

from datetime import date
from pathlib import Path
from typing import List, Optional, Tuple, Union

from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, MODULES, REFRIGERANT, ColumnMapping

REQUIRED_FIELDS = {
    ELECTRICITY: ("connection_point", "quantity"),
    GAS: ("quantity",),
    FUEL: ("quantity", "factor_type"),
    REFRIGERANT: ("quantity",),
}


def validate_year(year: int) -> Tuple[bool, str]:
    """Validate the reporting year.

    Args:
        year: Calendar year of the report.

    Returns:
        (is_valid, message) tuple.
    """
    if year < 1990 or year > 2100:
        return False, f"Year {year} is outside the supported range 1990-2100."
    if year > date.today().year:
        return True, f"Warning: {year} is in the future; billing data may be incomplete."
    return True, ""


def validate_module(module: str) -> Tuple[bool, str]:
    if module not in MODULES:
        return False, f"Unknown module '{module}'. Choose one of: {', '.join(MODULES)}."
    return True, ""


def validate_mapping(mapping: ColumnMapping, module: str) -> Tuple[bool, str]:
    """Validate that a column mapping has what the module needs.

    Args:
        mapping: Column mapping for the source sheet.
        module: Module the mapping is used for.

    Returns:
        (is_valid, message) tuple.
    """
    missing = [name for name in REQUIRED_FIELDS.get(module, ()) if not mapping.is_mapped(name)]
    if module in (GAS, REFRIGERANT) and not mapping.fixed_type.strip() \
            and not mapping.is_mapped("factor_type"):
        missing.append("factor_type (or a fixed type)")
    if missing:
        return False, f"Missing column mapping for: {', '.join(missing)}."

    warnings = []
    if mapping.start_column is None or mapping.end_column is None:
        warnings.append("Warning: no date columns mapped; every row counts in full for the year.")

    used = [getattr(mapping, n) for n in mapping.column_fields() if mapping.is_mapped(n)]
    duplicates = sorted({c for c in used if used.count(c) > 1})
    if duplicates:
        warnings.append(f"Warning: columns {duplicates} are mapped to more than one field.")
    return True, " ".join(warnings)


def validate_output_path(path: Union[str, Path]) -> Tuple[bool, str]:
    """Validate that an output workbook path is usable.

    Returns:
        (is_valid, message) tuple.
    """
    path = Path(path)
    if path.suffix.lower() not in (".xlsx", ".xlsm"):
        return False, "Output file must end in .xlsx."
    if path.exists() and path.is_dir():
        return False, f"{path} is a directory."
    parent = path.parent if str(path.parent) else Path(".")
    if parent.exists() and not parent.is_dir():
        return False, f"{parent} is not a directory."
    if path.exists():
        return True, f"Warning: {path.name} will be overwritten."
    return True, ""


def validate_source_path(path: Union[str, Path]) -> Tuple[bool, str]:
    path = Path(path)
    if not path.is_file():
        return False, f"Source file not found: {path}"
    if path.suffix.lower() not in (".xlsx", ".xlsm", ".csv", ".txt"):
        return False, f"Unsupported source format '{path.suffix}'."
    return True, ""


def validate_export_request(module: str, year: int, mapping: ColumnMapping,
                            output_path: Union[str, Path],
                            source_path: Optional[Union[str, Path]] = None) -> Tuple[bool, List[str]]:
    """Run all validations for one module export.

    Returns:
        (is_valid, messages) where messages includes all errors and warnings.
    """
    messages = []
    is_valid = True

    checks = [validate_module(module), validate_year(year), validate_output_path(output_path)]
    if module in MODULES:
        checks.append(validate_mapping(mapping, module))
    if source_path is not None:
        checks.append(validate_source_path(source_path))

    for valid, msg in checks:
        if not valid:
            is_valid = False
        if msg:
            messages.append(msg)

    return is_valid, messages
