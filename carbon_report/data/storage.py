"""Column mapping save/load and invoice list files, using JSON and plain text."""

import json
from pathlib import Path
from typing import Set, Union

from carbon_report.models.billing import ColumnMapping


def save_mapping(mapping: ColumnMapping, filepath: Union[str, Path], module: str = "") -> None:
    """Save a column mapping to a JSON file.

    Args:
        mapping: Mapping to save.
        filepath: Output file path (should end in .json).
        module: Optional module name stored alongside the mapping.

    Raises:
        OSError: If file cannot be written.
    """
    data = mapping.to_dict()
    if module:
        data["module"] = module
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_mapping(filepath: Union[str, Path]) -> ColumnMapping:
    """Load a column mapping from a JSON file.

    Unknown keys (such as ``module``) are ignored.

    Raises:
        FileNotFoundError: If file does not exist.
        json.JSONDecodeError: If file is not valid JSON.
        ValueError: If a column index is not an integer.
    """
    with open(filepath, "r", encoding="utf-8") as f:
        data = json.load(f)
    return ColumnMapping.from_dict(data)


def load_valid_invoices(filepath: Union[str, Path]) -> Set[str]:
    """Invoice numbers listed one per line; blank lines and ``#`` comments are ignored."""
    invoices = set()
    with open(filepath, "r", encoding="utf-8-sig") as f:
        for line in f:
            value = line.strip()
            if value and not value.startswith("#"):
                invoices.add(value)
    return invoices
