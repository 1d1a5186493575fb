"""Emission factor and connection-point libraries.

Factors and the connection-point registry live as CSV files under the data
directory::

    <data_dir>/cups_center/cups.csv
    <data_dir>/emission_factors/<year>/emission_factors_electricity.csv
    <data_dir>/emission_factors/<year>/emission_factors_electricity_general.csv
    <data_dir>/emission_factors/<year>/gas_factors.csv
    <data_dir>/emission_factors/<year>/fuel_factors.csv
    <data_dir>/emission_factors/<year>/refrigerant_factors.csv

A missing factor file yields an empty table; every lookup against it then
resolves to zero with a diagnostic, so an export still runs.
"""

import csv
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from carbon_report.config import default_data_dir
from carbon_report.models.allocation import CenterRegistration, CenterRegistry
from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, MODULES, REFRIGERANT
from carbon_report.models.factors import Factor, FactorTable, fuel_key
from carbon_report.models.proration import parse_quantity

logger = logging.getLogger(__name__)

FACTOR_FILES = {
    ELECTRICITY: "emission_factors_electricity.csv",
    GAS: "gas_factors.csv",
    FUEL: "fuel_factors.csv",
    REFRIGERANT: "refrigerant_factors.csv",
}
ELECTRICITY_GENERAL_FILE = "emission_factors_electricity_general.csv"
REGISTRY_FILE = Path("cups_center") / "cups.csv"

# Accepted header names per field, first match wins.
_KEY_HEADERS = {
    ELECTRICITY: ("entity", "comercializadora"),
    GAS: ("gastype", "gas_type", "tipo_gas"),
    FUEL: ("fueltype", "fuel_type", "tipo_combustible"),
    REFRIGERANT: ("refrigeranttype", "refrigerant_type", "tipo_refrigerante"),
}
_MARKET_HEADERS = {
    ELECTRICITY: ("basefactor", "factor_emision"),
    GAS: ("marketfactor", "market_factor"),
    FUEL: ("emissionfactor", "emission_factor"),
    REFRIGERANT: ("pca", "gwp"),
}
_LOCATION_HEADERS = ("locationfactor", "location_factor")
_VEHICLE_HEADERS = ("vehicletype", "vehicle_type", "tipo_vehiculo")
_REGISTRY_FIELDS = ("id", "cups", "marketer", "centerName", "acronym", "campus")


def _read_csv_rows(path: Path) -> List[List[str]]:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        return [[c.strip() for c in row] for row in csv.reader(f) if any(c.strip() for c in row)]


def _find(header: Sequence[str], names: Sequence[str]) -> int:
    lowered = [h.strip().lower() for h in header]
    for name in names:
        if name in lowered:
            return lowered.index(name)
    return -1


def _cell(row: Sequence[str], index: int) -> str:
    return row[index] if 0 <= index < len(row) else ""


class FactorLibrary:
    """Loads factor tables and the center registry from a data directory.

    Args:
        data_dir: Root data directory. Defaults to ``default_data_dir()``.
    """

    def __init__(self, data_dir: Union[str, Path, None] = None):
        self.data_dir = Path(data_dir) if data_dir else default_data_dir()

    def year_dir(self, year: int) -> Path:
        return self.data_dir / "emission_factors" / str(year)

    def available_years(self) -> List[int]:
        """Years with a factor directory, ascending."""
        base = self.data_dir / "emission_factors"
        if not base.is_dir():
            return []
        return sorted(int(p.name) for p in base.iterdir() if p.is_dir() and p.name.isdigit())

    def load_location_factor(self, year: int) -> Optional[float]:
        """Grid (location-based) electricity factor for ``year``, or None."""
        path = self.year_dir(year) / ELECTRICITY_GENERAL_FILE
        if not path.is_file():
            logger.warning("No general electricity factors for %d (%s)", year, path)
            return None
        rows = _read_csv_rows(path)
        if len(rows) < 2:
            return None
        col = _find(rows[0], ("location_based_factor",))
        if col < 0:
            col = 3
        return parse_quantity(_cell(rows[1], col))

    def _parse_rows(self, module: str, rows: List[List[str]], path: Path
                    ) -> Dict[str, Factor]:
        header = rows[0]
        key_col = _find(header, _KEY_HEADERS[module])
        market_col = _find(header, _MARKET_HEADERS[module])
        location_col = _find(header, _LOCATION_HEADERS) if module == GAS else -1
        vehicle_col = _find(header, _VEHICLE_HEADERS) if module == FUEL else -1
        data = rows[1:]
        if key_col < 0 or market_col < 0:
            logger.warning("%s: unrecognised header %s; reading columns by position", path, header)
            key_col, market_col = 0, 1
            data = rows if parse_quantity(_cell(rows[0], 1)) is not None else rows[1:]

        entries: Dict[str, Factor] = {}
        for line, row in enumerate(data, start=2):
            key = _cell(row, key_col)
            market = parse_quantity(_cell(row, market_col))
            if not key or market is None:
                logger.warning("%s line %d: skipped malformed factor row %s", path.name, line, row)
                continue
            location = parse_quantity(_cell(row, location_col)) if location_col >= 0 else None
            if vehicle_col >= 0:
                key = fuel_key(key, _cell(row, vehicle_col))
            entries[key] = Factor(market, location)
        return entries

    def load_factors(self, module: str, year: int) -> FactorTable:
        """Factor table for ``module`` and ``year``.

        Raises:
            ValueError: Unknown module name.
        """
        if module not in MODULES:
            raise ValueError(f"unknown module: {module}")
        location_factor = self.load_location_factor(year) if module == ELECTRICITY else None
        path = self.year_dir(year) / FACTOR_FILES[module]
        if not path.is_file():
            logger.warning("No %s factors for %d (%s); all rows will use factor 0", module, year, path)
            return FactorTable(module, year, {}, location_factor)
        rows = _read_csv_rows(path)
        entries = self._parse_rows(module, rows, path) if rows else {}
        logger.info("Loaded %d %s factors for %d", len(entries), module, year)
        return FactorTable(module, year, entries, location_factor)

    def load_registry(self) -> CenterRegistry:
        """Connection-point registry; empty when the file does not exist."""
        path = self.data_dir / REGISTRY_FILE
        registry = CenterRegistry()
        if not path.is_file():
            logger.warning("No connection point registry at %s; rows keep their own center", path)
            return registry
        rows = _read_csv_rows(path)
        if rows and _cell(rows[0], 0).lower() == "id":
            header = [h.strip().lower() for h in rows[0]]
            columns = [header.index(f.lower()) if f.lower() in header else i
                       for i, f in enumerate(_REGISTRY_FIELDS)]
            rows = rows[1:]
        else:
            columns = list(range(len(_REGISTRY_FIELDS)))
        for row in rows:
            values = {name: _cell(row, col) for name, col in zip(_REGISTRY_FIELDS, columns)}
            registry.add(CenterRegistration.from_dict(values))
        logger.info("Loaded %d center registrations (%d connection points)", len(registry),
                    len(registry.connection_points()))
        return registry


def write_registry(registrations: Sequence[CenterRegistration], path: Union[str, Path]) -> None:
    """Write registrations in the ``cups.csv`` layout, with an ``id`` column."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(_REGISTRY_FIELDS)
        for index, registration in enumerate(registrations, start=1):
            data = registration.to_dict()
            writer.writerow([index] + [data[name] for name in _REGISTRY_FIELDS[1:]])


def factor_rows(table: FactorTable) -> List[Tuple[str, float, Optional[float]]]:
    """``(key, market, location)`` for every entry, for listing in the CLI."""
    return [(key, table.get(key).market, table.get(key).location) for key in table.keys()]
