"""Emission factor tables and lookup.

Factors are scoped to one module and one reporting year. Keys (marketer
names, gas, fuel and refrigerant types) are compared after normalization so
that "Iberdrola Clientes" and " IBERDROLA  CLIENTES" hit the same entry.
A lookup miss is never fatal: the factor is 0.0 and a diagnostic line is
recorded for the report.
"""

import logging
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, REFRIGERANT

logger = logging.getLogger(__name__)

ENTITY_LABELS = {
    ELECTRICITY: "marketer",
    GAS: "gas type",
    FUEL: "fuel type",
    REFRIGERANT: "refrigerant type",
}


def normalize_key(text: Optional[str]) -> str:
    """Canonical form of a lookup key: NFKC, trimmed, single-spaced, lower."""
    if text is None:
        return ""
    value = unicodedata.normalize("NFKC", str(text).replace("\u00a0", " "))
    return " ".join(value.split()).lower()


def fuel_key(fuel_type: str, vehicle_type: str = "") -> str:
    """Composite key for fuel factors, ``fuel|vehicle`` or just ``fuel``."""
    if vehicle_type and vehicle_type.strip():
        return f"{normalize_key(fuel_type)}|{normalize_key(vehicle_type)}"
    return normalize_key(fuel_type)


@dataclass(frozen=True)
class Factor:
    """Emission factor in kg CO2e per unit of quantity.

    ``location`` is only meaningful for modules reporting both market- and
    location-based emissions (electricity, gas).
    """

    market: float
    location: Optional[float] = None

    def emissions(self, quantity: float) -> Tuple[float, Optional[float]]:
        """Tonnes CO2e for ``quantity``: ``quantity * factor / 1000``."""
        market = quantity * self.market / 1000.0
        location = None if self.location is None else quantity * self.location / 1000.0
        return market, location


ZERO_FACTOR = Factor(0.0, 0.0)


class FactorTable:
    """Read-only factor lookup for one ``(module, year)``.

    Args:
        module: One of the module names in ``carbon_report.models.billing``.
        year: Reporting year the factors apply to.
        entries: Mapping of raw key to ``Factor``; keys are normalized here.
        location_factor: Grid-average factor applied as the location-based
            factor of every electricity row, when known.
    """

    def __init__(self, module: str, year: int, entries: Optional[Mapping[str, Factor]] = None,
                 location_factor: Optional[float] = None):
        self.module = module
        self.year = year
        self.location_factor = location_factor
        self._entries: Dict[str, Factor] = {}
        for key, factor in (entries or {}).items():
            normalized = normalize_key(key)
            if normalized:
                self._entries[normalized] = factor

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return normalize_key(key) in self._entries

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def get(self, key: str) -> Optional[Factor]:
        """Exact lookup after normalization, or None."""
        return self._entries.get(normalize_key(key))

    @classmethod
    def from_rows(cls, module: str, year: int, rows: Iterable[Tuple[str, float, Optional[float]]],
                  location_factor: Optional[float] = None) -> "FactorTable":
        """Build a table from ``(key, market, location)`` tuples.

        Later duplicates of a key override earlier ones.
        """
        entries: Dict[str, Factor] = {}
        for key, market, location in rows:
            entries[key] = Factor(market, location)
        return cls(module, year, entries, location_factor)

    @classmethod
    def empty(cls, module: str, year: int) -> "FactorTable":
        return cls(module, year)


class FactorResolver:
    """Resolves billing keys against a ``FactorTable``, collecting misses.

    ``resolve`` never raises. Each miss appends one line to ``diagnostics``
    and logs a warning; the returned factor is zero.
    """

    def __init__(self, table: FactorTable):
        self.table = table
        self.diagnostics: List[str] = []

    @property
    def entity_label(self) -> str:
        return ENTITY_LABELS.get(self.table.module, "key")

    def _with_location(self, factor: Factor) -> Factor:
        if self.table.module == ELECTRICITY:
            location = self.table.location_factor
            if location is None:
                location = factor.location if factor.location is not None else 0.0
            return Factor(factor.market, location)
        return factor

    def _miss(self, key: str, sheet_row: Optional[int]) -> Factor:
        prefix = f"Row {sheet_row}: " if sheet_row is not None else ""
        message = (f"{prefix}{self.entity_label} '{key}' not found for year "
                   f"{self.table.year}; using factor=0.0")
        self.diagnostics.append(message)
        logger.warning(message)
        if self.table.module in (ELECTRICITY, GAS):
            return self._with_location(Factor(0.0, 0.0))
        return Factor(0.0)

    def resolve(self, key: str, sheet_row: Optional[int] = None,
                vehicle_type: str = "") -> Factor:
        """Look up the factor for ``key``.

        Args:
            key: Marketer, gas type, fuel type or refrigerant type.
            sheet_row: 1-based source row, used in the diagnostic message.
            vehicle_type: Fuel only; tried as ``fuel|vehicle`` before ``fuel``.

        Returns:
            The factor, with the grid location factor filled in for
            electricity. A zero factor when the key is unknown.
        """
        if self.table.module == FUEL and vehicle_type:
            factor = self.table.get(fuel_key(key, vehicle_type))
            if factor is not None:
                return factor
        factor = self.table.get(key)
        if factor is None:
            return self._miss(key, sheet_row)
        return self._with_location(factor)
