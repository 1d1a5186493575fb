"""Per-center running totals for one module export."""

from collections import OrderedDict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping

import numpy as np


@dataclass(frozen=True)
class CenterTotals:
    """Finalized totals of one center.

    ``location_emissions`` stays 0.0 for modules without a location-based
    figure.
    """

    center: str
    quantity: float
    emissions: float
    location_emissions: float = 0.0


class CenterAggregator:
    """Accumulates ``[quantity, emissions, location_emissions]`` per center.

    Centers are keyed by exact name and kept in first-seen order. Call
    ``finalize`` once all rows are in; the aggregator is frozen afterwards.

    Example:
        >>> agg = CenterAggregator()
        >>> agg.add("Norte", 10.0, 2.5)
        >>> agg.finalize()["Norte"].emissions
        2.5
    """

    WIDTH = 3

    def __init__(self):
        self._totals: Dict[str, np.ndarray] = OrderedDict()
        self._finalized = False

    def add(self, center: str, quantity: float, emissions: float,
            location_emissions: float = 0.0) -> None:
        if self._finalized:
            raise RuntimeError("CenterAggregator is finalized; no more rows can be added")
        vector = self._totals.get(center)
        if vector is None:
            vector = np.zeros(self.WIDTH, dtype=float)
            self._totals[center] = vector
        vector += (quantity, emissions, location_emissions or 0.0)

    def centers(self) -> List[str]:
        return list(self._totals.keys())

    def __len__(self) -> int:
        return len(self._totals)

    def grand_total(self) -> np.ndarray:
        """Column sums over all centers."""
        if not self._totals:
            return np.zeros(self.WIDTH, dtype=float)
        return np.sum(np.vstack(list(self._totals.values())), axis=0)

    def finalize(self) -> Mapping[str, CenterTotals]:
        """Freeze the aggregator and return a read-only center mapping."""
        self._finalized = True
        result = OrderedDict()
        for center, vector in self._totals.items():
            vector.setflags(write=False)
            result[center] = CenterTotals(center, float(vector[0]), float(vector[1]),
                                          float(vector[2]))
        return MappingProxyType(result)

    @property
    def finalized(self) -> bool:
        return self._finalized
