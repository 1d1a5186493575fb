"""Connection-point registry and per-center splitting.

A connection point (CUPS) can be shared by several centers. Each billing row
for a shared point is fanned out to every registered center with an equal
share, so the sum over centers always equals the row's applicable quantity.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from carbon_report.models.billing import NO_CENTER


@dataclass(frozen=True)
class CenterRegistration:
    """One row of the connection-point registry."""

    connection_point: str
    marketer: str = ""
    center: str = ""
    acronym: str = ""
    campus: str = ""

    def to_dict(self) -> dict:
        return {
            "cups": self.connection_point,
            "marketer": self.marketer,
            "centerName": self.center,
            "acronym": self.acronym,
            "campus": self.campus,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CenterRegistration":
        return cls(
            connection_point=str(data.get("cups", "")).strip(),
            marketer=str(data.get("marketer", "")).strip(),
            center=str(data.get("centerName", "")).strip(),
            acronym=str(data.get("acronym", "")).strip(),
            campus=str(data.get("campus", "")).strip(),
        )


@dataclass(frozen=True)
class Allocation:
    """Share of one billing row attributed to one center."""

    center: str
    quantity: float
    percentage: float


class CenterRegistry:
    """Connection point to ordered list of ``CenterRegistration``.

    Connection point ids are matched after trimming; registration order is
    preserved so splits are deterministic.
    """

    def __init__(self, registrations: Optional[Iterable[CenterRegistration]] = None):
        self._by_point: Dict[str, List[CenterRegistration]] = OrderedDict()
        for registration in registrations or ():
            self.add(registration)

    def add(self, registration: CenterRegistration) -> None:
        point = registration.connection_point.strip()
        if not point:
            return
        self._by_point.setdefault(point, []).append(registration)

    def registrations(self, connection_point: Optional[str]) -> List[CenterRegistration]:
        if not connection_point:
            return []
        return list(self._by_point.get(connection_point.strip(), []))

    def __len__(self) -> int:
        return sum(len(items) for items in self._by_point.values())

    def connection_points(self) -> List[str]:
        return list(self._by_point.keys())


class ConnectionPointSplitter:
    """Splits billing quantities across the centers sharing a connection point.

    Args:
        registry: Registry loaded once per export.
    """

    def __init__(self, registry: Optional[CenterRegistry] = None):
        self.registry = registry or CenterRegistry()

    def centers_sharing(self, connection_point: Optional[str]) -> int:
        """Number of centers sharing ``connection_point``; at least 1."""
        return max(1, len(self.registry.registrations(connection_point)))

    def centers_for(self, connection_point: Optional[str], fallback: Optional[str]) -> List[str]:
        """Center names a row is attributed to.

        Registered centers win. An unknown point attributes to the row's own
        center, or to ``SIN_CENTRO`` when that is empty too.
        """
        names = [r.center or NO_CENTER for r in self.registry.registrations(connection_point)]
        if names:
            return names
        fallback = (fallback or "").strip()
        return [fallback or NO_CENTER]

    def marketer_for(self, connection_point: Optional[str]) -> str:
        """First non-empty registered marketer for the point, or ""."""
        for registration in self.registry.registrations(connection_point):
            if registration.marketer:
                return registration.marketer
        return ""

    @staticmethod
    def per_center_share(quantity: float, centers: int):
        """``(quantity / n, 100 / n)``; ``n`` below 1 is treated as 1."""
        n = max(1, int(centers))
        return quantity / n, 100.0 / n

    def allocate(self, connection_point: Optional[str], fallback_center: Optional[str],
                 quantity: float) -> List[Allocation]:
        """Fan ``quantity`` out to every center sharing the point."""
        centers = self.centers_for(connection_point, fallback_center)
        share, percent = self.per_center_share(quantity, len(centers))
        return [Allocation(center, share, percent) for center in centers]
