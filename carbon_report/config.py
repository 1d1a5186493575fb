"""Export configuration.

Everything an export needs is passed in through ``ExportConfig``; there is
no module-level "current year" or global factor cache.
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, Optional

from carbon_report.models.allocation import CenterRegistry
from carbon_report.models.factors import FactorTable

DATA_DIR_ENV = "CARBON_REPORT_DATA_DIR"

CANCEL_BATCH_SIZE = 500


def _get_resource_path(relative_path: str) -> Path:
    """Absolute path to a bundled resource, for dev runs and PyInstaller."""
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        base_path = Path(sys._MEIPASS)
    else:
        base_path = Path.cwd()
    return base_path / relative_path


def default_data_dir() -> Path:
    """Directory holding ``cups_center/`` and ``emission_factors/``.

    ``$CARBON_REPORT_DATA_DIR`` wins; otherwise ``./data``.
    """
    override = os.environ.get(DATA_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return _get_resource_path("data")


@dataclass
class ExportConfig:
    """Inputs of one module export.

    Attributes:
        year: Reporting year.
        factors: Factor table for the module and year.
        registry: Connection point registry used to split shared points.
        valid_invoices: When non-empty, rows whose invoice is not listed are
            skipped.
        should_cancel: Polled before each batch of rows; returning True
            aborts the export.
        batch_size: Rows processed between cancellation checks.
    """

    year: int
    factors: FactorTable
    registry: CenterRegistry = field(default_factory=CenterRegistry)
    valid_invoices: FrozenSet[str] = frozenset()
    should_cancel: Optional[Callable[[], bool]] = None
    batch_size: int = CANCEL_BATCH_SIZE

    def __post_init__(self):
        if not isinstance(self.year, int) or isinstance(self.year, bool):
            raise ValueError(f"year must be an integer, got {self.year!r}")
        if self.factors.year != self.year:
            raise ValueError(
                f"factor table is for {self.factors.year}, export is for {self.year}")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if not isinstance(self.valid_invoices, frozenset):
            self.valid_invoices = frozenset(self.valid_invoices)

    @property
    def module(self) -> str:
        return self.factors.module

    def with_invoices(self, invoices: Iterable[str]) -> "ExportConfig":
        cleaned = frozenset(i.strip() for i in invoices if i and i.strip())
        return ExportConfig(self.year, self.factors, self.registry, cleaned,
                            self.should_cancel, self.batch_size)
