"""Row outcomes and export errors.

Each source row processed by the pipeline yields exactly one outcome:
``Accepted`` (the row contributes one or more per-center allocations) or
``Skipped`` (the row is left out of the report, with a reason that ends up in
the Diagnostics sheet). Nothing inside a single row is allowed to abort an
export; only the errors defined here propagate to the caller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Union

from carbon_report.models.allocation import Allocation
from carbon_report.models.billing import BillingRow
from carbon_report.models.factors import Factor


class ExportError(Exception):
    """Base class for errors that abort a whole export."""


class SourceUnavailable(ExportError):
    """The source workbook or sheet is missing, unreadable or corrupt."""


class ExportCancelled(ExportError):
    """The caller asked the export to stop before it finished."""


class SkipReason(Enum):
    OUTSIDE_YEAR = "outside_year"
    INVALID_PERIOD = "invalid_period"
    NON_POSITIVE_QUANTITY = "non_positive_quantity"
    INVOICE_FILTERED = "invoice_filtered"
    ROW_ERROR = "row_error"


@dataclass(frozen=True)
class Accepted:
    """A row that made it into the report.

    Attributes:
        row: The billing row as read from the source sheet.
        applicable_quantity: Share of ``row.quantity`` inside the target year.
        factor: Emission factor used for every allocation of this row.
        factor_key: The key the factor was resolved from (marketer, type...).
        allocations: One entry per center the row is attributed to.
    """

    row: BillingRow
    applicable_quantity: float
    factor: Factor
    factor_key: str
    allocations: List[Allocation] = field(default_factory=list)

    @property
    def applicable_percent(self) -> float:
        if self.row.quantity == 0:
            return 0.0
        return self.applicable_quantity / self.row.quantity * 100.0


@dataclass(frozen=True)
class Skipped:
    row_index: int
    reason: SkipReason
    detail: str = ""


RowOutcome = Union[Accepted, Skipped]
