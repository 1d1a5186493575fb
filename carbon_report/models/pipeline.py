"""Row pipeline: billing rows in, outcomes and per-center totals out.

For every source row the pipeline prorates the quantity to the reporting
year, applies the invoice filter, resolves the emission factor, splits the
quantity across the centers sharing the connection point and feeds the
aggregator. Problems with a single row become a ``Skipped`` outcome and a
diagnostic line; only cancellation escapes.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Sequence, Tuple

from carbon_report.config import ExportConfig
from carbon_report.models.aggregation import CenterAggregator, CenterTotals
from carbon_report.models.allocation import ConnectionPointSplitter
from carbon_report.models.billing import ELECTRICITY, BillingRow, ColumnMapping, read_billing_row
from carbon_report.models.factors import FactorResolver
from carbon_report.models.outcomes import (
    Accepted,
    ExportCancelled,
    RowOutcome,
    SkipReason,
    Skipped,
)
from carbon_report.models.proration import applicable_fraction, parse_date

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything a report writer needs from one module run."""

    module: str
    year: int
    outcomes: List[RowOutcome] = field(default_factory=list)
    totals: Mapping[str, CenterTotals] = field(default_factory=dict)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> List[Accepted]:
        return [o for o in self.outcomes if isinstance(o, Accepted)]

    @property
    def skipped(self) -> List[Skipped]:
        return [o for o in self.outcomes if isinstance(o, Skipped)]


class RowPipeline:
    """Processes the data rows of one module export.

    Args:
        module: Module name (electricity, gas, fuel, refrigerant).
        mapping: Column mapping of the source sheet.
        config: Year, factor table, registry and filters.
    """

    def __init__(self, module: str, mapping: ColumnMapping, config: ExportConfig):
        if config.module != module:
            raise ValueError(f"factor table is for {config.module}, not {module}")
        self.module = module
        self.mapping = mapping
        self.config = config
        self.splitter = ConnectionPointSplitter(config.registry)
        self.resolver = FactorResolver(config.factors)
        self.aggregator = CenterAggregator()
        self.diagnostics = self.resolver.diagnostics

    def _skip(self, row: BillingRow, reason: SkipReason, message: str) -> Skipped:
        self.diagnostics.append(message)
        logger.debug(message)
        return Skipped(row.row_index, reason, message)

    def _factor_key(self, row: BillingRow) -> str:
        if self.module == ELECTRICITY and not self.mapping.fixed_type.strip():
            marketer = self.splitter.marketer_for(row.connection_point)
            if marketer:
                return marketer
        return row.factor_key

    def process_row(self, row: BillingRow) -> RowOutcome:
        """Turn one billing row into an outcome, updating the aggregator."""
        year = self.config.year
        start = parse_date(row.start_text)
        end = parse_date(row.end_text)

        if start is not None and end is not None and end < start:
            return self._skip(row, SkipReason.INVALID_PERIOD, (
                f"Row {row.sheet_row} skipped: period ends before it starts "
                f"(start='{row.start_text}', end='{row.end_text}', factura='{row.invoice}')"))

        fraction = applicable_fraction(start, end, year)
        if fraction <= 0:
            return self._skip(row, SkipReason.OUTSIDE_YEAR, (
                f"Row {row.sheet_row} skipped: dates do not overlap reporting year {year} "
                f"(start='{row.start_text}', end='{row.end_text}', factura='{row.invoice}')"))

        if row.quantity <= 0:
            return self._skip(row, SkipReason.NON_POSITIVE_QUANTITY, (
                f"Row {row.sheet_row} skipped: quantity '{row.quantity_text}' is not positive"))

        valid = self.config.valid_invoices
        if valid and row.invoice.strip() not in valid:
            return self._skip(row, SkipReason.INVOICE_FILTERED, (
                f"Row {row.sheet_row} skipped: invoice '{row.invoice.strip()}' "
                f"is not in valid invoices set"))

        applicable = row.quantity * fraction
        factor_key = self._factor_key(row)
        factor = self.resolver.resolve(factor_key, row.sheet_row, row.vehicle_type)

        allocations = self.splitter.allocate(row.connection_point, row.center, applicable)
        for allocation in allocations:
            market, location = factor.emissions(allocation.quantity)
            self.aggregator.add(allocation.center, allocation.quantity, market, location or 0.0)
        return Accepted(row, applicable, factor, factor_key, allocations)

    def run(self, rows: Iterable[Tuple[int, Sequence[str]]]) -> PipelineResult:
        """Process ``(row_index, cells)`` pairs and finalize the totals.

        Raises:
            ExportCancelled: ``should_cancel`` returned True before a batch.
        """
        outcomes: List[RowOutcome] = []
        should_cancel = self.config.should_cancel
        for count, (row_index, cells) in enumerate(rows):
            if should_cancel is not None and count % self.config.batch_size == 0 and should_cancel():
                logger.info("Export cancelled after %d rows", count)
                raise ExportCancelled(f"cancelled after {count} rows")
            try:
                row = read_billing_row(cells, self.mapping, row_index, self.module)
                outcomes.append(self.process_row(row))
            except Exception as exc:
                message = f"Row {row_index + 1} skipped: error processing row: {exc}"
                self.diagnostics.append(message)
                logger.warning(message)
                outcomes.append(Skipped(row_index, SkipReason.ROW_ERROR, message))

        totals = self.aggregator.finalize()
        self.diagnostics.append(f"Processed {len(totals)} centers in aggregates")
        logger.info("%s %d: %d rows accepted, %d skipped, %d centers", self.module,
                    self.config.year, sum(isinstance(o, Accepted) for o in outcomes),
                    sum(isinstance(o, Skipped) for o in outcomes), len(totals))
        return PipelineResult(self.module, self.config.year, outcomes, totals,
                              list(self.diagnostics))


def run_pipeline(module: str, rows: Iterable[Tuple[int, Sequence[str]]],
                 mapping: ColumnMapping, config: ExportConfig) -> PipelineResult:
    """Convenience wrapper around ``RowPipeline(...).run(rows)``."""
    return RowPipeline(module, mapping, config).run(rows)
