"""Module and summary exports: read sources, run the pipeline, write workbooks.

Nothing is written unless the whole workbook was built: a missing source
sheet or a cancellation raises before ``write_document`` is reached.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from carbon_report.config import ExportConfig
from carbon_report.data.libraries import FactorLibrary
from carbon_report.data.sources import read_table
from carbon_report.models.billing import ELECTRICITY, FUEL, GAS, REFRIGERANT, ColumnMapping
from carbon_report.models.outcomes import SourceUnavailable
from carbon_report.models.pipeline import PipelineResult, RowPipeline
from carbon_report.reports.document import ReportDocument
from carbon_report.reports.module_report import build_module_report
from carbon_report.reports.summary import CrossModuleSummaryMerger, ModuleInput
from carbon_report.reports.xlsx import read_document, write_document

logger = logging.getLogger(__name__)

NO_HEADER_MESSAGE = "No header row found in provider sheet; no rows will be processed."

PathLike = Union[str, Path]


@dataclass
class ModuleExport:
    path: Path
    result: PipelineResult
    document: ReportDocument


@dataclass
class SummaryExport:
    path: Path
    document: ReportDocument
    diagnostics: list


def build_config(module: str, year: int, library: Optional[FactorLibrary] = None,
                 invoices: Iterable[str] = (),
                 should_cancel: Optional[Callable[[], bool]] = None) -> ExportConfig:
    """Load the factor table and registry for one export."""
    library = library or FactorLibrary()
    return ExportConfig(
        year=year,
        factors=library.load_factors(module, year),
        registry=library.load_registry(),
        valid_invoices=frozenset(i.strip() for i in invoices if i and i.strip()),
        should_cancel=should_cancel,
    )


def run_module(module: str, source_path: PathLike, sheet: Optional[str],
               mapping: ColumnMapping, config: ExportConfig) -> PipelineResult:
    """Read the source sheet and process its rows without writing anything.

    Raises:
        SourceUnavailable: The source file or sheet cannot be read.
        ExportCancelled: ``config.should_cancel`` asked to stop.
    """
    table = read_table(source_path, sheet)
    pipeline = RowPipeline(module, mapping, config)
    if table.header_index < 0:
        logger.warning("%s: %s", table.name, NO_HEADER_MESSAGE)
        pipeline.diagnostics.append(NO_HEADER_MESSAGE)
    return pipeline.run(table.data_rows())


def export_module(module: str, source_path: PathLike, sheet: Optional[str],
                  mapping: ColumnMapping, config: ExportConfig,
                  output_path: PathLike) -> ModuleExport:
    """Full module export: source sheet in, formula-backed workbook out."""
    logger.info("Exporting %s %d from %s [%s]", module, config.year, source_path, sheet or "first sheet")
    result = run_module(module, source_path, sheet, mapping, config)
    document = build_module_report(result)
    path = write_document(document, output_path)
    return ModuleExport(path, result, document)


def _module_input(module: str, path: Optional[PathLike]) -> Optional[ModuleInput]:
    if path is None:
        return None
    try:
        document = read_document(path)
    except SourceUnavailable as exc:
        logger.warning("%s workbook unavailable, contributing 0: %s", module, exc)
        document = None
    return ModuleInput(module, document, Path(path).name)


def export_summary(output_path: PathLike, electricity: Optional[PathLike] = None,
                   gas: Optional[PathLike] = None, fuel: Optional[PathLike] = None,
                   refrigerant: Optional[PathLike] = None) -> SummaryExport:
    """Merge up to four module workbooks into the summary workbook."""
    merger = CrossModuleSummaryMerger()
    document = merger.merge(
        electricity=_module_input(ELECTRICITY, electricity),
        gas=_module_input(GAS, gas),
        fuel=_module_input(FUEL, fuel),
        refrigerant=_module_input(REFRIGERANT, refrigerant),
    )
    path = write_document(document, output_path)
    return SummaryExport(path, document, list(merger.diagnostics))
