"""In-memory workbook model.

A ``ReportDocument`` is an ordered list of named ``Worksheet`` objects. Each
worksheet is a sparse grid of ``CellValue`` (``Text``, ``Number`` or
``Formula``). Reports are assembled here, checked, and handed to
``carbon_report.reports.xlsx.write_document`` exactly once.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Union

MAX_SHEET_NAME = 31
_INVALID_SHEET_CHARS = set("[]:*?/\\")


@dataclass(frozen=True)
class Text:
    value: str
    style: Optional[str] = None


@dataclass(frozen=True)
class Number:
    value: float
    style: Optional[str] = None


@dataclass(frozen=True)
class Formula:
    """A formula and the value the engine computed for it.

    ``expr`` is stored without the leading ``=``. ``value`` is written as the
    cached result so viewers that do not recalculate still show numbers.
    """

    expr: str
    value: Union[float, str, None] = None
    style: Optional[str] = None

    def __post_init__(self):
        if self.expr.startswith("="):
            object.__setattr__(self, "expr", self.expr[1:])


CellValue = Union[Text, Number, Formula]


def clean_sheet_name(name: str) -> str:
    """Strip characters Excel rejects in sheet names and cap the length."""
    cleaned = "".join(" " if ch in _INVALID_SHEET_CHARS else ch for ch in name).strip("'")
    return cleaned[:MAX_SHEET_NAME] or "Sheet"


class Worksheet:
    """Sparse grid of cells addressed by zero-based ``(row, col)``."""

    def __init__(self, name: str):
        self.name = clean_sheet_name(name)
        self._cells: Dict[Tuple[int, int], CellValue] = {}
        self.column_widths: Dict[int, float] = {}

    def set(self, row: int, col: int, value: CellValue) -> None:
        if row < 0 or col < 0:
            raise ValueError(f"negative cell position ({row}, {col})")
        self._cells[(row, col)] = value

    def get(self, row: int, col: int) -> Optional[CellValue]:
        return self._cells.get((row, col))

    def write_row(self, row: int, values: List[CellValue], first_col: int = 0) -> None:
        for offset, value in enumerate(values):
            if value is not None:
                self.set(row, first_col + offset, value)

    def text(self, row: int, col: int) -> str:
        """Display text of a cell: literal, cached formula value or ""."""
        cell = self.get(row, col)
        if cell is None or cell.value is None:
            return ""
        if isinstance(cell.value, float) and cell.value.is_integer():
            return str(int(cell.value))
        return str(cell.value)

    def cells(self) -> Iterator[Tuple[int, int, CellValue]]:
        for (row, col), value in sorted(self._cells.items()):
            yield row, col, value

    @property
    def max_row(self) -> int:
        return max((r for r, _ in self._cells), default=-1)

    @property
    def max_col(self) -> int:
        return max((c for _, c in self._cells), default=-1)

    def __len__(self) -> int:
        return len(self._cells)


def quote_sheet(name: str) -> str:
    """Sheet name as it must appear in a formula reference."""
    return "'" + name.replace("'", "''") + "'"


class ReportDocument:
    """Ordered collection of worksheets with unique names."""

    def __init__(self):
        self._sheets: List[Worksheet] = []

    def add_sheet(self, name: str) -> Worksheet:
        sheet = Worksheet(name)
        if self.has_sheet(sheet.name):
            raise ValueError(f"duplicate sheet name: {sheet.name}")
        self._sheets.append(sheet)
        return sheet

    def unique_name(self, name: str) -> str:
        """``name`` or ``name (n)`` so that it does not clash, within 31 chars."""
        base = clean_sheet_name(name)
        candidate = base
        n = 2
        while self.has_sheet(candidate):
            suffix = f" ({n})"
            candidate = base[:MAX_SHEET_NAME - len(suffix)] + suffix
            n += 1
        return candidate

    def has_sheet(self, name: str) -> bool:
        return any(s.name.lower() == name.lower() for s in self._sheets)

    def sheet(self, name: str) -> Worksheet:
        for candidate in self._sheets:
            if candidate.name.lower() == name.lower():
                return candidate
        raise KeyError(name)

    @property
    def sheets(self) -> List[Worksheet]:
        return list(self._sheets)

    @property
    def sheet_names(self) -> List[str]:
        return [s.name for s in self._sheets]

    def __iter__(self):
        return iter(self._sheets)
