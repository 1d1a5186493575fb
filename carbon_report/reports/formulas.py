"""Evaluator for the formula subset the reports use.

Supported: numbers, strings, TRUE/FALSE, cell and range references
(optionally sheet-qualified, with or without ``$``), whole-column ranges
such as ``$A:$Z``, ``+ - * /``, comparisons, and the functions ``SUM``,
``SUMIF``, ``SUMPRODUCT``, ``EXACT``, ``VLOOKUP`` (exact match),
``IFERROR``, ``IF``, ``MIN`` and ``MAX``.

Arithmetic over multi-cell ranges works element by element, as it does
inside ``SUMPRODUCT`` in Excel. ``SUMIF`` and ``VLOOKUP`` compare text
without regard to case; ``EXACT`` is case-sensitive.

Excel errors are modelled as ``FormulaError``; ``IFERROR`` catches them.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from xlsxwriter.utility import xl_cell_to_rowcol

from carbon_report.reports.document import Formula, ReportDocument, Worksheet

Value = Union[float, str, bool, None]


class FormulaError(Exception):
    """An Excel error value such as ``#N/A`` or ``#DIV/0!``."""

    def __init__(self, code: str, detail: str = ""):
        super().__init__(f"{code} {detail}".strip())
        self.code = code


@dataclass(frozen=True)
class Range:
    sheet: str
    first_row: int
    first_col: int
    last_row: Optional[int]
    last_col: int

    @property
    def is_cell(self) -> bool:
        return (self.last_row == self.first_row and self.last_col == self.first_col)


_NUMBER = re.compile(r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?")
_STRING = re.compile(r'"((?:[^"]|"")*)"')
_FUNCTION = re.compile(r"([A-Za-z][A-Za-z0-9.]*)\s*\(")
_BOOLEAN = re.compile(r"(TRUE|FALSE)\b", re.IGNORECASE)
_REFERENCE = re.compile(
    r"(?:(?P<sheet>'(?:[^']|'')+'|[A-Za-z_][\w.]*)!)?"
    r"(?P<first>\$?[A-Za-z]{1,3}(?:\$?\d+)?)"
    r"(?::(?P<last>\$?[A-Za-z]{1,3}(?:\$?\d+)?))?"
)
_COMPARISONS = ("<=", ">=", "<>", "=", "<", ">")


def _column_index(letters: str) -> int:
    return xl_cell_to_rowcol(letters.replace("$", "").upper() + "1")[1]


def _split_ref(text: str) -> Tuple[Optional[int], int]:
    """``$B$7`` -> (6, 1); ``$B`` -> (None, 1)."""
    clean = text.replace("$", "").upper()
    if clean.isalpha():
        return None, _column_index(clean)
    return xl_cell_to_rowcol(clean)


class _Parser:
    """Recursive-descent parser producing a small tuple-based AST."""

    def __init__(self, text: str, sheet: str):
        self.text = text
        self.pos = 0
        self.sheet = sheet

    def parse(self):
        node = self.comparison()
        self._ws()
        if self.pos != len(self.text):
            raise FormulaError("#NAME?", f"unexpected input at {self.text[self.pos:]!r}")
        return node

    def _ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self, token: str) -> bool:
        self._ws()
        return self.text.startswith(token, self.pos)

    def _take(self, token: str) -> bool:
        if self._peek(token):
            self.pos += len(token)
            return True
        return False

    def comparison(self):
        left = self.additive()
        for op in _COMPARISONS:
            if self._take(op):
                return ("cmp", op, left, self.additive())
        return left

    def additive(self):
        node = self.term()
        while True:
            if self._take("+"):
                node = ("bin", "+", node, self.term())
            elif self._take("-"):
                node = ("bin", "-", node, self.term())
            else:
                return node

    def term(self):
        node = self.unary()
        while True:
            if self._take("*"):
                node = ("bin", "*", node, self.unary())
            elif self._take("/"):
                node = ("bin", "/", node, self.unary())
            else:
                return node

    def unary(self):
        if self._take("-"):
            return ("neg", self.unary())
        if self._take("+"):
            return self.unary()
        return self.primary()

    def primary(self):
        self._ws()
        if self._take("("):
            node = self.comparison()
            if not self._take(")"):
                raise FormulaError("#NAME?", "missing ')'")
            return node

        match = _STRING.match(self.text, self.pos)
        if match:
            self.pos = match.end()
            return ("lit", match.group(1).replace('""', '"'))

        match = _NUMBER.match(self.text, self.pos)
        if match:
            self.pos = match.end()
            return ("lit", float(match.group(0)))

        match = _FUNCTION.match(self.text, self.pos)
        if match:
            self.pos = match.end()
            name = match.group(1).upper()
            args = []
            if not self._take(")"):
                while True:
                    args.append(self.comparison())
                    if self._take(")"):
                        break
                    if not self._take(","):
                        raise FormulaError("#NAME?", f"bad argument list for {name}")
            return ("call", name, args)

        match = _BOOLEAN.match(self.text, self.pos)
        if match:
            self.pos = match.end()
            return ("lit", match.group(1).upper() == "TRUE")

        match = _REFERENCE.match(self.text, self.pos)
        if match:
            return self._reference(match)
        raise FormulaError("#NAME?", f"cannot parse {self.text[self.pos:]!r}")

    def _reference(self, match):
        sheet = match.group("sheet")
        if sheet is None:
            sheet = self.sheet
        elif sheet.startswith("'"):
            sheet = sheet[1:-1].replace("''", "'")
        first_row, first_col = _split_ref(match.group("first"))
        last = match.group("last")
        if last is None:
            if first_row is None:
                raise FormulaError("#NAME?", f"bare column {match.group('first')!r}")
            last_row, last_col = first_row, first_col
        else:
            last_row, last_col = _split_ref(last)
            if (first_row is None) != (last_row is None):
                raise FormulaError("#REF!", "mixed column and cell range")
        self.pos = match.end()
        if first_row is None:
            return ("ref", Range(sheet, 0, first_col, None, last_col))
        return ("ref", Range(sheet, min(first_row, last_row), min(first_col, last_col),
                             max(first_row, last_row), max(first_col, last_col)))


def parse_formula(expr: str, sheet: str):
    """Parse ``expr`` (with or without a leading ``=``) in the context of ``sheet``."""
    text = expr[1:] if expr.startswith("=") else expr
    return _Parser(text, sheet).parse()


def references(expr: str, sheet: str) -> List[Range]:
    """All ranges referenced by ``expr``."""
    found: List[Range] = []

    def walk(node):
        kind = node[0]
        if kind == "ref":
            found.append(node[1])
        elif kind in ("bin", "cmp"):
            walk(node[2])
            walk(node[3])
        elif kind == "neg":
            walk(node[1])
        elif kind == "call":
            for arg in node[2]:
                walk(arg)

    walk(parse_formula(expr, sheet))
    return found


def _to_number(value: Value) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        raise FormulaError("#VALUE!", f"{value!r} is not a number")


def _is_number(value: Value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_text(value: Value) -> str:
    """Text form of a cell value as Excel's text functions see it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _compare(op: str, left: Value, right: Value) -> bool:
    if _is_number(left) or _is_number(right):
        try:
            a, b = _to_number(left), _to_number(right)
        except FormulaError:
            a, b = str(left or "").lower(), str(right or "").lower()
    else:
        a, b = str(left if left is not None else "").lower(), str(right if right is not None else "").lower()
    return {
        "=": a == b, "<>": a != b, "<": a < b, ">": a > b, "<=": a <= b, ">=": a >= b,
    }[op]


def _criterion(criteria: Value) -> Callable[[Value], bool]:
    """Predicate for a SUMIF criterion such as ``"Norte"``, ``5`` or ``">=3"``."""
    if isinstance(criteria, str):
        for op in _COMPARISONS:
            if criteria.startswith(op):
                operand = criteria[len(op):]
                try:
                    target: Value = float(operand)
                except ValueError:
                    target = operand
                return lambda value: value is not None and value != "" and _compare(op, value, target)
    if criteria is None:
        criteria = ""
    return lambda value: _compare("=", value if value is not None else "", criteria)


class FormulaEvaluator:
    """Evaluates formulas against a ``ReportDocument``.

    Cell results are memoized; circular references evaluate to ``#REF!``.

    Args:
        document: The document whose cells formulas refer to.
        use_cached: Return the stored value of formula cells that have one
            instead of recalculating them (for sheets read from disk).
    """

    def __init__(self, document: ReportDocument, use_cached: bool = False):
        self.document = document
        self.use_cached = use_cached
        self._cache: Dict[Tuple[str, int, int], Value] = {}
        self._active: Set[Tuple[str, int, int]] = set()
        self._functions = {
            "SUM": self._sum,
            "SUMIF": self._sumif,
            "SUMPRODUCT": self._sumproduct,
            "EXACT": self._exact,
            "VLOOKUP": self._vlookup,
            "MIN": lambda args: min(self._numbers(args) or [0.0]),
            "MAX": lambda args: max(self._numbers(args) or [0.0]),
        }

    def _sheet(self, name: str) -> Worksheet:
        try:
            return self.document.sheet(name)
        except KeyError:
            raise FormulaError("#REF!", f"no sheet named {name!r}")

    def cell_value(self, sheet_name: str, row: int, col: int) -> Value:
        """Value of a cell, evaluating formulas on demand."""
        key = (sheet_name.lower(), row, col)
        if key in self._cache:
            return self._cache[key]
        cell = self._sheet(sheet_name).get(row, col)
        if cell is None:
            return None
        if not isinstance(cell, Formula):
            return cell.value
        if self.use_cached and cell.value is not None:
            return cell.value
        if key in self._active:
            raise FormulaError("#REF!", f"circular reference at {sheet_name}!{row},{col}")
        self._active.add(key)
        try:
            value = self.evaluate(cell.expr, self._sheet(sheet_name).name)
        finally:
            self._active.discard(key)
        self._cache[key] = value
        return value

    def evaluate(self, expr: str, sheet_name: str) -> Value:
        """Evaluate ``expr`` as if it were entered on ``sheet_name``.

        Raises:
            FormulaError: The formula evaluates to an Excel error.
        """
        return self._scalar(self._eval(parse_formula(expr, sheet_name)))

    def safe_evaluate(self, expr: str, sheet_name: str) -> Value:
        """Like ``evaluate`` but returns the error code instead of raising."""
        try:
            return self.evaluate(expr, sheet_name)
        except FormulaError as exc:
            return exc.code

    def _rows(self, rng: Range) -> int:
        if rng.last_row is not None:
            return rng.last_row
        return self._sheet(rng.sheet).max_row

    def _range_values(self, rng: Range) -> List[List[Value]]:
        last_row = self._rows(rng)
        return [[self.cell_value(rng.sheet, r, c) for c in range(rng.first_col, rng.last_col + 1)]
                for r in range(rng.first_row, last_row + 1)]

    def _scalar(self, value):
        if isinstance(value, Range):
            if not value.is_cell:
                raise FormulaError("#VALUE!", "range used as a single value")
            return self.cell_value(value.sheet, value.first_row, value.first_col)
        if isinstance(value, list):
            raise FormulaError("#VALUE!", "array used as a single value")
        return value

    def _elements(self, value):
        """Flattened values of a range or array; a single value is returned as is."""
        if isinstance(value, Range) and not value.is_cell:
            return [v for row in self._range_values(value) for v in row]
        if isinstance(value, list):
            return value
        return self._scalar(value)

    def _arithmetic(self, op: str, left: Value, right: Value) -> float:
        a, b = _to_number(left), _to_number(right)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if b == 0:
            raise FormulaError("#DIV/0!")
        return a / b

    def _eval(self, node):
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "ref":
            return node[1]
        if kind == "neg":
            return -_to_number(self._scalar(self._eval(node[1])))
        if kind == "bin":
            op = node[1]
            left = self._elements(self._eval(node[2]))
            right = self._elements(self._eval(node[3]))
            if not isinstance(left, list) and not isinstance(right, list):
                return self._arithmetic(op, left, right)
            size = len(left) if isinstance(left, list) else len(right)
            if isinstance(left, list) and isinstance(right, list) and len(left) != len(right):
                raise FormulaError("#VALUE!", "arrays of different sizes")
            lefts = left if isinstance(left, list) else [left] * size
            rights = right if isinstance(right, list) else [right] * size
            return [self._arithmetic(op, a, b) for a, b in zip(lefts, rights)]
        if kind == "cmp":
            return _compare(node[1], self._scalar(self._eval(node[2])),
                            self._scalar(self._eval(node[3])))
        if kind == "call":
            return self._call(node[1], node[2])
        raise FormulaError("#NAME?", f"unknown node {kind}")

    def _call(self, name: str, args):
        if name == "IFERROR":
            if len(args) != 2:
                raise FormulaError("#N/A", "IFERROR takes 2 arguments")
            try:
                return self._scalar(self._eval(args[0]))
            except FormulaError:
                return self._scalar(self._eval(args[1]))
        if name == "IF":
            if len(args) not in (2, 3):
                raise FormulaError("#N/A", "IF takes 2 or 3 arguments")
            condition = self._scalar(self._eval(args[0]))
            if _to_number(condition) != 0:
                return self._scalar(self._eval(args[1]))
            return self._scalar(self._eval(args[2])) if len(args) == 3 else False
        function = self._functions.get(name)
        if function is None:
            raise FormulaError("#NAME?", f"unsupported function {name}")
        return function([self._eval(arg) for arg in args])

    def _numbers(self, args) -> List[float]:
        numbers: List[float] = []
        for arg in args:
            if isinstance(arg, Range):
                for row in self._range_values(arg):
                    numbers.extend(float(v) for v in row if _is_number(v))
            elif isinstance(arg, list):
                numbers.extend(float(v) for v in arg if _is_number(v))
            else:
                numbers.append(_to_number(arg))
        return numbers

    def _sum(self, args) -> float:
        return float(sum(self._numbers(args)))

    def _sumif(self, args) -> float:
        if len(args) not in (2, 3) or not isinstance(args[0], Range):
            raise FormulaError("#VALUE!", "SUMIF needs a range and a criterion")
        test_range = args[0]
        criteria = self._scalar(args[1])
        sum_range = args[2] if len(args) == 3 else test_range
        if not isinstance(sum_range, Range):
            raise FormulaError("#VALUE!", "SUMIF sum range must be a range")
        matches = _criterion(criteria)
        total = 0.0
        last_row = self._rows(test_range)
        for r_offset in range(last_row - test_range.first_row + 1):
            for c_offset in range(test_range.last_col - test_range.first_col + 1):
                value = self.cell_value(test_range.sheet, test_range.first_row + r_offset,
                                        test_range.first_col + c_offset)
                if not matches(value):
                    continue
                addend = self.cell_value(sum_range.sheet, sum_range.first_row + r_offset,
                                         sum_range.first_col + c_offset)
                if _is_number(addend):
                    total += float(addend)
        return total

    def _sumproduct(self, args) -> float:
        """Sum of element-wise products; entries that are not numbers count as 0."""
        if not args:
            raise FormulaError("#VALUE!", "SUMPRODUCT needs at least one array")
        arrays = []
        for arg in args:
            values = self._elements(arg)
            arrays.append(values if isinstance(values, list) else [values])
        size = len(arrays[0])
        if any(len(array) != size for array in arrays):
            raise FormulaError("#VALUE!", "SUMPRODUCT arrays of different sizes")
        total = 0.0
        for entries in zip(*arrays):
            product = 1.0
            for entry in entries:
                product *= float(entry) if _is_number(entry) else 0.0
            total += product
        return total

    def _exact(self, args):
        if len(args) != 2:
            raise FormulaError("#VALUE!", "EXACT takes 2 arguments")
        left, right = self._elements(args[0]), self._elements(args[1])
        if isinstance(left, list) and isinstance(right, list):
            if len(left) != len(right):
                raise FormulaError("#VALUE!", "arrays of different sizes")
            return [_as_text(a) == _as_text(b) for a, b in zip(left, right)]
        if isinstance(left, list):
            target = _as_text(right)
            return [_as_text(a) == target for a in left]
        if isinstance(right, list):
            target = _as_text(left)
            return [_as_text(b) == target for b in right]
        return _as_text(left) == _as_text(right)

    def _vlookup(self, args) -> Value:
        if len(args) not in (3, 4) or not isinstance(args[1], Range):
            raise FormulaError("#VALUE!", "VLOOKUP needs a value, a range and a column")
        lookup = self._scalar(args[0])
        table = args[1]
        column = int(_to_number(self._scalar(args[2])))
        if column < 1 or column > table.last_col - table.first_col + 1:
            raise FormulaError("#REF!", f"column {column} outside lookup range")
        if lookup is None or lookup == "":
            raise FormulaError("#N/A", "empty lookup value")
        last_row = self._rows(table)
        for row in range(table.first_row, last_row + 1):
            key = self.cell_value(table.sheet, row, table.first_col)
            if key is None or key == "":
                continue
            if _compare("=", key, lookup):
                return self.cell_value(table.sheet, row, table.first_col + column - 1)
        raise FormulaError("#N/A", f"{lookup!r} not found")


def fill_cached_values(document: ReportDocument, sheet_names: Optional[List[str]] = None,
                       use_cached: bool = False) -> None:
    """Recompute the cached value of formula cells in ``document``.

    Only the sheets in ``sheet_names`` are updated when it is given. Cells
    whose formula errors keep the error code as their cached value.
    """
    evaluator = FormulaEvaluator(document, use_cached=use_cached)
    wanted = None if sheet_names is None else {n.lower() for n in sheet_names}
    for sheet in document:
        if wanted is not None and sheet.name.lower() not in wanted:
            continue
        for row, col, cell in list(sheet.cells()):
            if isinstance(cell, Formula):
                try:
                    value = evaluator.cell_value(sheet.name, row, col)
                except FormulaError as exc:
                    value = exc.code
                sheet.set(row, col, Formula(cell.expr, value, cell.style))
