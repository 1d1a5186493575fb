"""Billing rows and column mappings for the four report modules.

A source spreadsheet is read as rows of cell text. A ``ColumnMapping`` tells
the engine which zero-based column holds each field; ``read_billing_row``
turns one row of text into an immutable ``BillingRow``.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from carbon_report.models.proration import parse_quantity

ELECTRICITY = "electricity"
GAS = "gas"
FUEL = "fuel"
REFRIGERANT = "refrigerant"

MODULES = (ELECTRICITY, GAS, FUEL, REFRIGERANT)

NO_CENTER = "SIN_CENTRO"


def cell_at(cells: Sequence[str], index: Optional[int]) -> str:
    """Return the trimmed text at ``index``, or "" when unmapped or absent."""
    if index is None or index < 0 or index >= len(cells):
        return ""
    value = cells[index]
    if value is None:
        return ""
    return str(value).replace("\u00a0", " ").strip()


@dataclass
class ColumnMapping:
    """Maps billing fields to zero-based source columns.

    ``None`` (or -1 in stored mappings) means "not mapped". Gas and
    refrigerant exports may pin the factor type to a literal instead of a
    column through ``fixed_type``.

    Attributes:
        connection_point: Metering point id (CUPS) column.
        invoice: Invoice number column.
        start_date: Supply period start column.
        end_date: Supply period end column.
        invoice_date: Single invoice date column (fuel, refrigerant). Used for
            both ends of the period when start/end are not mapped.
        quantity: Consumed quantity column (kWh, litres or kg).
        center: Center name column.
        emission_entity: Marketer / emitting company column.
        factor_type: Fuel or refrigerant type column.
        vehicle_type: Vehicle type column (fuel only).
        provider: Supplier column (fuel, refrigerant).
        person: Responsible person column (fuel, refrigerant).
        fixed_type: Literal gas or refrigerant type applied to every row.
    """

    connection_point: Optional[int] = None
    invoice: Optional[int] = None
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    invoice_date: Optional[int] = None
    quantity: Optional[int] = None
    center: Optional[int] = None
    emission_entity: Optional[int] = None
    factor_type: Optional[int] = None
    vehicle_type: Optional[int] = None
    provider: Optional[int] = None
    person: Optional[int] = None
    fixed_type: str = ""

    def __post_init__(self):
        for name in self.column_fields():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be a column index or None, got {value!r}")
            if value < 0:
                setattr(self, name, None)

    @classmethod
    def column_fields(cls) -> List[str]:
        return [name for name in cls.__dataclass_fields__ if name != "fixed_type"]

    def is_mapped(self, name: str) -> bool:
        return getattr(self, name) is not None

    @property
    def start_column(self) -> Optional[int]:
        return self.start_date if self.start_date is not None else self.invoice_date

    @property
    def end_column(self) -> Optional[int]:
        return self.end_date if self.end_date is not None else self.invoice_date

    def to_dict(self) -> dict:
        data = {name: (-1 if getattr(self, name) is None else getattr(self, name))
                for name in self.column_fields()}
        data["fixed_type"] = self.fixed_type
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnMapping":
        data = dict(data)
        kwargs = {}
        for name in cls.column_fields():
            value = data.get(name)
            kwargs[name] = None if value is None or int(value) < 0 else int(value)
        kwargs["fixed_type"] = str(data.get("fixed_type") or "")
        return cls(**kwargs)


@dataclass(frozen=True)
class BillingRow:
    """One record of a provider spreadsheet, as text plus a parsed quantity.

    ``row_index`` is the zero-based index of the row in the source sheet.
    """

    row_index: int
    connection_point: Optional[str]
    invoice: str
    start_text: str
    end_text: str
    quantity_text: str
    quantity: float
    center: Optional[str]
    factor_key: str
    emission_entity: str = ""
    vehicle_type: str = ""
    provider: str = ""
    person: str = ""

    @property
    def sheet_row(self) -> int:
        """1-based row number as shown by spreadsheet applications."""
        return self.row_index + 1


def read_billing_row(cells: Sequence[str], mapping: ColumnMapping, row_index: int,
                     module: str) -> BillingRow:
    """Build a ``BillingRow`` from raw cell text according to ``mapping``."""
    quantity_text = cell_at(cells, mapping.quantity)
    quantity = parse_quantity(quantity_text)

    if mapping.fixed_type.strip():
        factor_key = mapping.fixed_type.strip()
    elif module == ELECTRICITY:
        factor_key = cell_at(cells, mapping.emission_entity)
    else:
        factor_key = cell_at(cells, mapping.factor_type)

    connection_point = cell_at(cells, mapping.connection_point) or None
    center = cell_at(cells, mapping.center) or None

    return BillingRow(
        row_index=row_index,
        connection_point=connection_point,
        invoice=cell_at(cells, mapping.invoice),
        start_text=cell_at(cells, mapping.start_column),
        end_text=cell_at(cells, mapping.end_column),
        quantity_text=quantity_text,
        quantity=quantity if quantity is not None else 0.0,
        center=center,
        factor_key=factor_key,
        emission_entity=cell_at(cells, mapping.emission_entity),
        vehicle_type=cell_at(cells, mapping.vehicle_type),
        provider=cell_at(cells, mapping.provider),
        person=cell_at(cells, mapping.person),
    )
