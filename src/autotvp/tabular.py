"""
Tabular values: records materialized as rows of typed cells.

A TabularValue is built fresh for each call and handed to a single command.
Rows keep the input iteration order and every row has exactly one cell per
column, in column order. None is the explicit null marker.
"""
import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from autotvp.adapters.structure import get_field_value, type_identity
from autotvp.adapters.type_conversion import TypeConverter
from autotvp.exceptions import TypeConversionError, ValidationError
from autotvp.sql import StructuredTypeName
from autotvp.types import ColumnDescriptor, derive_columns

logger = logging.getLogger(__name__)

__all__ = ['TabularValue', 'build_tabular_value', 'build_tabular_value_for']


@dataclass
class TabularValue:
    """Ordered rows of ordered cells aligned with a column schema."""

    columns: tuple[ColumnDescriptor, ...]
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    def __post_init__(self):
        self.columns = tuple(self.columns)
        if not self.columns:
            raise ValidationError('A tabular value needs at least one column')
        width = len(self.columns)
        for index, row in enumerate(self.rows):
            if len(row) != width:
                raise ValidationError(f'Row {index} has {len(row)} cells, expected {width}')

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        return iter(self.rows)

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def to_dataframe(self) -> pd.DataFrame:
        """Return the rows as a DataFrame.

        Empty values keep their columns. Column type information is stored in
        DataFrame.attrs['column_types'].
        """
        df = pd.DataFrame.from_records(self.rows, columns=self.column_names)
        df.attrs['column_types'] = {column.name: column.to_dict() for column in self.columns}
        return df

    def as_pyodbc(self, type_name: StructuredTypeName | str) -> list[Any]:
        """Return the value in pyodbc's table-valued parameter form.

        pyodbc reads a leading type name and schema name, followed by the
        row tuples.
        """
        type_name = StructuredTypeName.parse(type_name)
        return [type_name.name, type_name.schema, *self.rows]


def _build_row(record: Any, columns: Sequence[ColumnDescriptor], index: int) -> tuple[Any, ...]:
    cells = []
    for column in columns:
        try:
            value = get_field_value(record, column.name)
        except KeyError:
            raise ValidationError(f'Record {index} has no field {column.name!r}') from None
        try:
            cells.append(TypeConverter.to_cell(value, column))
        except TypeConversionError as e:
            raise TypeConversionError(f'Record {index}: {e}') from e
    return tuple(cells)


def build_tabular_value(records: Iterable[Any], columns: Sequence[ColumnDescriptor]) -> TabularValue:
    """Materialize records into a TabularValue.

    Args:
        records: Records in the order the rows should have
        columns: Column descriptors, usually from derive_columns

    Returns
        TabularValue with one row per record, an empty collection gives zero rows

    Raises
        TypeConversionError: If a value cannot be coerced to its column type
    """
    columns = tuple(columns)
    rows = [_build_row(record, columns, index) for index, record in enumerate(records)]
    logger.debug(f'Built tabular value with {len(rows)} rows and {len(columns)} columns')
    return TabularValue(columns, rows)


def build_tabular_value_for(records: Iterable[Any], record_type: type,
                            text_length: int | None = None) -> TabularValue:
    """Derive the columns of record_type and materialize records with them.
    """
    columns = derive_columns(record_type, text_length)
    logger.debug(f'Building tabular value for {type_identity(record_type)}')
    return build_tabular_value(records, columns)
