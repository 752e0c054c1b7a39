"""
Type conversion of Python values into table-valued parameter cells.

This module handles the conversion of record field values to values that
conform to their column's relational type (Python -> Database direction only).

It provides:
1. TypeConverter.convert_value: unwrap NumPy and Pandas scalars and map
   missing values (None, NaN, inf, pd.NA, pd.NaT) to None
2. TypeConverter.to_cell: coerce a value to its ColumnDescriptor's type,
   with range and width checks so nothing is silently truncated

None is the explicit null marker; the driver binds it as NULL.

Usage:
    cell = TypeConverter.to_cell(record.quantity, column)
"""
import datetime
import decimal
import enum
import logging
import math
import numbers
import uuid
from typing import TYPE_CHECKING, Any

import dateutil.parser
import numpy as np
import pandas as pd

from autotvp.exceptions import TypeConversionError

if TYPE_CHECKING:
    from autotvp.types import ColumnDescriptor

logger = logging.getLogger(__name__)

__all__ = ['TypeConverter', 'ensure_timezone_naive_datetime']

# SQL Server datetime range
DATETIME_MIN = datetime.datetime(1753, 1, 1)
DATETIME_MAX = datetime.datetime(9999, 12, 31, 23, 59, 59, 997000)
REAL_MAX = float(np.finfo(np.float32).max)
TRUE_STRINGS = {'true', '1', 'yes', 'y', 't'}
FALSE_STRINGS = {'false', '0', 'no', 'n', 'f'}


def ensure_timezone_naive_datetime(dt):
    """
    Ensure a datetime object is timezone-naive for SQL Server compatibility.
    SQL Server datetime values are timezone-naive; the wall-clock time is kept.

    Args:
        dt: datetime object to check

    Returns
        Timezone-naive datetime object
    """
    if dt is None or not isinstance(dt, datetime.datetime):
        return dt

    return dt.replace(tzinfo=None) if dt.tzinfo is not None else dt


def _convert_numpy_value(val: Any) -> Any:
    """Convert NumPy value to Python type."""
    if isinstance(val, np.floating) and not np.isfinite(val):
        return None

    if isinstance(val, np.datetime64):
        if np.isnat(val):
            return None
        return pd.Timestamp(val).to_pydatetime()

    if isinstance(val, np.generic):
        return val.item()

    return val


def _fail(value: Any, column: 'ColumnDescriptor', reason: str | None = None) -> TypeConversionError:
    message = f'Cannot convert {value!r} to {column.type_sql} for column {column.name}'
    if reason:
        message = f'{message}: {reason}'
    return TypeConversionError(message)


class TypeConverter:
    """Value coercion for table-valued parameter cells.

    Handles NumPy and Pandas scalars alongside the standard library types.
    """

    @staticmethod
    def convert_value(value: Any) -> Any:
        """Normalize a single value, mapping missing values to None."""
        if value is None or value is pd.NA:
            return None

        if isinstance(value, type(pd.NaT)):
            return None

        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None

        if isinstance(value, decimal.Decimal) and not value.is_finite():
            return None

        if isinstance(value, np.generic):
            return _convert_numpy_value(value)

        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()

        return value

    @staticmethod
    def to_cell(value: Any, column: 'ColumnDescriptor') -> Any:
        """Coerce a field value to a cell of the given column.

        Returns
            A value of the column's Python storage type, or None for null

        Raises
            TypeConversionError: If the value cannot be represented exactly
        """
        from autotvp.types import SqlType

        value = TypeConverter.convert_value(value)
        if value is None:
            return None

        sql_type = column.sql_type
        if sql_type is SqlType.TEXT:
            return _to_text(value, column)
        if sql_type is SqlType.UNSIGNED_BIGINT:
            return decimal.Decimal(_to_int(value, column))
        if sql_type.is_integer:
            return _to_int(value, column)
        if sql_type in {SqlType.DOUBLE, SqlType.REAL}:
            return _to_float(value, column)
        if sql_type is SqlType.BIT:
            return _to_bool(value, column)
        if sql_type is SqlType.DECIMAL:
            return _to_decimal(value, column)
        if sql_type is SqlType.UNIQUEIDENTIFIER:
            return _to_uuid(value, column)
        if sql_type is SqlType.DATETIME:
            return _to_datetime(value, column)

        raise _fail(value, column, f'no conversion for {sql_type}')


def _to_text(value: Any, column: 'ColumnDescriptor') -> str:
    if isinstance(value, bytes | bytearray):
        raise _fail(value, column, 'binary values are not text')
    if isinstance(value, enum.Enum):
        value = value.value
    text = value if isinstance(value, str) else str(value)
    if column.length is not None:
        # nvarchar(n) counts UTF-16 code units, characters outside the BMP take two
        units = len(text.encode('utf-16-le', 'surrogatepass')) // 2
        if units > column.length:
            raise _fail(text[:20] + '...', column, f'length {units} exceeds {column.length}')
    return text


def _to_int(value: Any, column: 'ColumnDescriptor') -> int:
    if isinstance(value, enum.Enum):
        value = value.value

    if isinstance(value, numbers.Integral):
        result = int(value)
    elif isinstance(value, float | decimal.Decimal):
        if value != int(value):
            raise _fail(value, column, 'not an integral value')
        result = int(value)
    elif isinstance(value, str):
        try:
            result = int(value.strip())
        except ValueError:
            raise _fail(value, column) from None
    else:
        raise _fail(value, column)

    low, high = column.value_range
    if not low <= result <= high:
        raise _fail(value, column, f'out of range [{low}, {high}]')
    return result


def _to_float(value: Any, column: 'ColumnDescriptor') -> float | None:
    from autotvp.types import SqlType

    if isinstance(value, bool) or not isinstance(value, numbers.Real | decimal.Decimal | str):
        raise _fail(value, column)
    try:
        result = float(value)
    except ValueError:
        raise _fail(value, column) from None

    if math.isnan(result) or math.isinf(result):
        return None
    if column.sql_type is SqlType.REAL and abs(result) > REAL_MAX:
        raise _fail(value, column, 'out of range for real')
    return result


def _to_bool(value: Any, column: 'ColumnDescriptor') -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, numbers.Integral) and int(value) in {0, 1}:
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise _fail(value, column)


def _to_decimal(value: Any, column: 'ColumnDescriptor') -> decimal.Decimal | None:
    if isinstance(value, bool):
        raise _fail(value, column)
    if isinstance(value, decimal.Decimal):
        result = value
    elif isinstance(value, numbers.Integral):
        result = decimal.Decimal(int(value))
    elif isinstance(value, float | str):
        try:
            result = decimal.Decimal(str(value).strip())
        except decimal.InvalidOperation:
            raise _fail(value, column) from None
    else:
        raise _fail(value, column)

    if not result.is_finite():
        return None
    integer_digits = column.precision - column.scale
    if result != 0 and result.adjusted() >= integer_digits:
        raise _fail(value, column, f'more than {integer_digits} integer digits')
    return result


def _to_uuid(value: Any, column: 'ColumnDescriptor') -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value.strip())
        except ValueError:
            raise _fail(value, column) from None
    raise _fail(value, column)


def _to_datetime(value: Any, column: 'ColumnDescriptor') -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        result = value
    elif isinstance(value, datetime.date):
        result = datetime.datetime.combine(value, datetime.time())
    elif isinstance(value, str):
        try:
            result = dateutil.parser.isoparse(value.strip())
        except ValueError:
            raise _fail(value, column) from None
    else:
        raise _fail(value, column)

    result = ensure_timezone_naive_datetime(result)
    if not DATETIME_MIN <= result <= DATETIME_MAX:
        raise _fail(value, column, 'outside the datetime range 1753-9999')
    return result
