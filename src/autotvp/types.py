"""
Relational type mapping for table-valued parameters.

This module provides:
- SqlType: The fixed relational type vocabulary of generated table types
- ColumnDescriptor: The relational projection of one record field
- derive_columns: Map a record type to its ordered column descriptors

The mapping is a total lookup on the exact underlying Python type. Python's
``int`` carries no width, so fixed-width columns are declared with the numpy
scalar types (``np.int16``, ``np.uint64``, ``np.float32``, ...).
"""
import datetime
import decimal
import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any

import cachetools
import numpy as np

from autotvp.adapters.structure import describe_fields, on_registration_change
from autotvp.adapters.structure import type_identity
from autotvp.exceptions import UnsupportedColumnTypeError

logger = logging.getLogger(__name__)

__all__ = [
    'SqlType',
    'ColumnDescriptor',
    'TYPE_TABLE',
    'resolve_sql_type',
    'derive_columns',
    'clear_column_cache',
]


class SqlType(enum.Enum):
    """Relational column types available to generated table types."""

    TEXT = 'text'
    BIGINT = 'bigint'
    UNSIGNED_BIGINT = 'unsigned_bigint'
    INT = 'int'
    SMALLINT = 'smallint'
    TINYINT = 'tinyint'
    DOUBLE = 'double'
    REAL = 'real'
    BIT = 'bit'
    DECIMAL = 'decimal'
    UNIQUEIDENTIFIER = 'uniqueidentifier'
    DATETIME = 'datetime'
    ENUM = 'enum'

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_RANGES


# Inclusive value ranges of the integer storage types
_INTEGER_RANGES: dict[SqlType, tuple[int, int]] = {
    SqlType.BIGINT: (-2**63, 2**63 - 1),
    SqlType.UNSIGNED_BIGINT: (0, 2**64 - 1),
    SqlType.INT: (-2**31, 2**31 - 1),
    SqlType.ENUM: (-2**31, 2**31 - 1),
    SqlType.SMALLINT: (-2**15, 2**15 - 1),
    SqlType.TINYINT: (0, 255),
}

_DDL_NAMES: dict[SqlType, str] = {
    SqlType.BIGINT: 'bigint',
    SqlType.INT: 'int',
    SqlType.ENUM: 'int',
    SqlType.SMALLINT: 'smallint',
    SqlType.TINYINT: 'tinyint',
    SqlType.DOUBLE: 'float',
    SqlType.REAL: 'real',
    SqlType.BIT: 'bit',
    SqlType.UNIQUEIDENTIFIER: 'uniqueidentifier',
    SqlType.DATETIME: 'datetime',
}

DECIMAL_PRECISION = 28
DECIMAL_SCALE = 5

# Exact-type lookup, bool must never fall through to int
TYPE_TABLE: dict[type, SqlType] = {
    str: SqlType.TEXT,
    int: SqlType.BIGINT,
    np.int64: SqlType.BIGINT,
    np.uint32: SqlType.BIGINT,
    np.uint64: SqlType.UNSIGNED_BIGINT,
    np.int32: SqlType.INT,
    np.uint16: SqlType.INT,
    np.int16: SqlType.SMALLINT,
    np.int8: SqlType.TINYINT,
    np.uint8: SqlType.TINYINT,
    float: SqlType.DOUBLE,
    np.float64: SqlType.DOUBLE,
    np.float32: SqlType.REAL,
    bool: SqlType.BIT,
    np.bool_: SqlType.BIT,
    decimal.Decimal: SqlType.DECIMAL,
    uuid.UUID: SqlType.UNIQUEIDENTIFIER,
    datetime.datetime: SqlType.DATETIME,
}


@dataclass(frozen=True)
class ColumnDescriptor:
    """Relational projection of one record field.

    ``length`` is set for bounded text columns, ``precision``/``scale`` for
    decimal columns.
    """

    name: str
    sql_type: SqlType
    python_type: Any = None
    nullable: bool = False
    length: int | None = None
    precision: int | None = None
    scale: int | None = None

    @property
    def type_sql(self) -> str:
        """Type as rendered in DDL"""
        if self.sql_type is SqlType.TEXT:
            return 'NVarChar(max)' if self.length is None else f'NVarChar({self.length})'
        if self.sql_type in {SqlType.DECIMAL, SqlType.UNSIGNED_BIGINT}:
            return f'decimal({self.precision},{self.scale})'
        return _DDL_NAMES[self.sql_type]

    @property
    def definition(self) -> str:
        """Column definition as rendered in DDL"""
        return f'{self.name} {self.type_sql}'

    @property
    def value_range(self) -> tuple[int, int] | None:
        """Inclusive integer range for integer storage types"""
        return _INTEGER_RANGES.get(self.sql_type)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'sql_type': self.sql_type.value,
            'type_sql': self.type_sql,
            'python_type': getattr(self.python_type, '__name__', None),
            'nullable': self.nullable,
            'length': self.length,
            'precision': self.precision,
            'scale': self.scale,
        }

    def __repr__(self) -> str:
        return f'ColumnDescriptor({self.definition!r}, nullable={self.nullable})'


def _is_int_enum(python_type: Any) -> bool:
    if not (isinstance(python_type, type) and issubclass(python_type, enum.Enum)):
        return False
    return all(isinstance(member.value, int) and not isinstance(member.value, bool)
               for member in python_type)


def resolve_sql_type(python_type: Any) -> SqlType | None:
    """Resolve an underlying Python type to its SqlType, or None if unmapped.

    Enumerations map by their integer storage, never by name, so only enums
    whose members all have int values are supported.
    """
    if isinstance(python_type, type) and issubclass(python_type, enum.Enum):
        return SqlType.ENUM if _is_int_enum(python_type) else None
    try:
        return TYPE_TABLE.get(python_type)
    except TypeError:
        # unhashable annotation objects
        return None


def _column_for(record_type: type, field, text_length: int | None) -> ColumnDescriptor:
    underlying = field.underlying_type
    sql_type = resolve_sql_type(underlying)
    if sql_type is None:
        raise UnsupportedColumnTypeError(record_type, field.name, field.python_type)

    kwargs: dict[str, Any] = {}
    if sql_type is SqlType.TEXT:
        kwargs['length'] = text_length
    elif sql_type is SqlType.DECIMAL:
        kwargs['precision'], kwargs['scale'] = DECIMAL_PRECISION, DECIMAL_SCALE
    elif sql_type is SqlType.UNSIGNED_BIGINT:
        kwargs['precision'], kwargs['scale'] = DECIMAL_PRECISION, 0

    return ColumnDescriptor(name=field.name, sql_type=sql_type, python_type=underlying,
                            nullable=field.nullable, **kwargs)


_column_cache: cachetools.LRUCache = cachetools.LRUCache(maxsize=256)
_column_cache_lock = threading.RLock()


@cachetools.cached(cache=_column_cache, lock=_column_cache_lock)
def _derive_columns(record_type: type, text_length: int | None) -> tuple[ColumnDescriptor, ...]:
    columns = tuple(_column_for(record_type, field, text_length)
                    for field in describe_fields(record_type)
                    if not field.ignore)
    logger.debug(f'Derived {len(columns)} columns for {type_identity(record_type)}: '
                 f"{', '.join(c.definition for c in columns)}")
    return columns


def derive_columns(record_type: type, text_length: int | None = None) -> tuple[ColumnDescriptor, ...]:
    """Map a record type's fields to ordered column descriptors.

    Deterministic and side-effect free apart from memoization: the same type
    always yields an equal tuple, in field declaration order, with ignored
    fields dropped.

    Args:
        record_type: Dataclass, NamedTuple, annotated or registered type
        text_length: Width of text columns, None for NVarChar(max)

    Returns
        Tuple of ColumnDescriptor

    Raises
        UnsupportedColumnTypeError: If any retained field has no mapping
    """
    return _derive_columns(record_type, text_length)


def _invalidate(record_type: type) -> None:
    with _column_cache_lock:
        for key in [k for k in _column_cache if k[0] is record_type]:
            del _column_cache[key]


def clear_column_cache() -> None:
    """Drop every memoized column schema."""
    with _column_cache_lock:
        _column_cache.clear()


on_registration_change(_invalidate)
