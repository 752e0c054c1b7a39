"""
Automatic table-valued parameters for SQL Server.

Collections of records are passed to T-SQL statements as table-valued
parameters without hand-written CREATE TYPE statements: the table type is
derived from the record type and created once per target database.

All operations can be called either as:
- Module functions: autotvp.attach_records(cmd, 'rows', records)
- ConnectionWrapper methods: cn.attach_records(cmd, 'rows', records)
"""
__version__ = '0.1.0'

from collections.abc import Iterable
from typing import Any

from autotvp.adapters.structure import describe_fields, ignore_in_tvp
from autotvp.adapters.structure import register_record_type
from autotvp.adapters.structure import unregister_record_type
from autotvp.cache import TypeCreationCache
from autotvp.connection import ConnectionWrapper, connect
from autotvp.exceptions import ConnectionFailure, DatabaseError
from autotvp.exceptions import DdlExecutionError, NamingCollisionError
from autotvp.exceptions import QueryError, TypeConversionError
from autotvp.exceptions import UnsupportedColumnTypeError
from autotvp.exceptions import UnsupportedTargetError, ValidationError
from autotvp.options import TvpOptions
from autotvp.parameters import Command, StructuredParameter
from autotvp.parameters import TableValuedParameter, as_auto_tvp
from autotvp.parameters import as_table_valued_parameter, attach
from autotvp.parameters import attach_record, attach_records
from autotvp.sql import StructuredTypeName, structured_type_name
from autotvp.sql_generation import build_create_or_replace_sql
from autotvp.tabular import TabularValue, build_tabular_value
from autotvp.tabular import build_tabular_value_for
from autotvp.types import ColumnDescriptor, SqlType, derive_columns


def configure(options: TvpOptions) -> TypeCreationCache:
    """Replace the options of the process-wide type creation cache.

    Entries created under the previous options are forgotten.
    """
    cache = TypeCreationCache.get_instance()
    cache.clear()
    cache.options = options
    return cache


def ensure_type(cn: ConnectionWrapper, record_type: type,
                type_name: StructuredTypeName | str | None = None) -> StructuredTypeName:
    """Create the table type for record_type on the connection's target once.
    """
    return cn.ensure_type(record_type, type_name)


def command(cn: ConnectionWrapper, sql: str) -> Command:
    """Create a command bound to the connection.
    """
    return cn.command(sql)


def execute(cn: ConnectionWrapper, sql: str, parameters: dict[str, Any] | None = None) -> Any:
    """Execute sql with named parameters and return the cursor.

    Values wrapped by as_auto_tvp or as_table_valued_parameter are attached
    as table-valued parameters.
    """
    cmd = cn.command(sql)
    for name, value in (parameters or {}).items():
        cmd.add_parameter(name, value)
    return cmd.execute()


def type_name_for(record_type: type, options: TvpOptions | None = None) -> StructuredTypeName:
    """Table type name derived for record_type under the given or configured options.
    """
    return structured_type_name(record_type, options or TypeCreationCache.get_instance().options)


def records_to_dataframe(records: Iterable[Any], record_type: type | None = None):
    """Materialize records as they would be sent, for inspection.
    """
    records = list(records)
    if record_type is None:
        if not records:
            raise ValidationError('record_type is required for an empty collection')
        record_type = type(records[0])
    return build_tabular_value_for(records, record_type).to_dataframe()


__all__ = [
    'connect',
    'configure',
    'ConnectionWrapper',
    'TvpOptions',
    'TypeCreationCache',
    'Command',
    'command',
    'execute',
    'ensure_type',
    'attach',
    'attach_record',
    'attach_records',
    'as_auto_tvp',
    'as_table_valued_parameter',
    'TableValuedParameter',
    'StructuredParameter',
    'StructuredTypeName',
    'structured_type_name',
    'type_name_for',
    'build_create_or_replace_sql',
    'derive_columns',
    'describe_fields',
    'register_record_type',
    'unregister_record_type',
    'ignore_in_tvp',
    'ColumnDescriptor',
    'SqlType',
    'TabularValue',
    'build_tabular_value',
    'build_tabular_value_for',
    'records_to_dataframe',
    'DatabaseError',
    'ConnectionFailure',
    'QueryError',
    'ValidationError',
    'TypeConversionError',
    'UnsupportedColumnTypeError',
    'UnsupportedTargetError',
    'DdlExecutionError',
    'NamingCollisionError',
]
