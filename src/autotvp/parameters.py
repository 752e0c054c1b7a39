"""
Table-valued parameter attachment for commands.

This module provides:
- Command: A statement with named parameters bound to one connection
- attach: Bind a TabularValue to a command as a named structured parameter
- attach_records / attach_record: Ensure the table type, build the value and attach it
- TableValuedParameter: Deferred parameter value, see as_table_valued_parameter and as_auto_tvp

Usage:
    cmd = Command(cn, 'insert into dbo.Orders select * from @rows')
    attach_records(cmd, 'rows', orders)
    cmd.execute()
"""
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from autotvp.cache import TypeCreationCache
from autotvp.connection import connect
from autotvp.exceptions import UnsupportedTargetError, ValidationError
from autotvp.sql import StructuredTypeName, bind_named_parameters
from autotvp.sql import normalize_parameter_name
from autotvp.tabular import TabularValue, build_tabular_value
from autotvp.types import derive_columns

logger = logging.getLogger(__name__)

__all__ = [
    'StructuredParameter',
    'TableValuedParameter',
    'Command',
    'attach',
    'attach_record',
    'attach_records',
    'as_table_valued_parameter',
    'as_auto_tvp',
]


@dataclass(frozen=True)
class StructuredParameter:
    """A named parameter whose value is a table of the given table type."""

    name: str
    type_name: StructuredTypeName
    value: TabularValue

    def bind_value(self) -> list[Any]:
        """Driver representation of the value"""
        return self.value.as_pyodbc(self.type_name)


@dataclass
class TableValuedParameter:
    """Records waiting to be attached as a table-valued parameter.

    With auto_create the table type is created on first use per target;
    without it type_name must name an existing table type.
    """

    records: list[Any]
    type_name: str | None = None
    auto_create: bool = False
    record_type: type | None = None

    def __post_init__(self):
        self.records = list(self.records)
        if self.type_name is None and not self.auto_create:
            raise ValidationError('type_name is required unless auto_create is set')


def as_table_valued_parameter(records: Iterable[Any], type_name: str | None,
                              auto_create: bool = False,
                              record_type: type | None = None) -> TableValuedParameter:
    """Wrap records for use as a table-valued parameter of type type_name.
    """
    return TableValuedParameter(list(records), type_name, auto_create, record_type)


def as_auto_tvp(records: Iterable[Any], record_type: type | None = None) -> TableValuedParameter:
    """Wrap records for use as a table-valued parameter of an auto-created type.

    The table type name is derived from the record type.
    """
    return TableValuedParameter(list(records), None, True, record_type)


class Command:
    """A T-SQL statement with named @parameters bound to one connection.

    Scalar parameters and table-valued parameters share one namespace.
    Execution rewrites @name references into positional placeholders.
    """

    def __init__(self, connection: Any, sql: str) -> None:
        self.connection = connect(connection)
        self.sql = sql
        self.parameters: dict[str, Any] = {}

    def __repr__(self) -> str:
        return f'Command({self.sql[:60]!r}, parameters={list(self.parameters)})'

    @property
    def supports_structured_parameters(self) -> bool:
        return bool(getattr(self.connection, 'supports_structured_parameters', False))

    def add_parameter(self, name: str, value: Any) -> 'Command':
        """Add a named parameter.

        TableValuedParameter values are attached through attach_records.
        """
        if isinstance(value, TableValuedParameter):
            return attach_records(self, name, value.records, record_type=value.record_type,
                                  type_name=value.type_name, auto_create=value.auto_create)
        if isinstance(value, StructuredParameter):
            return attach(self, name, value.type_name, value.value)
        self._set(normalize_parameter_name(name), value)
        return self

    def _set(self, name: str, value: Any) -> None:
        if name.lower() in {key.lower() for key in self.parameters}:
            raise ValidationError(f'Parameter {name} is already defined')
        self.parameters[name] = value

    def prepare(self) -> tuple[str, list[Any]]:
        """Return the statement and positional arguments as the driver expects them.
        """
        values = {
            name: value.bind_value() if isinstance(value, StructuredParameter) else value
            for name, value in self.parameters.items()
            }
        return bind_named_parameters(self.sql, values)

    def execute(self) -> Any:
        """Execute the command and return the cursor for fetching results.
        """
        sql, args = self.prepare()
        start = time.time()
        cursor = self.connection.cursor()
        if args:
            cursor.execute(sql, args)
        else:
            cursor.execute(sql)
        self.connection.addcall(time.time() - start)
        logger.debug(f'Executed command with {len(args)} parameters: {sql[:60]}...')
        return cursor


def _require_structured_support(command: Command) -> None:
    if not command.supports_structured_parameters:
        dialect = getattr(command.connection, 'dialect', None)
        raise UnsupportedTargetError(
            f'Structured (table-valued) parameters are unsupported on {dialect or "this target"}')


def attach(command: Command, name: str, type_name: StructuredTypeName | str,
           tabular_value: TabularValue) -> Command:
    """Attach a tabular value to command as a named structured parameter.

    Args:
        command: Command to receive the parameter
        name: Parameter name, with or without the @ marker
        type_name: Existing table type the value conforms to
        tabular_value: Rows built by build_tabular_value

    Returns
        The command

    Raises
        UnsupportedTargetError: If the command's connection cannot take table-valued parameters
    """
    _require_structured_support(command)
    if not isinstance(tabular_value, TabularValue):
        raise ValidationError(f'Expected a TabularValue, got {type(tabular_value).__qualname__}')

    name = normalize_parameter_name(name)
    parameter = StructuredParameter(name, StructuredTypeName.parse(type_name), tabular_value)
    command._set(name, parameter)
    logger.debug(f'Attached {name} as {parameter.type_name} with {len(tabular_value)} rows')
    return command


def attach_records(command: Command, name: str, records: Iterable[Any],
                   record_type: type | None = None,
                   type_name: StructuredTypeName | str | None = None,
                   auto_create: bool | None = None,
                   cache: TypeCreationCache | None = None) -> Command:
    """Attach records to command as a named table-valued parameter.

    Without type_name the table type name is derived from the record type and
    the type is created on first use per target. With type_name the type is
    assumed to exist unless auto_create is set.

    Args:
        command: Command to receive the parameter
        name: Parameter name, with or without the @ marker
        records: Records in row order
        record_type: Record type, inferred from the first record if omitted
        type_name: Explicit table type name
        auto_create: Create the table type on first use (default: type_name is None)
        cache: Type creation cache (default: the connection's, else the process-wide one)

    Returns
        The command

    Raises
        ValidationError: If record_type is omitted for an empty collection
        UnsupportedTargetError: If the connection cannot take table-valued parameters
        UnsupportedColumnTypeError: If the record type has unmapped fields
        DdlExecutionError: If creating the table type fails
    """
    _require_structured_support(command)

    records = list(records)
    if record_type is None:
        if not records:
            raise ValidationError('record_type is required to attach an empty collection')
        record_type = type(records[0])
    if auto_create is None:
        auto_create = type_name is None

    connection = command.connection
    if cache is None:
        cache = connection.type_cache
    if auto_create:
        type_name = cache.ensure_created(record_type, connection.target,
                                         connection.execute_ddl, type_name)

    columns = derive_columns(record_type, cache.options.text_length)
    return attach(command, name, type_name, build_tabular_value(records, columns))


def attach_record(command: Command, name: str, record: Any,
                  record_type: type | None = None,
                  type_name: StructuredTypeName | str | None = None,
                  auto_create: bool | None = None,
                  cache: TypeCreationCache | None = None) -> Command:
    """Attach a single record to command as a one-row table-valued parameter.
    """
    return attach_records(command, name, [record], record_type=record_type or type(record),
                          type_name=type_name, auto_create=auto_create, cache=cache)
