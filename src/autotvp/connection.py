"""
Connection wrapper exposing the capabilities table-valued parameters need.

This module provides:
1. The `connect()` function for wrapping an engine or existing connection
2. The `ConnectionWrapper` class with DDL execution, target identity and
   command construction

Acquiring connections (connection strings, pooling) stays with the caller;
the wrapper only consumes an already configured SQLAlchemy engine or
connection, or a raw pyodbc connection.
"""
import logging
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Self

import sqlalchemy as sa

from autotvp.cache import TypeCreationCache
from autotvp.sql import StructuredTypeName
from autotvp.utils import get_dialect_name, get_target_identity

if TYPE_CHECKING:
    from autotvp.parameters import Command

__all__ = ['ConnectionWrapper', 'connect']

logger = logging.getLogger(__name__)


class ConnectionWrapper:
    """Wraps a SQLAlchemy or DBAPI connection to run table type DDL and commands

    This class provides a thin wrapper around connection objects that:
    1. Executes raw SQL batches through the DBAPI cursor
    2. Derives the target identity used to key the type creation cache
    3. Builds commands that accept table-valued parameters
    4. Tracks query execution counts and timing
    5. Delegates attribute access to the wrapped connection
    """

    def __init__(self, connection: Any, cache: TypeCreationCache | None = None) -> None:
        """Initialize a connection wrapper
        """
        if isinstance(connection, sa.engine.Connection):
            self.sa_connection = connection
            self.dbapi_connection = connection.connection
        else:
            self.sa_connection = None
            self.dbapi_connection = connection
        self.cache = cache
        try:
            self._dialect = get_dialect_name(connection)
        except AttributeError as e:
            # unrecognised driver: usable for plain SQL, never for table types
            logger.debug(f'No dialect detected, structured parameters disabled: {e}')
            self._dialect = None
        self._target = None
        self.calls = 0
        self.time = 0
        self.in_transaction = False

    def __enter__(self) -> Self:
        """Support for context manager protocol
        """
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        """Close the connection when exiting the context manager
        """
        self.close()

    def __getattr__(self, name: str) -> Any:
        """Delegate attribute access to the wrapped connection.
        """
        if name in {'sa_connection', 'dbapi_connection'}:
            raise AttributeError(name)
        if self.sa_connection is not None and hasattr(self.sa_connection, name):
            return getattr(self.sa_connection, name)
        return getattr(self.dbapi_connection, name)

    @property
    def dialect(self) -> str | None:
        """Return the dialect name ('mssql' for SQL Server), None when unknown."""
        return self._dialect

    @property
    def target(self) -> str:
        """Identity of the addressed server and database."""
        if self._target is None:
            source = self.sa_connection if self.sa_connection is not None else self.dbapi_connection
            self._target = get_target_identity(source)
        return self._target

    @property
    def supports_structured_parameters(self) -> bool:
        """Table-valued parameters exist on SQL Server only."""
        return self.dialect == 'mssql'

    @property
    def type_cache(self) -> TypeCreationCache:
        return self.cache if self.cache is not None else TypeCreationCache.get_instance()

    def cursor(self) -> Any:
        """Get a DBAPI cursor for this connection
        """
        if self.sa_connection is not None and self.sa_connection.closed:
            raise sa.exc.ResourceClosedError('Connection is closed')
        return self.dbapi_connection.cursor()

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def commit(self) -> None:
        """Commit on the DBAPI connection the statements ran on
        """
        self.dbapi_connection.commit()

    def rollback(self) -> None:
        self.dbapi_connection.rollback()

    def close(self) -> None:
        """Close the wrapped connection
        """
        if self.sa_connection is not None:
            if not self.sa_connection.closed:
                self.sa_connection.close()
        elif self.dbapi_connection is not None:
            self.dbapi_connection.close()
        logger.debug(f'Connection closed: {self.calls} queries in {self.time:.2f}s')

    def execute(self, sql: str, *args: Any) -> int:
        """Execute a SQL batch and return the affected row count.

        Commits afterwards unless the caller has marked the connection as
        being in a transaction.
        """
        start = time.time()
        cursor = self.cursor()
        try:
            if args:
                cursor.execute(sql, args)
            else:
                cursor.execute(sql)
            rowcount = cursor.rowcount
            if not self.in_transaction:
                self.commit()
            return rowcount
        except Exception:
            if not self.in_transaction:
                self.rollback()
            raise
        finally:
            cursor.close()
            self.addcall(time.time() - start)

    def execute_ddl(self, sql: str) -> None:
        """Execution capability handed to the type creation cache."""
        self.execute(sql)

    def ensure_type(self, record_type: type,
                    type_name: StructuredTypeName | str | None = None) -> StructuredTypeName:
        """Create the table type for record_type on this target unless already done.
        """
        return self.type_cache.ensure_created(record_type, self.target, self.execute_ddl, type_name)

    def command(self, sql: str) -> 'Command':
        """Create a command bound to this connection."""
        from autotvp.parameters import Command
        return Command(self, sql)

    def attach_records(self, command: 'Command', name: str, records: Iterable[Any],
                       record_type: type | None = None,
                       type_name: StructuredTypeName | str | None = None) -> 'Command':
        """Attach records to command as a table-valued parameter.
        """
        from autotvp.parameters import attach_records
        return attach_records(command, name, records, record_type=record_type,
                              type_name=type_name, cache=self.type_cache)


def connect(engine_or_connection: Any, cache: TypeCreationCache | None = None) -> ConnectionWrapper:
    """Wrap an engine (opening a new connection) or an existing connection.
    """
    if isinstance(engine_or_connection, ConnectionWrapper):
        return engine_or_connection
    if isinstance(engine_or_connection, sa.engine.Engine):
        engine_or_connection = engine_or_connection.connect()
        logger.debug(f'Opened connection for {engine_or_connection.engine.url!r}')
    return ConnectionWrapper(engine_or_connection, cache=cache)
