"""Low-level connection utilities with no internal dependencies beyond exceptions.

These utilities work with any connection type (ConnectionWrapper,
SQLAlchemy connections and engines, raw DBAPI connections).
"""
import logging
from typing import Any

import sqlalchemy as sa

from autotvp.exceptions import ConnectionFailure

logger = logging.getLogger(__name__)

__all__ = ['get_dialect_name', 'get_raw_connection', 'get_target_identity',
           'parse_odbc_connection_string']

# ODBC connection string keywords naming the server and the database
_ODBC_SERVER_KEYS = ('server', 'addr', 'address', 'data source')
_ODBC_DATABASE_KEYS = ('database', 'initial catalog')


def get_dialect_name(obj: Any) -> str:
    """Get dialect name for a database connection or engine.

    Returns
        str: Dialect name ('mssql', 'postgresql' or 'sqlite')

    Raises
        AttributeError: If dialect cannot be determined
    """
    if hasattr(obj, 'dialect'):
        dialect = obj.dialect
        if isinstance(dialect, str):
            return dialect.lower()
        return str(dialect.name).lower()

    if hasattr(obj, 'engine') and hasattr(obj.engine, 'dialect'):
        return str(obj.engine.dialect.name).lower()

    if hasattr(obj, 'sa_connection') and hasattr(obj.sa_connection, 'engine'):
        return str(obj.sa_connection.engine.dialect.name).lower()

    if hasattr(obj, 'dbapi_connection'):
        return get_dialect_name(obj.dbapi_connection)

    type_name = f'{type(obj).__module__}.{type(obj).__name__}'
    if 'pyodbc' in type_name:
        return 'mssql'
    if 'psycopg' in type_name:
        return 'postgresql'
    if 'sqlite3' in type_name:
        return 'sqlite'

    raise AttributeError(f'Cannot determine dialect for {type(obj)}')


def get_raw_connection(connection: Any) -> Any:
    """Extract the raw DBAPI connection from a wrapper."""
    raw_conn = connection
    if isinstance(connection, sa.engine.Connection):
        raw_conn = connection.connection
    elif hasattr(connection, 'dbapi_connection') and connection.dbapi_connection is not None:
        raw_conn = connection.dbapi_connection
    if hasattr(raw_conn, 'driver_connection') and raw_conn.driver_connection is not None:
        raw_conn = raw_conn.driver_connection
    return raw_conn


def parse_odbc_connection_string(conn_str: str) -> dict[str, str]:
    """Parse an ODBC connection string into lower-cased keys.

    Braced values may contain semicolons, '}}' escapes a closing brace.

    >>> parse_odbc_connection_string('DRIVER={ODBC Driver 18};Server=db1;PWD={a;b}')
    {'driver': 'ODBC Driver 18', 'server': 'db1', 'pwd': 'a;b'}
    """
    result: dict[str, str] = {}
    i, length = 0, len(conn_str)
    while i < length:
        eq = conn_str.find('=', i)
        if eq == -1:
            break
        key = conn_str[i:eq].strip().lower()
        i = eq + 1
        if i < length and conn_str[i] == '{':
            value, i = '', i + 1
            while i < length:
                if conn_str[i] == '}':
                    if conn_str[i + 1:i + 2] == '}':
                        value += '}'
                        i += 2
                        continue
                    i += 1
                    break
                value += conn_str[i]
                i += 1
            semi = conn_str.find(';', i)
            i = length if semi == -1 else semi + 1
        else:
            semi = conn_str.find(';', i)
            end = length if semi == -1 else semi
            value = conn_str[i:end].strip()
            i = end + 1
        if key:
            result[key] = value
    return result


def _format_target(server: str, database: str, port: Any = None) -> str:
    host = server.strip().lower()
    if port:
        host = f'{host}:{port}'
    return f'mssql://{host}/{database.strip().lower()}'


def _odbc_parts(conn_str: str) -> tuple[str | None, str | None, Any]:
    parts = parse_odbc_connection_string(conn_str)
    server = next((parts[k] for k in _ODBC_SERVER_KEYS if k in parts), None)
    database = next((parts[k] for k in _ODBC_DATABASE_KEYS if k in parts), None)
    if server is not None:
        # 'tcp:host,1433' and 'host,1433' address the same server
        server = server.removeprefix('tcp:').replace(',', ':')
    return server, database, None


def _url_parts(url: Any) -> tuple[str | None, str | None, Any]:
    odbc_connect = url.query.get('odbc_connect') if url.query else None
    if odbc_connect:
        if isinstance(odbc_connect, tuple):
            odbc_connect = odbc_connect[0]
        return _odbc_parts(odbc_connect)
    return url.host, url.database, url.port


def _live_parts(obj: Any) -> tuple[str | None, str | None]:
    """Ask an open pyodbc connection which server and database it is using"""
    raw = get_raw_connection(obj)
    if 'pyodbc' not in type(raw).__module__:
        return None, None
    import pyodbc
    return raw.getinfo(pyodbc.SQL_SERVER_NAME), raw.getinfo(pyodbc.SQL_DATABASE_NAME)


def get_target_identity(obj: Any) -> str:
    """Derive a stable identity of the database a connection addresses.

    Built from server and database only, never credentials, so the same
    database reached with different users or passwords is one target. When
    the connection settings name no database (the login's default database
    applies), the database is read from the open connection instead.

    Args:
        obj: Explicit target string, ConnectionWrapper, SQLAlchemy
             Connection or Engine, or raw pyodbc connection

    Returns
        str: Target identity such as 'mssql://db1:1433/sales'

    Raises
        ConnectionFailure: If the server or database cannot be determined
    """
    if isinstance(obj, str):
        return obj

    target = getattr(obj, 'target', None)
    if isinstance(target, str):
        return target

    server = database = port = None
    url = getattr(obj, 'url', None)
    if url is None and hasattr(obj, 'engine'):
        url = getattr(obj.engine, 'url', None)
    if url is not None and hasattr(url, 'drivername'):
        server, database, port = _url_parts(url)

    if not server or not database:
        live_server, live_database = _live_parts(obj)
        server = server or live_server
        database = database or live_database
        if live_database:
            logger.debug(f'Resolved database {live_database} from the open connection')

    if not server or not database:
        raise ConnectionFailure(
            f'Cannot determine target identity for {type(obj)}: '
            f'server={server!r}, database={database!r}')
    return _format_target(server, database, port)
