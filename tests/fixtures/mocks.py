"""
Mock connection utilities for autotvp tests.

Provides mock SQL Server connections that record executed statements, and
simple mock connections for testing connection type detection without
requiring actual database connections.

Usage:
    def test_ddl(mssql_connection, executed_sql):
        ...
        assert any('create type' in sql for sql in executed_sql(mssql_connection))
"""
import pytest
from autotvp.connection import ConnectionWrapper

TEST_TARGET = 'mssql://testserver/testdb'


def _create_simple_mock_connection(connection_type='postgresql'):
    """
    Create a simple mock database connection with the specified connection type.

    Args:
        connection_type: Database type ('pyodbc', 'postgresql', 'sqlite', 'unknown')

    Returns
        Simple mock connection object that will pass type detection
    """
    modules = {
        'pyodbc': 'pyodbc',
        'postgresql': 'psycopg',
        'sqlite': 'sqlite3',
        'unknown': 'unknown_db',
    }

    class MockConn:
        def __init__(self):
            pass

    MockConn.__module__ = modules[connection_type]
    MockConn.__qualname__ = 'Connection'
    MockConn.__name__ = 'Connection'
    return MockConn()


@pytest.fixture
def create_simple_mock_connection():
    """
    Fixture that provides a factory function to create simple mock connections.

    Example usage:
        def test_connection_detection(create_simple_mock_connection):
            pg_conn = create_simple_mock_connection('postgresql')
    """
    def factory(connection_type='postgresql'):
        return _create_simple_mock_connection(connection_type)

    return factory


@pytest.fixture
def create_mock_sqlserver_connection(mocker):
    """
    Factory for mock raw SQL Server connections.

    The mock reports dialect 'mssql' and an explicit target identity; every
    cursor() call returns the same mock cursor so executed statements can be
    inspected.
    """
    def factory(target=TEST_TARGET):
        conn = mocker.MagicMock(name='pyodbc.Connection')
        conn.dialect = 'mssql'
        conn.target = target
        conn.cursor.return_value.rowcount = 0
        return conn

    return factory


@pytest.fixture
def mock_sqlserver_connection(create_mock_sqlserver_connection):
    return create_mock_sqlserver_connection()


@pytest.fixture
def mssql_connection(mock_sqlserver_connection):
    """ConnectionWrapper around a mock SQL Server connection"""
    return ConnectionWrapper(mock_sqlserver_connection)


@pytest.fixture
def executed_sql():
    """Return the statements executed on a (wrapped) mock connection, in order"""
    def collect(connection):
        raw = getattr(connection, 'dbapi_connection', connection)
        return [c.args[0] for c in raw.cursor.return_value.execute.call_args_list]

    return collect


@pytest.fixture
def ddl_statements(executed_sql):
    """Return only the create type batches executed on a mock connection"""
    def collect(connection):
        return [sql for sql in executed_sql(connection) if 'create type' in sql]

    return collect
