"""
Exception classes for table-valued parameter handling.
"""
import re

RETRYABLE_PATTERNS = [
    # SSL/TLS errors
    r'ssl',
    r'tls',
    # Connection drops
    r'connection.*(closed|reset|refused|lost|terminated|broken|failure)',
    r'communication link failure',
    r'broken pipe',
    # Timeouts
    r'timeout',
    r'timed out',
    # Network issues
    r'could not connect',
    r'no route to host',
    r'network.*(unreachable|error)',
    r'host.*(unreachable|down)',
    # Database unavailable
    r'database.*unavailable',
    r'deadlock',
    ]

_RETRYABLE_REGEX = re.compile('|'.join(RETRYABLE_PATTERNS), re.IGNORECASE)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception represents a transient error worth retrying.

    Returns True for connection drops, timeouts, network issues and deadlock
    victims. Returns False for syntax errors, permission errors and anything
    else that will fail again unchanged.

    :param exc: The exception to check.
    :returns: True if the error is likely transient and worth retrying.
    """
    error_msg = str(exc).lower()
    return bool(_RETRYABLE_REGEX.search(error_msg))


class DatabaseError(Exception):
    """Base class for all autotvp errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or inspecting a database connection.
    """


class QueryError(DatabaseError):
    """Error in statement syntax or execution.
    """


class TypeConversionError(DatabaseError):
    """Error converting a Python value to its column type.
    """


class ValidationError(DatabaseError, ValueError):
    """Error in input validation.
    """


class UnsupportedColumnTypeError(TypeConversionError):
    """A record field has no relational column mapping.
    """

    def __init__(self, record_type, field_name: str, field_type) -> None:
        self.record_type = record_type
        self.field_name = field_name
        self.field_type = field_type
        type_label = getattr(field_type, '__qualname__', None) or repr(field_type)
        record_label = getattr(record_type, '__qualname__', None) or repr(record_type)
        super().__init__(
            f'Column type not supported in table-valued parameters: '
            f'{record_label}.{field_name} ({type_label})')


class DdlExecutionError(QueryError):
    """Create-or-replace table type statement failed.

    The originating driver error is chained as ``__cause__``.
    """

    def __init__(self, type_name: str, target: str, sql: str, cause: BaseException) -> None:
        self.type_name = type_name
        self.target = target
        self.sql = sql
        self.retryable = is_retryable_error(cause)
        super().__init__(f'Failed to create table type {type_name} on {target}: {cause}')


class UnsupportedTargetError(DatabaseError):
    """The destination does not support structured (table-valued) parameters.
    """


class NamingCollisionError(DatabaseError):
    """Two different record definitions resolve to the same table type name.
    """

    def __init__(self, type_name: str, existing: str, incoming: str) -> None:
        self.type_name = type_name
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f'Table type {type_name} already created for {existing}, '
            f'refusing to redefine it for {incoming}')
