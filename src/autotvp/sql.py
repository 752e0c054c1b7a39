"""
SQL text helpers for table-valued parameters.

This module provides:
- StructuredTypeName: Schema-qualified name of a server-side table type
- structured_type_name: Deterministic type name for a record type
- normalize_parameter_name: Ensure a single leading @ marker
- bind_named_parameters: Rewrite @name references into positional placeholders
"""
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from autotvp.adapters.structure import type_identity, type_key
from autotvp.exceptions import ValidationError
from autotvp.options import MAX_IDENTIFIER_LENGTH, TvpOptions

logger = logging.getLogger(__name__)

__all__ = [
    'StructuredTypeName',
    'structured_type_name',
    'normalize_parameter_name',
    'bind_named_parameters',
    'PARAMETER_MARKER',
    'DEFAULT_SCHEMA',
]

PARAMETER_MARKER = '@'
DEFAULT_SCHEMA = 'dbo'

# '$', '#' and '@' never occur in Python identifiers, '#' only between module and qualname
_SEPARATOR = '$'
_QUALNAME_SEPARATOR = '#'
_LOCALS_MARKER = '@'
_GENERATED_NAME = re.compile(r'^[^\W\d][\w@$#]*$')


@dataclass(frozen=True)
class StructuredTypeName:
    """Schema-qualified table type name."""

    schema: str
    name: str

    def __str__(self) -> str:
        return f'{self.schema}.{self.name}'

    @classmethod
    def parse(cls, value: 'str | StructuredTypeName') -> 'StructuredTypeName':
        """Parse 'name', 'schema.name' or '[schema].[name]'.

        Unqualified names resolve to the dbo schema.
        """
        if isinstance(value, StructuredTypeName):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f'Invalid table type name: {value!r}')

        parts = [_unquote(part.strip()) for part in _split_qualified(value.strip())]
        if len(parts) == 1:
            return cls(DEFAULT_SCHEMA, parts[0])
        if len(parts) == 2:
            return cls(parts[0], parts[1])
        raise ValidationError(f'Table type name must be name or schema.name: {value!r}')


def _split_qualified(value: str) -> list[str]:
    """Split on dots that are not inside [brackets]"""
    parts, current, depth = [], '', 0
    for char in value:
        if char == '[':
            depth += 1
        elif char == ']':
            depth = max(depth - 1, 0)
        if char == '.' and depth == 0:
            parts.append(current)
            current = ''
        else:
            current += char
    parts.append(current)
    if any(not part.strip() for part in parts):
        raise ValidationError(f'Invalid table type name: {value!r}')
    return parts


def _unquote(part: str) -> str:
    if part.startswith('[') and part.endswith(']'):
        return part[1:-1].replace(']]', ']')
    return part


def structured_type_name(record_type: type, options: TvpOptions | None = None) -> StructuredTypeName:
    """Derive the deterministic table type name of a record type.

    The name is the configured prefix, the record type's module, ``#``, then
    its qualified name, with dots replaced by ``$``. Locally defined classes
    keep their ``<locals>`` marker as ``@locals@``.

    >>> class Order: pass
    >>> Order.__module__ = 'shop.models'
    >>> str(structured_type_name(Order))
    'udtts.TVPAutoCreator_shop$models#Order'

    Raises
        ValidationError: If the name is not a usable identifier
    """
    options = options or TvpOptions()
    identity = type_identity(record_type)
    module, qualname = type_key(record_type)
    qualname = qualname.replace('<', _LOCALS_MARKER).replace('>', _LOCALS_MARKER)
    name = options.type_prefix + module.replace('.', _SEPARATOR) \
        + _QUALNAME_SEPARATOR + qualname.replace('.', _SEPARATOR)

    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f'Table type name for {identity} exceeds {MAX_IDENTIFIER_LENGTH} characters: {name}')
    if not _GENERATED_NAME.match(name):
        raise ValidationError(f'Table type name for {identity} is not a valid identifier: {name}')

    return StructuredTypeName(options.schema, name)


def normalize_parameter_name(name: str) -> str:
    """Return the parameter name with exactly one leading @ marker.

    >>> normalize_parameter_name('rows'), normalize_parameter_name('@rows')
    ('@rows', '@rows')
    """
    if not isinstance(name, str):
        raise ValidationError(f'Parameter name must be a string: {name!r}')
    bare = name.lstrip(PARAMETER_MARKER)
    if not bare or not re.fullmatch(r'\w+', bare):
        raise ValidationError(f'Invalid parameter name: {name!r}')
    return PARAMETER_MARKER + bare


_TOKEN_PATTERN = re.compile(r"""
      (?P<literal>N?'(?:[^']|'')*')
    | (?P<quoted>"(?:[^"]|"")*")
    | (?P<bracketed>\[(?:[^\]]|\]\])*\])
    | (?P<line_comment>--[^\n]*)
    | (?P<block_comment>/\*.*?\*/)
    | (?P<system>@@\w+)
    | (?P<param>@\w+)
    """, re.VERBOSE | re.DOTALL)


def bind_named_parameters(sql: str, params: Mapping[str, Any]) -> tuple[str, list[Any]]:
    """Rewrite bound @name references into ? placeholders.

    References are matched case-insensitively, as SQL Server does. Each
    occurrence produces one positional argument, so a parameter used twice is
    passed twice. String literals, quoted identifiers, comments, @@system
    functions and @variables that are not bound are left untouched.

    Parameters
        sql: T-SQL text using @name parameters
        params: Mapping of parameter name (with or without @) to value

    Returns
        Tuple of (rewritten SQL, positional argument list)
    """
    bound = {normalize_parameter_name(name).lower(): value for name, value in params.items()}
    args: list[Any] = []
    used: set[str] = set()

    def replace(match: re.Match) -> str:
        token = match.group('param')
        if token is None or token.lower() not in bound:
            return match.group(0)
        used.add(token.lower())
        args.append(bound[token.lower()])
        return '?'

    rewritten = _TOKEN_PATTERN.sub(replace, sql)

    unused = set(bound) - used
    if unused:
        logger.debug(f'Parameters not referenced by statement: {sorted(unused)}')
    return rewritten, args
