"""
DDL generation for table types.
"""
import logging
import re
from collections.abc import Sequence

from autotvp.exceptions import ValidationError
from autotvp.sql import StructuredTypeName
from autotvp.types import ColumnDescriptor

logger = logging.getLogger(__name__)

__all__ = ['build_create_or_replace_sql', 'build_create_schema_sql']

_IDENTIFIER = re.compile(r'^[^\W\d][\w@$#]*$')


def build_create_schema_sql(schema: str) -> str:
    """Generate a guarded CREATE SCHEMA statement.

    CREATE SCHEMA must be alone in its batch, hence the dynamic exec.
    """
    return f"if schema_id('{schema}') is null exec('create schema {schema}');\n"


def build_create_or_replace_sql(type_name: StructuredTypeName | str,
                                columns: Sequence[ColumnDescriptor],
                                create_schema: bool = False) -> str:
    """Generate the drop-if-exists and create statements for a table type.

    Safe to re-run: an existing type of the same name is dropped before it
    is created again.

    Args:
        type_name: Schema-qualified table type name
        columns: Column descriptors in declaration order
        create_schema: Prepend a guarded CREATE SCHEMA

    Returns
        SQL batch text

    Raises
        ValidationError: If there are no columns
    """
    type_name = StructuredTypeName.parse(type_name)
    if not columns:
        raise ValidationError(f'Table type {type_name} needs at least one column')

    schema, name = type_name.schema, type_name.name
    for part in (schema, name):
        if not _IDENTIFIER.match(part):
            raise ValidationError(f'Table type name part is not a regular identifier: {part!r}')
    parts = []
    if create_schema:
        parts.append(build_create_schema_sql(schema))
    parts.append(
        f'if exists (select 1 from sys.types t (nolock) join sys.schemas s (nolock) '
        f"on s.schema_id = t.schema_id where t.name = '{name}' and s.name = '{schema}') \n")
    parts.append('begin\n')
    parts.append(f'drop type {schema}.{name};\n')
    parts.append('end\n')
    parts.append(f'create type {schema}.{name} as table (\n')
    parts.append(', '.join(column.definition for column in columns) + '\n')
    parts.append(');\n')

    sql = ''.join(parts)
    logger.debug(f'Generated DDL for {type_name} with {len(columns)} columns')
    return sql
