"""
Options controlling generated table types.
"""
import re
from dataclasses import dataclass

__all__ = ['TvpOptions', 'MAX_TEXT_LENGTH', 'MAX_IDENTIFIER_LENGTH', 'is_regular_identifier']

# Largest bounded nvarchar width, anything longer is nvarchar(max)
MAX_TEXT_LENGTH = 4000
MAX_IDENTIFIER_LENGTH = 128

_REGULAR_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_@$#]*$')


def is_regular_identifier(name: str) -> bool:
    """Check whether name can be used unquoted as a SQL Server identifier.
    """
    return bool(name) and len(name) <= MAX_IDENTIFIER_LENGTH \
        and bool(_REGULAR_IDENTIFIER.match(name))


@dataclass(frozen=True)
class TvpOptions:
    """Options

    - schema: Schema holding every generated table type, so permissions can
      be granted once (default: udtts)
    - type_prefix: Prefix of generated table type names (default: TVPAutoCreator_)
    - text_length: None renders text columns as NVarChar(max), otherwise the
      bounded width 1-4000 (default: None)
    - create_schema: Create the schema when missing before creating the type
      (default: False)
    """
    schema: str = 'udtts'
    type_prefix: str = 'TVPAutoCreator_'
    text_length: int | None = None
    create_schema: bool = False

    def __post_init__(self):
        if not is_regular_identifier(self.schema):
            raise ValueError(f'schema must be a regular identifier: {self.schema!r}')
        if not is_regular_identifier(self.type_prefix):
            raise ValueError(f'type_prefix must be a regular identifier: {self.type_prefix!r}')
        if self.text_length is not None:
            if isinstance(self.text_length, bool) or not isinstance(self.text_length, int):
                raise ValueError(f'text_length must be an int or None: {self.text_length!r}')
            if not 1 <= self.text_length <= MAX_TEXT_LENGTH:
                raise ValueError(f'text_length must be between 1 and {MAX_TEXT_LENGTH}')
