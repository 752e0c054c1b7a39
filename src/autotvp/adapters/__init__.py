"""
Record adapters package.

This package provides the following components:

- structure: Record structure introspection (fields, order, ignore markers, registration)
- type_conversion: Value coercion of record fields into table-valued parameter cells

Relational type mapping of fields lives in autotvp.types; structure adapters
do NOT map or convert types, they only describe which fields a record has.
"""

from autotvp.adapters.structure import *
from autotvp.adapters.type_conversion import TypeConverter
from autotvp.adapters.type_conversion import ensure_timezone_naive_datetime
