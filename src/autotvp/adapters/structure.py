"""
Record structure adapters describing host record types as ordered fields.

These adapters handle ONLY the structure of records (which fields exist, in
which order, which are excluded, how to read a value). Relational type mapping
lives in autotvp.types and value coercion in autotvp.adapters.type_conversion.

Supported record types:
- dataclasses
- typing.NamedTuple classes
- plain classes with class-level annotations
- any type registered explicitly with register_record_type
"""
import dataclasses
import inspect
import logging
import threading
import types
import typing
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    'FieldDescriptor',
    'IGNORE_IN_TVP',
    'ignore_in_tvp',
    'describe_fields',
    'register_record_type',
    'unregister_record_type',
    'is_registered',
    'on_registration_change',
    'get_field_value',
    'unwrap_optional',
    'type_key',
    'type_identity',
]

# dataclasses.field metadata key marking a field as excluded from the table type
IGNORE_IN_TVP = 'autotvp_ignore'

_registry: dict[type, tuple['FieldDescriptor', ...]] = {}
_registry_lock = threading.RLock()
_invalidation_hooks: list[Callable[[type], None]] = []


def unwrap_optional(python_type: Any) -> tuple[Any, bool]:
    """Strip an Optional/None union wrapper.

    Returns
        (underlying type, nullable). Unions of several non-None types are
        returned unchanged so the type mapper rejects them.
    """
    origin = typing.get_origin(python_type)
    if origin is typing.Union or origin is types.UnionType:
        args = typing.get_args(python_type)
        remaining = [arg for arg in args if arg is not type(None)]
        if len(remaining) == 1 and len(args) > 1:
            return remaining[0], True
    return python_type, False


@dataclasses.dataclass(frozen=True)
class FieldDescriptor:
    """One introspected field of a record type."""

    name: str
    python_type: Any
    nullable: bool = False
    ignore: bool = False

    @classmethod
    def from_annotation(cls, name: str, annotation: Any, ignore: bool = False) -> 'FieldDescriptor':
        _, nullable = unwrap_optional(annotation)
        return cls(name=name, python_type=annotation, nullable=nullable, ignore=ignore)

    @property
    def underlying_type(self) -> Any:
        """Declared type with any Optional wrapper removed"""
        return unwrap_optional(self.python_type)[0]


def ignore_in_tvp(**field_kwargs: Any) -> Any:
    """Declare a dataclass field that is excluded from the table type.

    Accepts the same keyword arguments as dataclasses.field.

    >>> @dataclasses.dataclass
    ... class Order:
    ...     order_id: int
    ...     note: str = ignore_in_tvp(default='')
    >>> [f.name for f in describe_fields(Order) if not f.ignore]
    ['order_id']
    """
    metadata = dict(field_kwargs.pop('metadata', None) or {})
    metadata[IGNORE_IN_TVP] = True
    return dataclasses.field(metadata=metadata, **field_kwargs)


def type_key(record_type: type) -> tuple[str, str]:
    """Unambiguous identity of a record type as (module, qualified name)"""
    return record_type.__module__, record_type.__qualname__


def type_identity(record_type: type) -> str:
    """Fully-qualified identity of a record type (module + qualified name), for messages"""
    return '.'.join(type_key(record_type))


def _is_public(name: str) -> bool:
    return not name.startswith('_')


def _resolve_hints(record_type: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(record_type)
    except (NameError, TypeError) as e:
        logger.debug(f'Falling back to raw annotations for {record_type!r}: {e}')
        return dict(getattr(record_type, '__annotations__', {}))


def _describe_dataclass(record_type: type) -> list[FieldDescriptor]:
    hints = _resolve_hints(record_type)
    return [
        FieldDescriptor.from_annotation(
            f.name, hints.get(f.name, f.type), ignore=bool(f.metadata.get(IGNORE_IN_TVP, False)))
        for f in dataclasses.fields(record_type)
        if _is_public(f.name)
        ]


def _describe_namedtuple(record_type: type) -> list[FieldDescriptor]:
    hints = _resolve_hints(record_type)
    return [
        FieldDescriptor.from_annotation(name, hints.get(name, Any))
        for name in record_type._fields
        if _is_public(name)
        ]


def _describe_annotated_class(record_type: type) -> list[FieldDescriptor]:
    hints = _resolve_hints(record_type)
    descriptors = []
    # Base class annotations first, then the class's own, in declaration order
    for klass in reversed(record_type.__mro__):
        for name in inspect.get_annotations(klass):
            if not _is_public(name) or any(d.name == name for d in descriptors):
                continue
            annotation = hints.get(name)
            if typing.get_origin(annotation) is typing.ClassVar:
                continue
            descriptors.append(FieldDescriptor.from_annotation(name, annotation))
    return descriptors


def describe_fields(record_type: type) -> tuple[FieldDescriptor, ...]:
    """Describe the fields of a record type in declaration order.

    Ignored fields are included with ``ignore=True``; dropping them is the
    type mapper's job.

    Raises
        TypeError: If the type has no registered or introspectable fields
    """
    with _registry_lock:
        if record_type in _registry:
            return _registry[record_type]

    if not isinstance(record_type, type):
        raise TypeError(f'Expected a record type, got {record_type!r}')

    if dataclasses.is_dataclass(record_type):
        descriptors = _describe_dataclass(record_type)
    elif issubclass(record_type, tuple) and hasattr(record_type, '_fields'):
        descriptors = _describe_namedtuple(record_type)
    else:
        descriptors = _describe_annotated_class(record_type)

    if not descriptors:
        raise TypeError(f'Cannot describe fields of {type_identity(record_type)}: '
                        'not a dataclass, NamedTuple, annotated or registered type')
    return tuple(descriptors)


def register_record_type(record_type: type,
                         fields: Sequence[FieldDescriptor] | None = None,
                         ignore: Iterable[str] = ()) -> tuple[FieldDescriptor, ...]:
    """Register the field list of a record type explicitly.

    Args:
        record_type: The host type being described
        fields: Explicit ordered field descriptors, or None to introspect
        ignore: Field names to exclude from the table type

    Returns
        The registered field descriptors
    """
    ignore = set(ignore)
    if fields is None:
        with _registry_lock:
            _registry.pop(record_type, None)
        fields = describe_fields(record_type)

    names = [f.name for f in fields]
    if len(set(names)) != len(names):
        raise ValueError(f'Duplicate field names for {type_identity(record_type)}: {names}')
    unknown = ignore - set(names)
    if unknown:
        raise ValueError(f'Cannot ignore unknown fields {sorted(unknown)} of {type_identity(record_type)}')

    descriptors = tuple(
        dataclasses.replace(f, ignore=True) if f.name in ignore else f
        for f in fields)

    with _registry_lock:
        _registry[record_type] = descriptors
    for hook in _invalidation_hooks:
        hook(record_type)
    logger.debug(f'Registered {len(descriptors)} fields for {type_identity(record_type)}')
    return descriptors


def unregister_record_type(record_type: type) -> None:
    """Remove an explicit registration, falling back to introspection.
    """
    with _registry_lock:
        _registry.pop(record_type, None)
    for hook in _invalidation_hooks:
        hook(record_type)


def is_registered(record_type: type) -> bool:
    with _registry_lock:
        return record_type in _registry


def on_registration_change(hook: Callable[[type], None]) -> None:
    """Call hook(record_type) whenever a registration is added or removed"""
    _invalidation_hooks.append(hook)


def get_field_value(record: Any, name: str) -> Any:
    """Read one field from a record by key (mappings) or attribute.

    Raises
        KeyError: If the record has no such field
    """
    if isinstance(record, Mapping):
        return record[name]
    try:
        return getattr(record, name)
    except AttributeError:
        raise KeyError(f'{type(record).__qualname__} has no field {name!r}') from None
