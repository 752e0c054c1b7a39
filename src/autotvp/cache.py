"""
Process-wide memory of which table types have been created on which target.

A key is (table type name, target identity). Presence of a key means the
create-or-replace DDL for that type has run successfully against that target
in this process. Entries never expire.
"""
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from autotvp.adapters.structure import type_key
from autotvp.exceptions import DdlExecutionError, NamingCollisionError
from autotvp.options import TvpOptions
from autotvp.sql import StructuredTypeName, structured_type_name
from autotvp.sql_generation import build_create_or_replace_sql
from autotvp.types import ColumnDescriptor, derive_columns

logger = logging.getLogger(__name__)

__all__ = ['TypeCreationCache', 'CacheEntry']

Executor = Callable[[str], Any]


@dataclass(frozen=True)
class CacheEntry:
    """What was created for one (type name, target) key."""

    record_key: tuple[str, str]
    columns: tuple[ColumnDescriptor, ...]

    @property
    def identity(self) -> str:
        return '.'.join(self.record_key)


class TypeCreationCache:
    """Thread-safe, append-only record of created table types.

    Concurrent first use of the same key shares one in-flight attempt: exactly
    one caller executes the DDL and the others wait for its outcome, success
    or failure. A failed attempt is forgotten, so a later call tries again.
    Different keys never block each other during DDL.
    """

    _instance = None
    _instance_lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> 'TypeCreationCache':
        """Get the process-wide default instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def __init__(self, options: TvpOptions | None = None) -> None:
        self.options = options or TvpOptions()
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._attempts: dict[tuple[str, str], Future] = {}
        self._owners: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: tuple[str, str]) -> bool:
        with self._lock:
            return (str(key[0]), key[1]) in self._entries

    def is_created(self, record_type: type, target: str,
                   type_name: StructuredTypeName | str | None = None) -> bool:
        """Check whether the type of record_type has been created on target."""
        return (self._type_name_for(record_type, type_name), target) in self

    def _type_name_for(self, record_type: type,
                       type_name: StructuredTypeName | str | None) -> str:
        if type_name is None:
            return str(structured_type_name(record_type, self.options))
        return str(StructuredTypeName.parse(type_name))

    def _check_entry(self, key: tuple[str, str], entry: CacheEntry,
                     record_key: tuple[str, str], columns: tuple[ColumnDescriptor, ...]) -> None:
        if entry.record_key != record_key or entry.columns != columns:
            incoming = '.'.join(record_key)
            if entry.record_key == record_key:
                incoming = f'{incoming} (changed columns)'
            raise NamingCollisionError(key[0], entry.identity, incoming)

    def ensure_created(self, record_type: type, target: str, executor: Executor,
                       type_name: StructuredTypeName | str | None = None) -> StructuredTypeName:
        """Create the table type for record_type on target unless already done.

        Args:
            record_type: Host record type describing the columns
            target: Target identity, see autotvp.utils.get_target_identity
            executor: Callable executing one SQL batch against target
            type_name: Override the derived table type name

        Returns
            The table type name to bind parameters with

        Raises
            UnsupportedColumnTypeError: If the record type cannot be mapped
            NamingCollisionError: If another definition already owns the name
            DdlExecutionError: If the DDL fails; the key stays unmarked and
                every caller waiting on the same attempt receives this error
        """
        name = StructuredTypeName.parse(self._type_name_for(record_type, type_name))
        key = (str(name), target)
        record_key = type_key(record_type)
        columns = derive_columns(record_type, self.options.text_length)

        with self._lock:
            entry = self._entries.get(key)
            attempt = None if entry is not None else self._attempts.get(key)
            if entry is None and attempt is None:
                owner = self._owners.get(key[0])
                if owner is not None:
                    # same name already created on another target
                    self._check_entry(key, owner, record_key, columns)
                attempt = self._attempts[key] = Future()
                owns_attempt = True
            else:
                owns_attempt = False

        if entry is not None:
            self._check_entry(key, entry, record_key, columns)
            logger.debug(f'Cache hit for table type {name} on {target}')
            return name

        if not owns_attempt:
            logger.debug(f'Waiting for in-flight creation of {name} on {target}')
            entry = attempt.result()
            self._check_entry(key, entry, record_key, columns)
            return name

        try:
            entry = self._create(name, target, executor, record_key, columns)
        except Exception as e:
            with self._lock:
                self._attempts.pop(key, None)
            attempt.set_exception(e)
            raise

        with self._lock:
            self._entries[key] = self._owners[key[0]] = entry
            self._attempts.pop(key, None)
        attempt.set_result(entry)
        logger.info(f'Created table type {name} on {target}')
        return name

    def _create(self, name: StructuredTypeName, target: str, executor: Executor,
                record_key: tuple[str, str], columns: tuple[ColumnDescriptor, ...]) -> CacheEntry:
        logger.debug(f'Cache miss for table type {name} on {target}')
        sql = build_create_or_replace_sql(name, columns, self.options.create_schema)
        try:
            executor(sql)
        except Exception as e:
            logger.error(f'Failed to create table type {name} on {target}: {e}')
            raise DdlExecutionError(str(name), target, sql, e) from e
        return CacheEntry(record_key, columns)

    def clear(self) -> None:
        """Forget every entry. Intended for test isolation."""
        with self._lock:
            self._entries.clear()
            self._owners.clear()
            self._attempts.clear()
