"""
Tests for the once-per-target table type creation cache.
"""
import threading
import time
from dataclasses import dataclass

import pytest
from autotvp.cache import TypeCreationCache
from autotvp.exceptions import DdlExecutionError, NamingCollisionError
from autotvp.exceptions import UnsupportedColumnTypeError
from autotvp.options import TvpOptions
from autotvp.sql import StructuredTypeName

from tests.fixtures.records import Order, OrderTuple, Unsupported

TARGET = 'mssql://db1/sales'


class RecordingExecutor:
    """Executor that records the DDL it receives, optionally slowly or failing"""

    def __init__(self, delay=0, failures=0, error='boom'):
        self.statements = []
        self.delay = delay
        self.failures = failures
        self.error = error
        self._lock = threading.Lock()

    def __call__(self, sql):
        time.sleep(self.delay)
        with self._lock:
            self.statements.append(sql)
            if self.failures:
                self.failures -= 1
                raise RuntimeError(self.error)

    @property
    def calls(self):
        return len(self.statements)


@pytest.fixture
def cache():
    return TypeCreationCache()


def test_creates_once_per_target(cache):
    executor = RecordingExecutor()

    first = cache.ensure_created(Order, TARGET, executor)
    second = cache.ensure_created(Order, TARGET, executor)

    assert first == second == StructuredTypeName('udtts', 'TVPAutoCreator_tests$fixtures$records#Order')
    assert executor.calls == 1
    assert 'create type udtts.TVPAutoCreator_tests$fixtures$records#Order' in executor.statements[0]
    assert cache.is_created(Order, TARGET)
    assert len(cache) == 1


def test_each_target_gets_its_own_ddl(cache):
    executor = RecordingExecutor()

    cache.ensure_created(Order, 'mssql://db1/sales', executor)
    cache.ensure_created(Order, 'mssql://db2/sales', executor)
    cache.ensure_created(Order, 'mssql://db1/sales', executor)

    assert executor.calls == 2
    assert not cache.is_created(Order, 'mssql://db3/sales')


def test_concurrent_first_use_runs_ddl_once(cache):
    """Callers racing on a new key all wait for a single DDL execution"""
    executor = RecordingExecutor(delay=0.05)
    workers = 16
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def work():
        barrier.wait()
        try:
            results.append(cache.ensure_created(Order, TARGET, executor))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=work) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not errors
    assert executor.calls == 1
    assert len(results) == workers
    assert len(set(results)) == 1


def test_concurrent_failure_is_shared_by_waiters(cache):
    """Callers racing on a failing DDL all see the single attempt's error"""
    executor = RecordingExecutor(delay=0.2, failures=100)
    workers = 8
    barrier = threading.Barrier(workers)
    errors = []

    def work():
        barrier.wait()
        try:
            cache.ensure_created(Order, TARGET, executor)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=work) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert executor.calls == 1
    assert len(errors) == workers
    assert all(isinstance(e, DdlExecutionError) for e in errors)
    assert not cache.is_created(Order, TARGET)

    # a later call starts a fresh attempt
    executor.failures = 0
    cache.ensure_created(Order, TARGET, executor)
    assert executor.calls == 2
    assert cache.is_created(Order, TARGET)


def test_distinct_keys_do_not_wait_for_each_other(cache):
    """DDL for one type does not hold up DDL for another"""
    slow = threading.Event()
    release = threading.Event()

    def slow_executor(sql):
        slow.set()
        release.wait(5)

    thread = threading.Thread(target=cache.ensure_created, args=(Order, TARGET, slow_executor))
    thread.start()
    try:
        assert slow.wait(5)
        executor = RecordingExecutor()
        cache.ensure_created(OrderTuple, TARGET, executor)
        assert executor.calls == 1
    finally:
        release.set()
        thread.join()
    assert cache.is_created(Order, TARGET)


def test_failure_is_not_cached(cache):
    executor = RecordingExecutor(failures=1)

    with pytest.raises(DdlExecutionError) as exc_info:
        cache.ensure_created(Order, TARGET, executor)

    error = exc_info.value
    assert isinstance(error.__cause__, RuntimeError)
    assert error.target == TARGET
    assert error.type_name == 'udtts.TVPAutoCreator_tests$fixtures$records#Order'
    assert 'create type' in error.sql
    assert error.retryable is False
    assert not cache.is_created(Order, TARGET)
    assert len(cache) == 0

    # the next call tries again and succeeds
    cache.ensure_created(Order, TARGET, executor)
    assert executor.calls == 2
    assert cache.is_created(Order, TARGET)


def test_transient_failure_is_flagged_retryable(cache):
    executor = RecordingExecutor(failures=1, error='[08S01] Communication link failure')
    with pytest.raises(DdlExecutionError) as exc_info:
        cache.ensure_created(Order, TARGET, executor)
    assert exc_info.value.retryable is True


def test_unsupported_type_runs_no_ddl(cache):
    executor = RecordingExecutor()
    with pytest.raises(UnsupportedColumnTypeError):
        cache.ensure_created(Unsupported, TARGET, executor)
    assert executor.calls == 0


class TestNamingCollision:

    def test_explicit_name_reused_by_other_type(self, cache):
        executor = RecordingExecutor()
        cache.ensure_created(Order, TARGET, executor, type_name='udtts.Shared')

        with pytest.raises(NamingCollisionError) as exc_info:
            cache.ensure_created(OrderTuple, TARGET, executor, type_name='udtts.Shared')

        assert exc_info.value.existing == 'tests.fixtures.records.Order'
        assert exc_info.value.incoming == 'tests.fixtures.records.OrderTuple'
        assert executor.calls == 1

    def test_collision_detected_on_another_target(self, cache):
        executor = RecordingExecutor()
        cache.ensure_created(Order, 'mssql://db1/sales', executor, type_name='udtts.Shared')

        with pytest.raises(NamingCollisionError):
            cache.ensure_created(OrderTuple, 'mssql://db2/sales', executor, type_name='udtts.Shared')
        assert executor.calls == 1

    def test_module_and_qualname_are_compared_separately(self, cache):
        """shop.models.Rec and models.Rec in module shop are different owners"""
        executor = RecordingExecutor()
        in_module = type('Rec', (), {'__module__': 'shop.models', '__annotations__': {'id': int}})
        nested = type('Rec', (), {'__module__': 'shop', '__qualname__': 'models.Rec',
                                  '__annotations__': {'id': int}})
        cache.ensure_created(in_module, TARGET, executor, type_name='udtts.Rec')

        with pytest.raises(NamingCollisionError) as exc_info:
            cache.ensure_created(nested, TARGET, executor, type_name='udtts.Rec')
        assert executor.calls == 1
        assert 'changed columns' not in str(exc_info.value)

        # derived names keep them apart without any collision
        assert cache.ensure_created(in_module, TARGET, executor) \
            != cache.ensure_created(nested, TARGET, executor)
        assert executor.calls == 3

    def test_changed_columns_under_same_name(self, cache):
        executor = RecordingExecutor()

        @dataclass
        class Versioned:
            id: int

        cache.ensure_created(Versioned, TARGET, executor, type_name='udtts.Versioned')

        @dataclass
        class Versioned:  # noqa: F811
            id: int
            name: str

        with pytest.raises(NamingCollisionError, match='changed columns'):
            cache.ensure_created(Versioned, TARGET, executor, type_name='udtts.Versioned')


def test_options_shape_names_and_ddl():
    cache = TypeCreationCache(TvpOptions(schema='tvp', type_prefix='T_', text_length=50,
                                         create_schema=True))
    executor = RecordingExecutor()

    name = cache.ensure_created(Order, TARGET, executor)

    assert str(name) == 'tvp.T_tests$fixtures$records#Order'
    sql = executor.statements[0]
    assert sql.startswith("if schema_id('tvp') is null")
    assert 'customer NVarChar(50)' in sql


def test_explicit_name_key(cache):
    executor = RecordingExecutor()
    name = cache.ensure_created(Order, TARGET, executor, type_name='OrderList')
    assert name == StructuredTypeName('dbo', 'OrderList')
    assert ('dbo.OrderList', TARGET) in cache
    assert cache.is_created(Order, TARGET, type_name='dbo.OrderList')
    assert not cache.is_created(Order, TARGET)


def test_clear(cache):
    executor = RecordingExecutor()
    cache.ensure_created(Order, TARGET, executor)
    cache.clear()
    assert len(cache) == 0
    cache.ensure_created(Order, TARGET, executor)
    assert executor.calls == 2


def test_get_instance_is_shared():
    assert TypeCreationCache.get_instance() is TypeCreationCache.get_instance()
    assert TypeCreationCache() is not TypeCreationCache.get_instance()


if __name__ == '__main__':
    __import__('pytest').main([__file__])
