import pathlib
import site

import pytest
from autotvp.cache import TypeCreationCache
from autotvp.types import clear_column_cache

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear the column schema and type creation caches around each test."""
    clear_column_cache()
    TypeCreationCache.get_instance().clear()
    yield
    clear_column_cache()
    TypeCreationCache.get_instance().clear()


pytest_plugins = [
    'tests.fixtures.mocks',
    'tests.fixtures.records',
]
