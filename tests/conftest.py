import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("APP_ENVIRONMENT", "testing")

from collections.abc import Callable

import pytest

from capledger.infrastructure.catalog import ReferenceCatalog
from capledger.infrastructure.config import reset_settings
from tests.support import Ledger, build_ledger, make_catalog


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def catalog() -> ReferenceCatalog:
    return make_catalog()


@pytest.fixture
def ledger(catalog: ReferenceCatalog) -> Ledger:
    return build_ledger(catalog)


@pytest.fixture
def new_ledger(catalog: ReferenceCatalog) -> Callable[[], Ledger]:
    """Factory for a second, empty store sharing the same catalog."""
    return lambda: build_ledger(catalog)
