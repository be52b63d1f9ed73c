# paywall/conftest.py
import pytest

from paywall.core.database import create_all_tables, dispose_engine, init_engine
from paywall.core.metrics import METRICS


@pytest.fixture(scope="function", autouse=True)
def sqlite_db():
    """
    Fresh in-memory SQLite database per test.

    The static pool keeps one connection alive, so every session in the test
    sees the same database; disposing it throws the data away.
    """
    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()
