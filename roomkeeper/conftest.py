# roomkeeper/conftest.py
import os
import pytest

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="function")
def db():
    """
    Fresh in-memory SQLite database for one test.

    Uses TEST_DATABASE_URL when set (e.g. a disposable Postgres), otherwise
    sqlite:// with a single shared connection.
    """
    from roomkeeper.core.database import init_engine, create_all_tables, drop_all_tables, dispose_engine

    init_engine(os.getenv("TEST_DATABASE_URL") or "sqlite://")
    create_all_tables()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global; start every test from zero."""
    from roomkeeper.core.metrics import METRICS

    METRICS.reset()
    yield
