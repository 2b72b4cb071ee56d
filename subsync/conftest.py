# subsync/conftest.py
import os
import tempfile
from datetime import datetime, timezone

import pytest

# Configure before any subsync module builds its settings
_TMP_DIR = tempfile.mkdtemp(prefix="subsync-tests-")
os.environ["ENV"] = "test"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'subsync_test.db')}"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_PRO"] = "price_pro"
os.environ["STRIPE_PRICE_TEAM"] = "price_team"
os.environ["STRIPE_PRICE_ENTERPRISE"] = "price_enterprise"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("PLAN_CATALOG_PATH", None)

from subsync.core.database import dispose_engine, reset_database  # noqa: E402
from subsync.core.metrics import METRICS  # noqa: E402
from subsync.features.billing.gateway import init_gateway, reset_gateway  # noqa: E402
from subsync.features.plans.catalog import init_catalog, load_catalog, reset_catalog  # noqa: E402
from subsync.tests.mocks import FakeGateway  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def database_engine():
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate every table so each test starts empty."""
    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def catalog():
    """Plan catalog built from the test price ids (default tier PRO)."""
    cat = init_catalog(load_catalog())
    yield cat
    reset_catalog()


@pytest.fixture(scope="function", autouse=True)
def gateway():
    """In-memory payment gateway installed process-wide."""
    fake = FakeGateway()
    init_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from subsync.main import app

    return TestClient(app)
