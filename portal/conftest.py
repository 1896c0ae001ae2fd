# portal/conftest.py
import os

import pytest

# Tests run against a private in-memory SQLite database; set before settings load
os.environ["TEST_DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENV", "test")

from portal.core.database import create_all_tables, init_engine, reset_database  # noqa: E402
from portal.features.clusters.assignment import ClusterAssignmentService  # noqa: E402
from portal.features.health.failures import HealthCheckLog  # noqa: E402
from portal.features.users.status import UserStatusService  # noqa: E402
from portal.tests.fakes import (  # noqa: E402
    FakeAlerts,
    FakeBillingProvider,
    FakeHopsworksClient,
    FakeMailer,
)


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all database tables once per test session."""
    init_engine("sqlite://")
    create_all_tables()
    yield


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate every table so each test starts empty."""
    reset_database()
    yield


@pytest.fixture
def hopsworks():
    return FakeHopsworksClient()


@pytest.fixture
def health_log():
    return HealthCheckLog()


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def alerts():
    return FakeAlerts()


@pytest.fixture
def assignment_service(hopsworks, health_log):
    return ClusterAssignmentService(
        client_factory=hopsworks.factory,
        health_log=health_log,
        sleep=lambda _: None,
        max_attempts=3,
        base_delay=0,
    )


@pytest.fixture
def status_service(hopsworks, health_log):
    return UserStatusService(client_factory=hopsworks.factory, health_log=health_log)
