#tests\conftest.py

"""Pytest configuration and fixtures."""

import os
from itertools import count
from unittest.mock import MagicMock

import pytest

from rserve_engine.config import EngineSettings
from rserve_engine.core.models import AppSpec, GitSource, UploadSource
from rserve_engine.spawner.docker_spawner import DockerSpawner
from rserve_engine.spawner.labels import APP_ID_LABEL, MANAGED_LABEL, MANAGED_VALUE


# ============================================
# App specs
# ============================================

@pytest.fixture
def git_spec():
    """App built from a git repository."""
    return AppSpec(
        app_id="app-1",
        slug="my-app",
        r_version="4.4.1",
        code_source=GitSource(repo_url="https://github.com/acme/r-app.git"),
        packages=["jsonlite", "data.table"],
        replicas=2,
        name="My App",
    )


@pytest.fixture
def upload_spec():
    """App built from uploaded code."""
    return AppSpec(
        app_id="app-2",
        slug="uploaded",
        r_version="4.3.2",
        code_source=UploadSource(),
    )


# ============================================
# Docker fakes
# ============================================

_ids = count(1)


@pytest.fixture
def container_info():
    """Factory for raw container listing entries, as returned by the docker API."""

    def make(app_id="app-1", state="running", status="Up 2 minutes (healthy)", container_id=None, created=1700000000):
        cid = container_id or f"{next(_ids):064x}"
        return {
            "Id": cid,
            "State": state,
            "Status": status,
            "Created": created,
            "Labels": {MANAGED_LABEL: MANAGED_VALUE, APP_ID_LABEL: app_id},
        }

    return make


@pytest.fixture
def docker_client():
    """MagicMock docker client with an empty engine."""
    client = MagicMock()
    client.api.containers.return_value = []
    client.api.build.return_value = iter([])
    client.images.list.return_value = []
    return client


@pytest.fixture
def engine_settings():
    return EngineSettings(_env_file=None)


@pytest.fixture
def spawner(docker_client, engine_settings):
    """Spawner wired to the fake docker client."""
    return DockerSpawner(client=docker_client, settings=engine_settings)


def stats_sample(cpu_total, system_cpu, online_cpus=2, mem=64 * 1024 * 1024, limit=512 * 1024 * 1024, networks=None):
    """Docker stats dict with the fields the collector reads."""
    return {
        "cpu_stats": {
            "cpu_usage": {"total_usage": cpu_total},
            "system_cpu_usage": system_cpu,
            "online_cpus": online_cpus,
        },
        "memory_stats": {"usage": mem, "limit": limit},
        "networks": networks if networks is not None else {"eth0": {"rx_bytes": 0, "tx_bytes": 0}},
    }


@pytest.fixture
def make_stats():
    return stats_sample


# ============================================
# PostgreSQL (optional)
# ============================================

@pytest.fixture(scope="session")
def test_database_url():
    """Test database URL; PostgreSQL tests are skipped without it."""
    url = os.environ.get("RSERVE_TEST_DATABASE_URL")
    if not url:
        pytest.skip("RSERVE_TEST_DATABASE_URL not set")
    return url


@pytest.fixture(scope="session")
def test_engine(test_database_url):
    """Create test database engine with fresh tables."""
    from sqlalchemy import create_engine
    from rserve_engine.infrastructure.postgres.database import Base
    import rserve_engine.infrastructure.postgres.models  # noqa: F401  register tables

    engine = create_engine(test_database_url, echo=False)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_session_factory(test_engine):
    """Create session factory for tests."""
    from rserve_engine.infrastructure.postgres.database import get_session_factory
    return get_session_factory(test_engine)


@pytest.fixture
def clean_database(test_engine):
    """Empty the metrics tables after each test."""
    from sqlalchemy import text

    yield
    with test_engine.connect() as conn:
        conn.execute(text(
            "TRUNCATE TABLE app_metrics_points, system_metrics_points, app_status_points RESTART IDENTITY"
        ))
        conn.commit()


@pytest.fixture
def postgres_store(test_session_factory, clean_database):
    """Create store with test database session factory."""
    from rserve_engine.infrastructure.postgres.repository import PostgresMetricsStore
    return PostgresMetricsStore(session_factory=test_session_factory)
