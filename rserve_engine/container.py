#rserve_engine\container.py

"""Dependency injection container - wires all services together."""

import logging
from typing import Optional

from rserve_engine.config import settings
from rserve_engine.core.events import LoggingStatusEmitter, MultiStatusEmitter
from rserve_engine.core.repository import MetricsStore
from rserve_engine.infrastructure.postgres.config import settings as db_settings
from rserve_engine.metrics.collector import MetricsCollector
from rserve_engine.spawner.docker_spawner import DockerSpawner
from rserve_engine.spawner.health_monitor import HealthMonitor

logger = logging.getLogger(__name__)


def build_metrics_store() -> Optional[MetricsStore]:
    """Postgres store when the database is configured, otherwise none."""
    if not db_settings.is_configured:
        logger.info("PostgreSQL not configured, metrics are kept in memory only")
        return None

    from rserve_engine.infrastructure.postgres.repository import PostgresMetricsStore
    return PostgresMetricsStore()


# ============================================
# EVENTS
# ============================================

status_emitters = MultiStatusEmitter([
    LoggingStatusEmitter(),
])


# ============================================
# SERVICES
# ============================================

# Orchestrator (docker client is created on first use)
spawner = DockerSpawner(settings=settings)

# Health Monitor
health_monitor = HealthMonitor(
    spawner=spawner,
    interval_seconds=settings.health_interval_seconds,
    on_status_change=status_emitters,
)

# Metrics
metrics_store = build_metrics_store()

metrics_collector = MetricsCollector(
    spawner=spawner,
    health_monitor=health_monitor,
    interval_seconds=settings.metrics_interval_seconds,
    traefik_url=settings.traefik_metrics_url,
    metrics_store=metrics_store,
    max_entries=settings.metrics_buffer_size,
    prune_every_n_cycles=settings.prune_every_n_cycles,
    retention_days=settings.retention_days,
)
