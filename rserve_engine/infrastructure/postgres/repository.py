#rserve_engine\infrastructure\postgres\repository.py

"""PostgreSQL metrics store implementation using SQLAlchemy."""

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Sequence

from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from rserve_engine.core.errors import MetricsStoreError
from rserve_engine.core.models import (
    AggregatedSnapshot,
    AppMetricsSnapshot,
    AppStatus,
    MetricStats,
    StatusPoint,
    SystemMetricsSnapshot,
)
from rserve_engine.core.repository import MetricsStore
from rserve_engine.infrastructure.postgres.database import get_session_factory, session_scope
from rserve_engine.infrastructure.postgres.models import (
    AppMetricsPointORM,
    AppStatusPointORM,
    SystemMetricsPointORM,
)

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def app_orm_to_domain(orm: AppMetricsPointORM) -> AppMetricsSnapshot:
    return AppMetricsSnapshot(
        app_id=orm.app_id,
        cpu_percent=orm.cpu_percent,
        memory_mb=orm.memory_mb,
        memory_limit_mb=orm.memory_limit_mb,
        network_rx_bytes=orm.network_rx_bytes,
        network_tx_bytes=orm.network_tx_bytes,
        requests_per_min=orm.requests_per_min,
        containers=orm.containers,
        collected_at=_as_utc(orm.collected_at),
    )


def app_domain_to_orm(snapshot: AppMetricsSnapshot) -> AppMetricsPointORM:
    return AppMetricsPointORM(
        app_id=snapshot.app_id,
        cpu_percent=snapshot.cpu_percent,
        memory_mb=snapshot.memory_mb,
        memory_limit_mb=snapshot.memory_limit_mb,
        network_rx_bytes=snapshot.network_rx_bytes,
        network_tx_bytes=snapshot.network_tx_bytes,
        requests_per_min=snapshot.requests_per_min,
        containers=snapshot.containers,
        collected_at=snapshot.collected_at,
    )


def system_orm_to_domain(orm: SystemMetricsPointORM) -> SystemMetricsSnapshot:
    return SystemMetricsSnapshot(
        cpu_percent=orm.cpu_percent,
        memory_mb=orm.memory_mb,
        memory_limit_mb=orm.memory_limit_mb,
        network_rx_bytes=orm.network_rx_bytes,
        network_tx_bytes=orm.network_tx_bytes,
        requests_per_min=orm.requests_per_min,
        active_containers=orm.active_containers,
        active_apps=orm.active_apps,
        collected_at=_as_utc(orm.collected_at),
    )


def system_domain_to_orm(snapshot: SystemMetricsSnapshot) -> SystemMetricsPointORM:
    return SystemMetricsPointORM(
        cpu_percent=snapshot.cpu_percent,
        memory_mb=snapshot.memory_mb,
        memory_limit_mb=snapshot.memory_limit_mb,
        network_rx_bytes=snapshot.network_rx_bytes,
        network_tx_bytes=snapshot.network_tx_bytes,
        requests_per_min=snapshot.requests_per_min,
        active_containers=snapshot.active_containers,
        active_apps=snapshot.active_apps,
        collected_at=snapshot.collected_at,
    )


def status_orm_to_domain(orm: AppStatusPointORM) -> StatusPoint:
    return StatusPoint(
        app_id=orm.app_id,
        status=AppStatus(orm.status),
        collected_at=_as_utc(orm.collected_at),
    )


def aggregated_row_to_domain(row: Mapping[str, Any]) -> AggregatedSnapshot:
    """Map one bucket row of the aggregate queries."""

    def stats(prefix: str) -> MetricStats:
        return MetricStats(
            avg=float(row[f"{prefix}_avg"] or 0),
            min=float(row[f"{prefix}_min"] or 0),
            max=float(row[f"{prefix}_max"] or 0),
        )

    requests = None
    if row["req_avg"] is not None:
        requests = MetricStats(
            avg=float(row["req_avg"]),
            min=float(row["req_min"]),
            max=float(row["req_max"]),
        )

    return AggregatedSnapshot(
        cpu_percent=stats("cpu"),
        memory_mb=stats("mem"),
        network_rx_bytes=stats("rx"),
        network_tx_bytes=stats("tx"),
        requests_per_min=requests,
        collected_at=_as_utc(row["bucket"]),
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# Aggregate SQL
# ============================================

# Bucket = start of the hour + floor(minute / width) * width minutes
_AGGREGATE_COLUMNS = """
    date_trunc('hour', collected_at) +
        (floor(EXTRACT(minute FROM collected_at) / :bucket_minutes) * :bucket_minutes)
        * interval '1 minute' AS bucket,
    AVG(cpu_percent) AS cpu_avg,
    MIN(cpu_percent) AS cpu_min,
    MAX(cpu_percent) AS cpu_max,
    AVG(memory_mb) AS mem_avg,
    MIN(memory_mb) AS mem_min,
    MAX(memory_mb) AS mem_max,
    AVG(network_rx_bytes::float8) AS rx_avg,
    MIN(network_rx_bytes) AS rx_min,
    MAX(network_rx_bytes) AS rx_max,
    AVG(network_tx_bytes::float8) AS tx_avg,
    MIN(network_tx_bytes) AS tx_min,
    MAX(network_tx_bytes) AS tx_max,
    AVG(requests_per_min) AS req_avg,
    MIN(requests_per_min) AS req_min,
    MAX(requests_per_min) AS req_max
"""

APP_AGGREGATE_SQL = text(f"""
    SELECT {_AGGREGATE_COLUMNS}
    FROM app_metrics_points
    WHERE app_id = :app_id
      AND collected_at >= :since
    GROUP BY bucket
    ORDER BY bucket
""")

SYSTEM_AGGREGATE_SQL = text(f"""
    SELECT {_AGGREGATE_COLUMNS}
    FROM system_metrics_points
    WHERE collected_at >= :since
    GROUP BY bucket
    ORDER BY bucket
""")


# ============================================
# Repository Implementation
# ============================================

class PostgresMetricsStore(MetricsStore):
    """PostgreSQL implementation using SQLAlchemy with dependency injection."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Initialize store with optional session factory.

        Args:
            session_factory: SQLAlchemy session factory. If None, uses the default production factory.
        """
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        return self._session_factory()

    def _add_all(self, rows: list, what: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add_all(rows)
        except SQLAlchemyError as e:
            raise MetricsStoreError(f"Failed to insert {what}: {e}") from e

    # -------------------------
    # WRITE
    # -------------------------

    def insert_app_metrics(self, snapshots: Sequence[AppMetricsSnapshot]) -> None:
        if not snapshots:
            return
        self._add_all([app_domain_to_orm(s) for s in snapshots], "app metrics")

    def insert_system_metrics(self, snapshot: SystemMetricsSnapshot) -> None:
        self._add_all([system_domain_to_orm(snapshot)], "system metrics")

    def insert_status_points(self, points: Sequence[StatusPoint]) -> None:
        if not points:
            return
        rows = [
            AppStatusPointORM(app_id=p.app_id, status=p.status.value, collected_at=p.collected_at)
            for p in points
        ]
        self._add_all(rows, "status points")

    # -------------------------
    # RAW QUERIES
    # -------------------------

    def _select(self, stmt) -> list:
        session = self._get_session()
        try:
            return list(session.scalars(stmt))
        except SQLAlchemyError as e:
            raise MetricsStoreError(f"Metrics query failed: {e}") from e
        finally:
            session.close()

    def query_app_metrics(self, app_id: str, since: datetime) -> List[AppMetricsSnapshot]:
        stmt = (
            select(AppMetricsPointORM)
            .where(AppMetricsPointORM.app_id == app_id)
            .where(AppMetricsPointORM.collected_at >= since)
            .order_by(AppMetricsPointORM.collected_at)
        )
        return [app_orm_to_domain(r) for r in self._select(stmt)]

    def query_all_app_metrics(self, since: datetime) -> List[AppMetricsSnapshot]:
        stmt = (
            select(AppMetricsPointORM)
            .where(AppMetricsPointORM.collected_at >= since)
            .order_by(AppMetricsPointORM.collected_at)
        )
        return [app_orm_to_domain(r) for r in self._select(stmt)]

    def query_system_metrics(self, since: datetime) -> List[SystemMetricsSnapshot]:
        stmt = (
            select(SystemMetricsPointORM)
            .where(SystemMetricsPointORM.collected_at >= since)
            .order_by(SystemMetricsPointORM.collected_at)
        )
        return [system_orm_to_domain(r) for r in self._select(stmt)]

    def query_status_points(self, since: datetime) -> List[StatusPoint]:
        stmt = (
            select(AppStatusPointORM)
            .where(AppStatusPointORM.collected_at >= since)
            .order_by(AppStatusPointORM.collected_at)
        )
        return [status_orm_to_domain(r) for r in self._select(stmt)]

    def query_app_status_points(self, app_id: str, since: datetime) -> List[StatusPoint]:
        stmt = (
            select(AppStatusPointORM)
            .where(AppStatusPointORM.app_id == app_id)
            .where(AppStatusPointORM.collected_at >= since)
            .order_by(AppStatusPointORM.collected_at)
        )
        return [status_orm_to_domain(r) for r in self._select(stmt)]

    # -------------------------
    # AGGREGATES
    # -------------------------

    def _aggregate(self, stmt, params: dict) -> List[AggregatedSnapshot]:
        session = self._get_session()
        try:
            rows = session.execute(stmt, params).mappings().all()
            return [aggregated_row_to_domain(r) for r in rows]
        except SQLAlchemyError as e:
            raise MetricsStoreError(f"Aggregate query failed: {e}") from e
        finally:
            session.close()

    def query_app_metrics_aggregated(
        self,
        app_id: str,
        since: datetime,
        bucket_minutes: int,
    ) -> List[AggregatedSnapshot]:
        return self._aggregate(
            APP_AGGREGATE_SQL,
            {"app_id": app_id, "since": since, "bucket_minutes": bucket_minutes},
        )

    def query_system_metrics_aggregated(
        self,
        since: datetime,
        bucket_minutes: int,
    ) -> List[AggregatedSnapshot]:
        return self._aggregate(
            SYSTEM_AGGREGATE_SQL,
            {"since": since, "bucket_minutes": bucket_minutes},
        )

    # -------------------------
    # RETENTION
    # -------------------------

    def prune_older_than(self, cutoff: datetime) -> None:
        deleted = 0
        try:
            with session_scope(self._session_factory) as session:
                for model in (AppMetricsPointORM, SystemMetricsPointORM, AppStatusPointORM):
                    result = session.execute(delete(model).where(model.collected_at < cutoff))
                    deleted += result.rowcount or 0
        except SQLAlchemyError as e:
            raise MetricsStoreError(f"Failed to prune metrics: {e}") from e

        if deleted:
            logger.info(f"[postgres] pruned {deleted} metrics rows older than {cutoff.isoformat()}")
