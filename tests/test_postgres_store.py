"""Test PostgreSQL metrics store implementation."""

import pytest
from datetime import datetime, timedelta, timezone

from rserve_engine.core.models import AppMetricsSnapshot, AppStatus, StatusPoint, SystemMetricsSnapshot, utcnow
from rserve_engine.infrastructure.postgres.repository import (
    aggregated_row_to_domain,
    app_domain_to_orm,
    app_orm_to_domain,
)


def app_snapshot(app_id="app-1", at=None, cpu=1.5, req=None):
    return AppMetricsSnapshot(
        app_id=app_id,
        cpu_percent=cpu,
        memory_mb=128.0,
        memory_limit_mb=1024.0,
        network_rx_bytes=1000,
        network_tx_bytes=2000,
        requests_per_min=req,
        containers=2,
        collected_at=at or utcnow(),
    )


def system_snapshot(at=None, cpu=3.0):
    return SystemMetricsSnapshot(
        cpu_percent=cpu,
        memory_mb=256.0,
        memory_limit_mb=2048.0,
        network_rx_bytes=1000,
        network_tx_bytes=2000,
        requests_per_min=None,
        active_containers=4,
        active_apps=2,
        collected_at=at or utcnow(),
    )


# ============================================
# Mapping (no database needed)
# ============================================

class TestMapping:
    """Test ORM and row mapping."""

    def test_app_round_trip(self):
        snapshot = app_snapshot(req=12.5)
        assert app_orm_to_domain(app_domain_to_orm(snapshot)) == snapshot

    def test_naive_timestamps_read_as_utc(self):
        orm = app_domain_to_orm(app_snapshot())
        orm.collected_at = datetime(2024, 5, 1, 10, 0)

        assert app_orm_to_domain(orm).collected_at.tzinfo == timezone.utc

    def test_aggregated_row_without_requests(self):
        row = {
            "bucket": datetime(2024, 5, 1, 10, 15),
            "cpu_avg": 2.0, "cpu_min": 1.0, "cpu_max": 3.0,
            "mem_avg": 10.0, "mem_min": 10.0, "mem_max": 10.0,
            "rx_avg": 5, "rx_min": 5, "rx_max": 5,
            "tx_avg": 6, "tx_min": 6, "tx_max": 6,
            "req_avg": None, "req_min": None, "req_max": None,
        }

        snapshot = aggregated_row_to_domain(row)

        assert snapshot.cpu_percent.avg == 2.0
        assert snapshot.network_tx_bytes.max == 6.0
        assert snapshot.requests_per_min is None
        assert snapshot.collected_at == datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc)


# ============================================
# Store (needs RSERVE_TEST_DATABASE_URL)
# ============================================

class TestPostgresMetricsStore:
    """Test store operations against a real database."""

    def test_insert_and_query_app_metrics(self, postgres_store):
        now = utcnow()
        postgres_store.insert_app_metrics([
            app_snapshot("app-1", now - timedelta(minutes=2)),
            app_snapshot("app-2", now - timedelta(minutes=1)),
            app_snapshot("app-1", now - timedelta(hours=3)),
        ])

        rows = postgres_store.query_app_metrics("app-1", now - timedelta(hours=1))

        assert len(rows) == 1
        assert rows[0].containers == 2
        assert rows[0].requests_per_min is None
        assert len(postgres_store.query_all_app_metrics(now - timedelta(hours=1))) == 2

    def test_insert_empty_batch_is_noop(self, postgres_store):
        postgres_store.insert_app_metrics([])
        postgres_store.insert_status_points([])

        assert postgres_store.query_all_app_metrics(utcnow() - timedelta(days=1)) == []

    def test_system_metrics_in_time_order(self, postgres_store):
        now = utcnow()
        postgres_store.insert_system_metrics(system_snapshot(now - timedelta(minutes=1), cpu=2.0))
        postgres_store.insert_system_metrics(system_snapshot(now - timedelta(minutes=5), cpu=1.0))

        rows = postgres_store.query_system_metrics(now - timedelta(hours=1))

        assert [r.cpu_percent for r in rows] == [1.0, 2.0]

    def test_status_points(self, postgres_store):
        now = utcnow()
        postgres_store.insert_status_points([
            StatusPoint(app_id="app-1", status=AppStatus.RUNNING, collected_at=now),
            StatusPoint(app_id="app-2", status=AppStatus.ERROR, collected_at=now),
        ])

        assert len(postgres_store.query_status_points(now - timedelta(minutes=1))) == 2
        [point] = postgres_store.query_app_status_points("app-2", now - timedelta(minutes=1))
        assert point.status == AppStatus.ERROR

    def test_aggregated_buckets(self, postgres_store):
        hour = utcnow().replace(minute=0, second=0, microsecond=0) - timedelta(hours=2)
        postgres_store.insert_system_metrics(system_snapshot(hour + timedelta(minutes=1), cpu=2.0))
        postgres_store.insert_system_metrics(system_snapshot(hour + timedelta(minutes=3), cpu=4.0))
        postgres_store.insert_system_metrics(system_snapshot(hour + timedelta(minutes=20), cpu=9.0))

        buckets = postgres_store.query_system_metrics_aggregated(hour - timedelta(minutes=1), 15)

        assert len(buckets) == 2
        assert buckets[0].cpu_percent.avg == pytest.approx(3.0)
        assert buckets[0].cpu_percent.min == pytest.approx(2.0)
        assert buckets[1].cpu_percent.max == pytest.approx(9.0)
        assert buckets[0].requests_per_min is None

    def test_app_aggregated_keeps_request_stats(self, postgres_store):
        hour = utcnow().replace(minute=0, second=0, microsecond=0) - timedelta(hours=2)
        postgres_store.insert_app_metrics([
            app_snapshot("app-1", hour + timedelta(minutes=1), req=10.0),
            app_snapshot("app-1", hour + timedelta(minutes=2), req=20.0),
            app_snapshot("app-2", hour + timedelta(minutes=2), req=99.0),
        ])

        [bucket] = postgres_store.query_app_metrics_aggregated("app-1", hour - timedelta(minutes=1), 60)

        assert bucket.requests_per_min.avg == pytest.approx(15.0)
        assert bucket.requests_per_min.max == pytest.approx(20.0)

    def test_prune_older_than(self, postgres_store):
        now = utcnow()
        old = now - timedelta(days=8)
        postgres_store.insert_app_metrics([app_snapshot(at=old), app_snapshot(at=now)])
        postgres_store.insert_system_metrics(system_snapshot(old))
        postgres_store.insert_status_points([StatusPoint(app_id="app-1", status=AppStatus.STOPPED, collected_at=old)])

        postgres_store.prune_older_than(now - timedelta(days=7))

        since = now - timedelta(days=30)
        assert len(postgres_store.query_all_app_metrics(since)) == 1
        assert postgres_store.query_system_metrics(since) == []
        assert postgres_store.query_status_points(since) == []
