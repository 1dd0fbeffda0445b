# rserve_engine/infrastructure/memory/repository.py

from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence

from rserve_engine.core.models import (
    AggregatedSnapshot,
    AppMetricsSnapshot,
    MetricStats,
    StatusPoint,
    SystemMetricsSnapshot,
)
from rserve_engine.core.repository import MetricsStore


def bucket_start(moment: datetime, bucket_minutes: int) -> datetime:
    """Start of the hour plus the whole bucket the minute falls in."""
    hour = moment.replace(minute=0, second=0, microsecond=0)
    return hour + timedelta(minutes=(moment.minute // bucket_minutes) * bucket_minutes)


def _stats(values: List[float]) -> MetricStats:
    return MetricStats(avg=sum(values) / len(values), min=min(values), max=max(values))


def aggregate_points(points: Sequence, bucket_minutes: int) -> List[AggregatedSnapshot]:
    """Group snapshots into buckets and reduce each metric to avg/min/max."""
    buckets: Dict[datetime, list] = {}
    for p in points:
        buckets.setdefault(bucket_start(p.collected_at, bucket_minutes), []).append(p)

    results = []
    for start in sorted(buckets):
        group = buckets[start]
        requests = [p.requests_per_min for p in group if p.requests_per_min is not None]
        results.append(AggregatedSnapshot(
            cpu_percent=_stats([p.cpu_percent for p in group]),
            memory_mb=_stats([p.memory_mb for p in group]),
            network_rx_bytes=_stats([float(p.network_rx_bytes) for p in group]),
            network_tx_bytes=_stats([float(p.network_tx_bytes) for p in group]),
            requests_per_min=_stats(requests) if requests else None,
            collected_at=start,
        ))
    return results


class InMemoryMetricsStore(MetricsStore):
    """Process-local metrics store for development and tests."""

    def __init__(self):
        self._app_points: List[AppMetricsSnapshot] = []
        self._system_points: List[SystemMetricsSnapshot] = []
        self._status_points: List[StatusPoint] = []
        self._lock = Lock()

    def insert_app_metrics(self, snapshots: Sequence[AppMetricsSnapshot]) -> None:
        with self._lock:
            self._app_points.extend(snapshots)

    def insert_system_metrics(self, snapshot: SystemMetricsSnapshot) -> None:
        with self._lock:
            self._system_points.append(snapshot)

    def insert_status_points(self, points: Sequence[StatusPoint]) -> None:
        with self._lock:
            self._status_points.extend(points)

    def _since(self, rows: list, since: datetime, match: Optional[Callable] = None) -> list:
        with self._lock:
            selected = [
                r for r in rows
                if r.collected_at >= since and (match is None or match(r))
            ]
        return sorted(selected, key=lambda r: r.collected_at)

    def query_app_metrics(self, app_id: str, since: datetime) -> List[AppMetricsSnapshot]:
        return self._since(self._app_points, since, lambda r: r.app_id == app_id)

    def query_all_app_metrics(self, since: datetime) -> List[AppMetricsSnapshot]:
        return self._since(self._app_points, since)

    def query_system_metrics(self, since: datetime) -> List[SystemMetricsSnapshot]:
        return self._since(self._system_points, since)

    def query_status_points(self, since: datetime) -> List[StatusPoint]:
        return self._since(self._status_points, since)

    def query_app_status_points(self, app_id: str, since: datetime) -> List[StatusPoint]:
        return self._since(self._status_points, since, lambda r: r.app_id == app_id)

    def query_app_metrics_aggregated(
        self,
        app_id: str,
        since: datetime,
        bucket_minutes: int,
    ) -> List[AggregatedSnapshot]:
        return aggregate_points(self.query_app_metrics(app_id, since), bucket_minutes)

    def query_system_metrics_aggregated(
        self,
        since: datetime,
        bucket_minutes: int,
    ) -> List[AggregatedSnapshot]:
        return aggregate_points(self.query_system_metrics(since), bucket_minutes)

    def prune_older_than(self, cutoff: datetime) -> None:
        with self._lock:
            self._app_points = [p for p in self._app_points if p.collected_at >= cutoff]
            self._system_points = [p for p in self._system_points if p.collected_at >= cutoff]
            self._status_points = [p for p in self._status_points if p.collected_at >= cutoff]
