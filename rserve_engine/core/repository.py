# rserve_engine/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Sequence

from rserve_engine.core.models import (
    AggregatedSnapshot,
    AppMetricsSnapshot,
    StatusPoint,
    SystemMetricsSnapshot,
)


class MetricsStore(ABC):
    """
    Persistence contract for the metrics time series.

    The collector treats every call as best-effort: it runs them off the
    sampling thread and logs failures instead of propagating them.
    """

    # -------------------------
    # WRITE
    # -------------------------

    @abstractmethod
    def insert_app_metrics(self, snapshots: Sequence[AppMetricsSnapshot]) -> None:
        """Persist per-app snapshots from one cycle."""
        raise NotImplementedError

    @abstractmethod
    def insert_system_metrics(self, snapshot: SystemMetricsSnapshot) -> None:
        """Persist the system-wide snapshot from one cycle."""
        raise NotImplementedError

    @abstractmethod
    def insert_status_points(self, points: Sequence[StatusPoint]) -> None:
        """Persist status observations from one cycle."""
        raise NotImplementedError

    # -------------------------
    # RAW QUERIES
    # -------------------------

    @abstractmethod
    def query_app_metrics(self, app_id: str, since: datetime) -> List[AppMetricsSnapshot]:
        """Snapshots for one app collected at or after ``since``, oldest first."""
        raise NotImplementedError

    @abstractmethod
    def query_all_app_metrics(self, since: datetime) -> List[AppMetricsSnapshot]:
        """Snapshots for every app collected at or after ``since``, oldest first."""
        raise NotImplementedError

    @abstractmethod
    def query_system_metrics(self, since: datetime) -> List[SystemMetricsSnapshot]:
        raise NotImplementedError

    @abstractmethod
    def query_status_points(self, since: datetime) -> List[StatusPoint]:
        raise NotImplementedError

    @abstractmethod
    def query_app_status_points(self, app_id: str, since: datetime) -> List[StatusPoint]:
        raise NotImplementedError

    # -------------------------
    # AGGREGATES
    # -------------------------

    @abstractmethod
    def query_app_metrics_aggregated(
        self,
        app_id: str,
        since: datetime,
        bucket_minutes: int,
    ) -> List[AggregatedSnapshot]:
        """avg/min/max per ``bucket_minutes`` bucket, oldest bucket first."""
        raise NotImplementedError

    @abstractmethod
    def query_system_metrics_aggregated(
        self,
        since: datetime,
        bucket_minutes: int,
    ) -> List[AggregatedSnapshot]:
        raise NotImplementedError

    # -------------------------
    # RETENTION
    # -------------------------

    @abstractmethod
    def prune_older_than(self, cutoff: datetime) -> None:
        """Delete every record collected before ``cutoff``."""
        raise NotImplementedError
