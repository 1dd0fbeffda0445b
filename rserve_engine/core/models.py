#rserve_engine\core\models.py
"""Core domain models for apps, containers, health and metrics."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union


# ============================================
# ENUMS
# ============================================

class AppStatus(Enum):
    """Coarse app status derived from the live container set."""
    BUILDING = "building"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class MetricsPeriod(Enum):
    """Query windows supported by the metrics surface."""
    ONE_HOUR = "1h"
    SIX_HOURS = "6h"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7d"

    @property
    def seconds(self) -> int:
        return PERIOD_SECONDS[self]


PERIOD_SECONDS: Dict[MetricsPeriod, int] = {
    MetricsPeriod.ONE_HOUR: 60 * 60,
    MetricsPeriod.SIX_HOURS: 6 * 60 * 60,
    MetricsPeriod.ONE_DAY: 24 * 60 * 60,
    MetricsPeriod.SEVEN_DAYS: 7 * 24 * 60 * 60,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# APP SPEC
# ============================================

@dataclass(frozen=True)
class GitSource:
    """Code cloned from a remote repository."""
    repo_url: str
    branch: Optional[str] = None
    type: str = field(default="git", init=False)

    def to_dict(self) -> Dict[str, str]:
        data = {"type": self.type, "repo_url": self.repo_url}
        if self.branch:
            data["branch"] = self.branch
        return data


@dataclass(frozen=True)
class UploadSource:
    """Code uploaded by the user, stored outside the engine."""
    type: str = field(default="upload", init=False)

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type}


CodeSource = Union[GitSource, UploadSource]


@dataclass
class AppSpec:
    """
    Declarative description of one app.

    Owned by the request layer; the engine only reads it. ``slug`` is the
    routing key and must stay stable for the lifetime of a build.
    """
    app_id: str
    slug: str
    r_version: str
    code_source: CodeSource
    entry_script: str = "run_rserve.R"
    packages: List[str] = field(default_factory=list)
    replicas: int = 1
    name: Optional[str] = None


# ============================================
# ORCHESTRATOR RESULTS
# ============================================

@dataclass
class BuildResult:
    """Outcome of an image build."""
    success: bool
    image_name: str
    image_tag: str
    build_log: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def full_image(self) -> str:
        return f"{self.image_name}:{self.image_tag}"


@dataclass
class ContainerInfo:
    """One replica container as seen by the engine."""
    container_id: str
    status: str
    port: int
    health_status: Optional[str] = None  # "healthy", "unhealthy", "starting"
    started_at: Optional[datetime] = None


# ============================================
# HEALTH
# ============================================

@dataclass
class AppHealthSnapshot:
    """Cached health of an app at a point in time."""
    app_id: str
    status: AppStatus
    containers: List[ContainerInfo] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)


# ============================================
# METRICS
# ============================================

@dataclass
class AppMetricsSnapshot:
    """Resource usage of one app (summed across replicas) for one interval."""
    app_id: str
    cpu_percent: float
    memory_mb: float
    memory_limit_mb: float
    network_rx_bytes: int
    network_tx_bytes: int
    requests_per_min: Optional[float]
    containers: int
    collected_at: datetime


@dataclass
class SystemMetricsSnapshot:
    """Resource usage summed across all apps for one interval."""
    cpu_percent: float
    memory_mb: float
    memory_limit_mb: float
    network_rx_bytes: int
    network_tx_bytes: int
    requests_per_min: Optional[float]
    active_containers: int
    active_apps: int
    collected_at: datetime


@dataclass
class StatusPoint:
    """A persisted status observation."""
    app_id: str
    status: AppStatus
    collected_at: datetime


@dataclass
class StatusHistoryEntry:
    status: AppStatus
    timestamp: datetime


@dataclass
class AppStatusHistory:
    app_id: str
    app_name: str
    entries: List[StatusHistoryEntry] = field(default_factory=list)


@dataclass
class MetricStats:
    avg: float
    min: float
    max: float


@dataclass
class AggregatedSnapshot:
    """avg/min/max of every metric within one time bucket."""
    cpu_percent: MetricStats
    memory_mb: MetricStats
    network_rx_bytes: MetricStats
    network_tx_bytes: MetricStats
    requests_per_min: Optional[MetricStats]
    collected_at: datetime


@dataclass
class MetricsView:
    """
    Answer to a tiered metrics query.

    Short windows carry raw ``data_points`` from memory; long windows carry
    ``aggregated`` buckets from the durable store.
    """
    period: MetricsPeriod
    data_points: list = field(default_factory=list)
    aggregated: List[AggregatedSnapshot] = field(default_factory=list)
