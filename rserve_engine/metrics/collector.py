# rserve_engine/metrics/collector.py
"""
Metrics Collector - samples container usage and keeps tiered time series.

Storage is tiered:
- in-memory ring buffers answer the 1h window (sized to one hour of samples, 360 at 10s)
- the durable store answers longer windows, raw or bucketed
- durable rows older than the retention horizon are pruned periodically

Persistence runs on its own worker thread, so a slow or broken store never
delays the next sample.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from rserve_engine.core.models import (
    AggregatedSnapshot,
    AppMetricsSnapshot,
    AppStatusHistory,
    MetricsPeriod,
    MetricsView,
    StatusHistoryEntry,
    StatusPoint,
    SystemMetricsSnapshot,
    utcnow,
)
from rserve_engine.core.repository import MetricsStore
from rserve_engine.core.state_machine import RUNNING_STATE
from rserve_engine.metrics.ring_buffer import RingBuffer
from rserve_engine.metrics.stats import ContainerUsage, SampleTracker, round2
from rserve_engine.metrics.traefik_scraper import scrape_traefik_metrics
from rserve_engine.spawner.labels import APP_ID_LABEL, SLUG_LABEL

logger = logging.getLogger(__name__)

# ============================================
# Constants
# ============================================

DEFAULT_INTERVAL_SECONDS = 10.0
# In-memory window covered by the ring buffers
MEMORY_WINDOW_SECONDS = 60 * 60
PRUNE_EVERY_N_CYCLES = 6
RETENTION_DAYS = 7
MAX_STATS_WORKERS = 8
STALE_SAMPLE_CYCLES = 6

# Windows served from the durable store and their bucket widths
BUCKET_MINUTES: Dict[MetricsPeriod, int] = {
    MetricsPeriod.SIX_HOURS: 5,
    MetricsPeriod.ONE_DAY: 15,
    MetricsPeriod.SEVEN_DAYS: 60,
}

PeriodLike = Union[MetricsPeriod, str]


@dataclass
class _Totals:
    """Running sums for one app or the whole system within a cycle."""
    cpu: float = 0.0
    mem: float = 0.0
    mem_limit: float = 0.0
    rx: int = 0
    tx: int = 0
    containers: int = 0

    def add(self, usage: ContainerUsage) -> None:
        self.cpu += usage.cpu_percent
        self.mem += usage.memory_mb
        self.mem_limit += usage.memory_limit_mb
        self.rx += usage.network_rx_bytes
        self.tx += usage.network_tx_bytes
        self.containers += 1


def _since(period: PeriodLike) -> datetime:
    return utcnow() - timedelta(seconds=MetricsPeriod(period).seconds)


class MetricsCollector:
    """
    Periodic sampler of container usage, request rates and app status.

    Cycles never overlap: a cycle that starts while another is still
    running is skipped.
    """

    def __init__(
        self,
        spawner,
        health_monitor,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        traefik_url: Optional[str] = None,
        metrics_store: Optional[MetricsStore] = None,
        max_entries: Optional[int] = None,
        prune_every_n_cycles: int = PRUNE_EVERY_N_CYCLES,
        retention_days: int = RETENTION_DAYS,
    ):
        """
        Initialize collector.

        Args:
            spawner: DockerSpawner used for listings and stats samples
            health_monitor: HealthMonitor whose snapshots feed status history
            interval_seconds: Time between cycles
            traefik_url: Traefik Prometheus endpoint (None disables request rates)
            metrics_store: Durable store (None keeps metrics in memory only)
            max_entries: Capacity of every ring buffer (None sizes it to one hour of samples)
            prune_every_n_cycles: How often old durable rows are pruned
            retention_days: Age after which durable rows are pruned
        """
        self._spawner = spawner
        self._health_monitor = health_monitor
        self.interval_seconds = interval_seconds
        self._traefik_url = traefik_url
        self._store = metrics_store
        if max_entries is None:
            max_entries = max(1, round(MEMORY_WINDOW_SECONDS / interval_seconds))
        self.max_entries = max_entries
        self.prune_every_n_cycles = prune_every_n_cycles
        self.retention_days = retention_days

        self._app_metrics: Dict[str, RingBuffer[AppMetricsSnapshot]] = {}
        self._system_metrics: RingBuffer[SystemMetricsSnapshot] = RingBuffer(max_entries)
        self._status_history: Dict[str, RingBuffer[StatusHistoryEntry]] = {}
        self._buffers_lock = threading.Lock()

        self._samples = SampleTracker(max_idle_cycles=STALE_SAMPLE_CYCLES)
        self._app_names: Dict[str, str] = {}
        self._slug_to_app_id: Dict[str, str] = {}
        self._prev_request_counts: Dict[str, float] = {}

        self._cycle_count = 0
        self._cycle_lock = threading.Lock()

        self._persist_pool: Optional[ThreadPoolExecutor] = None
        self._ensure_persist_pool()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # -------------------------
    # Lifecycle
    # -------------------------

    def start(self) -> None:
        """Start collecting. Collects once immediately. No-op when already running."""
        if self.is_running():
            return

        self._ensure_persist_pool()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name="metrics-collector",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"📊 Metrics collector started (interval {self.interval_seconds}s)")

    def stop(self) -> None:
        """Stop scheduling cycles. An in-flight cycle is allowed to finish."""
        if not self.is_running():
            return
        self._stop_event.set()
        self._thread = None
        logger.info("Metrics collector stopped")

    def is_running(self) -> bool:
        return self._thread is not None and not self._stop_event.is_set()

    def close(self) -> None:
        """Stop and wait for queued persistence work. A later ``start()`` resumes persisting."""
        self.stop()
        if self._persist_pool is not None:
            self._persist_pool.shutdown(wait=True)
            self._persist_pool = None

    def _ensure_persist_pool(self) -> None:
        if self._store is not None and self._persist_pool is None:
            self._persist_pool = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="metrics-persist",
            )

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.collect_once()
            except Exception as e:
                logger.error(f"Error in metrics cycle: {e}", exc_info=True)

            if stop_event.wait(self.interval_seconds):
                break

    # -------------------------
    # Registry
    # -------------------------

    def set_app_name(self, app_id: str, name: str) -> None:
        """Display name used in status-history results."""
        self._app_names[app_id] = name

    def set_app_slug(self, app_id: str, slug: str) -> None:
        """Map a Traefik service slug back to its app."""
        self._slug_to_app_id[slug] = app_id

    def set_traefik_url(self, url: Optional[str]) -> None:
        """Change the request-counter source. The next scrape only sets a baseline."""
        self._traefik_url = url
        self._prev_request_counts = {}

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # ============================================
    # Collection
    # ============================================

    def collect_once(self) -> Optional[SystemMetricsSnapshot]:
        """
        Run one collection cycle.

        Returns the system snapshot, or None when another cycle was
        already running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous metrics cycle still running, skipping this one")
            return None
        try:
            return self._collect()
        finally:
            self._cycle_lock.release()

    def _collect(self) -> SystemMetricsSnapshot:
        now = utcnow()
        self._cycle_count += 1
        cycle = self._cycle_count

        # 1. Status history from the health monitor
        status_points = self._record_status_history(now)

        # 2. Container usage
        per_app: Dict[str, _Totals] = {}
        system = _Totals()
        active_apps = set()

        try:
            running = []
            for info in self._spawner.list_managed_containers():
                if info.get("State") != RUNNING_STATE:
                    continue
                labels = info.get("Labels") or {}
                app_id = labels.get(APP_ID_LABEL)
                if not app_id:
                    continue
                active_apps.add(app_id)
                slug = labels.get(SLUG_LABEL)
                if slug:
                    self._slug_to_app_id[slug] = app_id
                running.append((info["Id"], app_id))

            for (container_id, app_id), usage in zip(running, self._sample_all(running, cycle)):
                if usage is None:
                    continue
                per_app.setdefault(app_id, _Totals()).add(usage)
                system.add(usage)
        except Exception as e:
            logger.warning(f"Container stats unavailable, recording zeros: {e}")

        self._samples.evict_stale(cycle)

        # 3. Request rates
        app_rates, total_rate = self._compute_request_rates()

        # 4. Ring buffers
        app_snapshots = []
        for app_id, totals in per_app.items():
            snapshot = AppMetricsSnapshot(
                app_id=app_id,
                cpu_percent=round2(totals.cpu),
                memory_mb=round2(totals.mem),
                memory_limit_mb=round2(totals.mem_limit),
                network_rx_bytes=totals.rx,
                network_tx_bytes=totals.tx,
                requests_per_min=app_rates.get(app_id),
                containers=totals.containers,
                collected_at=now,
            )
            self._app_buffer(app_id).push(snapshot)
            app_snapshots.append(snapshot)

        system_snapshot = SystemMetricsSnapshot(
            cpu_percent=round2(system.cpu),
            memory_mb=round2(system.mem),
            memory_limit_mb=round2(system.mem_limit),
            network_rx_bytes=system.rx,
            network_tx_bytes=system.tx,
            requests_per_min=total_rate,
            active_containers=system.containers,
            active_apps=len(active_apps),
            collected_at=now,
        )
        self._system_metrics.push(system_snapshot)

        # 5. Persist (fire-and-forget)
        if self._persist_pool is not None:
            self._persist_pool.submit(self._persist, app_snapshots, system_snapshot, status_points)

            # 6. Retention
            if cycle % self.prune_every_n_cycles == 0:
                cutoff = now - timedelta(days=self.retention_days)
                self._persist_pool.submit(self._prune, cutoff)

        logger.debug(
            f"Metrics cycle {cycle}: {system.containers} container(s), "
            f"{len(active_apps)} app(s), cpu {system_snapshot.cpu_percent}%"
        )
        return system_snapshot

    def _record_status_history(self, now: datetime) -> List[StatusPoint]:
        points = []
        for snap in self._health_monitor.get_all_snapshots():
            self._status_buffer(snap.app_id).push(StatusHistoryEntry(status=snap.status, timestamp=now))
            points.append(StatusPoint(app_id=snap.app_id, status=snap.status, collected_at=now))
        return points

    def _sample_all(self, running: List[Tuple[str, str]], cycle: int) -> List[Optional[ContainerUsage]]:
        if not running:
            return []
        workers = min(MAX_STATS_WORKERS, len(running))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="metrics-stats") as pool:
            return list(pool.map(lambda item: self._sample_container(item[0], cycle), running))

    def _sample_container(self, container_id: str, cycle: int) -> Optional[ContainerUsage]:
        try:
            stats = self._spawner.get_container_stats(container_id)
            return self._samples.compute(container_id, stats, cycle)
        except Exception as e:
            # stopped between the listing and the stats call
            logger.debug(f"Skipping container {container_id[:12]}: {e}")
            return None

    def _compute_request_rates(self) -> Tuple[Dict[str, float], Optional[float]]:
        """Per-app and total requests/min since the previous scrape."""
        if not self._traefik_url:
            return {}, None

        counts = scrape_traefik_metrics(self._traefik_url)
        if not counts:
            # the next delta would span more than one interval
            self._prev_request_counts = {}
            return {}, None

        minutes = self.interval_seconds / 60.0
        had_previous = bool(self._prev_request_counts)

        app_rates: Dict[str, float] = {}
        total = 0.0
        for slug, current in counts.items():
            previous = self._prev_request_counts.get(slug)
            if previous is None:
                continue
            rate = round2(max(0.0, current - previous) / minutes)
            app_id = self._slug_to_app_id.get(slug)
            if app_id:
                app_rates[app_id] = round2(app_rates.get(app_id, 0.0) + rate)
                total += rate

        self._prev_request_counts = counts

        if not had_previous:
            return {}, None
        return app_rates, round2(total)

    # -------------------------
    # Persistence
    # -------------------------

    def _persist(
        self,
        app_snapshots: List[AppMetricsSnapshot],
        system_snapshot: SystemMetricsSnapshot,
        status_points: List[StatusPoint],
    ) -> None:
        writes: List[Tuple[str, Callable[[], None]]] = [
            ("system metrics", lambda: self._store.insert_system_metrics(system_snapshot)),
        ]
        if app_snapshots:
            writes.append(("app metrics", lambda: self._store.insert_app_metrics(app_snapshots)))
        if status_points:
            writes.append(("status points", lambda: self._store.insert_status_points(status_points)))

        for what, write in writes:
            try:
                write()
            except Exception as e:
                logger.warning(f"Failed to persist {what}: {e}")

    def _prune(self, cutoff: datetime) -> None:
        try:
            self._store.prune_older_than(cutoff)
        except Exception as e:
            logger.warning(f"Failed to prune metrics older than {cutoff.isoformat()}: {e}")

    # -------------------------
    # Buffers
    # -------------------------

    def _app_buffer(self, app_id: str) -> RingBuffer[AppMetricsSnapshot]:
        with self._buffers_lock:
            if app_id not in self._app_metrics:
                self._app_metrics[app_id] = RingBuffer(self.max_entries)
            return self._app_metrics[app_id]

    def _status_buffer(self, app_id: str) -> RingBuffer[StatusHistoryEntry]:
        with self._buffers_lock:
            if app_id not in self._status_history:
                self._status_history[app_id] = RingBuffer(self.max_entries)
            return self._status_history[app_id]

    def hydrate_from_db(self) -> None:
        """Backfill the in-memory buffers with the last hour from the durable store."""
        if self._store is None:
            return

        since = _since(MetricsPeriod.ONE_HOUR)
        try:
            system_rows = self._store.query_system_metrics(since)
            app_rows = self._store.query_all_app_metrics(since)
            status_rows = self._store.query_status_points(since)
        except Exception as e:
            logger.warning(f"Could not hydrate metrics from store: {e}")
            return

        self._system_metrics.extend(system_rows)
        for row in app_rows:
            self._app_buffer(row.app_id).push(row)
        for point in status_rows:
            self._status_buffer(point.app_id).push(
                StatusHistoryEntry(status=point.status, timestamp=point.collected_at)
            )

        logger.info(
            f"Hydrated {len(system_rows)} system, {len(app_rows)} app and "
            f"{len(status_rows)} status rows from store"
        )

    # ============================================
    # Queries - memory
    # ============================================

    def get_system_metrics(self, period: PeriodLike = MetricsPeriod.ONE_HOUR) -> List[SystemMetricsSnapshot]:
        cutoff = _since(period)
        return self._system_metrics.filter(lambda s: s.collected_at >= cutoff)

    def get_app_metrics(self, app_id: str, period: PeriodLike = MetricsPeriod.ONE_HOUR) -> List[AppMetricsSnapshot]:
        with self._buffers_lock:
            buffer = self._app_metrics.get(app_id)
        if buffer is None:
            return []
        cutoff = _since(period)
        return buffer.filter(lambda s: s.collected_at >= cutoff)

    def get_status_history(self, period: PeriodLike = MetricsPeriod.ONE_HOUR) -> List[AppStatusHistory]:
        cutoff = _since(period)
        with self._buffers_lock:
            buffers = list(self._status_history.items())
        return [
            AppStatusHistory(
                app_id=app_id,
                app_name=self._app_names.get(app_id, app_id),
                entries=buffer.filter(lambda e: e.timestamp >= cutoff),
            )
            for app_id, buffer in buffers
        ]

    def get_app_status_history(
        self,
        app_id: str,
        period: PeriodLike = MetricsPeriod.ONE_HOUR,
    ) -> List[StatusHistoryEntry]:
        with self._buffers_lock:
            buffer = self._status_history.get(app_id)
        if buffer is None:
            return []
        cutoff = _since(period)
        return buffer.filter(lambda e: e.timestamp >= cutoff)

    # ============================================
    # Queries - durable store
    # ============================================

    def _query(self, what: str, fn: Callable[[], list]) -> list:
        if self._store is None:
            return []
        try:
            return fn()
        except Exception as e:
            logger.error(f"Metrics store query for {what} failed: {e}")
            return []

    def get_system_metrics_from_db(self, period: PeriodLike) -> List[SystemMetricsSnapshot]:
        since = _since(period)
        return self._query("system metrics", lambda: self._store.query_system_metrics(since))

    def get_app_metrics_from_db(self, app_id: str, period: PeriodLike) -> List[AppMetricsSnapshot]:
        since = _since(period)
        return self._query(f"app {app_id}", lambda: self._store.query_app_metrics(app_id, since))

    def get_system_metrics_aggregated(self, period: PeriodLike, bucket_minutes: int = 5) -> List[AggregatedSnapshot]:
        since = _since(period)
        return self._query(
            "aggregated system metrics",
            lambda: self._store.query_system_metrics_aggregated(since, bucket_minutes),
        )

    def get_app_metrics_aggregated(
        self,
        app_id: str,
        period: PeriodLike,
        bucket_minutes: int = 5,
    ) -> List[AggregatedSnapshot]:
        since = _since(period)
        return self._query(
            f"aggregated app {app_id}",
            lambda: self._store.query_app_metrics_aggregated(app_id, since, bucket_minutes),
        )

    def get_status_history_from_db(self, period: PeriodLike) -> List[AppStatusHistory]:
        since = _since(period)
        points = self._query("status points", lambda: self._store.query_status_points(since))

        by_app: Dict[str, List[StatusHistoryEntry]] = {}
        for p in points:
            by_app.setdefault(p.app_id, []).append(StatusHistoryEntry(status=p.status, timestamp=p.collected_at))

        return [
            AppStatusHistory(app_id=app_id, app_name=self._app_names.get(app_id, app_id), entries=entries)
            for app_id, entries in by_app.items()
        ]

    def get_app_status_history_from_db(self, app_id: str, period: PeriodLike) -> List[StatusHistoryEntry]:
        since = _since(period)
        points = self._query(
            f"status points of {app_id}",
            lambda: self._store.query_app_status_points(app_id, since),
        )
        return [StatusHistoryEntry(status=p.status, timestamp=p.collected_at) for p in points]

    # ============================================
    # Queries - tiered
    # ============================================

    def system_metrics_view(self, period: PeriodLike = MetricsPeriod.ONE_HOUR) -> MetricsView:
        """1h from memory, longer windows as durable buckets."""
        period = MetricsPeriod(period)
        if period not in BUCKET_MINUTES:
            return MetricsView(period=period, data_points=self.get_system_metrics(period))
        return MetricsView(
            period=period,
            aggregated=self.get_system_metrics_aggregated(period, BUCKET_MINUTES[period]),
        )

    def app_metrics_view(self, app_id: str, period: PeriodLike = MetricsPeriod.ONE_HOUR) -> MetricsView:
        """Per-app counterpart of ``system_metrics_view``."""
        period = MetricsPeriod(period)
        if period not in BUCKET_MINUTES:
            return MetricsView(period=period, data_points=self.get_app_metrics(app_id, period))
        return MetricsView(
            period=period,
            aggregated=self.get_app_metrics_aggregated(app_id, period, BUCKET_MINUTES[period]),
        )
