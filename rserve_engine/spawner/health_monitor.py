# rserve_engine/spawner/health_monitor.py
"""
Health Monitor - keeps a cached health snapshot per app.

Polls the spawner on a fixed interval in a background thread, adopts apps
whose containers it finds by label, and reports status transitions.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from rserve_engine.core.models import AppHealthSnapshot, AppStatus, utcnow
from rserve_engine.spawner.labels import APP_ID_LABEL

logger = logging.getLogger(__name__)

StatusChangeCallback = Callable[[str, AppStatus, AppStatus], None]

MAX_POLL_WORKERS = 8


class HealthMonitor:
    """
    Background poller over the spawner's live container state.

    Snapshots are only ever replaced whole, so readers never see a
    half-built one and never wait on the docker daemon.
    """

    def __init__(
        self,
        spawner,
        interval_seconds: float = 15.0,
        on_status_change: Optional[StatusChangeCallback] = None,
    ):
        """
        Initialize health monitor.

        Args:
            spawner: DockerSpawner (or anything with the same read methods)
            interval_seconds: Time between polls
            on_status_change: Called with (app_id, previous, current) on every transition
        """
        self._spawner = spawner
        self.interval_seconds = interval_seconds
        self._on_status_change = on_status_change

        self._tracked: Set[str] = set()
        self._snapshots: Dict[str, AppHealthSnapshot] = {}
        self._lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # -------------------------
    # Lifecycle
    # -------------------------

    def start(self) -> None:
        """Start polling. Polls once immediately. No-op when already running."""
        if self.is_running():
            return

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name="health-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"🏥 Health monitor started (interval {self.interval_seconds}s)")

    def stop(self) -> None:
        """Stop scheduling polls. An in-flight poll is allowed to finish."""
        if not self.is_running():
            return
        self._stop_event.set()
        self._thread = None
        logger.info("Health monitor stopped")

    def is_running(self) -> bool:
        return self._thread is not None and not self._stop_event.is_set()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.poll()
            except Exception as e:
                logger.error(f"Error in health poll: {e}", exc_info=True)

            if stop_event.wait(self.interval_seconds):
                break

    # -------------------------
    # Tracking
    # -------------------------

    def track(self, app_id: str) -> None:
        with self._lock:
            self._tracked.add(app_id)

    def untrack(self, app_id: str) -> None:
        with self._lock:
            self._tracked.discard(app_id)
            self._snapshots.pop(app_id, None)

    def tracked(self) -> List[str]:
        with self._lock:
            return sorted(self._tracked)

    # -------------------------
    # Reads
    # -------------------------

    def get_snapshot(self, app_id: str) -> Optional[AppHealthSnapshot]:
        with self._lock:
            return self._snapshots.get(app_id)

    def get_all_snapshots(self) -> List[AppHealthSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    # -------------------------
    # Polling
    # -------------------------

    def poll(self) -> None:
        """Run one poll cycle synchronously."""
        self._discover()

        with self._lock:
            app_ids = sorted(self._tracked)
        if not app_ids:
            return

        workers = min(MAX_POLL_WORKERS, len(app_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="health-poll") as pool:
            snapshots = list(pool.map(self._check_app, app_ids))

        for snapshot in snapshots:
            self._record(snapshot)

    def _discover(self) -> None:
        """Adopt apps whose managed containers exist but are not tracked yet."""
        try:
            containers = self._spawner.list_managed_containers()
        except Exception as e:
            logger.warning(f"Container discovery failed: {e}")
            return

        found = set()
        for c in containers:
            app_id = (c.get("Labels") or {}).get(APP_ID_LABEL)
            if app_id:
                found.add(app_id)

        with self._lock:
            new_ids = found - self._tracked
            self._tracked |= found

        for app_id in sorted(new_ids):
            logger.info(f"[{app_id}] Discovered managed containers, now tracking")

    def _check_app(self, app_id: str) -> AppHealthSnapshot:
        try:
            status = self._spawner.get_app_status(app_id)
            containers = self._spawner.get_containers(app_id)
        except Exception as e:
            logger.warning(f"[{app_id}] Health check failed: {e}")
            return AppHealthSnapshot(app_id=app_id, status=AppStatus.ERROR, containers=[])

        return AppHealthSnapshot(
            app_id=app_id,
            status=status,
            containers=containers,
            checked_at=utcnow(),
        )

    def _record(self, snapshot: AppHealthSnapshot) -> None:
        app_id = snapshot.app_id
        with self._lock:
            # untracked while the poll was running
            if app_id not in self._tracked:
                return
            previous = self._snapshots.get(app_id)
            self._snapshots[app_id] = snapshot

        if previous is None or previous.status == snapshot.status:
            return

        logger.debug(f"[{app_id}] Status {previous.status.value} → {snapshot.status.value}")

        if self._on_status_change is None:
            return
        try:
            self._on_status_change(app_id, previous.status, snapshot.status)
        except Exception as e:
            logger.error(f"[{app_id}] Status change callback failed: {e}", exc_info=True)
