# rserve_engine/spawner/build_logs.py
"""Live build-log fan-out with replay for late subscribers."""

import logging
from threading import Lock
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

LogListener = Callable[[str], None]


class BuildLogBroadcaster:
    """
    One append-only buffer and a listener set per in-flight build.

    A subscriber first receives every line buffered so far, then live lines
    until it unsubscribes or the build is finished.
    """

    def __init__(self):
        self._buffers: Dict[str, List[str]] = {}
        self._listeners: Dict[str, List[LogListener]] = {}
        self._lock = Lock()

    def begin(self, app_id: str) -> None:
        with self._lock:
            self._buffers[app_id] = []
            self._listeners.setdefault(app_id, [])

    def publish(self, app_id: str, line: str) -> None:
        with self._lock:
            buffer = self._buffers.get(app_id)
            if buffer is None:
                return
            buffer.append(line)
            listeners = list(self._listeners.get(app_id, []))

        for fn in listeners:
            self._deliver(app_id, fn, line)

    def subscribe(self, app_id: str, fn: LogListener) -> Callable[[], None]:
        """Replay buffered lines to ``fn`` and keep it attached. Returns unsubscribe."""
        with self._lock:
            backlog = list(self._buffers.get(app_id, []))
            self._listeners.setdefault(app_id, []).append(fn)

        for line in backlog:
            self._deliver(app_id, fn, line)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(app_id)
                if listeners and fn in listeners:
                    listeners.remove(fn)
                if listeners == [] and app_id not in self._buffers:
                    del self._listeners[app_id]

        return unsubscribe

    def finish(self, app_id: str) -> None:
        with self._lock:
            self._buffers.pop(app_id, None)
            self._listeners.pop(app_id, None)

    def lines(self, app_id: str) -> List[str]:
        with self._lock:
            return list(self._buffers.get(app_id, []))

    def is_active(self, app_id: str) -> bool:
        with self._lock:
            return app_id in self._buffers

    def _deliver(self, app_id: str, fn: LogListener, line: str) -> None:
        try:
            fn(line)
        except Exception as e:
            logger.warning(f"[{app_id}] build log listener failed: {e}")
