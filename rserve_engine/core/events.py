"""Status change emitters for the health monitor."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List

from rserve_engine.core.models import AppStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChangeEvent:
    """An app moved from one status to another between two polls."""
    app_id: str
    previous: AppStatus
    current: AppStatus
    occurred_at: datetime = field(default_factory=utcnow)


class StatusChangeEmitter(ABC):
    """
    Receives status transitions.

    Instances are callable with ``(app_id, previous, current)`` so they can be
    passed straight to ``HealthMonitor(on_status_change=...)``.
    """

    @abstractmethod
    def emit(self, event: StatusChangeEvent) -> None:
        """Handle one transition."""
        pass

    def __call__(self, app_id: str, previous: AppStatus, current: AppStatus) -> None:
        self.emit(StatusChangeEvent(app_id=app_id, previous=previous, current=current))


class LoggingStatusEmitter(StatusChangeEmitter):
    """Writes transitions to the log."""

    def emit(self, event: StatusChangeEvent) -> None:
        level = logging.WARNING if event.current == AppStatus.ERROR else logging.INFO
        logger.log(
            level,
            f"[{event.app_id}] status {event.previous.value} → {event.current.value}",
        )


class RecordingStatusEmitter(StatusChangeEmitter):
    """Keeps transitions in memory (tests, debugging)."""

    def __init__(self):
        self.events: List[StatusChangeEvent] = []

    def emit(self, event: StatusChangeEvent) -> None:
        self.events.append(event)


class MultiStatusEmitter(StatusChangeEmitter):
    """Fan-out to multiple emitters; one failing emitter does not stop the rest."""

    def __init__(self, emitters: Iterable[StatusChangeEmitter]):
        self._emitters = list(emitters)

    def emit(self, event: StatusChangeEvent) -> None:
        for emitter in self._emitters:
            try:
                emitter.emit(event)
            except Exception as e:
                logger.error(f"Status emitter {type(emitter).__name__} failed: {e}")


class NullStatusEmitter(StatusChangeEmitter):
    """No-op emitter."""

    def emit(self, event: StatusChangeEvent) -> None:
        pass
