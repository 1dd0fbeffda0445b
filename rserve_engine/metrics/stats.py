# rserve_engine/metrics/stats.py
"""Delta math over docker's cumulative stats counters."""

from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional, Tuple

BYTES_PER_MB = 1024 * 1024


def round2(value: float) -> float:
    return round(value, 2)


# ============================================
# Pure helpers
# ============================================

def cpu_percent(
    cpu_total: float,
    system_cpu: float,
    online_cpus: int,
    prev_cpu_total: Optional[float] = None,
    prev_system_cpu: Optional[float] = None,
) -> float:
    """
    CPU usage since the previous sample, in percent of one core.

    0 without a previous sample, when the system counter did not advance,
    or when the container counter went backwards (restart).
    """
    if prev_cpu_total is None or prev_system_cpu is None:
        return 0.0

    cpu_delta = cpu_total - prev_cpu_total
    system_delta = system_cpu - prev_system_cpu
    if system_delta <= 0 or cpu_delta <= 0:
        return 0.0

    return (cpu_delta / system_delta) * online_cpus * 100.0


def sum_network_counters(networks: Optional[Dict[str, Dict[str, Any]]]) -> Tuple[int, int]:
    """Total (rx_bytes, tx_bytes) across all interfaces."""
    rx = 0
    tx = 0
    for iface in (networks or {}).values():
        rx += iface.get("rx_bytes", 0) or 0
        tx += iface.get("tx_bytes", 0) or 0
    return rx, tx


def counter_delta(current: int, previous: Optional[int]) -> int:
    """Increase of a cumulative counter, never negative."""
    if previous is None:
        return 0
    return max(0, current - previous)


# ============================================
# Previous-sample tracking
# ============================================

@dataclass
class PreviousSample:
    """Last cumulative counters seen for one container."""
    cpu_total: float
    system_cpu: float
    network_rx: int
    network_tx: int
    last_seen_cycle: int


@dataclass
class ContainerUsage:
    """Per-container usage for one interval."""
    cpu_percent: float
    memory_mb: float
    memory_limit_mb: float
    network_rx_bytes: int
    network_tx_bytes: int


class SampleTracker:
    """
    Previous cumulative counters keyed by container ID.

    Entries not refreshed for ``max_idle_cycles`` cycles are evicted so
    the map stays bounded as containers come and go.
    """

    def __init__(self, max_idle_cycles: int = 6):
        self.max_idle_cycles = max_idle_cycles
        self._samples: Dict[str, PreviousSample] = {}
        self._lock = Lock()

    def compute(self, container_id: str, stats: Dict[str, Any], cycle: int) -> ContainerUsage:
        """Turn one raw docker stats dict into interval usage and remember its counters."""
        cpu_stats = stats.get("cpu_stats") or {}
        cpu_total = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) or 0
        system_cpu = cpu_stats.get("system_cpu_usage", 0) or 0
        online_cpus = cpu_stats.get("online_cpus") or 1

        memory_stats = stats.get("memory_stats") or {}
        memory_mb = (memory_stats.get("usage", 0) or 0) / BYTES_PER_MB
        memory_limit_mb = (memory_stats.get("limit", 0) or 0) / BYTES_PER_MB

        rx, tx = sum_network_counters(stats.get("networks"))

        with self._lock:
            prev = self._samples.get(container_id)
            self._samples[container_id] = PreviousSample(
                cpu_total=cpu_total,
                system_cpu=system_cpu,
                network_rx=rx,
                network_tx=tx,
                last_seen_cycle=cycle,
            )

        return ContainerUsage(
            cpu_percent=cpu_percent(
                cpu_total,
                system_cpu,
                online_cpus,
                prev.cpu_total if prev else None,
                prev.system_cpu if prev else None,
            ),
            memory_mb=memory_mb,
            memory_limit_mb=memory_limit_mb,
            network_rx_bytes=counter_delta(rx, prev.network_rx if prev else None),
            network_tx_bytes=counter_delta(tx, prev.network_tx if prev else None),
        )

    def evict_stale(self, current_cycle: int) -> int:
        """Drop entries idle for more than ``max_idle_cycles``. Returns how many."""
        with self._lock:
            stale = [
                cid for cid, s in self._samples.items()
                if current_cycle - s.last_seen_cycle > self.max_idle_cycles
            ]
            for cid in stale:
                del self._samples[cid]
        return len(stale)

    def get(self, container_id: str) -> Optional[PreviousSample]:
        with self._lock:
            return self._samples.get(container_id)

    def __len__(self) -> int:
        return len(self._samples)
