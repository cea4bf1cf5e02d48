import logging
import threading
import time
from collections import deque
from datetime import datetime
from typing import Callable

from vm_orchestrator.clients.backend import BackendClient
from vm_orchestrator.metrics import metrics
from vm_orchestrator.models import TelemetrySample
from vm_orchestrator.schemas import ResourceStats


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 20
TRACKED_METRICS = ("cpu", "memory", "disk_write", "net_tx")


class MetricSeries:
    """Fixed-capacity window of (label, value) points, oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._points: deque[tuple[str, float]] = deque(maxlen=capacity)

    def append(self, label: str, value: float) -> None:
        self._points.append((label, value))

    def __len__(self) -> int:
        return len(self._points)

    def points(self) -> list[tuple[str, float]]:
        return list(self._points)

    def labels(self) -> list[str]:
        return [label for label, _ in self._points]

    def values(self) -> list[float]:
        return [value for _, value in self._points]

    def latest(self) -> tuple[str, float] | None:
        return self._points[-1] if self._points else None


def sample_from_stats(stats: ResourceStats, timestamp: datetime) -> TelemetrySample:
    return TelemetrySample(
        timestamp=timestamp,
        cpu_percent=float(stats.cpu),
        memory_used_kb=int(stats.memory.used),
        memory_max_kb=int(stats.memory.max),
        memory_percent=float(stats.memory_percent),
        disk_read_mb=float(stats.disk.read_mb),
        disk_write_mb=float(stats.disk.write_mb),
        net_rx_mb=float(stats.network.rx_mb),
        net_tx_mb=float(stats.network.tx_mb),
    )


class MonitorHandle:
    def __init__(self, resource_id: str, capacity: int):
        self.resource_id = resource_id
        self.series = {name: MetricSeries(capacity) for name in TRACKED_METRICS}
        self.latest: TelemetrySample | None = None
        self.samples_appended = 0
        self.failures = 0
        self._lock = threading.Lock()
        self._active = True
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def record(self, sample: TelemetrySample) -> bool:
        """Append one sample; returns False if the monitor was stopped first."""
        with self._lock:
            if not self._active:
                return False
            label = sample.label
            self.series["cpu"].append(label, sample.cpu_percent)
            self.series["memory"].append(label, sample.memory_percent)
            self.series["disk_write"].append(label, sample.disk_write_mb)
            self.series["net_tx"].append(label, sample.net_tx_mb)
            self.latest = sample
            self.samples_appended += 1
            return True

    def record_failure(self) -> None:
        with self._lock:
            if self._active:
                self.failures += 1

    def series_snapshot(self) -> dict[str, list[tuple[str, float]]]:
        with self._lock:
            return {name: series.points() for name, series in self.series.items()}

    def deactivate(self) -> None:
        with self._lock:
            self._active = False
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class TelemetryMonitor:
    """Periodic stats sampler, parameterized by resource id.

    Holds no per-resource state itself; everything a running loop touches
    lives on the MonitorHandle returned by ``start``.
    """

    def __init__(
        self,
        backend: BackendClient,
        period_sec: float = 3.0,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], datetime] = datetime.now,
        join_timeout_sec: float = 0.5,
    ):
        self.backend = backend
        self.period_sec = period_sec
        self.capacity = capacity
        self.clock = clock
        self.join_timeout_sec = join_timeout_sec

    def start(self, resource_id: str, run_loop: bool = True) -> MonitorHandle:
        handle = MonitorHandle(resource_id, self.capacity)
        if run_loop:
            thread = threading.Thread(
                target=self._worker,
                args=(handle,),
                name=f"telemetry-{resource_id}",
                daemon=True,
            )
            handle._thread = thread
            thread.start()
        logger.info("telemetry monitor started resource=%s", resource_id)
        return handle

    def stop(self, handle: MonitorHandle) -> None:
        handle.deactivate()
        # A worker stuck in a stats fetch is left to finish on its own; its
        # result is discarded once the handle is inactive.
        handle.join(self.join_timeout_sec)
        if handle.is_alive():
            logger.debug(
                "telemetry worker still finishing a fetch resource=%s", handle.resource_id
            )
        logger.info(
            "telemetry monitor stopped resource=%s samples=%s failures=%s",
            handle.resource_id,
            handle.samples_appended,
            handle.failures,
        )

    def sample(self, handle: MonitorHandle) -> bool:
        """Fetch and record one sample; returns True if it was appended."""
        if not handle.active:
            return False
        try:
            stats = self.backend.get_resource_stats(handle.resource_id)
        except Exception as exc:  # noqa: BLE001
            handle.record_failure()
            metrics.inc("telemetry_sample_failures_total")
            logger.warning(
                "telemetry sample failed resource=%s: %s", handle.resource_id, exc
            )
            return False
        if stats is None:
            logger.debug("telemetry sample empty resource=%s", handle.resource_id)
            return False
        appended = handle.record(sample_from_stats(stats, self.clock()))
        if appended:
            metrics.inc("telemetry_samples_total")
        else:
            logger.debug(
                "telemetry sample discarded after stop resource=%s", handle.resource_id
            )
        return appended

    def _worker(self, handle: MonitorHandle) -> None:
        next_tick = time.monotonic()
        while not handle._stop_event.is_set():
            self.sample(handle)
            next_tick += self.period_sec
            delay = next_tick - time.monotonic()
            if delay < 0:
                # Fell behind (slow fetch); realign instead of bursting.
                next_tick = time.monotonic()
                delay = 0
            handle._stop_event.wait(delay)
