import threading
import time
from datetime import datetime, timedelta
from typing import Any, cast

import pytest

from vm_orchestrator.metrics import metrics
from vm_orchestrator.schemas import ResourceStats
from vm_orchestrator.services.telemetry import (
    MetricSeries,
    TelemetryMonitor,
    sample_from_stats,
)


def _stats(cpu: float) -> ResourceStats:
    return ResourceStats.model_validate(
        {
            "cpu": cpu,
            "memory": {"used": 1024, "max": 4096, "percent": 25.0},
            "disk": {"readMB": 1.5, "writeMB": 2.5},
            "network": {"rxMB": 0.5, "txMB": 0.25},
        }
    )


class FakeStatsBackend:
    def __init__(self, error=None):
        self.calls = 0
        self.error = error
        self.empty = False

    def get_resource_stats(self, name: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.empty:
            return None
        return _stats(float(self.calls))


class BlockingStatsBackend:
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_resource_stats(self, name: str):
        self.entered.set()
        self.release.wait(5)
        return _stats(50.0)


class StepClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=3)
        return self.now


def _wait_until(predicate, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_series_evicts_oldest_point_at_capacity():
    series = MetricSeries(capacity=3)
    for i in range(4):
        series.append(f"t{i}", float(i))
    assert len(series) == 3
    assert series.labels() == ["t1", "t2", "t3"]
    assert series.values() == [1.0, 2.0, 3.0]
    assert series.latest() == ("t3", 3.0)


def test_series_rejects_zero_capacity():
    with pytest.raises(ValueError):
        MetricSeries(capacity=0)


def test_sample_from_stats_maps_wire_fields():
    sample = sample_from_stats(_stats(12.5), datetime(2024, 1, 1, 8, 5, 9))
    assert sample.cpu_percent == 12.5
    assert sample.memory_percent == 25.0
    assert sample.memory_max_kb == 4096
    assert sample.disk_write_mb == 2.5
    assert sample.net_tx_mb == 0.25
    assert sample.label == "08:05:09"


def test_memory_percent_derived_when_backend_omits_it():
    stats = ResourceStats.model_validate({"memory": {"used": 512, "max": 2048}})
    assert stats.memory_percent == 25.0


def test_window_keeps_last_twenty_samples():
    monitor = TelemetryMonitor(
        cast(Any, FakeStatsBackend()), capacity=20, clock=StepClock()
    )
    handle = monitor.start("vm-a", run_loop=False)
    for _ in range(25):
        assert monitor.sample(handle)

    cpu = handle.series_snapshot()["cpu"]
    assert len(cpu) == 20
    assert [value for _, value in cpu] == [float(i) for i in range(6, 26)]
    assert handle.latest is not None
    assert handle.latest.cpu_percent == 25.0
    assert cpu[-1][0] == handle.latest.label
    assert handle.samples_appended == 25
    assert set(handle.series) == {"cpu", "memory", "disk_write", "net_tx"}


def test_failed_sample_is_skipped_and_counted():
    backend = FakeStatsBackend(error=RuntimeError("stats unavailable"))
    monitor = TelemetryMonitor(cast(Any, backend))
    handle = monitor.start("vm-a", run_loop=False)
    before = metrics.get("telemetry_sample_failures_total")

    assert not monitor.sample(handle)
    assert handle.failures == 1
    assert handle.latest is None
    assert all(len(series) == 0 for series in handle.series.values())
    assert metrics.get("telemetry_sample_failures_total") == before + 1


def test_empty_stats_are_ignored():
    backend = FakeStatsBackend()
    backend.empty = True
    monitor = TelemetryMonitor(cast(Any, backend))
    handle = monitor.start("vm-a", run_loop=False)
    assert not monitor.sample(handle)
    assert handle.samples_appended == 0
    assert handle.failures == 0


def test_no_sample_lands_after_stop_returns():
    backend = BlockingStatsBackend()
    monitor = TelemetryMonitor(cast(Any, backend))
    handle = monitor.start("vm-a", run_loop=False)
    results = []
    sampler = threading.Thread(target=lambda: results.append(monitor.sample(handle)))
    sampler.start()
    assert backend.entered.wait(5)

    monitor.stop(handle)
    backend.release.set()
    sampler.join(5)

    assert results == [False]
    assert handle.samples_appended == 0
    assert handle.latest is None
    assert not handle.active


def test_stopped_handle_does_not_fetch():
    backend = FakeStatsBackend()
    monitor = TelemetryMonitor(cast(Any, backend))
    handle = monitor.start("vm-a", run_loop=False)
    monitor.stop(handle)
    assert not monitor.sample(handle)
    assert backend.calls == 0


def test_background_loop_samples_until_stopped():
    backend = FakeStatsBackend()
    monitor = TelemetryMonitor(cast(Any, backend), period_sec=0.01)
    handle = monitor.start("vm-a")
    assert _wait_until(lambda: handle.samples_appended >= 3)

    monitor.stop(handle)
    handle.join(timeout=5)
    appended = handle.samples_appended
    time.sleep(0.05)
    assert handle.samples_appended == appended


def test_stop_joins_idle_worker():
    backend = FakeStatsBackend()
    monitor = TelemetryMonitor(cast(Any, backend), period_sec=10)
    handle = monitor.start("vm-a")
    assert _wait_until(lambda: handle.samples_appended >= 1)

    monitor.stop(handle)

    assert not handle.is_alive()


def test_stop_returns_while_worker_is_stuck_in_fetch():
    backend = BlockingStatsBackend()
    monitor = TelemetryMonitor(cast(Any, backend), period_sec=10, join_timeout_sec=0.05)
    handle = monitor.start("vm-a")
    assert backend.entered.wait(5)

    started = time.monotonic()
    monitor.stop(handle)
    assert time.monotonic() - started < 2
    assert handle.is_alive()

    backend.release.set()
    handle.join(timeout=5)
    assert not handle.is_alive()
    assert handle.samples_appended == 0
