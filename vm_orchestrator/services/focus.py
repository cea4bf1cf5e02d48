import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from vm_orchestrator.clients.backend import BackendClient
from vm_orchestrator.errors import PreconditionNotMet
from vm_orchestrator.metrics import metrics
from vm_orchestrator.models import VMState
from vm_orchestrator.schemas import (
    ConsoleEndpoint,
    OperationResult,
    ResourceStatus,
    ResourceSummary,
    SnapshotRecord,
)
from vm_orchestrator.services.telemetry import MonitorHandle, TelemetryMonitor


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FocusView:
    name: str | None
    state: VMState | None
    running: bool | None
    monitoring: bool
    detail: str | None
    snapshots: list[SnapshotRecord] = field(default_factory=list)


class ResourceFocusController:
    """Owns which resource is focused and keeps dependent state in step with it.

    Focus changes bump a generation counter. Every RPC is issued outside
    the lock and its result is applied only if the generation it started
    under is still current, so a slow answer for a resource that lost focus
    is dropped instead of overwriting the new focus.
    """

    def __init__(self, backend: BackendClient, monitor: TelemetryMonitor):
        self.backend = backend
        self.monitor = monitor
        self._lock = threading.RLock()
        self._focused: str | None = None
        self._generation = 0
        self._handle: MonitorHandle | None = None
        self.detail: str | None = None
        self.snapshots: list[SnapshotRecord] = []
        self.status: ResourceStatus | None = None
        self.resources: list[ResourceSummary] = []

    @property
    def focused(self) -> str | None:
        with self._lock:
            return self._focused

    @property
    def monitor_handle(self) -> MonitorHandle | None:
        with self._lock:
            return self._handle

    @property
    def running_count(self) -> int:
        with self._lock:
            return sum(1 for r in self.resources if r.running)

    @property
    def total_count(self) -> int:
        with self._lock:
            return len(self.resources)

    def view(self) -> FocusView:
        with self._lock:
            status = self.status
            return FocusView(
                name=self._focused,
                state=(
                    VMState.from_backend(status.state, status.running) if status else None
                ),
                running=status.running if status else None,
                monitoring=self._handle is not None,
                detail=self.detail,
                snapshots=list(self.snapshots),
            )

    def focus(self, name: str) -> FocusView:
        with self._lock:
            if self._focused != name:
                self._clear_locked()
                self._focused = name
            generation = self._generation
        logger.info("focus resource=%s generation=%s", name, generation)

        detail = self._fetch_quietly("detail", name, self.backend.get_resource_detail)
        snapshots = self._fetch_quietly("snapshots", name, self.backend.list_snapshots)
        with self._lock:
            if not self._is_current(name, generation):
                return self.view()
            self.detail = detail
            self.snapshots = snapshots or []

        status = self.backend.get_resource_status(name)
        self._apply_status(name, generation, status)
        return self.view()

    def unfocus(self) -> None:
        with self._lock:
            previous = self._focused
            self._clear_locked()
        if previous:
            logger.info("unfocus resource=%s", previous)

    def refresh_list(self) -> list[ResourceSummary]:
        resources = self.backend.list_resources()
        with self._lock:
            self.resources = resources
        return resources

    def start(self) -> OperationResult | None:
        outcome = self._run_operation("start", self.backend.start)
        if outcome is None:
            return None
        name, generation, result = outcome
        self._refresh_detail(name, generation)
        self._refresh_list_quietly()
        self._resync_monitor(name, generation)
        return result

    def shutdown(self, confirm: bool = False) -> OperationResult | None:
        return self._stop_operation("shutdown", self.backend.shutdown, confirm)

    def destroy(self, confirm: bool = False) -> OperationResult | None:
        return self._stop_operation("destroy", self.backend.destroy, confirm)

    def reboot(self) -> OperationResult | None:
        return self._detail_operation("reboot", self.backend.reboot)

    def pause(self) -> OperationResult | None:
        return self._detail_operation("pause", self.backend.pause)

    def resume(self) -> OperationResult | None:
        return self._detail_operation("resume", self.backend.resume)

    def delete(
        self, confirm: bool = False, confirm_name: str = "", remove_disks: bool = True
    ) -> OperationResult | None:
        target = self._target()
        if target is None:
            return None
        name = target[0]
        if not confirm:
            raise PreconditionNotMet(f"delete of {name} requires confirmation")
        if confirm_name != name:
            raise PreconditionNotMet(
                f"delete confirmation name {confirm_name!r} does not match {name!r}"
            )
        outcome = self._run_operation(
            "delete", lambda n: self.backend.delete_resource(n, remove_disks), target
        )
        if outcome is None:
            return None
        result = outcome[2]
        with self._lock:
            if self._focused == name:
                self._clear_locked()
        self._refresh_list_quietly()
        return result

    def create_snapshot(
        self, snapshot_name: str, description: str = "Created via vm-orchestrator"
    ) -> OperationResult | None:
        outcome = self._run_operation(
            "create_snapshot",
            lambda n: self.backend.create_snapshot(n, snapshot_name, description),
        )
        if outcome is None:
            return None
        name, generation, result = outcome
        self._refresh_snapshots(name, generation)
        return result

    def revert_snapshot(self, snapshot_name: str) -> OperationResult | None:
        # Whether a running domain blocks the revert is for the backend to say.
        outcome = self._run_operation(
            "revert_snapshot", lambda n: self.backend.revert_snapshot(n, snapshot_name)
        )
        if outcome is None:
            return None
        name, generation, result = outcome
        self._refresh_detail(name, generation)
        self._refresh_list_quietly()
        self._resync_monitor(name, generation)
        return result

    def delete_snapshot(self, snapshot_name: str) -> OperationResult | None:
        outcome = self._run_operation(
            "delete_snapshot", lambda n: self.backend.delete_snapshot(n, snapshot_name)
        )
        if outcome is None:
            return None
        name, generation, result = outcome
        self._refresh_snapshots(name, generation)
        return result

    def clone(self, clone_name: str) -> OperationResult | None:
        outcome = self._run_operation(
            "clone", lambda n: self.backend.clone_resource(n, clone_name)
        )
        if outcome is None:
            return None
        self._refresh_list_quietly()
        return outcome[2]

    def console_endpoint(self) -> ConsoleEndpoint | None:
        target = self._target()
        if target is None:
            return None
        return self.backend.get_console_endpoint(target[0])

    def _target(self) -> tuple[str, int] | None:
        with self._lock:
            if self._focused is None:
                return None
            return self._focused, self._generation

    def _is_current(self, name: str, generation: int) -> bool:
        return self._focused == name and self._generation == generation

    def _clear_locked(self) -> None:
        if self._handle is not None:
            self.monitor.stop(self._handle)
            self._handle = None
        self._focused = None
        self._generation += 1
        self.detail = None
        self.snapshots = []
        self.status = None

    def _run_operation(
        self,
        operation: str,
        call: Callable[[str], OperationResult],
        target: tuple[str, int] | None = None,
    ) -> tuple[str, int, OperationResult] | None:
        target = target or self._target()
        if target is None:
            logger.debug("%s ignored: no resource focused", operation)
            return None
        name, generation = target
        metrics.inc("lifecycle_operations_total")
        try:
            result = call(name)
        except Exception as exc:
            metrics.inc("lifecycle_operations_failed_total")
            logger.warning("%s failed resource=%s: %s", operation, name, exc)
            raise
        logger.info("%s succeeded resource=%s", operation, name)
        return name, generation, result

    def _stop_operation(
        self, operation: str, call: Callable[[str], OperationResult], confirm: bool
    ) -> OperationResult | None:
        target = self._target()
        if target is None:
            return None
        if not confirm:
            raise PreconditionNotMet(f"{operation} of {target[0]} requires confirmation")
        outcome = self._run_operation(operation, call, target)
        if outcome is None:
            return None
        name, generation, result = outcome
        # Matched by name: a re-focus of the same resource while the call was
        # in flight may have started a monitor for a domain that is now off.
        with self._lock:
            if self._focused == name:
                generation = self._generation
                if self._handle is not None:
                    self.monitor.stop(self._handle)
                    self._handle = None
        self._refresh_detail(name, generation)
        self._refresh_list_quietly()
        return result

    def _detail_operation(
        self, operation: str, call: Callable[[str], OperationResult]
    ) -> OperationResult | None:
        outcome = self._run_operation(operation, call)
        if outcome is None:
            return None
        name, generation, result = outcome
        self._refresh_detail(name, generation)
        return result

    def _fetch_quietly(
        self, what: str, name: str, fetch: Callable[[str], T]
    ) -> T | None:
        try:
            return fetch(name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not load %s resource=%s: %s", what, name, exc)
            return None

    def _refresh_detail(self, name: str, generation: int) -> None:
        detail = self._fetch_quietly("detail", name, self.backend.get_resource_detail)
        if detail is None:
            return
        with self._lock:
            if self._is_current(name, generation):
                self.detail = detail

    def _refresh_snapshots(self, name: str, generation: int) -> None:
        snapshots = self._fetch_quietly("snapshots", name, self.backend.list_snapshots)
        if snapshots is None:
            return
        with self._lock:
            if self._is_current(name, generation):
                self.snapshots = snapshots

    def _refresh_list_quietly(self) -> None:
        try:
            self.refresh_list()
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not refresh resource list: %s", exc)

    def _resync_monitor(self, name: str, generation: int) -> None:
        status = self._fetch_quietly("status", name, self.backend.get_resource_status)
        if status is not None:
            self._apply_status(name, generation, status)

    def _apply_status(self, name: str, generation: int, status: ResourceStatus) -> None:
        with self._lock:
            if not self._is_current(name, generation):
                return
            self.status = status
            if status.running and self._handle is None:
                self._handle = self.monitor.start(name)
            elif not status.running and self._handle is not None:
                self.monitor.stop(self._handle)
                self._handle = None
