import logging
import re
import threading
import time
import uuid
from datetime import UTC, datetime
from typing import Callable

from vm_orchestrator.clients.backend import BackendClient
from vm_orchestrator.config import Settings, get_settings
from vm_orchestrator.errors import (
    PreconditionNotMet,
    ProvisioningError,
    RemoteRejected,
    ValidationError,
)
from vm_orchestrator.metrics import metrics
from vm_orchestrator.models import (
    TERMINAL_RUN_STATES,
    PhaseStatus,
    PhaseTransition,
    ProvisioningPhase,
    RunState,
)
from vm_orchestrator.schemas import ProvisioningRequest
from vm_orchestrator.services.polling import BoundedPoller
from vm_orchestrator.state_machine import can_transition


logger = logging.getLogger(__name__)


FLAVORS = {
    "small": {"memory_mb": 2048, "vcpus": 1, "disk_gb": 15},
    "medium": {"memory_mb": 4096, "vcpus": 2, "disk_gb": 20},
    "large": {"memory_mb": 8192, "vcpus": 4, "disk_gb": 40},
}
DEFAULT_FLAVOR = "medium"

HOSTNAME_LENGTH = (3, 63)
RESERVED_HOSTNAMES = {"localhost", "default", "template", "test", "example"}
MEMORY_RANGE_MB = (512, 65536)
VCPU_RANGE = (1, 32)
DISK_RANGE_GB = (10, 2048)
USERNAME_MAX_LENGTH = 32
RESERVED_USERNAMES = {"root", "admin", "administrator", "daemon", "bin", "sys"}
PASSWORD_LENGTH = (8, 128)
SSH_KEY_PREFIXES = (
    "ssh-rsa",
    "ssh-dss",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
)

_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9.-]+$")
_USERNAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")

TransitionCallback = Callable[["ProvisioningRun", PhaseTransition], None]


def effective_flavor(flavor: str | None) -> str:
    return flavor if flavor in FLAVORS else DEFAULT_FLAVOR


def resolve_sizing(request: ProvisioningRequest) -> dict[str, int]:
    profile = FLAVORS[effective_flavor(request.flavor)]
    requested = {
        "memory_mb": request.memory_mb,
        "vcpus": request.vcpus,
        "disk_gb": request.disk_gb,
    }
    return {
        key: value if value is not None else profile[key]
        for key, value in requested.items()
    }


def _check_range(field: str, value: int, bounds: tuple[int, int], unit: str) -> None:
    low, high = bounds
    if value < low:
        raise ValidationError(field, f"too low (minimum {low}{unit})")
    if value > high:
        raise ValidationError(field, f"too high (maximum {high}{unit})")


def validate_hostname(hostname: str) -> None:
    low, high = HOSTNAME_LENGTH
    if len(hostname) < low:
        raise ValidationError("hostname", f"too short (minimum {low} characters)")
    if len(hostname) > high:
        raise ValidationError("hostname", f"too long (maximum {high} characters)")
    if not _HOSTNAME_RE.match(hostname):
        raise ValidationError(
            "hostname", "only alphanumeric characters, hyphen and dot are allowed"
        )
    if hostname.startswith("-") or hostname.endswith("-"):
        raise ValidationError("hostname", "cannot start or end with a hyphen")
    if hostname.startswith("."):
        raise ValidationError("hostname", "cannot start with a dot")
    if hostname.lower() in RESERVED_HOSTNAMES:
        raise ValidationError("hostname", f"'{hostname}' is a reserved name")


def validate_username(username: str) -> None:
    if not username:
        raise ValidationError("username", "cannot be empty")
    if len(username) > USERNAME_MAX_LENGTH:
        raise ValidationError(
            "username", f"too long (maximum {USERNAME_MAX_LENGTH} characters)"
        )
    if not _USERNAME_RE.match(username):
        raise ValidationError(
            "username",
            "must start with a letter and contain only lowercase letters, digits and underscore",
        )
    if username in RESERVED_USERNAMES:
        raise ValidationError("username", f"'{username}' is reserved")


def _password_warnings(password: str) -> list[str]:
    low, high = PASSWORD_LENGTH
    if len(password) < low:
        raise ValidationError("password", f"too short (minimum {low} characters)")
    if len(password) > high:
        raise ValidationError("password", f"too long (maximum {high} characters)")
    classes = {
        "lower": any(c.islower() for c in password),
        "upper": any(c.isupper() for c in password),
        "digit": any(c.isdigit() for c in password),
        "other": any(not c.isalnum() for c in password),
    }
    if sum(classes.values()) < 2:
        return ["password is weak; mix upper/lower case, digits and symbols"]
    return []


def _ssh_key_warnings(ssh_key: str) -> list[str]:
    if not ssh_key.startswith(SSH_KEY_PREFIXES):
        raise ValidationError(
            "ssh_key", "must start with ssh-rsa, ssh-ed25519, ecdsa-sha2-* or ssh-dss"
        )
    if len(ssh_key) < 100:
        return ["ssh key seems unusually short; make sure it is a complete public key"]
    return []


def validate_request(request: ProvisioningRequest) -> list[str]:
    """Check a request before anything is sent to the backend.

    Returns non-fatal warnings; raises ValidationError on the first fatal
    problem.
    """
    has_password = bool(request.password)
    has_key = bool(request.ssh_key)
    if has_password and has_key:
        raise ValidationError("credentials", "set either password or ssh_key, not both")
    if not has_password and not has_key:
        raise ValidationError("credentials", "one of password or ssh_key is required")

    validate_hostname(request.hostname)
    sizing = resolve_sizing(request)
    _check_range("memory_mb", sizing["memory_mb"], MEMORY_RANGE_MB, " MB")
    _check_range("vcpus", sizing["vcpus"], VCPU_RANGE, "")
    _check_range("disk_gb", sizing["disk_gb"], DISK_RANGE_GB, " GB")
    validate_username(request.username)

    warnings: list[str] = []
    if sizing["memory_mb"] % 512 != 0:
        warnings.append("memory is not a multiple of 512 MB")
    if has_password:
        warnings.extend(_password_warnings(request.password or ""))
    else:
        warnings.extend(_ssh_key_warnings(request.ssh_key or ""))
    return warnings


def build_deploy_payload(request: ProvisioningRequest) -> dict:
    sizing = resolve_sizing(request)
    auth_method = "password" if request.password else "ssh-key"
    return {
        "hostname": request.hostname,
        "memory": sizing["memory_mb"],
        "vcpus": sizing["vcpus"],
        "disk": sizing["disk_gb"],
        "osVariant": request.os_variant,
        "network": request.network,
        "username": request.username,
        "authMethod": auth_method,
        "password": request.password or "",
        "sshKey": request.ssh_key or "",
        "flavor": effective_flavor(request.flavor),
    }


class ProvisioningRun:
    """Handle for one submitted request; mutated only by its worker thread."""

    def __init__(
        self,
        request: ProvisioningRequest,
        run_id: str | None = None,
        on_transition: TransitionCallback | None = None,
    ):
        self.run_id = run_id or uuid.uuid4().hex
        self.request = request
        self.resource_name = request.hostname
        self.state = RunState.PENDING
        self.phase: ProvisioningPhase | None = None
        self.phase_outcomes: dict[ProvisioningPhase, PhaseStatus] = {}
        self.transitions: list[PhaseTransition] = []
        self.warnings: list[str] = []
        self.address: str | None = None
        self.error: ProvisioningError | None = None
        self.poll_attempts = 0
        self.created_at = datetime.now(UTC)
        self.finished_at: datetime | None = None
        self._on_transition = on_transition
        self._cancel = threading.Event()
        self._done = threading.Event()

    @property
    def hostname(self) -> str:
        return self.request.hostname

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def failed_phase(self) -> ProvisioningPhase | None:
        return ProvisioningPhase(self.error.phase) if self.error else None

    @property
    def connect_hint(self) -> str | None:
        if not self.address:
            return None
        return f"ssh {self.request.username}@{self.address}"

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def result(self, timeout: float | None = None) -> str | None:
        if not self.wait(timeout):
            raise TimeoutError(f"provisioning run {self.run_id} still in progress")
        if self.error is not None:
            raise self.error
        return self.address

    def interruptible_wait(self, seconds: float) -> bool:
        return self._cancel.wait(seconds)

    def enter(self, phase: ProvisioningPhase) -> None:
        if not can_transition(self.phase, phase):
            raise RuntimeError(
                f"illegal phase transition {self.phase} -> {phase.value} run_id={self.run_id}"
            )
        self.phase = phase
        self.state = RunState.RUNNING
        self._record(phase, PhaseStatus.STARTED)

    def complete(self, detail: str | None = None) -> None:
        if self.phase is None:
            raise RuntimeError(f"no phase entered yet run_id={self.run_id}")
        self._record(self.phase, PhaseStatus.COMPLETED, detail)

    def succeed(self, address: str | None) -> None:
        self.address = address
        self.state = RunState.SUCCEEDED
        self._finish()

    def fail(self, error: ProvisioningError) -> None:
        self.error = error
        if self.phase is not None:
            self._record(self.phase, PhaseStatus.FAILED, error.reason)
        self.state = RunState.FAILED
        self._finish()

    def _finish(self) -> None:
        self.finished_at = datetime.now(UTC)
        self._done.set()

    def _record(
        self, phase: ProvisioningPhase, status: PhaseStatus, detail: str | None = None
    ) -> None:
        self.phase_outcomes[phase] = status
        transition = PhaseTransition(
            run_id=self.run_id,
            phase=phase,
            status=status,
            at=datetime.now(UTC),
            detail=detail,
        )
        self.transitions.append(transition)
        if self._on_transition is None:
            return
        try:
            self._on_transition(self, transition)
        except Exception:  # noqa: BLE001
            logger.exception(
                "transition callback failed run_id=%s phase=%s", self.run_id, phase.value
            )


class ProvisioningOrchestrator:
    def __init__(
        self,
        backend: BackendClient,
        settings: Settings | None = None,
        poller: BoundedPoller | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.settings = settings or get_settings()
        self.poller = poller or BoundedPoller()
        self.clock = clock
        self._lock = threading.Lock()
        self._runs: dict[str, ProvisioningRun] = {}
        self._finished_at: dict[str, float] = {}
        self._threads: dict[str, threading.Thread] = {}

    def submit(
        self,
        request: ProvisioningRequest,
        on_transition: TransitionCallback | None = None,
    ) -> ProvisioningRun:
        with self._lock:
            self._prune_locked()
            for existing in self._runs.values():
                if existing.hostname == request.hostname and not existing.done:
                    raise PreconditionNotMet(
                        f"provisioning already in progress hostname={request.hostname} run_id={existing.run_id}"
                    )
            run = ProvisioningRun(request, on_transition=on_transition)
            self._runs[run.run_id] = run
            thread = threading.Thread(
                target=self.execute,
                args=(run,),
                name=f"provision-{run.run_id[:8]}",
                daemon=True,
            )
            self._threads[run.run_id] = thread
        metrics.inc("provisioning_runs_total")
        logger.info(
            "provisioning submitted run_id=%s hostname=%s", run.run_id, run.hostname
        )
        thread.start()
        return run

    def get_run(self, run_id: str) -> ProvisioningRun | None:
        with self._lock:
            self._prune_locked()
            return self._runs.get(run_id)

    def list_runs(self) -> list[ProvisioningRun]:
        with self._lock:
            self._prune_locked()
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    def shutdown(self, timeout: float = 1.0) -> None:
        with self._lock:
            runs = list(self._runs.values())
            threads = list(self._threads.values())
        for run in runs:
            if not run.done:
                run.cancel()
        for thread in threads:
            thread.join(timeout=timeout)

    def _prune_locked(self) -> None:
        now = self.clock()
        expired = [
            run_id
            for run_id, finished in self._finished_at.items()
            if now - finished >= self.settings.run_retention_sec
        ]
        for run_id in expired:
            self._runs.pop(run_id, None)
            self._threads.pop(run_id, None)
            self._finished_at.pop(run_id, None)

    def execute(self, run: ProvisioningRun) -> ProvisioningRun:
        try:
            payload = self._generate_config(run)
            self._create(run, payload)
            self._start(run)
            self._await_init(run)
            address = self._resolve_address(run)
        except ProvisioningError as exc:
            self._mark_finished(run)
            self._record_failure(run, exc)
        except Exception as exc:  # noqa: BLE001
            phase = run.phase or ProvisioningPhase.GENERATE_CONFIG
            self._mark_finished(run)
            self._record_failure(
                run,
                self._error(run, phase, f"unexpected error: {exc}", resource_created=None),
            )
        else:
            self._mark_finished(run)
            run.succeed(address)
            logger.info(
                "provisioning succeeded run_id=%s hostname=%s address=%s",
                run.run_id,
                run.hostname,
                address,
            )
        return run

    def _mark_finished(self, run: ProvisioningRun) -> None:
        # Stamped before the run turns terminal so waiters see a prunable run.
        with self._lock:
            if run.run_id in self._runs:
                self._finished_at[run.run_id] = self.clock()

    def _record_failure(self, run: ProvisioningRun, error: ProvisioningError) -> None:
        metrics.inc("provisioning_runs_failed_total")
        logger.error(
            "provisioning phase failed run_id=%s hostname=%s phase=%s resource_created=%s reason=%s",
            run.run_id,
            run.hostname,
            error.phase,
            error.resource_created,
            error.reason,
        )
        run.fail(error)

    def _error(
        self,
        run: ProvisioningRun,
        phase: ProvisioningPhase,
        reason: str,
        resource_created: bool | None,
    ) -> ProvisioningError:
        return ProvisioningError(
            run_id=run.run_id,
            hostname=run.hostname,
            phase=phase.value,
            reason=reason,
            resource_created=resource_created,
        )

    def _enter(
        self, run: ProvisioningRun, phase: ProvisioningPhase, resource_created: bool | None
    ) -> None:
        run.enter(phase)
        logger.info(
            "provisioning phase started run_id=%s hostname=%s phase=%s",
            run.run_id,
            run.hostname,
            phase.value,
        )
        if run.cancelled:
            raise self._error(run, phase, "cancelled", resource_created)

    def _generate_config(self, run: ProvisioningRun) -> dict:
        phase = ProvisioningPhase.GENERATE_CONFIG
        self._enter(run, phase, resource_created=False)
        try:
            run.warnings = validate_request(run.request)
        except ValidationError as exc:
            raise self._error(run, phase, str(exc), resource_created=False) from exc
        for warning in run.warnings:
            logger.warning(
                "provisioning request warning run_id=%s hostname=%s: %s",
                run.run_id,
                run.hostname,
                warning,
            )
        payload = build_deploy_payload(run.request)
        run.complete(f"flavor={payload['flavor']}")
        return payload

    def _create(self, run: ProvisioningRun, payload: dict) -> None:
        phase = ProvisioningPhase.CREATE
        self._enter(run, phase, resource_created=False)
        try:
            run.resource_name = self.backend.create_resource(
                payload, timeout=self.settings.create_timeout_sec
            )
        except RemoteRejected as exc:
            # A 4xx is the backend refusing the request outright; anything
            # else may have left a half-built domain behind.
            refused = exc.status_code is not None and 400 <= exc.status_code < 500
            raise self._error(
                run, phase, exc.detail, resource_created=False if refused else None
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise self._error(run, phase, str(exc), resource_created=None) from exc
        run.complete(f"resource={run.resource_name}")

    def _start(self, run: ProvisioningRun) -> None:
        phase = ProvisioningPhase.START
        self._enter(run, phase, resource_created=True)
        try:
            self.backend.start(run.resource_name, timeout=self.settings.start_timeout_sec)
        except Exception as exc:  # noqa: BLE001
            detail = getattr(exc, "detail", None) or str(exc)
            raise self._error(run, phase, detail, resource_created=True) from exc
        run.complete()

    def _await_init(self, run: ProvisioningRun) -> None:
        phase = ProvisioningPhase.AWAIT_INIT
        self._enter(run, phase, resource_created=True)
        ceiling = self.settings.await_init_for(run.request.flavor)
        if ceiling > 0 and run.interruptible_wait(ceiling):
            raise self._error(run, phase, "cancelled", resource_created=True)
        run.complete(f"waited={ceiling}s")

    def _resolve_address(self, run: ProvisioningRun) -> str | None:
        phase = ProvisioningPhase.RESOLVE_ADDRESS
        self._enter(run, phase, resource_created=True)
        name = run.resource_name
        outcome = self.poller.poll(
            lambda: self.backend.get_resource_address(name),
            interval_sec=self.settings.address_interval_sec,
            timeout_sec=self.settings.address_timeout_sec,
            sleep=run.interruptible_wait,
        )
        run.poll_attempts = outcome.attempts
        if outcome.cancelled:
            raise self._error(run, phase, "cancelled", resource_created=True)
        if outcome.timed_out:
            metrics.inc("provisioning_address_timeouts_total")
            logger.warning(
                "address not resolved run_id=%s hostname=%s attempts=%s elapsed=%.1fs",
                run.run_id,
                run.hostname,
                outcome.attempts,
                outcome.elapsed_sec,
            )
            run.complete("address unknown")
            return None
        run.complete(f"address={outcome.value}")
        return outcome.value
