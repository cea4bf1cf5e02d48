from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ProvisioningPhase(str, Enum):
    GENERATE_CONFIG = "GenerateConfig"
    CREATE = "Create"
    START = "Start"
    AWAIT_INIT = "AwaitInit"
    RESOLVE_ADDRESS = "ResolveAddress"


PHASE_ORDER: tuple[ProvisioningPhase, ...] = tuple(ProvisioningPhase)


class RunState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


TERMINAL_RUN_STATES = {RunState.SUCCEEDED, RunState.FAILED}


class PhaseStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class VMState(str, Enum):
    RUNNING = "Running"
    PAUSED = "Paused"
    SHUT_OFF = "ShutOff"

    @classmethod
    def from_backend(cls, raw: str | None, running: bool = False) -> "VMState":
        normalized = (raw or "").strip().lower().replace("_", " ")
        if running or normalized == "running":
            return cls.RUNNING
        if normalized in {"paused", "suspended", "pmsuspended"}:
            return cls.PAUSED
        return cls.SHUT_OFF


@dataclass(frozen=True)
class PhaseTransition:
    run_id: str
    phase: ProvisioningPhase
    status: PhaseStatus
    at: datetime
    detail: str | None = None


@dataclass(frozen=True)
class TelemetrySample:
    timestamp: datetime
    cpu_percent: float
    memory_used_kb: int
    memory_max_kb: int
    memory_percent: float
    disk_read_mb: float
    disk_write_mb: float
    net_rx_mb: float
    net_tx_mb: float

    @property
    def label(self) -> str:
        return self.timestamp.strftime("%H:%M:%S")
