from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProvisioningRequest(BaseModel):
    """Immutable description of one VM to provision.

    Field types are enforced on construction; the semantic rules (sizing
    bounds, credential exclusivity, naming) are checked by the
    GenerateConfig phase so a bad request fails as a run, not as a
    constructor error.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    hostname: str
    memory_mb: int | None = None
    vcpus: int | None = None
    disk_gb: int | None = None
    os_variant: str = "ubuntu22.04"
    network: str = "default"
    username: str = "ubuntu"
    password: str | None = None
    ssh_key: str | None = None
    flavor: str = "medium"


class MemoryStats(_WireModel):
    used: int = 0
    max: int = 0
    percent: float = 0.0


class DiskStats(_WireModel):
    read_mb: float = Field(default=0.0, alias="readMB")
    write_mb: float = Field(default=0.0, alias="writeMB")


class NetworkStats(_WireModel):
    rx_mb: float = Field(default=0.0, alias="rxMB")
    tx_mb: float = Field(default=0.0, alias="txMB")


class ResourceStats(_WireModel):
    cpu: float = 0.0
    memory: MemoryStats = Field(default_factory=MemoryStats)
    disk: DiskStats = Field(default_factory=DiskStats)
    network: NetworkStats = Field(default_factory=NetworkStats)

    @property
    def memory_percent(self) -> float:
        if self.memory.percent:
            return float(self.memory.percent)
        if self.memory.max > 0:
            return self.memory.used * 100.0 / self.memory.max
        return 0.0


class ResourceSummary(_WireModel):
    name: str
    state: str = "unknown"
    running: bool = False
    stats: ResourceStats | None = None


class ResourceStatus(_WireModel):
    state: str = "unknown"
    running: bool = False


class SnapshotRecord(_WireModel):
    name: str
    creation_time: str = Field(default="Unknown", alias="creationTime")
    description: str | None = None
    state: str | None = None


class ConsoleEndpoint(_WireModel):
    host: str
    port: int
    display: int | str

    @property
    def connection_string(self) -> str:
        return f"{self.host}:{self.display}"


class OperationResult(_WireModel):
    output: str | None = None
    message: str | None = None
    warning: str | None = None
    steps: list[str] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    confirm: bool = False


class DeleteResourceRequest(BaseModel):
    confirm: bool = False
    confirm_name: str = ""
    remove_disks: bool = True


class SnapshotCreateRequest(BaseModel):
    snapshot_name: str = Field(pattern=r"^[A-Za-z0-9_-]+$")
    description: str = "Created via vm-orchestrator"


class CloneRequest(BaseModel):
    clone_name: str = Field(pattern=r"^[A-Za-z0-9_-]+$")


class PhaseTransitionRead(BaseModel):
    phase: str
    status: str
    detail: str | None
    at: datetime


class ProvisioningRunRead(BaseModel):
    run_id: str
    hostname: str
    state: str
    phase: str | None
    address: str | None
    failed_phase: str | None
    reason: str | None
    resource_created: bool | None
    warnings: list[str]
    connect_hint: str | None
    transitions: list[PhaseTransitionRead]


class FocusRead(BaseModel):
    name: str | None
    state: str | None
    running: bool | None
    monitoring: bool
    detail: str | None
    snapshots: list[SnapshotRecord]


class ResourceListRead(BaseModel):
    resources: list[ResourceSummary]
    running_count: int
    total_count: int


class ActionResponse(BaseModel):
    performed: bool
    result: OperationResult | None = None
    focus: FocusRead


class ConsoleRead(BaseModel):
    host: str
    port: int
    display: int | str
    connection_string: str


class TelemetrySampleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    cpu_percent: float
    memory_used_kb: int
    memory_max_kb: int
    memory_percent: float
    disk_read_mb: float
    disk_write_mb: float
    net_rx_mb: float
    net_tx_mb: float


class SeriesPoint(BaseModel):
    label: str
    value: float


class TelemetryRead(BaseModel):
    resource_id: str
    samples_appended: int
    failures: int
    latest: TelemetrySampleRead | None
    series: dict[str, list[SeriesPoint]]
