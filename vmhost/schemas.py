"""Request and response bodies of the agent HTTP API."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from vmhost.domain_builder import CPUMode
from vmhost.hypervisor import WorkloadState


class OperationResponse(BaseModel):
    success: bool = True
    message: str = ""


class ErrorResponse(BaseModel):
    error: str  # error class name, e.g. "PreconditionError"
    detail: str


class HealthResponse(BaseModel):
    status: str = "ok"
    agent_id: str
    version: str
    commit: str
    timestamp: datetime


# --- Topology & pinning ---

class PhysicalCoreModel(BaseModel):
    index: int
    siblings: list[int]


class SocketModel(BaseModel):
    socket_id: int
    cpus: list[int]
    cores: list[PhysicalCoreModel]


class TopologyResponse(BaseModel):
    sockets: list[SocketModel]


class PinningRequestModel(BaseModel):
    """Pin a workload to a range of physical cores on one socket."""
    socket_id: int = 0
    core_range_start: int
    core_range_end: int
    hyperthreading: bool = False


class VCPUPinModel(BaseModel):
    vcpu: int
    cpuset: list[int]


class PinningPlanResponse(BaseModel):
    pins: list[VCPUPinModel]
    emulator_cpuset: str
    cputune_xml: str


class PinningResponse(BaseModel):
    name: str
    pinned: bool
    pins: list[VCPUPinModel] = Field(default_factory=list)
    socket_id: int | None = None
    core_range_start: int | None = None
    core_range_end: int | None = None
    hyperthreading: bool = False


# --- Workloads ---

class WorkloadStateResponse(BaseModel):
    name: str
    state: WorkloadState


class WorkloadListResponse(BaseModel):
    workloads: list[WorkloadStateResponse]


class DescriptionResponse(BaseModel):
    name: str
    xml: str


class ReplaceDescriptionRequest(BaseModel):
    xml: str


class CreateWorkloadRequest(BaseModel):
    name: str
    memory_mb: int
    vcpus: int
    disk: str  # file name under qcow2/ or an absolute path
    disk_size_gb: int = 0  # required when the disk does not exist yet
    iso: str = ""
    network: str | None = None
    graphics_listen: str | None = None
    vnc_password: str = ""
    cpu_mode: CPUMode = CPUMode.HOST_PASSTHROUGH
    cpu_model: str = ""
    disabled_features: list[str] = Field(default_factory=list)
    cpu_xml: str = ""
    machine: str = ""


class CreateWorkloadResponse(BaseModel):
    name: str
    uuid: str
    disk_path: str
    disk_format: str
    description_path: str


class RemoveWorkloadResponse(OperationResponse):
    removed: list[str] = Field(default_factory=list)


class ToggleRequest(BaseModel):
    enabled: bool


class BalloonStateResponse(BaseModel):
    name: str
    enabled: bool
    has_memballoon: bool
    model: str
    memory_locked: bool


class HugePagesStateResponse(BaseModel):
    name: str
    enabled: bool
    has_memory_backing: bool
    memory_locked: bool


class VNCPasswordRequest(BaseModel):
    password: str


# --- Migration ---

class SSHOptionsModel(BaseModel):
    identity_file: str = ""
    known_hosts_file: str = ""
    skip_host_key_check: bool = False
    extra_params: dict[str, str] = Field(default_factory=dict)


class MigrationRequest(BaseModel):
    dest_uri: str
    source_uri: str | None = None
    live: bool = True
    timeout: float = 0  # seconds before a live guest is paused; 0 disables
    ssh: SSHOptionsModel = Field(default_factory=SSHOptionsModel)


class MigrationStatusResponse(BaseModel):
    workload: str
    dest_uri: str
    live: bool
    state: Literal["running", "finished", "failed", "cancelled"]
    percent: float | None = None
    memory_total: int = 0
    memory_processed: int = 0
    error: str | None = None


class ColdMigrationModel(BaseModel):
    """Released workload data handed from the source to the destination."""
    name: str
    memory_mb: int
    vcpus: int
    network: str
    disk_path: str
    vnc_password: str = ""
    cpu_xml: str = ""


# --- Host tuning ---

class CoreIsolationSelectionModel(BaseModel):
    socket_id: int
    core_indices: list[int]


class CoreIsolationRequest(BaseModel):
    selections: list[CoreIsolationSelectionModel]


class SocketIsolationModel(BaseModel):
    socket_id: int
    total_physical_cores: int
    max_isolatable_cores: int
    isolated_core_indices: list[int]


class CoreIsolationResponse(BaseModel):
    enabled: bool
    reboot_required: bool
    configured_value: str
    active_value: str
    message: str = ""
    isolcpus: str = ""
    nohz_full: str = ""
    rcu_nocbs: str = ""
    active_isolcpus: str = ""
    configured_cpus: list[int] = Field(default_factory=list)
    active_cpus: list[int] = Field(default_factory=list)
    sockets: list[SocketIsolationModel] = Field(default_factory=list)


class HostHugePagesRequest(BaseModel):
    page_size: str  # e.g. "2M", "1G"
    page_count: int


class HostHugePagesResponse(BaseModel):
    enabled: bool
    reboot_required: bool
    configured_value: str
    active_value: str
    message: str = ""
    page_size: str = ""
    page_count: int = 0
    active_page_size: str = ""
    active_page_count: int = 0
    raw_configured: dict[str, str] = Field(default_factory=dict)
    raw_active: dict[str, str] = Field(default_factory=dict)


class IrqBalanceResponse(BaseModel):
    enabled: bool
    active: bool
    unit: str


class TunedProfileModel(BaseModel):
    name: str
    description: str = ""
    active: bool = False


class TunedProfilesResponse(BaseModel):
    profiles: list[TunedProfileModel]
    current: str = ""


class TunedProfileRequest(BaseModel):
    profile: str
