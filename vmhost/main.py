"""VM Host Agent - per-host hypervisor resource and migration agent.

This agent runs on each hypervisor host and handles:
- Workload lifecycle and hardware-description edits via libvirt
- vCPU pinning plans and host core isolation
- Host huge pages, irqbalance and tuned profiles
- Live and cold migration with progress events to the controller
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from vmhost.config import settings
from vmhost.errors import (
    ConflictError,
    DescriptionParseError,
    ExternalError,
    MigrationCancelled,
    NotFoundError,
    PreconditionError,
    PrivilegeError,
    ShutdownTimeout,
    StructureError,
    ToolMissing,
    ValidationError,
    VMHostError,
)
from vmhost.host_services import IrqBalance, Tuned
from vmhost.lifecycle import CreateOptions, CreateResult, LifecycleController
from vmhost.logging_config import setup_agent_logging
from vmhost.metrics import get_metrics
from vmhost.migration import (
    ColdMigrationInfo,
    MigrationEngine,
    MigrationJob,
    MigrationRegistry,
    SSHOptions,
)
from vmhost.notifications import ControllerSink, LoggingSink, NotificationSink
from vmhost.pinning import (
    CoreIsolationSelection,
    PinningRequest,
    build_cputune_description,
    build_vcpu_pins,
    emulator_cpuset,
)
from vmhost.schemas import (
    BalloonStateResponse,
    ColdMigrationModel,
    CoreIsolationRequest,
    CoreIsolationResponse,
    CreateWorkloadRequest,
    CreateWorkloadResponse,
    DescriptionResponse,
    ErrorResponse,
    HealthResponse,
    HostHugePagesRequest,
    HostHugePagesResponse,
    HugePagesStateResponse,
    IrqBalanceResponse,
    MigrationRequest,
    MigrationStatusResponse,
    OperationResponse,
    PhysicalCoreModel,
    PinningPlanResponse,
    PinningRequestModel,
    PinningResponse,
    RemoveWorkloadResponse,
    ReplaceDescriptionRequest,
    SocketModel,
    ToggleRequest,
    TopologyResponse,
    TunedProfileRequest,
    TunedProfilesResponse,
    VCPUPinModel,
    VNCPasswordRequest,
    WorkloadListResponse,
    WorkloadStateResponse,
)
from vmhost.topology import Socket, discover_topology, format_cpu_list
from vmhost.tuning import HugePagesSpec, KernelTuner
from vmhost.version import __version__, get_commit

# Generate agent ID if not configured
AGENT_ID = settings.agent_id or str(uuid.uuid4())[:8]

setup_agent_logging(AGENT_ID)

logger = logging.getLogger(__name__)


# --- Component accessors (patched in tests) ---

def get_topology() -> list[Socket]:
    return discover_topology()


def get_lifecycle() -> LifecycleController:
    return LifecycleController(topology=get_topology)


def get_tuner() -> KernelTuner:
    return KernelTuner(topology=get_topology)


def get_irqbalance() -> IrqBalance:
    return IrqBalance()


def get_tuned() -> Tuned:
    return Tuned()


def get_sink() -> NotificationSink:
    if settings.notifications_enabled:
        return ControllerSink(AGENT_ID)
    return LoggingSink()


def get_migration_engine() -> MigrationEngine:
    return MigrationEngine(sink=get_sink())


# In-flight live migrations and the last result per workload
_migrations = MigrationRegistry()
_migration_tasks: dict[str, asyncio.Task] = {}
_migration_results: dict[str, MigrationStatusResponse] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - cancel in-flight migrations on shutdown."""
    logger.info(f"Agent {AGENT_ID} starting (version {__version__})")
    logger.info(f"Hypervisor URI: {settings.libvirt_uri}")
    logger.info(f"Controller URL: {settings.controller_url}")

    yield

    for name in list(_migration_tasks):
        _migrations.cancel(name)
    tasks = list(_migration_tasks.values())
    if tasks:
        logger.warning(f"Cancelling {len(tasks)} in-flight migration(s)")
        await asyncio.gather(*tasks, return_exceptions=True)

    logger.info(f"Agent {AGENT_ID} shutting down")


app = FastAPI(
    title="VM Host Agent",
    version=__version__,
    lifespan=lifespan,
)


# --- Error mapping ---

_ERROR_STATUS: list[tuple[type[VMHostError], int]] = [
    (ValidationError, 400),
    (StructureError, 400),
    (DescriptionParseError, 400),
    (NotFoundError, 404),
    (PreconditionError, 409),
    (ConflictError, 409),
    (MigrationCancelled, 409),
    (PrivilegeError, 403),
    (ToolMissing, 501),
    (ExternalError, 502),
    (ShutdownTimeout, 504),
]


def status_for(exc: VMHostError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(VMHostError)
async def vmhost_error_handler(request: Request, exc: VMHostError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=type(exc).__name__, detail=str(exc)).model_dump(),
    )


# --- Health Endpoints ---

@app.get("/health", response_model=HealthResponse)
def health():
    """Basic health check."""
    return HealthResponse(
        agent_id=AGENT_ID,
        version=__version__,
        commit=get_commit(),
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


# --- Topology & Pinning ---

@app.get("/host/topology", response_model=TopologyResponse)
async def host_topology():
    sockets = await asyncio.to_thread(get_topology)
    return TopologyResponse(sockets=[
        SocketModel(
            socket_id=socket.socket_id,
            cpus=[cpu.id for cpu in socket.cpus],
            cores=[
                PhysicalCoreModel(index=core.index, siblings=list(core.siblings))
                for core in socket.physical_cores()
            ],
        )
        for socket in sockets
    ])


def _pinning_request(body: PinningRequestModel) -> PinningRequest:
    return PinningRequest(
        core_range_start=body.core_range_start,
        core_range_end=body.core_range_end,
        hyperthreading=body.hyperthreading,
        socket_id=body.socket_id,
    )


@app.post("/host/pinning/plan", response_model=PinningPlanResponse)
async def pinning_plan(body: PinningRequestModel):
    """Validate a pinning request and return the plan without applying it."""
    sockets = await asyncio.to_thread(get_topology)
    pins = build_vcpu_pins(_pinning_request(body), sockets)
    return PinningPlanResponse(
        pins=[VCPUPinModel(vcpu=p.vcpu, cpuset=list(p.cpuset)) for p in pins],
        emulator_cpuset=format_cpu_list(emulator_cpuset(pins)),
        cputune_xml=build_cputune_description(pins),
    )


# --- Host Tuning ---

@app.get("/host/core-isolation", response_model=CoreIsolationResponse)
async def get_core_isolation():
    state = await asyncio.to_thread(get_tuner().get_core_isolation)
    return CoreIsolationResponse(**asdict(state))


@app.put("/host/core-isolation", response_model=CoreIsolationResponse)
async def set_core_isolation(body: CoreIsolationRequest):
    selections = [
        CoreIsolationSelection(socket_id=s.socket_id, core_indices=tuple(s.core_indices))
        for s in body.selections
    ]
    state = await asyncio.to_thread(get_tuner().set_core_isolation, selections)
    return CoreIsolationResponse(**asdict(state))


@app.delete("/host/core-isolation", response_model=CoreIsolationResponse)
async def remove_core_isolation():
    state = await asyncio.to_thread(get_tuner().remove_core_isolation)
    return CoreIsolationResponse(**asdict(state))


@app.get("/host/hugepages", response_model=HostHugePagesResponse)
async def get_host_hugepages():
    state = await asyncio.to_thread(get_tuner().get_hugepages)
    return HostHugePagesResponse(**asdict(state))


@app.put("/host/hugepages", response_model=HostHugePagesResponse)
async def set_host_hugepages(body: HostHugePagesRequest):
    spec = HugePagesSpec(page_size=body.page_size, page_count=body.page_count)
    state = await asyncio.to_thread(get_tuner().set_hugepages, spec)
    return HostHugePagesResponse(**asdict(state))


@app.delete("/host/hugepages", response_model=HostHugePagesResponse)
async def remove_host_hugepages():
    state = await asyncio.to_thread(get_tuner().remove_hugepages)
    return HostHugePagesResponse(**asdict(state))


@app.get("/host/irqbalance", response_model=IrqBalanceResponse)
async def get_irqbalance_state():
    state = await asyncio.to_thread(get_irqbalance().get_state)
    return IrqBalanceResponse(**asdict(state))


@app.put("/host/irqbalance", response_model=IrqBalanceResponse)
async def set_irqbalance_state(body: ToggleRequest):
    state = await asyncio.to_thread(get_irqbalance().set_enabled, body.enabled)
    return IrqBalanceResponse(**asdict(state))


@app.get("/host/tuned", response_model=TunedProfilesResponse)
async def get_tuned_profiles():
    profiles = await asyncio.to_thread(get_tuned().list_profiles)
    return TunedProfilesResponse(**asdict(profiles))


@app.put("/host/tuned", response_model=TunedProfilesResponse)
async def set_tuned_profile(body: TunedProfileRequest):
    profiles = await asyncio.to_thread(get_tuned().set_profile, body.profile)
    return TunedProfilesResponse(**asdict(profiles))


# --- Workload Lifecycle ---

def _created(result: CreateResult) -> CreateWorkloadResponse:
    return CreateWorkloadResponse(
        name=result.name,
        uuid=result.uuid,
        disk_path=str(result.disk_path),
        disk_format=result.disk_format,
        description_path=str(result.description_path),
    )


@app.get("/workloads", response_model=WorkloadListResponse)
async def list_workloads():
    workloads = await asyncio.to_thread(get_lifecycle().list_workloads)
    return WorkloadListResponse(workloads=[
        WorkloadStateResponse(name=w.name, state=w.state) for w in workloads
    ])


@app.post("/workloads", response_model=CreateWorkloadResponse, status_code=201)
async def create_workload(body: CreateWorkloadRequest):
    options = CreateOptions(
        name=body.name,
        memory_mb=body.memory_mb,
        vcpus=body.vcpus,
        disk=body.disk,
        disk_size_gb=body.disk_size_gb,
        iso=body.iso,
        vnc_password=body.vnc_password,
        cpu_mode=body.cpu_mode,
        cpu_model=body.cpu_model,
        disabled_features=list(body.disabled_features),
        cpu_xml=body.cpu_xml,
        machine=body.machine,
    )
    if body.network is not None:
        options.network = body.network
    if body.graphics_listen is not None:
        options.graphics_listen = body.graphics_listen
    result = await asyncio.to_thread(get_lifecycle().create, options)
    return _created(result)


@app.get("/workloads/{name}", response_model=WorkloadStateResponse)
async def get_workload_state(name: str):
    state = await asyncio.to_thread(get_lifecycle().get_state, name)
    return WorkloadStateResponse(name=name, state=state)


@app.delete("/workloads/{name}", response_model=RemoveWorkloadResponse)
async def remove_workload(name: str):
    """Destroy, undefine and delete the workload's disk and descriptions."""
    removed = await asyncio.to_thread(get_lifecycle().remove, name)
    return RemoveWorkloadResponse(
        message=f"workload {name} removed",
        removed=[str(path) for path in removed],
    )


@app.get("/workloads/{name}/description", response_model=DescriptionResponse)
async def get_description(name: str):
    xml = await asyncio.to_thread(get_lifecycle().get_description, name)
    return DescriptionResponse(name=name, xml=xml)


@app.put("/workloads/{name}/description", response_model=DescriptionResponse)
async def replace_description(name: str, body: ReplaceDescriptionRequest):
    xml = await asyncio.to_thread(get_lifecycle().replace_description, name, body.xml)
    return DescriptionResponse(name=name, xml=xml)


@app.get("/workloads/{name}/hugepages", response_model=HugePagesStateResponse)
async def get_workload_hugepages(name: str):
    state = await asyncio.to_thread(get_lifecycle().get_hugepages, name)
    return HugePagesStateResponse(name=name, **asdict(state))


@app.put("/workloads/{name}/hugepages", response_model=HugePagesStateResponse)
async def set_workload_hugepages(name: str, body: ToggleRequest):
    state = await asyncio.to_thread(get_lifecycle().set_hugepages, name, body.enabled)
    return HugePagesStateResponse(name=name, **asdict(state))


@app.get("/workloads/{name}/memory-balloon", response_model=BalloonStateResponse)
async def get_memory_balloon(name: str):
    state = await asyncio.to_thread(get_lifecycle().get_memory_balloon, name)
    return BalloonStateResponse(name=name, **asdict(state))


@app.put("/workloads/{name}/memory-balloon", response_model=BalloonStateResponse)
async def set_memory_balloon(name: str, body: ToggleRequest):
    state = await asyncio.to_thread(get_lifecycle().set_memory_balloon, name, body.enabled)
    return BalloonStateResponse(name=name, **asdict(state))


@app.put("/workloads/{name}/vnc-password", response_model=OperationResponse)
async def change_vnc_password(name: str, body: VNCPasswordRequest):
    await asyncio.to_thread(get_lifecycle().change_vnc_password, name, body.password)
    return OperationResponse(message=f"VNC password of {name} updated")


def _pinning_response(name: str, info) -> PinningResponse:
    if info is None:
        return PinningResponse(name=name, pinned=False)
    return PinningResponse(
        name=name,
        pinned=True,
        pins=[VCPUPinModel(vcpu=p.vcpu, cpuset=list(p.cpuset)) for p in info.pins],
        socket_id=info.socket_id,
        core_range_start=info.core_range_start,
        core_range_end=info.core_range_end,
        hyperthreading=info.hyperthreading,
    )


@app.get("/workloads/{name}/pinning", response_model=PinningResponse)
async def get_pinning(name: str):
    info = await asyncio.to_thread(get_lifecycle().get_pinning, name)
    return _pinning_response(name, info)


@app.put("/workloads/{name}/pinning", response_model=PinningResponse)
async def apply_pinning(name: str, body: PinningRequestModel):
    info = await asyncio.to_thread(get_lifecycle().apply_pinning, name, _pinning_request(body))
    return _pinning_response(name, info)


@app.delete("/workloads/{name}/pinning", response_model=PinningResponse)
async def remove_pinning(name: str):
    await asyncio.to_thread(get_lifecycle().remove_pinning, name)
    return PinningResponse(name=name, pinned=False)


# --- Migration ---

def _status(job: MigrationJob, state: str, error: str | None = None) -> MigrationStatusResponse:
    progress = job.progress()
    return MigrationStatusResponse(
        workload=job.workload,
        dest_uri=job.dest_uri,
        live=job.live,
        state=state,
        percent=progress.percent,
        memory_total=progress.memory_total,
        memory_processed=progress.memory_processed,
        error=error,
    )


async def _run_migration(job: MigrationJob, cancel: asyncio.Event) -> None:
    state, error = "failed", None
    try:
        await get_migration_engine().migrate(job, cancel)
        state = "finished"
    except MigrationCancelled:
        state = "cancelled"
    except asyncio.CancelledError:
        state = "cancelled"
        raise
    except Exception as e:
        error = str(e)
        logger.error(f"Migration of {job.workload} failed: {e}")
    finally:
        _migration_results[job.workload] = _status(job, state, error)
        _migration_tasks.pop(job.workload, None)
        _migrations.release(job.workload)


@app.post("/workloads/{name}/migration", response_model=MigrationStatusResponse, status_code=202)
async def start_migration(name: str, body: MigrationRequest):
    """Start a migration in the background; poll GET for progress."""
    job = MigrationJob(
        workload=name,
        dest_uri=body.dest_uri,
        live=body.live,
        timeout=body.timeout,
        ssh=SSHOptions(**body.ssh.model_dump()),
    )
    if body.source_uri:
        job.source_uri = body.source_uri
    await get_migration_engine().preflight(job)

    cancel = _migrations.register(job)
    _migration_results.pop(name, None)
    _migration_tasks[name] = asyncio.create_task(_run_migration(job, cancel))
    return _status(job, "running")


@app.get("/workloads/{name}/migration", response_model=MigrationStatusResponse)
async def get_migration(name: str):
    job = _migrations.get(name)
    if job is not None:
        return _status(job, "running")
    if name in _migration_results:
        return _migration_results[name]
    raise HTTPException(status_code=404, detail=f"No migration recorded for workload {name}")


@app.delete("/workloads/{name}/migration", response_model=OperationResponse)
async def cancel_migration(name: str):
    if not _migrations.cancel(name):
        raise HTTPException(status_code=404, detail=f"No migration in flight for workload {name}")
    logger.info(f"Cancellation requested for migration of {name}")
    return OperationResponse(message=f"cancellation of {name} migration requested")


@app.post("/workloads/{name}/cold-release", response_model=ColdMigrationModel)
async def cold_release(name: str):
    """Drop the workload from this host, keeping its disk, for cold migration."""
    info = await asyncio.to_thread(get_migration_engine().cold_release, name)
    return ColdMigrationModel(**asdict(info))


@app.post("/cold-migration/adopt", response_model=CreateWorkloadResponse, status_code=201)
async def cold_adopt(body: ColdMigrationModel):
    """Define and start a workload released by another host."""
    info = ColdMigrationInfo(**body.model_dump())
    result = await asyncio.to_thread(get_migration_engine().cold_adopt, info, get_lifecycle())
    return _created(result)


# Declared last so the fixed /workloads/{name}/... routes above take precedence
_POWER_ACTIONS = {
    "start": ("start", "started"),
    "shutdown": ("shutdown", "shut down"),
    "force-shutdown": ("force_shutdown", "powered off"),
    "pause": ("pause", "paused"),
    "resume": ("resume", "resumed"),
    "restart": ("restart", "restarted"),
    "destroy": ("destroy_and_undefine", "destroyed and undefined"),
    "undefine": ("undefine", "undefined"),
}


@app.post("/workloads/{name}/{action}", response_model=OperationResponse)
async def workload_action(name: str, action: str):
    if action not in _POWER_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")
    method, verb = _POWER_ACTIONS[action]
    await asyncio.to_thread(getattr(get_lifecycle(), method), name)
    return OperationResponse(message=f"workload {name} {verb}")
