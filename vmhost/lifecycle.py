"""Workload lifecycle controller.

Every operation opens its own hypervisor connection, checks the
workload's current state against the operation's precondition and only
then issues mutating calls. A failed precondition raises
:class:`PreconditionError` before anything is changed.

Callers serialize operations per workload; the controller itself does
not lock.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, TypeVar

from vmhost import surgery
from vmhost.config import settings
from vmhost.domain_builder import (
    CPUMode,
    WorkloadSpec,
    build_domain_xml,
    cpu_description_for,
    validate_cpu_description,
)
from vmhost.errors import (
    ExternalError,
    NotFoundError,
    PreconditionError,
    ShutdownTimeout,
    ValidationError,
)
from vmhost.hypervisor import (
    DESTROYABLE_STATES,
    OFFLINE_STATES,
    Hypervisor,
    HypervisorFactory,
    ShutdownMode,
    WorkloadState,
    open_hypervisor,
)
from vmhost.metrics import track_operation
from vmhost.pinning import (
    PinningInfo,
    PinningRequest,
    apply_pinning,
    read_pinning,
    remove_pinning,
    validate_pinning,
)
from vmhost.storage import StorageLayout, ensure_disk, require_file
from vmhost.topology import Socket, discover_topology

logger = logging.getLogger(__name__)

T = TypeVar("T")

STARTABLE_STATES = (WorkloadState.SHUT_OFF, WorkloadState.SHUTTING_DOWN, WorkloadState.CRASHED)


@dataclass
class WorkloadInfo:
    name: str
    state: WorkloadState


@dataclass
class CreateOptions:
    """Creation request as received from the operator."""

    name: str
    memory_mb: int
    vcpus: int
    disk: str
    disk_size_gb: int = 0
    iso: str = ""
    network: str = field(default_factory=lambda: settings.default_network)
    graphics_listen: str = field(default_factory=lambda: settings.graphics_listen)
    vnc_password: str = ""
    cpu_mode: CPUMode = CPUMode.HOST_PASSTHROUGH
    cpu_model: str = ""
    disabled_features: list[str] = field(default_factory=list)
    cpu_xml: str = ""
    machine: str = ""


@dataclass
class CreateResult:
    name: str
    uuid: str
    disk_path: Path
    disk_format: str
    description_path: Path


class LifecycleController:
    """State-checked operations on a single host's workloads."""

    def __init__(
        self,
        connect: HypervisorFactory | None = None,
        layout: StorageLayout | None = None,
        topology: Callable[[], list[Socket]] | None = None,
        shutdown_timeout: float | None = None,
        poll_interval: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connect = connect or open_hypervisor
        self.layout = layout or StorageLayout()
        self._topology = topology or discover_topology
        self.shutdown_timeout = (
            settings.shutdown_timeout if shutdown_timeout is None else shutdown_timeout
        )
        self.poll_interval = (
            settings.shutdown_poll_interval if poll_interval is None else poll_interval
        )
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _domain(self, operation: str, name: str) -> Iterator[tuple[Hypervisor, object]]:
        with track_operation(operation), self._connect() as hv:
            yield hv, hv.lookup(name)

    @staticmethod
    def _require(
        hv: Hypervisor,
        dom,
        name: str,
        operation: str,
        allowed: Iterable[WorkloadState],
    ) -> WorkloadState:
        allowed = tuple(allowed)
        state = hv.state(dom)
        if state not in allowed:
            raise PreconditionError(operation, name, [s.value for s in allowed], state.value)
        return state

    def _wait_for_state(
        self, hv: Hypervisor, dom, name: str, target: WorkloadState, operation: str
    ) -> None:
        deadline = self._clock() + self.shutdown_timeout
        while True:
            if hv.state(dom) == target:
                return
            if self._clock() >= deadline:
                raise ShutdownTimeout(
                    f"{operation}: workload {name} did not reach {target.value} "
                    f"within {self.shutdown_timeout:g}s"
                )
            self._sleep(self.poll_interval)

    def _edit_offline(self, operation: str, name: str, edit: Callable[[str], tuple[str, T]]) -> T:
        """Apply a description edit to a shut-off workload and redefine it.

        An edit that leaves the description unchanged skips the redefine.
        """
        with self._domain(operation, name) as (hv, dom):
            self._require(hv, dom, name, operation, OFFLINE_STATES)
            xml = hv.xml_description(dom, inactive=True)
            updated, result = edit(xml)
            if updated == xml:
                logger.info("%s: workload %s already configured", operation, name)
                return result
            hv.define(updated)
            self.layout.snapshot_description(name, updated)
            logger.info("%s: workload %s redefined", operation, name)
            return result

    def _inspect(self, operation: str, name: str, read: Callable[[str], T]) -> T:
        with self._domain(operation, name) as (hv, dom):
            return read(hv.xml_description(dom, inactive=True))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, name: str) -> WorkloadState:
        with self._domain("get_state", name) as (hv, dom):
            return hv.state(dom)

    def list_workloads(self) -> list[WorkloadInfo]:
        with track_operation("list"), self._connect() as hv:
            return [WorkloadInfo(n, hv.state(hv.lookup(n))) for n in hv.list_names()]

    def get_description(self, name: str) -> str:
        return self._inspect("get_description", name, lambda xml: xml)

    # ------------------------------------------------------------------
    # Power state
    # ------------------------------------------------------------------

    def start(self, name: str) -> None:
        with self._domain("start", name) as (hv, dom):
            self._require(hv, dom, name, "start", STARTABLE_STATES)
            hv.create(dom)
            logger.info(f"Started workload {name}")

    def shutdown(self, name: str) -> None:
        """Graceful shutdown: guest agent first, then the ACPI power button.

        Polls until the workload is off or the deadline passes.
        """
        with self._domain("shutdown", name) as (hv, dom):
            state = hv.state(dom)
            if state == WorkloadState.SHUT_OFF:
                logger.info(f"Workload {name} already shut off")
                return
            if state not in DESTROYABLE_STATES + (WorkloadState.SHUTTING_DOWN,):
                raise PreconditionError(
                    "shutdown", name, [s.value for s in DESTROYABLE_STATES], state.value
                )
            if state == WorkloadState.PAUSED:
                hv.resume(dom)

            try:
                hv.shutdown(dom, ShutdownMode.GUEST_AGENT)
            except ExternalError as e:
                logger.warning(f"Guest agent shutdown of {name} failed, using ACPI: {e}")
                hv.shutdown(dom, ShutdownMode.ACPI)

            self._wait_for_state(hv, dom, name, WorkloadState.SHUT_OFF, "shutdown")
            logger.info(f"Workload {name} shut down")

    def force_shutdown(self, name: str) -> None:
        with self._domain("force_shutdown", name) as (hv, dom):
            self._require(hv, dom, name, "force_shutdown", DESTROYABLE_STATES)
            hv.destroy(dom)
            logger.info(f"Destroyed workload {name}")

    def pause(self, name: str) -> None:
        with self._domain("pause", name) as (hv, dom):
            self._require(hv, dom, name, "pause", [WorkloadState.RUNNING])
            hv.suspend(dom)

    def resume(self, name: str) -> None:
        with self._domain("resume", name) as (hv, dom):
            self._require(hv, dom, name, "resume", [WorkloadState.PAUSED])
            hv.resume(dom)

    def restart(self, name: str) -> None:
        """Hard restart: destroy, wait for shut off, start again."""
        with self._domain("restart", name) as (hv, dom):
            self._require(hv, dom, name, "restart", DESTROYABLE_STATES)
            hv.destroy(dom)
            self._wait_for_state(hv, dom, name, WorkloadState.SHUT_OFF, "restart")
            hv.create(dom)
            logger.info(f"Restarted workload {name}")

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    def destroy_and_undefine(self, name: str) -> None:
        """Power off if needed and drop the definition; disks are kept."""
        with self._domain("destroy_undefine", name) as (hv, dom):
            if hv.state(dom) in DESTROYABLE_STATES:
                hv.destroy(dom)
            hv.undefine(dom, cleanup=True)
            logger.info(f"Destroyed and undefined workload {name}")

    def undefine(self, name: str) -> None:
        """Drop the definition, powering the workload off first if it is up."""
        with self._domain("undefine", name) as (hv, dom):
            if hv.state(dom) in DESTROYABLE_STATES:
                hv.destroy(dom)
            hv.undefine(dom, cleanup=False)
            logger.info(f"Undefined workload {name}")

    def remove(self, name: str) -> list[Path]:
        """Destroy, undefine and delete the workload's disk and descriptions.

        Files are deleted only once the hypervisor has accepted the undefine.
        """
        with self._domain("remove", name) as (hv, dom):
            disk = surgery.disk_path(hv.xml_description(dom, inactive=True))
            if not disk:
                raise NotFoundError(f"remove: workload {name} has no file-backed disk")
            if hv.state(dom) in DESTROYABLE_STATES:
                hv.destroy(dom)
            hv.undefine(dom, cleanup=True)
        return self.layout.remove_workload_files(name, Path(disk))

    def replace_description(self, name: str, xml: str) -> str:
        """Redefine a shut-off workload from a full description."""
        with self._domain("replace_description", name) as (hv, dom):
            self._require(hv, dom, name, "replace_description", OFFLINE_STATES)
            updated = surgery.normalize_replacement(xml, name, hv.uuid(dom))
            hv.define(updated, validate=True)
            self.layout.snapshot_description(name, updated)
            logger.info(f"Replaced description of workload {name}")
            return updated

    def create(self, options: CreateOptions) -> CreateResult:
        """Build, persist, define and start a new workload."""
        if options.cpu_xml.strip():
            cpu_xml = validate_cpu_description(options.cpu_xml)
        else:
            cpu_xml = cpu_description_for(
                options.cpu_mode, options.cpu_model, options.disabled_features
            )
        disk_path = self.layout.resolve_disk(options.disk) if options.disk.strip() else None
        if disk_path is None:
            raise ValidationError("disk path is required")
        iso_path = self.layout.resolve_iso(options.iso) if options.iso.strip() else None

        spec = WorkloadSpec(
            name=options.name.strip(),
            memory_mb=options.memory_mb,
            vcpus=options.vcpus,
            disk_path=disk_path,
            disk_format="qcow2",
            network=options.network,
            cpu_xml=cpu_xml,
            iso_path=iso_path,
            graphics_listen=options.graphics_listen,
            vnc_password=options.vnc_password,
            machine=options.machine,
        )
        spec.validate()
        if options.vnc_password:
            surgery.validate_vnc_password(options.vnc_password)
        if iso_path is not None:
            require_file(iso_path, "install medium")

        with track_operation("create"), self._connect() as hv:
            try:
                hv.lookup(spec.name)
            except NotFoundError:
                pass
            else:
                raise ValidationError(f"workload {spec.name} already exists")

            self.layout.ensure_dirs()
            spec.disk_format = ensure_disk(disk_path, options.disk_size_gb)
            xml = build_domain_xml(spec)
            description_path = self.layout.write_description(spec.name, xml, disk_path)

            dom = hv.define(xml)
            hv.create(dom)
            logger.info(f"Created workload {spec.name} with disk {disk_path}")
            return CreateResult(
                name=spec.name,
                uuid=hv.uuid(dom),
                disk_path=disk_path,
                disk_format=spec.disk_format,
                description_path=description_path,
            )

    # ------------------------------------------------------------------
    # Hardware-description features
    # ------------------------------------------------------------------

    def get_hugepages(self, name: str) -> surgery.HugePagesState:
        return self._inspect("get_hugepages", name, surgery.inspect_hugepages)

    def set_hugepages(self, name: str, enable: bool) -> surgery.HugePagesState:
        return self._edit_offline(
            "set_hugepages", name, lambda xml: surgery.rewrite_hugepages(xml, enable)
        )

    def get_memory_balloon(self, name: str) -> surgery.BalloonState:
        return self._inspect("get_memory_balloon", name, surgery.inspect_memory_balloon)

    def set_memory_balloon(self, name: str, enable: bool) -> surgery.BalloonState:
        return self._edit_offline(
            "set_memory_balloon", name, lambda xml: surgery.rewrite_memory_balloon(xml, enable)
        )

    def change_vnc_password(self, name: str, password: str) -> None:
        surgery.validate_vnc_password(password)
        self._edit_offline(
            "change_vnc_password", name, lambda xml: (surgery.set_vnc_password(xml, password), None)
        )

    def apply_pinning(self, name: str, request: PinningRequest) -> PinningInfo | None:
        sockets = self._topology()
        validate_pinning(request, sockets)
        return self._edit_offline(
            "apply_pinning", name,
            lambda xml: self._pinned(apply_pinning(xml, request, sockets), sockets),
        )

    def remove_pinning(self, name: str) -> None:
        self._edit_offline("remove_pinning", name, lambda xml: (remove_pinning(xml), None))

    def get_pinning(self, name: str) -> PinningInfo | None:
        sockets = self._topology()
        return self._inspect("get_pinning", name, lambda xml: read_pinning(xml, sockets))

    @staticmethod
    def _pinned(xml: str, sockets: list[Socket]) -> tuple[str, PinningInfo | None]:
        return xml, read_pinning(xml, sockets)
