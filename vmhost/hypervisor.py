"""Hypervisor control handle.

The agent core talks to the hypervisor only through :class:`Hypervisor`.
:class:`LibvirtHypervisor` implements it with libvirt-python; tests use an
in-memory fake. A connection is opened per operation and closed when the
``with`` block exits::

    with open_hypervisor() as hv:
        dom = hv.lookup("web01")
        hv.create(dom)
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import Any, Callable

from vmhost.config import settings
from vmhost.errors import ExternalError, NotFoundError, ToolMissing, ValidationError

# Try to import libvirt - it's optional
try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    libvirt = None
    LIBVIRT_AVAILABLE = False

logger = logging.getLogger(__name__)


class WorkloadState(str, Enum):
    """Run state reported by the hypervisor."""

    NO_STATE = "nostate"
    RUNNING = "running"
    BLOCKED = "blocked"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutdown"
    SHUT_OFF = "shutoff"
    CRASHED = "crashed"
    SUSPENDED = "pmsuspended"
    UNKNOWN = "unknown"


# States in which hardware-description edits are allowed
OFFLINE_STATES = (WorkloadState.SHUT_OFF, WorkloadState.SHUTTING_DOWN)
# States a forced destroy applies to
DESTROYABLE_STATES = (WorkloadState.RUNNING, WorkloadState.PAUSED, WorkloadState.BLOCKED)


class ShutdownMode(str, Enum):
    GUEST_AGENT = "agent"
    ACPI = "acpi"


class MigrationFlag(Flag):
    PERSIST_DEST = auto()
    UNDEFINE_SOURCE = auto()
    PEER2PEER = auto()
    TUNNELLED = auto()
    AUTO_CONVERGE = auto()
    ABORT_ON_ERROR = auto()
    LIVE = auto()


@dataclass
class JobProgress:
    """Byte counters of an in-flight hypervisor job."""

    memory_total: int = 0
    memory_processed: int = 0
    data_total: int = 0
    data_processed: int = 0

    def percent(self) -> float | None:
        """Completion ratio clamped to 0-100, None when unknown."""
        for total, processed in (
            (self.data_total, self.data_processed),
            (self.memory_total, self.memory_processed),
        ):
            if total > 0:
                return max(0.0, min(100.0, processed * 100.0 / total))
        return None


class Hypervisor(ABC):
    """Operations the agent needs from a hypervisor connection.

    Mutating methods raise :class:`ExternalError` carrying the hypervisor's
    message when the call fails.
    """

    def __enter__(self) -> Hypervisor:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @abstractmethod
    def close(self) -> None:
        """Release the connection."""

    @abstractmethod
    def lookup(self, name: str) -> Any:
        """Return the handle of workload ``name`` or raise NotFoundError."""

    @abstractmethod
    def list_names(self) -> list[str]:
        """Names of all defined workloads."""

    @abstractmethod
    def state(self, handle: Any) -> WorkloadState:
        """Current run state."""

    @abstractmethod
    def uuid(self, handle: Any) -> str:
        """UUID string of the workload."""

    @abstractmethod
    def xml_description(self, handle: Any, inactive: bool = True) -> str:
        """Hardware description; the persistent one when ``inactive``."""

    @abstractmethod
    def define(self, xml: str, validate: bool = False) -> Any:
        """Define (or redefine) a workload, raising ValidationError on rejection."""

    @abstractmethod
    def create(self, handle: Any) -> None:
        """Start a defined workload."""

    @abstractmethod
    def destroy(self, handle: Any) -> None:
        """Power off immediately."""

    @abstractmethod
    def suspend(self, handle: Any) -> None:
        """Pause vCPU execution."""

    @abstractmethod
    def resume(self, handle: Any) -> None:
        """Resume a paused workload."""

    @abstractmethod
    def shutdown(self, handle: Any, mode: ShutdownMode) -> None:
        """Request a guest shutdown through the given channel."""

    @abstractmethod
    def undefine(self, handle: Any, cleanup: bool = True) -> None:
        """Remove the definition, with its managed save, snapshot metadata
        and NVRAM when ``cleanup``. Disk images are never touched."""

    @abstractmethod
    def migrate(self, handle: Any, dest_uri: str, flags: MigrationFlag) -> None:
        """Blocking migration to ``dest_uri``."""

    @abstractmethod
    def job_progress(self, handle: Any) -> JobProgress | None:
        """Counters of the active job, None when no job runs."""

    @abstractmethod
    def abort_job(self, handle: Any) -> None:
        """Abort the active job."""


HypervisorFactory = Callable[[], Hypervisor]


class LibvirtHypervisor(Hypervisor):
    """libvirt-python implementation of :class:`Hypervisor`."""

    def __init__(self, uri: str | None = None):
        if not LIBVIRT_AVAILABLE:
            raise ToolMissing("libvirt-python package is not installed")
        self._uri = uri or settings.libvirt_uri
        try:
            self._conn = libvirt.open(self._uri)
        except libvirt.libvirtError as e:
            raise ExternalError(f"connect {self._uri}", e) from e

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except libvirt.libvirtError as e:
            logger.warning("Error closing libvirt connection %s: %s", self._uri, e)
        self._conn = None

    def lookup(self, name: str):
        try:
            return self._conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise NotFoundError(f"workload {name} not found") from e
            raise ExternalError(f"lookup {name}", e) from e

    def list_names(self) -> list[str]:
        try:
            return sorted(dom.name() for dom in self._conn.listAllDomains())
        except libvirt.libvirtError as e:
            raise ExternalError("list workloads", e) from e

    def state(self, handle) -> WorkloadState:
        try:
            state, _ = handle.state()
        except libvirt.libvirtError as e:
            raise ExternalError(f"state {handle.name()}", e) from e
        state_map = {
            libvirt.VIR_DOMAIN_NOSTATE: WorkloadState.NO_STATE,
            libvirt.VIR_DOMAIN_RUNNING: WorkloadState.RUNNING,
            libvirt.VIR_DOMAIN_BLOCKED: WorkloadState.BLOCKED,
            libvirt.VIR_DOMAIN_PAUSED: WorkloadState.PAUSED,
            libvirt.VIR_DOMAIN_SHUTDOWN: WorkloadState.SHUTTING_DOWN,
            libvirt.VIR_DOMAIN_SHUTOFF: WorkloadState.SHUT_OFF,
            libvirt.VIR_DOMAIN_CRASHED: WorkloadState.CRASHED,
            libvirt.VIR_DOMAIN_PMSUSPENDED: WorkloadState.SUSPENDED,
        }
        return state_map.get(state, WorkloadState.UNKNOWN)

    def uuid(self, handle) -> str:
        return handle.UUIDString()

    def xml_description(self, handle, inactive: bool = True) -> str:
        if inactive:
            try:
                return handle.XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE)
            except libvirt.libvirtError as e:
                logger.debug("Inactive XML unavailable for %s, using live XML: %s", handle.name(), e)
        try:
            return handle.XMLDesc(0)
        except libvirt.libvirtError as e:
            raise ExternalError(f"read description of {handle.name()}", e) from e

    def define(self, xml: str, validate: bool = False):
        flags = libvirt.VIR_DOMAIN_DEFINE_VALIDATE if validate else 0
        try:
            return self._conn.defineXMLFlags(xml, flags)
        except libvirt.libvirtError as e:
            raise ValidationError(f"hypervisor rejected description: {e}") from e

    def _call(self, operation: str, handle, func, *args) -> None:
        try:
            func(*args)
        except libvirt.libvirtError as e:
            raise ExternalError(f"{operation} {handle.name()}", e) from e

    def create(self, handle) -> None:
        self._call("start", handle, handle.create)

    def destroy(self, handle) -> None:
        self._call("destroy", handle, handle.destroy)

    def suspend(self, handle) -> None:
        self._call("pause", handle, handle.suspend)

    def resume(self, handle) -> None:
        self._call("resume", handle, handle.resume)

    def shutdown(self, handle, mode: ShutdownMode) -> None:
        flag = {
            ShutdownMode.GUEST_AGENT: libvirt.VIR_DOMAIN_SHUTDOWN_GUEST_AGENT,
            ShutdownMode.ACPI: libvirt.VIR_DOMAIN_SHUTDOWN_ACPI_POWER_BTN,
        }[mode]
        self._call(f"shutdown ({mode.value})", handle, handle.shutdownFlags, flag)

    def undefine(self, handle, cleanup: bool = True) -> None:
        """Undefine a domain, cleaning up NVRAM when supported."""
        if not cleanup:
            self._call("undefine", handle, handle.undefine)
            return
        flags = (
            libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
            | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
        )
        try:
            handle.undefineFlags(flags | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            return
        except libvirt.libvirtError as e:
            logger.info(
                "Domain undefine fallback without NVRAM cleanup for %s: %s",
                handle.name(),
                e,
            )
        self._call("undefine", handle, handle.undefineFlags, flags)

    def _migration_flags(self, flags: MigrationFlag) -> int:
        flag_map = {
            MigrationFlag.PERSIST_DEST: libvirt.VIR_MIGRATE_PERSIST_DEST,
            MigrationFlag.UNDEFINE_SOURCE: libvirt.VIR_MIGRATE_UNDEFINE_SOURCE,
            MigrationFlag.PEER2PEER: libvirt.VIR_MIGRATE_PEER2PEER,
            MigrationFlag.TUNNELLED: libvirt.VIR_MIGRATE_TUNNELLED,
            MigrationFlag.AUTO_CONVERGE: libvirt.VIR_MIGRATE_AUTO_CONVERGE,
            MigrationFlag.ABORT_ON_ERROR: libvirt.VIR_MIGRATE_ABORT_ON_ERROR,
            MigrationFlag.LIVE: libvirt.VIR_MIGRATE_LIVE,
        }
        value = 0
        for flag, native in flag_map.items():
            if flag in flags:
                value |= native
        return value

    def migrate(self, handle, dest_uri: str, flags: MigrationFlag) -> None:
        self._call(
            f"migrate to {dest_uri}", handle,
            handle.migrateToURI, dest_uri, self._migration_flags(flags), None, 0,
        )

    def job_progress(self, handle) -> JobProgress | None:
        try:
            stats = handle.jobStats()
        except libvirt.libvirtError as e:
            logger.debug("jobStats failed for %s: %s", handle.name(), e)
            return None
        if stats.get("type", libvirt.VIR_DOMAIN_JOB_NONE) == libvirt.VIR_DOMAIN_JOB_NONE:
            return None
        return JobProgress(
            memory_total=int(stats.get("memory_total", 0)),
            memory_processed=int(stats.get("memory_processed", 0)),
            data_total=int(stats.get("data_total", 0)),
            data_processed=int(stats.get("data_processed", 0)),
        )

    def abort_job(self, handle) -> None:
        self._call("abort job of", handle, handle.abortJob)


def open_hypervisor(uri: str | None = None) -> Hypervisor:
    """Open a libvirt connection for a single operation."""
    return LibvirtHypervisor(uri)
