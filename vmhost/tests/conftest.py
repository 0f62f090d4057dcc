from __future__ import annotations

import threading
import uuid as uuidlib
import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from vmhost.config import settings
from vmhost.errors import ExternalError, NotFoundError, ValidationError
from vmhost.hypervisor import Hypervisor, JobProgress, ShutdownMode, WorkloadState
from vmhost.lifecycle import LifecycleController
from vmhost.storage import StorageLayout
from vmhost.topology import discover_topology


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Point every host path at a temp directory and keep tests fast."""
    monkeypatch.setattr(settings, "root_dir", str(tmp_path / "vmhost"))
    monkeypatch.setattr(settings, "sysfs_cpu_path", str(tmp_path / "sys" / "cpu"))
    monkeypatch.setattr(settings, "proc_cmdline_path", str(tmp_path / "proc" / "cmdline"))
    monkeypatch.setattr(settings, "proc_meminfo_path", str(tmp_path / "proc" / "meminfo"))
    monkeypatch.setattr(settings, "notifications_enabled", False)
    monkeypatch.setattr(settings, "shutdown_poll_interval", 0.0)
    monkeypatch.setattr(settings, "migration_sample_interval", 0.01)
    yield


# ---------------------------------------------------------------------------
# Fake sysfs CPU topology
# ---------------------------------------------------------------------------

def write_cpu(root: Path, cpu_id: int, package_id: int | None, siblings: str | None) -> None:
    topo = root / f"cpu{cpu_id}" / "topology"
    topo.mkdir(parents=True, exist_ok=True)
    if package_id is not None:
        (topo / "physical_package_id").write_text(f"{package_id}\n")
    if siblings is not None:
        (topo / "thread_siblings_list").write_text(f"{siblings}\n")


def build_sysfs(root: Path, sockets: int = 1, cores: int = 4, threads: int = 2) -> Path:
    """Lay out CPUs the way Linux numbers them: all first threads, then the rest.

    With 1 socket, 4 cores and 2 threads, core N holds CPUs N and N+4.
    """
    root.mkdir(parents=True, exist_ok=True)
    total_cores = sockets * cores
    for socket in range(sockets):
        for core in range(cores):
            first = socket * cores + core
            siblings = [first + t * total_cores for t in range(threads)]
            sib_text = ",".join(str(s) for s in siblings)
            for cpu in siblings:
                write_cpu(root, cpu, socket, sib_text)
    # Non-CPU entries present in real sysfs
    (root / "cpufreq").mkdir(exist_ok=True)
    (root / "online").write_text(f"0-{total_cores * threads - 1}\n")
    return root


@pytest.fixture
def sysfs(tmp_path) -> Path:
    """Single socket, 4 physical cores, 2 threads each (CPUs 0-7)."""
    return build_sysfs(Path(settings.sysfs_cpu_path))


@pytest.fixture
def sysfs_two_sockets(tmp_path) -> Path:
    """Two sockets of 4 cores x 2 threads (CPUs 0-15)."""
    return build_sysfs(Path(settings.sysfs_cpu_path), sockets=2)


# ---------------------------------------------------------------------------
# Hardware descriptions
# ---------------------------------------------------------------------------

DOMAIN_XML = """<domain type="kvm">
  <name>web01</name>
  <uuid>6f1e1c52-3a4b-4c7d-9e21-0a1b2c3d4e5f</uuid>
  <!-- managed by the operator; keep comments -->
  <metadata>
    <app:info xmlns:app="http://example.com/app">tier=front &amp; edge</app:info>
  </metadata>
  <memory unit='KiB'>4194304</memory>
  <currentMemory unit='KiB'>4194304</currentMemory>
  <vcpu placement='static'>4</vcpu>
  <os>
    <type arch='x86_64' machine='pc-q35-8.2'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <cpu mode='host-passthrough' check='none' migratable='on'/>
  <devices>
    <emulator>/usr/libexec/qemu-kvm</emulator>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2' cache='none' io='native'/>
      <source file='/var/lib/vmhost/qcow2/web01/web01.qcow2'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <interface type='network'>
      <source network='default'/>
      <model type='virtio'/>
    </interface>
    <graphics type='vnc' port='-1' autoport='yes' listen='0.0.0.0'>
      <listen type='address' address='0.0.0.0'/>
    </graphics>
    <memballoon model='virtio'>
      <stats period='10'/>
    </memballoon>
  </devices>
</domain>
"""


def make_domain_xml(name: str = "web01", uuid: str | None = None, disk: str | None = None) -> str:
    xml = DOMAIN_XML.replace("<name>web01</name>", f"<name>{name}</name>")
    if uuid:
        xml = xml.replace("6f1e1c52-3a4b-4c7d-9e21-0a1b2c3d4e5f", uuid)
    if disk:
        xml = xml.replace("/var/lib/vmhost/qcow2/web01/web01.qcow2", disk)
    return xml


@pytest.fixture
def domain_xml() -> str:
    return DOMAIN_XML


# ---------------------------------------------------------------------------
# In-memory hypervisor
# ---------------------------------------------------------------------------

class FakeDomain:
    def __init__(self, name: str, xml: str, state: WorkloadState, uuid: str):
        self.name = name
        self.xml = xml
        self.state = state
        self.uuid = uuid


MUTATING_CALLS = {
    "define", "create", "destroy", "suspend", "resume",
    "shutdown", "undefine", "migrate", "abort_job",
}


class FakeHypervisor(Hypervisor):
    """Hypervisor double shared by every connection a test opens.

    Every call is appended to ``calls`` as ``(operation, name, *args)``.
    """

    def __init__(self):
        self.domains: dict[str, FakeDomain] = {}
        self.calls: list[tuple] = []
        self.opened = 0
        self.closed = 0
        self.uris: list[str | None] = []
        # Behaviour switches
        self.guest_agent_fails = False
        self.ignore_shutdown = False
        self.reject_define: str | None = None
        self.progress_samples: list[JobProgress] = []
        self.migrate_impl = None
        self.abort_event = threading.Event()
        self._lock = threading.Lock()

    # -- test helpers ---------------------------------------------------

    def add(self, name: str, state: WorkloadState = WorkloadState.SHUT_OFF, xml: str | None = None) -> FakeDomain:
        xml = xml or make_domain_xml(name)
        dom = FakeDomain(name, xml, state, ET.fromstring(xml).findtext("uuid") or str(uuidlib.uuid4()))
        self.domains[name] = dom
        return dom

    def connect(self, uri: str | None = None) -> FakeHypervisor:
        self.opened += 1
        self.uris.append(uri)
        return self

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    # -- Hypervisor interface --------------------------------------------

    def close(self) -> None:
        self.closed += 1

    def lookup(self, name: str) -> FakeDomain:
        self._record("lookup", name)
        if name not in self.domains:
            raise NotFoundError(f"workload {name} not found")
        return self.domains[name]

    def list_names(self) -> list[str]:
        return sorted(self.domains)

    def state(self, handle: FakeDomain) -> WorkloadState:
        return handle.state

    def uuid(self, handle: FakeDomain) -> str:
        return handle.uuid

    def xml_description(self, handle: FakeDomain, inactive: bool = True) -> str:
        return handle.xml

    def define(self, xml: str, validate: bool = False) -> FakeDomain:
        root = ET.fromstring(xml)
        name = root.findtext("name")
        self._record("define", name, validate)
        if self.reject_define:
            raise ValidationError(f"hypervisor rejected description: {self.reject_define}")
        if name in self.domains:
            dom = self.domains[name]
            dom.xml = xml
            return dom
        dom = FakeDomain(name, xml, WorkloadState.SHUT_OFF, root.findtext("uuid") or str(uuidlib.uuid4()))
        self.domains[name] = dom
        return dom

    def create(self, handle: FakeDomain) -> None:
        self._record("create", handle.name)
        handle.state = WorkloadState.RUNNING

    def destroy(self, handle: FakeDomain) -> None:
        self._record("destroy", handle.name)
        handle.state = WorkloadState.SHUT_OFF

    def suspend(self, handle: FakeDomain) -> None:
        self._record("suspend", handle.name)
        handle.state = WorkloadState.PAUSED

    def resume(self, handle: FakeDomain) -> None:
        self._record("resume", handle.name)
        handle.state = WorkloadState.RUNNING

    def shutdown(self, handle: FakeDomain, mode: ShutdownMode) -> None:
        self._record("shutdown", handle.name, mode)
        if mode == ShutdownMode.GUEST_AGENT and self.guest_agent_fails:
            raise ExternalError(f"shutdown ({mode.value}) {handle.name}", "QEMU guest agent is not connected")
        if not self.ignore_shutdown:
            handle.state = WorkloadState.SHUT_OFF

    def undefine(self, handle: FakeDomain, cleanup: bool = True) -> None:
        self._record("undefine", handle.name, cleanup)
        self.domains.pop(handle.name, None)

    def migrate(self, handle: FakeDomain, dest_uri: str, flags) -> None:
        self._record("migrate", handle.name, dest_uri, flags)
        if self.migrate_impl is not None:
            self.migrate_impl(handle, dest_uri, flags)

    def job_progress(self, handle: FakeDomain) -> JobProgress | None:
        with self._lock:
            if not self.progress_samples:
                return None
            if len(self.progress_samples) > 1:
                return self.progress_samples.pop(0)
            return self.progress_samples[0]

    def abort_job(self, handle: FakeDomain) -> None:
        self._record("abort_job", handle.name)
        self.abort_event.set()


@pytest.fixture
def fake_hv() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def layout() -> StorageLayout:
    return StorageLayout(settings.root_dir)


@pytest.fixture
def make_domain():
    return make_domain_xml


@pytest.fixture
def sysfs_builder():
    return build_sysfs


@pytest.fixture
def lifecycle(fake_hv, layout):
    return LifecycleController(
        connect=fake_hv.connect,
        layout=layout,
        topology=lambda: discover_topology(settings.sysfs_cpu_path),
        shutdown_timeout=5,
        poll_interval=0,
        sleep=lambda _: None,
    )
