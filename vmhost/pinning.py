"""vCPU pinning and host core-isolation planning.

Requests address *physical cores* of one socket by zero-based index; the
planner turns them into logical CPU sets using the host topology. With
hyperthreading a vCPU may float over all threads of its core, without it
the vCPU is bound to the core's lowest-numbered thread.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from vmhost.domain_xml import Document, Element
from vmhost.errors import NotFoundError, ValidationError
from vmhost.surgery import load_domain
from vmhost.topology import PhysicalCore, Socket, find_socket, format_cpu_list, parse_cpu_list

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PinningRequest:
    """Pin to physical cores ``core_range_start..core_range_end`` of a socket."""

    core_range_start: int
    core_range_end: int
    hyperthreading: bool
    socket_id: int


@dataclass(frozen=True)
class VCPUPin:
    vcpu: int
    cpuset: tuple[int, ...]


@dataclass(frozen=True)
class CoreIsolationSelection:
    socket_id: int
    core_indices: tuple[int, ...]


@dataclass
class PinningInfo:
    """Pinning read back from a description."""

    pins: list[VCPUPin]
    socket_id: int | None = None
    core_range_start: int | None = None
    core_range_end: int | None = None
    hyperthreading: bool = False


@dataclass
class SocketIsolation:
    socket_id: int
    total_physical_cores: int
    max_isolatable_cores: int
    isolated_core_indices: list[int] = field(default_factory=list)


def _socket_cores(sockets: list[Socket], socket_id: int) -> list[PhysicalCore]:
    socket = find_socket(sockets, socket_id)
    if socket is None:
        raise NotFoundError(f"socket {socket_id} not found")
    cores = socket.physical_cores()
    if not cores:
        raise ValidationError(f"socket {socket_id} has no physical cores")
    return cores


def validate_pinning(request: PinningRequest, sockets: list[Socket]) -> list[PhysicalCore]:
    """Check a request against the topology and return the selected cores."""
    if request.core_range_start < 0:
        raise ValidationError("core range start must be >= 0")
    if request.core_range_end < request.core_range_start:
        raise ValidationError(
            f"core range end {request.core_range_end} is before start {request.core_range_start}"
        )
    cores = _socket_cores(sockets, request.socket_id)
    if request.core_range_end >= len(cores):
        raise ValidationError(
            f"core range {request.core_range_start}-{request.core_range_end} exceeds "
            f"socket {request.socket_id} with {len(cores)} physical cores"
        )
    return cores[request.core_range_start:request.core_range_end + 1]


def build_vcpu_pins(request: PinningRequest, sockets: list[Socket]) -> list[VCPUPin]:
    """One pin per selected physical core, vCPUs numbered in core order."""
    selected = validate_pinning(request, sockets)
    pins = []
    for vcpu, core in enumerate(selected):
        cpuset = core.siblings if request.hyperthreading else (core.representative,)
        pins.append(VCPUPin(vcpu=vcpu, cpuset=tuple(cpuset)))
    return pins


def emulator_cpuset(pins: list[VCPUPin]) -> list[int]:
    return sorted({cpu for pin in pins for cpu in pin.cpuset})


def build_cputune_description(pins: list[VCPUPin]) -> str:
    lines = ["<cputune>"]
    for pin in pins:
        lines.append(f"  <vcpupin vcpu='{pin.vcpu}' cpuset='{format_cpu_list(pin.cpuset)}'/>")
    if pins:
        lines.append(f"  <emulatorpin cpuset='{format_cpu_list(emulator_cpuset(pins))}'/>")
    lines.append("</cputune>")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Host core isolation
# ---------------------------------------------------------------------------


def max_isolatable_cores(total_physical_cores: int) -> int:
    return total_physical_cores // 2


def build_host_isolation_cpuset(
    selections: list[CoreIsolationSelection], sockets: list[Socket]
) -> list[int]:
    """Expand per-socket core selections into isolated logical CPU IDs.

    At most half of a socket's physical cores may be isolated; the rest
    stay available to the host.
    """
    if not selections:
        raise ValidationError("at least one socket selection is required")

    seen_sockets: set[int] = set()
    cpus: set[int] = set()
    for selection in selections:
        if selection.socket_id in seen_sockets:
            raise ValidationError(f"socket {selection.socket_id} selected more than once")
        seen_sockets.add(selection.socket_id)

        cores = _socket_cores(sockets, selection.socket_id)
        indices = list(selection.core_indices)
        if not indices:
            raise ValidationError(f"socket {selection.socket_id}: no cores selected")
        if len(set(indices)) != len(indices):
            raise ValidationError(f"socket {selection.socket_id}: duplicate core index")

        limit = max_isolatable_cores(len(cores))
        if len(indices) > limit:
            raise ValidationError(
                f"socket {selection.socket_id}: {len(indices)} cores selected, "
                f"at most {limit} of {len(cores)} physical cores may be isolated"
            )
        for index in indices:
            if index < 0 or index >= len(cores):
                raise ValidationError(
                    f"socket {selection.socket_id}: core index {index} out of range 0-{len(cores) - 1}"
                )
            cpus.update(cores[index].siblings)

    return sorted(cpus)


def socket_isolation(sockets: list[Socket], isolated_cpus: list[int]) -> list[SocketIsolation]:
    """Report, per socket, which physical cores are fully isolated."""
    isolated = set(isolated_cpus)
    report = []
    for socket in sockets:
        cores = socket.physical_cores()
        report.append(SocketIsolation(
            socket_id=socket.socket_id,
            total_physical_cores=len(cores),
            max_isolatable_cores=max_isolatable_cores(len(cores)),
            isolated_core_indices=[
                core.index for core in cores if set(core.siblings) <= isolated
            ],
        ))
    return report


# ---------------------------------------------------------------------------
# Per-workload pinning edits
# ---------------------------------------------------------------------------

# Elements <cputune> may follow, nearest first
_CPUTUNE_AFTER = ("iothreads", "vcpus", "vcpu")


def _place_cputune(doc: Document) -> Element:
    root = doc.root
    cputune = Element("cputune")
    for tag in _CPUTUNE_AFTER:
        anchor = root.find(tag)
        if anchor is not None:
            return root.insert_after(anchor, cputune)
    anchor = root.find("os") or root.find("devices")
    if anchor is not None:
        return root.insert_before(anchor, cputune)
    return root.append(cputune)


def _set_guest_topology(doc: Document, cores: int) -> None:
    root = doc.root
    cpu = root.find("cpu")
    if cpu is None:
        cpu = Element("cpu")
        anchor = root.find("devices")
        if anchor is not None:
            root.insert_before(anchor, cpu)
        else:
            root.append(cpu)
    topology = cpu.find("topology")
    if topology is None:
        topology = cpu.append(Element("topology"))
    topology.set("sockets", "1")
    topology.set("dies", "1")
    topology.set("cores", str(cores))
    topology.set("threads", "1")


def apply_pinning(xml: str, request: PinningRequest, sockets: list[Socket]) -> str:
    """Rewrite ``<cputune>``, ``<vcpu>`` and the guest CPU topology."""
    pins = build_vcpu_pins(request, sockets)
    doc = load_domain(xml)
    root = doc.root

    vcpu = root.find("vcpu")
    if vcpu is None:
        vcpu = Element("vcpu", {"placement": "static"})
        name = root.find("name")
        if name is not None:
            root.insert_after(name, vcpu)
        else:
            root.append(vcpu)
    vcpu.text = str(len(pins))
    vcpu.unset("current")
    vcpu.unset("cpuset")

    for existing in root.findall("cputune"):
        root.remove(existing)
    cputune = _place_cputune(doc)
    for pin in pins:
        cputune.append(Element("vcpupin", {"vcpu": str(pin.vcpu), "cpuset": format_cpu_list(pin.cpuset)}))
    cputune.append(Element("emulatorpin", {"cpuset": format_cpu_list(emulator_cpuset(pins))}))

    _set_guest_topology(doc, len(pins))
    return doc.serialize()


def remove_pinning(xml: str) -> str:
    doc = load_domain(xml)
    root = doc.root
    for cputune in root.findall("cputune"):
        root.remove(cputune)
    cpu = root.find("cpu")
    if cpu is not None:
        for topology in cpu.findall("topology"):
            cpu.remove(topology)
    return doc.serialize()


def read_pinning(xml: str, sockets: list[Socket]) -> PinningInfo | None:
    """Read vCPU pins back and infer the socket and core range they cover.

    Returns None when the description carries no vCPU pins. Socket and
    range stay unset when the pins do not map onto a single socket.
    """
    cputune = load_domain(xml).root.find("cputune")
    if cputune is None:
        return None

    pins = []
    for element in cputune.findall("vcpupin"):
        try:
            vcpu = int(element.get("vcpu", ""))
        except ValueError:
            continue
        pins.append(VCPUPin(vcpu=vcpu, cpuset=tuple(parse_cpu_list(element.get("cpuset", "")))))
    if not pins:
        return None
    pins.sort(key=lambda p: p.vcpu)

    info = PinningInfo(pins=pins, hyperthreading=any(len(p.cpuset) > 1 for p in pins))

    owner: dict[int, tuple[int, int]] = {}
    for socket in sockets:
        for core in socket.physical_cores():
            for cpu in core.siblings:
                owner[cpu] = (socket.socket_id, core.index)

    located = [owner.get(pin.cpuset[0]) for pin in pins if pin.cpuset]
    if not located or None in located:
        return info
    socket_ids = {socket_id for socket_id, _ in located}
    if len(socket_ids) != 1:
        return info

    indices = [index for _, index in located]
    info.socket_id = socket_ids.pop()
    info.core_range_start = min(indices)
    info.core_range_end = max(indices)
    return info
