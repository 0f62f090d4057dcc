"""Host CPU topology discovery.

Reads the per-logical-CPU topology attributes the kernel exposes under
``/sys/devices/system/cpu/cpuN/topology`` and groups them into sockets.
A physical core is never stored; it is derived from a socket's logical
CPUs by grouping identical hyperthread sibling sets.

Also home to the CPU-list notation helpers (``"0-3,8,10-11"``) shared by
the pinning planner and the kernel-tuning reconciler.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from vmhost.config import settings
from vmhost.errors import ValidationError

logger = logging.getLogger(__name__)

_CPU_DIR_RE = re.compile(r"^cpu(\d+)$")


@dataclass(frozen=True)
class LogicalCPU:
    """A hardware thread and the thread IDs sharing its physical core."""

    id: int
    siblings: tuple[int, ...]


@dataclass(frozen=True)
class PhysicalCore:
    """One execution unit of a socket, possibly exposing several threads."""

    index: int
    siblings: tuple[int, ...]

    @property
    def representative(self) -> int:
        return self.siblings[0]


@dataclass(frozen=True)
class Socket:
    """One physical CPU package."""

    socket_id: int
    cpus: tuple[LogicalCPU, ...]

    def physical_cores(self) -> list[PhysicalCore]:
        return physical_cores(self)


def parse_cpu_list(text: str) -> list[int]:
    """Expand CPU-list notation into a sorted, de-duplicated list of IDs.

    Raises:
        ValidationError: if any element is not a non-negative ID or range
    """
    cpus: set[int] = set()
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start_s, _, end_s = part.partition("-")
            try:
                start, end = int(start_s), int(end_s)
            except ValueError:
                raise ValidationError(f"invalid CPU range '{part}'") from None
            if start < 0 or end < start:
                raise ValidationError(f"invalid CPU range '{part}'")
            cpus.update(range(start, end + 1))
        else:
            try:
                cpu = int(part)
            except ValueError:
                raise ValidationError(f"invalid CPU id '{part}'") from None
            if cpu < 0:
                raise ValidationError(f"invalid CPU id '{part}'")
            cpus.add(cpu)
    return sorted(cpus)


def format_cpu_list(cpus: Iterable[int]) -> str:
    """Compress CPU IDs into range notation, e.g. ``[0,1,2,3,8]`` -> ``"0-3,8"``."""
    ordered = sorted(set(cpus))
    if not ordered:
        return ""

    parts: list[str] = []
    start = prev = ordered[0]
    for cpu in ordered[1:]:
        if cpu == prev + 1:
            prev = cpu
            continue
        parts.append(_format_run(start, prev))
        start = prev = cpu
    parts.append(_format_run(start, prev))
    return ",".join(parts)


def _format_run(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"


def _read_int(path: Path) -> int | None:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def discover_topology(sysfs_cpu_path: str | Path | None = None) -> list[Socket]:
    """Read host CPU topology into a list of sockets ordered by ID.

    Logical CPUs whose package id cannot be read are skipped. When the
    sibling list is unreadable the CPU is treated as its own only sibling.

    Raises:
        OSError: if the CPU topology directory itself cannot be listed
    """
    root = Path(sysfs_cpu_path or settings.sysfs_cpu_path)
    try:
        entries = sorted(root.iterdir())
    except OSError as e:
        raise OSError(f"cannot read CPU topology at {root}: {e}") from e

    by_socket: dict[int, list[LogicalCPU]] = {}
    for entry in entries:
        match = _CPU_DIR_RE.match(entry.name)
        if not match:
            continue
        cpu_id = int(match.group(1))
        topo = entry / "topology"

        package_id = _read_int(topo / "physical_package_id")
        if package_id is None:
            logger.debug("Skipping cpu%d: physical_package_id unreadable", cpu_id)
            continue

        try:
            siblings = set(parse_cpu_list((topo / "thread_siblings_list").read_text()))
        except (OSError, ValidationError):
            siblings = set()
        siblings.add(cpu_id)

        by_socket.setdefault(package_id, []).append(
            LogicalCPU(id=cpu_id, siblings=tuple(sorted(siblings)))
        )

    return [
        Socket(socket_id=sid, cpus=tuple(sorted(cpus, key=lambda c: c.id)))
        for sid, cpus in sorted(by_socket.items())
    ]


def physical_cores(socket: Socket) -> list[PhysicalCore]:
    """Group a socket's logical CPUs by sibling set.

    One core per distinct sibling set, ordered by lowest member ID and
    indexed from zero in that order.
    """
    groups: dict[int, tuple[int, ...]] = {}
    for cpu in socket.cpus:
        key = min(cpu.siblings)
        if key not in groups:
            groups[key] = cpu.siblings
    return [
        PhysicalCore(index=i, siblings=groups[key])
        for i, key in enumerate(sorted(groups))
    ]


def find_socket(sockets: Iterable[Socket], socket_id: int) -> Socket | None:
    for socket in sockets:
        if socket.socket_id == socket_id:
            return socket
    return None
