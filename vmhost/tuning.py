"""Host kernel boot-parameter tuning.

Core isolation (``isolcpus``/``nohz_full``/``rcu_nocbs``) and huge pages
(``default_hugepagesz``/``hugepagesz``/``hugepages``) are persisted as
kernel arguments of every boot entry through the bootloader tool
(grubby). Changes only take effect after a reboot, so every state report
compares the persisted (configured) arguments with the booted kernel's
command line (active) and flags ``reboot_required`` when their canonical
forms differ.

The boot configuration is host-wide; mutating calls in this process are
serialized by a module lock.
"""
from __future__ import annotations

import logging
import re
import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from vmhost import cmd
from vmhost.config import settings
from vmhost.errors import ExternalError, ToolMissing, ValidationError
from vmhost.metrics import track_operation
from vmhost.pinning import CoreIsolationSelection, SocketIsolation, build_host_isolation_cpuset, socket_isolation
from vmhost.topology import Socket, discover_topology, format_cpu_list, parse_cpu_list

logger = logging.getLogger(__name__)

ISOLATION_ARGS = ("isolcpus", "nohz_full", "rcu_nocbs")
HUGEPAGE_ARGS = ("default_hugepagesz", "hugepagesz", "hugepages")

_SIZE_RE = re.compile(r"^(\d+)\s*([A-Za-z]+)$")
_UNIT_KB = {"K": 1, "M": 1024, "G": 1024 * 1024}

_write_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Argument parsing and canonical forms
# ---------------------------------------------------------------------------


def parse_kernel_args(cmdline: str) -> dict[str, str]:
    """Split a kernel command line into ``{key: value}``; bare flags map to ``""``."""
    try:
        tokens = shlex.split(cmdline)
    except ValueError:
        tokens = cmdline.split()
    args: dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        args[key.strip()] = value.strip() if sep else ""
    return args


def extract_grubby_args(output: str) -> str:
    """Return the ``args="..."`` value from ``grubby --info`` output."""
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("args="):
            continue
        raw = line[len("args="):].strip()
        if len(raw) >= 2 and raw[0] == raw[-1] == '"':
            return raw[1:-1]
        return raw.strip('"')
    raise ExternalError("grubby --info=DEFAULT", "output did not contain args=")


def format_page_size_kb(kb: int) -> str:
    if kb % (1024 * 1024) == 0:
        return f"{kb // (1024 * 1024)}G"
    if kb % 1024 == 0:
        return f"{kb // 1024}M"
    return f"{kb}K"


def page_size_kb(value: str) -> int:
    """Parse ``2M``, ``2048K``, ``1GiB``, ``2048 kB`` etc. into kilobytes.

    Raises:
        ValidationError: malformed value, unsupported unit or non-positive size
    """
    match = _SIZE_RE.match(value.strip())
    if not match:
        raise ValidationError(f"invalid page size '{value}' (expected e.g. 2M or 1G)")
    number, unit = int(match.group(1)), match.group(2).upper()
    for suffix in ("IB", "B"):
        if unit.endswith(suffix) and len(unit) > len(suffix):
            unit = unit[: -len(suffix)]
            break
    if unit not in _UNIT_KB:
        raise ValidationError(f"unsupported page size unit in '{value}' (use K, M or G)")
    if number <= 0:
        raise ValidationError("page size must be > 0")
    return number * _UNIT_KB[unit]


def normalize_page_size(value: str) -> str:
    """Canonical K/M/G spelling of a page size; ``""`` stays ``""``."""
    if not value.strip():
        return ""
    return format_page_size_kb(page_size_kb(value))


def isolcpus_cpu_list(value: str) -> str:
    """Drop leading isolcpus flags (``domain,managed_irq,...``) from a CPU list."""
    parts = value.strip().split(",")
    for i, part in enumerate(parts):
        if any(ch.isdigit() for ch in part):
            return ",".join(parts[i:])
    return ""


def _cpu_arg(name: str, raw: str) -> list[int]:
    raw = raw.strip()
    if not raw:
        return []
    value = isolcpus_cpu_list(raw) if name == "isolcpus" else raw
    if not value:
        raise ExternalError(f"parse {name}", f"missing CPU list in '{raw}'")
    try:
        return parse_cpu_list(value)
    except ValidationError as e:
        raise ExternalError(f"parse {name}", f"invalid value '{raw}': {e}") from e


# ---------------------------------------------------------------------------
# State types
# ---------------------------------------------------------------------------


@dataclass
class HostTuningState:
    """Configured vs. active value of one tuning group."""

    enabled: bool
    reboot_required: bool
    configured_value: str
    active_value: str
    message: str = ""


@dataclass
class CoreIsolationState(HostTuningState):
    isolcpus: str = ""
    nohz_full: str = ""
    rcu_nocbs: str = ""
    active_isolcpus: str = ""
    configured_cpus: list[int] = field(default_factory=list)
    active_cpus: list[int] = field(default_factory=list)
    sockets: list[SocketIsolation] = field(default_factory=list)


@dataclass
class HugePagesSpec:
    page_size: str
    page_count: int


@dataclass
class HostHugePagesState(HostTuningState):
    page_size: str = ""
    page_count: int = 0
    active_page_size: str = ""
    active_page_count: int = 0
    raw_configured: dict[str, str] = field(default_factory=dict)
    raw_active: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Host configuration surface
# ---------------------------------------------------------------------------


class KernelArgs:
    """Persisted (bootloader) and active (``/proc/cmdline``) kernel arguments."""

    def __init__(
        self,
        tool: str | None = None,
        cmdline_path: str | Path | None = None,
        run: Callable[..., str] = cmd.check_output,
    ):
        self.tool = tool or settings.bootloader_tool
        self.cmdline_path = Path(cmdline_path or settings.proc_cmdline_path)
        self._run = run

    def require_tool(self) -> None:
        if not cmd.has_binary(self.tool):
            raise ToolMissing(f"{self.tool} is required to manage kernel arguments")

    def require_write_access(self) -> None:
        self.require_tool()
        cmd.require_privileges(self.tool)

    def configured(self) -> dict[str, str]:
        self.require_tool()
        sudo = cmd.is_root() or cmd.passwordless_sudo()
        output = self._run([self.tool, "--info=DEFAULT"], sudo=sudo)
        return parse_kernel_args(extract_grubby_args(output))

    def active(self) -> dict[str, str]:
        try:
            return parse_kernel_args(self.cmdline_path.read_text().strip())
        except OSError as e:
            raise ExternalError(f"read {self.cmdline_path}", e) from e

    def add(self, args: dict[str, str]) -> None:
        value = " ".join(f"{key}={val}" for key, val in args.items())
        logger.info(f"Adding kernel arguments: {value}")
        self._run([self.tool, "--update-kernel=ALL", f"--args={value}"], sudo=True)

    def remove(self, keys: tuple[str, ...]) -> None:
        logger.info(f"Removing kernel arguments: {' '.join(keys)}")
        self._run([self.tool, "--update-kernel=ALL", f"--remove-args={' '.join(keys)}"], sudo=True)


def read_meminfo_hugepages(path: str | Path | None = None) -> tuple[str, int]:
    """Return ``(page size, total pages)`` from ``/proc/meminfo``."""
    path = Path(path or settings.proc_meminfo_path)
    size, count = "", 0
    try:
        lines = path.read_text().splitlines()
    except OSError as e:
        raise ExternalError(f"read {path}", e) from e
    for line in lines:
        key, _, value = line.partition(":")
        key, value = key.strip(), value.strip()
        try:
            if key == "HugePages_Total":
                count = int(value)
            elif key == "Hugepagesize":
                size = normalize_page_size(value)
        except ValueError as e:
            raise ExternalError(f"parse {path}", f"bad {key} value '{value}'") from e
    return size, count


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class KernelTuner:
    """Reads and writes host core isolation and huge-page boot arguments."""

    def __init__(
        self,
        kernel_args: KernelArgs | None = None,
        topology: Callable[[], list[Socket]] | None = None,
        meminfo_path: str | Path | None = None,
    ):
        self.kernel_args = kernel_args or KernelArgs()
        self._topology = topology or discover_topology
        self.meminfo_path = meminfo_path

    @staticmethod
    def _with_message(state: HostTuningState, message: str) -> HostTuningState:
        state.message = message + (" (reboot required)" if state.reboot_required else "")
        return state

    # -- core isolation ------------------------------------------------

    def get_core_isolation(self) -> CoreIsolationState:
        configured = self.kernel_args.configured()
        active = self.kernel_args.active()

        conf = {name: _cpu_arg(name, configured.get(name, "")) for name in ISOLATION_ARGS}
        act = {name: _cpu_arg(name, active.get(name, "")) for name in ISOLATION_ARGS}

        configured_cpus = next((conf[n] for n in ISOLATION_ARGS if conf[n]), [])
        active_cpus = next((act[n] for n in ISOLATION_ARGS if act[n]), [])
        canonical_conf = tuple(format_cpu_list(conf[n]) for n in ISOLATION_ARGS)
        canonical_act = tuple(format_cpu_list(act[n]) for n in ISOLATION_ARGS)

        return CoreIsolationState(
            enabled=bool(configured_cpus),
            reboot_required=canonical_conf != canonical_act,
            configured_value=format_cpu_list(configured_cpus),
            active_value=format_cpu_list(active_cpus),
            isolcpus=configured.get("isolcpus", ""),
            nohz_full=configured.get("nohz_full", ""),
            rcu_nocbs=configured.get("rcu_nocbs", ""),
            active_isolcpus=active.get("isolcpus", ""),
            configured_cpus=configured_cpus,
            active_cpus=active_cpus,
            sockets=socket_isolation(self._topology(), configured_cpus),
        )

    def set_core_isolation(self, selections: list[CoreIsolationSelection]) -> CoreIsolationState:
        cpus = build_host_isolation_cpuset(selections, self._topology())
        cpu_list = format_cpu_list(cpus)
        self.kernel_args.require_write_access()
        with _write_lock, track_operation("set_core_isolation"):
            self.kernel_args.remove(ISOLATION_ARGS)
            self.kernel_args.add({name: cpu_list for name in ISOLATION_ARGS})
        return self._with_message(self.get_core_isolation(), "host core isolation updated")

    def remove_core_isolation(self) -> CoreIsolationState:
        self.kernel_args.require_write_access()
        with _write_lock, track_operation("remove_core_isolation"):
            self.kernel_args.remove(ISOLATION_ARGS)
        return self._with_message(self.get_core_isolation(), "host core isolation removed")

    # -- huge pages ----------------------------------------------------

    @staticmethod
    def _hugepage_values(args: dict[str, str]) -> tuple[str, str, int | None]:
        try:
            default_size = normalize_page_size(args.get("default_hugepagesz", ""))
            size = normalize_page_size(args.get("hugepagesz", ""))
        except ValidationError as e:
            raise ExternalError("parse hugepage arguments", e) from e
        raw_count = args.get("hugepages", "").strip()
        count = None
        if raw_count:
            try:
                count = int(raw_count)
            except ValueError:
                raise ExternalError("parse hugepage arguments", f"invalid hugepages '{raw_count}'") from None
        return default_size, size, count

    def get_hugepages(self) -> HostHugePagesState:
        configured = self.kernel_args.configured()
        active = self.kernel_args.active()

        conf_default, conf_size, conf_count = self._hugepage_values(configured)
        act_default, act_size, act_count = self._hugepage_values(active)
        meminfo_size, meminfo_count = read_meminfo_hugepages(self.meminfo_path)

        page_size = conf_default or conf_size
        active_page_size = act_default or act_size or meminfo_size
        active_page_count = act_count if act_count is not None else meminfo_count

        return HostHugePagesState(
            enabled=any(configured.get(name) for name in HUGEPAGE_ARGS),
            reboot_required=(conf_default, conf_size, conf_count) != (act_default, act_size, act_count),
            configured_value=f"{conf_count}x{page_size}" if conf_count and page_size else "",
            active_value=f"{active_page_count}x{active_page_size}" if active_page_count and active_page_size else "",
            page_size=page_size,
            page_count=conf_count or 0,
            active_page_size=active_page_size,
            active_page_count=active_page_count,
            raw_configured={name: configured[name] for name in HUGEPAGE_ARGS if name in configured},
            raw_active={name: active[name] for name in HUGEPAGE_ARGS if name in active},
        )

    def set_hugepages(self, spec: HugePagesSpec) -> HostHugePagesState:
        if not spec.page_size.strip():
            raise ValidationError("page_size is required")
        page_size = normalize_page_size(spec.page_size)
        if spec.page_count <= 0:
            raise ValidationError("page_count must be > 0")
        self.kernel_args.require_write_access()
        with _write_lock, track_operation("set_host_hugepages"):
            self.kernel_args.remove(HUGEPAGE_ARGS)
            self.kernel_args.add({
                "default_hugepagesz": page_size,
                "hugepagesz": page_size,
                "hugepages": str(spec.page_count),
            })
        return self._with_message(self.get_hugepages(), "host hugepages updated")

    def remove_hugepages(self) -> HostHugePagesState:
        self.kernel_args.require_write_access()
        with _write_lock, track_operation("remove_host_hugepages"):
            self.kernel_args.remove(HUGEPAGE_ARGS)
        return self._with_message(self.get_hugepages(), "host hugepages removed")
