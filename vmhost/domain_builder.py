"""Hardware-description generation for new workloads."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from xml.sax.saxutils import escape

from vmhost.domain_xml import parse
from vmhost.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CUSTOM_MODEL = "Westmere"

# Features masked by default so a custom-model guest can move between hosts
PORTABLE_DISABLED_FEATURES = (
    "vmx", "svm", "hle", "rtm", "invpcid", "umip",
    "ibrs", "ssbd", "stibp", "amd-stibp", "amd-ssbd",
    "md-clear", "spec-ctrl", "flush-l1d", "pdcm", "pcid", "ss", "erms",
)

_MACHINE_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_FEATURE_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def xml_escape(value: object) -> str:
    return escape(str(value), {"'": "&apos;", '"': "&quot;"})


class CPUMode(str, Enum):
    HOST_PASSTHROUGH = "host-passthrough"
    HOST_MODEL = "host-model"
    CUSTOM = "custom"


def host_passthrough_cpu() -> str:
    return "<cpu mode='host-passthrough' check='none'/>"


def host_model_cpu() -> str:
    return "<cpu mode='host-model' check='partial'/>"


def custom_cpu(model: str = "", disabled_features: list[str] | None = None) -> str:
    """CPU description pinned to a named model with features masked.

    The caller's features are merged with the portable default set.
    """
    model = model.strip() or DEFAULT_CUSTOM_MODEL
    features = sorted({
        f.strip() for f in [*(disabled_features or []), *PORTABLE_DISABLED_FEATURES] if f.strip()
    })
    for feature in features:
        if not _FEATURE_RE.match(feature):
            raise ValidationError(f"invalid CPU feature name '{feature}'")

    lines = [
        "<cpu mode='custom' match='minimum' check='partial'>",
        f"  <model fallback='forbid'>{xml_escape(model)}</model>",
    ]
    lines.extend(f"  <feature policy='disable' name='{f}'/>" for f in features)
    lines.append("</cpu>")
    return "\n".join(lines)


def cpu_description_for(mode: CPUMode, model: str = "", disabled_features: list[str] | None = None) -> str:
    if mode == CPUMode.HOST_PASSTHROUGH:
        return host_passthrough_cpu()
    if mode == CPUMode.HOST_MODEL:
        return host_model_cpu()
    return custom_cpu(model, disabled_features)


def validate_cpu_description(cpu_xml: str) -> str:
    """Check a caller-supplied ``<cpu>`` fragment and return it trimmed."""
    cpu_xml = cpu_xml.strip()
    if not cpu_xml:
        raise ValidationError("CPU description is empty")
    root = parse(cpu_xml).root
    if root.tag != "cpu":
        raise ValidationError(f"CPU description root must be <cpu>, found <{root.tag}>")
    return cpu_xml


@dataclass
class WorkloadSpec:
    """Inputs for a new workload definition."""

    name: str
    memory_mb: int
    vcpus: int
    disk_path: Path
    disk_format: str
    network: str
    cpu_xml: str
    iso_path: Path | None = None
    graphics_listen: str = "0.0.0.0"
    vnc_password: str = ""
    machine: str = ""

    def validate(self) -> None:
        if not _NAME_RE.match(self.name or ""):
            raise ValidationError(f"invalid workload name '{self.name}'")
        if self.memory_mb <= 0:
            raise ValidationError("memory must be positive")
        if self.vcpus <= 0:
            raise ValidationError("vcpus must be positive")
        if not self.network.strip():
            raise ValidationError("network is required")
        if self.machine and not _MACHINE_RE.match(self.machine):
            raise ValidationError(f"invalid machine type '{self.machine}'")


def build_domain_xml(spec: WorkloadSpec) -> str:
    """Assemble the libvirt domain XML for a new KVM workload."""
    spec.validate()

    machine_attr = f" machine='{xml_escape(spec.machine)}'" if spec.machine else ""
    boot_dev = "cdrom" if spec.iso_path else "hd"

    cdrom_xml = ""
    if spec.iso_path:
        cdrom_xml = f"""
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='{xml_escape(spec.iso_path)}'/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>"""

    graphics_attrs = f" listen='{xml_escape(spec.graphics_listen or '127.0.0.1')}'"
    if spec.vnc_password:
        graphics_attrs += f" passwd='{xml_escape(spec.vnc_password)}'"

    cpu_xml = "\n".join("  " + line for line in spec.cpu_xml.strip().splitlines())

    return f"""<domain type='kvm'>
  <name>{xml_escape(spec.name)}</name>
  <memory unit='MiB'>{spec.memory_mb}</memory>
  <vcpu placement='static'>{spec.vcpus}</vcpu>
  <os>
    <type arch='x86_64'{machine_attr}>hvm</type>
    <boot dev='{boot_dev}'/>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
{cpu_xml}
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='{xml_escape(spec.disk_format)}' cache='none' io='native'/>
      <source file='{xml_escape(spec.disk_path)}'/>
      <target dev='vda' bus='virtio'/>
    </disk>{cdrom_xml}
    <interface type='network'>
      <source network='{xml_escape(spec.network)}'/>
      <model type='virtio'/>
    </interface>
    <graphics type='vnc' autoport='yes' port='-1'{graphics_attrs}/>
    <video>
      <model type='virtio'/>
    </video>
  </devices>
</domain>
"""
