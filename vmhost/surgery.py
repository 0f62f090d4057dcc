"""Structural edits to a workload's hardware description.

Every edit parses the full description with :mod:`vmhost.domain_xml`,
changes only the targeted subtree and serializes the whole document back.
Anything the agent does not understand is carried through untouched.

Two generic edit shapes cover the memory-backend features:

- an optional device that is always present in an explicit state
  (``devices/memballoon``): all instances are removed and one canonical
  instance is appended
- a flag child inside a container (``memoryBacking/hugepages``,
  ``memoryBacking/locked``): the child is added or removed and the
  container is created before ``<devices>`` or dropped once empty
"""
from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Callable

from vmhost.domain_xml import Document, Element, parse
from vmhost.errors import DescriptionParseError, NotFoundError, StructureError, ValidationError

logger = logging.getLogger(__name__)

# Characters accepted in a VNC password
_VNC_PASSWORD_RE = re.compile(r"""^[A-Za-z0-9!@#$%^&*()_+\-\[\]{}|;:'"<>?/~]+$""")


@dataclass
class BalloonState:
    """Memory-balloon device state of a description."""

    enabled: bool
    has_memballoon: bool
    model: str
    memory_locked: bool


@dataclass
class HugePagesState:
    """Huge-page backing state of a description."""

    enabled: bool
    has_memory_backing: bool
    memory_locked: bool


def load_domain(xml: str) -> Document:
    """Parse a description and check it is a ``<domain>`` document."""
    doc = parse(xml)
    if doc.root.tag != "domain":
        raise StructureError(f"expected <domain> root element, found <{doc.root.tag}>")
    return doc


# ---------------------------------------------------------------------------
# Generic edits
# ---------------------------------------------------------------------------


def replace_device(
    doc: Document, tag: str, build: Callable[[Element], None]
) -> None:
    """Drop every ``devices/<tag>`` and append one built by ``build``.

    ``build`` receives the new, already attached element so nested
    children pick up the document's indentation.
    """
    devices = doc.root.find("devices")
    if devices is None:
        raise StructureError("domain XML does not contain <devices>")
    for existing in devices.findall(tag):
        devices.remove(existing)
    element = devices.append(Element(tag))
    build(element)


def set_container_flag(
    doc: Document, container_tag: str, flag_tag: str, enable: bool, anchor: str = "devices"
) -> None:
    """Add or remove ``<container><flag/></container>`` under the root.

    A missing container is inserted immediately before ``anchor`` or at the
    end of the root. A container left without children is removed.
    """
    root = doc.root
    container = root.find(container_tag)

    if enable:
        if container is None:
            container = Element(container_tag)
            anchor_element = root.find(anchor)
            if anchor_element is not None:
                root.insert_before(anchor_element, container)
            else:
                root.append(container)
        if container.find(flag_tag) is None:
            container.append(Element(flag_tag))
        return

    if container is None:
        return
    for flag in container.findall(flag_tag):
        container.remove(flag)
    if not container.children():
        root.remove(container)


def _has_flag(doc: Document, container_tag: str, flag_tag: str) -> bool:
    container = doc.root.find(container_tag)
    return container is not None and container.find(flag_tag) is not None


# ---------------------------------------------------------------------------
# Memory ballooning
# ---------------------------------------------------------------------------


def _balloon_state(doc: Document) -> BalloonState:
    devices = doc.root.find("devices")
    balloon = devices.find("memballoon") if devices is not None else None
    model = (balloon.get("model") or "").strip() if balloon is not None else ""
    return BalloonState(
        enabled=bool(model) and model.lower() != "none",
        has_memballoon=balloon is not None,
        model=model,
        memory_locked=_has_flag(doc, "memoryBacking", "locked"),
    )


def inspect_memory_balloon(xml: str) -> BalloonState:
    return _balloon_state(load_domain(xml))


def _virtio_balloon(element: Element) -> None:
    element.set("model", "virtio")
    element.append(Element("stats", {"period": "10"}))


def _no_balloon(element: Element) -> None:
    element.set("model", "none")


def rewrite_memory_balloon(xml: str, enable: bool) -> tuple[str, BalloonState]:
    """Switch the balloon device on (virtio) or off (model none).

    A guest without a balloon gets its memory locked, and unlocked again
    when the balloon returns.
    """
    doc = load_domain(xml)
    replace_device(doc, "memballoon", _virtio_balloon if enable else _no_balloon)
    set_container_flag(doc, "memoryBacking", "locked", not enable)
    return doc.serialize(), _balloon_state(doc)


# ---------------------------------------------------------------------------
# Huge pages
# ---------------------------------------------------------------------------


def _hugepages_state(doc: Document) -> HugePagesState:
    return HugePagesState(
        enabled=_has_flag(doc, "memoryBacking", "hugepages"),
        has_memory_backing=doc.root.find("memoryBacking") is not None,
        memory_locked=_has_flag(doc, "memoryBacking", "locked"),
    )


def inspect_hugepages(xml: str) -> HugePagesState:
    return _hugepages_state(load_domain(xml))


def rewrite_hugepages(xml: str, enable: bool) -> tuple[str, HugePagesState]:
    doc = load_domain(xml)
    set_container_flag(doc, "memoryBacking", "hugepages", enable)
    return doc.serialize(), _hugepages_state(doc)


# ---------------------------------------------------------------------------
# Identity and display edits
# ---------------------------------------------------------------------------


def normalize_replacement(xml: str, name: str, uuid: str) -> str:
    """Prepare a caller-supplied description to replace workload ``name``.

    The name must match and the uuid is forced to the existing one so the
    hypervisor updates the definition instead of rejecting a clash.
    """
    doc = load_domain(xml)
    name_el = doc.root.find("name")
    if name_el is None or name_el.text.strip() != name:
        found = name_el.text.strip() if name_el is not None else ""
        raise ValidationError(f"description name '{found}' does not match workload '{name}'")

    uuid_el = doc.root.find("uuid")
    if uuid_el is None:
        doc.root.insert_after(name_el, Element("uuid", text=uuid))
    elif uuid_el.text.strip() != uuid:
        uuid_el.text = uuid
    return doc.serialize()


def validate_vnc_password(password: str) -> None:
    if not password:
        raise ValidationError("VNC password must not be empty")
    if not _VNC_PASSWORD_RE.match(password):
        raise ValidationError("VNC password contains unsupported characters")


def set_vnc_password(xml: str, password: str) -> str:
    validate_vnc_password(password)
    doc = load_domain(xml)
    devices = doc.root.find("devices")
    graphics = [
        g for g in (devices.findall("graphics") if devices is not None else [])
        if g.get("type") == "vnc"
    ]
    if not graphics:
        raise NotFoundError("domain has no VNC graphics device")
    for element in graphics:
        element.set("passwd", password)
    return doc.serialize()


# ---------------------------------------------------------------------------
# Read-only extraction
# ---------------------------------------------------------------------------

_MIB_FACTORS = {
    "b": 1 / 1024**2, "bytes": 1 / 1024**2,
    "kb": 1000 / 1024**2, "k": 1 / 1024, "kib": 1 / 1024,
    "mb": 1000**2 / 1024**2, "m": 1, "mib": 1,
    "gb": 1000**3 / 1024**2, "g": 1024, "gib": 1024,
    "tb": 1000**4 / 1024**2, "t": 1024**2, "tib": 1024**2,
}


def _etree(xml: str) -> ET.Element:
    try:
        return ET.fromstring(xml)
    except ET.ParseError as e:
        raise DescriptionParseError(f"malformed hardware description: {e}") from e


def disk_path(xml: str) -> str:
    """Source file of the first ``device='disk'`` disk, or ``""``."""
    for disk in _etree(xml).findall("./devices/disk"):
        if disk.get("device", "disk") != "disk":
            continue
        source = disk.find("source")
        if source is not None and source.get("file"):
            return source.get("file")
    return ""


def network_name(xml: str) -> str:
    for iface in _etree(xml).findall("./devices/interface"):
        source = iface.find("source")
        if source is not None and source.get("network"):
            return source.get("network")
    return ""


def vnc_password(xml: str) -> str:
    for graphics in _etree(xml).findall("./devices/graphics"):
        if graphics.get("type") == "vnc" and graphics.get("passwd"):
            return graphics.get("passwd")
    return ""


def memory_mib(xml: str) -> int:
    memory = _etree(xml).find("memory")
    if memory is None or not (memory.text or "").strip():
        return 0
    factor = _MIB_FACTORS.get((memory.get("unit") or "KiB").lower())
    if factor is None:
        raise StructureError(f"unsupported memory unit '{memory.get('unit')}'")
    return int(int(memory.text.strip()) * factor)


def vcpu_count(xml: str) -> int:
    vcpu = _etree(xml).find("vcpu")
    try:
        return int((vcpu.text or "").strip()) if vcpu is not None else 0
    except ValueError:
        raise StructureError(f"invalid vcpu count '{vcpu.text}'") from None


def cpu_description(xml: str) -> str:
    """Serialized ``<cpu>`` element exactly as it appears, or ``""``."""
    cpu = load_domain(xml).root.find("cpu")
    return cpu.serialize() if cpu is not None else ""
