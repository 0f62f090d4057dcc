"""On-disk layout for workload disks, install media and descriptions.

Layout below ``settings.root_dir``::

    qcow2/   disk images, usually one directory per workload
    iso/     install media
    xml/     latest hardware-description snapshot per workload

The description used to create a workload is also written next to its
disk as ``<name>.xml`` so the disk directory is self-contained.
"""
from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path

from vmhost.cmd import check_output
from vmhost.config import settings
from vmhost.errors import ExternalError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class StorageLayout:
    """Resolves and manages paths under the agent's root directory."""

    def __init__(self, root_dir: str | Path | None = None):
        self.root = Path(root_dir or settings.root_dir)
        self.qcow2_dir = self.root / "qcow2"
        self.iso_dir = self.root / "iso"
        self.xml_dir = self.root / "xml"

    def ensure_dirs(self) -> None:
        for path in (self.root, self.qcow2_dir, self.iso_dir, self.xml_dir):
            path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _under(default_dir: Path, name_or_path: str) -> Path:
        path = Path(name_or_path)
        return path if path.is_absolute() else default_dir / path

    def resolve_disk(self, disk: str) -> Path:
        """Relative disk paths live under ``qcow2/``."""
        return self._under(self.qcow2_dir, disk)

    def resolve_iso(self, iso: str) -> Path:
        """Relative media paths live under ``iso/``."""
        return self._under(self.iso_dir, iso)

    def snapshot_path(self, name: str) -> Path:
        return self.xml_dir / f"{name}.xml"

    def write_description(self, name: str, xml: str, disk_path: Path) -> Path:
        """Write ``<disk dir>/<name>.xml`` and refresh the snapshot copy."""
        if not name.strip():
            raise ValidationError("workload name is empty")
        disk_path.parent.mkdir(parents=True, exist_ok=True)
        out = disk_path.parent / f"{name}.xml"
        out.write_text(xml.strip() + "\n")
        self.snapshot_description(name, xml)
        return out

    def snapshot_description(self, name: str, xml: str) -> Path:
        self.xml_dir.mkdir(parents=True, exist_ok=True)
        out = self.snapshot_path(name)
        out.write_text(xml.strip() + "\n")
        return out

    def remove_workload_files(self, name: str, disk_path: Path) -> list[Path]:
        """Delete a workload's disk, description files and disk directory.

        The directory is removed when it is inside ``qcow2/`` or left empty;
        the shared ``qcow2/`` directory itself is never removed.
        """
        removed: list[Path] = []
        for path in (disk_path, disk_path.parent / f"{name}.xml", self.snapshot_path(name)):
            if path.exists():
                path.unlink()
                removed.append(path)

        directory = disk_path.parent
        if directory.exists() and directory.resolve() not in (
            self.qcow2_dir.resolve(), self.root.resolve(),
        ):
            inside_root = self.qcow2_dir.resolve() in directory.resolve().parents
            if inside_root:
                shutil.rmtree(directory)
                removed.append(directory)
            elif not any(directory.iterdir()):
                directory.rmdir()
                removed.append(directory)
        logger.info("Removed files of workload %s: %s", name, [str(p) for p in removed])
        return removed


def detect_disk_format(path: Path) -> str:
    """Probe an existing image with qemu-img, else infer from its extension."""
    if path.exists():
        out = check_output(["qemu-img", "info", "--output=json", str(path)])
        try:
            info = json.loads(out)
        except json.JSONDecodeError as e:
            raise ExternalError(f"qemu-img info {path}", f"unparsable output: {e}") from e
        fmt = str(info.get("format", "")).lower()
        if not fmt:
            raise ExternalError(f"qemu-img info {path}", "could not detect disk format")
        return fmt

    suffix = path.suffix.lower()
    if suffix in (".img", ".raw"):
        return "raw"
    return "qcow2"


def ensure_disk(path: Path, size_gb: int) -> str:
    """Create the disk when missing and return its format."""
    fmt = detect_disk_format(path)
    if path.exists():
        return fmt
    if size_gb <= 0:
        raise ValidationError(f"disk {path} does not exist and no positive size was given")
    path.parent.mkdir(parents=True, exist_ok=True)
    check_output(["qemu-img", "create", "-f", fmt, str(path), f"{size_gb}G"])
    logger.info("Created %s disk %s (%dG)", fmt, path, size_gb)
    return fmt


def require_file(path: Path, what: str) -> None:
    if not path.is_file():
        raise NotFoundError(f"{what} not found: {path}")
