"""Tests for cold migration: release on the source, adopt on the destination."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET

import pytest

import vmhost.lifecycle as lifecycle_mod
from vmhost.errors import NotFoundError, ValidationError
from vmhost.hypervisor import WorkloadState
from vmhost.migration import ColdMigrationInfo, MigrationEngine


@pytest.fixture
def engine(fake_hv):
    return MigrationEngine(connect=fake_hv.connect)


@pytest.fixture
def disk(layout):
    path = layout.qcow2_dir / "web01" / "web01.qcow2"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"qcow")
    return path


@pytest.fixture(autouse=True)
def existing_disks_only(monkeypatch):
    monkeypatch.setattr(lifecycle_mod, "ensure_disk", lambda path, size_gb: "qcow2")


class TestColdRelease:
    def test_captures_definition_and_drops_workload(self, engine, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        info = engine.cold_release("web01")

        assert info == ColdMigrationInfo(
            name="web01",
            memory_mb=4096,
            vcpus=4,
            network="default",
            disk_path="/var/lib/vmhost/qcow2/web01/web01.qcow2",
            vnc_password="",
            cpu_xml="<cpu mode='host-passthrough' check='none' migratable='on'/>",
        )
        assert fake_hv.mutations() == [("destroy", "web01"), ("undefine", "web01", True)]
        assert "web01" not in fake_hv.domains

    def test_stopped_workload_is_only_undefined(self, engine, fake_hv):
        fake_hv.add("web01")
        engine.cold_release("web01", source_uri="qemu:///system")
        assert fake_hv.mutations() == [("undefine", "web01", True)]
        assert fake_hv.uris == ["qemu:///system"]

    def test_workload_without_disk_is_kept(self, engine, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING, xml=(
            "<domain><name>web01</name><memory>1048576</memory><vcpu>1</vcpu><devices/></domain>"
        ))
        with pytest.raises(ValidationError, match="disk path"):
            engine.cold_release("web01")
        assert fake_hv.mutations() == []

    def test_unknown_workload(self, engine):
        with pytest.raises(NotFoundError):
            engine.cold_release("ghost")


class TestColdAdopt:
    def _info(self, disk, **overrides):
        values = dict(
            name="web01", memory_mb=2048, vcpus=2, network="default",
            disk_path=str(disk), vnc_password="pw1",
            cpu_xml="<cpu mode='host-model' check='partial'/>",
        )
        values.update(overrides)
        return ColdMigrationInfo(**values)

    def test_defines_and_starts(self, engine, lifecycle, fake_hv, disk):
        result = engine.cold_adopt(self._info(disk), lifecycle)

        assert result.disk_path == disk
        assert fake_hv.domains["web01"].state == WorkloadState.RUNNING
        root = ET.fromstring(fake_hv.domains["web01"].xml)
        assert root.find("cpu").get("mode") == "host-model"
        assert root.find("./devices/graphics").get("passwd") == "pw1"
        assert root.findtext("memory") == "2048"

    def test_missing_cpu_defaults_to_passthrough(self, engine, lifecycle, fake_hv, disk, caplog):
        with caplog.at_level(logging.WARNING, logger="vmhost.migration"):
            engine.cold_adopt(self._info(disk, cpu_xml=""), lifecycle)
        assert "defaulting to host-passthrough" in caplog.text
        root = ET.fromstring(fake_hv.domains["web01"].xml)
        assert root.find("cpu").get("mode") == "host-passthrough"

    def test_disk_must_be_present(self, engine, lifecycle, fake_hv, layout):
        with pytest.raises(NotFoundError, match="not present"):
            engine.cold_adopt(self._info(layout.qcow2_dir / "missing.qcow2"), lifecycle)
        assert fake_hv.opened == 0

    @pytest.mark.parametrize("overrides", [{"memory_mb": 0}, {"network": ""}, {"name": " "}])
    def test_invalid_info(self, engine, lifecycle, fake_hv, disk, overrides):
        with pytest.raises(ValidationError):
            engine.cold_adopt(self._info(disk, **overrides), lifecycle)
        assert fake_hv.opened == 0

    def test_release_then_adopt(self, fake_hv, lifecycle, disk, make_domain):
        source = MigrationEngine(connect=fake_hv.connect)
        fake_hv.add("web01", WorkloadState.RUNNING, xml=make_domain("web01", disk=str(disk)))

        info = source.cold_release("web01")
        assert "web01" not in fake_hv.domains

        source.cold_adopt(info, lifecycle)
        root = ET.fromstring(fake_hv.domains["web01"].xml)
        assert root.find("./devices/disk/source").get("file") == str(disk)
        assert root.find("cpu").get("migratable") == "on"
        assert fake_hv.domains["web01"].state == WorkloadState.RUNNING
