"""Tests for the lifecycle controller against the in-memory hypervisor."""

from __future__ import annotations

import itertools
import xml.etree.ElementTree as ET

import pytest

import vmhost.lifecycle as lifecycle_mod
from vmhost.domain_builder import CPUMode
from vmhost.errors import (
    NotFoundError,
    PreconditionError,
    ShutdownTimeout,
    ValidationError,
)
from vmhost.hypervisor import ShutdownMode, WorkloadState
from vmhost.lifecycle import CreateOptions, LifecycleController
from vmhost.pinning import PinningRequest


@pytest.fixture
def no_qemu_img(monkeypatch):
    """Skip qemu-img: every disk is reported as an existing qcow2 image."""
    created = []

    def fake_ensure_disk(path, size_gb):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()
        created.append((path, size_gb))
        return "qcow2"

    monkeypatch.setattr(lifecycle_mod, "ensure_disk", fake_ensure_disk)
    return created


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:
    def test_get_state(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.PAUSED)
        assert lifecycle.get_state("web01") == WorkloadState.PAUSED

    def test_unknown_workload(self, lifecycle):
        with pytest.raises(NotFoundError, match="web99"):
            lifecycle.get_state("web99")

    def test_list(self, lifecycle, fake_hv):
        fake_hv.add("b", WorkloadState.RUNNING)
        fake_hv.add("a")
        listed = lifecycle.list_workloads()
        assert [(w.name, w.state) for w in listed] == [
            ("a", WorkloadState.SHUT_OFF), ("b", WorkloadState.RUNNING),
        ]

    def test_connection_closed_after_each_operation(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        lifecycle.get_state("web01")
        with pytest.raises(NotFoundError):
            lifecycle.get_state("missing")
        assert fake_hv.opened == fake_hv.closed == 2

    def test_get_description(self, lifecycle, fake_hv, make_domain):
        fake_hv.add("web01")
        assert lifecycle.get_description("web01") == make_domain("web01")


# ---------------------------------------------------------------------------
# Power state
# ---------------------------------------------------------------------------

class TestPowerState:
    def test_start(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        lifecycle.start("web01")
        assert fake_hv.mutations() == [("create", "web01")]

    def test_start_running_rejected_without_mutation(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        with pytest.raises(PreconditionError) as exc_info:
            lifecycle.start("web01")
        assert exc_info.value.actual == "running"
        assert "shutoff" in exc_info.value.required
        assert "start: workload web01" in str(exc_info.value)
        assert fake_hv.mutations() == []

    def test_graceful_shutdown_uses_guest_agent(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        lifecycle.shutdown("web01")
        assert fake_hv.mutations() == [("shutdown", "web01", ShutdownMode.GUEST_AGENT)]
        assert fake_hv.domains["web01"].state == WorkloadState.SHUT_OFF

    def test_shutdown_falls_back_to_acpi(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        fake_hv.guest_agent_fails = True
        lifecycle.shutdown("web01")
        assert [c[2] for c in fake_hv.mutations()] == [ShutdownMode.GUEST_AGENT, ShutdownMode.ACPI]

    def test_shutdown_of_paused_resumes_first(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.PAUSED)
        lifecycle.shutdown("web01")
        assert [c[0] for c in fake_hv.mutations()] == ["resume", "shutdown"]

    def test_shutdown_already_off_is_noop(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        lifecycle.shutdown("web01")
        assert fake_hv.mutations() == []

    def test_shutdown_crashed_rejected(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.CRASHED)
        with pytest.raises(PreconditionError):
            lifecycle.shutdown("web01")

    def test_shutdown_times_out(self, fake_hv, layout):
        ticks = itertools.count(step=10)
        controller = LifecycleController(
            connect=fake_hv.connect,
            layout=layout,
            shutdown_timeout=30,
            poll_interval=1,
            sleep=lambda _: None,
            clock=lambda: next(ticks),
        )
        fake_hv.add("web01", WorkloadState.RUNNING)
        fake_hv.ignore_shutdown = True
        with pytest.raises(ShutdownTimeout, match="web01"):
            controller.shutdown("web01")
        assert fake_hv.domains["web01"].state == WorkloadState.RUNNING

    def test_force_shutdown(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.PAUSED)
        lifecycle.force_shutdown("web01")
        assert fake_hv.mutations() == [("destroy", "web01")]

    def test_force_shutdown_of_stopped_rejected(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        with pytest.raises(PreconditionError):
            lifecycle.force_shutdown("web01")

    def test_pause_and_resume(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        lifecycle.pause("web01")
        with pytest.raises(PreconditionError):
            lifecycle.pause("web01")
        lifecycle.resume("web01")
        with pytest.raises(PreconditionError):
            lifecycle.resume("web01")
        assert [c[0] for c in fake_hv.mutations()] == ["suspend", "resume"]

    def test_restart(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        lifecycle.restart("web01")
        assert [c[0] for c in fake_hv.mutations()] == ["destroy", "create"]
        assert fake_hv.domains["web01"].state == WorkloadState.RUNNING


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------

class TestDefinition:
    def test_destroy_and_undefine(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.RUNNING)
        lifecycle.destroy_and_undefine("web01")
        assert fake_hv.mutations() == [("destroy", "web01"), ("undefine", "web01", True)]
        assert "web01" not in fake_hv.domains

    def test_undefine_keeps_managed_state(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        lifecycle.undefine("web01")
        assert fake_hv.mutations() == [("undefine", "web01", False)]
        assert "web01" not in fake_hv.domains

    @pytest.mark.parametrize("state", [WorkloadState.RUNNING, WorkloadState.PAUSED, WorkloadState.BLOCKED])
    def test_undefine_powers_off_first(self, lifecycle, fake_hv, state):
        fake_hv.add("web01", state)
        lifecycle.undefine("web01")
        assert fake_hv.mutations() == [("destroy", "web01"), ("undefine", "web01", False)]
        assert "web01" not in fake_hv.domains

    def test_remove_deletes_disk_directory(self, lifecycle, fake_hv, layout, make_domain):
        disk = layout.qcow2_dir / "web01" / "web01.qcow2"
        disk.parent.mkdir(parents=True)
        disk.write_bytes(b"qcow")
        (disk.parent / "web01.xml").write_text("<domain/>")
        layout.snapshot_description("web01", "<domain/>")
        fake_hv.add("web01", WorkloadState.RUNNING, xml=make_domain("web01", disk=str(disk)))

        removed = lifecycle.remove("web01")

        assert [c[0] for c in fake_hv.mutations()] == ["destroy", "undefine"]
        assert not disk.parent.exists()
        assert not layout.snapshot_path("web01").exists()
        assert disk in removed
        assert layout.qcow2_dir.exists()

    def test_remove_without_disk(self, lifecycle, fake_hv):
        fake_hv.add("web01", xml="<domain><name>web01</name><devices/></domain>")
        with pytest.raises(NotFoundError):
            lifecycle.remove("web01")
        assert fake_hv.mutations() == []

    def test_replace_description(self, lifecycle, fake_hv, layout, make_domain):
        dom = fake_hv.add("web01")
        new_xml = make_domain("web01", uuid="00000000-0000-0000-0000-000000000000").replace(
            "<vcpu placement='static'>4</vcpu>", "<vcpu placement='static'>8</vcpu>"
        )
        result = lifecycle.replace_description("web01", new_xml)

        root = ET.fromstring(result)
        assert root.findtext("uuid") == dom.uuid
        assert root.findtext("vcpu") == "8"
        assert fake_hv.mutations() == [("define", "web01", True)]
        assert layout.snapshot_path("web01").read_text().strip() == result.strip()

    def test_replace_description_requires_shut_off(self, lifecycle, fake_hv, make_domain):
        fake_hv.add("web01", WorkloadState.RUNNING)
        with pytest.raises(PreconditionError):
            lifecycle.replace_description("web01", make_domain("web01"))
        assert fake_hv.mutations() == []

    def test_replace_description_name_mismatch(self, lifecycle, fake_hv, make_domain):
        fake_hv.add("web01")
        with pytest.raises(ValidationError):
            lifecycle.replace_description("web01", make_domain("other"))
        assert fake_hv.mutations() == []


class TestCreate:
    def _options(self, **overrides):
        values = dict(name="web02", memory_mb=2048, vcpus=2, disk="web02/web02.qcow2", disk_size_gb=20)
        values.update(overrides)
        return CreateOptions(**values)

    def test_create_defines_and_starts(self, lifecycle, fake_hv, layout, no_qemu_img):
        result = lifecycle.create(self._options())

        assert [c[0] for c in fake_hv.mutations()] == ["define", "create"]
        assert fake_hv.domains["web02"].state == WorkloadState.RUNNING
        assert result.disk_path == layout.qcow2_dir / "web02" / "web02.qcow2"
        assert result.disk_format == "qcow2"
        assert result.uuid == fake_hv.domains["web02"].uuid
        assert result.description_path.read_text() == layout.snapshot_path("web02").read_text()
        assert no_qemu_img == [(result.disk_path, 20)]

        root = ET.fromstring(fake_hv.domains["web02"].xml)
        assert root.find("memory").text == "2048"
        assert root.find("cpu").get("mode") == "host-passthrough"
        assert root.find("./devices/interface/source").get("network") == "default"

    def test_custom_cpu_mode(self, lifecycle, fake_hv, no_qemu_img):
        lifecycle.create(self._options(cpu_mode=CPUMode.CUSTOM, cpu_model="EPYC"))
        root = ET.fromstring(fake_hv.domains["web02"].xml)
        assert root.find("./cpu/model").text == "EPYC"

    def test_duplicate_name_rejected(self, lifecycle, fake_hv, no_qemu_img):
        fake_hv.add("web02")
        with pytest.raises(ValidationError, match="already exists"):
            lifecycle.create(self._options())
        assert fake_hv.mutations() == []
        assert no_qemu_img == []

    @pytest.mark.parametrize("overrides", [
        {"memory_mb": 0},
        {"vcpus": -1},
        {"name": "bad name"},
        {"disk": "  "},
        {"vnc_password": "no spaces allowed"},
        {"cpu_xml": "<domain/>"},
    ])
    def test_invalid_request_never_connects(self, lifecycle, fake_hv, no_qemu_img, overrides):
        with pytest.raises(ValidationError):
            lifecycle.create(self._options(**overrides))
        assert fake_hv.opened == 0

    def test_missing_iso(self, lifecycle, fake_hv, no_qemu_img):
        with pytest.raises(NotFoundError, match="install medium"):
            lifecycle.create(self._options(iso="missing.iso"))
        assert fake_hv.opened == 0

    def test_iso_attached_as_cdrom(self, lifecycle, fake_hv, layout, no_qemu_img):
        layout.ensure_dirs()
        (layout.iso_dir / "install.iso").write_bytes(b"iso")
        lifecycle.create(self._options(iso="install.iso"))
        root = ET.fromstring(fake_hv.domains["web02"].xml)
        cdrom = root.find("./devices/disk[@device='cdrom']/source")
        assert cdrom.get("file") == str(layout.iso_dir / "install.iso")


# ---------------------------------------------------------------------------
# Hardware-description features
# ---------------------------------------------------------------------------

class TestFeatures:
    def test_balloon_edit_requires_shut_off(self, lifecycle, fake_hv, make_domain):
        fake_hv.add("web01", WorkloadState.RUNNING)
        with pytest.raises(PreconditionError):
            lifecycle.set_memory_balloon("web01", False)
        assert fake_hv.mutations() == []
        assert fake_hv.domains["web01"].xml == make_domain("web01")

    def test_balloon_disable(self, lifecycle, fake_hv, layout):
        fake_hv.add("web01")
        state = lifecycle.set_memory_balloon("web01", False)
        assert state.enabled is False
        assert fake_hv.mutations() == [("define", "web01", False)]
        assert lifecycle.get_memory_balloon("web01").model == "none"
        assert layout.snapshot_path("web01").exists()

    def test_unchanged_edit_skips_define(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        state = lifecycle.set_memory_balloon("web01", True)
        assert state.enabled is True
        assert fake_hv.mutations() == []

    def test_shutting_down_counts_as_offline(self, lifecycle, fake_hv):
        fake_hv.add("web01", WorkloadState.SHUTTING_DOWN)
        assert lifecycle.set_hugepages("web01", True).enabled is True

    def test_hugepages_round_trip(self, lifecycle, fake_hv, make_domain):
        fake_hv.add("web01")
        lifecycle.set_hugepages("web01", True)
        assert lifecycle.get_hugepages("web01").enabled is True
        lifecycle.set_hugepages("web01", False)
        assert fake_hv.domains["web01"].xml == make_domain("web01")

    def test_change_vnc_password(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        lifecycle.change_vnc_password("web01", "Secr3t!")
        graphics = ET.fromstring(fake_hv.domains["web01"].xml).find("./devices/graphics")
        assert graphics.get("passwd") == "Secr3t!"

    def test_invalid_vnc_password_never_connects(self, lifecycle, fake_hv):
        fake_hv.add("web01")
        with pytest.raises(ValidationError):
            lifecycle.change_vnc_password("web01", "with space")
        assert fake_hv.opened == 0


class TestPinning:
    def test_apply_and_read(self, lifecycle, fake_hv, sysfs):
        fake_hv.add("web01")
        info = lifecycle.apply_pinning("web01", PinningRequest(0, 1, True, 0))
        assert [p.cpuset for p in info.pins] == [(0, 4), (1, 5)]
        assert lifecycle.get_pinning("web01").core_range_end == 1
        assert ET.fromstring(fake_hv.domains["web01"].xml).findtext("vcpu") == "2"

    def test_invalid_request_never_connects(self, lifecycle, fake_hv, sysfs):
        fake_hv.add("web01")
        with pytest.raises(ValidationError):
            lifecycle.apply_pinning("web01", PinningRequest(0, 7, False, 0))
        assert fake_hv.opened == 0

    def test_requires_shut_off(self, lifecycle, fake_hv, sysfs):
        fake_hv.add("web01", WorkloadState.RUNNING)
        with pytest.raises(PreconditionError):
            lifecycle.apply_pinning("web01", PinningRequest(0, 0, False, 0))
        assert fake_hv.mutations() == []

    def test_remove(self, lifecycle, fake_hv, sysfs):
        fake_hv.add("web01")
        lifecycle.apply_pinning("web01", PinningRequest(0, 0, False, 0))
        lifecycle.remove_pinning("web01")
        assert lifecycle.get_pinning("web01") is None
