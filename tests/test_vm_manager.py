"""Tests for VmController (FakeRunner + FakeProcessTable, real tmp filesystem)."""

import asyncio
import json
import re
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from nest_vm.exceptions import (
    CommandFailedError,
    InvalidConfigError,
    VmAlreadyExistsError,
    VmNotFoundError,
    VmSpecValidationError,
    VmStartError,
    VmStopError,
)
from nest_vm.models import InstallOutcome, VmStatus
from nest_vm.settings import Settings
from nest_vm.vm_manager import VmController

TEST_VM = {"name": "test-vm", "cpuCount": 2, "memoryMB": 2048, "diskGB": 10}


# ============================================================================
# Definition
# ============================================================================


class TestCreate:
    """Tests for create_vm()."""

    async def test_create_persists_and_provisions(self, controller: VmController, runner, settings: Settings):
        info = await controller.create_vm(TEST_VM)
        assert info.status == VmStatus.STOPPED

        config = json.loads((settings.vm_root / "test-vm" / "config.json").read_text())
        assert (config["cpuCount"], config["memoryMB"], config["diskGB"]) == (2, 2048, 10)
        disk = settings.vm_root / "test-vm" / "disk.qcow2"
        assert runner.argvs("create-disk") == [["qemu-img", "create", "-f", "qcow2", str(disk), "10G"]]

    async def test_create_does_not_start(self, controller: VmController, runner) -> None:
        await controller.create_vm(TEST_VM)
        assert runner.argvs("launch") == []

    async def test_create_then_list(self, controller: VmController) -> None:
        """Listing returns exactly the created VM, every field intact."""
        info = await controller.create_vm(TEST_VM)
        vms = await controller.list_vms()
        assert len(vms) == 1
        assert vms[0].spec == info.spec
        assert vms[0].status == VmStatus.STOPPED
        assert vms[0].spec.model_dump(by_alias=True, exclude_none=True, exclude_defaults=True) == TEST_VM

    async def test_duplicate_name(self, controller: VmController) -> None:
        await controller.create_vm(TEST_VM)
        with pytest.raises(VmAlreadyExistsError):
            await controller.create_vm(TEST_VM)

    async def test_invalid_payload(self, controller: VmController, settings: Settings) -> None:
        with pytest.raises(VmSpecValidationError):
            await controller.create_vm({"name": "bad", "cpuCount": 0, "memoryMB": 2048, "diskGB": 10})
        assert not (settings.vm_root / "bad").exists()

    async def test_disk_failure_removes_vm_dir(self, controller: VmController, runner, settings: Settings):
        runner.failures["qemu-img"] = CommandFailedError("create-disk: no space", step="create-disk")
        with pytest.raises(CommandFailedError):
            await controller.create_vm(TEST_VM)
        assert not (settings.vm_root / "test-vm").exists()
        assert await controller.list_vms() == []

    async def test_template_defaults(self, controller: VmController) -> None:
        info = await controller.create_vm({"name": "deb", "templateId": "debian"})
        assert (info.spec.cpu_count, info.spec.memory_mb, info.spec.disk_gb) == (1, 2048, 20)

    async def test_introspection_triggers_toolkit_install(self, controller: VmController, runner) -> None:
        await controller.create_vm({**TEST_VM, "introspection": {"enabled": True}})
        assert runner.argvs("toolkit:toolchain")


class TestUpdateAndDelete:
    """Tests for update_vm() / delete_vm()."""

    async def test_update(self, controller: VmController) -> None:
        await controller.create_vm(TEST_VM)
        spec = await controller.update_vm("test-vm", {**TEST_VM, "memoryMB": 4096})
        assert spec.memory_mb == 4096
        assert (await controller.get_vm("test-vm")).spec.memory_mb == 4096

    async def test_update_name_defaults_to_target(self, controller: VmController) -> None:
        await controller.create_vm(TEST_VM)
        spec = await controller.update_vm("test-vm", {"cpuCount": 4, "memoryMB": 2048, "diskGB": 10})
        assert spec.name == "test-vm"

    async def test_rename_rejected(self, controller: VmController) -> None:
        await controller.create_vm(TEST_VM)
        with pytest.raises(VmSpecValidationError, match="cannot be changed"):
            await controller.update_vm("test-vm", {**TEST_VM, "name": "other"})

    async def test_update_missing(self, controller: VmController) -> None:
        with pytest.raises(VmNotFoundError):
            await controller.update_vm("ghost", TEST_VM | {"name": "ghost"})

    async def test_delete(self, controller: VmController, settings: Settings) -> None:
        await controller.create_vm(TEST_VM)
        await controller.delete_vm("test-vm")
        assert not (settings.vm_root / "test-vm").exists()
        assert await controller.list_vms() == []

    async def test_delete_missing_is_noop(self, controller: VmController, runner) -> None:
        await controller.delete_vm("ghost")
        assert runner.argvs("delete-vm-dir") == []


class TestQueries:
    """Tests for list/get/status/logs."""

    async def test_get_missing(self, controller: VmController) -> None:
        with pytest.raises(VmNotFoundError):
            await controller.get_vm("ghost")
        with pytest.raises(VmNotFoundError):
            await controller.get_status("ghost")

    async def test_corrupted_config_removed_on_list(self, controller: VmController, settings: Settings) -> None:
        await controller.create_vm(TEST_VM)
        broken = settings.vm_root / "broken"
        broken.mkdir()
        (broken / "config.json").write_text("{")

        vms = await controller.list_vms()
        assert [vm.spec.name for vm in vms] == ["test-vm"]
        assert not broken.exists()

    async def test_invalid_config_skipped_not_deleted(self, controller: VmController, settings: Settings) -> None:
        """A hand-added key hides the VM from listings but keeps its directory and disk."""
        await controller.create_vm(TEST_VM)
        config = settings.vm_root / "test-vm" / "config.json"
        data = json.loads(config.read_text())
        data["notes"] = "hand edit"
        config.write_text(json.dumps(data))

        assert await controller.list_vms() == []
        assert (settings.vm_root / "test-vm" / "disk.qcow2").exists()
        assert json.loads(config.read_text())["notes"] == "hand edit"

    async def test_invalid_config_lists_again_once_fixed(self, controller: VmController, settings: Settings):
        await controller.create_vm(TEST_VM)
        config = settings.vm_root / "test-vm" / "config.json"
        original = config.read_text()
        config.write_text(json.dumps({**json.loads(original), "cpuCount": 0}))
        assert await controller.list_vms() == []

        config.write_text(original)
        assert [vm.spec.name for vm in await controller.list_vms()] == ["test-vm"]

    async def test_invalid_config_still_raises_on_direct_access(self, controller: VmController, settings: Settings):
        await controller.create_vm(TEST_VM)
        config = settings.vm_root / "test-vm" / "config.json"
        config.write_text(json.dumps({**json.loads(config.read_text()), "gpu": True}))
        with pytest.raises(InvalidConfigError):
            await controller.get_vm("test-vm")

    async def test_logs_without_log(self, controller: VmController) -> None:
        await controller.create_vm(TEST_VM)
        assert await controller.get_logs("test-vm") == "VM Status: stopped\n---\nQEMU Logs:\nNo QEMU logs available"

    async def test_logs_after_start(self, controller: VmController) -> None:
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        logs = await controller.get_logs("test-vm")
        assert logs.startswith("VM Status: running\n---\nQEMU Logs:\n[")
        assert "Starting VM with command:\nqemu-system-x86_64 -name test-vm" in logs
        assert logs.endswith("qemu: fake launch\n")

    def test_templates(self, controller: VmController) -> None:
        assert [t.id for t in controller.get_templates()] == ["windows10", "debian", "macos"]


# ============================================================================
# Process lifecycle
# ============================================================================


class TestStart:
    """Tests for start_vm()."""

    async def test_start_without_accelerator(self, controller: VmController, runner, settings: Settings):
        await controller.create_vm(TEST_VM)
        info = await controller.start_vm("test-vm")
        assert info.status == VmStatus.RUNNING
        assert await controller.get_status("test-vm") == VmStatus.RUNNING

        [argv] = runner.argvs("launch")
        assert "-enable-kvm" not in argv
        assert argv[-1] == "-daemonize"
        assert argv[argv.index("-pidfile") + 1] == str(settings.vm_root / "test-vm" / "qemu.pid")

    async def test_start_with_accelerator(self, controller: VmController, runner, settings: Settings):
        settings.accel_device.write_bytes(b"")
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        [argv] = runner.argvs("launch")
        assert "-enable-kvm" in argv

    async def test_launch_record_written(self, controller: VmController, process_table, settings: Settings):
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        record = json.loads((settings.vm_root / "test-vm" / "launch.json").read_text())
        assert process_table.processes[record["pid"]] == "test-vm"

    async def test_start_running_vm_is_noop(self, controller: VmController, runner) -> None:
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        info = await controller.start_vm("test-vm")
        assert info.status == VmStatus.RUNNING
        assert len(runner.argvs("launch")) == 1

    async def test_start_missing(self, controller: VmController) -> None:
        with pytest.raises(VmNotFoundError):
            await controller.start_vm("ghost")

    async def test_launch_failure(self, controller: VmController, runner) -> None:
        runner.launch_fails = True
        await controller.create_vm(TEST_VM)
        with pytest.raises(VmStartError) as exc_info:
            await controller.start_vm("test-vm")
        assert "qemu: fake launch" in exc_info.value.log_tail
        assert isinstance(exc_info.value.__cause__, CommandFailedError)
        assert await controller.get_status("test-vm") == VmStatus.STOPPED

    async def test_process_missing_after_launch(self, controller: VmController, runner) -> None:
        runner.launch_spawns = False
        await controller.create_vm(TEST_VM)
        with pytest.raises(VmStartError, match="not found after launch"):
            await controller.start_vm("test-vm")

    async def test_introspection_resources_prepared(self, controller: VmController, runner) -> None:
        await controller.create_vm({**TEST_VM, "introspection": {"enabled": True}})
        await controller.start_vm("test-vm")
        assert runner.argvs("introspection:")
        [argv] = runner.argvs("launch")
        assert any(arg.startswith("memory-backend-file") for arg in argv)

    async def test_introspection_failures_do_not_block_start(
        self, controller: VmController, runner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await controller.create_vm({**TEST_VM, "introspection": {"enabled": True}})
        monkeypatch.setattr(
            controller._installer, "ensure_installed", AsyncMock(return_value=InstallOutcome.ALREADY_INSTALLED)
        )
        runner.failures["chmod"] = CommandFailedError("chmod: Operation not permitted", step="introspection")
        info = await controller.start_vm("test-vm")
        assert info.status == VmStatus.RUNNING


class TestStop:
    """Tests for stop_vm() / restart_vm()."""

    async def test_stop_running(self, controller: VmController, runner, process_table) -> None:
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        info = await controller.stop_vm("test-vm")
        assert info.status == VmStatus.STOPPED
        assert process_table.processes == {}
        assert [argv[1] for argv in runner.argvs("stop:")] == ["-TERM"]

    async def test_stop_stopped_succeeds(self, controller: VmController, runner) -> None:
        await controller.create_vm(TEST_VM)
        info = await controller.stop_vm("test-vm")
        assert info.status == VmStatus.STOPPED
        assert runner.argvs("stop:") == []

    async def test_stubborn_process_killed(self, controller: VmController, runner, process_table) -> None:
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        process_table.stubborn.update(process_table.processes)

        await controller.stop_vm("test-vm")
        assert [argv[1] for argv in runner.argvs("stop:")] == ["-TERM", "-KILL"]
        assert await controller.get_status("test-vm") == VmStatus.STOPPED

    async def test_stray_processes_found_by_scan(self, controller: VmController, process_table) -> None:
        """A QEMU started outside the controller is still detected and stopped."""
        await controller.create_vm(TEST_VM)
        process_table.spawn("test-vm")
        assert await controller.get_status("test-vm") == VmStatus.RUNNING
        await controller.stop_vm("test-vm")
        assert process_table.processes == {}

    async def test_stray_alongside_recorded_process(self, controller: VmController, runner, process_table) -> None:
        """A second hypervisor with the same -name is stopped along with the recorded one."""
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        stray = process_table.spawn("test-vm")

        await controller.stop_vm("test-vm")
        assert process_table.processes == {}
        assert ["kill", "-TERM", str(stray)] in runner.argvs("stop:")
        assert await controller.get_status("test-vm") == VmStatus.STOPPED

    async def test_signal_error(self, controller: VmController, runner) -> None:
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        runner.failures["kill"] = CommandFailedError(
            "stop:term: Operation not permitted", stderr="kill: Operation not permitted", step="stop:term"
        )
        with pytest.raises(VmStopError):
            await controller.stop_vm("test-vm")

    async def test_two_cycles_append_log(self, controller: VmController, settings: Settings) -> None:
        await controller.create_vm(TEST_VM)
        for _ in range(2):
            await controller.start_vm("test-vm")
            await controller.stop_vm("test-vm")
        log = (settings.vm_root / "test-vm" / "qemu.log").read_text()
        stamps = re.findall(r"^\[([^\]]+)\] Starting VM with command:$", log, flags=re.MULTILINE)
        assert len(stamps) == 2
        first, second = (datetime.fromisoformat(stamp) for stamp in stamps)
        assert first < second

    async def test_restart(self, controller: VmController, runner, process_table) -> None:
        await controller.create_vm(TEST_VM)
        await controller.start_vm("test-vm")
        first = set(process_table.processes)
        info = await controller.restart_vm("test-vm")
        assert info.status == VmStatus.RUNNING
        assert set(process_table.processes).isdisjoint(first)
        assert len(runner.argvs("launch")) == 2

    async def test_concurrent_starts_launch_once(self, controller: VmController, runner) -> None:
        await controller.create_vm(TEST_VM)
        await asyncio.gather(controller.start_vm("test-vm"), controller.start_vm("test-vm"))
        assert len(runner.argvs("launch")) == 1


class TestLifecycle:
    """Tests for start()/context manager."""

    async def test_context_manager_creates_roots(self, settings: Settings, runner) -> None:
        async with VmController(settings, runner=runner) as controller:
            assert settings.vm_root.is_dir()
            assert settings.media_root.is_dir()
            assert await controller.list_vms() == []
