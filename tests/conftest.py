"""Shared pytest fixtures for nest-vm tests.

No test needs QEMU, root, or network access: external commands go through
FakeRunner, and the process table is replaced by FakeProcessTable.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import patch

import pytest

from nest_vm.exceptions import CommandFailedError
from nest_vm.models import VmSpec
from nest_vm.privileged import CommandResult
from nest_vm.process_utils import VmProcess
from nest_vm.settings import Settings
from nest_vm.vm_manager import VmController

# ============================================================================
# Settings
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path with no sleeps, no downloads, no privilege checks."""
    return Settings(
        vm_root=tmp_path / "vms",
        media_root=tmp_path / "isos",
        shm_root=tmp_path / "shm",
        accel_device=tmp_path / "kvm",
        toolkit_build_dir=tmp_path / "toolkit",
        toolkit_lib_dir=tmp_path / "lib",
        toolkit_bin_dir=tmp_path / "bin",
        containerized=False,
        use_sudo=False,
        require_privileges=False,
        auto_download_drivers=False,
        start_settle_seconds=0,
        stop_grace_seconds=0,
    )


# ============================================================================
# Fake process table
# ============================================================================


@dataclass
class FakeProcessTable:
    """In-memory stand-in for the host process table: pid -> VM name."""

    processes: dict[int, str] = field(default_factory=dict)
    stubborn: set[int] = field(default_factory=set)
    next_pid: int = 4000

    def spawn(self, name: str) -> int:
        self.next_pid += 1
        self.processes[self.next_pid] = name
        return self.next_pid

    def pid_runs_vm(self, pid: int, name: str) -> bool:
        return self.processes.get(pid) == name

    def find_vm_processes(self, name: str) -> list[VmProcess]:
        return [VmProcess(pid=pid, create_time=float(pid)) for pid, vm in self.processes.items() if vm == name]

    def signal(self, pid: int, signal_name: str) -> bool:
        """Deliver a signal. Returns False if the process does not exist."""
        if pid not in self.processes:
            return False
        if signal_name == "KILL" or pid not in self.stubborn:
            del self.processes[pid]
        return True


@pytest.fixture
def process_table() -> FakeProcessTable:
    table = FakeProcessTable()
    with (
        patch("nest_vm.vm_manager.pid_runs_vm", side_effect=table.pid_runs_vm),
        patch("nest_vm.vm_manager.find_vm_processes", side_effect=table.find_vm_processes),
    ):
        yield table


# ============================================================================
# Fake privileged runner
# ============================================================================


class FakeRunner:
    """Records commands and simulates qemu-img, qemu-system, kill, and rm -rf.

    Attributes:
        calls: (argv, step) for every command run
        failures: argv[0] -> exception raised when that command runs
        launch_fails: Make QEMU launches exit nonzero after writing to the log
        launch_spawns: Make QEMU launches register a running process
    """

    def __init__(self, settings: Settings, table: FakeProcessTable | None = None) -> None:
        self.settings = settings
        self.table = table or FakeProcessTable()
        self.calls: list[tuple[list[str], str]] = []
        self.failures: dict[str, Exception] = {}
        self.launch_fails = False
        self.launch_spawns = True

    def argvs(self, step_prefix: str = "") -> list[list[str]]:
        return [argv for argv, step in self.calls if step.startswith(step_prefix)]

    async def run(
        self,
        argv,
        *,
        step: str,
        elevate: bool = True,
        cwd: Path | None = None,
        timeout: float | None = None,
        output_path: Path | None = None,
    ) -> CommandResult:
        argv = list(argv)
        self.calls.append((argv, step))
        if argv[0] in self.failures:
            raise self.failures[argv[0]]

        if argv[0] == self.settings.qemu_img_bin:
            Path(argv[4]).write_bytes(b"QFI\xfb")
        elif argv[0] == self.settings.qemu_bin:
            self._launch(argv, output_path)
        elif argv[0] == "kill":
            pid = int(argv[2])
            if not self.table.signal(pid, argv[1].lstrip("-")):
                raise CommandFailedError(
                    f"{step}: command exited with status 1: kill: ({pid}) - No such process",
                    argv=argv,
                    returncode=1,
                    stderr=f"kill: ({pid}) - No such process",
                    step=step,
                )
        elif argv[:2] == ["rm", "-rf"]:
            for target in argv[2:]:
                shutil.rmtree(target, ignore_errors=True)
        return CommandResult(argv=argv, returncode=0, stdout="", stderr="")

    def _launch(self, argv: list[str], output_path: Path | None) -> None:
        name = argv[argv.index("-name") + 1]
        if output_path is not None:
            with output_path.open("a") as log:
                log.write("qemu: fake launch\n")
        if self.launch_fails:
            raise CommandFailedError(
                "launch: command exited with status 1",
                argv=argv,
                returncode=1,
                step="launch",
            )
        if self.launch_spawns:
            pid = self.table.spawn(name)
            Path(argv[argv.index("-pidfile") + 1]).write_text(f"{pid}\n")


@pytest.fixture
def runner(settings: Settings, process_table: FakeProcessTable) -> FakeRunner:
    return FakeRunner(settings, process_table)


@pytest.fixture
def controller(settings: Settings, runner: FakeRunner) -> VmController:
    return VmController(settings, runner=runner)  # type: ignore[arg-type]


# ============================================================================
# Specs
# ============================================================================


@pytest.fixture
def make_spec():
    """Factory for VmSpec with small defaults."""

    def _make(**overrides) -> VmSpec:
        data = {"name": "test-vm", "cpu_count": 2, "memory_mb": 2048, "disk_gb": 10}
        data.update(overrides)
        return VmSpec.model_validate(data)

    return _make
