"""Tests for process-table helpers."""

import asyncio
import os

import pytest

from nest_vm.process_utils import ProcessWrapper, cleanup_process, cmdline_runs_vm, pid_runs_vm

# ============================================================================
# cmdline matching
# ============================================================================


class TestCmdlineRunsVm:
    """Tests for cmdline_runs_vm()."""

    def test_matches_exact_name(self) -> None:
        assert cmdline_runs_vm(["/usr/bin/qemu-system-x86_64", "-name", "web", "-m", "1024"], "web")

    def test_prefix_name_does_not_match(self) -> None:
        assert not cmdline_runs_vm(["qemu-system-x86_64", "-name", "web-2"], "web")

    def test_other_binary(self) -> None:
        assert not cmdline_runs_vm(["python3", "-name", "web"], "web")

    def test_name_as_other_argument(self) -> None:
        assert not cmdline_runs_vm(["qemu-system-x86_64", "-drive", "web", "-name", "db"], "web")

    @pytest.mark.parametrize("cmdline", [[], ["qemu-system-x86_64"], ["qemu-system-x86_64", "-name"]])
    def test_degenerate(self, cmdline: list[str]) -> None:
        assert not cmdline_runs_vm(cmdline, "web")


class TestPidRunsVm:
    """Tests for pid_runs_vm() against the real process table."""

    def test_own_process_is_not_a_vm(self) -> None:
        assert pid_runs_vm(os.getpid(), "test-vm") is False

    def test_dead_pid(self) -> None:
        assert pid_runs_vm(2**22 + 12345, "test-vm") is False


# ============================================================================
# cleanup_process
# ============================================================================


class TestCleanupProcess:
    """Tests for SIGTERM -> SIGKILL escalation."""

    async def test_none(self) -> None:
        assert await cleanup_process(None, "noop", "ctx") is True

    async def test_terminates_sleeping_process(self) -> None:
        proc = await asyncio.create_subprocess_exec("sleep", "30")
        wrapper = ProcessWrapper(proc)
        assert await cleanup_process(wrapper, "sleep", "ctx", term_timeout=2.0) is True
        assert proc.returncode is not None

    async def test_kills_process_ignoring_term(self) -> None:
        proc = await asyncio.create_subprocess_exec("sh", "-c", "trap '' TERM; exec sleep 30")
        await asyncio.sleep(0.2)
        wrapper = ProcessWrapper(proc)
        assert await cleanup_process(wrapper, "sh", "ctx", term_timeout=0.3, kill_timeout=2.0) is True
        assert proc.returncode is not None

    async def test_already_exited(self) -> None:
        proc = await asyncio.create_subprocess_exec("true")
        await proc.wait()
        assert await cleanup_process(ProcessWrapper(proc), "true", "ctx") is True
