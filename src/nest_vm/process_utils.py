"""Process-table inspection and subprocess cleanup.

- find_vm_processes / pid_runs_vm: psutil-based liveness checks for a VM name
- ProcessWrapper: PID-reuse safe wrapper around asyncio subprocesses
- cleanup_process: SIGTERM → SIGKILL escalation for timed-out commands

The psutil helpers are blocking; async callers run them via asyncio.to_thread().
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import PurePath

import psutil

from nest_vm._logging import get_logger

logger = get_logger(__name__)

_HYPERVISOR_PREFIX = "qemu-system"


@dataclass(frozen=True)
class VmProcess:
    """A hypervisor process found in the process table."""

    pid: int
    create_time: float


def cmdline_runs_vm(cmdline: list[str], name: str) -> bool:
    """True if ``cmdline`` is a hypervisor invocation carrying ``-name <name>``.

    Matching is on the exact ``-name`` argument, not a substring, so a VM
    called ``web`` does not match ``web-2``.
    """
    if not cmdline or not PurePath(cmdline[0]).name.startswith(_HYPERVISOR_PREFIX):
        return False
    return any(flag == "-name" and value == name for flag, value in zip(cmdline, cmdline[1:], strict=False))


def find_vm_processes(name: str) -> list[VmProcess]:
    """Scan the host process table for hypervisor processes running ``name``."""
    found: list[VmProcess] = []
    for proc in psutil.process_iter(["pid", "cmdline", "create_time"]):
        cmdline = proc.info.get("cmdline") or []
        if cmdline_runs_vm(cmdline, name):
            found.append(VmProcess(pid=proc.info["pid"], create_time=proc.info.get("create_time") or 0.0))
    return found


def pid_runs_vm(pid: int, name: str) -> bool:
    """True if ``pid`` is alive and is still the hypervisor for ``name`` (PID-reuse safe)."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        return cmdline_runs_vm(proc.cmdline(), name)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer signalling.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    async def is_running(self) -> bool:
        if not self.psutil_proc:
            return self.async_proc.returncode is None
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def terminate(self) -> None:
        """SIGTERM without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """SIGKILL without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit, draining pipes if present.

        Raises:
            TimeoutError: Process didn't exit within timeout
        """
        has_pipes = self.async_proc.stdout is not None or self.async_proc.stderr is not None
        if has_pipes:
            try:
                await asyncio.wait_for(self.async_proc.communicate(), timeout=timeout)
            except RuntimeError:
                # Another coroutine is already reading the pipes
                await asyncio.wait_for(self.async_proc.wait(), timeout=timeout)
        else:
            await asyncio.wait_for(self.async_proc.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Force cleanup of a subprocess (SIGTERM → SIGKILL).

    Never raises; failures are logged.

    Args:
        proc: ProcessWrapper to stop (None returns immediately)
        name: Process name for logging (e.g., "qemu-img", "make")
        context_id: Context for logging (e.g., VM name or install step)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if it survived SIGKILL or cleanup failed
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id})
        await proc.terminate()
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False
