"""Privileged execution helper.

Every disk, process, and filesystem side effect that needs root goes through
PrivilegedRunner.run(). Commands are argv lists executed without a shell, so
VM names and paths are never interpolated into shell text.

Elevation:
    - Running as root: commands run directly
    - use_sudo=True and not root: commands are prefixed with ``sudo -n``
    - Containerized: commands run directly (container root is assumed)
    - Otherwise: PrivilegeError, unless require_privileges=False (tests, dev)
"""

from __future__ import annotations

import asyncio
import os
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiofiles.os

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.exceptions import CommandFailedError, CommandTimeoutError, PrivilegeError
from nest_vm.process_utils import ProcessWrapper, cleanup_process

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from nest_vm.settings import Settings

logger = get_logger(__name__)

_STDERR_EXCERPT_CHARS = 2000


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a successful command."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def is_root() -> bool:
    return os.geteuid() == 0


class PrivilegedRunner:
    """Runs argv commands with optional elevation, a timeout, and structured errors."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def elevation_prefix(self) -> list[str]:
        """Argv prefix for elevated commands.

        Raises:
            PrivilegeError: Not root, not containerized, sudo disabled, and
                require_privileges is set
        """
        if is_root():
            return []
        if self._settings.use_sudo:
            return ["sudo", "-n"]
        if self._settings.containerized or not self._settings.require_privileges:
            return []
        raise PrivilegeError(
            "Root privileges required: run as root, inside a container, or set NEST_VM_USE_SUDO=true",
            context={"euid": os.geteuid()},
        )

    def check_privileges(self) -> None:
        """Raise PrivilegeError early if elevated commands cannot run."""
        self.elevation_prefix()

    async def run(
        self,
        argv: Sequence[str],
        *,
        step: str,
        elevate: bool = True,
        cwd: Path | None = None,
        timeout: float | None = None,
        output_path: Path | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            argv: Command and arguments
            step: Operation step name, carried in logs and errors
            elevate: Apply the elevation prefix
            cwd: Working directory
            timeout: Seconds before the command is terminated (default: command_timeout_seconds)
            output_path: Append stdout and stderr to this file instead of capturing them

        Returns:
            CommandResult with captured output (empty when output_path is set)

        Raises:
            CommandFailedError: Nonzero exit, or the executable could not be started
            CommandTimeoutError: Timeout exceeded; the process was terminated
            PrivilegeError: Elevation requested but not available
        """
        full_argv = [*(self.elevation_prefix() if elevate else []), *argv]
        timeout = timeout if timeout is not None else self._settings.command_timeout_seconds
        logger.debug(
            "Running command",
            extra={"step": step, "command": shlex.join(full_argv), "cwd": str(cwd) if cwd else None},
        )

        if output_path is not None:
            return await self._run_to_file(full_argv, step=step, cwd=cwd, timeout=timeout, output_path=output_path)

        try:
            proc = await asyncio.create_subprocess_exec(
                *full_argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as e:
            raise CommandFailedError(
                f"{step}: cannot execute {full_argv[0]}: {e}",
                argv=full_argv,
                step=step,
            ) from e

        wrapper = ProcessWrapper(proc)
        try:
            async with asyncio.timeout(timeout):
                stdout_bytes, stderr_bytes = await proc.communicate()
        except TimeoutError as e:
            await cleanup_process(
                wrapper,
                full_argv[0],
                step,
                term_timeout=constants.PROCESS_TERM_TIMEOUT_SECONDS,
                kill_timeout=constants.PROCESS_KILL_TIMEOUT_SECONDS,
            )
            raise CommandTimeoutError(
                f"{step}: command timed out after {timeout}s",
                argv=full_argv,
                step=step,
                context={"timeout_seconds": timeout},
            ) from e

        stdout = stdout_bytes.decode(errors="replace")
        stderr = stderr_bytes.decode(errors="replace")
        return self._check_result(full_argv, proc.returncode, stdout, stderr, step)

    async def _run_to_file(
        self,
        argv: list[str],
        *,
        step: str,
        cwd: Path | None,
        timeout: float,
        output_path: Path,
    ) -> CommandResult:
        await aiofiles.os.makedirs(output_path.parent, exist_ok=True)
        # The child inherits the descriptor; an O_APPEND fd keeps earlier log content
        with output_path.open("ab") as log_file:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=log_file,
                    cwd=cwd,
                )
            except OSError as e:
                raise CommandFailedError(
                    f"{step}: cannot execute {argv[0]}: {e}",
                    argv=argv,
                    step=step,
                ) from e

            wrapper = ProcessWrapper(proc)
            try:
                async with asyncio.timeout(timeout):
                    await proc.wait()
            except TimeoutError as e:
                await cleanup_process(
                    wrapper,
                    argv[0],
                    step,
                    term_timeout=constants.PROCESS_TERM_TIMEOUT_SECONDS,
                    kill_timeout=constants.PROCESS_KILL_TIMEOUT_SECONDS,
                )
                raise CommandTimeoutError(
                    f"{step}: command timed out after {timeout}s",
                    argv=argv,
                    step=step,
                    context={"timeout_seconds": timeout, "output_path": str(output_path)},
                ) from e

        return self._check_result(argv, proc.returncode, "", "", step)

    @staticmethod
    def _check_result(argv: list[str], returncode: int | None, stdout: str, stderr: str, step: str) -> CommandResult:
        if returncode != 0:
            detail = (stderr or stdout).strip()[-_STDERR_EXCERPT_CHARS:]
            logger.debug(
                "Command failed",
                extra={"step": step, "returncode": returncode, "stderr": detail},
            )
            raise CommandFailedError(
                f"{step}: command exited with status {returncode}" + (f": {detail}" if detail else ""),
                argv=argv,
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
                step=step,
            )
        return CommandResult(argv=argv, returncode=0, stdout=stdout, stderr=stderr)
