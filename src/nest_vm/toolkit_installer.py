"""Idempotent installer for the LeechCore / MemProcFS introspection toolkit.

Installed state is keyed on four artifacts (three shared libraries and the
memprocfs binary) being present with owner rwx bits, plus the shared-memory
root being owner rwx. Anything less triggers a full reinstall:

    1. toolchain  apt build dependencies
    2. core       LeechCore → leechcore.so
    3. dependent  MemProcFS (vmm.so, memprocfs, vmmpyc bindings)
    4. plugins    LeechCore-plugins → leechcore_device_qemu.so and friends

A failing command aborts the install; the checkouts are then removed and
ToolkitInstallError is raised. After a successful install the checkouts stay
in the build directory for later rebuilds.
"""

from __future__ import annotations

import asyncio
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.exceptions import CommandFailedError, PrivilegeError, ToolkitInstallError
from nest_vm.models import InstallOutcome

if TYPE_CHECKING:
    from nest_vm.privileged import PrivilegedRunner
    from nest_vm.settings import Settings

logger = get_logger(__name__)

_OWNER_RWX = stat.S_IRWXU


@dataclass(frozen=True)
class BuildStep:
    """One command of an install stage."""

    argv: tuple[str, ...]
    cwd: Path | None = None


@dataclass(frozen=True)
class BuildStage:
    name: str
    steps: list[BuildStep] = field(default_factory=list)


def _step(*argv: str | Path, cwd: Path | None = None) -> BuildStep:
    return BuildStep(argv=tuple(str(arg) for arg in argv), cwd=cwd)


class ToolkitInstaller:
    """Single-flight installer: concurrent callers share one install."""

    def __init__(self, settings: Settings, runner: PrivilegedRunner) -> None:
        self._settings = settings
        self._runner = runner
        self._lock = asyncio.Lock()

    @property
    def artifacts(self) -> tuple[Path, ...]:
        lib = self._settings.toolkit_lib_dir
        return (
            lib / constants.TOOLKIT_CORE_LIBRARY,
            lib / constants.TOOLKIT_VMM_LIBRARY,
            lib / constants.TOOLKIT_QEMU_PLUGIN,
            self._settings.toolkit_bin_dir / constants.TOOLKIT_BINARY,
        )

    @property
    def checkouts(self) -> tuple[Path, ...]:
        return tuple(self._settings.toolkit_build_dir / repo for repo in constants.TOOLKIT_REPOSITORIES)

    async def is_installed(self) -> bool:
        """True if every artifact is an owner-rwx regular file and the shm root is owner-rwx."""
        for artifact in self.artifacts:
            if not await _has_owner_rwx(artifact, directory=False):
                logger.debug("Toolkit artifact missing or not executable", extra={"path": str(artifact)})
                return False
        return await _has_owner_rwx(self._settings.shm_root, directory=True)

    async def ensure_installed(self) -> InstallOutcome:
        """Install the toolkit unless already installed.

        Raises:
            ToolkitInstallError: A build command failed (checkouts removed)
        """
        if await self.is_installed():
            logger.debug("Introspection toolkit already installed")
            return InstallOutcome.ALREADY_INSTALLED

        async with self._lock:
            # Another caller may have finished the install while we waited
            if await self.is_installed():
                return InstallOutcome.ALREADY_INSTALLED
            await self._install()
            return InstallOutcome.INSTALLED

    async def _install(self) -> None:
        logger.info("Installing introspection toolkit", extra={"build_dir": str(self._settings.toolkit_build_dir)})
        await self._remove_checkouts()

        for stage in self.stages():
            try:
                await self._run_stage(stage)
            except (CommandFailedError, PrivilegeError) as e:
                logger.error(
                    "Toolkit install failed",
                    extra={"stage": stage.name, "error": e.message},
                )
                await self._remove_checkouts()
                raise ToolkitInstallError(
                    f"Introspection toolkit install failed in stage '{stage.name}': {e.message}",
                    context={"stage": stage.name, **e.context},
                ) from e

        logger.info("Introspection toolkit installed", extra={"artifacts": [str(p) for p in self.artifacts]})

    async def _run_stage(self, stage: BuildStage) -> None:
        logger.info("Toolkit install stage", extra={"stage": stage.name, "steps": len(stage.steps)})
        for step in stage.steps:
            await self._runner.run(
                step.argv,
                step=f"toolkit:{stage.name}",
                cwd=step.cwd,
                timeout=self._settings.install_timeout_seconds,
            )

    async def _remove_checkouts(self) -> None:
        try:
            await self._runner.run(["rm", "-rf", *(str(p) for p in self.checkouts)], step="toolkit:cleanup")
        except (CommandFailedError, PrivilegeError) as e:
            logger.warning("Failed to remove toolkit checkouts", extra={"error": e.message})

    def stages(self) -> list[BuildStage]:
        """Install stages in dependency order."""
        build = self._settings.toolkit_build_dir
        lib = self._settings.toolkit_lib_dir
        bin_dir = self._settings.toolkit_bin_dir
        repos = constants.TOOLKIT_REPOSITORIES
        leechcore, memprocfs, plugins = (build / name for name in repos)
        core_so = constants.TOOLKIT_CORE_LIBRARY
        vmm_so = constants.TOOLKIT_VMM_LIBRARY
        mode = f"{constants.TOOLKIT_ARTIFACT_MODE:o}"

        toolchain = BuildStage(
            "toolchain",
            [
                _step("apt-get", "update"),
                _step("apt-get", "install", "-y", *constants.TOOLKIT_BUILD_PACKAGES),
                _step("mkdir", "-p", build),
            ],
        )
        core = BuildStage(
            "core",
            [
                _step("git", "clone", repos["LeechCore"], leechcore),
                _step("git", "clone", repos["MemProcFS"], memprocfs),
                _step("make", cwd=leechcore / "leechcore"),
                _step("mkdir", "-p", lib, bin_dir),
                _step("cp", leechcore / "files" / core_so, lib / core_so),
                _step("ldconfig"),
            ],
        )
        dependent = BuildStage(
            "dependent",
            [
                _step("make", cwd=memprocfs / "vmm"),
                _step("cp", memprocfs / "files" / vmm_so, memprocfs / "memprocfs" / vmm_so),
                _step("cp", lib / core_so, memprocfs / "memprocfs" / core_so),
                _step("make", cwd=memprocfs / "memprocfs"),
                _step("cp", memprocfs / "files" / constants.TOOLKIT_BINARY, bin_dir / constants.TOOLKIT_BINARY),
                _step("cp", memprocfs / "files" / vmm_so, memprocfs / "vmmpyc" / vmm_so),
                _step("cp", lib / core_so, memprocfs / "vmmpyc" / core_so),
                _step("make", cwd=memprocfs / "vmmpyc"),
                _step("cp", memprocfs / "files" / vmm_so, lib / vmm_so),
                _step("ldconfig"),
            ],
        )
        plugin_steps = [
            _step("git", "clone", repos["LeechCore-plugins"], plugins),
            _step("mkdir", "-p", plugins / "files"),
            _step("cp", lib / core_so, plugins / core_so),
            _step("cp", lib / core_so, plugins / "files" / core_so),
        ]
        for plugin in constants.TOOLKIT_PLUGINS:
            plugin_steps += [
                _step("make", cwd=plugins / plugin),
                _step("cp", plugins / "files" / f"{plugin}.so", lib / f"{plugin}.so"),
                _step("chmod", mode, lib / f"{plugin}.so"),
            ]
        plugin_steps += [
            _step("chmod", mode, lib / core_so, lib / vmm_so, bin_dir / constants.TOOLKIT_BINARY),
            _step("mkdir", "-p", self._settings.shm_root),
            _step("chmod", f"{constants.INTROSPECTION_SHM_ROOT_MODE:o}", self._settings.shm_root),
            _step("ldconfig"),
        ]
        return [toolchain, core, dependent, BuildStage("plugins", plugin_steps)]


async def _has_owner_rwx(path: Path, *, directory: bool) -> bool:
    try:
        st = await aiofiles.os.stat(path)
    except OSError:
        return False
    kind_ok = stat.S_ISDIR(st.st_mode) if directory else stat.S_ISREG(st.st_mode)
    return kind_ok and (st.st_mode & _OWNER_RWX) == _OWNER_RWX
