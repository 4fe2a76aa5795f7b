"""Resource provisioning: VM directory, backing disk, introspection resources.

Disk allocation and directory removal are required steps and raise on failure.
Introspection resources (shared-memory file, QMP socket, legacy symlink) are
auxiliary: each step is best-effort, and a failure is logged and reported but
never stops the VM from starting.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiofiles.os

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.exceptions import CommandFailedError, PrivilegeError, ResourceProvisioningWarning
from nest_vm.vm_paths import IntrospectionPaths, VmPaths

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from nest_vm.models import VmSpec
    from nest_vm.privileged import PrivilegedRunner
    from nest_vm.settings import Settings

logger = get_logger(__name__)


class ResourceProvisioner:
    """Creates and removes the on-disk resources of a VM."""

    def __init__(self, settings: Settings, runner: PrivilegedRunner) -> None:
        self._settings = settings
        self._runner = runner

    async def provision(self, spec: VmSpec) -> Path:
        """Create the VM directory, its backing disk, and the media root.

        The disk is allocated once at the requested size; an existing disk is
        left untouched.

        Returns:
            Path to the backing disk

        Raises:
            CommandFailedError: Disk allocation failed
        """
        paths = VmPaths.for_vm(self._settings, spec.name)
        await aiofiles.os.makedirs(paths.root, exist_ok=True)
        await aiofiles.os.makedirs(self._settings.media_root, exist_ok=True)

        if await aiofiles.os.path.exists(paths.disk):
            logger.debug("Backing disk already exists", extra={"vm_name": spec.name, "disk": str(paths.disk)})
            return paths.disk

        await self._runner.run(
            [self._settings.qemu_img_bin, "create", "-f", "qcow2", str(paths.disk), f"{spec.disk_gb}G"],
            step="create-disk",
            timeout=self._settings.disk_create_timeout_seconds,
        )
        logger.info(
            "Backing disk created",
            extra={"vm_name": spec.name, "disk": str(paths.disk), "size_gb": spec.disk_gb},
        )
        return paths.disk

    async def deprovision(self, name: str) -> None:
        """Remove the VM directory recursively (config, disk, log, records)."""
        root = VmPaths.for_vm(self._settings, name).root
        await self._runner.run(["rm", "-rf", str(root)], step="delete-vm-dir")
        logger.info("VM directory removed", extra={"vm_name": name, "path": str(root)})

    async def prepare_introspection(self, spec: VmSpec) -> list[ResourceProvisioningWarning]:
        """Recreate the shared-memory file and QMP socket path for ``spec``.

        Both paths are deleted and recreated with mode 0666 on every start so no
        state carries over between runs; the shared-memory root is set to 0777.

        Returns:
            Warnings for the steps that failed (empty when all succeeded)
        """
        paths = IntrospectionPaths.for_spec(self._settings, spec)
        shm_root = str(self._settings.shm_root)
        file_mode = f"{constants.INTROSPECTION_FILE_MODE:o}"
        steps: list[tuple[str, list[str]]] = [
            ("shm-root", ["mkdir", "-p", shm_root]),
            ("shm-root-mode", ["chmod", f"{constants.INTROSPECTION_SHM_ROOT_MODE:o}", shm_root]),
            ("socket-dir", ["mkdir", "-p", str(paths.control_socket.parent)]),
        ]
        for label, path in (("shm-file", paths.shm_file), ("qmp-socket", paths.control_socket)):
            steps += [
                (f"{label}-remove", ["rm", "-f", str(path)]),
                (f"{label}-create", ["touch", str(path)]),
                (f"{label}-mode", ["chmod", file_mode, str(path)]),
            ]
        if paths.needs_legacy_link:
            steps.append(("legacy-link", ["ln", "-sf", str(paths.shm_file), str(paths.legacy_link)]))

        warnings: list[ResourceProvisioningWarning] = []
        for step, argv in steps:
            warning = await self._best_effort(spec.name, step, argv)
            if warning is not None:
                warnings.append(warning)

        if warnings:
            logger.warning(
                "Introspection setup incomplete, VM will start without guaranteed introspection",
                extra={"vm_name": spec.name, "failed_steps": len(warnings)},
            )
        else:
            logger.debug(
                "Introspection resources ready",
                extra={"vm_name": spec.name, "shm_file": str(paths.shm_file), "socket": str(paths.control_socket)},
            )
        return warnings

    async def _best_effort(self, vm_name: str, step: str, argv: Sequence[str]) -> ResourceProvisioningWarning | None:
        try:
            await self._runner.run(argv, step=f"introspection:{step}")
        except (CommandFailedError, PrivilegeError) as e:
            warning = ResourceProvisioningWarning(f"introspection:{step}: {e.message}")
            warning.__cause__ = e
            logger.warning(str(warning), extra={"vm_name": vm_name, "step": step})
            return warning
        return None
