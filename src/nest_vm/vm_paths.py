"""Filesystem layout of a VM and of its introspection resources.

Every per-VM path is derived from ``Settings.vm_root`` and the VM name:

    <vm_root>/<name>/
    ├── config.json    declared spec
    ├── disk.qcow2     backing disk
    ├── qemu.log       append-only hypervisor log
    ├── qemu.pid       written by QEMU after -daemonize
    └── launch.json    {pid, launched_at} of the last verified start
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from nest_vm import constants

if TYPE_CHECKING:
    from nest_vm.models import VmSpec
    from nest_vm.settings import Settings


@dataclass(frozen=True)
class VmPaths:
    """Paths owned by one VM."""

    root: Path
    config: Path
    disk: Path
    log: Path
    pid_file: Path
    launch_record: Path

    @classmethod
    def for_vm(cls, settings: Settings, name: str) -> VmPaths:
        root = settings.vm_root / name
        return cls(
            root=root,
            config=root / constants.CONFIG_FILE_NAME,
            disk=root / constants.DISK_FILE_NAME,
            log=root / constants.LOG_FILE_NAME,
            pid_file=root / constants.PID_FILE_NAME,
            launch_record=root / constants.LAUNCH_RECORD_FILE_NAME,
        )


@dataclass(frozen=True)
class IntrospectionPaths:
    """Shared-memory backing file, QMP socket, and legacy symlink for one VM."""

    shm_file: Path
    control_socket: Path
    legacy_link: Path

    @classmethod
    def for_spec(cls, settings: Settings, spec: VmSpec) -> IntrospectionPaths:
        default_name = constants.INTROSPECTION_SHM_NAME_TEMPLATE.format(name=spec.name)
        shm_name = default_name
        socket = constants.INTROSPECTION_QMP_SOCKET_TEMPLATE.format(name=spec.name)
        if spec.introspection is not None:
            shm_name = spec.introspection.shared_memory_name or default_name
            socket = spec.introspection.control_socket_path or socket
        return cls(
            shm_file=settings.shm_root / shm_name,
            control_socket=Path(socket),
            legacy_link=settings.shm_root / default_name,
        )

    @property
    def needs_legacy_link(self) -> bool:
        """False when the backing file already uses the legacy name."""
        return self.shm_file != self.legacy_link
