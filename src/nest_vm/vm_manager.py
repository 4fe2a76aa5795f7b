"""VM lifecycle controller.

VmController is the single entry point for the HTTP layer and the CLI. It
composes the config store, template resolver, provisioner, command builder,
and toolkit installer, and serializes all work on a VM name behind a per-name
asyncio.Lock.

State machine:
    Stopped ──create──▶ Stopped(disk provisioned) ──start──▶ Running ──stop──▶ Stopped
    any state ──delete──▶ removed

Status is derived, never stored: the PID from the launch record is checked
first, then the process table is scanned for a QEMU process named after the VM.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from nest_vm._logging import get_logger
from nest_vm.config_store import ConfigStore
from nest_vm.exceptions import (
    CommandFailedError,
    CorruptedConfigError,
    InvalidConfigError,
    NestVmError,
    VmAlreadyExistsError,
    VmNotFoundError,
    VmSpecValidationError,
    VmStartError,
    VmStopError,
)
from nest_vm.media import MediaCatalog
from nest_vm.models import LaunchRecord, VmInfo, VmStatus
from nest_vm.privileged import PrivilegedRunner
from nest_vm.probes import probe_host
from nest_vm.process_utils import find_vm_processes, pid_runs_vm
from nest_vm.provisioner import ResourceProvisioner
from nest_vm.qemu_cmd import build_qemu_cmd
from nest_vm.settings import Settings
from nest_vm.templates import apply_template, get_template, get_templates
from nest_vm.toolkit_installer import ToolkitInstaller

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from nest_vm.models import HostCapabilities, InstallOutcome, MacOsMediaCheck, VmSpec, VmTemplate

logger = get_logger(__name__)

_NO_SUCH_PROCESS = "no such process"


class VmController:
    """Create, start, stop, and delete QEMU VMs stored under ``Settings.vm_root``.

    Usage:
        async with VmController(Settings()) as controller:
            await controller.create_vm({"name": "test-vm", "cpuCount": 2, "memoryMB": 2048, "diskGB": 10})
            await controller.start_vm("test-vm")
    """

    def __init__(self, settings: Settings | None = None, *, runner: PrivilegedRunner | None = None):
        self.settings = settings or Settings()
        self._runner = runner or PrivilegedRunner(self.settings)
        self._store = ConfigStore(self.settings)
        self._media = MediaCatalog(self.settings)
        self._provisioner = ResourceProvisioner(self.settings, self._runner)
        self._installer = ToolkitInstaller(self.settings, self._runner)

        self._name_locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()  # Protects _name_locks dict

    async def start(self) -> None:
        """Create the storage roots and log host capabilities."""
        await self._media.ensure_root()
        await self._store.list_names()
        host = await probe_host(self.settings)
        logger.info(
            "VmController started",
            extra={"vm_root": str(self.settings.vm_root), "accel_available": host.accel_available},
        )

    async def __aenter__(self) -> VmController:
        await self.start()
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        return None

    @contextlib.asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        async with self._locks_lock:
            lock = self._name_locks.setdefault(name, asyncio.Lock())
        async with lock:
            yield

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_vms(self) -> list[VmInfo]:
        """All VMs with derived status.

        Entries whose config.json is unreadable or not JSON are deleted with a
        warning. Entries that parse but fail validation are skipped with a
        warning and left on disk.
        """
        vms: list[VmInfo] = []
        for name in await self._store.list_names():
            async with self._locked(name):
                try:
                    spec = await self._store.load(name)
                except VmNotFoundError:
                    continue
                except CorruptedConfigError as e:
                    logger.warning(
                        "Removing VM with corrupted config",
                        extra={"vm_name": name, "error": e.message},
                    )
                    await self._provisioner.deprovision(name)
                    continue
                except InvalidConfigError as e:
                    logger.warning(
                        "Skipping VM with invalid config",
                        extra={"vm_name": name, "error": e.message, "path": e.context.get("path")},
                    )
                    continue
                vms.append(VmInfo(spec=spec, status=await self._status(name)))
        return vms

    async def get_vm(self, name: str) -> VmInfo:
        async with self._locked(name):
            spec = await self._store.load(name)
            return VmInfo(spec=spec, status=await self._status(name))

    async def get_status(self, name: str) -> VmStatus:
        async with self._locked(name):
            await self._store.load(name)
            return await self._status(name)

    async def get_logs(self, name: str) -> str:
        """Status header plus the full qemu.log."""
        async with self._locked(name):
            await self._store.load(name)
            status = await self._status(name)
            log = await self._store.read_log(name)
        return f"VM Status: {status.value}\n---\nQEMU Logs:\n{log if log else 'No QEMU logs available'}"

    def get_templates(self) -> list[VmTemplate]:
        return get_templates()

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    async def create_vm(self, payload: Mapping[str, Any]) -> VmInfo:
        """Validate ``payload`` (after template defaults), persist it, and provision the disk.

        The VM is not started.

        Raises:
            VmSpecValidationError: Invalid payload
            VmAlreadyExistsError: Name already in use
            ToolkitInstallError: Introspection requested and toolkit install failed
            CommandFailedError: Disk allocation failed (the VM directory is removed)
        """
        spec = apply_template(payload)
        async with self._locked(spec.name):
            if await self._store.exists(spec.name):
                raise VmAlreadyExistsError(f"VM already exists: {spec.name}", context={"vm_name": spec.name})

            if spec.introspection_enabled:
                await self._installer.ensure_installed()
            await self._media.ensure_driver_iso()

            await self._store.save(spec)
            try:
                await self._provisioner.provision(spec)
            except NestVmError:
                with contextlib.suppress(NestVmError):
                    await self._provisioner.deprovision(spec.name)
                raise

            logger.info(
                "VM created",
                extra={"vm_name": spec.name, "cpu_count": spec.cpu_count, "memory_mb": spec.memory_mb},
            )
            return VmInfo(spec=spec, status=VmStatus.STOPPED)

    async def update_vm(self, name: str, payload: Mapping[str, Any]) -> VmSpec:
        """Replace the stored spec. A running VM keeps its current configuration until restarted.

        Raises:
            VmNotFoundError: No such VM
            VmSpecValidationError: Invalid payload or a name that differs from ``name``
        """
        merged = {**payload}
        merged.setdefault("name", name)
        spec = apply_template(merged)
        if spec.name != name:
            raise VmSpecValidationError(
                "VM name cannot be changed",
                context={"vm_name": name, "requested_name": spec.name},
            )
        async with self._locked(name):
            await self._store.load(name)
            await self._store.save(spec)
        logger.info("VM updated", extra={"vm_name": name})
        return spec

    async def delete_vm(self, name: str) -> None:
        """Remove the VM directory. The VM is not stopped first."""
        async with self._locked(name):
            if not await self._store.exists(name):
                logger.debug("Delete of missing VM", extra={"vm_name": name})
                return
            await self._provisioner.deprovision(name)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def start_vm(self, name: str) -> VmInfo:
        """Launch the VM. Starting a running VM returns its status without relaunching.

        Raises:
            VmNotFoundError: No such VM
            ToolkitInstallError: Introspection toolkit install failed
            VmStartError: QEMU exited with an error or was not running after launch
        """
        async with self._locked(name):
            return await self._start(name)

    async def stop_vm(self, name: str) -> VmInfo:
        """Stop the VM (SIGTERM, then SIGKILL). Stopping a stopped VM succeeds.

        Raises:
            VmNotFoundError: No such VM
            VmStopError: Signal delivery failed or the process survived SIGKILL
        """
        async with self._locked(name):
            spec = await self._store.load(name)
            await self._stop(name)
            return VmInfo(spec=spec, status=VmStatus.STOPPED)

    async def restart_vm(self, name: str) -> VmInfo:
        """Stop then start, holding the VM lock across both."""
        async with self._locked(name):
            await self._store.load(name)
            await self._stop(name)
            return await self._start(name)

    async def _start(self, name: str) -> VmInfo:
        spec = await self._store.load(name)
        if await self._status(name) == VmStatus.RUNNING:
            logger.info("VM already running", extra={"vm_name": name})
            return VmInfo(spec=spec, status=VmStatus.RUNNING)

        if spec.introspection_enabled:
            await self._installer.ensure_installed()
        await self._media.ensure_driver_iso()
        if spec.introspection_enabled:
            await self._provisioner.prepare_introspection(spec)

        host = await probe_host(self.settings)
        cmd = build_qemu_cmd(spec, self.settings, host, get_template(spec.template_id))

        launched_at = datetime.now(UTC)
        await self._store.append_log(
            name, f"[{launched_at.isoformat()}] Starting VM with command:\n{shlex.join(cmd)}\n\n"
        )
        await self._store.clear_pid_file(name)
        logger.info("Starting VM", extra={"vm_name": name, "accel_available": host.accel_available})

        try:
            await self._runner.run(
                cmd,
                step="launch",
                output_path=self._store.paths(name).log,
            )
        except CommandFailedError as e:
            raise VmStartError(
                f"QEMU failed to start VM {name}: {e.message}",
                log_tail=await self._store.tail_log(name),
                context={"vm_name": name, "returncode": e.returncode},
            ) from e

        await asyncio.sleep(self.settings.start_settle_seconds)

        pid = await self._store.read_pid_file(name)
        if pid is None or not await asyncio.to_thread(pid_runs_vm, pid, name):
            found = await asyncio.to_thread(find_vm_processes, name)
            pid = found[0].pid if found else None
        if pid is None:
            raise VmStartError(
                f"VM process not found after launch: {name}",
                log_tail=await self._store.tail_log(name),
                context={"vm_name": name},
            )

        await self._store.write_launch_record(name, LaunchRecord(pid=pid, launched_at=launched_at))
        logger.info("VM started", extra={"vm_name": name, "pid": pid})
        return VmInfo(spec=spec, status=VmStatus.RUNNING)

    async def _stop(self, name: str) -> None:
        pids = await self._running_pids(name)
        if pids:
            # The launch record names one process; stray hypervisors for the same VM go too
            found = await asyncio.to_thread(find_vm_processes, name)
            pids += [proc.pid for proc in found if proc.pid not in pids]
        if not pids:
            logger.info("VM already stopped", extra={"vm_name": name})
            await self._store.clear_launch_record(name)
            return

        for pid in pids:
            await self._signal(name, pid, "TERM")
        await asyncio.sleep(self.settings.stop_grace_seconds)

        survivors = [pid for pid in pids if await asyncio.to_thread(pid_runs_vm, pid, name)]
        if survivors:
            logger.warning("VM ignored SIGTERM, force killing", extra={"vm_name": name, "pids": survivors})
            for pid in survivors:
                await self._signal(name, pid, "KILL")
            await asyncio.sleep(self.settings.stop_grace_seconds)
            survivors = [pid for pid in survivors if await asyncio.to_thread(pid_runs_vm, pid, name)]
            if survivors:
                raise VmStopError(
                    f"VM {name} still running after SIGKILL",
                    context={"vm_name": name, "pids": survivors},
                )

        await self._store.clear_launch_record(name)
        await self._store.clear_pid_file(name)
        logger.info("VM stopped", extra={"vm_name": name, "pids": pids})

    async def _signal(self, name: str, pid: int, signal_name: str) -> None:
        try:
            await self._runner.run(["kill", f"-{signal_name}", str(pid)], step=f"stop:{signal_name.lower()}")
        except CommandFailedError as e:
            if _NO_SUCH_PROCESS in (e.stderr or e.message).lower():
                logger.debug("Process already gone", extra={"vm_name": name, "pid": pid})
                return
            raise VmStopError(
                f"Failed to send SIG{signal_name} to VM {name}: {e.message}",
                context={"vm_name": name, "pid": pid},
            ) from e

    async def _status(self, name: str) -> VmStatus:
        return VmStatus.RUNNING if await self._running_pids(name) else VmStatus.STOPPED

    async def _running_pids(self, name: str) -> list[int]:
        record = await self._store.read_launch_record(name)
        if record is not None and await asyncio.to_thread(pid_runs_vm, record.pid, name):
            return [record.pid]

        found = await asyncio.to_thread(find_vm_processes, name)
        if found:
            oldest = min(found, key=lambda proc: proc.create_time)
            await self._store.write_launch_record(
                name,
                LaunchRecord(pid=oldest.pid, launched_at=datetime.fromtimestamp(oldest.create_time, tz=UTC)),
            )
            return [proc.pid for proc in found]

        if record is not None:
            logger.debug("Clearing stale launch record", extra={"vm_name": name, "pid": record.pid})
            await self._store.clear_launch_record(name)
        return []

    # ------------------------------------------------------------------
    # Media, host, toolkit
    # ------------------------------------------------------------------

    async def list_media(self) -> list[str]:
        return await self._media.list_media()

    async def delete_media(self, name: str) -> None:
        await self._media.delete(name)

    async def check_macos_media(self) -> MacOsMediaCheck:
        return await self._media.check_macos_media()

    async def check_host(self) -> HostCapabilities:
        return await probe_host(self.settings, detailed=True)

    async def install_toolkit(self) -> InstallOutcome:
        return await self._installer.ensure_installed()
