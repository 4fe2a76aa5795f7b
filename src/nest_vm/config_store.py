"""Persistent per-VM state under ``Settings.vm_root``.

One directory per VM holds config.json, the disk, the append-only log, the
QEMU pidfile, and the launch record (see vm_paths). Runtime status is never
stored in config.json; it is derived from the process table on demand.
"""

from __future__ import annotations

import contextlib
import json
from collections import deque
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.exceptions import CorruptedConfigError, InvalidConfigError, VmNotFoundError
from nest_vm.models import LaunchRecord, VmSpec
from nest_vm.vm_paths import VmPaths

if TYPE_CHECKING:
    from pathlib import Path

    from nest_vm.settings import Settings

logger = get_logger(__name__)


async def _write_atomic(path: Path, content: str) -> None:
    # Readers never observe a half-written file: write a sibling then rename over
    tmp_path = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(tmp_path, "w") as f:
        await f.write(content)
    await aiofiles.os.replace(tmp_path, path)


class ConfigStore:
    """Reads and writes VM specs, logs, and launch records."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def paths(self, name: str) -> VmPaths:
        return VmPaths.for_vm(self._settings, name)

    async def exists(self, name: str) -> bool:
        """True if the VM directory exists (with or without a valid config)."""
        return await aiofiles.os.path.isdir(self.paths(name).root)

    async def list_names(self) -> list[str]:
        """Names of all VM directories, sorted. Creates the VM root if missing."""
        await aiofiles.os.makedirs(self._settings.vm_root, exist_ok=True)
        entries = await aiofiles.os.scandir(self._settings.vm_root)
        with entries:
            return sorted(entry.name for entry in entries if entry.is_dir() and not entry.name.startswith("."))

    async def save(self, spec: VmSpec) -> Path:
        """Write config.json for ``spec``, creating the VM directory if needed."""
        paths = self.paths(spec.name)
        await aiofiles.os.makedirs(paths.root, exist_ok=True)
        await _write_atomic(paths.config, spec.to_json())
        logger.debug("VM config saved", extra={"vm_name": spec.name, "path": str(paths.config)})
        return paths.config

    async def load(self, name: str) -> VmSpec:
        """Read and validate config.json.

        Raises:
            VmNotFoundError: No directory for ``name``
            CorruptedConfigError: Directory exists but config.json is missing,
                unreadable, or not JSON
            InvalidConfigError: config.json is JSON but fails validation or
                names a different VM
        """
        paths = self.paths(name)
        if not await aiofiles.os.path.isdir(paths.root):
            raise VmNotFoundError(f"VM not found: {name}", context={"vm_name": name})
        try:
            async with aiofiles.open(paths.config) as f:
                data = json.loads(await f.read())
        except (OSError, ValueError) as e:
            # ValueError covers JSONDecodeError and undecodable bytes
            raise CorruptedConfigError(
                f"Cannot read config for VM {name}: {e}",
                context={"vm_name": name, "path": str(paths.config)},
            ) from e
        try:
            spec = VmSpec.model_validate(data)
        except ValidationError as e:
            raise InvalidConfigError(
                f"Invalid config for VM {name}",
                context={"vm_name": name, "path": str(paths.config), "errors": e.errors(include_url=False)},
            ) from e
        if spec.name != name:
            raise InvalidConfigError(
                f"Config for VM {name} declares a different name: {spec.name}",
                context={"vm_name": name, "declared_name": spec.name},
            )
        return spec

    # ------------------------------------------------------------------
    # Launch record and pidfile
    # ------------------------------------------------------------------

    async def write_launch_record(self, name: str, record: LaunchRecord) -> None:
        await _write_atomic(self.paths(name).launch_record, record.model_dump_json(by_alias=True))

    async def read_launch_record(self, name: str) -> LaunchRecord | None:
        """Last launch record, or None if absent or unreadable."""
        path = self.paths(name).launch_record
        try:
            async with aiofiles.open(path) as f:
                return LaunchRecord.model_validate_json(await f.read())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.debug("Ignoring unreadable launch record", extra={"vm_name": name, "error": str(e)})
            return None

    async def clear_launch_record(self, name: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(self.paths(name).launch_record)

    async def read_pid_file(self, name: str) -> int | None:
        """PID written by QEMU's -pidfile, or None."""
        try:
            async with aiofiles.open(self.paths(name).pid_file) as f:
                return int((await f.read()).strip())
        except (OSError, ValueError):
            return None

    async def clear_pid_file(self, name: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(self.paths(name).pid_file)

    # ------------------------------------------------------------------
    # Log
    # ------------------------------------------------------------------

    async def append_log(self, name: str, text: str) -> None:
        """Append ``text`` to qemu.log. Never truncates."""
        paths = self.paths(name)
        await aiofiles.os.makedirs(paths.root, exist_ok=True)
        async with aiofiles.open(paths.log, "a") as f:
            await f.write(text)

    async def read_log(self, name: str) -> str | None:
        """Full qemu.log contents, or None if no log exists yet."""
        try:
            async with aiofiles.open(self.paths(name).log, errors="replace") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def tail_log(self, name: str, lines: int = constants.LOG_TAIL_LINES) -> str:
        """Last ``lines`` lines of qemu.log ("" if no log)."""
        content = await self.read_log(name)
        if not content:
            return ""
        return "\n".join(deque(content.splitlines(), maxlen=lines))

