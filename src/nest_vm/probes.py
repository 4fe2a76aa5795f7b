"""Host capability probes.

probe_host() collects the facts command synthesis depends on (accelerator
device, driver ISO, container detection) plus informational ones (CPU flags,
QEMU version) used by the ``host`` report. Probes never raise: a failed probe
reports the capability as absent or unknown.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.models import HostCapabilities

if TYPE_CHECKING:
    from nest_vm.settings import Settings

logger = get_logger(__name__)

_CPUINFO_PATH = Path("/proc/cpuinfo")
_QEMU_VERSION_RE = re.compile(r"version (\d+)\.(\d+)(?:\.(\d+))?")


async def check_accel_available(settings: Settings) -> bool:
    """True if the hardware accelerator device node exists."""
    return await aiofiles.os.path.exists(settings.accel_device)


async def read_cpu_flags(cpuinfo_path: Path = _CPUINFO_PATH) -> set[str] | None:
    """CPU feature flags from /proc/cpuinfo (None if unreadable)."""
    if not await aiofiles.os.path.exists(cpuinfo_path):
        return None
    try:
        async with aiofiles.open(cpuinfo_path) as f:
            cpuinfo = await f.read()
    except OSError as e:
        logger.warning("Failed to read cpuinfo", extra={"path": str(cpuinfo_path), "error": str(e)})
        return None
    # Format: "flags\t\t: fpu vme ... vmx ... sse4_1 ... avx2"
    for line in cpuinfo.splitlines():
        if line.startswith("flags"):
            _, _, flags = line.partition(":")
            return set(flags.split())
    return None


async def probe_qemu_version(settings: Settings) -> tuple[int, int, int] | None:
    """Parse ``qemu-system-x86_64 --version`` (None if missing or unparseable)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            settings.qemu_bin,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=constants.QEMU_VERSION_PROBE_TIMEOUT_SECONDS)
    except FileNotFoundError:
        logger.warning("QEMU binary not found for version probe", extra={"qemu_bin": settings.qemu_bin})
        return None
    except (OSError, TimeoutError) as e:
        logger.warning("QEMU version probe failed", extra={"qemu_bin": settings.qemu_bin, "error": str(e)})
        return None

    match = _QEMU_VERSION_RE.search(stdout.decode(errors="replace"))
    if proc.returncode != 0 or match is None:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


async def probe_host(settings: Settings, *, detailed: bool = False) -> HostCapabilities:
    """Collect host capabilities.

    Args:
        settings: Paths and binaries to probe
        detailed: Also read CPU flags and the QEMU version (informational only)
    """
    accel, driver_iso = await asyncio.gather(
        check_accel_available(settings),
        aiofiles.os.path.exists(settings.driver_iso_path),
    )
    caps: dict[str, object] = {
        "accel_available": accel,
        "driver_iso_present": driver_iso,
        "containerized": settings.containerized,
    }

    if detailed:
        flags, version = await asyncio.gather(read_cpu_flags(), probe_qemu_version(settings))
        if flags is not None:
            caps["cpu_virtualization"] = bool(flags & {"vmx", "svm"})
            caps["cpu_sse4_1"] = "sse4_1" in flags
            caps["cpu_avx2"] = "avx2" in flags
        caps["qemu_version"] = version

    host = HostCapabilities.model_validate(caps)
    logger.debug("Host capabilities probed", extra={"host": host.model_dump()})
    return host
