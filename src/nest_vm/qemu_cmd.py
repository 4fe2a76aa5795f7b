"""QEMU command line builder.

Guest-specific arguments come from one of three profile strategies
(GenericProfile, WindowsProfile, MacOsProfile). build_qemu_cmd() composes their
fragments in a fixed order:

    name(+pidfile) → profile block → cpu → smp → acceleration →
    memory(+introspection objects+QMP) → drives → network → console →
    template extras → -daemonize

Synthesis is pure: host facts arrive as a frozen HostCapabilities value, so the
same stored spec and host always produce an identical argument list.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.models import GuestProfile, NetworkMode
from nest_vm.templates import MACOS_TEMPLATE_ID, get_template
from nest_vm.vm_paths import IntrospectionPaths, VmPaths

if TYPE_CHECKING:
    from pathlib import Path

    from nest_vm.models import HostCapabilities, NetworkConfig, VmSpec, VmTemplate
    from nest_vm.settings import Settings

logger = get_logger(__name__)


class GenericProfile:
    """Linux and other guests: virtio everywhere, no extra platform block."""

    profile: ClassVar[GuestProfile] = GuestProfile.GENERIC
    nic_model: ClassVar[str] = constants.GENERIC_NIC_MODEL

    def profile_args(self) -> list[str]:
        return []

    def default_cpu_model(self, host: HostCapabilities) -> str:
        return constants.CONTAINER_CPU_MODEL if host.containerized else constants.DEFAULT_CPU_MODEL

    def cpu_args(self, spec: VmSpec, host: HostCapabilities) -> list[str]:
        return ["-cpu", spec.cpu_model_override or self.default_cpu_model(host)]

    def drive_args(self, disk: Path, media: Path | None, driver_iso: Path, host: HostCapabilities) -> list[str]:
        args = ["-drive", f"file={disk},if=virtio,format=qcow2,media=disk"]
        if media is None:
            return args
        args += ["-drive", f"file={media},media=cdrom"]
        if host.driver_iso_present:
            args += ["-drive", f"file={driver_iso},media=cdrom"]
        return args

    def nic_device(self) -> str:
        # romfile= disables the iPXE option ROM
        return f"{self.nic_model},netdev=net0,romfile="


class WindowsProfile(GenericProfile):
    """Windows guests: legacy chipset and NIC, Hyper-V enlightenments, local-time RTC."""

    profile: ClassVar[GuestProfile] = GuestProfile.WINDOWS
    nic_model: ClassVar[str] = constants.WINDOWS_NIC_MODEL

    def profile_args(self) -> list[str]:
        return list(constants.WINDOWS_PROFILE_ARGS)

    def default_cpu_model(self, host: HostCapabilities) -> str:
        return constants.WINDOWS_DEFAULT_CPU_MODEL

    def cpu_args(self, spec: VmSpec, host: HostCapabilities) -> list[str]:
        # Enlightenments are appended to overrides too
        model = spec.cpu_model_override or self.default_cpu_model(host)
        return ["-cpu", ",".join((model, *constants.HYPERV_ENLIGHTENMENTS))]

    def drive_args(self, disk: Path, media: Path | None, driver_iso: Path, host: HostCapabilities) -> list[str]:
        if media is None:
            return super().drive_args(disk, media, driver_iso, host)
        args = [
            "-drive", f"file={disk},if=virtio",
            "-drive", f"file={media},media=cdrom,index=1",
        ]  # fmt: skip
        if host.driver_iso_present:
            args += ["-drive", f"media=cdrom,file={driver_iso}"]
        return args

    def nic_device(self) -> str:
        return f"{self.nic_model},netdev=net0"


class MacOsProfile(GenericProfile):
    """macOS guests: fixed q35/AppleSMC block carrying its own CPU model, SATA drives."""

    profile: ClassVar[GuestProfile] = GuestProfile.MACOS
    nic_model: ClassVar[str] = constants.MACOS_NIC_MODEL

    def profile_args(self) -> list[str]:
        return list(constants.MACOS_PROFILE_ARGS)

    def cpu_args(self, spec: VmSpec, host: HostCapabilities) -> list[str]:
        # The profile block already pins the CPU model; a second -cpu would override it
        return []

    def drive_args(self, disk: Path, media: Path | None, driver_iso: Path, host: HostCapabilities) -> list[str]:
        args = [
            "-drive", f"id=SystemDisk,if=none,file={disk},format=qcow2",
            "-device", "ide-hd,bus=sata.4,drive=SystemDisk",
        ]  # fmt: skip
        if media is not None:
            args += [
                "-drive", f"id=InstallMedia,if=none,file={media},format=raw",
                "-device", "ide-hd,bus=sata.2,drive=InstallMedia",
            ]  # fmt: skip
        return args

    def nic_device(self) -> str:
        return f"{self.nic_model},netdev=net0"


_PROFILES: dict[GuestProfile, GenericProfile] = {
    GuestProfile.GENERIC: GenericProfile(),
    GuestProfile.WINDOWS: WindowsProfile(),
    GuestProfile.MACOS: MacOsProfile(),
}


def resolve_guest_profile(spec: VmSpec) -> GuestProfile:
    """Effective guest profile.

    macOS if declared or via the macos template; Windows if declared or the
    install media name contains "win" (any case); generic otherwise.
    """
    if spec.guest_profile == GuestProfile.MACOS or spec.template_id == MACOS_TEMPLATE_ID:
        return GuestProfile.MACOS
    if spec.guest_profile == GuestProfile.WINDOWS:
        return GuestProfile.WINDOWS
    if spec.install_media and constants.WINDOWS_MEDIA_MARKER in spec.install_media.lower():
        return GuestProfile.WINDOWS
    return GuestProfile.GENERIC


def profile_for(spec: VmSpec) -> GenericProfile:
    return _PROFILES[resolve_guest_profile(spec)]


def memory_args(spec: VmSpec, settings: Settings) -> list[str]:
    """Plain ``-m`` or, with introspection, RAM + shared file backends and a QMP socket."""
    size = f"{spec.memory_mb}M"
    if not spec.introspection_enabled:
        return ["-m", size]
    paths = IntrospectionPaths.for_spec(settings, spec)
    return [
        "-m", size,
        "-object", f"memory-backend-ram,id=pc.ram,size={size}",
        "-machine", "pc,memory-backend=pc.ram",
        "-object", f"memory-backend-file,id=mem,size={size},mem-path={paths.shm_file},share=on,prealloc=off",
        "-qmp", f"unix:{paths.control_socket},server,nowait",
    ]  # fmt: skip


def network_args(network: NetworkConfig | None, profile: GenericProfile) -> list[str]:
    if network is None:
        return []
    if network.mode == NetworkMode.BRIDGE:
        backend = f"bridge,id=net0,br={network.bridge}"
    else:
        backend = "user,id=net0"
    return ["-device", profile.nic_device(), "-netdev", backend]


def build_qemu_cmd(
    spec: VmSpec,
    settings: Settings,
    host: HostCapabilities,
    template: VmTemplate | None = None,
) -> list[str]:
    """Build the QEMU argument list for ``spec``.

    Args:
        spec: Stored VM definition
        settings: Binary name and storage roots
        host: Accelerator / driver ISO / container facts
        template: Template whose extra device args are appended (default:
            looked up from spec.template_id)

    Returns:
        QEMU command as list of strings
    """
    profile = profile_for(spec)
    paths = VmPaths.for_vm(settings, spec.name)
    if template is None:
        template = get_template(spec.template_id)

    cmd = [settings.qemu_bin, "-name", spec.name, "-pidfile", str(paths.pid_file)]
    cmd += profile.profile_args()
    cmd += profile.cpu_args(spec, host)
    cmd += ["-smp", str(spec.cpu_count)]

    if spec.acceleration_requested and host.accel_available:
        cmd.append("-enable-kvm")
    elif spec.acceleration_requested:
        logger.warning(
            "Hardware acceleration unavailable, using software emulation",
            extra={"vm_name": spec.name, "accel_device": str(settings.accel_device)},
        )

    cmd += memory_args(spec, settings)

    media = settings.media_root / spec.install_media if spec.install_media else None
    cmd += profile.drive_args(paths.disk, media, settings.driver_iso_path, host)
    cmd += network_args(spec.network, profile)

    if spec.console_enabled:
        cmd += ["-vnc", constants.VNC_DISPLAY_ARG]

    if template is not None:
        cmd += template.extra_device_args

    cmd.append("-daemonize")

    logger.debug(
        "QEMU command built",
        extra={"vm_name": spec.name, "guest_profile": profile.profile.value, "argc": len(cmd)},
    )
    return cmd
