"""Constants for nest-vm: resource limits, file names, and fixed QEMU fragments."""

from typing import Final

# ============================================================================
# VM Resource Limits
# ============================================================================

MIN_CPU_COUNT: Final[int] = 1
"""Minimum vCPU count for a VM."""

MIN_MEMORY_MB: Final[int] = 512
"""Minimum guest memory in MB."""

MIN_DISK_GB: Final[int] = 1
"""Minimum backing disk size in GB."""

VM_NAME_MAX_LENGTH: Final[int] = 64
"""Maximum length of a VM name (used as a directory name and in process args)."""

# ============================================================================
# Per-VM Files
# ============================================================================

CONFIG_FILE_NAME: Final[str] = "config.json"
"""Declared VM configuration, one per VM directory."""

DISK_FILE_NAME: Final[str] = "disk.qcow2"
"""Backing disk image, created once at VM creation."""

LOG_FILE_NAME: Final[str] = "qemu.log"
"""Append-only hypervisor log."""

PID_FILE_NAME: Final[str] = "qemu.pid"
"""PID file written by QEMU after daemonizing."""

LAUNCH_RECORD_FILE_NAME: Final[str] = "launch.json"
"""Launch record {pid, launched_at} persisted after a verified start."""

LOG_TAIL_LINES: Final[int] = 20
"""Lines of qemu.log attached to a failed start."""

# ============================================================================
# Install Media
# ============================================================================

DRIVER_ISO_NAME: Final[str] = "virtio-win.iso"
"""Paravirtual driver ISO attached to Windows and generic guests when present."""

DRIVER_ISO_URL: Final[str] = (
    "https://fedorapeople.org/groups/virt/virtio-win/direct-downloads/stable-virtio/virtio-win.iso"
)

DRIVER_DOWNLOAD_MAX_ATTEMPTS: Final[int] = 3
DRIVER_DOWNLOAD_RETRY_MIN_SECONDS: Final[float] = 1.0
DRIVER_DOWNLOAD_RETRY_MAX_SECONDS: Final[float] = 10.0
DRIVER_DOWNLOAD_CHUNK_BYTES: Final[int] = 1024 * 1024

MACOS_REQUIRED_MEDIA: Final[dict[str, str]] = {
    "BaseSystem.img": "Base system image",
    "ESP.qcow2": "EFI System Partition",
    "OpenCore.qcow2": "OpenCore bootloader",
}
"""Support files a macOS guest needs in the media root."""

WINDOWS_MEDIA_MARKER: Final[str] = "win"
"""Case-insensitive substring that marks install media as a Windows installer."""

# ============================================================================
# Guest Profile Fragments
# ============================================================================
# These are guest compatibility values. The macOS block in particular must
# match the reference values byte for byte or the guest will not boot.

MACOS_CPU_MODEL: Final[str] = (
    "Penryn,kvm=on,vendor=GenuineIntel,+invtsc,vmware-cpuid-freq=on,"
    "+ssse3,+sse4.2,+popcnt,+avx,+aes,+xsave,+xsaveopt,check"
)

MACOS_PROFILE_ARGS: Final[tuple[str, ...]] = (
    "-machine", "q35",
    "-global", "ICH9-LPC.acpi-pci-hotplug-with-bridge-support=off",
    "-cpu", MACOS_CPU_MODEL,
    "-device", "isa-applesmc,osk=ourhardworkbythesewordsguardedpleasedontsteal(c)AppleComputerInc",
    "-smbios", "type=2",
    "-device", "ich9-intel-hda",
    "-device", "hda-duplex",
    "-device", "ich9-ahci,id=sata",
    "-global", "nec-usb-xhci.msi=off",
    "-device", "usb-kbd",
    "-device", "usb-tablet",
)  # fmt: skip

WINDOWS_PROFILE_ARGS: Final[tuple[str, ...]] = (
    "-machine", "type=pc,vmport=off",
    "-accel", "accel=tcg,thread=multi",
    "-device", "intel-hda",
    "-device", "hda-duplex",
    "-device", "qemu-xhci",
    "-device", "usb-tablet",
    "-device", "virtio-serial",
    "-vga", "virtio",
    "-usb",
    "-rtc", "base=localtime",
)  # fmt: skip

HYPERV_ENLIGHTENMENTS: Final[tuple[str, ...]] = (
    "hv_relaxed",
    "hv_spinlocks=0x1fff",
    "hv_vapic",
    "hv_time",
)
"""Appended to every Windows CPU model, overridden or not."""

DEFAULT_CPU_MODEL: Final[str] = "host"
CONTAINER_CPU_MODEL: Final[str] = "qemu64"
WINDOWS_DEFAULT_CPU_MODEL: Final[str] = "Nehalem"

MACOS_NIC_MODEL: Final[str] = "vmxnet3"
WINDOWS_NIC_MODEL: Final[str] = "e1000"
GENERIC_NIC_MODEL: Final[str] = "virtio-net-pci"

VNC_DISPLAY_ARG: Final[str] = ":0,websocket=on"

# ============================================================================
# Introspection
# ============================================================================

INTROSPECTION_SHM_NAME_TEMPLATE: Final[str] = "qemu-{name}-ram"
"""Default shared-memory file name, also the legacy symlink name."""

INTROSPECTION_QMP_SOCKET_TEMPLATE: Final[str] = "/tmp/qmp-{name}.sock"  # noqa: S108
"""Default QMP control socket path."""

INTROSPECTION_FILE_MODE: Final[int] = 0o666
INTROSPECTION_SHM_ROOT_MODE: Final[int] = 0o777

# ============================================================================
# Introspection Toolkit
# ============================================================================

TOOLKIT_REPOSITORIES: Final[dict[str, str]] = {
    "LeechCore": "https://github.com/ufrisk/LeechCore.git",
    "MemProcFS": "https://github.com/ufrisk/MemProcFS.git",
    "LeechCore-plugins": "https://github.com/ufrisk/LeechCore-plugins.git",
}
"""Checkout directory -> clone URL, in build order."""

TOOLKIT_BUILD_PACKAGES: Final[tuple[str, ...]] = (
    "build-essential",
    "git",
    "gcc",
    "cmake",
    "pkg-config",
    "libusb-1.0",
    "libusb-1.0-0-dev",
    "libfuse2",
    "libfuse-dev",
    "libpython3-dev",
    "lz4",
    "liblz4-dev",
)

TOOLKIT_CORE_LIBRARY: Final[str] = "leechcore.so"
TOOLKIT_VMM_LIBRARY: Final[str] = "vmm.so"
TOOLKIT_QEMU_PLUGIN: Final[str] = "leechcore_device_qemu.so"
TOOLKIT_BINARY: Final[str] = "memprocfs"

TOOLKIT_PLUGINS: Final[tuple[str, ...]] = (
    "leechcore_ft601_driver_linux",
    "leechcore_device_rawtcp",
    "leechcore_device_qemu",
)

TOOLKIT_ARTIFACT_MODE: Final[int] = 0o755

# ============================================================================
# Timeouts
# ============================================================================

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period after SIGTERM for a timed-out external command."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Grace period after SIGKILL for a timed-out external command."""

QEMU_VERSION_PROBE_TIMEOUT_SECONDS: Final[float] = 5.0
