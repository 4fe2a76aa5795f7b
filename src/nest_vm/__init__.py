"""nest-vm: QEMU virtual machine lifecycle management.

Stores VM definitions as JSON under a VM root, allocates qcow2 disks, builds
QEMU command lines per guest profile (generic, Windows, macOS), and starts,
stops, and deletes the resulting processes.

Quick Start:
    ```python
    from nest_vm import Settings, VmController

    async with VmController(Settings()) as controller:
        await controller.create_vm({"name": "test-vm", "cpuCount": 2, "memoryMB": 2048, "diskGB": 10})
        await controller.start_vm("test-vm")
        print(await controller.get_logs("test-vm"))
        await controller.stop_vm("test-vm")
    ```

From a template (explicit fields win over template defaults):
    ```python
    await controller.create_vm({"name": "win", "templateId": "windows10", "installMedia": "Win11.iso"})
    ```

Memory introspection (LeechCore / MemProcFS over shared memory + QMP):
    ```python
    await controller.create_vm({
        "name": "target",
        "cpuCount": 2,
        "memoryMB": 4096,
        "diskGB": 20,
        "introspection": {"enabled": True},
    })
    ```

Requirements:
    - qemu-system-x86_64 and qemu-img on PATH
    - Root, a container, or NEST_VM_USE_SUDO=true for disk and process operations
    - /dev/kvm for hardware acceleration (falls back to software emulation)
"""

from nest_vm.exceptions import (
    CommandFailedError,
    CommandTimeoutError,
    CorruptedConfigError,
    InvalidConfigError,
    MediaError,
    NestVmError,
    PrivilegeError,
    ResourceProvisioningWarning,
    ToolkitInstallError,
    VmAlreadyExistsError,
    VmNotFoundError,
    VmSpecValidationError,
    VmStartError,
    VmStopError,
)
from nest_vm.models import (
    GuestProfile,
    HostCapabilities,
    InstallOutcome,
    IntrospectionConfig,
    NetworkConfig,
    NetworkMode,
    VmInfo,
    VmSpec,
    VmStatus,
    VmTemplate,
)
from nest_vm.qemu_cmd import build_qemu_cmd
from nest_vm.settings import Settings
from nest_vm.templates import apply_template
from nest_vm.vm_manager import VmController

__all__ = [
    "CommandFailedError",
    "CommandTimeoutError",
    "CorruptedConfigError",
    "InvalidConfigError",
    "GuestProfile",
    "HostCapabilities",
    "InstallOutcome",
    "IntrospectionConfig",
    "MediaError",
    "NestVmError",
    "NetworkConfig",
    "NetworkMode",
    "PrivilegeError",
    "ResourceProvisioningWarning",
    "Settings",
    "ToolkitInstallError",
    "VmAlreadyExistsError",
    "VmController",
    "VmInfo",
    "VmNotFoundError",
    "VmSpec",
    "VmSpecValidationError",
    "VmStartError",
    "VmStatus",
    "VmStopError",
    "VmTemplate",
    "apply_template",
    "build_qemu_cmd",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nest-vm")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
