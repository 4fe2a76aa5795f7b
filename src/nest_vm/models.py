"""Data models for nest-vm.

Models serialize with camelCase keys (``cpuCount``, ``memoryMB``...) to match the
payloads the HTTP layer forwards, and accept snake_case names from Python callers.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from nest_vm import constants

_VM_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_WHITESPACE = re.compile(r"\s+")


class GuestProfile(str, Enum):
    """Guest OS classification driving device-model and firmware arguments."""

    GENERIC = "generic"
    WINDOWS = "windows"
    MACOS = "macos"


class NetworkMode(str, Enum):
    """Network backend for the guest NIC."""

    USER = "user"
    BRIDGE = "bridge"


class VmStatus(str, Enum):
    """Runtime state, derived on demand and never persisted."""

    RUNNING = "running"
    STOPPED = "stopped"


class InstallOutcome(str, Enum):
    """Result of an introspection toolkit install request."""

    ALREADY_INSTALLED = "already_installed"
    INSTALLED = "installed"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class NetworkConfig(_CamelModel):
    """Guest network attachment."""

    mode: NetworkMode = NetworkMode.USER
    bridge: str | None = Field(default=None, min_length=1, description="Host bridge interface (bridge mode)")

    @model_validator(mode="after")
    def _bridge_requires_interface(self) -> NetworkConfig:
        if self.mode == NetworkMode.BRIDGE and not self.bridge:
            raise ValueError("bridge mode requires a bridge interface name")
        return self


class IntrospectionConfig(_CamelModel):
    """Shared-memory + QMP attachment for external memory inspection."""

    enabled: bool = False
    shared_memory_name: str | None = Field(default=None, min_length=1)
    control_socket_path: str | None = Field(default=None, min_length=1)

    @field_validator("shared_memory_name")
    @classmethod
    def _plain_file_name(cls, value: str | None) -> str | None:
        if value is not None and ("/" in value or value in (".", "..")):
            raise ValueError("sharedMemoryName must be a plain file name")
        return value


class VmSpec(_CamelModel):
    """Declarative description of a VM, persisted as config.json."""

    name: str = Field(max_length=constants.VM_NAME_MAX_LENGTH)
    cpu_count: int = Field(ge=constants.MIN_CPU_COUNT)
    memory_mb: int = Field(ge=constants.MIN_MEMORY_MB, alias="memoryMB")
    disk_gb: int = Field(ge=constants.MIN_DISK_GB, alias="diskGB")
    guest_profile: GuestProfile | None = None
    install_media: str | None = Field(default=None, min_length=1)
    network: NetworkConfig | None = None
    console_enabled: bool = False
    acceleration_requested: bool = True
    cpu_model_override: str | None = Field(default=None, min_length=1)
    template_id: str | None = None
    introspection: IntrospectionConfig | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _sanitize_name(cls, value: object) -> object:
        # Whitespace runs become hyphens so the name is usable as a directory
        if isinstance(value, str):
            return _WHITESPACE.sub("-", value.strip())
        return value

    @field_validator("name")
    @classmethod
    def _filesystem_safe_name(cls, value: str) -> str:
        if not _VM_NAME_PATTERN.match(value):
            raise ValueError(f"VM name contains invalid characters (only [A-Za-z0-9_.-] allowed): {value!r}")
        return value

    @field_validator("install_media")
    @classmethod
    def _catalog_file_name(cls, value: str | None) -> str | None:
        if value is not None and ("/" in value or value in (".", "..")):
            raise ValueError("installMedia must be a file name in the media catalog")
        return value

    @property
    def introspection_enabled(self) -> bool:
        return self.introspection is not None and self.introspection.enabled

    def to_json(self) -> str:
        """Serialize for config.json (camelCase keys, 2-space indent)."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class VmTemplate(_CamelModel):
    """Named set of defaults applied before explicit user fields."""

    id: str
    cpu_count: int = Field(ge=constants.MIN_CPU_COUNT)
    memory_mb: int = Field(ge=constants.MIN_MEMORY_MB, alias="memoryMB")
    disk_gb: int = Field(ge=constants.MIN_DISK_GB, alias="diskGB")
    network: NetworkConfig | None = None
    console_enabled: bool = False
    acceleration_requested: bool = True
    cpu_model_override: str | None = None
    extra_device_args: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class LaunchRecord(_CamelModel):
    """PID and launch time of the last verified start."""

    pid: int = Field(gt=0)
    launched_at: datetime


class VmInfo(BaseModel):
    """A stored VM and its derived runtime status."""

    spec: VmSpec
    status: VmStatus

    def to_dict(self) -> dict[str, object]:
        """Flat representation: spec fields plus ``status``."""
        data = self.spec.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["status"] = self.status.value
        return data


class HostCapabilities(BaseModel):
    """Host facts consumed by command synthesis and requirement checks.

    Only the first three fields influence command synthesis; the rest are
    informational and filled by probe_host().
    """

    model_config = ConfigDict(frozen=True)

    accel_available: bool = False
    driver_iso_present: bool = False
    containerized: bool = False
    cpu_virtualization: bool | None = None
    cpu_sse4_1: bool | None = None
    cpu_avx2: bool | None = None
    qemu_version: tuple[int, int, int] | None = None


class MacOsMediaCheck(BaseModel):
    """Which macOS support files are present in the media root."""

    ready: bool
    missing: list[str] = Field(default_factory=list)
