"""Runtime configuration from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from nest_vm import constants


def _detect_containerized() -> bool:
    """True when running inside a container (CONTAINER_ENV set or /.dockerenv present)."""
    return bool(os.environ.get("CONTAINER_ENV")) or Path("/.dockerenv").exists()


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with NEST_VM_ prefix.
    Example: NEST_VM_VM_ROOT=/srv/vms

    A Settings instance is passed explicitly to every component; nothing in
    nest_vm reads configuration from module-level state.
    """

    model_config = SettingsConfigDict(
        env_prefix="NEST_VM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Storage layout
    vm_root: Path = Path("/etc/qemu/vms")
    media_root: Path = Path("/etc/qemu/isos")
    shm_root: Path = Path("/dev/shm")  # noqa: S108

    # Host
    accel_device: Path = Path("/dev/kvm")
    qemu_bin: str = "qemu-system-x86_64"
    qemu_img_bin: str = "qemu-img"
    containerized: bool = Field(default_factory=_detect_containerized)

    # Privileged execution
    use_sudo: bool = False
    """Prefix elevated commands with sudo when not running as root."""
    require_privileges: bool = True
    """Refuse to run elevated commands unless root or containerized."""

    # Lifecycle timing
    start_settle_seconds: float = Field(default=1.0, ge=0)
    stop_grace_seconds: float = Field(default=2.0, ge=0)

    # External command timeouts
    command_timeout_seconds: float = Field(default=120.0, gt=0)
    disk_create_timeout_seconds: float = Field(default=600.0, gt=0)
    install_timeout_seconds: float = Field(default=1800.0, gt=0)

    # Introspection toolkit
    toolkit_build_dir: Path = Path("/var/lib/nest-vm/toolkit")
    toolkit_lib_dir: Path = Path("/usr/local/lib")
    toolkit_bin_dir: Path = Path("/usr/local/bin")

    # Driver ISO
    auto_download_drivers: bool = True
    driver_iso_url: str = constants.DRIVER_ISO_URL

    @property
    def driver_iso_path(self) -> Path:
        """Absolute path of the paravirtual driver ISO in the media root."""
        return self.media_root / constants.DRIVER_ISO_NAME
