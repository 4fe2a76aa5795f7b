"""Built-in VM templates and payload resolution.

A template supplies defaults; explicit payload fields always win. An unknown
or missing template id means a custom VM: the payload is validated as-is.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

from pydantic import ValidationError

from nest_vm._logging import get_logger
from nest_vm.exceptions import VmSpecValidationError
from nest_vm.models import GuestProfile, NetworkConfig, VmSpec, VmTemplate

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = get_logger(__name__)

MACOS_TEMPLATE_ID: Final[str] = "macos"

VM_TEMPLATES: Final[dict[str, VmTemplate]] = {
    "windows10": VmTemplate(
        id="windows10",
        cpu_count=2,
        memory_mb=4096,
        disk_gb=64,
        network=NetworkConfig(),
        console_enabled=True,
        acceleration_requested=True,
        cpu_model_override="host",
        extra_device_args=(
            "-device", "virtio-gpu-pci",
            "-device", "virtio-net-pci",
            "-device", "virtio-balloon-pci",
            "-device", "virtio-keyboard-pci",
            "-device", "virtio-mouse-pci",
            "-usb",
            "-device", "usb-tablet",
        ),
    ),
    "debian": VmTemplate(
        id="debian",
        cpu_count=1,
        memory_mb=2048,
        disk_gb=20,
        network=NetworkConfig(),
        console_enabled=True,
        acceleration_requested=True,
        cpu_model_override="host",
        extra_device_args=(
            "-cpu", "host",
            "-device", "virtio-net-pci",
            "-device", "virtio-balloon-pci",
        ),
    ),
    MACOS_TEMPLATE_ID: VmTemplate(
        id=MACOS_TEMPLATE_ID,
        cpu_count=4,
        memory_mb=8192,
        disk_gb=64,
        network=NetworkConfig(),
        console_enabled=True,
        acceleration_requested=True,
        cpu_model_override="Penryn",
    ),
}  # fmt: skip

# Template fields copied into a spec as defaults (extra_device_args stays on the template)
_DEFAULTED_FIELDS: Final[tuple[str, ...]] = (
    "cpu_count",
    "memory_mb",
    "disk_gb",
    "network",
    "console_enabled",
    "acceleration_requested",
    "cpu_model_override",
)


def get_templates() -> list[VmTemplate]:
    """All built-in templates, in a stable order."""
    return list(VM_TEMPLATES.values())


def get_template(template_id: str | None) -> VmTemplate | None:
    """Template by id, or None for custom VMs and unknown ids."""
    if template_id is None:
        return None
    return VM_TEMPLATES.get(template_id)


def _field_names_by_key() -> dict[str, str]:
    keys: dict[str, str] = {}
    for field_name, field in VmSpec.model_fields.items():
        keys[field_name] = field_name
        if field.alias:
            keys[field.alias] = field_name
    return keys


def apply_template(payload: Mapping[str, Any]) -> VmSpec:
    """Merge template defaults under an explicit payload and validate.

    Payload keys may be camelCase (``cpuCount``, ``memoryMB``) or snake_case.
    Keys with a None value count as absent. Selecting the macOS template
    implies the macOS guest profile unless the payload sets one.

    Raises:
        VmSpecValidationError: Merged payload does not validate
    """
    keys = _field_names_by_key()
    explicit = {keys.get(key, key): value for key, value in payload.items() if value is not None}

    template = get_template(explicit.get("template_id"))
    merged: dict[str, Any] = {}
    if template is not None:
        for field_name in _DEFAULTED_FIELDS:
            value = getattr(template, field_name)
            if value is not None:
                merged[field_name] = value.model_dump() if isinstance(value, NetworkConfig) else value
        if template.id == MACOS_TEMPLATE_ID:
            merged["guest_profile"] = GuestProfile.MACOS
    elif "template_id" in explicit:
        logger.debug("Unknown template id, treating as custom VM", extra={"template_id": explicit["template_id"]})

    merged.update(explicit)
    try:
        return VmSpec.model_validate(merged)
    except ValidationError as e:
        raise VmSpecValidationError(
            f"Invalid VM definition: {e.error_count()} validation error(s)",
            errors=e.errors(include_url=False, include_context=False),
            context={"template_id": explicit.get("template_id")},
        ) from e
